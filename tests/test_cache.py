"""Unit tests for cache keys, artifacts and backends."""

import io
import os
import tarfile
import time
from pathlib import Path

import pytest
import redis

from gateci.cache import (
    Artifact,
    CacheKey,
    CacheManager,
    DiskBackend,
    RedisBackend,
    fingerprint_files,
    manager_for,
    pack_paths,
    unpack_artifact,
)
from gateci.errors import CacheError

from conftest import MemoryBackend


def test_key_is_deterministic() -> None:
    a = CacheKey.derive("tc", "lock", prefix="lint")
    b = CacheKey.derive("tc", "lock", prefix="lint")

    assert a == b
    assert str(a).startswith("lint-")


def test_key_changes_with_toolchain_or_lockfile() -> None:
    base = CacheKey.derive("tc", "lock")

    assert CacheKey.derive("tc2", "lock") != base
    assert CacheKey.derive("tc", "lock2") != base


def test_key_prefix_is_sanitized() -> None:
    assert CacheKey.derive("tc", "lock", prefix="my job/1").prefix == "my_job_1"


def test_lockfile_fingerprint_tracks_contents(workdir: Path) -> None:
    before, payload = fingerprint_files(workdir, ["Cargo.lock"])
    (workdir / "Cargo.lock").write_text("# lock v2\n")
    after, _ = fingerprint_files(workdir, ["Cargo.lock"])

    assert before != after
    assert payload["files"][0][0] == "Cargo.lock"


def test_missing_lockfile_is_stable(tmp_path: Path) -> None:
    a, _ = fingerprint_files(tmp_path, ["Cargo.lock"])
    b, _ = fingerprint_files(tmp_path, ["Cargo.lock"])

    assert a == b


def test_pack_and_unpack(tmp_path: Path, home: Path) -> None:
    src = tmp_path / "src"
    (src / "target" / "debug").mkdir(parents=True)
    (src / "target" / "debug" / "app").write_bytes(b"binary")
    (home / ".cargo" / "registry").mkdir(parents=True)
    (home / ".cargo" / "registry" / "index").write_text("crates")

    artifact = pack_paths(src, ["target", "~/.cargo/registry", "missing"], home=home)

    dest = tmp_path / "dest"
    dest_home = tmp_path / "dest_home"
    manifest = unpack_artifact(artifact, dest, home=dest_home)

    assert manifest["files"] == 2
    assert (dest / "target" / "debug" / "app").read_bytes() == b"binary"
    assert (dest_home / ".cargo" / "registry" / "index").read_text() == "crates"


def test_unpack_overwrites_existing_files(tmp_path: Path, home: Path) -> None:
    src = tmp_path / "src"
    (src / "target").mkdir(parents=True)
    (src / "target" / "f").write_text("cached")
    artifact = pack_paths(src, ["target"], home=home)
    (src / "target" / "f").write_text("local")

    unpack_artifact(artifact, src, home=home)

    assert (src / "target" / "f").read_text() == "cached"


def test_corrupt_artifact_raises_cache_error(tmp_path: Path) -> None:
    with pytest.raises(CacheError):
        unpack_artifact(Artifact(data=b"not a tarball"), tmp_path)


def test_unsafe_member_rejected(tmp_path: Path) -> None:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        info = tarfile.TarInfo("root/../../escape")
        info.size = 1
        tar.addfile(info, io.BytesIO(b"x"))

    with pytest.raises(CacheError, match="unsafe"):
        unpack_artifact(Artifact(data=buf.getvalue()), tmp_path / "dest")


def test_disk_backend_round_trip_and_prune(tmp_path: Path) -> None:
    backend = DiskBackend(tmp_path / "cache")
    keys = [CacheKey.derive("tc", f"lock{i}", prefix="lint") for i in range(4)]
    for i, key in enumerate(keys):
        backend.put(key, f"blob{i}".encode())
        t = time.time() - (10 - i)
        os.utime(backend.artifact_path(key), (t, t))

    assert backend.get(keys[0]) == b"blob0"
    assert backend.get(CacheKey.derive("x", "y")) is None

    removed = backend.prune("lint", keep=2)

    assert len(removed) == 2
    assert backend.get(keys[0]) is None
    assert backend.get(keys[3]) == b"blob3"
    assert backend.prefixes() == ["lint"]
    assert not list((tmp_path / "cache" / "lint").glob("*.tmp"))


class FakeRedis:
    def __init__(self, fail: bool = False):
        self.store = {}
        self.expiry = {}
        self.fail = fail

    def get(self, name):
        if self.fail:
            raise redis.ConnectionError("down")
        return self.store.get(name)

    def set(self, name, value, ex=None):
        if self.fail:
            raise redis.ConnectionError("down")
        self.store[name] = value
        self.expiry[name] = ex


def test_redis_backend_uses_namespace_and_ttl() -> None:
    client = FakeRedis()
    backend = RedisBackend(client=client, ttl=60)
    key = CacheKey.derive("tc", "lock", prefix="test")

    backend.put(key, b"data")

    assert backend.get(key) == b"data"
    assert client.expiry[f"gateci:cache:{key}"] == 60


def test_redis_errors_become_cache_errors() -> None:
    backend = RedisBackend(client=FakeRedis(fail=True))

    with pytest.raises(CacheError):
        backend.get(CacheKey.derive("a", "b"))


def test_redis_backend_needs_url_or_client() -> None:
    with pytest.raises(ValueError):
        RedisBackend()


def test_manager_swallows_backend_failures(console) -> None:
    manager = CacheManager(MemoryBackend(fail_get=True, fail_put=True), console=console)
    key = CacheKey.derive("a", "b")

    assert manager.restore(key) is None
    assert manager.save(key, Artifact(data=b"x")) is False
    assert manager.stats.errors == 2
    assert "cache restore failed" in console.err.getvalue()


def test_manager_counts_hits_and_misses(cache: CacheManager) -> None:
    key = CacheKey.derive("a", "b")

    assert cache.restore(key) is None
    assert cache.save(key, Artifact(data=b"x")) is True
    assert cache.restore(key).data == b"x"
    assert (cache.stats.hits, cache.stats.misses, cache.stats.saves) == (1, 1, 1)
    assert cache.prune("anything") == 0


def test_manager_for_picks_backend(tmp_path: Path) -> None:
    assert isinstance(manager_for(tmp_path).backend, DiskBackend)
    assert isinstance(manager_for(tmp_path, "redis://localhost:6379/0").backend, RedisBackend)


def test_truncated_artifact_raises_cache_error(tmp_path: Path, home: Path) -> None:
    src = tmp_path / "src"
    (src / "target").mkdir(parents=True)
    (src / "target" / "big").write_bytes(os.urandom(64 * 1024))
    data = pack_paths(src, ["target"], home=home).data

    with pytest.raises(CacheError):
        unpack_artifact(Artifact(data=data[: len(data) // 2]), tmp_path / "dest", home=home)


def test_absolute_key_pattern_raises_cache_error(workdir: Path) -> None:
    with pytest.raises(CacheError):
        fingerprint_files(workdir, ["/nonexistent/Cargo.lock"])


def test_unreadable_key_file_raises_cache_error(workdir: Path, monkeypatch) -> None:
    def _denied(path):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr("gateci.cache._hash_file_contents", _denied)

    with pytest.raises(CacheError):
        fingerprint_files(workdir, ["Cargo.lock"])


def _artifact_with(member: str, payload: bytes = b"x") -> Artifact:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        info = tarfile.TarInfo(member)
        info.size = len(payload)
        tar.addfile(info, io.BytesIO(payload))
    return Artifact(data=buf.getvalue())


def test_restore_rejects_members_outside_declared_paths(tmp_path: Path, home: Path) -> None:
    outside = tmp_path / "outside" / "evil.txt"
    artifact = _artifact_with("abs/" + outside.as_posix().lstrip("/"))

    with pytest.raises(CacheError, match="outside the declared cache paths"):
        unpack_artifact(artifact, tmp_path / "dest", home=home, paths=["target"])
    assert not outside.exists()


def test_restore_rejects_other_members_before_writing(tmp_path: Path, home: Path) -> None:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name in ("root/target/ok", "home/.bashrc"):
            info = tarfile.TarInfo(name)
            info.size = 1
            tar.addfile(info, io.BytesIO(b"x"))
    dest = tmp_path / "dest"

    with pytest.raises(CacheError):
        unpack_artifact(Artifact(data=buf.getvalue()), dest, home=home, paths=["target"])
    assert not (dest / "target" / "ok").exists()
    assert not (home / ".bashrc").exists()


def test_restore_does_not_follow_symlinks(tmp_path: Path, home: Path) -> None:
    src = tmp_path / "src"
    (src / "target").mkdir(parents=True)
    (src / "target" / "f").write_text("cached")
    artifact = pack_paths(src, ["target"], home=home)
    victim = tmp_path / "victim.txt"
    victim.write_text("original")
    dest = tmp_path / "dest"
    (dest / "target").mkdir(parents=True)
    (dest / "target" / "f").symlink_to(victim)

    with pytest.raises(CacheError):
        unpack_artifact(artifact, dest, home=home, paths=["target"])
    assert victim.read_text() == "original"


def test_restore_does_not_follow_symlinked_directories(tmp_path: Path, home: Path) -> None:
    src = tmp_path / "src"
    (src / "target" / "debug").mkdir(parents=True)
    (src / "target" / "debug" / "app").write_bytes(b"binary")
    artifact = pack_paths(src, ["target"], home=home)
    elsewhere = tmp_path / "elsewhere"
    elsewhere.mkdir()
    dest = tmp_path / "dest"
    (dest / "target").mkdir(parents=True)
    (dest / "target" / "debug").symlink_to(elsewhere, target_is_directory=True)

    with pytest.raises(CacheError, match="resolves outside"):
        unpack_artifact(artifact, dest, home=home, paths=["target"])
    assert not (elsewhere / "app").exists()


def test_restore_within_declared_paths(tmp_path: Path, home: Path) -> None:
    src = tmp_path / "src"
    (src / "target" / "debug").mkdir(parents=True)
    (src / "target" / "debug" / "app").write_bytes(b"binary")
    (home / ".cargo" / "registry").mkdir(parents=True)
    (home / ".cargo" / "registry" / "index").write_text("crates")
    artifact = pack_paths(src, ["target", "~/.cargo/registry"], home=home)
    dest = tmp_path / "dest"

    unpack_artifact(artifact, dest, home=home, paths=["target", "~/.cargo/registry"])

    assert (dest / "target" / "debug" / "app").read_bytes() == b"binary"
