# cache.py
from __future__ import annotations

import hashlib
import io
import json
import os
import tarfile
import threading
import time
import zlib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import redis

from .errors import CacheError
from .globs import matches_any
from .ui.console import Console, get_console

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Node-level dependency cache:
#   cache_key = prefix + sha256(
#       toolchain fingerprint,   (rustc -vV, profile, components)
#       lockfile fingerprint,    (contents of Cargo.lock & co.)
#       format version,
#   )
#
# Cache artifact:
#   a tar.gz containing the declared cache paths (target/, ~/.cargo/registry,
#   ...) plus a manifest for explainability.
#
# Keys are content-derived: a new toolchain or a changed lockfile yields a
# new key, so stale entries are never read and need no invalidation.
# ---------------------------------------------------------------------

KEY_FORMAT_VERSION = 1
DEFAULT_CACHE_DIR = ".gateci/cache"
DEFAULT_CACHE_EXCLUDES = [
    ".git/**",
    ".gateci/**",
    "**/*.tmp",
    "**/.DS_Store",
]
MANIFEST_MEMBER = ".gateci_cache_manifest.json"

# archive member prefixes -> where they extract to
_ROOT = "root"
_HOME = "home"
_ABS = "abs"


def _sha256_bytes(data: bytes) -> str:
    h = hashlib.sha256()
    h.update(data)
    return h.hexdigest()


def _sha256_str(s: str) -> str:
    return _sha256_bytes(s.encode("utf-8"))


def _json_dumps_stable(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _relpath(p: Path, root: Path) -> str:
    return str(p.resolve().relative_to(root.resolve())).replace("\\", "/")


def _iter_files_under(root: Path) -> Iterable[Path]:
    # deterministic traversal
    for p in sorted(root.rglob("*")):
        if p.is_file():
            yield p


def _hash_file_contents(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            chunk = f.read(1024 * 1024)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


def _resolve_globs(root: Path, patterns: Sequence[str]) -> List[Path]:
    """
    Expand lockfile patterns into concrete paths.
    Supports:
      - file path: "Cargo.lock"
      - dir path:  "crates/"
      - glob:      "**/Cargo.lock"
    """
    out: List[Path] = []
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = root / pat
        if p.exists():
            out.append(p)
            continue
        out.extend(m for m in sorted(root.glob(pat)) if m.exists())

    # De-dupe while preserving order
    seen = set()
    uniq: List[Path] = []
    for p in out:
        rp = str(p.resolve())
        if rp not in seen:
            seen.add(rp)
            uniq.append(p)
    return uniq


def fingerprint_files(
    root: str | Path,
    patterns: Sequence[str],
    *,
    excludes: Sequence[str] = DEFAULT_CACHE_EXCLUDES,
) -> Tuple[str, Dict]:
    """
    Hash the matched files deterministically (relative path, content hash,
    size). Patterns that match nothing are recorded, so "no lockfile" is a
    stable fingerprint of its own.

    Raises CacheError when the files cannot be resolved or read.
    """
    root = Path(root).resolve()
    file_fps: List[Tuple[str, str, int]] = []
    try:
        for p in _resolve_globs(root, patterns):
            files = [p] if p.is_file() else list(_iter_files_under(p))
            for f in files:
                rel = _relpath(f, root)
                if matches_any(rel, excludes):
                    continue
                file_fps.append((rel, _hash_file_contents(f), f.stat().st_size))
    except (OSError, ValueError, NotImplementedError) as e:
        # absolute / non-relative patterns, unreadable files, paths outside root
        raise CacheError(f"could not fingerprint {list(patterns)}: {e}", op="key") from e

    file_fps.sort(key=lambda t: t[0])  # stable ordering by relpath
    payload = {
        "patterns": sorted(p.strip() for p in patterns if p.strip()),
        "files": file_fps,
    }
    return _sha256_str(_json_dumps_stable(payload)), payload


# ---------------------------------------------------------------------
# Keys + artifacts
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class CacheKey:
    prefix: str
    digest: str

    @classmethod
    def derive(cls, toolchain_fingerprint: str, lockfile_fingerprint: str, prefix: str = "gateci") -> "CacheKey":
        payload = {
            "v": KEY_FORMAT_VERSION,
            "toolchain": toolchain_fingerprint,
            "lockfile": lockfile_fingerprint,
        }
        return cls(prefix=_safe_prefix(prefix), digest=_sha256_str(_json_dumps_stable(payload)))

    def short(self) -> str:
        return f"{self.prefix}-{self.digest[:12]}"

    def __str__(self) -> str:
        return f"{self.prefix}-{self.digest}"


def _safe_prefix(prefix: str) -> str:
    cleaned = "".join(c if c.isalnum() or c in "-_." else "_" for c in prefix.strip())
    return cleaned or "gateci"


@dataclass(frozen=True)
class Artifact:
    data: bytes
    manifest: Dict = field(default_factory=dict)

    @property
    def size(self) -> int:
        return len(self.data)


def _arcname_for(path: Path, root: Path, home: Path) -> str:
    path = path.resolve()
    for prefix, base in ((_ROOT, root), (_HOME, home)):
        try:
            rel = path.relative_to(base.resolve())
        except ValueError:
            continue
        return str(PurePosixPath(prefix) / rel.as_posix())
    return str(PurePosixPath(_ABS) / path.as_posix().lstrip("/"))


def _expand(entry: str, root: Path, home: Path) -> Path:
    if entry == "~" or entry.startswith("~/"):
        return home / entry[2:]
    p = Path(entry)
    return p if p.is_absolute() else root / p


def pack_paths(
    root: str | Path,
    paths: Sequence[str],
    *,
    key: Optional[CacheKey] = None,
    excludes: Sequence[str] = DEFAULT_CACHE_EXCLUDES,
    home: str | Path | None = None,
) -> Artifact:
    """
    Build a tar.gz of the given files/dirs. Missing paths are skipped.
    """
    root = Path(root).resolve()
    home = Path(home).resolve() if home else Path.home()

    files: List[Tuple[Path, str]] = []
    for entry in paths:
        src = _expand(entry.strip(), root, home)
        if not src.exists():
            continue
        candidates = [src] if src.is_file() else list(_iter_files_under(src))
        for f in candidates:
            arc = _arcname_for(f, root, home)
            if matches_any(arc.split("/", 1)[1] if "/" in arc else arc, excludes):
                continue
            files.append((f, arc))

    manifest = {
        "key": str(key) if key else None,
        "paths": list(paths),
        "files": len(files),
        "generated_at_unix": int(time.time()),
    }

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for f, arc in files:
            tar.add(str(f), arcname=arc, recursive=False)
        payload = json.dumps(manifest, sort_keys=True, indent=2).encode("utf-8")
        info = tarfile.TarInfo(name=MANIFEST_MEMBER)
        info.size = len(payload)
        info.mtime = manifest["generated_at_unix"]
        tar.addfile(info, fileobj=io.BytesIO(payload))

    return Artifact(data=buf.getvalue(), manifest=manifest)


def _within(path: Path, roots: Sequence[Path]) -> bool:
    return any(path == r or r in path.parents for r in roots)


def unpack_artifact(
    artifact: Artifact,
    root: str | Path,
    *,
    home: str | Path | None = None,
    paths: Optional[Sequence[str]] = None,
) -> Dict:
    """
    Extract an artifact ("overwrite by extraction"). Returns its manifest.

    With `paths` (the restore step's declared cache paths) every member must
    land inside one of them. Nothing is written unless every member passes,
    and existing symlinks are never written through.

    Raises CacheError for corrupt archives or unsafe members.
    """
    root = Path(root).resolve()
    home = Path(home).resolve() if home else Path.home()
    bases = {_ROOT: root, _HOME: home, _ABS: Path("/")}
    allowed = None
    if paths is not None:
        allowed = [Path(os.path.normpath(_expand(p.strip(), root, home))) for p in paths if p.strip()]
    manifest: Dict = {}

    try:
        with tarfile.open(fileobj=io.BytesIO(artifact.data), mode="r:gz") as tar:
            planned: List[Tuple[tarfile.TarInfo, Path]] = []
            for member in tar.getmembers():
                if member.name == MANIFEST_MEMBER:
                    fh = tar.extractfile(member)
                    if fh is not None:
                        manifest = json.loads(fh.read().decode("utf-8"))
                    continue
                if not member.isfile():
                    continue
                parts = PurePosixPath(member.name).parts
                if len(parts) < 2 or parts[0] not in bases or ".." in parts:
                    raise CacheError(f"unsafe archive member {member.name!r}", op="restore")
                dest = bases[parts[0]].joinpath(*parts[1:])
                if allowed is not None and not _within(dest, allowed):
                    raise CacheError(f"archive member {member.name!r} is outside the declared cache paths",
                                     op="restore")
                planned.append((member, dest))

            real_allowed = [a.resolve() for a in allowed] if allowed is not None else None
            for member, dest in planned:
                dest.parent.mkdir(parents=True, exist_ok=True)
                if dest.is_symlink():
                    raise CacheError(f"refusing to write through symlink {dest}", op="restore")
                if real_allowed is not None and not _within(dest.parent.resolve() / dest.name, real_allowed):
                    raise CacheError(f"{dest} resolves outside the declared cache paths", op="restore")
                fh = tar.extractfile(member)
                if fh is None:
                    continue
                with dest.open("wb") as out:
                    out.write(fh.read())
                os.chmod(dest, member.mode & 0o777)
                os.utime(dest, (member.mtime, member.mtime))
    except (tarfile.TarError, OSError, ValueError, EOFError, zlib.error) as e:
        raise CacheError(f"could not extract artifact: {e}", op="restore") from e

    return manifest


# ---------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------

class CacheBackend(Protocol):
    def get(self, key: CacheKey) -> Optional[bytes]:
        ...

    def put(self, key: CacheKey, data: bytes) -> None:
        ...


class DiskBackend:
    """
    File-based blob store:
      root/
        <prefix>/
          <digest>.tar.gz
    """

    def __init__(self, root: str | Path = DEFAULT_CACHE_DIR):
        self.root = Path(root).expanduser().resolve()

    def _prefix_dir(self, prefix: str) -> Path:
        return self.root / prefix

    def artifact_path(self, key: CacheKey) -> Path:
        return self._prefix_dir(key.prefix) / f"{key.digest}.tar.gz"

    def get(self, key: CacheKey) -> Optional[bytes]:
        path = self.artifact_path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheError(f"read failed: {e}", key=str(key), op="get") from e

    def put(self, key: CacheKey, data: bytes) -> None:
        art = self.artifact_path(key)
        # unique tmp per writer, then atomic rename
        tmp = art.with_name(f"{art.name}.{os.getpid()}.{threading.get_ident()}.tmp")
        try:
            art.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_bytes(data)
            tmp.replace(art)
        except OSError as e:
            raise CacheError(f"write failed: {e}", key=str(key), op="put") from e
        finally:
            if tmp.exists():
                tmp.unlink(missing_ok=True)

    def prune(self, prefix: str, keep: int = 3) -> List[Path]:
        """
        Keep only the newest N artifacts for a prefix.
        Uses file mtime as "newest".
        """
        d = self._prefix_dir(_safe_prefix(prefix))
        if not d.is_dir():
            return []
        tars = sorted(d.glob("*.tar.gz"), key=lambda p: p.stat().st_mtime, reverse=True)
        removed = []
        for p in tars[keep:]:
            p.unlink(missing_ok=True)
            removed.append(p)
        return removed

    def prefixes(self) -> List[str]:
        if not self.root.is_dir():
            return []
        return sorted(p.name for p in self.root.iterdir() if p.is_dir())


class RedisBackend:
    """Remote blob store on Redis. Entries expire after `ttl` seconds if set."""

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        client: Optional["redis.Redis"] = None,
        ttl: Optional[int] = 7 * 24 * 3600,
        namespace: str = "gateci:cache:",
    ):
        if client is None:
            if not url:
                raise ValueError("RedisBackend needs a url or a client")
            client = redis.Redis.from_url(url)
        self.client = client
        self.ttl = ttl
        self.namespace = namespace

    def _name(self, key: CacheKey) -> str:
        return f"{self.namespace}{key}"

    def get(self, key: CacheKey) -> Optional[bytes]:
        try:
            return self.client.get(self._name(key))
        except redis.RedisError as e:
            raise CacheError(f"redis get failed: {e}", key=str(key), op="get") from e

    def put(self, key: CacheKey, data: bytes) -> None:
        try:
            self.client.set(self._name(key), data, ex=self.ttl)
        except redis.RedisError as e:
            raise CacheError(f"redis set failed: {e}", key=str(key), op="put") from e


# ---------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------

@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    saves: int = 0
    errors: int = 0


class CacheManager:
    """
    Best-effort cache front: backend failures are logged and swallowed.
    A failed restore is a miss; a failed save is a no-op.
    """

    def __init__(self, backend: CacheBackend, *, console: Optional[Console] = None):
        self.backend = backend
        self._console = console
        self._lock = threading.Lock()
        self.stats = CacheStats()

    @property
    def console(self) -> Console:
        return self._console or get_console()

    def _bump(self, attr: str) -> None:
        with self._lock:
            setattr(self.stats, attr, getattr(self.stats, attr) + 1)

    def restore(self, key: CacheKey) -> Optional[Artifact]:
        try:
            data = self.backend.get(key)
        except CacheError as e:
            self._bump("errors")
            self.console.print_warning(f"cache restore failed for {key.short()}: {e.message}")
            return None
        if data is None:
            self._bump("misses")
            return None
        self._bump("hits")
        return Artifact(data=data)

    def save(self, key: CacheKey, artifact: Artifact) -> bool:
        """Persist an artifact. Returns False when the backend failed."""
        try:
            self.backend.put(key, artifact.data)
        except CacheError as e:
            self._bump("errors")
            self.console.print_warning(f"cache save failed for {key.short()}: {e.message}")
            return False
        self._bump("saves")
        return True

    def prune(self, prefix: str, keep: int = 3) -> int:
        prune = getattr(self.backend, "prune", None)
        if prune is None:
            return 0
        return len(prune(prefix, keep=keep))


def manager_for(cache_dir: str | Path = DEFAULT_CACHE_DIR, redis_url: Optional[str] = None,
                *, console: Optional[Console] = None) -> CacheManager:
    backend: CacheBackend = RedisBackend(redis_url) if redis_url else DiskBackend(cache_dir)
    return CacheManager(backend, console=console)
