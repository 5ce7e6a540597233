"""Test configuration and fixtures."""

import io
import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from gateci.cache import CacheKey, CacheManager
from gateci.errors import CacheError, ProvisionError
from gateci.executor import ExecutionEnvironment, Executor
from gateci.model import ToolchainSpec
from gateci.toolchain import ProvisionedToolchain
from gateci.ui.console import Console, set_console


class FakeProvisioner:
    """Records provision calls; never touches the host."""

    def __init__(self, missing: Optional[str] = None):
        self.missing = missing
        self.calls: List[ToolchainSpec] = []

    def provision(self, spec, *, cwd, env, cancel_event=None, timeout=None, log=None):
        self.calls.append(spec)
        if self.missing:
            raise ProvisionError(f"{self.missing} is not available", toolchain=spec.describe(), exit_code=127)
        if log is not None:
            log(f"provisioned {spec.describe()}\n".encode("utf-8"))
        return ProvisionedToolchain(spec=spec, fingerprint=f"fp-{spec.describe()}",
                                    env={"GATECI_TEST_TOOLCHAIN": spec.name})


class MemoryBackend:
    """In-memory blob store that counts writes."""

    def __init__(self, fail_get: bool = False, fail_put: bool = False):
        self.blobs: Dict[CacheKey, bytes] = {}
        self.puts: List[CacheKey] = []
        self.fail_get = fail_get
        self.fail_put = fail_put
        self._lock = threading.Lock()
        self.saved = threading.Event()

    def get(self, key):
        if self.fail_get:
            raise CacheError("backend down", key=str(key), op="get")
        return self.blobs.get(key)

    def put(self, key, data):
        if self.fail_put:
            raise CacheError("backend down", key=str(key), op="put")
        with self._lock:
            self.blobs[key] = data
            self.puts.append(key)
        self.saved.set()

    def saved_prefixes(self) -> List[str]:
        with self._lock:
            return [k.prefix for k in self.puts]


@pytest.fixture
def console() -> Console:
    """Console writing into buffers instead of the terminal."""
    return Console(stream=io.StringIO(), err=io.StringIO())


@pytest.fixture(autouse=True)
def quiet_console(console: Console):
    set_console(console)
    yield
    set_console(None)


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    d = tmp_path / "repo"
    d.mkdir()
    (d / "Cargo.lock").write_text("# lock v1\n")
    return d


@pytest.fixture
def home(tmp_path: Path) -> Path:
    d = tmp_path / "home"
    d.mkdir()
    return d


@pytest.fixture
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def cache(backend: MemoryBackend, console: Console) -> CacheManager:
    return CacheManager(backend, console=console)


@pytest.fixture
def env(workdir: Path, home: Path) -> ExecutionEnvironment:
    return ExecutionEnvironment(workdir=workdir, home=home)


@pytest.fixture
def executor(provisioner: FakeProvisioner, cache: CacheManager, console: Console) -> Executor:
    return Executor(provisioner, cache, console=console)
