import threading

import pytest

from matrixci.cache import CacheArchiver, MemoryCacheStore
from matrixci.dsl import axis, pipeline
from matrixci.errors import GenerationError, ProvisioningError, StoreError
from matrixci.runner import JobRunner
from matrixci.services import Toolchain
from matrixci.ui.console import Console, set_console


# -------------------------------------------------------
# Fake collaborators
# -------------------------------------------------------

class FakeProvisioner:
    def __init__(self, fail_for=()):
        self.fail_for = set(fail_for)
        self.calls = []
        self._lock = threading.Lock()

    def install(self, version, target):
        with self._lock:
            self.calls.append((version, target))
        if version in self.fail_for:
            raise ProvisioningError(f"toolchain {version}-{target} unavailable")
        return Toolchain(version=version, target=target)


class FakeLockfileGenerator:
    def __init__(self, data=b"[[package]]\nname = \"demo\"\n", fail=False):
        self.data = data
        self.fail = fail
        self.calls = 0
        self.cwds = []

    def generate(self, toolchain, cwd=None):
        self.calls += 1
        self.cwds.append(cwd)
        if self.fail:
            raise GenerationError("could not resolve dependencies")
        return self.data


class FakeTestExecutor:
    def __init__(self, status_for=None, default=0):
        self.status_for = dict(status_for or {})
        self.default = default
        self.calls = []
        self.cwds = []
        self._lock = threading.Lock()

    def run(self, toolchain, suite="all", capture_output=False, cwd=None):
        with self._lock:
            self.calls.append((toolchain.name, suite, capture_output))
            self.cwds.append(cwd)
        return self.status_for.get(toolchain.version, self.default)


class BrokenStore:
    """Cache backend that is always unreachable."""

    def restore(self, key):
        raise StoreError("backend unreachable")

    def save(self, key, contents):
        raise StoreError("backend unreachable")


class FakeArchiver(CacheArchiver):
    """Opaque in-memory 'directories'."""

    def __init__(self, payload=b"cargo-registry"):
        super().__init__([])
        self.payload = payload
        self.unpacked = []

    def pack(self):
        return self.payload

    def unpack(self, contents):
        self.unpacked.append(contents)
        return 1


# -------------------------------------------------------
# Fixtures
# -------------------------------------------------------

@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(debug=False))


@pytest.fixture
def macos_config():
    return pipeline(
        "CI (macOS)",
        axis("version", ["stable", "beta", "nightly"]),
        axis("target", ["x86_64-apple-darwin"]),
        os_id="macOS",
    )


@pytest.fixture
def windows_config():
    return pipeline(
        "CI (Windows)",
        axis("version", ["nightly"]),
        axis("target", ["x86_64-pc-windows-msvc"]),
        os_id="Windows",
    )


@pytest.fixture
def make_runner():
    def _make(config, *, provisioner=None, generator=None, tests=None, store=None, archiver=None, workspaces=None):
        return JobRunner(
            config,
            provisioner=provisioner or FakeProvisioner(),
            lockfile_generator=generator or FakeLockfileGenerator(),
            test_executor=tests or FakeTestExecutor(),
            cache_store=store if store is not None else MemoryCacheStore(),
            archiver=archiver or FakeArchiver(),
            workspaces=workspaces,
        )
    return _make
