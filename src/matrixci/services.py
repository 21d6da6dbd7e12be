# services.py
from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence

from .cache import read_lockfiles
from .errors import TOOL_HINTS, GenerationError, ProvisioningError
from .model import JobSpec

# ---------------------------------------------------------------------
# External collaborators.
#
# The orchestrator only talks to these narrow interfaces; the defaults
# below shell out to rustup/cargo the way the declared pipelines do:
#   actions-rs/toolchain  -> rustup toolchain install <version>-<target>
#   cargo generate-lockfile
#   cargo test --all -- --nocapture
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class Toolchain:
    """Handle for an installed toolchain."""
    version: str
    target: str
    profile: str = "minimal"

    @property
    def name(self) -> str:
        return f"{self.version}-{self.target}"


class ToolchainProvisioner(Protocol):
    def install(self, version: str, target: str) -> Toolchain: ...


class LockfileGenerator(Protocol):
    def generate(self, toolchain: Toolchain, cwd: Optional[Path] = None) -> bytes: ...


class TestExecutor(Protocol):
    def run(
        self, toolchain: Toolchain, suite: str = "all", capture_output: bool = False, cwd: Optional[Path] = None
    ) -> int: ...


def _tool_missing_hint(tool: str) -> str:
    return TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")


def _tail(text: Optional[str], limit: int = 4000) -> str:
    return (text or "")[-limit:]


# ---------------------------------------------------------------------
# rustup / cargo implementations
# ---------------------------------------------------------------------

class RustupProvisioner:
    """Installs `<version>-<target>` with rustup (no directory override)."""

    def __init__(self, profile: str = "minimal", *, rustup: str = "rustup"):
        self.profile = profile
        self.rustup = rustup

    def command(self, version: str, target: str) -> List[str]:
        return [
            self.rustup, "toolchain", "install", f"{version}-{target}",
            "--profile", self.profile,
        ]

    def install(self, version: str, target: str) -> Toolchain:
        cmd = self.command(version, target)
        try:
            proc = subprocess.run(cmd, text=True, capture_output=True)
        except FileNotFoundError as e:
            raise ProvisioningError(
                f"{self.rustup} not found",
                details={"hint": _tool_missing_hint("rustup")},
            ) from e

        if proc.returncode != 0:
            raise ProvisioningError(
                f"toolchain {version}-{target} could not be installed",
                details={
                    "cmd": " ".join(cmd),
                    "exit_code": proc.returncode,
                    "stderr": _tail(proc.stderr),
                },
            )
        return Toolchain(version=version, target=target, profile=self.profile)


# ---------------------------------------------------------------------
# Per-job working copies
# ---------------------------------------------------------------------

DEFAULT_WORK_DIR = ".matrixci/work"

# never copied into a job's working copy
_NOT_COPIED = frozenset({".git", ".matrixci", "target"})


class JobWorkspaces:
    """
    One working copy of the checkout per job:
      <root>/.matrixci/work/<index>-<job name>/

    Each job generates its own Cargo.lock and builds/tests inside its copy,
    so concurrent jobs never read or test against a sibling's lockfile.
    The copy's `target/` is kept between runs; everything else is refreshed
    from the checkout on every prepare().
    """

    def __init__(self, root: str | Path = ".", work_dir: str | Path = DEFAULT_WORK_DIR):
        self.root = Path(root).resolve()
        self.work_root = (self.root / work_dir).resolve()

    def path_for(self, spec: JobSpec) -> Path:
        # index keeps copies apart even when two job names collide
        return self.work_root / f"{spec.index}-{spec.name}"

    def _ignore(self, src: str, names: List[str]) -> List[str]:
        return [
            n for n in names
            if n in _NOT_COPIED or Path(src, n).resolve() == self.work_root
        ]

    def prepare(self, spec: JobSpec) -> Path:
        dest = self.path_for(spec)
        try:
            if dest.exists():
                for child in dest.iterdir():
                    if child.name == "target":
                        continue
                    if child.is_dir() and not child.is_symlink():
                        shutil.rmtree(child)
                    else:
                        child.unlink()
            shutil.copytree(self.root, dest, ignore=self._ignore, symlinks=True, dirs_exist_ok=True)
        except OSError as e:
            raise ProvisioningError(
                "job working copy could not be prepared",
                details={"root": str(self.root), "workdir": str(dest), "error": str(e)},
            ) from e
        return dest


# ---------------------------------------------------------------------
# cargo
# ---------------------------------------------------------------------

class _CargoCommand:
    def __init__(self, root: str | Path = ".", *, cargo: str = "cargo", env: Optional[Dict[str, str]] = None):
        self.root = Path(root)
        self.cargo = cargo
        self.env = dict(env or {})

    def _workdir(self, cwd: Optional[Path]) -> Path:
        return Path(cwd) if cwd is not None else self.root

    def _env(self, toolchain: Toolchain, workdir: Path) -> Dict[str, str]:
        env = os.environ.copy()
        # jobs running in one directory must not share a build dir
        env.setdefault("CARGO_TARGET_DIR", str(workdir / "target" / "matrixci" / toolchain.name))
        env.update(self.env)
        return env


class CargoLockfileGenerator(_CargoCommand):
    """Runs `cargo +<toolchain> generate-lockfile` and returns the lockfile bytes."""

    def __init__(self, root: str | Path = ".", lockfile_glob: str = "**/Cargo.lock", **kwargs):
        super().__init__(root, **kwargs)
        self.lockfile_glob = lockfile_glob

    def command(self, toolchain: Toolchain) -> List[str]:
        return [self.cargo, f"+{toolchain.name}", "generate-lockfile"]

    def generate(self, toolchain: Toolchain, cwd: Optional[Path] = None) -> bytes:
        cmd = self.command(toolchain)
        workdir = self._workdir(cwd)
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(workdir),
                env=self._env(toolchain, workdir),
                text=True,
                capture_output=True,
            )
        except FileNotFoundError as e:
            raise GenerationError(
                f"{self.cargo} not found",
                details={"hint": _tool_missing_hint("cargo")},
            ) from e

        if proc.returncode != 0:
            raise GenerationError(
                "lockfile generation failed",
                details={
                    "cmd": " ".join(cmd),
                    "exit_code": proc.returncode,
                    "stderr": _tail(proc.stderr),
                },
            )

        data = read_lockfiles(workdir, self.lockfile_glob)
        if not data:
            raise GenerationError(
                "no lockfile produced",
                details={"root": str(workdir), "glob": self.lockfile_glob},
            )
        return data


class CargoTestExecutor(_CargoCommand):
    """Runs the whole test suite, streaming output (never captured)."""

    def __init__(self, root: str | Path = ".", test_args: Sequence[str] = ("--all", "--", "--nocapture"), **kwargs):
        super().__init__(root, **kwargs)
        self.test_args = list(test_args)

    def command(self, toolchain: Toolchain, suite: str = "all") -> List[str]:
        args = list(self.test_args)
        if suite != "all":
            # narrow to one package; drop --all which would override it
            args = ["-p", suite] + [a for a in args if a != "--all"]
        return [self.cargo, f"+{toolchain.name}", "test", *args]

    def run(
        self,
        toolchain: Toolchain,
        suite: str = "all",
        capture_output: bool = False,
        cwd: Optional[Path] = None,
    ) -> int:
        cmd = self.command(toolchain, suite)
        workdir = self._workdir(cwd)
        try:
            proc = subprocess.run(
                cmd,
                cwd=str(workdir),
                env=self._env(toolchain, workdir),
                text=True,
                capture_output=capture_output,
            )
        except FileNotFoundError:
            # same status a shell gives for a missing command
            return 127
        return proc.returncode
