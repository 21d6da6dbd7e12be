# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - per-job diagnostics in the run summary
      - debugging without full tracebacks
    """
    kind: ClassVar[str] = "CIError"

    message: str
    job: str = ""
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass(eq=False)
class ProvisioningError(CIError):
    """Toolchain unavailable for the requested version/target."""
    kind: ClassVar[str] = "ProvisioningError"


@dataclass(eq=False)
class GenerationError(CIError):
    """Lockfile could not be produced."""
    kind: ClassVar[str] = "GenerationError"


@dataclass(eq=False)
class StoreError(CIError):
    """Cache backend unreachable or broken. Never fatal for a job."""
    kind: ClassVar[str] = "StoreError"


@dataclass(eq=False)
class TestFailure(CIError):
    """Test suite exited non-zero."""
    kind: ClassVar[str] = "TestFailure"
    __test__: ClassVar[bool] = False  # keep pytest from collecting it

    exit_code: int = 1


@dataclass(eq=False)
class ConfigError(CIError):
    """Pipeline declaration is missing, unreadable or invalid."""
    kind: ClassVar[str] = "ConfigError"


# Errors that end a job as `failure` (anything else unexpected is `error`).
JOB_FAILURES = (ProvisioningError, GenerationError, TestFailure)


TOOL_HINTS = {
    "rustup": "Install rustup (https://rustup.rs) or fix PATH.",
    "cargo": "Install a Rust toolchain via rustup or fix PATH.",
    "git": "Install Git or fix PATH.",
}
