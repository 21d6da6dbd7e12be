# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


@dataclass(frozen=True)
class MatrixAxis:
    """A named dimension of the build matrix (e.g. version: stable, beta, nightly)."""
    name: str
    values: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        # accept any iterable, store a tuple
        object.__setattr__(self, "values", tuple(str(v) for v in self.values))
        if len(set(self.values)) != len(self.values):
            dupes = sorted({v for v in self.values if self.values.count(v) > 1})
            raise ValueError(f"Axis '{self.name}' has duplicate values: {dupes}")


@dataclass(frozen=True)
class JobSpec:
    """
    One concrete combination of axis values.

    `values` keeps axis declaration order, so `name` is stable:
        (("version", "stable"), ("target", "x86_64-apple-darwin"))
        -> "stable-x86_64-apple-darwin"

    `name` is a display label, not an identity: values containing "-" can
    render the same name for different combinations, e.g. ("a-b", "c") and
    ("a", "b-c"). `index` is unique within one expansion; use it for
    anything that must not collide (working copies, for one).
    """
    values: Tuple[Tuple[str, str], ...]
    index: int = 0

    @property
    def name(self) -> str:
        return "-".join(v for _, v in self.values)

    def __getitem__(self, axis: str) -> str:
        for k, v in self.values:
            if k == axis:
                return v
        raise KeyError(axis)

    def get(self, axis: str, default: Optional[str] = None) -> Optional[str]:
        try:
            return self[axis]
        except KeyError:
            return default

    def as_dict(self) -> Dict[str, str]:
        return dict(self.values)


@dataclass(frozen=True)
class CacheKey:
    """
    Address of a dependency cache: host OS + content hash of the lockfile.

    Rendered like `${{ runner.os }}-cargo-${{ hashFiles('**/Cargo.lock') }}`.
    """
    os: str
    digest: str
    prefix: str = "cargo"

    def __str__(self) -> str:
        return f"{self.os}-{self.prefix}-{self.digest}"


class JobState(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    LOCKFILE_GENERATING = "lockfile_generating"
    CACHE_RESTORING = "cache_restoring"
    TESTING = "testing"
    CACHE_SAVING = "cache_saving"
    DONE = "done"


class JobOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class JobResult:
    """Terminal record for one job. Never mutated after creation."""
    spec: JobSpec
    outcome: JobOutcome
    diagnostic: Optional[str] = None
    failed_state: Optional[JobState] = None
    states: Tuple[JobState, ...] = ()
    cache_key: Optional[CacheKey] = None
    cache_hit: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.outcome is JobOutcome.SUCCESS

    def to_dict(self) -> dict:
        return {
            "name": self.spec.name,
            "matrix": self.spec.as_dict(),
            "outcome": self.outcome.value,
            "diagnostic": self.diagnostic,
            "failed_state": self.failed_state.value if self.failed_state else None,
            "cache_key": str(self.cache_key) if self.cache_key else None,
            "cache_hit": self.cache_hit,
            "duration": round(self.duration, 3),
        }


@dataclass(frozen=True)
class RunSummary:
    """All job results of one triggered run, plus the overall verdict."""
    results: Tuple[JobResult, ...] = ()
    fail_fast: bool = False

    def __post_init__(self) -> None:
        ordered = tuple(sorted(self.results, key=lambda r: r.spec.index))
        object.__setattr__(self, "results", ordered)

    @property
    def passed(self) -> bool:
        # empty run = nothing to run = success
        return all(r.ok for r in self.results)

    @property
    def verdict(self) -> str:
        return "success" if self.passed else "failure"

    @property
    def failed(self) -> Tuple[JobResult, ...]:
        return tuple(r for r in self.results if not r.ok)

    def counts(self) -> Dict[str, int]:
        out = {o.value: 0 for o in JobOutcome}
        for r in self.results:
            out[r.outcome.value] += 1
        return out

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict,
            "fail_fast": self.fail_fast,
            "counts": self.counts(),
            "jobs": [r.to_dict() for r in self.results],
        }


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

DEFAULT_PR_TYPES = frozenset({"opened", "synchronize", "reopened"})
DEFAULT_PUSH_BRANCHES = frozenset({"master"})


@dataclass(frozen=True)
class Event:
    """An incoming trigger: a pull request lifecycle event or a branch push."""
    kind: str                      # "pull_request" | "push"
    action: Optional[str] = None   # pull_request only
    branch: Optional[str] = None   # push only


@dataclass(frozen=True)
class Trigger:
    pull_request_types: FrozenSet[str] = DEFAULT_PR_TYPES
    push_branches: FrozenSet[str] = DEFAULT_PUSH_BRANCHES

    def matches(self, event: Event) -> bool:
        if event.kind == "pull_request":
            return event.action in self.pull_request_types
        if event.kind == "push":
            return event.branch in self.push_branches
        return False


# ---------------------------------------------------------------------
# Pipeline declaration
# ---------------------------------------------------------------------

DEFAULT_CACHE_PATHS = ("~/.cargo/bin", "~/.cargo/git", "~/.cargo/registry")
DEFAULT_TEST_ARGS = ("--all", "--", "--nocapture")


@dataclass(frozen=True)
class PipelineConfig:
    """
    The declared configuration of one pipeline.

    Loaded once at trigger time (see config.load_pipeline) and never mutated;
    CLI overrides produce a new instance via dataclasses.replace before the run.
    """
    name: str
    axes: Tuple[MatrixAxis, ...]
    os_id: str
    runs_on: Optional[str] = None
    fail_fast: bool = False
    trigger: Trigger = field(default_factory=Trigger)
    toolchain_profile: str = "minimal"
    cache_paths: Tuple[str, ...] = DEFAULT_CACHE_PATHS
    cache_key_prefix: str = "cargo"
    lockfile_glob: str = "**/Cargo.lock"
    test_args: Tuple[str, ...] = DEFAULT_TEST_ARGS
    max_workers: Optional[int] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "axes", tuple(self.axes))
        object.__setattr__(self, "cache_paths", tuple(self.cache_paths))
        object.__setattr__(self, "test_args", tuple(self.test_args))
        names = [a.name for a in self.axes]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ValueError(f"Duplicate axis names found: {dupes}")
