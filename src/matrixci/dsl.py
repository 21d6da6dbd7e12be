# dsl.py
from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence

from .model import (
    DEFAULT_CACHE_PATHS,
    DEFAULT_PR_TYPES,
    DEFAULT_PUSH_BRANCHES,
    DEFAULT_TEST_ARGS,
    MatrixAxis,
    PipelineConfig,
    Trigger,
)


# ---------------------------------------------------------------------
# Axis helper
# ---------------------------------------------------------------------

def axis(name: str, values: Iterable[Any]) -> MatrixAxis:
    """Declare a matrix axis: axis("version", ["stable", "beta", "nightly"])."""
    return MatrixAxis(name=name, values=tuple(values))


def on(
    *,
    pull_request: Optional[Iterable[str]] = None,
    push: Optional[Iterable[str]] = None,
) -> Trigger:
    """Trigger helper: on(pull_request=["opened"], push=["main"])."""
    return Trigger(
        pull_request_types=frozenset(pull_request) if pull_request is not None else DEFAULT_PR_TYPES,
        push_branches=frozenset(push) if push is not None else DEFAULT_PUSH_BRANCHES,
    )


# ---------------------------------------------------------------------
# Pipeline helper (single-file story)
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *axes: MatrixAxis,
    os_id: str,
    runs_on: str | None = None,
    fail_fast: bool = False,
    trigger: Optional[Trigger] = None,
    toolchain_profile: str = "minimal",
    cache_paths: Sequence[str] = DEFAULT_CACHE_PATHS,
    cache_key_prefix: str = "cargo",
    lockfile_glob: str = "**/Cargo.lock",
    test_args: Sequence[str] = DEFAULT_TEST_ARGS,
    max_workers: int | None = None,
) -> PipelineConfig:
    """
    Pipeline definition helper for Python declaration files.

    Users can write:
        from matrixci.dsl import pipeline, axis

        PIPELINE = pipeline(
            "CI (macOS)",
            axis("version", ["stable", "beta", "nightly"]),
            axis("target", ["x86_64-apple-darwin"]),
            os_id="macOS",
        )

    Or return it from get_pipeline() if it needs computing.
    """
    return PipelineConfig(
        name=name,
        axes=tuple(axes),
        os_id=os_id,
        runs_on=runs_on,
        fail_fast=fail_fast,
        trigger=trigger or Trigger(),
        toolchain_profile=toolchain_profile,
        cache_paths=tuple(cache_paths),
        cache_key_prefix=cache_key_prefix,
        lockfile_glob=lockfile_glob,
        test_args=tuple(test_args),
        max_workers=max_workers,
    )
