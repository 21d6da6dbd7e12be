# config.py
from __future__ import annotations

import re
import runpy
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .cache import os_id_for_runner
from .errors import ConfigError
from .model import (
    DEFAULT_CACHE_PATHS,
    DEFAULT_PR_TYPES,
    DEFAULT_PUSH_BRANCHES,
    DEFAULT_TEST_ARGS,
    MatrixAxis,
    PipelineConfig,
    Trigger,
)

# ----------------------------------------------------------------------
# Declaration schemas (GitHub Actions shaped YAML)
# ----------------------------------------------------------------------

Scalar = Union[str, int, float]


class PullRequestOn(BaseModel):
    types: List[str] = Field(default_factory=lambda: sorted(DEFAULT_PR_TYPES))


class PushOn(BaseModel):
    branches: List[str] = Field(default_factory=lambda: sorted(DEFAULT_PUSH_BRANCHES))


class OnSchema(BaseModel):
    pull_request: Optional[PullRequestOn] = None
    push: Optional[PushOn] = None


class StrategySchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    fail_fast: bool = Field(False, alias="fail-fast")
    max_parallel: Optional[int] = Field(None, alias="max-parallel", ge=1)
    matrix: Dict[str, List[Scalar]] = Field(default_factory=dict)

    @field_validator("matrix", mode="before")
    @classmethod
    def _no_include_exclude(cls, v: Any) -> Any:
        if isinstance(v, dict):
            for k in ("include", "exclude"):
                if k in v:
                    raise ValueError(f"matrix '{k}' entries are not supported")
        return v


class JobSchema(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: Optional[str] = None
    runs_on: Optional[str] = Field(None, alias="runs-on")
    strategy: StrategySchema = Field(default_factory=StrategySchema)
    steps: List[Dict[str, Any]] = Field(default_factory=list)


class OverridesSchema(BaseModel):
    """Optional `matrixci:` block; wins over anything inferred from steps."""
    model_config = ConfigDict(extra="forbid")

    cache_paths: Optional[List[str]] = None
    cache_key_prefix: Optional[str] = None
    lockfile_glob: Optional[str] = None
    toolchain_profile: Optional[str] = None
    test_args: Optional[List[str]] = None
    max_workers: Optional[int] = Field(None, ge=1)
    os_id: Optional[str] = None


class WorkflowSchema(BaseModel):
    name: Optional[str] = None
    on: OnSchema = Field(default_factory=lambda: OnSchema(pull_request=PullRequestOn(), push=PushOn()))
    jobs: Dict[str, JobSchema]
    matrixci: OverridesSchema = Field(default_factory=OverridesSchema)

    @field_validator("on", mode="before")
    @classmethod
    def _normalize_on(cls, v: Any) -> Any:
        # on: push  /  on: [push, pull_request]  /  on: {push: null}
        if isinstance(v, str):
            v = [v]
        if isinstance(v, list):
            v = {k: None for k in v}
        if isinstance(v, dict):
            return {k: ({} if body is None else body) for k, body in v.items()}
        return v


# ----------------------------------------------------------------------
# Settings inferred from the declared steps
# ----------------------------------------------------------------------

_CACHE_KEY_RE = re.compile(
    r"\$\{\{\s*runner\.os\s*\}\}-(?P<prefix>.+?)-\$\{\{\s*hashFiles\(\s*'(?P<glob>[^']+)'\s*\)\s*\}\}"
)


def _settings_from_steps(steps: List[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Pull toolchain profile, cache paths/key shape and test args out of the
    steps the original pipelines use (actions-rs/toolchain, actions/cache,
    actions-rs/cargo test).
    """
    out: Dict[str, Any] = {}
    for step in steps:
        uses = str(step.get("uses") or "")
        with_ = step.get("with") or {}
        if not isinstance(with_, dict):
            continue

        if uses.startswith("actions-rs/toolchain") and with_.get("profile"):
            out["toolchain_profile"] = str(with_["profile"])

        elif uses.startswith("actions/cache"):
            paths = with_.get("path")
            if isinstance(paths, str):
                out["cache_paths"] = [p.strip() for p in paths.splitlines() if p.strip()]
            elif isinstance(paths, list):
                out["cache_paths"] = [str(p) for p in paths]
            m = _CACHE_KEY_RE.search(str(with_.get("key") or ""))
            if m:
                out["cache_key_prefix"] = m.group("prefix")
                out["lockfile_glob"] = m.group("glob")

        elif uses.startswith("actions-rs/cargo") and with_.get("command") == "test":
            args = with_.get("args")
            out["test_args"] = str(args).split() if args else []

    return out


def _build_config(wf: WorkflowSchema, *, source: str, job_id: Optional[str]) -> PipelineConfig:
    if job_id is None:
        if len(wf.jobs) != 1:
            raise ConfigError(
                "pipeline declares more than one job; pick one with job_id",
                details={"file": source, "jobs": sorted(wf.jobs)},
            )
        job_id = next(iter(wf.jobs))
    if job_id not in wf.jobs:
        raise ConfigError(
            f"job '{job_id}' not found in pipeline",
            details={"file": source, "jobs": sorted(wf.jobs)},
        )
    job = wf.jobs[job_id]

    axes = tuple(
        MatrixAxis(name=name, values=tuple(str(v) for v in values))
        for name, values in job.strategy.matrix.items()
    )

    trigger = Trigger(
        pull_request_types=frozenset(wf.on.pull_request.types) if wf.on.pull_request else frozenset(),
        push_branches=frozenset(wf.on.push.branches) if wf.on.push else frozenset(),
    )

    settings: Dict[str, Any] = {
        "toolchain_profile": "minimal",
        "cache_paths": list(DEFAULT_CACHE_PATHS),
        "cache_key_prefix": "cargo",
        "lockfile_glob": "**/Cargo.lock",
        "test_args": list(DEFAULT_TEST_ARGS),
        "max_workers": job.strategy.max_parallel,
    }
    settings.update(_settings_from_steps(job.steps))
    settings.update(wf.matrixci.model_dump(exclude_none=True, exclude={"os_id"}))

    return PipelineConfig(
        name=wf.name or job.name or job_id,
        axes=axes,
        os_id=wf.matrixci.os_id or os_id_for_runner(job.runs_on),
        runs_on=job.runs_on,
        fail_fast=job.strategy.fail_fast,
        trigger=trigger,
        toolchain_profile=settings["toolchain_profile"],
        cache_paths=tuple(settings["cache_paths"]),
        cache_key_prefix=settings["cache_key_prefix"],
        lockfile_glob=settings["lockfile_glob"],
        test_args=tuple(settings["test_args"]),
        max_workers=settings["max_workers"],
    )


# ----------------------------------------------------------------------
# Loading
# ----------------------------------------------------------------------

def parse_pipeline_yaml(text: str, *, source: str = "<string>", job_id: Optional[str] = None) -> PipelineConfig:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError("pipeline is not valid YAML", details={"file": source, "error": str(e)}) from e

    if not isinstance(data, dict):
        raise ConfigError("pipeline must be a YAML mapping", details={"file": source})

    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in data and "on" not in data:
        data["on"] = data.pop(True)

    try:
        wf = WorkflowSchema.model_validate(data)
    except ValidationError as e:
        problems = [
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}"
            for err in e.errors()
        ]
        raise ConfigError("pipeline declaration is invalid", details={"file": source, "problems": problems}) from e

    try:
        return _build_config(wf, source=source, job_id=job_id)
    except ValueError as e:
        raise ConfigError(str(e), details={"file": source}) from e


def load_pipeline(path: str | Path, *, job_id: Optional[str] = None) -> PipelineConfig:
    """
    Load a pipeline declaration once, into an immutable PipelineConfig.

    Supported files:
      - *.yml / *.yaml: GitHub Actions shaped workflow (one matrix job)
      - *.py: must define either
          get_pipeline() -> PipelineConfig
          PIPELINE = PipelineConfig(...)
    """
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise ConfigError(f"Pipeline file not found: {p}")

    if p.suffix in (".yml", ".yaml"):
        try:
            text = p.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError("pipeline file could not be read", details={"file": str(p), "error": str(e)}) from e
        return parse_pipeline_yaml(text, source=str(p), job_id=job_id)

    if p.suffix == ".py":
        return _load_python_pipeline(p)

    raise ConfigError(f"Pipeline must be a .yml, .yaml or .py file, got: {p.name}")


def _load_python_pipeline(p: Path) -> PipelineConfig:
    module_name = f"matrixci_pipeline_{p.stem}"
    globals_dict = runpy.run_path(str(p), run_name=module_name)

    config = None
    if "get_pipeline" in globals_dict and callable(globals_dict["get_pipeline"]):
        config = globals_dict["get_pipeline"]()
    elif "PIPELINE" in globals_dict:
        config = globals_dict["PIPELINE"]

    if not isinstance(config, PipelineConfig):
        raise ConfigError(
            "Pipeline file must return/define a PipelineConfig. "
            "Define get_pipeline() -> PipelineConfig or PIPELINE = pipeline(...).",
            details={"file": str(p)},
        )
    return config


def with_overrides(
    config: PipelineConfig,
    *,
    fail_fast: Optional[bool] = None,
    max_workers: Optional[int] = None,
    os_id: Optional[str] = None,
) -> PipelineConfig:
    """Per-invocation overrides, applied before the run starts."""
    changes: Dict[str, Any] = {}
    if fail_fast is not None:
        changes["fail_fast"] = fail_fast
    if max_workers is not None:
        changes["max_workers"] = max_workers
    if os_id:
        changes["os_id"] = os_id
    return replace(config, **changes) if changes else config
