from .dsl import axis, on, pipeline
from .matrix import expand_matrix
from .cache import derive_cache_key
from .fanout import run_matrix, run_pipeline
from .runner import JobRunner
from .model import CacheKey, JobOutcome, JobResult, JobSpec, MatrixAxis, PipelineConfig, RunSummary

__all__ = [
    "axis", "on", "pipeline", "expand_matrix", "derive_cache_key", "run_matrix", "run_pipeline",
    "JobRunner", "CacheKey", "JobOutcome", "JobResult", "JobSpec", "MatrixAxis", "PipelineConfig", "RunSummary",
]
