# fanout.py
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Optional

from .matrix import expand_matrix
from .model import JobOutcome, JobResult, JobSpec, PipelineConfig, RunSummary
from .ui.console import get_console

RunFn = Callable[[JobSpec, threading.Event], JobResult]


def run_matrix(
    specs: Iterable[JobSpec],
    run_fn: RunFn,
    *,
    fail_fast: bool = False,
    max_workers: int | None = None,
) -> RunSummary:
    """
    Fan-out controller:

    - Submits one task per JobSpec; every job is an independent unit of work.
    - Collects results at a single join point (as_completed), no shared counters.
    - fail_fast=False: every job runs to its terminal state and reports.
    - fail_fast=True: the first non-success sets the cancel event and cancels
      jobs that have not started; they are reported as `cancelled`.
    """
    specs = list(specs)
    if not specs:
        return RunSummary(results=(), fail_fast=fail_fast)

    console = get_console()
    cancel = threading.Event()
    if max_workers is None:
        max_workers = len(specs)

    results: List[JobResult] = []

    with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="matrixci") as pool:
        in_flight: Dict[Future, JobSpec] = {pool.submit(run_fn, spec, cancel): spec for spec in specs}

        for fut in as_completed(in_flight):
            spec = in_flight[fut]
            if fut.cancelled():
                results.append(_cancelled(spec))
                continue

            try:
                result = fut.result()
            except Exception as e:
                # run_fn itself blew up; contain it to this job
                console.print_exception(e)
                result = JobResult(spec=spec, outcome=JobOutcome.ERROR, diagnostic=f"{type(e).__name__}: {e}")
            results.append(result)

            if fail_fast and not result.ok and not cancel.is_set():
                console.print_info(f"fail-fast: {spec.name} {result.outcome.value}, cancelling remaining jobs")
                cancel.set()
                for other in in_flight:
                    if other is not fut:
                        other.cancel()

    return RunSummary(results=tuple(results), fail_fast=fail_fast)


def _cancelled(spec: JobSpec) -> JobResult:
    return JobResult(spec=spec, outcome=JobOutcome.CANCELLED, diagnostic="cancelled by fail-fast")


def run_pipeline(
    config: PipelineConfig,
    runner,
    *,
    fail_fast: Optional[bool] = None,
    max_workers: Optional[int] = None,
) -> RunSummary:
    """Expand the pipeline's matrix and run every job through `runner.run`."""
    specs = expand_matrix(config.axes)
    return run_matrix(
        specs,
        runner.run,
        fail_fast=config.fail_fast if fail_fast is None else fail_fast,
        max_workers=max_workers if max_workers is not None else config.max_workers,
    )
