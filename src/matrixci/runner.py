# runner.py
from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .cache import CacheArchiver, CacheStore, derive_cache_key
from .errors import JOB_FAILURES, CIError, ProvisioningError, StoreError, TestFailure
from .model import CacheKey, JobOutcome, JobResult, JobSpec, JobState, PipelineConfig
from .services import JobWorkspaces, LockfileGenerator, TestExecutor, Toolchain, ToolchainProvisioner
from .ui.console import get_console

# ----------------------------------------------------------------------
# Per-job state machine
#
#   pending -> provisioning -> lockfile_generating -> cache_restoring
#           -> testing -> cache_saving -> done(success)
#
# Any failure jumps straight to done(failure|error); remaining states,
# cache_saving included, are skipped. So a cache is only ever saved by a
# job whose tests passed.
# ----------------------------------------------------------------------

TRANSITIONS: Dict[JobState, JobState] = {
    JobState.PENDING: JobState.PROVISIONING,
    JobState.PROVISIONING: JobState.LOCKFILE_GENERATING,
    JobState.LOCKFILE_GENERATING: JobState.CACHE_RESTORING,
    JobState.CACHE_RESTORING: JobState.TESTING,
    JobState.TESTING: JobState.CACHE_SAVING,
    JobState.CACHE_SAVING: JobState.DONE,
}


@dataclass
class _JobContext:
    """Mutable scratch state of one job while it runs. Never shared."""
    spec: JobSpec
    toolchain: Optional[Toolchain] = None
    workdir: Optional[Path] = None
    cache_key: Optional[CacheKey] = None
    cache_hit: bool = False
    trail: List[JobState] = field(default_factory=list)


class JobRunner:
    """
    Runs one JobSpec through the fixed step sequence.

    All collaborators are injected; the defaults for a real run are built by
    `JobRunner.for_pipeline`.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        provisioner: ToolchainProvisioner,
        lockfile_generator: LockfileGenerator,
        test_executor: TestExecutor,
        cache_store: CacheStore,
        archiver: Optional[CacheArchiver] = None,
        os_id: Optional[str] = None,
        workspaces: Optional[JobWorkspaces] = None,
    ):
        self.config = config
        self.provisioner = provisioner
        self.lockfile_generator = lockfile_generator
        self.test_executor = test_executor
        self.cache_store = cache_store
        self.archiver = archiver if archiver is not None else CacheArchiver(config.cache_paths)
        self.os_id = os_id or config.os_id
        self.workspaces = workspaces

        self._handlers: Dict[JobState, Callable[[_JobContext], None]] = {
            JobState.PENDING: lambda ctx: None,
            JobState.PROVISIONING: self._provision,
            JobState.LOCKFILE_GENERATING: self._generate_lockfile,
            JobState.CACHE_RESTORING: self._restore_cache,
            JobState.TESTING: self._test,
            JobState.CACHE_SAVING: self._save_cache,
        }

    @classmethod
    def for_pipeline(cls, config: PipelineConfig, *, root: str = ".", cache_store: CacheStore) -> "JobRunner":
        from .services import CargoLockfileGenerator, CargoTestExecutor, RustupProvisioner

        return cls(
            config,
            provisioner=RustupProvisioner(profile=config.toolchain_profile),
            lockfile_generator=CargoLockfileGenerator(root, lockfile_glob=config.lockfile_glob),
            test_executor=CargoTestExecutor(root, test_args=config.test_args),
            cache_store=cache_store,
            workspaces=JobWorkspaces(root),
        )

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    def _provision(self, ctx: _JobContext) -> None:
        version = ctx.spec.get("version")
        target = ctx.spec.get("target")
        if version is None or target is None:
            raise ProvisioningError(
                "job has no version/target axis values",
                details={"matrix": ctx.spec.as_dict()},
            )
        ctx.toolchain = self.provisioner.install(version, target)
        if self.workspaces is not None:
            ctx.workdir = self.workspaces.prepare(ctx.spec)

    def _generate_lockfile(self, ctx: _JobContext) -> None:
        lockfile = self.lockfile_generator.generate(ctx.toolchain, cwd=ctx.workdir)
        # key is derived only from the freshly generated lockfile
        ctx.cache_key = derive_cache_key(self.os_id, lockfile, prefix=self.config.cache_key_prefix)

    def _restore_cache(self, ctx: _JobContext) -> None:
        console = get_console()
        name = ctx.spec.name
        key = str(ctx.cache_key)
        try:
            contents = self.cache_store.restore(ctx.cache_key)
            if contents is None:
                console.print_cache_miss(name, key)
                return
            self.archiver.unpack(contents)
        except StoreError as e:
            console.print_warning(name, f"cache restore failed, continuing without cache: {e.message}")
            return
        ctx.cache_hit = True
        console.print_cache_hit(name, key)

    def _test(self, ctx: _JobContext) -> None:
        status = self.test_executor.run(ctx.toolchain, suite="all", capture_output=False, cwd=ctx.workdir)
        if status != 0:
            raise TestFailure(
                f"test suite exited with status {status}",
                details={"toolchain": ctx.toolchain.name if ctx.toolchain else None},
                exit_code=status,
            )

    def _save_cache(self, ctx: _JobContext) -> None:
        console = get_console()
        name = ctx.spec.name
        try:
            self.cache_store.save(ctx.cache_key, self.archiver.pack())
        except StoreError as e:
            console.print_warning(name, f"cache save failed: {e.message}")
            return
        except OSError as e:
            console.print_warning(name, f"cache could not be packed: {e}")
            return
        console.print_cache_saved(name, str(ctx.cache_key))

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def run(self, spec: JobSpec, cancel_event: Optional[threading.Event] = None) -> JobResult:
        console = get_console()
        ctx = _JobContext(spec=spec)
        started = time.monotonic()
        state = JobState.PENDING
        console.print_job_start(spec.name)

        def finish(outcome: JobOutcome, diagnostic: Optional[str] = None, failed: Optional[JobState] = None) -> JobResult:
            ctx.trail.append(JobState.DONE)
            result = JobResult(
                spec=spec,
                outcome=outcome,
                diagnostic=diagnostic,
                failed_state=failed,
                states=tuple(ctx.trail),
                cache_key=ctx.cache_key,
                cache_hit=ctx.cache_hit,
                duration=time.monotonic() - started,
            )
            console.print_job_done(result)
            return result

        while state is not JobState.DONE:
            if cancel_event is not None and cancel_event.is_set():
                return finish(JobOutcome.CANCELLED, "cancelled by fail-fast", state)

            ctx.trail.append(state)
            if state is not JobState.PENDING:
                console.print_state(spec.name, state.value)

            try:
                self._handlers[state](ctx)
            except JOB_FAILURES as e:
                if not e.job:
                    e.job = spec.name
                return finish(JobOutcome.FAILURE, str(e), state)
            except CIError as e:
                if not e.job:
                    e.job = spec.name
                return finish(JobOutcome.ERROR, str(e), state)
            except Exception as e:
                return finish(JobOutcome.ERROR, f"{type(e).__name__}: {e}", state)

            state = TRANSITIONS[state]

        return finish(JobOutcome.SUCCESS)
