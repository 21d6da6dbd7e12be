import os
import sys
import threading

import pytest
from conftest import FakeLockfileGenerator, FakeProvisioner, FakeTestExecutor

from matrixci.cache import CacheArchiver, FileCacheStore
from matrixci.dsl import axis, pipeline
from matrixci.fanout import run_matrix, run_pipeline
from matrixci.matrix import expand_matrix
from matrixci.model import JobOutcome, JobResult, RunSummary


def test_no_fail_fast_every_job_reports(macos_config, make_runner):
    # beta fails its tests, stable and nightly pass
    runner = make_runner(macos_config, tests=FakeTestExecutor(status_for={"beta": 1}))

    summary = run_pipeline(macos_config, runner)

    assert [r.spec.name for r in summary.results] == [
        "stable-x86_64-apple-darwin",
        "beta-x86_64-apple-darwin",
        "nightly-x86_64-apple-darwin",
    ]
    outcomes = {r.spec["version"]: r.outcome for r in summary.results}
    assert outcomes == {
        "stable": JobOutcome.SUCCESS,
        "beta": JobOutcome.FAILURE,
        "nightly": JobOutcome.SUCCESS,
    }
    assert summary.verdict == "failure"
    assert [r.spec.name for r in summary.failed] == ["beta-x86_64-apple-darwin"]


def test_all_pass(macos_config, make_runner):
    summary = run_pipeline(macos_config, make_runner(macos_config))
    assert summary.passed
    assert summary.verdict == "success"
    assert summary.counts()["success"] == 3


def test_windows_nightly_failure(windows_config, make_runner):
    runner = make_runner(windows_config, tests=FakeTestExecutor(default=1))
    summary = run_pipeline(windows_config, runner)

    assert len(summary.results) == 1
    assert summary.results[0].outcome is JobOutcome.FAILURE
    assert summary.verdict == "failure"


def test_empty_matrix_is_nothing_to_run():
    summary = run_matrix([], lambda spec, cancel: None)
    assert summary.results == ()
    assert summary.passed


def test_provisioning_failure_isolated(macos_config, make_runner):
    prov = FakeProvisioner(fail_for={"nightly"})
    summary = run_pipeline(macos_config, make_runner(macos_config, provisioner=prov))

    assert sorted(prov.calls) == sorted(
        [("stable", "x86_64-apple-darwin"), ("beta", "x86_64-apple-darwin"), ("nightly", "x86_64-apple-darwin")]
    )
    assert summary.counts() == {"success": 2, "failure": 1, "error": 0, "cancelled": 0}


def test_fail_fast_cancels_siblings(macos_config):
    specs = expand_matrix(macos_config.axes)
    started = threading.Barrier(len(specs))

    def run_fn(spec, cancel):
        started.wait(timeout=5)
        if spec["version"] == "stable":
            return JobResult(spec=spec, outcome=JobOutcome.FAILURE, diagnostic="boom")
        # siblings block until the controller cancels them
        assert cancel.wait(timeout=5)
        return JobResult(spec=spec, outcome=JobOutcome.CANCELLED)

    summary = run_matrix(specs, run_fn, fail_fast=True)

    outcomes = {r.spec["version"]: r.outcome for r in summary.results}
    assert outcomes == {
        "stable": JobOutcome.FAILURE,
        "beta": JobOutcome.CANCELLED,
        "nightly": JobOutcome.CANCELLED,
    }
    assert summary.fail_fast is True
    assert summary.verdict == "failure"


def test_fail_fast_cancels_jobs_not_yet_started(macos_config):
    specs = expand_matrix(macos_config.axes)

    def run_fn(spec, cancel):
        if spec.index == 0:
            return JobResult(spec=spec, outcome=JobOutcome.FAILURE)
        # either never started (future cancelled) or picked up just before
        # the controller reacted; both must end cancelled
        if cancel.wait(timeout=5):
            return JobResult(spec=spec, outcome=JobOutcome.CANCELLED)
        return JobResult(spec=spec, outcome=JobOutcome.SUCCESS)

    summary = run_matrix(specs, run_fn, fail_fast=True, max_workers=1)

    assert summary.results[0].outcome is JobOutcome.FAILURE
    assert all(r.outcome is JobOutcome.CANCELLED for r in summary.results[1:])
    assert len(summary.results) == 3


def test_without_fail_fast_siblings_keep_running(macos_config):
    specs = expand_matrix(macos_config.axes)

    def run_fn(spec, cancel):
        assert not cancel.is_set()
        return JobResult(spec=spec, outcome=JobOutcome.FAILURE)

    summary = run_matrix(specs, run_fn, fail_fast=False, max_workers=1)
    assert [r.outcome for r in summary.results] == [JobOutcome.FAILURE] * 3


def test_crashing_run_fn_is_contained(macos_config):
    specs = expand_matrix(macos_config.axes)

    def run_fn(spec, cancel):
        if spec["version"] == "beta":
            raise RuntimeError("worker died")
        return JobResult(spec=spec, outcome=JobOutcome.SUCCESS)

    summary = run_matrix(specs, run_fn)

    by_version = {r.spec["version"]: r for r in summary.results}
    assert by_version["beta"].outcome is JobOutcome.ERROR
    assert "worker died" in by_version["beta"].diagnostic
    assert by_version["stable"].ok and by_version["nightly"].ok


def test_verdict_is_order_independent(macos_config):
    specs = expand_matrix(macos_config.axes)
    results = [
        JobResult(spec=specs[0], outcome=JobOutcome.SUCCESS),
        JobResult(spec=specs[1], outcome=JobOutcome.FAILURE),
        JobResult(spec=specs[2], outcome=JobOutcome.SUCCESS),
    ]
    forward = RunSummary(results=tuple(results))
    backward = RunSummary(results=tuple(reversed(results)))
    assert forward.verdict == backward.verdict == "failure"
    assert forward.results == backward.results


def test_summary_to_dict(windows_config, make_runner):
    summary = run_pipeline(windows_config, make_runner(windows_config))
    data = summary.to_dict()
    assert data["verdict"] == "success"
    assert data["jobs"][0]["name"] == "nightly-x86_64-pc-windows-msvc"
    assert data["jobs"][0]["cache_key"].startswith("Windows-cargo-")


class GatedLockfileGenerator(FakeLockfileGenerator):
    """Holds every job at lockfile generation until all of them got there."""

    def __init__(self, parties):
        super().__init__()
        self.gate = threading.Barrier(parties)

    def generate(self, toolchain, cwd=None):
        data = super().generate(toolchain, cwd)
        self.gate.wait(timeout=5)
        return data


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX modes and links")
def test_concurrent_jobs_share_one_file_cache(tmp_path, make_runner):
    bin_dir = tmp_path / "home" / "bin"
    registry = tmp_path / "home" / "registry"
    bin_dir.mkdir(parents=True)
    (registry / "index").mkdir(parents=True)
    (bin_dir / "rustup").write_bytes(b"\x7fELF proxy")
    (bin_dir / "rustup").chmod(0o755)
    os.link(bin_dir / "rustup", bin_dir / "cargo")
    (registry / "index" / "config.json").write_text('{"dl": "x"}')

    config = pipeline(
        "file cache",
        axis("version", ["stable", "beta", "nightly"]),
        axis("target", ["x86_64-unknown-linux-gnu"]),
        os_id="Linux",
        cache_paths=[str(bin_dir), str(registry)],
    )
    store = FileCacheStore(tmp_path / "cache")
    runner = make_runner(
        config,
        generator=GatedLockfileGenerator(parties=3),
        store=store,
        archiver=CacheArchiver(config.cache_paths),
    )

    summary = run_pipeline(config, runner)

    # all three restore before anyone saves: every first reader misses
    assert [r.outcome for r in summary.results] == [JobOutcome.SUCCESS] * 3
    assert [r.cache_hit for r in summary.results] == [False] * 3
    keys = {str(r.cache_key) for r in summary.results}
    assert len(keys) == 1
    key = summary.results[0].cache_key

    # three racing saves leave exactly one complete archive behind
    assert store.keys() == [str(key)]
    assert [p.name for p in (tmp_path / "cache").iterdir()] == [f"{key}.tar.gz"]

    fresh = tmp_path / "fresh"
    written = CacheArchiver([str(fresh / "bin"), str(fresh / "registry")]).unpack(store.restore(key))

    assert written == 3
    assert (fresh / "bin" / "cargo").read_bytes() == b"\x7fELF proxy"
    assert (fresh / "bin" / "cargo").stat().st_ino == (fresh / "bin" / "rustup").stat().st_ino
    assert (fresh / "bin" / "rustup").stat().st_mode & 0o777 == 0o755
    assert (fresh / "registry" / "index" / "config.json").read_text() == '{"dl": "x"}'
