# cli.py
from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import click

from matrixci.cache import FileCacheStore, derive_cache_key, host_os_id, DEFAULT_CACHE_DIR
from matrixci.config import load_pipeline, with_overrides
from matrixci.errors import ConfigError
from matrixci.fanout import run_pipeline
from matrixci.git_facts.git import current_branch
from matrixci.matrix import expand_matrix, to_github_matrix
from matrixci.model import Event
from matrixci.runner import JobRunner
from matrixci.ui.console import Console, get_console, set_console


def _fail_config(e: ConfigError) -> None:
    console = get_console()
    details = [f"{k}: {v}" for k, v in e.details.items() if k != "problems"]
    details.extend(e.details.get("problems", []))
    console.print_error("Invalid pipeline", e.message, details=details or None)
    sys.exit(1)


def resolve_event(kind: str, action: str | None, branch: str | None, root: str) -> Event:
    """
    Build the trigger event for this invocation.

    Push events default to the branch checked out in `root`.
    """
    console = get_console()
    if kind == "pull_request":
        return Event(kind="pull_request", action=action or "synchronize")

    if branch is None:
        try:
            branch = current_branch(cwd=root)
            console.print_debug(f"Using git branch: {branch}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not determine git branch",
                "No --branch specified and the current branch could not be read from git.",
                suggestion="Specify the branch explicitly:\n  matrixci run <pipeline> --event push --branch master",
            )
            sys.exit(1)
    return Event(kind="push", branch=branch)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """matrixci: cache-aware build matrix orchestrator."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("pipeline", type=click.Path(dir_okay=False))
@click.option("--event", "event_kind", type=click.Choice(["push", "pull_request"]), default="push", show_default=True)
@click.option("--action", default=None, help="Pull request action (opened, synchronize, reopened)")
@click.option("--branch", default=None, help="Pushed branch (defaults to the current git branch)")
@click.option("--root", default=".", show_default=True, help="Project checkout to build and test")
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, show_default=True, help="Cache directory")
@click.option(
    "--workers",
    default=None,
    type=click.IntRange(min=1),
    help="Number of parallel jobs (default: one per job)",
)
@click.option("--fail-fast/--no-fail-fast", default=None, help="Override the declared fail-fast policy")
@click.option("--os", "os_id", default=None, help="Runner OS used in cache keys (default: from runs-on)")
@click.option("--job", "job_id", default=None, help="Job id inside a multi-job YAML pipeline")
@click.pass_context
def run(ctx, pipeline, event_kind, action, branch, root, cache_dir, workers, fail_fast, os_id, job_id):
    """Run every job of a pipeline's matrix."""
    console = get_console()

    try:
        config = load_pipeline(pipeline, job_id=job_id)
    except ConfigError as e:
        _fail_config(e)
    config = with_overrides(config, fail_fast=fail_fast, max_workers=workers, os_id=os_id)

    event = resolve_event(event_kind, action, branch, root)
    if not config.trigger.matches(event):
        what = f"pull_request/{event.action}" if event.kind == "pull_request" else f"push to {event.branch}"
        console.print_trigger_skipped(config.name, f"{what} does not trigger this pipeline")
        return

    try:
        specs = expand_matrix(config.axes)
        console.print_run_started(config, job_count=len(specs))

        # absolute --cache-dir wins over root
        store = FileCacheStore(Path(root) / cache_dir)
        runner = JobRunner.for_pipeline(config, root=root, cache_store=store)
        summary = run_pipeline(config, runner)

        console.print_results(summary)
        if not summary.passed:
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.argument("pipeline", type=click.Path(dir_okay=False))
@click.option("--json", "as_json", is_flag=True, default=False, help="Print a GitHub-style {\"include\": [...]} matrix")
@click.option("--job", "job_id", default=None, help="Job id inside a multi-job YAML pipeline")
@click.pass_context
def plan(ctx, pipeline, as_json, job_id):
    """Show the jobs a pipeline's matrix expands to."""
    console = get_console()
    try:
        config = load_pipeline(pipeline, job_id=job_id)
    except ConfigError as e:
        _fail_config(e)

    if as_json:
        click.echo(json.dumps(to_github_matrix(config.axes), separators=(",", ":")))
        return

    specs = expand_matrix(config.axes)
    console.print_header(f"{config.name}: {len(specs)} job(s) on {config.os_id}")
    for spec in specs:
        console.print_plan_job(spec.name, spec.as_dict())
    if not specs:
        console.print_info("  (nothing to run)")


@cli.command("cache-key")
@click.argument("lockfile", type=click.Path(exists=True, dir_okay=False))
@click.option("--os", "os_id", default=None, help="Runner OS (default: this host)")
@click.option("--prefix", default="cargo", show_default=True)
def cache_key(lockfile, os_id, prefix):
    """Print the dependency cache key for a lockfile."""
    key = derive_cache_key(os_id or host_os_id(), Path(lockfile).read_bytes(), prefix=prefix)
    click.echo(str(key))


@cli.command("cache-prune")
@click.option("--root", default=".", show_default=True, help="Project checkout the cache lives in")
@click.option("--cache-dir", default=DEFAULT_CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--keep", default=3, show_default=True, type=click.IntRange(min=0), help="Newest archives to keep")
def cache_prune(root, cache_dir, keep):
    """Delete all but the newest cache archives."""
    console = get_console()
    store = FileCacheStore(Path(root) / cache_dir)
    removed = store.prune(keep=keep)
    for p in removed:
        console.print_info(f"removed {p.name}")
    console.print_info(f"{len(removed)} archive(s) removed, {len(store.keys())} kept")


if __name__ == "__main__":
    cli()
