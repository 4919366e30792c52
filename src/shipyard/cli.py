# cli.py
from __future__ import annotations

import subprocess
import sys
import threading
import time
import uuid
from pathlib import Path
from typing import Optional

import click

from shipyard.cache import CacheStore
from shipyard.config import FailurePolicy, SchedulerConfig
from shipyard.dag import topo_levels
from shipyard.errors import CIError, ConfigurationError
from shipyard.git_facts.git import get_current_ref, repo_name
from shipyard.logging import set_level
from shipyard.model import EVENT_KINDS, RunResult, TriggerEvent, Workflow
from shipyard.report import ConsoleReportSink, JsonReportSink, MultiReportSink
from shipyard.scheduler import Scheduler
from shipyard.ui.console import Console, get_console, set_console
from shipyard.workflow import WORKFLOW_SUFFIXES, load_workflow

EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


def find_workflow_files(root: Path = Path(".")) -> list[Path]:
    """*_workflow.py files plus shipyard.yml / shipyard.yaml / shipyard.json in root."""
    candidates = set(root.glob("*_workflow.py"))
    candidates.update(p for p in (root / f"shipyard{s}" for s in WORKFLOW_SUFFIXES[1:]) if p.exists())
    return sorted(candidates)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    The workflow named by --workflow, else the only one in the current directory.

    Exits with EXIT_CONFIG when there is no such file, none at all, or
    more than one candidate.
    """
    console = get_console()

    if workflow_arg:
        path = Path(workflow_arg)
        # "--workflow ci" means ci.py
        if not path.exists() and path.suffix not in WORKFLOW_SUFFIXES:
            path = path.with_name(path.name + ".py")
        if path.exists():
            return path
        console.print_error(
            "Workflow file not found",
            f"No such workflow file: {workflow_arg}",
            suggestion="Pass an existing file:\n  shipyard run --workflow shipyard_workflow.py",
        )
        sys.exit(EXIT_CONFIG)

    found = find_workflow_files()
    if len(found) == 1:
        return found[0]

    if not found:
        console.print_error(
            "No workflow file found",
            "The current directory has no workflow file.",
            details=["expected one of: *_workflow.py, shipyard.yml, shipyard.yaml, shipyard.json"],
            suggestion="Create shipyard_workflow.py, or pass --workflow PATH.",
        )
    else:
        console.print_error(
            "Multiple workflow files found",
            "Pick one with --workflow:",
            details=[str(f) for f in found],
        )
    sys.exit(EXIT_CONFIG)


def _load(workflow_arg: Optional[str]) -> tuple[Path, Workflow]:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        return workflow_path, load_workflow(workflow_path)
    except CIError as e:
        console.print_ci_error(f"Failed to load workflow {workflow_path}", e)
    except FileNotFoundError as e:
        console.print_error("Failed to load workflow", str(e))
    sys.exit(EXIT_CONFIG)


def _resolve_ref(ref: Optional[str], workspace: Path) -> str:
    if ref:
        return ref
    try:
        return get_current_ref(cwd=workspace)
    except (subprocess.CalledProcessError, FileNotFoundError):
        get_console().print_error(
            "Could not determine git ref",
            "No --ref specified and the workspace is not a usable git checkout.",
            suggestion="Specify the ref explicitly:\n  shipyard run --ref main",
        )
        sys.exit(EXIT_CONFIG)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """shipyard: dependency-aware, cache-aware CI pipeline runner."""
    console = Console(debug=debug)
    set_console(console)
    if debug:
        set_level("DEBUG")
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to the one found in the current directory)")
@click.option("--event", type=click.Choice(EVENT_KINDS), default="push", show_default=True, help="Trigger event kind")
@click.option("--ref", default=None, help="Branch/ref of the event (defaults to the current git branch)")
@click.option("--workspace", default=".", show_default=True, type=click.Path(file_okay=False), help="Directory steps run in")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Maximum jobs running at once")
@click.option("--cache-dir", default=None, help="Cache directory [default: .shipyard/cache]")
@click.option("--cache-capacity", default=None, type=click.IntRange(min=0), help="Cache capacity in bytes (LRU eviction)")
@click.option("--logs-dir", default=None, help="Job log directory [default: .shipyard/logs]")
@click.option(
    "--failure-policy",
    type=click.Choice([p.value for p in FailurePolicy]),
    default=None,
    help="What to do with other jobs once a required job fails [default: continue]",
)
@click.option("--timeout", default=None, type=float, help="Default per-job timeout in seconds")
@click.option("--report-json", default=None, help="Write the run report as JSON (file or directory)")
@click.pass_context
def run(ctx, workflow, event, ref, workspace, workers, cache_dir, cache_capacity, logs_dir, failure_policy, timeout, report_json):
    """Run a workflow for one trigger event."""
    console = get_console()
    workflow_path, wf = _load(workflow)
    workspace_p = Path(workspace)
    trigger = TriggerEvent(kind=event, ref=_resolve_ref(ref, workspace_p))

    if not wf.triggers.matches(trigger):
        console.print_info(f"Workflow '{wf.name}' is not triggered by {trigger.kind} on {trigger.ref}; nothing to do.")
        return

    try:
        config = SchedulerConfig.from_env(
            workspace=workspace_p,
            max_concurrency=workers,
            cache_root=cache_dir,
            cache_capacity_bytes=cache_capacity,
            logs_dir=logs_dir,
            failure_policy=failure_policy,
            default_timeout=timeout,
        )
    except ConfigurationError as e:
        console.print_ci_error("Invalid configuration", e)
        sys.exit(EXIT_CONFIG)

    sinks = [ConsoleReportSink(console)]
    if report_json:
        sinks.append(JsonReportSink(report_json))

    console.print_run_started(
        repository=repo_name(cwd=workspace_p),
        workflow=workflow_path.name,
        job_count=len(wf.jobs),
        event=f"{trigger.kind} {trigger.ref}",
    )

    scheduler = Scheduler(
        config,
        report_sink=MultiReportSink(*sinks),
        on_status=lambda _run_id, name, status: console.print_job_status(name, status),
    )
    run_id = uuid.uuid4().hex
    outcome: dict = {}

    def _target() -> None:
        try:
            outcome["result"] = scheduler.handle_event(wf, trigger, run_id=run_id)
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=_target, name="shipyard-run", daemon=True)
    worker.start()
    interrupted = _wait_for_run(worker, scheduler, run_id, grace=config.kill_grace, console=console)

    if "error" in outcome:
        console.print_exception(outcome["error"])
        sys.exit(EXIT_FAILED)
    result: Optional[RunResult] = outcome.get("result")
    if interrupted:
        sys.exit(EXIT_INTERRUPTED)
    if result is None:
        return
    if result.error:
        sys.exit(EXIT_CONFIG)
    if result.exit_code != 0:
        sys.exit(EXIT_FAILED)


def _wait_for_run(worker: threading.Thread, scheduler: Scheduler, run_id: str, *, grace: float, console: Console) -> bool:
    """
    Wait for the run thread. The first Ctrl-C cancels the run and keeps
    waiting for it to wind down; a second one gives running jobs `grace`
    seconds and stops waiting. Returns True if the user interrupted.
    """
    interrupted = False
    while worker.is_alive():
        try:
            worker.join(timeout=0.2)
        except KeyboardInterrupt:
            if interrupted:
                console.print_info("Interrupted again, not waiting for running jobs")
                scheduler.shutdown(cancel=True, timeout=grace)
                return True
            interrupted = True
            console.print_info("\nInterrupted by user, cancelling run...")
            scheduler.cancel(run_id, "interrupted by user")
    scheduler.shutdown()
    return interrupted


@cli.command()
@click.option("--workflow", default=None, help="Workflow file (defaults to the one found in the current directory)")
def plan(workflow):
    """Show the ready sets (stages) a workflow would run in."""
    console = get_console()
    _path, wf = _load(workflow)
    try:
        levels = topo_levels(wf.jobs)
    except ConfigurationError as e:
        console.print_ci_error("Invalid job graph", e)
        sys.exit(EXIT_CONFIG)
    console.print_plan(levels)


@cli.group()
@click.option("--cache-dir", default=".shipyard/cache", show_default=True, help="Cache directory")
@click.pass_context
def cache(ctx, cache_dir):
    """Inspect and trim the step cache."""
    ctx.obj["cache"] = CacheStore(cache_dir)


@cache.command("ls")
@click.pass_context
def cache_ls(ctx):
    """List cache entries, least recently used first."""
    store: CacheStore = ctx.obj["cache"]
    console = get_console()
    entries = store.entries()
    for e in entries:
        last = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(e.last_access))
        console.print_info(f"{e.size:>12}  {last}  {e.key}")
    console.print_info(f"{len(entries)} entries, {store.total_size} bytes")


@cache.command("evict")
@click.option("--capacity", required=True, type=click.IntRange(min=0), help="Target size in bytes")
@click.pass_context
def cache_evict(ctx, capacity):
    """Evict least-recently-used entries until the cache fits CAPACITY bytes."""
    store: CacheStore = ctx.obj["cache"]
    removed = store.evict(capacity)
    get_console().print_info(f"Evicted {len(removed)} entries")


@cache.command("prune")
@click.option("--max-age", required=True, type=click.FloatRange(min=0), help="Maximum age in days since last access")
@click.pass_context
def cache_prune(ctx, max_age):
    """Remove entries not used for MAX_AGE days."""
    store: CacheStore = ctx.obj["cache"]
    removed = store.prune(max_age * 86400)
    get_console().print_info(f"Pruned {len(removed)} entries")


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
