# scheduler.py
from __future__ import annotations

import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional

from .cache import CacheStore, check_cache_key_template
from .config import FailurePolicy, SchedulerConfig
from .dag import build_dag, topo_levels
from .errors import ConfigurationError
from .executor import JobExecutor
from .logging import get_logger
from .model import (
    CANCELLED,
    FAILURE,
    JOB_TERMINAL,
    QUEUED,
    RUN_CANCELLED,
    RUN_FAILED,
    RUN_PENDING,
    RUN_RUNNING,
    RUN_SUCCESS,
    RUNNING,
    SKIPPED,
    SUCCESS,
    Job,
    JobResult,
    RunResult,
    TriggerEvent,
    Workflow,
)
from .report import ReportSink

log = get_logger("shipyard.scheduler")

StatusCallback = Callable[[str, str, str], None]  # (run_id, job_name, status)


class Run:
    """Live state of one run: per-job states, results and the cancel signal."""

    def __init__(self, run_id: str, trigger: TriggerEvent, jobs: List[Job]):
        self.run_id = run_id
        self.trigger = trigger
        self.jobs = list(jobs)
        self.status = RUN_PENDING
        self.started_at = time.time()

        # Set for run-level cancellation and for the cancel_all failure policy;
        # executors poll it while a command runs.
        self.cancel_event = threading.Event()
        self.cancel_requested = False
        self.cancel_reason: Optional[str] = None
        self.done = threading.Event()

        self._lock = threading.Lock()
        self._states: Dict[str, str] = {j.name: QUEUED for j in self.jobs}
        self._results: Dict[str, JobResult] = {}

    def cancel(self, reason: str = "run cancelled") -> bool:
        """Request cancellation. False when the run is over or every job already finished."""
        with self._lock:
            if self.done.is_set() or all(s in JOB_TERMINAL for s in self._states.values()):
                return False
            self.cancel_requested = True
            self.cancel_reason = reason
        self.cancel_event.set()
        return True

    def job_status(self, name: str) -> str:
        with self._lock:
            return self._states[name]

    def states(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._states)

    def _set_state(self, name: str, state: str) -> None:
        with self._lock:
            self._states[name] = state

    def _finish(self, result: JobResult) -> None:
        with self._lock:
            self._states[result.name] = result.status
            self._results[result.name] = result

    def results(self) -> List[JobResult]:
        with self._lock:
            return [self._results[j.name] for j in self.jobs if j.name in self._results]


def _final_status(run: Run, results: List[JobResult]) -> str:
    if any(r.required and r.status == FAILURE for r in results):
        return RUN_FAILED
    if run.cancel_requested:
        return RUN_CANCELLED
    return RUN_SUCCESS


class Scheduler:
    """
    Pipeline scheduler:

    - Validates the job set (duplicates, unknown needs, cycles, cache keys)
      before anything starts.
    - Runs jobs on a thread pool of at most config.max_concurrency workers,
      each as soon as every job it needs finished with success.
    - Skips jobs whose dependencies failed, were skipped or were cancelled.
    - Applies config.failure_policy after a required job fails.
    - Hands the aggregated RunResult to the report sink.
    """

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        *,
        report_sink: Optional[ReportSink] = None,
        on_status: Optional[StatusCallback] = None,
        cache: Optional[CacheStore] = None,
    ):
        self.config = config or SchedulerConfig()
        self.cache = cache or CacheStore(self.config.cache_root, self.config.cache_capacity_bytes)
        self.executor = JobExecutor(
            self.cache,
            self.config.workspace,
            self.config.logs_dir,
            kill_grace=self.config.kill_grace,
        )
        self.report_sink = report_sink
        self.on_status = on_status

        self._lock = threading.Lock()
        self._runs: Dict[str, Run] = {}
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def __enter__(self) -> "Scheduler":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(cancel=exc_type is not None)

    def shutdown(self, *, cancel: bool = False, timeout: Optional[float] = None) -> None:
        """Stop accepting runs; drain in-flight runs, or cancel them first."""
        with self._lock:
            self._closed = True
            runs = list(self._runs.values())
        for run in runs:
            if cancel:
                run.cancel("scheduler shutting down")
        for run in runs:
            run.done.wait(timeout)

    # ------------------------------------------------------------------
    # Queries / control
    # ------------------------------------------------------------------

    def get_run(self, run_id: str) -> Optional[Run]:
        with self._lock:
            return self._runs.get(run_id)

    def active_runs(self) -> List[Run]:
        with self._lock:
            return list(self._runs.values())

    def cancel(self, run_id: str, reason: str = "run cancelled") -> bool:
        run = self.get_run(run_id)
        if run is None:
            return False
        if not run.cancel(reason):
            log.info("run %s: nothing left to cancel", run_id)
            return False
        log.info("run %s: cancel requested (%s)", run_id, reason)
        return True

    def validate(self, jobs: List[Job]) -> List[List[str]]:
        """Return the ready sets, or raise ConfigurationError."""
        levels = topo_levels(jobs)
        for job in jobs:
            if not job.steps:
                raise ConfigurationError(f"Job '{job.name}' has no steps", job=job.name)
            for step in job.steps:
                if step.cache_key:
                    check_cache_key_template(step.cache_key)
        return levels

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def handle_event(self, workflow: Workflow, event: TriggerEvent, **kwargs) -> Optional[RunResult]:
        """Entry point for a trigger: run the workflow if the event qualifies."""
        if not workflow.triggers.matches(event):
            log.info("event %s %s does not trigger workflow %s", event.kind, event.ref, workflow.name)
            return None
        env = dict(workflow.env)
        env.update(kwargs.pop("env", None) or {})
        return self.run(event, workflow.jobs, env=env, **kwargs)

    def run(
        self,
        trigger: TriggerEvent,
        jobs: List[Job],
        *,
        run_id: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> RunResult:
        run = Run(run_id or uuid.uuid4().hex, trigger, jobs)
        self._register(run)
        try:
            try:
                levels = self.validate(run.jobs)
            except ConfigurationError as e:
                log.error("run %s: %s", run.run_id, e)
                now = time.time()
                for job in run.jobs:
                    run._finish(JobResult(
                        name=job.name, status=SKIPPED, required=job.required,
                        started_at=now, finished_at=now, reason="configuration error",
                    ))
                run.status = RUN_FAILED
                result = RunResult(
                    run_id=run.run_id, trigger=trigger, status=RUN_FAILED,
                    jobs=run.results(), error=str(e), started_at=run.started_at, finished_at=now,
                )
            else:
                run.status = RUN_RUNNING
                self._dispatch(run, levels, env or {})
                results = run.results()
                run.status = _final_status(run, results)
                result = RunResult(
                    run_id=run.run_id, trigger=trigger, status=run.status,
                    jobs=results, started_at=run.started_at, finished_at=time.time(),
                )
            log.info("run %s: %s", run.run_id, result.status)
            self._report(result)
            return result
        finally:
            run.done.set()
            with self._lock:
                self._runs.pop(run.run_id, None)

    def _register(self, run: Run) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("scheduler is shut down")
            if run.run_id in self._runs:
                raise ValueError(f"run id already active: {run.run_id}")
            superseded = [
                r for r in self._runs.values()
                if self.config.cancel_superseded and r.trigger.ref == run.trigger.ref
            ]
            self._runs[run.run_id] = run
        for old in superseded:
            log.info("run %s: superseded by %s on %s", old.run_id, run.run_id, run.trigger.ref)
            old.cancel(f"superseded by run {run.run_id}")

    def _notify(self, run: Run, name: str, status: str) -> None:
        if self.on_status is not None:
            self.on_status(run.run_id, name, status)

    def _close_job(self, run: Run, job: Job, status: str, reason: str) -> None:
        now = time.time()
        run._finish(JobResult(
            name=job.name, status=status, required=job.required,
            started_at=now, finished_at=now, reason=reason,
        ))
        self._notify(run, job.name, status)

    def _dispatch(self, run: Run, levels: List[List[str]], env: Dict[str, str]) -> None:
        by_name = {j.name: j for j in run.jobs}
        decl = {j.name: i for i, j in enumerate(run.jobs)}
        rank = {name: (lvl, decl[name]) for lvl, names in enumerate(levels) for name in names}
        adj, indeg = build_dag(run.jobs)
        waiting = dict(indeg)

        def skip_dependents(name: str, status: str) -> None:
            for child in adj[name]:
                if run.job_status(child) == QUEUED:
                    self._close_job(run, by_name[child], SKIPPED, f"dependency '{name}' {status}")
                    skip_dependents(child, SKIPPED)

        ready: List[str] = sorted((n for n, d in waiting.items() if d == 0), key=rank.__getitem__)
        in_flight: Dict[Future, str] = {}
        stop_dispatch = False
        policy = self.config.failure_policy
        limit = self.config.max_concurrency

        def cancel_reason() -> str:
            if run.cancel_requested:
                return run.cancel_reason or "run cancelled"
            return "cancelled after a required job failed"

        with ThreadPoolExecutor(max_workers=limit, thread_name_prefix=f"shipyard-{run.run_id[:8]}") as pool:
            while ready or in_flight:
                # schedule what is ready, up to the concurrency limit
                while ready and len(in_flight) < limit and not (stop_dispatch or run.cancel_event.is_set()):
                    name = ready.pop(0)
                    run._set_state(name, RUNNING)
                    self._notify(run, name, RUNNING)
                    fut = pool.submit(self._execute, run, by_name[name], env)
                    in_flight[fut] = name

                if ready and (stop_dispatch or run.cancel_event.is_set()):
                    for name in ready:
                        self._close_job(run, by_name[name], CANCELLED, cancel_reason())
                    ready.clear()

                if not in_flight:
                    break

                # wait for a completion, then loop to schedule newly-ready jobs
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in sorted(done, key=lambda f: rank[in_flight[f]]):
                    name = in_flight.pop(fut)
                    result = fut.result()
                    run._finish(result)
                    self._notify(run, name, result.status)

                    if result.status == SUCCESS:
                        for child in adj[name]:
                            waiting[child] -= 1
                            if waiting[child] == 0 and run.job_status(child) == QUEUED:
                                ready.append(child)
                    else:
                        skip_dependents(name, result.status)

                    if result.status == FAILURE and result.required and policy is not FailurePolicy.CONTINUE:
                        log.info("run %s: required job %s failed, policy %s", run.run_id, name, policy.value)
                        stop_dispatch = True
                        if policy is FailurePolicy.CANCEL_ALL:
                            run.cancel_event.set()
                ready.sort(key=rank.__getitem__)

        # Anything still queued never became ready: cancelled before its turn
        for job in run.jobs:
            if run.job_status(job.name) not in JOB_TERMINAL:
                self._close_job(run, job, CANCELLED, cancel_reason())

    def _execute(self, run: Run, job: Job, env: Dict[str, str]) -> JobResult:
        try:
            result = self.executor.execute(
                job,
                run_id=run.run_id,
                trigger=run.trigger,
                cancel_event=run.cancel_event,
                env=env,
                timeout=self.config.default_timeout,
            )
        except Exception as e:
            # One broken job must not take the scheduler down with it
            log.exception("run %s: job %s crashed", run.run_id, job.name)
            now = time.time()
            return JobResult(
                name=job.name, status=FAILURE, required=job.required,
                started_at=now, finished_at=now, error=f"{type(e).__name__}: {e}",
            )
        if result.status == CANCELLED and run.cancel_reason:
            result.reason = run.cancel_reason
        elif result.status == CANCELLED and not run.cancel_requested:
            result.reason = "cancelled after a required job failed"
        return result

    def _report(self, result: RunResult) -> None:
        if self.report_sink is None:
            return
        try:
            self.report_sink.emit(result)
        except Exception:
            log.exception("run %s: report sink failed", result.run_id)
