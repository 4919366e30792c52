# executor.py
from __future__ import annotations

import os
import re
import signal
import subprocess
import tarfile
import threading
import time
from pathlib import Path
from typing import IO, Dict, Optional

from .cache import CacheStore, pack_paths, resolve_cache_key, unpack_blob
from .errors import CIError, CacheIntegrityError, CancellationError, ExecutionError, JobTimeoutError
from .logging import get_logger
from .model import CANCELLED, FAILURE, SUCCESS, Job, JobResult, Step, StepResult, TriggerEvent

log = get_logger("shipyard.executor")

# Shell exit codes for "found but not executable" / "not found"
_NOT_RUNNABLE = {126: "command not executable", 127: "command not found"}

# Failures on the cache side of a step. The cache is advisory: these are
# logged and the step result stands.
_CACHE_ERRORS = (CIError, OSError, ValueError, tarfile.TarError)

TOOL_HINTS = {
    "cargo": "Install the Rust toolchain (rustup) or fix PATH.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


def _safe_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", name) or "job"


def _hint_for(cmd: str) -> Optional[str]:
    tool = cmd.strip().split(" ", 1)[0] if cmd.strip() else ""
    return TOOL_HINTS.get(os.path.basename(tool))


class JobExecutor:
    """
    Runs one job's steps, in order, as shell commands.

    Output of every step is appended to <logs_dir>/<run_id>/<job>.log, which is
    the JobResult's output_ref. Cancellation and the job's wall-clock timeout
    are checked while a command runs; either one terminates the command's
    whole process group.
    """

    def __init__(
        self,
        cache: Optional[CacheStore],
        workspace: str | Path = ".",
        logs_dir: str | Path = ".shipyard/logs",
        *,
        kill_grace: float = 5.0,
        poll_interval: float = 0.05,
    ):
        self.cache = cache
        self.workspace = Path(workspace).resolve()
        self.logs_dir = Path(logs_dir).resolve()
        self.kill_grace = kill_grace
        self.poll_interval = poll_interval

    def log_path(self, run_id: str, job_name: str) -> Path:
        return self.logs_dir / _safe_name(run_id) / f"{_safe_name(job_name)}.log"

    # ------------------------------------------------------------------
    # Job
    # ------------------------------------------------------------------

    def execute(
        self,
        job: Job,
        *,
        run_id: str,
        trigger: Optional[TriggerEvent] = None,
        cancel_event: Optional[threading.Event] = None,
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> JobResult:
        """
        Execute every step of job and return its terminal JobResult.

        Job-level errors never escape: they end up in the result's status,
        error and step list. `timeout` is used when the job declares none.
        """
        cancel_event = cancel_event or threading.Event()
        budget = job.timeout if job.timeout is not None else timeout
        result = JobResult(name=job.name, status=SUCCESS, required=job.required, started_at=time.time())
        deadline = None if budget is None else time.monotonic() + budget

        base_env = os.environ.copy()
        base_env.update(env or {})
        base_env.update(job.env or {})
        base_env["SHIPYARD_RUN_ID"] = run_id
        base_env["SHIPYARD_JOB"] = job.name
        if trigger is not None:
            base_env["SHIPYARD_EVENT"] = trigger.kind
            base_env["SHIPYARD_REF"] = trigger.ref

        out_path = self.log_path(run_id, job.name)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        result.output_ref = str(out_path)

        with out_path.open("ab") as out:
            for step in job.steps:
                if cancel_event.is_set():
                    result.status = CANCELLED
                    result.reason = "run cancelled"
                    break

                step_env = dict(base_env)
                step_env.update(step.env or {})
                try:
                    step_result = self._run_step(job, step, out, step_env, deadline, cancel_event)
                except CancellationError as e:
                    result.steps.append(StepResult(name=step.name, error=str(e)))
                    result.status = CANCELLED
                    result.reason = "run cancelled"
                    break
                except JobTimeoutError as e:
                    result.steps.append(StepResult(name=step.name, error=str(e)))
                    result.status = FAILURE
                    result.error = str(e)
                    break

                result.steps.append(step_result)
                if step_result.exit_code != 0:
                    if step.continue_on_error:
                        log.info("[%s] step '%s' failed (exit=%s), continuing", job.name, step.name, step_result.exit_code)
                        continue
                    result.status = FAILURE
                    result.error = step_result.error or f"step '{step.name}' failed (exit={step_result.exit_code})"
                    break

        result.finished_at = time.time()
        log.info("[%s] %s", job.name, result.status)
        return result

    # ------------------------------------------------------------------
    # Step
    # ------------------------------------------------------------------

    def _run_step(
        self,
        job: Job,
        step: Step,
        out: IO[bytes],
        env: Dict[str, str],
        deadline: Optional[float],
        cancel_event: threading.Event,
    ) -> StepResult:
        started = time.monotonic()
        res = StepResult(name=step.name)

        # ---- restore ----
        key, hit = self._restore(job, step, env)
        if hit and step.skip_on_cache_hit:
            log.info("[%s] step '%s': cache hit, skipping command", job.name, step.name)
            out.write(f"==> {step.name}: cache hit ({key}), command skipped\n".encode())
            out.flush()
            res.exit_code = 0
            res.cached = True
            return res
        res.cached = hit

        # ---- run ----
        log.info("[%s] ▶ %s", job.name, step.name)
        out.write(f"==> {step.name}: {step.run}\n".encode())
        out.flush()
        try:
            res.exit_code = self._spawn(job, step, out, env, deadline, cancel_event)
        except ExecutionError as e:
            res.exit_code = None
            res.error = str(e)
        res.duration = time.monotonic() - started

        if res.exit_code in _NOT_RUNNABLE:
            res.error = str(ExecutionError(
                _NOT_RUNNABLE[res.exit_code],
                job=job.name,
                step=step.name,
                details={"cmd": step.run, "exit_code": res.exit_code, "hint": _hint_for(step.run) or "check PATH"},
            ))

        # ---- save ----
        if res.exit_code == 0 and key is not None and not hit:
            self._save(job, step, key)
        return res

    def _restore(self, job: Job, step: Step, env: Dict[str, str]) -> tuple[Optional[str], bool]:
        if not step.cache_key or self.cache is None:
            return None, False
        try:
            key = resolve_cache_key(step.cache_key, self.workspace, job=job.name, env=env)
        except _CACHE_ERRORS as e:
            log.warning("[%s] step '%s': cache key not resolved, caching disabled: %s", job.name, step.name, e)
            return None, False
        try:
            blob = self.cache.get(key)
            if blob is None:
                log.info("[%s] cache: miss (%s)", job.name, key)
                return key, False
            restored = unpack_blob(blob, self.workspace)
        except _CACHE_ERRORS as e:
            log.warning("[%s] cache: restore of %s failed, treating as miss: %s", job.name, key, e)
            return key, False
        log.info("[%s] cache: hit (%s, %d files)", job.name, key, len(restored))
        return key, True

    def _save(self, job: Job, step: Step, key: str) -> None:
        if not step.cache_paths:
            log.debug("[%s] step '%s': no cache_paths, nothing to save", job.name, step.name)
            return
        try:
            self.cache.put(key, pack_paths(self.workspace, step.cache_paths))
            log.info("[%s] cache: saved (%s)", job.name, key)
        except CacheIntegrityError as e:
            log.warning("[%s] cache: %s", job.name, e)
        except _CACHE_ERRORS as e:
            log.warning("[%s] cache: save of %s failed: %s", job.name, key, e)

    def _spawn(
        self,
        job: Job,
        step: Step,
        out: IO[bytes],
        env: Dict[str, str],
        deadline: Optional[float],
        cancel_event: threading.Event,
    ) -> int:
        cwd = (self.workspace / (step.cwd or ".")).resolve()
        if not cwd.is_dir():
            raise ExecutionError(
                "working directory not found",
                job=job.name,
                step=step.name,
                details={"cwd": str(cwd)},
            )

        try:
            proc = subprocess.Popen(
                step.run,
                shell=True,
                cwd=str(cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=out,
                stderr=subprocess.STDOUT,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            raise ExecutionError(str(e), job=job.name, step=step.name, details={"cmd": step.run})

        while True:
            try:
                return proc.wait(timeout=self.poll_interval)
            except subprocess.TimeoutExpired:
                pass
            if cancel_event.is_set():
                self._terminate(proc)
                raise CancellationError("cancelled while running", job=job.name, step=step.name)
            if deadline is not None and time.monotonic() >= deadline:
                self._terminate(proc)
                raise JobTimeoutError(
                    "job timed out",
                    job=job.name,
                    step=step.name,
                    details={"cmd": step.run},
                )

    def _terminate(self, proc: subprocess.Popen) -> None:
        """SIGTERM the command's process group, SIGKILL it after kill_grace."""
        self._signal(proc, signal.SIGTERM)
        try:
            proc.wait(timeout=self.kill_grace)
            return
        except subprocess.TimeoutExpired:
            pass
        self._signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
        proc.wait()

    @staticmethod
    def _signal(proc: subprocess.Popen, sig: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(proc.pid, sig)
            else:
                proc.send_signal(sig)
        except ProcessLookupError:
            pass
