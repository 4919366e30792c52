# model.py
from __future__ import annotations

import time
from dataclasses import dataclass, field
from fnmatch import fnmatch
from typing import Any, Dict, List, Optional


# Job states: queued -> running -> {success, failure, skipped, cancelled}
QUEUED = "queued"
RUNNING = "running"
SUCCESS = "success"
FAILURE = "failure"
SKIPPED = "skipped"
CANCELLED = "cancelled"

JOB_TERMINAL = (SUCCESS, FAILURE, SKIPPED, CANCELLED)

# Run states: pending -> running -> {success, failed, cancelled}
RUN_PENDING = "pending"
RUN_RUNNING = "running"
RUN_SUCCESS = "success"
RUN_FAILED = "failed"
RUN_CANCELLED = "cancelled"

EVENT_KINDS = ("pull_request", "push")


@dataclass(frozen=True)
class Step:
    """A single command (step) inside a CI job."""
    name: str
    run: str
    cwd: str | None = None
    env: Dict[str, str] = field(default_factory=dict)

    # Cache knobs: key template, what to restore/save under it
    cache_key: Optional[str] = None
    cache_paths: List[str] = field(default_factory=list)
    skip_on_cache_hit: bool = False

    continue_on_error: bool = False


@dataclass
class Job:
    """
    A CI job: ordered steps + dependencies + failure semantics.

    `needs` names the jobs that must finish successfully before this one starts.
    A `required` job failing fails the whole run; otherwise it is only reported.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    required: bool = True
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[float] = None  # seconds, whole job

    # Declaration-format alias
    @property
    def depends_on(self) -> list[str]:
        return self.needs


@dataclass(frozen=True)
class TriggerEvent:
    kind: str  # "pull_request" | "push"
    ref: str

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            raise ValueError(f"Unknown event kind {self.kind!r}, expected one of {EVENT_KINDS}")


@dataclass(frozen=True)
class Triggers:
    """
    Which repository events start a run.

    `events` maps an event kind to branch patterns; an empty pattern list
    means every ref qualifies for that kind. None means every event qualifies.
    """
    events: Optional[Dict[str, List[str]]] = None

    def matches(self, event: TriggerEvent) -> bool:
        if self.events is None:
            return True
        if event.kind not in self.events:
            return False
        patterns = self.events[event.kind]
        if not patterns:
            return True
        branch = event.ref
        if branch.startswith("refs/heads/"):
            branch = branch[len("refs/heads/"):]
        return any(fnmatch(branch, p) for p in patterns)


@dataclass
class Workflow:
    name: str
    jobs: List[Job]
    triggers: Triggers = field(default_factory=Triggers)
    env: Dict[str, str] = field(default_factory=dict)


@dataclass
class StepResult:
    name: str
    exit_code: Optional[int] = None
    duration: float = 0.0
    cached: bool = False
    error: Optional[str] = None


@dataclass
class JobResult:
    name: str
    status: str
    required: bool = True
    steps: List[StepResult] = field(default_factory=list)
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    output_ref: Optional[str] = None
    error: Optional[str] = None
    reason: Optional[str] = None

    @property
    def exit_codes(self) -> List[Optional[int]]:
        return [s.exit_code for s in self.steps]

    @property
    def duration(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status,
            "required": self.required,
            "duration": round(self.duration, 3),
            "exit_codes": self.exit_codes,
        }
        if self.reason:
            d["reason"] = self.reason
        if self.error:
            d["error"] = self.error
        if self.output_ref:
            d["output"] = self.output_ref
        return d


@dataclass
class RunResult:
    run_id: str
    trigger: TriggerEvent
    status: str
    jobs: List[JobResult] = field(default_factory=list)
    error: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.status == RUN_SUCCESS else 1

    def job(self, name: str) -> JobResult:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "run_id": self.run_id,
            "status": self.status,
            "trigger": {"kind": self.trigger.kind, "ref": self.trigger.ref},
            "jobs": [j.to_dict() for j in self.jobs],
        }
        if self.error:
            d["error"] = self.error
        return d
