from .dsl import job, sh, matrix, wf
from .model import Job, Step, TriggerEvent, Workflow, JobResult, RunResult
from .config import SchedulerConfig, FailurePolicy
from .scheduler import Scheduler
from .workflow import load_workflow

__all__ = [
    "job", "sh", "matrix", "wf",
    "Job", "Step", "TriggerEvent", "Workflow", "JobResult", "RunResult",
    "SchedulerConfig", "FailurePolicy", "Scheduler", "load_workflow",
]
