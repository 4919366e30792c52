# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, List, Optional


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - the per-job error field of a report
      - debugging without full tracebacks
    """
    message: str
    job: Optional[str] = None
    step: Optional[str] = None
    details: dict = field(default_factory=dict)

    kind: ClassVar[str] = "CIError"

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class ConfigurationError(CIError):
    """Malformed workflow or job graph. Aborts a run before anything is dispatched."""
    kind = "ConfigurationError"


@dataclass(eq=False)
class CyclicDependency(ConfigurationError):
    cycle: List[str] = field(default_factory=list)

    kind: ClassVar[str] = "CyclicDependency"

    def __str__(self) -> str:
        return f"{self.kind}: {self.message} ({' -> '.join(self.cycle)})"


class ExecutionError(CIError):
    """Command missing or not runnable (bad cwd, exit 126/127)."""
    kind = "ExecutionError"


class JobTimeoutError(CIError):
    """The job's wall-clock budget ran out while a step was running."""
    kind = "TimeoutError"


class CacheIntegrityError(CIError):
    """A key already holds different content. Cache entries are write-once."""
    kind = "CacheIntegrityError"


class CancellationError(CIError):
    kind = "CancellationError"
