# config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional

from .errors import ConfigurationError


class FailurePolicy(str, Enum):
    """What happens to the rest of a run once a required job fails."""

    CONTINUE = "continue"              # skip only dependents of the failed job
    CANCEL_PENDING = "cancel_pending"  # also cancel every job not started yet
    CANCEL_ALL = "cancel_all"          # also stop jobs that are running


def default_max_concurrency() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


@dataclass
class SchedulerConfig:
    """
    Process-wide scheduler settings. Built once at startup and handed to the
    Scheduler; nothing here is read from globals afterwards.
    """
    workspace: Path = Path(".")
    cache_root: Path = Path(".shipyard/cache")
    cache_capacity_bytes: Optional[int] = None
    logs_dir: Path = Path(".shipyard/logs")
    max_concurrency: int = field(default_factory=default_max_concurrency)
    failure_policy: FailurePolicy = FailurePolicy.CONTINUE
    cancel_superseded: bool = True
    default_timeout: Optional[float] = None  # seconds; None = no timeout
    kill_grace: float = 5.0  # seconds between SIGTERM and SIGKILL

    def __post_init__(self) -> None:
        self.workspace = Path(self.workspace)
        self.cache_root = Path(self.cache_root)
        self.logs_dir = Path(self.logs_dir)
        if not isinstance(self.failure_policy, FailurePolicy):
            try:
                self.failure_policy = FailurePolicy(self.failure_policy)
            except ValueError:
                choices = ", ".join(p.value for p in FailurePolicy)
                raise ConfigurationError(f"Unknown failure policy {self.failure_policy!r} (expected {choices})")
        if self.max_concurrency < 1:
            raise ConfigurationError(f"max_concurrency must be >= 1, got {self.max_concurrency}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "SchedulerConfig":
        """
        Read SHIPYARD_* variables; keyword overrides that are not None win.

          SHIPYARD_WORKSPACE, SHIPYARD_CACHE_DIR, SHIPYARD_CACHE_CAPACITY (bytes),
          SHIPYARD_LOGS_DIR, SHIPYARD_MAX_CONCURRENCY, SHIPYARD_FAILURE_POLICY,
          SHIPYARD_CANCEL_SUPERSEDED (0/1), SHIPYARD_TIMEOUT (seconds)
        """
        env = os.environ if environ is None else environ
        values: Dict[str, object] = {}

        def num(name: str, conv):
            raw = env.get(name)
            if raw is None or raw == "":
                return None
            try:
                return conv(raw)
            except ValueError:
                raise ConfigurationError(f"{name} must be a number, got {raw!r}")

        if env.get("SHIPYARD_WORKSPACE"):
            values["workspace"] = Path(env["SHIPYARD_WORKSPACE"])
        if env.get("SHIPYARD_CACHE_DIR"):
            values["cache_root"] = Path(env["SHIPYARD_CACHE_DIR"])
        if env.get("SHIPYARD_LOGS_DIR"):
            values["logs_dir"] = Path(env["SHIPYARD_LOGS_DIR"])
        if env.get("SHIPYARD_FAILURE_POLICY"):
            values["failure_policy"] = env["SHIPYARD_FAILURE_POLICY"]
        if env.get("SHIPYARD_CANCEL_SUPERSEDED"):
            values["cancel_superseded"] = env["SHIPYARD_CANCEL_SUPERSEDED"].lower() not in ("0", "false", "no")

        for key, name, conv in (
            ("cache_capacity_bytes", "SHIPYARD_CACHE_CAPACITY", int),
            ("max_concurrency", "SHIPYARD_MAX_CONCURRENCY", int),
            ("default_timeout", "SHIPYARD_TIMEOUT", float),
        ):
            v = num(name, conv)
            if v is not None:
                values[key] = v

        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
