# workflow.py
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ConfigurationError
from .model import EVENT_KINDS, Job, Step, Triggers, Workflow

WORKFLOW_SUFFIXES = (".py", ".yml", ".yaml", ".json")

_STEP_KEYS = {"name", "run", "cwd", "env", "cache_key", "cache_paths", "skip_on_cache_hit", "continue_on_error"}
_JOB_KEYS = {"steps", "needs", "depends_on", "required", "env", "timeout"}


# ----------------------------------------------------------------------
# Mapping declarations (YAML / JSON)
# ----------------------------------------------------------------------

def _str_map(value: Any, where: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"{where}: env must be a mapping")
    return {str(k): str(v) for k, v in value.items()}


def _str_list(value: Any, where: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigurationError(f"{where}: expected a list of strings")
    return list(value)


def _bool(value: Any, where: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigurationError(f"{where}: expected true/false, got {value!r}")
    return value


def step_from_mapping(data: Any, *, job_name: str, index: int) -> Step:
    where = f"job '{job_name}' step {index + 1}"
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"{where}: expected a mapping", job=job_name)
    unknown = set(data) - _STEP_KEYS
    if unknown:
        raise ConfigurationError(f"{where}: unknown keys {sorted(unknown)}", job=job_name)
    run = data.get("run")
    if not isinstance(run, str) or not run.strip():
        raise ConfigurationError(f"{where}: 'run' must be a non-empty command string", job=job_name)
    cache_key = data.get("cache_key")
    if cache_key is not None and not isinstance(cache_key, str):
        raise ConfigurationError(f"{where}: cache_key must be a string", job=job_name)

    return Step(
        name=str(data.get("name") or run.strip().splitlines()[0]),
        run=run,
        cwd=data.get("cwd"),
        env=_str_map(data.get("env"), where),
        cache_key=cache_key,
        cache_paths=_str_list(data.get("cache_paths"), where),
        skip_on_cache_hit=_bool(data.get("skip_on_cache_hit"), where, False),
        continue_on_error=_bool(data.get("continue_on_error"), where, False),
    )


def job_from_mapping(name: str, data: Any) -> Job:
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"job '{name}': expected a mapping", job=name)
    unknown = set(data) - _JOB_KEYS
    if unknown:
        raise ConfigurationError(f"job '{name}': unknown keys {sorted(unknown)}", job=name)
    steps = data.get("steps")
    if not isinstance(steps, list) or not steps:
        raise ConfigurationError(f"job '{name}': 'steps' must be a non-empty list", job=name)
    if "needs" in data and "depends_on" in data:
        raise ConfigurationError(f"job '{name}': use either 'needs' or 'depends_on', not both", job=name)

    timeout = data.get("timeout")
    if timeout is not None and (isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0):
        raise ConfigurationError(f"job '{name}': timeout must be a positive number of seconds", job=name)

    return Job(
        name=name,
        steps=[step_from_mapping(s, job_name=name, index=i) for i, s in enumerate(steps)],
        needs=_str_list(data.get("needs", data.get("depends_on")), f"job '{name}'"),
        required=_bool(data.get("required"), f"job '{name}'", True),
        env=_str_map(data.get("env"), f"job '{name}'"),
        timeout=timeout,
    )


def jobs_from_mapping(mapping: Any) -> List[Job]:
    """Job declaration mapping {name: {steps, depends_on, required}} -> [Job] in declaration order."""
    if not isinstance(mapping, Mapping) or not mapping:
        raise ConfigurationError("'jobs' must be a non-empty mapping of job name to job")
    return [job_from_mapping(str(name), data) for name, data in mapping.items()]


def triggers_from_mapping(value: Any) -> Triggers:
    """
    Accepts the usual shapes:
      on: push
      on: [push, pull_request]
      on: {pull_request: null, push: {branches: [master]}}
    """
    if value is None:
        return Triggers()
    if isinstance(value, str):
        value = [value]
    if isinstance(value, list):
        value = {k: None for k in value}
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"'on' must be an event name, list or mapping, got {value!r}")

    events: Dict[str, List[str]] = {}
    for kind, spec in value.items():
        if kind not in EVENT_KINDS:
            raise ConfigurationError(f"'on': unknown event {kind!r} (expected one of {list(EVENT_KINDS)})")
        if spec is None:
            events[kind] = []
        elif isinstance(spec, Mapping):
            events[kind] = _str_list(spec.get("branches"), f"'on.{kind}.branches'")
        else:
            raise ConfigurationError(f"'on.{kind}' must be a mapping")
    return Triggers(events=events)


def workflow_from_mapping(data: Any, *, default_name: str = "workflow") -> Workflow:
    if not isinstance(data, Mapping):
        raise ConfigurationError("Workflow file must contain a mapping")
    # YAML 1.1 reads a bare `on:` key as boolean True
    on = data.get("on", data.get(True))
    return Workflow(
        name=str(data.get("name") or default_name),
        jobs=jobs_from_mapping(data.get("jobs")),
        triggers=triggers_from_mapping(on),
        env=_str_map(data.get("env"), "workflow"),
    )


# ----------------------------------------------------------------------
# Workflow loading (local file)
# ----------------------------------------------------------------------

def _load_python(wf_path: Path) -> Workflow:
    """
    The file must define either:
      - workflow() -> List[Job] | Workflow
      - JOBS = [Job, ...]
    and may define NAME, TRIGGERS (same shapes as `on:`) and ENV.
    """
    module_name = f"shipyard_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    jobs: Optional[Any] = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        try:
            jobs = globals_dict["workflow"]()
        except TypeError as e:
            if "positional argument" in str(e):
                raise ConfigurationError(
                    "Your workflow() is being called with arguments (name collision with the helper). "
                    "Use the 'wf' helper instead: `from shipyard import wf, job, sh` then "
                    "`def workflow(): return wf(job(...), job(...))`"
                ) from e
            raise
    elif "JOBS" in globals_dict:
        jobs = globals_dict["JOBS"]

    if isinstance(jobs, Workflow):
        return jobs
    if not isinstance(jobs, list) or not all(isinstance(j, Job) for j in jobs):
        raise ConfigurationError(
            "Workflow must return/define a List[Job]. "
            "Define workflow() -> List[Job] or JOBS = [Job, ...]."
        )
    return Workflow(
        name=str(globals_dict.get("NAME") or wf_path.stem),
        jobs=jobs,
        triggers=triggers_from_mapping(globals_dict.get("TRIGGERS")),
        env=_str_map(globals_dict.get("ENV"), "workflow"),
    )


def load_workflow(path: str | Path) -> Workflow:
    """Load a workflow from a .py, .yml/.yaml or .json file."""
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix not in WORKFLOW_SUFFIXES:
        raise ConfigurationError(f"Workflow must be one of {WORKFLOW_SUFFIXES}, got: {wf_path.name}")

    if wf_path.suffix == ".py":
        return _load_python(wf_path)

    text = wf_path.read_text(encoding="utf-8")
    try:
        data = json.loads(text) if wf_path.suffix == ".json" else yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Invalid workflow file {wf_path.name}: {e}")
    return workflow_from_mapping(data, default_name=wf_path.stem)
