# dsl.py
# Helpers for writing workflows in Python:
#
#   from shipyard import wf, job, sh
#
#   def workflow():
#       return wf(
#           job("tests", sh("Run tests", "pytest -q")),
#           job("build", sh("Build", "python -m build"), needs=["tests"]),
#       )
from __future__ import annotations

from dataclasses import replace
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .model import Job, Step


def _env(values: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    # subprocess env values must be strings
    return {str(k): str(v) for k, v in (values or {}).items()}


def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Mapping[str, Any]] = None,
    cache_key: Optional[str] = None,
    cache_paths: Optional[Sequence[str]] = None,
    skip_on_cache_hit: bool = False,
    continue_on_error: bool = False,
) -> Step:
    """
    A shell step. `cache_key` is a template ("deps-{os}-{hash:poetry.lock}");
    `cache_paths` are restored before the command and saved after it succeeds.
    """
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env=_env(env),
        cache_key=cache_key,
        cache_paths=list(cache_paths or ()),
        skip_on_cache_hit=skip_on_cache_hit,
        continue_on_error=continue_on_error,
    )


def job(
    name: str,
    *steps: Step,
    steps_list: Optional[Sequence[Step]] = None,
    needs: Optional[Sequence[str]] = None,
    required: bool = True,
    env: Optional[Mapping[str, Any]] = None,
    timeout: Optional[float] = None,
    cwd: str | None = None,
) -> Job:
    """
    Build a Job from steps given positionally and/or as steps_list (listed first).
    `cwd` becomes the working directory of every step that does not set one.
    """
    all_steps = [*(steps_list or ()), *steps]
    if not all_steps:
        raise ValueError(f"job({name!r}) must have at least one step")
    if cwd is not None:
        all_steps = [replace(s, cwd=cwd) if s.cwd is None else s for s in all_steps]

    return Job(
        name=name,
        steps=all_steps,
        needs=list(needs or ()),
        required=required,
        env=_env(env),
        timeout=timeout,
    )


class Matrix:
    """
    One job per value of a single axis:

        matrix("target", ["x86_64", "aarch64"]).jobs(
            lambda t: job(f"build-{t}", sh("Build", f"cargo build --target {t}"))
        )
    """

    def __init__(self, key: str, values: Iterable[Any]):
        self.key = key
        self.values = list(values)

    def jobs(self, builder: Callable[[Any], Job]) -> List[Job]:
        built = [builder(v) for v in self.values]
        names = [j.name for j in built]
        if len(set(names)) != len(names):
            raise ValueError(f"matrix {self.key!r}: builder must give each job a distinct name, got {names}")
        return built


def matrix(key: str, values: Iterable[Any]) -> Matrix:
    return Matrix(key, values)


def wf(*jobs: Union[Job, List[Job]]) -> List[Job]:
    """Collect jobs for workflow() or JOBS; lists (e.g. from a matrix) are spliced in."""
    out: List[Job] = []
    for item in jobs:
        out.extend(item if isinstance(item, list) else [item])
    return out
