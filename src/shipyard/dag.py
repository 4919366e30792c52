# dag.py
from __future__ import annotations

from typing import Dict, Iterator, List, Set, Tuple

from .errors import ConfigurationError, CyclicDependency
from .model import Job


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, List[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must run BEFORE this job)

    Returns (adj, indeg) where adj maps a job to its dependents in declaration
    order and indeg counts each job's distinct dependencies.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ConfigurationError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, List[str]] = {n: [] for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for need in job.needs or []:
            if need not in name_set:
                raise ConfigurationError(
                    f"Job '{job.name}' needs missing job '{need}'",
                    job=job.name,
                    details={"known_jobs": sorted(name_set)},
                )
            # Edge need -> job.name (need must run before job)
            if job.name not in adj[need]:
                adj[need].append(job.name)
                indeg[job.name] += 1

    return adj, indeg


def find_cycle(adj: Dict[str, List[str]], nodes: List[str]) -> List[str]:
    """
    Return one cycle among `nodes` as [a, b, ..., a], following edges in adj.

    `nodes` are the jobs left with a non-zero in-degree after Kahn's
    algorithm: every cycle lies inside that set, plus whatever hangs off it.
    """
    stuck = set(nodes)

    def children(n: str) -> Iterator[str]:
        return iter([c for c in adj.get(n, []) if c in stuck])

    state: Dict[str, int] = {}  # 1 = on current path, 2 = fully explored
    for start in nodes:
        if start in state:
            continue
        state[start] = 1
        path = [start]
        stack = [children(start)]
        while stack:
            child = next(stack[-1], None)
            if child is None:
                state[path.pop()] = 2
                stack.pop()
                continue
            if state.get(child) == 1:
                return path[path.index(child):] + [child]
            if child not in state:
                state[child] = 1
                path.append(child)
                stack.append(children(child))
    return []


def topo_levels(jobs: List[Job]) -> List[List[str]]:
    """
    Convert the job graph into topological "ready sets" (stages).

    Every job in a set has all of its dependencies in earlier sets, so a set
    can run in parallel. Within a set, jobs keep their declaration order.
    """
    adj, indeg = build_dag(jobs)
    order = {j.name: i for i, j in enumerate(jobs)}
    indeg = dict(indeg)  # copy (we mutate it)

    current = [j.name for j in jobs if indeg[j.name] == 0]
    levels: List[List[str]] = []
    processed = 0

    while current:
        levels.append(current)
        processed += len(current)
        nxt: Set[str] = set()
        for node in current:
            for child in adj[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.add(child)
        current = sorted(nxt, key=order.__getitem__)

    if processed != len(indeg):
        remaining = [j.name for j in jobs if indeg[j.name] > 0]
        cycle = find_cycle(adj, remaining)
        raise CyclicDependency(
            "Job graph has a dependency cycle",
            details={"stuck": remaining},
            cycle=cycle,
        )

    return levels


def execution_order(jobs: List[Job]) -> List[str]:
    """Flatten the ready sets into one valid topological order."""
    return [name for level in topo_levels(jobs) for name in level]
