# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Set, Tuple

from .gates import parse_gate
from .model import Job


def build_dag(jobs: List[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: iterable[str] (names of jobs that must finish BEFORE this job)

    Also checks that every `needs.<job>` reference inside a gate names a
    declared predecessor, so a typo fails before the run instead of halfway.
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValueError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for dep in job.needs:
            if dep not in name_set:
                raise ValueError(
                    f"Job '{job.name}' needs missing job '{dep}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            if dep == job.name:
                raise ValueError(f"Job '{job.name}' needs itself")
            # edge dep -> job.name
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

        undeclared = parse_gate(job.if_).referenced_needs() - set(job.needs)
        if undeclared:
            raise ValueError(
                f"Job '{job.name}' gate references {sorted(undeclared)} "
                f"which are not in its needs {job.needs}"
            )

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted([n for n, d in indeg.items() if d == 0]))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        remaining = sorted([n for n, d in indeg.items() if d > 0])
        raise ValueError(f"DAG has a cycle. Stuck jobs: {remaining}")

    return levels


def ancestors(name: str, parents: Dict[str, Iterable[str]]) -> Set[str]:
    """All transitive predecessors of `name`."""
    seen: Set[str] = set()
    stack = list(parents.get(name, ()))
    while stack:
        p = stack.pop()
        if p in seen:
            continue
        seen.add(p)
        stack.extend(parents.get(p, ()))
    return seen


def plan(jobs: List[Job]) -> List[List[str]]:
    """Validate jobs and return their execution stages."""
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg)
