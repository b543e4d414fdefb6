# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from .errors import ErrorKind, ValidationError
from .model import Job


@dataclass(frozen=True)
class JobGraph:
    """
    Validated job DAG.

    adj:   job -> jobs that need it (edge dep -> dependent)
    needs: job -> jobs it needs, in declaration order
    order: topological order, stable with respect to declaration order
    """
    jobs: Dict[str, Job]
    adj: Dict[str, Set[str]]
    needs: Dict[str, List[str]]
    order: List[str]
    levels: List[List[str]]

    def dependents(self, name: str) -> Set[str]:
        return self.adj.get(name, set())

    def ancestors(self, name: str) -> Set[str]:
        """All jobs `name` transitively depends on."""
        seen: Set[str] = set()
        stack = list(self.needs.get(name, []))
        while stack:
            n = stack.pop()
            if n not in seen:
                seen.add(n)
                stack.extend(self.needs.get(n, []))
        return seen


def _find_cycle(names: List[str], needs: Dict[str, List[str]], stuck: Set[str]) -> List[str]:
    """
    Return one witness cycle among the stuck nodes, as a closed path
    (first id repeated at the end), following `needs` edges.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in names}
    path: List[str] = []

    def visit(node: str) -> Optional[List[str]]:
        color[node] = GREY
        path.append(node)
        for dep in needs.get(node, []):
            if dep not in stuck:
                continue
            if color[dep] == GREY:
                return path[path.index(dep):] + [dep]
            if color[dep] == WHITE:
                found = visit(dep)
                if found:
                    return found
        path.pop()
        color[node] = BLACK
        return None

    for start in names:
        if start in stuck and color[start] == WHITE:
            found = visit(start)
            if found:
                return found
    return sorted(stuck)


def build_graph(jobs: Iterable[Job]) -> JobGraph:
    """
    Build a DAG from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must reach a terminal state BEFORE this job
    """
    jobs = list(jobs)
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise ValidationError(
            kind=ErrorKind.DUPLICATE_JOB,
            message=f"Duplicate job names found: {dupes}",
            details={"jobs": dupes},
        )

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    needs: Dict[str, List[str]] = {n: [] for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for job in jobs:
        for dep in job.needs:
            if dep not in name_set:
                raise ValidationError(
                    kind=ErrorKind.UNKNOWN_DEPENDENCY,
                    message=f"Job '{job.name}' needs missing job '{dep}'. Known jobs: {sorted(name_set)}",
                    job=job.name,
                    details={"needs": dep},
                )
            # Edge dep -> job.name (dep must finish before job)
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                needs[job.name].append(dep)
                indeg[job.name] += 1

    order, levels = topo_levels(names, adj, indeg)
    if len(order) != len(names):
        stuck = {n for n in names if n not in set(order)}
        cycle = _find_cycle(names, needs, stuck)
        raise ValidationError(
            kind=ErrorKind.CYCLE,
            message=f"Dependency cycle: {' -> '.join(cycle)}",
            details={"cycle": cycle},
        )

    return JobGraph(
        jobs={j.name: j for j in jobs},
        adj=adj,
        needs=needs,
        order=order,
        levels=levels,
    )


def topo_levels(names: List[str], adj: Dict[str, Set[str]], indeg: Dict[str, int]):
    """
    Kahn's algorithm, level by level. Each level only depends on earlier
    levels, so its jobs may overlap freely. Ties keep declaration order.

    Returns (order, levels); order is shorter than names when there is a cycle.
    """
    position = {n: i for i, n in enumerate(names)}
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(n for n in names if indeg[n] == 0)

    order: List[str] = []
    levels: List[List[str]] = []

    while q:
        level = list(q)
        q.clear()
        levels.append(level)
        order.extend(level)

        released: List[str] = []
        for node in level:
            for child in adj.get(node, set()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    released.append(child)
        q.extend(sorted(released, key=position.__getitem__))

    return order, levels
