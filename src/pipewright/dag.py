# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from .errors import CycleDetected, UnknownJob
from .model import Job


def build_dag(jobs: Iterable[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Job objects.

    Requires:
      - job.id: str (unique)
      - job.needs: iterable[str] (ids of jobs that must finish BEFORE this job)

    Returns (adj, indeg) where adj maps need -> dependents.
    """
    jobs = list(jobs)
    ids = [j.id for j in jobs]
    if len(set(ids)) != len(ids):
        dupes = sorted({n for n in ids if ids.count(n) > 1})
        raise ValueError(f"Duplicate job ids found: {dupes}")

    known = set(ids)
    adj: Dict[str, Set[str]] = {n: set() for n in ids}
    indeg: Dict[str, int] = {n: 0 for n in ids}

    for job in jobs:
        for need in job.needs:
            if need not in known:
                raise UnknownJob(
                    f"jobs.{job.id}.needs",
                    f"job '{job.id}' needs unknown job '{need}'. Known jobs: {sorted(known)}",
                )
            # Edge need -> job.id (need must finish before job)
            if job.id not in adj[need]:
                adj[need].add(job.id)
                indeg[job.id] += 1

    return adj, indeg


def find_cycle(needs: Mapping[str, Sequence[str]]) -> List[str] | None:
    """
    Return one dependency cycle as a job sequence that starts and ends on the
    same job (``[a, b, a]`` for "a needs b, b needs a"), or None.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {n: WHITE for n in needs}
    stack: List[str] = []

    def visit(node: str) -> List[str] | None:
        color[node] = GREY
        stack.append(node)
        for nxt in needs.get(node, ()):
            if nxt not in color:
                continue
            if color[nxt] == GREY:
                return stack[stack.index(nxt):] + [nxt]
            if color[nxt] == WHITE:
                found = visit(nxt)
                if found:
                    return found
        stack.pop()
        color[node] = BLACK
        return None

    for node in needs:
        if color[node] == WHITE:
            found = visit(node)
            if found:
                return found
    return None


def topo_order(jobs: Sequence[Job]) -> List[str]:
    """
    Kahn's algorithm with declaration order as the tie-break.

    Raises CycleDetected naming the cycle's job sequence.
    """
    adj, indeg = build_dag(jobs)
    order_of = {j.id: i for i, j in enumerate(jobs)}
    indeg = dict(indeg)  # copy (we mutate it)

    ready = sorted((n for n, d in indeg.items() if d == 0), key=order_of.__getitem__)
    out: List[str] = []
    while ready:
        node = ready.pop(0)
        out.append(node)
        for child in adj[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                ready.append(child)
        ready.sort(key=order_of.__getitem__)

    if len(out) != len(indeg):
        cycle = find_cycle({j.id: list(j.needs) for j in jobs})
        raise CycleDetected(cycle or sorted(n for n, d in indeg.items() if d > 0))
    return out


def topo_levels(jobs: Sequence[Job]) -> List[List[str]]:
    """
    Group jobs into topological "levels" (stages).
    Every job of a stage can run in parallel once earlier stages finished.
    """
    topo_order(jobs)  # raises on cycles
    adj, indeg = build_dag(jobs)
    order_of = {j.id: i for i, j in enumerate(jobs)}
    indeg = dict(indeg)

    q = deque(sorted((n for n, d in indeg.items() if d == 0), key=order_of.__getitem__))
    levels: List[List[str]] = []
    while q:
        level = [q.popleft() for _ in range(len(q))]
        levels.append(level)
        nxt: List[str] = []
        for node in level:
            for child in adj[node]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        q.extend(sorted(nxt, key=order_of.__getitem__))
    return levels


def ancestors(job_id: str, needs: Mapping[str, Sequence[str]]) -> Set[str]:
    """Every job `job_id` transitively needs."""
    seen: Set[str] = set()
    todo = list(needs.get(job_id, ()))
    while todo:
        n = todo.pop()
        if n in seen:
            continue
        seen.add(n)
        todo.extend(needs.get(n, ()))
    return seen
