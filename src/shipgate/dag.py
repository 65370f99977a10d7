# dag.py
from __future__ import annotations

from collections import deque
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Set

from .errors import GraphCycleError, WorkflowError
from .model import ApprovalGate, Job


@dataclass(frozen=True)
class JobGraph:
    """Validated, immutable topology of one pipeline."""
    jobs: Dict[str, Job]
    dependents: Dict[str, Set[str]]   # dep -> jobs that need it
    indeg: Dict[str, int]
    gates: Dict[str, ApprovalGate]

    def blocked_by(self, gate: str) -> List[str]:
        return sorted(n for n, j in self.jobs.items() if j.gate == gate)

    def descendants(self, name: str) -> List[str]:
        """All transitive dependents of `name`, in breadth-first order."""
        seen: Set[str] = set()
        order: List[str] = []
        q = deque(sorted(self.dependents.get(name, ())))
        while q:
            node = q.popleft()
            if node in seen:
                continue
            seen.add(node)
            order.append(node)
            q.extend(sorted(self.dependents.get(node, ())))
        return order


def build_dag(jobs: List[Job]) -> tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build adjacency + in-degree maps from Job objects.

    Requires:
      - job.name: str (unique)
      - job.needs: names of jobs that must run BEFORE this job
    """
    names = [j.name for j in jobs]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise WorkflowError(f"Duplicate job names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for dep in job.needs:
            if dep not in name_set:
                raise WorkflowError(
                    f"Job '{job.name}' needs missing job '{dep}'. "
                    f"Known jobs: {sorted(name_set)}"
                )
            # Edge dep -> job.name (dep must run before job)
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, Set[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert DAG into topological "levels" (stages).
    Each stage can run in parallel. Raises GraphCycleError on a cycle.
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
        raise GraphCycleError(sorted([n for n, d in indeg.items() if d > 0]))

    return levels


def build_graph(jobs: Iterable[Job], gates: Iterable[ApprovalGate] = ()) -> JobGraph:
    """
    Validate a workflow and return its graph.

    Checks (in order): unique names, known dependencies, acyclicity,
    gate references, artifact inputs only from declared dependencies.
    """
    # gate links are written onto copies; the caller's jobs stay untouched
    jobs = [replace(j) for j in jobs]
    adj, indeg = build_dag(jobs)
    topo_levels(adj, indeg)

    by_name = {j.name: j for j in jobs}
    gate_map: Dict[str, ApprovalGate] = {}
    for g in gates:
        if g.name in gate_map:
            raise WorkflowError(f"Duplicate gate names found: {g.name}")
        gate_map[g.name] = g

    for j in jobs:
        if not j.steps and j.action is None:
            raise WorkflowError(f"Job '{j.name}' has no steps and no action")
        if j.gate is not None and j.gate not in gate_map:
            raise WorkflowError(f"Job '{j.name}' references unknown gate '{j.gate}'")
        for producer, name in j.input_refs:
            if not name:
                raise WorkflowError(f"Job '{j.name}' input '{producer}' must look like 'job/artifact'")
            if producer not in j.needs:
                raise WorkflowError(
                    f"Job '{j.name}' reads artifact '{producer}/{name}' "
                    f"but does not declare '{producer}' in needs"
                )

    for g in gate_map.values():
        for blocked in g.blocks:
            if blocked not in by_name:
                raise WorkflowError(f"Gate '{g.name}' blocks missing job '{blocked}'")
            owner = by_name[blocked].gate
            if owner is not None and owner != g.name:
                raise WorkflowError(f"Job '{blocked}' is blocked by both '{owner}' and '{g.name}'")
            by_name[blocked].gate = g.name

    # blocks is derived from job.gate so both declaration styles agree
    for g in gate_map.values():
        g.blocks = tuple(sorted(n for n, j in by_name.items() if j.gate == g.name))

    return JobGraph(jobs=by_name, dependents=adj, indeg=indeg, gates=gate_map)
