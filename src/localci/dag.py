# dag.py
from __future__ import annotations

import re
from collections import deque
from typing import Dict, Iterable, List, Mapping, Set, Tuple

from .model import Job, Pipeline, UsesAction

# owner/repo[/path]@ref, a local action, or a docker image
_ACTION_REF = re.compile(r"^(\./.+|docker://.+|[\w.-]+/[\w.\-/]+@[\w.\-/]+)$")


# ----------------------------------------------------------------------
# Validation
# ----------------------------------------------------------------------

def find_cycles(jobs: Mapping[str, Job]) -> List[List[str]]:
    """
    Depth-first search over `needs` edges, carrying the current path.

    Revisiting a job that is already on the path closes a cycle; the cycle
    is returned as an ordered chain that starts and ends with the same job.
    A cycle found from different entry points is only reported once.
    """
    cycles: List[List[str]] = []
    seen: Set[Tuple[str, ...]] = set()
    done: Set[str] = set()

    def visit(name: str, path: List[str], on_path: Set[str]) -> None:
        for dep in jobs[name].needs:
            if dep not in jobs:
                continue
            if dep in on_path:
                loop = path[path.index(dep):]
                # rotate so the same cycle always has the same key
                pivot = loop.index(min(loop))
                key = tuple(loop[pivot:] + loop[:pivot])
                if key not in seen:
                    seen.add(key)
                    cycles.append(loop + [dep])
            elif dep not in done:
                path.append(dep)
                on_path.add(dep)
                visit(dep, path, on_path)
                on_path.discard(dep)
                path.pop()
        done.add(name)

    for name in jobs:
        if name not in done:
            visit(name, [name], {name})
    return cycles


def validate_pipeline(pipeline: Pipeline, strict: bool = False) -> List[str]:
    """
    Collect every structural problem of a pipeline.

    Never raises and never orders jobs; an empty list means the pipeline
    can be scheduled. `strict` adds checks for values that are legal to
    parse but almost certainly mistakes.
    """
    errors: List[str] = []
    jobs = pipeline.jobs

    if strict and not pipeline.name.strip():
        errors.append("pipeline name is empty")

    if not jobs:
        errors.append("pipeline has no jobs")
        return errors

    declared_stages = set(pipeline.stages)

    for name, job in jobs.items():
        if not job.steps and job.trigger is None:
            errors.append(f"job '{name}' has no steps")

        if declared_stages and job.stage and job.stage not in declared_stages:
            errors.append(f"job '{name}' references undefined stage '{job.stage}'")

        for dep in job.needs:
            if dep not in jobs:
                errors.append(f"job '{name}' needs unknown job '{dep}'")

        if strict:
            errors.extend(_strict_job_errors(job))

    if strict:
        errors.extend(_env_key_errors("pipeline", pipeline.env))

    for cycle in find_cycles(jobs):
        errors.append("circular dependency detected: " + " -> ".join(cycle))

    return errors


def _env_key_errors(owner: str, env: Mapping[str, str]) -> List[str]:
    if any(not key.strip() for key in env):
        return [f"{owner} has an environment variable with an empty name"]
    return []


def _strict_job_errors(job: Job) -> List[str]:
    errors: List[str] = []
    name = job.name

    if not job.has_target and job.trigger is None:
        errors.append(f"job '{name}' has no runner (runs_on, image, container or tags)")
    if job.timeout_minutes < 0:
        errors.append(f"job '{name}' has a negative timeout")
    errors.extend(_env_key_errors(f"job '{name}'", job.env))

    for index, step in enumerate(job.steps, start=1):
        label = f"job '{name}' step {index} ('{step.name}')"
        if not step.command_text.strip():
            errors.append(f"{label} has an empty command")
        if isinstance(step.action, UsesAction) and step.command_text.strip():
            if not _ACTION_REF.match(step.action.action):
                errors.append(f"{label} uses a malformed action reference '{step.action.action}'")
        if step.timeout_minutes < 0:
            errors.append(f"{label} has a negative timeout")
        errors.extend(_env_key_errors(label, step.env))

    if job.artifacts is not None and not job.artifacts.paths:
        errors.append(f"job '{name}' defines artifacts without paths")
    if job.cache is not None and not job.cache.paths:
        errors.append(f"job '{name}' defines a cache without paths")
    return errors


# ----------------------------------------------------------------------
# Ordering
# ----------------------------------------------------------------------

def build_dag(jobs: Iterable[Job]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build adjacency (dependency -> dependents) and in-degrees for a job set.

    Needs that point outside the given set are ignored: a filtered run only
    orders the jobs it was asked to run.
    """
    jobs = list(jobs)
    name_set = {j.name for j in jobs}
    adj: Dict[str, Set[str]] = {n: set() for n in name_set}
    indeg: Dict[str, int] = {n: 0 for n in name_set}

    for job in jobs:
        for dep in job.needs:
            if dep not in name_set:
                continue
            if job.name not in adj[dep]:
                adj[dep].add(job.name)
                indeg[job.name] += 1

    return adj, indeg


def topo_levels(
    adj: Dict[str, Set[str]],
    indeg: Dict[str, int],
    order: Mapping[str, int] | None = None,
) -> List[List[str]]:
    """
    Convert DAG into topological "levels".
    Every job in a level only depends on jobs of earlier levels.
    """
    rank = order or {}

    def sort_key(name: str) -> Tuple[int, str]:
        return rank.get(name, len(rank)), name

    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted((n for n, d in indeg.items() if d == 0), key=sort_key))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level = [q.popleft() for _ in range(len(q))]
        processed += len(level)
        nxt: List[str] = []
        for node in level:
            for child in adj.get(node, set()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    nxt.append(child)
        q.extend(sorted(nxt, key=sort_key))
        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise ValueError(f"DAG has a cycle. Stuck jobs: {remaining}")

    return levels


def dependency_levels(jobs: List[Job]) -> List[List[str]]:
    """Topological levels for `jobs`, keeping their given order inside a level."""
    adj, indeg = build_dag(jobs)
    return topo_levels(adj, indeg, {j.name: i for i, j in enumerate(jobs)})
