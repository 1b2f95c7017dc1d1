# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Set, Tuple

from .errors import CycleError, DefinitionError
from .model import Stage


def build_dag(stages: List[Stage]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build a DAG from Stage objects.

    Requires:
      - stage.name: str (unique)
      - stage.depends_on: names of stages that must reach a terminal state BEFORE this one
    """
    names = [s.name for s in stages]
    if len(set(names)) != len(names):
        dupes = sorted({n for n in names if names.count(n) > 1})
        raise DefinitionError(f"Duplicate stage names found: {dupes}")

    name_set = set(names)
    adj: Dict[str, Set[str]] = {n: set() for n in names}
    indeg: Dict[str, int] = {n: 0 for n in names}

    for stage in stages:
        for dep in stage.depends_on or []:
            if dep not in name_set:
                raise DefinitionError(
                    f"Stage '{stage.name}' depends on missing stage '{dep}'. "
                    f"Known stages: {sorted(name_set)}"
                )
            if dep == stage.name:
                raise CycleError(stuck=[stage.name])
            # edge dep -> stage.name
            if stage.name not in adj[dep]:
                adj[dep].add(stage.name)
                indeg[stage.name] += 1

    return adj, indeg


def topo_levels(stages: List[Stage]) -> List[List[str]]:
    """
    Group stages into topological "levels". Stages of one level have no
    dependencies on each other. Within a level, declaration order is kept.
    """
    adj, indeg = build_dag(stages)
    order = {s.name: i for i, s in enumerate(stages)}
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted((n for n, d in indeg.items() if d == 0), key=order.__getitem__))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []
        unlocked: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in adj.get(node, set()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    unlocked.append(child)

        q.extend(sorted(unlocked, key=order.__getitem__))
        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise CycleError(stuck=remaining)

    return levels


def topo_order(stages: List[Stage]) -> List[str]:
    """A single valid execution order (levels flattened)."""
    return [name for level in topo_levels(stages) for name in level]
