"""Dependency graph resolution for work items.

Edges point from an item to the items it depends on. All functions take a
mapping of id -> WorkItem (or anything exposing ``id``, ``status`` and
``dependencies``) and are pure.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from loguru import logger

from .models import WorkItem, WorkItemStatus


def index_items(items: Iterable[WorkItem]) -> dict[str, WorkItem]:
    return {item.id: item for item in items}


def missing_dependencies(item: WorkItem, all_items: Mapping[str, WorkItem]) -> list[str]:
    """Dependency ids of *item* that do not resolve to a known item."""
    return [dep for dep in item.dependencies if dep not in all_items]


def is_ready(item: WorkItem, all_items: Mapping[str, WorkItem]) -> bool:
    """True iff every dependency of *item* exists and is done.

    A missing dependency is never treated as satisfied.
    """
    for dep_id in item.dependencies:
        dep = all_items.get(dep_id)
        if dep is None:
            logger.debug(f"Work item {item.id} depends on unknown item {dep_id}")
            return False
        if dep.status != WorkItemStatus.DONE:
            return False
    return True


def detect_cycle(item_id: str, all_items: Mapping[str, WorkItem]) -> bool:
    """True if a cycle is reachable from *item_id* along dependency edges.

    Iterative DFS with one traversal-wide on-stack set and a finished set.
    Unknown ids are treated as leaves.
    """
    if item_id not in all_items:
        return False

    on_stack: set[str] = set()
    finished: set[str] = set()
    # Each frame: (node, iterator over its dependencies)
    stack = [(item_id, iter(all_items[item_id].dependencies))]
    on_stack.add(item_id)

    while stack:
        node, deps = stack[-1]
        for dep in deps:
            if dep in on_stack:
                return True
            if dep in finished or dep not in all_items:
                continue
            on_stack.add(dep)
            stack.append((dep, iter(all_items[dep].dependencies)))
            break
        else:
            stack.pop()
            on_stack.discard(node)
            finished.add(node)
    return False


def find_cycles(all_items: Mapping[str, WorkItem]) -> list[list[str]]:
    """Every cycle found across the graph, one per back edge.

    Each cycle is an ordered id list ``[a, b, ..., a's predecessor]`` where
    each element depends on the next and the last depends on the first.
    Rotations of the same cycle are reported once.
    """
    cycles: list[list[str]] = []
    seen: set[tuple[str, ...]] = set()
    finished: set[str] = set()

    for root in all_items:
        if root in finished:
            continue
        path: list[str] = [root]
        position = {root: 0}
        stack = [iter(all_items[root].dependencies)]

        while stack:
            for dep in stack[-1]:
                if dep in position:
                    cycle = path[position[dep] :]
                    key = _canonical(cycle)
                    if key not in seen:
                        seen.add(key)
                        cycles.append(cycle)
                    continue
                if dep in finished or dep not in all_items:
                    continue
                position[dep] = len(path)
                path.append(dep)
                stack.append(iter(all_items[dep].dependencies))
                break
            else:
                stack.pop()
                done = path.pop()
                del position[done]
                finished.add(done)

    return cycles


def _canonical(cycle: list[str]) -> tuple[str, ...]:
    start = cycle.index(min(cycle))
    return tuple(cycle[start:] + cycle[:start])


def dependents_of(item_id: str, all_items: Mapping[str, WorkItem]) -> list[str]:
    """Ids of items that list *item_id* as a dependency (the inverse edges)."""
    return [other.id for other in all_items.values() if item_id in other.dependencies]


def build_blocks(items: Iterable[WorkItem]) -> None:
    """Fill each item's ``blocks`` list from the dependency edges, in place."""
    by_id = index_items(items)
    for item in by_id.values():
        item.blocks = []
    for item in by_id.values():
        for dep_id in item.dependencies:
            dep = by_id.get(dep_id)
            if dep is not None and item.id not in dep.blocks:
                dep.blocks.append(item.id)
