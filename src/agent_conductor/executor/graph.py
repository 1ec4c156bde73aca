"""Dependency graph validation and ordering for plan steps."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Protocol


class PlanValidationError(ValueError):
    """Raised when a plan's step graph is not a valid DAG."""


class _GraphNode(Protocol):
    id: str
    depends_on: tuple[str, ...]


def validate_steps(steps: Sequence[_GraphNode]) -> None:
    """Reject duplicate ids, unknown dependencies and dependency cycles."""

    if not steps:
        raise PlanValidationError("Plan must contain at least one step.")

    seen: set[str] = set()
    duplicates: list[str] = []
    for step in steps:
        if not step.id:
            raise PlanValidationError("Step id must be a non-empty string.")
        if step.id in seen and step.id not in duplicates:
            duplicates.append(step.id)
        seen.add(step.id)
    if duplicates:
        raise PlanValidationError(f"Duplicate step ids: {', '.join(duplicates)}")

    for step in steps:
        unknown = [dep for dep in step.depends_on if dep not in seen]
        if unknown:
            raise PlanValidationError(
                f"Step {step.id!r} depends on unknown steps: {', '.join(unknown)}",
            )

    cycle = find_cycle(steps)
    if cycle:
        raise PlanValidationError(f"Dependency cycle detected: {' -> '.join(cycle)}")


def find_cycle(steps: Iterable[_GraphNode]) -> list[str] | None:
    """Return one dependency cycle as a closed path of step ids, or ``None``."""

    edges = {step.id: tuple(step.depends_on) for step in steps}
    white, grey, black = 0, 1, 2
    color = dict.fromkeys(edges, white)

    for root in edges:
        if color[root] != white:
            continue
        path = [root]
        pending = [iter(edges[root])]
        color[root] = grey
        while pending:
            dep = next(pending[-1], None)
            if dep is None:
                color[path.pop()] = black
                pending.pop()
                continue
            if dep not in color or color[dep] == black:
                continue
            if color[dep] == grey:
                return [*path[path.index(dep) :], dep]
            color[dep] = grey
            path.append(dep)
            pending.append(iter(edges[dep]))
    return None
