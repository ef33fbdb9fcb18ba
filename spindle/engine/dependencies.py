"""Dependency graph resolution.

Readiness is derived on every reconciliation pass from the phases of the
named sibling Tasks; nothing about it is stored. Cycles are rejected at
admission by ``find_cycle`` and never reach ``resolve``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

from spindle.enums import TaskPhase
from spindle.models.resources import Task


class Readiness(str, Enum):
    READY = "ready"
    WAITING = "waiting"
    FAILED = "failed"


@dataclass(frozen=True)
class DependencyVerdict:
    """Outcome of resolving a Task's ``depends_on`` list.

    Attributes:
        readiness: READY, WAITING or FAILED
        message: Human-readable reason (empty when ready)
        dependencies: The resolved upstream Tasks, in ``depends_on`` order
    """

    readiness: Readiness
    message: str = ""
    dependencies: tuple[Task, ...] = field(default_factory=tuple)

    @property
    def ready(self) -> bool:
        return self.readiness == Readiness.READY

    @property
    def failed(self) -> bool:
        return self.readiness == Readiness.FAILED


def resolve(task: Task, siblings: Iterable[Task]) -> DependencyVerdict:
    """Derive whether ``task``'s dependencies are satisfied.

    Failures take precedence over waiting: a single Failed or missing
    dependency fails the Task immediately even if other dependencies are
    still running.

    Args:
        task: The dependent Task
        siblings: Tasks in the same namespace

    Returns:
        DependencyVerdict
    """
    if not task.spec.depends_on:
        return DependencyVerdict(Readiness.READY)

    by_name = {t.name: t for t in siblings if t.namespace == task.namespace}
    resolved = []
    waiting_on = None

    for name in task.spec.depends_on:
        dep = by_name.get(name)
        if dep is None:
            return DependencyVerdict(Readiness.FAILED, f'Dependency "{name}" not found')
        if dep.status.phase == TaskPhase.FAILED:
            return DependencyVerdict(Readiness.FAILED, f'Dependency "{name}" failed')
        if dep.status.phase != TaskPhase.SUCCEEDED and waiting_on is None:
            waiting_on = name
        resolved.append(dep)

    if waiting_on is not None:
        return DependencyVerdict(Readiness.WAITING, f'Waiting for dependency "{waiting_on}"')
    return DependencyVerdict(Readiness.READY, dependencies=tuple(resolved))


def find_cycle(graph: Mapping[str, Sequence[str]]) -> list[str] | None:
    """Find a cycle in a dependency graph.

    Args:
        graph: Task name to the names it depends on. Names that are not
            keys are treated as leaves.

    Returns:
        The cycle as a list of names starting and ending with the same
        name, or None if the graph is acyclic
    """
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []

    def visit(name: str) -> list[str] | None:
        if name in done:
            return None
        if name in visiting:
            return path[path.index(name) :] + [name]
        visiting.add(name)
        path.append(name)
        for dep in graph.get(name, ()):
            cycle = visit(dep)
            if cycle:
                return cycle
        path.pop()
        visiting.discard(name)
        done.add(name)
        return None

    for node in sorted(graph):
        cycle = visit(node)
        if cycle:
            return cycle
    return None


def dependents_of(name: str, siblings: Iterable[Task]) -> list[Task]:
    """Return the sibling Tasks that list ``name`` in ``depends_on``."""
    return [t for t in siblings if name in t.spec.depends_on]
