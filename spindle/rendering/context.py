"""Closed template contexts for prompt and branch rendering.

Two context shapes exist and they are never mixed:

- ``ItemContext`` for templates on a TaskSpawner, built from one
  DiscoveredItem.
- ``deps``, a mapping of dependency name to ``DependencyContext``, for
  templates on a Task, built only from Succeeded dependencies.

Both are frozen so that what a template can reach is fixed up front and can
be checked at admission.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, fields
from types import MappingProxyType
from typing import Any

from spindle.enums import TaskPhase
from spindle.models.items import DiscoveredItem
from spindle.models.resources import Task


@dataclass(frozen=True)
class ItemContext:
    """Fields available to TaskSpawner prompt and branch templates."""

    id: str
    number: int
    title: str
    body: str
    url: str
    labels: str
    comments: str
    kind: str
    time: str
    schedule: str

    @classmethod
    def from_item(cls, item: DiscoveredItem) -> ItemContext:
        return cls(
            id=item.id,
            number=item.number,
            title=item.title,
            body=item.body,
            url=item.url,
            labels=", ".join(item.labels),
            comments="\n---\n".join(item.comments),
            kind=str(item.kind),
            time=item.time.isoformat().replace("+00:00", "Z") if item.time else "",
            schedule=item.schedule,
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


ITEM_FIELDS = frozenset(f.name for f in fields(ItemContext))
TASK_FIELDS = frozenset({"deps"})


@dataclass(frozen=True)
class DependencyContext:
    """What a downstream template may read from one upstream Task."""

    name: str
    results: MappingProxyType
    outputs: tuple[str, ...]

    @classmethod
    def from_task(cls, task: Task) -> DependencyContext:
        return cls(
            name=task.name,
            results=MappingProxyType(dict(task.status.results)),
            outputs=tuple(task.status.outputs),
        )


def dependency_context(dependencies: Iterable[Task]) -> dict[str, Any]:
    """Build the ``deps`` template context from upstream Tasks.

    Only Succeeded Tasks are included, so a template can never observe the
    results of an upstream Task that is still running.
    """
    deps = {
        task.name: DependencyContext.from_task(task)
        for task in dependencies
        if task.status.phase == TaskPhase.SUCCEEDED
    }
    return {"deps": MappingProxyType(deps)}
