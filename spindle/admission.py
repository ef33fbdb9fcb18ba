"""Admission checks run by the resource store before a write is accepted.

Everything rejected here is a ``ValidationError`` and never reaches the
controllers: cyclic ``depends_on`` graphs, templates that do not parse or
reference names outside their closed context, and malformed cron schedules.
Schema-level checks are already done by the pydantic models.
"""

from __future__ import annotations

from collections.abc import Iterable

import structlog
from croniter import croniter

from spindle.engine.dependencies import find_cycle
from spindle.exceptions import ValidationError
from spindle.models.resources import Resource, Task, TaskSpawner
from spindle.rendering import ITEM_FIELDS, TASK_FIELDS, TemplateRenderer

log = structlog.get_logger(__name__)


class Admission:
    """Validate resources against the rest of the store."""

    def __init__(self, renderer: TemplateRenderer | None = None) -> None:
        self.renderer = renderer or TemplateRenderer()

    def admit(self, resource: Resource, existing: Iterable[Resource] = ()) -> None:
        """Validate a resource about to be created or updated.

        Args:
            resource: Incoming resource
            existing: Resources of the same kind already in the store

        Raises:
            ValidationError: If the resource must be rejected
        """
        if isinstance(resource, Task):
            self._admit_task(resource, [r for r in existing if isinstance(r, Task)])
        elif isinstance(resource, TaskSpawner):
            self._admit_spawner(resource)

    def _admit_task(self, task: Task, existing: list[Task]) -> None:
        if task.name in task.spec.depends_on:
            raise ValidationError("a Task cannot depend on itself", field="spec.depends_on")

        graph = {t.name: list(t.spec.depends_on) for t in existing if t.namespace == task.namespace}
        graph[task.name] = list(task.spec.depends_on)
        cycle = find_cycle(graph)
        if cycle:
            log.info("task_rejected_cycle", task=task.key, cycle=cycle)
            raise ValidationError(f"dependency cycle: {' -> '.join(cycle)}", field="spec.depends_on")

        deps = task.spec.depends_on
        # Literal Tasks and Tasks without dependencies are used verbatim.
        if task.spec.literal or not deps:
            return
        self.renderer.check_syntax(task.spec.prompt, TASK_FIELDS, field="spec.prompt", dependencies=deps)
        if task.spec.branch:
            self.renderer.check_syntax(task.spec.branch, TASK_FIELDS, field="spec.branch", dependencies=deps)

    def _admit_spawner(self, spawner: TaskSpawner) -> None:
        template = spawner.spec.task_template
        if template.prompt_template:
            self.renderer.check_syntax(template.prompt_template, ITEM_FIELDS, field="spec.task_template.prompt_template")
        if template.branch:
            self.renderer.check_syntax(template.branch, ITEM_FIELDS, field="spec.task_template.branch")
        for i, dep in enumerate(template.depends_on):
            self.renderer.check_syntax(dep, ITEM_FIELDS, field=f"spec.task_template.depends_on[{i}]")

        cron = spawner.spec.when.cron
        if cron is not None and not croniter.is_valid(cron.schedule):
            raise ValidationError(f"invalid cron schedule: {cron.schedule!r}", field="spec.when.cron.schedule")
