"""
TaskSpawner controller: discover external items and create Tasks for them.

Each poll:

1. A suspended spawner only records that it is suspended.
2. The source adapter is queried. A ``SourceError`` is logged and the poll
   ends with nothing changed; the next poll tries again.
3. Items are filtered by required and excluded labels.
4. Items that already have a Task are skipped. The set of spawned items is
   derived from the Tasks the spawner owns (their ``spindle.dev/item-id``
   label), so it survives restarts without a separate index.
5. New items are turned into Tasks in discovery order until the
   concurrency budget (``max_concurrency`` non-terminal Tasks) or the
   lifetime budget (``max_total_tasks``) runs out. Task names are derived
   from the item ID, so two racing polls cannot create the same Task twice.
6. Status is written on every poll, whatever happened.
"""

from __future__ import annotations

import asyncio
import hashlib
import re
from collections.abc import Callable
from datetime import datetime

import structlog

from spindle.config.settings import ControllerSettings
from spindle.engine.types import DONE, Clock, ReconcileResult, utc_now
from spindle.enums import TaskSpawnerPhase
from spindle.exceptions import (
    AlreadyExistsError,
    ConflictError,
    NotFoundError,
    SourceError,
    TemplateError,
    ValidationError,
)
from spindle.models.items import DiscoveredItem
from spindle.models.resources import (
    ITEM_ID_LABEL,
    TASKSPAWNER_LABEL,
    Condition,
    ObjectMeta,
    Task,
    TaskSpawner,
    TaskSpawnerStatus,
    TaskSpec,
)
from spindle.rendering import DEFAULT_PROMPT_TEMPLATE, ItemContext, TemplateRenderer
from spindle.sources.filters import apply_filter
from spindle.sources.registry import SourceRegistry
from spindle.store import ResourceStore
from spindle.utils.retry import async_retry

log = structlog.get_logger(__name__)

CONDITION_SUSPENDED = "Suspended"
CONDITION_BUDGET_EXHAUSTED = "TaskBudgetExhausted"

StatusMutation = Callable[[TaskSpawnerStatus], None]

_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9-]+")
_MAX_NAME_LENGTH = 63
_DIGEST_LENGTH = 8


def task_name(spawner: str, item_id: str) -> str:
    """Deterministic Task name for an item: ``<spawner>-<id>``.

    An ID that cannot be used in a name as it is gets sanitized and
    shortened, and a hash of the raw ID is appended so that distinct IDs
    still get distinct names.
    """
    suffix = _INVALID_NAME_CHARS.sub("-", item_id.lower()).strip("-") or "item"
    name = f"{spawner}-{suffix}"
    if suffix == item_id and len(name) <= _MAX_NAME_LENGTH:
        return name
    digest = hashlib.sha256(item_id.encode("utf-8")).hexdigest()[:_DIGEST_LENGTH]
    head = name[: _MAX_NAME_LENGTH - _DIGEST_LENGTH - 1].rstrip("-.")
    return f"{head}-{digest}"


class TaskSpawnerController:
    """Reconcile TaskSpawners: poll sources and create Tasks."""

    def __init__(
        self,
        store: ResourceStore,
        sources: SourceRegistry,
        renderer: TemplateRenderer | None = None,
        settings: ControllerSettings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.sources = sources
        self.renderer = renderer or TemplateRenderer()
        self.settings = settings or ControllerSettings()
        self.clock = clock

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        return await self.run_cycle(namespace, name)

    async def run(self, namespace: str, name: str) -> None:
        """Poll a single spawner until it is deleted."""
        while True:
            result = await self.run_cycle(namespace, name)
            if result.requeue_after is None:
                return
            await asyncio.sleep(result.requeue_after)

    async def run_cycle(self, namespace: str, name: str) -> ReconcileResult:
        """Run one discovery poll for a spawner.

        Returns:
            A result asking to be requeued after the poll interval, or DONE
            if the spawner no longer exists
        """
        try:
            spawner = await self.store.get(TaskSpawner.kind, namespace, name)
        except NotFoundError:
            return DONE
        assert isinstance(spawner, TaskSpawner)

        poll = ReconcileResult(requeue_after=spawner.spec.poll_interval_seconds)
        now = self.clock()
        owned = await self._owned_tasks(spawner)
        active = sum(1 for t in owned if not t.status.phase.is_terminal)

        if spawner.spec.suspend:
            await self._record_suspended(spawner, active, now)
            return poll

        try:
            items = await self._discover(spawner, now)
        except SourceError as e:
            log.warning("spawner_discovery_failed", spawner=spawner.key, error=str(e))
            return poll

        items = apply_filter(items, spawner.spec.when.github_issues)
        spawned = {t.metadata.labels[ITEM_ID_LABEL] for t in owned if ITEM_ID_LABEL in t.metadata.labels}
        new_items = [item for item in items if item.id not in spawned]

        max_total = spawner.spec.max_total_tasks
        max_concurrency = spawner.spec.max_concurrency
        total_created = spawner.status.total_tasks_created
        created = 0

        for item in new_items:
            if max_total and total_created >= max_total:
                log.info("spawner_task_budget_exhausted", spawner=spawner.key, max_total_tasks=max_total)
                break
            if max_concurrency and active >= max_concurrency:
                log.info("spawner_concurrency_limit", spawner=spawner.key, active=active, limit=max_concurrency)
                break

            try:
                task = self._build_task(spawner, item)
            except TemplateError as e:
                log.warning("spawner_render_failed", spawner=spawner.key, item=item.id, error=e.message)
                continue

            try:
                await self.store.create(task)
            except AlreadyExistsError:
                await self._report_name_clash(spawner, task, item)
                continue
            except ValidationError as e:
                log.warning("spawner_task_rejected", spawner=spawner.key, item=item.id, error=str(e))
                continue

            total_created += 1
            active += 1
            created += 1
            log.info("spawner_task_created", spawner=spawner.key, task=task.name, item=item.id)

        discovered = len(spawned | {item.id for item in items})
        exhausted = bool(max_total) and total_created >= max_total

        def record_poll(status: TaskSpawnerStatus) -> None:
            status.phase = TaskSpawnerPhase.RUNNING
            status.total_discovered = discovered
            status.total_tasks_created = total_created
            status.active_tasks = active
            status.last_discovery_time = now
            status.message = f"Discovered {len(items)} items, created {total_created} tasks total"
            status.set_condition(
                Condition(
                    type=CONDITION_SUSPENDED,
                    status=False,
                    reason="Active",
                    last_transition_time=now,
                )
            )
            status.set_condition(
                Condition(
                    type=CONDITION_BUDGET_EXHAUSTED,
                    status=exhausted,
                    reason="MaxTotalTasksReached" if exhausted else "BudgetAvailable",
                    message=f"Created {total_created} of {max_total} tasks" if max_total else "",
                    last_transition_time=now,
                )
            )

        await self._update_status(spawner, record_poll)
        log.info(
            "spawner_poll_complete",
            spawner=spawner.key,
            discovered=len(items),
            new=len(new_items),
            created=created,
            active=active,
        )
        return poll

    async def _report_name_clash(self, spawner: TaskSpawner, task: Task, item: DiscoveredItem) -> None:
        try:
            existing = await self.store.get(Task.kind, task.namespace, task.name)
        except NotFoundError:
            return
        if existing.metadata.labels.get(ITEM_ID_LABEL) == item.id:
            log.debug("spawner_task_exists", spawner=spawner.key, task=task.name)
            return
        log.warning(
            "spawner_task_name_taken",
            spawner=spawner.key,
            task=task.name,
            item=item.id,
            owner=existing.metadata.owner,
        )

    async def _owned_tasks(self, spawner: TaskSpawner) -> list[Task]:
        tasks = await self.store.list(Task.kind, spawner.namespace, labels={TASKSPAWNER_LABEL: spawner.name})
        return [t for t in tasks if isinstance(t, Task)]

    async def _discover(self, spawner: TaskSpawner, now: datetime) -> list[DiscoveredItem]:
        source = await self.sources.for_spawner(spawner)
        when = spawner.spec.when
        if when.cron is not None:
            since = spawner.status.last_discovery_time or spawner.metadata.creation_timestamp or now
            return await source.tick(when.cron.schedule, now, since)
        assert when.github_issues is not None
        return await source.list(when.github_issues)

    def _build_task(self, spawner: TaskSpawner, item: DiscoveredItem) -> Task:
        """Render the task template against one item.

        The result is final: item text may contain template syntax of its
        own, so the Task is marked literal and never rendered again.

        Raises:
            TemplateError: If any templated field fails to render
        """
        template = spawner.spec.task_template
        context = ItemContext.from_item(item).as_dict()

        prompt = self.renderer.render(template.prompt_template or DEFAULT_PROMPT_TEMPLATE, context)
        branch = self.renderer.render(template.branch, context).strip() if template.branch else None
        depends_on = [self.renderer.render(dep, context) for dep in template.depends_on]
        overrides = template.overrides.model_copy(deep=True)
        overrides.env = {k: self.renderer.render(v, context) for k, v in overrides.env.items()}

        return Task(
            metadata=ObjectMeta(
                name=task_name(spawner.name, item.id),
                namespace=spawner.namespace,
                labels={TASKSPAWNER_LABEL: spawner.name, ITEM_ID_LABEL: item.id},
                owner=spawner.name,
            ),
            spec=TaskSpec(
                type=template.type,
                prompt=prompt,
                credentials=template.credentials,
                model=template.model,
                image=template.image,
                workspace_ref=template.workspace_ref,
                agent_config_ref=template.agent_config_ref,
                depends_on=depends_on,
                branch=branch or None,
                ttl_seconds_after_finished=template.ttl_seconds_after_finished,
                overrides=overrides,
                literal=True,
            ),
        )

    async def _record_suspended(self, spawner: TaskSpawner, active: int, now: datetime) -> None:
        if (
            spawner.status.phase == TaskSpawnerPhase.SUSPENDED
            and spawner.status.active_tasks == active
        ):
            return

        def record_suspended(status: TaskSpawnerStatus) -> None:
            status.phase = TaskSpawnerPhase.SUSPENDED
            status.active_tasks = active
            status.message = "Suspended"
            status.set_condition(
                Condition(
                    type=CONDITION_SUSPENDED,
                    status=True,
                    reason="Suspended",
                    message="Discovery is suspended",
                    last_transition_time=now,
                )
            )

        await self._update_status(spawner, record_suspended)
        log.info("spawner_suspended", spawner=spawner.key, active=active)

    async def _update_status(self, spawner: TaskSpawner, mutate: StatusMutation) -> None:
        retrying = async_retry(
            max_attempts=self.settings.status_retry_attempts,
            base_delay=0.05,
            exceptions=(ConflictError,),
        )(self._write_status)
        try:
            await retrying(spawner.namespace, spawner.name, mutate)
        except NotFoundError:
            log.info("spawner_vanished_during_update", spawner=spawner.key)

    async def _write_status(self, namespace: str, name: str, mutate: StatusMutation) -> None:
        current = await self.store.get(TaskSpawner.kind, namespace, name)
        assert isinstance(current, TaskSpawner)
        mutate(current.status)
        await self.store.update_status(current)
