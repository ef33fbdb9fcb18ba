"""
Controller manager: the work queue that drives the Task and TaskSpawner
controllers.

Reconciliation is level-triggered. A key (kind, namespace, name) is put on
the queue whenever something it depends on may have changed: a watch event
on the resource itself or on a related resource, a requeue timer asked for
by the previous pass, or the periodic resync. The queue has client-go
work-queue semantics:

- a key sits on the queue at most once;
- a key is never processed by two workers at the same time; if it is
  enqueued while being processed it is marked dirty and re-queued as soon as
  the current pass ends;
- distinct keys are processed in parallel by ``workers`` workers.

Related-resource fan-out on a Task event:

- Tasks that depend on it;
- Tasks sharing its effective branch;
- Tasks owned by the same spawner;
- the owning spawner, when the Task finishes (capacity was freed).

Spawners are polled on their own ``poll_interval`` timer and whenever their
spec changes, never on their own status writes.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any

import structlog

from spindle.config.settings import ControllerSettings
from spindle.engine.metrics import MetricsCollector
from spindle.engine.spawner_controller import TaskSpawnerController
from spindle.engine.task_controller import TaskController
from spindle.engine.types import ReconcileResult
from spindle.models.resources import AgentConfig, Task, TaskSpawner, Workspace
from spindle.store import ResourceStore, WatchEvent, WatchEventType
from spindle.utils.logging_config import reconcile_context

log = structlog.get_logger(__name__)

Key = tuple[str, str, str]


class ControllerManager:
    """Run the Task and TaskSpawner controllers off one work queue."""

    def __init__(
        self,
        store: ResourceStore,
        task_controller: TaskController,
        spawner_controller: TaskSpawnerController,
        settings: ControllerSettings | None = None,
    ) -> None:
        self.store = store
        self.task_controller = task_controller
        self.spawner_controller = spawner_controller
        self.settings = settings or ControllerSettings()

        self._queue: asyncio.Queue[Key] = asyncio.Queue()
        self._queued: set[Key] = set()
        self._in_flight: set[Key] = set()
        self._dirty: set[Key] = set()
        self._timers: dict[Key, asyncio.TimerHandle] = {}
        self._spawner_specs: dict[Key, dict[str, Any]] = {}
        self._background: list[asyncio.Task[None]] = []

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def enqueue(self, key: Key) -> None:
        """Schedule a key for reconciliation."""
        if self.settings.namespace and key[1] != self.settings.namespace:
            return
        if key in self._in_flight:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def enqueue_after(self, key: Key, delay: float) -> None:
        """Schedule a key for reconciliation after ``delay`` seconds."""
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire_timer, key)

    def _fire_timer(self, key: Key) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    @property
    def idle(self) -> bool:
        return not self._queued and not self._in_flight

    async def process_next(self) -> Key:
        """Take one key off the queue and reconcile it."""
        key = await self._queue.get()
        self._queued.discard(key)
        self._in_flight.add(key)
        try:
            with reconcile_context(*key):
                result = await self._reconcile(key)
        except Exception as e:
            log.error("reconcile_failed", kind=key[0], namespace=key[1], name=key[2], error=str(e), exc_info=True)
            MetricsCollector.record_reconcile_error(key[0])
            result = ReconcileResult(requeue_after=self.settings.requeue_seconds)
        finally:
            self._in_flight.discard(key)
            self._queue.task_done()

        if key in self._dirty:
            self._dirty.discard(key)
            self.enqueue(key)
        elif result.requeue_after is not None:
            self.enqueue_after(key, result.requeue_after)
        return key

    async def _reconcile(self, key: Key) -> ReconcileResult:
        kind, namespace, name = key
        if kind == Task.kind:
            return await self.task_controller.reconcile(namespace, name)
        if kind == TaskSpawner.kind:
            return await self.spawner_controller.reconcile(namespace, name)
        log.warning("reconcile_unknown_kind", kind=kind)
        return ReconcileResult()

    # ------------------------------------------------------------------
    # Event fan-out
    # ------------------------------------------------------------------

    async def handle_event(self, event: WatchEvent) -> None:
        """Enqueue the keys affected by a store change."""
        resource = event.resource
        if isinstance(resource, Task):
            await self._on_task_event(event.type, resource)
        elif isinstance(resource, TaskSpawner):
            await self._on_spawner_event(event.type, resource)
        elif isinstance(resource, (Workspace, AgentConfig)):
            await self._on_reference_event(resource)

    async def _on_task_event(self, event_type: WatchEventType, task: Task) -> None:
        self.enqueue((Task.kind, task.namespace, task.name))

        siblings = [t for t in await self.store.list(Task.kind, task.namespace) if isinstance(t, Task)]
        branch = task.effective_branch
        for other in siblings:
            if other.name == task.name or other.status.phase.is_terminal:
                continue
            if (
                task.name in other.spec.depends_on
                or (branch and other.effective_branch == branch)
                or (task.metadata.owner and other.metadata.owner == task.metadata.owner)
            ):
                self.enqueue((Task.kind, other.namespace, other.name))

        finished = task.status.phase.is_terminal or event_type == WatchEventType.DELETED
        if task.metadata.owner and finished:
            self.enqueue((TaskSpawner.kind, task.namespace, task.metadata.owner))

    async def _on_spawner_event(self, event_type: WatchEventType, spawner: TaskSpawner) -> None:
        key = (TaskSpawner.kind, spawner.namespace, spawner.name)
        if event_type == WatchEventType.DELETED:
            self._spawner_specs.pop(key, None)
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            return

        spec = spawner.spec.model_dump()
        if self._spawner_specs.get(key) == spec:
            return
        self._spawner_specs[key] = spec
        self.enqueue(key)

        # A budget change may unblock owned Tasks.
        owned = await self.store.list(Task.kind, spawner.namespace)
        for task in owned:
            if task.metadata.owner == spawner.name:
                self.enqueue((Task.kind, task.namespace, task.name))

    async def _on_reference_event(self, resource: Workspace | AgentConfig) -> None:
        tasks = [t for t in await self.store.list(Task.kind, resource.namespace) if isinstance(t, Task)]
        for task in tasks:
            if not task.status.phase.is_queued:
                continue
            if resource.name in (task.spec.workspace_ref, task.spec.agent_config_ref):
                self.enqueue((Task.kind, task.namespace, task.name))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start watching, resyncing and processing the queue."""
        self._background.append(asyncio.create_task(self._watch_loop()))
        # Let the watcher subscribe before the initial listing.
        await asyncio.sleep(0)
        await self.resync(include_spawners=True)
        self._background.append(asyncio.create_task(self._resync_loop()))
        for i in range(self.settings.workers):
            self._background.append(asyncio.create_task(self._worker(i)))
        log.info("controller_manager_started", workers=self.settings.workers, namespace=self.settings.namespace)

    async def stop(self) -> None:
        """Stop all background work."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in self._background:
            task.cancel()
        for task in self._background:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._background.clear()
        log.info("controller_manager_stopped")

    async def run(self) -> None:
        """Run until cancelled."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()

    async def resync(self, include_spawners: bool = False) -> None:
        """Enqueue every Task, and optionally every TaskSpawner."""
        namespace = self.settings.namespace
        for task in await self.store.list(Task.kind, namespace):
            self.enqueue((Task.kind, task.namespace, task.name))
        if include_spawners:
            for spawner in await self.store.list(TaskSpawner.kind, namespace):
                assert isinstance(spawner, TaskSpawner)
                key = (TaskSpawner.kind, spawner.namespace, spawner.name)
                self._spawner_specs[key] = spawner.spec.model_dump()
                self.enqueue(key)

    async def _worker(self, index: int) -> None:
        log.debug("worker_started", worker=index)
        while True:
            await self.process_next()

    async def _watch_loop(self) -> None:
        async for event in self.store.watch():
            try:
                await self.handle_event(event)
            except Exception as e:
                log.error("watch_event_failed", kind=event.kind, key=event.resource.key, error=str(e), exc_info=True)

    async def _resync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.resync_seconds)
            await self.resync()
