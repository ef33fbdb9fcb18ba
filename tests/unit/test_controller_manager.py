"""Tests for engine/manager.py."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from spindle.config.settings import ControllerSettings
from spindle.engine.manager import ControllerManager
from spindle.engine.types import DONE, ReconcileResult
from spindle.enums import TaskPhase
from spindle.models.resources import Workspace
from spindle.store import WatchEvent, WatchEventType


def task_key(name, namespace="default"):
    return ("Task", namespace, name)


def spawner_key(name="issues", namespace="default"):
    return ("TaskSpawner", namespace, name)


@pytest.fixture
def task_reconciler():
    return AsyncMock(return_value=DONE)


@pytest.fixture
def spawner_reconciler():
    return AsyncMock(return_value=DONE)


@pytest.fixture
def manager(store, task_reconciler, spawner_reconciler):
    return ControllerManager(
        store,
        AsyncMock(reconcile=task_reconciler),
        AsyncMock(reconcile=spawner_reconciler),
        ControllerSettings(requeue_seconds=7),
    )


def queued(manager) -> set:
    return set(manager._queued)


async def drain(manager) -> None:
    while manager._queued:
        await manager.process_next()


class TestQueue:
    """Tests for work-queue semantics."""

    @pytest.mark.asyncio
    async def test_key_queued_once(self, manager):
        manager.enqueue(task_key("a"))
        manager.enqueue(task_key("a"))

        assert manager._queue.qsize() == 1
        assert not manager.idle

    @pytest.mark.asyncio
    async def test_namespace_filter(self, store):
        manager = ControllerManager(store, AsyncMock(), AsyncMock(), ControllerSettings(namespace="team-a"))

        manager.enqueue(task_key("a"))
        manager.enqueue(task_key("b", namespace="team-a"))

        assert queued(manager) == {task_key("b", namespace="team-a")}

    @pytest.mark.asyncio
    async def test_routes_by_kind(self, manager, task_reconciler, spawner_reconciler):
        manager.enqueue(task_key("a"))
        manager.enqueue(spawner_key())

        await drain(manager)

        task_reconciler.assert_awaited_once_with("default", "a")
        spawner_reconciler.assert_awaited_once_with("default", "issues")
        assert manager.idle

    @pytest.mark.asyncio
    async def test_enqueue_while_in_flight_marks_dirty(self, manager, task_reconciler):
        """Test a key enqueued during its own pass is processed again afterwards."""
        key = task_key("a")

        async def reconcile(namespace, name):
            manager.enqueue(key)
            assert manager._queue.qsize() == 0
            return ReconcileResult(requeue_after=30)

        task_reconciler.side_effect = reconcile
        manager.enqueue(key)

        await manager.process_next()

        assert queued(manager) == {key}
        assert key not in manager._timers

    @pytest.mark.asyncio
    async def test_requeue_after_sets_timer(self, manager, task_reconciler):
        task_reconciler.return_value = ReconcileResult(requeue_after=30)
        manager.enqueue(task_key("a"))

        await manager.process_next()

        assert manager.idle
        assert task_key("a") in manager._timers
        await manager.stop()
        assert manager._timers == {}

    @pytest.mark.asyncio
    async def test_timer_fires(self, manager):
        manager.enqueue_after(task_key("a"), 0.01)

        await asyncio.sleep(0.05)

        assert queued(manager) == {task_key("a")}

    @pytest.mark.asyncio
    async def test_reconcile_error_requeues(self, manager, task_reconciler):
        task_reconciler.side_effect = RuntimeError("boom")
        manager.enqueue(task_key("a"))

        await manager.process_next()

        assert manager.idle
        assert manager._timers[task_key("a")] is not None
        await manager.stop()


class TestTaskEvents:
    """Tests for fan-out on Task events."""

    @pytest.mark.asyncio
    async def test_related_tasks_enqueued(self, manager, store, task_factory):
        a = await store.create(task_factory("a", branch="feature/x"))
        await store.create(task_factory("b", depends_on=["a"]))
        await store.create(task_factory("c", branch="feature/x"))
        await store.create(task_factory("d", branch="feature/y"))

        await manager.handle_event(WatchEvent(WatchEventType.MODIFIED, a))

        assert queued(manager) == {task_key("a"), task_key("b"), task_key("c")}

    @pytest.mark.asyncio
    async def test_terminal_siblings_skipped(self, manager, store, task_factory):
        a = await store.create(task_factory("a", branch="main"))
        b = await store.create(task_factory("b", branch="main"))
        b.status.phase = TaskPhase.FAILED
        await store.update_status(b)

        await manager.handle_event(WatchEvent(WatchEventType.MODIFIED, a))

        assert queued(manager) == {task_key("a")}

    @pytest.mark.asyncio
    async def test_owner_siblings_and_spawner(self, manager, store, task_factory):
        a = await store.create(task_factory("issues-1", owner="issues"))
        await store.create(task_factory("issues-2", owner="issues"))
        await store.create(task_factory("other", owner="cron"))

        await manager.handle_event(WatchEvent(WatchEventType.MODIFIED, a))
        assert queued(manager) == {task_key("issues-1"), task_key("issues-2")}

        await drain(manager)
        a.status.phase = TaskPhase.SUCCEEDED
        await manager.handle_event(WatchEvent(WatchEventType.MODIFIED, a))

        assert spawner_key() in queued(manager)

    @pytest.mark.asyncio
    async def test_deleted_owned_task_enqueues_spawner(self, manager, store, task_factory):
        a = await store.create(task_factory("issues-1", owner="issues"))
        await store.delete("Task", "default", "issues-1")

        await manager.handle_event(WatchEvent(WatchEventType.DELETED, a))

        assert spawner_key() in queued(manager)


class TestSpawnerEvents:
    """Tests for TaskSpawner event handling."""

    @pytest.mark.asyncio
    async def test_enqueued_only_on_spec_change(self, manager, store, spawner_factory, spawner_reconciler):
        spawner = await store.create(spawner_factory())

        await manager.handle_event(WatchEvent(WatchEventType.ADDED, spawner))
        assert queued(manager) == {spawner_key()}
        await drain(manager)

        spawner.status.total_discovered = 3
        await manager.handle_event(WatchEvent(WatchEventType.MODIFIED, spawner))
        assert manager.idle

        spawner.spec.suspend = True
        await manager.handle_event(WatchEvent(WatchEventType.MODIFIED, spawner))
        assert queued(manager) == {spawner_key()}

    @pytest.mark.asyncio
    async def test_spec_change_enqueues_owned_tasks(self, manager, store, spawner_factory, task_factory):
        spawner = await store.create(spawner_factory(max_concurrency=1))
        await store.create(task_factory("issues-1", owner="issues"))
        await store.create(task_factory("unowned"))

        await manager.handle_event(WatchEvent(WatchEventType.ADDED, spawner))

        assert queued(manager) == {spawner_key(), task_key("issues-1")}

    @pytest.mark.asyncio
    async def test_delete_cancels_timer(self, manager, store, spawner_factory):
        spawner = await store.create(spawner_factory())
        manager.enqueue_after(spawner_key(), 300)

        await manager.handle_event(WatchEvent(WatchEventType.DELETED, spawner))

        assert spawner_key() not in manager._timers
        assert manager.idle


class TestReferenceEvents:
    @pytest.mark.asyncio
    async def test_workspace_event_enqueues_queued_tasks(self, manager, store, task_factory):
        workspace = await store.create(
            Workspace.model_validate({"metadata": {"name": "repo"}, "spec": {"repo": "https://x/y.git"}})
        )
        await store.create(task_factory("a", workspace_ref="repo"))
        await store.create(task_factory("b", workspace_ref="other"))
        done = await store.create(task_factory("c", workspace_ref="repo"))
        done.status.phase = TaskPhase.FAILED
        await store.update_status(done)

        await manager.handle_event(WatchEvent(WatchEventType.ADDED, workspace))

        assert queued(manager) == {task_key("a")}


class TestResync:
    @pytest.mark.asyncio
    async def test_resync_tasks_only(self, manager, store, task_factory, spawner_factory):
        await store.create(task_factory("a"))
        await store.create(spawner_factory())

        await manager.resync()

        assert queued(manager) == {task_key("a")}

    @pytest.mark.asyncio
    async def test_resync_with_spawners(self, manager, store, task_factory, spawner_factory):
        await store.create(task_factory("a"))
        spawner = await store.create(spawner_factory())

        await manager.resync(include_spawners=True)

        assert queued(manager) == {task_key("a"), spawner_key()}
        await drain(manager)
        # The initial listing records the spec, so a status write is not a change.
        await manager.handle_event(WatchEvent(WatchEventType.MODIFIED, spawner))
        assert manager.idle


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_reconciles_existing_and_new(self, manager, store, task_factory, task_reconciler):
        await store.create(task_factory("a"))

        await manager.start()
        try:
            await store.create(task_factory("b"))
            for _ in range(50):
                if task_reconciler.await_count >= 2 and manager.idle:
                    break
                await asyncio.sleep(0.01)
        finally:
            await manager.stop()

        reconciled = {call.args for call in task_reconciler.await_args_list}
        assert reconciled == {("default", "a"), ("default", "b")}
