"""Tests for the TaskSpawner controller."""

import pytest

from spindle.engine.spawner_controller import (
    CONDITION_BUDGET_EXHAUSTED,
    CONDITION_SUSPENDED,
    TaskSpawnerController,
    task_name,
)
from spindle.engine.types import DONE
from spindle.enums import TaskPhase, TaskSpawnerPhase
from spindle.exceptions import SourceError
from spindle.models.resources import ITEM_ID_LABEL, TASKSPAWNER_LABEL, Task, TaskSpawner
from spindle.store import ResourceStore


async def owned_tasks(store, spawner="issues"):
    return await store.list(Task.kind, "default", labels={TASKSPAWNER_LABEL: spawner})


async def get_spawner(store, name="issues") -> TaskSpawner:
    return await store.get(TaskSpawner.kind, "default", name)


async def finish(store, task, phase=TaskPhase.SUCCEEDED):
    task.status.phase = TaskPhase.RUNNING
    running = await store.update_status(task)
    running.status.phase = phase
    await store.update_status(running)


class TestTaskName:
    def test_simple(self):
        assert task_name("issues", "42") == "issues-42"

    def test_sanitized_ids_get_a_hash_suffix(self):
        name = task_name("issues", "Feature/X Y")

        head, digest = name.rsplit("-", 1)
        assert head == "issues-feature-x-y"
        assert len(digest) == 8
        assert all(c in "0123456789abcdef" for c in digest)

    def test_ids_that_sanitize_alike_stay_distinct(self):
        names = {task_name("issues", item_id) for item_id in ("Feature/X", "feature-x", "FEATURE X", "feature_x")}

        assert len(names) == 4
        assert "issues-feature-x" in names

    def test_truncates(self):
        name = task_name("a-rather-long-spawner-name", "x" * 80)

        assert len(name) <= 63
        assert name.startswith("a-rather-long-spawner-name-")

    def test_truncated_ids_stay_distinct(self):
        first = task_name("a-rather-long-spawner-name", "x" * 80 + "1")
        second = task_name("a-rather-long-spawner-name", "x" * 80 + "2")

        assert first != second
        assert len(first) == len(second) == 63

    def test_deterministic(self):
        assert task_name("issues", "Feature/X Y") == task_name("issues", "Feature/X Y")


class TestDiscovery:
    @pytest.mark.asyncio
    async def test_creates_one_task_per_item(
        self, store, source, spawner_controller, spawner_factory, item_factory, clock
    ):
        await store.create(
            spawner_factory(
                task_template={
                    "type": "codex",
                    "prompt_template": "Fix #{{ number }}: {{ title }} ({{ labels }})",
                    "branch": "fix/{{ number }}",
                    "model": "gpt-5",
                    "overrides": {"env": {"ISSUE_URL": "{{ url }}"}},
                }
            )
        )
        source.items = [item_factory(1, "Crash"), item_factory(2, "Typo")]

        result = await spawner_controller.reconcile("default", "issues")

        tasks = await owned_tasks(store)
        assert [t.name for t in tasks] == ["issues-1", "issues-2"]
        first = tasks[0]
        assert first.spec.prompt == "Fix #1: Crash (agent)"
        assert first.spec.branch == "fix/1"
        assert first.spec.model == "gpt-5"
        assert first.spec.overrides.env == {"ISSUE_URL": "https://github.com/acme/widgets/issues/1"}
        assert first.metadata.owner == "issues"
        assert first.metadata.labels[ITEM_ID_LABEL] == "1"
        assert result.requeue_after == 300

        spawner = await get_spawner(store)
        assert spawner.status.phase == TaskSpawnerPhase.RUNNING
        assert spawner.status.total_discovered == 2
        assert spawner.status.total_tasks_created == 2
        assert spawner.status.active_tasks == 2
        assert spawner.status.last_discovery_time == clock.now
        assert spawner.status.message == "Discovered 2 items, created 2 tasks total"

    @pytest.mark.asyncio
    async def test_default_prompt_template(self, store, source, spawner_controller, spawner_factory, item_factory):
        await store.create(spawner_factory())
        source.items = [item_factory(7, "Add tests", body="Please add tests.")]

        await spawner_controller.reconcile("default", "issues")

        (task,) = await owned_tasks(store)
        assert task.spec.prompt == "Issue #7: Add tests\n\nPlease add tests."
        assert task.spec.branch is None

    @pytest.mark.asyncio
    async def test_rendered_depends_on(self, store, source, spawner_controller, spawner_factory, item_factory):
        await store.create(
            spawner_factory(task_template={"type": "claude-code", "depends_on": ["setup-{{ number }}"]})
        )
        source.items = [item_factory(3)]

        await spawner_controller.reconcile("default", "issues")

        (task,) = await owned_tasks(store)
        assert task.spec.depends_on == ["setup-3"]

    @pytest.mark.asyncio
    async def test_item_text_with_template_syntax_is_kept_verbatim(
        self, store, source, spawner_controller, spawner_factory, item_factory
    ):
        await store.create(spawner_factory(task_template={"type": "claude-code", "depends_on": ["setup"]}))
        body = "The workflow reads ${{ secrets.TOKEN }} and {{ deps['setup'].results }}"
        source.items = [item_factory(5, "CI broken", body=body)]

        await spawner_controller.reconcile("default", "issues")

        (task,) = await owned_tasks(store)
        assert task.spec.literal
        assert task.spec.prompt == f"Issue #5: CI broken\n\n{body}"
        assert (await get_spawner(store)).status.total_tasks_created == 1

    @pytest.mark.asyncio
    async def test_repeated_polls_create_each_item_once(
        self, store, source, spawner_controller, spawner_factory, item_factory
    ):
        await store.create(spawner_factory())
        source.items = [item_factory(1), item_factory(2)]

        for _ in range(3):
            await spawner_controller.reconcile("default", "issues")

        assert len(await owned_tasks(store)) == 2
        assert (await get_spawner(store)).status.total_tasks_created == 2

    @pytest.mark.asyncio
    async def test_finished_items_are_not_respawned(
        self, store, source, spawner_controller, spawner_factory, item_factory
    ):
        await store.create(spawner_factory())
        source.items = [item_factory(1)]
        await spawner_controller.reconcile("default", "issues")
        (task,) = await owned_tasks(store)
        await finish(store, task, TaskPhase.FAILED)

        await spawner_controller.reconcile("default", "issues")

        assert len(await owned_tasks(store)) == 1

    @pytest.mark.asyncio
    async def test_exactly_once_across_restart(
        self, temp_state_dir, source, spawner_controller, spawner_factory, item_factory, clock
    ):
        sources = spawner_controller.sources
        store = ResourceStore(temp_state_dir)
        await store.create(spawner_factory())
        source.items = [item_factory(1), item_factory(2), item_factory(3)]
        await TaskSpawnerController(store, sources, clock=clock).reconcile("default", "issues")

        restarted = ResourceStore(temp_state_dir)
        await restarted.load()
        source.items.append(item_factory(4))
        await TaskSpawnerController(restarted, sources, clock=clock).reconcile("default", "issues")

        assert [t.name for t in await owned_tasks(restarted)] == [
            "issues-1",
            "issues-2",
            "issues-3",
            "issues-4",
        ]
        assert (await get_spawner(restarted)).status.total_tasks_created == 4

    @pytest.mark.asyncio
    async def test_excluded_labels_are_skipped(self, store, source, spawner_controller, spawner_factory, item_factory):
        await store.create(
            spawner_factory(when={"github_issues": {"labels": ["agent"], "exclude_labels": ["hold"]}})
        )
        source.items = [
            item_factory(1),
            item_factory(2, labels=("agent", "hold")),
            item_factory(3, labels=("bug",)),
        ]

        await spawner_controller.reconcile("default", "issues")

        assert [t.name for t in await owned_tasks(store)] == ["issues-1"]

    @pytest.mark.asyncio
    async def test_exclusion_after_spawn_leaves_task_alone(
        self, store, source, spawner_controller, spawner_factory, item_factory
    ):
        await store.create(spawner_factory(when={"github_issues": {"exclude_labels": ["hold"]}}))
        source.items = [item_factory(1)]
        await spawner_controller.reconcile("default", "issues")

        source.items = [item_factory(1, labels=("agent", "hold"))]
        await spawner_controller.reconcile("default", "issues")

        (task,) = await owned_tasks(store)
        assert task.phase == TaskPhase.PENDING

    @pytest.mark.asyncio
    async def test_render_failure_skips_item(self, store, source, spawner_controller, spawner_factory, item_factory):
        await store.create(
            spawner_factory(task_template={"type": "claude-code", "prompt_template": "{{ title.missing }}"})
        )
        source.items = [item_factory(1)]

        await spawner_controller.reconcile("default", "issues")

        assert await owned_tasks(store) == []
        assert (await get_spawner(store)).status.total_tasks_created == 0

    @pytest.mark.asyncio
    async def test_task_name_taken_by_unrelated_task(
        self, store, source, spawner_controller, spawner_factory, item_factory, task_factory
    ):
        await store.create(task_factory("issues-1", prompt="hand written"))
        await store.create(spawner_factory())
        source.items = [item_factory(1)]

        await spawner_controller.reconcile("default", "issues")

        existing = await store.get(Task.kind, "default", "issues-1")
        assert existing.spec.prompt == "hand written"
        assert existing.metadata.owner is None
        assert await owned_tasks(store) == []
        assert (await get_spawner(store)).status.total_tasks_created == 0


class TestBudgets:
    @pytest.mark.asyncio
    async def test_max_total_tasks_caps_creation(
        self, store, source, spawner_controller, spawner_factory, item_factory
    ):
        await store.create(spawner_factory(max_total_tasks=3))
        source.items = [item_factory(n) for n in range(1, 6)]

        await spawner_controller.reconcile("default", "issues")
        for task in await owned_tasks(store):
            await finish(store, task)
        await spawner_controller.reconcile("default", "issues")

        assert [t.name for t in await owned_tasks(store)] == ["issues-1", "issues-2", "issues-3"]
        status = (await get_spawner(store)).status
        assert status.total_tasks_created == 3
        exhausted = status.get_condition(CONDITION_BUDGET_EXHAUSTED)
        assert exhausted.status is True
        assert exhausted.reason == "MaxTotalTasksReached"

    @pytest.mark.asyncio
    async def test_max_concurrency_limits_active_tasks(
        self, store, source, spawner_controller, spawner_factory, item_factory
    ):
        await store.create(spawner_factory(max_concurrency=2))
        source.items = [item_factory(n) for n in range(1, 6)]

        await spawner_controller.reconcile("default", "issues")
        await spawner_controller.reconcile("default", "issues")

        tasks = await owned_tasks(store)
        assert [t.name for t in tasks] == ["issues-1", "issues-2"]
        status = (await get_spawner(store)).status
        assert status.active_tasks == 2
        assert status.total_discovered == 5

        await finish(store, tasks[0])
        await spawner_controller.reconcile("default", "issues")

        assert [t.name for t in await owned_tasks(store)] == ["issues-1", "issues-2", "issues-3"]
        assert (await get_spawner(store)).status.active_tasks == 2


class TestPollOutcomes:
    @pytest.mark.asyncio
    async def test_suspended_spawner_does_not_poll(self, store, source, spawner_controller, spawner_factory, item_factory):
        await store.create(spawner_factory(suspend=True))
        source.items = [item_factory(1)]

        await spawner_controller.reconcile("default", "issues")

        assert source.calls == 0
        assert await owned_tasks(store) == []
        status = (await get_spawner(store)).status
        assert status.phase == TaskSpawnerPhase.SUSPENDED
        assert status.get_condition(CONDITION_SUSPENDED).status is True

    @pytest.mark.asyncio
    async def test_suspended_status_is_written_once(self, store, source, spawner_controller, spawner_factory):
        await store.create(spawner_factory(suspend=True))

        await spawner_controller.reconcile("default", "issues")
        version = (await get_spawner(store)).metadata.resource_version
        await spawner_controller.reconcile("default", "issues")

        assert (await get_spawner(store)).metadata.resource_version == version

    @pytest.mark.asyncio
    async def test_resume_after_suspend(self, store, source, spawner_controller, spawner_factory, item_factory):
        await store.create(spawner_factory(suspend=True))
        source.items = [item_factory(1)]
        await spawner_controller.reconcile("default", "issues")

        spawner = await get_spawner(store)
        spawner.spec.suspend = False
        await store.update(spawner)
        await spawner_controller.reconcile("default", "issues")

        assert len(await owned_tasks(store)) == 1
        status = (await get_spawner(store)).status
        assert status.phase == TaskSpawnerPhase.RUNNING
        assert status.get_condition(CONDITION_SUSPENDED).status is False

    @pytest.mark.asyncio
    async def test_source_error_changes_nothing(self, store, source, spawner_controller, spawner_factory, item_factory):
        await store.create(spawner_factory())
        source.items = [item_factory(1)]
        await spawner_controller.reconcile("default", "issues")
        before = await get_spawner(store)

        source.error = SourceError("GitHub API error: Bad credentials", status_code=401)
        result = await spawner_controller.reconcile("default", "issues")

        after = await get_spawner(store)
        assert after.metadata.resource_version == before.metadata.resource_version
        assert after.status == before.status
        assert len(await owned_tasks(store)) == 1
        assert result.requeue_after == 300

    @pytest.mark.asyncio
    async def test_deleted_spawner(self, spawner_controller):
        assert await spawner_controller.reconcile("default", "gone") == DONE

    @pytest.mark.asyncio
    async def test_deleting_spawner_keeps_tasks(self, store, source, spawner_controller, spawner_factory, item_factory):
        await store.create(spawner_factory())
        source.items = [item_factory(1)]
        await spawner_controller.reconcile("default", "issues")

        await store.delete(TaskSpawner.kind, "default", "issues")

        assert len(await owned_tasks(store)) == 1


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_polls_until_deleted(self, store, source, spawner_controller, spawner_factory, monkeypatch):
        await store.create(spawner_factory(poll_interval="30s"))
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)
            if len(sleeps) == 2:
                await store.delete(TaskSpawner.kind, "default", "issues")

        monkeypatch.setattr("spindle.engine.spawner_controller.asyncio.sleep", fake_sleep)

        await spawner_controller.run("default", "issues")

        assert sleeps == [30, 30]
        assert source.calls == 2
