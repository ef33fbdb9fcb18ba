"""Pytest configuration and shared fixtures."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from spindle.config.settings import ControllerSettings
from spindle.engine.job_builder import JobBuilder
from spindle.engine.spawner_controller import TaskSpawnerController
from spindle.engine.task_controller import TaskController
from spindle.exceptions import ExecutionConflictError, SourceError
from spindle.executors.base import (
    Artifact,
    ExecutionHandle,
    ExecutionRequest,
    ExecutionState,
    ExecutionStatus,
    PodExecutor,
)
from spindle.models.items import DiscoveredItem
from spindle.models.resources import (
    TASKSPAWNER_LABEL,
    ObjectMeta,
    Task,
    TaskSpawner,
    TaskSpawnerSpec,
    TaskSpec,
)
from spindle.sources.base import SourceAdapter
from spindle.store import ResourceStore


class FakeClock:
    """Controllable clock for the controllers."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeExecution:
    def __init__(self, request: ExecutionRequest, handle: ExecutionHandle):
        self.request = request
        self.handle = handle
        self.state = ExecutionState.RUNNING
        self.exit_code: int | None = None
        self.message = ""
        self.artifact = ""
        self.log = ""


class FakeExecutor(PodExecutor):
    """In-memory executor whose work units finish when the test says so."""

    def __init__(self):
        self.executions: dict[str, FakeExecution] = {}
        self.started: list[ExecutionRequest] = []
        self.stopped: list[str] = []
        self.forgotten: list[str] = []

    async def start(self, request: ExecutionRequest) -> ExecutionHandle:
        if request.key in self.executions:
            raise ExecutionConflictError("already started", task_key=request.key)
        handle = ExecutionHandle(request.key, request.name, f"{request.name}-pod", uid=request.uid)
        self.executions[request.key] = FakeExecution(request, handle)
        self.started.append(request)
        return handle

    async def find(self, key: str) -> ExecutionHandle | None:
        execution = self.executions.get(key)
        return execution.handle if execution else None

    async def status(self, handle: ExecutionHandle) -> ExecutionStatus:
        execution = self.executions.get(handle.key)
        if execution is None:
            return ExecutionStatus(ExecutionState.NOT_FOUND)
        return ExecutionStatus(execution.state, execution.exit_code, execution.message)

    async def read_artifact(self, handle: ExecutionHandle) -> Artifact:
        execution = self.executions.get(handle.key)
        if execution is None:
            return Artifact()
        return Artifact(content=execution.artifact, log=execution.log)

    async def stop(self, handle: ExecutionHandle) -> None:
        execution = self.executions.get(handle.key)
        if execution is None or execution.state != ExecutionState.RUNNING:
            return
        execution.state = ExecutionState.INFRA_FAILURE
        execution.message = "stopped"
        self.stopped.append(handle.key)

    async def forget(self, key: str) -> None:
        execution = self.executions.get(key)
        if execution is None:
            return
        await self.stop(execution.handle)
        del self.executions[key]
        self.forgotten.append(key)

    def finish(self, key: str, exit_code: int = 0, artifact: str = "commit=0000000\n", log: str = "") -> None:
        execution = self.executions[key]
        execution.state = ExecutionState.EXITED
        execution.exit_code = exit_code
        execution.artifact = artifact
        execution.log = log

    def started_names(self) -> list[str]:
        return [r.name for r in self.started]


class FakeSource(SourceAdapter):
    """Source adapter returning a fixed list of items."""

    def __init__(self, items: list[DiscoveredItem] | None = None):
        self.items = list(items or [])
        self.error: SourceError | None = None
        self.calls = 0

    async def list(self, item_filter):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.items)

    async def tick(self, schedule, now, since):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.items)


class FakeSources:
    """Stands in for SourceRegistry, always handing out the same source."""

    def __init__(self, source: FakeSource):
        self.source = source

    async def for_spawner(self, spawner):
        return self.source

    async def close(self):
        pass


def make_task(
    name: str,
    prompt: str = "Do the thing",
    depends_on: list[str] | None = None,
    branch: str | None = None,
    owner: str | None = None,
    namespace: str = "default",
    **spec_fields,
) -> Task:
    labels = {TASKSPAWNER_LABEL: owner} if owner else {}
    return Task(
        metadata=ObjectMeta(name=name, namespace=namespace, labels=labels, owner=owner),
        spec=TaskSpec(
            type="claude-code",
            prompt=prompt,
            depends_on=depends_on or [],
            branch=branch,
            **spec_fields,
        ),
    )


def make_spawner(name: str = "issues", namespace: str = "default", **spec_fields) -> TaskSpawner:
    spec = {
        "when": {"github_issues": {"labels": ["agent"]}},
        "task_template": {"type": "claude-code"},
    }
    spec.update(spec_fields)
    return TaskSpawner(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=TaskSpawnerSpec.model_validate(spec),
    )


def make_item(number: int, title: str = "", labels: tuple[str, ...] = ("agent",), **fields) -> DiscoveredItem:
    return DiscoveredItem(
        id=str(number),
        number=number,
        title=title or f"Issue {number}",
        body=fields.pop("body", f"Body of issue {number}"),
        url=f"https://github.com/acme/widgets/issues/{number}",
        labels=labels,
        **fields,
    )


@pytest.fixture
def clock() -> FakeClock:
    """Fixed clock, advanced explicitly by tests."""
    return FakeClock()


@pytest.fixture
def store() -> ResourceStore:
    """In-memory resource store."""
    return ResourceStore()


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def controller_settings() -> ControllerSettings:
    return ControllerSettings(requeue_seconds=10, capture_retry_window=30, capture_retry_interval=5)


@pytest.fixture
def task_controller(store, executor, clock, controller_settings) -> TaskController:
    """Task controller wired to the fake executor and clock."""
    return TaskController(
        store,
        executor,
        job_builder=JobBuilder(),
        settings=controller_settings,
        clock=clock,
    )


@pytest.fixture
def task_factory():
    """Factory fixture for building Tasks."""
    return make_task


@pytest.fixture
def spawner_factory():
    """Factory fixture for building TaskSpawners."""
    return make_spawner


@pytest.fixture
def item_factory():
    """Factory fixture for building discovered items."""
    return make_item


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def spawner_controller(store, source, clock, controller_settings) -> TaskSpawnerController:
    """TaskSpawner controller polling the fake source."""
    return TaskSpawnerController(store, FakeSources(source), settings=controller_settings, clock=clock)
