"""
Task controller: drives one Task through its lifecycle.

Phases::

    Pending --(deps not satisfied)--> Waiting --(deps satisfied)--> Pending
    Pending --(deps ready, branch free, budget free, executor accepted)--> Running
    Running --(exit 0)--> Succeeded
    Running --(non-zero exit, infra failure, deadline, vanished)--> Failed
    Pending/Waiting --(dependency failed or missing, bad template)--> Failed

Every pass starts from a fresh read of the Task and its siblings. Nothing
blocks: a Task that cannot move keeps its phase, gets a message saying why,
and is looked at again on the next event or timer. Terminal Tasks are only
garbage collected once their TTL expires. Failed Tasks are never retried.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta

import structlog

from spindle.config.settings import ControllerSettings
from spindle.engine import branch_mutex
from spindle.engine.capture import CapturedOutput, parse_outputs
from spindle.engine.dependencies import DependencyVerdict, resolve
from spindle.engine.job_builder import JobBuilder
from spindle.engine.metrics import MetricsCollector
from spindle.engine.types import DONE, Clock, ReconcileResult, utc_now
from spindle.engine.usage import parse_usage
from spindle.enums import TaskPhase
from spindle.exceptions import (
    ConflictError,
    ExecutionConflictError,
    ExecutorError,
    NotFoundError,
    TemplateError,
    ValidationError,
)
from spindle.executors.base import ExecutionHandle, ExecutionState, ExecutionStatus, PodExecutor
from spindle.models.resources import AgentConfig, Task, TaskSpawner, Workspace
from spindle.rendering import TemplateRenderer, dependency_context
from spindle.store import ResourceStore
from spindle.utils.retry import async_retry

log = structlog.get_logger(__name__)

StatusMutation = Callable[[Task], None]


class TaskController:
    """Reconcile Tasks against the pod executor."""

    def __init__(
        self,
        store: ResourceStore,
        executor: PodExecutor,
        job_builder: JobBuilder | None = None,
        renderer: TemplateRenderer | None = None,
        settings: ControllerSettings | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.executor = executor
        self.job_builder = job_builder or JobBuilder()
        self.renderer = renderer or TemplateRenderer()
        self.settings = settings or ControllerSettings()
        self.clock = clock
        # Key -> time the execution was first seen finished with no outputs.
        self._capture_pending: dict[str, datetime] = {}
        self._start_locks: dict[str, asyncio.Lock] = {}

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Run one reconcile pass for a Task.

        Args:
            namespace: Task namespace
            name: Task name

        Returns:
            When to look at the Task again
        """
        try:
            task = await self.store.get(Task.kind, namespace, name)
        except NotFoundError:
            await self._cleanup(f"{namespace}/{name}")
            return DONE

        assert isinstance(task, Task)
        phase = task.status.phase
        if phase.is_terminal:
            return await self._collect_garbage(task)
        if phase == TaskPhase.RUNNING:
            return await self._reconcile_running(task)
        async with self._namespace_lock(namespace):
            return await self._reconcile_queued(task)

    def _namespace_lock(self, namespace: str) -> asyncio.Lock:
        # Start decisions within a namespace are serialized.
        return self._start_locks.setdefault(namespace, asyncio.Lock())

    # ------------------------------------------------------------------
    # Pending / Waiting
    # ------------------------------------------------------------------

    async def _reconcile_queued(self, task: Task) -> ReconcileResult:
        siblings = [t for t in await self.store.list(Task.kind, task.namespace) if isinstance(t, Task)]
        fresh = next((t for t in siblings if t.name == task.name), None)
        if fresh is None or not fresh.status.phase.is_queued:
            return DONE
        task = fresh

        verdict = resolve(task, siblings)
        if verdict.failed:
            log.info("task_dependency_failed", task=task.key, reason=verdict.message)
            await self._fail(task, verdict.message)
            return DONE
        if not verdict.ready:
            await self._set_queued(task, TaskPhase.WAITING, verdict.message)
            return ReconcileResult(requeue_after=self.settings.requeue_seconds)

        workspace, agent_config, missing = await self._resolve_references(task)
        if missing:
            await self._set_queued(task, TaskPhase.PENDING, missing)
            return ReconcileResult(requeue_after=self.settings.requeue_seconds)

        try:
            prompt, branch = self._render(task, verdict)
        except TemplateError as e:
            log.info("task_render_failed", task=task.key, reference=e.reference, error=e.message)
            await self._fail(task, e.message)
            return DONE

        available = await self._available_references(task.namespace)

        def eligible(other: Task) -> bool:
            return _is_eligible(other, siblings, available)

        candidate = task.model_copy(deep=True)
        candidate.status.branch = branch
        mutex = branch_mutex.check(candidate, siblings, is_eligible=eligible)
        if not mutex.free:
            await self._set_queued(task, TaskPhase.PENDING, mutex.message, branch=branch)
            return ReconcileResult(requeue_after=self.settings.requeue_seconds)

        budget_message = await self._check_budget(task, siblings, eligible)
        if budget_message:
            await self._set_queued(task, TaskPhase.PENDING, budget_message, branch=branch)
            return ReconcileResult(requeue_after=self.settings.requeue_seconds)

        return await self._start(task, prompt, branch, workspace, agent_config)

    async def _resolve_references(self, task: Task) -> tuple[Workspace | None, AgentConfig | None, str]:
        workspace = agent_config = None
        if task.spec.workspace_ref:
            try:
                workspace = await self.store.get(Workspace.kind, task.namespace, task.spec.workspace_ref)
            except NotFoundError:
                return None, None, f'Workspace "{task.spec.workspace_ref}" not found'
        if task.spec.agent_config_ref:
            try:
                agent_config = await self.store.get(AgentConfig.kind, task.namespace, task.spec.agent_config_ref)
            except NotFoundError:
                return None, None, f'AgentConfig "{task.spec.agent_config_ref}" not found'
        return workspace, agent_config, ""

    async def _available_references(self, namespace: str) -> set[tuple[str, str]]:
        available = set()
        for kind in (Workspace.kind, AgentConfig.kind):
            for resource in await self.store.list(kind, namespace):
                available.add((kind, resource.name))
        return available

    def _render(self, task: Task, verdict: DependencyVerdict) -> tuple[str, str | None]:
        """Render prompt and branch against the now-frozen dependency results."""
        if task.spec.literal or not task.spec.depends_on:
            return task.spec.prompt, task.spec.branch or None

        context = dependency_context(verdict.dependencies)
        prompt = self.renderer.render(task.spec.prompt, context)
        branch = self.renderer.render(task.spec.branch, context).strip() if task.spec.branch else None
        return prompt, branch or None

    async def _check_budget(self, task: Task, siblings: list[Task], eligible: Callable[[Task], bool]) -> str:
        """Return a message if the owning spawner's concurrency budget is spent."""
        owner = task.metadata.owner
        if not owner:
            return ""
        try:
            spawner = await self.store.get(TaskSpawner.kind, task.namespace, owner)
        except NotFoundError:
            return ""
        assert isinstance(spawner, TaskSpawner)
        limit = spawner.spec.max_concurrency
        if not limit:
            return ""

        owned = [t for t in siblings if t.metadata.owner == owner and t.name != task.name]
        running = sum(1 for t in owned if t.status.phase == TaskPhase.RUNNING)
        mine = branch_mutex.queue_order(task)
        ahead = sum(
            1
            for t in owned
            if t.status.phase == TaskPhase.PENDING
            and branch_mutex.queue_order(t) < mine
            and eligible(t)
        )
        if running + ahead >= limit:
            return f'Waiting for TaskSpawner "{owner}" concurrency budget ({running}/{limit} running)'
        return ""

    async def _start(
        self,
        task: Task,
        prompt: str,
        branch: str | None,
        workspace: Workspace | None,
        agent_config: AgentConfig | None,
    ) -> ReconcileResult:
        try:
            request = self.job_builder.build(task, prompt, branch, workspace, agent_config)
        except ValidationError as e:
            await self._fail(task, f"invalid execution request: {e.message}")
            return DONE

        try:
            handle = await self.executor.start(request)
        except ExecutionConflictError:
            adopted = await self._adopt(task)
            if adopted is None:
                return ReconcileResult(requeue_after=self.settings.requeue_seconds)
            handle = adopted
        except ExecutorError as e:
            log.error("task_start_failed", task=task.key, error=e.message)
            await self._fail(task, f"failed to start execution: {e.message}")
            return DONE

        now = self.clock()

        def mark_running(t: Task) -> None:
            t.status.phase = TaskPhase.RUNNING
            t.status.job_name = handle.job_name
            t.status.pod_name = handle.pod_name
            t.status.branch = branch
            t.status.start_time = now
            t.status.message = f"Running as {handle.job_name}"

        if await self._update_status(task, mark_running) is not None:
            MetricsCollector.record_task_created(task.namespace, str(task.spec.type))
        log.info("task_started", task=task.key, job=handle.job_name, branch=branch)
        return ReconcileResult(requeue_after=self._running_requeue(task, now))

    async def _adopt(self, task: Task) -> ExecutionHandle | None:
        """Take over the execution an earlier pass started for this Task.

        An execution started for a different Task of the same name, or a
        finished one whose owner cannot be told, is left over from a deleted
        Task. It is forgotten so that the next pass starts a fresh one.
        """
        handle = await self.executor.find(task.key)
        if handle is None:
            log.warning("task_start_conflict_unresolved", task=task.key)
            return None

        if handle.uid:
            ours = handle.uid == task.metadata.uid
        else:
            ours = (await self.executor.status(handle)).state == ExecutionState.RUNNING
        if ours:
            log.info("task_execution_adopted", task=task.key, job=handle.job_name)
            return handle

        log.warning("task_stale_execution_discarded", task=task.key, job=handle.job_name)
        await self.executor.forget(task.key)
        return None

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def _reconcile_running(self, task: Task) -> ReconcileResult:
        handle = await self._handle_for(task)
        if handle is None:
            await self._finish(task, TaskPhase.FAILED, "execution not found", CapturedOutput())
            return DONE

        deadline = task.spec.overrides.active_deadline_seconds
        now = self.clock()
        if deadline and task.status.start_time and now - task.status.start_time >= timedelta(seconds=deadline):
            log.warning("task_deadline_exceeded", task=task.key, deadline=deadline)
            await self.executor.stop(handle)
            captured = await self._capture(task, handle)
            await self._finish(task, TaskPhase.FAILED, "deadline exceeded", captured)
            return await self._after_terminal(task)

        status = await self.executor.status(handle)
        if status.state == ExecutionState.RUNNING:
            return ReconcileResult(requeue_after=self._running_requeue(task, now))
        if status.state == ExecutionState.NOT_FOUND:
            await self._finish(task, TaskPhase.FAILED, "execution disappeared", CapturedOutput())
            return await self._after_terminal(task)

        captured = await self._capture(task, handle)
        if captured.empty and status.state == ExecutionState.EXITED:
            first_seen = self._capture_pending.setdefault(task.key, now)
            if (now - first_seen).total_seconds() < self.settings.capture_retry_window:
                log.debug("task_capture_retry", task=task.key)
                return ReconcileResult(requeue_after=self.settings.capture_retry_interval)

        self._capture_pending.pop(task.key, None)
        phase, message = _outcome(status)
        await self._finish(task, phase, message, captured)
        return await self._after_terminal(task)

    async def _handle_for(self, task: Task) -> ExecutionHandle | None:
        if task.status.job_name and task.status.pod_name:
            return ExecutionHandle(task.key, task.status.job_name, task.status.pod_name)
        return await self.executor.find(task.key)

    async def _capture(self, task: Task, handle: ExecutionHandle) -> CapturedOutput:
        try:
            artifact = await self.executor.read_artifact(handle)
        except ExecutorError as e:
            log.warning("task_artifact_unreadable", task=handle.key, error=e.message)
            return CapturedOutput()

        captured = parse_outputs(artifact.content, framed=artifact.framed)
        # Usage measured from the agent log overrides self-reported values.
        for key, value in parse_usage(str(task.spec.type), artifact.log).items():
            captured.add(key, value)
        return captured

    def _running_requeue(self, task: Task, now: datetime) -> float:
        requeue = self.settings.requeue_seconds
        deadline = task.spec.overrides.active_deadline_seconds
        start = task.status.start_time or now
        if deadline:
            remaining = (start + timedelta(seconds=deadline) - now).total_seconds()
            requeue = min(requeue, max(remaining, 0.0))
        return requeue

    # ------------------------------------------------------------------
    # Terminal
    # ------------------------------------------------------------------

    async def _collect_garbage(self, task: Task) -> ReconcileResult:
        ttl = task.spec.ttl_seconds_after_finished
        if ttl is None or task.status.completion_time is None:
            return DONE
        expires = task.status.completion_time + timedelta(seconds=ttl)
        remaining = (expires - self.clock()).total_seconds()
        if remaining > 0:
            return ReconcileResult(requeue_after=remaining)
        try:
            await self.store.delete(Task.kind, task.namespace, task.name)
        except NotFoundError:
            return DONE
        log.info("task_ttl_expired", task=task.key, ttl=ttl)
        await self._cleanup(task.key)
        return DONE

    async def _after_terminal(self, task: Task) -> ReconcileResult:
        ttl = task.spec.ttl_seconds_after_finished
        if ttl is None:
            return DONE
        return ReconcileResult(requeue_after=float(ttl))

    async def _cleanup(self, key: str) -> None:
        """Forget the execution of a deleted Task, stopping it if still running."""
        self._capture_pending.pop(key, None)
        handle = await self.executor.find(key)
        if handle is None:
            return
        log.info("task_deleted_forgetting_execution", task=key, job=handle.job_name)
        await self.executor.forget(key)

    # ------------------------------------------------------------------
    # Status writes
    # ------------------------------------------------------------------

    async def _fail(self, task: Task, message: str) -> None:
        await self._finish(task, TaskPhase.FAILED, message, None)

    async def _finish(
        self,
        task: Task,
        phase: TaskPhase,
        message: str,
        captured: CapturedOutput | None,
    ) -> None:
        now = self.clock()

        def mark_finished(t: Task) -> None:
            t.status.phase = phase
            t.status.message = message
            t.status.completion_time = now
            if captured is not None:
                t.status.outputs = list(captured.outputs)
                t.status.results = dict(captured.results)

        updated = await self._update_status(task, mark_finished)
        log.info("task_finished", task=task.key, phase=str(phase), message=message)
        if updated is not None:
            _record_completion(updated)

    async def _set_queued(self, task: Task, phase: TaskPhase, message: str, branch: str | None = None) -> None:
        if task.status.phase == phase and task.status.message == message and task.status.branch == branch:
            return

        def mark_queued(t: Task) -> None:
            t.status.phase = phase
            t.status.message = message
            t.status.branch = branch

        await self._update_status(task, mark_queued)
        log.debug("task_queued", task=task.key, phase=str(phase), message=message)

    async def _update_status(self, task: Task, mutate: StatusMutation) -> Task | None:
        """Apply ``mutate`` to a fresh copy of the Task and write its status.

        Lost optimistic-concurrency races are retried against a fresh read.
        A mutation that would make an illegal phase transition (for example
        because another writer already finished the Task) is dropped.
        """
        retrying = async_retry(
            max_attempts=self.settings.status_retry_attempts,
            base_delay=0.05,
            exceptions=(ConflictError,),
        )(self._write_status)
        try:
            return await retrying(task.namespace, task.name, mutate)
        except NotFoundError:
            log.info("task_vanished_during_update", task=task.key)
            return None

    async def _write_status(self, namespace: str, name: str, mutate: StatusMutation) -> Task | None:
        current = await self.store.get(Task.kind, namespace, name)
        assert isinstance(current, Task)
        before = current.status.phase
        mutate(current)
        after = current.status.phase
        if not before.can_transition_to(after):
            log.warning(
                "task_transition_rejected",
                task=current.key,
                current=str(before),
                requested=str(after),
            )
            return None
        updated = await self.store.update_status(current)
        assert isinstance(updated, Task)
        return updated


def _is_eligible(task: Task, siblings: list[Task], available: set[tuple[str, str]]) -> bool:
    """Whether a queued Task holds its place in line for branch and budget.

    It does once nothing else keeps it from starting: its dependencies are
    satisfied and the Workspace and AgentConfig it references exist.
    """
    if task.status.phase != TaskPhase.PENDING:
        return False
    for kind, ref in ((Workspace.kind, task.spec.workspace_ref), (AgentConfig.kind, task.spec.agent_config_ref)):
        if ref and (kind, ref) not in available:
            return False
    return resolve(task, siblings).ready


def _outcome(status: ExecutionStatus) -> tuple[TaskPhase, str]:
    if status.state == ExecutionState.EXITED:
        if status.exit_code == 0:
            return TaskPhase.SUCCEEDED, "completed"
        return TaskPhase.FAILED, f"exited with code {status.exit_code}"
    if status.state == ExecutionState.TIMED_OUT:
        return TaskPhase.FAILED, "deadline exceeded"
    detail = f": {status.message}" if status.message else ""
    return TaskPhase.FAILED, f"infrastructure failure{detail}"


def _record_completion(task: Task) -> None:
    agent_type = str(task.spec.type)
    duration = None
    if task.status.start_time and task.status.completion_time:
        duration = task.status.completion_time - task.status.start_time
    MetricsCollector.record_task_completed(task.namespace, agent_type, str(task.status.phase), duration)
    MetricsCollector.record_usage(
        task.namespace,
        agent_type,
        task.status.results,
        spawner=task.metadata.owner or "",
        model=task.spec.model or "",
    )
