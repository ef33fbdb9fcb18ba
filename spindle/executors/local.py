"""
Subprocess-backed pod executor.

Runs each work unit as a local process instead of a cluster pod. It is the
reference executor used by ``spindle run`` and is useful for trying out
pipelines on a single machine.

For each request the executor:

1. Creates ``{work_dir}/{job_name}/`` and, if a workspace is given, clones
   the repository into ``repo/``, checks out the base ref and the Task
   branch, adds extra remotes and writes injected files.
2. Writes plugin files under ``plugins/`` and exports ``SPINDLE_PLUGIN_DIR``.
3. Runs the agent command with the rendered prompt as its last argument.
   stdout and stderr both go to ``{work_dir}/{job_name}.log``.

The agent reports results by writing ``key=value`` lines to the file named by
``SPINDLE_OUTPUTS_FILE``. If it never creates that file, the log is used
instead and only a block framed by the output markers counts. The log is
also what token usage is read from.

Files left by an earlier work unit of the same name are removed before a
new one starts, and again when the work unit is forgotten.

The image, resource limits and node selector of a request have no meaning
for a local process and are only logged.
"""

import asyncio
import contextlib
import os
import shutil
import signal
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path

import aiofiles
import structlog

from spindle.exceptions import ExecutionConflictError, ExecutorError
from spindle.executors.base import (
    Artifact,
    ExecutionHandle,
    ExecutionRequest,
    ExecutionState,
    ExecutionStatus,
    PodExecutor,
    WorkspaceSetup,
)

log = structlog.get_logger(__name__)


@dataclass
class _Execution:
    handle: ExecutionHandle
    request: ExecutionRequest
    log_path: Path
    outputs_path: Path
    started: float = field(default_factory=time.monotonic)
    process: asyncio.subprocess.Process | None = None
    runner: asyncio.Task[None] | None = None
    state: ExecutionState = ExecutionState.RUNNING
    exit_code: int | None = None
    message: str = ""


class SubprocessExecutor(PodExecutor):
    """Run work units as local subprocesses."""

    def __init__(
        self,
        work_dir: str | Path,
        git_command: str = "git",
        shutdown_timeout: float = 10.0,
    ) -> None:
        """Initialize the executor.

        Args:
            work_dir: Directory holding per-job checkouts and logs
            git_command: git executable used for workspace setup
            shutdown_timeout: Seconds to wait after SIGTERM before SIGKILL
        """
        self.work_dir = Path(work_dir)
        self.work_dir.mkdir(parents=True, exist_ok=True)
        self.git_command = git_command
        self.shutdown_timeout = shutdown_timeout
        self._executions: dict[str, _Execution] = {}
        self._lock = asyncio.Lock()

    async def start(self, request: ExecutionRequest) -> ExecutionHandle:
        async with self._lock:
            existing = self._executions.get(request.key)
            if existing is not None:
                raise ExecutionConflictError(
                    f"execution {existing.handle.job_name} already started",
                    task_key=request.key,
                )

            handle = ExecutionHandle(
                key=request.key,
                job_name=request.name,
                pod_name=f"{request.name}-{uuid.uuid4().hex[:5]}",
                uid=request.uid,
            )
            execution = _Execution(
                handle=handle,
                request=request,
                log_path=self.work_dir / f"{request.name}.log",
                outputs_path=self.work_dir / f"{request.name}.outputs",
            )
            self._executions[request.key] = execution
            execution.runner = asyncio.create_task(self._run(execution))

        log.info(
            "execution_started",
            task=request.key,
            job=handle.job_name,
            pod=handle.pod_name,
            image=request.image,
            resources=request.resources or None,
            node_selector=request.node_selector or None,
        )
        return handle

    async def find(self, key: str) -> ExecutionHandle | None:
        execution = self._executions.get(key)
        return execution.handle if execution else None

    async def status(self, handle: ExecutionHandle) -> ExecutionStatus:
        execution = self._executions.get(handle.key)
        if execution is None or execution.handle != handle:
            return ExecutionStatus(ExecutionState.NOT_FOUND, message="execution not found")
        return ExecutionStatus(execution.state, execution.exit_code, execution.message)

    async def read_artifact(self, handle: ExecutionHandle) -> Artifact:
        execution = self._executions.get(handle.key)
        if execution is None:
            return Artifact()
        agent_log = await _read_text(execution.log_path)
        if execution.outputs_path.exists():
            return Artifact(content=await _read_text(execution.outputs_path), log=agent_log)
        return Artifact(content=agent_log, framed=True, log=agent_log)

    async def stop(self, handle: ExecutionHandle) -> None:
        execution = self._executions.get(handle.key)
        if execution is not None:
            await self._stop(execution)

    async def forget(self, key: str) -> None:
        async with self._lock:
            execution = self._executions.pop(key, None)
        if execution is None:
            return
        await self._stop(execution)
        await self._remove_files(execution)
        log.debug("execution_forgotten", task=key, job=execution.handle.job_name)

    async def close(self) -> None:
        """Stop every running execution."""
        for execution in list(self._executions.values()):
            await self._stop(execution)

    async def _stop(self, execution: _Execution) -> None:
        if execution.state != ExecutionState.RUNNING:
            return
        await self._terminate(execution)
        if execution.runner is not None:
            execution.runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await execution.runner
        execution.state = ExecutionState.INFRA_FAILURE
        execution.message = "stopped"
        log.info("execution_stopped", task=execution.handle.key, job=execution.handle.job_name)

    async def _remove_files(self, execution: _Execution) -> None:
        execution.log_path.unlink(missing_ok=True)
        execution.outputs_path.unlink(missing_ok=True)
        job_dir = self.work_dir / execution.request.name
        if job_dir.exists():
            await asyncio.to_thread(shutil.rmtree, job_dir)

    async def _run(self, execution: _Execution) -> None:
        request = execution.request
        job_dir = self.work_dir / request.name

        try:
            await self._remove_files(execution)
            job_dir.mkdir(parents=True)
            cwd = job_dir
            if request.workspace is not None:
                cwd = await self._prepare_workspace(request.workspace, job_dir / "repo", execution)
            env = self._build_env(request, job_dir, execution.outputs_path)
            await self._write_files(job_dir / "plugins", request.plugin_files)
        except (OSError, ExecutorError) as e:
            execution.state = ExecutionState.INFRA_FAILURE
            execution.message = f"workspace setup failed: {e}"
            log.error("execution_setup_failed", task=request.key, error=str(e))
            return

        try:
            with open(execution.log_path, "ab") as log_file:
                execution.process = await asyncio.create_subprocess_exec(
                    *request.command,
                    request.prompt,
                    cwd=str(cwd),
                    env=env,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            execution.state = ExecutionState.INFRA_FAILURE
            execution.message = f"failed to start agent: {e}"
            log.error("execution_spawn_failed", task=request.key, error=str(e))
            return

        try:
            await asyncio.wait_for(execution.process.wait(), timeout=request.deadline_seconds)
        except TimeoutError:
            await self._terminate(execution)
            execution.state = ExecutionState.TIMED_OUT
            execution.message = f"deadline of {request.deadline_seconds}s exceeded"
            log.warning("execution_timed_out", task=request.key, deadline=request.deadline_seconds)
            return

        execution.exit_code = execution.process.returncode
        execution.state = ExecutionState.EXITED
        log.info(
            "execution_exited",
            task=request.key,
            exit_code=execution.exit_code,
            duration=round(time.monotonic() - execution.started, 2),
        )

    def _build_env(self, request: ExecutionRequest, job_dir: Path, outputs_path: Path) -> dict[str, str]:
        env = os.environ.copy()
        for name, secret in request.secret_env.items():
            if name not in env:
                log.warning("execution_secret_unresolved", task=request.key, env=name, secret=secret)
        env.update(request.env)
        env["SPINDLE_OUTPUTS_FILE"] = str(outputs_path)
        if request.plugin_files:
            env["SPINDLE_PLUGIN_DIR"] = str(job_dir / "plugins")
        return env

    async def _prepare_workspace(self, workspace: WorkspaceSetup, repo_dir: Path, execution: _Execution) -> Path:
        clone = ["clone", workspace.repo, str(repo_dir)]
        if workspace.ref:
            clone[1:1] = ["--branch", workspace.ref]
        await self._git(execution, *clone)

        for name, url in workspace.remotes.items():
            await self._git(execution, "-C", str(repo_dir), "remote", "add", name, url)

        if workspace.branch:
            await self._git(execution, "-C", str(repo_dir), "checkout", "-B", workspace.branch)

        await self._write_files(repo_dir, workspace.files)
        return repo_dir

    async def _git(self, execution: _Execution, *args: str) -> None:
        with open(execution.log_path, "ab") as log_file:
            process = await asyncio.create_subprocess_exec(
                self.git_command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file,
                stderr=asyncio.subprocess.STDOUT,
            )
            await process.wait()
        if process.returncode != 0:
            raise ExecutorError(f"git {args[0] if args[0] != '-C' else args[2]} exited with code {process.returncode}")

    async def _write_files(self, root: Path, files: dict[str, str]) -> None:
        for relative, content in files.items():
            target = root / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(target, "w") as f:
                await f.write(content)

    async def _terminate(self, execution: _Execution) -> None:
        process = execution.process
        if process is None or process.returncode is not None:
            return
        pid = process.pid
        try:
            os.killpg(pid, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=self.shutdown_timeout)
            except TimeoutError:
                log.warning("execution_force_killing", task=execution.handle.key, pid=pid)
                os.killpg(pid, signal.SIGKILL)
                await process.wait()
        except ProcessLookupError:
            log.debug("execution_already_exited", task=execution.handle.key, pid=pid)


async def _read_text(path: Path) -> str:
    if not path.exists():
        return ""
    async with aiofiles.open(path, encoding="utf-8", errors="replace") as f:
        return await f.read()
