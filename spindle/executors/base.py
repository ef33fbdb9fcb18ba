"""
Pod executor contract.

A pod executor runs one Task's container to completion. spindle only needs
a handful of things from it: start a work unit (rejecting duplicates), report
how it ended, expose a readable artifact for output capture, stop it, and
forget it once its Task is gone.

Key Exports:
    ExecutionRequest: Everything needed to start a work unit.
    ExecutionHandle: Identifiers of a started work unit.
    ExecutionStatus: Observed state of a work unit.
    Artifact: What a finished work unit left behind for output capture.
    PodExecutor: Abstract base class for executors.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum


class ExecutionState(str, Enum):
    """How a work unit is doing, as reported by the executor."""

    RUNNING = "running"
    EXITED = "exited"
    TIMED_OUT = "timed_out"
    INFRA_FAILURE = "infra_failure"
    NOT_FOUND = "not_found"


@dataclass
class WorkspaceSetup:
    """Repository preparation done before the agent starts."""

    repo: str
    ref: str | None = None
    branch: str | None = None
    secret_ref: str | None = None
    files: dict[str, str] = field(default_factory=dict)
    remotes: dict[str, str] = field(default_factory=dict)


@dataclass
class ExecutionRequest:
    """A request to start one work unit.

    Attributes:
        key: Namespaced Task key, the unit of duplicate detection
        name: Job name
        image: Container image
        command: Agent command; the rendered prompt is appended as the
            last argument
        prompt: Rendered prompt
        env: Environment variables
        secret_env: Environment variable name to secret reference
        plugin_files: Plugin files, relative to the plugin directory
        workspace: Repository to prepare, if any
        deadline_seconds: Execution timeout
        resources: Resource limits
        node_selector: Placement constraints
        labels: Labels copied from the Task
        uid: UID of the Task, which tells apart Tasks re-created under
            the same name
    """

    key: str
    name: str
    image: str
    command: list[str]
    prompt: str
    env: dict[str, str] = field(default_factory=dict)
    secret_env: dict[str, str] = field(default_factory=dict)
    plugin_files: dict[str, str] = field(default_factory=dict)
    workspace: WorkspaceSetup | None = None
    deadline_seconds: int | None = None
    resources: dict[str, str] = field(default_factory=dict)
    node_selector: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    uid: str = ""


@dataclass(frozen=True)
class ExecutionHandle:
    """Identifiers of a started work unit, recorded on the Task status.

    ``uid`` is the UID of the Task the work unit was started for. It is not
    part of the identity: a handle rebuilt from a Task status has none.
    """

    key: str
    job_name: str
    pod_name: str
    uid: str = field(default="", compare=False)


@dataclass(frozen=True)
class ExecutionStatus:
    """Observed state of a work unit."""

    state: ExecutionState
    exit_code: int | None = None
    message: str = ""

    @property
    def finished(self) -> bool:
        return self.state != ExecutionState.RUNNING


@dataclass(frozen=True)
class Artifact:
    """What a work unit left behind for output capture.

    Attributes:
        content: Result text
        framed: ``content`` is the combined agent log, so only the lines
            between the output markers are results
        log: Agent log, scanned for token usage
    """

    content: str = ""
    framed: bool = False
    log: str = ""


class PodExecutor(ABC):
    """Abstract base class for pod executors."""

    @abstractmethod
    async def start(self, request: ExecutionRequest) -> ExecutionHandle:
        """Start a work unit.

        Raises:
            ExecutionConflictError: If a work unit for ``request.key`` was
                already started
            ExecutorError: If the work unit cannot be started
        """
        pass

    @abstractmethod
    async def find(self, key: str) -> ExecutionHandle | None:
        """Return the handle of the work unit started for ``key``, if any."""
        pass

    @abstractmethod
    async def status(self, handle: ExecutionHandle) -> ExecutionStatus:
        """Report the state of a work unit."""
        pass

    @abstractmethod
    async def read_artifact(self, handle: ExecutionHandle) -> Artifact:
        """Read the work unit's result artifact (empty if unavailable)."""
        pass

    @abstractmethod
    async def stop(self, handle: ExecutionHandle) -> None:
        """Stop a work unit. Stopping a finished work unit is a no-op."""
        pass

    @abstractmethod
    async def forget(self, key: str) -> None:
        """Drop the work unit started for ``key``, stopping it if needed.

        Afterwards ``find(key)`` returns None and a new work unit may be
        started under the same key. Forgetting an unknown key is a no-op.
        """
        pass
