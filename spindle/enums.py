"""Enumerations for spindle resource phases, agent types and transports."""

from enum import Enum


class TaskPhase(str, Enum):
    """Lifecycle phase of a Task.

    The set is closed: unknown phase strings are rejected when a resource is
    constructed. ``Pending`` and ``Waiting`` both mean "not started yet" and
    may alternate; ``Running`` only moves to a terminal phase; ``Succeeded``
    and ``Failed`` are final.
    """

    PENDING = "Pending"
    WAITING = "Waiting"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    def __str__(self) -> str:
        return self.value

    @property
    def is_terminal(self) -> bool:
        return self in (TaskPhase.SUCCEEDED, TaskPhase.FAILED)

    @property
    def is_queued(self) -> bool:
        return self in (TaskPhase.PENDING, TaskPhase.WAITING)

    def can_transition_to(self, target: "TaskPhase") -> bool:
        """Return True if moving from this phase to ``target`` is allowed.

        Re-asserting the current phase is always allowed so that status
        writes that only touch the message or handles stay valid.
        """
        if target == self:
            return True
        return target in _ALLOWED_TRANSITIONS[self]


_ALLOWED_TRANSITIONS: dict[TaskPhase, frozenset[TaskPhase]] = {
    TaskPhase.PENDING: frozenset({TaskPhase.WAITING, TaskPhase.RUNNING, TaskPhase.FAILED}),
    TaskPhase.WAITING: frozenset({TaskPhase.PENDING, TaskPhase.RUNNING, TaskPhase.FAILED}),
    TaskPhase.RUNNING: frozenset({TaskPhase.SUCCEEDED, TaskPhase.FAILED}),
    TaskPhase.SUCCEEDED: frozenset(),
    TaskPhase.FAILED: frozenset(),
}


class TaskSpawnerPhase(str, Enum):
    """Phase reported on a TaskSpawner's status."""

    RUNNING = "Running"
    SUSPENDED = "Suspended"

    def __str__(self) -> str:
        return self.value


class AgentType(str, Enum):
    """Types of agent containers a Task can run."""

    CLAUDE_CODE = "claude-code"
    CODEX = "codex"
    GEMINI = "gemini"
    OPENCODE = "opencode"

    def __str__(self) -> str:
        return self.value


class CredentialType(str, Enum):
    """How the agent authenticates with its model provider."""

    API_KEY = "api-key"
    OAUTH = "oauth"

    def __str__(self) -> str:
        return self.value


class MCPTransport(str, Enum):
    """Transport used to reach an MCP server."""

    STDIO = "stdio"
    HTTP = "http"
    SSE = "sse"

    def __str__(self) -> str:
        return self.value


class ItemKind(str, Enum):
    """Kind of a discovered work item."""

    ISSUE = "Issue"
    PR = "PR"
    SCHEDULE = "Schedule"

    def __str__(self) -> str:
        return self.value
