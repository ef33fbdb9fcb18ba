"""Custom exception hierarchy for the spindle orchestration system.

This module defines a structured exception hierarchy that lets callers tell
apart admission failures, store conflicts, executor faults and transient
source errors, and react to each the way the control loop requires.

Exception Hierarchy:
    SpindleError (base)
    ├── ConfigurationError
    ├── ValidationError
    ├── TemplateError
    ├── StoreError
    │   ├── NotFoundError
    │   ├── AlreadyExistsError
    │   └── ConflictError
    ├── ExecutorError
    │   └── ExecutionConflictError
    └── SourceError

Dependency failures, executor failures (non-zero exits, deadlines) and
corrupted result artifacts are not raised: they are recorded on the Task
status as a ``Failed`` phase with a message, or degraded gracefully.

Example Usage:
    >>> from spindle.exceptions import ValidationError
    >>> try:
    ...     await store.create(task)
    ... except ValidationError as e:
    ...     print(e.message)
"""


class SpindleError(Exception):
    """Base exception for all spindle errors.

    Attributes:
        message: Human-readable error description
    """

    def __init__(self, message: str) -> None:
        """Initialize exception.

        Args:
            message: Error message
        """
        self.message = message
        super().__init__(message)


class ConfigurationError(SpindleError):
    """Configuration-related errors.

    Raised when configuration files are invalid, missing, or contain
    incompatible settings.
    """

    pass


class ValidationError(SpindleError):
    """A resource was rejected at admission.

    Raised for malformed specs, cyclic ``depends_on`` graphs, unrenderable
    template syntax, and attempts to mutate an immutable spec. Rejected
    resources never reach the runtime loop.

    Attributes:
        message: Human-readable error description
        field: Dotted path of the offending field, when known
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            field: Offending field path (e.g. "spec.depends_on")
        """
        self.field = field
        full_message = message if not field else f"{field}: {message}"
        super().__init__(full_message)
        self.message = message


class TemplateError(SpindleError):
    """Template rendering errors.

    Raised when a prompt or branch template cannot be rendered, typically
    because it references a field or dependency that does not exist.

    Attributes:
        reference: The unresolvable reference, when known
    """

    def __init__(self, message: str, reference: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            reference: The expression or name that could not be resolved
        """
        self.reference = reference
        super().__init__(message)


class StoreError(SpindleError):
    """Resource store errors.

    Base class for errors raised by the declarative resource surface.

    Attributes:
        kind: Resource kind (e.g. "Task")
        key: Namespaced key ("namespace/name")
    """

    def __init__(self, message: str, kind: str | None = None, key: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            kind: Resource kind involved
            key: Namespaced key of the resource involved
        """
        self.kind = kind
        self.key = key
        parts = []
        if kind:
            parts.append(f"kind: {kind}")
        if key:
            parts.append(f"key: {key}")
        full_message = message if not parts else f"{message} ({', '.join(parts)})"
        super().__init__(full_message)
        self.message = message


class NotFoundError(StoreError):
    """The requested resource does not exist."""

    pass


class AlreadyExistsError(StoreError):
    """A resource with the same kind, namespace and name already exists."""

    pass


class ConflictError(StoreError):
    """An update was made against a stale resource version.

    The caller should re-read the resource and retry the update.
    """

    pass


class ExecutorError(SpindleError):
    """Pod executor infrastructure errors.

    Raised when the execution substrate cannot start, inspect or stop a
    work unit. The Task controller records these as a ``Failed`` phase.

    Attributes:
        task_key: Namespaced key of the Task being executed
    """

    def __init__(self, message: str, task_key: str | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            task_key: Namespaced key of the Task
        """
        self.task_key = task_key
        full_message = message if not task_key else f"{message} (task: {task_key})"
        super().__init__(full_message)
        self.message = message


class ExecutionConflictError(ExecutorError):
    """An execution for the same Task key has already been started.

    Duplicate starts are rejected rather than silently duplicated, which
    makes concurrent reconciliation passes racing to start the same Task
    safe.
    """

    pass


class SourceError(SpindleError):
    """Transient source adapter failure.

    Raised when a source adapter cannot enumerate items (HTTP errors,
    timeouts, malformed schedules). The spawner logs it and retries on the
    next scheduled tick without touching spawner or Task state.

    Attributes:
        status_code: HTTP status code (if applicable)
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        """Initialize exception.

        Args:
            message: Error message
            status_code: HTTP status code (if applicable)
        """
        self.status_code = status_code
        full_message = message
        if status_code:
            full_message = f"{message} (HTTP {status_code})"
        super().__init__(full_message)
        self.message = message
