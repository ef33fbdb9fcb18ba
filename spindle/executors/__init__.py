"""Pod executors."""

from spindle.executors.base import (
    Artifact,
    ExecutionHandle,
    ExecutionRequest,
    ExecutionState,
    ExecutionStatus,
    PodExecutor,
    WorkspaceSetup,
)
from spindle.executors.local import SubprocessExecutor

__all__ = [
    "Artifact",
    "ExecutionHandle",
    "ExecutionRequest",
    "ExecutionState",
    "ExecutionStatus",
    "PodExecutor",
    "SubprocessExecutor",
    "WorkspaceSetup",
]
