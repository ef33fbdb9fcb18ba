"""Branch-based mutual exclusion between Tasks.

At most one Task per non-empty branch may be Running in a namespace. There is
no lock object: ``check`` is a pure predicate over a fresh listing of sibling
Tasks, so a crashed controller can never leave a stale lock behind. The
residual race between two passes that both see the branch as free is closed
by the executor rejecting duplicate starts.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from spindle.enums import TaskPhase
from spindle.models.resources import Task

_EPOCH = datetime.min.replace(tzinfo=UTC)


@dataclass(frozen=True)
class MutexVerdict:
    """Whether a Task may take its branch, and if not, who holds it."""

    free: bool
    holder: str | None = None
    message: str = ""


def queue_order(task: Task) -> tuple[datetime, str]:
    """Tie-break key for queued Tasks: creation time, then name."""
    return (task.metadata.creation_timestamp or _EPOCH, task.name)


def check(
    task: Task,
    siblings: Iterable[Task],
    is_eligible: Callable[[Task], bool] | None = None,
) -> MutexVerdict:
    """Decide whether ``task`` may start on its branch.

    The branch is held by any same-branch sibling that is Running. A
    same-branch sibling that is Pending, eligible (its dependencies are
    satisfied) and ahead of ``task`` in queue order also blocks it, which
    makes queued Tasks take the branch first come, first served.

    Args:
        task: Candidate Task
        siblings: Tasks in the same namespace (may include ``task``)
        is_eligible: Predicate telling whether a queued sibling is
            otherwise ready to start. Defaults to "has no dependencies".

    Returns:
        MutexVerdict
    """
    branch = task.effective_branch
    if not branch:
        return MutexVerdict(free=True)

    if is_eligible is None:
        is_eligible = _has_no_dependencies

    same_branch = [
        t
        for t in siblings
        if t.name != task.name and t.namespace == task.namespace and t.effective_branch == branch
    ]

    for other in same_branch:
        if other.status.phase == TaskPhase.RUNNING:
            return MutexVerdict(
                free=False,
                holder=other.name,
                message=f'Branch "{branch}" is in use by Task "{other.name}"',
            )

    mine = queue_order(task)
    for other in sorted(same_branch, key=queue_order):
        if queue_order(other) >= mine:
            break
        if other.status.phase == TaskPhase.PENDING and is_eligible(other):
            return MutexVerdict(
                free=False,
                holder=other.name,
                message=f'Branch "{branch}" is queued for Task "{other.name}"',
            )

    return MutexVerdict(free=True)


def _has_no_dependencies(task: Task) -> bool:
    return not task.spec.depends_on
