"""Shared types for the reconcile loop."""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class ReconcileResult:
    """What the manager should do after a reconcile pass.

    Attributes:
        requeue_after: Seconds after which the resource should be looked at
            again even without a watch event. None means only on events.
    """

    requeue_after: float | None = None


DONE = ReconcileResult()
