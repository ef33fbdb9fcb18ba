"""
Bounded retries with exponential backoff.

The control loop retries two kinds of operations: status writes that lost an
optimistic-concurrency race (``ConflictError``) and GitHub API calls that hit
a transport error. Agent work itself is never retried; a Failed Task stays
Failed.

Example:
    >>> @async_retry(max_attempts=5, base_delay=0.05, exceptions=(ConflictError,))
    ... async def mark_running(store, namespace, name):
    ...     task = await store.get("Task", namespace, name)
    ...     task.status.phase = TaskPhase.RUNNING
    ...     return await store.update_status(task)
"""

import asyncio
import functools
from collections.abc import Awaitable, Callable, Iterator
from typing import ParamSpec, TypeVar

import structlog

log = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


def backoff_delays(base_delay: float, backoff_factor: float, max_delay: float | None = None) -> Iterator[float]:
    """Yield ``base_delay``, ``base_delay * backoff_factor``, ... capped at ``max_delay``."""
    delay = base_delay
    while True:
        yield delay if max_delay is None else min(delay, max_delay)
        delay *= backoff_factor


def async_retry(
    max_attempts: int = 3,
    backoff_factor: float = 2.0,
    base_delay: float = 1.0,
    max_delay: float | None = None,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Retry an async callable when it raises one of ``exceptions``.

    Other exceptions propagate immediately. Once ``max_attempts`` calls have
    failed, the last exception is re-raised.

    Raises:
        ValueError: If ``max_attempts`` is less than 1
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        name = getattr(func, "__qualname__", repr(func))

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            delays = backoff_delays(base_delay, backoff_factor, max_delay)
            attempt = 1
            while True:
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_attempts:
                        log.warning("retry_exhausted", function=name, attempts=attempt, error=str(e))
                        raise
                    delay = next(delays)
                    log.debug("retry_scheduled", function=name, attempt=attempt, delay=delay, error=str(e))
                    await asyncio.sleep(delay)
                    attempt += 1

        return wrapper

    return decorator
