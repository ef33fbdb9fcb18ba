"""
Source adapter contract.

Source adapters enumerate candidate work items for a TaskSpawner. Trigger
sources (issue trackers) implement ``list``; time sources implement
``tick``. Any I/O failure is raised as ``SourceError`` so the spawner can
log it and try again on its next poll without touching any state.
"""

from __future__ import annotations

from abc import ABC
from datetime import datetime

from spindle.models.items import DiscoveredItem
from spindle.models.resources import GitHubIssuesFilter


class SourceAdapter(ABC):
    """Base class for source adapters."""

    async def list(self, item_filter: GitHubIssuesFilter) -> list[DiscoveredItem]:
        """List items matching a trigger filter.

        Raises:
            SourceError: If the source cannot be queried
        """
        raise NotImplementedError(f"{type(self).__name__} does not support list")

    async def tick(self, schedule: str, now: datetime, since: datetime) -> list[DiscoveredItem]:
        """Return one item per scheduled instant in ``(since, now]``.

        Raises:
            SourceError: If the schedule cannot be evaluated
        """
        raise NotImplementedError(f"{type(self).__name__} does not support tick")

    async def close(self) -> None:
        """Release any resources held by the adapter."""
        return None
