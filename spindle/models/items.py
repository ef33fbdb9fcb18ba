"""Discovered work items produced by source adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from spindle.enums import ItemKind


@dataclass(frozen=True)
class DiscoveredItem:
    """One candidate work item returned by a source adapter poll.

    Items are never stored on their own; an item is considered spawned once
    a Task labelled with its ``id`` exists.

    Attributes:
        id: Stable identifier, unique within the source
        kind: Issue, PR or Schedule
        number: Numeric identifier (0 for non-numeric sources)
        title: Item title
        body: Item body text
        url: Link to the item
        labels: Labels attached to the item
        comments: Comment bodies, oldest first
        time: Creation time for issues, tick time for schedules
        schedule: Cron expression for schedule items
    """

    id: str
    kind: ItemKind = ItemKind.ISSUE
    number: int = 0
    title: str = ""
    body: str = ""
    url: str = ""
    labels: tuple[str, ...] = field(default_factory=tuple)
    comments: tuple[str, ...] = field(default_factory=tuple)
    time: datetime | None = None
    schedule: str = ""
