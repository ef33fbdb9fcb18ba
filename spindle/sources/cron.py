"""Time-based source driven by a cron schedule."""

from __future__ import annotations

from datetime import UTC, datetime

import structlog
from croniter import CroniterBadCronError, croniter

from spindle.enums import ItemKind
from spindle.exceptions import SourceError
from spindle.models.items import DiscoveredItem
from spindle.sources.base import SourceAdapter

log = structlog.get_logger(__name__)


class CronSource(SourceAdapter):
    """Emit one item per cron instant that has elapsed since the last poll."""

    def __init__(self, max_items: int = 100) -> None:
        self.max_items = max_items

    async def tick(self, schedule: str, now: datetime, since: datetime) -> list[DiscoveredItem]:
        """Return items for every instant in ``(since, now]``.

        Item IDs are derived from the instant (``YYYYMMDD-HHMM`` in UTC), so
        the same instant always maps to the same item no matter how often it
        is polled.
        """
        try:
            it = croniter(schedule, since.astimezone(UTC))
        except (CroniterBadCronError, ValueError) as e:
            raise SourceError(f"invalid cron schedule {schedule!r}: {e}") from e

        items = []
        now = now.astimezone(UTC)
        while len(items) < self.max_items:
            instant = it.get_next(datetime)
            if instant > now:
                break
            stamp = instant.isoformat().replace("+00:00", "Z")
            items.append(
                DiscoveredItem(
                    id=instant.strftime("%Y%m%d-%H%M"),
                    kind=ItemKind.SCHEDULE,
                    title=stamp,
                    time=instant,
                    schedule=schedule,
                )
            )

        if len(items) == self.max_items:
            log.warning("cron_items_truncated", schedule=schedule, max_items=self.max_items)
        return items
