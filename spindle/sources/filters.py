"""Label filtering for discovered items."""

from collections.abc import Iterable

from spindle.models.items import DiscoveredItem
from spindle.models.resources import GitHubIssuesFilter


def matches(item: DiscoveredItem, required: Iterable[str] = (), excluded: Iterable[str] = ()) -> bool:
    """Return True if the item holds every required label and no excluded one.

    Attaching an excluded label to an item is how a human pauses it: the item
    is no longer considered for spawning on later polls.
    """
    labels = set(item.labels)
    return set(required) <= labels and not (set(excluded) & labels)


def apply_filter(items: Iterable[DiscoveredItem], item_filter: GitHubIssuesFilter | None) -> list[DiscoveredItem]:
    """Keep the items that pass ``item_filter`` (all items if None)."""
    if item_filter is None:
        return list(items)
    return [i for i in items if matches(i, item_filter.labels, item_filter.exclude_labels)]
