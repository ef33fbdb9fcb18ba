"""Source adapters for TaskSpawner discovery."""

from spindle.sources.base import SourceAdapter
from spindle.sources.cron import CronSource
from spindle.sources.filters import apply_filter, matches
from spindle.sources.github import GitHubIssuesSource
from spindle.sources.registry import SourceRegistry

__all__ = [
    "CronSource",
    "GitHubIssuesSource",
    "SourceAdapter",
    "SourceRegistry",
    "apply_filter",
    "matches",
]
