"""Resource and item models."""

from spindle.models.items import DiscoveredItem
from spindle.models.resources import (
    ITEM_ID_LABEL,
    RESOURCE_KINDS,
    TASKSPAWNER_LABEL,
    AgentConfig,
    Resource,
    Task,
    TaskSpawner,
    Workspace,
    load_resource,
)

__all__ = [
    "ITEM_ID_LABEL",
    "RESOURCE_KINDS",
    "TASKSPAWNER_LABEL",
    "AgentConfig",
    "DiscoveredItem",
    "Resource",
    "Task",
    "TaskSpawner",
    "Workspace",
    "load_resource",
]
