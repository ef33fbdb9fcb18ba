"""Prompt and branch template rendering."""

from spindle.rendering.context import (
    ITEM_FIELDS,
    TASK_FIELDS,
    DependencyContext,
    ItemContext,
    dependency_context,
)
from spindle.rendering.engine import DEFAULT_PROMPT_TEMPLATE, TemplateRenderer

__all__ = [
    "DEFAULT_PROMPT_TEMPLATE",
    "ITEM_FIELDS",
    "TASK_FIELDS",
    "DependencyContext",
    "ItemContext",
    "TemplateRenderer",
    "dependency_context",
]
