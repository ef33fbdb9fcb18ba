"""Declarative resource store."""

from spindle.store.memory import ResourceStore, WatchEvent, WatchEventType

__all__ = ["ResourceStore", "WatchEvent", "WatchEventType"]
