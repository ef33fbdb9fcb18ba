"""Configuration management."""

from spindle.config.settings import SpindleSettings

__all__ = ["SpindleSettings"]
