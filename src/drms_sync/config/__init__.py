"""Configuration module for DRMS offline sync."""

from drms_sync.config.base import Settings
from drms_sync.config.loader import get_settings

__all__ = ["Settings", "get_settings"]
