"""DRMS offline sync.

Offline-first synchronization and conflict resolution for disaster-response
field devices.
"""

__version__ = "0.1.0"
