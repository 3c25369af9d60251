"""Offline sync: queue, engine, conflict handling and transport."""

from .conflict_resolver import ConflictResolver
from .conflict_store import ConflictStore
from .engine import SyncEngine
from .network_monitor import NetworkEvent, NetworkMonitor
from .queue import SyncQueue
from .transport import HttpSyncTransport, SyncTransport

__all__ = [
    "ConflictResolver",
    "ConflictStore",
    "HttpSyncTransport",
    "NetworkEvent",
    "NetworkMonitor",
    "SyncEngine",
    "SyncQueue",
    "SyncTransport",
]
