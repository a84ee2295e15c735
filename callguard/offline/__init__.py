"""Offline support: queue operations while disconnected, sync them later."""

from callguard.offline.connectivity import ConnectivityMonitor, HttpConnectivityProbe
from callguard.offline.merge import MergeStrategy
from callguard.offline.models import ConnectionStatus, OfflineOperation, SyncResult
from callguard.offline.queue import OfflineEventType, OfflineQueue
from callguard.offline.storage import DurableStore, JsonFileStore, MemoryStore, RedisStore

__all__ = [
    "ConnectionStatus",
    "ConnectivityMonitor",
    "DurableStore",
    "HttpConnectivityProbe",
    "JsonFileStore",
    "MemoryStore",
    "MergeStrategy",
    "OfflineEventType",
    "OfflineOperation",
    "OfflineQueue",
    "RedisStore",
    "SyncResult",
]
