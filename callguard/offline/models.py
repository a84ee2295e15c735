"""Offline queue data types."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable


class ConnectionStatus(str, Enum):
    """Connectivity as last observed by a queue."""

    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


def new_operation_id() -> str:
    """Time-prefixed id, e.g. ``1718000000000-k3j9x2a``."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)[:7]}"


@dataclass
class OfflineOperation:
    """A deferred call waiting for connectivity.

    ``execute`` is the closure captured at enqueue time.  It is never
    persisted, so operations reloaded from storage have ``execute=None``
    and are replayed through a handler registered for their ``type``.

    Attributes:
        id:           Unique id (assigned on enqueue when empty).
        type:         Operation type, used for merging and replay handlers.
        payload:      JSON-serializable arguments.
        created_at:   Epoch seconds when enqueued.
        attempts:     Sync attempts so far.
        last_attempt: Epoch seconds of the last sync attempt.
        mergeable:    Whether the merge policy may replace/combine it.
        priority:     Higher values sync first and are evicted last.
        metadata:     Free-form JSON-serializable data.
    """

    type: str = "unknown"
    payload: Any = field(default_factory=dict)
    id: str = ""
    created_at: float = field(default_factory=time.time)
    attempts: int = 0
    last_attempt: float | None = None
    mergeable: bool = False
    priority: int = 0
    execute: Callable[[], Awaitable[Any]] | None = field(default=None, repr=False, compare=False)
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = new_operation_id()

    @property
    def age(self) -> float:
        return time.time() - self.created_at


def sync_order(operation: OfflineOperation) -> tuple[int, float]:
    """Sort key: highest priority first, then oldest first."""
    return (-operation.priority, operation.created_at)


@dataclass
class SyncResult:
    """Outcome of one ``sync_operations()`` pass."""

    success_count: int = 0
    failure_count: int = 0
    total_count: int = 0
    successful_operations: list[OfflineOperation] = field(default_factory=list)
    failed_operations: list[OfflineOperation] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "SyncResult":
        return cls()

    def to_dict(self) -> dict[str, Any]:
        return {
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "total_count": self.total_count,
            "successful_operations": [op.id for op in self.successful_operations],
            "failed_operations": [op.id for op in self.failed_operations],
        }
