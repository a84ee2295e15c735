"""Offline operation queue.

Operations enqueued while connectivity is unavailable are held in memory,
persisted to a ``DurableStore`` after every mutation, and replayed by
``sync_operations()`` once the queue is ONLINE again.

Sync order is highest priority first, then oldest first.  When the queue
is full, the lowest priority entries are evicted, oldest first.

Storage is best effort: read and write failures are logged and the queue
keeps working in memory.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable

from callguard.core.config import Settings
from callguard.core.errors import ErrorReport, QueueFullError
from callguard.core.events import EventEmitter
from callguard.offline.connectivity import ConnectivityMonitor, ConnectivityProbe, HttpConnectivityProbe
from callguard.offline.merge import CombineFunc, MergePolicy, MergeStrategy, resolve_merge_policy
from callguard.offline.models import ConnectionStatus, OfflineOperation, SyncResult, sync_order
from callguard.offline.storage import DurableStore, MemoryStore, create_store, decode_queue, encode_queue
from callguard.resilience.classifier import ErrorClassifier

logger = logging.getLogger(__name__)

ReplayHandler = Callable[[OfflineOperation], Awaitable[Any]]


class OfflineEventType(str, Enum):
    """Events emitted by ``OfflineQueue``."""

    QUEUED = "operation_queued"
    DEQUEUED = "operation_dequeued"
    SYNCED = "operation_synced"
    SYNC_FAILED = "operation_sync_failed"
    STATUS_CHANGED = "connection_status_changed"
    SYNC_STARTED = "sync_started"
    SYNC_COMPLETED = "sync_completed"


class NoReplayHandlerError(LookupError):
    """A reloaded operation has no closure and no handler for its type."""

    def __init__(self, operation_type: str) -> None:
        self.operation_type = operation_type
        super().__init__(f"No replay handler registered for operation type '{operation_type}'")


class OfflineQueue(EventEmitter):
    """Durable queue of operations deferred while offline.

    Args:
        store:             Durable store (defaults to ``MemoryStore``).
        key_prefix:        Prefix of the storage key.
        max_queue_size:    Maximum number of queued operations.
        max_operation_age: Seconds after which a stored entry is dropped on load.
        auto_sync:         Sync in the background on every transition to ONLINE.
        check_interval:    Seconds between connectivity probes.
        merge_strategy:    ``MergeStrategy`` (or its value) or a custom policy.
        combine:           Combine function for ``MergeStrategy.COMBINE``.
        probe:             Async connectivity probe; ``None`` disables polling.
        monitor:           Pre-built monitor (overrides *probe*/*check_interval*).
        classifier:        Used to categorize sync failures in event payloads.
    """

    def __init__(
        self,
        store: DurableStore | None = None,
        *,
        key_prefix: str = "callguard_offline_",
        max_queue_size: int = 100,
        max_operation_age: float = 7 * 24 * 60 * 60,
        auto_sync: bool = True,
        check_interval: float = 30.0,
        merge_strategy: MergeStrategy | str | MergePolicy = MergeStrategy.LATEST_ONLY,
        combine: CombineFunc | None = None,
        probe: ConnectivityProbe | None = None,
        monitor: ConnectivityMonitor | None = None,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        super().__init__()
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be at least 1")
        self.store = store if store is not None else MemoryStore()
        self.key_prefix = key_prefix
        self.max_queue_size = max_queue_size
        self.max_operation_age = max_operation_age
        self.auto_sync = auto_sync
        self.merge_policy = resolve_merge_policy(merge_strategy, combine)
        self.classifier = classifier or ErrorClassifier()
        self.monitor = monitor or ConnectivityMonitor(probe, check_interval)
        self.monitor.add_listener(self._on_status_change)

        self._queue: list[OfflineOperation] = []
        self._replay_handlers: dict[str, ReplayHandler] = {}
        self._syncing = False
        self._sync_tasks: set[asyncio.Task[SyncResult]] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: DurableStore | None = None,
        probe: ConnectivityProbe | None = None,
        **kwargs: Any,
    ) -> "OfflineQueue":
        return cls(
            store if store is not None else create_store(settings),
            key_prefix=kwargs.pop("key_prefix", settings.OFFLINE_STORAGE_KEY_PREFIX),
            max_queue_size=settings.OFFLINE_MAX_QUEUE_SIZE,
            max_operation_age=settings.OFFLINE_MAX_OPERATION_AGE_SECONDS,
            auto_sync=settings.OFFLINE_AUTO_SYNC,
            check_interval=settings.OFFLINE_CHECK_INTERVAL_SECONDS,
            merge_strategy=kwargs.pop("merge_strategy", settings.OFFLINE_MERGE_STRATEGY),
            probe=probe or HttpConnectivityProbe.from_settings(settings),
            **kwargs,
        )

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Load the persisted queue, take a first reading, start polling."""
        await self.load()
        await self.monitor.check()
        self.monitor.start()

    async def load(self) -> None:
        """Replace the in-memory queue with the persisted one."""
        try:
            blob = await self.store.get(self.storage_key)
        except Exception:
            logger.warning("Could not read offline queue from store", exc_info=True)
            self._queue = []
            return
        if blob is None:
            return
        try:
            operations = decode_queue(blob)
        except ValueError:
            logger.warning("Discarding unreadable offline queue", exc_info=True)
            self._queue = []
            return

        fresh = [op for op in operations if op.age <= self.max_operation_age]
        if len(fresh) < len(operations):
            logger.info("Dropped %d expired offline operation(s)", len(operations) - len(fresh))
        self._queue = sorted(fresh, key=sync_order)
        logger.info("Loaded %d queued operation(s)", len(self._queue))

    def dispose(self) -> None:
        """Stop polling, cancel background syncs, and drop all listeners."""
        self.monitor.stop()
        self.monitor.remove_listener(self._on_status_change)
        for task in list(self._sync_tasks):
            task.cancel()
        self.remove_all_listeners()
        logger.info("Offline queue disposed")

    async def wait_idle(self) -> None:
        """Wait for background syncs scheduled so far to finish."""
        if self._sync_tasks:
            await asyncio.gather(*list(self._sync_tasks), return_exceptions=True)

    # ── Connectivity ─────────────────────────────────────────────────

    @property
    def status(self) -> ConnectionStatus:
        return self.monitor.status

    @property
    def is_online(self) -> bool:
        return self.monitor.status == ConnectionStatus.ONLINE

    async def check_connectivity(self) -> bool:
        await self.monitor.check()
        return self.is_online

    def set_connection_status(self, status: ConnectionStatus) -> None:
        self.monitor.set_status(status)

    def notify_online(self) -> None:
        self.monitor.notify_online()

    def notify_offline(self) -> None:
        self.monitor.notify_offline()

    def _on_status_change(self, old_status: ConnectionStatus, new_status: ConnectionStatus) -> None:
        self.emit(
            OfflineEventType.STATUS_CHANGED,
            {"old_status": old_status, "new_status": new_status},
        )
        if new_status == ConnectionStatus.ONLINE and self.auto_sync and self._queue:
            self._schedule_sync()

    def _schedule_sync(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; auto-sync skipped")
            return
        task = loop.create_task(self.sync_operations())
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)

    # ── Queue operations ─────────────────────────────────────────────

    @property
    def storage_key(self) -> str:
        return f"{self.key_prefix}operation_queue"

    @property
    def queued_operations(self) -> list[OfflineOperation]:
        return list(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    def register_handler(self, operation_type: str, handler: ReplayHandler) -> None:
        """Replay *operation_type* entries that have no closure via *handler*."""
        self._replay_handlers[operation_type] = handler

    def unregister_handler(self, operation_type: str) -> None:
        self._replay_handlers.pop(operation_type, None)

    async def enqueue_operation(
        self,
        operation_type: str = "unknown",
        payload: Any = None,
        *,
        execute: Callable[[], Awaitable[Any]] | None = None,
        mergeable: bool = False,
        priority: int = 0,
        metadata: dict[str, Any] | None = None,
        operation_id: str = "",
    ) -> str:
        """Queue an operation and return its id.

        Raises:
            QueueFullError: The queue is full and every entry outranks the
                new operation, so it was evicted immediately.
        """
        operation = OfflineOperation(
            id=operation_id,
            type=operation_type,
            payload=payload if payload is not None else {},
            mergeable=mergeable,
            priority=priority,
            execute=execute,
            metadata=dict(metadata or {}),
        )

        if operation.mergeable:
            self._queue = self.merge_policy.merge(self._queue, operation)
            queued = self._queue[-1]
        else:
            self._queue.append(operation)
            queued = operation

        evicted = self._enforce_queue_size()
        if any(op is queued for op in evicted):
            # Merging never grows the queue, so nothing else was evicted
            logger.warning("Offline queue full; operation %s (%s) not queued", queued.id, queued.type)
            raise QueueFullError(queued.id, self.max_queue_size)

        await self._persist()
        for op in evicted:
            self.emit(OfflineEventType.DEQUEUED, {"operation_id": op.id, "reason": "evicted"})
        self.emit(OfflineEventType.QUEUED, {"operation": queued})
        logger.info("Operation enqueued: %s (%s)", queued.id, queued.type)
        return queued.id

    async def remove_operation(self, operation_id: str) -> bool:
        before = len(self._queue)
        self._queue = [op for op in self._queue if op.id != operation_id]
        if len(self._queue) == before:
            return False
        await self._persist()
        self.emit(OfflineEventType.DEQUEUED, {"operation_id": operation_id, "reason": "removed"})
        logger.info("Operation removed from queue: %s", operation_id)
        return True

    async def clear_queue(self) -> None:
        count = len(self._queue)
        self._queue = []
        await self._persist()
        logger.info("Cleared %d operation(s) from queue", count)

    async def sync_operations(self) -> SyncResult:
        """Replay queued operations; successes leave the queue.

        Returns an empty result when a sync is already running, the queue
        is not ONLINE, or there is nothing to sync.
        """
        if self._syncing or not self.is_online or not self._queue:
            return SyncResult.empty()

        self._syncing = True
        try:
            return await self._sync()
        finally:
            self._syncing = False

    async def _sync(self) -> SyncResult:
        operations = sorted(self._queue, key=sync_order)
        self.emit(OfflineEventType.SYNC_STARTED, {"operation_count": len(operations)})
        logger.info("Starting sync of %d operation(s)", len(operations))

        result = SyncResult(total_count=len(operations))
        for operation in operations:
            if not any(op is operation for op in self._queue):
                # Removed while an earlier operation was syncing
                continue
            operation.attempts += 1
            operation.last_attempt = time.time()
            try:
                await self._replay(operation)
            except Exception as exc:
                result.failed_operations.append(operation)
                report = ErrorReport.from_exception(exc, self.classifier.classify(exc).value)
                self.emit(
                    OfflineEventType.SYNC_FAILED,
                    {"operation": operation, "error": report},
                )
                logger.warning(
                    "Operation sync failed: %s (%s) attempt %d: %s",
                    operation.id,
                    operation.type,
                    operation.attempts,
                    report.error,
                )
                continue

            result.successful_operations.append(operation)
            self._queue = [op for op in self._queue if op is not operation]
            self.emit(OfflineEventType.SYNCED, {"operation": operation})
            logger.info("Operation synced: %s (%s)", operation.id, operation.type)

        result.success_count = len(result.successful_operations)
        result.failure_count = len(result.failed_operations)
        await self._persist()

        self.emit(OfflineEventType.SYNC_COMPLETED, {"result": result})
        logger.info(
            "Sync completed: %d succeeded, %d failed",
            result.success_count,
            result.failure_count,
        )
        return result

    # ── Internals ────────────────────────────────────────────────────

    async def _replay(self, operation: OfflineOperation) -> Any:
        if operation.execute is not None:
            return await operation.execute()
        handler = self._replay_handlers.get(operation.type)
        if handler is None:
            raise NoReplayHandlerError(operation.type)
        return await handler(operation)

    def _enforce_queue_size(self) -> list[OfflineOperation]:
        """Evict down to ``max_queue_size`` and return the evicted entries."""
        overflow = len(self._queue) - self.max_queue_size
        if overflow <= 0:
            return []
        # Lowest priority first, oldest first within a priority
        ranked = sorted(enumerate(self._queue), key=lambda item: (item[1].priority, item[1].created_at, item[0]))
        victims = [op for _, op in ranked[:overflow]]
        self._queue = [op for op in self._queue if not any(op is victim for victim in victims)]
        logger.warning("Offline queue full; evicted %d operation(s)", len(victims))
        return victims

    async def _persist(self) -> None:
        try:
            await self.store.set(self.storage_key, encode_queue(self._queue))
        except Exception:
            logger.warning("Could not persist offline queue", exc_info=True)
