"""Resilience coordinator: one retry executor, circuit breaker and
offline queue per logical dependency.

Call path for ``execute()``::

    offline-capable and OFFLINE ──▶ enqueue ──▶ QueuedResult("offline")
    otherwise:
        circuit_breaker.execute(
            retry_executor.run(operation)      # retries happen inside
        )                                      # one circuit outcome per call
    network-related failure, offline-capable, connectivity check says
    OFFLINE ──▶ enqueue ──▶ QueuedResult("network_error")

``CircuitOpenError`` always propagates; it is never rerouted to the queue.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from callguard.core.config import Settings
from callguard.core.errors import CircuitOpenError
from callguard.offline.connectivity import ConnectivityProbe
from callguard.offline.models import ConnectionStatus, SyncResult
from callguard.offline.queue import OfflineEventType, OfflineQueue
from callguard.offline.storage import DurableStore
from callguard.resilience.circuit_breaker import CircuitBreaker, CircuitState
from callguard.resilience.classifier import ErrorClassifier
from callguard.resilience.executor import Operation, RetryExecutor, invoke

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResilienceType(str, Enum):
    RETRY = "retry"
    CIRCUIT_BREAKER = "circuit_breaker"
    OFFLINE_QUEUE = "offline_queue"


class ResilienceHealth(BaseModel):
    """Health of one resilience component."""

    type: ResilienceType
    healthy: bool
    message: str
    metrics: dict[str, Any] = Field(default_factory=dict)


@dataclass(frozen=True)
class QueuedResult:
    """Returned by ``execute()`` when the call was deferred to the queue.

    Attributes:
        operation_id:   Id of the queued operation.
        operation_type: Its type.
        reason:         ``"offline"`` (queued up front) or ``"network_error"``
                        (queued after a network-related failure).
    """

    operation_id: str
    operation_type: str
    reason: str


class ResilienceCoordinator:
    """Composes retry, circuit breaking and offline queuing for one dependency.

    Args:
        name:            Dependency name; also the circuit name.
        executor:        Retry executor (defaults to ``RetryExecutor()``).
        circuit_breaker: Circuit breaker (defaults to ``CircuitBreaker(name)``).
        offline_queue:   Optional queue; without one nothing is deferred.
        classifier:      Decides which failures are network related
                         (defaults to the executor's classifier).

    Example:
        >>> async with ResilienceCoordinator.from_settings("profiles", Settings()) as rc:
        ...     profile = await rc.execute(fetch_profile)
    """

    def __init__(
        self,
        name: str = "default",
        *,
        executor: RetryExecutor | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        offline_queue: OfflineQueue | None = None,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        self.name = name
        self.executor = executor or RetryExecutor()
        self.circuit_breaker = circuit_breaker or CircuitBreaker(name)
        self.offline_queue = offline_queue
        self.classifier = classifier or self.executor.policy.classifier

        if self.offline_queue is not None:
            self.offline_queue.add_listener(OfflineEventType.STATUS_CHANGED, self._on_connection_change)

    @classmethod
    def from_settings(
        cls,
        name: str,
        settings: Settings,
        *,
        store: DurableStore | None = None,
        probe: ConnectivityProbe | None = None,
    ) -> "ResilienceCoordinator":
        offline_queue = None
        if settings.OFFLINE_ENABLED:
            offline_queue = OfflineQueue.from_settings(
                settings,
                store=store,
                probe=probe,
                key_prefix=f"{settings.OFFLINE_STORAGE_KEY_PREFIX}{name}_",
            )
        return cls(
            name,
            executor=RetryExecutor.from_settings(settings, context={"operation": name}),
            circuit_breaker=CircuitBreaker.from_settings(name, settings),
            offline_queue=offline_queue,
        )

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        """Load the offline queue and start connectivity polling."""
        if self.offline_queue is not None:
            await self.offline_queue.start()
        logger.info("Resilience coordinator '%s' started", self.name)

    async def __aenter__(self) -> "ResilienceCoordinator":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.dispose()

    def dispose(self) -> None:
        """Abort in-flight calls, stop polling and drop all listeners."""
        self.executor.abort_all()
        self.executor.remove_all_listeners()
        self.circuit_breaker.clear_handlers()
        if self.offline_queue is not None:
            self.offline_queue.dispose()
        logger.info("Resilience coordinator '%s' disposed", self.name)

    # ── Execution ────────────────────────────────────────────────────

    async def execute(
        self,
        operation: Operation[T],
        *,
        offline_capable: bool = False,
        offline_operation_type: str | None = None,
        offline_operation_payload: Any = None,
        priority: int = 0,
        mergeable: bool = False,
        context: dict[str, Any] | None = None,
    ) -> T | QueuedResult:
        """Run *operation* through the circuit and retry loop.

        Returns the operation's value, or a ``QueuedResult`` when an
        offline-capable call was deferred.

        Raises:
            CircuitOpenError: The circuit rejected the call.
            RetryExhaustedError: Every attempt failed, or the error was not retryable.
            OperationTimeoutError: The total timeout fired.
            OperationAbortedError: The call was aborted by ``dispose()``.
            QueueFullError: The queue is full and outranks the deferred call.
        """
        context = context or {"operation": self.name}
        queue = self.offline_queue if offline_capable else None

        if queue is not None and queue.status == ConnectionStatus.OFFLINE:
            logger.info("Queueing offline operation for '%s' (%s)", self.name, offline_operation_type)
            return await self._enqueue(
                queue, operation, "offline",
                offline_operation_type, offline_operation_payload, priority, mergeable, context,
            )

        try:
            return await self.circuit_breaker.execute(self._run_with_retry, operation)
        except CircuitOpenError:
            raise
        except Exception as exc:
            if queue is None or not self.classifier.is_network_related(exc):
                raise
            logger.info("Network error for '%s', checking connectivity: %s", self.name, exc)
            await queue.check_connectivity()
            if queue.status != ConnectionStatus.OFFLINE:
                raise
            return await self._enqueue(
                queue, operation, "network_error",
                offline_operation_type, offline_operation_payload, priority, mergeable, context,
            )

    async def _run_with_retry(self, operation: Operation[T]) -> T:
        result = await self.executor.run(operation)
        return result.unwrap()

    async def _enqueue(
        self,
        queue: OfflineQueue,
        operation: Operation[Any],
        reason: str,
        operation_type: str | None,
        payload: Any,
        priority: int,
        mergeable: bool,
        context: dict[str, Any],
    ) -> QueuedResult:
        operation_type = operation_type or "unknown"
        operation_id = await queue.enqueue_operation(
            operation_type,
            payload,
            execute=functools.partial(invoke, operation),
            mergeable=mergeable,
            priority=priority,
            metadata={"context": context, "reason": reason},
        )
        return QueuedResult(operation_id=operation_id, operation_type=operation_type, reason=reason)

    def _on_connection_change(self, event_type: Enum, payload: dict[str, Any]) -> None:
        if payload["new_status"] != ConnectionStatus.ONLINE:
            return
        if self.circuit_breaker.state == CircuitState.OPEN:
            logger.info("Connection restored; resetting circuit '%s'", self.name)
            self.circuit_breaker.reset()

    # ── Offline ──────────────────────────────────────────────────────

    async def check_connectivity(self) -> bool:
        """Probe now; ``True`` when online (always ``True`` without a queue)."""
        if self.offline_queue is None:
            return True
        return await self.offline_queue.check_connectivity()

    async def sync_offline_operations(self) -> SyncResult:
        if self.offline_queue is None:
            return SyncResult.empty()
        return await self.offline_queue.sync_operations()

    # ── Health ───────────────────────────────────────────────────────

    def get_health(self) -> list[ResilienceHealth]:
        health = [
            ResilienceHealth(
                type=ResilienceType.RETRY,
                healthy=True,
                message="Retry policy active",
                metrics=self.executor.snapshot(),
            )
        ]

        circuit_ok = self.circuit_breaker.state != CircuitState.OPEN
        health.append(
            ResilienceHealth(
                type=ResilienceType.CIRCUIT_BREAKER,
                healthy=circuit_ok,
                message="Circuit breaker healthy" if circuit_ok else "Circuit breaker open",
                metrics=self.circuit_breaker.snapshot(),
            )
        )

        if self.offline_queue is not None:
            status = self.offline_queue.status
            health.append(
                ResilienceHealth(
                    type=ResilienceType.OFFLINE_QUEUE,
                    healthy=status == ConnectionStatus.ONLINE,
                    message=f"Connection {status.value}",
                    metrics={
                        "connection_status": status.value,
                        "queued_operation_count": len(self.offline_queue),
                    },
                )
            )
        return health

    def reset(self) -> None:
        """Close the circuit; retry state is per call and needs no reset."""
        self.circuit_breaker.reset()
        logger.info("Reset resilience components for '%s'", self.name)

    # ── Presets ──────────────────────────────────────────────────────

    @classmethod
    def aggressive(cls, name: str, offline_queue: OfflineQueue | None = None) -> "ResilienceCoordinator":
        """More retries and a lenient circuit with a short reset timeout."""
        return cls(
            name,
            executor=RetryExecutor.aggressive(),
            circuit_breaker=CircuitBreaker(name, failure_threshold=75.0, reset_timeout=15.0),
            offline_queue=offline_queue,
        )

    @classmethod
    def conservative(cls, name: str, offline_queue: OfflineQueue | None = None) -> "ResilienceCoordinator":
        """Fewer retries and a strict circuit with a long reset timeout."""
        return cls(
            name,
            executor=RetryExecutor.conservative(),
            circuit_breaker=CircuitBreaker(name, failure_threshold=25.0, reset_timeout=60.0),
            offline_queue=offline_queue,
        )


class CoordinatorRegistry:
    """Manages one ``ResilienceCoordinator`` per dependency name.

    Usage::

        registry = CoordinatorRegistry(Settings())
        rc = registry.get("profiles")
        await rc.start()
        profile = await rc.execute(fetch_profile)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: DurableStore | None = None,
        probe: ConnectivityProbe | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._store = store
        self._probe = probe
        self._coordinators: dict[str, ResilienceCoordinator] = {}

    def get(self, name: str) -> ResilienceCoordinator:
        """Return (or create) the coordinator for *name*."""
        if name not in self._coordinators:
            self._coordinators[name] = ResilienceCoordinator.from_settings(
                name,
                self._settings,
                store=self._store,
                probe=self._probe,
            )
        return self._coordinators[name]

    def __contains__(self, name: str) -> bool:
        return name in self._coordinators

    def all_health(self) -> dict[str, list[ResilienceHealth]]:
        return {name: rc.get_health() for name, rc in self._coordinators.items()}

    def reset_all(self) -> None:
        for rc in self._coordinators.values():
            rc.reset()

    def dispose_all(self) -> None:
        for rc in self._coordinators.values():
            rc.dispose()
        self._coordinators.clear()
