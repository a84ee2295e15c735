"""ResilienceCoordinator and CoordinatorRegistry tests.

Covers:
- circuit-outside / retry-inside composition (one circuit outcome per call)
- offline short-circuit and network-error rerouting to the queue
- CircuitOpenError never rerouted
- connectivity restoration resets an open circuit
- health, reset, dispose, presets, registry isolation
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from callguard.coordinator import (
    CoordinatorRegistry,
    QueuedResult,
    ResilienceCoordinator,
    ResilienceType,
)
from callguard.core.config import Settings
from callguard.core.errors import (
    CircuitOpenError,
    OperationAbortedError,
    QueueFullError,
    RetryExhaustedError,
)
from callguard.offline.models import ConnectionStatus
from callguard.offline.queue import OfflineQueue
from callguard.offline.storage import MemoryStore
from callguard.resilience.circuit_breaker import CircuitBreaker, CircuitState
from callguard.resilience.executor import RetryExecutor
from callguard.resilience.retry import RetryConfiguration, RetryPolicy


class ServerError(Exception):
    status = 500


def _executor(max_attempts: int = 3) -> RetryExecutor:
    return RetryExecutor(
        RetryPolicy(RetryConfiguration(max_attempts=max_attempts, base_delay=0.001, jitter=False))
    )


def _coordinator(probe=None, **kwargs) -> ResilienceCoordinator:
    queue = OfflineQueue(MemoryStore(), auto_sync=False, probe=probe)
    return ResilienceCoordinator(
        "notes",
        executor=kwargs.pop("executor", _executor()),
        circuit_breaker=kwargs.pop("circuit_breaker", CircuitBreaker("notes", minimum_requests=2)),
        offline_queue=queue,
        **kwargs,
    )


class TestComposition:
    async def test_success_passthrough(self):
        rc = _coordinator()
        assert await rc.execute(AsyncMock(return_value={"id": 1})) == {"id": 1}

    async def test_retries_count_as_one_circuit_outcome(self):
        rc = _coordinator()
        op = AsyncMock(side_effect=[ServerError(), ServerError(), "ok"])
        assert await rc.execute(op) == "ok"
        assert op.await_count == 3
        window = rc.circuit_breaker.window
        assert len(window) == 1
        assert window[0].success

    async def test_exhausted_call_is_one_failure(self):
        rc = _coordinator()
        with pytest.raises(RetryExhaustedError):
            await rc.execute(AsyncMock(side_effect=ServerError()))
        assert rc.circuit_breaker.failure_count == 1

    async def test_open_circuit_rejects_without_retrying(self):
        rc = _coordinator()
        rc.circuit_breaker.force_open()
        op = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError):
            await rc.execute(op)
        assert op.await_count == 0


class TestOfflineRouting:
    async def test_queued_when_offline(self):
        rc = _coordinator()
        rc.offline_queue.notify_offline()
        op = AsyncMock(return_value="ok")

        result = await rc.execute(
            op,
            offline_capable=True,
            offline_operation_type="update-note",
            offline_operation_payload={"id": 7},
        )

        assert isinstance(result, QueuedResult)
        assert result.reason == "offline"
        assert result.operation_type == "update-note"
        assert op.await_count == 0
        assert rc.circuit_breaker.total_calls == 0
        assert rc.executor.total_calls == 0
        queued = rc.offline_queue.queued_operations[0]
        assert queued.payload == {"id": 7}
        assert queued.metadata["reason"] == "offline"

    async def test_queued_when_store_is_broken(self, caplog):
        store = AsyncMock()
        store.set.side_effect = OSError("disk full")
        queue = OfflineQueue(store, auto_sync=False)
        queue.notify_offline()
        rc = ResilienceCoordinator("notes", offline_queue=queue)

        result = await rc.execute(AsyncMock(), offline_capable=True, offline_operation_type="save")

        assert isinstance(result, QueuedResult)
        assert len(queue) == 1
        assert "Could not persist offline queue" in caplog.text

    async def test_unserializable_context_still_queued(self):
        rc = _coordinator()
        rc.offline_queue.notify_offline()
        result = await rc.execute(AsyncMock(), offline_capable=True, context={"session": object()})
        assert isinstance(result, QueuedResult)
        assert len(rc.offline_queue) == 1

    async def test_full_queue_raises_instead_of_queued_result(self):
        queue = OfflineQueue(MemoryStore(), auto_sync=False, max_queue_size=1)
        queue.notify_offline()
        await queue.enqueue_operation("urgent", priority=5)
        rc = ResilienceCoordinator("notes", offline_queue=queue)

        with pytest.raises(QueueFullError):
            await rc.execute(AsyncMock(), offline_capable=True, offline_operation_type="save")
        assert [op.type for op in queue.queued_operations] == ["urgent"]

    async def test_not_offline_capable_runs_even_when_offline(self):
        rc = _coordinator()
        rc.offline_queue.notify_offline()
        assert await rc.execute(AsyncMock(return_value="ok")) == "ok"

    async def test_network_error_queued_when_probe_says_offline(self):
        rc = _coordinator(probe=AsyncMock(return_value=False), executor=_executor(max_attempts=1))
        result = await rc.execute(
            AsyncMock(side_effect=ConnectionError("connection refused")),
            offline_capable=True,
            offline_operation_type="update-note",
        )
        assert isinstance(result, QueuedResult)
        assert result.reason == "network_error"
        assert len(rc.offline_queue) == 1

    async def test_network_error_reraised_when_still_online(self):
        rc = _coordinator(probe=AsyncMock(return_value=True), executor=_executor(max_attempts=1))
        with pytest.raises(RetryExhaustedError) as exc_info:
            await rc.execute(AsyncMock(side_effect=ConnectionError("refused")), offline_capable=True)
        assert isinstance(exc_info.value.last_error, ConnectionError)
        assert len(rc.offline_queue) == 0

    async def test_non_network_error_not_queued(self):
        probe = AsyncMock(return_value=False)
        rc = _coordinator(probe=probe, executor=_executor(max_attempts=1))
        with pytest.raises(RetryExhaustedError):
            await rc.execute(AsyncMock(side_effect=ServerError()), offline_capable=True)
        probe.assert_not_awaited()
        assert len(rc.offline_queue) == 0

    async def test_circuit_open_never_queued(self):
        rc = _coordinator(probe=AsyncMock(return_value=False))
        rc.circuit_breaker.force_open()
        with pytest.raises(CircuitOpenError):
            await rc.execute(AsyncMock(), offline_capable=True)
        assert len(rc.offline_queue) == 0

    async def test_queued_operation_replays_original_callable(self):
        rc = _coordinator()
        rc.offline_queue.notify_offline()
        op = AsyncMock(return_value="synced")
        await rc.execute(op, offline_capable=True, offline_operation_type="save")

        rc.offline_queue.notify_online()
        result = await rc.sync_offline_operations()

        assert result.success_count == 1
        assert op.await_count == 1


class TestConnectivityRestore:
    async def test_online_resets_open_circuit(self):
        rc = _coordinator()
        rc.offline_queue.notify_offline()
        rc.circuit_breaker.force_open()
        rc.offline_queue.notify_online()
        assert rc.circuit_breaker.state == CircuitState.CLOSED

    async def test_offline_leaves_circuit_alone(self):
        rc = _coordinator()
        rc.circuit_breaker.force_open()
        rc.offline_queue.notify_offline()
        assert rc.circuit_breaker.state == CircuitState.OPEN

    async def test_check_connectivity(self):
        rc = _coordinator(probe=AsyncMock(return_value=True))
        assert await rc.check_connectivity() is True

    async def test_check_connectivity_without_queue(self):
        rc = ResilienceCoordinator("plain")
        assert await rc.check_connectivity() is True
        assert (await rc.sync_offline_operations()).total_count == 0


class TestHealth:
    async def test_health_components(self):
        rc = _coordinator()
        rc.offline_queue.notify_online()
        health = {h.type: h for h in rc.get_health()}
        assert set(health) == {
            ResilienceType.RETRY,
            ResilienceType.CIRCUIT_BREAKER,
            ResilienceType.OFFLINE_QUEUE,
        }
        assert all(h.healthy for h in health.values())
        assert health[ResilienceType.OFFLINE_QUEUE].metrics["queued_operation_count"] == 0

    async def test_open_circuit_unhealthy(self):
        rc = _coordinator()
        rc.circuit_breaker.force_open()
        circuit = [h for h in rc.get_health() if h.type == ResilienceType.CIRCUIT_BREAKER][0]
        assert not circuit.healthy
        assert circuit.message == "Circuit breaker open"
        assert circuit.metrics["state"] == "open"

    async def test_health_without_queue(self):
        assert len(ResilienceCoordinator("plain").get_health()) == 2

    async def test_health_serializes(self):
        data = [h.model_dump(mode="json") for h in _coordinator().get_health()]
        assert data[0]["type"] == "retry"

    async def test_reset_closes_circuit(self):
        rc = _coordinator()
        rc.circuit_breaker.force_open()
        rc.reset()
        assert rc.circuit_breaker.state == CircuitState.CLOSED


class TestLifecycle:
    async def test_context_manager_starts_and_disposes(self):
        probe = AsyncMock(return_value=True)
        async with _coordinator(probe=probe) as rc:
            assert rc.offline_queue.status == ConnectionStatus.ONLINE
            assert rc.offline_queue.monitor.running
        assert not rc.offline_queue.monitor.running

    async def test_dispose_aborts_inflight_calls(self):
        rc = _coordinator()
        started = asyncio.Event()

        async def op():
            started.set()
            await asyncio.sleep(5)

        task = asyncio.ensure_future(rc.execute(op))
        await started.wait()
        rc.dispose()
        with pytest.raises(OperationAbortedError):
            await task


class TestPresets:
    def test_aggressive(self):
        rc = ResilienceCoordinator.aggressive("svc")
        assert rc.circuit_breaker.failure_threshold == 75.0
        assert rc.circuit_breaker.reset_timeout == 15.0
        assert rc.executor.policy.max_attempts == 5

    def test_conservative(self):
        rc = ResilienceCoordinator.conservative("svc")
        assert rc.circuit_breaker.failure_threshold == 25.0
        assert rc.circuit_breaker.reset_timeout == 60.0
        assert rc.executor.policy.max_attempts == 2


class TestCoordinatorRegistry:
    """Per-dependency isolation."""

    def test_same_name_same_instance(self):
        registry = CoordinatorRegistry(Settings())
        assert registry.get("a") is registry.get("a")

    def test_names_are_isolated(self):
        registry = CoordinatorRegistry(Settings(), store=MemoryStore())
        a, b = registry.get("a"), registry.get("b")
        assert a is not b
        assert a.offline_queue.storage_key != b.offline_queue.storage_key
        a.circuit_breaker.force_open()
        assert b.circuit_breaker.state == CircuitState.CLOSED

    def test_offline_disabled(self):
        registry = CoordinatorRegistry(Settings(OFFLINE_ENABLED=False))
        assert registry.get("a").offline_queue is None

    def test_reset_all_and_health(self):
        registry = CoordinatorRegistry(Settings())
        registry.get("a").circuit_breaker.force_open()
        registry.get("b")
        registry.reset_all()
        health = registry.all_health()
        assert set(health) == {"a", "b"}
        assert registry.get("a").circuit_breaker.state == CircuitState.CLOSED

    def test_dispose_all(self):
        registry = CoordinatorRegistry(Settings())
        registry.get("a")
        registry.dispose_all()
        assert "a" not in registry
