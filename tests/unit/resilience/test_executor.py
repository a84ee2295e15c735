"""Tests for RetryExecutor.

Covers:
- success on first and later attempts, event emission
- give-up paths (non-retryable errors, exhausted budget)
- per-attempt and total timeouts
- per-call abort and abort_all
- cleanup hook, cancellation token, throw_errors switch
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from callguard.core.errors import (
    AttemptTimeoutError,
    OperationAbortedError,
    OperationTimeoutError,
    RetryExhaustedError,
)
from callguard.resilience.classifier import ErrorCategory
from callguard.resilience.executor import (
    CancellationToken,
    RetryEventType,
    RetryExecutor,
    RetryResult,
    accepts_token,
)
from callguard.resilience.retry import RetryConfiguration, RetryPolicy


def _executor(max_attempts: int = 3, base_delay: float = 0.01, **kwargs) -> RetryExecutor:
    policy = RetryPolicy(
        RetryConfiguration(
            max_attempts=max_attempts,
            base_delay=base_delay,
            jitter=False,
            attempt_timeout=kwargs.pop("attempt_timeout", 5.0),
        )
    )
    return RetryExecutor(policy, **kwargs)


def _record(executor: RetryExecutor) -> list[tuple]:
    events: list[tuple] = []
    for event_type in RetryEventType:
        executor.add_listener(event_type, lambda t, p: events.append((t, p)))
    return events


class TestSuccess:
    async def test_first_attempt_success(self):
        executor = _executor()
        op = AsyncMock(return_value="ok")
        assert await executor.execute(op) == "ok"
        assert op.await_count == 1

    async def test_success_after_retries(self):
        executor = _executor()
        events = _record(executor)
        op = AsyncMock(side_effect=[ConnectionError("refused"), ConnectionError("refused"), "ok"])

        result = await executor.run(op)

        assert result.success
        assert result.value == "ok"
        assert result.attempts == 3
        scheduled = [p for t, p in events if t == RetryEventType.ATTEMPT_SCHEDULED]
        assert [p["attempt"] for p in scheduled] == [1, 2]
        assert scheduled[0]["category"] == ErrorCategory.NETWORK
        assert events[-1][0] == RetryEventType.SUCCESS
        assert executor.total_retries == 2
        assert executor.total_successes == 1

    async def test_scheduled_event_carries_delay_and_context(self):
        executor = _executor(base_delay=0.01, context={"operation": "profiles"})
        events = _record(executor)
        op = AsyncMock(side_effect=[TimeoutError(), "ok"])
        await executor.execute(op)
        payload = events[0][1]
        assert payload["delay"] == pytest.approx(0.01)
        assert payload["context"] == {"operation": "profiles"}
        assert isinstance(payload["error"], TimeoutError)


class TestGiveUp:
    async def test_non_retryable_raises_after_one_attempt(self):
        executor = _executor()
        op = AsyncMock(side_effect=ValueError("bad input"))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await executor.execute(op)

        assert exc_info.value.attempts == 1
        assert isinstance(exc_info.value.last_error, ValueError)
        assert op.await_count == 1

    async def test_exhausted_after_max_attempts(self):
        executor = _executor(max_attempts=3)
        events = _record(executor)
        op = AsyncMock(side_effect=ConnectionError("refused"))

        result = await executor.run(op)

        assert not result.success
        assert result.attempts == 3
        assert op.await_count == 3
        assert isinstance(result.error, RetryExhaustedError)
        exhausted = [p for t, p in events if t == RetryEventType.EXHAUSTED]
        assert len(exhausted) == 1
        assert exhausted[0]["timed_out"] is False
        assert executor.total_failures == 1

    async def test_run_never_raises(self):
        executor = _executor(max_attempts=1)
        result = await executor.run(AsyncMock(side_effect=RuntimeError("x")))
        assert isinstance(result, RetryResult)
        assert not result.success

    async def test_throw_errors_false_returns_result(self):
        executor = _executor(max_attempts=1, throw_errors=False)
        result = await executor.execute(AsyncMock(side_effect=RuntimeError("x")))
        assert isinstance(result, RetryResult)
        assert not result.success

    async def test_unwrap_raises_surfaced_error(self):
        executor = _executor(max_attempts=1)
        result = await executor.run(AsyncMock(side_effect=RuntimeError("x")))
        with pytest.raises(RetryExhaustedError):
            result.unwrap()

    def test_unwrap_failed_result_without_error(self):
        result = RetryResult(success=False, attempts=1, elapsed=0.0)
        with pytest.raises(RuntimeError, match="no error"):
            result.unwrap()


class TestTimeouts:
    async def test_attempt_timeout_is_retried(self):
        executor = _executor(max_attempts=2, attempt_timeout=0.05)
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return "second"

        assert await executor.execute(op) == "second"
        assert calls == 2

    async def test_attempt_timeout_error_surfaced(self):
        executor = _executor(max_attempts=1, attempt_timeout=0.02)

        async def op():
            await asyncio.sleep(1)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await executor.execute(op)
        assert isinstance(exc_info.value.last_error, AttemptTimeoutError)

    async def test_total_timeout(self):
        executor = _executor(max_attempts=10, base_delay=0.05, total_timeout=0.12)
        events = _record(executor)
        op = AsyncMock(side_effect=ConnectionError("refused"))

        result = await executor.run(op)

        assert not result.success
        assert result.timed_out
        assert result.aborted
        assert isinstance(result.error, OperationTimeoutError)
        assert result.attempts < 10
        exhausted = [p for t, p in events if t == RetryEventType.EXHAUSTED]
        assert exhausted[-1]["timed_out"] is True

    async def test_total_timeout_cancels_inflight_attempt(self):
        executor = _executor(max_attempts=1, attempt_timeout=None, total_timeout=0.05)
        cancelled = asyncio.Event()

        async def op():
            try:
                await asyncio.sleep(5)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(OperationTimeoutError):
            await executor.execute(op)
        await asyncio.sleep(0)
        assert cancelled.is_set()


class TestAbort:
    async def test_abort_stops_retries_for_that_call(self):
        executor = _executor(max_attempts=5, base_delay=0.5)
        events = _record(executor)
        op = AsyncMock(side_effect=ConnectionError("refused"))

        call = executor.start(op)
        await asyncio.sleep(0.05)  # first attempt failed, now in backoff
        call.abort()
        result = await call

        assert result.aborted
        assert not result.timed_out
        assert isinstance(result.error, OperationAbortedError)
        assert op.await_count == 1
        assert events[-1][0] == RetryEventType.ABORTED

    async def test_abort_cancels_running_attempt(self):
        executor = _executor()
        started = asyncio.Event()

        async def op():
            started.set()
            await asyncio.sleep(5)

        call = executor.start(op)
        await started.wait()
        call.abort()
        result = await call
        assert isinstance(result.error, OperationAbortedError)
        assert result.attempts == 1

    async def test_abort_is_per_call(self):
        executor = _executor()
        slow = executor.start(AsyncMock(side_effect=[ConnectionError("x"), "slow-ok"]))
        other = executor.start(AsyncMock(side_effect=ConnectionError("x")))
        await asyncio.sleep(0)
        other.abort()

        assert (await slow).value == "slow-ok"
        assert (await other).aborted

    async def test_abort_all(self):
        executor = _executor()

        async def op():
            await asyncio.sleep(5)

        calls = [executor.start(op) for _ in range(3)]
        await asyncio.sleep(0.01)
        assert executor.in_flight == 3
        executor.abort_all()
        results = [await c for c in calls]
        assert all(r.aborted for r in results)
        assert executor.in_flight == 0

    async def test_cancelling_caller_cancels_only_that_call(self):
        executor = _executor()

        async def op():
            await asyncio.sleep(5)

        task = asyncio.ensure_future(executor.execute(op))
        other = executor.start(AsyncMock(return_value="fine"))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert (await other).value == "fine"


class TestHooksAndTokens:
    async def test_cleanup_runs_after_every_attempt(self):
        cleanups = []
        executor = _executor(cleanup=lambda: cleanups.append(1))
        await executor.execute(AsyncMock(side_effect=[ConnectionError("x"), "ok"]))
        assert len(cleanups) == 2

    async def test_failing_cleanup_is_logged(self, caplog):
        def cleanup():
            raise RuntimeError("cleanup bug")

        executor = _executor(cleanup=cleanup)
        assert await executor.execute(AsyncMock(return_value=1)) == 1
        assert "Cleanup hook failed" in caplog.text

    async def test_operation_receives_token(self):
        executor = _executor()
        seen = []

        async def op(token):
            seen.append(token)
            return "ok"

        await executor.execute(op)
        assert isinstance(seen[0], CancellationToken)

    async def test_token_cancelled_after_attempt_timeout(self):
        executor = _executor(max_attempts=1, attempt_timeout=0.02)
        tokens = []

        async def op(token):
            tokens.append(token)
            await asyncio.sleep(1)

        await executor.run(op)
        assert tokens[0].cancelled

    def test_accepts_token(self):
        async def no_args():
            pass

        async def one_arg(token):
            pass

        assert not accepts_token(no_args)
        assert accepts_token(one_arg)


class TestConfiguration:
    def test_invalid_total_timeout(self):
        with pytest.raises(ValueError):
            RetryExecutor(total_timeout=0)

    def test_snapshot(self):
        snap = RetryExecutor().snapshot()
        assert snap["max_attempts"] == 3
        assert snap["total_timeout"] == 60.0
        assert snap["in_flight"] == 0

    def test_presets(self):
        assert RetryExecutor.conservative().total_timeout == 30.0
        assert RetryExecutor.aggressive().policy.max_attempts == 5
