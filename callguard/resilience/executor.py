"""Retry executor: runs one logical call across multiple attempts.

Each call owns an ``AttemptState``.  Attempts run as their own tasks so a
per-attempt timeout, a caller abort, or the total timeout can cancel the
in-flight attempt without touching other calls made through the same
executor::

    attempt 1 ──fail──▶ should_retry? ──yes──▶ sleep(next_delay) ──▶ attempt 2 ...
                             │
                             no ──▶ exhausted

A total timeout runs across the whole loop; when it fires the current
attempt is cancelled and the call finalizes as timed out.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, TypeVar

from callguard.core.config import Settings
from callguard.core.errors import (
    AttemptTimeoutError,
    OperationAbortedError,
    OperationTimeoutError,
    RetryExhaustedError,
)
from callguard.core.events import EventEmitter
from callguard.resilience.retry import RetryConfiguration, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[..., Awaitable[T]]


class RetryEventType(str, Enum):
    """Events emitted by ``RetryExecutor``."""

    ATTEMPT_SCHEDULED = "attempt_scheduled"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"
    ABORTED = "aborted"


class CancellationToken:
    """Cooperative cancellation signal handed to an attempt.

    Operations that accept one positional parameter receive the token and
    may check ``cancelled`` or await ``wait()`` to stop early.  The attempt
    task is cancelled regardless.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


def accepts_token(operation: Callable[..., Any]) -> bool:
    """Return ``True`` if *operation* takes a positional argument."""
    try:
        params = inspect.signature(operation).parameters.values()
    except (TypeError, ValueError):
        return False
    return any(
        p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD, p.VAR_POSITIONAL)
        for p in params
    )


async def invoke(operation: Operation[T], token: CancellationToken | None = None) -> T:
    """Call *operation*, passing *token* when it accepts one."""
    if accepts_token(operation):
        return await operation(token or CancellationToken())
    return await operation()


@dataclass
class AttemptState:
    """Per-call bookkeeping, discarded when the call finalizes."""

    attempt: int = 0
    started_at: float = field(default_factory=time.monotonic)
    token: CancellationToken | None = None
    attempt_task: asyncio.Future | None = None
    abort_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def aborted(self) -> bool:
        return self.abort_event.is_set()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def cancel_attempt(self) -> None:
        if self.token is not None:
            self.token.cancel()
        if self.attempt_task is not None and not self.attempt_task.done():
            self.attempt_task.cancel()


@dataclass
class RetryResult(Generic[T]):
    """Outcome of one logical call.

    Attributes:
        value:     Result of the successful attempt.
        error:     Surfaced error when the call failed.
        success:   Whether an attempt succeeded.
        attempts:  Number of attempts made.
        elapsed:   Seconds from the first attempt to finalization.
        aborted:   Whether the call was aborted or timed out.
        timed_out: Whether the total timeout fired.
    """

    success: bool
    attempts: int
    elapsed: float
    value: T | None = None
    error: BaseException | None = None
    aborted: bool = False
    timed_out: bool = False

    def unwrap(self) -> T:
        """Return the value, or raise the surfaced error."""
        if self.success:
            return self.value  # type: ignore[return-value]
        if self.error is None:
            raise RuntimeError("Failed RetryResult carries no error")
        raise self.error


class _Aborted(Exception):
    """Internal signal: the caller aborted the call."""


class RetryCall(Generic[T]):
    """Handle for one in-flight call started with ``RetryExecutor.start``.

    ``await call`` yields the ``RetryResult``.  ``abort()`` cancels the
    current attempt and suppresses further retries for this call only.
    """

    def __init__(self, executor: "RetryExecutor", operation: Operation[T]) -> None:
        self.state = AttemptState()
        self._task: asyncio.Task[RetryResult[T]] = asyncio.ensure_future(
            executor._run(operation, self.state)
        )

    def abort(self) -> None:
        if self._task.done() or self.state.aborted:
            return
        logger.debug("Abort requested for attempt %d", self.state.attempt)
        self.state.abort_event.set()
        self.state.cancel_attempt()

    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> RetryResult[T]:
        return await self._task

    def __await__(self):
        return self._task.__await__()


class RetryExecutor(EventEmitter):
    """Executes operations with policy-driven retries and timeouts.

    Args:
        policy:        Retry policy (defaults to ``RetryPolicy()``).
        total_timeout: Seconds allowed across all attempts, ``None`` for none.
        throw_errors:  ``execute()`` raises on failure when ``True``; returns
                       a ``RetryResult`` for every outcome when ``False``.
        cleanup:       Called after every attempt, whatever its outcome.
        context:       Extra data included in every event payload.

    Example:
        >>> executor = RetryExecutor(RetryPolicy(), total_timeout=10.0)
        >>> data = await executor.execute(fetch_profile)
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        total_timeout: float | None = 60.0,
        throw_errors: bool = True,
        cleanup: Callable[[], None] | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__()
        if total_timeout is not None and total_timeout <= 0:
            raise ValueError("total_timeout must be positive")
        self.policy = policy or RetryPolicy()
        self.total_timeout = total_timeout
        self.throw_errors = throw_errors
        self.cleanup = cleanup
        self.context = dict(context or {})
        self._calls: set[RetryCall[Any]] = set()

        # Metrics
        self.total_calls = 0
        self.total_successes = 0
        self.total_failures = 0
        self.total_retries = 0

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "RetryExecutor":
        policy = RetryPolicy(RetryConfiguration.from_settings(settings))
        return cls(
            policy,
            total_timeout=settings.RETRY_TOTAL_TIMEOUT,
            throw_errors=settings.RETRY_THROW_ERRORS,
            **kwargs,
        )

    # ── Public API ───────────────────────────────────────────────────

    def start(self, operation: Operation[T]) -> RetryCall[T]:
        """Start *operation* in the background and return its handle."""
        call = RetryCall(self, operation)
        self._calls.add(call)
        call._task.add_done_callback(lambda _: self._calls.discard(call))
        return call

    async def run(self, operation: Operation[T]) -> RetryResult[T]:
        """Run *operation* to a ``RetryResult``; failures are never raised."""
        return await self.start(operation)

    async def execute(self, operation: Operation[T]) -> T | RetryResult[T]:
        """Run *operation*, surfacing the outcome per ``throw_errors``.

        Raises:
            RetryExhaustedError: Attempts exhausted or error not retryable.
            OperationTimeoutError: The total timeout fired.
            OperationAbortedError: The call was aborted.
        """
        result = await self.run(operation)
        if not self.throw_errors:
            return result
        return result.unwrap()

    def abort_all(self) -> None:
        """Abort every in-flight call started by this executor."""
        for call in list(self._calls):
            call.abort()

    @property
    def in_flight(self) -> int:
        return len(self._calls)

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot for health/metrics."""
        config = self.policy.config
        return {
            "max_attempts": config.max_attempts,
            "base_delay": config.base_delay,
            "max_delay": config.max_delay,
            "total_timeout": self.total_timeout,
            "in_flight": self.in_flight,
            "total_calls": self.total_calls,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "total_retries": self.total_retries,
        }

    # ── Attempt loop ─────────────────────────────────────────────────

    async def _run(self, operation: Operation[T], state: AttemptState) -> RetryResult[T]:
        self.total_calls += 1
        state.started_at = time.monotonic()
        try:
            if self.total_timeout is None:
                value = await self._attempt_loop(operation, state)
            else:
                value = await asyncio.wait_for(
                    self._attempt_loop(operation, state),
                    timeout=self.total_timeout,
                )
        except asyncio.TimeoutError:
            return self._finalize_timed_out(state)
        except _Aborted:
            return self._finalize_aborted(state)
        except RetryExhaustedError as exc:
            return self._finalize_exhausted(state, exc)
        finally:
            state.cancel_attempt()

        self.total_successes += 1
        self.emit(
            RetryEventType.SUCCESS,
            {"attempts": state.attempt, "elapsed": state.elapsed, "context": self.context},
        )
        return RetryResult(success=True, value=value, attempts=state.attempt, elapsed=state.elapsed)

    async def _attempt_loop(self, operation: Operation[T], state: AttemptState) -> T:
        while True:
            state.attempt += 1
            try:
                return await self._run_attempt(operation, state)
            except _Aborted:
                raise
            except Exception as exc:
                if state.aborted:
                    raise _Aborted() from exc
                if not self.policy.should_retry(exc, state.attempt):
                    raise RetryExhaustedError(state.attempt, state.elapsed, exc) from exc

                delay = self.policy.next_delay(state.attempt)
                category = self.policy.classify(exc)
                self.total_retries += 1
                self.emit(
                    RetryEventType.ATTEMPT_SCHEDULED,
                    {
                        "attempt": state.attempt,
                        "error": exc,
                        "category": category,
                        "delay": delay,
                        "context": self.context,
                    },
                )
                logger.warning(
                    "Attempt %d/%d failed (%s: %s), retrying in %.2fs",
                    state.attempt,
                    self.policy.max_attempts,
                    category.value,
                    exc,
                    delay,
                )
                await self._backoff(delay, state)

    async def _run_attempt(self, operation: Operation[T], state: AttemptState) -> T:
        if state.aborted:
            raise _Aborted()

        state.token = CancellationToken()
        attempt_task = asyncio.ensure_future(invoke(operation, state.token))
        abort_wait = asyncio.ensure_future(state.abort_event.wait())
        state.attempt_task = attempt_task
        timeout = self.policy.attempt_timeout

        try:
            done, _ = await asyncio.wait(
                {attempt_task, abort_wait},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            abort_wait.cancel()
            state.cancel_attempt()
            self._run_cleanup()

        if attempt_task in done:
            if attempt_task.cancelled():
                # Cancelled by abort() racing with completion
                raise _Aborted()
            return attempt_task.result()
        if state.aborted:
            raise _Aborted()
        raise AttemptTimeoutError(state.attempt, timeout or 0.0)

    async def _backoff(self, delay: float, state: AttemptState) -> None:
        """Sleep for *delay*, waking early if the call is aborted."""
        try:
            await asyncio.wait_for(state.abort_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise _Aborted()

    def _run_cleanup(self) -> None:
        if self.cleanup is None:
            return
        try:
            self.cleanup()
        except Exception:
            logger.exception("Cleanup hook failed")

    # ── Finalization ────────────────────────────────────────────────

    def _finalize_exhausted(self, state: AttemptState, exc: RetryExhaustedError) -> RetryResult[Any]:
        self.total_failures += 1
        self.emit(
            RetryEventType.EXHAUSTED,
            {
                "attempts": state.attempt,
                "error": exc.last_error,
                "elapsed": state.elapsed,
                "timed_out": False,
                "context": self.context,
            },
        )
        logger.warning(
            "Giving up after %d attempt(s): %s: %s",
            state.attempt,
            type(exc.last_error).__name__,
            exc.last_error,
        )
        return RetryResult(success=False, error=exc, attempts=state.attempt, elapsed=state.elapsed)

    def _finalize_timed_out(self, state: AttemptState) -> RetryResult[Any]:
        self.total_failures += 1
        error = OperationTimeoutError(self.total_timeout or 0.0, state.attempt, state.elapsed)
        self.emit(
            RetryEventType.EXHAUSTED,
            {
                "attempts": state.attempt,
                "error": error,
                "elapsed": state.elapsed,
                "timed_out": True,
                "context": self.context,
            },
        )
        logger.warning("Operation timed out after %.2fs (%d attempt(s))", state.elapsed, state.attempt)
        return RetryResult(
            success=False,
            error=error,
            attempts=state.attempt,
            elapsed=state.elapsed,
            aborted=True,
            timed_out=True,
        )

    def _finalize_aborted(self, state: AttemptState) -> RetryResult[Any]:
        self.total_failures += 1
        error = OperationAbortedError(state.attempt, state.elapsed)
        self.emit(RetryEventType.ABORTED, {"attempts": state.attempt, "context": self.context})
        logger.info("Operation aborted after %d attempt(s)", state.attempt)
        return RetryResult(
            success=False,
            error=error,
            attempts=state.attempt,
            elapsed=state.elapsed,
            aborted=True,
        )

    # ── Presets ──────────────────────────────────────────────────────

    @classmethod
    def conservative(cls, **kwargs: Any) -> "RetryExecutor":
        return cls(RetryPolicy.conservative(), total_timeout=30.0, **kwargs)

    @classmethod
    def aggressive(cls, **kwargs: Any) -> "RetryExecutor":
        return cls(RetryPolicy.aggressive(), total_timeout=120.0, **kwargs)
