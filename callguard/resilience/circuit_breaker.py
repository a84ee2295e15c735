"""Async circuit breaker over a rolling window of call outcomes.

Implements the standard three-state circuit breaker:

    CLOSED    →  (threshold met within window)   →  OPEN
    OPEN      →  (reset_timeout elapsed)          →  HALF_OPEN
    HALF_OPEN →  (probe succeeds)                 →  CLOSED
    HALF_OPEN →  (probe fails)                    →  OPEN

The OPEN → HALF_OPEN transition is checked lazily at the top of
``execute()``; there is no background timer.  Only one probe is admitted
while HALF_OPEN.

The threshold is either a failure percentage over the window (default) or
a raw failure count in the window.  Both require ``minimum_requests``
outcomes in the window first.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from callguard.core.config import Settings
from callguard.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CallRecord:
    """One outcome in the rolling window."""

    success: bool
    timestamp: float


@dataclass(frozen=True)
class CircuitMetrics:
    """Point-in-time view of a circuit, passed to state-change handlers."""

    name: str
    state: CircuitState
    success_count: int
    failure_count: int
    total_count: int
    failure_rate: float
    last_opened_at: datetime | None = None
    last_tested_at: datetime | None = None
    last_reset_at: datetime | None = None
    total_calls: int = 0
    total_failures: int = 0
    total_rejections: int = 0
    total_successes: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        for key in ("last_opened_at", "last_tested_at", "last_reset_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


StateChangeHandler = Callable[[CircuitMetrics], None]


def _now() -> datetime:
    return datetime.now(UTC)


class CircuitBreaker:
    """Circuit breaker for a single logical dependency.

    Args:
        name:                 Dependency name (for logging/errors).
        failure_threshold:    Percentage (0-100) or raw failure count.
        threshold_is_percentage: Interpret the threshold as a percentage.
        reset_timeout:        Seconds the circuit stays OPEN before probing.
        window_size:          Capacity of the rolling outcome window.
        minimum_requests:     Outcomes needed in the window before opening.
        is_failure:           Predicate; errors it rejects are not recorded.
    """

    def __init__(
        self,
        name: str = "default",
        failure_threshold: float = 50.0,
        threshold_is_percentage: bool = True,
        reset_timeout: float = 30.0,
        window_size: int = 10,
        minimum_requests: int = 5,
        is_failure: Callable[[BaseException], bool] | None = None,
    ) -> None:
        if window_size < 1:
            raise ValueError("window_size must be at least 1")
        if minimum_requests < 1:
            raise ValueError("minimum_requests must be at least 1")
        if minimum_requests > window_size:
            raise ValueError("minimum_requests must not exceed window_size")
        if reset_timeout < 0:
            raise ValueError("reset_timeout must be non-negative")
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")
        if threshold_is_percentage and failure_threshold > 100:
            raise ValueError("percentage failure_threshold must be <= 100")

        self.name = name
        self.failure_threshold = failure_threshold
        self.threshold_is_percentage = threshold_is_percentage
        self.reset_timeout = reset_timeout
        self.window_size = window_size
        self.minimum_requests = minimum_requests
        self.is_failure = is_failure

        self._state = CircuitState.CLOSED
        self._window: deque[CallRecord] = deque(maxlen=window_size)
        self._opened_at: float = 0.0  # monotonic
        self._probe_in_flight = False
        self._last_opened_at: datetime | None = None
        self._last_tested_at: datetime | None = None
        self._last_reset_at: datetime | None = None
        self._handlers: list[StateChangeHandler] = []

        # Metrics
        self.total_calls = 0
        self.total_failures = 0
        self.total_rejections = 0
        self.total_successes = 0

    @classmethod
    def from_settings(cls, name: str, settings: Settings, **kwargs: Any) -> "CircuitBreaker":
        return cls(
            name=name,
            failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
            threshold_is_percentage=settings.CIRCUIT_THRESHOLD_IS_PERCENTAGE,
            reset_timeout=settings.CIRCUIT_RESET_TIMEOUT_SECONDS,
            window_size=settings.CIRCUIT_WINDOW_SIZE,
            minimum_requests=settings.CIRCUIT_MINIMUM_REQUESTS,
            **kwargs,
        )

    # ── Public properties ────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        """Stored state; OPEN → HALF_OPEN only happens inside ``execute()``."""
        return self._state

    @property
    def window(self) -> list[CallRecord]:
        return list(self._window)

    @property
    def failure_count(self) -> int:
        return sum(1 for record in self._window if not record.success)

    @property
    def failure_rate(self) -> float:
        if not self._window:
            return 0.0
        return self.failure_count / len(self._window) * 100

    @property
    def retry_after(self) -> float:
        """Seconds until an OPEN circuit admits a probe (0 otherwise)."""
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self.reset_timeout - (time.monotonic() - self._opened_at))

    # ── Core call wrapper ────────────────────────────────────────────

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        """Execute *func* with circuit breaker protection.

        Raises:
            CircuitOpenError: If the circuit rejects the call.
        """
        self.pre_check()
        try:
            result = await func(*args, **kwargs)
        except BaseException as exc:
            if isinstance(exc, Exception):
                self.on_failure(exc)
            else:
                # Cancelled: no outcome, but free the probe slot
                self._probe_in_flight = False
            raise
        self.on_success()
        return result

    def pre_check(self) -> None:
        """Check whether a call is allowed; raise if the circuit is open.

        Must be called **before** the guarded operation.
        """
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._opened_at >= self.reset_timeout:
                self._transition(CircuitState.HALF_OPEN)
            else:
                self.total_rejections += 1
                raise CircuitOpenError(self.name, self.retry_after)

        if self._state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                self.total_rejections += 1
                raise CircuitOpenError(self.name, 0.0)
            self._probe_in_flight = True

        self.total_calls += 1

    def on_success(self) -> None:
        """Record a successful call; close the circuit if probing."""
        self.total_successes += 1
        self._record(True)
        if self._state == CircuitState.HALF_OPEN:
            self._probe_in_flight = False
            self._transition(CircuitState.CLOSED)
        else:
            self._evaluate()

    def on_failure(self, error: BaseException | None = None) -> None:
        """Record a failed call; may open the circuit."""
        if error is not None and self.is_failure is not None and not self._counts_as_failure(error):
            self._probe_in_flight = False
            return

        self.total_failures += 1
        self._record(False)
        if self._state == CircuitState.HALF_OPEN:
            # Failed probe restarts the reset timer
            self._probe_in_flight = False
            self._transition(CircuitState.OPEN)
        else:
            self._evaluate()

    def reset(self) -> None:
        """Force the circuit back to CLOSED with an empty window."""
        self._window.clear()
        self._probe_in_flight = False
        if self._state == CircuitState.CLOSED:
            self._last_reset_at = _now()
            return
        self._transition(CircuitState.CLOSED)

    def force_open(self) -> None:
        """Force the circuit OPEN; the reset timer starts now."""
        self._probe_in_flight = False
        if self._state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
            self._last_opened_at = _now()
            return
        self._transition(CircuitState.OPEN)

    # ── State change handlers ───────────────────────────────────────

    def on_state_change(self, handler: StateChangeHandler) -> None:
        self._handlers.append(handler)

    def remove_state_change_handler(self, handler: StateChangeHandler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def clear_handlers(self) -> None:
        self._handlers.clear()

    # ── Metrics ──────────────────────────────────────────────────────

    def metrics(self) -> CircuitMetrics:
        failures = self.failure_count
        total = len(self._window)
        return CircuitMetrics(
            name=self.name,
            state=self._state,
            success_count=total - failures,
            failure_count=failures,
            total_count=total,
            failure_rate=self.failure_rate,
            last_opened_at=self._last_opened_at,
            last_tested_at=self._last_tested_at,
            last_reset_at=self._last_reset_at,
            total_calls=self.total_calls,
            total_failures=self.total_failures,
            total_rejections=self.total_rejections,
            total_successes=self.total_successes,
        )

    def snapshot(self) -> dict:
        """Return a JSON-serializable snapshot for health/metrics."""
        return self.metrics().to_dict()

    # ── Internals ────────────────────────────────────────────────────

    def _counts_as_failure(self, error: BaseException) -> bool:
        try:
            return bool(self.is_failure(error))  # type: ignore[misc]
        except Exception:
            logger.exception("is_failure predicate failed for circuit '%s'", self.name)
            return True

    def _record(self, success: bool) -> None:
        # deque(maxlen=N) drops the oldest entry on overflow
        self._window.append(CallRecord(success=success, timestamp=time.time()))

    def _threshold_met(self) -> bool:
        if len(self._window) < self.minimum_requests:
            return False
        if self.threshold_is_percentage:
            return self.failure_rate >= self.failure_threshold
        return self.failure_count >= self.failure_threshold

    def _evaluate(self) -> None:
        if self._state == CircuitState.CLOSED and self._threshold_met():
            self._transition(CircuitState.OPEN)

    def _transition(self, new_state: CircuitState) -> None:
        if self._state == new_state:
            return
        old_state = self._state
        self._state = new_state

        if new_state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
            self._last_opened_at = _now()
        elif new_state == CircuitState.HALF_OPEN:
            self._last_tested_at = _now()
        else:
            self._last_reset_at = _now()
            self._window.clear()

        metrics = self.metrics()
        logger.info(
            "Circuit '%s' changed from %s to %s (failures=%d/%d, rate=%.1f%%)",
            self.name,
            old_state.value,
            new_state.value,
            metrics.failure_count,
            metrics.total_count,
            metrics.failure_rate,
        )
        for handler in list(self._handlers):
            try:
                handler(metrics)
            except Exception:
                logger.exception("State change handler failed for circuit '%s'", self.name)

    # ── Presets ──────────────────────────────────────────────────────

    @classmethod
    def strict(cls, name: str) -> "CircuitBreaker":
        return cls(
            name=name,
            failure_threshold=25.0,
            reset_timeout=60.0,
            window_size=20,
            minimum_requests=3,
        )

    @classmethod
    def lenient(cls, name: str) -> "CircuitBreaker":
        return cls(
            name=name,
            failure_threshold=75.0,
            reset_timeout=15.0,
            window_size=10,
            minimum_requests=10,
        )
