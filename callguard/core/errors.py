"""Structured errors for callguard.

Custom exception hierarchy for the resilience layer, and ``ErrorReport``
for handing failures to listeners without leaking tracebacks.
"""

from __future__ import annotations

from pydantic import BaseModel


class CallguardError(Exception):
    """Base exception for all callguard errors."""


class CircuitOpenError(CallguardError):
    """Raised when a call is rejected because the circuit is open.

    No operation is attempted when this is raised.

    Attributes:
        circuit_name: Name of the circuit (usually the dependency name).
        retry_after: Seconds until the circuit will admit a probe.
    """

    def __init__(self, circuit_name: str, retry_after: float = 0.0) -> None:
        self.circuit_name = circuit_name
        self.retry_after = max(0.0, retry_after)
        super().__init__(f"Circuit '{circuit_name}' is open, retry after {self.retry_after:.1f}s")


class RetryExhaustedError(CallguardError):
    """Raised when a call gives up after one or more failed attempts.

    ``last_error`` is the exception raised by the final attempt and is also
    chained as ``__cause__``.
    """

    def __init__(self, attempts: int, elapsed: float, last_error: BaseException) -> None:
        self.attempts = attempts
        self.elapsed = elapsed
        self.last_error = last_error
        super().__init__(
            f"Gave up after {attempts} attempt(s) in {elapsed:.2f}s: "
            f"{type(last_error).__name__}: {last_error}"
        )


class OperationTimeoutError(CallguardError):
    """Raised when the total timeout for a call expires across all attempts."""

    def __init__(self, timeout_seconds: float, attempts: int, elapsed: float) -> None:
        self.timeout_seconds = timeout_seconds
        self.attempts = attempts
        self.elapsed = elapsed
        super().__init__(f"Operation timed out after {timeout_seconds}s ({attempts} attempt(s))")


class AttemptTimeoutError(CallguardError):
    """Raised for a single attempt that exceeded its per-attempt timeout."""

    def __init__(self, attempt: int, timeout_seconds: float) -> None:
        self.attempt = attempt
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Attempt {attempt} timed out after {timeout_seconds}s")


class OperationAbortedError(CallguardError):
    """Raised when a call is aborted by its caller."""

    def __init__(self, attempts: int, elapsed: float) -> None:
        self.attempts = attempts
        self.elapsed = elapsed
        super().__init__(f"Operation aborted after {attempts} attempt(s)")


class StoreError(CallguardError):
    """Raised by a durable store when a read or write fails."""

    def __init__(self, key: str, detail: str = "") -> None:
        self.key = key
        self.detail = detail
        msg = f"Store failure for key '{key}'"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class QueueFullError(CallguardError):
    """Raised when an enqueued operation is itself evicted to respect the queue bound.

    Every queued operation outranks it (higher priority, or equal priority
    and older).
    """

    def __init__(self, operation_id: str, max_queue_size: int) -> None:
        self.operation_id = operation_id
        self.max_queue_size = max_queue_size
        super().__init__(
            f"Offline queue full ({max_queue_size} operation(s)); operation {operation_id} not queued"
        )


class ErrorReport(BaseModel):
    """Machine-readable description of a failure.

    Carried in event payloads (e.g. offline sync failures) instead of the
    raw exception.
    """

    error: str
    code: str
    category: str = "unknown"

    @classmethod
    def from_exception(cls, exc: BaseException, category: str | None = None) -> "ErrorReport":
        """Create from an exception, mapping known errors to codes."""
        if isinstance(exc, CircuitOpenError):
            code = "CIRCUIT_OPEN"
        elif isinstance(exc, RetryExhaustedError):
            code = "RETRY_EXHAUSTED"
        elif isinstance(exc, OperationTimeoutError):
            code = "OPERATION_TIMEOUT"
        elif isinstance(exc, AttemptTimeoutError):
            code = "ATTEMPT_TIMEOUT"
        elif isinstance(exc, OperationAbortedError):
            code = "OPERATION_ABORTED"
        elif isinstance(exc, StoreError):
            code = "STORE_ERROR"
        elif isinstance(exc, QueueFullError):
            code = "QUEUE_FULL"
        elif isinstance(exc, CallguardError):
            code = "CALLGUARD_ERROR"
        else:
            code = "OPERATION_ERROR"
        return cls(
            error=f"{type(exc).__name__}: {exc}",
            code=code,
            category=category or "unknown",
        )
