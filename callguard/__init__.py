"""callguard: retry, circuit breaking and offline queuing for async calls.

Wraps calls to a remote dependency so that transient failures are retried,
sustained failures fail fast, and offline-capable calls are deferred until
connectivity returns.
"""

from callguard.coordinator import (
    CoordinatorRegistry,
    QueuedResult,
    ResilienceCoordinator,
    ResilienceHealth,
    ResilienceType,
)
from callguard.core.config import Settings
from callguard.core.errors import (
    AttemptTimeoutError,
    CallguardError,
    CircuitOpenError,
    ErrorReport,
    OperationAbortedError,
    OperationTimeoutError,
    QueueFullError,
    RetryExhaustedError,
    StoreError,
)

__all__ = [
    "AttemptTimeoutError",
    "CallguardError",
    "CircuitOpenError",
    "CoordinatorRegistry",
    "ErrorReport",
    "OperationAbortedError",
    "OperationTimeoutError",
    "QueueFullError",
    "QueuedResult",
    "ResilienceCoordinator",
    "ResilienceHealth",
    "ResilienceType",
    "RetryExhaustedError",
    "Settings",
    "StoreError",
]
