"""Resilience patterns: error classification, retry and circuit breaking.

Provides a retry executor with exponential backoff and timeouts, and a
rolling-window circuit breaker that fails fast under sustained failure.
"""

from callguard.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitMetrics,
    CircuitState,
)
from callguard.resilience.classifier import ErrorCategory, ErrorClassifier
from callguard.resilience.executor import (
    CancellationToken,
    RetryCall,
    RetryEventType,
    RetryExecutor,
    RetryResult,
)
from callguard.resilience.retry import RetryConfiguration, RetryPolicy

__all__ = [
    "CancellationToken",
    "CircuitBreaker",
    "CircuitMetrics",
    "CircuitState",
    "ErrorCategory",
    "ErrorClassifier",
    "RetryCall",
    "RetryConfiguration",
    "RetryEventType",
    "RetryExecutor",
    "RetryPolicy",
    "RetryResult",
]
