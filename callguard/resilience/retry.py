"""Retry policy: when to retry and how long to wait.

Pure decision logic with no I/O.  ``RetryExecutor`` drives the attempts.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass, field
from typing import Callable

from callguard.core.config import Settings
from callguard.resilience.classifier import ErrorCategory, ErrorClassifier

logger = logging.getLogger(__name__)

RetryPredicate = Callable[[BaseException, int], bool]

DEFAULT_RETRYABLE_CATEGORIES = frozenset(
    {
        ErrorCategory.NETWORK,
        ErrorCategory.SERVER,
        ErrorCategory.TIMEOUT,
    }
)


@dataclass(frozen=True)
class RetryConfiguration:
    """Immutable retry settings.

    Attributes:
        max_attempts:          Total attempts including the first one.
        base_delay:            Delay before the second attempt (seconds).
        max_delay:             Cap applied before jitter (seconds).
        backoff_factor:        Multiplier per attempt.
        jitter:                Add up to 30% random delay on top.
        attempt_timeout:       Per-attempt limit in seconds, ``None`` for none.
        retryable_categories:  Categories retried when no predicate is set.
        retry_predicate:       ``(error, attempt) -> bool`` overriding categories.
    """

    max_attempts: int = 3
    base_delay: float = 0.3
    max_delay: float = 10.0
    backoff_factor: float = 2.0
    jitter: bool = True
    attempt_timeout: float | None = 30.0
    retryable_categories: frozenset[ErrorCategory] = field(default=DEFAULT_RETRYABLE_CATEGORIES)
    retry_predicate: RetryPredicate | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")
        if self.attempt_timeout is not None and self.attempt_timeout <= 0:
            raise ValueError("attempt_timeout must be positive")
        # Accept any iterable of categories but store a frozenset
        object.__setattr__(self, "retryable_categories", frozenset(self.retryable_categories))

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryConfiguration":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            backoff_factor=settings.RETRY_BACKOFF_FACTOR,
            jitter=settings.RETRY_JITTER,
            attempt_timeout=settings.RETRY_ATTEMPT_TIMEOUT,
        )


class RetryPolicy:
    """Decides whether a failed attempt is retried and the backoff before it.

    Attempt numbers are 1-based: attempt 1 is the initial call.

    Example:
        >>> policy = RetryPolicy(RetryConfiguration(max_attempts=3, jitter=False))
        >>> policy.next_delay(1), policy.next_delay(2)
        (0.3, 0.6)
    """

    JITTER_RATIO = 0.3

    def __init__(
        self,
        config: RetryConfiguration | None = None,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        self.config = config or RetryConfiguration()
        self.classifier = classifier or ErrorClassifier()

    @property
    def max_attempts(self) -> int:
        return self.config.max_attempts

    @property
    def attempt_timeout(self) -> float | None:
        return self.config.attempt_timeout

    def classify(self, error: BaseException) -> ErrorCategory:
        return self.classifier.classify(error)

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        """Return ``True`` if *attempt* failed with *error* and may be retried."""
        if attempt >= self.config.max_attempts:
            return False

        if self.config.retry_predicate is not None:
            try:
                return bool(self.config.retry_predicate(error, attempt))
            except Exception:
                logger.exception("Retry predicate failed; not retrying")
                return False

        return self.classify(error) in self.config.retryable_categories

    def next_delay(self, attempt: int) -> float:
        """Seconds to wait after failed *attempt* before the next one."""
        delay = self.config.base_delay * (self.config.backoff_factor ** (attempt - 1))
        delay = min(delay, self.config.max_delay)
        if self.config.jitter:
            delay += random.uniform(0, self.JITTER_RATIO * delay)
        return delay

    # ── Presets ──────────────────────────────────────────────────────

    @classmethod
    def conservative(cls) -> "RetryPolicy":
        """Fewer retries, for non-critical calls."""
        return cls(
            RetryConfiguration(
                max_attempts=2,
                base_delay=0.5,
                max_delay=5.0,
                retryable_categories=frozenset({ErrorCategory.NETWORK, ErrorCategory.SERVER}),
            )
        )

    @classmethod
    def aggressive(cls) -> "RetryPolicy":
        """More retries, including unclassified errors, for critical calls."""
        return cls(
            RetryConfiguration(
                max_attempts=5,
                base_delay=0.2,
                max_delay=30.0,
                retryable_categories=frozenset(
                    {
                        ErrorCategory.NETWORK,
                        ErrorCategory.SERVER,
                        ErrorCategory.TIMEOUT,
                        ErrorCategory.UNKNOWN,
                    }
                ),
            )
        )
