"""Error classification for retry decisions.

``ErrorClassifier`` maps an exception to an ``ErrorCategory``.  Structured
signals win over message matching:

    1. caller-supplied rules
    2. an explicit ``category`` attribute on the error
    3. errno-style codes (``ECONNREFUSED``, ``ENOTFOUND`` ...)
    4. exception types (``ConnectionError``, ``httpx.TimeoutException`` ...)
    5. HTTP status codes (``status``, ``status_code``, ``response.status_code``)
    6. message keywords

Anything left over is ``UNKNOWN``.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import re
import socket
from enum import Enum
from typing import Callable, Iterable

import httpx

from callguard.core.errors import AttemptTimeoutError, RetryExhaustedError

logger = logging.getLogger(__name__)


class ErrorCategory(str, Enum):
    """Coarse failure categories used by retry and offline routing."""

    NETWORK = "network"
    SERVER = "server"
    CLIENT = "client"
    TIMEOUT = "timeout"
    AUTH = "auth"
    UNKNOWN = "unknown"


ClassifierRule = Callable[[BaseException], "ErrorCategory | None"]

# Categories that may be caused by lost connectivity
NETWORK_RELATED = frozenset({ErrorCategory.NETWORK, ErrorCategory.TIMEOUT})

_ERRNO_CATEGORIES: dict[str, ErrorCategory] = {
    "ECONNREFUSED": ErrorCategory.NETWORK,
    "ECONNRESET": ErrorCategory.NETWORK,
    "ECONNABORTED": ErrorCategory.NETWORK,
    "ENOTFOUND": ErrorCategory.NETWORK,
    "EHOSTUNREACH": ErrorCategory.NETWORK,
    "ENETUNREACH": ErrorCategory.NETWORK,
    "ENETDOWN": ErrorCategory.NETWORK,
    "EPIPE": ErrorCategory.NETWORK,
    "ETIMEDOUT": ErrorCategory.NETWORK,
    "EAI_AGAIN": ErrorCategory.NETWORK,
}

_NETWORK_PATTERN = re.compile(
    r"network|connection|refused|offline|internet|econnrefused|enotfound|etimedout"
    r"|name or service not known|nodename nor servname|getaddrinfo"
    r"|(?:host|dns|domain|address)\s+(?:name\s+)?not\s+found",
    re.IGNORECASE,
)
_TIMEOUT_PATTERN = re.compile(r"timeout|timed out", re.IGNORECASE)


def unwrap_error(error: BaseException) -> BaseException:
    """Return the underlying failure for errors that wrap another one."""
    while isinstance(error, RetryExhaustedError):
        error = error.last_error
    return error


def _category_attribute(error: BaseException) -> ErrorCategory | None:
    value = getattr(error, "category", None)
    if isinstance(value, ErrorCategory):
        return value
    if isinstance(value, str):
        try:
            return ErrorCategory(value.lower())
        except ValueError:
            return None
    return None


def _errno_category(error: BaseException) -> ErrorCategory | None:
    code = getattr(error, "code", None)
    if isinstance(code, str) and code.upper() in _ERRNO_CATEGORIES:
        return _ERRNO_CATEGORIES[code.upper()]
    number = getattr(error, "errno", None)
    if isinstance(number, int) and number in errno.errorcode:
        return _ERRNO_CATEGORIES.get(errno.errorcode[number])
    return None


def _type_category(error: BaseException) -> ErrorCategory | None:
    # Order matters: httpx.ConnectTimeout is both a timeout and a network error
    if isinstance(error, (httpx.ConnectError, httpx.ConnectTimeout)):
        return ErrorCategory.NETWORK
    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError, AttemptTimeoutError)):
        return ErrorCategory.TIMEOUT
    if isinstance(error, (httpx.NetworkError, ConnectionError, socket.gaierror)):
        return ErrorCategory.NETWORK
    return None


def _status_code(error: BaseException) -> int | None:
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def category_for_status(status: int) -> ErrorCategory | None:
    """Map an HTTP status code to a category (``None`` for non-errors)."""
    if 500 <= status < 600:
        return ErrorCategory.SERVER
    if status in (401, 403):
        return ErrorCategory.AUTH
    if 400 <= status < 500:
        return ErrorCategory.CLIENT
    return None


def _message_category(error: BaseException) -> ErrorCategory | None:
    message = str(error)
    if _NETWORK_PATTERN.search(message):
        return ErrorCategory.NETWORK
    if _TIMEOUT_PATTERN.search(message):
        return ErrorCategory.TIMEOUT
    return None


class ErrorClassifier:
    """Pluggable error classifier.

    Args:
        rules: Callables consulted first, in order.  Each returns a category
               or ``None`` to defer to the next rule.
        use_heuristics: When ``False``, message keyword matching is skipped
                        and unstructured errors classify as ``UNKNOWN``.
    """

    def __init__(self, rules: Iterable[ClassifierRule] = (), use_heuristics: bool = True) -> None:
        self._rules: list[ClassifierRule] = list(rules)
        self.use_heuristics = use_heuristics

    def add_rule(self, rule: ClassifierRule) -> None:
        self._rules.append(rule)

    def classify(self, error: BaseException) -> ErrorCategory:
        error = unwrap_error(error)

        for rule in self._rules:
            try:
                category = rule(error)
            except Exception:
                logger.exception("Classifier rule %r failed", rule)
                continue
            if category is not None:
                return category

        category = _category_attribute(error) or _errno_category(error) or _type_category(error)
        if category is not None:
            return category

        status = _status_code(error)
        if status is not None:
            category = category_for_status(status)
            if category is not None:
                return category

        if self.use_heuristics:
            category = _message_category(error)
            if category is not None:
                return category

        return ErrorCategory.UNKNOWN

    def is_network_related(self, error: BaseException) -> bool:
        return self.classify(error) in NETWORK_RELATED
