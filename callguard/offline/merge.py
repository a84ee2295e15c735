"""Merge policies applied when a mergeable operation is enqueued.

A policy receives the current queue and the incoming operation and returns
the new queue.  Only existing entries that are themselves mergeable and of
the same ``type`` are candidates for merging.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Protocol

from callguard.offline.models import OfflineOperation

logger = logging.getLogger(__name__)

CombineFunc = Callable[[OfflineOperation, OfflineOperation], OfflineOperation]


class MergeStrategy(str, Enum):
    """Built-in merge strategies."""

    LATEST_ONLY = "latest_only"
    COMBINE = "combine"
    KEEP_ALL = "keep_all"


class MergePolicy(Protocol):
    def merge(self, queue: list[OfflineOperation], incoming: OfflineOperation) -> list[OfflineOperation]: ...


def _is_candidate(existing: OfflineOperation, incoming: OfflineOperation) -> bool:
    return existing.mergeable and existing.type == incoming.type


class LatestOnlyMerge:
    """Drop queued mergeable operations of the same type, then append."""

    def merge(self, queue: list[OfflineOperation], incoming: OfflineOperation) -> list[OfflineOperation]:
        kept = [op for op in queue if not _is_candidate(op, incoming)]
        dropped = len(queue) - len(kept)
        if dropped:
            logger.debug("Replaced %d queued '%s' operation(s)", dropped, incoming.type)
        kept.append(incoming)
        return kept


class KeepAllMerge:
    """Append unconditionally."""

    def merge(self, queue: list[OfflineOperation], incoming: OfflineOperation) -> list[OfflineOperation]:
        return [*queue, incoming]


class CombineMerge:
    """Fold every queued candidate into the incoming operation.

    ``combine(existing, incoming)`` returns the merged operation; it is
    applied oldest candidate first.  The result takes the incoming
    operation's place at the end of the queue.  Without a combine function
    this behaves like ``LatestOnlyMerge``.
    """

    def __init__(self, combine: CombineFunc | None = None) -> None:
        self.combine = combine

    def merge(self, queue: list[OfflineOperation], incoming: OfflineOperation) -> list[OfflineOperation]:
        if self.combine is None:
            return LatestOnlyMerge().merge(queue, incoming)

        candidates = sorted(
            (op for op in queue if _is_candidate(op, incoming)),
            key=lambda op: op.created_at,
        )
        merged = incoming
        for existing in candidates:
            merged = self.combine(existing, merged)

        kept = [op for op in queue if not _is_candidate(op, incoming)]
        kept.append(merged)
        return kept


def resolve_merge_policy(
    strategy: MergeStrategy | str | MergePolicy,
    combine: CombineFunc | None = None,
) -> MergePolicy:
    """Return a policy object for a strategy name, enum, or custom policy."""
    if not isinstance(strategy, (str, MergeStrategy)):
        return strategy

    strategy = MergeStrategy(strategy)
    if strategy == MergeStrategy.LATEST_ONLY:
        return LatestOnlyMerge()
    if strategy == MergeStrategy.KEEP_ALL:
        return KeepAllMerge()
    return CombineMerge(combine)
