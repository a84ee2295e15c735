"""Durable storage for the offline queue.

The queue is persisted as one versioned JSON blob per key::

    {"version": 1, "saved_at": 1718000000.0, "operations": [...]}

Stores only move strings.  ``encode_queue``/``decode_queue`` own the
format.  Store implementations raise ``StoreError``; the queue decides
what to do with it.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import aiofiles
from pydantic import BaseModel, Field, ValidationError
from pydantic_core import PydanticSerializationError

from callguard.core.config import Settings
from callguard.core.errors import StoreError
from callguard.offline.models import OfflineOperation

logger = logging.getLogger(__name__)

QUEUE_FORMAT_VERSION = 1


@runtime_checkable
class DurableStore(Protocol):
    """Async key/value string store."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...


# ── Codec ───────────────────────────────────────────────────────────────


class OperationRecord(BaseModel):
    """Persisted form of an ``OfflineOperation`` (no closure)."""

    id: str
    type: str
    payload: Any = None
    created_at: float
    attempts: int = 0
    last_attempt: float | None = None
    mergeable: bool = False
    priority: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_operation(cls, operation: OfflineOperation) -> "OperationRecord":
        return cls(
            id=operation.id,
            type=operation.type,
            payload=operation.payload,
            created_at=operation.created_at,
            attempts=operation.attempts,
            last_attempt=operation.last_attempt,
            mergeable=operation.mergeable,
            priority=operation.priority,
            metadata=operation.metadata,
        )

    def to_operation(self) -> OfflineOperation:
        return OfflineOperation(
            id=self.id,
            type=self.type,
            payload=self.payload,
            created_at=self.created_at,
            attempts=self.attempts,
            last_attempt=self.last_attempt,
            mergeable=self.mergeable,
            priority=self.priority,
            metadata=dict(self.metadata),
        )


class QueueSnapshot(BaseModel):
    version: int = QUEUE_FORMAT_VERSION
    saved_at: float = Field(default_factory=time.time)
    operations: list[OperationRecord] = Field(default_factory=list)


def encode_queue(operations: list[OfflineOperation]) -> str:
    """Serialize *operations*; entries that are not JSON-serializable are left out."""
    records = []
    for operation in operations:
        try:
            record = OperationRecord.from_operation(operation)
            record.model_dump_json()
        except (ValidationError, PydanticSerializationError) as exc:
            logger.warning(
                "Operation %s (%s) is not serializable; kept in memory only: %s",
                operation.id,
                operation.type,
                exc,
            )
            continue
        records.append(record)
    return QueueSnapshot(operations=records).model_dump_json()


def decode_queue(blob: str) -> list[OfflineOperation]:
    """Parse a persisted queue.

    Raises:
        ValueError: The blob is corrupt or has an unsupported version.
    """
    try:
        snapshot = QueueSnapshot.model_validate_json(blob)
    except ValidationError as exc:
        raise ValueError(f"Corrupt queue snapshot: {exc.error_count()} error(s)") from exc
    if snapshot.version != QUEUE_FORMAT_VERSION:
        raise ValueError(f"Unsupported queue snapshot version {snapshot.version}")
    return [record.to_operation() for record in snapshot.operations]


# ── Stores ──────────────────────────────────────────────────────────────


class MemoryStore:
    """In-process store; contents are lost on exit."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value


class JsonFileStore:
    """One file per key under *directory*, written with aiofiles."""

    def __init__(self, directory: str | Path = "data/offline") -> None:
        self.directory = Path(directory)

    def path_for(self, key: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in key)
        return self.directory / f"{safe}.json"

    async def get(self, key: str) -> str | None:
        path = self.path_for(key)
        if not path.exists():
            return None
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                return await f.read()
        except (OSError, UnicodeDecodeError) as exc:
            raise StoreError(key, str(exc)) from exc

    async def set(self, key: str, value: str) -> None:
        path = self.path_for(key)
        tmp_path = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(value)
            # Replace in one step so readers never see a partial blob
            tmp_path.replace(path)
        except OSError as exc:
            raise StoreError(key, str(exc)) from exc


class RedisStore:
    """Store backed by a ``redis.asyncio`` client."""

    def __init__(self, redis_client: Any) -> None:
        self.redis_client = redis_client

    @classmethod
    def from_url(cls, url: str) -> "RedisStore":
        import redis.asyncio as aioredis

        return cls(aioredis.from_url(url))

    async def get(self, key: str) -> str | None:
        try:
            value = await self.redis_client.get(key)
            if isinstance(value, bytes):
                value = value.decode("utf-8")
        except Exception as exc:
            raise StoreError(key, str(exc)) from exc
        return value

    async def set(self, key: str, value: str) -> None:
        try:
            await self.redis_client.set(key, value)
        except Exception as exc:
            raise StoreError(key, str(exc)) from exc


def create_store(settings: Settings) -> DurableStore:
    """Build the store selected by ``STORE_BACKEND``."""
    backend = settings.STORE_BACKEND.lower()
    if backend == "memory":
        return MemoryStore()
    if backend == "file":
        return JsonFileStore(settings.STORE_PATH)
    if backend == "redis":
        return RedisStore.from_url(settings.REDIS_URL)
    raise ValueError(f"Unknown store backend: {settings.STORE_BACKEND!r}")
