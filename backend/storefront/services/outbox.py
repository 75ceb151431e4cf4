"""Conversion outbox.

WHAT:
    Key-value persistence for conversion deliveries that failed with a
    transient error, one record per (order id, sink).

WHY:
    Tracking must never block checkout, so failed deliveries are parked and
    retried later by the Retry Sweeper instead of being retried inline.

DESIGN:
    - Keys are "{order_id}:{sink}" so a retry targets only the failed sink
    - Records are stored as JSON strings in both stores
    - No locking: overlapping sweeps may race on a key (best-effort delivery)
    - InMemoryOutboxStore is scoped to one process/session and lost on restart;
      RedisOutboxStore survives restarts of a single deployment
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from storefront.services.conversion_events import ConversionEvent

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "conversion_outbox:"


def outbox_key(order_id: str, sink: str) -> str:
    return f"{order_id}:{sink}"


class OutboxRecord(BaseModel):
    """A conversion event waiting for redelivery to one sink."""
    sink: str
    dedupe_key: str
    payload: ConversionEvent
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempt_count: int = Field(0, ge=0)

    @property
    def key(self) -> str:
        return outbox_key(self.payload.order_id, self.sink)


class OutboxStore(Protocol):
    """Synchronous key-value store for outbox records."""

    def keys(self) -> List[str]:
        ...

    def get(self, key: str) -> Optional[OutboxRecord]:
        ...

    def put(self, record: OutboxRecord) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class InMemoryOutboxStore:
    """Process-local outbox (one browser session / one test)."""

    def __init__(self):
        self._items: Dict[str, str] = {}

    def keys(self) -> List[str]:
        return list(self._items.keys())

    def get(self, key: str) -> Optional[OutboxRecord]:
        """Return the record, or None if absent.

        Raises:
            ValueError: If the stored value cannot be parsed
        """
        raw = self._items.get(key)
        if raw is None:
            return None
        return OutboxRecord.model_validate_json(raw)

    def put(self, record: OutboxRecord) -> None:
        self._items[record.key] = record.model_dump_json()

    def put_raw(self, key: str, raw: str) -> None:
        self._items[key] = raw

    def delete(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, key: str) -> bool:
        return key in self._items


class RedisOutboxStore:
    """Outbox backed by the shared Redis connection.

    Usage:
        store = RedisOutboxStore(state.redis_client)
        store.put(record)
    """

    def __init__(self, redis_client, prefix: str = DEFAULT_KEY_PREFIX):
        self.redis = redis_client
        self.prefix = prefix

    def _redis_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    @staticmethod
    def _decode(value) -> str:
        return value.decode("utf-8") if isinstance(value, bytes) else value

    def keys(self) -> List[str]:
        keys = []
        for raw_key in self.redis.scan_iter(match=f"{self.prefix}*"):
            keys.append(self._decode(raw_key)[len(self.prefix):])
        return keys

    def get(self, key: str) -> Optional[OutboxRecord]:
        raw = self.redis.get(self._redis_key(key))
        if raw is None:
            return None
        return OutboxRecord.model_validate_json(self._decode(raw))

    def put(self, record: OutboxRecord) -> None:
        self.redis.set(self._redis_key(record.key), record.model_dump_json())
        logger.debug(f"[OUTBOX] Stored {record.key} (attempt_count={record.attempt_count})")

    def delete(self, key: str) -> None:
        self.redis.delete(self._redis_key(key))
