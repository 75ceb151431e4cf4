"""Unit tests for the conversion outbox stores."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from storefront.services.outbox import (
    InMemoryOutboxStore,
    OutboxRecord,
    RedisOutboxStore,
    outbox_key,
)


def _record(event, sink="attribution-webhook", attempt_count=0):
    return OutboxRecord(
        sink=sink,
        dedupe_key=event.order_id,
        payload=event,
        created_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
        attempt_count=attempt_count,
    )


def test_key_is_order_and_sink(event):
    assert outbox_key("cs_test_123", "conversions-api") == "cs_test_123:conversions-api"
    assert _record(event).key == "cs_test_123:attribution-webhook"


def test_attempt_count_cannot_be_negative(event):
    with pytest.raises(ValidationError):
        _record(event, attempt_count=-1)


class TestInMemoryOutboxStore:

    def test_put_get_delete(self, event):
        store = InMemoryOutboxStore()
        record = _record(event, attempt_count=2)
        store.put(record)

        assert store.keys() == ["cs_test_123:attribution-webhook"]
        loaded = store.get(record.key)
        assert loaded == record
        assert loaded.payload.line_items[0].product_id == "perfume_001"

        store.delete(record.key)
        assert store.get(record.key) is None
        assert len(store) == 0

    def test_one_record_per_sink(self, event):
        store = InMemoryOutboxStore()
        store.put(_record(event, sink="conversions-api"))
        store.put(_record(event, sink="attribution-webhook"))
        store.put(_record(event, sink="attribution-webhook", attempt_count=1))
        assert sorted(store.keys()) == [
            "cs_test_123:attribution-webhook",
            "cs_test_123:conversions-api",
        ]
        assert store.get("cs_test_123:attribution-webhook").attempt_count == 1

    def test_delete_missing_key_is_noop(self):
        InMemoryOutboxStore().delete("nope")

    def test_unparseable_record_raises_value_error(self):
        store = InMemoryOutboxStore()
        store.put_raw("bad:attribution-webhook", "{not json")
        with pytest.raises(ValueError):
            store.get("bad:attribution-webhook")


class TestRedisOutboxStore:

    def test_put_writes_prefixed_json(self, event):
        redis_client = MagicMock()
        store = RedisOutboxStore(redis_client, prefix="conversion_outbox:")
        record = _record(event)

        store.put(record)

        key, value = redis_client.set.call_args.args
        assert key == "conversion_outbox:cs_test_123:attribution-webhook"
        assert OutboxRecord.model_validate_json(value) == record

    def test_get_decodes_bytes(self, event):
        record = _record(event, attempt_count=1)
        redis_client = MagicMock()
        redis_client.get.return_value = record.model_dump_json().encode("utf-8")
        store = RedisOutboxStore(redis_client)

        assert store.get(record.key) == record
        redis_client.get.assert_called_once_with("conversion_outbox:cs_test_123:attribution-webhook")

    def test_get_missing_returns_none(self):
        redis_client = MagicMock()
        redis_client.get.return_value = None
        assert RedisOutboxStore(redis_client).get("x:y") is None

    def test_keys_strip_prefix(self):
        redis_client = MagicMock()
        redis_client.scan_iter.return_value = iter(
            [b"conversion_outbox:cs_1:conversions-api", "conversion_outbox:cs_2:attribution-webhook"]
        )
        store = RedisOutboxStore(redis_client)

        assert store.keys() == ["cs_1:conversions-api", "cs_2:attribution-webhook"]
        redis_client.scan_iter.assert_called_once_with(match="conversion_outbox:*")

    def test_delete(self):
        redis_client = MagicMock()
        RedisOutboxStore(redis_client).delete("cs_1:conversions-api")
        redis_client.delete.assert_called_once_with("conversion_outbox:cs_1:conversions-api")
