"""Unit tests for RetrySweeper.

WHAT:
    Redelivery, attempt counting and eviction of outbox records.

REFERENCES:
    - storefront/services/retry_sweeper.py (module under test)
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from storefront.services.dispatcher import ConversionDispatcher
from storefront.services.outbox import OutboxRecord, RedisOutboxStore
from storefront.services.retry_sweeper import RetrySweeper
from storefront.services.sinks import (
    ConversionsApiSink,
    TransientSinkError,
    UnconfiguredSinkError,
)

CREATED_AT = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
KEY = "cs_test_123:attribution-webhook"


def _park(outbox, event, sink="attribution-webhook", attempt_count=0, created_at=CREATED_AT):
    record = OutboxRecord(
        sink=sink,
        dedupe_key=event.order_id,
        payload=event,
        created_at=created_at,
        attempt_count=attempt_count,
    )
    outbox.put(record)
    return record


def _sweeper(outbox, sinks, now=CREATED_AT + timedelta(minutes=5)):
    return RetrySweeper(outbox, {sink.name: sink for sink in sinks}, clock=lambda: now)


def _transient():
    return TransientSinkError("attribution-webhook", "HTTP 503", 503)


@pytest.mark.asyncio
async def test_success_deletes_record(event, outbox, make_sink):
    _park(outbox, event)
    sink = make_sink("attribution-webhook")

    report = await _sweeper(outbox, [sink]).sweep()

    assert report.delivered == 1
    assert len(outbox) == 0
    assert sink.dedupe_keys == ["cs_test_123"]


@pytest.mark.asyncio
async def test_fails_twice_then_succeeds(event, outbox, make_sink):
    """WHAT: attempt_count goes 0 -> 1 -> 2, then the record is delivered."""
    _park(outbox, event)
    sink = make_sink("attribution-webhook", [_transient(), _transient(), None])
    sweeper = _sweeper(outbox, [sink])

    report = await sweeper.sweep()
    assert report.retried == 1
    assert outbox.get(KEY).attempt_count == 1

    await sweeper.sweep()
    assert outbox.get(KEY).attempt_count == 2

    report = await sweeper.sweep()
    assert report.delivered == 1
    assert KEY not in outbox
    assert sink.dedupe_keys == ["cs_test_123"] * 3


@pytest.mark.asyncio
async def test_evicts_after_attempt_cap(event, outbox, make_sink):
    _park(outbox, event)
    sink = make_sink("attribution-webhook", [_transient(), _transient(), _transient(), None])
    sweeper = _sweeper(outbox, [sink])

    for _ in range(3):
        await sweeper.sweep()
    assert outbox.get(KEY).attempt_count == 3

    report = await sweeper.sweep()

    assert report.evicted == 1
    assert len(outbox) == 0
    assert len(sink.calls) == 3


@pytest.mark.asyncio
async def test_evicts_records_older_than_max_age(event, outbox, make_sink):
    _park(outbox, event)
    sink = make_sink("attribution-webhook")

    report = await _sweeper(outbox, [sink], now=CREATED_AT + timedelta(hours=25)).sweep()

    assert report.evicted == 1
    assert sink.calls == []
    assert len(outbox) == 0


@pytest.mark.asyncio
async def test_record_at_exact_max_age_is_retried(event, outbox, make_sink):
    _park(outbox, event)
    sink = make_sink("attribution-webhook")

    report = await _sweeper(outbox, [sink], now=CREATED_AT + timedelta(hours=24)).sweep()

    assert report.delivered == 1


@pytest.mark.asyncio
async def test_non_retryable_failure_deletes(event, outbox, make_sink):
    _park(outbox, event)
    sink = make_sink("attribution-webhook", [UnconfiguredSinkError("attribution-webhook", "no key")])

    report = await _sweeper(outbox, [sink]).sweep()

    assert report.dropped == 1
    assert len(outbox) == 0


@pytest.mark.asyncio
async def test_unexpected_exception_counts_as_attempt(event, outbox, make_sink):
    _park(outbox, event)
    sink = make_sink("attribution-webhook", [RuntimeError("bug")])

    report = await _sweeper(outbox, [sink]).sweep()

    assert report.retried == 1
    assert outbox.get(KEY).attempt_count == 1


@pytest.mark.asyncio
async def test_unknown_sink_and_unreadable_records_are_dropped(event, outbox, make_sink):
    _park(outbox, event, sink="tiktok-events")
    outbox.put_raw("broken:attribution-webhook", "not-json")

    report = await _sweeper(outbox, [make_sink("attribution-webhook")]).sweep()

    assert report.dropped == 2
    assert len(outbox) == 0


@pytest.mark.asyncio
async def test_each_record_retries_only_its_sink(event, outbox, make_sink):
    _park(outbox, event, sink="conversions-api")
    capi = make_sink("conversions-api")
    utmfy = make_sink("attribution-webhook")

    await _sweeper(outbox, [capi, utmfy]).sweep()

    assert len(capi.calls) == 1
    assert utmfy.calls == []


@pytest.mark.asyncio
async def test_naive_created_at_treated_as_utc(event, outbox, make_sink):
    _park(outbox, event, created_at=datetime(2024, 5, 1, 12, 0, 0))
    report = await _sweeper(outbox, [make_sink("attribution-webhook")]).sweep()
    assert report.delivered == 1


@pytest.mark.asyncio
async def test_capi_500_then_200_clears_outbox(event, outbox, make_transport):
    """WHAT: A parked Conversions-API failure is delivered on the next sweep."""
    transport = make_transport((500, {"error": "down"}), (200, {"status": "ok"}))
    capi = ConversionsApiSink("https://shop.example/tracking/v1/events", transport=transport)
    dispatcher = ConversionDispatcher([capi], outbox)

    await dispatcher.deliver_all(event)
    assert outbox.get("cs_test_123:conversions-api").attempt_count == 0

    report = await RetrySweeper(outbox, {capi.name: capi}).sweep()

    assert report.delivered == 1
    assert len(outbox) == 0
    assert [body["eventId"] for body in transport.bodies] == ["cs_test_123", "cs_test_123"]


@pytest.mark.asyncio
async def test_eviction_is_reported(event, outbox, make_sink):
    _park(outbox, event, attempt_count=3)
    with patch("storefront.services.retry_sweeper.capture_message") as mock_capture:
        await _sweeper(outbox, [make_sink("attribution-webhook")]).sweep()
    mock_capture.assert_called_once()
    assert mock_capture.call_args.kwargs["extra"]["sink"] == "attribution-webhook"


# =============================================================================
# Outbox store failures
# =============================================================================


def _record_json(event, order_id):
    return OutboxRecord(
        sink="attribution-webhook",
        dedupe_key=order_id,
        payload=event.model_copy(update={"order_id": order_id}),
        created_at=CREATED_AT,
    ).model_dump_json()


@pytest.mark.asyncio
async def test_store_write_failure_skips_record_and_continues(event, make_sink):
    """WHAT: A Redis error on one record does not abort the sweep.
    WHY: The sweep runs during app startup and must never raise.
    """
    stored = {
        "conversion_outbox:cs_test_123:attribution-webhook": _record_json(event, "cs_test_123"),
        "conversion_outbox:cs_test_456:attribution-webhook": _record_json(event, "cs_test_456"),
    }
    redis_client = MagicMock()
    redis_client.scan_iter.return_value = iter(list(stored))
    redis_client.get.side_effect = stored.get
    redis_client.set.side_effect = RedisConnectionError("blip")
    sink = make_sink("attribution-webhook", [_transient(), None])

    with patch("storefront.services.retry_sweeper.capture_exception") as mock_capture:
        report = await _sweeper(RedisOutboxStore(redis_client), [sink]).sweep()

    assert report.errors == 1
    assert report.delivered == 1
    assert sink.dedupe_keys == ["cs_test_123", "cs_test_456"]
    redis_client.delete.assert_called_once_with("conversion_outbox:cs_test_456:attribution-webhook")
    mock_capture.assert_called_once()


@pytest.mark.asyncio
async def test_store_unreachable_returns_empty_report(make_sink):
    redis_client = MagicMock()
    redis_client.scan_iter.side_effect = RedisConnectionError("refused")
    sink = make_sink("attribution-webhook")

    report = await _sweeper(RedisOutboxStore(redis_client), [sink]).sweep()

    assert report.delivered == report.retried == report.errors == 0
    assert sink.calls == []
