"""Pytest configuration for storefront tracking tests

WHAT: Shared fixtures for events, outbox stores, fake sinks and mocked HTTP
WHY: Tests run without Redis, Meta, UTMify or Shopify being reachable
REFERENCES:
    - storefront/services/dispatcher.py
    - storefront/services/retry_sweeper.py
    - storefront/main.py
"""

import json
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.pop("SENTRY_DSN", None)

from storefront.services.conversion_events import (  # noqa: E402
    ConversionEvent,
    CustomerDetails,
    LineItem,
    TrackingParameters,
)
from storefront.services.outbox import InMemoryOutboxStore  # noqa: E402


FIXED_NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


# ============================================================================
# Event Fixtures
# ============================================================================

@pytest.fixture
def make_event() -> Callable[..., ConversionEvent]:
    """Factory for a paid purchase keyed by a checkout-session id."""

    def _make(**overrides: Any) -> ConversionEvent:
        data: Dict[str, Any] = {
            "order_id": "cs_test_123",
            "occurred_at": FIXED_NOW,
            "customer": CustomerDetails(name="Ana Silva", email="ana@example.com", phone="+44 7700 900123"),
            "tracking_parameters": TrackingParameters(utm_source="facebook", utm_campaign="spring"),
            "amount_total_minor_units": 4999,
            "currency": "gbp",
            "line_items": [
                LineItem(product_id="perfume_001", name="Perfume", quantity=1, unit_price_minor_units=4999)
            ],
        }
        data.update(overrides)
        return ConversionEvent(**data)

    return _make


@pytest.fixture
def event(make_event) -> ConversionEvent:
    return make_event()


@pytest.fixture
def paid_session() -> Dict[str, Any]:
    """Checkout session as the payment processor reports it."""
    return {
        "id": "cs_test_123",
        "payment_status": "paid",
        "amount_total": 9998,
        "currency": "gbp",
        "created": 1714564800,
        "customer_details": {
            "name": "Ana Silva",
            "email": "ana@example.com",
            "phone": "+447700900123",
            "address": {"line1": "1 High St", "city": "London", "postal_code": "N1 1AA", "country": "GB"},
        },
        "metadata": {"utm_source": "facebook", "utm_campaign": "spring"},
        "payment_intent": "pi_123",
    }


# ============================================================================
# Outbox & Sink Fixtures
# ============================================================================

@pytest.fixture
def outbox() -> InMemoryOutboxStore:
    return InMemoryOutboxStore()


class FakeSink:
    """Sink that replays scripted outcomes (None = success, exception = raise)."""

    def __init__(self, name: str, outcomes: Optional[List[Optional[BaseException]]] = None):
        self.name = name
        self.outcomes = list(outcomes or [])
        self.calls: List[tuple] = []

    async def deliver(self, event: ConversionEvent, dedupe_key: str) -> None:
        self.calls.append((event, dedupe_key))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome is not None:
            raise outcome

    @property
    def dedupe_keys(self) -> List[str]:
        return [key for _, key in self.calls]


@pytest.fixture
def make_sink() -> Callable[..., FakeSink]:
    return FakeSink


# ============================================================================
# HTTP Fixtures
# ============================================================================

class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request and answers from a script."""

    def __init__(self, responses: List[Any]):
        self.requests: List[httpx.Request] = []
        self._responses = list(responses)
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        outcome = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, httpx.Response):
            return outcome
        status_code, body = outcome
        return httpx.Response(status_code, json=body)

    @property
    def bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]


@pytest.fixture
def make_transport() -> Callable[..., RecordingTransport]:
    """Factory: make_transport((200, {...}), (500, {...}), httpx.ConnectError(...))."""

    def _make(*responses: Any) -> RecordingTransport:
        return RecordingTransport(list(responses) or [(200, {})])

    return _make
