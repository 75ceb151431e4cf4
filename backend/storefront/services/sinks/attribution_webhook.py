"""UTMify attribution-webhook sink.

WHAT:
    Posts the full conversion (customer, UTMs, commission breakdown, products)
    to the UTMify webhook URL, authenticated with a static ``x-api-token``.

WHY:
    UTMify attributes sales to campaigns from the UTM parameters we thread
    through checkout metadata. It is the least reliable destination, so its
    transient failures land in the outbox.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from storefront.services.conversion_events import ConversionEvent
from storefront.services.sinks.base import (
    MalformedSinkError,
    TransientSinkError,
    UnconfiguredSinkError,
)

logger = logging.getLogger(__name__)

USER_AGENT = "PerfumUK-Stripe/1.0"
# Processor fee is not known at conversion time; UTMify gets an estimate
GATEWAY_FEE_RATE = 0.029
DEFAULT_TIMEOUT_SECONDS = 10.0


def _iso(value: datetime) -> str:
    """Format like JavaScript's toISOString (UTC, millisecond precision)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def build_utmfy_payload(event: ConversionEvent) -> Dict[str, Any]:
    """Build the UTMify conversion body from a ConversionEvent.

    Raises:
        MalformedSinkError: If the event has no products
    """
    if not event.line_items:
        raise MalformedSinkError(AttributionWebhookSink.name, f"Order {event.order_id} has no products")

    total = event.amount_total_minor_units
    gateway_fee = round(total * GATEWAY_FEE_RATE)
    occurred = _iso(event.occurred_at)

    return {
        "orderId": event.order_id,
        "platform": event.platform,
        "paymentMethod": event.payment_method,
        "status": event.status,
        "createdAt": occurred,
        "approvedDate": occurred if event.status == "paid" else None,
        "customer": {
            "name": event.customer.name,
            "email": event.customer.email,
            "phone": event.customer.phone,
            "document": event.customer.document,
        },
        "trackingParameters": event.tracking_parameters.as_mapping(),
        "commission": {
            "totalPriceInCents": total,
            "gatewayFeeInCents": gateway_fee,
            "userCommissionInCents": total - gateway_fee,
        },
        "products": [
            {
                "id": item.product_id,
                "planId": f"plan_{item.product_id}",
                "planName": item.name,
                "name": item.name,
                "quantity": item.quantity,
                "priceInCents": item.unit_price_minor_units,
            }
            for item in event.line_items
        ],
    }


class AttributionWebhookSink:
    """Sends conversions to the UTMify webhook.

    Usage:
        sink = AttributionWebhookSink(webhook_url=url, api_key=key)
        await sink.deliver(event, dedupe_key=event.order_id)
    """

    name = "attribution-webhook"

    def __init__(
        self,
        webhook_url: Optional[str],
        api_key: Optional[str],
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        user_agent: str = USER_AGENT,
    ):
        self.webhook_url = webhook_url
        self.api_key = api_key
        self.timeout = timeout
        self.user_agent = user_agent
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.webhook_url and self.api_key)

    async def send_payload(self, payload: Dict[str, Any]) -> httpx.Response:
        """POST an already-built UTMify body.

        Returns:
            The successful upstream response

        Raises:
            UnconfiguredSinkError: Missing webhook URL or API key
            TransientSinkError: Network error or non-2xx response
        """
        if not self.webhook_url:
            logger.warning("[UTMFY] UTMFY_WEBHOOK_URL not configured")
            raise UnconfiguredSinkError(self.name, "Webhook URL not configured")
        if not self.api_key:
            logger.warning("[UTMFY] UTMFY_API_KEY not configured")
            raise UnconfiguredSinkError(self.name, "API key not configured")

        order_id = payload.get("orderId")
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            "x-api-token": self.api_key,
        }

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=payload, headers=headers)
        except httpx.RequestError as e:
            logger.error(f"[UTMFY] Network error for order {order_id}: {e}")
            raise TransientSinkError(self.name, f"Network error: {e}")

        if not response.is_success:
            logger.error(
                f"[UTMFY] Webhook returned {response.status_code} for order {order_id}",
                extra={"order_id": order_id, "status": response.status_code, "body": response.text[:500]},
            )
            raise TransientSinkError(
                self.name,
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        logger.info(
            f"[UTMFY] Conversion sent for order {order_id}",
            extra={"order_id": order_id, "tracking_parameters": payload.get("trackingParameters")},
        )
        return response

    async def deliver(self, event: ConversionEvent, dedupe_key: str) -> None:
        payload = build_utmfy_payload(event)
        payload["orderId"] = dedupe_key
        await self.send_payload(payload)
