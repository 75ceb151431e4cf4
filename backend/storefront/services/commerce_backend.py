"""Commerce backend (Shopify REST Admin) order creation.

WHAT:
    Records a paid checkout as an order in the Shopify store so fulfillment
    happens there.

WHY:
    Payment happens on the payment processor; Shopify only learns about the
    sale through this call. The tracking pipeline does not depend on the
    result, so failures are logged and reported as False.

REFERENCES:
    - https://shopify.dev/docs/api/admin-rest/latest/resources/order#post-orders
"""

import logging
from typing import Any, Dict, Optional

import httpx

from storefront.services.conversion_events import ConversionEvent

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2023-10"


def _money(minor_units: int) -> str:
    return f"{minor_units // 100}.{minor_units % 100:02d}"


def _address(name: str, address: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not address:
        return None
    first_name, _, last_name = name.partition(" ")
    return {
        "first_name": first_name,
        "last_name": last_name,
        "address1": address.get("line1") or "",
        "address2": address.get("line2") or "",
        "city": address.get("city") or "",
        "province": address.get("state") or "",
        "country": address.get("country") or "",
        "zip": address.get("postal_code") or "",
    }


def build_order_payload(
    event: ConversionEvent,
    address: Optional[Dict[str, Any]] = None,
    payment_intent_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the Shopify order body for a conversion."""
    customer = event.customer
    first_name, _, last_name = customer.name.partition(" ")

    note_attributes = [
        {"name": "stripe_session_id", "value": event.order_id},
        {"name": "payment_intent_id", "value": payment_intent_id or ""},
    ]
    note_attributes.extend(
        {"name": key, "value": value or ""}
        for key, value in event.tracking_parameters.as_mapping().items()
    )

    order: Dict[str, Any] = {
        "email": customer.email,
        "financial_status": "paid" if event.status == "paid" else "pending",
        "fulfillment_status": None,
        "send_receipt": True,
        "send_fulfillment_receipt": False,
        "note": f"Order created from Stripe - Session ID: {event.order_id}",
        "note_attributes": note_attributes,
        "customer": {
            "first_name": first_name,
            "last_name": last_name,
            "email": customer.email,
            "phone": customer.phone,
        },
        "line_items": [
            {
                "title": item.name,
                "quantity": item.quantity,
                "price": _money(item.unit_price_minor_units),
                "sku": item.product_id,
            }
            for item in event.line_items
        ],
        "currency": event.currency.upper(),
        "total_price": _money(event.amount_total_minor_units),
        "subtotal_price": _money(event.amount_total_minor_units),
        "total_tax": "0.00",
        "taxes_included": False,
        "processed_at": event.occurred_at.isoformat(),
    }

    shipping = _address(customer.name, address)
    if shipping:
        order["billing_address"] = shipping
        order["shipping_address"] = dict(shipping)

    return {"order": order}


class CommerceBackendClient:
    """Creates orders in the Shopify store.

    Usage:
        client = CommerceBackendClient("https://store.myshopify.com", "shpat_xxx")
        created = await client.create_order(event)
    """

    def __init__(
        self,
        store_url: Optional[str],
        access_token: Optional[str],
        api_version: str = DEFAULT_API_VERSION,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store_url = store_url.rstrip("/") if store_url else None
        self.access_token = access_token
        self.api_version = api_version
        self.timeout = timeout
        self._transport = transport

    async def create_order(
        self,
        event: ConversionEvent,
        address: Optional[Dict[str, Any]] = None,
        payment_intent_id: Optional[str] = None,
    ) -> bool:
        """Create the order; returns True on success, False otherwise."""
        if not self.store_url or not self.access_token:
            logger.warning("[COMMERCE] Shopify credentials not configured - order not created")
            return False

        url = f"{self.store_url}/admin/api/{self.api_version}/orders.json"
        payload = build_order_payload(event, address, payment_intent_id)

        logger.info(
            f"[COMMERCE] Creating order for session {event.order_id}",
            extra={
                "order_id": event.order_id,
                "total_amount": event.amount_total_minor_units,
                "utm_source": event.tracking_parameters.utm_source,
                "line_items_count": len(event.line_items),
            },
        )

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"X-Shopify-Access-Token": self.access_token},
                )
        except httpx.RequestError as e:
            logger.error(f"[COMMERCE] Network error creating order for {event.order_id}: {e}")
            return False

        if not response.is_success:
            logger.error(
                f"[COMMERCE] Shopify returned {response.status_code} for {event.order_id}",
                extra={"status": response.status_code, "body": response.text[:500]},
            )
            return False

        try:
            body = response.json()
            shopify_order = (body.get("order") if isinstance(body, dict) else None) or {}
        except ValueError:
            logger.warning(
                f"[COMMERCE] Order response for {event.order_id} is not JSON",
                extra={"status": response.status_code, "body": response.text[:500]},
            )
            shopify_order = {}
        logger.info(
            f"[COMMERCE] Order created for session {event.order_id}",
            extra={
                "shopify_order_id": shopify_order.get("id"),
                "order_number": shopify_order.get("order_number"),
            },
        )
        return True
