"""Conversion event model and builders.

WHAT:
    The ConversionEvent is the single business occurrence (a purchase) that
    gets reported to every tracking sink. This module defines it and builds
    it from the two places a purchase is observed:
    - a payment-processor checkout session (return page and webhook)
    - a cart (client path without a session id)

WHY:
    Every sink derives its own payload from the same event, so amounts,
    identifiers and attribution parameters stay consistent across sinks.

NOTES:
    - Money is always integer minor units (pence/cents).
    - Line-item pricing goes through one explicit PricingPolicy. A fixed unit
      price is an opt-in policy, never a per-endpoint override.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel, Field

from storefront.services.event_identity import resolve_event_id

logger = logging.getLogger(__name__)

TRACKING_PARAMETER_KEYS = (
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "utm_content",
    "utm_term",
)

DEFAULT_PRODUCT_ID = "perfume_001"
DEFAULT_PRODUCT_NAME = "Perfume"
DEFAULT_CUSTOMER_NAME = "Customer"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# MODELS
# =============================================================================


class TrackingParameters(BaseModel):
    """Attribution parameters captured earlier in the journey."""
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "TrackingParameters":
        """Pick the known keys out of a loose mapping; blank values become None."""
        if not data:
            return cls()
        values = {}
        for key in TRACKING_PARAMETER_KEYS:
            value = data.get(key)
            if value is None:
                continue
            value = str(value).strip()
            if value:
                values[key] = value
        return cls(**values)

    def as_mapping(self) -> Dict[str, Optional[str]]:
        return {key: getattr(self, key) for key in TRACKING_PARAMETER_KEYS}

    def is_empty(self) -> bool:
        return not any(self.as_mapping().values())


class CustomerDetails(BaseModel):
    """Customer PII. Sinks hash or redact it per their own contract."""
    name: str = DEFAULT_CUSTOMER_NAME
    email: str = ""
    phone: Optional[str] = None
    document: Optional[str] = None


class LineItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., gt=0)
    unit_price_minor_units: int = Field(..., ge=0)

    @property
    def total_minor_units(self) -> int:
        return self.quantity * self.unit_price_minor_units


class ConversionEvent(BaseModel):
    """One purchase to be reported to the tracking sinks.

    WHAT: Order id (dedupe key), customer, attribution and money
    WHY: Shared source of truth for every sink payload

    The total is NOT forced to equal the sum of line items; use
    has_consistent_total() to check.
    """
    order_id: str = Field(..., min_length=1)
    event_name: str = "Purchase"
    occurred_at: datetime = Field(default_factory=_utcnow)
    customer: CustomerDetails = Field(default_factory=CustomerDetails)
    tracking_parameters: TrackingParameters = Field(default_factory=TrackingParameters)
    amount_total_minor_units: int = Field(..., ge=0)
    currency: str = "gbp"
    line_items: List[LineItem] = Field(default_factory=list)
    status: str = "paid"
    payment_method: str = "credit_card"
    platform: str = "stripe"
    source_url: Optional[str] = None

    def line_items_total(self) -> int:
        return sum(item.total_minor_units for item in self.line_items)

    def has_consistent_total(self) -> bool:
        return self.amount_total_minor_units == self.line_items_total()

    @property
    def content_ids(self) -> List[str]:
        return [item.product_id for item in self.line_items]

    @property
    def num_items(self) -> int:
        return sum(item.quantity for item in self.line_items)


# =============================================================================
# PRICING POLICY
# =============================================================================


class CartItem(BaseModel):
    """A cart line as submitted by the storefront."""
    product_id: str
    name: str = DEFAULT_PRODUCT_NAME
    quantity: int = Field(1, gt=0)
    unit_price_minor_units: int = Field(..., ge=0)


class PricingPolicy:
    """Decides the unit price charged and reported for a cart line."""

    name = "base"

    def unit_price(self, item: CartItem) -> int:
        raise NotImplementedError


class CatalogPricing(PricingPolicy):
    """Use the item's own catalog price."""

    name = "catalog"

    def unit_price(self, item: CartItem) -> int:
        return item.unit_price_minor_units


class FixedUnitPricing(PricingPolicy):
    """Charge every unit the same fixed price, regardless of catalog price."""

    name = "fixed"

    def __init__(self, unit_price_minor_units: int):
        if unit_price_minor_units < 0:
            raise ValueError("unit_price_minor_units must be >= 0")
        self.unit_price_minor_units = unit_price_minor_units

    def unit_price(self, item: CartItem) -> int:
        return self.unit_price_minor_units


def pricing_policy_from_settings(settings) -> PricingPolicy:
    """Build the configured pricing policy (catalog unless a fixed price is set)."""
    fixed = getattr(settings, "FIXED_UNIT_PRICE_MINOR_UNITS", None)
    if fixed is None:
        return CatalogPricing()
    logger.warning(
        "[PRICING] Fixed unit price policy active",
        extra={"unit_price_minor_units": fixed},
    )
    return FixedUnitPricing(fixed)


def build_line_items(
    cart_items: Sequence[CartItem],
    pricing: Optional[PricingPolicy] = None,
) -> List[LineItem]:
    """Turn cart lines into line items under one pricing policy."""
    pricing = pricing or CatalogPricing()
    return [
        LineItem(
            product_id=item.product_id,
            name=item.name,
            quantity=item.quantity,
            unit_price_minor_units=pricing.unit_price(item),
        )
        for item in cart_items
    ]


# =============================================================================
# BUILDERS
# =============================================================================


def _warn_on_inconsistent_total(event: ConversionEvent) -> None:
    if event.line_items and not event.has_consistent_total():
        logger.warning(
            "[CONVERSION] Total does not match line items",
            extra={
                "order_id": event.order_id,
                "amount_total": event.amount_total_minor_units,
                "line_items_total": event.line_items_total(),
            },
        )


def customer_details_mapping(session: Mapping[str, Any]) -> Mapping[str, Any]:
    """The session's customer details, or an empty mapping.

    ``customer`` is usually a bare customer id string, so only mappings count.
    """
    for key in ("customer_details", "customer"):
        details = session.get(key)
        if isinstance(details, Mapping):
            return details
    return {}


def _unit_price_from_session_line(raw: Mapping[str, Any], quantity: int) -> int:
    """Prefer the processor's own unit price; fall back to splitting the line total."""
    price = raw.get("price")
    if isinstance(price, Mapping) and price.get("unit_amount") is not None:
        return int(price["unit_amount"])
    amount_total = int(raw.get("amount_total") or 0)
    unit_price, remainder = divmod(amount_total, quantity)
    if remainder:
        logger.warning(
            "[CONVERSION] Line total not divisible by quantity, unit price rounded down",
            extra={"amount_total": amount_total, "quantity": quantity},
        )
    return unit_price


def _cart_items_from_session(raw_items: Sequence[Mapping[str, Any]]) -> List[CartItem]:
    """Map processor line items to cart lines."""
    items = []
    for raw in raw_items:
        quantity = int(raw.get("quantity") or 1)
        price = raw.get("price") if isinstance(raw.get("price"), Mapping) else {}
        product = price.get("product")
        if isinstance(product, Mapping):
            product = product.get("id")
        product_id = raw.get("product_id") or product or raw.get("price_id") or price.get("id")
        items.append(
            CartItem(
                product_id=str(product_id or DEFAULT_PRODUCT_ID),
                name=raw.get("product_name") or raw.get("description") or DEFAULT_PRODUCT_NAME,
                quantity=quantity,
                unit_price_minor_units=_unit_price_from_session_line(raw, quantity),
            )
        )
    return items


def conversion_event_from_checkout_session(
    session: Mapping[str, Any],
    line_items: Optional[Sequence[Mapping[str, Any]]] = None,
    source_url: Optional[str] = None,
    pricing: Optional[PricingPolicy] = None,
) -> ConversionEvent:
    """Build a ConversionEvent from a payment-processor checkout session.

    The session id becomes the order id so the return page and the webhook
    produce the same dedupe key for the same purchase.

    Args:
        session: Session object (id, payment_status, amount_total, currency,
            customer_details, metadata; optionally created, utm_params)
        line_items: Processor line items; defaults to one line for the total
        source_url: Page where the purchase completed
        pricing: Policy applied to the line items; catalog pricing by default

    Raises:
        ValueError: If the session has no id
    """
    session_id = session.get("id") or session.get("stripe_session_id")
    if not session_id:
        raise ValueError("Checkout session has no id")

    amount_total = int(session.get("amount_total") or 0)
    details = customer_details_mapping(session)

    tracking_source = dict(session.get("metadata") or {})
    tracking_source.update({k: v for k, v in (session.get("utm_params") or {}).items() if v})

    created = session.get("created")
    occurred_at = (
        datetime.fromtimestamp(int(created), tz=timezone.utc) if created else _utcnow()
    )

    raw_items = line_items if line_items is not None else session.get("line_items")
    if isinstance(raw_items, Mapping):
        # Expanded list object: {"object": "list", "data": [...]}
        raw_items = raw_items.get("data")
    if raw_items:
        cart_items = _cart_items_from_session(raw_items)
    else:
        cart_items = [CartItem(product_id=DEFAULT_PRODUCT_ID, unit_price_minor_units=amount_total)]
    items = build_line_items(cart_items, pricing)

    event = ConversionEvent(
        order_id=resolve_event_id(str(session_id)),
        occurred_at=occurred_at,
        customer=CustomerDetails(
            name=details.get("name") or DEFAULT_CUSTOMER_NAME,
            email=details.get("email") or "",
            phone=details.get("phone"),
        ),
        tracking_parameters=TrackingParameters.from_mapping(tracking_source),
        amount_total_minor_units=amount_total,
        currency=(session.get("currency") or "gbp").lower(),
        line_items=items,
        status="paid" if session.get("payment_status") == "paid" else "waiting_payment",
        source_url=source_url,
    )
    _warn_on_inconsistent_total(event)
    return event


def conversion_event_from_cart(
    cart_items: Sequence[CartItem],
    tracking_parameters: Optional[TrackingParameters] = None,
    customer: Optional[CustomerDetails] = None,
    order_id: Optional[str] = None,
    pricing: Optional[PricingPolicy] = None,
    currency: str = "gbp",
    source_url: Optional[str] = None,
) -> ConversionEvent:
    """Build a ConversionEvent from cart contents.

    Without an order_id a ``client_``-prefixed id is generated, which only
    deduplicates within this path.
    """
    items = build_line_items(cart_items, pricing)
    return ConversionEvent(
        order_id=resolve_event_id(order_id, prefix="client"),
        customer=customer or CustomerDetails(),
        tracking_parameters=tracking_parameters or TrackingParameters(),
        amount_total_minor_units=sum(item.total_minor_units for item in items),
        currency=currency,
        line_items=items,
        platform="stripe_client",
        source_url=source_url,
    )
