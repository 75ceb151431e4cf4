"""Checkout completion flows.

WHAT:
    The two places a completed purchase is observed:
    1. Return page (client path): the visitor lands back from the payment
       page with the session id.
    2. Payment webhook (server path): the processor reports the session as
       completed.

    Both turn the checkout session into a ConversionEvent keyed by the
    session id and hand it to their dispatcher without waiting for delivery.

WHY:
    Using the session id on both paths lets every sink collapse the two
    reports of one purchase.

NOTES:
    Only the webhook path creates the commerce order; the return page can be
    reloaded or skipped by the visitor and would create duplicates. The
    purchase is dispatched before the order is created, so a failing commerce
    backend never costs a conversion.
"""

import logging
from typing import Any, Mapping, Optional, Sequence

from storefront.services.commerce_backend import CommerceBackendClient
from storefront.services.conversion_events import (
    ConversionEvent,
    PricingPolicy,
    conversion_event_from_checkout_session,
    customer_details_mapping,
)
from storefront.services.dispatcher import ConversionDispatcher
from storefront.telemetry import capture_exception

logger = logging.getLogger(__name__)


class CheckoutFlow:
    """Turns completed checkout sessions into dispatched conversions.

    Usage:
        flow = CheckoutFlow(dispatcher, commerce_client, pricing=CatalogPricing())
        await flow.handle_payment_webhook(session)
    """

    def __init__(
        self,
        dispatcher: ConversionDispatcher,
        commerce: Optional[CommerceBackendClient] = None,
        pricing: Optional[PricingPolicy] = None,
    ):
        self.dispatcher = dispatcher
        self.commerce = commerce
        self.pricing = pricing

    def handle_checkout_return(
        self,
        session: Mapping[str, Any],
        line_items: Optional[Sequence[Mapping[str, Any]]] = None,
        source_url: Optional[str] = None,
    ) -> Optional[ConversionEvent]:
        """Client path: dispatch the purchase seen on the return page.

        Returns:
            The dispatched event, or None when the session is not paid
        """
        if session.get("payment_status") != "paid":
            logger.info(f"[CHECKOUT] Session {session.get('id')} not paid yet - nothing to track")
            return None

        event = conversion_event_from_checkout_session(session, line_items, source_url, self.pricing)
        self.dispatcher.dispatch(event)
        return event

    async def handle_payment_webhook(self, session: Mapping[str, Any]) -> Optional[ConversionEvent]:
        """Server path: dispatch the purchase and record the order.

        Returns:
            The dispatched event, or None when the session is not paid
        """
        if session.get("payment_status") != "paid":
            logger.info(f"[CHECKOUT] Webhook session {session.get('id')} not paid - skipping")
            return None

        event = conversion_event_from_checkout_session(session, pricing=self.pricing)
        self.dispatcher.dispatch(event)

        if self.commerce is not None:
            await self._create_order(session, event)
        return event

    async def _create_order(self, session: Mapping[str, Any], event: ConversionEvent) -> None:
        payment_intent = session.get("payment_intent")
        if isinstance(payment_intent, Mapping):
            payment_intent = payment_intent.get("id")
        try:
            await self.commerce.create_order(
                event,
                address=customer_details_mapping(session).get("address"),
                payment_intent_id=payment_intent,
            )
        except Exception as e:
            logger.exception(f"[CHECKOUT] Commerce order failed for {event.order_id}")
            capture_exception(e, extra={"order_id": event.order_id})
