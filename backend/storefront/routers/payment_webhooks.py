"""Payment processor (Stripe) webhooks.

WHAT:
    Receives checkout events from the payment processor and, for completed
    paid sessions, records the order and dispatches the conversion.

WHY:
    The webhook is the server-side observation of a purchase. It fires even
    when the visitor never returns to the storefront.

WEBHOOKS:
    - checkout.session.completed: paid session (TRIGGERS CONVERSION)
    - checkout.session.async_payment_succeeded: delayed payment confirmed
    - payment_intent.*: logged only

SIGNATURE:
    Stripe-Signature header "t=<ts>,v1=<hex>", HMAC-SHA256 over "<ts>.<body>".
    Unsigned bodies are accepted only when PAYMENT_WEBHOOK_ALLOW_UNSIGNED is
    set outside production (see Settings.is_unsigned_webhook_allowed).

REFERENCES:
    - https://docs.stripe.com/webhooks#verify-manually
"""

import hashlib
import hmac
import json
import logging
import time
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status

from storefront import state
from storefront.deps import Settings, get_settings
from storefront.services.checkout_flow import CheckoutFlow
from storefront.services.commerce_backend import CommerceBackendClient
from storefront.services.conversion_events import pricing_policy_from_settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Payment Webhooks"])

SIGNATURE_TOLERANCE_SECONDS = 300

CONVERSION_EVENT_TYPES = (
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
)


# =============================================================================
# SIGNATURE VERIFICATION
# =============================================================================


def _parse_signature_header(header: str) -> Dict[str, List[str]]:
    parts: Dict[str, List[str]] = {}
    for item in header.split(","):
        key, _, value = item.strip().partition("=")
        if key and value:
            parts.setdefault(key, []).append(value)
    return parts


def compute_signature(payload: bytes, timestamp: str, secret: str) -> str:
    signed_payload = timestamp.encode("utf-8") + b"." + payload
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


def verify_payment_signature(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """Verify a Stripe-Signature header against the raw body.

    Returns:
        True if one v1 signature matches and the timestamp is within tolerance
    """
    if not signature_header:
        logger.warning("[PAYMENT_WEBHOOK] Missing signature header")
        return False

    parts = _parse_signature_header(signature_header)
    timestamps = parts.get("t")
    signatures = parts.get("v1", [])
    if not timestamps or not signatures:
        logger.warning("[PAYMENT_WEBHOOK] Malformed signature header")
        return False

    timestamp = timestamps[0]
    try:
        signed_at = int(timestamp)
    except ValueError:
        logger.warning("[PAYMENT_WEBHOOK] Non-numeric signature timestamp")
        return False

    current = time.time() if now is None else now
    if abs(current - signed_at) > tolerance:
        logger.warning("[PAYMENT_WEBHOOK] Signature timestamp outside tolerance")
        return False

    expected = compute_signature(payload, timestamp, secret)
    # Constant-time comparison to prevent timing attacks
    is_valid = any(hmac.compare_digest(expected, candidate) for candidate in signatures)
    if not is_valid:
        logger.warning("[PAYMENT_WEBHOOK] Invalid signature")
    return is_valid


# =============================================================================
# DEPENDENCIES
# =============================================================================


def get_checkout_flow(settings: Settings = Depends(get_settings)) -> CheckoutFlow:
    commerce = CommerceBackendClient(
        settings.SHOPIFY_STORE_URL,
        settings.SHOPIFY_ACCESS_TOKEN,
        api_version=settings.SHOPIFY_API_VERSION,
        timeout=settings.TRACKING_HTTP_TIMEOUT_SECONDS,
    )
    return CheckoutFlow(
        state.get_server_dispatcher(),
        commerce,
        pricing=pricing_policy_from_settings(settings),
    )


# =============================================================================
# WEBHOOK ENDPOINT
# =============================================================================


@router.post("/payments")
async def handle_payment_webhook(
    request: Request,
    settings: Settings = Depends(get_settings),
    flow: CheckoutFlow = Depends(get_checkout_flow),
):
    """Handle a payment-processor webhook.

    Raises:
        HTTPException 401: Missing or invalid signature
        HTTPException 400: Body is not valid JSON
        HTTPException 500: Webhook secret not configured
    """
    body = await request.body()
    signature = request.headers.get("Stripe-Signature")
    secret = settings.STRIPE_WEBHOOK_SECRET

    if secret and signature:
        if not verify_payment_signature(body, signature, secret):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid webhook signature"
            )
    elif settings.is_unsigned_webhook_allowed():
        logger.warning("[PAYMENT_WEBHOOK] Accepting unsigned webhook (test mode, non-production)")
    elif not secret:
        logger.error("[PAYMENT_WEBHOOK] STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured"
        )
    else:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing webhook signature"
        )

    try:
        event = json.loads(body)
    except ValueError as e:
        logger.error(f"[PAYMENT_WEBHOOK] Failed to parse JSON: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid JSON payload"
        )

    event_type = event.get("type")
    data_object = (event.get("data") or {}).get("object") or {}

    logger.info(
        f"[PAYMENT_WEBHOOK] Received {event_type}",
        extra={"event_id": event.get("id"), "object_id": data_object.get("id")},
    )

    if event_type in CONVERSION_EVENT_TYPES:
        try:
            conversion = await flow.handle_payment_webhook(data_object)
        except ValueError as e:
            logger.error(f"[PAYMENT_WEBHOOK] Unusable session in {event_type}: {e}")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid checkout session"
            )
        return {
            "received": True,
            "dispatched": conversion is not None,
            "order_id": conversion.order_id if conversion else None,
        }

    if event_type == "payment_intent.payment_failed":
        logger.warning(f"[PAYMENT_WEBHOOK] Payment failed for {data_object.get('id')}")
    else:
        logger.info(f"[PAYMENT_WEBHOOK] Unhandled event type: {event_type}")

    return {"received": True, "dispatched": False, "order_id": None}
