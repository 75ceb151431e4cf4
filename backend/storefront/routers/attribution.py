"""Attribution (UTMify) client-conversion proxy.

WHAT:
    Relays a UTMify conversion body built in the browser to the UTMify
    webhook, adding the API token server-side.

WHY:
    The browser cannot call UTMify directly (CORS, and the API key must stay
    on the server).
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, HTTPException, status

from storefront.deps import Settings, get_settings
from storefront.services.sinks.attribution_webhook import AttributionWebhookSink
from storefront.services.sinks.base import TransientSinkError, UnconfiguredSinkError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/attribution", tags=["Attribution"])

CLIENT_USER_AGENT = "PerfumUK-Stripe-Client/1.0"


def get_attribution_sink(settings: Settings = Depends(get_settings)) -> AttributionWebhookSink:
    return AttributionWebhookSink(
        settings.UTMFY_WEBHOOK_URL,
        settings.UTMFY_API_KEY,
        timeout=settings.TRACKING_HTTP_TIMEOUT_SECONDS,
        user_agent=CLIENT_USER_AGENT,
    )


@router.post("/client-conversion")
async def relay_client_conversion(
    payload: Dict[str, Any] = Body(...),
    sink: AttributionWebhookSink = Depends(get_attribution_sink),
):
    """Forward a browser-built conversion to UTMify.

    Raises:
        HTTPException 400: Body has no orderId
        HTTPException 500: UTMify not configured
        HTTPException <upstream>: UTMify rejected the conversion
        HTTPException 502: UTMify unreachable
    """
    order_id = payload.get("orderId")
    if not order_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="orderId is required")

    logger.info(
        f"[UTMFY] Relaying client conversion {order_id}",
        extra={
            "order_id": order_id,
            "platform": payload.get("platform"),
            "total": (payload.get("commission") or {}).get("totalPriceInCents"),
        },
    )

    try:
        response = await sink.send_payload(payload)
    except UnconfiguredSinkError as e:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"UTMify not configured: {e}",
        )
    except TransientSinkError as e:
        raise HTTPException(
            status_code=e.status_code or status.HTTP_502_BAD_GATEWAY,
            detail=f"UTMify API error: {e}",
        )

    return {"success": True, "orderId": order_id, "response": response.text}
