"""First-party Conversions API endpoint.

WHAT:
    Receives events from the storefront (browser tracker and the
    Conversions-API sink) and forwards them to Meta CAPI with hashed PII.

WHY:
    Keeps the Meta access token server-side and lets events bypass ad
    blockers. The eventId is passed through so Meta deduplicates against
    the browser pixel.

REFERENCES:
    - storefront/services/meta_capi_service.py
    - storefront/services/sinks/conversions_api.py (client of this endpoint)
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from storefront.deps import Settings, get_settings
from storefront.services.meta_capi_service import (
    MetaCAPIError,
    MetaCAPIService,
    meta_capi_service_from_settings,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tracking/v1", tags=["Tracking"])


def add_cors_headers(response: Response, origin: str = "*") -> Response:
    """Add CORS headers to response for the tracking endpoint."""
    response.headers["Access-Control-Allow-Origin"] = origin
    response.headers["Access-Control-Allow-Methods"] = "POST, OPTIONS"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    response.headers["Access-Control-Max-Age"] = "86400"  # Cache preflight for 24h
    return response


# =============================================================================
# REQUEST/RESPONSE SCHEMAS
# =============================================================================


class TrackingEventRequest(BaseModel):
    """Request body for first-party tracking events.

    Example:
        {
            "eventName": "Purchase",
            "eventId": "cs_test_123",
            "parameters": {"value": 49.99, "currency": "GBP", "content_ids": ["p1"]},
            "userData": {"email": "buyer@example.com", "firstName": "Ana"}
        }
    """
    model_config = ConfigDict(populate_by_name=True)

    event_name: str = Field(..., alias="eventName", min_length=1)
    event_id: str = Field(..., alias="eventId", min_length=1)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    user_data: Dict[str, Any] = Field(default_factory=dict, alias="userData")


def get_meta_capi_service(settings: Settings = Depends(get_settings)) -> Optional[MetaCAPIService]:
    return meta_capi_service_from_settings(settings)


# =============================================================================
# ENDPOINTS
# =============================================================================


@router.options("/events")
async def tracking_events_preflight(request: Request):
    """Handle CORS preflight for tracking events."""
    response = Response(status_code=200)
    return add_cors_headers(response, request.headers.get("origin", "*"))


@router.post("/events")
async def receive_tracking_event(
    request: Request,
    payload: TrackingEventRequest,
    service: Optional[MetaCAPIService] = Depends(get_meta_capi_service),
):
    """Forward one event to Meta CAPI.

    Returns:
        200 {"status": "ok"} when Meta accepted the event,
        202 {"status": "skipped"} when Meta credentials are not configured

    Raises:
        HTTPException 502: Meta rejected the event or was unreachable
    """
    origin = request.headers.get("origin", "*")

    if service is None:
        response = JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content={"status": "skipped", "event_id": payload.event_id},
        )
        return add_cors_headers(response, origin)

    user_data = dict(payload.user_data)
    if not user_data.get("clientIp") and request.client:
        user_data["clientIp"] = request.client.host
    if not user_data.get("userAgent") and request.headers.get("user-agent"):
        user_data["userAgent"] = request.headers["user-agent"]

    try:
        result = await service.send_event(
            event_name=payload.event_name,
            event_id=payload.event_id,
            parameters=payload.parameters,
            user_data=user_data,
        )
    except MetaCAPIError as e:
        logger.error(
            f"[TRACKING] Meta CAPI rejected {payload.event_name}: {e}",
            extra={"event_id": payload.event_id},
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Failed to forward event to Meta",
        )

    logger.info(
        f"[TRACKING] Forwarded {payload.event_name}",
        extra={"event_id": payload.event_id, "event_name": payload.event_name},
    )
    response = JSONResponse(
        content={
            "status": "ok",
            "event_id": payload.event_id,
            "events_received": result.get("events_received", 0),
        }
    )
    return add_cors_headers(response, origin)


@router.get("/health")
async def tracking_health():
    """Health check endpoint for the tracking service."""
    return {"status": "healthy", "service": "tracking-events"}
