"""Meta Conversions API (CAPI) Service.

WHAT:
    Forwards events received on the first-party tracking endpoint to Meta's
    Conversions API, hashing personal data on the way.

WHY:
    - Server-side events are more reliable than browser pixels
    - Deduplication with the browser pixel happens on Meta's side via event_id

HOW:
    POST https://graph.facebook.com/{version}/{pixel_id}/events

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/conversions-api
    - storefront/routers/tracking_events.py
"""

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_GRAPH_API_VERSION = "v18.0"

# custom_data keys forwarded from the first-party parameters
_CUSTOM_DATA_KEYS = (
    "value",
    "currency",
    "content_ids",
    "content_type",
    "content_name",
    "num_items",
    "order_id",
)


class MetaCAPIError(Exception):
    """Base exception for Meta CAPI errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MetaCAPIService:
    """Service for sending server-side events to Meta Conversions API.

    Usage:
        ```python
        service = MetaCAPIService(pixel_id="123456", access_token="token")
        await service.send_event(
            event_name="Purchase",
            event_id="cs_test_123",
            parameters={"value": 49.99, "currency": "GBP"},
            user_data={"email": "customer@example.com"},
        )
        ```
    """

    def __init__(
        self,
        pixel_id: str,
        access_token: str,
        api_version: str = DEFAULT_GRAPH_API_VERSION,
        test_event_code: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize CAPI service with pixel credentials.

        Args:
            pixel_id: Meta Pixel ID
            access_token: Meta access token for the pixel
            api_version: Graph API version
            test_event_code: Routes events to Test Events in Events Manager
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.test_event_code = test_event_code
        self.timeout = timeout
        self.events_url = f"https://graph.facebook.com/{api_version}/{pixel_id}/events"
        self._transport = transport

    async def send_event(
        self,
        event_name: str,
        event_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        user_data: Optional[Dict[str, Any]] = None,
        event_source_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Send one event to Meta.

        IMPORTANT - Deduplication:
            event_id MUST match the browser pixel's eventID. For purchases
            both use the checkout-session id.

        Returns:
            Dict with events_received count and fbtrace_id

        Raises:
            MetaCAPIError: If the API request fails
        """
        event_data = self.build_event(
            event_name=event_name,
            event_id=event_id,
            parameters=parameters,
            user_data=user_data,
            event_source_url=event_source_url,
        )
        return await self._send_events([event_data])

    def build_event(
        self,
        event_name: str,
        event_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        user_data: Optional[Dict[str, Any]] = None,
        event_source_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Build a single event payload.

        WHAT: Constructs the event object with user data hashing
        WHY: Meta requires specific format with SHA256-hashed PII

        Args:
            event_name: Standard or custom event name
            event_id: Unique event identifier
            parameters: First-party parameters (value, currency, content_ids...)
            user_data: First-party user data (email, phone, firstName, lastName,
                externalId, clientIp, userAgent, sourceUrl)
            event_source_url: Page URL (falls back to user_data["sourceUrl"])

        Returns:
            Event dictionary ready for API submission
        """
        raw = user_data or {}
        hashed: Dict[str, Any] = {}

        email = raw.get("email")
        if email:
            hashed["em"] = self._sha256_hash(email.lower().strip())

        phone = raw.get("phone")
        if phone:
            digits = "".join(filter(str.isdigit, phone))
            if digits:
                hashed["ph"] = self._sha256_hash(digits)

        if raw.get("firstName"):
            hashed["fn"] = self._sha256_hash(raw["firstName"].lower().strip())

        if raw.get("lastName"):
            hashed["ln"] = self._sha256_hash(raw["lastName"].lower().strip())

        if raw.get("externalId"):
            hashed["external_id"] = self._sha256_hash(str(raw["externalId"]).lower().strip())

        if raw.get("clientIp"):
            hashed["client_ip_address"] = raw["clientIp"]

        if raw.get("userAgent"):
            hashed["client_user_agent"] = raw["userAgent"]

        custom_data = {
            key: value
            for key, value in (parameters or {}).items()
            if key in _CUSTOM_DATA_KEYS and value is not None
        }

        event = {
            "event_name": event_name,
            "event_time": int(datetime.now(timezone.utc).timestamp()),
            "event_id": event_id,  # CRITICAL for deduplication
            "action_source": "website",
            "user_data": hashed,
        }

        if custom_data:
            event["custom_data"] = custom_data

        source_url = event_source_url or raw.get("sourceUrl")
        if source_url:
            event["event_source_url"] = source_url

        return event

    async def _send_events(self, events: List[Dict[str, Any]]) -> Dict[str, Any]:
        """POST events to Meta's graph API.

        Raises:
            MetaCAPIError: If the request fails
        """
        payload: Dict[str, Any] = {
            "data": events,
            "access_token": self.access_token,
        }

        if self.test_event_code:
            payload["test_event_code"] = self.test_event_code

        logger.info(
            f"[META_CAPI] Sending {len(events)} event(s) to pixel {self.pixel_id}",
            extra={
                "event_names": [e["event_name"] for e in events],
                "event_ids": [e["event_id"] for e in events],
                "test_mode": bool(self.test_event_code),
            }
        )

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(self.events_url, json=payload)
        except httpx.RequestError as e:
            logger.error(f"[META_CAPI] Network error: {e}")
            raise MetaCAPIError(f"Network error sending to Meta CAPI: {e}")

        if response.status_code != 200:
            try:
                error_data = response.json()
            except ValueError:
                error_data = {}
            error_message = error_data.get("error", {}).get("message", response.text)
            logger.error(
                f"[META_CAPI] API error: {response.status_code} - {error_message}",
                extra={"response": error_data}
            )
            raise MetaCAPIError(f"Meta CAPI error: {error_message}", status_code=response.status_code)

        result = response.json()
        logger.info(
            f"[META_CAPI] Success: {result.get('events_received', 0)} event(s) received",
            extra={"fbtrace_id": result.get("fbtrace_id", "")}
        )
        return result

    @staticmethod
    def _sha256_hash(value: str) -> str:
        """Lowercase hex SHA256 of the value (Meta requires hashed PII)."""
        return hashlib.sha256(value.encode("utf-8")).hexdigest()


def meta_capi_service_from_settings(settings) -> Optional[MetaCAPIService]:
    """Build the service from settings, or None when credentials are missing."""
    if not settings.FACEBOOK_PIXEL_ID or not settings.FACEBOOK_ACCESS_TOKEN:
        logger.warning("[META_CAPI] Credentials missing (FACEBOOK_PIXEL_ID or FACEBOOK_ACCESS_TOKEN)")
        return None
    return MetaCAPIService(
        pixel_id=settings.FACEBOOK_PIXEL_ID,
        access_token=settings.FACEBOOK_ACCESS_TOKEN,
        api_version=settings.META_GRAPH_API_VERSION,
        test_event_code=settings.FACEBOOK_TEST_EVENT_CODE,
        timeout=settings.TRACKING_HTTP_TIMEOUT_SECONDS,
    )
