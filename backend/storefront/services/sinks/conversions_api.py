"""Conversions-API sink.

WHAT:
    Posts events to the first-party ``/tracking/v1/events`` endpoint, which
    hashes PII and forwards them to Meta's Conversions API.

WHY:
    Server-side events survive ad blockers and iOS tracking limits. The
    browser pixel and this sink share the same event id so Meta
    deduplicates them.

REFERENCES:
    - storefront/routers/tracking_events.py (receiving endpoint)
    - storefront/services/meta_capi_service.py (upstream forwarder)
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

import httpx

from storefront.services.conversion_events import ConversionEvent
from storefront.services.sinks.base import TransientSinkError, UnconfiguredSinkError
from storefront.services.sinks.pixel import purchase_parameters

if TYPE_CHECKING:
    from storefront.services.tracking_session import TrackingSession

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


def _split_name(name: Optional[str]) -> Dict[str, str]:
    parts = (name or "").split()
    if not parts:
        return {}
    result = {"firstName": parts[0]}
    if len(parts) > 1:
        result["lastName"] = " ".join(parts[1:])
    return result


class ConversionsApiSink:
    """Sends events to the first-party Conversions-API endpoint.

    Usage:
        sink = ConversionsApiSink("https://shop.example/tracking/v1/events", session=session)
        await sink.deliver(event, dedupe_key=event.order_id)
    """

    name = "conversions-api"

    def __init__(
        self,
        endpoint_url: Optional[str],
        session: Optional["TrackingSession"] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the sink.

        Args:
            endpoint_url: Full URL of the events endpoint (None = unconfigured)
            session: Tracking session whose UserProfile enriches user data
            timeout: Request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.endpoint_url = endpoint_url
        self.session = session
        self.timeout = timeout
        self._transport = transport

    def build_user_data(self, event: Optional[ConversionEvent] = None) -> Dict[str, Any]:
        """Merge the session profile with the event's customer details.

        Event details win over the profile for the same field.
        """
        user_data: Dict[str, Any] = {}
        if self.session is not None:
            user_data.update(self.session.user_profile.as_user_data())

        if event is not None:
            customer = event.customer
            if customer.email:
                user_data["email"] = customer.email
            if customer.phone:
                user_data["phone"] = customer.phone
            user_data.update(_split_name(customer.name))
            if event.source_url:
                user_data["sourceUrl"] = event.source_url

        return user_data

    async def send(
        self,
        event_name: str,
        event_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        user_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """POST one event to the endpoint.

        Raises:
            UnconfiguredSinkError: No endpoint configured
            TransientSinkError: Network error or non-2xx response
        """
        if not self.endpoint_url:
            raise UnconfiguredSinkError(self.name, "Conversions API endpoint not configured")

        body = {
            "eventName": event_name,
            "eventId": event_id,
            "parameters": parameters or {},
            "userData": user_data if user_data is not None else self.build_user_data(),
        }

        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(self.endpoint_url, json=body)
        except httpx.RequestError as e:
            logger.error(
                f"[CAPI] Network error sending {event_name}: {e}",
                extra={"event_name": event_name, "event_id": event_id},
            )
            raise TransientSinkError(self.name, f"Network error: {e}")

        if not response.is_success:
            logger.error(
                f"[CAPI] Endpoint returned {response.status_code} for {event_name}",
                extra={"event_name": event_name, "event_id": event_id, "status": response.status_code},
            )
            raise TransientSinkError(
                self.name,
                f"HTTP {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        logger.info(
            f"[CAPI] Event sent: {event_name}",
            extra={"event_name": event_name, "event_id": event_id, "status": response.status_code},
        )

    async def deliver(self, event: ConversionEvent, dedupe_key: str) -> None:
        await self.send(
            event.event_name,
            dedupe_key,
            purchase_parameters(event),
            self.build_user_data(event),
        )
