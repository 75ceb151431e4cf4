"""Per-visitor tracking session.

WHAT:
    Holds the state one visitor's tracking calls share:
    - the set of named step events already fired (quiz steps, page steps)
    - the UserProfile (PII captured earlier, used to enrich later events)
    - the UTM parameters captured on landing

    EventTracker fires named events (PageView, AddToCart, quiz steps) to the
    pixel scripts and the Conversions API using that state.

WHY:
    Both pieces of state are owned by a session object handed to call sites,
    so tests can build a fresh session per case instead of resetting
    module globals.

NOTES:
    track_once() suppresses re-firing of the same *named step* in one session.
    It is unrelated to order-id dedup of purchases across sinks.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Set

from storefront.services.conversion_events import TRACKING_PARAMETER_KEYS, TrackingParameters
from storefront.services.event_identity import resolve_event_id
from storefront.services.sinks.base import SinkError
from storefront.services.sinks.conversions_api import ConversionsApiSink
from storefront.services.sinks.pixel import PixelSink

logger = logging.getLogger(__name__)

_USER_DATA_KEYS = {
    "email": "email",
    "phone": "phone",
    "first_name": "firstName",
    "last_name": "lastName",
    "external_id": "externalId",
    "client_ip": "clientIp",
    "user_agent": "userAgent",
}


@dataclass(frozen=True)
class UserProfile:
    """PII captured during the visit (lead form, checkout form)."""

    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    external_id: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None

    def merged(self, **fields: Optional[str]) -> "UserProfile":
        unknown = set(fields) - set(_USER_DATA_KEYS)
        if unknown:
            raise ValueError(f"Unknown user profile fields: {sorted(unknown)}")
        updates = {key: value for key, value in fields.items() if value}
        return replace(self, **updates)

    def as_user_data(self) -> Dict[str, str]:
        """Camel-cased, non-empty fields as the Conversions API expects them."""
        return {
            _USER_DATA_KEYS[key]: value
            for key, value in asdict(self).items()
            if value
        }


@dataclass
class TrackingSession:
    """State shared by every tracking call of one visitor."""

    user_profile: UserProfile = field(default_factory=UserProfile)
    tracking_parameters: TrackingParameters = field(default_factory=TrackingParameters)
    tracked_events: Set[str] = field(default_factory=set)

    def track_once(self, event_name: str) -> bool:
        """Record the event name; return False if it was already recorded."""
        if event_name in self.tracked_events:
            logger.debug(f"[TRACKING] Event already tracked: {event_name}")
            return False
        self.tracked_events.add(event_name)
        return True

    def set_user_data(self, **fields: Optional[str]) -> UserProfile:
        self.user_profile = self.user_profile.merged(**fields)
        logger.debug(f"[TRACKING] Updated user profile fields: {sorted(k for k, v in fields.items() if v)}")
        return self.user_profile

    def reset(self) -> None:
        """Forget fired step events (equivalent of a full page reload)."""
        self.tracked_events.clear()


def capture_tracking_parameters(
    query: Optional[Mapping[str, Any]],
    stored: Optional[Mapping[str, Any]] = None,
) -> TrackingParameters:
    """Pick the UTM parameters for this visit.

    UTMs present on the current URL win outright; otherwise the previously
    stored ones are kept.
    """
    from_url = TrackingParameters.from_mapping(
        {key: (query or {}).get(key) for key in TRACKING_PARAMETER_KEYS}
    )
    if not from_url.is_empty():
        logger.info(f"[TRACKING] UTMs captured from URL: {from_url.as_mapping()}")
        return from_url
    return TrackingParameters.from_mapping(stored)


class EventTracker:
    """Fires named events to the pixel scripts and the Conversions API.

    Usage:
        tracker = EventTracker(session, pixel_sink, capi_sink)
        tracker.track("AddToCart", {"content_ids": ["p1"]})
        tracker.track_quiz_step("gender", question_number=1)
    """

    def __init__(
        self,
        session: TrackingSession,
        pixel: Optional[PixelSink] = None,
        conversions_api: Optional[ConversionsApiSink] = None,
    ):
        self.session = session
        self.pixel = pixel
        self.conversions_api = conversions_api
        self._pending: Set[asyncio.Task] = set()

    def track(
        self,
        event_name: str,
        parameters: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
        allow_duplicates: bool = True,
    ) -> Optional[str]:
        """Fire an event; the server-side send is scheduled, not awaited.

        Returns:
            The event id used, or None if the event was suppressed
        """
        if not allow_duplicates and not self.session.track_once(event_name):
            return None

        event_id = resolve_event_id(event_id)
        parameters = parameters or {}

        if self.pixel is not None:
            self.pixel.fire(event_name, parameters, event_id)

        if self.conversions_api is not None:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                logger.warning(f"[TRACKING] No running event loop, server event skipped for {event_name}")
            else:
                task = asyncio.ensure_future(self._send_server_event(event_name, event_id, parameters))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)

        return event_id

    async def _send_server_event(self, event_name: str, event_id: str, parameters: Dict[str, Any]) -> None:
        user_data = self.session.user_profile.as_user_data()
        try:
            await self.conversions_api.send(event_name, event_id, parameters, user_data)
        except SinkError as e:
            logger.warning(f"[TRACKING] Server event {event_name} ({event_id}) not sent: {e}")

    def track_quiz_step(
        self,
        step: str,
        question_number: Optional[int] = None,
        is_correct: Optional[bool] = None,
    ) -> Optional[str]:
        """Fire a quiz step at most once per session."""
        step_key = f"quiz_{step}_{question_number}" if question_number else f"quiz_{step}"
        parameters: Dict[str, Any] = {}
        if question_number:
            parameters["question_number"] = question_number
        if is_correct is not None:
            parameters["is_correct"] = is_correct
        return self.track(step_key, parameters, allow_duplicates=False)

    def page_view(self) -> Optional[str]:
        return self.track("PageView")

    def view_content(self, parameters: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return self.track("ViewContent", parameters)

    def add_to_cart(self, parameters: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return self.track("AddToCart", parameters)

    def initiate_checkout(self, parameters: Optional[Dict[str, Any]] = None) -> Optional[str]:
        return self.track("InitiateCheckout", parameters)

    async def drain(self) -> None:
        """Wait for scheduled server-side sends."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
