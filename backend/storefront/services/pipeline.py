"""Tracking pipeline assembly.

WHAT:
    Builds the dispatchers and the sweeper from settings.

    - Server pipeline (payment webhook): Conversions API + attribution webhook
    - Client pipeline (checkout return page): pixel + Conversions API +
      attribution webhook, bound to the visitor's TrackingSession

WHY:
    One canonical sink set per path; both paths key every delivery by the
    checkout-session id.
"""

from datetime import timedelta
from typing import Mapping, Optional

from storefront.services.dispatcher import ConversionDispatcher
from storefront.services.outbox import OutboxStore
from storefront.services.retry_sweeper import RetrySweeper
from storefront.services.sinks.attribution_webhook import AttributionWebhookSink
from storefront.services.sinks.conversions_api import ConversionsApiSink
from storefront.services.sinks.pixel import PixelScript, PixelSink
from storefront.services.tracking_session import TrackingSession


def build_server_dispatcher(settings, outbox: OutboxStore) -> ConversionDispatcher:
    timeout = settings.TRACKING_HTTP_TIMEOUT_SECONDS
    return ConversionDispatcher(
        [
            ConversionsApiSink(settings.CONVERSIONS_API_URL, timeout=timeout),
            AttributionWebhookSink(settings.UTMFY_WEBHOOK_URL, settings.UTMFY_API_KEY, timeout=timeout),
        ],
        outbox,
    )


def build_client_dispatcher(
    settings,
    outbox: OutboxStore,
    session: TrackingSession,
    pixel_scripts: Optional[Mapping[str, Optional[PixelScript]]] = None,
) -> ConversionDispatcher:
    timeout = settings.TRACKING_HTTP_TIMEOUT_SECONDS
    return ConversionDispatcher(
        [
            PixelSink(pixel_scripts),
            ConversionsApiSink(settings.CONVERSIONS_API_URL, session=session, timeout=timeout),
            AttributionWebhookSink(settings.UTMFY_WEBHOOK_URL, settings.UTMFY_API_KEY, timeout=timeout),
        ],
        outbox,
    )


def build_sweeper(settings, dispatcher: ConversionDispatcher) -> RetrySweeper:
    """Sweeper that retries through the dispatcher's own sinks."""
    return RetrySweeper(
        dispatcher.outbox,
        {sink.name: sink for sink in dispatcher.sinks},
        max_age=timedelta(hours=settings.OUTBOX_MAX_AGE_HOURS),
        max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
    )
