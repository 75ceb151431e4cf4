"""Tracking sinks: one delivery adapter per destination."""

from storefront.services.sinks.base import (
    ConversionSink,
    MalformedSinkError,
    SinkError,
    TransientSinkError,
    UnconfiguredSinkError,
)
from storefront.services.sinks.pixel import PixelScript, PixelSink
from storefront.services.sinks.conversions_api import ConversionsApiSink
from storefront.services.sinks.attribution_webhook import (
    AttributionWebhookSink,
    build_utmfy_payload,
)

__all__ = [
    "ConversionSink",
    "SinkError",
    "TransientSinkError",
    "UnconfiguredSinkError",
    "MalformedSinkError",
    "PixelScript",
    "PixelSink",
    "ConversionsApiSink",
    "AttributionWebhookSink",
    "build_utmfy_payload",
]
