"""Pixel sink.

WHAT:
    Fires events into the third-party pixel scripts (Meta ``fbq``, TikTok
    ``ttq``, UTMify pixel) through injected script handles.

WHY:
    Pixel absence is common (ad blockers, slow tag loading). A missing or
    misbehaving script is logged and never blocks the other sinks, so this
    sink never raises.
"""

import logging
from typing import Any, Dict, Mapping, Optional, Protocol

from storefront.services.conversion_events import ConversionEvent

logger = logging.getLogger(__name__)


class PixelScript(Protocol):
    """Handle to an in-page pixel script."""

    def track(self, event_name: str, parameters: Dict[str, Any], options: Dict[str, Any]) -> None:
        ...


def purchase_parameters(event: ConversionEvent) -> Dict[str, Any]:
    """Standard Purchase parameters shared by the pixel and the CAPI sink."""
    return {
        "value": event.amount_total_minor_units / 100,
        "currency": event.currency.upper(),
        "content_ids": event.content_ids,
        "content_type": "product",
        "num_items": event.num_items,
        "order_id": event.order_id,
    }


class PixelSink:
    """Delivers events to whichever pixel scripts are loaded.

    Usage:
        sink = PixelSink({"meta": fbq_handle, "tiktok": None})
        await sink.deliver(event, dedupe_key=event.order_id)
    """

    name = "pixel"

    def __init__(self, scripts: Optional[Mapping[str, Optional[PixelScript]]] = None):
        self.scripts: Dict[str, Optional[PixelScript]] = dict(scripts or {})

    def fire(
        self,
        event_name: str,
        parameters: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
    ) -> int:
        """Fire a named event into every loaded script.

        Returns:
            Number of scripts that accepted the event
        """
        parameters = parameters or {}
        options = {"eventID": event_id} if event_id else {}
        fired = 0

        for script_name, script in self.scripts.items():
            if script is None:
                logger.warning(
                    f"[PIXEL] {script_name} script not loaded - skipping {event_name}",
                    extra={"event_name": event_name, "event_id": event_id},
                )
                continue
            try:
                script.track(event_name, parameters, options)
            except Exception as e:
                logger.error(
                    f"[PIXEL] {script_name} failed to track {event_name}: {e}",
                    extra={"event_name": event_name, "event_id": event_id},
                )
                continue
            fired += 1

        logger.info(
            f"[PIXEL] Tracked {event_name} on {fired}/{len(self.scripts)} script(s)",
            extra={"event_name": event_name, "event_id": event_id},
        )
        return fired

    async def deliver(self, event: ConversionEvent, dedupe_key: str) -> None:
        self.fire(event.event_name, purchase_parameters(event), dedupe_key)
