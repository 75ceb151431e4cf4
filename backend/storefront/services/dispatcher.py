"""Conversion dispatcher.

WHAT:
    Delivers one ConversionEvent to every registered sink concurrently and
    parks transient failures in the outbox.

WHY:
    A purchase must reach each destination once, under the same dedupe key,
    without any destination being able to block or break the others or the
    checkout flow.

DESIGN:
    - dispatch() schedules delivery and returns immediately; callers never await
    - deliver_all() never raises; one sink failing never short-circuits others
    - TransientSinkError -> OutboxRecord(attempt_count=0) for that sink only
    - UnconfiguredSinkError / MalformedSinkError -> logged and dropped
    - Unexpected exceptions -> logged with traceback, reported, dropped
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Set

from storefront.services.conversion_events import ConversionEvent
from storefront.services.outbox import OutboxRecord, OutboxStore
from storefront.services.sinks.base import ConversionSink, SinkError, TransientSinkError
from storefront.telemetry import capture_exception

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DispatchReport:
    """
    Outcome of delivering one event.

    Attributes:
        order_id: Dedupe key used for every sink
        delivered: Sinks that accepted the event
        queued: Sinks whose failure was written to the outbox
        dropped: Sinks whose failure will not be retried
    """

    order_id: str
    delivered: List[str] = field(default_factory=list)
    queued: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)


class ConversionDispatcher:
    """Fans a conversion out to every sink.

    Usage:
        dispatcher = ConversionDispatcher([pixel, capi, utmfy], outbox)
        dispatcher.dispatch(event)  # fire-and-forget
    """

    def __init__(
        self,
        sinks: Sequence[ConversionSink],
        outbox: OutboxStore,
        clock: Callable[[], datetime] = _utcnow,
    ):
        names = [sink.name for sink in sinks]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate sink names: {names}")
        self.sinks = list(sinks)
        self.outbox = outbox
        self.clock = clock
        self._pending: Set[asyncio.Task] = set()

    @property
    def sink_names(self) -> List[str]:
        return [sink.name for sink in self.sinks]

    def dispatch(self, event: ConversionEvent) -> asyncio.Task:
        """Schedule delivery of the event and return without waiting.

        Must be called from a running event loop. The returned task may be
        ignored; the dispatcher keeps it alive until it finishes.
        """
        task = asyncio.ensure_future(self.deliver_all(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every scheduled dispatch (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def deliver_all(self, event: ConversionEvent) -> DispatchReport:
        """Deliver to all sinks concurrently and record the outcome."""
        dedupe_key = event.order_id
        report = DispatchReport(order_id=dedupe_key)

        results = await asyncio.gather(
            *(sink.deliver(event, dedupe_key) for sink in self.sinks),
            return_exceptions=True,
        )

        for sink, result in zip(self.sinks, results):
            if result is None:
                report.delivered.append(sink.name)
            elif isinstance(result, TransientSinkError):
                self._park(sink.name, event, dedupe_key, result)
                report.queued.append(sink.name)
            elif isinstance(result, SinkError):
                logger.warning(
                    f"[DISPATCH] {sink.name} dropped {event.event_name}: {result}",
                    extra={"sink": sink.name, "order_id": dedupe_key, "error_type": type(result).__name__},
                )
                report.dropped.append(sink.name)
            elif isinstance(result, Exception):
                logger.error(
                    f"[DISPATCH] {sink.name} raised unexpectedly: {result!r}",
                    exc_info=result,
                    extra={"sink": sink.name, "order_id": dedupe_key},
                )
                capture_exception(result, extra={"sink": sink.name, "order_id": dedupe_key})
                report.dropped.append(sink.name)
            else:
                # CancelledError and other BaseExceptions surface here
                logger.warning(f"[DISPATCH] {sink.name} did not complete: {result!r}")
                report.dropped.append(sink.name)

        logger.info(
            f"[DISPATCH] {event.event_name} {dedupe_key}: "
            f"delivered={report.delivered} queued={report.queued} dropped={report.dropped}",
            extra={"order_id": dedupe_key, "event_name": event.event_name},
        )
        return report

    def _park(self, sink_name: str, event: ConversionEvent, dedupe_key: str, error: SinkError) -> None:
        record = OutboxRecord(
            sink=sink_name,
            dedupe_key=dedupe_key,
            payload=event,
            created_at=self.clock(),
            attempt_count=0,
        )
        try:
            self.outbox.put(record)
        except Exception as e:
            logger.error(f"[DISPATCH] Could not write outbox record {record.key}: {e}")
            capture_exception(e, extra={"outbox_key": record.key})
            return
        logger.warning(
            f"[DISPATCH] {sink_name} failed transiently, queued {record.key}: {error}",
            extra={"sink": sink_name, "order_id": dedupe_key, "outbox_key": record.key},
        )
