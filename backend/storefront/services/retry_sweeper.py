"""Outbox retry sweeper.

WHAT:
    Re-attempts every parked delivery once, evicting records that are too
    old or have used up their attempts.

WHY:
    The attribution webhook and the Conversions API fail transiently often
    enough that a single attempt loses sales attribution.

DESIGN:
    - Cooperative: runs once per bootstrap / page load, never on a timer
    - Eviction (no delivery) when now - created_at > max_age or
      attempt_count >= max_attempts
    - Success deletes; transient failure increments attempt_count
    - Non-retryable failure, unknown sink or unreadable record deletes
    - State lives in the store, so an interrupted sweep resumes next run
    - Never raises: a store error skips that record and is reported
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Mapping, Optional

from storefront.services.outbox import OutboxRecord, OutboxStore
from storefront.services.sinks.base import ConversionSink, SinkError, TransientSinkError
from storefront.telemetry import capture_exception, capture_message

logger = logging.getLogger(__name__)

DEFAULT_MAX_AGE = timedelta(hours=24)
DEFAULT_MAX_ATTEMPTS = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SweepReport:
    """
    Outcome of one sweep.

    Attributes:
        delivered: Records delivered and deleted
        retried: Records that failed again and were rewritten
        evicted: Records deleted for age or attempt count
        dropped: Records deleted after a non-retryable failure or bad data
        errors: Records skipped because the outbox store failed
    """

    delivered: int = 0
    retried: int = 0
    evicted: int = 0
    dropped: int = 0
    errors: int = 0


class RetrySweeper:
    """Redelivers outbox records through their original sink.

    Usage:
        sweeper = RetrySweeper(outbox, {"attribution-webhook": utmfy_sink})
        report = await sweeper.sweep()
    """

    def __init__(
        self,
        outbox: OutboxStore,
        sinks: Mapping[str, ConversionSink],
        max_age: timedelta = DEFAULT_MAX_AGE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.outbox = outbox
        self.sinks: Dict[str, ConversionSink] = dict(sinks)
        self.max_age = max_age
        self.max_attempts = max_attempts
        self.clock = clock

    def is_expired(self, record: OutboxRecord, now: Optional[datetime] = None) -> bool:
        now = now or self.clock()
        created_at = record.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return now - created_at > self.max_age or record.attempt_count >= self.max_attempts

    async def sweep(self) -> SweepReport:
        report = SweepReport()
        try:
            keys = self.outbox.keys()
        except Exception as e:
            logger.error(f"[SWEEPER] Could not list outbox records: {e}")
            capture_exception(e)
            return report

        if keys:
            logger.info(f"[SWEEPER] Sweeping {len(keys)} outbox record(s)")

        for key in keys:
            try:
                await self._sweep_one(key, report)
            except Exception as e:
                logger.error(f"[SWEEPER] Outbox store failed on {key}: {e}")
                capture_exception(e, extra={"outbox_key": key})
                report.errors += 1

        if keys:
            logger.info(
                f"[SWEEPER] Done: delivered={report.delivered} retried={report.retried} "
                f"evicted={report.evicted} dropped={report.dropped} errors={report.errors}"
            )
        return report

    async def _sweep_one(self, key: str, report: SweepReport) -> None:
        try:
            record = self.outbox.get(key)
        except ValueError as e:
            logger.error(f"[SWEEPER] Unreadable outbox record {key}, deleting: {e}")
            self.outbox.delete(key)
            report.dropped += 1
            return

        if record is None:
            # Deleted by an overlapping sweep
            return

        if self.is_expired(record):
            logger.info(
                f"[SWEEPER] Evicting {key}",
                extra={"outbox_key": key, "attempt_count": record.attempt_count},
            )
            self.outbox.delete(key)
            report.evicted += 1
            capture_message(
                f"Conversion delivery abandoned: {key}",
                level="warning",
                extra={"sink": record.sink, "attempt_count": record.attempt_count},
            )
            return

        sink = self.sinks.get(record.sink)
        if sink is None:
            logger.warning(f"[SWEEPER] No sink registered for {record.sink}, deleting {key}")
            self.outbox.delete(key)
            report.dropped += 1
            return

        try:
            await sink.deliver(record.payload, record.dedupe_key)
        except TransientSinkError as e:
            record.attempt_count += 1
            self.outbox.put(record)
            logger.warning(
                f"[SWEEPER] Retry failed for {key} (attempt_count={record.attempt_count}): {e}",
                extra={"outbox_key": key, "attempt_count": record.attempt_count},
            )
            report.retried += 1
            return
        except SinkError as e:
            logger.warning(f"[SWEEPER] Non-retryable failure for {key}, deleting: {e}")
            self.outbox.delete(key)
            report.dropped += 1
            return
        except Exception:
            # Counted as an attempt so a crashing sink still hits the attempt cap
            record.attempt_count += 1
            self.outbox.put(record)
            logger.exception(f"[SWEEPER] {record.sink} raised unexpectedly for {key}")
            report.retried += 1
            return

        self.outbox.delete(key)
        logger.info(f"[SWEEPER] Redelivered {key}", extra={"outbox_key": key})
        report.delivered += 1
