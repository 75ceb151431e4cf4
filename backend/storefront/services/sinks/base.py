"""Sink contract and failure taxonomy.

WHAT:
    A sink is one independent destination for a conversion event.
    ``deliver()`` returns None on success and raises a SinkError subclass
    on failure.

WHY:
    The Dispatcher and the Retry Sweeper only need to know whether a
    failure is worth retrying:
    - TransientSinkError: network error / non-2xx, retry eligible
    - UnconfiguredSinkError: missing URL or credentials, never retried
    - MalformedSinkError: payload could not be built locally, never retried
"""

from typing import Optional, Protocol, runtime_checkable

from storefront.services.conversion_events import ConversionEvent


class SinkError(Exception):
    """Base exception for sink delivery failures."""

    retryable = False

    def __init__(self, sink: str, message: str, status_code: Optional[int] = None):
        super().__init__(f"[{sink}] {message}")
        self.sink = sink
        self.status_code = status_code


class TransientSinkError(SinkError):
    """Network error or non-2xx response."""

    retryable = True


class UnconfiguredSinkError(SinkError):
    """Destination URL or credentials are missing."""


class MalformedSinkError(SinkError):
    """The payload could not be built from the local event."""


@runtime_checkable
class ConversionSink(Protocol):
    """Anything that can deliver a ConversionEvent under a dedupe key."""

    name: str

    async def deliver(self, event: ConversionEvent, dedupe_key: str) -> None:
        ...
