"""Event identity generation.

WHAT:
    Produces the identifier that every tracking sink uses to collapse
    duplicate reports of the same business event.

WHY:
    The checkout-session id is the only identifier that both the browser
    return page and the payment webhook can derive for the same purchase.
    When it is available it must be passed through untouched; a generated
    id is only acceptable where cross-path dedup does not matter
    (page views, quiz steps, add-to-cart).
"""

import secrets
import string
import time
from typing import Optional

DEFAULT_PREFIX = "evt"

_BASE36 = string.digits + string.ascii_lowercase
_SUFFIX_LENGTH = 9


def _random_suffix(length: int = _SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def new_event_id(prefix: str = DEFAULT_PREFIX) -> str:
    """Generate a fresh event id: ``{prefix}_{epoch_millis}_{random}``."""
    return f"{prefix}_{int(time.time() * 1000)}_{_random_suffix()}"


def resolve_event_id(supplied: Optional[str] = None, prefix: str = DEFAULT_PREFIX) -> str:
    """Return the caller-supplied id when present, otherwise a new one.

    Args:
        supplied: Pre-existing id (e.g. the checkout-session id)
        prefix: Prefix for a generated id

    Returns:
        Identifier to use as the dedupe key
    """
    if supplied is not None:
        supplied = supplied.strip()
        if supplied:
            return supplied
    return new_event_id(prefix)
