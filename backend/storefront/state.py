"""
Application State
=================

Global application state that persists across requests.

WHAT it stores:
- redis_pool / redis_client: Shared Redis connection (conversion outbox)
- outbox_store: The outbox used by the server-side dispatcher
- server_dispatcher: Dispatcher for the payment-webhook path

WHERE it's used:
- storefront/main.py: init_state() on startup, sweep once, drain on shutdown
- storefront/routers/payment_webhooks.py: dispatches through server_dispatcher

Design:
- Module-level singletons, initialized once per process
- Falls back to an in-memory outbox when Redis is unreachable
"""

import logging
from typing import Optional

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError

from storefront.deps import get_settings
from storefront.services.dispatcher import ConversionDispatcher
from storefront.services.outbox import InMemoryOutboxStore, OutboxStore, RedisOutboxStore
from storefront.services.pipeline import build_server_dispatcher

logger = logging.getLogger(__name__)

redis_pool: Optional[ConnectionPool] = None
redis_client: Optional[Redis] = None
outbox_store: Optional[OutboxStore] = None
server_dispatcher: Optional[ConversionDispatcher] = None


def init_state() -> None:
    """Connect Redis and build the server-side pipeline.

    Redis failures are logged; the app starts with an in-memory outbox.
    """
    global redis_pool, redis_client, outbox_store, server_dispatcher

    settings = get_settings()

    try:
        redis_pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=20,
            socket_connect_timeout=2,
            decode_responses=False,
        )
        redis_client = Redis(connection_pool=redis_pool)
        redis_client.ping()
        outbox_store = RedisOutboxStore(redis_client, prefix=settings.OUTBOX_KEY_PREFIX)
        logger.info("[STATE] Redis outbox initialized")
    except (RedisError, ValueError) as e:
        logger.error(f"[STATE] Failed to initialize Redis: {e}")
        logger.warning("[STATE] Falling back to in-memory outbox - pending retries are lost on restart")
        redis_client = None
        outbox_store = InMemoryOutboxStore()

    server_dispatcher = build_server_dispatcher(settings, outbox_store)


def get_server_dispatcher() -> ConversionDispatcher:
    """FastAPI dependency for the server-side dispatcher."""
    if server_dispatcher is None:
        init_state()
    return server_dispatcher
