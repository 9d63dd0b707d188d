"""Redis client construction shared by the progress broker and health checks."""

from __future__ import annotations

import logging
import ssl
from typing import Any

from redis import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_OPTIONS: dict[str, Any] = {
    "socket_connect_timeout": 5,
    "health_check_interval": 30,
}


def create_redis_client(url: str, **kwargs: Any) -> Redis:
    """Create a Redis client, configuring TLS for rediss:// and Upstash URLs.

    Keyword arguments override ``DEFAULT_CLIENT_OPTIONS``. Subscribers block
    on their own read timeout, so no socket read timeout is set by default.
    """
    # Upstash only accepts TLS even when handed a redis:// URL
    if ".upstash.io" in url and url.startswith("redis://"):
        url = url.replace("redis://", "rediss://", 1)

    options = {**DEFAULT_CLIENT_OPTIONS, **kwargs}
    client = Redis.from_url(url, **options)

    if url.startswith("rediss://"):
        if hasattr(client, "connection_pool") and hasattr(
            client.connection_pool, "connection_kwargs"
        ):
            client.connection_pool.connection_kwargs["ssl_cert_reqs"] = ssl.CERT_NONE

    return client


def ping(client: Redis) -> bool:
    """Return whether Redis answers, logging the failure instead of raising."""
    try:
        return bool(client.ping())
    except RedisError as e:
        logger.warning(f"Redis ping failed: {e}")
        return False
