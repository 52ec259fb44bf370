"""
Run summary publication — Redis Streams, best-effort.

Each completed run is appended to ``vaultkube:events:sync`` (configurable)
as an envelope with the JSON summary in ``payload``. Publication failures
are logged and never affect the run.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from vaultkube.config import RedisConfig

logger = logging.getLogger(__name__)

# Redis connection singleton
_redis_client = None


def _get_redis(url: str):
    """Get or create Redis connection. Returns None on failure."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client
    try:
        import redis

        _redis_client = redis.Redis.from_url(url, decode_responses=True)
        _redis_client.ping()
        return _redis_client
    except Exception as e:
        logger.warning("Summary publisher: Redis connection failed: %s", e)
        _redis_client = None
        return None


def set_redis_client(client) -> None:
    """Override Redis client for testing."""
    global _redis_client
    _redis_client = client


def reset_client() -> None:
    global _redis_client
    _redis_client = None


def publish_summary(summary: dict[str, Any], config: RedisConfig) -> str | None:
    """Append a run summary to the stream. Returns the message id, or None."""
    if not config.enabled:
        return None
    r = _get_redis(config.url)
    if r is None:
        return None
    envelope = {
        "timestamp": datetime.now(UTC).isoformat(),
        "type": "sync.completed",
        "source": "vaultkube",
        "status": str(summary.get("status", "")),
        "payload": json.dumps(summary, default=str),
    }
    try:
        msg_id = r.xadd(config.stream, envelope, maxlen=config.maxlen, approximate=True)
    except Exception as e:
        logger.warning("Failed to publish run summary to %s: %s", config.stream, e)
        return None
    logger.debug("Published run summary %s to %s", msg_id, config.stream)
    return msg_id
