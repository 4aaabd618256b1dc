from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
_redis = None

async def get_redis():
    global _redis
    if _redis is None:
        if os.getenv("TESTING") == "1":
            from fakeredis import aioredis
            _redis = aioredis.FakeRedis()
        else:
            _redis = redis.from_url(REDIS_URL)
    return _redis


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _serialize_event(event: dict[str, Any]) -> str:
    return json.dumps(event, default=_json_default)


def batch_channel(batch_id: str) -> str:
    return f"batch:{batch_id}"


async def publish_batch_event(batch_id: str, event: dict[str, Any]) -> None:
    """Broadcast a custody or compliance event for ``batch_id``.

    Delivery is best effort: the ledger is the record of truth, so a pub/sub
    outage is logged and never fails the request that produced the event.
    """

    try:
        r = await get_redis()
        await r.publish(batch_channel(batch_id), _serialize_event(event))
    except (RedisError, OSError) as exc:
        logger.warning("Could not publish %s event for %s: %s", event.get("type"), batch_id, exc)

