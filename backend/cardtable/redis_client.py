"""Redis client wrapper for the table's side-channel data.

Redis only mirrors the latest public snapshot and lifecycle metrics for
the admin view.  The engine never reads anything back from it.
"""

from __future__ import annotations

import json
import os
import time
from typing import Any, Optional

import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

SNAPSHOT_KEY = "table:snapshot"
ACTIVITY_KEY = "table:last_activity"

_pool: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    global _pool
    if _pool is None:
        _pool = redis.from_url(REDIS_URL, decode_responses=True)
    return _pool


async def store_snapshot(data: dict[str, Any]) -> None:
    r = await get_redis()
    await r.set(SNAPSHOT_KEY, json.dumps(data))


async def touch_activity() -> None:
    """Update the last-activity timestamp (Unix epoch seconds)."""
    r = await get_redis()
    await r.set(ACTIVITY_KEY, str(time.time()))


async def get_last_activity() -> float | None:
    r = await get_redis()
    raw = await r.get(ACTIVITY_KEY)
    if raw is None:
        return None
    return float(raw)


async def close() -> None:
    global _pool
    if _pool is not None:
        await _pool.aclose()
        _pool = None
