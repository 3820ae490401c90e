"""Admin metrics — Redis-backed tracking of round and game results.

Results go into Redis sorted sets scored by timestamp so the admin
summary can report recent activity.  Entries older than
METRICS_RETENTION_DAYS are pruned by the keep-alive loop.
"""

from __future__ import annotations

import json
import time
from typing import Any

from cardtable import redis_client

METRICS_ROUNDS_KEY = "metrics:round_won"
METRICS_GAMES_KEY = "metrics:game_won"
METRICS_RESETS_KEY = "metrics:table_reset"
METRICS_RETENTION_DAYS = 30


# ------------------------------------------------------------------
# Recording
# ------------------------------------------------------------------


async def record_round_won(winner_name: str, round_number: int, player_count: int) -> None:
    r = await redis_client.get_redis()
    now = time.time()
    entry = json.dumps(
        {
            "winner": winner_name,
            "round": round_number,
            "player_count": player_count,
            "at": now,
        }
    )
    await r.zadd(METRICS_ROUNDS_KEY, {entry: now})


async def record_game_won(winner_name: str, rounds_played: int) -> None:
    r = await redis_client.get_redis()
    now = time.time()
    entry = json.dumps({"winner": winner_name, "rounds": rounds_played, "at": now})
    await r.zadd(METRICS_GAMES_KEY, {entry: now})


async def record_reset(reason: str) -> None:
    r = await redis_client.get_redis()
    now = time.time()
    entry = json.dumps({"reason": reason, "at": now})
    await r.zadd(METRICS_RESETS_KEY, {entry: now})


async def prune_old_metrics() -> None:
    """Remove metric entries older than METRICS_RETENTION_DAYS."""
    r = await redis_client.get_redis()
    cutoff = time.time() - (METRICS_RETENTION_DAYS * 86400)
    for key in (METRICS_ROUNDS_KEY, METRICS_GAMES_KEY, METRICS_RESETS_KEY):
        await r.zremrangebyscore(key, "-inf", cutoff)


# ------------------------------------------------------------------
# Queries
# ------------------------------------------------------------------


async def get_summary() -> dict[str, Any]:
    """Rounds, games and resets in the last 24 h, plus recent winners."""
    r = await redis_client.get_redis()
    since_24h = time.time() - 86400

    rounds_24h = await r.zcount(METRICS_ROUNDS_KEY, since_24h, "+inf")
    games_24h = await r.zcount(METRICS_GAMES_KEY, since_24h, "+inf")
    resets_24h = await r.zcount(METRICS_RESETS_KEY, since_24h, "+inf")

    recent_raw = await r.zrevrangebyscore(METRICS_GAMES_KEY, "+inf", since_24h, start=0, num=5)
    recent_winners = [json.loads(e)["winner"] for e in recent_raw]

    return {
        "rounds_24h": rounds_24h,
        "games_24h": games_24h,
        "resets_24h": resets_24h,
        "recent_winners": recent_winners,
        "last_activity": await redis_client.get_last_activity(),
    }
