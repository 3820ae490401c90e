"""Table session — the single sequential entry point into the engine.

Every inbound command (player message, admin action, timer tick) runs
under one asyncio lock, so engine mutations never interleave.  The
session catches engine rejections at this boundary: the caller gets a
CommandResult and an error message, nobody else hears about it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Callable, Optional

from cardtable import config, metrics, redis_client
from cardtable.cards import DEFAULT_PROMPTS, DEFAULT_RESPONSES, load_pool
from cardtable.engine import GameEngine
from cardtable.errors import GameError
from cardtable.models import (
    CommandResult,
    ForceReload,
    GameOver,
    PlayerEvicted,
    TableEvent,
    WinnerAnnounced,
)
from cardtable.textfilter import TextFilter, default_filter
from cardtable.ws_manager import MusicState

if TYPE_CHECKING:
    from cardtable.ws_manager import ConnectionManager

logger = logging.getLogger(__name__)


def build_engine() -> GameEngine:
    """Engine wired with environment settings and the configured card files."""
    return GameEngine(
        settings=config.load_settings(),
        prompts=load_pool(config.BLACK_CARDS_FILE, DEFAULT_PROMPTS),
        responses=load_pool(config.WHITE_CARDS_FILE, DEFAULT_RESPONSES),
    )


class TableSession:
    """Owns the engine and serializes access to it."""

    def __init__(
        self,
        engine: Optional[GameEngine] = None,
        text_filter: Optional[TextFilter] = None,
    ) -> None:
        self._engine = engine
        self.text_filter = text_filter or default_filter
        self.music = MusicState()
        self._lock = asyncio.Lock()
        self._manager: ConnectionManager | None = None

    @property
    def engine(self) -> GameEngine:
        if self._engine is None:
            self._engine = build_engine()
        return self._engine

    def set_manager(self, manager: "ConnectionManager") -> None:
        """Inject the WebSocket connection manager (avoids circular import)."""
        self._manager = manager

    # ------------------------------------------------------------------
    # Command processing
    # ------------------------------------------------------------------

    async def _run(self, caller: Optional[str], command: Callable[[GameEngine], Any]) -> CommandResult:
        """Apply one command atomically, then publish the outcome."""
        async with self._lock:
            engine = self.engine
            try:
                command(engine)
            except GameError as e:
                logger.info("Rejected %s from %s: %s", e.code, caller or "system", e)
                result = CommandResult(ok=False, error=e.code, detail=str(e))
                rejected = True
            else:
                result = CommandResult(ok=True)
                rejected = False
            events = engine.drain_events()
            views = {} if rejected else self._render_views(engine)
            public = engine.snapshot().model_dump(mode="json")
            round_number = engine.round_number
            player_count = len(engine.players)

        if rejected:
            if caller is not None:
                await self._send(caller, {"type": "error", "code": result.error, "detail": result.detail})
            return result

        await self._publish(events, views)
        await self._record(events, public, round_number, player_count)
        return result

    def _render_views(self, engine: GameEngine) -> dict[str, str]:
        if self._manager is None:
            return {}
        return {
            conn_id: json.dumps({"type": "state", "data": engine.snapshot(conn_id).model_dump(mode="json")})
            for conn_id in self._manager.connection_ids()
        }

    async def _publish(self, events: list[TableEvent], views: dict[str, str]) -> None:
        if self._manager is None:
            return
        # Evicted players hear about it before the table does
        for event in events:
            if isinstance(event, PlayerEvicted):
                await self._manager.send_json(event.player_id, {"type": "evicted", "reason": event.reason})
        for event in events:
            if not isinstance(event, PlayerEvicted):
                await self._manager.broadcast_json(event.model_dump())
        for conn_id, message in views.items():
            await self._manager.send_to(conn_id, message)

    async def _record(
        self,
        events: list[TableEvent],
        public: dict[str, Any],
        round_number: int,
        player_count: int,
    ) -> None:
        """Mirror results to redis; failures never reach the game."""
        try:
            await redis_client.store_snapshot(public)
            await redis_client.touch_activity()
            for event in events:
                if isinstance(event, WinnerAnnounced):
                    await metrics.record_round_won(event.name, round_number, player_count)
                elif isinstance(event, GameOver):
                    await metrics.record_game_won(event.name, round_number)
                elif isinstance(event, ForceReload):
                    await metrics.record_reset(event.reason)
        except Exception:
            logger.warning("Failed to record table state in redis", exc_info=True)

    async def _send(self, conn_id: str, payload: dict) -> None:
        if self._manager is not None:
            await self._manager.send_json(conn_id, payload)

    # ------------------------------------------------------------------
    # Player commands
    # ------------------------------------------------------------------

    async def join(self, conn_id: str, name: str) -> CommandResult:
        return await self._run(conn_id, lambda e: e.join(conn_id, name))

    async def ready(self, conn_id: str) -> CommandResult:
        return await self._run(conn_id, lambda e: e.set_ready(conn_id))

    async def submit(self, conn_id: str, card: str, custom: Optional[str] = None) -> CommandResult:
        return await self._run(conn_id, lambda e: e.submit(conn_id, card, custom))

    async def pick(self, conn_id: str, submission_id: str) -> CommandResult:
        return await self._run(conn_id, lambda e: e.pick_submission(conn_id, submission_id))

    async def disconnect(self, conn_id: str) -> CommandResult:
        self.music.withdraw(conn_id)
        return await self._run(None, lambda e: e.remove_player(conn_id))

    # ------------------------------------------------------------------
    # Admin commands
    # ------------------------------------------------------------------

    async def reset(self, reason: str = "admin reset") -> CommandResult:
        self.music.clear()
        return await self._run(None, lambda e: e.reset(reason))

    async def add_bots(self, count: int = 1) -> CommandResult:
        return await self._run(None, lambda e: e.add_bots(count))

    # ------------------------------------------------------------------
    # Timers
    # ------------------------------------------------------------------

    async def fire_due_tasks(self, now: Optional[float] = None) -> int:
        """Fire engine tasks that are due; publish only when something changed."""
        fired = 0

        def _fire(engine: GameEngine) -> None:
            nonlocal fired
            fired = engine.fire_due(now)

        async with self._lock:
            due = self.engine.next_due()
            clock_now = self.engine.clock() if now is None else now
        if due is None or due > clock_now:
            return 0
        await self._run(None, _fire)
        return fired

    # ------------------------------------------------------------------
    # Side channels
    # ------------------------------------------------------------------

    async def chat(self, conn_id: str, text: str) -> bool:
        async with self._lock:
            player = self.engine.players.get(conn_id)
            limit = self.engine.settings.chat_max_length
        if player is None or not isinstance(text, str):
            return False
        clean = self.text_filter.clean(text[:limit])
        if self._manager is not None:
            await self._manager.broadcast_json({"type": "chat", "user": player.name, "text": clean})
        return True

    async def vote_skip(self, conn_id: str) -> bool:
        async with self._lock:
            player_count = len(self.engine.players)
        skipped = self.music.vote_skip(conn_id, player_count)
        if skipped and self._manager is not None:
            await self._manager.broadcast_json({"type": "music_skip"})
        return skipped

    async def start_music(self, url: str) -> None:
        self.music.start(url)
        if self._manager is not None:
            await self._manager.broadcast_json({"type": "music_start", "url": url})

    async def wipe_chat(self) -> None:
        if self._manager is not None:
            await self._manager.broadcast_json({"type": "wipe_chat"})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_view(self, conn_id: Optional[str] = None) -> dict[str, Any]:
        async with self._lock:
            return self.engine.snapshot(conn_id).model_dump(mode="json")

    async def get_summary(self) -> dict[str, Any]:
        async with self._lock:
            return self.engine.summary()

    async def player_count(self) -> int:
        async with self._lock:
            return len(self.engine.players)


session = TableSession()
