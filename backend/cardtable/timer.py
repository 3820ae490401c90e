"""Auto-play scheduler — background task that fires the engine's timed tasks.

Bot plays, AFK deadlines, the pause before the next round and the
auto-reset after a win are all armed inside the engine as generation
tagged tasks.  This loop only asks the session to fire whatever is due,
so a firing is just another command on the session's queue.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cardtable.game_manager import TableSession

logger = logging.getLogger(__name__)

# How often the timer loop checks for due tasks (seconds)
TICK_INTERVAL = 0.25


class AutoPlayScheduler:
    """Drives engine timers from a single asyncio background loop."""

    def __init__(self, tick_interval: float = TICK_INTERVAL) -> None:
        self.tick_interval = tick_interval
        self._task: asyncio.Task | None = None
        self._session: TableSession | None = None

    def set_session(self, session: "TableSession") -> None:
        """Inject the table session (avoids circular import)."""
        self._session = session

    def start(self) -> None:
        """Start the background timer loop."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Auto-play scheduler started")

    def stop(self) -> None:
        """Stop the background timer loop."""
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Auto-play scheduler stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def tick(self) -> int:
        """Fire due tasks once. Returns how many took effect."""
        if self._session is None:
            return 0
        fired = await self._session.fire_due_tasks()
        if fired:
            logger.debug("Fired %d timed task(s)", fired)
        return fired

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.tick_interval)
                try:
                    await self.tick()
                except Exception:
                    logger.exception("Timer tick failed")
        except asyncio.CancelledError:
            pass


# Singleton
auto_play = AutoPlayScheduler()
