"""Keep-alive — background task that logs a heartbeat and pings sockets.

Hosting platforms that sleep idle processes see regular log output while
a table is open.  Each pass also pings every client, closes sockets that
stopped answering, and prunes old metrics.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from cardtable import config, metrics

if TYPE_CHECKING:
    from cardtable.game_manager import TableSession
    from cardtable.ws_manager import ConnectionManager

logger = logging.getLogger(__name__)


class KeepAlive:
    """Periodic heartbeat for the table process."""

    def __init__(self, interval: float | None = None) -> None:
        self.interval = config.KEEPALIVE_INTERVAL if interval is None else interval
        self._task: asyncio.Task | None = None
        self._session: TableSession | None = None
        self._manager: ConnectionManager | None = None

    def attach(self, session: "TableSession", manager: "ConnectionManager") -> None:
        self._session = session
        self._manager = manager

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
            logger.info("Keep-alive started (interval=%ds)", int(self.interval))

    def stop(self) -> None:
        if self._task and not self._task.done():
            self._task.cancel()
            logger.info("Keep-alive stopped")

    async def beat(self) -> None:
        """One keep-alive pass."""
        players = await self._session.player_count() if self._session else 0
        sockets = len(self._manager) if self._manager else 0
        logger.info("keep-alive ping: players=%d sockets=%d", players, sockets)

        if self._manager is not None:
            closed = await self._manager.close_stale(timeout=self.interval * 2)
            for conn_id in closed:
                logger.info("Closed stale connection %s", conn_id)
                if self._session is not None:
                    await self._session.disconnect(conn_id)
            await self._manager.send_ping()

        try:
            await metrics.prune_old_metrics()
        except Exception:
            logger.warning("Failed to prune old metrics", exc_info=True)

    async def _loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    await self.beat()
                except Exception:
                    logger.exception("Keep-alive pass failed")
        except asyncio.CancelledError:
            pass


# Singleton
keep_alive = KeepAlive()
