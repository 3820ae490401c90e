"""WebSocket connection manager for the table, with heartbeat support."""

from __future__ import annotations

import json
import logging
import math
import time
from typing import Optional

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ClientConnection:
    """Wraps a single WebSocket connection with metadata."""

    __slots__ = ("ws", "conn_id", "connected_at", "last_pong")

    def __init__(self, ws: WebSocket, conn_id: str) -> None:
        self.ws = ws
        self.conn_id = conn_id
        self.connected_at = time.time()
        self.last_pong = time.time()

    async def send(self, text: str) -> bool:
        """Send text, returning False on failure."""
        try:
            await self.ws.send_text(text)
            return True
        except Exception:
            return False


class ConnectionManager:
    """Tracks every open socket at the table by connection id."""

    # Heartbeat window (seconds); a client that misses it is closed
    HEARTBEAT_TIMEOUT = 60

    def __init__(self) -> None:
        self._connections: dict[str, ClientConnection] = {}

    async def connect(self, conn_id: str, ws: WebSocket) -> ClientConnection:
        await ws.accept()
        conn = ClientConnection(ws, conn_id)
        self._connections[conn_id] = conn
        logger.info("WS connect: conn=%s", conn_id)
        return conn

    def disconnect(self, conn_id: str, conn: Optional[ClientConnection] = None) -> None:
        """Forget a connection. If conn is given, only remove if it matches."""
        existing = self._connections.get(conn_id)
        if existing is not None and (conn is None or existing is conn):
            del self._connections[conn_id]
            logger.info("WS disconnect: conn=%s", conn_id)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def record_pong(self, conn_id: str) -> None:
        conn = self._connections.get(conn_id)
        if conn:
            conn.last_pong = time.time()

    def is_stale(self, conn: ClientConnection, timeout: float | None = None) -> bool:
        limit = self.HEARTBEAT_TIMEOUT if timeout is None else timeout
        return (time.time() - conn.last_pong) > limit

    async def close_stale(self, timeout: float | None = None) -> list[str]:
        """Close connections that stopped answering pings."""
        closed: list[str] = []
        for conn_id, conn in list(self._connections.items()):
            if self.is_stale(conn, timeout):
                try:
                    await conn.ws.close(code=4002, reason="Heartbeat timeout")
                except Exception:
                    logger.debug("Close failed for %s", conn_id, exc_info=True)
                self.disconnect(conn_id, conn)
                closed.append(conn_id)
        return closed

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_to(self, conn_id: str, message: str) -> None:
        conn = self._connections.get(conn_id)
        if conn:
            if not await conn.send(message):
                self.disconnect(conn_id, conn)

    async def send_json(self, conn_id: str, payload: dict) -> None:
        await self.send_to(conn_id, json.dumps(payload))

    async def broadcast(self, message: str) -> None:
        stale: list[str] = []
        for conn_id, conn in list(self._connections.items()):
            if not await conn.send(message):
                stale.append(conn_id)
        for conn_id in stale:
            self.disconnect(conn_id)

    async def broadcast_json(self, payload: dict) -> None:
        await self.broadcast(json.dumps(payload))

    async def send_ping(self) -> None:
        await self.broadcast_json({"type": "ping", "ts": time.time()})

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def connection_ids(self) -> list[str]:
        return list(self._connections.keys())

    def __len__(self) -> int:
        return len(self._connections)


class MusicState:
    """Shared background track and the skip votes against it."""

    def __init__(self) -> None:
        self.current_url: Optional[str] = None
        self.skip_votes: set[str] = set()

    def start(self, url: str) -> None:
        self.current_url = url
        self.skip_votes.clear()

    def vote_skip(self, voter_id: str, player_count: int) -> bool:
        """Record a vote; True when the track should be skipped."""
        if self.current_url is None:
            return False
        self.skip_votes.add(voter_id)
        if len(self.skip_votes) >= math.ceil(player_count / 2):
            self.current_url = None
            self.skip_votes.clear()
            return True
        return False

    def withdraw(self, voter_id: str) -> None:
        self.skip_votes.discard(voter_id)

    def clear(self) -> None:
        self.current_url = None
        self.skip_votes.clear()


manager = ConnectionManager()
