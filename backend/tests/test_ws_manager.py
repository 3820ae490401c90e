"""Tests for the ConnectionManager and shared music state."""

import json
import time
from unittest.mock import AsyncMock, MagicMock

from cardtable.ws_manager import ConnectionManager, MusicState


def _make_ws() -> MagicMock:
    ws = MagicMock()
    ws.accept = AsyncMock()
    ws.send_text = AsyncMock()
    ws.close = AsyncMock()
    return ws


class TestConnections:
    async def test_connect_accepts(self):
        mgr = ConnectionManager()
        ws = _make_ws()
        await mgr.connect("c1", ws)
        ws.accept.assert_awaited_once()
        assert mgr.connection_ids() == ["c1"]
        assert len(mgr) == 1

    async def test_disconnect_only_matching(self):
        mgr = ConnectionManager()
        old = await mgr.connect("c1", _make_ws())
        await mgr.connect("c1", _make_ws())
        mgr.disconnect("c1", old)
        assert len(mgr) == 1
        mgr.disconnect("c1")
        assert len(mgr) == 0

    async def test_send_json(self):
        mgr = ConnectionManager()
        ws = _make_ws()
        await mgr.connect("c1", ws)
        await mgr.send_json("c1", {"type": "x"})
        ws.send_text.assert_awaited_once_with(json.dumps({"type": "x"}))

    async def test_send_to_unknown_is_noop(self):
        mgr = ConnectionManager()
        await mgr.send_to("ghost", "hi")

    async def test_failed_send_drops_connection(self):
        mgr = ConnectionManager()
        ws = _make_ws()
        ws.send_text.side_effect = RuntimeError("closed")
        await mgr.connect("c1", ws)
        await mgr.send_to("c1", "hi")
        assert len(mgr) == 0

    async def test_broadcast_skips_dead_sockets(self):
        mgr = ConnectionManager()
        good, bad = _make_ws(), _make_ws()
        bad.send_text.side_effect = RuntimeError("closed")
        await mgr.connect("c1", good)
        await mgr.connect("c2", bad)
        await mgr.broadcast_json({"type": "chat"})
        good.send_text.assert_awaited_once()
        assert mgr.connection_ids() == ["c1"]


class TestHeartbeat:
    async def test_stale_connections_closed(self):
        mgr = ConnectionManager()
        ws = _make_ws()
        conn = await mgr.connect("c1", ws)
        await mgr.connect("c2", _make_ws())
        conn.last_pong = time.time() - 1000

        closed = await mgr.close_stale(timeout=600)
        assert closed == ["c1"]
        ws.close.assert_awaited_once()
        assert mgr.connection_ids() == ["c2"]

    async def test_pong_refreshes(self):
        mgr = ConnectionManager()
        conn = await mgr.connect("c1", _make_ws())
        conn.last_pong = time.time() - 1000
        mgr.record_pong("c1")
        assert not mgr.is_stale(conn)

    async def test_ping_broadcast(self):
        mgr = ConnectionManager()
        ws = _make_ws()
        await mgr.connect("c1", ws)
        await mgr.send_ping()
        msg = json.loads(ws.send_text.await_args.args[0])
        assert msg["type"] == "ping"


class TestMusicState:
    def test_vote_without_track(self):
        m = MusicState()
        assert not m.vote_skip("c1", 3)
        assert m.skip_votes == set()

    def test_majority_skips(self):
        m = MusicState()
        m.start("u")
        assert not m.vote_skip("c1", 4)
        assert not m.vote_skip("c1", 4)
        assert m.vote_skip("c2", 4)
        assert m.current_url is None
        assert m.skip_votes == set()

    def test_single_listener(self):
        m = MusicState()
        m.start("u")
        assert m.vote_skip("c1", 1)

    def test_new_track_resets_votes(self):
        m = MusicState()
        m.start("u1")
        m.vote_skip("c1", 5)
        m.start("u2")
        assert m.skip_votes == set()

    def test_withdraw(self):
        m = MusicState()
        m.start("u")
        m.vote_skip("c1", 5)
        m.withdraw("c1")
        m.withdraw("ghost")
        assert m.skip_votes == set()
