"""Tests for the TableSession — command serialization and publishing with mocked Redis."""

from __future__ import annotations

import asyncio
import json
import random
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from cardtable.engine import GameEngine
from cardtable.game_manager import TableSession
from cardtable.models import Phase, TableSettings
from cardtable.textfilter import TextFilter


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

PATCH_REDIS = "cardtable.game_manager.redis_client"
PATCH_METRICS = "cardtable.game_manager.metrics"


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _make_manager(conn_ids=()) -> MagicMock:
    m = MagicMock()
    m.connection_ids.return_value = list(conn_ids)
    m.send_to = AsyncMock()
    m.send_json = AsyncMock()
    m.broadcast_json = AsyncMock()
    return m


def _make_session(conn_ids=(), clock=None, **overrides) -> tuple[TableSession, MagicMock]:
    settings = TableSettings(**{"blank_probability": 0.0, "require_ready": False, **overrides})
    engine = GameEngine(
        settings=settings,
        prompts=["Prompt ___"],
        responses=[f"r{i}" for i in range(40)],
        rng=random.Random(5),
        clock=clock or FakeClock(),
    )
    session = TableSession(engine=engine, text_filter=TextFilter(["darn"]))
    manager = _make_manager(conn_ids)
    session.set_manager(manager)
    return session, manager


def _sent_views(manager: MagicMock) -> dict[str, dict]:
    """Last state message sent to each connection."""
    views = {}
    for call in manager.send_to.await_args_list:
        conn_id, raw = call.args
        msg = json.loads(raw)
        assert msg["type"] == "state"
        views[conn_id] = msg["data"]
    return views


def _broadcasts(manager: MagicMock) -> list[dict]:
    return [call.args[0] for call in manager.broadcast_json.await_args_list]


async def _seat(session: TableSession, n: int = 3) -> list[str]:
    ids = [f"c{i}" for i in range(1, n + 1)]
    for cid in ids:
        await session.join(cid, cid.upper())
    return ids


async def _play_round(session: TableSession) -> None:
    engine = session.engine
    for p in list(engine.players):
        if not p.is_judge:
            await session.submit(p.player_id, p.hand[0])


@pytest.fixture
def mock_redis():
    with patch(f"{PATCH_REDIS}.store_snapshot", new_callable=AsyncMock) as m1, \
         patch(f"{PATCH_REDIS}.touch_activity", new_callable=AsyncMock) as m2, \
         patch(f"{PATCH_METRICS}.record_round_won", new_callable=AsyncMock) as m3, \
         patch(f"{PATCH_METRICS}.record_game_won", new_callable=AsyncMock) as m4, \
         patch(f"{PATCH_METRICS}.record_reset", new_callable=AsyncMock) as m5:
        yield {
            "store_snapshot": m1,
            "touch_activity": m2,
            "record_round_won": m3,
            "record_game_won": m4,
            "record_reset": m5,
        }


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------


class TestPublish:
    @pytest.fixture(autouse=True)
    def _redis(self, mock_redis):
        self.redis = mock_redis

    async def test_join_sends_view_to_every_connection(self):
        session, manager = _make_session(["c1", "c2"])
        result = await session.join("c1", "Alice")

        assert result.ok
        views = _sent_views(manager)
        assert set(views) == {"c1", "c2"}
        assert len(views["c1"]["hand"]) == 10
        assert views["c2"]["hand"] == []
        assert views["c2"]["players"][0]["name"] == "Alice"

    async def test_hands_stay_private(self):
        session, manager = _make_session(["c1", "c2", "c3"])
        await _seat(session, 3)
        views = _sent_views(manager)
        hands = {cid: session.engine.players.get(cid).hand for cid in ("c1", "c2", "c3")}
        for cid, view in views.items():
            assert view["hand"] == hands[cid]
            for player in view["players"]:
                assert "hand" not in player

    async def test_state_is_mirrored(self):
        session, _ = _make_session(["c1"])
        await session.join("c1", "Alice")
        self.redis["store_snapshot"].assert_awaited_once()
        stored = self.redis["store_snapshot"].await_args.args[0]
        assert stored["hand"] == []
        self.redis["touch_activity"].assert_awaited_once()

    async def test_redis_failure_does_not_block_the_game(self):
        self.redis["store_snapshot"].side_effect = ConnectionError("redis down")
        session, manager = _make_session(["c1"])
        result = await session.join("c1", "Alice")
        assert result.ok
        assert "c1" in session.engine.players
        manager.send_to.assert_awaited()

    async def test_works_without_manager(self):
        session, _ = _make_session()
        session._manager = None
        result = await session.join("c1", "Alice")
        assert result.ok


# ---------------------------------------------------------------------------
# Rejections
# ---------------------------------------------------------------------------


class TestRejections:
    @pytest.fixture(autouse=True)
    def _redis(self, mock_redis):
        self.redis = mock_redis

    async def test_rejection_goes_only_to_caller(self):
        session, manager = _make_session(["c1", "c2"])
        result = await session.join("c1", "   ")

        assert not result.ok
        assert result.error == "invalid_name"
        manager.send_json.assert_awaited_once()
        conn_id, payload = manager.send_json.await_args.args
        assert conn_id == "c1"
        assert payload["type"] == "error"
        assert payload["code"] == "invalid_name"
        manager.send_to.assert_not_awaited()
        manager.broadcast_json.assert_not_awaited()
        self.redis["store_snapshot"].assert_not_awaited()

    async def test_judge_submit_rejected(self):
        session, manager = _make_session(["c1", "c2", "c3"])
        await _seat(session, 3)
        judge = session.engine.players.judge()
        manager.send_to.reset_mock()

        result = await session.submit(judge.player_id, judge.hand[0])
        assert result.error == "judge_cannot_submit"
        manager.send_to.assert_not_awaited()

    async def test_pick_by_non_judge_rejected(self):
        session, _ = _make_session(["c1", "c2", "c3"])
        await _seat(session, 3)
        await _play_round(session)
        token = next(iter(session.engine.round.submissions)).submission_id
        result = await session.pick("c2", token)
        assert result.error == "not_judge"

    async def test_pick_unknown_token(self):
        session, _ = _make_session(["c1", "c2", "c3"])
        await _seat(session, 3)
        await _play_round(session)
        result = await session.pick("c1", "not-a-token")
        assert result.error == "unknown_winner"


# ---------------------------------------------------------------------------
# Round flow
# ---------------------------------------------------------------------------


class TestRoundFlow:
    @pytest.fixture(autouse=True)
    def _redis(self, mock_redis):
        self.redis = mock_redis

    async def test_pick_announces_winner(self):
        session, manager = _make_session(["c1", "c2", "c3"])
        await _seat(session, 3)
        await _play_round(session)
        assert session.engine.phase == Phase.JUDGING

        token = next(s.submission_id for s in session.engine.round.submissions if s.player_id == "c2")
        result = await session.pick("c1", token)

        assert result.ok
        assert {"type": "announce", "name": "C2"} in _broadcasts(manager)
        self.redis["record_round_won"].assert_awaited_once_with("C2", 1, 3)

    async def test_game_over_recorded(self):
        session, manager = _make_session(["c1", "c2", "c3"], win_threshold=1)
        await _seat(session, 3)
        await _play_round(session)
        token = next(iter(session.engine.round.submissions)).submission_id
        await session.pick("c1", token)

        assert session.engine.phase == Phase.GAME_OVER
        assert any(b["type"] == "final_win" for b in _broadcasts(manager))
        self.redis["record_game_won"].assert_awaited_once()

    async def test_concurrent_joins_start_one_round(self):
        session, _ = _make_session()
        await asyncio.gather(*(session.join(f"c{i}", f"P{i}") for i in range(10)))
        assert len(session.engine.players) == 10
        assert session.engine.round_number == 1
        assert len([p for p in session.engine.players if p.is_judge]) == 1

    async def test_disconnect_removes_player(self):
        session, _ = _make_session(["c1", "c2", "c3"])
        await _seat(session, 3)
        result = await session.disconnect("c3")
        assert result.ok
        assert "c3" not in session.engine.players
        assert session.engine.phase == Phase.LOBBY

    async def test_disconnect_unknown_is_harmless(self):
        session, _ = _make_session()
        result = await session.disconnect("ghost")
        assert result.ok

    async def test_add_bots(self):
        session, _ = _make_session()
        await session.add_bots(3)
        assert len(session.engine.players.bots()) == 3
        assert session.engine.phase == Phase.ROUND_ACTIVE

    async def test_reset_broadcasts_reload(self):
        session, manager = _make_session(["c1", "c2", "c3"])
        await _seat(session, 3)
        session.music.start("https://example.com/track.mp3")

        await session.reset()

        assert len(session.engine.players) == 0
        assert session.music.current_url is None
        assert {"type": "force_reload", "reason": "admin reset"} in _broadcasts(manager)
        self.redis["record_reset"].assert_awaited_once_with("admin reset")


# ---------------------------------------------------------------------------
# Timers through the session
# ---------------------------------------------------------------------------


class TestFireDueTasks:
    @pytest.fixture(autouse=True)
    def _redis(self, mock_redis):
        self.redis = mock_redis

    async def test_nothing_due(self):
        session, manager = _make_session(["c1", "c2", "c3"])
        await _seat(session, 3)
        manager.send_to.reset_mock()
        assert await session.fire_due_tasks() == 0
        manager.send_to.assert_not_awaited()

    async def test_eviction_notice_precedes_state(self):
        clock = FakeClock()
        conns = ["c1", "c2", "c3", "c4"]
        session, manager = _make_session(conns, clock=clock)
        await _seat(session, 4)
        for cid in ("c2", "c3"):
            p = session.engine.players.get(cid)
            await session.submit(cid, p.hand[0])
        manager.reset_mock()
        manager.connection_ids.return_value = conns

        clock.now += session.engine.settings.afk_timeout
        assert await session.fire_due_tasks() == 1

        sends = [c for c in manager.mock_calls if c[0] in ("send_json", "send_to", "broadcast_json")]
        assert sends[0][0] == "send_json"
        assert sends[0].args == ("c4", {"type": "evicted", "reason": "afk"})
        assert all(c[0] == "send_to" for c in sends[1:])
        assert "c4" not in session.engine.players
        assert session.engine.round_number == 2

    async def test_bots_play_through_session(self):
        clock = FakeClock()
        session, _ = _make_session(["c1"], clock=clock)
        await session.join("c1", "Alice")
        await session.add_bots(2)
        clock.now += 4
        assert await session.fire_due_tasks() == 2
        assert session.engine.phase == Phase.JUDGING


# ---------------------------------------------------------------------------
# Side channels
# ---------------------------------------------------------------------------


class TestSideChannels:
    @pytest.fixture(autouse=True)
    def _redis(self, mock_redis):
        self.redis = mock_redis

    async def test_chat_is_filtered_and_broadcast(self):
        session, manager = _make_session(["c1"])
        await session.join("c1", "Alice")
        assert await session.chat("c1", "well darn")
        manager.broadcast_json.assert_awaited_with({"type": "chat", "user": "Alice", "text": "well ****"})

    async def test_chat_is_capped(self):
        session, manager = _make_session(["c1"], chat_max_length=5)
        await session.join("c1", "Alice")
        await session.chat("c1", "abcdefghij")
        assert manager.broadcast_json.await_args.args[0]["text"] == "abcde"

    async def test_chat_from_spectator_ignored(self):
        session, manager = _make_session(["c9"])
        assert not await session.chat("c9", "hello")
        manager.broadcast_json.assert_not_awaited()

    async def test_vote_skip_majority(self):
        session, manager = _make_session(["c1", "c2", "c3"])
        await _seat(session, 3)
        await session.start_music("https://example.com/song.mp3")
        manager.broadcast_json.assert_awaited_with(
            {"type": "music_start", "url": "https://example.com/song.mp3"}
        )

        assert not await session.vote_skip("c1")
        assert await session.vote_skip("c2")
        manager.broadcast_json.assert_awaited_with({"type": "music_skip"})
        assert session.music.current_url is None

    async def test_vote_skip_without_track(self):
        session, manager = _make_session(["c1"])
        await session.join("c1", "Alice")
        manager.broadcast_json.reset_mock()
        assert not await session.vote_skip("c1")
        manager.broadcast_json.assert_not_awaited()

    async def test_disconnect_withdraws_vote(self):
        session, _ = _make_session(["c1", "c2", "c3", "c4"])
        await _seat(session, 4)
        await session.start_music("https://example.com/song.mp3")
        await session.vote_skip("c4")
        await session.disconnect("c4")
        assert "c4" not in session.music.skip_votes

    async def test_wipe_chat(self):
        session, manager = _make_session(["c1"])
        await session.wipe_chat()
        manager.broadcast_json.assert_awaited_once_with({"type": "wipe_chat"})


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestQueries:
    @pytest.fixture(autouse=True)
    def _redis(self, mock_redis):
        self.redis = mock_redis

    async def test_get_view_for_player(self):
        session, _ = _make_session()
        await session.join("c1", "Alice")
        view = await session.get_view("c1")
        assert view["phase"] == "lobby"
        assert len(view["hand"]) == 10

    async def test_get_view_anonymous(self):
        session, _ = _make_session()
        await session.join("c1", "Alice")
        view = await session.get_view()
        assert view["hand"] == []

    async def test_summary(self):
        session, _ = _make_session()
        await _seat(session, 3)
        summary = await session.get_summary()
        assert summary["phase"] == "round_active"
        assert summary["player_count"] == 3
        assert await session.player_count() == 3
