"""Round orchestrator for the judged party card game.

Owns the authoritative table state: seated players, the decks, the
current round, judge rotation, scoring, and the timed tasks that make
bots play and push idle players out.  Every public method is
synchronous and either completes its mutation or raises a GameError
without touching state, so callers only need to serialize calls.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from cardtable.cards import BLANK, DEFAULT_PROMPTS, DEFAULT_RESPONSES, CardSupplier
from cardtable.errors import (
    AlreadySubmittedError,
    CardNotInHandError,
    EmptyPoolError,
    GameError,
    JudgeCannotSubmitError,
    MissingCustomTextError,
    NotAcceptingError,
    NotJudgeError,
    UnknownPlayerError,
    UnknownWinnerError,
)
from cardtable.models import (
    ForceReload,
    GameOver,
    GameSnapshot,
    Phase,
    PlayerEvicted,
    TableEvent,
    TableSettings,
    WinnerAnnounced,
)
from cardtable.players import BOT_NAMES, BotPlayer, PlayerRegistry, PlayerState
from cardtable.submissions import SubmissionTable
from cardtable.textfilter import TextFilter, default_filter

logger = logging.getLogger(__name__)


class TaskKind(str, Enum):
    BOT_PLAY = "bot_play"
    BOT_PICK = "bot_pick"
    AFK = "afk"
    NEXT_ROUND = "next_round"
    AUTO_RESET = "auto_reset"


class ScheduledTask:
    """A timed engine action, tagged with the generation that armed it."""

    __slots__ = ("key", "kind", "generation", "due_at", "player_id")

    def __init__(
        self,
        key: str,
        kind: TaskKind,
        generation: int,
        due_at: float,
        player_id: Optional[str] = None,
    ) -> None:
        self.key = key
        self.kind = kind
        self.generation = generation
        self.due_at = due_at
        self.player_id = player_id

    def __repr__(self) -> str:
        return f"<ScheduledTask {self.key} gen={self.generation} due={self.due_at:.2f}>"


class RoundContext:
    """State that lives exactly as long as one round."""

    def __init__(
        self,
        round_id: int,
        prompt_card: str,
        judge_id: str,
        started_at: float,
        afk_deadline: Optional[float] = None,
    ) -> None:
        self.round_id = round_id
        self.prompt_card = prompt_card
        self.judge_id = judge_id
        self.started_at = started_at
        self.afk_deadline = afk_deadline
        self.submissions = SubmissionTable()
        self.is_accepting: bool = True
        self.winner_id: Optional[str] = None

    @property
    def resolved(self) -> bool:
        return self.winner_id is not None


class GameEngine:
    """Manages the single table."""

    def __init__(
        self,
        settings: Optional[TableSettings] = None,
        prompts: Optional[Sequence[str]] = None,
        responses: Optional[Sequence[str]] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], float]] = None,
        text_filter: Optional[TextFilter] = None,
    ) -> None:
        self.settings = settings or TableSettings()
        self.rng = rng or random.Random()
        self.clock = clock or time.time
        self.text_filter = text_filter or default_filter

        self.cards = CardSupplier(
            DEFAULT_PROMPTS if prompts is None else prompts,
            DEFAULT_RESPONSES if responses is None else responses,
            rng=self.rng,
            blank_probability=self.settings.blank_probability,
        )
        self.players = PlayerRegistry(
            self.cards.responses.deal,
            hand_size=self.settings.hand_size,
            name_max_length=self.settings.name_max_length,
        )

        self.phase: Phase = Phase.LOBBY
        self.round: Optional[RoundContext] = None
        # Rotation cursor: id of the most recent judge
        self.last_judge_id: Optional[str] = None
        self.round_number: int = 0
        # Bumped whenever a round is built or torn down; stale tasks compare against it
        self.generation: int = 0

        self._tasks: dict[str, ScheduledTask] = {}
        self._events: list[TableEvent] = []

    # ------------------------------------------------------------------
    # Players
    # ------------------------------------------------------------------

    def join(self, player_id: str, name: str) -> PlayerState:
        if player_id in self.players:
            return self.players.get(player_id)
        player = self.players.join(player_id, name)
        logger.info("Player joined: %s (%s)", player.name, player_id)
        self._maybe_start()
        return player

    def set_ready(self, player_id: str) -> PlayerState:
        player = self._require_player(player_id)
        if player.ready:
            return player
        player.ready = True
        logger.info("Player ready: %s", player.name)
        self._maybe_start()
        return player

    def add_bot(self) -> BotPlayer:
        bot_id = f"bot_{uuid.uuid4().hex[:6]}"
        bot = self.players.add_bot(bot_id, self.rng.choice(BOT_NAMES))
        logger.info("Bot added: %s (%s)", bot.name, bot_id)
        if self.phase == Phase.ROUND_ACTIVE:
            self._arm_bot(bot)
        self._maybe_start()
        return bot

    def add_bots(self, count: int = 1) -> list[BotPlayer]:
        count = max(1, min(count, self.settings.max_bots_per_request))
        return [self.add_bot() for _ in range(count)]

    def remove_player(self, player_id: str, reason: str = "disconnect") -> Optional[PlayerState]:
        """Take a player off the table and repair the round around the gap."""
        player = self.players.get(player_id)
        if player is None:
            return None

        was_judge = self._detach(player_id)
        player_count = len(self.players)
        logger.info("Player removed (%s): %s, %d left", reason, player.name, player_count)

        if player_count == 0:
            self._clear()
            return player

        rnd = self.round
        if self.phase in (Phase.ROUND_ACTIVE, Phase.JUDGING):
            if player_count < self.settings.min_players:
                self._force_lobby("not enough players")
            elif was_judge and rnd is not None and not rnd.resolved:
                self._start_round()
            elif self.phase == Phase.ROUND_ACTIVE:
                self._check_complete()
        elif self.phase == Phase.LOBBY:
            self._maybe_start()
        return player

    def _detach(self, player_id: str) -> bool:
        """Remove the record, its submission and its timer. Returns was_judge."""
        if player_id == self.last_judge_id:
            # Successor of the predecessor is whoever sat after the leaver
            self.last_judge_id = self.players.predecessor(player_id)
        _, was_judge = self.players.remove(player_id)
        if self.round is not None:
            self.round.submissions.drop(player_id)
        self._cancel(self._bot_key(player_id))
        self._cancel(self._bot_key(player_id, TaskKind.BOT_PICK))
        return was_judge

    def _require_player(self, player_id: str) -> PlayerState:
        player = self.players.get(player_id)
        if player is None:
            raise UnknownPlayerError()
        return player

    # ------------------------------------------------------------------
    # Round lifecycle
    # ------------------------------------------------------------------

    def _can_start(self) -> bool:
        if self.phase != Phase.LOBBY:
            return False
        if len(self.players) < self.settings.min_players:
            return False
        if self.settings.require_ready:
            return all(p.ready for p in self.players.humans())
        return True

    def _maybe_start(self) -> None:
        if self._can_start():
            self._start_round()

    def _start_round(self) -> bool:
        self._cancel_all_tasks()
        if len(self.players) < self.settings.min_players:
            self._force_lobby("not enough players")
            return False

        try:
            prompt = self.cards.draw_prompt()
            self.players.top_up(self.cards.draw_response)
        except EmptyPoolError:
            logger.warning("Cannot start round: card pool is empty")
            self._force_lobby("empty card pool")
            return False

        judge_id = self.players.successor(self.last_judge_id)
        self.last_judge_id = judge_id
        self.generation += 1
        self.round_number += 1

        for p in self.players:
            p.reset_for_new_round()
            p.is_judge = p.player_id == judge_id

        now = self.clock()
        afk_deadline = now + self.settings.afk_timeout if self.settings.afk_timeout > 0 else None
        self.round = RoundContext(self.generation, prompt, judge_id, now, afk_deadline)
        self.phase = Phase.ROUND_ACTIVE

        if afk_deadline is not None:
            self._arm(TaskKind.AFK, afk_deadline)
        for bot in self.players.bots():
            if not bot.is_judge:
                self._arm_bot(bot)

        logger.info(
            "Round %d started: judge=%s players=%d",
            self.round_number,
            judge_id,
            len(self.players),
        )
        return True

    def _force_lobby(self, reason: str) -> None:
        """Tear down any round and wait for players."""
        self._cancel_all_tasks()
        self.generation += 1
        self.round = None
        self.phase = Phase.LOBBY
        for p in self.players:
            p.reset_for_new_round()
        logger.info("Back to lobby: %s", reason)

    def _check_complete(self) -> None:
        rnd = self.round
        if self.phase != Phase.ROUND_ACTIVE or rnd is None:
            return
        if not rnd.submissions.is_complete(len(self.players)):
            return
        rnd.submissions.reveal(self.rng)
        rnd.is_accepting = False
        self.phase = Phase.JUDGING
        for bot in self.players.bots():
            self._cancel(self._bot_key(bot.player_id))
        judge = self.players.get(rnd.judge_id)
        if isinstance(judge, BotPlayer):
            self._arm(TaskKind.BOT_PICK, self.clock() + self._bot_delay(), judge.player_id)
        logger.info("Round %d closed with %d submissions", self.round_number, len(rnd.submissions))

    def reset(self, reason: str = "reset") -> None:
        """Clear the whole table and tell clients to reload."""
        self._clear()
        self._emit(ForceReload(reason=reason))
        logger.info("Table reset (%s)", reason)

    def _clear(self) -> None:
        self._cancel_all_tasks()
        self.generation += 1
        self.players.clear()
        self.round = None
        self.last_judge_id = None
        self.round_number = 0
        self.phase = Phase.LOBBY

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def submit(self, player_id: str, card: str, custom_text: Optional[str] = None) -> None:
        player = self._require_player(player_id)
        rnd = self.round
        if self.phase != Phase.ROUND_ACTIVE or rnd is None or not rnd.is_accepting:
            raise NotAcceptingError("Round is not accepting submissions")
        if player.is_judge:
            raise JudgeCannotSubmitError()
        if player.has_submitted or rnd.submissions.has(player_id):
            raise AlreadySubmittedError()
        if card not in player.hand:
            raise CardNotInHandError()

        if card == BLANK:
            raw = (custom_text or "").strip()
            if not raw:
                raise MissingCustomTextError()
            text = self.text_filter.clean(raw[: self.settings.custom_text_max_length])
        else:
            text = card

        # Draw before mutating so an empty pool leaves the round untouched
        replacement = self.cards.draw_response()
        rnd.submissions.record(player_id, text)
        player.play_card(card, replacement)
        player.has_submitted = True
        self._cancel(self._bot_key(player_id))
        logger.debug("Submission from %s (%d/%d)", player_id, len(rnd.submissions), len(self.players) - 1)

        self._check_complete()

    def pick_winner(self, judge_id: str, winner_id: str) -> PlayerState:
        judge = self.players.get(judge_id)
        if judge is None or not judge.is_judge:
            raise NotJudgeError()
        rnd = self.round
        if self.phase != Phase.JUDGING or rnd is None or rnd.resolved:
            raise NotAcceptingError("Submissions are still open")
        if winner_id not in rnd.submissions.player_ids():
            raise UnknownWinnerError()
        winner = self._require_player(winner_id)

        winner.score += 1
        rnd.winner_id = winner_id
        for p in self.players:
            p.is_judge = False
        self._cancel_all_tasks()
        self._emit(WinnerAnnounced(name=winner.name))
        logger.info("Round %d won by %s (score=%d)", self.round_number, winner.name, winner.score)

        now = self.clock()
        if winner.score >= self.settings.win_threshold:
            self.phase = Phase.GAME_OVER
            self._emit(GameOver(name=winner.name))
            logger.info("Game over: %s wins", winner.name)
            if self.settings.auto_reset_delay > 0:
                self._arm(TaskKind.AUTO_RESET, now + self.settings.auto_reset_delay)
        else:
            self._arm(TaskKind.NEXT_ROUND, now + self.settings.next_round_delay)
        return winner

    def pick_submission(self, judge_id: str, submission_id: str) -> PlayerState:
        """Pick by the opaque submission handle clients see."""
        judge = self.players.get(judge_id)
        if judge is None or not judge.is_judge:
            raise NotJudgeError()
        owner = self.round.submissions.owner_of(submission_id) if self.round else None
        if owner is None:
            raise UnknownWinnerError()
        return self.pick_winner(judge_id, owner)

    # ------------------------------------------------------------------
    # Timed tasks
    # ------------------------------------------------------------------

    @staticmethod
    def _bot_key(player_id: str, kind: TaskKind = TaskKind.BOT_PLAY) -> str:
        return f"{kind.value}:{player_id}"

    def _arm(self, kind: TaskKind, due_at: float, player_id: Optional[str] = None) -> ScheduledTask:
        key = self._bot_key(player_id, kind) if player_id is not None else kind.value
        task = ScheduledTask(key, kind, self.generation, due_at, player_id)
        self._tasks[key] = task
        return task

    def _bot_delay(self) -> float:
        return self.rng.uniform(self.settings.bot_delay_min, self.settings.bot_delay_max)

    def _arm_bot(self, bot: BotPlayer) -> None:
        self._arm(TaskKind.BOT_PLAY, self.clock() + self._bot_delay(), bot.player_id)

    def _cancel(self, key: str) -> None:
        self._tasks.pop(key, None)

    def _cancel_all_tasks(self) -> None:
        self._tasks.clear()

    def pending_tasks(self) -> list[ScheduledTask]:
        return sorted(self._tasks.values(), key=lambda t: t.due_at)

    def next_due(self) -> Optional[float]:
        if not self._tasks:
            return None
        return min(t.due_at for t in self._tasks.values())

    def fire_due(self, now: Optional[float] = None) -> int:
        """Run every task due at *now*. Returns how many took effect.

        Tasks armed while firing wait for the next call.
        """
        now = self.clock() if now is None else now
        due = sorted(
            (t for t in self._tasks.values() if t.due_at <= now),
            key=lambda t: t.due_at,
        )
        fired = 0
        for task in due:
            # An earlier task in this batch may have cancelled or replaced it
            if self._tasks.get(task.key) is not task:
                continue
            del self._tasks[task.key]
            if self.fire(task):
                fired += 1
        return fired

    def fire(self, task: ScheduledTask) -> bool:
        """Apply one task; a task from a superseded round is a no-op."""
        if task.generation != self.generation:
            logger.debug("Ignoring stale task %r (generation %d)", task, self.generation)
            return False
        if task.kind == TaskKind.BOT_PLAY:
            return self._on_bot_play(task.player_id)
        if task.kind == TaskKind.BOT_PICK:
            return self._on_bot_pick(task.player_id)
        if task.kind == TaskKind.AFK:
            return self._on_afk()
        if task.kind == TaskKind.NEXT_ROUND:
            return self._on_next_round()
        if task.kind == TaskKind.AUTO_RESET:
            if self.phase != Phase.GAME_OVER:
                return False
            self.reset("game over")
            return True
        return False

    def _on_bot_play(self, player_id: Optional[str]) -> bool:
        bot = self.players.get(player_id) if player_id else None
        if not isinstance(bot, BotPlayer) or self.phase != Phase.ROUND_ACTIVE:
            return False
        if bot.is_judge or bot.has_submitted or not bot.hand:
            return False
        card, custom = bot.choose_play(self.rng, self.settings.bot_placeholder)
        try:
            self.submit(bot.player_id, card, custom)
        except GameError as e:
            logger.warning("Bot %s could not play: %s", bot.player_id, e)
            return False
        return True

    def _on_bot_pick(self, player_id: Optional[str]) -> bool:
        bot = self.players.get(player_id) if player_id else None
        rnd = self.round
        if not isinstance(bot, BotPlayer) or not bot.is_judge:
            return False
        if self.phase != Phase.JUDGING or rnd is None or rnd.resolved:
            return False
        candidates = sorted(rnd.submissions.player_ids())
        if not candidates:
            return False
        try:
            self.pick_winner(bot.player_id, bot.choose_winner(self.rng, candidates))
        except GameError as e:
            logger.warning("Bot %s could not pick: %s", bot.player_id, e)
            return False
        return True

    def _on_afk(self) -> bool:
        rnd = self.round
        if rnd is None or self.phase not in (Phase.ROUND_ACTIVE, Phase.JUDGING) or rnd.resolved:
            return False

        idle: list[PlayerState] = []
        if self.phase == Phase.ROUND_ACTIVE:
            idle = [
                p for p in self.players
                if p.player_id != rnd.judge_id and not p.has_submitted
            ]
        # Notify first, then remove
        for p in idle:
            self._emit(PlayerEvicted(player_id=p.player_id, reason="afk"))
        for p in idle:
            self._detach(p.player_id)
            logger.info("Evicted idle player %s (%s)", p.name, p.player_id)

        if len(self.players) == 0:
            self._clear()
        elif len(self.players) < self.settings.min_players:
            self._force_lobby("not enough players after idle eviction")
        else:
            self._start_round()
        return True

    def _on_next_round(self) -> bool:
        rnd = self.round
        if self.phase != Phase.JUDGING or rnd is None or not rnd.resolved:
            return False
        return self._start_round()

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _emit(self, event: TableEvent) -> None:
        self._events.append(event)

    def drain_events(self) -> list[TableEvent]:
        events, self._events = self._events, []
        return events

    def snapshot(self, viewer_id: Optional[str] = None) -> GameSnapshot:
        """Broadcast-ready state; *viewer_id* adds that player's own hand."""
        rnd = self.round
        judge = self.players.judge()
        viewer = self.players.get(viewer_id) if viewer_id else None
        revealed = rnd is not None and rnd.submissions.revealed
        return GameSnapshot(
            phase=self.phase,
            players=[p.to_info() for p in self.players],
            prompt_card=rnd.prompt_card if rnd else None,
            submissions=rnd.submissions.public_view() if revealed else [],
            submission_count=len(rnd.submissions) if rnd else 0,
            judge_name=judge.name if judge else "...",
            round_number=self.round_number,
            win_threshold=self.settings.win_threshold,
            min_players=self.settings.min_players,
            ready_count=sum(1 for p in self.players.humans() if p.ready),
            afk_deadline=rnd.afk_deadline if rnd and not rnd.resolved else None,
            round_started_at=rnd.started_at if rnd else None,
            hand=list(viewer.hand) if viewer else [],
        )

    def summary(self) -> dict[str, Any]:
        """Small admin-facing summary (no hands)."""
        return {
            "phase": self.phase.value,
            "round_number": self.round_number,
            "generation": self.generation,
            "player_count": len(self.players),
            "bot_count": len(self.players.bots()),
            "pending_tasks": [t.key for t in self.pending_tasks()],
            "scores": {p.name: p.score for p in self.players},
        }
