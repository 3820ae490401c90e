"""Player records and the ordered registry of seated players."""

from __future__ import annotations

import random
from typing import Callable, Iterator, Optional, Sequence

from cardtable.cards import BLANK
from cardtable.errors import InvalidNameError
from cardtable.models import PlayerInfo

BOT_NAMES = ["🤖 Botrick", "🤖 RoboCard", "🤖 AI McBot", "🤖 ByteBot", "🤖 CardBot"]


class PlayerState:
    """Fields shared by humans and bots."""

    kind = "player"

    def __init__(self, player_id: str, name: str, hand: list[str]) -> None:
        self.player_id = player_id
        self.name = name
        self.score: int = 0
        self.hand: list[str] = hand
        self.is_judge: bool = False
        self.has_submitted: bool = False
        self.ready: bool = False

    @property
    def is_bot(self) -> bool:
        return False

    def reset_for_new_round(self) -> None:
        self.is_judge = False
        self.has_submitted = False

    def play_card(self, card: str, replacement: str) -> None:
        """Swap the first copy of *card* for a freshly drawn one."""
        self.hand.remove(card)
        self.hand.append(replacement)

    def to_info(self) -> PlayerInfo:
        return PlayerInfo(
            id=self.player_id,
            name=self.name,
            score=self.score,
            is_judge=self.is_judge,
            has_submitted=self.has_submitted,
            is_bot=self.is_bot,
            ready=self.ready,
        )

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.player_id} {self.name!r} score={self.score}>"


class HumanPlayer(PlayerState):
    kind = "human"


class BotPlayer(PlayerState):
    kind = "bot"

    def __init__(self, player_id: str, name: str, hand: list[str]) -> None:
        super().__init__(player_id, name, hand)
        self.ready = True

    @property
    def is_bot(self) -> bool:
        return True

    def choose_play(self, rng: random.Random, placeholder: str) -> tuple[str, Optional[str]]:
        """Pick a uniformly random hand card; blanks get *placeholder* text."""
        card = rng.choice(self.hand)
        return card, (placeholder if card == BLANK else None)

    def choose_winner(self, rng: random.Random, candidates: Sequence[str]) -> str:
        return rng.choice(candidates)


class PlayerRegistry:
    """Seated players keyed by connection id, in join order."""

    def __init__(
        self,
        deal: Callable[[int], list[str]],
        hand_size: int = 10,
        name_max_length: int = 15,
    ) -> None:
        self._deal = deal
        self.hand_size = hand_size
        self.name_max_length = name_max_length
        self._players: dict[str, PlayerState] = {}

    def join(self, player_id: str, name: str) -> PlayerState:
        existing = self._players.get(player_id)
        if existing is not None:
            return existing
        clean = (name or "").strip()
        if not clean:
            raise InvalidNameError()
        clean = clean[: self.name_max_length]
        player = HumanPlayer(player_id, clean, self._deal(self.hand_size))
        self._players[player_id] = player
        return player

    def add_bot(self, player_id: str, name: str) -> BotPlayer:
        bot = BotPlayer(player_id, name, self._deal(self.hand_size))
        self._players[player_id] = bot
        return bot

    def remove(self, player_id: str) -> tuple[Optional[PlayerState], bool]:
        """Remove a player; returns (player, was_judge)."""
        player = self._players.pop(player_id, None)
        if player is None:
            return None, False
        return player, player.is_judge

    def get(self, player_id: str) -> Optional[PlayerState]:
        return self._players.get(player_id)

    def list(self) -> list[PlayerState]:
        return list(self._players.values())

    def ids(self) -> list[str]:
        return list(self._players.keys())

    def humans(self) -> list[PlayerState]:
        return [p for p in self._players.values() if not p.is_bot]

    def bots(self) -> list[BotPlayer]:
        return [p for p in self._players.values() if isinstance(p, BotPlayer)]

    def judge(self) -> Optional[PlayerState]:
        for p in self._players.values():
            if p.is_judge:
                return p
        return None

    def successor(self, player_id: Optional[str]) -> Optional[str]:
        """Id after *player_id* in join order, wrapping; first id for None."""
        ids = self.ids()
        if not ids:
            return None
        if player_id is None or player_id not in self._players:
            return ids[0]
        return ids[(ids.index(player_id) + 1) % len(ids)]

    def predecessor(self, player_id: str) -> Optional[str]:
        """Id before *player_id*, or None when it is first (or unknown)."""
        ids = self.ids()
        if player_id not in self._players:
            return None
        idx = ids.index(player_id)
        return ids[idx - 1] if idx > 0 else None

    def top_up(self, draw: Callable[[], str]) -> None:
        for p in self._players.values():
            while len(p.hand) < self.hand_size:
                p.hand.append(draw())

    def clear(self) -> None:
        self._players.clear()

    def __len__(self) -> int:
        return len(self._players)

    def __contains__(self, player_id: object) -> bool:
        return player_id in self._players

    def __iter__(self) -> Iterator[PlayerState]:
        return iter(list(self._players.values()))
