"""Per-round collection of played responses."""

from __future__ import annotations

import random
import uuid
from typing import Optional

from cardtable.errors import AlreadySubmittedError
from cardtable.models import SubmissionView


class Submission:
    __slots__ = ("submission_id", "player_id", "text")

    def __init__(self, player_id: str, text: str, submission_id: Optional[str] = None) -> None:
        self.submission_id = submission_id or uuid.uuid4().hex
        self.player_id = player_id
        self.text = text

    def __repr__(self) -> str:
        return f"<Submission {self.player_id} {self.text!r}>"


class SubmissionTable:
    """At most one submission per player, revealed in shuffled order.

    The submission id is the only handle that leaves the server, so the
    judge never learns who played what.
    """

    def __init__(self) -> None:
        self._entries: list[Submission] = []
        self.revealed: bool = False

    def record(self, player_id: str, text: str) -> Submission:
        if self.has(player_id):
            raise AlreadySubmittedError()
        sub = Submission(player_id, text)
        self._entries.append(sub)
        return sub

    def drop(self, player_id: str) -> bool:
        before = len(self._entries)
        self._entries = [s for s in self._entries if s.player_id != player_id]
        return len(self._entries) != before

    def has(self, player_id: str) -> bool:
        return any(s.player_id == player_id for s in self._entries)

    def is_complete(self, player_count: int) -> bool:
        """True once everyone but the judge has played."""
        return player_count > 1 and len(self._entries) >= player_count - 1

    def reveal(self, rng: random.Random) -> None:
        """Shuffle once, when the round closes."""
        if self.revealed:
            return
        rng.shuffle(self._entries)
        self.revealed = True

    def owner_of(self, submission_id: str) -> Optional[str]:
        for s in self._entries:
            if s.submission_id == submission_id:
                return s.player_id
        return None

    def player_ids(self) -> set[str]:
        return {s.player_id for s in self._entries}

    def public_view(self) -> list[SubmissionView]:
        return [SubmissionView(id=s.submission_id, text=s.text) for s in self._entries]

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(list(self._entries))
