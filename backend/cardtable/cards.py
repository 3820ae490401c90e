"""Card pools and decks for prompt and response cards."""

from __future__ import annotations

import logging
import random
from pathlib import Path
from typing import Optional, Sequence

from cardtable.errors import EmptyPoolError

logger = logging.getLogger(__name__)

# Response value that lets the player write their own text
BLANK = "__BLANK__"

DEFAULT_RESPONSES: list[str] = ["Blank White", "Test Card 1", "Test Card 2"]
DEFAULT_PROMPTS: list[str] = ["Blank Black ___", "Test Black ___"]


class Deck:
    """Endless draw pile over a fixed pool.

    The working pile is a shuffled copy of the pool.  When it runs out a
    fresh copy is shuffled in, so cards repeat once a full cycle is drawn.
    """

    def __init__(
        self,
        pool: Sequence[str],
        rng: Optional[random.Random] = None,
        blank_probability: float = 0.0,
    ) -> None:
        self._pool: tuple[str, ...] = tuple(pool)
        self._rng = rng or random.Random()
        self.blank_probability = blank_probability
        self._cards: list[str] = []

    def shuffle(self) -> None:
        if not self._pool:
            raise EmptyPoolError()
        self._cards = list(self._pool)
        self._rng.shuffle(self._cards)

    def draw(self) -> str:
        if not self._pool:
            raise EmptyPoolError()
        # The blank roll does not consume a card from the pile
        if self.blank_probability and self._rng.random() < self.blank_probability:
            return BLANK
        if not self._cards:
            self.shuffle()
        return self._cards.pop()

    def deal(self, n: int) -> list[str]:
        return [self.draw() for _ in range(n)]

    @property
    def pool(self) -> tuple[str, ...]:
        return self._pool

    @property
    def remaining(self) -> int:
        return len(self._cards)


class CardSupplier:
    """Prompt and response decks for one table."""

    def __init__(
        self,
        prompts: Sequence[str],
        responses: Sequence[str],
        rng: Optional[random.Random] = None,
        blank_probability: float = 0.1,
    ) -> None:
        rng = rng or random.Random()
        self.prompts = Deck(prompts, rng)
        self.responses = Deck(responses, rng, blank_probability=blank_probability)

    def draw_prompt(self) -> str:
        return self.prompts.draw()

    def draw_response(self) -> str:
        return self.responses.draw()


def load_pool(path: str | Path, default: Sequence[str]) -> list[str]:
    """Read one card per line from *path*, falling back to *default*."""
    p = Path(path)
    try:
        lines = p.read_text(encoding="utf-8").splitlines()
    except FileNotFoundError:
        logger.warning("Card file %s missing, using built-in defaults", p)
        return list(default)
    except (OSError, UnicodeDecodeError):
        logger.warning("Card file %s unreadable, using built-in defaults", p, exc_info=True)
        return list(default)

    cards = [line.strip() for line in lines if line.strip()]
    if not cards:
        logger.warning("Card file %s is empty, using built-in defaults", p)
        return list(default)
    return cards
