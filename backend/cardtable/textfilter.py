"""Word filter applied to free text (blank cards and chat)."""

from __future__ import annotations

import re
from typing import Iterable, Optional

DEFAULT_WORDS: tuple[str, ...] = (
    "ass",
    "asshole",
    "bastard",
    "bitch",
    "bollocks",
    "cock",
    "crap",
    "cunt",
    "dick",
    "fuck",
    "fucker",
    "fucking",
    "motherfucker",
    "piss",
    "prick",
    "pussy",
    "shit",
    "slut",
    "twat",
    "wanker",
    "whore",
)

# Mild words that stay readable at the table
ALLOWED_WORDS: frozenset[str] = frozenset({"hell", "damn", "god"})


class TextFilter:
    """Masks listed words with asterisks of the same length."""

    def __init__(self, words: Optional[Iterable[str]] = None) -> None:
        listed = {w.lower() for w in (DEFAULT_WORDS if words is None else words)}
        self.words = frozenset(listed - ALLOWED_WORDS)
        if self.words:
            alternation = "|".join(
                re.escape(w) for w in sorted(self.words, key=len, reverse=True)
            )
            self._pattern: Optional[re.Pattern[str]] = re.compile(
                rf"\b(?:{alternation})\b", re.IGNORECASE
            )
        else:
            self._pattern = None

    def clean(self, text: str) -> str:
        if self._pattern is None:
            return text
        return self._pattern.sub(lambda m: "*" * len(m.group(0)), text)


default_filter = TextFilter()
