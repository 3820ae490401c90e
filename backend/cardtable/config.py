"""Environment-driven configuration."""

from __future__ import annotations

import logging
import math
import os
from typing import Any, Mapping

from pydantic import ValidationError

from cardtable.models import TableSettings

logger = logging.getLogger(__name__)

ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")
WHITE_CARDS_FILE = os.getenv("WHITE_CARDS_FILE", "white_cards.txt")
BLACK_CARDS_FILE = os.getenv("BLACK_CARDS_FILE", "black_cards.txt")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# env var -> TableSettings field
_ENV_FIELDS = {
    "HAND_SIZE": "hand_size",
    "WIN_POINTS": "win_threshold",
    "MIN_PLAYERS": "min_players",
    "BLANK_PROBABILITY": "blank_probability",
    "REQUIRE_READY": "require_ready",
    "BOT_DELAY_MIN": "bot_delay_min",
    "BOT_DELAY_MAX": "bot_delay_max",
    "AFK_TIMEOUT": "afk_timeout",
    "NEXT_ROUND_DELAY": "next_round_delay",
    "AUTO_RESET_DELAY": "auto_reset_delay",
}


def _env_interval(
    name: str, default: float, environ: Mapping[str, str] | None = None
) -> float:
    """Read a positive, finite number of seconds from the environment."""
    environ = os.environ if environ is None else environ
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        value = None
    if value is None or not math.isfinite(value) or value <= 0:
        logger.warning("Invalid %s=%r, using %s", name, raw, default)
        return default
    return value


KEEPALIVE_INTERVAL = _env_interval("KEEPALIVE_INTERVAL", 300.0)


def load_settings(environ: dict[str, str] | None = None) -> TableSettings:
    """Build TableSettings from the environment, skipping invalid values."""
    environ = os.environ if environ is None else environ
    defaults = TableSettings()
    values: dict[str, Any] = {}

    for env_name, field in _ENV_FIELDS.items():
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            # Validate one field at a time so a single bad value keeps its default
            TableSettings(**{field: raw})
        except ValidationError:
            logger.warning(
                "Invalid %s=%r, using default %r",
                env_name,
                raw,
                getattr(defaults, field),
            )
            continue
        values[field] = raw

    try:
        settings = TableSettings(**values)
    except ValidationError:
        logger.warning("Inconsistent table settings, using defaults", exc_info=True)
        return defaults

    if settings.bot_delay_max < settings.bot_delay_min:
        settings = settings.model_copy(update={"bot_delay_max": settings.bot_delay_min})
    return settings
