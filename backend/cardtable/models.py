"""Pydantic models for table settings, snapshots and outbound events."""

from __future__ import annotations

from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class Phase(str, Enum):
    LOBBY = "lobby"
    ROUND_ACTIVE = "round_active"
    JUDGING = "judging"
    GAME_OVER = "game_over"


class TableSettings(BaseModel):
    hand_size: int = Field(default=10, ge=1, le=20)
    win_threshold: int = Field(default=10, ge=1)
    min_players: int = Field(default=3, ge=3)
    name_max_length: int = Field(default=15, ge=1)
    custom_text_max_length: int = Field(default=140, ge=1)
    chat_max_length: int = Field(default=200, ge=1)
    blank_probability: float = Field(default=0.1, ge=0.0, le=1.0)
    require_ready: bool = True  # False = start as soon as min_players join
    bot_delay_min: float = Field(default=2.0, ge=0)
    bot_delay_max: float = Field(default=4.0, ge=0)
    afk_timeout: float = Field(default=125.0, ge=0)  # seconds, 0 = disabled
    next_round_delay: float = Field(default=4.0, ge=0)
    auto_reset_delay: float = Field(default=15.0, ge=0)  # seconds, 0 = manual reset only
    max_bots_per_request: int = Field(default=5, ge=1)
    bot_placeholder: str = "Bot's funny joke"


# --- Request models ---


class AddBotsRequest(BaseModel):
    count: int = Field(default=1, ge=1)  # capped by TableSettings.max_bots_per_request


# --- Response / state models ---


class PlayerInfo(BaseModel):
    """Public-facing player information (no hand)."""

    id: str
    name: str
    score: int = 0
    is_judge: bool = False
    has_submitted: bool = False
    is_bot: bool = False
    ready: bool = False


class SubmissionView(BaseModel):
    """A submission as the table sees it: an opaque handle and the text."""

    id: str
    text: str


class GameSnapshot(BaseModel):
    """Full table state sent to clients after every mutation."""

    phase: Phase
    players: list[PlayerInfo]
    prompt_card: Optional[str] = None
    submissions: list[SubmissionView] = []
    submission_count: int = 0
    judge_name: str = "..."
    round_number: int = 0
    win_threshold: int
    min_players: int
    ready_count: int = 0
    afk_deadline: Optional[float] = None
    round_started_at: Optional[float] = None
    hand: list[str] = []  # viewer's own hand only


class CommandResult(BaseModel):
    ok: bool = True
    error: Optional[str] = None
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    detail: str


# --- Outbound events ---


class WinnerAnnounced(BaseModel):
    type: Literal["announce"] = "announce"
    name: str


class GameOver(BaseModel):
    type: Literal["final_win"] = "final_win"
    name: str


class ForceReload(BaseModel):
    type: Literal["force_reload"] = "force_reload"
    reason: str


class PlayerEvicted(BaseModel):
    type: Literal["evicted"] = "evicted"
    player_id: str
    reason: str


TableEvent = Union[WinnerAnnounced, GameOver, ForceReload, PlayerEvicted]
