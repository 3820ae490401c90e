"""Rejections raised by the table engine.

Every error here rejects a single inbound action and leaves the table
untouched.  They subclass ValueError so transport code can treat them the
same way it treats any other bad request.
"""

from __future__ import annotations


class GameError(ValueError):
    code = "game_error"
    default_message = "Action rejected"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.default_message)


class InvalidNameError(GameError):
    code = "invalid_name"
    default_message = "Display name cannot be blank"


class EmptyPoolError(GameError):
    code = "empty_pool"
    default_message = "Card pool is empty"


class UnknownPlayerError(GameError):
    code = "unknown_player"
    default_message = "Player not found"


class AlreadySubmittedError(GameError):
    code = "already_submitted"
    default_message = "Already submitted this round"


class NotAcceptingError(GameError):
    code = "not_accepting"
    default_message = "Round is not accepting that action"


class JudgeCannotSubmitError(GameError):
    code = "judge_cannot_submit"
    default_message = "The judge does not submit"


class CardNotInHandError(GameError):
    code = "card_not_in_hand"
    default_message = "Card is not in your hand"


class MissingCustomTextError(GameError):
    code = "missing_custom_text"
    default_message = "Blank cards need custom text"


class NotJudgeError(GameError):
    code = "not_judge"
    default_message = "Only the judge can pick a winner"


class UnknownWinnerError(GameError):
    code = "unknown_winner"
    default_message = "No such submission this round"
