"""
Errors raised by game mutations.

Every error maps to an HTTP status so the API layer can surface it
without knowing about individual failure modes. ``Expired`` subclasses
``NotFound``: callers that only care whether the game is gone can catch
``NotFound`` and re-enter matchmaking.
"""


class GameError(Exception):
    code = "game_error"
    status_code = 400
    default_message = "Game error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class NotFound(GameError):
    code = "not_found"
    status_code = 404
    default_message = "Game not found"


class Expired(NotFound):
    code = "expired"
    status_code = 410
    default_message = "Game expired"


class Full(GameError):
    code = "full"
    status_code = 409
    default_message = "Game already has two players"


class NotActive(GameError):
    code = "not_active"
    status_code = 409
    default_message = "Game not active"


class NotYourTurn(GameError):
    code = "not_your_turn"
    status_code = 409
    default_message = "Not your turn"


class InvalidColumn(GameError):
    code = "invalid_column"
    status_code = 400
    default_message = "Invalid column"


class ColumnFull(GameError):
    code = "column_full"
    status_code = 409
    default_message = "Column full"


class NotParticipant(GameError):
    code = "not_participant"
    status_code = 403
    default_message = "Player is not part of this game"


class GameNotFinished(GameError):
    code = "game_not_finished"
    status_code = 409
    default_message = "Game is not finished"


class MissingOpponent(GameError):
    code = "missing_opponent"
    status_code = 409
    default_message = "Rematch needs two players"


class Conflict(GameError):
    code = "conflict"
    status_code = 409
    default_message = "Game changed while the request was processed, try again"
