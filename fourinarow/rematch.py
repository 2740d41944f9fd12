"""
Two-party rematch handshake.

Each participant of a finished game records a request timestamp on their
seat. Once both seats hold a live request (each within the waiting-game
TTL of the current call), a new active game is created for the same two
players and linked from the finished one. Creation happens at most once
per finished game: the link is written with a conditional update in the
same commit that inserts the new game.
"""
from typing import Optional

from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from . import errors, game, models
from .crud import ACTIVE, FINISHED, load_game_for_update, new_game, retry_on_stale_write, rollback_on_error
from .expiry import is_request_live, now_ms
from .logging_utils import get_logger

logger = get_logger("fourinarow.rematch")


def rematch_starter(gs: models.GameSession) -> str:
    """Who moves first in the rematch: the loser, or after a draw the seat that was not to move."""
    if gs.winner == game.TOKEN_P1:
        return gs.player2
    if gs.winner == game.TOKEN_P2:
        return gs.player1
    return gs.player2 if gs.current_player == gs.player1 else gs.player1


def _link_rematch(session: Session, game_id: str, new_game_id: str) -> bool:
    stmt = (
        sa_update(models.GameSession)
        .where(col(models.GameSession.id) == game_id)
        .where(col(models.GameSession.rematch_game_id).is_(None))
        .values(rematch_game_id=new_game_id)
    )
    return session.execute(stmt).rowcount == 1


@retry_on_stale_write
def request_rematch(session: Session, game_id: str, player: str, now: Optional[int] = None) -> dict:
    now = now_ms() if now is None else now
    with rollback_on_error(session):
        gs = load_game_for_update(session, game_id)
        if gs.status != FINISHED:
            raise errors.GameNotFinished()
        if not gs.player2:
            raise errors.MissingOpponent()
        seat = gs.seat_of(player)
        if seat is None:
            raise errors.NotParticipant()
        if gs.rematch_game_id:
            rematch_id = gs.rematch_game_id
            session.rollback()
            return {"new_game_id": rematch_id}

        if seat == 1:
            gs.rematch_request_p1_at = now
        else:
            gs.rematch_request_p2_at = now
        session.add(gs)

        if not (is_request_live(gs.rematch_request_p1_at, now) and is_request_live(gs.rematch_request_p2_at, now)):
            session.commit()
            logger.info("rematch_requested", extra={"game_id": game_id, "player": player})
            return {"waiting": True}

        rematch = new_game(
            session,
            gs.player1,
            gs.mode,
            now,
            status=ACTIVE,
            player2=gs.player2,
            current_player=rematch_starter(gs),
            previous_game_id=game_id,
        )
        # carry over names even if the profiles have gone away since
        rematch.player1_name = rematch.player1_name or gs.player1_name
        rematch.player2_name = rematch.player2_name or gs.player2_name
        rematch_id = rematch.id
        session.add(rematch)
        session.flush()
        if not _link_rematch(session, game_id, rematch_id):
            session.rollback()
            gs = load_game_for_update(session, game_id)
            rematch_id = gs.rematch_game_id
            session.rollback()
            return {"new_game_id": rematch_id}
        session.commit()

    logger.info("rematch_created", extra={"game_id": game_id, "new_game_id": rematch_id})
    return {"new_game_id": rematch_id}
