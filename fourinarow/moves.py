from typing import List, Optional

from sqlalchemy import desc
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from . import errors, game, models
from .crud import (
    ACTIVE, FINISHED, WAITING, delete_if_expired, load_game_for_update, retry_on_stale_write, rollback_on_error,
)
from .expiry import now_ms
from .logging_utils import get_logger

logger = get_logger("fourinarow.moves")

MOVES_LIMIT = 1000


def _next_move_number(session: Session, game_id: str) -> int:
    last = session.exec(
        select(models.Move.move_number)
        .where(models.Move.game_id == game_id)
        .order_by(desc(models.Move.move_number))
        .limit(1)
    ).first()
    return (last or 0) + 1


def _advance(gs: models.GameSession, board, player: str) -> None:
    if gs.status == WAITING:
        gs.status = ACTIVE
    result = game.find_winner(board)
    if result:
        gs.status = FINISHED
        gs.winner, cells = result
        gs.set_winning_cells(cells)
    elif game.is_board_full(board):
        gs.status = FINISHED
    elif player == gs.player1:
        # a first move before anyone joined hands the turn back to player1
        gs.current_player = gs.player2 or gs.player1
    else:
        gs.current_player = gs.player1


@retry_on_stale_write
def play(session: Session, game_id: str, player: str, column: int, now: Optional[int] = None) -> models.GameSession:
    """Drop the current player's token into ``column``.

    Board, status, winner and the appended Move are committed together.
    """
    now = now_ms() if now is None else now
    with rollback_on_error(session):
        gs = load_game_for_update(session, game_id)
        if delete_if_expired(session, gs, now):
            session.commit()
            raise errors.Expired()
        if gs.status not in (WAITING, ACTIVE):
            raise errors.NotActive()
        if gs.current_player != player:
            raise errors.NotYourTurn()
        if isinstance(column, bool) or not isinstance(column, int) or column < 0 or column >= game.COLS:
            raise errors.InvalidColumn()

        board, _row = game.apply_move(gs.get_board(), column, game.token_for(player, gs.player1))
        session.add(models.Move(
            game_id=game_id,
            player=player,
            column=column,
            move_number=_next_move_number(session, game_id),
            created_at=now,
        ))
        gs.set_board(board)
        _advance(gs, board, player)
        session.add(gs)
        try:
            session.commit()
        except IntegrityError:
            # a concurrent move already took this move number
            raise errors.NotYourTurn()

    session.refresh(gs)
    logger.info("move_played", extra={"game_id": game_id, "player": player, "column": column})
    if gs.status == FINISHED:
        logger.info("game_finished", extra={"game_id": game_id, "winner": gs.winner})
    return gs


@retry_on_stale_write
def resign(session: Session, game_id: str, player: str) -> models.GameSession:
    """Concede an active game. The win always goes to the other seat."""
    with rollback_on_error(session):
        gs = load_game_for_update(session, game_id)
        if gs.status != ACTIVE:
            raise errors.NotActive()
        seat = gs.seat_of(player)
        if seat is None:
            raise errors.NotParticipant()
        gs.status = FINISHED
        if gs.player2:
            gs.winner = game.TOKEN_P2 if seat == 1 else game.TOKEN_P1
        session.add(gs)
        session.commit()

    session.refresh(gs)
    logger.info("game_finished", extra={"game_id": game_id, "player": player, "winner": gs.winner, "event": "resign"})
    return gs


def list_for_game(session: Session, game_id: str) -> List[models.Move]:
    return list(session.exec(
        select(models.Move)
        .where(models.Move.game_id == game_id)
        .order_by(models.Move.move_number)
        .limit(MOVES_LIMIT)
    ).all())
