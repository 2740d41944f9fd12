"""
Game lifecycle and lobby queries.

Each mutation here runs as one transaction on a single game row and
commits once. Queries never write: expired waiting games are filtered out
with the same predicate mutations use to delete them, so a game can be
invisible to readers while it still sits in the table until a join or a
sweep removes it.
"""
import functools
import uuid
from contextlib import contextmanager
from typing import List, Optional

from sqlalchemy import desc, or_, update as sa_update
from sqlalchemy.orm.exc import StaleDataError
from sqlmodel import Session, select, col

from . import errors, game, models
from .expiry import is_waiting_game_expired, now_ms
from .logging_utils import get_logger
from .profiles import display_name

logger = get_logger("fourinarow.crud")

WAITING = models.GameStatus.WAITING.value
ACTIVE = models.GameStatus.ACTIVE.value
FINISHED = models.GameStatus.FINISHED.value

AUTO_MATCH_SCAN_LIMIT = 20
CLEANUP_SCAN_LIMIT = 500
LIST_SCAN_LIMIT = 50
LIST_LIMIT = 20
STALE_WRITE_ATTEMPTS = 3


def new_game(
    session: Session,
    player1: str,
    mode: str,
    now: int,
    status: str = WAITING,
    player2: Optional[str] = None,
    current_player: Optional[str] = None,
    previous_game_id: Optional[str] = None,
) -> models.GameSession:
    """Build (but do not add) a game with an empty board."""
    gs = models.GameSession(
        id=str(uuid.uuid4()),
        created_at=now,
        status=status,
        mode=models.GameMode(mode).value,
        player1=player1,
        player2=player2,
        player1_name=display_name(session, player1),
        player2_name=display_name(session, player2),
        current_player=current_player or player1,
        previous_game_id=previous_game_id,
    )
    gs.set_board(game.empty_board())
    return gs


@contextmanager
def rollback_on_error(session: Session):
    """A failed mutation commits nothing."""
    try:
        yield
    except errors.GameError:
        session.rollback()
        raise


def retry_on_stale_write(fn):
    """Re-run a mutation from a fresh read when its game row changed under it.

    Game rows are version-checked on write, so a caller that loaded a row
    another transaction has since committed gets ``StaleDataError`` instead
    of overwriting the newer state.
    """
    @functools.wraps(fn)
    def wrapper(session: Session, *args, **kwargs):
        for attempt in range(1, STALE_WRITE_ATTEMPTS + 1):
            try:
                return fn(session, *args, **kwargs)
            except StaleDataError:
                session.rollback()
                logger.info("stale_write_retry", extra={"event": fn.__name__, "attempt": attempt})
        raise errors.Conflict()
    return wrapper


def load_game_for_update(session: Session, game_id: str) -> models.GameSession:
    gs = session.get(models.GameSession, game_id, with_for_update=True)
    if not gs:
        raise errors.NotFound()
    return gs


def delete_if_expired(session: Session, gs: models.GameSession, now: int) -> bool:
    """Delete an abandoned waiting game. Only safe because nobody ever joined it."""
    if not is_waiting_game_expired(gs, now):
        return False
    logger.info("expired_game_deleted", extra={"game_id": gs.id, "player": gs.player1})
    session.delete(gs)
    return True


def _claim_second_seat(session: Session, game_id: str, player: str, name: Optional[str]) -> bool:
    # Conditional update: when two callers race for the same seat only one row update succeeds.
    stmt = (
        sa_update(models.GameSession)
        .where(col(models.GameSession.id) == game_id)
        .where(col(models.GameSession.player2).is_(None))
        .where(col(models.GameSession.status) != FINISHED)
        .values(
            player2=player,
            player2_name=name,
            status=ACTIVE,
            version=models.GameSession.version + 1,
        )
        .execution_options(synchronize_session=False)
    )
    return session.execute(stmt).rowcount == 1


def create_game(session: Session, player: str, mode: str = "friend", now: Optional[int] = None) -> models.GameSession:
    now = now_ms() if now is None else now
    gs = new_game(session, player, mode, now)
    session.add(gs)
    session.commit()
    session.refresh(gs)
    logger.info("game_created", extra={"game_id": gs.id, "player": player, "mode": gs.mode})
    return gs


@retry_on_stale_write
def join_game(session: Session, game_id: str, player: str, now: Optional[int] = None) -> dict:
    """Take the second seat of a game.

    Rejoining a game the player already sits in is not an error and
    returns ``{"already_in": True}``.
    """
    now = now_ms() if now is None else now
    with rollback_on_error(session):
        gs = load_game_for_update(session, game_id)
        if delete_if_expired(session, gs, now):
            session.commit()
            raise errors.Expired()
        if gs.seat_of(player):
            session.rollback()
            return {"already_in": True}
        if gs.player2:
            raise errors.Full()
        if gs.status == FINISHED:
            raise errors.NotActive()
        if not _claim_second_seat(session, game_id, player, display_name(session, player)):
            raise errors.Full()
        session.commit()
    logger.info("game_joined", extra={"game_id": game_id, "player": player})
    return {"joined": True}


@retry_on_stale_write
def auto_match(session: Session, player: str, now: Optional[int] = None) -> dict:
    """Pair ``player`` with a stranger's waiting auto game, or open a new one.

    The scan is bounded and best-effort. Expired candidates met on the way
    are deleted. If another caller wins the race for the chosen candidate we
    do not retry; the player gets their own waiting game instead.
    """
    now = now_ms() if now is None else now
    candidates = session.exec(
        select(models.GameSession)
        .where(models.GameSession.status == WAITING)
        .where(models.GameSession.mode == models.GameMode.AUTO.value)
        .order_by(models.GameSession.created_at)
        .limit(AUTO_MATCH_SCAN_LIMIT)
    ).all()

    name = display_name(session, player)
    for candidate in candidates:
        if delete_if_expired(session, candidate, now):
            continue
        if candidate.player1 == player or candidate.player2:
            continue
        game_id = candidate.id
        if _claim_second_seat(session, game_id, player, name):
            session.commit()
            logger.info("auto_match", extra={"game_id": game_id, "player": player, "matched": True})
            return {"game_id": game_id, "matched": True}
        break

    gs = new_game(session, player, models.GameMode.AUTO.value, now)
    session.add(gs)
    session.commit()
    game_id = gs.id
    logger.info("auto_match", extra={"game_id": game_id, "player": player, "matched": False})
    return {"game_id": game_id, "matched": False}


@retry_on_stale_write
def cleanup_expired_waiting(session: Session, now: Optional[int] = None) -> dict:
    now = now_ms() if now is None else now
    waiting = session.exec(
        select(models.GameSession)
        .where(models.GameSession.status == WAITING)
        .limit(CLEANUP_SCAN_LIMIT)
    ).all()
    deleted = 0
    for gs in waiting:
        if delete_if_expired(session, gs, now):
            deleted += 1
    session.commit()
    logger.info("cleanup_sweep", extra={"deleted": deleted})
    return {"deleted": deleted}


# Queries: read-only, same expiry rule as the mutations above.

def get_game(session: Session, game_id: str, now: Optional[int] = None) -> Optional[models.GameSession]:
    gs = session.get(models.GameSession, game_id)
    if gs is None or is_waiting_game_expired(gs, now):
        return None
    return gs


def list_games(session: Session, now: Optional[int] = None) -> List[models.GameSession]:
    """Most recent visible games, newest first."""
    now = now_ms() if now is None else now
    recent = session.exec(
        select(models.GameSession)
        .order_by(desc(models.GameSession.created_at))
        .limit(LIST_SCAN_LIMIT)
    ).all()
    return [gs for gs in recent if not is_waiting_game_expired(gs, now)][:LIST_LIMIT]


def active_for_player(session: Session, player: str) -> List[models.GameSession]:
    return list(session.exec(
        select(models.GameSession)
        .where(models.GameSession.status == ACTIVE)
        .where(or_(models.GameSession.player1 == player, models.GameSession.player2 == player))
        .order_by(desc(models.GameSession.created_at))
    ).all())


def waiting_auto_for_player(session: Session, player: str, now: Optional[int] = None) -> Optional[models.GameSession]:
    """The player's own open auto game, if one is still waiting for an opponent."""
    now = now_ms() if now is None else now
    rows = session.exec(
        select(models.GameSession)
        .where(models.GameSession.status == WAITING)
        .where(models.GameSession.mode == models.GameMode.AUTO.value)
        .where(models.GameSession.player1 == player)
        .where(col(models.GameSession.player2).is_(None))
        .order_by(desc(models.GameSession.created_at))
    ).all()
    for gs in rows:
        if not is_waiting_game_expired(gs, now):
            return gs
    return None
