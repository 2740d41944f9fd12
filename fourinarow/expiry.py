"""
Visibility rules for waiting games.

This is the only place the expiry rule lives. Mutations use it to decide
when a waiting game may be deleted, queries use it to hide the same games
without touching storage.
"""
import os
import time
from typing import Any, Optional

# Window after which an unjoined waiting game is considered abandoned.
WAITING_GAME_TTL_MS = int(os.getenv("WAITING_GAME_TTL_MS", str(5 * 60 * 1000)))


def now_ms() -> int:
    return int(time.time() * 1000)


def is_waiting_game_expired(game: Any, now: Optional[int] = None) -> bool:
    """True when ``game`` is a waiting game nobody joined within the TTL.

    A game with a second player is never expired, whatever its age.
    """
    if game is None:
        return False
    if game.status != "waiting":
        return False
    if game.player2:
        return False
    if now is None:
        now = now_ms()
    return now - game.created_at > WAITING_GAME_TTL_MS


def remaining_wait_ms(game: Any, now: Optional[int] = None) -> int:
    """Milliseconds left before a waiting game expires (0 otherwise)."""
    if game is None or game.status != "waiting":
        return 0
    if now is None:
        now = now_ms()
    return max(0, game.created_at + WAITING_GAME_TTL_MS - now)


def is_request_live(requested_at: Optional[int], now: Optional[int] = None) -> bool:
    """A rematch request counts only inside the same TTL window."""
    if requested_at is None:
        return False
    if now is None:
        now = now_ms()
    return now - requested_at <= WAITING_GAME_TTL_MS
