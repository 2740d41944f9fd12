import re
from typing import Optional

from sqlmodel import Session, select

from . import models
from .expiry import now_ms

USERNAME_RE = re.compile(r'^[a-zA-Z0-9_]+$')
USERNAME_MIN = 3
USERNAME_MAX = 20


def validate_username(raw: str) -> dict:
    username = (raw or "").strip()
    if len(username) < USERNAME_MIN or len(username) > USERNAME_MAX:
        return {"ok": False, "code": "length", "message": f"Username must be {USERNAME_MIN}-{USERNAME_MAX} characters"}
    if not USERNAME_RE.match(username):
        return {"ok": False, "code": "invalid_format", "message": "Only letters, numbers and underscore allowed"}
    return {"ok": True, "username": username}


def get_profile(session: Session, player_id: str) -> Optional[models.Profile]:
    return session.exec(
        select(models.Profile).where(models.Profile.player_id == player_id)
    ).first()


def display_name(session: Session, player_id: Optional[str]) -> Optional[str]:
    """Username for a player, if they picked one. Used only to denormalize names onto games."""
    if not player_id:
        return None
    profile = get_profile(session, player_id)
    return profile.username if profile else None


def set_username(session: Session, player_id: str, username: str) -> dict:
    """Create or rename a player's profile.

    Usernames are unique case-insensitively. Failures are returned as
    ``{"ok": False, "code": ...}`` rather than raised, so forms can show them.
    """
    result = validate_username(username)
    if not result["ok"]:
        return result
    username = result["username"]
    lower = username.lower()

    taken = session.exec(
        select(models.Profile).where(models.Profile.username_lower == lower)
    ).first()
    if taken and taken.player_id != player_id:
        return {"ok": False, "code": "taken", "message": "That username is already in use"}

    profile = get_profile(session, player_id)
    if profile:
        profile.username = username
        profile.username_lower = lower
        session.add(profile)
        session.commit()
        return {"ok": True, "updated": True, "username": username}

    session.add(models.Profile(player_id=player_id, username=username, username_lower=lower, created_at=now_ms()))
    session.commit()
    return {"ok": True, "created": True, "username": username}
