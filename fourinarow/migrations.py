"""
Schema migrations for the game store.

Tables come from ``SQLModel.metadata.create_all``; migrations add the
composite indexes behind the lobby and per-player queries, and are recorded
so each one runs once per database.
"""

from sqlmodel import SQLModel, Field, text, Session, select
from typing import Optional
from datetime import datetime, timezone
import logging

logger = logging.getLogger(__name__)


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


MIGRATIONS = [
    ("001_lobby_indexes", """
    -- list: newest first, auto-match and cleanup: waiting games by mode and age
    CREATE INDEX IF NOT EXISTS idx_game_status_created ON game(status, created_at);
    CREATE INDEX IF NOT EXISTS idx_game_status_mode_created ON game(status, mode, created_at)
    """),
    ("002_player_indexes", """
    -- activeForPlayer / waitingAutoForPlayer look games up by either seat
    CREATE INDEX IF NOT EXISTS idx_game_player1_status ON game(player1, status);
    CREATE INDEX IF NOT EXISTS idx_game_player2_status ON game(player2, status)
    """),
    ("003_move_order_index", """
    CREATE INDEX IF NOT EXISTS idx_move_game_number ON move(game_id, move_number)
    """),
]


def has_migration_been_applied(engine, migration_name: str) -> bool:
    Migration.metadata.create_all(engine, tables=[Migration.__table__])
    with Session(engine) as session:
        result = session.exec(
            select(Migration).where(Migration.name == migration_name)
        ).first()
        return result is not None


def apply_migration(engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration and record it. Returns False if it was already applied."""
    if has_migration_been_applied(engine, migration_name):
        logger.info(f"Migration {migration_name} already applied, skipping")
        return False

    logger.info(f"Applying migration: {migration_name}")
    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                lines = [ln for ln in statement.strip().splitlines() if not ln.strip().startswith('--')]
                sql = "\n".join(lines).strip()
                if sql:
                    session.execute(text(sql))
            session.add(Migration(name=migration_name, applied_at=datetime.now(timezone.utc)))
            session.commit()
            logger.info(f"Migration {migration_name} applied successfully")
        except Exception as e:
            session.rollback()
            logger.error(f"Failed to apply migration {migration_name}: {e}")
            raise
    return True


def run_migrations(engine):
    """Run all pending migrations; returns the names applied by this call."""
    applied = [name for name, sql in MIGRATIONS if apply_migration(engine, name, sql)]
    logger.info("All migrations completed")
    return applied


if __name__ == "__main__":
    from .db import make_engine

    logging.basicConfig(level=logging.INFO)
    run_migrations(make_engine())
