import os

from sqlmodel import SQLModel, Session, create_engine

from . import models  # noqa: F401  (registers tables on SQLModel.metadata)
from .logging_utils import get_logger

logger = get_logger("fourinarow.db")

DEFAULT_DATABASE_URL = "sqlite:///./fourinarow.db"

engine = None


def make_engine(url: str = ""):
    url = url or os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    # pooled connections for server databases
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=1800,
    )


def init_db(url: str = ""):
    """Create the engine and tables, and make the engine the module default."""
    global engine
    engine = make_engine(url)
    SQLModel.metadata.create_all(engine)
    logger.info("db_initialized", extra={"url": str(engine.url)})
    return engine


def get_session():
    # simple dependency that yields a session
    with Session(engine) as session:
        yield session


if __name__ == '__main__':
    init_db()
