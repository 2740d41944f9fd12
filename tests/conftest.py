import sys
from pathlib import Path
import pytest
from sqlmodel import SQLModel, Session, create_engine

# Ensure project root is on sys.path so tests can import the `fourinarow` package
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

# Fixed clock for tests: games are created at T0 unless a test says otherwise
T0 = 1_700_000_000_000
MINUTE = 60 * 1000


@pytest.fixture
def engine(tmp_path):
	from fourinarow import db
	engine = create_engine(f"sqlite:///{tmp_path / 'games.db'}", connect_args={"check_same_thread": False})
	SQLModel.metadata.create_all(engine)
	db.engine = engine
	return engine


@pytest.fixture
def session(engine):
	with Session(engine) as s:
		yield s


@pytest.fixture(autouse=True)
def reset_app_state():
	# Clear in-memory rate limiter and sockets between tests
	try:
		import fourinarow.main as app_main
		app_main._RATE_LIMIT_STORE.clear()
		app_main._WS_CONNECTIONS.clear()
	except Exception:
		pass
	yield
