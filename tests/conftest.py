import os
import tempfile

# Must be set before safefleet.config is imported anywhere
_TEST_DIR = tempfile.mkdtemp(prefix="safefleet-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DIR, 'test.db')}"
os.environ["SEED_DIR"] = os.path.join(_TEST_DIR, "seed")
os.environ["LOG_FILE"] = ""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from safefleet.models import Base
from safefleet.store import LiveStore


@pytest.fixture
def live_store(tmp_path):
    """A LiveStore over its own empty SQLite database."""
    engine = create_engine(f"sqlite:///{tmp_path / 'store.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield LiveStore(sessionmaker(bind=engine))
    engine.dispose()
