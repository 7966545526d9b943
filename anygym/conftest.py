# anygym/conftest.py
import os
import sys
import tempfile
import pytest
from pathlib import Path

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Tests run against a throwaway SQLite file; set before settings are first imported
_DB_DIR = tempfile.mkdtemp(prefix="anygym-tests-")
os.environ["TEST_DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'anygym.db')}"
os.environ["AUTH_ALLOW_HEADER_FALLBACK"] = "true"
os.environ.setdefault("AUTH_JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("ENV", "test")


@pytest.fixture(scope="session", autouse=True)
def create_tables():
    """Create all tables once per test session."""
    from anygym.core.database import init_engine, create_all_tables, drop_all_tables

    init_engine()
    create_all_tables()
    yield
    drop_all_tables()


@pytest.fixture(scope="function", autouse=True)
def reset_db():
    """
    Empty every table before each test.

    Deletes in reverse dependency order so foreign keys never dangle.
    """
    from anygym.core.database import get_engine, metadata

    with get_engine().begin() as conn:
        for table in reversed(metadata.sorted_tables):
            conn.execute(table.delete())
    yield


@pytest.fixture
def header_auth(monkeypatch):
    """Allow the X-User-Id fallback regardless of the surrounding environment."""
    from anygym.core.config import settings

    monkeypatch.setattr(settings, "AUTH_ALLOW_HEADER_FALLBACK", True)
    yield


@pytest.fixture
def client(header_auth):
    from fastapi.testclient import TestClient
    from anygym.main import app

    # No lifespan: tables are created above and billing is injected per test
    app.state.billing = None
    yield TestClient(app)
    app.state.billing = None
