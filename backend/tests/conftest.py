import os
import sys

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Honour any externally provided DATABASE_URL but fall back to an in-memory
# SQLite database so local runs remain isolated.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENABLE_BACKGROUND_WORKERS", "false")
os.environ.setdefault("ALLOW_CREDENTIALS", "false")
os.environ.setdefault("ALLOWED_ORIGINS", "")

# Register every model with the declarative Base before tests create tables.
from deuce import db, models  # noqa: E402,F401


@pytest.fixture(autouse=True)
def reset_engine():
    """Drop any lazily created global engine between tests."""

    db.engine = None
    db.AsyncSessionLocal = None
    yield
    db.engine = None
    db.AsyncSessionLocal = None


@pytest.fixture
def file_db_url(tmp_path):
    """A file-backed database; each connection is independent (NullPool)."""

    return f"sqlite+aiosqlite:///{tmp_path / 'deuce.db'}"
