"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip the background scheduler when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest
from unittest.mock import AsyncMock, MagicMock

# Shared TestClient fixture so tests can use in-process requests without a running server.
# The lifespan is not entered, so no MongoDB connection is made; tests override get_db.
from fastapi.testclient import TestClient
from server import app


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app); overrides are cleared afterwards."""
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def mock_db():
    """MagicMock database whose collections answer like motor collections."""
    db = MagicMock()
    for name in ("plans", "users", "login_codes", "audit_logs"):
        collection = getattr(db, name)
        collection.find_one = AsyncMock(return_value=None)
        collection.insert_one = AsyncMock(return_value=MagicMock(inserted_id="x"))
        collection.update_one = AsyncMock(return_value=MagicMock(matched_count=1, modified_count=1))
        collection.update_many = AsyncMock(return_value=MagicMock(modified_count=0))
        collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=1))
    return db
