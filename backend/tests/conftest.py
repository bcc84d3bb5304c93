"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.pop("CLERK_JWT_KEY", None)

import pytest
from unittest.mock import AsyncMock, MagicMock

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app
from auth import create_access_token


def auth_headers(user_id: str = "user_123", role: str = "customer", email: str = "buyer@example.com") -> dict:
    token = create_access_token({"sub": user_id, "email": email, "role": role})
    return {"Authorization": f"Bearer {token}"}


def mock_collection(**methods) -> MagicMock:
    """Collection mock with async CRUD methods; keyword args set return values."""
    coll = MagicMock()
    for name in ("find_one", "insert_one", "update_one", "update_many", "delete_one",
                 "count_documents", "find_one_and_update"):
        setattr(coll, name, AsyncMock(return_value=methods.get(name)))
    return coll


def mock_cursor(docs) -> MagicMock:
    """find() cursor supporting the sort/skip/limit chain and to_list."""
    cursor = MagicMock()
    cursor.sort.return_value = cursor
    cursor.skip.return_value = cursor
    cursor.limit.return_value = cursor
    cursor.to_list = AsyncMock(return_value=list(docs))
    return cursor


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def customer_headers():
    return auth_headers()


@pytest.fixture
def admin_headers():
    return auth_headers(user_id="admin_1", role="admin", email="admin@example.com")


@pytest.fixture
def viewer_headers():
    return auth_headers(user_id="viewer_1", role="viewer", email="viewer@example.com")
