"""
tests/conftest.py
"""
from __future__ import annotations

from typing import Generator

import pytest
from fastapi.testclient import TestClient

from diary_sync.auth import ApiKeyAuthenticator
from diary_sync.database import SyncDatabase
from diary_sync.main import app, get_db


@pytest.fixture
def db() -> SyncDatabase:
    """A fresh in-memory store per test."""
    return SyncDatabase("test_diary_sync", use_in_memory=True)


@pytest.fixture
def client(db: SyncDatabase) -> Generator[TestClient, None, None]:
    """
    Test client wired to the in-memory store, with the API key check disabled.
    """
    saved_authenticator = app.state.authenticator
    app.state.authenticator = ApiKeyAuthenticator("")
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.authenticator = saved_authenticator


@pytest.fixture
def secured_client(db: SyncDatabase) -> Generator[TestClient, None, None]:
    """Same as `client`, but every request must carry X-API-Key: s3cret."""
    saved_authenticator = app.state.authenticator
    app.state.authenticator = ApiKeyAuthenticator("s3cret")
    app.dependency_overrides[get_db] = lambda: db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
    app.state.authenticator = saved_authenticator
