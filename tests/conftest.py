# tests/conftest.py
"""Shared fixtures: in-memory SQLite session and an httpx MockTransport provider fake."""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Must be set before app.config is imported anywhere
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["POLLING_ENABLED"] = "false"
os.environ["API_KEY"] = ""

import pytest
from unittest.mock import AsyncMock

from app.database import Base, SessionLocal, create_tables, engine
from app.services.branch_router import BranchDeviceRouter
from app.services.credential_store import upsert_credential
from app.services.token_manager import TokenManager

from tests.fakes import BASE_URL, BRANCH, FakeProvider


@pytest.fixture
def db():
    create_tables()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def tokens(provider):
    return TokenManager(skew_seconds=60, retry_attempts=3, retry_base_delay=0.5,
                        transport=provider.transport, sleep=AsyncMock())


@pytest.fixture
def router(tokens, provider):
    return BranchDeviceRouter(tokens=tokens, transport=provider.transport)


@pytest.fixture
def credential(db, tokens):
    return upsert_credential(db, BRANCH, BASE_URL, "app-key", "app-secret-123456", tokens=tokens)
