"""
Test fixtures for the test suite.

Every test gets its own SQLite in-memory row store seeded with the base
schema, a ``d``/``d`` user holding WRITE on the root and an ``app`` client
whose store dependency points at it.
"""

import pytest
from typing import Optional
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from integram_compat import basetypes
from integram_compat.auth.session import password_hash
from integram_compat.database import get_store
from integram_compat.schema import seed_rows
from integram_compat.store import Store

TEST_DB = "mydb"
ROLE_ID = int(basetypes.DEFAULT_ROLE)


def seed_user(store: Store, db: str, login: str, password: str, role_id: Optional[int] = None) -> int:
    """Insert a user row with its password hash and optional role link."""
    uid = store.insert(db, 1, 1, basetypes.USER, login)
    store.insert(db, uid, 1, basetypes.PASSWORD, password_hash(login, password, db))
    if role_id:
        store.insert(db, uid, 2, role_id, "")
    return uid


def seed_role(store: Store, db: str, name: str) -> int:
    return store.insert(db, 1, 1, basetypes.ROLE, name)


def seed_grant(store: Store, db: str, role_id: int, obj_id: int, level: str = "WRITE",
               export: bool = False) -> int:
    """ROLE_OBJECT entry granting ``level`` on ``obj_id``."""
    grant = store.insert(db, role_id, 1, basetypes.ROLE_OBJECT, str(obj_id))
    level_id = basetypes.WRITE_LEVEL if level == "WRITE" else basetypes.READ_LEVEL
    store.insert(db, grant, 1, level_id, "")
    if export:
        store.insert(db, grant, 2, basetypes.EXPORT, "1")
    return grant


@pytest.fixture(scope="function")
def test_engine():
    """Create a SQLite in-memory engine shared by every connection of a test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def store(test_engine) -> Store:
    """Row store with a seeded test database."""
    store = Store(test_engine)
    store.create(TEST_DB, seed_rows(TEST_DB))
    return store


@pytest.fixture
def user_id(store) -> int:
    """The d/d user of the test database, WRITE on the root."""
    seed_grant(store, TEST_DB, ROLE_ID, 1, "WRITE")
    return seed_user(store, TEST_DB, "d", "d", ROLE_ID)


@pytest.fixture
def reader_id(store) -> int:
    """A user whose role only reads."""
    role_id = seed_role(store, TEST_DB, "reader")
    seed_grant(store, TEST_DB, role_id, 1, "READ")
    return seed_user(store, TEST_DB, "reader", "secret", role_id)


@pytest.fixture
def client(store):
    """Test client whose requests go to the fixture store."""
    from fastapi.testclient import TestClient
    from integram_compat.server import app

    app.dependency_overrides[get_store] = lambda: store
    client = TestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.clear()


def login(client, db: str = TEST_DB, user: str = "d", password: str = "d") -> dict:
    response = client.post(f"/{db}/auth?JSON", data={"login": user, "pwd": password})
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def auth_client(client, user_id):
    """Client logged in as d/d; the session cookie is kept by the client."""
    body = login(client)
    client.headers.update({"Authorization": f"Bearer {body['token']}"})
    return client
