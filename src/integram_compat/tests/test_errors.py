"""
Status codes and bodies produced by the legacy error policy.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from integram_compat.api.dispatch import RegisteredAction, actions
from integram_compat.api.exceptions import PermissionDenied
from integram_compat.database import get_store
from integram_compat.server import app
from integram_compat.tests.fixtures import TEST_DB


def _broken(ctx):
    raise RuntimeError("boom")


def _store_down(ctx):
    raise OperationalError("SELECT 1", {}, Exception("database is locked"))


def _forbidden(ctx):
    raise PermissionDenied("No access")


@pytest.fixture
def failing_client(store, monkeypatch):
    """Client with public actions that fail in different ways."""
    monkeypatch.setitem(actions._actions, "_broken", RegisteredAction(_broken, True))
    monkeypatch.setitem(actions._actions, "_store_down", RegisteredAction(_store_down, True))
    monkeypatch.setitem(actions._actions, "_forbidden", RegisteredAction(_forbidden, True))

    app.dependency_overrides[get_store] = lambda: store
    client = TestClient(app, raise_server_exceptions=False)
    try:
        yield client
    finally:
        app.dependency_overrides.clear()


class TestUnexpectedErrors:

    def test_api_request_gets_error_list(self, failing_client):
        response = failing_client.get(f"/{TEST_DB}/_broken?JSON")
        assert response.status_code == 200
        assert response.json() == [{"error": "Internal server error"}]

    def test_browser_request_gets_plain_500(self, failing_client):
        response = failing_client.get(f"/{TEST_DB}/_broken")
        assert response.status_code == 500
        assert response.text == "Internal server error"

    def test_exception_text_is_not_leaked(self, failing_client):
        assert "boom" not in failing_client.get(f"/{TEST_DB}/_broken?JSON").text


class TestMappedErrors:

    def test_store_failure(self, failing_client):
        response = failing_client.get(f"/{TEST_DB}/_store_down?JSON")
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_permission_denied(self, failing_client):
        api = failing_client.get(f"/{TEST_DB}/_forbidden?JSON")
        assert (api.status_code, api.json()) == (403, {"error": "No access"})

        browser = failing_client.get(f"/{TEST_DB}/_forbidden")
        assert (browser.status_code, browser.text) == (403, "No access")
