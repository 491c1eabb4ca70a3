import re

from integram_compat import basetypes
from integram_compat.auth import session
from integram_compat.auth.session import SessionEngine, password_hash, sha1, xsrf
from integram_compat.settings import settings
from integram_compat.tests.fixtures import TEST_DB


def test_password_hash_matches_legacy_digest():
    assert password_hash("d", "d", "mydb") == sha1(settings.SALT + "D" + "mydb" + "d")


def test_xsrf_is_deterministic_hex():
    first = xsrf("0123456789abcdef", "mydb", "mydb")
    assert first == xsrf("0123456789abcdef", "mydb", "mydb")
    assert re.fullmatch(r"[0-9a-f]{22}", first)


def test_xsrf_depends_on_token():
    assert xsrf("token-a", "mydb", "mydb") != xsrf("token-b", "mydb", "mydb")


def test_admin_override_disabled_without_hash(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_HASH", None)
    assert session.admin_override("admin", "whatever", "mydb") is None


def test_admin_override_derives_stable_token(monkeypatch):
    monkeypatch.setattr(settings, "SERVER_NAME", "host")
    monkeypatch.setattr(settings, "ADMIN_HASH", sha1("host" + "mydb" + "pw"))

    assert session.admin_override("admin", "wrong", "mydb") is None
    assert session.admin_override("d", "pw", "mydb") is None

    token, admin_xsrf = session.admin_override("admin", "pw", "mydb")
    assert (token, admin_xsrf) == session.admin_session("mydb")
    assert session.admin_override("admin", "pw", "mydb") == (token, admin_xsrf)


class TestSessionEngine:

    def test_unknown_token_has_no_principal(self, store, user_id):
        assert SessionEngine(store, TEST_DB).principal("nope") is None

    def test_issued_token_resolves_user_role_and_grants(self, store, user_id):
        sessions = SessionEngine(store, TEST_DB)
        token = sessions.ensure_token(user_id, None)

        principal = sessions.principal(token)

        assert principal.user_id == user_id
        assert principal.username == "d"
        assert principal.role == "user"
        assert principal.grants.level(1) == "WRITE"

    def test_revoke_removes_token(self, store, user_id):
        sessions = SessionEngine(store, TEST_DB)
        token = sessions.ensure_token(user_id, None)

        assert sessions.revoke(token) == 1
        assert sessions.principal(token) is None

    def test_refresh_xsrf_creates_then_rewrites_row(self, store, user_id):
        sessions = SessionEngine(store, TEST_DB)
        token = sessions.ensure_token(user_id, None)
        expected = xsrf(token, TEST_DB, TEST_DB)

        assert sessions.refresh_xsrf(user_id, token) == expected
        row = store.requisite(TEST_DB, user_id, basetypes.XSRF)
        assert row.val == expected

        store.update_value(TEST_DB, row.id, "stale")
        assert sessions.refresh_xsrf(user_id, token, current="stale") == expected
        assert store.get(TEST_DB, row.id).val == expected
        assert len(store.children(TEST_DB, user_id, t=basetypes.XSRF)) == 1
