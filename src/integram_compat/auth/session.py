"""
Legacy credential scheme.

Passwords are ``sha1(SALT + LOGIN + db + password)``. A session token is an
md5 of the current time and a random number, stored as a TOKEN child of the
user row. The XSRF value is a 22 character prefix of a salted sha1 over the
token; it is recomputed from the token and written back to the XSRF child
whenever a session is issued.
"""

import time
import random
import hashlib
import logging
from typing import Optional, Tuple

from sqlalchemy import and_, select

from integram_compat import basetypes
from integram_compat.settings import settings
from integram_compat.store import Store
from integram_compat.permissions.grants import GrantResolver
from integram_compat.permissions.principal import Principal

logger = logging.getLogger(__name__)

COOKIE_MAX_AGE = 30 * 24 * 60 * 60

def sha1(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()

def md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()

def salt(a: str, b: str, db: str) -> str:
    return settings.SALT + a.upper() + db + b

def password_hash(username: str, password: str, db: str) -> str:
    return sha1(salt(username, password, db))

def xsrf(a: str, b: str, db: str) -> str:
    """
    Anti-forgery value. A normal login passes ``(token, db)`` so the
    database name appears twice; OTP logins pass ``(token, email)`` and
    secret logins ``(secret, username)``.
    """
    return sha1(salt(a, b, db))[:22]

def generate_token() -> str:
    return md5(f"{time.time()}{random.random()}")

def admin_session(db: str) -> Optional[Tuple[str, str]]:
    """Deterministic token and xsrf of the admin override, if configured."""
    if not settings.ADMIN_HASH:
        return None
    return sha1(settings.ADMIN_HASH + db), sha1(db + settings.ADMIN_HASH)

def admin_override(login: str, password: str, db: str) -> Optional[Tuple[str, str]]:
    if login != "admin" or not settings.ADMIN_HASH:
        return None

    presented = sha1(sha1(settings.SERVER_NAME + db + password) + db)
    if presented != sha1(settings.ADMIN_HASH + db):
        return None

    return admin_session(db)

class SessionEngine:
    """Token and credential lookups for one legacy database."""

    def __init__(self, store: Store, db: str):
        self.store = store
        self.db = db
        self.table = store.table(db)

    def _user_columns(self):
        z = self.table
        user = z.alias("user")
        pwd = z.alias("pwd")
        token = z.alias("token")
        xsrf = z.alias("xsrf")
        columns = (
            user.c.id.label("uid"),
            user.c.val.label("username"),
            pwd.c.val.label("password_hash"),
            pwd.c.id.label("pwd_id"),
            token.c.val.label("token"),
            token.c.id.label("token_id"),
            xsrf.c.val.label("xsrf"),
            xsrf.c.id.label("xsrf_id"),
        )
        joins = (
            user.outerjoin(pwd, and_(pwd.c.up == user.c.id, pwd.c.t == basetypes.PASSWORD))
            .outerjoin(token, and_(token.c.up == user.c.id, token.c.t == basetypes.TOKEN))
            .outerjoin(xsrf, and_(xsrf.c.up == user.c.id, xsrf.c.t == basetypes.XSRF))
        )
        return user, token, columns, joins

    def find_by_login(self, login: str):
        user, _, columns, joins = self._user_columns()
        return self.store.fetchone(
            select(*columns).select_from(joins)
            .where(user.c.val == login, user.c.t == basetypes.USER)
            .limit(1)
        )

    def find_by_token_value(self, token_value: str):
        user, token, columns, joins = self._user_columns()
        return self.store.fetchone(
            select(*columns).select_from(joins)
            .where(token.c.val == token_value, user.c.t == basetypes.USER)
            .limit(1)
        )

    def find_by_secret(self, secret: str):
        z = self.table
        user, _, columns, joins = self._user_columns()
        sec = z.alias("sec")
        joins = joins.join(sec, and_(sec.c.up == user.c.id, sec.c.t == basetypes.SECRET, sec.c.val == secret))
        return self.store.fetchone(
            select(*columns).select_from(joins).where(user.c.t == basetypes.USER).limit(1)
        )

    def find_for_reset(self, login: str):
        z = self.table
        user = z.alias("u")
        email = z.alias("email")
        phone = z.alias("phone")
        return self.store.fetchone(
            select(user.c.id.label("uid"), user.c.val.label("uval"),
                   email.c.val.label("email"), phone.c.val.label("phone"))
            .select_from(
                user.outerjoin(email, and_(email.c.up == user.c.id, email.c.t == basetypes.EMAIL))
                .outerjoin(phone, and_(phone.c.up == user.c.id, phone.c.t == basetypes.PHONE))
            )
            .where((user.c.val == login) | (email.c.val == login), user.c.t == basetypes.USER)
            .limit(1)
        )

    def find_by_code(self, login: str, code: str):
        """User whose current token starts with the one-time code."""
        z = self.table
        user = z.alias("u")
        token = z.alias("tok")
        xsrf = z.alias("xsrf")
        return self.store.fetchone(
            select(user.c.id.label("uid"), token.c.id.label("tok_id"), xsrf.c.id.label("xsrf_id"))
            .select_from(
                user.join(token, and_(token.c.up == user.c.id, token.c.t == basetypes.TOKEN))
                .outerjoin(xsrf, and_(xsrf.c.up == user.c.id, xsrf.c.t == basetypes.XSRF))
            )
            .where(user.c.t == basetypes.USER, user.c.val == login, token.c.val.like(f"{code}%"))
            .limit(1)
        )

    def principal(self, token_value: Optional[str]) -> Optional[Principal]:
        """Resolve a presented token to its user, role and grants."""

        if not token_value:
            return None

        admin = admin_session(self.db)
        if admin is not None and token_value == admin[0]:
            return Principal(db=self.db, user_id=0, username="admin", token=token_value,
                             xsrf=admin[1], role="admin")

        z = self.table
        user = z.alias("u")
        token = z.alias("tok")
        xsrf = z.alias("xsrf")
        link = z.alias("r")
        role_def = z.alias("role_def")
        roles = link.join(role_def, and_(role_def.c.id == link.c.t, role_def.c.t == basetypes.ROLE))

        row = self.store.fetchone(
            select(
                user.c.id.label("uid"),
                user.c.val.label("username"),
                xsrf.c.val.label("xsrf"),
                role_def.c.id.label("role_id"),
                role_def.c.val.label("role"),
            )
            .select_from(
                user.join(token, and_(token.c.up == user.c.id, token.c.t == basetypes.TOKEN,
                                      token.c.val == token_value))
                .outerjoin(xsrf, and_(xsrf.c.up == user.c.id, xsrf.c.t == basetypes.XSRF))
                .outerjoin(roles, link.c.up == user.c.id)
            )
            .where(user.c.t == basetypes.USER)
            .limit(1)
        )

        if row is None:
            return None

        return Principal(
            db=self.db,
            user_id=row.uid,
            username=row.username,
            token=token_value,
            xsrf=row.xsrf,
            role_id=row.role_id,
            role=row.role or "",
            grants=GrantResolver(self.store, self.db).load(row.role_id),
        )

    def ensure_token(self, uid: int, current: Optional[str]) -> str:
        """Reuse the user's token or issue a first one."""
        if current:
            return current
        token = generate_token()
        self.store.insert(self.db, uid, 1, basetypes.TOKEN, token)
        return token

    def replace_token(self, uid: int, token_id: Optional[int]) -> str:
        token = generate_token()
        if token_id:
            self.store.update_value(self.db, token_id, token)
        else:
            self.store.insert(self.db, uid, 1, basetypes.TOKEN, token)
        return token

    def save_xsrf(self, uid: int, xsrf_id: Optional[int], value: str) -> None:
        if xsrf_id:
            self.store.update_value(self.db, xsrf_id, value)
        else:
            self.store.insert(self.db, uid, 1, basetypes.XSRF, value)

    def refresh_xsrf(self, uid: int, token: str, current: Optional[str] = None,
                     xsrf_id: Optional[int] = None) -> str:
        """Recompute the session XSRF value from the token and store it."""
        value = xsrf(token, self.db, self.db)
        if value != current:
            if xsrf_id is None:
                existing = self.store.requisite(self.db, uid, basetypes.XSRF)
                xsrf_id = existing.id if existing is not None else None
            self.save_xsrf(uid, xsrf_id, value)
        return value

    def revoke(self, token_value: str) -> int:
        z = self.table
        removed = self.store.execute(
            z.delete().where(z.c.t == basetypes.TOKEN, z.c.val == token_value)
        )
        logger.info(f"Revoked {removed} session token(s) in {self.db}")
        return removed
