import re
import math
import time
import logging
from urllib.parse import quote

from fastapi.responses import JSONResponse, PlainTextResponse, Response
from jose import jwt, JWTError, ExpiredSignatureError
from sqlalchemy import and_, select

from integram_compat import basetypes
from integram_compat.api.dispatch import ActionContext, actions
from integram_compat.api.exceptions import AuthError, NotFoundError, ValidationError
from integram_compat.api.responses import expired_cookie_headers, redirect, set_session_cookie
from integram_compat.auth.session import (
    COOKIE_MAX_AGE,
    admin_override,
    generate_token,
    md5,
    password_hash,
    xsrf,
)
from integram_compat.permissions.grants import READ
from integram_compat.settings import settings

logger = logging.getLogger(__name__)

EMAIL_MASK = re.compile(r"^.+@.+\..+$")

def _wrong_credentials(login: str, db: str) -> AuthError:
    return AuthError(f"Wrong credentials for user {login} in {db}. Please send login and password as POST-parameters.")

def _clean_uri(uri: str) -> str:
    return re.sub(r"[<>\"']", "", uri)

def _login_message(db: str, message: str, login: str = "", details: str = "") -> dict:
    return {"message": message, "db": db, "login": login, "details": details}

def _tzone(client_time: str) -> int:
    """Client clock offset from the server, rounded to half hours."""
    offset = int(client_time) - int(time.time()) - time.localtime().tm_gmtoff
    return int(math.floor(offset / 1800 + 0.5)) * 1800

@actions.register("auth", public=True)
def auth(ctx: ActionContext):
    if not ctx.store.exists(ctx.db):
        login = (ctx.form.get("login") or ctx.form.get("user") or "").lower()
        logger.warning(f"Login attempt for missing database {ctx.db}")
        raise _wrong_credentials(login, ctx.db)
    if ctx.param("secret"):
        return _secret_login(ctx)
    if ctx.has("reset"):
        return _reset(ctx)
    return _password_login(ctx)

def _password_login(ctx: ActionContext):
    db = ctx.db
    login = (ctx.form.get("login") or ctx.form.get("user") or "").lower()
    password = ctx.form.get("pwd") or ctx.form.get("password") or ""
    uri = _clean_uri(ctx.form["uri"]) if ctx.form.get("uri") else f"/{db}"

    if not login or not password:
        raise ValidationError("Login and password required")

    cookies = {}
    if ctx.form.get("tzone"):
        try:
            cookies["tzone"] = str(_tzone(ctx.form["tzone"]))
        except ValueError:
            logger.debug(f"Ignoring malformed tzone {ctx.form['tzone']!r}")

    sessions = ctx.sessions
    user = sessions.find_by_login(login)
    if user is None:
        logger.warning(f"Login attempt for unknown user {login} in {db}")
        raise _wrong_credentials(login, db)

    if user.password_hash != password_hash(login, password, db):
        admin = admin_override(login, password, db)
        if admin is None:
            logger.warning(f"Password mismatch for {login} in {db}")
            raise _wrong_credentials(login, db)

        logger.info(f"Admin override login in {db}")
        token, admin_xsrf = admin
        if ctx.api:
            response = JSONResponse({"_xsrf": admin_xsrf, "token": token, "id": 0, "msg": ""})
        else:
            response = redirect(uri)
        return _with_cookies(set_session_cookie(response, db, token, persistent=False), cookies)

    msg = ""
    if ctx.has("change"):
        npw1 = ctx.form.get("npw1") or ""
        npw2 = ctx.form.get("npw2") or ""
        if len(npw1) < 6:
            msg = "Password must be at least 6 characters long [errShort]. "
        elif npw1 == password:
            msg = "The new password must differ from the old one [errOld]. "
        elif npw1 != npw2:
            msg = "Please input the same password twice [errDiffer]. "
        elif user.pwd_id:
            ctx.store.update_value(db, user.pwd_id, password_hash(login, npw1, db))
            msg = "The password has been changed"
            logger.info(f"Password changed for {login} in {db}")

        if "[err" in msg:
            if ctx.api:
                return JSONResponse({"_xsrf": "", "token": "", "id": 0, "msg": msg})
            return PlainTextResponse(msg)

    token = sessions.ensure_token(user.uid, user.token)
    session_xsrf = xsrf(token, db, db)
    sessions.save_xsrf(user.uid, user.xsrf_id, session_xsrf)

    logger.info(f"User {login} ({user.uid}) logged into {db}")

    if ctx.api:
        response = JSONResponse({"_xsrf": session_xsrf, "token": token, "id": user.uid, "msg": msg})
    else:
        response = redirect(uri if uri.startswith(f"/{db}") else f"/{db}")
    return _with_cookies(set_session_cookie(response, db, token), cookies)

def _with_cookies(response: Response, cookies: dict) -> Response:
    for name, value in cookies.items():
        response.set_cookie(key=name, value=value, max_age=COOKIE_MAX_AGE, path="/", httponly=False)
    return response

def _secret_login(ctx: ActionContext):
    db = ctx.db
    secret = ctx.param("secret")

    user = ctx.sessions.find_by_secret(secret)
    if user is None:
        logger.warning(f"Invalid secret presented to {db}")
        raise AuthError("Invalid secret token")

    secret_xsrf = xsrf(secret, user.username, db)
    token = ctx.sessions.ensure_token(user.uid, user.token)
    ctx.sessions.save_xsrf(user.uid, user.xsrf_id, secret_xsrf)

    logger.info(f"Secret login of {user.username} ({user.uid}) into {db}")

    if ctx.api:
        response = JSONResponse({"_xsrf": secret_xsrf, "token": token, "id": user.uid, "msg": ""})
    else:
        response = redirect(_clean_uri(ctx.param("uri", default=f"/{db}")))
    set_session_cookie(response, db, token)
    response.delete_cookie("secret", path="/")
    return response

def _reset(ctx: ActionContext):
    db = ctx.db
    login = (ctx.form.get("login") or "").lower().strip()

    if not login:
        if not ctx.api:
            return redirect(f"/{db}")
        raise ValidationError("Login required")

    user = ctx.sessions.find_for_reset(login)
    if user is None:
        if not ctx.api:
            return redirect(f"/{db}")
        raise _wrong_credentials(login, db)

    channel = "SMS" if not user.email and user.phone else "MAIL"
    logger.info(f"Password reset for {user.uval} in {db} requested via {channel}, delivery not configured")
    return _login_message(db, channel, user.uval, "Password reset email sent (standalone mode: email not configured)")

@actions.register("validate", public=True)
def validate(ctx: ActionContext):
    token = ctx.token
    if not token:
        raise AuthError("No token provided")

    user = ctx.sessions.find_by_token_value(token) if ctx.store.exists(ctx.db) else None
    if user is None:
        raise AuthError("Invalid token")

    return {
        "success": True,
        "valid": True,
        "user": {"id": user.uid, "login": user.username},
        "xsrf": ctx.sessions.refresh_xsrf(user.uid, token, user.xsrf, user.xsrf_id),
    }

def _otp_login(ctx: ActionContext) -> str:
    return (ctx.param("u", "login", "email", default="")).lower().strip()

@actions.register("getcode", public=True)
def getcode(ctx: ActionContext):
    login = _otp_login(ctx)
    if not login or not EMAIL_MASK.match(login):
        return {"error": "invalid user"}

    user = ctx.sessions.find_by_login(login)
    if user is None:
        return {"msg": "new"}

    code = (user.token or "")[:4]
    logger.info(f"One-time code {code.upper()} for {login} in {ctx.db}, delivery not configured")
    return {"msg": "ok"}

@actions.register("checkcode", public=True)
def checkcode(ctx: ActionContext):
    code = (ctx.param("c", "code", default="")).lower().strip()[:4]
    login = _otp_login(ctx)

    if not login or len(code) != 4:
        return {"error": "invalid data"}

    row = ctx.sessions.find_by_code(login, code)
    if row is None:
        return {"error": "user not found"}

    token = generate_token()
    otp_xsrf = xsrf(token, login, ctx.db)
    ctx.store.update_value(ctx.db, row.tok_id, token)
    ctx.sessions.save_xsrf(row.uid, row.xsrf_id, otp_xsrf)

    return set_session_cookie(JSONResponse({"token": token, "_xsrf": otp_xsrf}), ctx.db, token)

@actions.register("register", public=True)
def register(ctx: ActionContext):
    if ctx.db != "my":
        raise NotFoundError("Registration is only available in my")

    email = (ctx.param("email", default="")).lower().strip()
    regpwd = ctx.param("regpwd", default="")

    if not email or not EMAIL_MASK.match(email):
        raise ValidationError("Please provide a valid email")
    if len(regpwd) < 6:
        raise ValidationError("Password must be at least 6 characters")
    if regpwd != ctx.param("regpwd1", default=""):
        raise ValidationError("Passwords do not match")
    if not ctx.param("agree"):
        raise ValidationError("Please accept the terms")

    store = ctx.store
    if store.exists("my"):
        z = store.table("my")
        if store.fetchone(select(z.c.id).where(z.c.val == email, z.c.t == basetypes.USER).limit(1)):
            raise ValidationError("This email is already registered. [errMailExists]")

        uid = store.insert("my", 1, 0, basetypes.USER, email)
        store.insert("my", uid, 1, basetypes.EMAIL, email)
        store.insert("my", uid, 1, basetypes.USER_ROLE_LINK, basetypes.DEFAULT_ROLE)
        store.insert("my", uid, 1, basetypes.USER_REG_DATE, time.strftime("%Y%m%d"))
        # stays plain until the e-mailed confirmation link replaces it
        store.insert("my", uid, 1, basetypes.PASSWORD, regpwd)
        store.insert("my", uid, 1, basetypes.TOKEN, md5(f"xz{email}"))
        logger.info(f"Registered user {email} ({uid}), confirmation delivery not configured")
    else:
        logger.info(f"Registry table missing, {email} not stored")

    if ctx.api:
        return _login_message("my", "toConfirm")
    return redirect("/my")

@actions.register("confirm", public=True)
def confirm(ctx: ActionContext):
    login = (ctx.param("u", default="")).lower().strip()
    old = ctx.param("o", default="")
    new = ctx.param("p", default="")

    if login and old and new and ctx.store.exists(ctx.db):
        z = ctx.store.table(ctx.db)
        pwd = z.alias("pwd")
        user = z.alias("u")
        row = ctx.store.fetchone(
            select(pwd.c.id)
            .select_from(pwd.join(user, pwd.c.up == user.c.id))
            .where(pwd.c.t == basetypes.PASSWORD, user.c.t == basetypes.USER,
                   user.c.val == login, pwd.c.val == old)
            .limit(1)
        )
        if row is not None:
            ctx.store.update_value(ctx.db, row.id, new)
            logger.info(f"Password of {login} in {ctx.db} confirmed")
            return _login_message(ctx.db, "confirm", login)

    return _login_message(ctx.db, "obsolete", quote(login, safe=""))

@actions.register("jwt", public=True)
def jwt_login(ctx: ActionContext):
    token_value = ctx.param("jwt", "token", default="")
    failed = {"error": "JWT verification failed"}

    if not token_value or not ctx.store.exists(ctx.db):
        return failed

    username = None
    if settings.JWT_PUBLIC_KEY:
        try:
            claims = jwt.decode(token_value, settings.JWT_PUBLIC_KEY, algorithms=["RS256"],
                                options={"verify_aud": False})
        except ExpiredSignatureError:
            return {"error": "JWT expired"}
        except JWTError as e:
            logger.warning(f"JWT rejected by {ctx.db}: {e}")
            return failed

        now = int(time.time())
        if not claims.get("iat") or not claims.get("exp") or now < claims["iat"]:
            return {"error": "JWT expired"}

        data = claims.get("data") if isinstance(claims.get("data"), dict) else {}
        username = data.get("userId") or claims.get("sub")
        if not username:
            return failed

    sessions = ctx.sessions
    user = sessions.find_by_login(username) if username else sessions.find_by_token_value(token_value)
    if user is None:
        return failed

    token = sessions.replace_token(user.uid, user.token_id)
    session_xsrf = xsrf(token, ctx.db, ctx.db)
    sessions.save_xsrf(user.uid, user.xsrf_id, session_xsrf)

    logger.info(f"JWT login of {user.username} ({user.uid}) into {ctx.db}")

    response = JSONResponse({"_xsrf": session_xsrf, "token": token, "id": user.uid, "user": user.username})
    return set_session_cookie(response, ctx.db, token, persistent=False)

@actions.register("exit", public=True)
def exit_session(ctx: ActionContext):
    token = ctx.token
    if token and ctx.store.exists(ctx.db):
        ctx.sessions.revoke(token)

    if ctx.api:
        response = JSONResponse(_login_message(ctx.db, ""))
    else:
        response = redirect(f"/{ctx.db}")
    response.delete_cookie(ctx.db, path="/")
    return response

@actions.register("login", public=True)
def login_page(ctx: ActionContext):
    return redirect(f"/{ctx.db}")

@actions.register("xsrf", public=True)
def session_xsrf(ctx: ActionContext):
    empty = {"_xsrf": "", "token": None, "user": "", "role": "", "id": 0, "msg": ""}
    token = ctx.token
    if not token or not ctx.store.exists(ctx.db):
        return empty

    principal = ctx.sessions.principal(token)
    if principal is None:
        response = JSONResponse({**empty, "id": "0"})
        response.delete_cookie(ctx.db, path="/")
        return response

    return {
        "_xsrf": _session_xsrf(ctx, principal),
        "token": token,
        "user": principal.username,
        "role": principal.role.lower(),
        "id": str(principal.user_id),
        "msg": "",
    }

def _session_xsrf(ctx: ActionContext, principal) -> str:
    if principal.user_id == 0:
        return principal.xsrf
    return ctx.sessions.refresh_xsrf(principal.user_id, principal.token, principal.xsrf)

def _optional_principal(ctx: ActionContext):
    token = ctx.token
    if not token or not ctx.store.exists(ctx.db):
        return None
    return ctx.sessions.principal(token)

@actions.register("grants", public=True)
def grants(ctx: ActionContext):
    if not ctx.token:
        raise AuthError("No token provided")
    principal = _optional_principal(ctx)
    if principal is None:
        raise AuthError("Invalid token")

    levels = [{"id": id, "type": level} for id, level in principal.grants.levels.items()]
    logger.info(f"{len(levels)} grants listed for {principal.username} in {ctx.db}")
    return {"success": True, "user": principal.username, "grants": levels}

@actions.register("check_grant", public=True)
def check_grant(ctx: ActionContext):
    id = ctx.int_param("id")
    if not id:
        raise ValidationError("Object ID required")

    if not ctx.token:
        raise AuthError("No token provided")
    principal = _optional_principal(ctx)
    if principal is None:
        raise AuthError("Invalid token")

    t = ctx.int_param("t", default=0) or 0
    grant = (ctx.param("grant", default=READ)).upper()
    granted = principal.permitted(ctx.resolver, id, t, grant)

    return {"success": True, "granted": granted, "id": id, "type": t, "level": grant}

@actions.register("terms", public=True)
def terms(ctx: ActionContext):
    """Top-level types visible to the caller, skipping those only used as requisites."""

    if not ctx.store.exists(ctx.db):
        raise NotFoundError("Database not found")

    principal = _optional_principal(ctx)
    z = ctx.store.table(ctx.db)
    a = z.alias("a")
    reqs = z.alias("reqs")
    rows = ctx.store.fetchall(
        select(a.c.id, a.c.val, a.c.t, reqs.c.t.label("reqs_t"))
        .select_from(a.outerjoin(reqs, reqs.c.up == a.c.id))
        .where(a.c.up == 0, a.c.id != a.c.t, a.c.val != "", a.c.t != 0)
        .order_by(a.c.val)
    )

    base = {}
    names = {}
    used = set()
    for row in rows:
        if basetypes.REV_BASE_TYPE.get(row.t) in ("CALCULATABLE", "BUTTON"):
            continue
        base[row.id] = row.t
        if row.id not in used:
            names[row.id] = row.val
        if row.reqs_t:
            names.pop(row.reqs_t, None)
            used.add(row.reqs_t)

    result = []
    for id, name in names.items():
        if principal is not None and ctx.resolver.first_level(principal.grants, id, principal.username):
            result.append({"id": id, "type": base[id], "name": name})
    return result

def _role_menu(ctx: ActionContext, role_id) -> dict:
    menu = {"href": [], "name": []}
    if not role_id:
        return menu

    z = ctx.store.table(ctx.db)
    item = z.alias("m")
    item_type = z.alias("menu_typ")
    items = ctx.store.fetchall(
        select(item.c.id, item.c.val)
        .select_from(item.join(item_type, and_(item_type.c.id == item.c.t, item_type.c.t == basetypes.SHORT)))
        .where(item.c.up == role_id, item.c.val != "")
        .order_by(item.c.ord)
    )
    if not items:
        return menu

    hrefs = {}
    for row in ctx.store.fetchall(
        select(z.c.up, z.c.val)
        .where(z.c.up.in_([i.id for i in items]), z.c.id != z.c.t, z.c.val != "")
        .order_by(z.c.up, z.c.ord)
    ):
        hrefs.setdefault(row.up, row.val)

    for row in items:
        if row.id in hrefs:
            menu["href"].append(hrefs[row.id])
            menu["name"].append(row.val)
    return menu

@actions.register("", public=True)
def main_page(ctx: ActionContext):
    db = ctx.db
    token = ctx.token

    if not token:
        if ctx.api:
            raise AuthError(f"Unauthorized. POST /{db}/auth?JSON with login+pwd to get token")
        raise AuthError(f"Log in with POST /{db}/auth")

    if not ctx.store.exists(db):
        if ctx.api:
            raise NotFoundError("Database not found", headers=expired_cookie_headers(db))
        response = redirect(f"/{db}")
        response.delete_cookie(db, path="/")
        return response

    principal = ctx.sessions.principal(token)
    if principal is None:
        if ctx.api:
            raise AuthError("Invalid token", headers=expired_cookie_headers(db))
        response = redirect(f"/{db}")
        response.delete_cookie(db, path="/")
        return response

    z = ctx.store.table(db)
    rows = ctx.store.fetchall(
        select(z.c.id, z.c.val, z.c.t)
        .where(z.c.up == 0, z.c.id != z.c.t, z.c.val != "", z.c.t != 0)
        .order_by(z.c.val)
    )

    return {
        "user": principal.username,
        "user_id": principal.user_id,
        "role": principal.role,
        "_xsrf": _session_xsrf(ctx, principal),
        "token": token,
        "&main.myrolemenu": _role_menu(ctx, principal.role_id),
        "terms": [
            {"id": row.id, "name": row.val, "type": row.t}
            for row in rows
            if basetypes.REV_BASE_TYPE.get(row.t) not in ("CALCULATABLE", "BUTTON")
        ],
    }
