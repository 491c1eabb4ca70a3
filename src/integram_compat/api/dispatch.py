"""
Action dispatch for the legacy URL scheme ``/{db}/{action}/{id}``.

Handlers are plain synchronous functions registered under their action
name. They receive an :class:`ActionContext` and return either a ready
``Response`` or a dict/list that is sent as JSON. The dispatcher resolves
aliases, authenticates non-public actions and runs the handler in the
thread pool because every store call blocks.
"""

import json
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile

from integram_compat.api.exceptions import AuthError, NotFoundError, ValidationError
from integram_compat.api.responses import error_list, extract_token, is_api_request, legacy_respond
from integram_compat.auth.session import SessionEngine
from integram_compat.permissions.grants import WRITE, GrantResolver
from integram_compat.permissions.principal import Principal
from integram_compat.store import Store, is_valid_db_name

logger = logging.getLogger(__name__)

ACTION_ALIASES = {
    "_setalias": "_d_alias",
    "_setnull": "_d_null",
    "_setmulti": "_d_multi",
    "_setorder": "_d_ord",
    "_moveup": "_d_up",
    "_deleteterm": "_d_del",
    "_deletereq": "_d_del_req",
    "_attributes": "_d_req",
    "_terms": "_d_new",
    "_references": "_d_ref",
    "_patchterm": "_d_save",
    "_modifiers": "_d_attrs",
}

class ActionContext:
    """Everything a handler needs to know about one legacy request."""

    def __init__(self, request: Request, db: str, action: str, obj_id: Optional[str], store: Store,
                 form: Optional[Dict[str, str]] = None, files: Optional[Dict[str, Tuple[str, bytes]]] = None,
                 raw: str = ""):
        self.request = request
        self.db = db
        self.action = action
        self.obj_id = obj_id
        self.store = store
        self.query: Dict[str, str] = dict(request.query_params)
        self.form: Dict[str, str] = form or {}
        self.files: Dict[str, Tuple[str, bytes]] = files or {}
        self.raw = raw
        self.api = is_api_request(request)
        self.principal: Optional[Principal] = None

        self._resolver = None
        self._sessions = None

    @property
    def params(self) -> Dict[str, str]:
        """Query merged with body, body wins."""
        return {**self.query, **self.form}

    def has(self, name: str) -> bool:
        return name in self.query or name in self.form

    def param(self, *names: str, default: Any = None) -> Any:
        for name in names:
            value = self.form.get(name)
            if value not in (None, ""):
                return value
            value = self.query.get(name)
            if value not in (None, ""):
                return value
        return default

    def int_param(self, *names: str, default: Optional[int] = None) -> Optional[int]:
        value = self.param(*names)
        if value is None:
            return default
        try:
            return int(str(value).strip())
        except ValueError:
            return default

    @property
    def id(self) -> Optional[int]:
        if self.obj_id is None:
            return None
        try:
            return int(self.obj_id)
        except ValueError:
            return None

    @property
    def tzone(self) -> int:
        try:
            return int(self.request.cookies.get("tzone", "0"))
        except ValueError:
            return 0

    @property
    def token(self) -> Optional[str]:
        return extract_token(self.request, self.db)

    @property
    def resolver(self) -> GrantResolver:
        if self._resolver is None:
            self._resolver = GrantResolver(self.store, self.db)
        return self._resolver

    @property
    def sessions(self) -> SessionEngine:
        if self._sessions is None:
            self._sessions = SessionEngine(self.store, self.db)
        return self._sessions

    def require_grant(self, id: int, t: int = 0, grant: str = WRITE):
        self.principal.require(self.resolver, id, t, grant)

    def respond(self, **kwargs) -> Response:
        return legacy_respond(self.request, self.db, self.params, **kwargs)

Handler = Callable[[ActionContext], Any]

class RegisteredAction:

    def __init__(self, handler: Handler, public: bool):
        self.handler = handler
        self.public = public

class ActionRegistry:
    """Registry of legacy action handlers keyed by action name"""

    def __init__(self):
        self._actions: Dict[str, RegisteredAction] = {}

    def register(self, name: str, public: bool = False):
        def decorator(handler: Handler) -> Handler:
            self._actions[name] = RegisteredAction(handler, public)
            return handler
        return decorator

    def get(self, name: str) -> Optional[RegisteredAction]:
        return self._actions.get(name)

    def names(self) -> List[str]:
        return sorted(self._actions)

actions = ActionRegistry()

def resolve_action(action: str) -> str:
    return ACTION_ALIASES.get(action, action)

async def read_body(request: Request) -> Tuple[Dict[str, str], Dict[str, Tuple[str, bytes]], str]:
    """Form fields, uploaded files and raw text of the request body."""

    if request.method not in ("POST", "PUT", "PATCH"):
        return {}, {}, ""

    content_type = request.headers.get("content-type", "")

    if "application/json" in content_type:
        body = await request.body()
        if not body:
            return {}, {}, ""
        try:
            payload = json.loads(body)
        except ValueError:
            raise ValidationError("Malformed JSON body")
        if not isinstance(payload, dict):
            return {}, {}, body.decode("utf-8", errors="replace")
        return {key: value if isinstance(value, str) else json.dumps(value) if isinstance(value, (dict, list))
                else "" if value is None else str(value).lower() if isinstance(value, bool) else str(value)
                for key, value in payload.items()}, {}, ""

    if "multipart/form-data" in content_type or "application/x-www-form-urlencoded" in content_type:
        form = await request.form()
        fields = {}
        files = {}
        for key, value in form.multi_items():
            if isinstance(value, UploadFile):
                files[key] = (value.filename or "", await value.read())
            else:
                fields[key] = value
        return fields, files, ""

    body = await request.body()
    return {}, {}, body.decode("utf-8-sig", errors="replace")

def authenticate(ctx: ActionContext) -> Principal:
    if not ctx.store.exists(ctx.db):
        raise NotFoundError("Database not found")

    principal = ctx.sessions.principal(ctx.token)
    if principal is None:
        raise AuthError("Invalid token")
    return principal

def _run(registered: RegisteredAction, ctx: ActionContext):
    if not registered.public:
        ctx.principal = authenticate(ctx)
    return registered.handler(ctx)

async def dispatch(request: Request, db: str, action: Optional[str], obj_id: Optional[str], store: Store) -> Response:

    form, files, raw = await read_body(request)

    if action is None:
        # POST /{db} carries the action in the body
        action = form.get("action") or request.query_params.get("action") or ""
        if action:
            obj_id = form.get("id") or request.query_params.get("id") or None

    action = resolve_action(action)
    if action != "auth" and not is_valid_db_name(db):
        raise ValidationError("Invalid database")

    registered = actions.get(action)

    if registered is None:
        logger.warning(f"Unknown action {action} requested on {db}")
        return error_list(f"Unknown action: {action}")

    ctx = ActionContext(request, db, action, obj_id, store, form=form, files=files, raw=raw)
    result = await run_in_threadpool(_run, registered, ctx)

    if isinstance(result, Response):
        return result
    return JSONResponse(result)
