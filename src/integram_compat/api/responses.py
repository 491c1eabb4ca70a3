"""
Response shapes the legacy frontend expects.

API requests get bare JSON; browser form posts get redirects. Failures of
API requests are reported with HTTP 200 and ``[{"error": msg}]`` because
legacy clients never look at the status code, except for the few
endpoints where they check for 404.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse, PlainTextResponse, RedirectResponse, Response
from sqlalchemy.exc import SQLAlchemyError

from integram_compat.api.exceptions import (
    AuthError,
    LegacyError,
    NotFoundError,
    PermissionDenied,
    StoreError,
    ValidationError,
)
from integram_compat.auth.session import COOKIE_MAX_AGE

logger = logging.getLogger(__name__)

API_FLAGS = ("JSON", "json", "JSON_DATA", "JSON_KV", "JSON_CR", "JSON_HR")

def is_api_request(request: Request) -> bool:
    if any(flag in request.query_params for flag in API_FLAGS):
        return True

    accept = request.headers.get("accept", "")
    content_type = request.headers.get("content-type", "")
    requested_with = request.headers.get("x-requested-with", "")

    return (
        "application/json" in accept
        or "application/json" in content_type
        or requested_with.lower() == "xmlhttprequest"
    )

def extract_token(request: Request, db: str) -> Optional[str]:
    token = request.cookies.get(db)
    if token:
        return token

    token = request.headers.get("x-authorization")
    if token:
        return token

    authorization = request.headers.get("authorization", "")
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return authorization or None

def error_list(message: str, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse([{"error": message}], status_code=status_code)

def set_session_cookie(response: Response, db: str, token: str, persistent: bool = True) -> Response:
    response.set_cookie(
        key=db,
        value=token,
        max_age=COOKIE_MAX_AGE if persistent else None,
        path="/",
        httponly=False,
    )
    return response

def expired_cookie_headers(db: str) -> Dict[str, str]:
    """Headers that drop the session cookie of ``db`` from an error response."""
    response = Response()
    response.delete_cookie(db, path="/")
    return {"set-cookie": response.headers["set-cookie"]}

def redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)

def legacy_respond(request: Request, db: str, params: dict, id: Any = None, obj: Any = None,
                   next_act: str = "", args: str = "", warnings: str = "", **extra) -> Response:
    """Result of a write action: JSON for API calls, otherwise a redirect to the next page."""

    if is_api_request(request):
        return JSONResponse({
            "id": id,
            "obj": obj,
            "next_act": next_act,
            "args": args or "",
            "warnings": warnings or "",
            **extra,
        })

    next_act = params.get("next_act") or next_act or ""
    if next_act == "nul":
        return Response(content="")

    url = f"/{db}/{next_act}"
    if id:
        url += f"/{id}"
    if args:
        url += f"?{args}"
    if obj is not None:
        url += f"#{obj}"
    return redirect(url)

def legacy_error_response(request: Request, exc: Exception) -> Response:
    """The single place deciding status code and body of a failed request."""

    response = _error_body(request, exc)
    headers = exc.headers if isinstance(exc, LegacyError) else None
    for key, value in (headers or {}).items():
        response.headers.append(key, value)
    return response

def _error_body(request: Request, exc: Exception) -> Response:
    if isinstance(exc, SQLAlchemyError):
        logger.error(f"Store failure on {request.url.path}", exc_info=exc)
        exc = StoreError()

    api = is_api_request(request)
    message = exc.detail if isinstance(exc, LegacyError) else "Internal server error"

    if isinstance(exc, NotFoundError):
        return JSONResponse({"error": message}, status_code=status.HTTP_404_NOT_FOUND)

    if isinstance(exc, PermissionDenied):
        if api:
            return JSONResponse({"error": message}, status_code=status.HTTP_403_FORBIDDEN)
        return PlainTextResponse(message, status_code=status.HTTP_403_FORBIDDEN)

    if isinstance(exc, (ValidationError, AuthError)):
        if api:
            return error_list(message)
        return PlainTextResponse(message, status_code=exc.status_code)

    if isinstance(exc, StoreError):
        return JSONResponse({"error": "Internal server error"}, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)

    logger.error(f"Unhandled error on {request.url.path}", exc_info=exc)
    if api:
        return error_list(message)
    return PlainTextResponse(message, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)
