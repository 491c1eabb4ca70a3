from typing import Optional
from fastapi import APIRouter, Depends, Request
from integram_compat.database import get_store
from integram_compat.store import Store
from integram_compat.api.dispatch import dispatch

# handler modules register their actions on import
from integram_compat.api import sessions, objects, definitions, queries, reports, exports  # noqa: F401

legacy_router = APIRouter()

LEGACY_METHODS = ["GET", "POST"]

@legacy_router.api_route("/{db}", methods=LEGACY_METHODS)
async def legacy_database(db: str, request: Request, store: Store = Depends(get_store)):
    return await dispatch(request, db, None, None, store)

@legacy_router.api_route("/{db}/{action}", methods=LEGACY_METHODS)
async def legacy_action(db: str, action: str, request: Request, store: Store = Depends(get_store)):
    return await dispatch(request, db, action, None, store)

@legacy_router.api_route("/{db}/{action}/{obj_id}", methods=LEGACY_METHODS)
async def legacy_object_action(db: str, action: str, obj_id: Optional[str], request: Request,
                               store: Store = Depends(get_store)):
    return await dispatch(request, db, action, obj_id, store)
