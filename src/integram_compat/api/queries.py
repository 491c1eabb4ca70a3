"""
Read-only query actions: dictionaries, object lists, type metadata,
dropdown contents and the outbound connector proxy.
"""

import logging
from typing import Dict, List, Optional

import httpx
from fastapi.responses import JSONResponse, Response
from sqlalchemy import and_, exists, func, or_, select

from integram_compat import basetypes
from integram_compat.api.dispatch import ActionContext, actions, authenticate
from integram_compat.api.exceptions import NotFoundError
from integram_compat.api.responses import error_list
from integram_compat.permissions.grants import READ
from integram_compat.schema import Requisite, load_requisites, target_type
from integram_compat.store import LIKE_ESCAPE, contains_pattern

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
DEFAULT_REF_LIMIT = 80
MAX_REF_LIMIT = 500

def _like(column, value: str):
    return column.like(contains_pattern(value), escape=LIKE_ESCAPE)

def _paging(ctx: ActionContext, default: int):
    limit = ctx.int_param("LIMIT", "limit", default=default)
    offset = ctx.int_param("F", "offset", default=0)
    return max(limit, 0), max(offset, 0)

def _type_row(ctx: ActionContext, type_id: Optional[int]):
    row = ctx.store.get(ctx.db, type_id) if type_id else None
    if row is None or row.up != 0:
        raise NotFoundError("Type not found")
    return row

def _names(ctx: ActionContext, ids) -> Dict[int, str]:
    ids = {id for id in ids if id}
    if not ids:
        return {}
    z = ctx.store.table(ctx.db)
    return {row.id: row.val for row in ctx.store.fetchall(select(z.c.id, z.c.val).where(z.c.id.in_(ids)))}

def _describe(requisite: Requisite, names: Dict[int, str]) -> dict:
    """Metadata entry of one requisite as the legacy editors read it."""

    if requisite.is_ref:
        val = names.get(requisite.ref_type, "")
    elif requisite.is_array:
        val = names.get(requisite.arr_type, "")
    else:
        val = basetypes.base_type_name(requisite.base, names.get(requisite.type, ""))

    entry = {
        "id": str(requisite.id),
        "val": val,
        "type": str(requisite.base),
    }
    if requisite.is_array:
        entry["arr_id"] = str(requisite.arr_type)
    if requisite.is_ref:
        entry["ref"] = str(requisite.ref_type)
        entry["ref_id"] = str(requisite.ref_row)
    if requisite.val != requisite.name:
        entry["attrs"] = requisite.val
    return entry

def _referenced(requisites: List[Requisite]) -> List[int]:
    return [req.ref_type for req in requisites if req.is_ref] + [req.arr_type for req in requisites if req.is_array]

@actions.register("_dict")
def dictionary(ctx: ActionContext):
    z = ctx.store.table(ctx.db)

    if ctx.id:
        row = _type_row(ctx, ctx.id)
        ctx.require_grant(row.id, grant=READ)
        requisites = ctx.store.fetchall(select(z).where(z.c.up == row.id).order_by(z.c.ord))
        return {
            "id": row.id,
            "name": row.val,
            "baseType": row.t,
            "order": row.ord,
            "requisites": [{"id": req.id, "name": req.val, "type": req.t, "order": req.ord} for req in requisites],
        }

    rows = ctx.store.fetchall(
        select(z).where(z.c.up == 0, z.c.id != z.c.t, z.c.val != "").order_by(z.c.val)
    )
    return [{"id": row.id, "name": row.val, "baseType": row.t, "order": row.ord} for row in rows]

@actions.register("_list")
def list_objects(ctx: ActionContext):
    """Objects of one type with their attribute values keyed by requisite id."""

    type_row = _type_row(ctx, ctx.id)
    ctx.require_grant(type_row.id, grant=READ)

    z = ctx.store.table(ctx.db)
    attr = z.alias("attr")
    limit, offset = _paging(ctx, DEFAULT_LIST_LIMIT)

    conditions = [z.c.t == type_row.id]
    up = ctx.int_param("up")
    conditions.append(z.c.up == up if up else z.c.up != 0)

    search = ctx.param("q")
    if search:
        conditions.append(or_(
            _like(z.c.val, search),
            exists(select(attr.c.id).where(attr.c.up == z.c.id, _like(attr.c.val, search))),
        ))

    for key, value in ctx.params.items():
        if not key.startswith("f_") or value == "":
            continue
        column = key[2:]
        if column == "0":
            conditions.append(_like(z.c.val, value))
        elif column.isdigit():
            conditions.append(exists(select(attr.c.id).where(
                attr.c.up == z.c.id, attr.c.t == int(column), _like(attr.c.val, value))))

    statement = select(z).where(and_(*conditions))

    sort = ctx.param("sort")
    descending = str(ctx.param("dir", default="asc")).lower() == "desc"
    if sort and sort.isdigit() and sort != "0":
        sort_value = (select(attr.c.val)
                      .where(attr.c.up == z.c.id, attr.c.t == int(sort))
                      .limit(1)
                      .scalar_subquery())
        statement = statement.order_by(sort_value.desc() if descending else sort_value)
    elif sort == "0":
        statement = statement.order_by(z.c.val.desc() if descending else z.c.val)
    else:
        statement = statement.order_by(z.c.ord, z.c.id)

    rows = ctx.store.fetchall(statement.limit(limit).offset(offset))
    total = ctx.store.scalar(select(func.count()).select_from(z).where(and_(*conditions)))

    values: Dict[int, Dict[str, str]] = {row.id: {} for row in rows}
    if rows:
        for value in ctx.store.fetchall(
            select(z.c.up, z.c.t, z.c.val).where(z.c.up.in_(list(values))).order_by(z.c.ord)
        ):
            values[value.up].setdefault(str(value.t), value.val)

    return {
        "data": [{
            "id": row.id,
            "val": row.val,
            "up": row.up,
            "t": row.t,
            "ord": row.ord,
            "reqs": values[row.id],
        } for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
    }

@actions.register("_list_join")
def list_joined(ctx: ActionContext):
    """Objects as rows of ``[id, val, *requisite values]``."""

    type_row = _type_row(ctx, ctx.id)
    ctx.require_grant(type_row.id, grant=READ)

    requisites = load_requisites(ctx.store, ctx.db, type_row.id)
    join = ctx.param("join")
    if join:
        wanted = [int(part) for part in str(join).split(",") if part.strip().isdigit()]
        by_id = {req.id: req for req in requisites}
        columns = [by_id[id] for id in wanted if id in by_id]
    else:
        columns = requisites[:5]

    z = ctx.store.table(ctx.db)
    limit, offset = _paging(ctx, DEFAULT_LIST_LIMIT)

    conditions = [z.c.t == type_row.id, z.c.up != 0]
    search = ctx.param("q")
    if search:
        conditions.append(_like(z.c.val, search))

    columns_sql = [z.c.id, z.c.val]
    for req in columns:
        value = z.alias(f"v{req.id}")
        columns_sql.append(select(value.c.val)
                           .where(value.c.up == z.c.id, value.c.t == req.id)
                           .limit(1)
                           .scalar_subquery()
                           .label(f"req_{req.id}"))

    rows = ctx.store.fetchall(
        select(*columns_sql).where(and_(*conditions)).order_by(z.c.ord, z.c.id).limit(limit).offset(offset)
    )
    total = ctx.store.scalar(select(func.count()).select_from(z).where(and_(*conditions)))

    return {
        "data": [[value if value is not None else "" for value in row] for row in rows],
        "total": total,
        "limit": limit,
        "offset": offset,
        "requisites": [{"id": req.id, "val": req.name} for req in columns],
    }

@actions.register("_d_main")
def type_definition(ctx: ActionContext):
    row = _type_row(ctx, ctx.id)
    ctx.require_grant(row.id, grant=READ)

    return {
        "id": row.id,
        "name": row.val,
        "baseType": row.t,
        "order": row.ord,
        "requisites": [{
            "id": req.id,
            "name": req.name,
            "alias": req.alias,
            "type": req.type,
            "refType": req.ref_type,
            "order": req.order,
            "required": req.required,
            "multi": req.multi,
        } for req in load_requisites(ctx.store, ctx.db, row.id)],
    }

@actions.register("_ref_reqs")
def reference_options(ctx: ActionContext):
    """Dropdown contents ``{id: "main / req1 / req2"}`` for a reference."""

    target = target_type(ctx.store, ctx.db, ctx.id) if ctx.id else None
    if target is None:
        raise NotFoundError("Reference not found")
    ctx.require_grant(target, grant=READ)

    z = ctx.store.table(ctx.db)
    attr = z.alias("attr")

    # the reference row may pin the displayed requisites, else all plain ones
    source = ctx.store.get(ctx.db, ctx.id)
    shown = []
    if source is not None and source.up == 0 and source.val == "":
        shown = [req.id for req in load_requisites(ctx.store, ctx.db, source.id)]
    if not shown:
        shown = [req.id for req in load_requisites(ctx.store, ctx.db, target) if not req.is_array]

    conditions = [z.c.t == target, z.c.up != 0]

    restrict = ctx.param("r")
    if restrict:
        ids = [int(part) for part in str(restrict).split(",") if part.strip().isdigit()]
        conditions.append(z.c.id.in_(ids))

    search = ctx.param("q")
    if search:
        if search.startswith("@") and search[1:].isdigit():
            conditions.append(z.c.id == int(search[1:]))
        else:
            conditions.append(or_(
                _like(z.c.val, search),
                exists(select(attr.c.id).where(attr.c.up == z.c.id, _like(attr.c.val, search))),
            ))

    limit = min(ctx.int_param("LIMIT", "limit", default=DEFAULT_REF_LIMIT), MAX_REF_LIMIT)
    rows = ctx.store.fetchall(select(z.c.id, z.c.val).where(and_(*conditions)).order_by(z.c.val).limit(limit))
    if not rows:
        return {}

    values: Dict[int, Dict[int, str]] = {row.id: {} for row in rows}
    if shown:
        for value in ctx.store.fetchall(
            select(z.c.up, z.c.t, z.c.val).where(z.c.up.in_(list(values)), z.c.t.in_(shown))
        ):
            values[value.up].setdefault(value.t, value.val)

    # reference requisites display the referenced object's value
    refs = {req.id for req in load_requisites(ctx.store, ctx.db, target) if req.is_ref and req.id in shown}
    linked = [int(val) for row_values in values.values() for t, val in row_values.items()
              if t in refs and val.isdigit()]
    names = _names(ctx, linked)

    options = {}
    for row in rows:
        parts = [row.val]
        for req_id in shown:
            value = values[row.id].get(req_id)
            if value and req_id in refs and value.isdigit():
                value = names.get(int(value), value)
            parts.append(value if value else "--")
        options[str(row.id)] = " / ".join(parts)
    return options

@actions.register("_connect", public=True)
def connect(ctx: ActionContext):
    """Health check without an id, otherwise proxy to the object's connector URL."""

    if not ctx.id:
        if not ctx.store.exists(ctx.db):
            raise NotFoundError("Database not found")
        return {"status": "Ok", "message": "Connection successful"}

    ctx.principal = authenticate(ctx)
    connector = ctx.store.requisite(ctx.db, ctx.id, basetypes.CONNECT)
    url = connector.val if connector is not None else ""
    if not url:
        return Response(content="")

    query = "&".join(f"{key}={value}" for key, value in ctx.query.items())
    if query:
        url += ("&" if "?" in url else "?") + query

    try:
        with httpx.Client(headers={"User-Agent": "Integram"}, timeout=30.0) as client:
            upstream = client.get(url)
    except httpx.HTTPError as e:
        logger.warning(f"Connector {ctx.id} in {ctx.db} failed: {e}")
        return error_list("Connection failed")

    return Response(
        content=upstream.content,
        status_code=200 if upstream.is_success else upstream.status_code,
        media_type=upstream.headers.get("content-type"),
    )

@actions.register("obj_meta")
def object_metadata(ctx: ActionContext):
    row = ctx.store.get(ctx.db, ctx.id) if ctx.id else None
    if row is None:
        raise NotFoundError("Object not found")
    ctx.require_grant(row.id, grant=READ)

    requisites = load_requisites(ctx.store, ctx.db, row.id)
    names = _names(ctx, _referenced(requisites) + [req.type for req in requisites])

    return {
        "id": str(row.id),
        "up": str(row.up),
        "type": str(row.t),
        "val": row.val,
        "reqs": {str(req.order): _describe(req, names) for req in requisites},
    }

def _type_metadata(ctx: ActionContext, row, requisites: List[Requisite], names: Dict[int, str]) -> dict:
    reqs = []
    for req in requisites:
        entry = _describe(req, names)
        entry["num"] = req.order
        entry["orig"] = str(req.ref_type if req.is_ref else req.type)
        reqs.append(entry)
    return {
        "id": str(row.id),
        "up": str(row.up),
        "type": str(row.t),
        "val": row.val,
        "unique": str(row.ord),
        "reqs": reqs,
    }

@actions.register("metadata")
def type_metadata(ctx: ActionContext):
    """Every user type with its requisites, or one type when an id is given."""

    z = ctx.store.table(ctx.db)

    if ctx.id:
        row = ctx.store.get(ctx.db, ctx.id)
        if row is None or row.up != 0:
            return JSONResponse({"error": "Type not found"}, status_code=404)
        requisites = load_requisites(ctx.store, ctx.db, row.id)
        names = _names(ctx, _referenced(requisites) + [req.type for req in requisites])
        return _type_metadata(ctx, row, requisites, names)

    rows = ctx.store.fetchall(
        select(z).where(z.c.up == 0, z.c.id != z.c.t, z.c.val != "", z.c.t != 0).order_by(z.c.id)
    )
    requisite_rows = ctx.store.fetchall(
        select(z.c.t).where(z.c.up.in_([row.id for row in rows])).distinct()
    ) if rows else []
    used_as_type = {req.t for req in requisite_rows}

    result = []
    for row in rows:
        requisites = load_requisites(ctx.store, ctx.db, row.id)
        # types serving only as requisite types of others are not listed on their own
        if not requisites and row.id in used_as_type:
            continue
        names = _names(ctx, _referenced(requisites) + [req.type for req in requisites])
        result.append(_type_metadata(ctx, row, requisites, names))
    return result
