"""
Object manipulation actions (``_m_*``).

Objects are rows under the root (``up = 1``) or under another object when
they are elements of a subordinate array. Their attribute values are child
rows keyed by requisite id. Values arrive in input form and are stored in
the normalised form of the requisite's base type.
"""

import re
import logging
from typing import Dict

from fastapi.responses import JSONResponse
from sqlalchemy import and_, func, select, update

from integram_compat import basetypes, codec
from integram_compat.api.dispatch import ActionContext, actions
from integram_compat.api.exceptions import NotFoundError, ValidationError
from integram_compat.api.responses import redirect
from integram_compat.auth.session import password_hash
from integram_compat.schema import Requisite, load_requisites
from integram_compat.store import RowKind, extract_attributes

logger = logging.getLogger(__name__)

def _object(ctx: ActionContext):
    obj = ctx.store.get(ctx.db, ctx.id) if ctx.id else None
    if obj is None:
        raise NotFoundError("Object not found")
    return obj

def _requisites(ctx: ActionContext, type_id: int) -> Dict[int, Requisite]:
    return {req.id: req for req in load_requisites(ctx.store, ctx.db, type_id)}

def _stored_value(ctx: ActionContext, requisite: Requisite, value: str) -> str:
    if requisite is None or requisite.is_ref:
        return value
    return codec.decode(requisite.base, value, ctx.tzone)

def _set_attribute(ctx: ActionContext, obj_id: int, req_id: int, value) -> int:
    existing = ctx.store.requisite(ctx.db, obj_id, req_id)
    if existing is not None:
        ctx.store.update_value(ctx.db, existing.id, value)
        return existing.id
    return ctx.store.insert(ctx.db, obj_id, ctx.store.next_order(ctx.db, obj_id, req_id), req_id, value)

@actions.register("_m_new")
def create_object(ctx: ActionContext):
    if ctx.query.get("type"):
        type_id = ctx.int_param("type")
        parent = ctx.id or ctx.int_param("up", default=0) or 0
    else:
        type_id = ctx.id
        parent = ctx.int_param("up", default=0) or 0

    if not type_id:
        raise ValidationError("Type ID (t or type) is required")

    ctx.require_grant(parent, type_id)

    type_row = ctx.store.get(ctx.db, type_id)
    value = ctx.form.get("val") or ctx.form.get(f"t{type_id}") or ""
    if type_row is not None:
        value = codec.decode(type_row.t, value, ctx.tzone)

    order = ctx.store.next_order(ctx.db, parent, type_id)
    id = ctx.store.insert(ctx.db, parent, order, type_id, value)

    requisites = _requisites(ctx, type_id)
    for req_id, attr in extract_attributes(ctx.form).items():
        if req_id == type_id:
            continue
        ctx.store.insert(ctx.db, id, ctx.store.next_order(ctx.db, id, req_id), req_id,
                         _stored_value(ctx, requisites.get(req_id), attr))

    logger.info(f"Created object {id} of type {type_id} under {parent} in {ctx.db}")

    if requisites:
        next_act, args = "edit_obj", "new1=1&"
    else:
        next_act, args = "object", f"F_U={parent}" if parent != 1 else ""

    if ctx.api:
        return {"id": id, "obj": id, "ord": order, "next_act": next_act, "args": args, "val": value}
    return redirect(f"/{ctx.db}/{next_act}/{id}" + (f"?{args}" if args else "") + f"#{id}")

def _copy_object(ctx: ActionContext, obj):
    params = ctx.params
    value = params.get(f"t{obj.t}", params.get("val", obj.val))

    z = ctx.store.table(ctx.db)
    order = 1
    if obj.up > 1:
        order = (ctx.store.scalar(select(func.max(z.c.ord)).where(z.c.up == obj.up, z.c.t == obj.t)) or 0) + 1

    new_id = ctx.store.insert(ctx.db, obj.up, order, obj.t, value)
    for req in ctx.store.children(ctx.db, obj.id):
        ctx.store.insert(ctx.db, new_id, req.ord, req.t, req.val)

    logger.info(f"Copied object {obj.id} to {new_id} in {ctx.db}")
    return ctx.respond(id=obj.t, obj=new_id, next_act="object",
                       args=f"copied1=1&F_U={obj.up}&F_I={new_id}")

def _lookup_or_create(ctx: ActionContext, type_id: int, value: str) -> int:
    z = ctx.store.table(ctx.db)
    existing = ctx.store.fetchone(select(z.c.id).where(z.c.val == value, z.c.t == type_id).limit(1))
    if existing is not None:
        return existing.id
    ref_id = ctx.store.insert(ctx.db, 1, 1, type_id, value)
    logger.info(f"Created {type_id} object {ref_id} from a new dropdown value in {ctx.db}")
    return ref_id

@actions.register("_m_save")
def save_object(ctx: ActionContext):
    obj = _object(ctx)
    ctx.require_grant(obj.id)

    if ctx.has("copybtn"):
        return _copy_object(ctx, obj)

    requisites = _requisites(ctx, obj.t)
    type_row = ctx.store.get(ctx.db, obj.t)
    main_base = type_row.t if type_row is not None else basetypes.CHARS

    if "val" in ctx.form:
        ctx.store.update_value(ctx.db, obj.id, codec.decode(main_base, ctx.form["val"], ctx.tzone))

    params = ctx.params
    for key, value in ctx.form.items():
        match = re.fullmatch(r"NEW_(\d+)", key)
        if not match or not value.strip():
            continue
        target = int(match.group(1))
        requisite = requisites.get(target)
        lookup_type = requisite.ref_type if requisite is not None and requisite.is_ref else target
        params[f"t{target}"] = str(_lookup_or_create(ctx, lookup_type, value.strip()))

    for req_id, value in extract_attributes(params).items():
        if req_id == obj.t:
            ctx.store.update_value(ctx.db, obj.id, codec.decode(main_base, value, ctx.tzone))
            continue

        if req_id == basetypes.PASSWORD:
            username = params.get(f"t{basetypes.USER}") or obj.val
            value = password_hash(username, value, ctx.db)
        else:
            value = _stored_value(ctx, requisites.get(req_id), value)

        _set_attribute(ctx, obj.id, req_id, value)

    search = {}
    for key, value in ctx.form.items():
        if key.startswith("SEARCH_") and value:
            previous = ctx.form.get("PREV_" + key)
            if previous is None or previous != value:
                search[key[len("SEARCH_"):]] = value

    logger.info(f"Saved object {obj.id} in {ctx.db}")

    extra = {"search": search} if search else {}
    return ctx.respond(id=obj.t, obj=obj.id, next_act="object",
                       args=f"saved1=1&F_U={obj.up}&F_I={obj.id}", warnings="", **extra)

def _link_count(ctx: ActionContext, id: int) -> int:
    """Reference values pointing at ``id``."""
    z = ctx.store.table(ctx.db)
    value = z.alias("r")
    req = z.alias("req")
    ref = z.alias("ref")
    return ctx.store.scalar(
        select(func.count(value.c.id))
        .select_from(
            value.join(req, req.c.id == value.c.t)
            .join(ref, and_(ref.c.id == req.c.t, ref.c.up == 0, ref.c.val == ""))
        )
        .where(value.c.val == str(id), value.c.up != 0)
    ) or 0

@actions.register("_m_del")
def delete_object(ctx: ActionContext):
    if not ctx.id:
        raise ValidationError(f"Wrong id: {ctx.obj_id}")

    obj = _object(ctx)
    if ctx.store.resolve_kind(ctx.db, obj) in (RowKind.TYPE, RowKind.REQUISITE):
        raise ValidationError(f"You can't delete metadata (type {obj.id})!")

    ctx.require_grant(obj.id)

    cascade = ctx.form.get("cascade") in ("1", "true") or "forced" in ctx.query
    links = _link_count(ctx, obj.id)
    if links and not cascade:
        raise ValidationError(f"You can't delete an object that has links to it (total: {links})!")

    z = ctx.store.table(ctx.db)
    type_row = ctx.store.get(ctx.db, obj.t)
    array_element = type_row is not None and type_row.up == 0

    if obj.up > 1:
        if array_element:
            ctx.store.execute(
                update(z).where(z.c.up == obj.up, z.c.t == obj.t, z.c.ord > obj.ord).values(ord=z.c.ord - 1)
            )
        elif obj.val.isdigit() and int(obj.val) > 0:
            ctx.store.execute(
                update(z).where(z.c.up == obj.up, z.c.val == obj.val, z.c.ord > obj.ord).values(ord=z.c.ord - 1)
            )

    removed = ctx.store.delete_tree(ctx.db, obj.id)
    logger.info(f"Deleted object {obj.id} with {removed - 1} descendants from {ctx.db}")

    return ctx.respond(id=obj.t, obj=obj.id, next_act="object",
                       args=f"F_U={obj.up}" if obj.up > 1 and array_element else "")

@actions.register("_m_set")
def set_attributes(ctx: ActionContext):
    obj = _object(ctx)
    attributes = extract_attributes(ctx.params)
    if not attributes:
        raise ValidationError("No attributes provided")

    ctx.require_grant(obj.id)

    requisites = _requisites(ctx, obj.t)
    last = ""
    for req_id, value in attributes.items():
        last = str(_set_attribute(ctx, obj.id, req_id, _stored_value(ctx, requisites.get(req_id), value)))

    logger.info(f"Set {len(attributes)} attributes of {obj.id} in {ctx.db}")
    return JSONResponse({"id": last, "obj": str(obj.id), "a": "nul", "args": ""})

@actions.register("_m_move")
def move_object(ctx: ActionContext):
    obj = _object(ctx)
    parent = ctx.int_param("up")
    if parent is None:
        raise ValidationError("Target parent (up) is required")

    ctx.require_grant(obj.id)
    ctx.require_grant(parent, obj.t)

    ctx.store.update_row(ctx.db, obj.id, up=parent, ord=ctx.store.next_order(ctx.db, parent))
    logger.info(f"Moved object {obj.id} under {parent} in {ctx.db}")

    return ctx.respond(id=obj.id, obj=None, next_act="object",
                       args=f"moved&&F_U={parent}" if parent != 1 else "moved&")

@actions.register("_m_up")
def move_object_up(ctx: ActionContext):
    obj = _object(ctx)
    ctx.require_grant(obj.id)

    z = ctx.store.table(ctx.db)
    previous = ctx.store.fetchone(
        select(z.c.id, z.c.ord)
        .where(z.c.up == obj.up, z.c.t == obj.t, z.c.ord < obj.ord)
        .order_by(z.c.ord.desc())
        .limit(1)
    )
    if previous is not None:
        ctx.store.update_order(ctx.db, previous.id, obj.ord)
        ctx.store.update_order(ctx.db, obj.id, previous.ord)

    return ctx.respond(id=obj.t, obj=None, next_act="object", args=f"F_U={obj.up}")

@actions.register("_m_ord")
def order_object(ctx: ActionContext):
    order = ctx.int_param("order", "ord")
    if order is None or order < 1:
        raise ValidationError("order must be a positive integer")

    z = ctx.store.table(ctx.db)
    obj = z.alias("obj")
    par = z.alias("par")
    row = ctx.store.fetchone(
        select(obj.c.id, obj.c.ord, obj.c.up)
        .select_from(obj.join(par, and_(par.c.id == obj.c.up, par.c.up != 0)))
        .where(obj.c.id == ctx.id)
    ) if ctx.id else None
    if row is None:
        raise ValidationError(f"Id={ctx.obj_id} not found")

    ctx.require_grant(row.id)
    ctx.store.move_order(ctx.db, row.id, row.up, row.ord, order)

    return ctx.respond(id=row.up, obj=row.up, next_act=ctx.param("next_act", default="_m_ord"), args="")

@actions.register("_m_id")
def renumber_object(ctx: ActionContext):
    new_id = ctx.int_param("new_id")
    if not new_id or new_id <= 0:
        raise ValidationError("new_id must be a positive integer")
    if new_id == ctx.id:
        raise ValidationError("new_id must differ from current id")

    obj = ctx.store.get(ctx.db, ctx.id) if ctx.id else None
    if obj is None:
        raise ValidationError("Object not found")
    if ctx.store.get(ctx.db, new_id) is not None:
        raise ValidationError(f"ID {new_id} is already in use")

    ctx.require_grant(obj.id)

    z = ctx.store.table(ctx.db)
    ctx.store.execute(update(z).where(z.c.id == obj.id).values(id=new_id))
    ctx.store.execute(update(z).where(z.c.up == obj.id).values(up=new_id))
    ctx.store.execute(update(z).where(z.c.t == obj.id).values(t=new_id))
    logger.info(f"Renumbered {obj.id} to {new_id} in {ctx.db}")

    return ctx.respond(id=new_id, obj=new_id, next_act=ctx.param("next_act", default="_m_id"), args="")
