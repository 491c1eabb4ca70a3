"""
Schema editing actions (``_d_*``): types, their requisites and reference rows.

Every action answers with ``next_act = edit_types`` and ``args = ext``.
"""

import logging

from sqlalchemy import select

from integram_compat import basetypes
from integram_compat.api.dispatch import ActionContext, actions
from integram_compat.api.exceptions import NotFoundError, ValidationError
from integram_compat.schema import build_modifiers, parse_modifiers

logger = logging.getLogger(__name__)

def _flag(ctx: ActionContext, name: str) -> bool:
    return ctx.form.get(name) in ("1", "true")

def _done(ctx: ActionContext, id, obj):
    return ctx.respond(id=id, obj=obj, next_act="edit_types", args="ext")

def _requisite_row(ctx: ActionContext):
    row = ctx.store.get(ctx.db, ctx.id) if ctx.id else None
    if row is None:
        raise NotFoundError("Requisite not found")
    ctx.require_grant(row.up or row.id)
    return row

@actions.register("_d_new")
def create_type(ctx: ActionContext):
    parent = ctx.id or ctx.int_param("up", default=0) or 0
    base = ctx.int_param("t", default=basetypes.CHARS)
    name = ctx.param("val", "name", default="")

    if not name:
        raise ValidationError("Type name (val) is required")

    ctx.require_grant(parent or 1)

    if parent == 0:
        # ord of a top level type is its unique flag
        order = 1 if ctx.has("unique") else 0
    else:
        order = ctx.store.next_order(ctx.db, parent)

    id = ctx.store.insert(ctx.db, parent, order, base, name)
    logger.info(f"Created type {id} ({name}) under {parent} in {ctx.db}")
    return _done(ctx, parent, id)

@actions.register("_d_save")
def save_type(ctx: ActionContext):
    if not ctx.id:
        raise ValidationError(f"Wrong id: {ctx.obj_id}")

    values = {}
    if "val" in ctx.form:
        values["val"] = ctx.form["val"]
    if ctx.form.get("t"):
        values["t"] = ctx.int_param("t")

    if not values:
        raise ValidationError("No fields to update")

    ctx.require_grant(ctx.id)
    values["ord"] = 1 if ctx.has("unique") else 0
    ctx.store.update_row(ctx.db, ctx.id, **values)

    logger.info(f"Saved type {ctx.id} in {ctx.db}")
    return _done(ctx, ctx.id, ctx.id)

@actions.register("_d_del")
def delete_type(ctx: ActionContext):
    if not ctx.id:
        raise ValidationError(f"Wrong id: {ctx.obj_id}")

    ctx.require_grant(ctx.id)
    if _flag(ctx, "cascade"):
        ctx.store.delete_children(ctx.db, ctx.id)
    ctx.store.delete(ctx.db, ctx.id)

    logger.info(f"Deleted type {ctx.id} from {ctx.db}")
    return _done(ctx, ctx.id, None)

@actions.register("_d_req")
def add_requisite(ctx: ActionContext):
    if not ctx.id:
        raise ValidationError(f"Wrong id: {ctx.obj_id}")

    name = ctx.param("val", "name", default="")
    if not name:
        raise ValidationError("Requisite name (val) is required")

    ctx.require_grant(ctx.id)

    val = build_modifiers(name, ctx.form.get("alias") or None, _flag(ctx, "required"), _flag(ctx, "multi"))
    id = ctx.store.insert(ctx.db, ctx.id, ctx.store.next_order(ctx.db, ctx.id),
                          ctx.int_param("t", default=basetypes.CHARS), val)

    logger.info(f"Added requisite {id} ({name}) to type {ctx.id} in {ctx.db}")
    return _done(ctx, id, ctx.id)

@actions.register("_d_alias")
def set_alias(ctx: ActionContext):
    row = _requisite_row(ctx)
    modifiers = parse_modifiers(row.val)
    ctx.store.update_value(ctx.db, row.id, build_modifiers(
        modifiers.name, ctx.form.get("alias") or None, modifiers.required, modifiers.multi))
    return _done(ctx, row.up, row.up)

@actions.register("_d_null")
def toggle_required(ctx: ActionContext):
    row = _requisite_row(ctx)
    modifiers = parse_modifiers(row.val)
    required = _flag(ctx, "required") if "required" in ctx.form else not modifiers.required
    ctx.store.update_value(ctx.db, row.id, build_modifiers(
        modifiers.name, modifiers.alias, required, modifiers.multi))
    return _done(ctx, row.id, row.up)

@actions.register("_d_multi")
def toggle_multi(ctx: ActionContext):
    row = _requisite_row(ctx)
    modifiers = parse_modifiers(row.val)
    multi = _flag(ctx, "multi") if "multi" in ctx.form else not modifiers.multi
    ctx.store.update_value(ctx.db, row.id, build_modifiers(
        modifiers.name, modifiers.alias, modifiers.required, multi))
    return _done(ctx, row.id, row.up)

@actions.register("_d_attrs")
def set_modifiers(ctx: ActionContext):
    row = _requisite_row(ctx)
    modifiers = parse_modifiers(row.val)

    alias = (ctx.form.get("alias") or None) if "alias" in ctx.form else modifiers.alias
    required = _flag(ctx, "required") if "required" in ctx.form else modifiers.required
    multi = _flag(ctx, "multi") if "multi" in ctx.form else modifiers.multi
    name = ctx.form.get("name") or ctx.form.get("val") or modifiers.name

    ctx.store.update_value(ctx.db, row.id, build_modifiers(name, alias, required, multi))
    return _done(ctx, row.id, row.up)

@actions.register("_d_up")
def move_requisite_up(ctx: ActionContext):
    row = _requisite_row(ctx)

    z = ctx.store.table(ctx.db)
    previous = ctx.store.fetchone(
        select(z.c.id, z.c.ord)
        .where(z.c.up == row.up, z.c.ord < row.ord)
        .order_by(z.c.ord.desc())
        .limit(1)
    )
    if previous is not None:
        ctx.store.update_order(ctx.db, previous.id, row.ord)
        ctx.store.update_order(ctx.db, row.id, previous.ord)

    return _done(ctx, row.up, row.up)

@actions.register("_d_ord")
def order_requisite(ctx: ActionContext):
    order = ctx.int_param("order")
    if order is None or order < 1:
        raise ValidationError("Invalid order")

    row = ctx.store.get(ctx.db, ctx.id) if ctx.id else None
    parent = ctx.store.get(ctx.db, row.up) if row is not None else None
    if parent is None or parent.up != 0:
        raise ValidationError(f"Id={ctx.obj_id} not found")

    ctx.require_grant(parent.id)
    ctx.store.move_order(ctx.db, row.id, row.up, row.ord, order)
    return _done(ctx, row.up, row.up)

@actions.register("_d_del_req")
def delete_requisite(ctx: ActionContext):
    if not ctx.id:
        raise ValidationError(f"Wrong id: {ctx.obj_id}")

    row = ctx.store.get(ctx.db, ctx.id)
    type_id = row.up if row is not None else 0
    ctx.require_grant(type_id or ctx.id)

    if _flag(ctx, "cascade"):
        ctx.store.delete_children(ctx.db, ctx.id)
    ctx.store.delete(ctx.db, ctx.id)

    logger.info(f"Deleted requisite {ctx.id} of type {type_id} from {ctx.db}")
    return _done(ctx, type_id, type_id)

@actions.register("_d_ref")
def create_reference(ctx: ActionContext):
    """Reference row through which requisites of other types point at this type."""

    id = ctx.id or 0
    if not id:
        raise ValidationError(f"Invalid link ({ctx.obj_id})")

    row = ctx.store.get(ctx.db, id)
    if row is None:
        raise ValidationError(f"{id} type not found")
    if row.up != 0 or row.t == id:
        raise ValidationError(f"Invalid {id} type")

    ctx.require_grant(id)

    z = ctx.store.table(ctx.db)
    existing = ctx.store.fetchone(
        select(z.c.id).where(z.c.up == 0, z.c.t == id, z.c.val == "").order_by(z.c.id).limit(1)
    )
    if existing is not None:
        ref_id = existing.id
    else:
        ref_id = ctx.store.insert(ctx.db, 0, 0, id, "")
        logger.info(f"Created reference row {ref_id} for type {id} in {ctx.db}")

    return _done(ctx, id, ref_id)
