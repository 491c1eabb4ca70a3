"""
Whole-table export and import, and creation of new databases.
"""

import logging
import re
import time

from fastapi.responses import Response, StreamingResponse
from sqlalchemy import select

from integram_compat import basetypes, dump
from integram_compat.api.dispatch import ActionContext, actions
from integram_compat.api.exceptions import NotFoundError, PermissionDenied, ValidationError
from integram_compat.permissions.grants import READ
from integram_compat.schema import load_type, seed_rows

logger = logging.getLogger(__name__)

USER_DB_MASK = re.compile(r"^[a-z][a-z0-9]{2,14}$", re.IGNORECASE)
RESERVED_NAMES = ("my", "admin", "root", "system", "test", "demo", "api", "health")

def _attachment(content: bytes, filename: str, media_type: str) -> Response:
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

def _require_export(ctx: ActionContext, message: str):
    if not ctx.principal.may_export():
        logger.warning(f"User {ctx.principal.username} denied export of {ctx.db}")
        raise PermissionDenied(message)

@actions.register("export")
def export_type(ctx: ActionContext):
    """Objects of one type as ``;`` separated CSV or as JSON."""

    definition = load_type(ctx.store, ctx.db, ctx.id) if ctx.id else None
    if definition is None:
        raise NotFoundError("Type not found")
    ctx.require_grant(definition.id, grant=READ)

    if ctx.param("format", default="csv") == "json":
        z = ctx.store.table(ctx.db)
        rows = ctx.store.fetchall(
            select(z.c.id, z.c.val, z.c.up, z.c.ord).where(z.c.t == definition.id, z.c.up != 0).order_by(z.c.ord)
        )
        values = {}
        include = bool(definition.requisites) and ctx.param("include_reqs", default="1") == "1"
        if rows and include:
            for value in ctx.store.fetchall(
                select(z.c.up, z.c.t, z.c.val).where(
                    z.c.up.in_([row.id for row in rows]),
                    z.c.t.in_([req.id for req in definition.requisites]),
                )
            ):
                values.setdefault(value.up, {})[value.t] = value.val

        data = []
        for row in rows:
            item = {"id": row.id, "val": row.val, "up": row.up, "ord": row.ord}
            if include:
                for req in definition.requisites:
                    item[req.alias or f"req_{req.id}"] = values.get(row.id, {}).get(req.id, "")
            data.append(item)

        logger.info(f"Exported {len(data)} objects of type {definition.id} from {ctx.db} as JSON")
        return {
            "success": True,
            "type": definition.id,
            "requisites": [{"id": req.id, "name": req.name, "alias": req.alias, "type": req.type}
                           for req in definition.requisites],
            "data": data,
            "count": len(data),
        }

    header = dump.mask_csv(definition.name) + "".join(
        ";" + dump.mask_csv(req.name) for req in definition.requisites)
    columns = [dump.CsvColumn(req.id, req.base) for req in definition.requisites]

    def content():
        yield dump.BOM
        yield from dump.csv_type(ctx.store, ctx.db, definition.id, header, definition.base, columns)
        yield "\n"

    filename = f"{ctx.db}_{definition.id}_{dump.timestamp()}.csv"
    logger.info(f"Exporting type {definition.id} of {ctx.db} to {filename}")
    return StreamingResponse(
        (chunk.encode("utf-8") for chunk in content()),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

@actions.register("csv_all")
def export_all(ctx: ActionContext):
    _require_export(ctx, "You do not have permission to export the database")

    filename = f"{ctx.db}_all_{dump.timestamp()}.csv"
    archive = dump.zip_chunks(filename, dump.csv_all(ctx.store, ctx.db))

    logger.info(f"CSV export of {ctx.db} completed: {filename}.zip")
    return _attachment(archive, f"{filename}.zip", "application/zip")

@actions.register("backup")
def backup(ctx: ActionContext):
    _require_export(ctx, "You do not have permission to export the database")

    filename = f"{ctx.db}_{dump.timestamp()}.dmp"
    archive = dump.zip_chunks(filename, dump.backup(ctx.store, ctx.db))

    logger.info(f"Backup of {ctx.db} completed: {filename}.zip")
    return _attachment(archive, f"{filename}.zip", "application/zip")

@actions.register("restore")
def restore(ctx: ActionContext):
    """Insert the rows of a backup, keeping rows whose id already exists."""

    _require_export(ctx, "You do not have permission to import to the database")

    if ctx.files:
        field = "file" if "file" in ctx.files else next(iter(ctx.files))
        text = dump.read_dump_archive(ctx.files[field][1])
    else:
        text = ctx.form.get("content") or ctx.form.get("data") or ctx.raw

    if not text:
        raise ValidationError("No backup content provided")

    count = dump.restore(ctx.store, ctx.db, text)
    if not count:
        raise ValidationError("Empty or unrecognised dump file")

    return {"status": "Ok", "rows": count}

@actions.register("_new_db", public=True)
def create_database(ctx: ActionContext):
    """Create and seed a new database, registering it under the calling user of ``my``."""

    if ctx.db != "my":
        raise NotFoundError("Databases are created from my only")

    name = ctx.param("db", default="")
    template = ctx.param("template", default="empty")
    description = ctx.form.get("descr", "")

    if not name or not USER_DB_MASK.match(name):
        raise ValidationError("Invalid database name. Must be 3-15 characters, starting with a letter.")
    name = name.lower()
    if name in RESERVED_NAMES:
        raise ValidationError(f'Database name "{name}" is reserved')
    if ctx.store.exists(name):
        raise ValidationError(f'Database "{name}" already exists')

    ctx.store.create(name, seed_rows(name))

    record = 0
    principal = ctx.sessions.principal(ctx.token) if ctx.store.exists(ctx.db) else None
    if principal is not None:
        record = ctx.store.insert(ctx.db, principal.user_id, 1, basetypes.DATABASE, name)
        ctx.store.insert(ctx.db, record, 1, basetypes.DATABASE_DATE, time.strftime("%Y%m%d"))
        ctx.store.insert(ctx.db, record, 1, basetypes.DATABASE_TEMPLATE, template)
        if description:
            ctx.store.insert(ctx.db, record, 1, basetypes.DATABASE_DESCRIPTION, description)

    logger.info(f"Created database {name} from template {template}, registry record {record}")
    return {"status": "Ok", "id": record or name}
