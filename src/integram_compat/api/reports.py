"""
Stored reports.

A report row (``t = REPORT``) hangs under the type it lists. Its
``REP_COLS`` children name the requisites shown as columns (``val`` is the
requisite id, or the listed type itself for the main value column) and
its ``REP_JOIN`` children add extra joined requisites. Execution builds one
outer join per column against the row table.
"""

import csv
import io
import logging
from typing import Dict, List, Optional

from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy import and_, func, select

from integram_compat import basetypes, codec
from integram_compat.api.dispatch import ActionContext, actions
from integram_compat.api.exceptions import NotFoundError, ValidationError
from integram_compat.permissions.grants import READ
from integram_compat.schema import load_requisites
from integram_compat.store import LIKE_ESCAPE, Store, contains_pattern

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
MAX_LIMIT = 10000

FORMAT_FLAGS = ("JSON_KV", "JSON_DATA", "JSON_CR", "JSON_HR", "RECORD_COUNT")

class ReportColumn(BaseModel):
    id: int
    name: str
    alias: str
    req_type: int
    main: bool = False
    base: int = basetypes.CHARS
    ref: Optional[int] = None
    order: int = 0

    @property
    def format(self) -> str:
        return basetypes.base_type_name(self.base, "CHARS")

    def definition(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "alias": self.alias,
            "reqTypeId": self.req_type,
            "isMainCol": self.main,
            "baseType": self.base,
            "isRef": self.ref is not None,
            "order": self.order,
        }

class Report(BaseModel):
    id: int
    header: str
    parent_type: int
    columns: List[ReportColumn] = []
    joins: List[int] = []

class ReportFilter(BaseModel):
    start: Optional[str] = None
    end: Optional[str] = None
    equal: Optional[str] = None
    like: Optional[str] = None

class ReportResult(BaseModel):
    data: List[dict] = []
    totals: Dict[str, float] = {}
    rownum: int = 0

def compile_report(store: Store, db: str, report_id: int) -> Optional[Report]:
    row = store.get(db, report_id)
    if row is None:
        return None

    report = Report(id=row.id, header=row.val, parent_type=row.up)
    z = store.table(db)

    requisites = {req.id: req for req in load_requisites(store, db, report.parent_type)} if report.parent_type else {}
    parent = store.get(db, report.parent_type) if report.parent_type else None

    for col in store.fetchall(
        select(z).where(z.c.up == report.id, z.c.t == basetypes.REP_COLS).order_by(z.c.ord, z.c.id)
    ):
        req_type = int(col.val) if col.val.strip().isdigit() else 0
        column = ReportColumn(id=col.id, name=col.val, alias=f"c{col.id}", req_type=req_type, order=col.ord)

        if req_type and req_type == report.parent_type and parent is not None:
            column.main = True
            column.name = parent.val
            column.base = parent.t
        elif req_type in requisites:
            requisite = requisites[req_type]
            column.name = requisite.name
            column.base = requisite.base
            column.ref = requisite.ref_type
        elif req_type:
            # requisite of another type, named after whatever row it points at
            target = store.get(db, req_type)
            if target is not None:
                column.name = target.val
                column.base = target.t if basetypes.is_base_type(target.t) else basetypes.CHARS

        report.columns.append(column)

    for join in store.fetchall(select(z).where(z.c.up == report.id, z.c.t == basetypes.REP_JOIN).order_by(z.c.ord)):
        if join.val.strip().isdigit():
            report.joins.append(int(join.val))

    logger.debug(f"Compiled report {report.id} of type {report.parent_type} with {len(report.columns)} columns")
    return report

def _filter_conditions(expression, condition: ReportFilter) -> list:
    conditions = []
    if condition.start:
        value = condition.start
        if value.startswith("!%"):
            conditions.append(expression.notlike(value[1:]))
        elif "%" in value:
            conditions.append(expression.like(value))
        elif value.startswith("@"):
            if value[1:].isdigit():
                conditions.append(expression == value[1:])
        else:
            conditions.append(expression >= value)
    if condition.end:
        conditions.append(expression <= condition.end)
    if condition.equal:
        conditions.append(expression == condition.equal)
    if condition.like:
        conditions.append(expression.like(contains_pattern(condition.like), escape=LIKE_ESCAPE))
    return conditions

def _build_query(store: Store, db: str, report: Report, filters: Dict[str, ReportFilter]):
    z = store.table(db)
    a = z.alias("a")

    expressions = {}
    selected = [a.c.id, a.c.val.label("main_val"), a.c.up, a.c.ord]
    source = a

    for column in report.columns:
        if not column.req_type:
            continue
        if column.main:
            expressions[column.alias] = a.c.val
        else:
            joined = z.alias(f"j{column.id}")
            source = source.outerjoin(joined, and_(joined.c.up == a.c.id, joined.c.t == column.req_type))
            expressions[column.alias] = joined.c.val
        selected.append(expressions[column.alias].label(column.alias))

    for index, type_id in enumerate(report.joins):
        joined = z.alias(f"rj{index}")
        source = source.outerjoin(joined, and_(joined.c.up == a.c.id, joined.c.t == type_id))
        selected.append(joined.c.val.label(f"__rj{index}"))

    conditions = [a.c.t == report.parent_type, a.c.up != 0]
    for key, condition in filters.items():
        if key == "_id":
            if condition.equal and condition.equal.strip().isdigit():
                conditions.append(a.c.id == int(condition.equal))
            continue
        if key in expressions:
            conditions.extend(_filter_conditions(expressions[key], condition))

    return a, expressions, selected, source, conditions

def execute_report(store: Store, db: str, report: Report, filters: Dict[str, ReportFilter],
                   limit: int = DEFAULT_LIMIT, offset: int = 0, order: Optional[str] = None) -> ReportResult:
    result = ReportResult()
    if report.parent_type <= 0:
        logger.warning(f"Report {report.id} in {db} has no parent type")
        return result

    a, expressions, selected, source, conditions = _build_query(store, db, report, filters)

    ordering = []
    for part in str(order or "").split(","):
        part = part.strip()
        descending = part.startswith("-")
        key = part.lstrip("-")
        if not key.isdigit():
            continue
        column = next((col for col in report.columns if col.id == int(key)), None)
        if column is None or column.alias not in expressions:
            continue
        expression = expressions[column.alias]
        ordering.append(expression.desc() if descending else expression.asc())
    if not ordering:
        ordering = [a.c.ord, a.c.id]

    statement = (select(*selected)
                 .select_from(source)
                 .where(and_(*conditions))
                 .order_by(*ordering)
                 .limit(min(max(limit, 0), MAX_LIMIT))
                 .offset(max(offset, 0)))

    for row in store.fetchall(statement):
        mapping = row._mapping
        out = {"id": row.id, "val": row.main_val, "up": row.up}
        for column in report.columns:
            value = mapping.get(column.alias) if column.alias in mapping else None
            out[column.alias] = "" if value is None else value
            if column.main:
                out[f"{column.alias}_id"] = row.id
            elif column.ref is not None:
                out[f"{column.alias}_id"] = out[column.alias]
        result.data.append(out)

    result.rownum = len(result.data)

    for column in report.columns:
        if column.format in ("NUMBER", "SIGNED"):
            result.totals[column.alias] = sum(
                codec.parse_float_prefix(row[column.alias]) or 0 for row in result.data
            )

    logger.debug(f"Executed report {report.id} in {db}: {result.rownum} rows")
    return result

def count_report(store: Store, db: str, report: Report, filters: Dict[str, ReportFilter]) -> int:
    if report.parent_type <= 0:
        return 0
    a, _, _, source, conditions = _build_query(store, db, report, filters)
    return store.scalar(select(func.count(a.c.id)).select_from(source).where(and_(*conditions))) or 0

def parse_filters(report: Report, params: Dict[str, str]) -> Dict[str, ReportFilter]:
    """``FR_``/``TO_``/``EQ_``/``LIKE_`` parameters keyed by column name or alias."""

    filters = {}
    for column in report.columns:
        keys = {column.alias, column.name.replace(" ", "_")}
        condition = ReportFilter()
        for key in keys:
            condition.start = condition.start or params.get(f"FR_{key}") or None
            condition.end = condition.end or params.get(f"TO_{key}") or None
            condition.equal = condition.equal or params.get(f"EQ_{key}") or None
            condition.like = condition.like or params.get(f"LIKE_{key}") or None
        if condition.start or condition.end or condition.equal or condition.like:
            filters[column.alias] = condition

    # a freshly created record is located by FR_{column}ID
    for column in report.columns:
        id = params.get(f"FR_{column.name.replace(' ', '_')}ID") or params.get(f"FR_{column.name}ID")
        if id:
            filters["_id"] = ReportFilter(equal=id)
            break

    return filters

def parse_limit(params: Dict[str, str], unbounded: int = MAX_LIMIT):
    """``LIMIT`` as ``count`` or ``offset,count``; absent means every row."""

    def number(value, default):
        try:
            return int(str(value).strip())
        except (TypeError, ValueError):
            return default

    offset = number(params.get("F") or params.get("offset"), 0)
    raw = params.get("LIMIT") or params.get("limit")
    if not raw:
        return unbounded, offset

    parts = str(raw).split(",")
    if len(parts) == 2:
        return number(parts[1], DEFAULT_LIMIT) or DEFAULT_LIMIT, number(parts[0], 0)
    return number(parts[0], DEFAULT_LIMIT) or DEFAULT_LIMIT, offset

def _column_major(report: Report, result: ReportResult) -> dict:
    entries = []
    for column in report.columns:
        entries.append(({
            "id": column.id,
            "name": column.name,
            "type": column.req_type,
            "format": column.format,
            "align": codec.alignment(column.base),
            "totals": result.totals.get(column.alias),
            "ref": column.ref,
        }, column.alias))
        if column.main or column.ref is not None:
            # hidden companion column carrying object or reference ids
            entries.append(({
                "id": column.id,
                "name": f"{column.name}ID",
                "type": column.req_type,
                "format": "CHARS",
                "align": "LEFT",
                "totals": None,
                "ref": column.ref,
            }, f"{column.alias}_id"))

    return {
        "columns": [definition for definition, _ in entries],
        "data": [[row.get(alias, "") for row in result.data] for _, alias in entries],
        "rownum": result.rownum,
    }

def _csv(report: Report, result: ReportResult) -> Response:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_NONNUMERIC, lineterminator="\n")
    buffer.write(",".join(column.name for column in report.columns) + "\n")
    for row in result.data:
        writer.writerow([str(row.get(column.alias, "")) for column in report.columns])
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename=report_{report.id}.csv"},
    )

def render_report(ctx: ActionContext, report: Report, result: ReportResult):
    query = ctx.query

    if "JSON_KV" in query:
        return [{column.name: row.get(column.alias, "") for column in report.columns} for row in result.data]

    if "JSON_DATA" in query:
        first = result.data[0] if result.data else {}
        return {column.name: first.get(column.alias, "") for column in report.columns}

    if "JSON_CR" in query:
        return {
            "columns": [{"id": column.id, "name": column.name, "type": column.req_type} for column in report.columns],
            "rows": {str(index): {str(column.id): row.get(column.alias, "") for column in report.columns}
                     for index, row in enumerate(result.data)},
            "totalCount": result.rownum,
        }

    if "JSON_HR" in query:
        groups: Dict[str, list] = {}
        for row in result.data:
            groups.setdefault(str(row.get("up") or 0), []).append(
                {str(column.id): row.get(column.alias, "") for column in report.columns})
        return {
            "columns": [{"id": column.id, "name": column.name, "type": column.req_type} for column in report.columns],
            "groups": groups,
            "totalCount": result.rownum,
        }

    if ctx.api:
        return _column_major(report, result)

    return {
        "columns": [{"id": column.id, "name": column.name, "align": codec.alignment(column.base)}
                    for column in report.columns],
        "data": [[row.get(column.alias, "") for column in report.columns] for row in result.data],
        "totals": [result.totals.get(column.alias) for column in report.columns],
        "rownum": result.rownum,
    }

@actions.register("report")
def report(ctx: ActionContext):
    z = ctx.store.table(ctx.db)

    if ctx.id is None:
        if ctx.has("action"):
            raise ValidationError("Report ID required")
        rows = ctx.store.fetchall(select(z.c.id, z.c.val, z.c.ord).where(z.c.t == basetypes.REPORT).order_by(z.c.ord))
        return [{"id": row.id, "name": row.val, "val": row.val, "ord": row.ord} for row in rows]

    compiled = compile_report(ctx.store, ctx.db, ctx.id)
    if compiled is None:
        raise NotFoundError("Report not found")
    if compiled.parent_type:
        ctx.require_grant(compiled.parent_type, grant=READ)

    execute = (ctx.has("execute") or ctx.request.method == "POST"
               or any(flag in ctx.query for flag in FORMAT_FLAGS))

    if not execute:
        if ctx.api:
            return {
                "id": compiled.id,
                "name": compiled.header,
                "val": compiled.header,
                "title": compiled.header,
                "columns": [column.definition() for column in compiled.columns],
                "head": [column.name for column in compiled.columns],
                "types": {str(index): column.req_type for index, column in enumerate(compiled.columns)},
            }
        return {"report": {
            "id": compiled.id,
            "name": compiled.header,
            "columns": [column.definition() for column in compiled.columns],
            "head": [column.name for column in compiled.columns],
            "types": {str(index): column.req_type for index, column in enumerate(compiled.columns)},
            "filters": {},
        }}

    params = ctx.params
    filters = parse_filters(compiled, params)

    if "RECORD_COUNT" in ctx.query:
        return {"count": count_report(ctx.store, ctx.db, compiled, filters)}

    limit, offset = parse_limit(params)
    result = execute_report(ctx.store, ctx.db, compiled, filters, limit, offset, params.get("ORDER") or params.get("order"))
    logger.info(f"Report {compiled.id} executed on {ctx.db}: {result.rownum} rows")

    if params.get("format") == "csv":
        return _csv(compiled, result)
    return render_report(ctx, compiled, result)
