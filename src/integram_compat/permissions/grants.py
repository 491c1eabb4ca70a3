"""
Role grants and their resolution along an object's ancestry.

A role row owns ROLE_OBJECT children. Each of them names an object or type id
in its ``val`` and carries a LEVEL child (READ/WRITE) plus optional MASK,
EXPORT and DELETE children. Grants are loaded per request and never cached.
"""

import logging
from typing import Dict, Optional, Set, Union

from pydantic import BaseModel, Field
from sqlalchemy import and_, literal, or_, select
from sqlalchemy.sql.functions import coalesce

from integram_compat import basetypes
from integram_compat.store import Store

logger = logging.getLogger(__name__)

READ = "READ"
WRITE = "WRITE"

def _as_id(key) -> Optional[int]:
    if isinstance(key, int):
        return key
    if isinstance(key, str) and key.strip().lstrip("-").isdigit():
        return int(key)
    return None

class GrantMap(BaseModel):
    """Effective permissions of one role"""
    levels: Dict[int, str] = Field(default_factory=dict)
    masks: Dict[int, Dict[str, str]] = Field(default_factory=dict)
    export_flags: Set[int] = Field(default_factory=set)
    delete_flags: Set[int] = Field(default_factory=set)

    def level(self, key) -> Optional[str]:
        """Level granted on ``key``; empty levels count as absent."""
        key = _as_id(key)
        if key is None:
            return None
        return self.levels.get(key) or None

    def satisfies(self, key, grant: str) -> bool:
        level = self.level(key)
        return level == grant or level == WRITE

    def can_export(self, key) -> bool:
        return _as_id(key) in self.export_flags

def is_admin(username: Optional[str]) -> bool:
    return (username or "").lower() == "admin"

class GrantResolver:
    """Grant queries against one legacy database."""

    def __init__(self, store: Store, db: str):
        self.store = store
        self.db = db
        self.table = store.table(db)

    def load(self, role_id: Optional[int]) -> GrantMap:
        grants = GrantMap()
        if not role_id:
            return grants

        z = self.table
        gr = z.alias("gr")
        lev = z.alias("lev")
        level_def = z.alias("def")
        mask = z.alias("mask")
        exp = z.alias("exp")
        dele = z.alias("del")

        levels = lev.join(level_def, and_(level_def.c.id == lev.c.t, level_def.c.t == basetypes.LEVEL))

        statement = (
            select(
                gr.c.val.label("obj"),
                coalesce(level_def.c.val, "").label("lev"),
                mask.c.val.label("mask"),
                exp.c.val.label("exp"),
                dele.c.val.label("dele"),
            )
            .select_from(
                gr.outerjoin(levels, lev.c.up == gr.c.id)
                .outerjoin(mask, and_(mask.c.up == gr.c.id, mask.c.t == basetypes.MASK))
                .outerjoin(exp, and_(exp.c.up == gr.c.id, exp.c.t == basetypes.EXPORT))
                .outerjoin(dele, and_(dele.c.up == gr.c.id, dele.c.t == basetypes.DELETE))
            )
            .where(gr.c.up == role_id, gr.c.t == basetypes.ROLE_OBJECT)
        )

        for row in self.store.fetchall(statement):
            obj = _as_id(row.obj)
            if obj is None:
                continue
            if row.lev:
                grants.levels[obj] = row.lev
            if row.mask:
                grants.masks.setdefault(obj, {})[row.mask] = row.lev
            if row.exp:
                grants.export_flags.add(obj)
            if row.dele:
                grants.delete_flags.add(obj)

        logger.debug(f"Loaded {len(grants.levels)} grants for role {role_id} in {self.db}")
        return grants

    def check(self, grants: GrantMap, id: int, t: int = 0, grant: str = WRITE, username: str = "") -> bool:
        """
        Whether ``grant`` is held on object ``id`` (or on type ``t`` within
        parent ``id``).

        The walk stops at the first id that has any grant at all, even if
        that grant is too weak; there is no fallthrough to broader grants.
        """

        if is_admin(username):
            return True

        if t != 0 and grants.level(t):
            return grants.satisfies(t, grant)

        if grants.level(id):
            return grants.satisfies(id, grant)

        if t != 0 and id == 1:
            return grants.satisfies(t, grant) or grants.satisfies(1, grant)

        context = self._ancestry(id, t)
        if context is None:
            return False

        if grants.level(context.t):
            return grants.satisfies(context.t, grant)
        if grants.level(context.arr):
            return grants.satisfies(context.arr, grant)
        if grants.level(context.ref) and context.t not in (basetypes.REP_COLS, basetypes.ROLE_OBJECT):
            return grants.satisfies(context.ref, grant)
        if grants.level(context.par_typ):
            return grants.satisfies(context.par_typ, grant)
        if grants.level(context.par_id):
            return grants.satisfies(context.par_id, grant)
        if context.par_id > 1:
            return self.check(grants, context.par_id, 0, grant, username)

        return False

    def _ancestry(self, id: int, t: int):
        z = self.table
        obj = z.alias("obj")
        par = z.alias("par")
        arr = z.alias("arr")

        columns = [
            obj.c.t,
            coalesce(par.c.t, 1).label("par_typ"),
            coalesce(par.c.id, 1).label("par_id"),
            coalesce(arr.c.id, -1).label("arr"),
        ]
        arr_on = and_(arr.c.up == par.c.t, arr.c.t == obj.c.t)

        if t == 0:
            statement = (
                select(*columns, obj.c.val.label("ref"))
                .select_from(
                    obj.outerjoin(par, and_(obj.c.up > 1, par.c.id == obj.c.up))
                    .outerjoin(arr, arr_on)
                )
                .where(obj.c.id == id)
                .limit(1)
            )
        else:
            statement = (
                select(*columns, literal(-1).label("ref"))
                .select_from(
                    obj.join(par, and_(obj.c.up > 1, or_(par.c.t == obj.c.up, par.c.id == obj.c.up)))
                    .outerjoin(arr, arr_on)
                )
                .where(par.c.id == id, or_(obj.c.t == t, obj.c.id == t))
                .limit(1)
            )

        return self.store.fetchone(statement)

    def first_level(self, grants: GrantMap, id: int, username: str = "") -> Union[str, bool]:
        """Access level on a top-level type, as used to filter type listings."""

        if is_admin(username):
            return WRITE

        for key in (id, 1):
            level = grants.level(key)
            if level in (READ, WRITE):
                return level

        z = self.table
        ref = z.alias("ref")
        req = z.alias("req")
        statement = (
            select(req.c.up)
            .select_from(ref.outerjoin(req, req.c.t == ref.c.id))
            .where(ref.c.t == id, ref.c.up == 0)
        )
        for row in self.store.fetchall(statement):
            # access through a referencing type is capped at READ
            if grants.level(row.up) in (READ, WRITE):
                return READ

        return False
