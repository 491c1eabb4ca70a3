"""
Type definitions and their requisites, read back from the row store.

A requisite row hangs under its type (``up = type id``) and its ``t`` names
what it holds: a base type id, a reference row (``up = 0``, ``val = ''``,
``t = referenced type``) or another user type, in which case the values
form a subordinate array of objects. The requisite name carries the
``:ALIAS=..:``, ``:!NULL:`` and ``:MULTI:`` modifiers.
"""

import re
import logging
from typing import Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import select

from integram_compat import basetypes
from integram_compat.store import Store

logger = logging.getLogger(__name__)

_ALIAS = re.compile(r":ALIAS=(.*?):")

class Modifiers(BaseModel):
    name: str
    alias: Optional[str] = None
    required: bool = False
    multi: bool = False

def parse_modifiers(val: Optional[str]) -> Modifiers:
    name = val or ""
    alias = None

    match = _ALIAS.search(name)
    if match:
        alias = match.group(1)
        name = name.replace(match.group(0), "", 1)

    required = ":!NULL:" in name
    multi = ":MULTI:" in name
    name = name.replace(":!NULL:", "", 1).replace(":MULTI:", "", 1)

    return Modifiers(name=name.strip(), alias=alias, required=required, multi=multi)

def build_modifiers(name: str, alias: Optional[str] = None, required: bool = False, multi: bool = False) -> str:
    val = ""
    if alias:
        val += f":ALIAS={alias}:"
    if required:
        val += ":!NULL:"
    if multi:
        val += ":MULTI:"
    return val + name

def strip_modifiers(val: Optional[str]) -> str:
    return parse_modifiers(val).name

class Requisite(BaseModel):
    id: int
    name: str
    val: str = ""
    alias: Optional[str] = None
    type: int
    base: int
    order: int
    required: bool = False
    multi: bool = False
    ref_type: Optional[int] = None
    ref_row: Optional[int] = None
    arr_type: Optional[int] = None

    @property
    def is_ref(self) -> bool:
        return self.ref_type is not None

    @property
    def is_array(self) -> bool:
        return self.arr_type is not None

class TypeDefinition(BaseModel):
    id: int
    name: str
    base: int
    unique: bool = False
    requisites: List[Requisite] = []

def _classify(row, targets: Dict[int, object]) -> Requisite:
    modifiers = parse_modifiers(row.val)
    requisite = Requisite(
        id=row.id,
        name=modifiers.name,
        val=row.val,
        alias=modifiers.alias,
        type=row.t,
        base=row.t,
        order=row.ord,
        required=modifiers.required,
        multi=modifiers.multi,
    )

    if basetypes.is_base_type(row.t):
        return requisite

    target = targets.get(row.t)
    if target is None or target.up != 0:
        return requisite

    if target.val == "":
        referenced = targets.get(target.t)
        requisite.ref_row = target.id
        requisite.ref_type = target.t
        requisite.base = referenced.t if referenced is not None else basetypes.CHARS
    else:
        requisite.arr_type = target.id
        requisite.base = target.t

    return requisite

def load_requisites(store: Store, db: str, type_id: int) -> List[Requisite]:
    z = store.table(db)
    rows = store.fetchall(select(z).where(z.c.up == type_id).order_by(z.c.ord, z.c.id))
    if not rows:
        return []

    # reference rows and the types they point at, two hops at most
    wanted = {row.t for row in rows if not basetypes.is_base_type(row.t)}
    targets = {}
    if wanted:
        for target in store.fetchall(select(z).where(z.c.id.in_(wanted))):
            targets[target.id] = target
        second = {t.t for t in targets.values() if t.val == "" and t.t not in targets}
        if second:
            for target in store.fetchall(select(z).where(z.c.id.in_(second))):
                targets[target.id] = target

    return [_classify(row, targets) for row in rows]

def load_requisite(store: Store, db: str, req_id: int) -> Optional[Requisite]:
    row = store.get(db, req_id)
    if row is None or row.up == 0:
        return None
    for requisite in load_requisites(store, db, row.up):
        if requisite.id == req_id:
            return requisite
    return None

def load_type(store: Store, db: str, type_id: int) -> Optional[TypeDefinition]:
    row = store.get(db, type_id)
    if row is None or row.up != 0:
        return None
    return TypeDefinition(
        id=row.id,
        name=row.val,
        base=row.t,
        unique=bool(row.ord),
        requisites=load_requisites(store, db, row.id),
    )

def target_type(store: Store, db: str, id: int) -> Optional[int]:
    """Type whose objects a dropdown on ``id`` offers.

    ``id`` may be a reference requisite, a reference row or a type itself.
    """
    row = store.get(db, id)
    if row is None:
        return None
    if row.up == 0:
        return row.t if row.val == "" else row.id

    requisite = load_requisite(store, db, id)
    if requisite is None:
        return None
    if requisite.is_ref:
        return requisite.ref_type
    return requisite.arr_type

# Rows every new database starts with: (id, up, ord, t, val)
BASE_SCHEMA = (
    (1, 0, 1, 1, "Object"),
    *((type_id, 0, 0, type_id, name) for type_id, name in basetypes.REV_BASE_TYPE.items()),

    (basetypes.USER, 0, 1, basetypes.CHARS, "User"),
    (basetypes.PASSWORD, basetypes.USER, 1, basetypes.PWD, ":!NULL:Password"),
    (basetypes.PHONE, basetypes.USER, 2, basetypes.CHARS, "Phone"),
    (basetypes.EMAIL, basetypes.USER, 3, basetypes.CHARS, "Email"),
    (basetypes.TOKEN, basetypes.USER, 4, basetypes.CHARS, "Token"),
    (basetypes.XSRF, basetypes.USER, 5, basetypes.CHARS, "XSRF"),
    (basetypes.SECRET, basetypes.USER, 6, basetypes.CHARS, "Secret"),
    (basetypes.USER_REG_DATE, basetypes.USER, 7, basetypes.DATE, "Registered"),
    (basetypes.USER_ROLE_LINK, basetypes.USER, 8, basetypes.CHARS, "Role"),

    (basetypes.ROLE, 0, 1, basetypes.CHARS, "Role"),
    (basetypes.ROLE_OBJECT, basetypes.ROLE, 1, basetypes.CHARS, "Object"),
    (basetypes.LEVEL, 0, 0, basetypes.CHARS, "Level"),
    (basetypes.MASK, basetypes.ROLE_OBJECT, 1, basetypes.CHARS, "Mask"),
    (basetypes.EXPORT, basetypes.ROLE_OBJECT, 2, basetypes.BOOLEAN, "Export"),
    (basetypes.DELETE, basetypes.ROLE_OBJECT, 3, basetypes.BOOLEAN, "Delete"),

    (basetypes.REPORT, 0, 0, basetypes.CHARS, "Report"),
    (basetypes.REP_COLS, basetypes.REPORT, 1, basetypes.CHARS, "Columns"),
    (basetypes.REP_JOIN, basetypes.REPORT, 2, basetypes.CHARS, "Joins"),
    (basetypes.CONNECT, 0, 0, basetypes.CHARS, "Connector"),

    (basetypes.READ_LEVEL, 1, 1, basetypes.LEVEL, "READ"),
    (basetypes.WRITE_LEVEL, 1, 2, basetypes.LEVEL, "WRITE"),
    (int(basetypes.DEFAULT_ROLE), 1, 1, basetypes.ROLE, "user"),
)

# Registry of databases, present only in the "my" database
REGISTRY_SCHEMA = (
    (basetypes.DATABASE, basetypes.USER, 9, basetypes.CHARS, "Database"),
    (basetypes.DATABASE_DATE, basetypes.DATABASE, 1, basetypes.DATE, "Created"),
    (basetypes.DATABASE_DESCRIPTION, basetypes.DATABASE, 2, basetypes.CHARS, "Description"),
    (basetypes.DATABASE_TEMPLATE, basetypes.DATABASE, 3, basetypes.CHARS, "Template"),
)

def seed_rows(db: str) -> tuple:
    if db == "my":
        return BASE_SCHEMA + REGISTRY_SCHEMA
    return BASE_SCHEMA
