"""
Accessor for the single recursive ``(id, up, ord, t, val)`` table.

Every legacy database is one table. Types, requisites, objects and attribute
values are all rows of it; ``up`` points at the parent and ``t`` at the type.
Table names are checked against an identifier whitelist and every value goes
through parameter binding.
"""

import re
import enum
import logging
import threading
from typing import Dict, Iterable, Iterator, List, Optional, Sequence

from sqlalchemy import (
    Column,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    delete,
    func,
    insert,
    inspect,
    select,
    case,
    update,
)
from sqlalchemy.engine import Engine

from integram_compat.api.exceptions import ValidationError

logger = logging.getLogger(__name__)

IDENTIFIER = re.compile(r"^[A-Za-z0-9_]+$")
DB_MASK = re.compile(r"^[a-z]\w{1,14}$", re.IGNORECASE)

LIKE_ESCAPE = "\\"

def contains_pattern(value: str) -> str:
    """LIKE pattern matching ``value`` literally anywhere in a string."""
    for char in (LIKE_ESCAPE, "%", "_"):
        value = value.replace(char, LIKE_ESCAPE + char)
    return f"%{value}%"

def is_valid_db_name(db: Optional[str]) -> bool:
    return bool(db) and DB_MASK.match(db) is not None

def extract_attributes(params: Dict[str, str]) -> Dict[int, str]:
    """``t{id}=value`` form fields keyed by requisite id."""
    attributes = {}
    for key, value in params.items():
        if re.fullmatch(r"t\d+", key):
            attributes[int(key[1:])] = value
    return attributes

class Record:
    """One result row with its columns, ``t`` included, as attributes."""

    __slots__ = ("_values",)

    def __init__(self, mapping):
        self._values = dict(mapping)

    def __getattr__(self, name):
        try:
            return self._values[name]
        except KeyError:
            raise AttributeError(name) from None

    @property
    def _mapping(self) -> Dict[str, object]:
        return self._values

    def __iter__(self):
        return iter(self._values.values())

    def __repr__(self):
        return f"Record({self._values!r})"

class RowKind(str, enum.Enum):
    TYPE = "TYPE"
    REQUISITE = "REQUISITE"
    OBJECT = "OBJECT"
    ATTRIBUTE = "ATTRIBUTE"

class Store:

    def __init__(self, engine: Engine):
        self.engine = engine
        self.metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        self._known: set = set()
        self._lock = threading.Lock()

    def table(self, db: str) -> Table:
        if not db or not IDENTIFIER.match(db):
            raise ValidationError(f"Invalid database name: {db}")

        with self._lock:
            table = self._tables.get(db)
            if table is None:
                table = Table(
                    db,
                    self.metadata,
                    Column("id", Integer, primary_key=True, autoincrement=True),
                    Column("up", Integer, nullable=False, default=0),
                    Column("ord", Integer, nullable=False, default=1),
                    Column("t", Integer, nullable=False, default=0),
                    Column("val", Text, nullable=False, default=""),
                    Index(f"{db}_up", "up"),
                    Index(f"{db}_t", "t"),
                    Index(f"{db}_up_t", "up", "t"),
                )
                self._tables[db] = table
        return table

    # Plain statement helpers for handler specific queries

    def fetchall(self, statement) -> List[Record]:
        with self.engine.connect() as conn:
            return [Record(row._mapping) for row in conn.execute(statement)]

    def fetchone(self, statement) -> Optional[Record]:
        with self.engine.connect() as conn:
            row = conn.execute(statement).first()
            return Record(row._mapping) if row is not None else None

    def scalar(self, statement):
        with self.engine.connect() as conn:
            return conn.execute(statement).scalar()

    def execute(self, statement) -> int:
        with self.engine.begin() as conn:
            return conn.execute(statement).rowcount

    # Schema

    def exists(self, db: str) -> bool:
        if db in self._known:
            return True
        if not is_valid_db_name(db):
            return False
        found = inspect(self.engine).has_table(db)
        if found:
            self._known.add(db)
        return found

    def create(self, db: str, rows: Sequence[tuple] = ()) -> None:
        table = self.table(db)
        with self.engine.begin() as conn:
            table.create(conn, checkfirst=True)
            if rows:
                conn.execute(insert(table), [
                    {"id": id, "up": up, "ord": ord, "t": t, "val": val}
                    for id, up, ord, t, val in rows
                ])
        self._known.add(db)
        logger.info(f"Created table {db} with {len(rows)} seed rows")

    # Row primitives

    def insert(self, db: str, up: int, ord: int, t: int, val="") -> int:
        table = self.table(db)
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(table).values(up=up, ord=ord, t=t, val="" if val is None else str(val))
            )
            return result.inserted_primary_key[0]

    def update_value(self, db: str, id: int, val) -> bool:
        table = self.table(db)
        return self.execute(update(table).where(table.c.id == id).values(val="" if val is None else str(val))) > 0

    def update_order(self, db: str, id: int, ord: int) -> bool:
        table = self.table(db)
        return self.execute(update(table).where(table.c.id == id).values(ord=ord)) > 0

    def update_row(self, db: str, id: int, **values) -> bool:
        table = self.table(db)
        return self.execute(update(table).where(table.c.id == id).values(**values)) > 0

    def delete(self, db: str, id: int) -> bool:
        table = self.table(db)
        return self.execute(delete(table).where(table.c.id == id)) > 0

    def delete_children(self, db: str, up: int) -> int:
        table = self.table(db)
        return self.execute(delete(table).where(table.c.up == up))

    def delete_tree(self, db: str, id: int) -> int:
        """Delete a row with all of its descendants."""
        table = self.table(db)
        ids = [id]
        frontier = [id]
        while frontier:
            frontier = [row.id for row in self.fetchall(select(table.c.id).where(table.c.up.in_(frontier)))]
            ids.extend(frontier)
        removed = 0
        for start in range(0, len(ids), 500):
            removed += self.execute(delete(table).where(table.c.id.in_(ids[start:start + 500])))
        return removed

    def get(self, db: str, id) -> Optional[Record]:
        table = self.table(db)
        return self.fetchone(select(table).where(table.c.id == id))

    def requisite(self, db: str, up: int, t: int) -> Optional[Record]:
        """First child of ``up`` with type ``t``."""
        table = self.table(db)
        return self.fetchone(
            select(table).where(table.c.up == up, table.c.t == t).limit(1)
        )

    def next_order(self, db: str, up: int, t: Optional[int] = None) -> int:
        table = self.table(db)
        statement = select(func.coalesce(func.max(table.c.ord), 0) + 1).where(table.c.up == up)
        if t is not None:
            statement = statement.where(table.c.t == t)
        return self.scalar(statement) or 1

    def move_order(self, db: str, id: int, up: int, old: int, new: int) -> int:
        """Put ``id`` at position ``new`` among the children of ``up``.

        Siblings between the old and the new position shift by one towards
        the vacated slot; the moved row is capped at the current maximum.
        """
        if old == new:
            return 0

        table = self.table(db)
        highest = self.scalar(select(func.max(table.c.ord)).where(table.c.up == up)) or 0
        step = 1 if old > new else -1
        shifted = table.c.ord + step

        return self.execute(
            update(table)
            .where(table.c.up == up, table.c.ord.between(min(old, new), max(old, new)))
            .values(ord=case(
                (table.c.id == id, min(new, highest)),
                (shifted < 0, 0),
                else_=shifted,
            ))
        )

    def children(self, db: str, up: int, t: Optional[int] = None, search: Optional[str] = None,
                 limit: Optional[int] = None, offset: int = 0) -> List[Record]:
        table = self.table(db)
        statement = select(table).where(table.c.up == up)
        if t is not None:
            statement = statement.where(table.c.t == t)
        if search:
            pattern = contains_pattern(search.lower())
            statement = statement.where(func.lower(table.c.val).like(pattern, escape=LIKE_ESCAPE))
        statement = statement.order_by(table.c.ord, table.c.id)
        if limit is not None:
            statement = statement.limit(limit).offset(offset)
        return self.fetchall(statement)

    def resolve_kind(self, db: str, row: Record) -> RowKind:
        """Classify a row from its position in the hierarchy."""
        if row.up == 0:
            return RowKind.TYPE
        if row.up == 1:
            return RowKind.OBJECT

        parent = self.get(db, row.up)
        if parent is None or parent.up == 0:
            return RowKind.REQUISITE

        target = self.get(db, row.t)
        if target is not None and target.up == 0 and target.id != target.t:
            return RowKind.OBJECT
        return RowKind.ATTRIBUTE

    # Bulk access for dumps

    def iter_pages(self, db: str, page_size: int, where=None) -> Iterator[List[Record]]:
        """Pages of rows ordered by id, resuming after the last id seen."""
        table = self.table(db)
        last_id = 0
        while True:
            statement = select(table).where(table.c.id > last_id)
            if where is not None:
                statement = statement.where(where)
            page = self.fetchall(statement.order_by(table.c.id).limit(page_size))
            if not page:
                return
            yield page
            if len(page) < page_size:
                return
            last_id = page[-1].id

    def insert_ignore(self, db: str, rows: Iterable[dict]) -> int:
        """Bulk insert keeping rows whose id already exists."""
        table = self.table(db)
        rows = list(rows)
        if not rows:
            return 0

        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert as pg_insert
            statement = pg_insert(table).on_conflict_do_nothing(index_elements=["id"])
        elif dialect == "sqlite":
            statement = insert(table).prefix_with("OR IGNORE")
        else:
            statement = insert(table).prefix_with("IGNORE")

        with self.engine.begin() as conn:
            result = conn.execute(statement, rows)
        return result.rowcount if result.rowcount >= 0 else len(rows)
