"""
Text formats for whole-table export and import.

Backup lines are ``id;up;t;ord;val`` with every field delta-encoded against
the previous line:

* ``id`` is empty when it follows the previous id by one, otherwise the
  base36 distance to it
* ``up`` and ``t`` are empty when unchanged, otherwise base36
* ``;;`` opening a line (next id, same parent) is shortened to ``/``
* ``ord`` is empty when 1, otherwise decimal
* ``val`` is the rest of the line with CR/LF replaced by ``&ritrr;``/``&ritrn;``

The CSV export writes one block per type, ``;`` separated and backslash
escaped instead of quoted.
"""

import io
import time
import logging
import zipfile
from typing import Iterable, Iterator, List, NamedTuple, Optional, Tuple

from sqlalchemy import and_, select

from integram_compat import basetypes, codec
from integram_compat.schema import strip_modifiers
from integram_compat.settings import settings
from integram_compat.store import Store

logger = logging.getLogger(__name__)

BOM = "\ufeff"
RESTORE_BATCH = 1000

_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"

class DumpRow(NamedTuple):
    id: int
    up: int
    t: int
    ord: int
    val: str

def base36(number: int) -> str:
    if number == 0:
        return "0"
    sign = "-" if number < 0 else ""
    number = abs(number)
    digits = []
    while number:
        number, rest = divmod(number, 36)
        digits.append(_DIGITS[rest])
    return sign + "".join(reversed(digits))

def escape_value(val: Optional[str]) -> str:
    return (val or "").replace("\r", "&ritrr;").replace("\n", "&ritrn;")

def unescape_value(val: str) -> str:
    return val.replace("&ritrn;", "\n").replace("&ritrr;", "\r")

class BackupEncoder:
    """Stateful line encoder; the delta state spans every page of a dump."""

    def __init__(self):
        self.last_id = 0
        self.last_up = None
        self.last_t = None

    def encode(self, row) -> str:
        if row.id == self.last_id + 1:
            line = ";"
        else:
            line = base36(row.id - self.last_id) + ";"
        self.last_id = row.id

        if row.up != self.last_up:
            line += base36(row.up) + ";"
            self.last_up = row.up
        elif line == ";":
            line = "/"
        else:
            line += ";"

        if row.t != self.last_t:
            line += base36(row.t) + ";"
            self.last_t = row.t
        else:
            line += ";"

        if row.ord != 1:
            line += str(row.ord)

        return line + ";" + escape_value(row.val) + "\n"

def encode_rows(rows: Iterable) -> str:
    encoder = BackupEncoder()
    return BOM + "".join(encoder.encode(row) for row in rows)

def _take(line: str) -> Tuple[str, str]:
    field, _, rest = line.partition(";")
    return field, rest

def decode_lines(lines: Iterable[str]) -> Iterator[DumpRow]:
    last_id = 0
    last_up = 0
    last_t = 0
    first = True

    for line in lines:
        line = line.rstrip("\r\n")
        if first:
            if line.startswith(BOM):
                line = line[1:]
            elif line.startswith("\xef\xbb\xbf"):
                line = line[3:]
            first = False
        if not line.strip():
            continue

        if line.startswith("/"):
            last_id += 1
            line = line[1:]
        else:
            field, line = _take(line)
            last_id += int(field, 36) if field else 1
            field, line = _take(line)
            if field:
                last_up = int(field, 36)

        field, line = _take(line)
        if field:
            last_t = int(field, 36)

        field, line = _take(line)
        ord = int(field) if field.lstrip("-").isdigit() else 1

        yield DumpRow(last_id, last_up, last_t, ord, unescape_value(line))

def decode_text(text: str) -> List[DumpRow]:
    return list(decode_lines(text.split("\n")))

def mask_csv(val) -> str:
    if val is None:
        return ""
    return str(val).replace(";", "\\;").replace("\n", "\\n").replace("\r", "\\r")

def timestamp() -> str:
    return time.strftime("%Y%m%d_%H%M%S", time.gmtime())

def zip_chunks(name: str, chunks: Iterable[str]) -> bytes:
    """Zip archive with a single member written chunk by chunk."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        with archive.open(name, "w") as member:
            for chunk in chunks:
                member.write(chunk.encode("utf-8"))
    return buffer.getvalue()

def zip_single(name: str, content: str) -> bytes:
    return zip_chunks(name, [content])

def read_dump_archive(data: bytes) -> str:
    """Text of the ``.dmp`` member of a backup zip, or the data itself when it is no zip."""
    if not zipfile.is_zipfile(io.BytesIO(data)):
        return data.decode("utf-8-sig")

    with zipfile.ZipFile(io.BytesIO(data)) as archive:
        names = archive.namelist()
        if not names:
            return ""
        member = next((name for name in names if name.endswith(".dmp")), names[0])
        return archive.read(member).decode("utf-8")

def backup(store: Store, db: str, page_size: Optional[int] = None) -> Iterator[str]:
    """Backup text of a whole table, produced page by page."""
    encoder = BackupEncoder()
    yield BOM
    total = 0
    for page in store.iter_pages(db, page_size or settings.BACKUP_PAGE_SIZE):
        total += len(page)
        yield "".join(encoder.encode(row) for row in page)
    logger.info(f"Dumped {total} rows of {db}")

def restore(store: Store, db: str, text: str) -> int:
    rows = decode_text(text)
    for start in range(0, len(rows), RESTORE_BATCH):
        store.insert_ignore(db, [row._asdict() for row in rows[start:start + RESTORE_BATCH]])
    logger.info(f"Restored {len(rows)} rows into {db}")
    return len(rows)

class CsvColumn(NamedTuple):
    id: int
    base: int

def independent_types(store: Store, db: str) -> List[Tuple[int, str, int, List[CsvColumn]]]:
    """Types exported by the full CSV dump with their header and columns.

    Types used as a subordinate array of another type are skipped, as are
    calculated and button types.
    """
    z = store.table(db)
    types = store.fetchall(
        select(z).where(z.c.up == 0, z.c.id != z.c.t, z.c.val != "", z.c.t != 0).order_by(z.c.id)
    )
    type_ids = {row.id for row in types}

    reqs = store.fetchall(
        select(z).where(z.c.up.in_(type_ids)).order_by(z.c.up, z.c.ord)
    ) if type_ids else []

    targets = {row.id: row for row in types}
    columns = {}
    nested = set()
    for req in reqs:
        base = req.t
        target = targets.get(req.t)
        if target is not None:
            nested.add(target.id)
            base = target.t
        columns.setdefault(req.up, []).append((req, base))

    result = []
    for row in types:
        if basetypes.REV_BASE_TYPE.get(row.t) in ("CALCULATABLE", "BUTTON") or row.id in nested:
            continue
        header = mask_csv(row.val)
        type_columns = []
        for req, base in columns.get(row.id, []):
            header += ";" + mask_csv(strip_modifiers(req.val))
            type_columns.append(CsvColumn(req.id, base))
        result.append((row.id, header, row.t, type_columns))
    return result

def csv_type(store: Store, db: str, type_id: int, header: str, base: int, columns: List[CsvColumn],
             page_size: Optional[int] = None) -> Iterator[str]:
    """One CSV block: the header line and a line per object of the type."""
    z = store.table(db)
    yield header
    for page in store.iter_pages(db, page_size or settings.BACKUP_PAGE_SIZE,
                                 where=and_(z.c.t == type_id, z.c.up != 0)):
        lines = []
        for obj in page:
            line = "\n" + mask_csv(codec.encode(base, obj.val))
            for column in columns:
                value = store.requisite(db, obj.id, column.id)
                line += ";" + (mask_csv(codec.encode(column.base, value.val)) if value is not None else "")
            lines.append(line)
        yield "".join(lines)

def csv_all(store: Store, db: str, page_size: Optional[int] = None) -> Iterator[str]:
    yield BOM
    for type_id, header, base, columns in independent_types(store, db):
        yield from csv_type(store, db, type_id, header, base, columns, page_size)
        yield "\n\n"
