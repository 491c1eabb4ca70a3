"""
Fixed type ids of the legacy schema.

Ids 2..17 are base types with built-in value semantics. The remaining ids
are rows every legacy database is seeded with (users, roles, grants,
reports) and which the compat layer addresses directly.
"""

HTML = 2
SHORT = 3
DATETIME = 4
GRANT = 5
PWD = 6
BUTTON = 7
CHARS = 8
DATE = 9
FILE = 10
BOOLEAN = 11
MEMO = 12
NUMBER = 13
SIGNED = 14
CALCULATABLE = 15
REPORT_COLUMN = 16
PATH = 17

USER = 18
PASSWORD = 20
REPORT = 22
REP_COLS = 28
PHONE = 30
XSRF = 40
EMAIL = 41
ROLE = 42
REP_JOIN = 44
LEVEL = 47
MASK = 49
EXPORT = 55
DELETE = 56

ROLE_OBJECT = 116
TOKEN = 125
SECRET = 130

# Objects of LEVEL
READ_LEVEL = 145
WRITE_LEVEL = 146

CONNECT = 226
DATABASE = 271

# Requisites of a DATABASE record in the "my" registry
DATABASE_DATE = 275
DATABASE_DESCRIPTION = 276
DATABASE_TEMPLATE = 283

# Requisites written for self-registered users
USER_ROLE_LINK = 164
USER_REG_DATE = 156
DEFAULT_ROLE = "115"

REV_BASE_TYPE = {
    HTML: "HTML",
    SHORT: "SHORT",
    DATETIME: "DATETIME",
    GRANT: "GRANT",
    PWD: "PWD",
    BUTTON: "BUTTON",
    CHARS: "CHARS",
    DATE: "DATE",
    FILE: "FILE",
    BOOLEAN: "BOOLEAN",
    MEMO: "MEMO",
    NUMBER: "NUMBER",
    SIGNED: "SIGNED",
    CALCULATABLE: "CALCULATABLE",
    REPORT_COLUMN: "REPORT_COLUMN",
    PATH: "PATH",
}

def is_base_type(type_id) -> bool:
    return type_id in REV_BASE_TYPE

def base_type_name(type_id, default: str = "SHORT") -> str:
    return REV_BASE_TYPE.get(type_id, default)
