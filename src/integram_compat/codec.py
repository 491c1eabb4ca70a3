"""
Conversion of requisite values between their input, storage and display forms.

All values live in the ``val`` text column, so both directions work on strings.
Type ids that are not base types pass through untouched, and so do the
``"NULL"``/``None`` sentinels.
"""

import re
import math
import datetime
from typing import Optional, Union

from integram_compat.basetypes import REV_BASE_TYPE

_ISO_DATE = re.compile(r"^(\d{4})[-/.]?(\d{2})[-/.]?(\d{2})")
_DATE_PARTS = re.compile(r"[/., ]")
_INT_PREFIX = re.compile(r"^\s*([+-]?\d+)")
_FLOAT_PREFIX = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")

_DATETIME_FORMATS = (
    "%d.%m.%Y, %H:%M:%S",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%d.%m.%Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%d",
)

Raw = Union[str, int, float, None]

def parse_int_prefix(value) -> Optional[int]:
    """Leading integer of a string, ``None`` when there is none."""
    match = _INT_PREFIX.match(str(value))
    return int(match.group(1)) if match else None

def parse_float_prefix(value) -> Optional[float]:
    match = _FLOAT_PREFIX.match(str(value))
    if not match:
        return None
    number = float(match.group(1))
    return number if math.isfinite(number) else None

def format_number(number: float) -> str:
    if number == int(number):
        return str(int(number))
    return repr(number)

def _format_stamp(timestamp: int, fmt: str) -> Optional[str]:
    """UTC rendering of a unix timestamp, None when it is out of range."""
    try:
        return datetime.datetime.fromtimestamp(timestamp, tz=datetime.timezone.utc).strftime(fmt)
    except (OverflowError, ValueError, OSError):
        return None

def _parse_datetime(text: str) -> Optional[int]:
    for fmt in _DATETIME_FORMATS:
        try:
            parsed = datetime.datetime.strptime(text, fmt)
        except ValueError:
            continue
        return int(parsed.replace(tzinfo=datetime.timezone.utc).timestamp())
    return None

def _decode_date(val: str) -> str:
    val = val.strip()
    iso = _ISO_DATE.match(val)
    if iso:
        return iso.group(1) + iso.group(2) + iso.group(3)

    today = datetime.date.today()
    parts = _DATE_PARTS.split(val)

    year = today.year
    if len(parts) > 2 and parts[2]:
        parsed = parse_int_prefix(parts[2]) or 0
        year = parsed if len(parts[2]) == 4 else 2000 + parsed

    month = today.month
    if len(parts) > 1 and parts[1]:
        month = parse_int_prefix(parts[1]) or 0

    day = parse_int_prefix(parts[0]) or 1

    return f"{year}{month:02d}{day:02d}"

def decode(type_id: int, val: Raw, tzone: int = 0) -> Raw:
    """Normalise user input of the given type into its stored form."""

    if val is None or val == "NULL":
        return val

    base = REV_BASE_TYPE.get(type_id)
    if base is None:
        return val

    if base == "DATE":
        text = str(val)
        if text and not text.startswith("[") and not text.startswith("_request_."):
            return _decode_date(text)

    elif base == "NUMBER":
        number = parse_int_prefix(str(val).replace(",", ".").replace(" ", ""))
        # zero stays as typed so "empty" and "0" remain distinguishable
        if number:
            return str(number)

    elif base == "SIGNED":
        cleaned = str(val).replace(",", ".").replace(" ", "").replace("\u00a0", "")
        number = parse_float_prefix(cleaned)
        if number:
            return format_number(number)

    elif base == "BOOLEAN":
        if val in ("", "-1", " ") or str(val).lower() == "false":
            return ""
        return "1"

    elif base == "DATETIME":
        text = str(val).strip()
        if text and not text.startswith("["):
            stamp = parse_int_prefix(text)
            if stamp is not None and stamp > 10000:
                return str(stamp - tzone)
            parsed = _parse_datetime(text)
            if parsed is not None:
                return str(parsed - tzone)

    return val

def encode(type_id: int, val: Raw, tzone: int = 0) -> Raw:
    """Render a stored value for display."""

    if val is None or val == "":
        return ""

    base = REV_BASE_TYPE.get(type_id)
    if base is None:
        return val

    text = str(val)

    if base == "DATE":
        if len(text) > 8:
            stamp = parse_int_prefix(text)
            shown = _format_stamp(stamp + tzone, "%d.%m.%Y") if stamp is not None else None
            return shown if shown is not None else val
        return f"{text[6:8]}.{text[4:6]}.{text[0:4]}"

    if base == "DATETIME":
        stamp = parse_int_prefix(text)
        shown = _format_stamp(stamp + tzone, "%d.%m.%Y, %H:%M:%S") if stamp is not None else None
        return shown if shown is not None else val

    if base == "BOOLEAN":
        return "X" if val else ""

    if base == "NUMBER":
        number = parse_int_prefix(text)
        return str(number) if number is not None else val

    if base == "SIGNED":
        number = parse_float_prefix(text)
        return format_number(number) if number is not None else val

    return val

def alignment(type_id: int) -> str:
    base = REV_BASE_TYPE.get(type_id)
    if base in ("PWD", "DATE", "BOOLEAN"):
        return "CENTER"
    if base in ("NUMBER", "SIGNED"):
        return "RIGHT"
    return "LEFT"
