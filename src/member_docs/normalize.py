"""Normalization functions for member import and wire decoding.

Text helpers accept None and return None for blank input.  Date helpers
return timezone-aware UTC datetimes, or None when the input cannot be
parsed.
"""

from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

ID_WIDTH = 5

# Years above this are Buddhist Era (e.g. 2567 BE == 2024 CE).
BUDDHIST_ERA_THRESHOLD = 2400
BUDDHIST_ERA_OFFSET = 543

_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})(?:[T ].*)?$")
_DMY_SEPARATOR_RE = re.compile(r"[/.\-]")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


def cell_text(value: Any) -> str | None:
    """Render a spreadsheet/CSV cell as trimmed text.

    Spreadsheet readers hand back ints and floats for numeric cells; a
    whole float such as 7.0 is rendered as "7".
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return trim(str(value))
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return trim(str(value))


# ---------------------------------------------------------------------------
# Rule 3: normalize_member_id
# ---------------------------------------------------------------------------

def normalize_member_id(value: Any) -> str | None:
    """Left-pad a member id with zeros to ID_WIDTH characters.

    "1" → "00001", 7 → "00007", "00042" → "00042".  Ids already longer than
    ID_WIDTH are returned trimmed but otherwise untouched.  Blank → None.
    """
    v = cell_text(value)
    if v is None:
        return None
    return v.rjust(ID_WIDTH, "0")


# ---------------------------------------------------------------------------
# Rule 4: instants
# ---------------------------------------------------------------------------

def utc_now() -> datetime:
    """Current UTC time truncated to milliseconds (the wire precision)."""
    now = datetime.now(timezone.utc)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def utc_midnight(value: date) -> datetime:
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def format_instant(value: datetime) -> str:
    """Render an aware datetime as '2024-07-15T00:00:00.000Z'."""
    v = value.astimezone(timezone.utc)
    return v.strftime("%Y-%m-%dT%H:%M:%S.") + f"{v.microsecond // 1000:03d}Z"


def parse_instant(value: Any) -> datetime | None:
    """Parse an ISO-8601 instant.  A trailing 'Z' and naive values are UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        v = cell_text(value)
        if v is None:
            return None
        if v.endswith(("Z", "z")):
            v = v[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(v)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Rule 5: parse_registration_date
# ---------------------------------------------------------------------------

def parse_registration_date(value: Any) -> datetime | None:
    """Parse a registration date into UTC midnight of its calendar day.

    Accepts:
    - a native date or datetime (only the calendar day is kept)
    - ISO calendar dates: '2024-07-15', '2024-07-15T08:00:00Z'
    - day/month/year with '/', '.' or '-' separators and a 4-digit year;
      years above 2400 are Buddhist Era and are shifted back by 543
      ('15/07/2567' → 2024-07-15)

    Days that do not exist ('31/02/2024') return None.
    """
    if isinstance(value, datetime):
        return utc_midnight(value.date())
    if isinstance(value, date):
        return utc_midnight(value)

    v = cell_text(value)
    if v is None:
        return None

    m = _ISO_DATE_RE.match(v)
    if m:
        return _calendar_day(int(m.group(1)), int(m.group(2)), int(m.group(3)))

    parts = [p.strip() for p in _DMY_SEPARATOR_RE.split(v)]
    if len(parts) != 3 or not all(p.isdigit() for p in parts):
        return None
    if len(parts[2]) != 4:
        return None
    day, month, year = int(parts[0]), int(parts[1]), int(parts[2])
    if year > BUDDHIST_ERA_THRESHOLD:
        year -= BUDDHIST_ERA_OFFSET
    return _calendar_day(year, month, day)


def _calendar_day(year: int, month: int, day: int) -> datetime | None:
    # date() refuses days that are not on the calendar, so a successful
    # build is an exact day/month/year round-trip.
    try:
        return utc_midnight(date(year, month, day))
    except ValueError:
        return None
