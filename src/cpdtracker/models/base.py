"""Shared columns and helpers for every syncable entity."""
import re
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


class Currency(str, Enum):
    TWD = "TWD"
    JPY = "JPY"
    USD = "USD"


def utcnow() -> datetime:
    """Naive UTC now; SQLite stores datetimes without an offset."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


# ── Timestamps ────────────────────────────────────────────────────────────────

_TIMESTAMP_RE = re.compile(
    r"^(?P<date>\d{4}-\d{2}-\d{2})"
    r"(?:[T ](?P<h>\d{2}):(?P<m>\d{2})(?::(?P<s>\d{2})(?:\.(?P<frac>\d{1,9}))?)?)?"
    r"\s*(?P<tz>Z|[+-]\d{2}:?\d{2})?$"
)


def parse_timestamp(value: Union[str, datetime]) -> datetime:
    """Parse a wire timestamp into a naive UTC datetime.

    Accepts:
      - "2024-01-15T10:30:00.123Z"       (ISO, T separator)
      - "2024-01-15 10:30:00.123Z"       (PocketBase, space separator)
      - "2024-01-15T10:30:00.123456+08:00"
      - "2024-01-15"                     (date only, midnight UTC)

    Aware datetimes are converted to UTC; naive ones are taken as UTC.

    Raises:
        ValueError: unrecognised format.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    match = _TIMESTAMP_RE.match(str(value).strip())
    if not match:
        raise ValueError(f"Unrecognised timestamp: {value!r}")

    frac = (match.group("frac") or "0")[:6].ljust(6, "0")
    dt = datetime.strptime(match.group("date"), "%Y-%m-%d").replace(
        hour=int(match.group("h") or 0),
        minute=int(match.group("m") or 0),
        second=int(match.group("s") or 0),
        microsecond=int(frac),
    )

    tz = match.group("tz")
    if tz and tz != "Z":
        sign = 1 if tz[0] == "+" else -1
        digits = tz[1:].replace(":", "")
        offset = timedelta(hours=int(digits[:2]), minutes=int(digits[2:]))
        dt -= sign * offset
    return dt


def format_timestamp(dt: Union[str, datetime], sep: str = "T") -> str:
    """Canonical wire form, truncated to milliseconds: 2024-01-15T10:30:00.123Z"""
    dt = parse_timestamp(dt)
    return f"{dt:%Y-%m-%d}{sep}{dt:%H:%M:%S}.{dt.microsecond // 1000:03d}Z"


# ── Base model ────────────────────────────────────────────────────────────────

class SyncableEntity(SQLModel):
    """
    Local primary key plus the bookkeeping the sync engine owns.

    remote_id is None until the first confirmed create on the backend.
    synced=False means local content must be uploaded.

    Datetime columns are naive UTC and declared with a plain DateTime so the
    column type does not depend on the sqlmodel release.
    """

    id: str = Field(default_factory=new_id, primary_key=True)
    remote_id: Optional[str] = Field(default=None, index=True)
    synced: bool = Field(default=False, index=True)
    last_synced_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    def normalize(self) -> None:
        """Bring field values into their stored form. Called before every write."""


# Fields managed by the sync engine rather than by user edits.
SYNC_FIELDS = frozenset({"id", "remote_id", "synced", "last_synced_at"})
