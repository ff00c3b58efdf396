"""
Record mapper: local SQLModel rows <-> remote wire dicts.

Pure functions, no DB or network access; the sync engine handles both.

Each entity is described by a table of WireFields. Field names on the wire are
snake_case and match the local columns. What differs between backends comes
from the WireDialect:

  - owner field:   PocketBase "user",    Supabase "user_id"
  - timestamps:    PocketBase "updated", Supabase "updated_at"
  - date format:   "2024-01-15 00:00:00.000Z" vs "2024-01-15T00:00:00.000Z"
  - null handling: PocketBase has no nulls; absent text is "" and absent
                   numbers are 0, both read back as None for nullable fields

Every payload also carries local_id (the local primary key), so a record
uploaded from one device can be re-linked when downloaded again.

Round trip: from_remote(to_remote(x)) reproduces every content field of x,
with datetimes truncated to the millisecond.
"""
import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Type

from cpdtracker.models.asset import Asset, AssetCategory, AssetRole, AssetStatus
from cpdtracker.models.base import (
    Currency,
    SyncableEntity,
    format_timestamp,
    new_id,
    parse_timestamp,
)
from cpdtracker.models.subscription import (
    BillingCycle,
    Subscription,
    SubscriptionCategory,
    SubscriptionStatus,
)
from cpdtracker.remote.base import WireDialect

# ── Field tables ──────────────────────────────────────────────────────────────

TEXT = "text"
FLOAT = "float"
INT = "int"
DATETIME = "datetime"
ENUM = "enum"
MAINTENANCE_LOG = "maintenance_log"


@dataclass(frozen=True)
class WireField:
    local: str
    kind: str = TEXT
    required: bool = False
    nullable: bool = False
    enum: Optional[Type[Enum]] = None
    remote: str = ""

    @property
    def wire_name(self) -> str:
        return self.remote or self.local


@dataclass(frozen=True)
class EntitySpec:
    collection: str
    model: Type[SyncableEntity]
    label: str
    fields: Tuple[WireField, ...]

    def describe(self, record: Any) -> str:
        """'Asset "MacBook Pro"', used to prefix per-record error messages."""
        return f'{self.label} "{getattr(record, "name", "?")}"'


ASSETS = EntitySpec(
    collection=Asset.collection_name,
    model=Asset,
    label="Asset",
    fields=(
        WireField("name", required=True),
        WireField("category", ENUM, required=True, enum=AssetCategory),
        WireField("purchase_date", DATETIME, required=True),
        WireField("price", FLOAT, required=True),
        WireField("currency", ENUM, required=True, enum=Currency),
        WireField("maintenance_log", MAINTENANCE_LOG),
        WireField("target_lifespan", INT),
        WireField("status", ENUM, required=True, enum=AssetStatus),
        WireField("sold_price", FLOAT, nullable=True),
        WireField("notes"),
        WireField("role", ENUM, enum=AssetRole),
        WireField("system_id", nullable=True),
        WireField("linked_asset_id", nullable=True),
        WireField("power_watts", FLOAT),
        WireField("daily_usage_hours", FLOAT),
        WireField("recurring_maintenance_cost", FLOAT),
    ),
)

SUBSCRIPTIONS = EntitySpec(
    collection=Subscription.collection_name,
    model=Subscription,
    label="Subscription",
    fields=(
        WireField("name", required=True),
        WireField("billing_cycle", ENUM, required=True, enum=BillingCycle),
        WireField("cost", FLOAT, required=True),
        WireField("currency", ENUM, required=True, enum=Currency),
        WireField("start_date", DATETIME, required=True),
        WireField("category", ENUM, required=True, enum=SubscriptionCategory),
        WireField("status", ENUM, required=True, enum=SubscriptionStatus),
        WireField("cancelled_date", DATETIME, nullable=True),
        WireField("notes"),
    ),
)

# Upload/download order
ENTITIES: Tuple[EntitySpec, ...] = (ASSETS, SUBSCRIPTIONS)


# ── Encoding ──────────────────────────────────────────────────────────────────

def _blank(field: WireField) -> Any:
    return 0 if field.kind in (FLOAT, INT) else ""


def _encode(field: WireField, value: Any, dialect: WireDialect) -> Any:
    if value is None:
        return _blank(field) if dialect.blank_nulls else None
    if field.kind == DATETIME:
        return format_timestamp(value, dialect.timestamp_sep)
    if field.kind == ENUM:
        return value.value if isinstance(value, Enum) else str(value)
    if field.kind == FLOAT:
        return float(value)
    if field.kind == INT:
        return int(value)
    if field.kind == MAINTENANCE_LOG:
        return [
            {
                "date": format_timestamp(entry["date"], "T"),
                "note": entry.get("note") or "",
                "cost": float(entry.get("cost") or 0),
            }
            for entry in value
        ]
    return str(value)


def to_remote(
    entity: EntitySpec,
    record: SyncableEntity,
    owner_id: Optional[str],
    dialect: WireDialect,
) -> Dict[str, Any]:
    """
    Serialize a local record into the backend's wire shape.

    Args:
        entity: ASSETS or SUBSCRIPTIONS.
        record: The local row.
        owner_id: Remote user id stamped into the dialect's owner field.
        dialect: Wire conventions of the target backend.

    Returns:
        Payload dict for create/update. Contains no remote id.
    """
    payload: Dict[str, Any] = {
        field.wire_name: _encode(field, getattr(record, field.local), dialect)
        for field in entity.fields
    }
    payload["local_id"] = record.id
    payload["synced"] = True
    payload[dialect.owner_field] = owner_id
    return payload


# ── Decoding ──────────────────────────────────────────────────────────────────

def _is_absent(field: WireField, raw: Any, dialect: WireDialect) -> bool:
    if raw is None:
        return True
    if dialect.blank_nulls and raw == "" and field.kind != TEXT:
        return True
    if dialect.blank_nulls and field.nullable:
        return raw == _blank(field)
    return False


def _decode(field: WireField, raw: Any) -> Any:
    if field.kind == DATETIME:
        return parse_timestamp(raw)
    if field.kind == ENUM:
        try:
            return field.enum(raw).value
        except ValueError:
            raise ValueError(f"invalid {field.wire_name} value {raw!r}") from None
    if field.kind == FLOAT:
        return float(raw)
    if field.kind == INT:
        return int(raw)
    if field.kind == MAINTENANCE_LOG:
        if isinstance(raw, str):
            raw = json.loads(raw) if raw.strip() else []
        return [
            {
                "date": format_timestamp(parse_timestamp(entry["date"]), "T"),
                "note": entry.get("note") or "",
                "cost": float(entry.get("cost") or 0),
            }
            for entry in raw
        ]
    return str(raw)


def from_remote(
    entity: EntitySpec,
    remote: Dict[str, Any],
    dialect: WireDialect,
    existing_local_id: Optional[str] = None,
) -> SyncableEntity:
    """
    Build a local record from a wire dict.

    The local id is, in order of preference: existing_local_id, the payload's
    local_id, a fresh UUID4. remote_id is taken from the payload id.

    Raises:
        ValueError: missing required field, unknown enum value, unparseable
            timestamp, or a broken model invariant.
    """
    values: Dict[str, Any] = {}
    for field in entity.fields:
        raw = remote.get(field.wire_name)
        if _is_absent(field, raw, dialect):
            if field.nullable:
                values[field.local] = None
            elif field.required:
                raise ValueError(f"missing required field '{field.wire_name}'")
            continue
        try:
            values[field.local] = _decode(field, raw)
        except (TypeError, KeyError) as exc:
            raise ValueError(f"malformed {field.wire_name}: {exc}") from exc

    record = entity.model(
        id=existing_local_id or remote.get("local_id") or new_id(),
        remote_id=remote_id(remote),
        **values,
    )
    check = getattr(record, "check_invariants", None)
    if check is not None:
        check()
    return record


def remote_id(remote: Dict[str, Any]) -> str:
    value = remote.get("id")
    if value in (None, ""):
        raise ValueError("remote record has no id")
    return str(value)


def remote_updated_at(remote: Dict[str, Any], dialect: WireDialect) -> Optional[datetime]:
    """Server-side last-modified time as naive UTC, or None if absent."""
    raw = remote.get(dialect.updated_field)
    if not raw:
        return None
    return parse_timestamp(raw)
