"""
LocalStore: the durable, queryable home of every asset and subscription.

All reads and writes go through short-lived SQLModel sessions on a shared
engine. The store is constructed once at startup (see services.py) and passed
to whoever needs it.

Dirty-flag contract: update() marks a record as needing upload (synced=False)
unless the caller explicitly passes synced=True. Only the sync engine does
that, via mark_synced() / apply_remote().
"""
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, TypeVar

from sqlmodel import Session, SQLModel, func, select

from cpdtracker.db.migrations import SCHEMA_VERSION
from cpdtracker.models.asset import Asset
from cpdtracker.models.base import SYNC_FIELDS, parse_timestamp, utcnow
from cpdtracker.models.settings import SETTINGS_ID, AppSettings
from cpdtracker.models.subscription import Subscription
from cpdtracker.models.sync import SyncLog, Tombstone

logger = logging.getLogger(__name__)

SYNCABLE_MODELS = (Asset, Subscription)

M = TypeVar("M", bound=SQLModel)


class RecordNotFoundError(LookupError):
    """Raised when an id does not name a stored record."""


def content_fields(model: Type[SQLModel]) -> List[str]:
    """Column names a user edit can change (everything but sync bookkeeping)."""
    return [name for name in model.__table__.columns.keys() if name not in SYNC_FIELDS]


def _prepare(record: SQLModel) -> None:
    """Bring a record into its stored form and enforce model invariants.

    Enum members become plain strings and aware datetimes naive UTC; the
    model's normalize() hook runs before check_invariants().
    """
    for name in record.__table__.columns.keys():
        value = getattr(record, name, None)
        if isinstance(value, Enum):
            setattr(record, name, value.value)
        elif isinstance(value, datetime) and value.tzinfo is not None:
            setattr(record, name, parse_timestamp(value))
    normalize = getattr(record, "normalize", None)
    if normalize is not None:
        normalize()
    check = getattr(record, "check_invariants", None)
    if check is not None:
        check()


class LocalStore:
    def __init__(self, engine):
        """
        Args:
            engine: SQLAlchemy engine returned by open_engine() (migrations
                already applied).
        """
        self.engine = engine

    # ─── Queries ──────────────────────────────────────────────────────────────

    def get(self, model: Type[M], record_id: str) -> Optional[M]:
        with Session(self.engine) as s:
            return s.get(model, record_id)

    def get_all(self, model: Type[M]) -> List[M]:
        with Session(self.engine) as s:
            return list(s.exec(select(model)).all())

    def get_by(self, model: Type[M], field: str, value: Any) -> List[M]:
        """Return all records whose indexed `field` equals `value`."""
        column = model.__table__.columns.get(field)
        if column is None or not (column.index or column.primary_key):
            raise ValueError(f"{model.__name__}.{field} is not an indexed field")
        if isinstance(value, Enum):
            value = value.value
        with Session(self.engine) as s:
            return list(s.exec(select(model).where(column == value)).all())

    def find_by_remote_id(self, model: Type[M], remote_id: str) -> Optional[M]:
        with Session(self.engine) as s:
            return s.exec(select(model).where(model.remote_id == remote_id)).first()

    def pending(self, model: Type[M]) -> List[M]:
        """Records with local changes not yet uploaded."""
        with Session(self.engine) as s:
            return list(s.exec(select(model).where(model.synced == False)).all())  # noqa: E712

    def count_pending(self) -> int:
        """Live count of dirty records across every syncable collection."""
        total = 0
        with Session(self.engine) as s:
            for model in SYNCABLE_MODELS:
                total += s.exec(
                    select(func.count()).select_from(model).where(model.synced == False)  # noqa: E712
                ).one()
        return total

    # ─── Mutations ────────────────────────────────────────────────────────────

    def add(self, record: M) -> M:
        _prepare(record)
        with Session(self.engine) as s:
            s.add(record)
            s.commit()
            s.refresh(record)
        return record

    def bulk_add(self, records: Iterable[SQLModel]) -> int:
        """Insert all records in one transaction; nothing is written on error."""
        records = list(records)
        for record in records:
            _prepare(record)
        with Session(self.engine) as s:
            s.add_all(records)
            s.commit()
        return len(records)

    def update(self, model: Type[M], record_id: str, changes: Dict[str, Any]) -> M:
        """
        Apply `changes` to a stored record.

        Any update counts as a local edit and sets synced=False, unless the
        caller passes synced=True explicitly.

        Raises:
            RecordNotFoundError: no record with that id.
            ValueError: unknown field, id change, or a broken invariant.
        """
        changes = dict(changes)
        unknown = set(changes) - set(model.__table__.columns.keys())
        if unknown:
            raise ValueError(f"Unknown {model.__name__} fields: {sorted(unknown)}")
        if "id" in changes and changes["id"] != record_id:
            raise ValueError("Record id is immutable")
        if changes.get("synced") is not True:
            changes["synced"] = False

        with Session(self.engine) as s:
            record = s.get(model, record_id)
            if record is None:
                raise RecordNotFoundError(f"{model.__name__} {record_id} not found")
            for key, value in changes.items():
                setattr(record, key, value)
            _prepare(record)
            s.add(record)
            s.commit()
            s.refresh(record)
            return record

    def delete(self, model: Type[SQLModel], record_id: str) -> None:
        """
        Remove a record locally. If it was ever uploaded, leave a tombstone
        so the next sync deletes the remote copy too.
        """
        with Session(self.engine) as s:
            record = s.get(model, record_id)
            if record is None:
                raise RecordNotFoundError(f"{model.__name__} {record_id} not found")
            if record.remote_id:
                s.add(Tombstone(
                    collection=model.collection_name,
                    local_id=record.id,
                    remote_id=record.remote_id,
                ))
            s.delete(record)
            s.commit()

    def clear(self) -> None:
        """Delete every asset, subscription and pending tombstone atomically."""
        with Session(self.engine) as s:
            self._clear_in(s)
            s.commit()

    def _clear_in(self, s: Session) -> None:
        for model in (*SYNCABLE_MODELS, Tombstone):
            for row in s.exec(select(model)).all():
                s.delete(row)
        s.flush()

    # ─── Sync engine hooks ────────────────────────────────────────────────────

    def mark_synced(
        self,
        model: Type[M],
        record_id: str,
        *,
        remote_id: str,
        at: datetime,
        unchanged: Optional[Callable[[M], bool]] = None,
    ) -> bool:
        """
        Record a confirmed upload.

        remote_id is always stored. synced/last_synced_at are only set if
        `unchanged(current_record)` holds, i.e. the user did not edit the
        record while the upload was in flight.

        Returns:
            True if the record is now clean.
        """
        with Session(self.engine) as s:
            record = s.get(model, record_id)
            if record is None:
                # Deleted locally mid-upload: the remote copy must go as well.
                s.add(Tombstone(
                    collection=model.collection_name,
                    local_id=record_id,
                    remote_id=remote_id,
                ))
                s.commit()
                return False
            record.remote_id = remote_id
            clean = unchanged is None or unchanged(record)
            if clean:
                record.synced = True
                record.last_synced_at = at
            s.add(record)
            s.commit()
            return clean

    def apply_remote(
        self,
        model: Type[M],
        record_id: str,
        incoming: M,
        *,
        remote_id: str,
        at: datetime,
    ) -> M:
        """Overwrite a local record's content with a downloaded version."""
        _prepare(incoming)
        with Session(self.engine) as s:
            record = s.get(model, record_id)
            if record is None:
                raise RecordNotFoundError(f"{model.__name__} {record_id} not found")
            for name in content_fields(model):
                setattr(record, name, getattr(incoming, name))
            record.remote_id = remote_id
            record.synced = True
            record.last_synced_at = at
            s.add(record)
            s.commit()
            s.refresh(record)
            return record

    def tombstones(self, collection: Optional[str] = None) -> List[Tombstone]:
        with Session(self.engine) as s:
            query = select(Tombstone)
            if collection is not None:
                query = query.where(Tombstone.collection == collection)
            return list(s.exec(query.order_by(Tombstone.id)).all())

    def remove_tombstone(self, tombstone_id: int) -> None:
        with Session(self.engine) as s:
            tombstone = s.get(Tombstone, tombstone_id)
            if tombstone is not None:
                s.delete(tombstone)
                s.commit()

    def recent_sync_logs(self, limit: int = 20) -> List[SyncLog]:
        with Session(self.engine) as s:
            return list(s.exec(
                select(SyncLog).order_by(SyncLog.started_at.desc(), SyncLog.id.desc()).limit(limit)
            ).all())

    # ─── Settings singleton ───────────────────────────────────────────────────

    def get_settings(self) -> AppSettings:
        """Return the settings row, creating it with defaults on first use."""
        with Session(self.engine) as s:
            settings = s.get(AppSettings, SETTINGS_ID)
            if settings is None:
                settings = AppSettings()
                s.add(settings)
                s.commit()
                s.refresh(settings)
            return settings

    def update_settings(self, **changes: Any) -> AppSettings:
        unknown = set(changes) - set(AppSettings.__table__.columns.keys())
        if unknown or "id" in changes:
            raise ValueError(f"Unknown settings fields: {sorted(unknown or {'id'})}")
        self.get_settings()
        with Session(self.engine) as s:
            settings = s.get(AppSettings, SETTINGS_ID)
            for key, value in changes.items():
                setattr(settings, key, value)
            _prepare(settings)
            s.add(settings)
            s.commit()
            s.refresh(settings)
            return settings

    # ─── Export / import ──────────────────────────────────────────────────────

    def export_json(self) -> str:
        """Serialize every asset and subscription to a JSON document."""
        payload = {
            "version": SCHEMA_VERSION,
            "export_date": utcnow().isoformat(),
            "assets": [a.model_dump(mode="json") for a in self.get_all(Asset)],
            "subscriptions": [s.model_dump(mode="json") for s in self.get_all(Subscription)],
        }
        return json.dumps(payload, indent=2, ensure_ascii=False)

    def import_json(self, text: str) -> Dict[str, int]:
        """
        Replace all local data with the contents of an export document.

        The document is fully validated first; on any error a ValueError is
        raised and the existing data is left untouched.

        Returns:
            Counts of imported records per collection.
        """
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Import file is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError("Import file must contain a JSON object")

        records: List[SQLModel] = []
        counts = {}
        for key, model in (("assets", Asset), ("subscriptions", Subscription)):
            items = data.get(key) or []
            if not isinstance(items, list):
                raise ValueError(f"'{key}' must be a list")
            for item in items:
                record = model.model_validate(item)
                _prepare(record)
                records.append(record)
            counts[key] = len(items)

        with Session(self.engine) as s:
            self._clear_in(s)
            s.add_all(records)
            s.commit()
        logger.info(
            "Imported %d assets, %d subscriptions", counts["assets"], counts["subscriptions"]
        )
        return counts
