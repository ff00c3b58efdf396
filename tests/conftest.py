"""Shared test fixtures."""
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional

import pytest

from cpdtracker.db.engine import open_engine
from cpdtracker.db.store import LocalStore
from cpdtracker.models.asset import Asset
from cpdtracker.models.base import utcnow
from cpdtracker.models.subscription import Subscription
from cpdtracker.remote.base import (
    POCKETBASE,
    MissingCollectionError,
    RecordNotFoundError,
    RemoteAdapter,
)
from cpdtracker.sync.mapper import format_timestamp


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine with the full migrated schema."""
    engine = open_engine("sqlite://")
    yield engine
    engine.dispose()


@pytest.fixture(name="store")
def store_fixture(engine) -> LocalStore:
    return LocalStore(engine)


def make_asset(name: str = "Laptop", **overrides) -> Asset:
    fields = dict(
        name=name,
        category="Tech",
        purchase_date=datetime(2024, 1, 15),
        price=45000.0,
        currency="TWD",
    )
    fields.update(overrides)
    return Asset(**fields)


def make_subscription(name: str = "Netflix", **overrides) -> Subscription:
    fields = dict(
        name=name,
        billing_cycle="Monthly",
        cost=390.0,
        currency="TWD",
        start_date=datetime(2023, 6, 1),
        category="Entertainment",
    )
    fields.update(overrides)
    return Subscription(**fields)


@pytest.fixture(name="asset_factory")
def asset_factory_fixture():
    return make_asset


@pytest.fixture(name="subscription_factory")
def subscription_factory_fixture():
    return make_subscription


# ─── In-memory remote backend ─────────────────────────────────────────────────

class FakeRemoteAdapter(RemoteAdapter):
    """
    Dict-backed RemoteAdapter speaking the PocketBase dialect.

    Knobs:
        configured / authenticated: precondition answers
        missing: collections that raise MissingCollectionError
        fail_on: record name -> exception raised on create/update
        on_write: async hook awaited inside create/update (in-flight edits,
            blocking, cancellation)
    """

    name = "fake"
    dialect = POCKETBASE
    base_url = ""

    def __init__(self, owner_id: Optional[str] = "user-1"):
        self._owner_id = owner_id
        self.configured = True
        self.authenticated = True
        self.missing = set()
        self.fail_on: Dict[str, Exception] = {}
        self.on_write = None
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {
            "assets": {},
            "subscriptions": {},
        }
        self.calls = []
        self._seq = 0

    @property
    def owner_id(self) -> Optional[str]:
        return self._owner_id

    def is_configured(self) -> bool:
        return self.configured

    async def is_authenticated(self) -> bool:
        return self.authenticated

    @staticmethod
    def now() -> str:
        return format_timestamp(utcnow(), " ")

    def put(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Seed a record directly on the 'server'."""
        record = dict(record)
        record.setdefault("user", self._owner_id)
        record.setdefault("updated", self.now())
        self.collections[collection][record["id"]] = record
        return record

    async def _before_write(self, collection: str, payload: Dict[str, Any]) -> None:
        if collection in self.missing:
            raise MissingCollectionError(collection)
        exc = self.fail_on.get(payload.get("name"))
        if exc is not None:
            raise exc
        if self.on_write is not None:
            await self.on_write(collection, payload)

    async def list_by_owner(self, collection: str, owner_id: str) -> AsyncIterator[Dict[str, Any]]:
        self.calls.append(("list", collection, None))
        if collection in self.missing:
            raise MissingCollectionError(collection)
        for record in list(self.collections[collection].values()):
            if record.get(self.dialect.owner_field) == owner_id:
                yield dict(record)

    async def create(self, collection: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        await self._before_write(collection, payload)
        self._seq += 1
        remote_id = f"r{self._seq:04d}"
        stamp = self.now()
        record = {**payload, "id": remote_id, "created": stamp, "updated": stamp}
        self.collections[collection][remote_id] = record
        self.calls.append(("create", collection, remote_id))
        return dict(record)

    async def update(
        self, collection: str, remote_id: str, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        await self._before_write(collection, payload)
        if remote_id not in self.collections[collection]:
            raise RecordNotFoundError(f"{collection} record {remote_id} not found")
        record = self.collections[collection][remote_id]
        record.update(payload)
        record["updated"] = self.now()
        self.calls.append(("update", collection, remote_id))
        return dict(record)

    async def delete(self, collection: str, remote_id: str) -> None:
        if collection in self.missing:
            raise MissingCollectionError(collection)
        self.calls.append(("delete", collection, remote_id))
        if self.collections[collection].pop(remote_id, None) is None:
            raise RecordNotFoundError(f"{collection} record {remote_id} not found")

    async def health_check(self) -> bool:
        return self.configured


@pytest.fixture(name="remote")
def remote_fixture() -> FakeRemoteAdapter:
    return FakeRemoteAdapter()
