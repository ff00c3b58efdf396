"""
Integration tests for SyncEngine.

Uses an in-memory SQLite store and the dict-backed FakeRemoteAdapter from
conftest. No real network calls are made.
"""
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlmodel import Session, select

from cpdtracker.models.asset import Asset
from cpdtracker.models.base import utcnow
from cpdtracker.models.subscription import Subscription
from cpdtracker.models.sync import SyncLog
from cpdtracker.remote.base import (
    AuthenticationError,
    ConnectivityError,
    RemoteValidationError,
)
from cpdtracker.sync.engine import (
    ALREADY_RUNNING,
    CANCELLED,
    NOT_AUTHENTICATED,
    NOT_CONFIGURED,
    OFFLINE,
    SyncEngine,
)
from cpdtracker.sync.mapper import format_timestamp
from cpdtracker.sync.status import SyncDirection, SyncState


@pytest.fixture
def sync_engine(store, remote):
    return SyncEngine(store, remote)


def _remote_asset(remote_id, name="Remote Synth", **overrides):
    record = {
        "id": remote_id,
        "name": name,
        "category": "Music",
        "purchase_date": "2023-03-01 00:00:00.000Z",
        "price": 30000,
        "currency": "JPY",
        "maintenance_log": [],
        "target_lifespan": 1825,
        "status": "Active",
        "sold_price": 0,
        "notes": "",
        "role": "Standalone",
        "system_id": "",
        "linked_asset_id": "",
        "power_watts": 0,
        "daily_usage_hours": 0,
        "recurring_maintenance_cost": 0,
        "synced": True,
    }
    record.update(overrides)
    return record


def _later(hours=1):
    return format_timestamp(utcnow() + timedelta(hours=hours), " ")


# ─── Upload ───────────────────────────────────────────────────────────────────

class TestUpload:
    @pytest.mark.asyncio
    async def test_create_then_update_round_trip(self, sync_engine, store, remote, asset_factory):
        laptop = store.add(asset_factory("Laptop", price=45000))

        result = await sync_engine.sync(SyncDirection.UPLOAD)

        assert result.success
        assert result.uploaded == 1
        local = store.get(Asset, laptop.id)
        assert local.remote_id == "r0001"
        assert local.synced is True
        assert local.last_synced_at is not None
        server = remote.collections["assets"]["r0001"]
        assert server["local_id"] == laptop.id
        assert server["user"] == "user-1"
        assert server["price"] == 45000.0

        store.update(Asset, laptop.id, {"price": 42000})
        assert store.get(Asset, laptop.id).synced is False

        result = await sync_engine.sync(SyncDirection.UPLOAD)

        assert result.uploaded == 1
        assert remote.calls[-1] == ("update", "assets", "r0001")
        assert remote.collections["assets"]["r0001"]["price"] == 42000.0
        assert len(remote.collections["assets"]) == 1
        local = store.get(Asset, laptop.id)
        assert local.synced is True
        assert local.remote_id == "r0001"

    @pytest.mark.asyncio
    async def test_second_sync_uploads_nothing(self, sync_engine, store, remote, asset_factory):
        store.add(asset_factory("Laptop"))
        store.add(asset_factory("Monitor"))

        first = await sync_engine.sync()
        calls_after_first = [c for c in remote.calls if c[0] != "list"]
        second = await sync_engine.sync()

        assert first.uploaded == 2
        assert second.uploaded == 0
        assert second.downloaded == 0
        assert [c for c in remote.calls if c[0] != "list"] == calls_after_first

    @pytest.mark.asyncio
    async def test_uploads_subscriptions(self, sync_engine, store, remote, subscription_factory):
        sub = store.add(subscription_factory("Spotify", cost=149))

        result = await sync_engine.sync(SyncDirection.UPLOAD)

        assert result.uploaded == 1
        server = next(iter(remote.collections["subscriptions"].values()))
        assert server["name"] == "Spotify"
        assert server["local_id"] == sub.id
        assert server["billing_cycle"] == "Monthly"

    @pytest.mark.asyncio
    async def test_partial_failure_isolated(self, sync_engine, store, remote, asset_factory):
        for name in ("A", "B", "C"):
            store.add(asset_factory(name))
        remote.fail_on["B"] = RemoteValidationError("price must be positive")

        result = await sync_engine.sync(SyncDirection.UPLOAD)

        assert result.uploaded == 2
        assert result.success is False
        assert result.errors == ['Asset "B": price must be positive']
        pending = store.pending(Asset)
        assert [a.name for a in pending] == ["B"]
        assert pending[0].remote_id is None

    @pytest.mark.asyncio
    async def test_missing_collection_stops_only_that_collection(
        self, sync_engine, store, remote, asset_factory, subscription_factory
    ):
        store.add(asset_factory("A"))
        store.add(asset_factory("B"))
        store.add(subscription_factory("Netflix"))
        remote.missing.add("assets")

        result = await sync_engine.sync()

        assert result.uploaded == 1
        assert len(result.errors) == 1
        assert "assets" in result.errors[0]
        assert store.count_pending() == 2

    @pytest.mark.asyncio
    async def test_authentication_failure_aborts_and_skips_download(
        self, sync_engine, store, remote, asset_factory
    ):
        store.add(asset_factory("A"))
        store.add(asset_factory("B"))
        remote.fail_on["A"] = AuthenticationError("token expired")
        remote.fail_on["B"] = AuthenticationError("token expired")

        result = await sync_engine.sync()

        assert result.errors == [NOT_AUTHENTICATED]
        assert result.uploaded == 0
        assert not any(call[0] == "list" for call in remote.calls)

    @pytest.mark.asyncio
    async def test_connectivity_failure_aborts(self, sync_engine, store, remote, asset_factory):
        store.add(asset_factory("A"))
        remote.fail_on["A"] = ConnectivityError("connection reset")

        result = await sync_engine.sync()

        assert len(result.errors) == 1
        assert "unreachable" in result.errors[0]
        assert store.count_pending() == 1

    @pytest.mark.asyncio
    async def test_edit_during_upload_stays_dirty(self, sync_engine, store, remote, asset_factory):
        laptop = store.add(asset_factory("Laptop", price=45000))

        async def edit_in_flight(collection, payload):
            store.update(Asset, laptop.id, {"price": 40000})

        remote.on_write = edit_in_flight
        result = await sync_engine.sync(SyncDirection.UPLOAD)

        assert result.uploaded == 1
        local = store.get(Asset, laptop.id)
        assert local.remote_id == "r0001"
        assert local.synced is False
        assert local.price == 40000

        remote.on_write = None
        await sync_engine.sync(SyncDirection.UPLOAD)
        assert remote.collections["assets"]["r0001"]["price"] == 40000.0
        assert len(remote.collections["assets"]) == 1

    @pytest.mark.asyncio
    async def test_edit_during_bidirectional_sync_survives_download(
        self, sync_engine, store, remote, asset_factory
    ):
        laptop = store.add(asset_factory("Laptop", price=45000))

        async def edit_in_flight(collection, payload):
            store.update(Asset, laptop.id, {"price": 40000})

        remote.on_write = edit_in_flight
        result = await sync_engine.sync(SyncDirection.BIDIRECTIONAL)

        assert result.errors == []
        assert (result.uploaded, result.downloaded, result.conflicts) == (1, 0, 0)
        local = store.get(Asset, laptop.id)
        assert local.price == 40000
        assert local.synced is False

        remote.on_write = None
        result = await sync_engine.sync(SyncDirection.BIDIRECTIONAL)
        assert result.uploaded == 1
        assert remote.collections["assets"]["r0001"]["price"] == 40000.0
        assert store.get(Asset, laptop.id).synced is True


# ─── Download / last-write-wins ───────────────────────────────────────────────

class TestDownload:
    @pytest.mark.asyncio
    async def test_inserts_unknown_remote_records(self, sync_engine, store, remote):
        remote.put("assets", _remote_asset("rX1"))

        result = await sync_engine.sync(SyncDirection.DOWNLOAD)

        assert result.downloaded == 1
        [asset] = store.get_all(Asset)
        assert asset.remote_id == "rX1"
        assert asset.synced is True
        assert asset.sold_price is None
        assert asset.system_id is None
        assert asset.currency == "JPY"

    @pytest.mark.asyncio
    async def test_ignores_other_owners(self, sync_engine, store, remote):
        remote.put("assets", _remote_asset("rX1", user="someone-else"))

        result = await sync_engine.sync(SyncDirection.DOWNLOAD)

        assert result.downloaded == 0
        assert store.get_all(Asset) == []

    @pytest.mark.asyncio
    async def test_newer_remote_overwrites_local(self, sync_engine, store, remote, asset_factory):
        laptop = store.add(asset_factory("Laptop", price=45000))
        await sync_engine.sync(SyncDirection.UPLOAD)
        server = remote.collections["assets"]["r0001"]
        server["price"] = 39000
        server["updated"] = _later()

        result = await sync_engine.sync(SyncDirection.DOWNLOAD)

        assert result.downloaded == 1
        assert result.conflicts == 0
        local = store.get(Asset, laptop.id)
        assert local.price == 39000
        assert local.synced is True
        assert local.id == laptop.id

    @pytest.mark.asyncio
    async def test_older_remote_is_skipped(self, sync_engine, store, remote, asset_factory):
        laptop = store.add(asset_factory("Laptop", price=45000))
        await sync_engine.sync(SyncDirection.UPLOAD)
        server = remote.collections["assets"]["r0001"]
        server["price"] = 1
        server["updated"] = "2000-01-01 00:00:00.000Z"

        result = await sync_engine.sync(SyncDirection.DOWNLOAD)

        assert result.downloaded == 0
        assert store.get(Asset, laptop.id).price == 45000

    @pytest.mark.asyncio
    async def test_conflict_counted_and_remote_wins(
        self, sync_engine, store, remote, asset_factory
    ):
        laptop = store.add(asset_factory("Laptop", price=45000))
        await sync_engine.sync(SyncDirection.UPLOAD)
        store.update(Asset, laptop.id, {"notes": "local edit"})
        server = remote.collections["assets"]["r0001"]
        server["notes"] = "remote edit"
        server["updated"] = _later()

        result = await sync_engine.sync(SyncDirection.DOWNLOAD)

        assert result.conflicts == 1
        local = store.get(Asset, laptop.id)
        assert local.notes == "remote edit"
        assert local.synced is True
        with Session(store.engine) as s:
            log = s.exec(select(SyncLog).order_by(SyncLog.id.desc())).first()
        assert log.conflicts == 1

    @pytest.mark.asyncio
    async def test_relinks_unmapped_local_record_by_local_id(
        self, sync_engine, store, remote, asset_factory
    ):
        laptop = store.add(asset_factory("Laptop"))
        remote.put("assets", _remote_asset("rX1", name="Laptop", local_id=laptop.id))

        result = await sync_engine.sync(SyncDirection.DOWNLOAD)

        assert result.downloaded == 1
        assets = store.get_all(Asset)
        assert len(assets) == 1
        assert assets[0].id == laptop.id
        assert assets[0].remote_id == "rX1"

    @pytest.mark.asyncio
    async def test_local_id_owned_elsewhere_gets_fresh_id(
        self, sync_engine, store, remote, asset_factory
    ):
        laptop = store.add(asset_factory("Laptop"))
        await sync_engine.sync(SyncDirection.UPLOAD)
        remote.put("assets", _remote_asset("rX2", name="Copy", local_id=laptop.id))

        result = await sync_engine.sync(SyncDirection.DOWNLOAD)

        assert result.downloaded == 1
        copy = store.find_by_remote_id(Asset, "rX2")
        assert copy.id != laptop.id
        assert store.get(Asset, laptop.id).remote_id == "r0001"

    @pytest.mark.asyncio
    async def test_bad_remote_record_is_isolated(self, sync_engine, store, remote):
        remote.put("assets", _remote_asset("rX1", category="Vehicles"))
        remote.put("assets", _remote_asset("rX2", name="Guitar"))

        result = await sync_engine.sync(SyncDirection.DOWNLOAD)

        assert result.downloaded == 1
        assert len(result.errors) == 1
        assert "Remote Synth" in result.errors[0]
        assert store.find_by_remote_id(Asset, "rX2") is not None


# ─── Tombstones ───────────────────────────────────────────────────────────────

class TestTombstones:
    @pytest.mark.asyncio
    async def test_local_delete_propagates(self, sync_engine, store, remote, asset_factory):
        laptop = store.add(asset_factory("Laptop"))
        await sync_engine.sync(SyncDirection.UPLOAD)
        store.delete(Asset, laptop.id)
        assert len(store.tombstones("assets")) == 1

        result = await sync_engine.sync()

        assert result.deleted == 1
        assert remote.collections["assets"] == {}
        assert store.tombstones() == []
        assert store.get_all(Asset) == []

    @pytest.mark.asyncio
    async def test_tombstoned_record_not_downloaded_again(
        self, sync_engine, store, remote, asset_factory
    ):
        laptop = store.add(asset_factory("Laptop"))
        await sync_engine.sync(SyncDirection.UPLOAD)
        store.delete(Asset, laptop.id)

        result = await sync_engine.sync(SyncDirection.DOWNLOAD)

        assert result.downloaded == 0
        assert store.get_all(Asset) == []

    @pytest.mark.asyncio
    async def test_already_deleted_remotely_counts_as_done(
        self, sync_engine, store, remote, asset_factory
    ):
        laptop = store.add(asset_factory("Laptop"))
        await sync_engine.sync(SyncDirection.UPLOAD)
        store.delete(Asset, laptop.id)
        remote.collections["assets"].clear()

        result = await sync_engine.sync(SyncDirection.UPLOAD)

        assert result.success
        assert result.deleted == 1
        assert store.tombstones() == []

    @pytest.mark.asyncio
    async def test_never_uploaded_delete_leaves_no_tombstone(
        self, sync_engine, store, remote, asset_factory
    ):
        draft = store.add(asset_factory("Draft"))
        store.delete(Asset, draft.id)

        result = await sync_engine.sync()

        assert result.deleted == 0
        assert not any(call[0] == "delete" for call in remote.calls)


# ─── Preconditions & single flight ────────────────────────────────────────────

class TestPreconditions:
    @pytest.mark.asyncio
    async def test_not_configured(self, sync_engine, remote):
        remote.configured = False
        snapshots = []
        sync_engine.status.subscribe(snapshots.append)

        result = await sync_engine.sync()

        assert result.success is False
        assert result.errors == [NOT_CONFIGURED]
        assert not any(s.is_syncing for s in snapshots)

    @pytest.mark.asyncio
    async def test_offline(self, sync_engine, store):
        sync_engine.monitor.check = AsyncMock(return_value=False)

        result = await sync_engine.sync()

        assert result.errors == [OFFLINE]
        assert sync_engine.status.snapshot().error == OFFLINE
        with Session(store.engine) as s:
            assert s.exec(select(SyncLog)).all() == []

    @pytest.mark.asyncio
    async def test_unauthenticated(self, sync_engine, remote):
        remote.authenticated = False

        result = await sync_engine.sync()

        assert result.errors == [NOT_AUTHENTICATED]
        assert sync_engine.status.snapshot().error == NOT_AUTHENTICATED
        assert sync_engine.state == SyncState.IDLE

    @pytest.mark.asyncio
    async def test_unknown_owner_counts_as_unauthenticated(self, sync_engine, remote):
        remote._owner_id = None

        result = await sync_engine.sync()
        assert result.errors == [NOT_AUTHENTICATED]

    @pytest.mark.asyncio
    async def test_concurrent_call_is_rejected(self, sync_engine, store, remote, asset_factory):
        store.add(asset_factory("Laptop"))
        entered = asyncio.Event()
        gate = asyncio.Event()

        async def hold(collection, payload):
            entered.set()
            await gate.wait()

        remote.on_write = hold
        first = asyncio.create_task(sync_engine.sync())
        await entered.wait()

        second = await sync_engine.sync()
        assert second.errors == [ALREADY_RUNNING]
        assert sync_engine.is_running

        gate.set()
        result = await first
        assert result.success
        assert result.uploaded == 1
        assert not sync_engine.is_running

    @pytest.mark.asyncio
    async def test_next_sync_allowed_after_failure(self, sync_engine, remote):
        remote.authenticated = False
        await sync_engine.sync()
        remote.authenticated = True

        result = await sync_engine.sync()

        assert result.success
        assert sync_engine.status.snapshot().error is None


# ─── Deadline & cancellation ──────────────────────────────────────────────────

class TestDeadline:
    @pytest.mark.asyncio
    async def test_timeout_releases_lock(self, sync_engine, store, remote, asset_factory):
        store.add(asset_factory("Laptop"))

        async def stall(collection, payload):
            await asyncio.sleep(5)

        remote.on_write = stall
        result = await sync_engine.sync(timeout=0.05)

        assert result.success is False
        assert result.errors == ["Sync timed out after 0.05s"]
        assert not sync_engine.is_running
        assert store.count_pending() == 1

    @pytest.mark.asyncio
    async def test_cancel_stops_at_record_boundary(
        self, sync_engine, store, remote, asset_factory
    ):
        for name in ("A", "B", "C"):
            store.add(asset_factory(name))

        async def cancel_after_first(collection, payload):
            sync_engine.request_cancel()

        remote.on_write = cancel_after_first
        result = await sync_engine.sync(SyncDirection.UPLOAD)

        assert result.uploaded == 1
        assert result.errors == [CANCELLED]
        assert store.count_pending() == 2

    def test_cancel_when_idle_is_noop(self, sync_engine):
        sync_engine.request_cancel()
        assert not sync_engine.is_running


# ─── Bookkeeping ──────────────────────────────────────────────────────────────

class TestBookkeeping:
    @pytest.mark.asyncio
    async def test_sync_log_and_global_timestamp(self, sync_engine, store, asset_factory):
        store.add(asset_factory("Laptop"))

        result = await sync_engine.sync()

        with Session(store.engine) as s:
            logs = s.exec(select(SyncLog)).all()
        assert len(logs) == 1
        assert logs[0].status == "success"
        assert logs[0].uploaded == result.uploaded == 1
        assert logs[0].finished_at is not None
        assert store.get_settings().last_synced_at is not None

    @pytest.mark.asyncio
    async def test_partial_log_status(self, sync_engine, store, remote, asset_factory):
        store.add(asset_factory("A"))
        store.add(asset_factory("B"))
        remote.fail_on["B"] = RemoteValidationError("bad")

        await sync_engine.sync()

        [log] = store.recent_sync_logs()
        assert log.status == "partial"
        assert "bad" in log.error_message

    @pytest.mark.asyncio
    async def test_status_notifications(self, sync_engine, store, asset_factory):
        store.add(asset_factory("Laptop"))
        snapshots = []
        sync_engine.status.subscribe(snapshots.append)

        await sync_engine.sync()

        assert snapshots[0].pending_uploads == 1
        assert any(s.is_syncing for s in snapshots)
        assert snapshots[-1].is_syncing is False
        assert snapshots[-1].pending_uploads == 0
        assert snapshots[-1].last_sync_at is not None

    @pytest.mark.asyncio
    async def test_downloaded_subscription_fields(self, sync_engine, store, remote):
        remote.put("subscriptions", {
            "id": "rs1",
            "name": "iCloud",
            "billing_cycle": "Yearly",
            "cost": 990,
            "currency": "TWD",
            "start_date": "2022-01-01 00:00:00.000Z",
            "category": "Service",
            "status": "Cancelled",
            "cancelled_date": "2024-01-01 00:00:00.000Z",
            "notes": "",
        })

        await sync_engine.sync(SyncDirection.DOWNLOAD)

        [sub] = store.get_all(Subscription)
        assert sub.status == "Cancelled"
        assert sub.cancelled_date.year == 2024
        assert sub.synced is True
