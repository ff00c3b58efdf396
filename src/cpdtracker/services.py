"""
Process-wide object graph.

build_services() is called once at startup (CLI, API factory) and everything
else receives the pieces it needs from the returned Services.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.engine import Engine

from cpdtracker.config import Settings, get_settings
from cpdtracker.db.engine import open_engine
from cpdtracker.db.store import LocalStore
from cpdtracker.remote.base import RemoteAdapter
from cpdtracker.remote.factory import build_adapter
from cpdtracker.sync.engine import SyncEngine
from cpdtracker.sync.status import ConnectivityMonitor


@dataclass
class Services:
    settings: Settings
    engine: Engine
    store: LocalStore
    adapter: RemoteAdapter
    monitor: ConnectivityMonitor
    sync_engine: SyncEngine

    async def aclose(self) -> None:
        await self.adapter.aclose()


def build_services(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Services:
    """
    Open the local store and wire the sync stack on top of it.

    Raises:
        Any migration error from open_engine(); startup cannot continue.
    """
    settings = settings or get_settings()
    engine = open_engine(settings.database_url)
    store = LocalStore(engine)
    adapter = build_adapter(settings, transport=transport)
    monitor = ConnectivityMonitor(settings.backend_url, timeout=settings.health_timeout_seconds)
    sync_engine = SyncEngine(
        store,
        adapter,
        monitor=monitor,
        timeout_seconds=settings.sync_timeout_seconds,
    )
    return Services(
        settings=settings,
        engine=engine,
        store=store,
        adapter=adapter,
        monitor=monitor,
        sync_engine=sync_engine,
    )
