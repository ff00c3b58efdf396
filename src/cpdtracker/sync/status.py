"""
Sync status surface: result/status models, the status observable and the
connectivity monitor.

SyncStatusObservable holds the last known sync state and pushes a fresh
SyncStatus snapshot to every subscriber whenever it changes. pending_uploads
is never cached; each snapshot counts dirty records in the store.
"""
import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class SyncDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"
    BIDIRECTIONAL = "bidirectional"


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"


class SyncResult(BaseModel):
    success: bool = True
    uploaded: int = 0
    downloaded: int = 0
    conflicts: int = 0
    deleted: int = 0
    errors: List[str] = Field(default_factory=list)

    @classmethod
    def failure(cls, message: str) -> "SyncResult":
        return cls(success=False, errors=[message])


class SyncStatus(BaseModel):
    is_online: bool
    is_syncing: bool
    last_sync_at: Optional[datetime]
    pending_uploads: int
    error: Optional[str]


StatusListener = Callable[[SyncStatus], None]


class SyncStatusObservable:
    def __init__(self, pending_counter: Callable[[], int]):
        """
        Args:
            pending_counter: Returns the live number of dirty records
                (LocalStore.count_pending).
        """
        self._pending_counter = pending_counter
        self._listeners: List[StatusListener] = []
        self.is_online = True
        self.is_syncing = False
        self.last_sync_at: Optional[datetime] = None
        self.error: Optional[str] = None

    def snapshot(self) -> SyncStatus:
        return SyncStatus(
            is_online=self.is_online,
            is_syncing=self.is_syncing,
            last_sync_at=self.last_sync_at,
            pending_uploads=self._pending_counter(),
            error=self.error,
        )

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a listener and push the current snapshot to it right away.

        Returns:
            A callable that removes the listener again.
        """
        self._listeners.append(listener)
        self._deliver(listener, self.snapshot())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def update(self, **changes) -> None:
        for key, value in changes.items():
            if not hasattr(self, key) or key.startswith("_"):
                raise AttributeError(f"Unknown status field: {key}")
            setattr(self, key, value)
        self.notify()

    def notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            self._deliver(listener, snapshot)

    @staticmethod
    def _deliver(listener: StatusListener, snapshot: SyncStatus) -> None:
        try:
            listener(snapshot)
        except Exception:
            logger.exception("Sync status listener %r failed", listener)


class ConnectivityMonitor:
    """
    TCP reachability probe against the sync backend's host.

    check() opens (and immediately closes) a connection bounded by `timeout`
    and tells listeners when the online state flips.
    """

    def __init__(self, url: str = "", timeout: float = 5.0):
        parts = urlsplit(url) if url else None
        self.host = parts.hostname if parts else None
        default_port = 443 if parts and parts.scheme == "https" else 80
        self.port = (parts.port if parts else None) or default_port
        self.timeout = timeout
        self.is_online = True
        self._listeners: List[Callable[[bool], None]] = []

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def check(self) -> bool:
        if not self.host:
            # Nothing to reach in local-only mode
            return self._set(True)
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port), timeout=self.timeout
            )
        except (OSError, asyncio.TimeoutError) as exc:
            logger.debug("Backend %s:%s unreachable: %s", self.host, self.port, exc)
            return self._set(False)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return self._set(True)

    def _set(self, online: bool) -> bool:
        if online != self.is_online:
            self.is_online = online
            logger.info("Sync backend is now %s", "online" if online else "offline")
            for listener in list(self._listeners):
                try:
                    listener(online)
                except Exception:
                    logger.exception("Connectivity listener %r failed", listener)
        return online
