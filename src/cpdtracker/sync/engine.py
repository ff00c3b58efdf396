"""
SyncEngine: reconciles the local store with the remote backend.

Flow for one sync() call:
  1. Claim the single-flight flag (synchronously, before any await)
  2. Preconditions, in order: configured, online, authenticated
  3. Create SyncLog (status="running"), enter SYNCING
  4. Upload: replay tombstones as remote deletes, then create/update every
     dirty record and mark it synced
  5. Download: page through every remote record of the owner and apply it
     when the remote copy is newer than our last sync of that record.
     Records this run just uploaded are skipped.
  6. Persist the global last_synced_at, finish the SyncLog, back to IDLE

Failure model: per-record errors are collected in SyncResult.errors and the
loop moves on. A missing collection stops only that collection. An
authentication or connectivity failure (after adapter retries) stops the
whole run. Nothing escapes sync(); it always returns a SyncResult.

Last-write-wins: a remote record overwrites its local counterpart whenever
its server timestamp is newer than the local last_synced_at. If the local
copy had unsynced edits at that point the overwrite is counted as a conflict.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Set, Tuple, Union

from sqlmodel import Session

from cpdtracker.db.store import LocalStore
from cpdtracker.models.base import new_id, utcnow
from cpdtracker.models.sync import SyncLog
from cpdtracker.remote.base import (
    AuthenticationError,
    ConnectivityError,
    MissingCollectionError,
    RecordNotFoundError,
    RemoteAdapter,
    RemoteError,
)
from cpdtracker.sync.mapper import (
    ENTITIES,
    EntitySpec,
    from_remote,
    remote_id,
    remote_updated_at,
    to_remote,
)
from cpdtracker.sync.status import (
    ConnectivityMonitor,
    SyncDirection,
    SyncResult,
    SyncState,
    SyncStatusObservable,
)

logger = logging.getLogger(__name__)

ALREADY_RUNNING = "Sync already in progress"
NOT_CONFIGURED = "Sync backend is not configured"
OFFLINE = "Network unavailable"
NOT_AUTHENTICATED = "Not signed in to the sync backend; please log in again"
CANCELLED = "Sync cancelled"


class _SyncAborted(Exception):
    """Stops the remaining phases. The reason is already in the result."""


def _is_newer(remote_updated: Optional[datetime], local_synced: Optional[datetime]) -> bool:
    if remote_updated is None:
        return False
    if local_synced is None:
        return True
    return remote_updated > local_synced


class SyncEngine:
    """Offline-first two-way sync between LocalStore and a RemoteAdapter."""

    def __init__(
        self,
        store: LocalStore,
        adapter: RemoteAdapter,
        *,
        monitor: Optional[ConnectivityMonitor] = None,
        status: Optional[SyncStatusObservable] = None,
        timeout_seconds: Optional[float] = 300.0,
    ):
        """
        Args:
            store: Local store.
            adapter: Remote adapter (or a fake in tests).
            monitor: Connectivity probe; defaults to one for adapter.base_url.
            status: Status observable; defaults to one counting store.pending.
            timeout_seconds: Upper bound for a whole sync run (None = no bound).
        """
        self.store = store
        self.adapter = adapter
        self.monitor = monitor or ConnectivityMonitor(adapter.base_url)
        self.status = status or SyncStatusObservable(store.count_pending)
        self.timeout_seconds = timeout_seconds
        self.state = SyncState.IDLE
        self._running = False
        self._cancel_requested = False
        self._missing: Set[str] = set()
        # (collection, remote_id) written by this run's upload phase
        self._written: Set[Tuple[str, str]] = set()

        self.status.is_online = self.monitor.is_online
        self.status.last_sync_at = store.get_settings().last_synced_at
        self.monitor.subscribe(self._on_connectivity_change)

    @property
    def is_running(self) -> bool:
        return self._running

    def request_cancel(self) -> None:
        """Ask a running sync to stop at the next record boundary."""
        if self._running:
            self._cancel_requested = True

    async def sync(
        self,
        direction: Union[SyncDirection, str] = SyncDirection.BIDIRECTIONAL,
        timeout: Optional[float] = None,
    ) -> SyncResult:
        """
        Run one sync.

        Args:
            direction: upload, download or bidirectional.
            timeout: Per-call bound in seconds; defaults to timeout_seconds.

        Returns:
            SyncResult with counts and collected errors. success is True only
            when no error occurred.
        """
        if self._running:
            return SyncResult.failure(ALREADY_RUNNING)
        self._running = True
        self._cancel_requested = False

        try:
            direction = SyncDirection(direction)
            if not self.adapter.is_configured():
                return SyncResult.failure(NOT_CONFIGURED)

            if not await self.monitor.check():
                self.status.update(error=OFFLINE)
                return SyncResult.failure(OFFLINE)

            try:
                authenticated = await self.adapter.is_authenticated()
            except ConnectivityError as exc:
                logger.warning("Session check failed: %s", exc)
                self.status.update(error=OFFLINE)
                return SyncResult.failure(OFFLINE)
            except RemoteError as exc:
                logger.warning("Session check failed: %s", exc)
                authenticated = False
            if not authenticated or not self.adapter.owner_id:
                self.status.update(error=NOT_AUTHENTICATED)
                return SyncResult.failure(NOT_AUTHENTICATED)

            return await self._run(direction, timeout)
        finally:
            self._running = False
            self._cancel_requested = False
            self.state = SyncState.IDLE

    # ─── Run ──────────────────────────────────────────────────────────────────

    async def _run(self, direction: SyncDirection, timeout: Optional[float]) -> SyncResult:
        result = SyncResult()
        limit = timeout if timeout is not None else self.timeout_seconds
        self._missing = set()
        self._written = set()

        self.state = SyncState.SYNCING
        self.status.update(is_syncing=True)
        log = self._create_sync_log(direction)
        logger.info("Sync starting (%s, backend=%s)", direction.value, self.adapter.name)

        try:
            await asyncio.wait_for(self._run_phases(direction, result), timeout=limit)
        except asyncio.TimeoutError:
            logger.warning("Sync timed out after %ss", limit)
            result.errors.append(f"Sync timed out after {limit:g}s")
        except Exception as exc:
            logger.exception("Sync failed unexpectedly")
            result.errors.append(f"Unexpected sync error: {exc}")

        now = utcnow()
        result.success = not result.errors
        try:
            self.store.update_settings(last_synced_at=now)
            self._finish_sync_log(log, result)
        except Exception as exc:
            logger.exception("Could not record sync completion")
            result.errors.append(f"Could not record sync completion: {exc}")
            result.success = False

        self.status.update(
            is_syncing=False,
            last_sync_at=now,
            error=result.errors[0] if result.errors else None,
        )
        logger.info(
            "Sync finished: uploaded=%d downloaded=%d deleted=%d conflicts=%d errors=%d",
            result.uploaded,
            result.downloaded,
            result.deleted,
            result.conflicts,
            len(result.errors),
        )
        return result

    async def _run_phases(self, direction: SyncDirection, result: SyncResult) -> None:
        owner_id = self.adapter.owner_id
        try:
            if direction in (SyncDirection.UPLOAD, SyncDirection.BIDIRECTIONAL):
                await self._replay_tombstones(result)
                await self._upload(result, owner_id)
            if direction in (SyncDirection.DOWNLOAD, SyncDirection.BIDIRECTIONAL):
                await self._download(result, owner_id)
        except _SyncAborted:
            pass

    def _check_cancelled(self, result: SyncResult) -> None:
        if self._cancel_requested:
            logger.info("Sync cancelled on request")
            result.errors.append(CANCELLED)
            raise _SyncAborted()

    def _abort(self, result: SyncResult, exc: RemoteError) -> None:
        if isinstance(exc, AuthenticationError):
            message = NOT_AUTHENTICATED
        else:
            message = f"Sync aborted, backend unreachable: {exc}"
        logger.warning("Sync aborted: %s", exc)
        result.errors.append(message)
        raise _SyncAborted() from exc

    def _missing_collection(self, result: SyncResult, exc: MissingCollectionError) -> None:
        logger.error("%s", exc)
        if exc.collection not in self._missing:
            self._missing.add(exc.collection)
            result.errors.append(str(exc))

    # ─── Upload ───────────────────────────────────────────────────────────────

    async def _replay_tombstones(self, result: SyncResult) -> None:
        for entity in ENTITIES:
            for tombstone in self.store.tombstones(entity.collection):
                self._check_cancelled(result)
                try:
                    await self.adapter.delete(entity.collection, tombstone.remote_id)
                except RecordNotFoundError:
                    pass  # already gone remotely
                except MissingCollectionError as exc:
                    self._missing_collection(result, exc)
                    break
                except (AuthenticationError, ConnectivityError) as exc:
                    self._abort(result, exc)
                except Exception as exc:
                    message = f"{entity.label} {tombstone.remote_id}: delete failed: {exc}"
                    logger.warning("Remote delete failed: %s", message)
                    result.errors.append(message)
                    continue
                self.store.remove_tombstone(tombstone.id)
                result.deleted += 1

    async def _upload(self, result: SyncResult, owner_id: str) -> None:
        dialect = self.adapter.dialect
        for entity in ENTITIES:
            if entity.collection in self._missing:
                continue
            for record in self.store.pending(entity.model):
                self._check_cancelled(result)
                try:
                    payload = to_remote(entity, record, owner_id, dialect)
                    if record.remote_id:
                        stored = await self.adapter.update(
                            entity.collection, record.remote_id, payload
                        )
                    else:
                        stored = await self.adapter.create(entity.collection, payload)
                    new_remote_id = remote_id(stored)
                    self._written.add((entity.collection, new_remote_id))
                except MissingCollectionError as exc:
                    self._missing_collection(result, exc)
                    break
                except (AuthenticationError, ConnectivityError) as exc:
                    self._abort(result, exc)
                except Exception as exc:
                    message = f"{entity.describe(record)}: {exc}"
                    logger.warning("Upload failed: %s", message)
                    result.errors.append(message)
                    continue

                def unchanged(current, sent=payload, entity=entity) -> bool:
                    return to_remote(entity, current, owner_id, dialect) == sent

                clean = self.store.mark_synced(
                    entity.model,
                    record.id,
                    remote_id=new_remote_id,
                    at=utcnow(),
                    unchanged=unchanged,
                )
                if not clean:
                    logger.info("%s changed during upload; left pending", entity.describe(record))
                result.uploaded += 1

    # ─── Download ─────────────────────────────────────────────────────────────

    async def _download(self, result: SyncResult, owner_id: str) -> None:
        for entity in ENTITIES:
            if entity.collection in self._missing:
                continue
            tombstoned = {t.remote_id for t in self.store.tombstones(entity.collection)}
            try:
                async for remote in self.adapter.list_by_owner(entity.collection, owner_id):
                    self._check_cancelled(result)
                    try:
                        self._apply_download(entity, remote, tombstoned, result)
                    except Exception as exc:
                        message = f'{entity.label} "{remote.get("name", remote.get("id"))}": {exc}'
                        logger.warning("Download failed: %s", message)
                        result.errors.append(message)
            except MissingCollectionError as exc:
                self._missing_collection(result, exc)
            except (AuthenticationError, ConnectivityError) as exc:
                self._abort(result, exc)
            except RemoteError as exc:
                message = f"Failed to download {entity.collection}: {exc}"
                logger.warning(message)
                result.errors.append(message)

    def _apply_download(
        self,
        entity: EntitySpec,
        remote: Dict[str, Any],
        tombstoned: Set[str],
        result: SyncResult,
    ) -> None:
        dialect = self.adapter.dialect
        rid = remote_id(remote)
        if rid in tombstoned:
            return
        if (entity.collection, rid) in self._written:
            # Our own upload echoed back; an edit made meanwhile must stay dirty
            return

        local = self.store.find_by_remote_id(entity.model, rid)
        if local is None:
            local = self._claim_unmapped(entity, remote)

        if local is not None:
            if not _is_newer(remote_updated_at(remote, dialect), local.last_synced_at):
                return
            incoming = from_remote(entity, remote, dialect, existing_local_id=local.id)
            if not local.synced:
                result.conflicts += 1
                logger.warning(
                    "Conflict on %s: remote copy is newer, local edits overwritten",
                    entity.describe(local),
                )
            self.store.apply_remote(entity.model, local.id, incoming, remote_id=rid, at=utcnow())
            result.downloaded += 1
            return

        local_id = remote.get("local_id") or None
        if local_id and self.store.get(entity.model, local_id) is not None:
            # That id already belongs to a record mapped to another remote row
            local_id = new_id()
        record = from_remote(entity, remote, dialect, existing_local_id=local_id)
        record.synced = True
        record.last_synced_at = utcnow()
        self.store.add(record)
        result.downloaded += 1

    def _claim_unmapped(self, entity: EntitySpec, remote: Dict[str, Any]):
        """Re-link a never-uploaded local record named by the payload's local_id."""
        local_id = remote.get("local_id")
        if not local_id:
            return None
        candidate = self.store.get(entity.model, local_id)
        if candidate is not None and candidate.remote_id is None:
            return candidate
        return None

    # ─── Bookkeeping ──────────────────────────────────────────────────────────

    def _on_connectivity_change(self, online: bool) -> None:
        self.status.update(is_online=online)

    def _create_sync_log(self, direction: SyncDirection) -> SyncLog:
        log = SyncLog(direction=direction.value, started_at=utcnow(), status="running")
        with Session(self.store.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def _finish_sync_log(self, log: SyncLog, result: SyncResult) -> None:
        if not result.errors:
            status = "success"
        elif result.uploaded or result.downloaded or result.deleted:
            status = "partial"
        else:
            status = "error"
        with Session(self.store.engine) as s:
            db_log = s.get(SyncLog, log.id)
            db_log.status = status
            db_log.finished_at = utcnow()
            db_log.uploaded = result.uploaded
            db_log.downloaded = result.downloaded
            db_log.conflicts = result.conflicts
            db_log.deleted = result.deleted
            db_log.error_message = "\n".join(result.errors) or None
            s.add(db_log)
            s.commit()
