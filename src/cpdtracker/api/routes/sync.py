"""Sync trigger, status and history routes."""
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from cpdtracker.api.deps import get_services, get_store, get_sync_engine
from cpdtracker.db.store import LocalStore
from cpdtracker.models.sync import SyncLog
from cpdtracker.services import Services
from cpdtracker.sync.engine import SyncEngine
from cpdtracker.sync.status import SyncDirection, SyncResult, SyncStatus

router = APIRouter()


class SyncTriggerRequest(BaseModel):
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL


class HealthResponse(BaseModel):
    backend: str
    configured: bool
    reachable: bool


@router.post("/trigger", response_model=SyncResult)
async def trigger_sync(
    request: Optional[SyncTriggerRequest] = None,
    sync_engine: SyncEngine = Depends(get_sync_engine),
):
    """
    Run a sync now and return its result (manual sync / retry).

    A call made while another sync is running returns immediately with
    "Sync already in progress".
    """
    direction = request.direction if request else SyncDirection.BIDIRECTIONAL
    return await sync_engine.sync(direction)


@router.post("/cancel")
def cancel_sync(sync_engine: SyncEngine = Depends(get_sync_engine)):
    """Ask the running sync to stop at the next record boundary."""
    running = sync_engine.is_running
    sync_engine.request_cancel()
    return {"cancelled": running}


@router.get("/status", response_model=SyncStatus)
def sync_status(sync_engine: SyncEngine = Depends(get_sync_engine)):
    return sync_engine.status.snapshot()


@router.get("/history", response_model=List[SyncLog])
def sync_history(limit: int = 20, store: LocalStore = Depends(get_store)):
    """Most recent sync attempts, newest first."""
    return store.recent_sync_logs(limit)


@router.get("/health", response_model=HealthResponse)
async def sync_health(services: Services = Depends(get_services)):
    adapter = services.adapter
    return HealthResponse(
        backend=adapter.name,
        configured=adapter.is_configured(),
        reachable=await adapter.health_check(),
    )
