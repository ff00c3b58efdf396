"""Asset CRUD routes over the local store.

Every create/patch leaves the record dirty (synced=False) so the next sync
uploads it. Deleting an uploaded asset queues a remote delete.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel

from cpdtracker.api.deps import get_store
from cpdtracker.db.store import LocalStore, RecordNotFoundError
from cpdtracker.models.asset import (
    Asset,
    AssetCategory,
    AssetRole,
    AssetStatus,
    MaintenanceEntry,
)
from cpdtracker.models.base import Currency

router = APIRouter()

NULLABLE_FIELDS = {"sold_price", "system_id", "linked_asset_id"}


class AssetCreate(BaseModel):
    name: str
    category: AssetCategory = AssetCategory.OTHERS
    purchase_date: datetime
    price: float
    currency: Currency = Currency.TWD
    maintenance_log: List[MaintenanceEntry] = []
    target_lifespan: int = 1095
    status: AssetStatus = AssetStatus.ACTIVE
    sold_price: Optional[float] = None
    notes: str = ""
    role: AssetRole = AssetRole.STANDALONE
    system_id: Optional[str] = None
    linked_asset_id: Optional[str] = None
    power_watts: float = 0.0
    daily_usage_hours: float = 0.0
    recurring_maintenance_cost: float = 0.0


class AssetUpdate(BaseModel):
    name: Optional[str] = None
    category: Optional[AssetCategory] = None
    purchase_date: Optional[datetime] = None
    price: Optional[float] = None
    currency: Optional[Currency] = None
    maintenance_log: Optional[List[MaintenanceEntry]] = None
    target_lifespan: Optional[int] = None
    status: Optional[AssetStatus] = None
    sold_price: Optional[float] = None
    notes: Optional[str] = None
    role: Optional[AssetRole] = None
    system_id: Optional[str] = None
    linked_asset_id: Optional[str] = None
    power_watts: Optional[float] = None
    daily_usage_hours: Optional[float] = None
    recurring_maintenance_cost: Optional[float] = None


def _to_fields(body: BaseModel, *, partial: bool) -> Dict[str, Any]:
    fields = body.model_dump(exclude_unset=partial)
    for key, value in fields.items():
        if value is None and key not in NULLABLE_FIELDS:
            raise HTTPException(status_code=422, detail=f"'{key}' cannot be null")
    return fields


@router.get("/", response_model=List[Asset])
def list_assets(
    status: Optional[AssetStatus] = None,
    store: LocalStore = Depends(get_store),
):
    """List assets, newest purchase first. Optionally filter by status."""
    if status is not None:
        assets = store.get_by(Asset, "status", status)
    else:
        assets = store.get_all(Asset)
    return sorted(assets, key=lambda a: a.purchase_date, reverse=True)


@router.get("/{asset_id}", response_model=Asset)
def get_asset(asset_id: str, store: LocalStore = Depends(get_store)):
    asset = store.get(Asset, asset_id)
    if not asset:
        raise HTTPException(status_code=404, detail="Asset not found")
    return asset


@router.post("/", response_model=Asset, status_code=201)
def create_asset(body: AssetCreate, store: LocalStore = Depends(get_store)):
    try:
        return store.add(Asset(**_to_fields(body, partial=False)))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.patch("/{asset_id}", response_model=Asset)
def update_asset(asset_id: str, body: AssetUpdate, store: LocalStore = Depends(get_store)):
    try:
        return store.update(Asset, asset_id, _to_fields(body, partial=True))
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Asset not found")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.delete("/{asset_id}", status_code=204)
def delete_asset(asset_id: str, store: LocalStore = Depends(get_store)):
    try:
        store.delete(Asset, asset_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Asset not found")
    return Response(status_code=204)
