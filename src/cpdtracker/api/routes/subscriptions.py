"""Subscription CRUD routes over the local store."""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel

from cpdtracker.api.deps import get_store
from cpdtracker.db.store import LocalStore, RecordNotFoundError
from cpdtracker.models.base import Currency
from cpdtracker.models.subscription import (
    BillingCycle,
    Subscription,
    SubscriptionCategory,
    SubscriptionStatus,
)

router = APIRouter()


class SubscriptionCreate(BaseModel):
    name: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    cost: float
    currency: Currency = Currency.TWD
    start_date: datetime
    category: SubscriptionCategory = SubscriptionCategory.SERVICE
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    cancelled_date: Optional[datetime] = None
    notes: str = ""


class SubscriptionUpdate(BaseModel):
    name: Optional[str] = None
    billing_cycle: Optional[BillingCycle] = None
    cost: Optional[float] = None
    currency: Optional[Currency] = None
    start_date: Optional[datetime] = None
    category: Optional[SubscriptionCategory] = None
    status: Optional[SubscriptionStatus] = None
    cancelled_date: Optional[datetime] = None
    notes: Optional[str] = None


@router.get("/", response_model=List[Subscription])
def list_subscriptions(
    status: Optional[SubscriptionStatus] = None,
    store: LocalStore = Depends(get_store),
):
    if status is not None:
        subs = store.get_by(Subscription, "status", status)
    else:
        subs = store.get_all(Subscription)
    return sorted(subs, key=lambda s: s.start_date, reverse=True)


@router.get("/{subscription_id}", response_model=Subscription)
def get_subscription(subscription_id: str, store: LocalStore = Depends(get_store)):
    sub = store.get(Subscription, subscription_id)
    if not sub:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return sub


@router.post("/", response_model=Subscription, status_code=201)
def create_subscription(body: SubscriptionCreate, store: LocalStore = Depends(get_store)):
    try:
        return store.add(Subscription(**body.model_dump()))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.patch("/{subscription_id}", response_model=Subscription)
def update_subscription(
    subscription_id: str,
    body: SubscriptionUpdate,
    store: LocalStore = Depends(get_store),
):
    changes = body.model_dump(exclude_unset=True)
    for key, value in changes.items():
        if value is None and key != "cancelled_date":
            raise HTTPException(status_code=422, detail=f"'{key}' cannot be null")
    try:
        return store.update(Subscription, subscription_id, changes)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Subscription not found")
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.delete("/{subscription_id}", status_code=204)
def delete_subscription(subscription_id: str, store: LocalStore = Depends(get_store)):
    try:
        store.delete(Subscription, subscription_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Subscription not found")
    return Response(status_code=204)
