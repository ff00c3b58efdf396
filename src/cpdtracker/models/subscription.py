"""Recurring subscription model."""
from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional

from sqlalchemy import DateTime
from sqlmodel import Field

from cpdtracker.models.base import Currency, SyncableEntity


class BillingCycle(str, Enum):
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"
    YEARLY = "Yearly"


class SubscriptionCategory(str, Enum):
    SOFTWARE = "Software"
    SERVICE = "Service"
    ENTERTAINMENT = "Entertainment"


class SubscriptionStatus(str, Enum):
    ACTIVE = "Active"
    CANCELLED = "Cancelled"


class Subscription(SyncableEntity, table=True):
    collection_name: ClassVar[str] = "subscriptions"

    name: str
    billing_cycle: str = BillingCycle.MONTHLY.value
    cost: float
    currency: str = Currency.TWD.value
    start_date: datetime = Field(sa_type=DateTime, index=True)
    category: str = Field(default=SubscriptionCategory.SERVICE.value, index=True)
    status: str = Field(default=SubscriptionStatus.ACTIVE.value, index=True)
    cancelled_date: Optional[datetime] = Field(default=None, sa_type=DateTime)
    notes: str = ""

    def check_invariants(self) -> None:
        BillingCycle(self.billing_cycle)
        SubscriptionCategory(self.category)
        SubscriptionStatus(self.status)
        Currency(self.currency)
