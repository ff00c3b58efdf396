"""Physical asset model: one-off purchases tracked for cost per day."""
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import JSON, DateTime
from sqlmodel import Field

from cpdtracker.models.base import Currency, SyncableEntity, format_timestamp


class AssetCategory(str, Enum):
    TECH = "Tech"
    MUSIC = "Music"
    LIFE = "Life"
    OTHERS = "Others"


class AssetStatus(str, Enum):
    ACTIVE = "Active"
    SOLD = "Sold"
    RETIRED = "Retired"


class AssetRole(str, Enum):
    """
    Hierarchy variant. All assets live in one flat table; relations are
    id references:

      Standalone  no references
      System      no references; components point at it
      Component   system_id -> the System it is installed in
      Accessory   linked_asset_id -> the asset it belongs to
    """

    STANDALONE = "Standalone"
    SYSTEM = "System"
    COMPONENT = "Component"
    ACCESSORY = "Accessory"


class MaintenanceEntry(BaseModel):
    """One maintenance log line. Stored on Asset as a JSON list of dicts."""

    date: datetime
    note: str = ""
    cost: float = 0.0

    def to_log(self) -> Dict[str, Any]:
        return {"date": format_timestamp(self.date), "note": self.note, "cost": float(self.cost)}


class Asset(SyncableEntity, table=True):
    collection_name: ClassVar[str] = "assets"

    # Enum-valued columns hold the plain string value; check_invariants
    # rejects anything outside the enum.
    name: str
    category: str = Field(default=AssetCategory.OTHERS.value, index=True)
    purchase_date: datetime = Field(sa_type=DateTime, index=True)
    price: float
    currency: str = Currency.TWD.value
    # [{"date": "2024-06-10T00:00:00.000Z", "note": "...", "cost": 200.0}, ...]
    maintenance_log: List[Dict[str, Any]] = Field(default_factory=list, sa_type=JSON)
    target_lifespan: int = 1095  # days
    status: str = Field(default=AssetStatus.ACTIVE.value, index=True)
    sold_price: Optional[float] = None
    notes: str = ""

    role: str = Field(default=AssetRole.STANDALONE.value, index=True)
    system_id: Optional[str] = Field(default=None, index=True)
    linked_asset_id: Optional[str] = None

    # Hidden running costs
    power_watts: float = 0.0
    daily_usage_hours: float = 0.0
    recurring_maintenance_cost: float = 0.0  # per year

    def check_invariants(self) -> None:
        """Raise ValueError if the role's reference fields are inconsistent."""
        role = AssetRole(self.role)
        AssetCategory(self.category)
        AssetStatus(self.status)
        Currency(self.currency)

        if role in (AssetRole.STANDALONE, AssetRole.SYSTEM):
            if self.system_id is not None or self.linked_asset_id is not None:
                raise ValueError(
                    f"{role.value} asset {self.name!r} must not reference another asset"
                )
        elif role == AssetRole.COMPONENT:
            if not self.system_id:
                raise ValueError(f"Component {self.name!r} requires a system_id")
            if self.system_id == self.id:
                raise ValueError(f"Component {self.name!r} cannot be its own system")
            if self.linked_asset_id is not None:
                raise ValueError(f"Component {self.name!r} must not set linked_asset_id")
        elif role == AssetRole.ACCESSORY:
            if not self.linked_asset_id:
                raise ValueError(f"Accessory {self.name!r} requires a linked_asset_id")
            if self.system_id is not None:
                raise ValueError(f"Accessory {self.name!r} must not set system_id")

    def maintenance_entries(self) -> List[MaintenanceEntry]:
        return [MaintenanceEntry(**entry) for entry in self.maintenance_log or []]

    def normalize(self) -> None:
        """Canonical maintenance-log entries: UTC date string, float cost."""
        self.maintenance_log = [entry.to_log() for entry in self.maintenance_entries()]
