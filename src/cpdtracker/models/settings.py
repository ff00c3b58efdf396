"""Global user preferences (singleton row)."""
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from cpdtracker.models.base import Currency

SETTINGS_ID = "global"


class AppSettings(SQLModel, table=True):
    id: str = Field(default=SETTINGS_ID, primary_key=True)
    electricity_rate: float = 4.0  # per kWh, in default_currency
    locale: str = "zh-TW"
    default_currency: str = Currency.TWD.value
    # Display only; per-record sync timestamps drive conflict decisions.
    last_synced_at: Optional[datetime] = Field(default=None, sa_type=DateTime)

    def check_invariants(self) -> None:
        Currency(self.default_currency)
