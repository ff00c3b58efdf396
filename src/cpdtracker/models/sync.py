"""Sync audit log and pending remote deletes."""
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from cpdtracker.models.base import utcnow


class SyncLog(SQLModel, table=True):
    """Records each sync run that got past the precondition checks."""

    id: Optional[int] = Field(default=None, primary_key=True)
    direction: str = "bidirectional"
    started_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    finished_at: Optional[datetime] = Field(default=None, sa_type=DateTime)
    status: str = "running"  # "running", "success", "partial", "error"
    uploaded: int = 0
    downloaded: int = 0
    conflicts: int = 0
    deleted: int = 0
    error_message: Optional[str] = None


class Tombstone(SQLModel, table=True):
    """
    A locally deleted record that still exists on the backend.

    Replayed as a remote delete on the next upload; removed once confirmed.
    """

    id: Optional[int] = Field(default=None, primary_key=True)
    collection: str = Field(index=True)
    local_id: str
    remote_id: str = Field(index=True)
    deleted_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
