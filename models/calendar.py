"""SQLModel table for remote calendars mirrored locally."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from utils.datetime_utils import utc_now


class Calendar(SQLModel, table=True):
    id: str = Field(primary_key=True, description="Remote calendar identifier")
    summary: str = ""
    description: Optional[str] = None
    color_id: Optional[str] = None
    color_override: Optional[str] = None  # local only
    background_color: Optional[str] = None
    foreground_color: Optional[str] = None
    access_role: str = "reader"
    primary_calendar: bool = False
    visible: bool = True  # local only once the row exists
    time_zone: Optional[str] = None
    sync_token: Optional[str] = None  # local only
    last_synced_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def display_color(self) -> str:
        return self.color_override or self.background_color or "#4A9AC2"


__all__ = ["Calendar"]
