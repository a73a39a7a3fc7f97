"""Stored Strava OAuth credentials."""
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from runsync.models.sync import utcnow


class StravaToken(SQLModel, table=True):
    """One row per user; refreshed in place when the access token expires."""

    user_id: str = Field(primary_key=True)
    athlete_id: Optional[int] = None
    access_token: str
    refresh_token: str
    expires_at: int  # epoch seconds, as Strava returns it
    scope: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)
