"""Sync session model: one row per sync run, the single source of progress."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import JSON
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every datetime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SyncType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    DATE_RANGE = "date_range"


class SyncStatus(str, Enum):
    INITIATED = "initiated"
    FETCHING = "fetching"
    ENRICHING = "enriching"
    STORING = "storing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


class SyncPhase(str, Enum):
    FETCHING = "fetching"
    ENRICHING = "enriching"
    STORING = "storing"


ACTIVE_STATUSES = (
    SyncStatus.INITIATED,
    SyncStatus.FETCHING,
    SyncStatus.ENRICHING,
    SyncStatus.STORING,
)
TERMINAL_STATUSES = (SyncStatus.COMPLETED, SyncStatus.FAILED, SyncStatus.CANCELLED)


class ResumeParams(BaseModel):
    page: int = 1
    per_page: int = 100
    after: Optional[int] = None  # epoch seconds
    before: Optional[int] = None


class Checkpoint(BaseModel):
    """Progress marker written after every fetched page."""

    last_page: int = 0
    last_processed_id: Optional[int] = None
    counts: Dict[str, int] = {"fetched": 0, "enriched": 0, "stored": 0}
    error_activity_ids: List[int] = []
    resume_params: ResumeParams = ResumeParams()


class SyncSession(SQLModel, table=True):
    """Persistent record of one sync run and its progress."""

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(index=True)
    sync_type: SyncType = SyncType.FULL
    status: SyncStatus = Field(default=SyncStatus.INITIATED, index=True)
    current_phase: SyncPhase = SyncPhase.FETCHING

    # Requested window; None means unbounded on that side
    time_range_start: Optional[datetime] = None
    time_range_end: Optional[datetime] = None

    total_activities_estimated: int = 0
    activities_fetched: int = 0
    activities_enriched: int = 0
    activities_stored: int = 0
    activities_failed: int = 0

    retry_count: int = 0
    error_count: int = 0
    last_error: Optional[Dict[str, Any]] = Field(default=None, sa_type=JSON)

    last_successful_page: int = 0
    checkpoint_data: Optional[Dict[str, Any]] = Field(default=None, sa_type=JSON)

    started_at: datetime = Field(default_factory=utcnow)
    last_activity_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def checkpoint(self) -> Optional[Checkpoint]:
        if not self.checkpoint_data:
            return None
        return Checkpoint.model_validate(self.checkpoint_data)
