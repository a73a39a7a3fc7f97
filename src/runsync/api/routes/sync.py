"""Sync control and status routes."""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from runsync.api.deps import get_orchestrator
from runsync.api.errors import http_error
from runsync.models.sync import SyncType
from runsync.sync.errors import SyncError
from runsync.sync.orchestrator import SyncOptions, SyncOrchestrator, TimeRange

router = APIRouter()


class StartSyncRequest(BaseModel):
    user_id: str
    sync_type: Optional[SyncType] = None  # inferred from the range when omitted
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    page_size: Optional[int] = None
    max_activities: Optional[int] = None
    enrich: bool = True


class SyncStartedResponse(BaseModel):
    session_id: str
    status: str
    message: str


class SyncProgress(BaseModel):
    fetched: int
    enriched: int
    stored: int
    failed: int
    estimated: int
    percent: int


class SyncStatusResponse(BaseModel):
    session_id: str
    user_id: str
    sync_type: str
    status: str
    phase: str
    progress: SyncProgress
    retry_count: int
    error_count: int
    last_error: Optional[Dict[str, Any]]
    message: Optional[str]
    checkpoint: Optional[Dict[str, Any]]
    time_range_start: Optional[datetime]
    time_range_end: Optional[datetime]
    started_at: datetime
    last_activity_at: datetime
    completed_at: Optional[datetime]
    is_running: bool
    is_stuck: bool


@router.post("/start", response_model=SyncStartedResponse, status_code=202)
async def start_sync(
    request: StartSyncRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Start a sync in the background. Poll GET /sync/{id} for progress."""
    try:
        handle = await orchestrator.start_sync(
            request.user_id,
            time_range=TimeRange(start=_naive_utc(request.start_date), end=_naive_utc(request.end_date)),
            options=SyncOptions(
                page_size=request.page_size,
                max_activities=request.max_activities,
                enrich=request.enrich,
            ),
            sync_type=request.sync_type,
        )
    except SyncError as exc:
        raise http_error(exc)
    return SyncStartedResponse(
        session_id=handle.session_id, status="initiated", message="Sync started"
    )


# Fixed paths are declared before /{session_id} so they are not captured by it


@router.get("/history", response_model=List[SyncStatusResponse])
def sync_history(
    user_id: str,
    limit: int = 10,
    offset: int = 0,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Past sessions for a user, newest first."""
    sessions = orchestrator.get_sync_history(user_id, limit, offset)
    return [orchestrator.describe(s) for s in sessions]


@router.get("/stats")
def sync_stats(user_id: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    return orchestrator.get_sync_statistics(user_id)


@router.get("/limits")
def rate_limits(
    user_id: Optional[str] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Current Strava/OpenWeather budget usage and breaker states.

    The Strava breaker is per user: pass user_id for one, omit it for all.
    """
    return orchestrator.rate_limit_status(user_id)


@router.get("/{session_id}", response_model=SyncStatusResponse)
def sync_status(
    session_id: str,
    user_id: Optional[str] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    try:
        return orchestrator.get_sync_status(session_id, user_id)
    except SyncError as exc:
        raise http_error(exc)


@router.post("/{session_id}/cancel", response_model=SyncStatusResponse)
def cancel_sync(
    session_id: str,
    user_id: Optional[str] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    try:
        session = orchestrator.cancel_sync(session_id, user_id)
    except SyncError as exc:
        raise http_error(exc)
    return orchestrator.describe(session)


@router.post("/{session_id}/resume", response_model=SyncStartedResponse, status_code=202)
async def resume_sync(
    session_id: str,
    user_id: Optional[str] = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """Re-run a failed session over its original time range."""
    try:
        handle = await orchestrator.resume_sync(session_id, user_id)
    except SyncError as exc:
        raise http_error(exc)
    return SyncStartedResponse(
        session_id=handle.session_id, status="initiated", message="Sync resumed"
    )


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
