"""Stored run query routes."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from runsync.api.deps import get_orchestrator
from runsync.models.run import Run
from runsync.storage.run_store import RunFilters
from runsync.sync.orchestrator import SyncOrchestrator

router = APIRouter()


class RunListResponse(BaseModel):
    total: int
    limit: int
    offset: int
    runs: List[Run]


@router.get("/", response_model=RunListResponse)
def list_runs(
    user_id: str,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    sync_session_id: Optional[str] = None,
    activity_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """List stored runs, newest first."""
    filters = RunFilters(
        start_date=start_date,
        end_date=end_date,
        sync_session_id=sync_session_id,
        activity_type=activity_type,
    )
    runs, total = orchestrator.get_stored_records(user_id, filters, limit, offset)
    return RunListResponse(total=total, limit=limit, offset=offset, runs=runs)


@router.get("/stats")
def run_stats(user_id: str, orchestrator: SyncOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return orchestrator.store.get_statistics(user_id)


@router.get("/integrity")
def run_integrity(
    user_id: str,
    sample_size: int = Query(100, ge=1, le=1000),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Re-validate the most recent stored runs."""
    return orchestrator.store.validate_integrity(user_id, sample_size)
