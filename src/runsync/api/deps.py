"""Shared FastAPI dependencies."""
from typing import Optional

from runsync.db.engine import get_engine
from runsync.sync.orchestrator import SyncOrchestrator, build_orchestrator

_orchestrator: Optional[SyncOrchestrator] = None


def get_orchestrator() -> SyncOrchestrator:
    """Process-wide orchestrator; it owns the running sync tasks."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = build_orchestrator(get_engine())
    return _orchestrator


async def close_orchestrator() -> None:
    global _orchestrator
    if _orchestrator is not None:
        await _orchestrator.shutdown()
        _orchestrator = None
