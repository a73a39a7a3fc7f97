"""
APScheduler jobs for background sync.

Nightly incremental sync at `sync_hour` for every user in `sync_user_ids`,
followed half an hour later by pruning of old finished sessions.

The scheduler runs inside the `python -m runsync serve` process.
"""
import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from runsync.config import get_settings
from runsync.models.sync import SyncStatus, SyncType, utcnow

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine the jobs sync into.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _nightly_sync,
        trigger="cron",
        hour=settings.sync_hour,
        minute=0,
        id="nightly_sync",
        replace_existing=True,
        kwargs={"engine": engine},
    )
    scheduler.add_job(
        _cleanup_sessions,
        trigger="cron",
        hour=settings.sync_hour,
        minute=30,
        id="session_cleanup",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


async def _nightly_sync(engine) -> None:
    """
    Nightly job: incremental sync for each configured user, one at a time.

    A failing user is logged and does not stop the others.
    """
    from runsync.sync.orchestrator import build_orchestrator

    settings = get_settings()
    logger.info("Nightly sync starting at %s", utcnow().isoformat())

    orchestrator = build_orchestrator(engine, settings)
    for user_id in settings.sync_user_ids:
        try:
            result = await orchestrator.sync_now(user_id, sync_type=SyncType.INCREMENTAL)
        except Exception as exc:
            logger.error("Nightly sync for %s failed to start: %s", user_id, exc)
            continue
        if result.status == SyncStatus.COMPLETED:
            logger.info("Nightly sync for %s: %d stored, %d failed", user_id, result.stored, result.failed)
        else:
            logger.error(
                "Nightly sync for %s ended %s: %s",
                user_id,
                result.status.value,
                result.error.message if result.error else "no error recorded",
            )


async def _cleanup_sessions(engine) -> None:
    """Remove finished sessions older than the retention window."""
    from runsync.sync.state import SyncStateManager

    settings = get_settings()
    state = SyncStateManager(engine, settings=settings)
    for user_id in settings.sync_user_ids:
        try:
            state.cleanup_old(user_id)
        except Exception as exc:
            logger.error("Session cleanup for %s failed: %s", user_id, exc)
