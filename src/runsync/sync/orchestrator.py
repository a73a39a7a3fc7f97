"""
SyncOrchestrator: runs the fetch -> enrich -> store pipeline for one user.

Flow for one sync:
  1. Create SyncSession (refused if another live session exists)
  2. Fetching: walk Strava pages; after every page update the fetched
     counter and write a checkpoint
  3. Transform raw activities into EnrichedRun records
  4. Enriching (optional): skipped when OpenWeather is unavailable or out
     of budget; progress written after every batch
  5. Storing: batch upsert; per-record failures are counted, not fatal
  6. Complete the session with final counts

Any error that escapes a phase is classified with that phase and recorded
with fail_session(). Cancellation is cooperative: the session row is checked
between phases, pages and batches, and a cancelled session is left as is.

A failed session can be resumed. Resume re-runs the pipeline on the same
session over its original time range; the upsert makes the replay safe.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from runsync.config import Settings, get_settings
from runsync.models.run import EnrichedRun, Run
from runsync.models.sync import (
    Checkpoint,
    ResumeParams,
    SyncPhase,
    SyncSession,
    SyncStatus,
    SyncType,
)
from runsync.storage.run_store import RunFilters
from runsync.strava.client import ActivityPage, to_epoch
from runsync.strava.normalizer import transform_to_enriched_run
from runsync.sync.errors import SyncError, SyncStateError, classify, user_message

logger = logging.getLogger(__name__)


@dataclass
class TimeRange:
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @property
    def is_bounded(self) -> bool:
        return self.start is not None or self.end is not None


@dataclass
class SyncOptions:
    page_size: Optional[int] = None
    max_pages: Optional[int] = None
    max_activities: Optional[int] = None
    enrich: bool = True
    enrich_batch_size: Optional[int] = None
    store_batch_size: Optional[int] = None


@dataclass
class SyncResult:
    session_id: str
    status: SyncStatus
    fetched: int = 0
    enriched: int = 0
    stored: int = 0
    failed: int = 0
    skipped: int = 0
    error: Optional[SyncError] = None
    failed_details: List[Dict[str, Any]] = field(default_factory=list)
    error_summary: Dict[str, Any] = field(default_factory=dict)


class SyncHandle:
    """A running sync: its session id plus the task executing it."""

    def __init__(self, session_id: str, task: "asyncio.Task[SyncResult]"):
        self.session_id = session_id
        self.task = task

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> SyncResult:
        return await self.task


class _SyncCancelled(Exception):
    """Internal signal: the session was cancelled while running."""


class SyncOrchestrator:
    def __init__(self, state, client, enricher, store, settings: Optional[Settings] = None):
        """
        Args:
            state: SyncStateManager.
            client: StravaClient (or AsyncMock with fetch_all).
            enricher: WeatherEnricher, or None to never enrich.
            store: RunStore.
        """
        self.state = state
        self.client = client
        self.enricher = enricher
        self.store = store
        self.settings = settings or get_settings()
        self._tasks: Dict[str, asyncio.Task] = {}

    # ── Starting ─────────────────────────────────────────────────────────────

    async def start_sync(
        self,
        user_id: str,
        time_range: Optional[TimeRange] = None,
        options: Optional[SyncOptions] = None,
        sync_type: Optional[SyncType] = None,
    ) -> SyncHandle:
        """Create a session and run the pipeline in the background.

        Raises:
            SyncStateError(SYNC_ALREADY_ACTIVE) before anything is scheduled.
        """
        time_range = time_range or TimeRange()
        if sync_type is None:
            sync_type = SyncType.DATE_RANGE if time_range.is_bounded else SyncType.FULL
        if sync_type == SyncType.INCREMENTAL and time_range.start is None:
            latest = self.store.latest_start_date(user_id)
            time_range = TimeRange(start=latest, end=time_range.end)
            logger.info("Incremental sync for %s from %s", user_id, latest or "the beginning")

        session = self.state.create_session(user_id, sync_type, time_range.start, time_range.end)
        return self._launch(session, options or SyncOptions())

    async def sync_now(self, user_id: str, **kwargs) -> SyncResult:
        """start_sync() and wait for the result."""
        handle = await self.start_sync(user_id, **kwargs)
        return await handle.wait()

    async def resume_sync(
        self,
        session_id: str,
        user_id: Optional[str] = None,
        options: Optional[SyncOptions] = None,
    ) -> SyncHandle:
        """Re-run a failed session.

        Raises:
            SessionNotFoundError: unknown session (or not owned by user_id).
            SyncStateError(INVALID_SYNC_STATE): session is not failed.
            SyncStateError(SYNC_ALREADY_ACTIVE): another session is live.
        """
        session = self.state.require_session(session_id, user_id)
        if session.status != SyncStatus.FAILED:
            raise SyncStateError(
                f"Only failed sessions can be resumed (session is {session.status.value})",
                context={"session_id": session_id, "status": session.status.value},
            )
        for other in self.state.get_active_sessions(session.user_id):
            if not self.state.is_stuck(other):
                raise SyncStateError(
                    f"Sync session {other.id} is already active",
                    code="SYNC_ALREADY_ACTIVE",
                    context={"session_id": other.id},
                )
            logger.warning("Cancelling stuck session %s before resume", other.id)
            self.state.cancel_session(other.id)

        session = self.state.reset_for_retry(session_id)
        logger.info("Resuming sync session %s (attempt %d)", session_id, session.retry_count + 1)
        return self._launch(session, options or SyncOptions())

    # ── Control & status ─────────────────────────────────────────────────────

    def cancel_sync(self, session_id: str, user_id: Optional[str] = None) -> SyncSession:
        """Mark the session cancelled; the running pipeline stops at its next check."""
        self.state.require_session(session_id, user_id)
        session = self.state.cancel_session(session_id)
        logger.info("Sync session %s cancelled", session_id)
        return session

    def get_sync_status(self, session_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        session = self.state.require_session(session_id, user_id)
        return self.describe(session)

    def describe(self, session: SyncSession) -> Dict[str, Any]:
        last_error = session.last_error
        checkpoint = session.checkpoint
        return {
            "session_id": session.id,
            "user_id": session.user_id,
            "sync_type": session.sync_type.value,
            "status": session.status.value,
            "phase": session.current_phase.value,
            "progress": {
                "fetched": session.activities_fetched,
                "enriched": session.activities_enriched,
                "stored": session.activities_stored,
                "failed": session.activities_failed,
                "estimated": session.total_activities_estimated,
                "percent": progress_percent(session),
            },
            "retry_count": session.retry_count,
            "error_count": session.error_count,
            "last_error": last_error,
            "message": user_message(SyncError.from_dict(last_error)) if last_error else None,
            "checkpoint": checkpoint.model_dump(mode="json") if checkpoint else None,
            "time_range_start": session.time_range_start,
            "time_range_end": session.time_range_end,
            "started_at": session.started_at,
            "last_activity_at": session.last_activity_at,
            "completed_at": session.completed_at,
            "is_running": session.id in self._tasks,
            "is_stuck": self.state.is_stuck(session),
        }

    def get_sync_history(self, user_id: str, limit: int = 10, offset: int = 0) -> List[SyncSession]:
        return self.state.get_history(user_id, limit, offset)

    def get_sync_statistics(self, user_id: str) -> Dict[str, Any]:
        return self.state.get_statistics(user_id)

    def get_stored_records(
        self,
        user_id: str,
        filters: Optional[RunFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Run], int]:
        return self.store.query(user_id, filters, limit, offset)

    def cleanup_old_sessions(self, user_id: str, retention_days: Optional[int] = None) -> int:
        return self.state.cleanup_old(user_id, retention_days)

    def rate_limit_status(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        status = {
            "strava": self.client.rate_limit_status(),
            "strava_breaker": self.client.circuit_breaker_status(user_id),
        }
        if self.enricher is not None:
            status["openweather"] = self.enricher.ledger.usage()
            status["openweather_breaker"] = self.enricher.breaker.status()
            status["openweather_capacity"] = self.enricher.estimate_capacity()
        return status

    async def shutdown(self) -> None:
        """Cancel running pipelines and mark their sessions cancelled."""
        running = dict(self._tasks)
        for task in running.values():
            task.cancel()
        if not running:
            return
        await asyncio.gather(*running.values(), return_exceptions=True)
        # a task cancelled before its first step never reached its own handler
        for session_id in running:
            session = self.state.get_session(session_id)
            if session is not None and not session.status.is_terminal:
                self.state.cancel_session(session_id)
        logger.info("Cancelled %d running syncs on shutdown", len(running))

    # ─── Pipeline ─────────────────────────────────────────────────────────────

    def _launch(self, session: SyncSession, options: SyncOptions) -> SyncHandle:
        task = asyncio.create_task(
            self._run(session.id, session.user_id, options), name=f"sync-{session.id}"
        )
        self._tasks[session.id] = task
        task.add_done_callback(lambda _t, sid=session.id: self._tasks.pop(sid, None))
        return SyncHandle(session.id, task)

    async def _run(self, session_id: str, user_id: str, options: SyncOptions) -> SyncResult:
        result = SyncResult(session_id=session_id, status=SyncStatus.INITIATED)
        phase = SyncPhase.FETCHING
        try:
            runs = await self._fetch(session_id, user_id, options, result)

            if self._should_enrich(options, runs):
                phase = SyncPhase.ENRICHING
                await self._enrich(session_id, runs, options, result)

            phase = SyncPhase.STORING
            await self._store(session_id, runs, options, result)

            session = self.state.complete_session(
                session_id,
                fetched=result.fetched,
                enriched=result.enriched,
                stored=result.stored,
                failed=result.failed,
            )
            result.status = session.status
            return result

        except _SyncCancelled:
            logger.info("Sync session %s stopped after cancellation", session_id)
            result.status = SyncStatus.CANCELLED
            return result

        except asyncio.CancelledError:
            session = self.state.get_session(session_id)
            if session is not None and not session.status.is_terminal:
                self.state.cancel_session(session_id)
            raise

        except Exception as exc:
            error = classify(exc, phase)
            session = self.state.get_session(session_id)
            if session is not None and session.status == SyncStatus.CANCELLED:
                result.status = SyncStatus.CANCELLED
                return result
            logger.exception("Sync session %s failed during %s", session_id, phase.value)
            self.state.fail_session(session_id, error)
            result.status = SyncStatus.FAILED
            result.error = error
            return result

    async def _fetch(
        self, session_id: str, user_id: str, options: SyncOptions, result: SyncResult
    ) -> List[EnrichedRun]:
        self._check_cancelled(session_id)
        session = self.state.transition_phase(session_id, SyncPhase.FETCHING)

        page_size = options.page_size or self.settings.page_size
        max_activities = options.max_activities or self.settings.max_activities_per_sync
        after = to_epoch(session.time_range_start)
        before = to_epoch(session.time_range_end)
        checkpoint = Checkpoint(
            resume_params=ResumeParams(page=1, per_page=page_size, after=after, before=before)
        )

        async def on_page(page: ActivityPage, total: int) -> None:
            checkpoint.last_page = page.page
            if page.last_id is not None:
                checkpoint.last_processed_id = page.last_id
            checkpoint.counts["fetched"] = total
            checkpoint.error_activity_ids.extend(s["id"] for s in page.skipped if s.get("id"))
            checkpoint.resume_params.page = page.page + 1
            estimated = total + (page.per_page if page.has_more else 0)
            self.state.save_checkpoint(session_id, checkpoint)
            self.state.update_progress(
                session_id, fetched=total, estimated=min(estimated, max_activities)
            )
            self._check_cancelled(session_id)

        fetched = await self.client.fetch_all(
            user_id,
            after=after,
            before=before,
            page_size=page_size,
            max_pages=options.max_pages,
            max_activities=max_activities,
            on_page=on_page,
        )
        result.fetched = len(fetched.records)
        result.skipped = fetched.skipped
        self.state.update_progress(session_id, fetched=result.fetched, estimated=result.fetched)
        logger.info("Fetched %d activities for session %s", result.fetched, session_id)

        return [transform_to_enriched_run(raw, user_id, session_id) for raw in fetched.records]

    def _should_enrich(self, options: SyncOptions, runs: List[EnrichedRun]) -> bool:
        if not options.enrich or not runs or self.enricher is None:
            return False
        if not self.enricher.is_available():
            logger.info("Weather enrichment unavailable, skipping enrichment phase")
            return False
        if self.enricher.estimate_capacity()["estimated_records"] <= 0:
            logger.info("Weather budget exhausted, skipping enrichment phase")
            return False
        return True

    async def _enrich(
        self, session_id: str, runs: List[EnrichedRun], options: SyncOptions, result: SyncResult
    ) -> None:
        self._check_cancelled(session_id)
        self.state.transition_phase(session_id, SyncPhase.ENRICHING)

        async def on_progress(done: int, total: int) -> None:
            # weather successes so far, the same count the session ends with
            enriched = sum(1 for run in runs[:done] if run.weather_enriched)
            self.state.update_progress(session_id, enriched=enriched)
            self._check_cancelled(session_id)

        enrichment = await self.enricher.enrich_batch(runs, options.enrich_batch_size, on_progress)
        result.enriched = enrichment.weather_enriched
        self.state.update_progress(session_id, enriched=result.enriched)

    async def _store(
        self, session_id: str, runs: List[EnrichedRun], options: SyncOptions, result: SyncResult
    ) -> None:
        self._check_cancelled(session_id)
        self.state.transition_phase(session_id, SyncPhase.STORING)

        async def on_progress(done: int, total: int, partial) -> None:
            self.state.update_progress(session_id, stored=partial.stored, failed=partial.failed)
            self._check_cancelled(session_id)

        stored = await self.store.store_batch(runs, options.store_batch_size, on_progress)
        result.stored = stored.stored
        result.failed = stored.failed
        result.failed_details = stored.failed_details
        result.error_summary = stored.errors.summary()

        checkpoint = self.state.get_checkpoint(session_id) or Checkpoint()
        checkpoint.counts.update(enriched=result.enriched, stored=result.stored)
        checkpoint.error_activity_ids.extend(d["strava_id"] for d in stored.failed_details)
        self.state.save_checkpoint(session_id, checkpoint)

    def _check_cancelled(self, session_id: str) -> None:
        session = self.state.get_session(session_id)
        if session is None or session.status == SyncStatus.CANCELLED:
            raise _SyncCancelled(session_id)


def progress_percent(session: SyncSession) -> int:
    if session.status == SyncStatus.COMPLETED:
        return 100
    estimated = session.total_activities_estimated
    if estimated <= 0:
        return 0
    done = max(session.activities_fetched, session.activities_enriched, session.activities_stored)
    return min(100, round(100 * done / estimated))


def build_orchestrator(engine, settings: Optional[Settings] = None) -> SyncOrchestrator:
    """Wire an orchestrator with the production collaborators."""
    from runsync.storage.run_store import RunStore
    from runsync.strava.auth import StravaAuth
    from runsync.strava.client import StravaClient
    from runsync.sync.state import SyncStateManager
    from runsync.weather.enricher import WeatherEnricher

    settings = settings or get_settings()
    client = StravaClient(StravaAuth(engine, settings=settings), settings=settings)
    enricher = WeatherEnricher(settings=settings) if settings.openweather_api_key else None
    return SyncOrchestrator(
        SyncStateManager(engine, settings=settings),
        client,
        enricher,
        RunStore(engine, settings=settings),
        settings=settings,
    )
