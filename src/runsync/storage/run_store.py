"""
RunStore: persists enriched runs and answers queries about them.

Idempotency: (user_id, strava_id) is unique. An existing row is updated in
place and keeps its created_at; a unique violation on insert (another
writer got there first) counts as skipped rather than failed.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from runsync.config import Settings, get_settings
from runsync.models.run import EnrichedRun, Run
from runsync.models.sync import SyncPhase, utcnow
from runsync.strava.normalizer import validate_enriched_run
from runsync.sync.errors import DataValidationError, ErrorCollector
from runsync.sync.resilience import RetryPolicy, with_retry

logger = logging.getLogger(__name__)


class StoreStatus(str, Enum):
    SAVED = "saved"
    UPDATED = "updated"
    SKIPPED = "skipped"


@dataclass
class StoreOutcome:
    status: StoreStatus
    strava_id: int
    run_id: Optional[int] = None


@dataclass
class BatchStoreResult:
    saved: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    failed_details: List[Dict[str, Any]] = field(default_factory=list)
    errors: ErrorCollector = field(default_factory=ErrorCollector)

    @property
    def stored(self) -> int:
        return self.saved + self.updated

    @property
    def processed(self) -> int:
        return self.saved + self.updated + self.skipped + self.failed


@dataclass
class RunFilters:
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    sync_session_id: Optional[str] = None
    activity_type: Optional[str] = None


StoreProgress = Callable[[int, int, BatchStoreResult], Awaitable[None]]


class RunStore:
    def __init__(
        self,
        engine,
        settings: Optional[Settings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.engine = engine
        self.settings = settings or get_settings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._sleep = sleep

    # ── Writes ───────────────────────────────────────────────────────────────

    async def store_one(self, run: EnrichedRun) -> StoreOutcome:
        """Insert or update one run.

        Raises:
            DataValidationError: the record fails integrity validation.
        """
        problems = validate_enriched_run(run)
        if problems:
            raise DataValidationError(
                f"Run {run.strava_id} failed validation: {', '.join(problems)}",
                fields=problems,
                phase=SyncPhase.STORING,
                context={"strava_id": run.strava_id},
            )

        fields = run.model_dump()
        with Session(self.engine) as s:
            existing = s.exec(
                select(Run).where(Run.user_id == run.user_id, Run.strava_id == run.strava_id)
            ).first()

            if existing:
                for k, v in fields.items():
                    setattr(existing, k, v)
                existing.updated_at = utcnow()
                s.add(existing)
                s.commit()
                return StoreOutcome(StoreStatus.UPDATED, run.strava_id, existing.id)

            row = Run(**fields)
            s.add(row)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                logger.info("Run %s inserted concurrently, skipping", run.strava_id)
                return StoreOutcome(StoreStatus.SKIPPED, run.strava_id)
            s.refresh(row)
            return StoreOutcome(StoreStatus.SAVED, run.strava_id, row.id)

    async def store_batch(
        self,
        runs: Sequence[EnrichedRun],
        batch_size: Optional[int] = None,
        on_progress: Optional[StoreProgress] = None,
    ) -> BatchStoreResult:
        """Store runs in batches; one record's failure never fails the others.

        Each record is retried per the retry policy. `on_progress(done,
        total, result)` is awaited after each batch and may raise to stop.
        """
        batch_size = batch_size or self.settings.store_batch_size
        total = len(runs)
        result = BatchStoreResult()

        for start in range(0, total, batch_size):
            batch = runs[start:start + batch_size]
            outcomes = await asyncio.gather(
                *(self._store_with_retry(run) for run in batch),
                return_exceptions=True,
            )
            for run, outcome in zip(batch, outcomes):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                if isinstance(outcome, Exception):
                    error = result.errors.add(outcome, SyncPhase.STORING, strava_id=run.strava_id)
                    logger.warning("Failed to store run %s: %s", run.strava_id, error.message)
                    result.failed += 1
                    result.failed_details.append({"strava_id": run.strava_id, "error": error.to_dict()})
                elif outcome.status == StoreStatus.SAVED:
                    result.saved += 1
                elif outcome.status == StoreStatus.UPDATED:
                    result.updated += 1
                else:
                    result.skipped += 1

            done = min(start + batch_size, total)
            if on_progress is not None:
                await on_progress(done, total, result)
            if done < total and self.settings.store_batch_delay_seconds:
                await self._sleep(self.settings.store_batch_delay_seconds)

        logger.info(
            "Stored %d runs: %d new, %d updated, %d skipped, %d failed",
            total,
            result.saved,
            result.updated,
            result.skipped,
            result.failed,
        )
        if result.errors.has_errors:
            logger.warning("Store failures by kind: %s", result.errors.summary()["by_kind"])
        return result

    def delete_by_external_ids(self, user_id: str, strava_ids: Sequence[int]) -> int:
        with Session(self.engine) as s:
            rows = s.exec(
                select(Run).where(Run.user_id == user_id, Run.strava_id.in_(list(strava_ids)))
            ).all()
            for row in rows:
                s.delete(row)
            s.commit()
            return len(rows)

    def cleanup_older_than(self, user_id: str, cutoff: datetime) -> int:
        """Delete runs that started before `cutoff`. Returns the count removed."""
        with Session(self.engine) as s:
            rows = s.exec(
                select(Run).where(Run.user_id == user_id, Run.start_date_utc < cutoff)
            ).all()
            for row in rows:
                s.delete(row)
            s.commit()
        if rows:
            logger.info("Removed %d runs older than %s for user %s", len(rows), cutoff, user_id)
        return len(rows)

    # ── Reads ────────────────────────────────────────────────────────────────

    def query(
        self,
        user_id: str,
        filters: Optional[RunFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Run], int]:
        """Runs newest first, plus the total matching count for paging."""
        conditions = [Run.user_id == user_id]
        if filters is not None:
            if filters.start_date is not None:
                conditions.append(Run.start_date_utc >= filters.start_date)
            if filters.end_date is not None:
                conditions.append(Run.start_date_utc <= filters.end_date)
            if filters.sync_session_id is not None:
                conditions.append(Run.sync_session_id == filters.sync_session_id)
            if filters.activity_type is not None:
                conditions.append(Run.activity_type == filters.activity_type)

        with Session(self.engine) as s:
            total = s.exec(select(func.count()).select_from(Run).where(*conditions)).one()
            runs = s.exec(
                select(Run)
                .where(*conditions)
                .order_by(Run.start_date_utc.desc())
                .offset(offset)
                .limit(limit)
            ).all()
        return list(runs), total

    def get_by_external_id(self, user_id: str, strava_id: int) -> Optional[Run]:
        with Session(self.engine) as s:
            return s.exec(
                select(Run).where(Run.user_id == user_id, Run.strava_id == strava_id)
            ).first()

    def latest_start_date(self, user_id: str) -> Optional[datetime]:
        with Session(self.engine) as s:
            return s.exec(select(func.max(Run.start_date_utc)).where(Run.user_id == user_id)).one()

    def get_statistics(self, user_id: str) -> Dict[str, Any]:
        with Session(self.engine) as s:
            total, distance, moving, earliest, latest = s.exec(
                select(
                    func.count(Run.id),
                    func.coalesce(func.sum(Run.distance_meters), 0.0),
                    func.coalesce(func.sum(Run.moving_time_seconds), 0),
                    func.min(Run.start_date_utc),
                    func.max(Run.start_date_utc),
                ).where(Run.user_id == user_id)
            ).one()
            weather = s.exec(
                select(func.count(Run.id)).where(Run.user_id == user_id, Run.weather_enriched == True)  # noqa: E712
            ).one()
            geocoded = s.exec(
                select(func.count(Run.id)).where(Run.user_id == user_id, Run.geocoding_enriched == True)  # noqa: E712
            ).one()

        return {
            "total_runs": total,
            "weather_enriched": weather,
            "geocoded": geocoded,
            "weather_coverage_percent": round(100.0 * weather / total, 1) if total else 0.0,
            "total_distance_meters": float(distance),
            "total_moving_time_seconds": int(moving),
            "earliest_run": earliest,
            "latest_run": latest,
        }

    def validate_integrity(self, user_id: str, sample_size: int = 100) -> Dict[str, Any]:
        """Re-validate the most recent `sample_size` stored runs."""
        with Session(self.engine) as s:
            rows = s.exec(
                select(Run)
                .where(Run.user_id == user_id)
                .order_by(Run.start_date_utc.desc())
                .limit(sample_size)
            ).all()

        invalid = []
        for row in rows:
            problems = validate_enriched_run(row)
            if problems:
                invalid.append({"strava_id": row.strava_id, "problems": problems})
        if invalid:
            logger.warning("Integrity check found %d invalid runs for user %s", len(invalid), user_id)
        return {
            "checked": len(rows),
            "valid": len(rows) - len(invalid),
            "invalid": invalid,
        }

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _store_with_retry(self, run: EnrichedRun) -> StoreOutcome:
        return await with_retry(
            lambda: self.store_one(run),
            phase=SyncPhase.STORING,
            policy=self.retry_policy,
            sleep=self._sleep,
            description=f"store run {run.strava_id}",
        )
