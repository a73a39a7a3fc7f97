"""
SyncStateManager: the persistent lifecycle of sync sessions.

Rules enforced here:
  - at most one non-terminal session per user; a session with no activity
    for `stuck_session_minutes` is considered stuck and is auto-cancelled
    when a new one is requested
  - phases only move forward (fetching -> enriching -> storing, enriching
    may be skipped); staying in the same phase is allowed
  - every mutation stamps last_activity_at, which is what stuck detection
    reads
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlmodel import Session, select

from runsync.config import Settings, get_settings
from runsync.models.sync import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    Checkpoint,
    SyncPhase,
    SyncSession,
    SyncStatus,
    SyncType,
    utcnow,
)
from runsync.sync.errors import SessionNotFoundError, SyncError, SyncStateError

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    SyncPhase.FETCHING: {SyncPhase.FETCHING, SyncPhase.ENRICHING, SyncPhase.STORING},
    SyncPhase.ENRICHING: {SyncPhase.ENRICHING, SyncPhase.STORING},
    SyncPhase.STORING: {SyncPhase.STORING},
}

_COUNTER_FIELDS = {
    "fetched": "activities_fetched",
    "enriched": "activities_enriched",
    "stored": "activities_stored",
    "failed": "activities_failed",
    "estimated": "total_activities_estimated",
}


class SyncStateManager:
    def __init__(
        self,
        engine,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.settings = settings or get_settings()
        self._clock = clock

    # ── Creation ─────────────────────────────────────────────────────────────

    def create_session(
        self,
        user_id: str,
        sync_type: SyncType = SyncType.FULL,
        time_range_start: Optional[datetime] = None,
        time_range_end: Optional[datetime] = None,
    ) -> SyncSession:
        """Create a new session, auto-cancelling stuck ones first.

        Raises:
            SyncStateError(SYNC_ALREADY_ACTIVE): a live session exists.
        """
        now = self._clock()
        with Session(self.engine) as s:
            active = s.exec(
                select(SyncSession).where(
                    SyncSession.user_id == user_id,
                    SyncSession.status.in_(ACTIVE_STATUSES),
                )
            ).all()
            live = [row for row in active if not self.is_stuck(row, now)]
            if live:
                raise SyncStateError(
                    f"Sync session {live[0].id} is already active for user {user_id}",
                    code="SYNC_ALREADY_ACTIVE",
                    context={"session_id": live[0].id, "status": live[0].status.value},
                )

            for stuck in active:
                logger.warning(
                    "Auto-cancelling stuck sync session %s (idle since %s)",
                    stuck.id,
                    stuck.last_activity_at,
                )
                stuck.status = SyncStatus.CANCELLED
                stuck.completed_at = now
                stuck.updated_at = now
                stuck.last_error = SyncStateError(
                    "Session made no progress and was cancelled",
                    code="SESSION_STUCK",
                ).to_dict()
                s.add(stuck)

            session = SyncSession(
                user_id=user_id,
                sync_type=sync_type,
                time_range_start=time_range_start,
                time_range_end=time_range_end,
                started_at=now,
                last_activity_at=now,
                created_at=now,
                updated_at=now,
            )
            s.add(session)
            s.commit()
            s.refresh(session)

        logger.info("Created %s sync session %s for user %s", sync_type.value, session.id, user_id)
        return session

    def can_start_new_sync(self, user_id: str) -> Tuple[bool, Optional[str]]:
        now = self._clock()
        for row in self.get_active_sessions(user_id):
            if not self.is_stuck(row, now):
                return False, f"Sync session {row.id} is {row.status.value}"
        return True, None

    def is_stuck(self, session: SyncSession, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        threshold = timedelta(minutes=self.settings.stuck_session_minutes)
        return session.status in ACTIVE_STATUSES and now - session.last_activity_at > threshold

    # ── Reads ────────────────────────────────────────────────────────────────

    def get_session(self, session_id: str, user_id: Optional[str] = None) -> Optional[SyncSession]:
        with Session(self.engine) as s:
            row = s.get(SyncSession, session_id)
        if row is None or (user_id is not None and row.user_id != user_id):
            return None
        return row

    def require_session(self, session_id: str, user_id: Optional[str] = None) -> SyncSession:
        row = self.get_session(session_id, user_id)
        if row is None:
            raise SessionNotFoundError(
                f"Sync session {session_id} not found", context={"session_id": session_id}
            )
        return row

    def get_active_sessions(self, user_id: str) -> List[SyncSession]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncSession).where(
                        SyncSession.user_id == user_id,
                        SyncSession.status.in_(ACTIVE_STATUSES),
                    )
                ).all()
            )

    def get_checkpoint(self, session_id: str) -> Optional[Checkpoint]:
        return self.require_session(session_id).checkpoint

    def get_history(self, user_id: str, limit: int = 10, offset: int = 0) -> List[SyncSession]:
        with Session(self.engine) as s:
            return list(
                s.exec(
                    select(SyncSession)
                    .where(SyncSession.user_id == user_id)
                    .order_by(SyncSession.started_at.desc())
                    .offset(offset)
                    .limit(limit)
                ).all()
            )

    def get_statistics(self, user_id: str) -> Dict[str, Any]:
        """Counts and average duration over sessions that got past initiated."""
        with Session(self.engine) as s:
            rows = s.exec(
                select(SyncSession).where(
                    SyncSession.user_id == user_id,
                    SyncSession.status != SyncStatus.INITIATED,
                )
            ).all()

        finished = [r for r in rows if r.completed_at is not None]
        durations = [(r.completed_at - r.started_at).total_seconds() / 60 for r in finished]
        return {
            "total_syncs": len(rows),
            "successful_syncs": sum(1 for r in rows if r.status == SyncStatus.COMPLETED),
            "failed_syncs": sum(1 for r in rows if r.status == SyncStatus.FAILED),
            "cancelled_syncs": sum(1 for r in rows if r.status == SyncStatus.CANCELLED),
            "average_duration_minutes": round(sum(durations) / len(durations), 2) if durations else 0.0,
            "last_sync_at": max((r.started_at for r in rows), default=None),
        }

    # ── Mutations ────────────────────────────────────────────────────────────

    def update_session(self, session_id: str, **changes: Any) -> SyncSession:
        def apply(row: SyncSession) -> None:
            for key, value in changes.items():
                setattr(row, key, value)

        return self._mutate(session_id, apply)

    def transition_phase(self, session_id: str, phase: SyncPhase) -> SyncSession:
        """Move the session to `phase`, which also becomes its status."""

        def apply(row: SyncSession) -> None:
            if row.status in TERMINAL_STATUSES:
                raise SyncStateError(
                    f"Session {row.id} is {row.status.value}; cannot enter {phase.value}",
                    context={"session_id": row.id},
                )
            if phase not in ALLOWED_TRANSITIONS[row.current_phase]:
                raise SyncStateError(
                    f"Invalid phase transition {row.current_phase.value} -> {phase.value}",
                    code="INVALID_PHASE_TRANSITION",
                    context={"session_id": row.id},
                )
            row.current_phase = phase
            row.status = SyncStatus(phase.value)

        session = self._mutate(session_id, apply)
        logger.info("Sync session %s entered %s", session_id, phase.value)
        return session

    def complete_session(self, session_id: str, **final_counts: int) -> SyncSession:
        """Mark the session completed. A session already terminal (cancelled
        while its last phase was finishing) keeps its status."""

        def apply(row: SyncSession) -> None:
            if row.status in TERMINAL_STATUSES:
                return
            _apply_counts(row, final_counts)
            row.status = SyncStatus.COMPLETED
            row.completed_at = self._clock()

        session = self._mutate(session_id, apply)
        if session.status != SyncStatus.COMPLETED:
            logger.info("Sync session %s already %s, not completing", session_id, session.status.value)
            return session
        logger.info(
            "Sync session %s completed: %d fetched, %d stored, %d failed",
            session_id,
            session.activities_fetched,
            session.activities_stored,
            session.activities_failed,
        )
        return session

    def fail_session(self, session_id: str, error: SyncError) -> SyncSession:
        def apply(row: SyncSession) -> None:
            row.status = SyncStatus.FAILED
            row.last_error = error.to_dict()
            row.error_count += 1
            row.completed_at = self._clock()

        session = self._mutate(session_id, apply)
        logger.error("Sync session %s failed: [%s] %s", session_id, error.code, error.message)
        return session

    def cancel_session(self, session_id: str) -> SyncSession:
        def apply(row: SyncSession) -> None:
            if row.status == SyncStatus.CANCELLED:
                return
            if row.status in TERMINAL_STATUSES:
                raise SyncStateError(
                    f"Session {row.id} already {row.status.value}",
                    context={"session_id": row.id},
                )
            row.status = SyncStatus.CANCELLED
            row.completed_at = self._clock()

        return self._mutate(session_id, apply)

    def reset_for_retry(self, session_id: str) -> SyncSession:
        """Put a failed session back to the start so it can run again."""

        def apply(row: SyncSession) -> None:
            if row.status != SyncStatus.FAILED:
                raise SyncStateError(
                    f"Only failed sessions can be resumed (session is {row.status.value})",
                    context={"session_id": row.id, "status": row.status.value},
                )
            row.status = SyncStatus.INITIATED
            row.current_phase = SyncPhase.FETCHING
            row.retry_count += 1
            row.completed_at = None
            row.last_error = None
            for column in _COUNTER_FIELDS.values():
                setattr(row, column, 0)

        return self._mutate(session_id, apply)

    def save_checkpoint(self, session_id: str, checkpoint: Checkpoint) -> SyncSession:
        def apply(row: SyncSession) -> None:
            row.checkpoint_data = checkpoint.model_dump(mode="json")
            row.last_successful_page = checkpoint.last_page

        return self._mutate(session_id, apply)

    def update_progress(self, session_id: str, **counts: int) -> SyncSession:
        """Set counters to absolute values: fetched=, enriched=, stored=, failed=, estimated=."""
        return self._mutate(session_id, lambda row: _apply_counts(row, counts))

    def increment_progress(self, session_id: str, **deltas: int) -> SyncSession:
        def apply(row: SyncSession) -> None:
            for key, delta in deltas.items():
                column = _COUNTER_FIELDS[key]
                setattr(row, column, getattr(row, column) + delta)

        return self._mutate(session_id, apply)

    def cleanup_old(self, user_id: str, retention_days: Optional[int] = None) -> int:
        """Delete finished sessions that completed more than `retention_days` ago."""
        days = self.settings.session_retention_days if retention_days is None else retention_days
        cutoff = self._clock() - timedelta(days=days)
        with Session(self.engine) as s:
            rows = s.exec(
                select(SyncSession).where(
                    SyncSession.user_id == user_id,
                    SyncSession.status.in_(TERMINAL_STATUSES),
                    SyncSession.completed_at < cutoff,
                )
            ).all()
            for row in rows:
                s.delete(row)
            s.commit()
        if rows:
            logger.info("Removed %d old sync sessions for user %s", len(rows), user_id)
        return len(rows)

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _mutate(self, session_id: str, apply: Callable[[SyncSession], None]) -> SyncSession:
        with Session(self.engine) as s:
            row = s.get(SyncSession, session_id)
            if row is None:
                raise SessionNotFoundError(
                    f"Sync session {session_id} not found", context={"session_id": session_id}
                )
            apply(row)
            now = self._clock()
            row.last_activity_at = now
            row.updated_at = now
            s.add(row)
            s.commit()
            s.refresh(row)
            return row


def _apply_counts(row: SyncSession, counts: Dict[str, int]) -> None:
    for key, value in counts.items():
        if value is not None:
            setattr(row, _COUNTER_FIELDS[key], value)
