"""
Integration tests for RunStore against in-memory SQLite.
"""
from datetime import datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import false
from sqlmodel import select

from runsync.models.run import Run
from runsync.storage import run_store as run_store_module
from runsync.storage.run_store import RunFilters, RunStore, StoreStatus
from runsync.strava.normalizer import transform_to_enriched_run
from runsync.sync.errors import DataValidationError, StorageError
from runsync.sync.resilience import RetryPolicy


@pytest.fixture
def store(engine, settings):
    return RunStore(engine, settings=settings, sleep=AsyncMock())


@pytest.fixture
def run_factory(make_raw):
    def _make(activity_id=1, user_id="u1", session_id=None, **overrides):
        return transform_to_enriched_run(make_raw(activity_id, **overrides), user_id, session_id)

    return _make


class TestStoreOne:
    async def test_insert_then_update_keeps_created_at(self, store, run_factory, test_session):
        first = await store.store_one(run_factory(1))
        assert first.status == StoreStatus.SAVED

        row = test_session.exec(select(Run)).one()
        created_at = row.created_at

        changed = run_factory(1, name="Renamed Run")
        second = await store.store_one(changed)
        assert second.status == StoreStatus.UPDATED
        assert second.run_id == first.run_id

        test_session.expire_all()
        rows = test_session.exec(select(Run)).all()
        assert len(rows) == 1
        assert rows[0].name == "Renamed Run"
        assert rows[0].created_at == created_at
        assert rows[0].updated_at >= created_at

    async def test_round_trip_fields(self, store, run_factory, test_session):
        await store.store_one(run_factory(7))
        row = test_session.exec(select(Run)).one()
        assert row.strava_id == 7
        assert row.distance_meters == pytest.approx(8046.7)
        assert row.moving_time_seconds == 2400
        assert row.start_date_utc == datetime(2024, 1, 15, 7, 30)
        assert row.raw_data["pace_seconds_per_km"] == 298
        assert row.enrichment_status == {"weather": False, "geocoding": False, "errors": []}

    async def test_same_strava_id_for_different_users(self, store, run_factory, test_session):
        await store.store_one(run_factory(1, user_id="a"))
        await store.store_one(run_factory(1, user_id="b"))
        assert len(test_session.exec(select(Run)).all()) == 2

    async def test_invalid_record_rejected(self, store, run_factory):
        run = run_factory(1)
        run.humidity_percent = 150
        with pytest.raises(DataValidationError):
            await store.store_one(run)

    async def test_unique_violation_counts_as_skipped(self, store, run_factory, monkeypatch):
        await store.store_one(run_factory(1))
        real_select = run_store_module.select
        # Make the existence check miss, as if another writer inserted in between
        monkeypatch.setattr(run_store_module, "select", lambda *a: real_select(*a).where(false()))

        outcome = await store.store_one(run_factory(1))
        assert outcome.status == StoreStatus.SKIPPED


class TestStoreBatch:
    async def test_resync_creates_no_new_rows(self, store, run_factory, test_session):
        runs = [run_factory(i) for i in range(1, 6)]
        first = await store.store_batch(runs, batch_size=2)
        assert (first.saved, first.updated) == (5, 0)

        second = await store.store_batch([run_factory(i) for i in range(1, 6)], batch_size=2)
        assert (second.saved, second.updated) == (0, 5)
        assert len(test_session.exec(select(Run)).all()) == 5

    async def test_failures_do_not_abort_batch(self, store, run_factory):
        runs = [run_factory(i) for i in range(1, 11)]
        for run in runs[:2]:
            run.pressure_hpa = 5000  # out of range -> validation failure
        progress = []

        async def on_progress(done, total, result):
            progress.append((done, total, result.stored))

        result = await store.store_batch(runs, batch_size=4, on_progress=on_progress)

        assert result.saved == 8
        assert result.failed == 2
        assert {d["strava_id"] for d in result.failed_details} == {1, 2}
        assert result.failed_details[0]["error"]["kind"] == "validation"
        assert result.failed_details[0]["error"]["context"]["strava_id"] == 1
        assert result.errors.summary() == {"total": 2, "retryable": 0, "by_kind": {"validation": 2}}
        assert progress == [(4, 10, 2), (8, 10, 6), (10, 10, 8)]

    async def test_transient_storage_error_retried(self, store, run_factory, monkeypatch):
        real_store_one = store.store_one
        attempts = {"n": 0}

        async def flaky(run):
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise StorageError("database is locked")
            return await real_store_one(run)

        monkeypatch.setattr(store, "store_one", flaky)
        result = await store.store_batch([run_factory(1)])
        assert result.saved == 1
        assert attempts["n"] == 2

    async def test_persistent_storage_error_counts_as_failed(self, engine, settings, run_factory, monkeypatch):
        store = RunStore(engine, settings=settings, retry_policy=RetryPolicy(max_retries=1), sleep=AsyncMock())
        monkeypatch.setattr(store, "store_one", AsyncMock(side_effect=StorageError("disk full")))
        result = await store.store_batch([run_factory(1), run_factory(2)])
        assert result.failed == 2
        assert store.store_one.await_count == 4


class TestQueries:
    async def _seed(self, store, run_factory):
        dates = ["2024-01-10T07:00:00Z", "2024-02-10T07:00:00Z", "2024-03-10T07:00:00Z"]
        for i, start in enumerate(dates, start=1):
            await store.store_one(
                run_factory(i, session_id="s1" if i < 3 else "s2", start_date=start, start_date_local=start)
            )

    async def test_query_filters_and_paging(self, store, run_factory):
        await self._seed(store, run_factory)

        runs, total = store.query("u1", limit=2)
        assert total == 3
        assert [r.strava_id for r in runs] == [3, 2]

        runs, total = store.query("u1", RunFilters(start_date=datetime(2024, 2, 1)))
        assert total == 2

        runs, total = store.query("u1", RunFilters(sync_session_id="s2"))
        assert [r.strava_id for r in runs] == [3]

        _, total = store.query("someone-else")
        assert total == 0

    async def test_statistics(self, store, run_factory):
        await self._seed(store, run_factory)
        stats = store.get_statistics("u1")
        assert stats["total_runs"] == 3
        assert stats["weather_enriched"] == 0
        assert stats["total_moving_time_seconds"] == 7200
        assert stats["earliest_run"] == datetime(2024, 1, 10, 7)
        assert stats["latest_run"] == datetime(2024, 3, 10, 7)

    async def test_statistics_empty(self, store):
        stats = store.get_statistics("u1")
        assert stats["total_runs"] == 0
        assert stats["weather_coverage_percent"] == 0.0

    async def test_latest_start_date(self, store, run_factory):
        assert store.latest_start_date("u1") is None
        await self._seed(store, run_factory)
        assert store.latest_start_date("u1") == datetime(2024, 3, 10, 7)

    async def test_delete_and_cleanup(self, store, run_factory):
        await self._seed(store, run_factory)
        assert store.delete_by_external_ids("u1", [1]) == 1
        assert store.cleanup_older_than("u1", datetime(2024, 3, 1)) == 1
        _, total = store.query("u1")
        assert total == 1

    async def test_integrity_report(self, store, run_factory, test_session):
        await self._seed(store, run_factory)
        row = test_session.exec(select(Run).where(Run.strava_id == 2)).one()
        row.humidity_percent = 300
        test_session.add(row)
        test_session.commit()

        report = store.validate_integrity("u1", sample_size=10)
        assert report["checked"] == 3
        assert report["valid"] == 2
        assert report["invalid"][0]["strava_id"] == 2
