"""Shared test fixtures."""
import copy
import json
from pathlib import Path
from typing import Generator

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from runsync.models.run import Run  # noqa: F401
from runsync.models.sync import SyncSession  # noqa: F401
from runsync.models.token import StravaToken  # noqa: F401
from runsync.config import Settings

FIXTURES_DIR = Path(__file__).parent / "fixtures"

RAW_ACTIVITY = json.loads((FIXTURES_DIR / "strava_activity.json").read_text())
WEATHER_RESPONSE = json.loads((FIXTURES_DIR / "openweather_timemachine.json").read_text())
GEOCODE_RESPONSE = json.loads((FIXTURES_DIR / "openweather_reverse.json").read_text())


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="settings")
def settings_fixture() -> Settings:
    """Settings with real limits but no delays, so tests don't sleep."""
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        strava_client_id="12345",
        strava_client_secret="secret",
        openweather_api_key="owm-key",
        page_delay_seconds=0,
        enrich_record_delay_seconds=0,
        enrich_batch_delay_seconds=0,
        store_batch_delay_seconds=0,
    )


@pytest.fixture(name="make_raw")
def make_raw_fixture():
    """Factory for raw Strava activity dicts based on the captured fixture."""

    def _make(activity_id: int = 1, **overrides) -> dict:
        raw = copy.deepcopy(RAW_ACTIVITY)
        raw["id"] = activity_id
        raw["name"] = f"Run {activity_id}"
        raw.update(overrides)
        return raw

    return _make


@pytest.fixture(name="weather_response")
def weather_response_fixture() -> dict:
    return copy.deepcopy(WEATHER_RESPONSE)


@pytest.fixture(name="geocode_response")
def geocode_response_fixture() -> list:
    return copy.deepcopy(GEOCODE_RESPONSE)
