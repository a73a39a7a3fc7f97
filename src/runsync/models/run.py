"""Run models: the enriched record shape and its persisted table."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, UniqueConstraint
from sqlmodel import Field, SQLModel

from runsync.models.sync import utcnow


class EnrichedRun(SQLModel):
    """One validated Strava activity plus weather and location enrichment.

    Built in memory by the transformer, mutated by the enricher and
    persisted as a Run row by the store.
    """

    user_id: str = Field(index=True)
    strava_id: int = Field(index=True)
    name: str
    activity_type: str = "Run"

    distance_meters: float
    moving_time_seconds: int
    elapsed_time_seconds: int
    start_date_utc: datetime = Field(index=True)
    start_date_local: datetime
    timezone: Optional[str] = None

    # Location
    start_lat: Optional[float] = None
    start_lng: Optional[float] = None
    end_lat: Optional[float] = None
    end_lng: Optional[float] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None

    # Performance
    average_speed: Optional[float] = None  # m/s
    max_speed: Optional[float] = None
    average_heartrate: Optional[float] = None
    max_heartrate: Optional[float] = None
    total_elevation_gain: Optional[float] = None

    # Weather at start time
    temperature_celsius: Optional[float] = None
    feels_like_celsius: Optional[float] = None
    humidity_percent: Optional[float] = None
    pressure_hpa: Optional[float] = None
    wind_speed_ms: Optional[float] = None
    wind_direction_degrees: Optional[float] = None
    weather_condition: Optional[str] = None
    weather_description: Optional[str] = None
    visibility_meters: Optional[float] = None
    uv_index: Optional[float] = None

    weather_enriched: bool = False
    geocoding_enriched: bool = False
    enrichment_errors: List[str] = Field(default_factory=list, sa_type=JSON)

    # Full provider payload, kept opaque
    raw_data: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    sync_session_id: Optional[str] = Field(default=None, index=True)

    @property
    def has_coordinates(self) -> bool:
        return self.start_lat is not None and self.start_lng is not None

    @property
    def has_location(self) -> bool:
        return bool(self.city or self.state or self.country)

    @property
    def enrichment_status(self) -> Dict[str, Any]:
        return {
            "weather": self.weather_enriched,
            "geocoding": self.geocoding_enriched,
            "errors": list(self.enrichment_errors),
        }


class Run(EnrichedRun, table=True):
    """One row per (user, Strava activity)."""

    __table_args__ = (UniqueConstraint("user_id", "strava_id", name="uq_run_user_strava"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
