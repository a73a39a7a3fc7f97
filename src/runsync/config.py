from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./runsync.db"

    # Strava
    strava_client_id: str = ""
    strava_client_secret: str = ""
    strava_api_url: str = "https://www.strava.com/api/v3"
    strava_token_url: str = "https://www.strava.com/oauth/token"
    activity_types: List[str] = ["Run"]
    strava_short_limit: int = 100  # per 15 minutes until headers say otherwise
    strava_daily_limit: int = 1000
    strava_short_threshold: float = 0.8
    strava_daily_threshold: float = 0.9
    max_rate_limit_wait_seconds: float = 300.0

    # OpenWeatherMap
    openweather_api_key: str = ""
    openweather_url: str = "https://api.openweathermap.org"
    enable_geocoding: bool = True
    weather_minute_limit: int = 60
    weather_minute_threshold: int = 55
    weather_daily_limit: int = 1000
    weather_daily_threshold: int = 950

    # Retry / circuit breaker
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_multiplier: float = 2.0
    breaker_failure_threshold: int = 5
    breaker_recovery_seconds: float = 60.0

    # Batching
    page_size: int = 100
    max_pages: int = 50
    max_activities_per_sync: int = 1000
    enrich_batch_size: int = 10
    store_batch_size: int = 50
    page_delay_seconds: float = 0.1
    enrich_record_delay_seconds: float = 0.2
    enrich_batch_delay_seconds: float = 1.0
    store_batch_delay_seconds: float = 0.1

    # Session housekeeping
    stuck_session_minutes: int = 60
    session_retention_days: int = 7

    # Scheduler
    sync_hour: int = 3
    sync_user_ids: List[str] = []

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
