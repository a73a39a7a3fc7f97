"""
Weather and location enrichment via OpenWeatherMap.

For each run with start coordinates and a start time:
  1. One Call 3.0 timemachine -> temperature, humidity, wind... at start time
  2. Reverse geocoding (only when the run has no city) -> city/state/country

Enrichment is best-effort. A failed lookup is recorded on the run's
enrichment_errors and never stops the batch or the sync.

Free-tier budgets: 60 calls/minute, 1000 calls/day. The ledger acts at
55/minute (waits for the next minute) and 950/day (stops enriching).
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from runsync.config import Settings, get_settings
from runsync.models.run import EnrichedRun
from runsync.models.sync import SyncPhase
from runsync.strava.client import to_epoch
from runsync.strava.normalizer import apply_geocoding, apply_weather
from runsync.sync.errors import classify, error_for_status
from runsync.sync.ratelimit import RateLimitLedger
from runsync.sync.resilience import CircuitBreaker

logger = logging.getLogger(__name__)

MINUTE_SECONDS = 60
REQUEST_TIMEOUT_SECONDS = 15.0

MISSING_INPUTS_REASON = "Missing GPS coordinates or date"
NO_WEATHER_REASON = "No weather data available"
NO_GEOCODING_REASON = "No geocoding data available"
BUDGET_EXHAUSTED_REASON = "Weather API daily budget exhausted"


@dataclass
class EnrichmentResult:
    records: List[EnrichedRun]
    weather_enriched: int = 0
    geocoded: int = 0
    skipped: int = 0
    failed: int = 0
    stopped_early: bool = False

    @property
    def processed(self) -> int:
        return len(self.records)


ProgressCallback = Callable[[int, int], Awaitable[None]]


class WeatherEnricher:
    """Adds weather and place names to runs, within the OpenWeather budget."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http: Optional[httpx.AsyncClient] = None,
        ledger: Optional[RateLimitLedger] = None,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self._http = http
        self._sleep = sleep
        s = self.settings
        self.ledger = ledger or RateLimitLedger(
            "openweather",
            short_limit=s.weather_minute_limit,
            short_window_seconds=MINUTE_SECONDS,
            daily_limit=s.weather_daily_limit,
            short_threshold=s.weather_minute_threshold / s.weather_minute_limit,
            daily_threshold=s.weather_daily_threshold / s.weather_daily_limit,
            max_wait_seconds=MINUTE_SECONDS,
            sleep=sleep,
        )
        self.breaker = breaker or CircuitBreaker(
            "openweather",
            failure_threshold=s.breaker_failure_threshold,
            recovery_timeout=s.breaker_recovery_seconds,
        )

    # ── Availability ─────────────────────────────────────────────────────────

    def is_available(self) -> bool:
        return (
            bool(self.settings.openweather_api_key)
            and self.ledger.remaining_daily() > 0
            and not self.breaker.is_open
        )

    def estimate_capacity(self) -> Dict[str, int]:
        """How many more runs can be enriched today."""
        remaining_today = self.ledger.remaining_daily()
        calls_per_record = 2 if self.settings.enable_geocoding else 1
        return {
            "remaining_today": remaining_today,
            "remaining_this_minute": self.ledger.remaining_short(),
            "estimated_records": remaining_today // calls_per_record,
        }

    # ── Upstream calls ───────────────────────────────────────────────────────

    async def get_historical_weather(self, lat: float, lon: float, timestamp: int) -> Dict[str, Any]:
        return await self._get_json(
            "/data/3.0/onecall/timemachine",
            {"lat": lat, "lon": lon, "dt": timestamp, "units": "metric"},
        )

    async def reverse_geocode(self, lat: float, lon: float) -> List[Dict[str, Any]]:
        return await self._get_json("/geo/1.0/reverse", {"lat": lat, "lon": lon, "limit": 1})

    # ── Enrichment ───────────────────────────────────────────────────────────

    async def enrich_one(self, run: EnrichedRun) -> EnrichedRun:
        """Enrich a single run in place. Never raises for upstream failures."""
        if not run.has_coordinates or run.start_date_utc is None:
            run.weather_enriched = False
            run.geocoding_enriched = False
            _note(run, MISSING_INPUTS_REASON)
            return run

        try:
            data = await self.get_historical_weather(
                run.start_lat, run.start_lng, to_epoch(run.start_date_utc)
            )
            if not apply_weather(run, data):
                _note(run, NO_WEATHER_REASON)
        except Exception as exc:
            error = classify(exc, SyncPhase.ENRICHING)
            logger.warning("Weather lookup failed for run %s: %s", run.strava_id, error.message)
            _note(run, f"Weather: {error.message}")

        if self.settings.enable_geocoding and not run.city:
            try:
                places = await self.reverse_geocode(run.start_lat, run.start_lng)
                if not apply_geocoding(run, places):
                    _note(run, NO_GEOCODING_REASON)
            except Exception as exc:
                error = classify(exc, SyncPhase.ENRICHING)
                logger.warning("Geocoding failed for run %s: %s", run.strava_id, error.message)
                _note(run, f"Geocoding: {error.message}")
        return run

    async def enrich_batch(
        self,
        runs: List[EnrichedRun],
        batch_size: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> EnrichmentResult:
        """Enrich runs in fixed-size batches.

        Runs within a batch are started concurrently, each delayed a little
        more than the previous one; batches are separated by a longer pause.
        When the daily budget runs out the remaining runs are left
        unenriched with a note. `on_progress(done, total)` is awaited after
        each batch and may raise to stop.
        """
        batch_size = batch_size or self.settings.enrich_batch_size
        total = len(runs)
        result = EnrichmentResult(records=runs)

        for start in range(0, total, batch_size):
            if self.ledger.remaining_daily() == 0:
                for run in runs[start:]:
                    _note(run, BUDGET_EXHAUSTED_REASON)
                result.stopped_early = True
                logger.warning(
                    "Weather budget exhausted; %d runs left unenriched", total - start
                )
                break

            batch = runs[start:start + batch_size]
            await asyncio.gather(*(self._staggered(run, i) for i, run in enumerate(batch)))

            done = min(start + batch_size, total)
            if on_progress is not None:
                await on_progress(done, total)
            if done < total and self.settings.enrich_batch_delay_seconds:
                await self._sleep(self.settings.enrich_batch_delay_seconds)

        for run in runs:
            if not run.has_coordinates:
                result.skipped += 1
            if run.weather_enriched:
                result.weather_enriched += 1
            if run.geocoding_enriched:
                result.geocoded += 1
            if run.has_coordinates and not run.weather_enriched:
                result.failed += 1
        logger.info(
            "Enriched %d/%d runs with weather, %d geocoded, %d skipped",
            result.weather_enriched,
            total,
            result.geocoded,
            result.skipped,
        )
        return result

    # ─── Internal helpers ─────────────────────────────────────────────────────

    async def _staggered(self, run: EnrichedRun, index: int) -> EnrichedRun:
        delay = index * self.settings.enrich_record_delay_seconds
        if delay:
            await self._sleep(delay)
        return await self.enrich_one(run)

    async def _get_json(self, path: str, params: Dict[str, Any]) -> Any:
        await self.ledger.acquire(SyncPhase.ENRICHING)
        return await self.breaker.call(lambda: self._request(path, params), SyncPhase.ENRICHING)

    async def _request(self, path: str, params: Dict[str, Any]) -> Any:
        url = f"{self.settings.openweather_url}{path}"
        params = {**params, "appid": self.settings.openweather_api_key}
        try:
            if self._http is not None:
                response = await self._http.get(url, params=params)
            else:
                async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS) as client:
                    response = await client.get(url, params=params)
        except httpx.HTTPError as exc:
            raise classify(exc, SyncPhase.ENRICHING) from exc
        finally:
            self.ledger.record_call()

        if response.status_code != 200:
            raise error_for_status(
                response.status_code, service="OpenWeather", phase=SyncPhase.ENRICHING
            )
        return response.json()


def _note(run: EnrichedRun, message: str) -> None:
    # reassign so SQLAlchemy sees the JSON column change
    run.enrichment_errors = [*run.enrichment_errors, message]
