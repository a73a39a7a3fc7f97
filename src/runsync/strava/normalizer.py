"""
Strava and OpenWeather response normalizer.

Validates raw Strava activity dicts and converts them into EnrichedRun
records. Also maps OpenWeather timemachine and reverse-geocoding responses
onto an existing record. No HTTP or DB access here; the clients and the
store handle I/O.

Strava list items look like:
    {"id": 123, "name": "Morning Run", "type": "Run", "distance": 8046.7,
     "moving_time": 2400, "elapsed_time": 2460,
     "start_date": "2024-01-15T07:30:00Z",
     "start_date_local": "2024-01-15T08:30:00Z",
     "timezone": "(GMT+01:00) Europe/Paris",
     "start_latlng": [48.85, 2.35], "end_latlng": [48.86, 2.34], ...}

start_date_local carries a "Z" suffix but is wall-clock local time, so it is
stored naive without conversion.
"""
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from runsync.models.run import EnrichedRun
from runsync.sync.errors import DataValidationError

MAX_NAME_LENGTH = 500
MAX_TYPE_LENGTH = 50
MAX_PLACE_LENGTH = 100
MIN_HEARTRATE = 30
MAX_HEARTRATE = 250

# Sanity ranges for weather values
TEMPERATURE_RANGE = (-50.0, 60.0)
HUMIDITY_RANGE = (0.0, 100.0)
PRESSURE_RANGE = (800.0, 1200.0)
WIND_DIRECTION_RANGE = (0.0, 360.0)


# ─── Sanitizers ───────────────────────────────────────────────────────────────


def sanitize_string(value: Any, max_length: int = MAX_NAME_LENGTH) -> Optional[str]:
    """Trimmed, truncated string, or None for non-strings and blanks."""
    if not isinstance(value, str):
        return None
    value = value.strip()[:max_length]
    return value or None


def sanitize_number(
    value: Any,
    min_value: Optional[float] = None,
    max_value: Optional[float] = None,
) -> Optional[float]:
    """Finite float clamped to [min_value, max_value]; None if not numeric."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    if min_value is not None and number < min_value:
        return min_value
    if max_value is not None and number > max_value:
        return max_value
    return number


def sanitize_coordinate(value: Any, is_latitude: bool) -> Optional[float]:
    bound = 90.0 if is_latitude else 180.0
    return sanitize_number(value, -bound, bound)


# ─── Parsing helpers ──────────────────────────────────────────────────────────


def parse_strava_datetime(value: Any) -> datetime:
    """Parse a Strava ISO-8601 timestamp to a naive UTC datetime.

    Raises ValueError for anything that isn't a parseable string.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"not a timestamp: {value!r}")
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _parse_local_datetime(value: Any) -> datetime:
    """Wall-clock local time: drop the (misleading) offset instead of converting."""
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"not a timestamp: {value!r}")
    s = value.strip()
    if s.endswith("Z"):
        s = s[:-1]
    return datetime.fromisoformat(s).replace(tzinfo=None)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _latlng(value: Any) -> Optional[Sequence[float]]:
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return value
    return None


# ─── Validation ───────────────────────────────────────────────────────────────


def validate_raw_activity(raw: Dict[str, Any]) -> None:
    """Check a raw Strava activity dict, collecting every violation.

    Raises:
        DataValidationError listing every offending field. A record is
        either fully accepted or rejected.
    """
    errors: List[str] = []
    fields: List[str] = []

    def fail(field: str, reason: str) -> None:
        fields.append(field)
        errors.append(f"{field}: {reason}")

    if not isinstance(raw, dict):
        raise DataValidationError("Activity payload is not an object", fields=["activity"])

    activity_id = raw.get("id")
    if not isinstance(activity_id, int) or isinstance(activity_id, bool) or activity_id < 1:
        fail("id", "must be a positive integer")

    name = raw.get("name")
    if not isinstance(name, str) or not 1 <= len(name) <= MAX_NAME_LENGTH:
        fail("name", f"must be 1-{MAX_NAME_LENGTH} characters")

    activity_type = raw.get("type")
    if not isinstance(activity_type, str) or not 1 <= len(activity_type) <= MAX_TYPE_LENGTH:
        fail("type", f"must be 1-{MAX_TYPE_LENGTH} characters")

    for field in ("distance", "moving_time", "elapsed_time"):
        value = raw.get(field)
        if not _is_number(value) or value < 0:
            fail(field, "must be a non-negative number")

    for field in ("start_date", "start_date_local"):
        try:
            parse_strava_datetime(raw.get(field))
        except ValueError:
            fail(field, "must be an ISO-8601 timestamp")

    # Optional fields: validated only when present
    for field in ("start_latlng", "end_latlng"):
        value = raw.get(field)
        if value in (None, []):
            continue
        pair = _latlng(value)
        if (
            pair is None
            or not all(_is_number(v) for v in pair)
            or not -90 <= pair[0] <= 90
            or not -180 <= pair[1] <= 180
        ):
            fail(field, "must be [lat, lng] within +/-90, +/-180")

    for field in ("average_speed", "max_speed", "total_elevation_gain"):
        value = raw.get(field)
        if value is not None and (not _is_number(value) or value < 0):
            fail(field, "must be a non-negative number")

    for field in ("average_heartrate", "max_heartrate"):
        value = raw.get(field)
        if value is not None and (
            not _is_number(value) or not MIN_HEARTRATE <= value <= MAX_HEARTRATE
        ):
            fail(field, f"must be between {MIN_HEARTRATE} and {MAX_HEARTRATE} bpm")

    if errors:
        raise DataValidationError(
            f"Invalid activity {raw.get('id')!r}: " + "; ".join(errors),
            fields=fields,
            context={"strava_id": raw.get("id")},
        )


def validate_enriched_run(run: EnrichedRun) -> List[str]:
    """Re-check a stored or in-memory record. Returns a list of problems."""
    problems: List[str] = []
    if not run.user_id:
        problems.append("missing user_id")
    if not run.strava_id or run.strava_id < 1:
        problems.append("invalid strava_id")
    if not run.name or len(run.name) > MAX_NAME_LENGTH:
        problems.append("invalid name")
    if not run.activity_type or len(run.activity_type) > MAX_TYPE_LENGTH:
        problems.append("invalid activity_type")
    for field in ("distance_meters", "moving_time_seconds", "elapsed_time_seconds"):
        value = getattr(run, field)
        if value is None or value < 0:
            problems.append(f"invalid {field}")
    if run.start_date_utc is None:
        problems.append("missing start_date_utc")
    if run.start_date_local is None:
        problems.append("missing start_date_local")
    for lat_field, lng_field in (("start_lat", "start_lng"), ("end_lat", "end_lng")):
        lat, lng = getattr(run, lat_field), getattr(run, lng_field)
        if lat is not None and not -90 <= lat <= 90:
            problems.append(f"invalid {lat_field}")
        if lng is not None and not -180 <= lng <= 180:
            problems.append(f"invalid {lng_field}")
    for field in ("average_heartrate", "max_heartrate"):
        value = getattr(run, field)
        if value is not None and not MIN_HEARTRATE <= value <= MAX_HEARTRATE:
            problems.append(f"invalid {field}")
    problems.extend(validate_weather_snapshot(run))
    if run.weather_enriched and run.temperature_celsius is None:
        problems.append("weather flagged enriched but no temperature")
    return problems


def validate_weather_snapshot(run: EnrichedRun) -> List[str]:
    problems = []
    checks = (
        ("temperature_celsius", TEMPERATURE_RANGE),
        ("feels_like_celsius", TEMPERATURE_RANGE),
        ("humidity_percent", HUMIDITY_RANGE),
        ("pressure_hpa", PRESSURE_RANGE),
        ("wind_direction_degrees", WIND_DIRECTION_RANGE),
    )
    for field, (low, high) in checks:
        value = getattr(run, field)
        if value is not None and not low <= value <= high:
            problems.append(f"{field} out of range")
    if run.wind_speed_ms is not None and run.wind_speed_ms < 0:
        problems.append("wind_speed_ms out of range")
    return problems


# ─── Transformation ───────────────────────────────────────────────────────────


def transform_to_enriched_run(
    raw: Dict[str, Any],
    user_id: str,
    sync_session_id: Optional[str] = None,
) -> EnrichedRun:
    """Map a validated Strava activity onto an EnrichedRun.

    The full raw payload is kept on raw_data. Enrichment flags start False.
    """
    start = _latlng(raw.get("start_latlng")) or (None, None)
    end = _latlng(raw.get("end_latlng")) or (None, None)

    run = EnrichedRun(
        user_id=user_id,
        strava_id=raw["id"],
        name=sanitize_string(raw.get("name")) or "Unnamed Activity",
        activity_type=sanitize_string(raw.get("type"), MAX_TYPE_LENGTH) or "Run",
        distance_meters=sanitize_number(raw.get("distance"), 0) or 0.0,
        moving_time_seconds=int(sanitize_number(raw.get("moving_time"), 0) or 0),
        elapsed_time_seconds=int(sanitize_number(raw.get("elapsed_time"), 0) or 0),
        start_date_utc=parse_strava_datetime(raw.get("start_date")),
        start_date_local=_parse_local_datetime(raw.get("start_date_local")),
        timezone=sanitize_string(raw.get("timezone"), MAX_PLACE_LENGTH),
        start_lat=sanitize_coordinate(start[0], is_latitude=True),
        start_lng=sanitize_coordinate(start[1], is_latitude=False),
        end_lat=sanitize_coordinate(end[0], is_latitude=True),
        end_lng=sanitize_coordinate(end[1], is_latitude=False),
        city=sanitize_string(raw.get("location_city"), MAX_PLACE_LENGTH),
        state=sanitize_string(raw.get("location_state"), MAX_PLACE_LENGTH),
        country=sanitize_string(raw.get("location_country"), MAX_PLACE_LENGTH),
        average_speed=sanitize_number(raw.get("average_speed"), 0),
        max_speed=sanitize_number(raw.get("max_speed"), 0),
        average_heartrate=sanitize_number(raw.get("average_heartrate"), MIN_HEARTRATE, MAX_HEARTRATE),
        max_heartrate=sanitize_number(raw.get("max_heartrate"), MIN_HEARTRATE, MAX_HEARTRATE),
        total_elevation_gain=sanitize_number(raw.get("total_elevation_gain"), 0),
        raw_data=dict(raw),
        sync_session_id=sync_session_id,
    )
    return add_derived_metrics(run)


def add_derived_metrics(run: EnrichedRun) -> EnrichedRun:
    """Add pace (s/km) and km/h speeds to raw_data."""
    derived: Dict[str, float] = {}
    if run.distance_meters > 0 and run.moving_time_seconds > 0:
        derived["pace_seconds_per_km"] = round(run.moving_time_seconds / (run.distance_meters / 1000))
    if run.average_speed:
        derived["average_speed_kmh"] = round(run.average_speed * 3.6, 2)
    if run.max_speed:
        derived["max_speed_kmh"] = round(run.max_speed * 3.6, 2)
    if derived:
        run.raw_data = {**run.raw_data, **derived}
    return run


# ─── Enrichment responses ────────────────────────────────────────────────────


def apply_weather(run: EnrichedRun, response: Dict[str, Any]) -> bool:
    """Copy an OpenWeather timemachine response onto the run.

    Returns True when a data point was found and applied.
    """
    points = (response or {}).get("data") or []
    if not points:
        return False
    point = points[0]
    conditions = point.get("weather") or [{}]
    primary = conditions[0] or {}

    run.temperature_celsius = sanitize_number(point.get("temp"), *TEMPERATURE_RANGE)
    run.feels_like_celsius = sanitize_number(point.get("feels_like"), *TEMPERATURE_RANGE)
    run.humidity_percent = sanitize_number(point.get("humidity"), *HUMIDITY_RANGE)
    run.pressure_hpa = sanitize_number(point.get("pressure"), *PRESSURE_RANGE)
    run.wind_speed_ms = sanitize_number(point.get("wind_speed"), 0)
    run.wind_direction_degrees = sanitize_number(point.get("wind_deg"), *WIND_DIRECTION_RANGE)
    run.weather_condition = sanitize_string(primary.get("main"), MAX_TYPE_LENGTH)
    run.weather_description = sanitize_string(primary.get("description"), MAX_PLACE_LENGTH)
    run.visibility_meters = sanitize_number(point.get("visibility"), 0)
    run.uv_index = sanitize_number(point.get("uvi"), 0)
    run.weather_enriched = run.temperature_celsius is not None
    return run.weather_enriched


def apply_geocoding(run: EnrichedRun, response: List[Dict[str, Any]]) -> bool:
    """Fill city/state/country from a reverse-geocoding response."""
    if not response:
        return False
    place = response[0]
    run.city = sanitize_string(place.get("name"), MAX_PLACE_LENGTH) or run.city
    run.state = sanitize_string(place.get("state"), MAX_PLACE_LENGTH) or run.state
    run.country = sanitize_string(place.get("country"), MAX_PLACE_LENGTH) or run.country
    run.geocoding_enriched = True
    return True
