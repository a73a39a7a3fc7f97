"""Tests for Strava/OpenWeather normalization and validation."""
from datetime import datetime

import pytest

from runsync.strava.normalizer import (
    add_derived_metrics,
    apply_geocoding,
    apply_weather,
    parse_strava_datetime,
    sanitize_coordinate,
    sanitize_number,
    sanitize_string,
    transform_to_enriched_run,
    validate_enriched_run,
    validate_raw_activity,
)
from runsync.sync.errors import DataValidationError


class TestSanitizers:
    def test_string_trimmed_and_truncated(self):
        assert sanitize_string("  hello  ") == "hello"
        assert sanitize_string("x" * 600) == "x" * 500
        assert sanitize_string("   ") is None
        assert sanitize_string(42) is None

    def test_number_clamped(self):
        assert sanitize_number(300, 30, 250) == 250
        assert sanitize_number(-5, 0) == 0
        assert sanitize_number("12.5") == 12.5

    def test_number_rejects_nan_and_garbage(self):
        assert sanitize_number(float("nan")) is None
        assert sanitize_number(float("inf")) is None
        assert sanitize_number("abc") is None
        assert sanitize_number(True) is None

    def test_coordinate_bounds(self):
        assert sanitize_coordinate(95, is_latitude=True) == 90
        assert sanitize_coordinate(-200, is_latitude=False) == -180


class TestParseDatetime:
    def test_z_suffix_is_utc(self):
        assert parse_strava_datetime("2024-01-15T07:30:00Z") == datetime(2024, 1, 15, 7, 30)

    def test_offset_converted_to_utc(self):
        assert parse_strava_datetime("2024-01-15T08:30:00+01:00") == datetime(2024, 1, 15, 7, 30)

    def test_garbage_raises(self):
        with pytest.raises(ValueError):
            parse_strava_datetime("yesterday")


class TestValidateRawActivity:
    def test_fixture_is_valid(self, make_raw):
        validate_raw_activity(make_raw(1))

    def test_missing_fields_all_reported(self, make_raw):
        raw = make_raw(1)
        del raw["name"]
        raw["distance"] = -1
        raw["start_date"] = "not a date"
        with pytest.raises(DataValidationError) as info:
            validate_raw_activity(raw)
        assert set(info.value.fields) == {"name", "distance", "start_date"}
        assert info.value.retryable is False

    def test_zero_id_rejected(self, make_raw):
        with pytest.raises(DataValidationError) as info:
            validate_raw_activity(make_raw(0))
        assert info.value.fields == ["id"]

    def test_out_of_range_heartrate(self, make_raw):
        with pytest.raises(DataValidationError) as info:
            validate_raw_activity(make_raw(1, average_heartrate=12))
        assert info.value.fields == ["average_heartrate"]

    def test_bad_coordinates(self, make_raw):
        with pytest.raises(DataValidationError) as info:
            validate_raw_activity(make_raw(1, start_latlng=[120.0, 2.0]))
        assert info.value.fields == ["start_latlng"]

    def test_empty_latlng_is_allowed(self, make_raw):
        validate_raw_activity(make_raw(1, start_latlng=[], end_latlng=None))

    def test_name_too_long(self, make_raw):
        with pytest.raises(DataValidationError):
            validate_raw_activity(make_raw(1, name="x" * 501))


class TestTransform:
    def test_field_mapping(self, make_raw):
        raw = make_raw(10234567890)
        run = transform_to_enriched_run(raw, user_id="athlete-1", sync_session_id="s-1")

        assert run.strava_id == 10234567890
        assert run.user_id == "athlete-1"
        assert run.sync_session_id == "s-1"
        assert run.distance_meters == pytest.approx(8046.7)
        assert run.moving_time_seconds == 2400
        assert run.elapsed_time_seconds == 2460
        assert run.start_date_utc == datetime(2024, 1, 15, 7, 30)
        assert run.start_date_local == datetime(2024, 1, 15, 8, 30)
        assert run.start_lat == pytest.approx(48.8566)
        assert run.end_lng == pytest.approx(2.3376)
        assert run.country == "France"
        assert run.city is None
        assert run.weather_enriched is False
        assert run.geocoding_enriched is False

    def test_raw_payload_kept_with_derived_metrics(self, make_raw):
        raw = make_raw(5)
        run = transform_to_enriched_run(raw, user_id="u")
        assert run.raw_data["kudos_count"] == 5
        # 2400s over 8.0467km
        assert run.raw_data["pace_seconds_per_km"] == 298
        assert run.raw_data["average_speed_kmh"] == pytest.approx(12.07)

    def test_no_coordinates(self, make_raw):
        run = transform_to_enriched_run(make_raw(1, start_latlng=[], end_latlng=[]), user_id="u")
        assert not run.has_coordinates

    def test_derived_metrics_skip_zero_distance(self, make_raw):
        run = transform_to_enriched_run(make_raw(1, distance=0, average_speed=0, max_speed=0), user_id="u")
        assert "pace_seconds_per_km" not in run.raw_data
        assert add_derived_metrics(run) is run


class TestApplyEnrichment:
    def test_weather_applied(self, make_raw, weather_response):
        run = transform_to_enriched_run(make_raw(1), user_id="u")
        assert apply_weather(run, weather_response) is True
        assert run.temperature_celsius == pytest.approx(3.4)
        assert run.humidity_percent == 87
        assert run.pressure_hpa == 1021
        assert run.wind_direction_degrees == 230
        assert run.weather_condition == "Clouds"
        assert run.weather_enriched is True

    def test_empty_weather_not_applied(self, make_raw):
        run = transform_to_enriched_run(make_raw(1), user_id="u")
        assert apply_weather(run, {"data": []}) is False
        assert run.weather_enriched is False

    def test_geocoding_applied(self, make_raw, geocode_response):
        run = transform_to_enriched_run(make_raw(1), user_id="u")
        assert apply_geocoding(run, geocode_response) is True
        assert (run.city, run.state, run.country) == ("Paris", "Ile-de-France", "FR")


class TestValidateEnrichedRun:
    def test_clean_record(self, make_raw, weather_response):
        run = transform_to_enriched_run(make_raw(1), user_id="u")
        apply_weather(run, weather_response)
        assert validate_enriched_run(run) == []

    def test_flags_inconsistent_weather(self, make_raw):
        run = transform_to_enriched_run(make_raw(1), user_id="u")
        run.weather_enriched = True
        run.humidity_percent = 140
        problems = validate_enriched_run(run)
        assert "humidity_percent out of range" in problems
        assert "weather flagged enriched but no temperature" in problems
