"""
Capture real Strava and OpenWeather responses and save them as test fixtures.

Run on a machine whose database holds a Strava token for USER_ID (see
`python -m runsync connect`) and whose .env has OPENWEATHER_API_KEY:

    python scripts/capture_fixtures.py USER_ID

Outputs (overwrite tests/fixtures/):
    strava_activity.json           one run from GET /athlete/activities
    openweather_timemachine.json   One Call timemachine for that run's start
    openweather_reverse.json       reverse geocoding for that run's start

The normalizer and enricher tests read these so they follow real response
schemas, not hand-crafted guesses.
"""
import argparse
import asyncio
import json
import sys
from pathlib import Path

# Allow running from repo root without installing the package
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from runsync.db.engine import get_engine
from runsync.strava.auth import StravaAuth
from runsync.strava.client import StravaClient, to_epoch
from runsync.strava.normalizer import parse_strava_datetime
from runsync.sync.errors import SyncError, user_message
from runsync.weather.enricher import WeatherEnricher

FIXTURES_DIR = Path(__file__).parent.parent / "tests" / "fixtures"


def _save(name: str, data: object) -> None:
    path = FIXTURES_DIR / name
    path.write_text(json.dumps(data, indent=2, default=str))
    print(f"  Saved {path.relative_to(Path.cwd())} ({path.stat().st_size} bytes)")


async def capture(user_id: str) -> None:
    engine = get_engine()
    client = StravaClient(StravaAuth(engine))

    print("Fetching the most recent activities from Strava...")
    page = await client.fetch_page(user_id, page=1, page_size=30)
    runs = [r for r in page.records if r.get("start_latlng")]
    if not runs:
        print("No runs with GPS in the last 30 activities.")
        sys.exit(1)
    run = runs[0]
    print(f"  Using: {run.get('name', 'Unknown')} ({run['id']})\n")
    _save("strava_activity.json", run)

    enricher = WeatherEnricher()
    if not enricher.is_available():
        print("OPENWEATHER_API_KEY not set; skipping weather fixtures.")
        return
    lat, lng = run["start_latlng"]
    timestamp = to_epoch(parse_strava_datetime(run["start_date"]))
    _save("openweather_timemachine.json", await enricher.get_historical_weather(lat, lng, timestamp))
    _save("openweather_reverse.json", await enricher.reverse_geocode(lat, lng))

    print("\nAll fixtures saved to tests/fixtures/")
    print("Check the saved files for personal data (names, coordinates) before committing.")


def main() -> None:
    parser = argparse.ArgumentParser(description="Capture real Strava/OpenWeather fixtures")
    parser.add_argument("user_id", help="user whose stored Strava token is used")
    args = parser.parse_args()
    try:
        asyncio.run(capture(args.user_id))
    except SyncError as exc:
        print(f"Failed: {user_message(exc)} ({exc.code})")
        sys.exit(1)


if __name__ == "__main__":
    main()
