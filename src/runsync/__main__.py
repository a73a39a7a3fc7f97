"""
Command-line entrypoint.

Usage:
    python -m runsync sync USER_ID [--incremental] [--since 2024-01-01] [--until 2024-02-01] [--no-enrich]
    python -m runsync status SESSION_ID
    python -m runsync resume SESSION_ID
    python -m runsync cancel SESSION_ID
    python -m runsync history USER_ID [--limit 10]
    python -m runsync connect USER_ID REFRESH_TOKEN
    python -m runsync serve [--host 0.0.0.0] [--port 8000]   # API + nightly scheduler
"""
import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _print(data) -> None:
    print(json.dumps(data, indent=2, default=str))


def _date(value: str) -> datetime:
    return datetime.strptime(value, "%Y-%m-%d")


async def _run_sync(args) -> int:
    from runsync.db.engine import get_engine
    from runsync.models.sync import SyncStatus, SyncType
    from runsync.sync.orchestrator import SyncOptions, TimeRange, build_orchestrator

    orchestrator = build_orchestrator(get_engine())
    result = await orchestrator.sync_now(
        args.user_id,
        time_range=TimeRange(start=args.since, end=args.until),
        options=SyncOptions(enrich=not args.no_enrich, max_activities=args.max_activities),
        sync_type=SyncType.INCREMENTAL if args.incremental else None,
    )
    _print(orchestrator.get_sync_status(result.session_id))
    return 0 if result.status == SyncStatus.COMPLETED else 1


async def _run_resume(args) -> int:
    from runsync.db.engine import get_engine
    from runsync.models.sync import SyncStatus
    from runsync.sync.orchestrator import build_orchestrator

    orchestrator = build_orchestrator(get_engine())
    handle = await orchestrator.resume_sync(args.session_id)
    result = await handle.wait()
    _print(orchestrator.get_sync_status(result.session_id))
    return 0 if result.status == SyncStatus.COMPLETED else 1


def _run_status(args) -> int:
    from runsync.db.engine import get_engine
    from runsync.sync.orchestrator import build_orchestrator

    _print(build_orchestrator(get_engine()).get_sync_status(args.session_id))
    return 0


def _run_cancel(args) -> int:
    from runsync.db.engine import get_engine
    from runsync.sync.orchestrator import build_orchestrator

    orchestrator = build_orchestrator(get_engine())
    _print(orchestrator.describe(orchestrator.cancel_sync(args.session_id)))
    return 0


def _run_history(args) -> int:
    from runsync.db.engine import get_engine
    from runsync.sync.orchestrator import build_orchestrator

    orchestrator = build_orchestrator(get_engine())
    _print([orchestrator.describe(s) for s in orchestrator.get_sync_history(args.user_id, args.limit)])
    return 0


def _run_connect(args) -> int:
    from runsync.db.engine import get_engine
    from runsync.strava.auth import StravaAuth

    # expires_at=0 forces a refresh, which fetches a real access token, on first use
    StravaAuth(get_engine()).save_tokens(
        args.user_id, {"access_token": "", "refresh_token": args.refresh_token, "expires_at": 0}
    )
    logger.info("Stored Strava refresh token for %s", args.user_id)
    return 0


async def _run_serve(args) -> int:
    import uvicorn

    from runsync.config import get_settings
    from runsync.db.engine import get_engine
    from runsync.scheduler.jobs import build_scheduler

    settings = get_settings()
    scheduler = build_scheduler(get_engine())
    scheduler.start()
    logger.info(
        "Scheduler started (nightly sync at %02d:00 UTC for %d users)",
        settings.sync_hour,
        len(settings.sync_user_ids),
    )

    server = uvicorn.Server(uvicorn.Config("runsync.api.main:app", host=args.host, port=args.port))
    try:
        await server.serve()
    finally:
        scheduler.shutdown()
        logger.info("Goodbye.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="runsync", description="Strava run sync with weather enrichment")
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="sync a user's activities now")
    sync.add_argument("user_id")
    sync.add_argument("--incremental", action="store_true", help="only activities after the latest stored run")
    sync.add_argument("--since", type=_date, help="YYYY-MM-DD")
    sync.add_argument("--until", type=_date, help="YYYY-MM-DD")
    sync.add_argument("--max-activities", type=int)
    sync.add_argument("--no-enrich", action="store_true", help="skip weather enrichment")

    for name, help_text in (
        ("status", "show a sync session"),
        ("resume", "re-run a failed sync session"),
        ("cancel", "cancel a running sync session"),
    ):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("session_id")

    history = commands.add_parser("history", help="list a user's recent sync sessions")
    history.add_argument("user_id")
    history.add_argument("--limit", type=int, default=10)

    connect = commands.add_parser("connect", help="store a Strava refresh token for a user")
    connect.add_argument("user_id")
    connect.add_argument("refresh_token")

    serve = commands.add_parser("serve", help="run the API and the nightly scheduler")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    return parser


def main(argv=None) -> int:
    from runsync.sync.errors import SyncError, user_message

    args = build_parser().parse_args(argv)
    handlers = {
        "sync": lambda: asyncio.run(_run_sync(args)),
        "resume": lambda: asyncio.run(_run_resume(args)),
        "serve": lambda: asyncio.run(_run_serve(args)),
        "status": lambda: _run_status(args),
        "cancel": lambda: _run_cancel(args),
        "history": lambda: _run_history(args),
        "connect": lambda: _run_connect(args),
    }
    try:
        return handlers[args.command]()
    except SyncError as exc:
        logger.error("[%s] %s", exc.code, exc.message)
        print(user_message(exc), file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
