"""
Async Strava activities client.

fetch_page() makes one rate-limited, breaker-guarded request for one page of
/athlete/activities and returns only valid, de-duplicated activities of the
configured types. fetch_all() walks pages in order with page-level retry.

Strava API limits (defaults, raised per application):
  - 100 requests per 15 minutes, 1000 per day
  - current usage comes back on every response as
    X-RateLimit-Usage: "<15min>,<daily>" and X-RateLimit-Limit likewise
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from runsync.config import Settings, get_settings
from runsync.models.sync import SyncPhase
from runsync.strava.normalizer import validate_raw_activity
from runsync.sync.errors import (
    AuthenticationError,
    DataValidationError,
    NetworkError,
    classify,
    error_for_status,
    parse_retry_after,
)
from runsync.sync.ratelimit import RateLimitLedger
from runsync.sync.resilience import CircuitBreaker, RetryPolicy, with_retry

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 200
SHORT_WINDOW_SECONDS = 15 * 60
REQUEST_TIMEOUT_SECONDS = 30.0


def to_epoch(value: Optional[datetime]) -> Optional[int]:
    """Naive datetimes are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


@dataclass
class ActivityPage:
    page: int
    per_page: int
    records: List[Dict[str, Any]]
    has_more: bool
    raw_count: int
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    filtered: int = 0
    duplicates: int = 0

    @property
    def last_id(self) -> Optional[int]:
        return self.records[-1]["id"] if self.records else None


@dataclass
class FetchResult:
    records: List[Dict[str, Any]]
    pages: int
    skipped: int = 0
    truncated: bool = False


PageCallback = Callable[[ActivityPage, int], Awaitable[None]]


class StravaClient:
    """Fetches a user's activities from the Strava API.

    The rate-limit ledger is shared by every user because Strava budgets
    per application. Circuit breakers are kept per user, so one athlete's
    failures never open another athlete's breaker.
    """

    def __init__(
        self,
        auth,
        settings: Optional[Settings] = None,
        http: Optional[httpx.AsyncClient] = None,
        ledger: Optional[RateLimitLedger] = None,
        breaker_factory: Optional[Callable[[str], CircuitBreaker]] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """
        Args:
            auth: StravaAuth (or AsyncMock) with get_valid_access_token(user_id).
            http: Shared httpx.AsyncClient; a short-lived one is used per request if None.
            breaker_factory: Builds the breaker for a user id on first use.
        """
        self.auth = auth
        self.settings = settings or get_settings()
        self._http = http
        self._sleep = sleep
        self.ledger = ledger or RateLimitLedger(
            "strava",
            short_limit=self.settings.strava_short_limit,
            short_window_seconds=SHORT_WINDOW_SECONDS,
            daily_limit=self.settings.strava_daily_limit,
            short_threshold=self.settings.strava_short_threshold,
            daily_threshold=self.settings.strava_daily_threshold,
            max_wait_seconds=self.settings.max_rate_limit_wait_seconds,
            sleep=sleep,
        )
        self._breaker_factory = breaker_factory or self._default_breaker
        self._breakers: Dict[str, CircuitBreaker] = {}
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)

    async def fetch_page(
        self,
        user_id: str,
        page: int = 1,
        page_size: Optional[int] = None,
        after: Optional[int] = None,
        before: Optional[int] = None,
    ) -> ActivityPage:
        """Fetch one page of activities.

        Args:
            after, before: epoch-second bounds on start time (exclusive).

        Raises:
            SyncError subclasses: AuthenticationError (401/403), RateLimitError
            (429 or budget exhausted), NetworkError (5xx, transport, breaker open).
        """
        per_page = min(max(page_size or self.settings.page_size, 1), MAX_PAGE_SIZE)
        params: Dict[str, Any] = {"page": page, "per_page": per_page}
        if after is not None:
            params["after"] = after
        if before is not None:
            params["before"] = before

        token = await self.auth.get_valid_access_token(user_id)
        await self.ledger.acquire(SyncPhase.FETCHING)
        payload = await self.breaker_for(user_id).call(
            lambda: self._get_json("/athlete/activities", params, token),
            SyncPhase.FETCHING,
        )
        if not isinstance(payload, list):
            raise NetworkError(
                "Unexpected Strava response shape",
                code="UNEXPECTED_RESPONSE",
                phase=SyncPhase.FETCHING,
                context={"page": page},
            )
        return self._build_page(payload, page, per_page)

    async def fetch_all(
        self,
        user_id: str,
        after: Optional[int] = None,
        before: Optional[int] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        max_activities: Optional[int] = None,
        on_page: Optional[PageCallback] = None,
        start_page: int = 1,
    ) -> FetchResult:
        """Walk pages from `start_page` until a short page or `max_pages`.

        Each page is retried per the retry policy; authentication and other
        non-retryable errors propagate immediately. `on_page(page, total)` is
        awaited after every page and may raise to stop the walk.
        """
        max_pages = max_pages or self.settings.max_pages
        records: List[Dict[str, Any]] = []
        seen = set()
        skipped = 0
        pages = 0
        truncated = False
        page = start_page

        while pages < max_pages:
            result = await with_retry(
                lambda p=page: self.fetch_page(user_id, p, page_size, after, before),
                phase=SyncPhase.FETCHING,
                policy=self.retry_policy,
                sleep=self._sleep,
                description=f"Strava page {page}",
            )
            pages += 1
            skipped += len(result.skipped)
            for raw in result.records:
                if raw["id"] in seen:
                    continue
                seen.add(raw["id"])
                records.append(raw)

            if max_activities and len(records) >= max_activities:
                truncated = len(records) > max_activities or result.has_more
                records = records[:max_activities]

            logger.info(
                "Strava page %d: %d activities (%d total)", page, len(result.records), len(records)
            )
            if on_page is not None:
                await on_page(result, len(records))

            if not result.has_more or (max_activities and len(records) >= max_activities):
                break
            page += 1
            if self.settings.page_delay_seconds:
                await self._sleep(self.settings.page_delay_seconds)
        else:
            logger.warning("Stopped after max_pages=%d; older activities not fetched", max_pages)
            truncated = True

        return FetchResult(records=records, pages=pages, skipped=skipped, truncated=truncated)

    def rate_limit_status(self) -> dict:
        return self.ledger.usage()

    def breaker_for(self, user_id: str) -> CircuitBreaker:
        breaker = self._breakers.get(user_id)
        if breaker is None:
            breaker = self._breakers[user_id] = self._breaker_factory(user_id)
        return breaker

    def circuit_breaker_status(self, user_id: Optional[str] = None) -> dict:
        """One user's breaker, or every breaker created so far keyed by user."""
        if user_id is not None:
            return self.breaker_for(user_id).status()
        return {uid: b.status() for uid, b in self._breakers.items()}

    # ─── Internal helpers ─────────────────────────────────────────────────────

    def _default_breaker(self, user_id: str) -> CircuitBreaker:
        return CircuitBreaker(
            f"strava:{user_id}",
            failure_threshold=self.settings.breaker_failure_threshold,
            recovery_timeout=self.settings.breaker_recovery_seconds,
            ignored=(AuthenticationError,),
        )

    async def _get_json(self, path: str, params: Dict[str, Any], token: str) -> Any:
        url = f"{self.settings.strava_api_url}{path}"
        headers = {"Authorization": f"Bearer {token}"}
        try:
            if self._http is not None:
                response = await self._http.get(url, params=params, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS) as client:
                    response = await client.get(url, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise classify(exc, SyncPhase.FETCHING) from exc

        usage = response.headers.get("X-RateLimit-Usage")
        if usage:
            self.ledger.update_from_headers(usage, response.headers.get("X-RateLimit-Limit"))
        else:
            self.ledger.record_call()

        if response.status_code != 200:
            logger.warning("Strava %s returned HTTP %d", path, response.status_code)
            raise error_for_status(
                response.status_code,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                phase=SyncPhase.FETCHING,
            )
        return response.json()

    def _build_page(self, payload: List[Any], page: int, per_page: int) -> ActivityPage:
        records: List[Dict[str, Any]] = []
        skipped: List[Dict[str, Any]] = []
        seen = set()
        filtered = duplicates = 0
        allowed_types = set(self.settings.activity_types)

        for raw in payload:
            activity_id = raw.get("id") if isinstance(raw, dict) else None
            if activity_id is not None and activity_id in seen:
                duplicates += 1
                continue
            try:
                validate_raw_activity(raw)
            except DataValidationError as exc:
                logger.warning("Skipping invalid Strava activity: %s", exc.message)
                skipped.append({"id": activity_id, "reason": exc.message})
                continue
            seen.add(activity_id)
            if allowed_types and raw["type"] not in allowed_types:
                filtered += 1
                continue
            records.append(raw)

        return ActivityPage(
            page=page,
            per_page=per_page,
            records=records,
            has_more=len(payload) == per_page,
            raw_count=len(payload),
            skipped=skipped,
            filtered=filtered,
            duplicates=duplicates,
        )
