"""
Per-client rate-limit ledger.

Tracks a short window (Strava: 15 minutes, OpenWeather: 1 minute) and a daily
window. Counts come either from local call counting or from the upstream's
usage headers, whichever the client has. Each client instance owns its own
ledger.

Before each request:
  - short window above threshold -> sleep until the window resets (capped)
  - daily window above threshold -> raise a non-retryable RateLimitError
"""
import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Optional

from runsync.models.sync import SyncPhase
from runsync.sync.errors import RateLimitError

logger = logging.getLogger(__name__)

DAY_SECONDS = 86_400


def _threshold_count(limit: int, threshold: float) -> int:
    # rounding first keeps 60 * (55/60) at 55
    return math.floor(round(limit * threshold, 6))


class RateLimitLedger:
    def __init__(
        self,
        name: str,
        *,
        short_limit: int,
        short_window_seconds: float,
        daily_limit: int,
        short_threshold: float = 0.8,
        daily_threshold: float = 0.9,
        max_wait_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.short_limit = short_limit
        self.short_window_seconds = short_window_seconds
        self.daily_limit = daily_limit
        self.short_threshold = short_threshold
        self.daily_threshold = daily_threshold
        self.max_wait_seconds = max_wait_seconds
        self._clock = clock
        self._sleep = sleep

        now = clock()
        self._short_used = 0
        self._daily_used = 0
        self._short_reset_at = self._next_boundary(now, short_window_seconds)
        self._daily_reset_at = self._next_boundary(now, DAY_SECONDS)

    # ── Bookkeeping ──────────────────────────────────────────────────────────

    def record_call(self) -> None:
        self._roll(self._clock())
        self._short_used += 1
        self._daily_used += 1

    def update_from_headers(self, usage: Optional[str], limit: Optional[str]) -> None:
        """Apply Strava-style "short,daily" usage and limit headers."""
        if not usage:
            return
        try:
            short_used, daily_used = (int(v) for v in usage.split(",")[:2])
        except ValueError:
            logger.debug("%s: unparseable rate-limit usage header %r", self.name, usage)
            return
        self._roll(self._clock())
        self._short_used = short_used
        self._daily_used = daily_used
        if limit:
            try:
                short_limit, daily_limit = (int(v) for v in limit.split(",")[:2])
            except ValueError:
                logger.debug("%s: unparseable rate-limit limit header %r", self.name, limit)
            else:
                self.short_limit = short_limit or self.short_limit
                self.daily_limit = daily_limit or self.daily_limit

    # ── Gate ─────────────────────────────────────────────────────────────────

    async def acquire(self, phase: Optional[SyncPhase] = None) -> None:
        """Wait or refuse according to the current usage."""
        now = self._clock()
        self._roll(now)

        if self._daily_used >= _threshold_count(self.daily_limit, self.daily_threshold):
            wait = self._daily_reset_at - now
            raise RateLimitError(
                f"{self.name} daily rate limit nearly exhausted "
                f"({self._daily_used}/{self.daily_limit})",
                code="DAILY_RATE_LIMIT",
                retry_after=round(wait),
                retryable=False,
                phase=phase,
                context={"service": self.name},
            )

        if self._short_used >= _threshold_count(self.short_limit, self.short_threshold):
            wait = min(max(self._short_reset_at - now, 0.0), self.max_wait_seconds)
            logger.warning(
                "%s short-window usage %d/%d, waiting %.0fs",
                self.name,
                self._short_used,
                self.short_limit,
                wait,
            )
            await self._sleep(wait)
            self._roll(self._clock())

    # ── Introspection ────────────────────────────────────────────────────────

    def remaining_short(self) -> int:
        self._roll(self._clock())
        return max(_threshold_count(self.short_limit, self.short_threshold) - self._short_used, 0)

    def remaining_daily(self) -> int:
        self._roll(self._clock())
        return max(_threshold_count(self.daily_limit, self.daily_threshold) - self._daily_used, 0)

    def daily_exhausted(self) -> bool:
        return self.remaining_daily() == 0

    def usage(self) -> dict:
        now = self._clock()
        self._roll(now)
        return {
            "service": self.name,
            "short_term": {
                "used": self._short_used,
                "limit": self.short_limit,
                "resets_in_seconds": round(self._short_reset_at - now),
            },
            "daily": {
                "used": self._daily_used,
                "limit": self.daily_limit,
                "resets_in_seconds": round(self._daily_reset_at - now),
            },
        }

    # ── Internal helpers ─────────────────────────────────────────────────────

    def _roll(self, now: float) -> None:
        if now >= self._short_reset_at:
            self._short_used = 0
            self._short_reset_at = self._next_boundary(now, self.short_window_seconds)
        if now >= self._daily_reset_at:
            self._daily_used = 0
            self._daily_reset_at = self._next_boundary(now, DAY_SECONDS)

    @staticmethod
    def _next_boundary(now: float, window: float) -> float:
        return (math.floor(now / window) + 1) * window
