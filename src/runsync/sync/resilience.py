"""Retry with exponential backoff and a per-upstream circuit breaker."""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, FrozenSet, Optional, Tuple, Type, TypeVar

from runsync.models.sync import SyncPhase
from runsync.sync.errors import CircuitOpenError, ErrorKind, SyncError, classify

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.NETWORK,
        ErrorKind.RATE_LIMIT,
        ErrorKind.STORAGE,
        ErrorKind.UNKNOWN,
    }
)


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    retryable_kinds: FrozenSet[ErrorKind] = field(default=DEFAULT_RETRYABLE_KINDS)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            multiplier=settings.retry_multiplier,
        )


def should_retry(error: SyncError, policy: RetryPolicy) -> bool:
    """Non-retryable errors never retry, whatever the policy says."""
    return error.retryable and error.kind in policy.retryable_kinds


def compute_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Delay before retry number `attempt` (1-based)."""
    delay = policy.base_delay * (policy.multiplier ** max(attempt - 1, 0))
    return min(delay, policy.max_delay)


def retry_delay(error: SyncError, attempt: int, policy: RetryPolicy) -> float:
    """Backoff delay, stretched to honour a rate limit's Retry-After."""
    delay = compute_backoff(attempt, policy)
    retry_after = error.context.get("retry_after") if error.kind == ErrorKind.RATE_LIMIT else None
    if retry_after:
        delay = max(delay, min(float(retry_after), policy.max_delay))
    return delay


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    phase: Optional[SyncPhase] = None,
    policy: RetryPolicy = RetryPolicy(),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "operation",
) -> T:
    """Run `operation`, retrying classified retryable failures with backoff.

    The final failure is re-raised as a SyncError carrying the attempt count.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            error = classify(exc, phase)
            attempt += 1
            if attempt > policy.max_retries or not should_retry(error, policy):
                error.context.setdefault("attempts", attempt)
                if error is exc:
                    raise
                raise error from exc
            delay = retry_delay(error, attempt, policy)
            logger.warning(
                "%s failed (%s: %s), retry %d/%d in %.1fs",
                description,
                error.code,
                error.message,
                attempt,
                policy.max_retries,
                delay,
            )
            await sleep(delay)


# ─── Circuit breaker ─────────────────────────────────────────────────────────


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops calling an upstream after repeated consecutive failures.

    Closed -> open after `failure_threshold` consecutive failures. While open,
    calls fail immediately with CircuitOpenError. Once `recovery_timeout`
    seconds have passed the breaker half-opens and lets one trial call
    through: success closes it, failure opens it again.

    Exceptions in `ignored` prove the upstream answered (a 401 for one
    user's revoked token, say) and count as a success, not a failure.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        ignored: Tuple[Type[BaseException], ...] = (),
    ):
        self.name = name
        self.ignored = ignored
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> BreakerState:
        if (
            self._state == BreakerState.OPEN
            and self._clock() - self._opened_at >= self.recovery_timeout
        ):
            return BreakerState.HALF_OPEN
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    @property
    def is_open(self) -> bool:
        return self.state == BreakerState.OPEN

    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        phase: Optional[SyncPhase] = None,
    ) -> T:
        state = self.state
        # a stored HALF_OPEN means the single trial call is already in flight
        if state == BreakerState.OPEN or self._state == BreakerState.HALF_OPEN:
            remaining = 0.0
            if self._opened_at is not None:
                remaining = max(self.recovery_timeout - (self._clock() - self._opened_at), 0.0)
            raise CircuitOpenError(
                f"{self.name} circuit breaker is open",
                phase=phase,
                context={"breaker": self.name, "retry_in_seconds": round(remaining, 1)},
            )
        if state == BreakerState.HALF_OPEN:
            self._state = BreakerState.HALF_OPEN
            logger.info("%s circuit breaker half-open, allowing trial call", self.name)

        try:
            result = await operation()
        except asyncio.CancelledError:
            if self._state == BreakerState.HALF_OPEN:
                # abandoned trial: the next call may try again
                self._state = BreakerState.OPEN
            raise
        except self.ignored:
            self._record_success()
            raise
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    def reset(self) -> None:
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = None

    def status(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": self._failures,
            "threshold": self.failure_threshold,
        }

    def _record_success(self) -> None:
        if self._state != BreakerState.CLOSED:
            logger.info("%s circuit breaker closed", self.name)
        self.reset()

    def _record_failure(self) -> None:
        self._failures += 1
        if self._state == BreakerState.HALF_OPEN or self._failures >= self.failure_threshold:
            if self._state != BreakerState.OPEN:
                logger.warning(
                    "%s circuit breaker opened after %d failures",
                    self.name,
                    self._failures,
                )
            self._state = BreakerState.OPEN
            self._opened_at = self._clock()
