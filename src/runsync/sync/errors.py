"""
Typed error taxonomy for the sync engine.

Every failure that crosses a component boundary is a SyncError (or is turned
into one by classify()). The kind decides retry behaviour, the phase records
where the failure happened, and to_dict() is what gets stored on the session
row as last_error.
"""
import asyncio
from collections import Counter
from enum import Enum
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import SQLAlchemyError

from runsync.models.sync import SyncPhase, utcnow


class ErrorKind(str, Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    STORAGE = "storage"
    FUNCTION_TIMEOUT = "function_timeout"
    MEMORY_LIMIT = "memory_limit"
    QUOTA_EXCEEDED = "quota_exceeded"
    UNKNOWN = "unknown"


NON_RETRYABLE_KINDS = frozenset(
    {
        ErrorKind.AUTHENTICATION,
        ErrorKind.VALIDATION,
        ErrorKind.QUOTA_EXCEEDED,
        ErrorKind.FUNCTION_TIMEOUT,
        ErrorKind.MEMORY_LIMIT,
    }
)

DEFAULT_RETRY_AFTER_SECONDS = 900


class SyncError(Exception):
    """Base class for all classified sync failures."""

    kind: ErrorKind = ErrorKind.UNKNOWN
    default_code: str = "UNKNOWN_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        phase: Optional[SyncPhase] = None,
        retryable: Optional[bool] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.phase = phase
        self.retryable = (
            self.kind not in NON_RETRYABLE_KINDS if retryable is None else retryable
        )
        self.context: Dict[str, Any] = dict(context or {})
        self.timestamp = utcnow()

    def with_phase(self, phase: Optional[SyncPhase]) -> "SyncError":
        """Attach a phase if none was recorded where the error was raised."""
        if self.phase is None and phase is not None:
            self.phase = phase
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "kind": self.kind.value,
            "phase": self.phase.value if self.phase else None,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncError":
        """Rebuild an error stored on a session row."""
        kind = ErrorKind(data.get("kind", ErrorKind.UNKNOWN.value))
        error_cls = _CLASS_BY_CODE.get(data.get("code")) or _CLASS_BY_KIND.get(kind, SyncError)
        phase = data.get("phase")
        error = SyncError.__new__(error_cls)
        SyncError.__init__(
            error,
            data.get("message", ""),
            code=data.get("code"),
            phase=SyncPhase(phase) if phase else None,
            retryable=data.get("retryable"),
            context=data.get("context"),
        )
        return error

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class NetworkError(SyncError):
    kind = ErrorKind.NETWORK
    default_code = "NETWORK_ERROR"


class CircuitOpenError(NetworkError):
    """Raised without calling the upstream while a breaker is open."""

    default_code = "CIRCUIT_BREAKER_OPEN"


class RateLimitError(SyncError):
    kind = ErrorKind.RATE_LIMIT
    default_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, *, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        if retry_after is not None:
            self.context.setdefault("retry_after", retry_after)

    @property
    def retry_after(self) -> Optional[float]:
        return self.context.get("retry_after")


class AuthenticationError(SyncError):
    kind = ErrorKind.AUTHENTICATION
    default_code = "AUTHENTICATION_FAILED"


class DataValidationError(SyncError):
    kind = ErrorKind.VALIDATION
    default_code = "INVALID_DATA"

    def __init__(self, message: str, *, fields: Optional[List[str]] = None, **kwargs):
        super().__init__(message, **kwargs)
        if fields is not None:
            self.context.setdefault("fields", list(fields))

    @property
    def fields(self) -> List[str]:
        return self.context.get("fields", [])


class StorageError(SyncError):
    kind = ErrorKind.STORAGE
    default_code = "STORAGE_ERROR"


class FunctionTimeoutError(SyncError):
    kind = ErrorKind.FUNCTION_TIMEOUT
    default_code = "FUNCTION_TIMEOUT"


class MemoryLimitError(SyncError):
    kind = ErrorKind.MEMORY_LIMIT
    default_code = "MEMORY_LIMIT"


class QuotaExceededError(SyncError):
    kind = ErrorKind.QUOTA_EXCEEDED
    default_code = "QUOTA_EXCEEDED"


class SyncStateError(SyncError):
    """A session operation that the session's current state does not allow."""

    kind = ErrorKind.VALIDATION
    default_code = "INVALID_SYNC_STATE"


class SessionNotFoundError(SyncStateError):
    default_code = "SESSION_NOT_FOUND"


_CLASS_BY_KIND = {
    ErrorKind.NETWORK: NetworkError,
    ErrorKind.RATE_LIMIT: RateLimitError,
    ErrorKind.AUTHENTICATION: AuthenticationError,
    ErrorKind.VALIDATION: DataValidationError,
    ErrorKind.STORAGE: StorageError,
    ErrorKind.FUNCTION_TIMEOUT: FunctionTimeoutError,
    ErrorKind.MEMORY_LIMIT: MemoryLimitError,
    ErrorKind.QUOTA_EXCEEDED: QuotaExceededError,
}

# codes whose class is narrower than their kind
_CLASS_BY_CODE = {
    "CIRCUIT_BREAKER_OPEN": CircuitOpenError,
    "INVALID_SYNC_STATE": SyncStateError,
    "INVALID_PHASE_TRANSITION": SyncStateError,
    "SYNC_ALREADY_ACTIVE": SyncStateError,
    "SESSION_STUCK": SyncStateError,
    "SESSION_NOT_FOUND": SessionNotFoundError,
}


# ── HTTP status mapping ──────────────────────────────────────────────────────


def error_for_status(
    status_code: int,
    *,
    service: str = "Strava",
    retry_after: Optional[float] = None,
    phase: Optional[SyncPhase] = None,
) -> SyncError:
    """Map a non-2xx upstream response to the matching typed error."""
    context = {"status_code": status_code, "service": service}
    if status_code in (401, 403):
        return AuthenticationError(
            f"{service} rejected the credentials (HTTP {status_code})",
            phase=phase,
            context=context,
        )
    if status_code == 429:
        return RateLimitError(
            f"{service} rate limit exceeded",
            retry_after=retry_after if retry_after is not None else DEFAULT_RETRY_AFTER_SECONDS,
            phase=phase,
            context=context,
        )
    if status_code >= 500:
        return NetworkError(
            f"{service} server error (HTTP {status_code})",
            code="UPSTREAM_SERVER_ERROR",
            phase=phase,
            context=context,
        )
    return NetworkError(
        f"{service} request failed (HTTP {status_code})",
        code=f"HTTP_{status_code}",
        phase=phase,
        context=context,
    )


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


# ── Classification ───────────────────────────────────────────────────────────

_MESSAGE_PATTERNS = (
    (("rate limit", "too many requests"), RateLimitError),
    (("unauthorized", "forbidden", "invalid token", "token expired"), AuthenticationError),
    (("quota",), QuotaExceededError),
    (("network", "connection", "econnreset", "socket"), NetworkError),
    (("timed out", "timeout"), FunctionTimeoutError),
)


def classify(error: BaseException, phase: Optional[SyncPhase] = None) -> SyncError:
    """Turn any exception into a SyncError. Unknown failures stay retryable."""
    if isinstance(error, SyncError):
        return error.with_phase(phase)

    message = str(error) or type(error).__name__
    context = {"exception": type(error).__name__}

    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        return error_for_status(
            response.status_code,
            retry_after=parse_retry_after(response.headers.get("Retry-After")),
            phase=phase,
        )
    if isinstance(error, httpx.TimeoutException):
        return NetworkError(message, code="REQUEST_TIMEOUT", phase=phase, context=context)
    if isinstance(error, httpx.TransportError):
        return NetworkError(message, phase=phase, context=context)
    if isinstance(error, SQLAlchemyError):
        return StorageError(message, phase=phase, context=context)
    if isinstance(error, PydanticValidationError):
        fields = [".".join(str(p) for p in e["loc"]) for e in error.errors()]
        return DataValidationError(message, fields=fields, phase=phase, context=context)
    # TimeoutError is an OSError; keep it ahead of the connection check
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return FunctionTimeoutError(message, phase=phase, context=context)
    if isinstance(error, MemoryError):
        return MemoryLimitError(message or "Out of memory", phase=phase, context=context)
    if isinstance(error, ConnectionError):
        return NetworkError(message, phase=phase, context=context)

    lowered = message.lower()
    for needles, error_cls in _MESSAGE_PATTERNS:
        if any(n in lowered for n in needles):
            return error_cls(message, phase=phase, context=context)

    return SyncError(message, phase=phase, context=context)


# ── User-facing messages ─────────────────────────────────────────────────────


def user_message(error: SyncError) -> str:
    """One-line remediation text for showing to the athlete."""
    kind = error.kind
    if error.code == "SYNC_ALREADY_ACTIVE":
        return "A sync is already running. Wait for it to finish or cancel it."
    if isinstance(error, SyncStateError) and kind == ErrorKind.VALIDATION:
        return error.message
    if kind == ErrorKind.NETWORK:
        return "Network connection issue. Check your connection and try again."
    if kind == ErrorKind.RATE_LIMIT:
        retry_after = error.context.get("retry_after")
        if retry_after:
            minutes = max(1, round(float(retry_after) / 60))
            return f"API rate limit exceeded. Please wait about {minutes} minute(s) before trying again."
        return "API rate limit exceeded. Please try again later."
    if kind == ErrorKind.AUTHENTICATION:
        return "Authentication failed. Please reconnect your Strava account."
    if kind == ErrorKind.VALIDATION:
        return "Invalid data encountered. Some activities may be skipped."
    if kind == ErrorKind.STORAGE:
        return "The database is temporarily unavailable. Please try again in a few minutes."
    if kind == ErrorKind.FUNCTION_TIMEOUT:
        return "The operation timed out. Try syncing a smaller date range."
    if kind == ErrorKind.MEMORY_LIMIT:
        return "Too much data to process at once. Try syncing a smaller date range."
    if kind == ErrorKind.QUOTA_EXCEEDED:
        return "API quota exceeded. Please try again later."
    return "An unexpected error occurred. Please try again."


class ErrorCollector:
    """Accumulates per-record failures so a batch can finish and report them."""

    def __init__(self):
        self.errors: List[SyncError] = []

    def add(self, error: BaseException, phase: Optional[SyncPhase] = None, **context) -> SyncError:
        classified = classify(error, phase)
        classified.context.update(context)
        self.errors.append(classified)
        return classified

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def __len__(self) -> int:
        return len(self.errors)

    def summary(self) -> Dict[str, Any]:
        by_kind = Counter(e.kind.value for e in self.errors)
        return {
            "total": len(self.errors),
            "retryable": sum(1 for e in self.errors if e.retryable),
            "by_kind": dict(by_kind),
        }

    def clear(self) -> None:
        self.errors.clear()
