"""Translate SyncError into HTTP responses."""
from fastapi import HTTPException

from runsync.sync.errors import (
    AuthenticationError,
    DataValidationError,
    RateLimitError,
    SessionNotFoundError,
    SyncError,
    SyncStateError,
    user_message,
)


def http_error(error: SyncError) -> HTTPException:
    if isinstance(error, SessionNotFoundError):
        status_code = 404
    elif isinstance(error, SyncStateError):
        status_code = 409
    elif isinstance(error, DataValidationError):
        status_code = 422
    elif isinstance(error, AuthenticationError):
        status_code = 401
    elif isinstance(error, RateLimitError):
        status_code = 429
    else:
        status_code = 502
    return HTTPException(
        status_code=status_code,
        detail={
            "code": error.code,
            "message": user_message(error),
            "retryable": error.retryable,
        },
    )
