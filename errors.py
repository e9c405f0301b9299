"""Error taxonomy for the score sync client.

Errors are raised inside the client, classified for retry, and converted
to ApiError payloads at the component boundary.
"""

from __future__ import annotations

from typing import Any, Optional

from models import ApiError

TIMEOUT = "TIMEOUT"
CANCELLED = "CANCELLED"
NETWORK_ERROR = "NETWORK_ERROR"
INVALID_RESPONSE = "INVALID_RESPONSE"
SYNC_IN_PROGRESS = "SYNC_IN_PROGRESS"
VALIDATION_ERROR = "VALIDATION_ERROR"


def http_code(status: int) -> str:
    return f"HTTP_{status}"


class ScoreSyncError(Exception):
    """Base class for every error the sync subsystem classifies."""

    code: str = "ERROR"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status: Optional[int] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.status = status
        self.details = details

    def to_api_error(self) -> ApiError:
        return ApiError(message=self.message, code=self.code, status=self.status, details=self.details)


class RequestTimeoutError(ScoreSyncError):
    code = TIMEOUT


class RequestCancelledError(ScoreSyncError):
    code = CANCELLED


class NetworkError(ScoreSyncError):
    code = NETWORK_ERROR
    retryable = True


class HttpError(ScoreSyncError):
    """Non-2xx response. Server errors (5xx) are retryable."""

    def __init__(self, message: str, *, status: int, code: Optional[str] = None, details: Any = None) -> None:
        super().__init__(message, code=code or http_code(status), status=status, details=details)
        self.retryable = status >= 500


class InvalidResponseError(ScoreSyncError):
    code = INVALID_RESPONSE


class SyncInProgressError(ScoreSyncError):
    code = SYNC_IN_PROGRESS

    def __init__(self, message: str = "Sync already in progress") -> None:
        super().__init__(message)


class ParseError(ScoreSyncError):
    """Malformed persisted JSON. Recovered locally, never surfaced."""

    code = "PARSE_ERROR"


class ValidationError(ScoreSyncError, ValueError):
    code = VALIDATION_ERROR
