from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class FeedError(Exception):
    """Transient failure talking to the raw punch feed (timeout, reset, 5xx)."""

    retryable = True

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class FeedRateLimitedError(FeedError):
    """HTTP 429. Backed off; resets the retry budget instead of consuming it."""


class FeedRejectedError(FeedError):
    """Non-retryable feed response: 4xx other than 429, or an unreadable payload."""

    retryable = False


class IngestionHaltedError(Exception):
    def __init__(self, feed_name: str, page: int, message: str):
        super().__init__(f"Punch sync '{feed_name}' halted at page {page}: {message}")
        self.feed_name = feed_name
        self.page = page
        self.message = message


class SessionNotFoundError(Exception):
    def __init__(self, session_id: int):
        super().__init__(f"Attendance session {session_id} not found")
        self.session_id = session_id


class InvalidApprovalStateError(Exception):
    def __init__(self, session_id: int, state: str):
        super().__init__(f"Attendance session {session_id} is not pending approval (state={state})")
        self.session_id = session_id
        self.state = state


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
