"""Client-visible error kinds and the JSON error envelope."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


class ApiError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        self.headers = headers or {}


class ValidationError(ApiError):
    status_code = 400
    code = "INVALID_REQUEST"


class Unauthenticated(ApiError):
    status_code = 401
    code = "INVALID_API_KEY"


class AccountInactive(ApiError):
    status_code = 401
    code = "INACTIVE_ACCOUNT"

    def __init__(self, message: str = "API key or account is inactive") -> None:
        super().__init__(message)


class RateLimitExceeded(ApiError):
    status_code = 429
    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, limit_type: str, limit: int, reset_time: int) -> None:
        window = "hourly" if limit_type == "sustained" else "burst"
        super().__init__(
            f"Rate limit exceeded: {limit} requests per {window} window",
            details={"limitType": limit_type, "limit": limit, "resetTime": reset_time},
            headers={"Retry-After": str(max(0, reset_time - int(datetime.now(timezone.utc).timestamp())))},
        )


class UpstreamError(ApiError):
    """A direct collaborator route (search/analyze) could not be served."""

    status_code = 502


class InternalError(ApiError):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "An unexpected error occurred", *, code: str | None = None) -> None:
        super().__init__(message, code=code)


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def error_envelope(
    code: str,
    message: str,
    *,
    request_id: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {"code": code, "message": message, "timestamp": utc_timestamp()}
    if details:
        error["details"] = details
    return {"success": False, "error": error, "meta": {"requestId": request_id}}


def success_envelope(data: Any, *, request_id: str | None = None, **meta: Any) -> dict[str, Any]:
    return {"success": True, "data": data, "meta": {"requestId": request_id, **meta}}
