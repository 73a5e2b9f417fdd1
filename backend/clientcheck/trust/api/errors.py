"""Translate trust errors and rate-limit denials into HTTP responses."""

from __future__ import annotations

import math
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from clientcheck.trust.domain.errors import TrustError, Unavailable, ValidationError
from clientcheck.trust.domain.rate_limit import RateLimitCheck


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


def retry_after_seconds(reset_at: datetime, now: datetime | None = None) -> int:
    now = now or datetime.now(timezone.utc)
    return max(1, math.ceil((reset_at - now).total_seconds()))


def rate_limited_response(check: RateLimitCheck, *, action_type: str, request: Request | None = None) -> JSONResponse:
    payload = {
        "detail": "rate_limited",
        "action_type": action_type,
        "remaining": check.remaining,
        "reset_at": check.reset_at.isoformat(),
        "total_in_window": check.total_in_window,
        "degraded": check.degraded,
    }
    if request is not None:
        payload["request_id"] = _request_id(request)
    return JSONResponse(
        status_code=429,
        content=payload,
        headers={"Retry-After": str(retry_after_seconds(check.reset_at))},
    )


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(TrustError)
    async def trust_error_handler(request: Request, exc: TrustError):  # type: ignore[override]
        payload: dict[str, object] = {"detail": exc.detail, "request_id": _request_id(request)}
        if isinstance(exc, ValidationError):
            payload["field"] = exc.field
            payload["message"] = exc.message
        headers = {"Retry-After": "1"} if isinstance(exc, Unavailable) else None
        return JSONResponse(status_code=exc.status_code, content=payload, headers=headers)
