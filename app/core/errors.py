from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.services.otp_errors import OtpError, OtpRateLimited

_LOG = logging.getLogger("app.http")


def otp_error_payload(exc: OtpError) -> dict[str, Any]:
    return {"detail": exc.detail, "code": exc.code, **exc.extra()}


def _sanitize(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
    # Submitted values (codes, phone numbers) are not echoed back.
    return [
        {"loc": list(err.get("loc") or []), "msg": str(err.get("msg") or ""), "type": str(err.get("type") or "")}
        for err in errors
    ]


def install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(OtpError)
    async def _otp_error_handler(request: Request, exc: OtpError):
        headers: dict[str, str] = {}
        if isinstance(exc, OtpRateLimited):
            headers["Retry-After"] = str(exc.retry_after_seconds)
        if exc.status_code >= 500:
            _LOG.error("%s %s failed code=%s detail=%s", request.method, request.url.path, exc.code, exc.detail)
        return JSONResponse(status_code=exc.status_code, content=otp_error_payload(exc), headers=headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=422, content={"detail": _sanitize(exc.errors())})
