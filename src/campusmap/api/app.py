"""
FastAPI application wiring.

This file creates the `FastAPI` instance and maps service errors to HTTP status
codes. Business logic lives in `campusmap.services`; routes in
`campusmap.api.routes`.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from campusmap.core.errors import (
    AuthenticationRequired,
    Conflict,
    DirectoryError,
    InvalidState,
    NotFound,
    PermissionDenied,
    ScanLimitExceeded,
    UpstreamUnavailable,
    ValidationError,
)
from campusmap.core.logging import configure_logging

from .routes import router

logger = logging.getLogger(__name__)

configure_logging()

app = FastAPI(title="CampusMap API", version="0.1.0")
app.include_router(router)

# Checked in order; subclasses before their bases.
_STATUS_BY_ERROR: list[tuple[type[DirectoryError], int]] = [
    (AuthenticationRequired, 401),
    (PermissionDenied, 403),
    (NotFound, 404),
    (Conflict, 409),
    (InvalidState, 409),
    (ValidationError, 422),
    (ScanLimitExceeded, 400),
    (UpstreamUnavailable, 503),
]


def status_for(exc: DirectoryError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


@app.exception_handler(DirectoryError)
async def handle_directory_error(request: Request, exc: DirectoryError) -> JSONResponse:
    status = status_for(exc)
    detail: dict = {"code": type(exc).__name__, "message": str(exc)}
    if isinstance(exc, UpstreamUnavailable) and exc.side:
        detail["side"] = exc.side
    if status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    headers = {"WWW-Authenticate": "Bearer"} if status == 401 else None
    return JSONResponse(status_code=status, content={"detail": detail}, headers=headers)
