"""Map tracker exceptions to HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from matatu_tracker.core.exceptions import (
    GeometryUnavailable,
    InvalidCoordinate,
    InvalidTransition,
    NotFound,
    ProviderUnavailable,
    StoreFetchError,
    TrackerError,
)

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    NotFound: 404,
    InvalidCoordinate: 422,
    GeometryUnavailable: 422,
    InvalidTransition: 409,
    StoreFetchError: 502,
    ProviderUnavailable: 502,
}


def status_for(exc: TrackerError) -> int:
    for cls, code in ERROR_STATUS.items():
        if isinstance(exc, cls):
            return code
    return 500


async def tracker_error_handler(request: Request, exc: TrackerError) -> JSONResponse:
    status = status_for(exc)
    if status >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    body = {"error": type(exc).__name__, "detail": str(exc)}
    if isinstance(exc, GeometryUnavailable):
        body["attempts"] = exc.attempts
    return JSONResponse(status_code=status, content=body)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TrackerError, tracker_error_handler)
