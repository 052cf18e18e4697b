"""
Error responses for the admin-facing JSON endpoints.

Errors are returned as {"success": false, "error": "..."} so the admin UI
can show the message directly.
"""

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """An error with the HTTP status it should be answered with."""

    def __init__(self, status_code: int, error: str):
        super().__init__(error)
        self.status_code = status_code
        self.error = error


def error_response(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(exc.status_code, exc.error)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Missing or malformed parameters are a 400, not FastAPI's default 422."""
    fields = sorted({
        str(err["loc"][-1])
        for err in exc.errors()
        if err.get("loc")
    })
    logger.warning(f"Request validation failed on {request.url.path}: {fields}")
    if fields:
        return error_response(400, f"Missing or invalid parameters: {', '.join(fields)}")
    return error_response(400, "Invalid request")
