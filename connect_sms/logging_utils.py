"""
Structured JSON logging and per-request access logs.

Every record carries an ISO-8601 ``ts``, the ``level`` and, while a request
is being handled, its ``request_id``. The same id is returned to callers in
the X-Request-ID header.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from connect_sms.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Prometheus scrapes are neither logged per request nor counted
UNTRACKED_PATHS = {"/metrics"}

UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


class CustomJsonFormatter(jsonlogger.JsonFormatter):

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            created = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = created.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        log_record["level"] = record.levelname

        current = request_id_ctx.get()
        if current and "request_id" not in log_record:
            log_record["request_id"] = current


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send the root logger and Uvicorn's loggers to stdout as JSON lines.

    Uvicorn's access log is switched off because RequestLoggingMiddleware
    writes the access line itself.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in UVICORN_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    # The Twilio SDK logs full request URLs, including phone numbers, at INFO
    logging.getLogger("twilio.http_client").setLevel(logging.WARNING)

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One JSON line per request: request_id, method, path, status, latency_ms.

    /smsWebhook lines also carry whatever the handler attached with
    log_webhook_data (message_sid, church_id, dup, result).
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        logger = logging.getLogger("connect_sms.requests")
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "Request failed",
                    extra={"method": request.method, "path": request.url.path},
                )
                raise

            elapsed = time.perf_counter() - started
            response.headers["X-Request-ID"] = request_id
            self._record(request, response.status_code, elapsed, logger)
            return response
        finally:
            request_id_ctx.reset(token)

    @staticmethod
    def _record(request: Request, status_code: int, elapsed: float, logger: logging.Logger) -> None:
        path = request.url.path
        if path in UNTRACKED_PATHS:
            return

        record_http_request(method=request.method, path=path, status=status_code, latency_seconds=elapsed)

        fields = {
            "request_id": request.state.request_id,
            "method": request.method,
            "path": path,
            "status": status_code,
            "latency_ms": round(elapsed * 1000, 2),
        }
        fields.update(getattr(request.state, "webhook_log_data", {}))

        if status_code >= 500:
            level = logging.ERROR
        elif status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(level, "Request completed", extra=fields)


def log_webhook_data(
    request: Request,
    message_sid: Optional[str] = None,
    church_id: Optional[str] = None,
    dup: bool = False,
    result: Optional[str] = None,
):
    """Attach webhook fields to the request so the access log line includes them."""
    fields = {"dup": dup}
    if message_sid is not None:
        fields["message_sid"] = message_sid
    if church_id is not None:
        fields["church_id"] = church_id
    if result is not None:
        fields["result"] = result
    request.state.webhook_log_data = fields
