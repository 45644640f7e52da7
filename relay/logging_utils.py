"""
Structured JSON logging for the relay.

Two context variables feed every log line:
- request_id: set per HTTP request by RequestLoggingMiddleware
- log context: fields such as message_id and stage, set by the webhook
  pipeline with log_context() while it works on one event
"""

import logging
import sys
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from pythonjsonlogger import jsonlogger

from relay.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
log_context_ctx: ContextVar[Optional[dict]] = ContextVar("log_context", default=None)

# Libraries that log full request URLs at INFO
NOISY_LOGGERS = ("httpx", "httpcore", "openai")


@contextmanager
def log_context(**fields) -> Iterator[None]:
    """
    Add fields to every log line emitted inside the block.

    Nested blocks extend the outer fields; None values are dropped.
    """
    merged = dict(log_context_ctx.get() or {})
    merged.update({key: value for key, value in fields.items() if value is not None})
    token = log_context_ctx.set(merged)
    try:
        yield
    finally:
        log_context_ctx.reset(token)


class RelayJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding ts, level, request_id and the pipeline log context."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        # Explicit extra= values win over context
        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id
        for key, value in (log_context_ctx.get() or {}).items():
            log_record.setdefault(key, value)


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Send all relay and uvicorn logs to stdout as JSON.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(RelayJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware writes the access log
    logging.getLogger("uvicorn.access").disabled = True

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return root


def _level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one "Request completed" line per HTTP request and records HTTP metrics.

    Fields: request_id, method, path, status, latency_ms, plus message_id and
    result for webhook posts (see log_webhook_data). The request_id is also
    returned in the X-Request-ID header.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            elapsed = time.perf_counter() - started

            if request.url.path != "/metrics":
                record_http_request(request.method, request.url.path, response.status_code, elapsed)

            fields = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            fields.update(getattr(request.state, "webhook_log_data", {}))

            logging.getLogger("relay.requests").log(
                _level_for_status(response.status_code), "Request completed", extra=fields
            )
            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(request: Request, message_id: str = None, result: str = None) -> None:
    """
    Attach the webhook acknowledgement to this request's access log line.

    Args:
        request: FastAPI request object
        message_id: Inbound WhatsApp message id, when the event has one
        result: accepted, invalid_json or invalid_signature
    """
    request.state.webhook_log_data = {
        key: value
        for key, value in (("message_id", message_id), ("result", result))
        if value is not None
    }
