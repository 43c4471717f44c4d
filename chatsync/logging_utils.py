"""
Structured JSON logging.

Every line carries ts and level. Lines logged while handling an HTTP request
also carry request_id; lines logged from a session's consumer or sync task
carry session_name, so one account's activity can be followed across
requests and background work.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from chatsync.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
session_name_ctx: ContextVar[Optional[str]] = ContextVar("session_name", default=None)

# Successful requests to these paths log at DEBUG
_QUIET_PATHS = frozenset({"/metrics", "/health/live", "/health/ready"})


def bind_session(session_name: str) -> None:
    """
    Tag every log line of the current task with *session_name*.

    Call at the top of a task body; the binding dies with the task.
    """
    session_name_ctx.set(session_name)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding ISO-8601 ts, level and the bound context ids."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            now = datetime.now(timezone.utc)
            log_record["ts"] = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
        log_record["level"] = record.levelname

        for key, ctx in (("request_id", request_id_ctx), ("session_name", session_name_ctx)):
            if key not in log_record:
                value = ctx.get()
                if value:
                    log_record[key] = value


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers through one JSON handler.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware replaces the access log
    logging.getLogger("uvicorn.access").disabled = True

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One JSON line per HTTP request, plus request metrics.

    Log keys:
    - request_id, method, path, status, latency_ms

    Session routes also add (via log_session_data):
    - session_name: session the request addressed
    - result: outcome (started, already_running, sent, sync_started, ...)

    WebSocket traffic on /events is not HTTP and bypasses this middleware.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        started = time.perf_counter()

        try:
            response = await call_next(request)
            elapsed = time.perf_counter() - started
            response.headers["X-Request-ID"] = request_id

            path = request.url.path
            if path != "/metrics":
                record_http_request(request.method, path, response.status_code, elapsed)

            log_data = {
                "method": request.method,
                "path": path,
                "status": response.status_code,
                "latency_ms": round(elapsed * 1000, 2),
            }
            log_data.update(getattr(request.state, "session_log_data", {}))

            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            elif path in _QUIET_PATHS:
                level = logging.DEBUG
            else:
                level = logging.INFO
            logging.getLogger("chatsync.requests").log(level, "Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_session_data(request: Request, session_name: Optional[str] = None, result: Optional[str] = None) -> None:
    """
    Attach the addressed session and the outcome to this request's log line.

    Args:
        request: FastAPI request object
        session_name: Session addressed by the request
        result: Short outcome tag
    """
    data = {}
    if session_name is not None:
        data["session_name"] = session_name
    if result is not None:
        data["result"] = result
    request.state.session_log_data = data
