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

from bridgechat.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
request_logger = logging.getLogger("bridgechat.requests")


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """Adds ts (ISO-8601, UTC), level and the current request_id to every record."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            log_record["ts"] = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        log_record["level"] = record.levelname

        request_id = request_id_ctx.get()
        if request_id and "request_id" not in log_record:
            log_record["request_id"] = request_id


def setup_logging(log_level: str = "INFO"):
    """
    Send all application and uvicorn logs to stdout as JSON.

    The uvicorn access log is disabled; RequestLoggingMiddleware writes
    one line per request instead.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CustomJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))

    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = [handler]

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False
    logging.getLogger("uvicorn.access").disabled = True

    # httpx logs every carrier request URL at INFO
    logging.getLogger("httpx").setLevel(max(root.level, logging.WARNING))

    return root


def _route_template(request: Request) -> str:
    """Matched route path (e.g. /groups/{group_id}), falling back to the raw path."""
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One structured log line per request, plus HTTP metrics.

    Carrier webhook handlers attach message_sid and result through
    log_carrier_data; they are merged into the same line.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_ctx.set(request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            latency_seconds = time.perf_counter() - start_time

            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=_route_template(request),
                    status=response.status_code,
                    latency_seconds=latency_seconds,
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
                **getattr(request.state, "carrier_log_data", {}),
            }
            request_logger.log(_level_for_status(response.status_code), "Request completed", extra=log_data)
            return response
        finally:
            request_id_ctx.reset(token)


def _level_for_status(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def log_carrier_data(request: Request, message_sid: Optional[str] = None, result: Optional[str] = None):
    """Attach carrier webhook fields for the middleware's request log line."""
    request.state.carrier_log_data = {
        key: value
        for key, value in (("message_sid", message_sid), ("result", result))
        if value is not None
    }
