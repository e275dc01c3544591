"""
Logging setup for Regrain

JSON lines for the service, plain text for the CLI and local runs. Every line
logged while an HTTP request is in flight carries that request's id.
"""
import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from starlette.datastructures import Headers, MutableHeaders

REQUEST_ID_HEADER = "X-Request-ID"

request_id_context: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

# Attributes every LogRecord has; anything else arrived through `extra`
_RECORD_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_TRACE_ATTRS = {
    "thread": "thread",
    "thread_name": "threadName",
    "process": "process",
    "filename": "filename",
    "function": "funcName",
    "line_number": "lineno",
}


class StructuredFormatter(logging.Formatter):
    """One JSON object per log line"""

    def __init__(self, service_name: str = "regrain", include_trace: bool = False):
        super().__init__()
        self.service_name = service_name
        self.include_trace = include_trace

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry: Dict[str, Any] = {
            "timestamp": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }

        request_id = request_id_context.get()
        if request_id:
            entry["request_id"] = request_id

        if self.include_trace:
            entry.update({key: getattr(record, attr) for key, attr in _TRACE_ATTRS.items()})

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info),
            }

        extra = {key: value for key, value in vars(record).items() if key not in _RECORD_ATTRS}
        if extra:
            entry["extra"] = extra

        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable lines, tagged with the request id when there is one"""

    def __init__(self):
        super().__init__('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        request_id = request_id_context.get()
        return f"{line} [{request_id}]" if request_id else line


class RequestIdMiddleware:
    """ASGI middleware: reuse or mint X-Request-ID and echo it on the response"""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request_id = Headers(scope=scope).get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        token = request_id_context.set(request_id)

        async def send_with_request_id(message):
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[REQUEST_ID_HEADER] = request_id
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            request_id_context.reset(token)


def setup_logging(
    service_name: str = "regrain",
    level: str = "INFO",
    structured: bool = True,
    include_trace: bool = False
) -> None:
    """Route all logging to stdout with the chosen formatter"""
    handler = logging.StreamHandler(sys.stdout)
    if structured:
        handler.setFormatter(StructuredFormatter(service_name=service_name, include_trace=include_trace))
    else:
        handler.setFormatter(TextFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # Access logs duplicate log_api_call
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def log_api_call(logger: logging.Logger, method: str, endpoint: str,
                 status_code: int, duration_ms: float, **kwargs):
    """Log a completed HTTP request"""
    logger.info(
        f"{method} {endpoint} -> {status_code}",
        extra={
            "event_type": "api_call",
            "http_method": method,
            "endpoint": endpoint,
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
            **kwargs
        }
    )


def log_migration(logger: logging.Logger, ref_id: Optional[str], applied_steps: List[str],
                  remaining_legacy_fields: List[str], duration_ms: float, **kwargs):
    """Log one query record passing through the migration engine"""
    level = logging.WARNING if remaining_legacy_fields else logging.INFO
    logger.log(
        level,
        f"Query {ref_id} migrated" if applied_steps else f"Query {ref_id} already current",
        extra={
            "event_type": "query_migration",
            "ref_id": ref_id,
            "applied_steps": applied_steps,
            "remaining_legacy_fields": remaining_legacy_fields,
            "duration_ms": round(duration_ms, 2),
            **kwargs
        }
    )
