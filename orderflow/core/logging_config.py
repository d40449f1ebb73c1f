"""
Structured logging for the order flow service.

Every record is one JSON document. Besides the request trace (request id,
correlation id, signed-in user) a record carries an ``order`` section: the
fields bound with ``order_context`` plus any order keys found in the call
site's ``extra_fields``, so all lines of one unit of work can be joined on
the order number.
"""

import json
import logging
import logging.handlers
import os
import sys
import time
import traceback
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
order_var: ContextVar[Optional[Dict[str, Any]]] = ContextVar('order', default=None)

# ``extra_fields`` keys that move into the record's "order" section
ORDER_KEYS = ('order_id', 'order_number', 'item_id', 'stage', 'new_stage', 'department', 'operation')

SENSITIVE_FIELDS = ('password', 'token', 'api_key', 'secret', 'authorization', 'cookie')
REDACTED = "***REDACTED***"


def _redact(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: (REDACTED if any(s in key.lower() for s in SENSITIVE_FIELDS) else value)
        for key, value in fields.items()
    }


class StructuredFormatter(logging.Formatter):
    """JSON formatter; one line per record"""

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        document = {
            "@timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": os.getenv('ENVIRONMENT', 'development'),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }

        trace = {
            "request_id": request_id_var.get(),
            "correlation_id": correlation_id_var.get(),
            "user_id": user_id_var.get(),
        }
        trace = {key: value for key, value in trace.items() if value}
        if trace:
            document["trace"] = trace

        order = dict(order_var.get() or {})
        custom = dict(getattr(record, 'extra_fields', None) or {})
        for key in ORDER_KEYS:
            if key in custom:
                order[key] = custom.pop(key)
        if order:
            document["order"] = order
        if custom:
            document["custom"] = custom

        if record.exc_info and record.exc_info[0] is not None:
            error_type, error, _ = record.exc_info
            document["error"] = {
                "type": error_type.__name__,
                # Order flow errors carry the title shown to the user
                "title": getattr(error, 'title', None),
                "message": str(error),
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(document, default=str)


class SecurityFilter(logging.Filter):
    """Redacts credentials from structured payloads"""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = getattr(record, 'extra_fields', None)
        if isinstance(fields, dict):
            record.extra_fields = _redact(fields)
        return True


def setup_logging(service_name: str, level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Route every logger through the JSON formatter

    Args:
        service_name: Name reported in every record
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional rotating file written next to stdout
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers = []

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.handlers.RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5))
    for handler in handlers:
        handler.setFormatter(StructuredFormatter(service_name))
        handler.addFilter(SecurityFilter())
        root_logger.addHandler(handler)

    # Per-request and per-statement chatter
    for noisy in ('uvicorn.access', 'httpx', 'sqlalchemy.engine'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized",
        extra={'extra_fields': {'service': service_name, 'level': level, 'log_file': log_file}}
    )


class LoggerAdapter(logging.LoggerAdapter):
    """Merges the adapter's bound fields into each call's ``extra_fields``"""

    def process(self, msg, kwargs):
        extra = dict(kwargs.get('extra') or {})
        fields = {**self.extra, **(extra.get('extra_fields') or {})}
        if fields:
            extra['extra_fields'] = fields
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str, **bound) -> LoggerAdapter:
    return LoggerAdapter(logging.getLogger(name), bound)


@contextmanager
def order_context(**fields) -> Iterator[None]:
    """Tag every record logged inside the block with the given order fields."""
    merged = {**(order_var.get() or {}), **{k: v for k, v in fields.items() if v is not None}}
    token = order_var.set(merged)
    try:
        yield
    finally:
        order_var.reset(token)


def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    user_id: Optional[str] = None
) -> None:
    if request_id:
        request_id_var.set(request_id)
    if correlation_id:
        correlation_id_var.set(correlation_id)
    if user_id:
        user_id_var.set(user_id)


def generate_request_id() -> str:
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs every API call with its duration and echoes the request id
    back in ``X-Request-ID``
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID') or generate_request_id()
        set_request_context(request_id=request_id, correlation_id=request.headers.get('X-Correlation-ID'))

        logger = get_logger(__name__, method=request.method, path=request.url.path)
        started = time.time()
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                f"{request.method} {request.url.path} failed",
                exc_info=True,
                extra={'extra_fields': {'duration_ms': round((time.time() - started) * 1000, 2)}}
            )
            raise

        # Health checks log at debug level
        log = logger.debug if request.url.path.startswith("/health") else logger.info
        log(
            f"{request.method} {request.url.path} -> {response.status_code}",
            extra={'extra_fields': {
                'status_code': response.status_code,
                'duration_ms': round((time.time() - started) * 1000, 2),
            }}
        )
        response.headers['X-Request-ID'] = request_id
        return response
