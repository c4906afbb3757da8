"""
Structured logging configuration
Every record is rendered as one JSON object with the request, actor and
order context of the operation that emitted it.
"""

import logging
import os
import re
import sys
import json
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from contextvars import ContextVar
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
actor_id_var: ContextVar[Optional[str]] = ContextVar('actor_id', default=None)
order_id_var: ContextVar[Optional[str]] = ContextVar('order_id', default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "correlation_id": correlation_id_var,
    "actor_id": actor_id_var,
    "order_id": order_id_var,
}


class StructuredFormatter(logging.Formatter):
    """JSON formatter; one object per line, ready for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "@timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": os.getenv('SERVICE_NAME', 'settlement-service'),
            "environment": os.getenv('ENVIRONMENT', 'development'),
            "version": os.getenv('SERVICE_VERSION', '1.0.0'),
        }

        trace_context = self._get_trace_context()
        if trace_context:
            log_obj["trace"] = trace_context

        log_obj["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
            "module": record.module
        }

        if record.exc_info:
            log_obj["error"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "stacktrace": traceback.format_exception(*record.exc_info)
            }

        if hasattr(record, 'extra_fields'):
            log_obj["custom"] = record.extra_fields

        return json.dumps(log_obj, default=str)

    def _get_trace_context(self) -> Optional[Dict[str, Any]]:
        context = {}
        for key, var in _CONTEXT_VARS.items():
            value = var.get()
            if value:
                context[key] = value
        return context or None


class SecurityFilter(logging.Filter):
    """Redacts processor secrets and bearer tokens from log messages."""

    PATTERNS = [
        re.compile(r"(sk|rk)_(live|test)_[A-Za-z0-9]+"),
        re.compile(r"whsec_[A-Za-z0-9]+"),
        re.compile(r"(?i)bearer\s+[A-Za-z0-9\-_\.]+"),
        re.compile(r"(?i)(password|secret|api_key|token)=\S+"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern in self.PATTERNS:
            redacted = pattern.sub("***REDACTED***", redacted)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(service_name: str, level: str = "INFO", stream=None) -> None:
    """
    Install the JSON formatter and the redaction filter on the root logger.

    Args:
        service_name: Name reported in every record
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        stream: Output stream, stdout when omitted
    """
    os.environ["SERVICE_NAME"] = service_name

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.handlers = []

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(StructuredFormatter())
    handler.addFilter(SecurityFilter())
    root_logger.addHandler(handler)

    # third-party chatter; payment SDK logs can carry request bodies
    for name, lib_level in (
        ("uvicorn", logging.WARNING),
        ("sqlalchemy.engine", logging.WARNING),
        ("stripe", logging.WARNING),
        ("httpx", logging.WARNING),
        ("alembic", logging.INFO),
    ):
        logging.getLogger(name).setLevel(lib_level)

    root_logger.info(
        "Logging initialized",
        extra={"extra_fields": {"service": service_name, "level": level}}
    )


class LoggerAdapter(logging.LoggerAdapter):
    """Injects the current request/actor/order context into every record."""

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        for key, var in _CONTEXT_VARS.items():
            value = var.get()
            if value:
                extra[key] = value
        kwargs['extra'] = extra
        return msg, kwargs


def get_logger(name: str) -> LoggerAdapter:
    """
    Get a logger instance with request context support

    Args:
        name: Logger name (usually __name__)

    Returns:
        LoggerAdapter with context injection
    """
    return LoggerAdapter(logging.getLogger(name), {})


def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    actor_id: Optional[Any] = None,
    order_id: Optional[Any] = None,
) -> None:
    """Set the tracing context for the current request or callback."""
    if request_id:
        request_id_var.set(request_id)
    if correlation_id:
        correlation_id_var.set(correlation_id)
    if actor_id is not None:
        actor_id_var.set(str(actor_id))
    if order_id is not None:
        order_id_var.set(str(order_id))


def generate_request_id() -> str:
    return str(uuid.uuid4())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Logs one line per request with its outcome and latency.

    The request id is taken from X-Request-ID when the caller sends one and is
    echoed back on the response. Actor and order context never leak from one
    request into the next.
    """

    QUIET_PATHS = ("/health", "/metrics")

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or generate_request_id()
        tokens = [
            (request_id_var, request_id_var.set(request_id)),
            (correlation_id_var, correlation_id_var.set(request.headers.get("X-Correlation-ID"))),
            (actor_id_var, actor_id_var.set(None)),
            (order_id_var, order_id_var.set(None)),
        ]
        logger = get_logger(__name__)
        fields = {"method": request.method, "path": request.url.path}
        quiet = request.url.path.startswith(self.QUIET_PATHS)
        start_time = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception:
                fields["duration_ms"] = round((time.perf_counter() - start_time) * 1000, 2)
                logger.error(
                    f"Request failed: {request.method} {request.url.path}",
                    exc_info=True,
                    extra={"extra_fields": fields}
                )
                raise

            fields["status_code"] = response.status_code
            fields["duration_ms"] = round((time.perf_counter() - start_time) * 1000, 2)
            log = logger.debug if quiet else logger.info
            log(
                f"{request.method} {request.url.path} -> {response.status_code}",
                extra={"extra_fields": fields}
            )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            for var, token in reversed(tokens):
                var.reset(token)
