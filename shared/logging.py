"""
Shared logging configuration for the Service Map caching proxy.

Every log line carries the service name and, inside a request, the request
id, the calling client and the endpoint type being proxied.
"""

import sys
import structlog
import logging
import uuid
from typing import Any, Callable, Dict, Optional
from contextvars import ContextVar

from opentelemetry import trace

# Request-scoped correlation
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
client_id_var: ContextVar[Optional[str]] = ContextVar('client_id', default=None)
endpoint_type_var: ContextVar[Optional[str]] = ContextVar('endpoint_type', default=None)

Processor = Callable[[Any, str, Dict[str, Any]], Dict[str, Any]]


def configure_logging(service_name: str, log_level: str = "info", log_format: str = "json") -> None:
    """Configure structured logging for a service.

    ``log_format`` is ``json`` for machine-readable output or ``console`` for
    local development.
    """
    renderer = (
        structlog.dev.ConsoleRenderer()
        if log_format == "console"
        else structlog.processors.JSONRenderer()
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            service_context(service_name),
            add_trace_context,
            add_request_context,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )


def service_context(service_name: str) -> Processor:
    """Processor stamping the configured service name on each event."""

    def add_service_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return add_service_context


def add_trace_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add trace context to log events."""
    current_span = trace.get_current_span()
    if current_span and current_span.is_recording():
        span_context = current_span.get_span_context()
        if span_context.trace_id != 0:
            event_dict["trace_id"] = f"{span_context.trace_id:032x}"
        if span_context.span_id != 0:
            event_dict["span_id"] = f"{span_context.span_id:016x}"

    return event_dict


def add_request_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add request id, client and endpoint type when set."""
    for name, var in (
        ("request_id", request_id_var),
        ("client_id", client_id_var),
        ("endpoint_type", endpoint_type_var),
    ):
        value = var.get()
        if value and name not in event_dict:
            event_dict[name] = value

    return event_dict


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context, generating one when the caller sent none."""
    if not request_id:
        request_id = str(uuid.uuid4())
    request_id_var.set(request_id)
    return request_id


def set_client_context(client_id: Optional[str] = None, endpoint_type: Optional[str] = None):
    """Set the calling client and the proxied endpoint type in logging context."""
    if client_id:
        client_id_var.set(client_id)
    if endpoint_type:
        endpoint_type_var.set(endpoint_type)


def clear_context():
    """Clear all request-scoped context."""
    request_id_var.set(None)
    client_id_var.set(None)
    endpoint_type_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance, e.g. ``get_logger("proxy.cache_orchestrator")``."""
    return structlog.get_logger(name)
