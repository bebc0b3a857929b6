"""Correlation ID middleware for request tracing."""

import logging
import uuid
from contextvars import ContextVar

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

CORRELATION_HEADER = "X-Correlation-ID"

# Set per request; empty outside a request (scheduled jobs, scripts)
correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Current request's correlation ID, or an empty string outside a request."""
    return correlation_id_var.get()


def generate_correlation_id() -> str:
    return str(uuid.uuid4())[:16]


class CorrelationIDFilter(logging.Filter):
    """Adds ``correlation_id`` to every record ("-" outside a request).

    Attach to handlers so formats can use ``%(correlation_id)s``.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = get_correlation_id() or "-"
        return True


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Reuse the caller's X-Correlation-ID or generate one, expose it to
    logging for the duration of the request and echo it in the response.

    Outgoing collaborator calls forward it, so one ranking operation can be
    followed across services.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or generate_correlation_id()
        token = correlation_id_var.set(correlation_id)

        try:
            response = await call_next(request)
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            correlation_id_var.reset(token)
