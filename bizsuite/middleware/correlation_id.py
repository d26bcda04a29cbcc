from __future__ import annotations

import logging
import re
import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from bizsuite.context import reset_correlation_id, set_correlation_id


CORRELATION_HEADER = "x-correlation-id"
# Correlation ids end up in log lines, audit entries and event envelopes.
_VALID_CORRELATION_ID = re.compile(r"[A-Za-z0-9._:-]{1,128}")

logger = logging.getLogger("bizsuite.request")


def is_well_formed_correlation_id(value: str) -> bool:
    return _VALID_CORRELATION_ID.fullmatch(value) is not None


def resolve_correlation_id(raw: str | None) -> str:
    """Return the caller's correlation id when it is well formed, else a fresh one."""

    if raw and is_well_formed_correlation_id(raw):
        return raw
    generated = str(uuid.uuid4())
    if raw:
        logger.debug("correlation_id.replaced", extra={"error": f"rejected inbound value of length {len(raw)}"})
    return generated


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers.get(CORRELATION_HEADER))
        request.state.correlation_id = correlation_id
        token = set_correlation_id(correlation_id)
        span = trace.get_current_span()
        if span is not None and span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
