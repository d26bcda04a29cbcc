from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from bizsuite.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("bizsuite.request")


def _tenant_fields(request: Request) -> dict[str, Any]:
    # Filled in by the auth dependency once the bearer token is decoded.
    context = getattr(request.state, "context", None)
    if context is None:
        return {}
    return {
        "user_id": context.user_id,
        "org_id": context.org_id,
        "company_id": context.company_id,
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One ``http.request`` line per request, tagged with the caller's tenant.

    Tenant ids go to the log line only; metric labels stay limited to
    method, templated path and status.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        path = resolve_http_path_label(request)

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            elapsed = time.perf_counter() - started
            observe_http_request(method=method, path=path, status=500, duration=elapsed)
            logger.error(
                "http.error",
                exc_info=True,
                extra={
                    "method": method,
                    "path": path,
                    "status_code": 500,
                    "duration_ms": round(elapsed * 1000, 2),
                    **_tenant_fields(request),
                },
            )
            raise

        elapsed = time.perf_counter() - started
        observe_http_request(method=method, path=path, status=response.status_code, duration=elapsed)
        log = logger.warning if response.status_code >= 500 else logger.info
        log(
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": round(elapsed * 1000, 2),
                **_tenant_fields(request),
            },
        )
        return response
