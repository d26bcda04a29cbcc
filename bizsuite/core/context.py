from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from bizsuite.core.config import get_settings


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None
    org_id: str | None
    company_id: str | None
    currency: str


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = getattr(request.state, "correlation_id", None)
        request.state.context = RequestContext(
            request_id=correlation_id or "",
            correlation_id=correlation_id or "",
            user_id=None,
            org_id=None,
            company_id=None,
            currency=request.headers.get("x-currency", get_settings().default_currency),
        )
        response = await call_next(request)
        response.headers["x-request-id"] = request.state.context.request_id
        return response
