from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from bizsuite.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    org_id: str | None = None
    company_id: str | None = None


def _optional_claim(payload: dict, key: str) -> str | None:
    value = payload.get(key)
    if value is None or value == "":
        return None
    return str(value)


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    user = AuthUser(
        sub=subject,
        roles=[str(role) for role in roles],
        org_id=_optional_claim(payload, "org_id"),
        company_id=_optional_claim(payload, "company_id"),
    )
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
        context.org_id = user.org_id
        context.company_id = user.company_id
    return user
