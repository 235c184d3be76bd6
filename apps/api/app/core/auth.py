from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings

ANONYMOUS = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)
    name: str | None = None

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.removeprefix("Bearer ") if auth_header.startswith("Bearer ") else ""


def decode_claims(request: Request) -> dict[str, Any] | None:
    """Claims of the request's bearer token, or None when it is missing or invalid."""
    token = _bearer_token(request)
    if not token:
        return None
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    claims = decode_claims(request)
    if claims is None:
        return AuthUser(sub=ANONYMOUS, roles=["guest"])

    subject = str(claims.get("sub", ANONYMOUS))
    # CRM permissions travel as roles, e.g. "crm.opportunities.write"
    roles = claims.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    name = claims.get("name")
    return AuthUser(sub=subject, roles=[str(role) for role in roles], name=str(name) if name else None)
