from __future__ import annotations

import time
from typing import Any, Optional

import jwt

from common_core.config import settings

ALGORITHM = "HS256"
# tolerated clock drift between the identity service and this host
CLOCK_LEEWAY_SEC = 30


def issue_jwt(sub: str, roles: list[str], ttl_minutes: Optional[int] = None) -> str:
    """Mint a token the way the identity service does; used by tools and tests."""
    now = int(time.time())
    ttl = settings.jwt_ttl_minutes if ttl_minutes is None else ttl_minutes
    claims = {
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": now,
        "exp": now + ttl * 60,
        "sub": sub,
        "roles": roles,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=ALGORITHM)


def verify_jwt(token: str) -> dict[str, Any]:
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGORITHM],
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
        leeway=CLOCK_LEEWAY_SEC,
        options={"require": ["exp", "sub"]},
    )


def roles_of(claims: dict[str, Any]) -> list[str]:
    """Roles claim as a list; some issuers send a comma separated string."""
    raw = claims.get("roles") or []
    if isinstance(raw, str):
        raw = raw.split(",")
    return [r.strip() for r in raw if r and r.strip()]
