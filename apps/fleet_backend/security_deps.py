from __future__ import annotations

import jwt
from fastapi import Depends, HTTPException, Request

from common_core.rbac import has_perm
from common_core.security import roles_of, verify_jwt


def get_actor(request: Request):
    auth = request.headers.get("Authorization") or ""
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="MISSING_TOKEN")
    token = auth.split(" ", 1)[1].strip()
    try:
        return verify_jwt(token)
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail="INVALID_TOKEN")


def require_perm(perm: str):
    def _dep(claims=Depends(get_actor)):
        if not has_perm(roles_of(claims), perm):
            raise HTTPException(status_code=403, detail="FORBIDDEN")
        return claims

    return _dep
