"""
Authentication dependencies

Bearer tokens are verified, never issued, here. When auth is disabled the
request context is read from X-User-Id, X-Role, X-School-Id and
X-Town-Class headers.
"""

from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..context import RequestContext, Role
from ..system import TownEconomySystem


# JWT Security
security = HTTPBearer(auto_error=False)


def get_system(request: Request) -> TownEconomySystem:
    """Dependency returning the system built by the app factory"""
    return request.app.state.system


def _role(value: Optional[str]) -> Role:
    try:
        return Role(value)
    except ValueError:
        raise HTTPException(status_code=401, detail="Invalid role")


def get_context(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security),
    system: TownEconomySystem = Depends(get_system)
) -> RequestContext:
    """Dependency that validates the caller and returns their request context"""
    config = system.config

    if not config.auth_enabled:
        user_id = request.headers.get("X-User-Id")
        school_id = request.headers.get("X-School-Id")
        if not user_id or not school_id:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return RequestContext(
            user_id=user_id,
            role=_role(request.headers.get("X-Role", Role.STUDENT.value)),
            school_id=school_id,
            town_class=request.headers.get("X-Town-Class")
        )

    if not credentials:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(credentials.credentials, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    school_id = payload.get("school_id")
    if not user_id or not school_id:
        raise HTTPException(status_code=401, detail="Invalid token")

    return RequestContext(
        user_id=user_id,
        role=_role(payload.get("role")),
        school_id=school_id,
        town_class=payload.get("town_class")
    )
