from __future__ import annotations

from typing import Any

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from attendance_engine.errors import ApiError
from attendance_engine.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

ADMIN_ROLES = frozenset({"admin", "payroll_admin"})


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    if not settings.jwt_secret:
        raise ApiError(status_code=503, code="AUTH_NOT_CONFIGURED", message="Token verification is not configured.")
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")

    if payload.get("role") not in ADMIN_ROLES:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")

    return payload


def require_admin(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict[str, Any]:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    payload = decode_token(credentials.credentials)

    request.state.actor = "admin"
    request.state.actor_id = str(payload.get("username") or payload.get("sub") or "admin")
    return payload
