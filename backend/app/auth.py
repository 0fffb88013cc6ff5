from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from backend.app.settings import Settings

logger = logging.getLogger("followup_engine.auth")

security = HTTPBearer(auto_error=False)

# admin: operator console. service: the outbound call scheduler.
KNOWN_ROLES = frozenset({"admin", "service"})


@dataclass(frozen=True)
class AuthContext:
    subject: str
    roles: frozenset[str]


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def decode_token(token: str, settings: Settings) -> dict[str, Any]:
    try:
        return jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub"]},
        )
    except jwt.InvalidTokenError as exc:
        logger.warning("auth_token_rejected error=%s", exc)
        raise _unauthorized("invalid auth token") from exc


def context_from_claims(claims: dict[str, Any]) -> AuthContext:
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise _unauthorized("token missing subject")
    roles = claims.get("roles", [])
    if not isinstance(roles, list):
        raise _unauthorized("token roles must be a list")
    granted = frozenset(str(role).strip() for role in roles) & KNOWN_ROLES
    if not granted:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="token has no recognised roles",
        )
    return AuthContext(subject=subject.strip(), roles=granted)


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    settings = get_settings(request)
    if not settings.auth_enabled:
        return AuthContext(subject="dev-local", roles=KNOWN_ROLES)
    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("missing bearer token")
    return context_from_claims(decode_token(credentials.credentials, settings))


def require_roles(*required_roles: str) -> Callable[[AuthContext], AuthContext]:
    required = frozenset(role.strip() for role in required_roles if role.strip())

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if required and context.roles.isdisjoint(required):
            logger.info(
                "auth_forbidden subject=%s roles=%s required=%s",
                context.subject,
                ",".join(sorted(context.roles)),
                ",".join(sorted(required)),
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"insufficient role. required any of: {sorted(required)}",
            )
        return context

    return dependency
