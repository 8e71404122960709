"""
Bearer-token authentication.

Tokens are issued elsewhere; this service only verifies them. Claims:
  sub        actor id (string)
  role       ADMIN | EVENT_MANAGER | STUDENT
  school_id  event managers only, scopes the students they may register
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import get_settings
from app.core.exceptions import ValidationError
from app.core.logging import bind_actor
from app.services.actors import Actor, AdminActor, StudentActor, actor_from_claims

settings = get_settings()
bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Create a signed access token (used by tests, load scripts and tooling)."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except jwt.PyJWTError:
        return None


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    """FastAPI dependency: resolve the bearer token into an Actor."""
    if credentials is None:
        raise _unauthorized("Not authenticated")

    payload = decode_access_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Invalid or expired token")

    try:
        actor_id = int(payload["sub"])
        school_id = payload.get("school_id")
        actor = actor_from_claims(
            payload.get("role", ""),
            actor_id,
            int(school_id) if school_id is not None else None,
        )
    except (KeyError, TypeError, ValueError, ValidationError):
        raise _unauthorized("Invalid token claims")

    bind_actor(actor.actor_id, actor.role.value)
    return actor


async def require_admin(actor: Actor = Depends(get_current_actor)) -> AdminActor:
    actor.require_admin()
    return actor


async def require_student(actor: Actor = Depends(get_current_actor)) -> StudentActor:
    if not isinstance(actor, StudentActor):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Students only")
    return actor
