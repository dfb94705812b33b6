"""Bearer-token identity.

Tokens are issued by the identity provider; this module only decodes them
into an ``Actor``. ``create_access_token`` exists for local tooling and tests.
"""

from datetime import datetime, timedelta, timezone

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError, jwt

from greia_platform.app.config import get_settings
from greia_platform.domain.schemas import Actor

settings = get_settings()


def create_access_token(user_id: str, role: str = "user", expires_minutes: int = 60) -> str:
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": user_id, "role": role, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> dict | None:
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


def actor_from_token(token: str) -> Actor | None:
    payload = decode_token(token)
    if not payload or "sub" not in payload:
        return None
    return Actor(id=payload["sub"], role=payload.get("role", "user"))


async def get_current_actor(request: Request) -> Actor:
    """Dependency: extract the calling actor from the Bearer token."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid token",
        )
    actor = actor_from_token(auth_header.removeprefix("Bearer "))
    if actor is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return actor


def require_role(*roles: str):
    """Factory: dependency that checks the actor has one of the required roles."""

    async def checker(actor: Actor = Depends(get_current_actor)):
        if actor.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions",
            )
        return actor

    return checker
