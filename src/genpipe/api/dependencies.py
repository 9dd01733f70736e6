"""Shared FastAPI dependencies for authenticated routes."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from fastapi import Cookie, Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from genpipe.config import settings
from genpipe.services.generation_orchestrator import GenerationOrchestrator

# Optional bearer scheme -- auto_error=False so we can fall back to cookies
_bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class CurrentUser:
    """Identity carried by a verified access token.

    Accounts are owned by the identity service; this API only trusts the
    token's ``sub`` and ``role`` claims.
    """

    user_id: UUID
    is_admin: bool = False


def verify_token(token: str) -> dict:
    """Decode and validate an access token.

    Raises HTTPException(401) if the token is invalid, expired, or not an
    access token.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )

    if payload.get("type", "access") != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Expected access token",
        )
    return payload


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    access_token: str | None = Cookie(default=None),
) -> CurrentUser:
    """Extract and validate the access token.

    Token sources (checked in order):
      1. Authorization: Bearer <token> header
      2. ``access_token`` cookie

    Raises HTTPException(401) if no valid token is found.
    """
    token: str | None = None

    if credentials is not None:
        token = credentials.credentials
    elif access_token is not None:
        token = access_token

    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(token)
    try:
        user_id = UUID(str(payload.get("sub")))
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token subject is not a user id",
        )
    return CurrentUser(user_id=user_id, is_admin=payload.get("role") == "admin")


async def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user


def get_orchestrator(request: Request) -> GenerationOrchestrator:
    """Return the orchestrator created in the application lifespan."""
    return request.app.state.orchestrator
