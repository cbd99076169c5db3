"""Authentication utilities for the Sogolo backend.

Sessions are issued by Supabase Auth. The backend only verifies the access
token and turns its claims into an Actor once per request.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from sogolo.escrow.roles import Actor, Role

from .config import Settings, get_settings

# Bearer token scheme; missing credentials are reported as 401 below
security = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def decode_token(token: str, settings: Settings) -> dict:
    """Decode and validate a Supabase access token."""
    try:
        return jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            options={"verify_aud": settings.jwt_audience is not None},
        )
    except JWTError:
        raise _unauthorized("Invalid or expired token")


def actor_from_claims(payload: dict, settings: Settings) -> Actor:
    """Build the request's Actor from token claims.

    The role claim lives in ``app_metadata``, which only the service role
    can write, so users cannot grant themselves admin.
    """
    actor_id = payload.get("sub")
    if not actor_id:
        raise _unauthorized("Invalid token payload")

    app_metadata = payload.get("app_metadata") or {}
    is_admin = app_metadata.get("role") == settings.admin_role
    return Actor(
        id=actor_id,
        role=Role.ADMIN if is_admin else Role.USER,
        kyc_status=app_metadata.get("kyc_status"),
    )


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(security)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> Actor:
    """Get the authenticated actor from the Authorization header."""
    if not credentials:
        raise _unauthorized("Not authenticated - provide Authorization header")
    payload = decode_token(credentials.credentials, settings)
    return actor_from_claims(payload, settings)


CurrentActor = Annotated[Actor, Depends(get_current_actor)]
