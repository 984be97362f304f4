"""
Authentication boundary for the workflow API.

Login and user management live outside this service. Callers present a
bearer JWT signed with the shared SECRET_KEY; this module verifies it and
exposes the caller (``sub``) and tenant (``org_id``) to the routes.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials as HTTPAuthCredentials
from pydantic import BaseModel

from app.config import get_settings

ALGORITHM = "HS256"

# auto_error=False so a missing header yields 401 rather than FastAPI's 403
security_scheme = HTTPBearer(auto_error=False)


class TokenPayload(BaseModel):
    """JWT token payload structure."""
    sub: str  # user_id
    email: str
    org_id: str
    exp: datetime
    iat: datetime
    type: str  # "access" or "refresh"


def create_access_token(
    user_id: str,
    email: str,
    org_id: str,
    expires_minutes: Optional[int] = None,
) -> str:
    """
    Create a JWT access token.

    Used by tests and local tooling; production tokens are issued by the
    identity service with the same claims.

    Args:
        user_id: User ID
        email: User email
        org_id: Organization ID
        expires_minutes: Override for ACCESS_TOKEN_EXPIRE_MINUTES

    Returns:
        Encoded JWT token
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expire = now + timedelta(minutes=expires_minutes or settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    payload = {
        "sub": user_id,
        "email": email,
        "org_id": org_id,
        "type": "access",
        "iat": now,
        "exp": expire,
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str) -> TokenPayload:
    """
    Verify and decode a JWT token.

    Raises:
        HTTPException: If token is invalid or expired
    """
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    email = payload.get("email")
    org_id = payload.get("org_id")
    if user_id is None or email is None or org_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return TokenPayload(
        sub=user_id,
        email=email,
        org_id=org_id,
        exp=datetime.fromtimestamp(payload.get("exp"), tz=timezone.utc),
        iat=datetime.fromtimestamp(payload.get("iat"), tz=timezone.utc),
        type=payload.get("type", "access"),
    )


async def get_current_user(
    credentials: Optional[HTTPAuthCredentials] = Depends(security_scheme),
) -> TokenPayload:
    """
    FastAPI dependency to get the current caller from the bearer token.

    Raises:
        HTTPException: If token is missing, invalid, or expired
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing authorization header",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_payload = verify_token(credentials.credentials)

    if token_payload.type != "access":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token type",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return token_payload
