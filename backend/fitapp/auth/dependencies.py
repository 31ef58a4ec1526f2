"""FastAPI authentication dependencies for route protection."""

import uuid

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from fitapp.auth.jwt import decode_token
from fitapp.database import get_db
from fitapp.errors import AuthenticationError
from fitapp.models.user import User
from fitapp.services.subscription_store import load_user_by_id

# Missing credentials are reported by get_current_user so they get the error envelope
_bearer_scheme = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Extract and validate the Bearer token, then return the authenticated user.

    Raises:
        AuthenticationError: If the token is missing, invalid, expired, of the
            wrong type, revoked, or the user is missing or inactive.
    """
    if credentials is None:
        raise AuthenticationError("Authentication required")

    try:
        payload = decode_token(credentials.credentials)
    except JWTError:
        raise AuthenticationError("Could not validate credentials", code="INVALID_TOKEN") from None

    if payload.get("type") != "access":
        raise AuthenticationError("Invalid token type", code="INVALID_TOKEN")

    sub: str | None = payload.get("sub")
    try:
        user_id = uuid.UUID(sub) if sub else None
    except ValueError:
        user_id = None
    if user_id is None:
        raise AuthenticationError("Could not validate credentials", code="INVALID_TOKEN")

    user = await load_user_by_id(db, user_id)
    if user is None:
        raise AuthenticationError("Could not validate credentials", code="INVALID_TOKEN")

    if not user.is_active:
        raise AuthenticationError("User account is inactive", code="ACCOUNT_INACTIVE")

    # Bumping users.token_version revokes every token issued before it
    if payload.get("tv", 0) != user.token_version:
        raise AuthenticationError("Token has been revoked", code="TOKEN_REVOKED")

    return user
