"""
Authentication dependencies for FastAPI routes.

Every sharing and match endpoint acts on behalf of the user named in the
bearer token; there are no anonymous reads.
"""

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from scorekeeper.services import auth_service, user_service
from scorekeeper.database.db import get_db_session

security = HTTPBearer()


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    session: AsyncSession = Depends(get_db_session),
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> dict:
    """
    Resolve the bearer token to a user.

    Returns:
        User dictionary (id, name, email, created_at)

    Raises:
        HTTPException: 401 if the token is invalid, carries no user id, or
            names a user that no longer exists
    """
    payload = auth_service.verify_token(credentials.credentials)
    if payload is None:
        raise _unauthorized("Invalid authentication token")

    user_id = payload.get("user_id")
    if user_id is None:
        raise _unauthorized("Invalid token payload")

    user = await user_service.get_user_by_id(session, int(user_id))
    if user is None:
        raise _unauthorized("User not found")
    return user


async def require_user(user: dict = Depends(get_current_user)) -> dict:
    """Require any authenticated user."""
    return user
