"""
Authentication service: JWT access tokens.
"""

import os
from datetime import timedelta
from typing import Dict, Optional
from jose import JWTError, jwt
from scorekeeper.utils.datetime_utils import utcnow
import logging

logger = logging.getLogger(__name__)

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60"))


def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a signed access token.

    Args:
        data: Claims to encode (must include user_id for API use)
        expires_delta: Lifetime; defaults to ACCESS_TOKEN_EXPIRE_MINUTES

    Returns:
        Encoded JWT
    """
    to_encode = data.copy()
    expire = utcnow() + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode["exp"] = expire
    return jwt.encode(to_encode, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)


def verify_token(token: str) -> Optional[Dict]:
    """
    Decode and validate an access token.

    Returns:
        The token payload, or None if the token is invalid or expired
    """
    try:
        return jwt.decode(token, JWT_SECRET_KEY, algorithms=[JWT_ALGORITHM])
    except JWTError as e:
        logger.debug(f"Rejected token: {e}")
        return None
