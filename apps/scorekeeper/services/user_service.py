"""
User service layer for user account database operations.
"""

from typing import Optional, Dict
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from scorekeeper.database.models import User
import logging

logger = logging.getLogger(__name__)


async def create_user(session: AsyncSession, name: str, email: Optional[str] = None) -> int:
    """
    Create a new user account.

    Args:
        session: Database session
        name: Display name
        email: Optional user email (unique, compared case-insensitively)

    Returns:
        User ID of the created user

    Raises:
        ValueError: If the name is blank or the email is already registered
    """
    if not name or not name.strip():
        raise ValueError("Name is required")

    if email:
        email = email.strip().lower()
        existing = await get_user_by_email(session, email)
        if existing:
            raise ValueError(f"Email {email} is already registered")

    new_user = User(name=name.strip(), email=email or None)
    session.add(new_user)
    await session.flush()
    logger.info(f"Created user {new_user.id}")
    return new_user.id


async def get_user_by_email(session: AsyncSession, email: str) -> Optional[Dict]:
    """
    Get user by email (case-insensitive).

    Args:
        session: Database session
        email: Email address

    Returns:
        User dictionary or None if not found
    """
    email = email.strip().lower()
    result = await session.execute(select(User).where(func.lower(User.email) == email).limit(1))
    user = result.scalar_one_or_none()
    return _user_to_dict(user) if user else None


async def get_user_by_id(session: AsyncSession, user_id: int) -> Optional[Dict]:
    """
    Get user by ID.

    Args:
        session: Database session
        user_id: User ID

    Returns:
        User dictionary or None if not found
    """
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    return _user_to_dict(user) if user else None


def _user_to_dict(user: User) -> Dict:
    """
    Convert a User ORM instance to a dictionary.

    Args:
        user: User ORM instance

    Returns:
        User dictionary
    """
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }
