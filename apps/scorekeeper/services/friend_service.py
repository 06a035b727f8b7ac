"""
Friend service: friendships and per-direction sharing settings.

A friendship is stored once (user1_id < user2_id) and carries two
FriendSetting rows, one owned by each side. Settings are never assumed
symmetric: what one user sends is decided by their own row, what the other
accepts is decided by theirs.
"""

from typing import Dict, Optional, Set, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, and_, or_, case
from scorekeeper.database.models import Friend, FriendSetting, SharePermission, User
from scorekeeper.services.errors import NotFoundError
import logging

logger = logging.getLogger(__name__)

SETTING_FIELDS = (
    "auto_share_matches",
    "share_players_with_match",
    "include_location_with_match",
    "default_permission_for_matches",
    "default_permission_for_players",
    "default_permission_for_location",
    "default_permission_for_game",
    "allow_shared_games",
    "allow_shared_matches",
    "allow_shared_players",
    "allow_shared_location",
    "auto_accept_matches",
    "auto_accept_players",
    "auto_accept_location",
    "auto_accept_game",
)

PERMISSION_FIELDS = frozenset(f for f in SETTING_FIELDS if f.startswith("default_permission_for_"))


def _ordered(user_id: int, other_user_id: int) -> Tuple[int, int]:
    return (user_id, other_user_id) if user_id < other_user_id else (other_user_id, user_id)


async def get_friendship(
    session: AsyncSession, user_id: int, other_user_id: int
) -> Optional[Friend]:
    """
    Get the friendship row between two users, if any.

    Args:
        session: Database session
        user_id: First user ID
        other_user_id: Second user ID

    Returns:
        Friend or None
    """
    u1, u2 = _ordered(user_id, other_user_id)
    result = await session.execute(
        select(Friend).where(and_(Friend.user1_id == u1, Friend.user2_id == u2))
    )
    return result.scalar_one_or_none()


async def are_friends(session: AsyncSession, user_id: int, other_user_id: int) -> bool:
    """Check if two users are friends."""
    return await get_friendship(session, user_id, other_user_id) is not None


async def get_friend_user_ids(session: AsyncSession, user_id: int) -> Set[int]:
    """Get the set of all friend user_ids for a given user."""
    result = await session.execute(
        select(
            case(
                (Friend.user1_id == user_id, Friend.user2_id),
                else_=Friend.user1_id,
            )
        ).where(or_(Friend.user1_id == user_id, Friend.user2_id == user_id))
    )
    return set(result.scalars().all())


async def create_friendship(
    session: AsyncSession, user_id: int, other_user_id: int
) -> Friend:
    """
    Create a friendship along with a default settings row for each side.

    Args:
        session: Database session
        user_id: User initiating the friendship
        other_user_id: The other user

    Returns:
        The new Friend row

    Raises:
        ValueError: If befriending yourself or already friends
        NotFoundError: If the other user does not exist
    """
    if user_id == other_user_id:
        raise ValueError("Cannot befriend yourself")

    other = await session.get(User, other_user_id)
    if other is None:
        raise NotFoundError("User not found")

    if await are_friends(session, user_id, other_user_id):
        raise ValueError("Already friends with this user")

    u1, u2 = _ordered(user_id, other_user_id)
    friend = Friend(user1_id=u1, user2_id=u2)
    session.add(friend)
    await session.flush()

    session.add_all([
        FriendSetting(friend_id=friend.id, user_id=u1),
        FriendSetting(friend_id=friend.id, user_id=u2),
    ])
    await session.flush()
    await session.refresh(friend)

    logger.info(f"Created friendship {friend.id} between users {u1} and {u2}")
    return friend


async def _get_setting(
    session: AsyncSession, friend_id: int, user_id: int
) -> Optional[FriendSetting]:
    result = await session.execute(
        select(FriendSetting).where(
            and_(FriendSetting.friend_id == friend_id, FriendSetting.user_id == user_id)
        )
    )
    return result.scalar_one_or_none()


async def get_friend_settings(
    session: AsyncSession, owner_id: int, friend_user_id: int
) -> Tuple[Optional[FriendSetting], Optional[FriendSetting]]:
    """
    Get both directions of a friendship's settings.

    Args:
        session: Database session
        owner_id: User whose outgoing preferences are wanted
        friend_user_id: The friend

    Returns:
        (owner's setting, friend's setting); either may be None. Both are None
        if the users are not friends.
    """
    friend = await get_friendship(session, owner_id, friend_user_id)
    if friend is None:
        return None, None
    owner_setting = await _get_setting(session, friend.id, owner_id)
    friend_setting = await _get_setting(session, friend.id, friend_user_id)
    return owner_setting, friend_setting


async def update_friend_settings(
    session: AsyncSession, user_id: int, friend_user_id: int, updates: Dict
) -> FriendSetting:
    """
    Update the caller's own side of a friendship's settings.

    Args:
        session: Database session
        user_id: User whose settings row is updated
        friend_user_id: The friend
        updates: Field name -> new value; unknown fields are ignored, None values skipped

    Returns:
        The updated FriendSetting

    Raises:
        NotFoundError: If the users are not friends
        ValueError: If a default permission is not a known permission
    """
    friend = await get_friendship(session, user_id, friend_user_id)
    if friend is None:
        raise NotFoundError("Friend not found")

    setting = await _get_setting(session, friend.id, user_id)
    if setting is None:
        setting = FriendSetting(friend_id=friend.id, user_id=user_id)
        session.add(setting)

    valid_permissions = {p.value for p in SharePermission}
    for field in SETTING_FIELDS:
        value = updates.get(field)
        if value is None:
            continue
        if field in PERMISSION_FIELDS:
            value = getattr(value, "value", value)
            if value not in valid_permissions:
                raise ValueError(f"Invalid permission '{value}' for {field}")
        setattr(setting, field, value)

    await session.flush()
    await session.refresh(setting)
    return setting


def setting_to_dict(setting: FriendSetting) -> Dict:
    """Serialize a settings row."""
    data = {field: getattr(setting, field) for field in SETTING_FIELDS}
    data["friend_id"] = setting.friend_id
    data["user_id"] = setting.user_id
    return data
