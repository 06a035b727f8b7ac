"""
Permission guard for shared items.

A caller reaches an item either as its owner or through a mirror row that
names them as ``shared_with_id``. Anyone else gets NotFoundError, the same
answer as for an item that does not exist. A view mirror allows reads; an
edit mirror also allows the fixed set of match mutations in EDIT_ACTIONS.
Deleting (and changing who played) always needs the owner.
"""

import enum
from dataclasses import dataclass
from typing import Dict, Optional, Type
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession
from scorekeeper.database.models import (
    Match,
    ShareItemType,
    SharePermission,
    SharedGame,
    SharedLocation,
    SharedMatch,
    SharedMatchPlayer,
    SharedPlayer,
    SharedScoresheet,
)
from scorekeeper.services.errors import NotFoundError, UnauthorizedError
import logging

logger = logging.getLogger(__name__)


class MatchAction(str, enum.Enum):
    """Operations that can target a match."""

    READ = "read"
    START = "start"
    PAUSE = "pause"
    FINISH = "finish"
    RESET_DURATION = "reset_duration"
    UPDATE_SCORE = "update_score"
    UPDATE_COMMENT = "update_comment"
    UPDATE_TEAM = "update_team"
    UPDATE_ROLES = "update_roles"
    EDIT_DETAILS = "edit_details"
    EDIT_ROSTER = "edit_roster"
    DELETE = "delete"


EDIT_ACTIONS = frozenset({
    MatchAction.START,
    MatchAction.PAUSE,
    MatchAction.FINISH,
    MatchAction.RESET_DURATION,
    MatchAction.UPDATE_SCORE,
    MatchAction.UPDATE_COMMENT,
    MatchAction.UPDATE_TEAM,
    MatchAction.UPDATE_ROLES,
    MatchAction.EDIT_DETAILS,
})

OWNER_ACTIONS = frozenset({MatchAction.DELETE, MatchAction.EDIT_ROSTER})

_MIRROR_MODELS: Dict[ShareItemType, Type] = {
    ShareItemType.GAME: SharedGame,
    ShareItemType.MATCH: SharedMatch,
    ShareItemType.PLAYER: SharedPlayer,
    ShareItemType.SCORESHEET: SharedScoresheet,
    ShareItemType.LOCATION: SharedLocation,
    ShareItemType.MATCH_PLAYER: SharedMatchPlayer,
}

_missing = set(ShareItemType) - set(_MIRROR_MODELS)
if _missing:
    raise RuntimeError(f"No mirror model for item types: {sorted(t.value for t in _missing)}")


@dataclass
class MatchAccess:
    """How a caller reaches a match."""

    match: Match
    user_id: int
    shared_match: Optional[SharedMatch] = None

    @property
    def is_owner(self) -> bool:
        return self.shared_match is None

    @property
    def permission(self) -> str:
        if self.is_owner:
            return SharePermission.EDIT.value
        return self.shared_match.permission


def check_match_action(access: MatchAccess, action: MatchAction) -> None:
    """
    Raise if the caller's access does not cover ``action``.

    Raises:
        UnauthorizedError: If a mirror's permission is too low, or the
            action needs the owner
    """
    if access.is_owner:
        return
    if action in OWNER_ACTIONS:
        raise UnauthorizedError("Only the owner can do this")
    if action in EDIT_ACTIONS and access.shared_match.permission != SharePermission.EDIT.value:
        raise UnauthorizedError("Does not have permission to edit this match")


async def resolve_match_access(
    session: AsyncSession,
    user_id: int,
    match_id: Optional[int] = None,
    shared_match_id: Optional[int] = None,
) -> MatchAccess:
    """
    Find how the caller reaches a match.

    Exactly one of ``match_id`` or ``shared_match_id`` must be given. A
    shared-match id only resolves for its recipient; an owner must use the
    match id. A match id resolves for the owner, or for a recipient holding
    a mirror of it.

    Raises:
        ValueError: If neither or both ids are given
        NotFoundError: If the caller has no access (or the match is gone)
    """
    if (match_id is None) == (shared_match_id is None):
        raise ValueError("Provide exactly one of match_id or shared_match_id")

    if shared_match_id is not None:
        result = await session.execute(
            select(SharedMatch).where(
                and_(SharedMatch.id == shared_match_id, SharedMatch.shared_with_id == user_id)
            )
        )
        shared_match = result.scalar_one_or_none()
        if shared_match is None:
            raise NotFoundError("Match not found")
        match = await session.get(Match, shared_match.match_id)
        if match is None:
            raise NotFoundError("Match not found")
        return MatchAccess(match, user_id, shared_match)

    match = await session.get(Match, match_id)
    if match is None:
        raise NotFoundError("Match not found")
    if match.created_by == user_id:
        return MatchAccess(match, user_id)

    result = await session.execute(
        select(SharedMatch).where(
            and_(SharedMatch.match_id == match.id, SharedMatch.shared_with_id == user_id)
        )
    )
    shared_match = result.scalar_one_or_none()
    if shared_match is None:
        raise NotFoundError("Match not found")
    return MatchAccess(match, user_id, shared_match)


async def authorize_match_action(
    session: AsyncSession,
    user_id: int,
    action: MatchAction,
    match_id: Optional[int] = None,
    shared_match_id: Optional[int] = None,
) -> MatchAccess:
    """Resolve access and check it covers ``action`` in one step."""
    access = await resolve_match_access(session, user_id, match_id, shared_match_id)
    check_match_action(access, action)
    return access


async def get_shared_item(
    session: AsyncSession,
    user_id: int,
    item_type: ShareItemType,
    shared_id: int,
    required: SharePermission = SharePermission.VIEW,
):
    """
    Get a mirror row addressed to the caller.

    Args:
        session: Database session
        user_id: Caller
        item_type: Kind of mirror
        shared_id: Mirror row id
        required: Minimum permission

    Returns:
        The mirror row

    Raises:
        NotFoundError: If the mirror does not exist or is not the caller's
        UnauthorizedError: If its permission is below ``required``
    """
    model = _MIRROR_MODELS[ShareItemType(item_type)]
    result = await session.execute(
        select(model).where(and_(model.id == shared_id, model.shared_with_id == user_id))
    )
    mirror = result.scalar_one_or_none()
    if mirror is None:
        raise NotFoundError(f"Shared {ShareItemType(item_type).value} not found")
    if required is SharePermission.EDIT and mirror.permission != SharePermission.EDIT.value:
        raise UnauthorizedError(f"Does not have permission to edit this {ShareItemType(item_type).value}")
    return mirror
