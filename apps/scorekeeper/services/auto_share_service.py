"""
Auto-share: share a match with every eligible friend who played in it.

Runs after a match is created or its roster changes. A participant counts
when their Player stands in for one of the owner's friends. Both sides of
the friendship must agree: the owner's settings must turn auto-share on,
and the friend's own settings must allow shared matches.

Each friend is handled in its own SAVEPOINT. A failure for one friend is
logged and rolled back without touching the others or the triggering
match operation.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession
from scorekeeper.database.models import (
    FriendSetting,
    MatchPlayer,
    Player,
    ShareItemType,
    ShareRequestStatus,
)
from scorekeeper.services import friend_service, share_request_service
from scorekeeper.services.share_graph_service import ClosureOptions
from scorekeeper.services.share_request_service import ItemRule, SharePolicy
from scorekeeper.utils.datetime_utils import is_expired
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShareFriendConfig:
    """Everything needed to auto-share with one friend, merged from both directions."""

    friend_user_id: int
    share_location: bool
    share_players: bool
    default_permission_for_matches: str
    default_permission_for_players: str
    default_permission_for_location: str
    default_permission_for_game: str
    allow_shared_players: bool
    allow_shared_location: bool
    auto_accept_matches: bool
    auto_accept_players: bool
    auto_accept_location: bool

    @classmethod
    def from_settings(
        cls, friend_user_id: int, owner_setting: FriendSetting, friend_setting: FriendSetting
    ) -> "ShareFriendConfig":
        return cls(
            friend_user_id=friend_user_id,
            share_location=owner_setting.include_location_with_match,
            share_players=owner_setting.share_players_with_match,
            default_permission_for_matches=owner_setting.default_permission_for_matches,
            default_permission_for_players=owner_setting.default_permission_for_players,
            default_permission_for_location=owner_setting.default_permission_for_location,
            default_permission_for_game=owner_setting.default_permission_for_game,
            allow_shared_players=friend_setting.allow_shared_players,
            allow_shared_location=friend_setting.allow_shared_location,
            auto_accept_matches=friend_setting.auto_accept_matches,
            auto_accept_players=friend_setting.auto_accept_players,
            auto_accept_location=friend_setting.auto_accept_location,
        )

    def closure_options(self) -> ClosureOptions:
        return ClosureOptions(
            include_players=self.share_players, include_location=self.share_location
        )

    def policy(self) -> SharePolicy:
        # The game and its scoresheets ride along with the match.
        matches = ItemRule(True, self.auto_accept_matches, self.default_permission_for_matches)
        games = ItemRule(True, self.auto_accept_matches, self.default_permission_for_game)
        return SharePolicy({
            ShareItemType.GAME: games,
            ShareItemType.SCORESHEET: games,
            ShareItemType.MATCH: matches,
            ShareItemType.MATCH_PLAYER: matches,
            ShareItemType.PLAYER: ItemRule(
                self.allow_shared_players,
                self.auto_accept_players,
                self.default_permission_for_players,
            ),
            ShareItemType.LOCATION: ItemRule(
                self.allow_shared_location,
                self.auto_accept_location,
                self.default_permission_for_location,
            ),
        })


@dataclass(frozen=True)
class FriendShareResult:
    """Outcome of auto-sharing with one friend."""

    friend_user_id: int
    success: bool
    message: str
    share_request_id: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            "friend_user_id": self.friend_user_id,
            "success": self.success,
            "message": self.message,
            "share_request_id": self.share_request_id,
        }


async def build_share_friends_list(
    session: AsyncSession, owner_id: int, match_id: int
) -> List[ShareFriendConfig]:
    """
    Find the friends a match should be auto-shared with.

    Args:
        session: Database session
        owner_id: Match owner
        match_id: Match ID

    Returns:
        One config per eligible friend, ordered by friend user id
    """
    result = await session.execute(
        select(Player.linked_user_id)
        .join(MatchPlayer, MatchPlayer.player_id == Player.id)
        .where(
            and_(
                MatchPlayer.match_id == match_id,
                Player.created_by == owner_id,
                Player.linked_user_id.isnot(None),
            )
        )
        .distinct()
    )
    friend_user_ids = sorted(set(result.scalars().all()))

    configs = []
    for friend_user_id in friend_user_ids:
        if friend_user_id == owner_id:
            continue
        owner_setting, friend_setting = await friend_service.get_friend_settings(
            session, owner_id, friend_user_id
        )
        if owner_setting is None or friend_setting is None:
            logger.debug(f"User {friend_user_id} is not a friend of {owner_id}; not auto-sharing")
            continue
        if not owner_setting.auto_share_matches:
            continue
        if not friend_setting.allow_shared_matches:
            logger.warning(
                f"Not auto-sharing match {match_id} with user {friend_user_id}: "
                f"friend does not allow shared matches"
            )
            continue
        configs.append(ShareFriendConfig.from_settings(friend_user_id, owner_setting, friend_setting))
    return configs


async def share_match_with_friend(
    session: AsyncSession, owner_id: int, match_id: int, config: ShareFriendConfig
) -> FriendShareResult:
    """
    Share (or re-share after an edit) one match with one friend.

    A friend who already has the match gets only the newly added items; a
    friend who rejected it is left alone.
    """
    friend_user_id = config.friend_user_id
    latest = await share_request_service.find_latest_root(
        session, owner_id, friend_user_id, ShareItemType.MATCH, match_id
    )
    if latest is not None and latest.status == ShareRequestStatus.REJECTED.value:
        return FriendShareResult(friend_user_id, False, "Friend rejected this match", latest.id)

    if latest is None or (
        latest.status == ShareRequestStatus.PENDING.value and is_expired(latest.expires_at)
    ):
        root, _ = await share_request_service.create_share_tree(
            session,
            owner_id,
            friend_user_id,
            ShareItemType.MATCH,
            match_id,
            config.policy(),
            config.closure_options(),
        )
        return FriendShareResult(friend_user_id, True, "Match shared", root.id)

    added = await share_request_service.extend_share_tree(
        session, latest, config.policy(), config.closure_options()
    )
    return FriendShareResult(
        friend_user_id, True, f"Share updated with {len(added)} new items", latest.id
    )


async def auto_share_match(
    session: AsyncSession, owner_id: int, match_id: int
) -> List[FriendShareResult]:
    """
    Auto-share a match with every eligible friend.

    Never raises for a single friend's failure: that friend's partial work is
    rolled back to its SAVEPOINT and reported in the results.

    Args:
        session: Database session (its transaction is left open for the caller)
        owner_id: Match owner
        match_id: Match ID

    Returns:
        One FriendShareResult per eligible friend
    """
    configs = await build_share_friends_list(session, owner_id, match_id)
    results = []
    for config in configs:
        try:
            async with session.begin_nested():
                result = await share_match_with_friend(session, owner_id, match_id, config)
        except Exception as e:
            logger.exception(
                f"Auto-share of match {match_id} with user {config.friend_user_id} failed: {e}"
            )
            result = FriendShareResult(config.friend_user_id, False, "Failed to share match")
        results.append(result)

    if results:
        shared = sum(1 for r in results if r.success)
        logger.info(f"Auto-shared match {match_id} with {shared}/{len(results)} friends")
    return results
