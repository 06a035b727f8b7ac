"""
Tests for the share request lifecycle: create, accept, reject, cancel, expiry.
"""

from datetime import timedelta
import pytest
from sqlalchemy import select, func
from scorekeeper.database.models import (
    MatchPlayer,
    ShareItemType,
    ShareRequest,
    ShareRequestStatus,
    SharedGame,
    SharedMatch,
)
from scorekeeper.services import share_request_service
from scorekeeper.services.errors import ConflictError, ForbiddenError, NotFoundError
from scorekeeper.services.share_graph_service import ShareClosure, ShareItem
from scorekeeper.services.share_request_service import ItemRule, SharePolicy
from scorekeeper.utils.datetime_utils import utcnow


async def _tree(db_session, root_id):
    result = await db_session.execute(
        select(ShareRequest)
        .where((ShareRequest.id == root_id) | (ShareRequest.parent_share_id == root_id))
        .order_by(ShareRequest.id)
    )
    return list(result.scalars().all())


async def _count(db_session, model):
    result = await db_session.execute(select(func.count()).select_from(model))
    return result.scalar_one()


async def _share_match(db_session, friends, played_match, **kwargs):
    return await share_request_service.create_share_request(
        db_session,
        friends["alice"],
        friends["bob"],
        ShareItemType.MATCH,
        played_match["match"].id,
        **kwargs,
    )


# ──────────────────────────────────────────────────────────────
# Policy
# ──────────────────────────────────────────────────────────────


def _policy(auto_accept_matches=False, auto_accept_game=False, allow_players=True):
    games = ItemRule(True, auto_accept_game, "view")
    matches = ItemRule(True, auto_accept_matches, "view")
    return SharePolicy({
        ShareItemType.GAME: games,
        ShareItemType.SCORESHEET: games,
        ShareItemType.MATCH: matches,
        ShareItemType.MATCH_PLAYER: matches,
        ShareItemType.PLAYER: ItemRule(allow_players, False, "view"),
        ShareItemType.LOCATION: ItemRule(True, False, "view"),
    })


def test_match_scoresheet_follows_match_rule():
    policy = _policy(auto_accept_matches=True)
    snapshot = ShareItem(ShareItemType.SCORESHEET, 5, ShareItemType.MATCH, 1)
    game_sheet = ShareItem(ShareItemType.SCORESHEET, 6, ShareItemType.GAME, 2)
    assert policy.status_for(snapshot) is ShareRequestStatus.ACCEPTED
    assert policy.status_for(game_sheet) is ShareRequestStatus.PENDING


def test_match_game_follows_match_rule_but_keeps_its_permission():
    rules = dict(_policy().rules)
    rules[ShareItemType.GAME] = ItemRule(False, False, "view")
    rules[ShareItemType.MATCH] = ItemRule(True, True, "edit")
    policy = SharePolicy(rules)
    game_of_match = ShareItem(ShareItemType.GAME, 2, ShareItemType.MATCH, 1)
    assert policy.rule_for(game_of_match) == ItemRule(True, True, "view")
    assert policy.status_for(game_of_match) is ShareRequestStatus.ACCEPTED
    # Shared on its own, the game still follows the game rule
    assert policy.status_for(ShareItem(ShareItemType.GAME, 2)) is ShareRequestStatus.REJECTED


def test_rejected_dependencies_are_found_through_the_chain():
    game_key = (ShareItemType.GAME, 1)
    sheet_key = (ShareItemType.SCORESHEET, 3)
    root = ShareItem(ShareItemType.MATCH, 7, requires=(sheet_key,))
    closure = ShareClosure(root, [
        ShareItem(ShareItemType.GAME, 1),
        ShareItem(ShareItemType.SCORESHEET, 3, requires=(game_key,)),
    ])
    statuses = {
        root.key: ShareRequestStatus.PENDING,
        sheet_key: ShareRequestStatus.PENDING,
        game_key: ShareRequestStatus.REJECTED,
    }
    assert share_request_service.rejected_dependencies(closure, statuses) == [game_key]

    statuses[game_key] = ShareRequestStatus.PENDING
    assert share_request_service.rejected_dependencies(closure, statuses) == []


def test_disallowed_items_are_rejected():
    policy = _policy(allow_players=False)
    assert policy.status_for(ShareItem(ShareItemType.PLAYER, 1)) is ShareRequestStatus.REJECTED


def test_auto_accept_is_held_until_dependencies_accept():
    """A match cannot auto-accept while its game waits for the recipient."""
    game = ShareItem(ShareItemType.GAME, 1)
    match = ShareItem(ShareItemType.MATCH, 7, requires=((ShareItemType.GAME, 1),))
    statuses = share_request_service.resolve_statuses([match, game], _policy(auto_accept_matches=True))
    assert statuses[game.key] is ShareRequestStatus.PENDING
    assert statuses[match.key] is ShareRequestStatus.PENDING

    statuses = share_request_service.resolve_statuses(
        [match, game], _policy(auto_accept_matches=True, auto_accept_game=True)
    )
    assert statuses[match.key] is ShareRequestStatus.ACCEPTED


def test_dependencies_outside_the_tree_count_as_accepted():
    match = ShareItem(ShareItemType.MATCH, 7, requires=((ShareItemType.GAME, 1),))
    statuses = share_request_service.resolve_statuses([match], _policy(auto_accept_matches=True))
    assert statuses[match.key] is ShareRequestStatus.ACCEPTED


def test_policy_from_missing_setting_allows_everything():
    policy = share_request_service.policy_from_friend_setting(None, "edit")
    for item_type in ShareItemType:
        rule = policy.rule_for(ShareItem(item_type, 1))
        assert rule == ItemRule(True, False, "edit")


# ──────────────────────────────────────────────────────────────
# Create
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_manual_share_creates_pending_tree(db_session, friends, played_match):
    root = await _share_match(db_session, friends, played_match, permission="edit")

    tree = await _tree(db_session, root.id)
    assert tree[0].id == root.id
    assert root.parent_share_id is None
    assert root.item_type == ShareItemType.MATCH.value
    assert len(tree) == 9  # match + game + 2 scoresheets + location + 2 players + 2 participants
    assert {r.status for r in tree} == {ShareRequestStatus.PENDING.value}
    assert {r.permission for r in tree} == {"edit"}
    assert all(child.parent_share_id == root.id for child in tree[1:])
    assert await _count(db_session, SharedMatch) == 0


@pytest.mark.asyncio
async def test_cannot_share_with_yourself(db_session, friends, played_match):
    with pytest.raises(ValueError, match="yourself"):
        await share_request_service.create_share_request(
            db_session, friends["alice"], friends["alice"], ShareItemType.MATCH, played_match["match"].id
        )


@pytest.mark.asyncio
async def test_cannot_share_with_non_friend(db_session, friends, played_match):
    with pytest.raises(NotFoundError, match="Friend not found"):
        await share_request_service.create_share_request(
            db_session, friends["alice"], friends["carol"], ShareItemType.MATCH, played_match["match"].id
        )


@pytest.mark.asyncio
async def test_invalid_permission(db_session, friends, played_match):
    with pytest.raises(ValueError, match="Invalid permission"):
        await _share_match(db_session, friends, played_match, permission="admin")


@pytest.mark.asyncio
async def test_cannot_share_someone_elses_item(db_session, friends, played_match):
    with pytest.raises(NotFoundError):
        await share_request_service.create_share_request(
            db_session, friends["bob"], friends["alice"], ShareItemType.MATCH, played_match["match"].id
        )


@pytest.mark.asyncio
async def test_duplicate_pending_share_conflicts(db_session, friends, played_match):
    await _share_match(db_session, friends, played_match)
    with pytest.raises(ConflictError, match="already a pending share"):
        await _share_match(db_session, friends, played_match)


@pytest.mark.asyncio
async def test_share_after_accept_conflicts(db_session, friends, played_match):
    root = await _share_match(db_session, friends, played_match)
    await share_request_service.accept_share_request(db_session, root.id, friends["bob"])
    with pytest.raises(ConflictError, match="already been accepted"):
        await _share_match(db_session, friends, played_match)


@pytest.mark.asyncio
async def test_recipient_refusing_matches_is_forbidden(db_session, world, friends, played_match):
    await world.settings(friends["bob"], friends["alice"], allow_shared_matches=False)
    with pytest.raises(ForbiddenError):
        await _share_match(db_session, friends, played_match)


@pytest.mark.asyncio
async def test_recipient_refusing_players_rejects_them(db_session, world, friends, played_match):
    await world.settings(friends["bob"], friends["alice"], allow_shared_players=False)
    root = await _share_match(db_session, friends, played_match)

    statuses = {
        (r.item_type, r.item_id): r.status for r in await _tree(db_session, root.id)
    }
    assert statuses[(ShareItemType.PLAYER.value, played_match["bob_player"].id)] == "rejected"
    assert statuses[(ShareItemType.MATCH.value, played_match["match"].id)] == "pending"


@pytest.mark.asyncio
async def test_recipient_auto_accept_materializes_immediately(db_session, world, friends, played_match):
    await world.settings(
        friends["bob"],
        friends["alice"],
        auto_accept_matches=True,
        auto_accept_game=True,
        auto_accept_players=True,
        auto_accept_location=True,
    )
    root = await _share_match(db_session, friends, played_match)

    assert root.status == ShareRequestStatus.ACCEPTED.value
    assert await _count(db_session, SharedMatch) == 1


@pytest.mark.asyncio
async def test_match_auto_accept_covers_its_game(db_session, world, friends, played_match):
    """auto_accept_matches alone materializes a manually shared match."""
    await world.settings(friends["bob"], friends["alice"], auto_accept_matches=True)
    root = await _share_match(db_session, friends, played_match)

    assert root.status == ShareRequestStatus.ACCEPTED.value
    statuses = {
        (r.item_type, r.item_id): r.status for r in await _tree(db_session, root.id)
    }
    assert statuses[(ShareItemType.GAME.value, played_match["game"].id)] == "accepted"
    assert statuses[(ShareItemType.SCORESHEET.value, played_match["match"].scoresheet_id)] == "accepted"
    assert statuses[(ShareItemType.PLAYER.value, played_match["bob_player"].id)] == "pending"
    assert await _count(db_session, SharedGame) == 1
    assert await _count(db_session, SharedMatch) == 1


@pytest.mark.asyncio
async def test_refusing_games_does_not_block_a_match_share(db_session, world, friends, played_match):
    await world.settings(friends["bob"], friends["alice"], allow_shared_games=False)
    root = await _share_match(db_session, friends, played_match)

    statuses = {
        (r.item_type, r.item_id): r.status for r in await _tree(db_session, root.id)
    }
    assert statuses[(ShareItemType.GAME.value, played_match["game"].id)] == "pending"

    result = await share_request_service.accept_share_request(db_session, root.id, friends["bob"])
    assert result["status"] == "accepted"
    assert await _count(db_session, SharedMatch) == 1


@pytest.mark.asyncio
async def test_rejected_dependency_of_the_root_is_forbidden(db_session, friends, played_match):
    """A participant cannot be shared to someone who refuses its match."""
    rules = dict(_policy().rules)
    rules[ShareItemType.MATCH] = ItemRule(False, False, "view")
    match_player_id = (
        await db_session.execute(
            select(MatchPlayer.id).where(MatchPlayer.match_id == played_match["match"].id).limit(1)
        )
    ).scalar_one()

    with pytest.raises(ForbiddenError, match="which this matchPlayer needs"):
        await share_request_service.create_share_tree(
            db_session,
            friends["alice"],
            friends["bob"],
            ShareItemType.MATCH_PLAYER,
            match_player_id,
            SharePolicy(rules),
        )
    assert await _count(db_session, ShareRequest) == 0


# ──────────────────────────────────────────────────────────────
# Accept / reject / cancel
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_accept_materializes_the_tree(db_session, friends, played_match):
    root = await _share_match(db_session, friends, played_match)
    result = await share_request_service.accept_share_request(db_session, root.id, friends["bob"])

    assert result["share_request_id"] == root.id
    assert result["status"] == "accepted"
    assert len(result["items"]) == 9
    types = [item["item_type"] for item in result["items"]]
    assert types.index("game") < types.index("scoresheet") < types.index("match")
    assert {r.status for r in await _tree(db_session, root.id)} == {"accepted"}


@pytest.mark.asyncio
async def test_only_recipient_can_accept(db_session, friends, played_match):
    root = await _share_match(db_session, friends, played_match)
    with pytest.raises(NotFoundError):
        await share_request_service.accept_share_request(db_session, root.id, friends["alice"])
    with pytest.raises(NotFoundError):
        await share_request_service.accept_share_request(db_session, root.id, friends["carol"])


@pytest.mark.asyncio
async def test_reject_marks_tree_rejected(db_session, friends, played_match):
    root = await _share_match(db_session, friends, played_match)
    await share_request_service.reject_share_request(db_session, root.id, friends["bob"])

    assert {r.status for r in await _tree(db_session, root.id)} == {"rejected"}
    assert await _count(db_session, SharedGame) == 0

    # Rejecting again is a no-op; accepting afterwards is not allowed
    await share_request_service.reject_share_request(db_session, root.id, friends["bob"])
    with pytest.raises(ConflictError):
        await share_request_service.accept_share_request(db_session, root.id, friends["bob"])


@pytest.mark.asyncio
async def test_reject_after_accept_conflicts(db_session, friends, played_match):
    root = await _share_match(db_session, friends, played_match)
    await share_request_service.accept_share_request(db_session, root.id, friends["bob"])
    with pytest.raises(ConflictError):
        await share_request_service.reject_share_request(db_session, root.id, friends["bob"])


@pytest.mark.asyncio
async def test_share_again_after_reject(db_session, friends, played_match):
    root = await _share_match(db_session, friends, played_match)
    await share_request_service.reject_share_request(db_session, root.id, friends["bob"])
    again = await _share_match(db_session, friends, played_match)
    assert again.id != root.id
    assert again.status == "pending"


@pytest.mark.asyncio
async def test_cancel_deletes_pending_tree(db_session, friends, played_match):
    root = await _share_match(db_session, friends, played_match)
    root_id = root.id
    await share_request_service.cancel_share_request(db_session, root_id, friends["alice"])
    assert await _tree(db_session, root_id) == []


@pytest.mark.asyncio
async def test_cancel_is_owner_only_and_not_after_accept(db_session, friends, played_match):
    root = await _share_match(db_session, friends, played_match)
    with pytest.raises(NotFoundError):
        await share_request_service.cancel_share_request(db_session, root.id, friends["bob"])

    await share_request_service.accept_share_request(db_session, root.id, friends["bob"])
    with pytest.raises(ConflictError):
        await share_request_service.cancel_share_request(db_session, root.id, friends["alice"])


# ──────────────────────────────────────────────────────────────
# Expiry
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_expired_request_cannot_be_accepted(db_session, friends, played_match):
    root = await _share_match(
        db_session, friends, played_match, expires_at=utcnow() - timedelta(minutes=1)
    )
    with pytest.raises(NotFoundError, match="expired"):
        await share_request_service.accept_share_request(db_session, root.id, friends["bob"])


@pytest.mark.asyncio
async def test_expired_request_does_not_block_a_new_share(db_session, friends, played_match):
    await _share_match(db_session, friends, played_match, expires_at=utcnow() - timedelta(minutes=1))
    fresh = await _share_match(db_session, friends, played_match)
    assert fresh.status == "pending"


@pytest.mark.asyncio
async def test_unexpired_request_can_be_accepted(db_session, friends, played_match):
    root = await _share_match(
        db_session, friends, played_match, expires_at=utcnow() + timedelta(days=1)
    )
    result = await share_request_service.accept_share_request(db_session, root.id, friends["bob"])
    assert result["status"] == "accepted"


# ──────────────────────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_get_share_request_shows_children(db_session, friends, played_match):
    root = await _share_match(db_session, friends, played_match)

    data = await share_request_service.get_share_request(db_session, root.id, friends["bob"])
    assert data["id"] == root.id
    assert data["item_name"] == "Friday game"
    assert data["expired"] is False
    assert len(data["children"]) == 8
    names = {child["item_name"] for child in data["children"]}
    assert {"Catan", "Game Night Cafe", "Alice", "Bob"} <= names

    # The owner sees it too, a stranger does not
    await share_request_service.get_share_request(db_session, root.id, friends["alice"])
    with pytest.raises(NotFoundError):
        await share_request_service.get_share_request(db_session, root.id, friends["carol"])


@pytest.mark.asyncio
async def test_list_share_requests_by_direction(db_session, friends, played_match):
    root = await _share_match(db_session, friends, played_match)

    incoming = await share_request_service.list_share_requests(db_session, friends["bob"], "incoming")
    outgoing = await share_request_service.list_share_requests(db_session, friends["alice"], "outgoing")
    assert [r["id"] for r in incoming] == [root.id]
    assert [r["id"] for r in outgoing] == [root.id]
    assert await share_request_service.list_share_requests(db_session, friends["alice"], "incoming") == []
    assert await share_request_service.list_share_requests(
        db_session, friends["bob"], "incoming", status="accepted"
    ) == []

    with pytest.raises(ValueError):
        await share_request_service.list_share_requests(db_session, friends["bob"], "sideways")
