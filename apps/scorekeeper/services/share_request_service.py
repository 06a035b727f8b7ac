"""
Share request store and the share lifecycle operations.

A share is persisted as a tree: one root request for the item the owner
chose, plus one child per item of its closure. Each request's status is
decided up front from the recipient's preferences:

    disallowed              -> rejected (never materialized)
    allowed, manual         -> pending  (waits for accept/reject)
    allowed, auto-accepted  -> accepted (materialized immediately)

An auto-accepted item whose dependencies in the same tree are not accepted
is held as pending instead, since it could not be materialized yet.
"""

import os
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession
from scorekeeper.database.db import transaction
from scorekeeper.database.models import (
    FriendSetting,
    Game,
    Location,
    Match,
    MatchPlayer,
    Player,
    Scoresheet,
    ShareItemType,
    SharePermission,
    ShareRequest,
    ShareRequestStatus,
)
from scorekeeper.services import friend_service, share_acceptance_service
from scorekeeper.services.errors import ConflictError, ForbiddenError, NotFoundError, assert_inserted
from scorekeeper.services.share_acceptance_service import ShareDecision
from scorekeeper.services.share_graph_service import (
    DEPENDENCY_RANK,
    ClosureOptions,
    ItemKey,
    ShareClosure,
    ShareItem,
    build_share_closure,
)
from scorekeeper.utils.datetime_utils import is_expired, utcnow
import logging

logger = logging.getLogger(__name__)

SHARE_REQUEST_TTL_DAYS = int(os.getenv("SHARE_REQUEST_TTL_DAYS", "0") or 0)
"""Days a manual share request stays acceptable; 0 disables expiry."""


@dataclass(frozen=True)
class ItemRule:
    """How the recipient treats one item type."""

    allowed: bool
    auto_accept: bool
    permission: str


@dataclass(frozen=True)
class SharePolicy:
    """Per item type rules used to decide each request's initial status."""

    rules: Mapping[ShareItemType, ItemRule]

    def rule_for(self, item: ShareItem) -> ItemRule:
        rule = self.rules[item.item_type]
        if item.parent_type is not ShareItemType.MATCH:
            return rule
        # The game and scoresheets a match needs travel with the match.
        if item.item_type is ShareItemType.SCORESHEET:
            return self.rules[ShareItemType.MATCH]
        if item.item_type is ShareItemType.GAME:
            return replace(self.rules[ShareItemType.MATCH], permission=rule.permission)
        return rule

    def status_for(self, item: ShareItem) -> ShareRequestStatus:
        rule = self.rule_for(item)
        if not rule.allowed:
            return ShareRequestStatus.REJECTED
        if rule.auto_accept:
            return ShareRequestStatus.ACCEPTED
        return ShareRequestStatus.PENDING


def _flag(setting: Optional[FriendSetting], name: str, default: bool) -> bool:
    value = getattr(setting, name, None) if setting is not None else None
    return default if value is None else bool(value)


def policy_from_friend_setting(setting: Optional[FriendSetting], permission: str) -> SharePolicy:
    """
    Build the policy for a manual share from the recipient's own settings.

    A recipient without a settings row allows everything and auto-accepts
    nothing. Every item is shared at the permission the owner picked.
    """
    games = ItemRule(
        _flag(setting, "allow_shared_games", True),
        _flag(setting, "auto_accept_game", False),
        permission,
    )
    matches = ItemRule(
        _flag(setting, "allow_shared_matches", True),
        _flag(setting, "auto_accept_matches", False),
        permission,
    )
    return SharePolicy({
        ShareItemType.GAME: games,
        ShareItemType.SCORESHEET: games,
        ShareItemType.MATCH: matches,
        ShareItemType.MATCH_PLAYER: matches,
        ShareItemType.PLAYER: ItemRule(
            _flag(setting, "allow_shared_players", True),
            _flag(setting, "auto_accept_players", False),
            permission,
        ),
        ShareItemType.LOCATION: ItemRule(
            _flag(setting, "allow_shared_location", True),
            _flag(setting, "auto_accept_location", False),
            permission,
        ),
    })


def default_expiry():
    """Expiry for a new manual share request, or None if requests never expire."""
    if SHARE_REQUEST_TTL_DAYS <= 0:
        return None
    return utcnow() + timedelta(days=SHARE_REQUEST_TTL_DAYS)


def resolve_statuses(
    items: Iterable[ShareItem],
    policy: SharePolicy,
    known: Optional[Mapping[ItemKey, ShareRequestStatus]] = None,
) -> Dict[ItemKey, ShareRequestStatus]:
    """
    Decide the initial status of each item.

    Args:
        items: Items to decide
        policy: Recipient rules
        known: Statuses of items already in the tree; dependencies that are
            neither known nor among ``items`` were accepted earlier

    Returns:
        Item key -> status
    """
    statuses: Dict[ItemKey, ShareRequestStatus] = dict(known or {})
    decided: Dict[ItemKey, ShareRequestStatus] = {}
    for item in sorted(items, key=lambda i: DEPENDENCY_RANK[i.item_type]):
        status = policy.status_for(item)
        if status is ShareRequestStatus.ACCEPTED and any(
            statuses.get(dep, ShareRequestStatus.ACCEPTED) is not ShareRequestStatus.ACCEPTED
            for dep in item.requires
        ):
            status = ShareRequestStatus.PENDING
        statuses[item.key] = status
        decided[item.key] = status
    return decided


def rejected_dependencies(
    closure: ShareClosure, statuses: Mapping[ItemKey, ShareRequestStatus]
) -> List[ItemKey]:
    """Items the root needs, directly or through other items, that were rejected."""
    items = {item.key: item for item in closure.all_items()}
    to_visit = list(closure.root.requires)
    seen = set()
    rejected = []
    while to_visit:
        key = to_visit.pop(0)
        if key in seen:
            continue
        seen.add(key)
        if statuses.get(key) is ShareRequestStatus.REJECTED:
            rejected.append(key)
        if key in items:
            to_visit.extend(items[key].requires)
    return rejected


async def get_share_children(session: AsyncSession, parent_id: int) -> List[ShareRequest]:
    """
    Get the children of a root request, oldest first.

    Args:
        session: Database session
        parent_id: Root share request ID

    Returns:
        Child requests ordered by creation
    """
    result = await session.execute(
        select(ShareRequest)
        .where(ShareRequest.parent_share_id == parent_id)
        .order_by(ShareRequest.created_at, ShareRequest.id)
    )
    return list(result.scalars().all())


async def get_share_tree(session: AsyncSession, root: ShareRequest) -> List[ShareRequest]:
    """Root followed by its children."""
    return [root] + await get_share_children(session, root.id)


async def find_open_root(
    session: AsyncSession,
    owner_id: int,
    shared_with_id: int,
    item_type: ShareItemType,
    item_id: int,
) -> Optional[ShareRequest]:
    """
    Find a root share of an item that is still live: accepted, or pending and unexpired.
    """
    result = await session.execute(
        select(ShareRequest)
        .where(
            and_(
                ShareRequest.owner_id == owner_id,
                ShareRequest.shared_with_id == shared_with_id,
                ShareRequest.item_type == ShareItemType(item_type).value,
                ShareRequest.item_id == item_id,
                ShareRequest.parent_share_id.is_(None),
                ShareRequest.status.in_(
                    [ShareRequestStatus.PENDING.value, ShareRequestStatus.ACCEPTED.value]
                ),
            )
        )
        .order_by(ShareRequest.id.desc())
    )
    for request in result.scalars().all():
        if request.status == ShareRequestStatus.ACCEPTED.value or not is_expired(request.expires_at):
            return request
    return None


async def find_latest_root(
    session: AsyncSession,
    owner_id: int,
    shared_with_id: int,
    item_type: ShareItemType,
    item_id: int,
) -> Optional[ShareRequest]:
    """Newest root share of an item between two users, whatever its status."""
    result = await session.execute(
        select(ShareRequest)
        .where(
            and_(
                ShareRequest.owner_id == owner_id,
                ShareRequest.shared_with_id == shared_with_id,
                ShareRequest.item_type == ShareItemType(item_type).value,
                ShareRequest.item_id == item_id,
                ShareRequest.parent_share_id.is_(None),
            )
        )
        .order_by(ShareRequest.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _insert_children(
    session: AsyncSession,
    root: ShareRequest,
    items: Iterable[ShareItem],
    statuses: Mapping[ItemKey, ShareRequestStatus],
    policy: SharePolicy,
) -> List[ShareRequest]:
    children = []
    for item in items:
        child = ShareRequest(
            owner_id=root.owner_id,
            shared_with_id=root.shared_with_id,
            item_type=item.item_type.value,
            item_id=item.item_id,
            item_parent_id=item.parent_id,
            parent_share_id=root.id,
            permission=policy.rule_for(item).permission,
            status=statuses[item.key].value,
            expires_at=root.expires_at,
        )
        session.add(child)
        children.append(child)
    await session.flush()
    return children


async def create_share_tree(
    session: AsyncSession,
    owner_id: int,
    shared_with_id: int,
    item_type: ShareItemType,
    item_id: int,
    policy: SharePolicy,
    options: Optional[ClosureOptions] = None,
    expires_at=None,
) -> Tuple[ShareRequest, List[share_acceptance_service.AcceptedItem]]:
    """
    Persist a root request and its closure, then materialize what was auto-accepted.

    Runs in one transaction (a SAVEPOINT when called inside another): if any
    auto-accepted item fails to materialize, nothing of this tree remains.

    Returns:
        (root request, processed items)

    Raises:
        NotFoundError: If the owner does not own the root item
        ForbiddenError: If the recipient does not accept the root item's type,
            or rejects an item the root cannot be accepted without
    """
    item_type = ShareItemType(item_type)
    root_rule = policy.rule_for(ShareItem(item_type, item_id))
    if not root_rule.allowed:
        raise ForbiddenError(f"This friend does not accept shared {item_type.value}s")

    closure = await build_share_closure(
        session, owner_id, shared_with_id, item_type, item_id, options
    )
    statuses = resolve_statuses(closure.all_items(), policy)
    rejected = rejected_dependencies(closure, statuses)
    if rejected:
        raise ForbiddenError(
            f"This friend does not accept shared {rejected[0][0].value}s, "
            f"which this {item_type.value} needs"
        )

    async with transaction(session):
        root = ShareRequest(
            owner_id=owner_id,
            shared_with_id=shared_with_id,
            item_type=item_type.value,
            item_id=item_id,
            permission=root_rule.permission,
            status=statuses[closure.root.key].value,
            expires_at=expires_at,
        )
        session.add(root)
        await session.flush()
        assert_inserted(root.id, "Failed to create share request")

        children = await _insert_children(session, root, closure.children, statuses, policy)
        processed = await share_acceptance_service.process_requests(session, [root] + children)

    logger.info(
        f"User {owner_id} shared {item_type.value} {item_id} with user {shared_with_id}: "
        f"request {root.id} ({root.status}), {len(children)} children, {len(processed)} materialized"
    )
    return root, processed


async def extend_share_tree(
    session: AsyncSession,
    root: ShareRequest,
    policy: SharePolicy,
    options: Optional[ClosureOptions] = None,
) -> List[ShareRequest]:
    """
    Add requests for items that joined the root's closure since it was created.

    Used when a shared match gains participants. Items already in the tree
    keep their requests; new ones get statuses from ``policy`` and accepted
    ones are materialized.

    Returns:
        The newly created child requests
    """
    tree = await get_share_tree(session, root)
    known = {
        (ShareItemType(r.item_type), r.item_id): ShareRequestStatus(r.status) for r in tree
    }
    closure = await build_share_closure(
        session,
        root.owner_id,
        root.shared_with_id,
        ShareItemType(root.item_type),
        root.item_id,
        options,
        exclude=known.keys(),
    )
    if not closure.children:
        return []

    async with transaction(session):
        statuses = resolve_statuses(closure.children, policy, known)
        children = await _insert_children(session, root, closure.children, statuses, policy)
        await share_acceptance_service.process_requests(session, children)

    logger.info(f"Extended share request {root.id} with {len(children)} new items")
    return children


async def create_share_request(
    session: AsyncSession,
    owner_id: int,
    shared_with_id: int,
    item_type: ShareItemType,
    item_id: int,
    permission: str = SharePermission.VIEW.value,
    options: Optional[ClosureOptions] = None,
    expires_at=None,
) -> ShareRequest:
    """
    Manually share an item with a friend.

    Args:
        session: Database session
        owner_id: User sharing the item
        shared_with_id: Friend receiving it
        item_type: Root item type
        item_id: Root item id
        permission: Permission granted on every shared item
        options: What to include alongside matches
        expires_at: When the request lapses; defaults to the configured TTL

    Returns:
        The root ShareRequest

    Raises:
        ValueError: If sharing with yourself or the permission is unknown
        NotFoundError: If the recipient is not a friend or the item is not the owner's
        ConflictError: If the item is already shared with this friend
        ForbiddenError: If the friend does not accept this item type
    """
    if owner_id == shared_with_id:
        raise ValueError("Cannot share with yourself")
    try:
        permission = SharePermission(permission).value
    except ValueError:
        raise ValueError(f"Invalid permission '{permission}'")

    if not await friend_service.are_friends(session, owner_id, shared_with_id):
        raise NotFoundError("Friend not found")

    existing = await find_open_root(session, owner_id, shared_with_id, item_type, item_id)
    if existing is not None:
        if existing.status == ShareRequestStatus.ACCEPTED.value:
            raise ConflictError("This has already been accepted")
        raise ConflictError("There is already a pending share")

    _, recipient_setting = await friend_service.get_friend_settings(
        session, owner_id, shared_with_id
    )
    policy = policy_from_friend_setting(recipient_setting, permission)
    root, _ = await create_share_tree(
        session,
        owner_id,
        shared_with_id,
        item_type,
        item_id,
        policy,
        options,
        expires_at if expires_at is not None else default_expiry(),
    )
    return root


async def _get_root(
    session: AsyncSession, request_id: int, user_id: int, as_owner: bool = False
) -> ShareRequest:
    party = ShareRequest.owner_id if as_owner else ShareRequest.shared_with_id
    result = await session.execute(
        select(ShareRequest).where(
            and_(
                ShareRequest.id == request_id,
                party == user_id,
                ShareRequest.parent_share_id.is_(None),
            )
        )
    )
    request = result.scalar_one_or_none()
    if request is None:
        raise NotFoundError("Share request not found")
    return request


def _require_live(request: ShareRequest) -> None:
    if request.status == ShareRequestStatus.PENDING.value and is_expired(request.expires_at):
        raise NotFoundError("Share request has expired")


async def accept_share_request(
    session: AsyncSession,
    request_id: int,
    user_id: int,
    decisions: Optional[Mapping[int, ShareDecision]] = None,
) -> Dict:
    """
    Accept a share addressed to the caller.

    Pending children are accepted unless the caller's decisions reject them;
    decisions may also name an existing entity to link instead of cloning.
    Every accepted item of the tree is then materialized in dependency
    order. The whole cascade is one transaction. Accepting again re-runs
    materialization, which finds every mirror in place and changes nothing.

    Args:
        session: Database session
        request_id: Root share request ID
        user_id: Recipient
        decisions: Share request id -> decision

    Returns:
        Dict with the root id, its status and one entry per materialized item

    Raises:
        NotFoundError: If the request is not the caller's, has expired, a
            decision names a request outside the tree, or a dependency is missing
        ConflictError: If the request was already rejected
        ForbiddenError: If a link target is not the caller's
    """
    decisions = dict(decisions or {})
    root = await _get_root(session, request_id, user_id)
    if root.status == ShareRequestStatus.REJECTED.value:
        raise ConflictError("This share request has already been rejected")
    _require_live(root)
    root_decision = decisions.get(root.id)
    if root_decision is not None and not root_decision.accept:
        raise ValueError("Reject the share request instead of declining its root item")

    async with transaction(session):
        tree = await get_share_tree(session, root)
        tree_ids = {request.id for request in tree}
        unknown = sorted(set(decisions) - tree_ids)
        if unknown:
            raise NotFoundError(f"Share request {unknown[0]} not found")

        root.status = ShareRequestStatus.ACCEPTED.value
        for child in tree[1:]:
            if child.status != ShareRequestStatus.PENDING.value:
                continue
            decision = decisions.get(child.id, share_acceptance_service.DEFAULT_DECISION)
            child.status = (
                ShareRequestStatus.ACCEPTED if decision.accept else ShareRequestStatus.REJECTED
            ).value
        await session.flush()

        processed = await share_acceptance_service.process_requests(session, tree, decisions)

    logger.info(
        f"User {user_id} accepted share request {root.id}: {len(processed)} items materialized"
    )
    return {
        "share_request_id": root.id,
        "status": root.status,
        "items": [item.to_dict() for item in processed],
    }


async def reject_share_request(session: AsyncSession, request_id: int, user_id: int) -> ShareRequest:
    """
    Reject a share addressed to the caller.

    The root and every still-pending child become rejected; children that
    were already auto-accepted stay accepted.

    Raises:
        NotFoundError: If the request is not the caller's or has expired
        ConflictError: If the request was already accepted
    """
    root = await _get_root(session, request_id, user_id)
    if root.status == ShareRequestStatus.ACCEPTED.value:
        raise ConflictError("This has already been accepted")
    if root.status == ShareRequestStatus.REJECTED.value:
        return root
    _require_live(root)

    async with transaction(session):
        root.status = ShareRequestStatus.REJECTED.value
        for child in await get_share_children(session, root.id):
            if child.status == ShareRequestStatus.PENDING.value:
                child.status = ShareRequestStatus.REJECTED.value
        await session.flush()

    logger.info(f"User {user_id} rejected share request {root.id}")
    return root


async def cancel_share_request(session: AsyncSession, request_id: int, owner_id: int) -> None:
    """
    Withdraw a share the caller sent.

    Raises:
        NotFoundError: If the request is not the caller's
        ConflictError: If any item of the tree was already accepted
    """
    root = await _get_root(session, request_id, owner_id, as_owner=True)
    tree = await get_share_tree(session, root)
    if any(request.status == ShareRequestStatus.ACCEPTED.value for request in tree):
        raise ConflictError("Accepted shares cannot be cancelled")

    async with transaction(session):
        for child in tree[1:]:
            await session.delete(child)
        await session.flush()
        await session.delete(root)
        await session.flush()

    logger.info(f"User {owner_id} cancelled share request {request_id}")


_ITEM_MODELS = {
    ShareItemType.GAME: Game,
    ShareItemType.MATCH: Match,
    ShareItemType.PLAYER: Player,
    ShareItemType.SCORESHEET: Scoresheet,
    ShareItemType.LOCATION: Location,
}


async def _item_name(session: AsyncSession, item_type: ShareItemType, item_id: int) -> Optional[str]:
    if item_type is ShareItemType.MATCH_PLAYER:
        result = await session.execute(
            select(Player.name)
            .join(MatchPlayer, MatchPlayer.player_id == Player.id)
            .where(MatchPlayer.id == item_id)
        )
        return result.scalar_one_or_none()
    row = await session.get(_ITEM_MODELS[item_type], item_id)
    return row.name if row is not None else None


async def share_request_to_dict(session: AsyncSession, request: ShareRequest) -> Dict:
    """Serialize a request with a display name for its item."""
    item_type = ShareItemType(request.item_type)
    return {
        "id": request.id,
        "owner_id": request.owner_id,
        "shared_with_id": request.shared_with_id,
        "item_type": item_type.value,
        "item_id": request.item_id,
        "item_parent_id": request.item_parent_id,
        "item_name": await _item_name(session, item_type, request.item_id),
        "parent_share_id": request.parent_share_id,
        "permission": request.permission,
        "status": request.status,
        "created_at": request.created_at,
        "expires_at": request.expires_at,
        "expired": request.status == ShareRequestStatus.PENDING.value and is_expired(request.expires_at),
    }


async def get_share_request(session: AsyncSession, request_id: int, user_id: int) -> Dict:
    """
    Get a share request tree for display.

    Visible to its owner and its recipient only.

    Returns:
        Root dict with a ``children`` list, in processing order

    Raises:
        NotFoundError: If the caller is neither party
    """
    result = await session.execute(
        select(ShareRequest).where(
            and_(
                ShareRequest.id == request_id,
                ShareRequest.parent_share_id.is_(None),
                or_(ShareRequest.owner_id == user_id, ShareRequest.shared_with_id == user_id),
            )
        )
    )
    root = result.scalar_one_or_none()
    if root is None:
        raise NotFoundError("Share request not found")

    data = await share_request_to_dict(session, root)
    data["children"] = [
        await share_request_to_dict(session, child)
        for child in await get_share_children(session, root.id)
    ]
    return data


async def list_share_requests(
    session: AsyncSession,
    user_id: int,
    direction: str = "incoming",
    status: Optional[str] = None,
) -> List[Dict]:
    """
    List root share requests sent to (incoming) or by (outgoing) a user, newest first.

    Raises:
        ValueError: If direction or status is unknown
    """
    if direction == "incoming":
        party = ShareRequest.shared_with_id
    elif direction == "outgoing":
        party = ShareRequest.owner_id
    else:
        raise ValueError("direction must be 'incoming' or 'outgoing'")

    query = select(ShareRequest).where(
        and_(party == user_id, ShareRequest.parent_share_id.is_(None))
    )
    if status is not None:
        query = query.where(ShareRequest.status == ShareRequestStatus(status).value)
    result = await session.execute(query.order_by(ShareRequest.created_at.desc(), ShareRequest.id.desc()))
    return [await share_request_to_dict(session, request) for request in result.scalars().all()]
