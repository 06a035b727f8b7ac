"""
Acceptance processor: turns accepted share requests into mirrors.

For catalog entities (game, scoresheet, location, player, role) the mirror
is resolved to a recipient-owned row, either an existing one the recipient
chose to link or a fresh clone. Matches and match participants are never
copied: the mirror itself is the recipient's handle on the owner's row.

Every handler looks up its mirror before inserting, so processing the same
request again is a no-op that returns the same resolution.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Sequence
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from scorekeeper.database.models import (
    Game,
    GameRole,
    Location,
    Match,
    MatchPlayer,
    MatchPlayerRole,
    Player,
    Scoresheet,
    ScoresheetType,
    ShareItemType,
    ShareRequest,
    ShareRequestStatus,
    SharedGame,
    SharedMatch,
    SharedMatchPlayer,
    SharedMatchPlayerRole,
    SharedScoresheetType,
)
from scorekeeper.services import materializer
from scorekeeper.services.errors import NotFoundError, assert_found
from scorekeeper.services.share_graph_service import DEPENDENCY_RANK
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShareDecision:
    """Recipient's choice for one item of a share tree."""

    accept: bool = True
    link_id: Optional[int] = None  # Existing recipient entity to link instead of cloning


DEFAULT_DECISION = ShareDecision()


@dataclass(frozen=True)
class AcceptedItem:
    """Outcome of processing one accepted request."""

    share_request_id: int
    item_type: ShareItemType
    item_id: int
    mirror_id: int
    linked_id: Optional[int] = None  # Resolved local entity; None for matches and participants

    def to_dict(self) -> Dict:
        return {
            "share_request_id": self.share_request_id,
            "item_type": self.item_type.value,
            "item_id": self.item_id,
            "mirror_id": self.mirror_id,
            "linked_id": self.linked_id,
        }


async def _load_source(session: AsyncSession, model, request: ShareRequest, label: str):
    row = await session.get(model, request.item_id)
    if row is None or row.created_by != request.owner_id:
        raise NotFoundError(f"Shared {label} not found")
    return row


async def _require_shared_game(session: AsyncSession, request: ShareRequest, game_id: int):
    shared_game = await materializer.get_mirror(
        session, materializer.GAME, request.owner_id, request.shared_with_id, game_id
    )
    if shared_game is None or shared_game.linked_game_id is None:
        raise NotFoundError("Shared game not found. Accept the game first.")
    return shared_game


async def _accept_game(
    session: AsyncSession, request: ShareRequest, decision: ShareDecision
) -> AcceptedItem:
    game = await _load_source(session, Game, request, "game")
    mirror = await materializer.get_or_create_mirror(
        session,
        materializer.GAME,
        request.owner_id,
        request.shared_with_id,
        game.id,
        permission=request.permission,
    )
    linked_id = await materializer.link_or_clone(
        session, materializer.GAME, mirror, game, request.shared_with_id, link_id=decision.link_id
    )
    return AcceptedItem(request.id, ShareItemType.GAME, game.id, mirror.id, linked_id)


async def _accept_scoresheet(
    session: AsyncSession, request: ShareRequest, decision: ShareDecision
) -> AcceptedItem:
    scoresheet = await _load_source(session, Scoresheet, request, "scoresheet")
    shared_game = await _require_shared_game(session, request, scoresheet.game_id)

    parent_mirror = None
    if scoresheet.parent_id is not None:
        parent_mirror = await materializer.get_mirror(
            session,
            materializer.SCORESHEET,
            request.owner_id,
            request.shared_with_id,
            scoresheet.parent_id,
        )

    is_match_sheet = scoresheet.type == ScoresheetType.MATCH.value
    mirror = await materializer.get_or_create_mirror(
        session,
        materializer.SCORESHEET,
        request.owner_id,
        request.shared_with_id,
        scoresheet.id,
        shared_game_id=shared_game.id,
        type=(SharedScoresheetType.MATCH if is_match_sheet else SharedScoresheetType.GAME).value,
        parent_id=parent_mirror.id if parent_mirror is not None else None,
        permission=request.permission,
    )

    # Scoresheets are always cloned, never linked.
    if mirror.linked_scoresheet_id is None:
        clone, round_pairs = await materializer.clone_scoresheet(
            session, scoresheet, request.shared_with_id, shared_game.linked_game_id
        )
        mirror.linked_scoresheet_id = clone.id
        for source_round, new_round in round_pairs:
            await materializer.get_or_create_mirror(
                session,
                materializer.ROUND,
                request.owner_id,
                request.shared_with_id,
                source_round.id,
                shared_scoresheet_id=mirror.id,
                linked_round_id=new_round.id,
                permission=request.permission,
            )
        await session.flush()

    return AcceptedItem(
        request.id, ShareItemType.SCORESHEET, scoresheet.id, mirror.id, mirror.linked_scoresheet_id
    )


async def _accept_location(
    session: AsyncSession, request: ShareRequest, decision: ShareDecision
) -> AcceptedItem:
    location = await _load_source(session, Location, request, "location")
    mirror = await materializer.get_or_create_mirror(
        session,
        materializer.LOCATION,
        request.owner_id,
        request.shared_with_id,
        location.id,
        permission=request.permission,
    )
    linked_id = await materializer.link_or_clone(
        session, materializer.LOCATION, mirror, location, request.shared_with_id, link_id=decision.link_id
    )
    return AcceptedItem(request.id, ShareItemType.LOCATION, location.id, mirror.id, linked_id)


async def _accept_player(
    session: AsyncSession, request: ShareRequest, decision: ShareDecision
) -> AcceptedItem:
    player = await _load_source(session, Player, request, "player")
    mirror = await materializer.get_or_create_mirror(
        session,
        materializer.PLAYER,
        request.owner_id,
        request.shared_with_id,
        player.id,
        permission=request.permission,
    )
    linked_id = await materializer.link_or_clone(
        session, materializer.PLAYER, mirror, player, request.shared_with_id, link_id=decision.link_id
    )

    # Participants mirrored before this player was accepted now get their player reference.
    result = await session.execute(
        select(SharedMatchPlayer)
        .join(MatchPlayer, MatchPlayer.id == SharedMatchPlayer.match_player_id)
        .where(
            SharedMatchPlayer.owner_id == request.owner_id,
            SharedMatchPlayer.shared_with_id == request.shared_with_id,
            SharedMatchPlayer.shared_player_id.is_(None),
            MatchPlayer.player_id == player.id,
        )
    )
    for shared_match_player in result.scalars().all():
        shared_match_player.shared_player_id = mirror.id
    await session.flush()

    return AcceptedItem(request.id, ShareItemType.PLAYER, player.id, mirror.id, linked_id)


async def mirror_match_player(
    session: AsyncSession,
    shared_match: SharedMatch,
    match_player: MatchPlayer,
) -> SharedMatchPlayer:
    """
    Mirror one participant of a shared match, including its roles.

    The participant's player reference is filled in when the player itself
    has been shared; roles go through the game-role link-or-clone step.
    """
    shared_player = await materializer.get_mirror(
        session, materializer.PLAYER, shared_match.owner_id, shared_match.shared_with_id, match_player.player_id
    )
    mirror, _ = await materializer.get_or_create_row(
        session,
        SharedMatchPlayer,
        {
            "owner_id": shared_match.owner_id,
            "shared_with_id": shared_match.shared_with_id,
            "match_player_id": match_player.id,
        },
        {
            "shared_match_id": shared_match.id,
            "shared_player_id": shared_player.id if shared_player is not None else None,
            "permission": shared_match.permission,
        },
    )
    if mirror.shared_player_id is None and shared_player is not None:
        mirror.shared_player_id = shared_player.id
        await session.flush()

    await sync_match_player_roles(session, shared_match, match_player, mirror)
    return mirror


async def sync_match_player_roles(
    session: AsyncSession,
    shared_match: SharedMatch,
    match_player: MatchPlayer,
    mirror: SharedMatchPlayer,
) -> None:
    """Make a participant mirror's roles match the participant's current roles."""
    result = await session.execute(
        select(GameRole)
        .join(MatchPlayerRole, MatchPlayerRole.role_id == GameRole.id)
        .where(MatchPlayerRole.match_player_id == match_player.id)
        .order_by(GameRole.id)
    )
    roles = list(result.scalars().all())

    existing = await session.execute(
        select(SharedMatchPlayerRole).where(
            SharedMatchPlayerRole.shared_match_player_id == mirror.id
        )
    )
    existing_rows = list(existing.scalars().all())
    if not roles and not existing_rows:
        return

    shared_game = assert_found(
        await session.get(SharedGame, shared_match.shared_game_id),
        "Shared game not found",
    )
    wanted = set()
    for role in roles:
        shared_role = await materializer.resolve_game_role(
            session, role, shared_game, shared_match.permission
        )
        wanted.add(shared_role.id)
        await materializer.get_or_create_row(
            session,
            SharedMatchPlayerRole,
            {"shared_match_player_id": mirror.id, "shared_game_role_id": shared_role.id},
            {"owner_id": shared_match.owner_id, "shared_with_id": shared_match.shared_with_id},
        )

    for row in existing_rows:
        if row.shared_game_role_id not in wanted:
            await session.delete(row)
    await session.flush()


async def _accept_match(
    session: AsyncSession, request: ShareRequest, decision: ShareDecision
) -> AcceptedItem:
    match = await _load_source(session, Match, request, "match")
    shared_game = await _require_shared_game(session, request, match.game_id)
    shared_scoresheet = await materializer.get_mirror(
        session, materializer.SCORESHEET, request.owner_id, request.shared_with_id, match.scoresheet_id
    )
    if shared_scoresheet is None:
        raise NotFoundError("Shared scoresheet not found. Accept the scoresheet first.")

    shared_location = None
    if match.location_id is not None:
        shared_location = await materializer.get_mirror(
            session, materializer.LOCATION, request.owner_id, request.shared_with_id, match.location_id
        )

    shared_match, _ = await materializer.get_or_create_row(
        session,
        SharedMatch,
        {"owner_id": request.owner_id, "shared_with_id": request.shared_with_id, "match_id": match.id},
        {
            "shared_game_id": shared_game.id,
            "shared_scoresheet_id": shared_scoresheet.id,
            "shared_location_id": shared_location.id if shared_location is not None else None,
            "permission": request.permission,
        },
    )
    if shared_match.shared_location_id is None and shared_location is not None:
        shared_match.shared_location_id = shared_location.id
        await session.flush()

    result = await session.execute(
        select(MatchPlayer).where(MatchPlayer.match_id == match.id).order_by(MatchPlayer.id)
    )
    for match_player in result.scalars().all():
        await mirror_match_player(session, shared_match, match_player)

    return AcceptedItem(request.id, ShareItemType.MATCH, match.id, shared_match.id)


async def _accept_match_player(
    session: AsyncSession, request: ShareRequest, decision: ShareDecision
) -> AcceptedItem:
    match_player = await session.get(MatchPlayer, request.item_id)
    if match_player is None:
        raise NotFoundError("Shared match player not found")
    result = await session.execute(
        select(SharedMatch).where(
            SharedMatch.owner_id == request.owner_id,
            SharedMatch.shared_with_id == request.shared_with_id,
            SharedMatch.match_id == match_player.match_id,
        )
    )
    shared_match = result.scalar_one_or_none()
    if shared_match is None:
        raise NotFoundError("Shared match not found. Accept the match first.")
    mirror = await mirror_match_player(session, shared_match, match_player)
    return AcceptedItem(request.id, ShareItemType.MATCH_PLAYER, match_player.id, mirror.id)


Handler = Callable[[AsyncSession, ShareRequest, ShareDecision], Awaitable[AcceptedItem]]

_HANDLERS: Dict[ShareItemType, Handler] = {
    ShareItemType.GAME: _accept_game,
    ShareItemType.SCORESHEET: _accept_scoresheet,
    ShareItemType.LOCATION: _accept_location,
    ShareItemType.PLAYER: _accept_player,
    ShareItemType.MATCH: _accept_match,
    ShareItemType.MATCH_PLAYER: _accept_match_player,
}

_missing = set(ShareItemType) - set(_HANDLERS)
if _missing:
    raise RuntimeError(f"No acceptance handler for item types: {sorted(t.value for t in _missing)}")


def processing_order(requests: Sequence[ShareRequest]) -> List[ShareRequest]:
    """Sort requests so every item comes after the items it depends on, then by creation."""
    return sorted(requests, key=lambda r: (DEPENDENCY_RANK[ShareItemType(r.item_type)], r.id))


async def process_request(
    session: AsyncSession, request: ShareRequest, decision: ShareDecision = DEFAULT_DECISION
) -> AcceptedItem:
    """
    Materialize a single accepted request.

    Raises:
        ValueError: If the request is not accepted
    """
    if request.status != ShareRequestStatus.ACCEPTED.value:
        raise ValueError(f"Share request {request.id} is not accepted")
    handler = _HANDLERS[ShareItemType(request.item_type)]
    return await handler(session, request, decision)


async def process_requests(
    session: AsyncSession,
    requests: Sequence[ShareRequest],
    decisions: Optional[Mapping[int, ShareDecision]] = None,
) -> List[AcceptedItem]:
    """
    Materialize every accepted request of a tree in dependency order.

    Requests that are pending or rejected are skipped. Must run inside the
    caller's transaction: any failure propagates and should abort the
    whole tree.

    Args:
        session: Database session
        requests: Root and children of one share tree
        decisions: Per-request choices keyed by share request id

    Returns:
        One AcceptedItem per processed request
    """
    decisions = decisions or {}
    processed = []
    for request in processing_order(requests):
        if request.status != ShareRequestStatus.ACCEPTED.value:
            continue
        decision = decisions.get(request.id, DEFAULT_DECISION)
        processed.append(await process_request(session, request, decision))
    return processed
