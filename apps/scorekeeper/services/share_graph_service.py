"""
Share graph builder: computes the dependency closure of a shared item.

Read-only. Given a root item it walks the catalog to find everything the
recipient needs in order to make sense of it (a match needs its game,
scoresheet, location and players) and returns the items in dependency
order, so that processing them front to back always finds an item's
dependencies already resolved.
"""

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set, Tuple
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession
from scorekeeper.database.models import (
    Game,
    Location,
    Match,
    MatchPlayer,
    Player,
    Scoresheet,
    ScoresheetType,
    ShareItemType,
    ShareRequest,
    ShareRequestStatus,
)
from scorekeeper.services.errors import NotFoundError
import logging

logger = logging.getLogger(__name__)

ItemKey = Tuple[ShareItemType, int]

# Lower ranks never depend on higher ones.
DEPENDENCY_RANK: Dict[ShareItemType, int] = {
    ShareItemType.GAME: 0,
    ShareItemType.SCORESHEET: 1,
    ShareItemType.LOCATION: 2,
    ShareItemType.PLAYER: 3,
    ShareItemType.MATCH: 4,
    ShareItemType.MATCH_PLAYER: 5,
}


@dataclass(frozen=True)
class ShareItem:
    """One node of a share closure."""

    item_type: ShareItemType
    item_id: int
    parent_type: Optional[ShareItemType] = None  # Item this one was reached from
    parent_id: Optional[int] = None
    requires: Tuple[ItemKey, ...] = ()  # Items that must resolve before this one

    @property
    def key(self) -> ItemKey:
        return (self.item_type, self.item_id)


@dataclass
class ShareClosure:
    """Root item plus its deduplicated, dependency-ordered children."""

    root: ShareItem
    children: List[ShareItem] = field(default_factory=list)

    def all_items(self) -> List[ShareItem]:
        return [self.root] + self.children


@dataclass(frozen=True)
class ClosureOptions:
    include_players: bool = True
    include_location: bool = True


class _ClosureCollector:
    """Accumulates items, dropping duplicates, the root, and skipped keys."""

    def __init__(self, root_key: ItemKey, skip: Set[ItemKey]):
        self.root_key = root_key
        self.skip = skip
        self.root_requires: Tuple[ItemKey, ...] = ()
        self._items: Dict[ItemKey, ShareItem] = {}

    def add(
        self,
        item_type: ShareItemType,
        item_id: int,
        parent_type: Optional[ShareItemType] = None,
        parent_id: Optional[int] = None,
        requires: Iterable[ItemKey] = (),
    ) -> None:
        key = (item_type, item_id)
        if key == self.root_key:
            self.root_requires = tuple(requires)
            return
        if key in self.skip or key in self._items:
            return
        self._items[key] = ShareItem(item_type, item_id, parent_type, parent_id, tuple(requires))

    def ordered(self) -> List[ShareItem]:
        # dicts keep insertion order, and sorted() is stable
        return sorted(self._items.values(), key=lambda item: DEPENDENCY_RANK[item.item_type])


async def get_accepted_item_keys(
    session: AsyncSession, owner_id: int, shared_with_id: int
) -> Set[ItemKey]:
    """
    Get every item already accepted between an owner and a recipient.

    Args:
        session: Database session
        owner_id: Sharing user
        shared_with_id: Receiving user

    Returns:
        Set of (item type, item id)
    """
    result = await session.execute(
        select(ShareRequest.item_type, ShareRequest.item_id).where(
            and_(
                ShareRequest.owner_id == owner_id,
                ShareRequest.shared_with_id == shared_with_id,
                ShareRequest.status == ShareRequestStatus.ACCEPTED.value,
            )
        )
    )
    return {(ShareItemType(item_type), item_id) for item_type, item_id in result.all()}


async def get_game_scoresheet(session: AsyncSession, game_id: int) -> Optional[Scoresheet]:
    """
    Get the scoresheet new matches of a game are based on.

    The Default-type scoresheet wins; otherwise the oldest Game-type one.
    """
    result = await session.execute(
        select(Scoresheet)
        .where(
            and_(
                Scoresheet.game_id == game_id,
                Scoresheet.type.in_([ScoresheetType.DEFAULT.value, ScoresheetType.GAME.value]),
            )
        )
        .order_by(Scoresheet.id)
    )
    scoresheets = list(result.scalars().all())
    for scoresheet in scoresheets:
        if scoresheet.type == ScoresheetType.DEFAULT.value:
            return scoresheet
    return scoresheets[0] if scoresheets else None


async def _get_owned(session: AsyncSession, model, item_id: int, owner_id: int, label: str):
    row = await session.get(model, item_id)
    if row is None or row.created_by != owner_id:
        raise NotFoundError(f"{label} not found")
    return row


async def _add_match(
    session: AsyncSession,
    collector: _ClosureCollector,
    match: Match,
    options: ClosureOptions,
    parent_type: ShareItemType,
    parent_id: int,
) -> None:
    """Add a match and everything the recipient needs to read it."""
    game_key = (ShareItemType.GAME, match.game_id)
    match_key = (ShareItemType.MATCH, match.id)

    collector.add(ShareItemType.GAME, match.game_id, ShareItemType.MATCH, match.id)

    game_scoresheet = await get_game_scoresheet(session, match.game_id)
    if game_scoresheet is not None and game_scoresheet.id != match.scoresheet_id:
        collector.add(
            ShareItemType.SCORESHEET,
            game_scoresheet.id,
            ShareItemType.MATCH,
            match.id,
            requires=(game_key,),
        )
    collector.add(
        ShareItemType.SCORESHEET,
        match.scoresheet_id,
        ShareItemType.MATCH,
        match.id,
        requires=(game_key,),
    )

    if options.include_location and match.location_id is not None:
        collector.add(ShareItemType.LOCATION, match.location_id, ShareItemType.MATCH, match.id)

    collector.add(
        ShareItemType.MATCH,
        match.id,
        parent_type,
        parent_id,
        requires=(game_key, (ShareItemType.SCORESHEET, match.scoresheet_id)),
    )

    result = await session.execute(
        select(MatchPlayer).where(MatchPlayer.match_id == match.id).order_by(MatchPlayer.id)
    )
    for match_player in result.scalars().all():
        if options.include_players:
            collector.add(ShareItemType.PLAYER, match_player.player_id, ShareItemType.MATCH, match.id)
        collector.add(
            ShareItemType.MATCH_PLAYER,
            match_player.id,
            ShareItemType.MATCH,
            match.id,
            requires=(match_key,),
        )


async def _expand_game(session, collector, owner_id, game_id, options):
    await _get_owned(session, Game, game_id, owner_id, "Game")

    result = await session.execute(
        select(Scoresheet)
        .where(
            and_(
                Scoresheet.game_id == game_id,
                Scoresheet.created_by == owner_id,
                Scoresheet.type.in_([ScoresheetType.DEFAULT.value, ScoresheetType.GAME.value]),
            )
        )
        .order_by(Scoresheet.id)
    )
    for scoresheet in result.scalars().all():
        collector.add(
            ShareItemType.SCORESHEET,
            scoresheet.id,
            ShareItemType.GAME,
            game_id,
            requires=((ShareItemType.GAME, game_id),),
        )

    result = await session.execute(
        select(Match)
        .where(and_(Match.game_id == game_id, Match.created_by == owner_id))
        .order_by(Match.date, Match.id)
    )
    for match in result.scalars().all():
        await _add_match(session, collector, match, options, ShareItemType.GAME, game_id)


async def _expand_match(session, collector, owner_id, match_id, options):
    match = await _get_owned(session, Match, match_id, owner_id, "Match")
    await _add_match(session, collector, match, options, ShareItemType.MATCH, match.id)


async def _expand_player(session, collector, owner_id, player_id, options):
    await _get_owned(session, Player, player_id, owner_id, "Player")

    result = await session.execute(
        select(Match)
        .join(MatchPlayer, MatchPlayer.match_id == Match.id)
        .where(and_(MatchPlayer.player_id == player_id, Match.created_by == owner_id))
        .order_by(Match.date, Match.id)
    )
    for match in result.scalars().unique().all():
        await _add_match(session, collector, match, options, ShareItemType.PLAYER, player_id)


async def _expand_scoresheet(session, collector, owner_id, scoresheet_id, options):
    scoresheet = await _get_owned(session, Scoresheet, scoresheet_id, owner_id, "Scoresheet")
    game_key = (ShareItemType.GAME, scoresheet.game_id)
    collector.add(ShareItemType.GAME, scoresheet.game_id, ShareItemType.SCORESHEET, scoresheet.id)
    collector.add(ShareItemType.SCORESHEET, scoresheet.id, requires=(game_key,))


async def _expand_location(session, collector, owner_id, location_id, options):
    await _get_owned(session, Location, location_id, owner_id, "Location")


async def _expand_match_player(session, collector, owner_id, match_player_id, options):
    match_player = await session.get(MatchPlayer, match_player_id)
    if match_player is None:
        raise NotFoundError("Match player not found")
    match = await _get_owned(session, Match, match_player.match_id, owner_id, "Match player")
    await _add_match(session, collector, match, options, ShareItemType.MATCH_PLAYER, match_player_id)


Expander = Callable[[AsyncSession, _ClosureCollector, int, int, ClosureOptions], Awaitable[None]]

_EXPANDERS: Dict[ShareItemType, Expander] = {
    ShareItemType.GAME: _expand_game,
    ShareItemType.MATCH: _expand_match,
    ShareItemType.PLAYER: _expand_player,
    ShareItemType.SCORESHEET: _expand_scoresheet,
    ShareItemType.LOCATION: _expand_location,
    ShareItemType.MATCH_PLAYER: _expand_match_player,
}

_missing = set(ShareItemType) - set(_EXPANDERS)
if _missing:
    raise RuntimeError(f"No closure expander for item types: {sorted(t.value for t in _missing)}")


async def build_share_closure(
    session: AsyncSession,
    owner_id: int,
    shared_with_id: int,
    item_type: ShareItemType,
    item_id: int,
    options: Optional[ClosureOptions] = None,
    exclude: Iterable[ItemKey] = (),
) -> ShareClosure:
    """
    Compute the items to share along with a root item.

    Items already accepted between the same owner and recipient are left
    out (they are resolved through their existing mirrors), as are any keys
    in ``exclude``. Walking still continues through skipped items, so new
    matches of an already shared game are found.

    Args:
        session: Database session
        owner_id: Sharing user; must own the root item
        shared_with_id: Receiving user
        item_type: Root item type
        item_id: Root item id
        options: What to include alongside matches
        exclude: Extra item keys to leave out

    Returns:
        ShareClosure with children in dependency order

    Raises:
        NotFoundError: If the root does not exist or is not the owner's
    """
    item_type = ShareItemType(item_type)
    options = options or ClosureOptions()
    skip = await get_accepted_item_keys(session, owner_id, shared_with_id)
    skip.update(exclude)

    collector = _ClosureCollector((item_type, item_id), skip)
    await _EXPANDERS[item_type](session, collector, owner_id, item_id, options)

    closure = ShareClosure(
        root=ShareItem(item_type, item_id, requires=collector.root_requires),
        children=collector.ordered(),
    )
    logger.debug(
        f"Share closure for {item_type.value} {item_id} ({owner_id} -> {shared_with_id}): "
        f"{len(closure.children)} children"
    )
    return closure
