"""
Match service: recording matches and acting on them as owner or through a share.

Every operation resolves the caller's access through permission_service
first, so the same function serves the owner (by match id) and a recipient
(by match id or shared-match id). A match is never copied for a recipient;
their edits land on the owner's row.
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
from sqlalchemy import select, delete, update, and_
from sqlalchemy.ext.asyncio import AsyncSession
from scorekeeper.database.db import transaction
from scorekeeper.database.models import (
    Game,
    GameRole,
    Location,
    Match,
    MatchPlayer,
    MatchPlayerRole,
    Player,
    Round,
    RoundPlayer,
    Scoresheet,
    ScoresheetType,
    ShareItemType,
    ShareRequest,
    SharedMatch,
    SharedMatchPlayer,
    SharedMatchPlayerRole,
    SharedRound,
    SharedScoresheet,
    Team,
)
from scorekeeper.services import auto_share_service, materializer, permission_service
from scorekeeper.services.auto_share_service import FriendShareResult
from scorekeeper.services.catalog_service import get_owned
from scorekeeper.services.errors import NotFoundError
from scorekeeper.services.permission_service import MatchAccess, MatchAction
from scorekeeper.services.placement_service import calculate_placement
from scorekeeper.services.share_acceptance_service import sync_match_player_roles
from scorekeeper.services.share_graph_service import get_game_scoresheet
from scorekeeper.utils.datetime_utils import ensure_utc, utcnow
import logging

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Loading and serialization
# ---------------------------------------------------------------------------


async def _get_match_players(session: AsyncSession, match_id: int) -> List[MatchPlayer]:
    result = await session.execute(
        select(MatchPlayer).where(MatchPlayer.match_id == match_id).order_by(MatchPlayer.id)
    )
    return list(result.scalars().all())


async def _get_match_player(session: AsyncSession, match: Match, match_player_id: int) -> MatchPlayer:
    match_player = await session.get(MatchPlayer, match_player_id)
    if match_player is None or match_player.match_id != match.id:
        raise NotFoundError("Match player not found")
    return match_player


async def match_to_dict(session: AsyncSession, access: MatchAccess) -> Dict:
    """Serialize a match as seen by the caller."""
    match = access.match
    players = []
    for match_player in await _get_match_players(session, match.id):
        player = await session.get(Player, match_player.player_id)
        rounds = await session.execute(
            select(RoundPlayer.round_id, RoundPlayer.score)
            .where(RoundPlayer.match_player_id == match_player.id)
            .order_by(RoundPlayer.round_id)
        )
        roles = await session.execute(
            select(MatchPlayerRole.role_id)
            .where(MatchPlayerRole.match_player_id == match_player.id)
            .order_by(MatchPlayerRole.role_id)
        )
        players.append({
            "id": match_player.id,
            "player_id": match_player.player_id,
            "name": player.name if player is not None else None,
            "team_id": match_player.team_id,
            "score": match_player.score,
            "placement": match_player.placement,
            "winner": match_player.winner,
            "round_scores": [{"round_id": r, "score": s} for r, s in rounds.all()],
            "role_ids": list(roles.scalars().all()),
        })

    teams = await session.execute(select(Team).where(Team.match_id == match.id).order_by(Team.id))
    return {
        "id": match.id,
        "shared_match_id": access.shared_match.id if access.shared_match is not None else None,
        "owner_id": match.created_by,
        "permission": access.permission,
        "game_id": match.game_id,
        "scoresheet_id": match.scoresheet_id,
        "location_id": match.location_id,
        "name": match.name,
        "date": match.date,
        "finished": match.finished,
        "running": match.running,
        "start_time": match.start_time,
        "duration": match.duration,
        "comment": match.comment,
        "players": players,
        "teams": [{"id": t.id, "name": t.name} for t in teams.scalars().all()],
    }


async def get_match(
    session: AsyncSession,
    user_id: int,
    match_id: Optional[int] = None,
    shared_match_id: Optional[int] = None,
) -> Dict:
    """
    Read a match as its owner or through a share.

    Raises:
        NotFoundError: If the caller has no access
    """
    access = await permission_service.authorize_match_action(
        session, user_id, MatchAction.READ, match_id, shared_match_id
    )
    return await match_to_dict(session, access)


async def list_shared_matches(session: AsyncSession, user_id: int) -> List[Dict]:
    """List the matches shared with a user, newest first."""
    result = await session.execute(
        select(SharedMatch, Match)
        .join(Match, Match.id == SharedMatch.match_id)
        .where(SharedMatch.shared_with_id == user_id)
        .order_by(Match.date.desc(), Match.id.desc())
    )
    return [
        {
            "shared_match_id": shared_match.id,
            "match_id": match.id,
            "owner_id": shared_match.owner_id,
            "permission": shared_match.permission,
            "name": match.name,
            "date": match.date,
            "finished": match.finished,
        }
        for shared_match, match in result.all()
    ]


# ---------------------------------------------------------------------------
# Placements
# ---------------------------------------------------------------------------


async def recalculate_placements(session: AsyncSession, match: Match) -> List[Dict]:
    """
    Re-derive scores, placements and winners of a match from its round scores.

    Returns:
        The placement results that were applied
    """
    match_players = await _get_match_players(session, match.id)
    if not match_players:
        return []

    scoresheet = await session.get(Scoresheet, match.scoresheet_id)
    players = []
    for match_player in match_players:
        result = await session.execute(
            select(RoundPlayer.score).where(RoundPlayer.match_player_id == match_player.id)
        )
        total = sum(score or 0 for score in result.scalars().all())
        players.append({"id": match_player.id, "score": total, "team_id": match_player.team_id})

    results = calculate_placement(
        players,
        {
            "win_condition": scoresheet.win_condition,
            "target_score": scoresheet.target_score,
            "is_coop": scoresheet.is_coop,
        },
    )
    by_id = {match_player.id: match_player for match_player in match_players}
    for entry in results:
        match_player = by_id[entry["id"]]
        match_player.score = entry["score"]
        match_player.placement = entry["placement"]
        match_player.winner = entry["winner"]
    await session.flush()
    return results


# ---------------------------------------------------------------------------
# Owner operations
# ---------------------------------------------------------------------------


async def _add_participants(
    session: AsyncSession,
    match: Match,
    player_ids: Sequence[int],
    user_id: int,
) -> List[MatchPlayer]:
    existing = {mp.player_id for mp in await _get_match_players(session, match.id)}
    rounds = await materializer.get_rounds(session, match.scoresheet_id)

    added = []
    for player_id in player_ids:
        if player_id in existing:
            continue
        await get_owned(session, Player, player_id, user_id, "Player")
        match_player = MatchPlayer(match_id=match.id, player_id=player_id)
        session.add(match_player)
        added.append(match_player)
        existing.add(player_id)
    await session.flush()

    for match_player in added:
        session.add_all(
            RoundPlayer(round_id=round_.id, match_player_id=match_player.id) for round_ in rounds
        )
    await session.flush()
    return added


async def create_match(
    session: AsyncSession,
    user_id: int,
    game_id: int,
    name: str,
    date: datetime,
    player_ids: Sequence[int],
    location_id: Optional[int] = None,
    scoresheet_id: Optional[int] = None,
    team_names: Sequence[str] = (),
) -> Tuple[Match, List[FriendShareResult]]:
    """
    Record a new match and auto-share it with participating friends.

    The match gets its own snapshot of the game scoresheet, so later edits
    to the game's scoresheet do not change recorded matches.

    Args:
        session: Database session
        user_id: Owner
        game_id: Game played
        name: Match name
        date: When it was played
        player_ids: Participants (the owner's players)
        location_id: Optional location (the owner's)
        scoresheet_id: Scoresheet to snapshot; defaults to the game's default one
        team_names: Teams to create

    Returns:
        (match, auto-share results)

    Raises:
        NotFoundError: If the game, location, scoresheet or a player is not the owner's
        ValueError: If the game has no scoresheet
    """
    game = await get_owned(session, Game, game_id, user_id, "Game")
    if location_id is not None:
        await get_owned(session, Location, location_id, user_id, "Location")

    if scoresheet_id is not None:
        source = await get_owned(session, Scoresheet, scoresheet_id, user_id, "Scoresheet")
        if source.game_id != game.id:
            raise NotFoundError("Scoresheet not found")
    else:
        source = await get_game_scoresheet(session, game.id)
        if source is None:
            raise ValueError("No default scoresheet found for this game")

    async with transaction(session):
        snapshot, _ = await materializer.clone_scoresheet(
            session, source, user_id, game.id, type=ScoresheetType.MATCH.value
        )
        match = Match(
            created_by=user_id,
            game_id=game.id,
            scoresheet_id=snapshot.id,
            location_id=location_id,
            name=name,
            date=date,
        )
        session.add(match)
        await session.flush()

        session.add_all(Team(match_id=match.id, name=team_name) for team_name in team_names)
        await _add_participants(session, match, player_ids, user_id)

    logger.info(f"User {user_id} created match {match.id} with {len(player_ids)} players")
    shares = await auto_share_service.auto_share_match(session, user_id, match.id)
    return match, shares


async def _remove_participant(session: AsyncSession, match_player: MatchPlayer) -> None:
    mirrors = select(SharedMatchPlayer.id).where(SharedMatchPlayer.match_player_id == match_player.id)
    await session.execute(
        delete(SharedMatchPlayerRole).where(SharedMatchPlayerRole.shared_match_player_id.in_(mirrors))
    )
    await session.execute(
        delete(SharedMatchPlayer).where(SharedMatchPlayer.match_player_id == match_player.id)
    )
    await session.execute(
        delete(ShareRequest).where(
            and_(
                ShareRequest.item_type == ShareItemType.MATCH_PLAYER.value,
                ShareRequest.item_id == match_player.id,
            )
        )
    )
    await session.execute(delete(RoundPlayer).where(RoundPlayer.match_player_id == match_player.id))
    await session.execute(
        delete(MatchPlayerRole).where(MatchPlayerRole.match_player_id == match_player.id)
    )
    await session.execute(delete(MatchPlayer).where(MatchPlayer.id == match_player.id))


async def update_match_players(
    session: AsyncSession,
    user_id: int,
    match_id: int,
    add_player_ids: Sequence[int] = (),
    remove_match_player_ids: Sequence[int] = (),
) -> Tuple[Match, List[FriendShareResult]]:
    """
    Change who played a match (owner only).

    Finished matches get their placements re-derived. Friends among the new
    participants are auto-shared the match.

    Raises:
        NotFoundError: If the caller has no access, or a player or participant is unknown
        UnauthorizedError: If the caller is not the owner
    """
    access = await permission_service.authorize_match_action(
        session, user_id, MatchAction.EDIT_ROSTER, match_id=match_id
    )
    match = access.match

    async with transaction(session):
        for match_player_id in remove_match_player_ids:
            await _remove_participant(session, await _get_match_player(session, match, match_player_id))
        await session.flush()
        await _add_participants(session, match, add_player_ids, user_id)
        if match.finished:
            await recalculate_placements(session, match)

    shares = await auto_share_service.auto_share_match(session, user_id, match.id)
    return match, shares


async def _delete_snapshot_scoresheet(session: AsyncSession, scoresheet_id: int) -> None:
    """Remove a deleted match's scoresheet snapshot, its rounds and their mirrors."""
    snapshot = await session.get(Scoresheet, scoresheet_id)
    if snapshot is None or snapshot.type != ScoresheetType.MATCH.value:
        return
    mirrors = select(SharedScoresheet.id).where(SharedScoresheet.scoresheet_id == snapshot.id)
    await session.execute(delete(SharedRound).where(SharedRound.shared_scoresheet_id.in_(mirrors)))
    await session.execute(delete(SharedScoresheet).where(SharedScoresheet.scoresheet_id == snapshot.id))
    sheet_roots = select(ShareRequest.id).where(
        and_(
            ShareRequest.item_type == ShareItemType.SCORESHEET.value,
            ShareRequest.item_id == snapshot.id,
            ShareRequest.parent_share_id.is_(None),
        )
    )
    await session.execute(delete(ShareRequest).where(ShareRequest.parent_share_id.in_(sheet_roots)))
    await session.execute(
        delete(ShareRequest).where(
            and_(
                ShareRequest.item_type == ShareItemType.SCORESHEET.value,
                ShareRequest.item_id == snapshot.id,
            )
        )
    )
    # Recipient clones stay; only their provenance pointer goes.
    await session.execute(
        update(Scoresheet).where(Scoresheet.parent_id == snapshot.id).values(parent_id=None)
    )
    await session.execute(delete(Round).where(Round.scoresheet_id == snapshot.id))
    await session.execute(delete(Scoresheet).where(Scoresheet.id == snapshot.id))


async def delete_match(session: AsyncSession, user_id: int, match_id: int) -> None:
    """
    Delete a match and every share of it (owner only).

    The match's scoresheet snapshot goes with it. Recipient-owned clones
    (games, players, scoresheets, ...) are theirs and stay.

    Raises:
        NotFoundError: If the caller has no access
        UnauthorizedError: If the caller reaches the match only through a share
    """
    access = await permission_service.authorize_match_action(
        session, user_id, MatchAction.DELETE, match_id=match_id
    )
    match = access.match
    snapshot_id = match.scoresheet_id

    async with transaction(session):
        match_roots = select(ShareRequest.id).where(
            and_(
                ShareRequest.item_type == ShareItemType.MATCH.value,
                ShareRequest.item_id == match.id,
                ShareRequest.parent_share_id.is_(None),
            )
        )
        await session.execute(delete(ShareRequest).where(ShareRequest.parent_share_id.in_(match_roots)))
        await session.execute(
            delete(ShareRequest).where(
                and_(ShareRequest.item_type == ShareItemType.MATCH.value, ShareRequest.item_id == match.id)
            )
        )
        for match_player in await _get_match_players(session, match.id):
            await _remove_participant(session, match_player)
        await session.execute(delete(SharedMatch).where(SharedMatch.match_id == match.id))
        await session.execute(delete(Team).where(Team.match_id == match.id))
        await session.delete(match)
        await session.flush()
        await _delete_snapshot_scoresheet(session, snapshot_id)

    logger.info(f"User {user_id} deleted match {match_id}")


# ---------------------------------------------------------------------------
# Owner or shared-editor operations
# ---------------------------------------------------------------------------


async def edit_match_details(
    session: AsyncSession,
    user_id: int,
    match_id: Optional[int] = None,
    shared_match_id: Optional[int] = None,
    name: Optional[str] = None,
    date: Optional[datetime] = None,
    location_id: Optional[int] = None,
    shared_location_id: Optional[int] = None,
) -> MatchAccess:
    """
    Change a match's name, date or location.

    The owner picks a location by its id. A shared editor can only point
    the match at a location the owner shared with them, by shared-location id.

    Raises:
        NotFoundError: If the caller has no access or the location is not reachable
        UnauthorizedError: If the caller only has view permission
    """
    access = await permission_service.authorize_match_action(
        session, user_id, MatchAction.EDIT_DETAILS, match_id, shared_match_id
    )
    match = access.match

    async with transaction(session):
        if name is not None:
            match.name = name
        if date is not None:
            match.date = date
        if access.is_owner and location_id is not None:
            await get_owned(session, Location, location_id, user_id, "Location")
            match.location_id = location_id
        if shared_location_id is not None:
            shared_location = await permission_service.get_shared_item(
                session, user_id, ShareItemType.LOCATION, shared_location_id
            )
            if shared_location.owner_id != match.created_by:
                raise NotFoundError("Shared location not found")
            match.location_id = shared_location.location_id
            if access.shared_match is not None:
                access.shared_match.shared_location_id = shared_location.id
        await session.flush()
    return access


async def start_match(session: AsyncSession, user_id: int, match_id=None, shared_match_id=None) -> MatchAccess:
    """Start (or resume) the match clock."""
    access = await permission_service.authorize_match_action(
        session, user_id, MatchAction.START, match_id, shared_match_id
    )
    match = access.match
    if not match.running:
        match.running = True
        match.finished = False
        match.start_time = utcnow()
        await session.flush()
    return access


def _stop_clock(match: Match) -> None:
    if match.running and match.start_time is not None:
        elapsed = utcnow() - ensure_utc(match.start_time)
        match.duration = (match.duration or 0) + int(elapsed.total_seconds())
    match.running = False
    match.start_time = None


async def pause_match(session: AsyncSession, user_id: int, match_id=None, shared_match_id=None) -> MatchAccess:
    """Pause the match clock, adding the elapsed time to the duration."""
    access = await permission_service.authorize_match_action(
        session, user_id, MatchAction.PAUSE, match_id, shared_match_id
    )
    _stop_clock(access.match)
    await session.flush()
    return access


async def finish_match(session: AsyncSession, user_id: int, match_id=None, shared_match_id=None) -> MatchAccess:
    """Stop the clock, mark the match finished and derive placements."""
    access = await permission_service.authorize_match_action(
        session, user_id, MatchAction.FINISH, match_id, shared_match_id
    )
    async with transaction(session):
        _stop_clock(access.match)
        access.match.finished = True
        await recalculate_placements(session, access.match)
    logger.info(f"User {user_id} finished match {access.match.id}")
    return access


async def reset_duration(session: AsyncSession, user_id: int, match_id=None, shared_match_id=None) -> MatchAccess:
    """Zero the match clock; a running clock restarts from now."""
    access = await permission_service.authorize_match_action(
        session, user_id, MatchAction.RESET_DURATION, match_id, shared_match_id
    )
    match = access.match
    match.duration = 0
    match.start_time = utcnow() if match.running else None
    await session.flush()
    return access


async def update_comment(
    session: AsyncSession, user_id: int, comment: Optional[str], match_id=None, shared_match_id=None
) -> MatchAccess:
    """Replace the match comment."""
    access = await permission_service.authorize_match_action(
        session, user_id, MatchAction.UPDATE_COMMENT, match_id, shared_match_id
    )
    access.match.comment = comment
    await session.flush()
    return access


async def update_round_score(
    session: AsyncSession,
    user_id: int,
    match_player_id: int,
    round_id: int,
    score: Optional[int],
    match_id=None,
    shared_match_id=None,
) -> MatchAccess:
    """
    Set one participant's score for one round.

    Finished matches get their placements re-derived.

    Raises:
        NotFoundError: If the participant or round is not part of the match
        UnauthorizedError: If the caller only has view permission
    """
    access = await permission_service.authorize_match_action(
        session, user_id, MatchAction.UPDATE_SCORE, match_id, shared_match_id
    )
    match = access.match
    match_player = await _get_match_player(session, match, match_player_id)
    round_ = await session.get(Round, round_id)
    if round_ is None or round_.scoresheet_id != match.scoresheet_id:
        raise NotFoundError("Round not found")

    async with transaction(session):
        round_player, _ = await materializer.get_or_create_row(
            session, RoundPlayer, {"round_id": round_.id, "match_player_id": match_player.id}
        )
        round_player.score = score
        await session.flush()
        if match.finished:
            await recalculate_placements(session, match)
    return access


async def update_match_player_team(
    session: AsyncSession,
    user_id: int,
    match_player_id: int,
    team_id: Optional[int],
    match_id=None,
    shared_match_id=None,
) -> MatchAccess:
    """
    Move a participant to a team of the match (or off any team with None).

    Raises:
        NotFoundError: If the participant or team is not part of the match
    """
    access = await permission_service.authorize_match_action(
        session, user_id, MatchAction.UPDATE_TEAM, match_id, shared_match_id
    )
    match_player = await _get_match_player(session, access.match, match_player_id)
    if team_id is not None:
        team = await session.get(Team, team_id)
        if team is None or team.match_id != access.match.id:
            raise NotFoundError("Team not found")
    match_player.team_id = team_id
    await session.flush()
    return access


async def update_match_player_roles(
    session: AsyncSession,
    user_id: int,
    match_player_id: int,
    role_ids: Sequence[int],
    match_id=None,
    shared_match_id=None,
) -> MatchAccess:
    """
    Replace a participant's roles, then bring every recipient's view of the
    participant in line through the role link-or-clone step.

    Args:
        role_ids: Roles of the match's game

    Raises:
        NotFoundError: If the participant or a role is not part of the match's game
    """
    access = await permission_service.authorize_match_action(
        session, user_id, MatchAction.UPDATE_ROLES, match_id, shared_match_id
    )
    match = access.match
    match_player = await _get_match_player(session, match, match_player_id)

    wanted = set(role_ids)
    for role_id in wanted:
        role = await session.get(GameRole, role_id)
        if role is None or role.game_id != match.game_id:
            raise NotFoundError("Role not found")

    async with transaction(session):
        stale = delete(MatchPlayerRole).where(MatchPlayerRole.match_player_id == match_player.id)
        if wanted:
            stale = stale.where(MatchPlayerRole.role_id.notin_(wanted))
        await session.execute(stale)
        result = await session.execute(
            select(MatchPlayerRole.role_id).where(MatchPlayerRole.match_player_id == match_player.id)
        )
        present = set(result.scalars().all())
        session.add_all(
            MatchPlayerRole(match_player_id=match_player.id, role_id=role_id)
            for role_id in sorted(wanted - present)
        )
        await session.flush()

        mirrors = await session.execute(
            select(SharedMatchPlayer, SharedMatch)
            .join(SharedMatch, SharedMatch.id == SharedMatchPlayer.shared_match_id)
            .where(SharedMatchPlayer.match_player_id == match_player.id)
        )
        for shared_match_player, shared_match in mirrors.all():
            await sync_match_player_roles(session, shared_match, match_player, shared_match_player)
    return access
