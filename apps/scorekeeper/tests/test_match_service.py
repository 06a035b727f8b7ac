"""
Tests for recording matches and acting on them as owner or shared recipient.
"""

import pytest
from sqlalchemy import select, func
from scorekeeper.database.models import (
    Game,
    GameRole,
    Match,
    MatchPlayer,
    Round,
    RoundPlayer,
    Scoresheet,
    ScoresheetType,
    ShareItemType,
    ShareRequest,
    SharedLocation,
    SharedMatch,
    SharedMatchPlayer,
    SharedMatchPlayerRole,
    SharedRound,
    SharedScoresheet,
    Team,
)
from scorekeeper.services import match_service, share_request_service
from scorekeeper.services.errors import NotFoundError, UnauthorizedError
from scorekeeper.utils.datetime_utils import utcnow


async def _count(db_session, model, *where):
    query = select(func.count()).select_from(model)
    if where:
        query = query.where(*where)
    result = await db_session.execute(query)
    return result.scalar_one()


async def _rounds(db_session, scoresheet_id):
    result = await db_session.execute(
        select(Round).where(Round.scoresheet_id == scoresheet_id).order_by(Round.order)
    )
    return list(result.scalars().all())


async def _match_player(db_session, match, player):
    result = await db_session.execute(
        select(MatchPlayer).where(MatchPlayer.match_id == match.id, MatchPlayer.player_id == player.id)
    )
    return result.scalar_one()


async def _share(db_session, friends, item_type, item_id, permission="view"):
    root = await share_request_service.create_share_request(
        db_session, friends["alice"], friends["bob"], item_type, item_id, permission=permission
    )
    await share_request_service.accept_share_request(db_session, root.id, friends["bob"])
    return root


async def _shared_match_id(db_session, match_id):
    result = await db_session.execute(select(SharedMatch.id).where(SharedMatch.match_id == match_id))
    return result.scalar_one()


# ──────────────────────────────────────────────────────────────
# Owner: create, roster, delete
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_match_gets_its_own_scoresheet_snapshot(db_session, played_match):
    match = played_match["match"]
    snapshot = await db_session.get(Scoresheet, match.scoresheet_id)
    assert snapshot.type == ScoresheetType.MATCH.value
    assert snapshot.game_id == played_match["game"].id

    default = (
        await db_session.execute(
            select(Scoresheet).where(
                Scoresheet.game_id == played_match["game"].id,
                Scoresheet.type == ScoresheetType.DEFAULT.value,
            )
        )
    ).scalar_one()
    assert snapshot.parent_id == default.id
    assert [r.name for r in await _rounds(db_session, snapshot.id)] == ["Round 1", "Round 2"]

    # One empty score cell per participant and round
    assert await _count(db_session, RoundPlayer) == 4


@pytest.mark.asyncio
async def test_create_match_with_teams(db_session, world, friends, played_match):
    alice = friends["alice"]
    match, shares = await match_service.create_match(
        db_session,
        alice,
        played_match["game"].id,
        "Team game",
        utcnow(),
        [played_match["alice_player"].id, played_match["bob_player"].id],
        team_names=["Red", "Blue"],
    )
    assert shares == []
    assert await _count(db_session, Team, Team.match_id == match.id) == 2


@pytest.mark.asyncio
async def test_create_match_requires_owned_rows(db_session, world, friends, played_match):
    bob = friends["bob"]
    bob_game = await world.game(bob)
    with pytest.raises(NotFoundError, match="Game not found"):
        await match_service.create_match(
            db_session, friends["alice"], bob_game.id, "Nope", utcnow(), []
        )
    bob_player = await world.player(bob, "Someone")
    with pytest.raises(NotFoundError, match="Player not found"):
        await match_service.create_match(
            db_session, friends["alice"], played_match["game"].id, "Nope", utcnow(), [bob_player.id]
        )


@pytest.mark.asyncio
async def test_remove_participant_cleans_up_mirrors(db_session, friends, played_match):
    match = played_match["match"]
    await _share(db_session, friends, ShareItemType.MATCH, match.id)
    bob_mp = await _match_player(db_session, match, played_match["bob_player"])
    bob_mp_id = bob_mp.id

    await match_service.update_match_players(
        db_session, friends["alice"], match.id, remove_match_player_ids=[bob_mp_id]
    )

    assert await _count(db_session, MatchPlayer, MatchPlayer.match_id == match.id) == 1
    assert await _count(db_session, SharedMatchPlayer) == 1
    assert await _count(db_session, RoundPlayer, RoundPlayer.match_player_id == bob_mp_id) == 0
    assert await _count(
        db_session,
        ShareRequest,
        ShareRequest.item_type == ShareItemType.MATCH_PLAYER.value,
        ShareRequest.item_id == bob_mp_id,
    ) == 0


@pytest.mark.asyncio
async def test_recipient_cannot_change_roster(db_session, friends, played_match):
    match = played_match["match"]
    await _share(db_session, friends, ShareItemType.MATCH, match.id, permission="edit")
    with pytest.raises(UnauthorizedError, match="Only the owner"):
        await match_service.update_match_players(
            db_session, friends["bob"], match.id, add_player_ids=[played_match["alice_player"].id]
        )


@pytest.mark.asyncio
async def test_delete_removes_shares_but_keeps_recipient_copies(db_session, friends, played_match):
    match_id = played_match["match"].id
    await _share(db_session, friends, ShareItemType.MATCH, match_id, permission="edit")

    with pytest.raises(UnauthorizedError):
        await match_service.delete_match(db_session, friends["bob"], match_id)

    await match_service.delete_match(db_session, friends["alice"], match_id)

    assert await _count(db_session, Match, Match.id == match_id) == 0
    assert await _count(db_session, MatchPlayer) == 0
    assert await _count(db_session, SharedMatch) == 0
    assert await _count(db_session, SharedMatchPlayer) == 0
    assert await _count(db_session, ShareRequest) == 0
    assert await _count(db_session, Game, Game.created_by == friends["bob"]) == 1


@pytest.mark.asyncio
async def test_delete_removes_scoresheet_snapshot(db_session, friends, played_match):
    match_id = played_match["match"].id
    snapshot_id = played_match["match"].scoresheet_id
    await _share(db_session, friends, ShareItemType.MATCH, match_id)
    bob_copy_id = (
        await db_session.execute(
            select(SharedScoresheet.linked_scoresheet_id).where(
                SharedScoresheet.scoresheet_id == snapshot_id
            )
        )
    ).scalar_one()
    assert await _count(db_session, SharedRound) == 4

    await match_service.delete_match(db_session, friends["alice"], match_id)

    assert await _count(db_session, Scoresheet, Scoresheet.id == snapshot_id) == 0
    assert await _count(db_session, Round, Round.scoresheet_id == snapshot_id) == 0
    assert await _count(db_session, SharedScoresheet, SharedScoresheet.scoresheet_id == snapshot_id) == 0
    # The game's default scoresheet and its mirrors are untouched
    assert await _count(db_session, SharedScoresheet) == 1
    assert await _count(db_session, SharedRound) == 2

    # Bob's copy survives without its provenance pointer
    parent_id = (
        await db_session.execute(select(Scoresheet.parent_id).where(Scoresheet.id == bob_copy_id))
    ).scalar_one()
    assert parent_id is None
    assert await _count(db_session, Round, Round.scoresheet_id == bob_copy_id) == 2


@pytest.mark.asyncio
async def test_delete_unknown_match(db_session, friends):
    with pytest.raises(NotFoundError):
        await match_service.delete_match(db_session, friends["alice"], 31337)


# ──────────────────────────────────────────────────────────────
# Play: scores, clock, comment, teams
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_scores_and_finish_set_placements(db_session, friends, played_match):
    alice = friends["alice"]
    match = played_match["match"]
    first, second = await _rounds(db_session, match.scoresheet_id)
    alice_mp = await _match_player(db_session, match, played_match["alice_player"])
    bob_mp = await _match_player(db_session, match, played_match["bob_player"])

    for match_player, round_, score in (
        (alice_mp, first, 10),
        (alice_mp, second, 5),
        (bob_mp, first, 3),
        (bob_mp, second, 4),
    ):
        await match_service.update_round_score(
            db_session, alice, match_player.id, round_.id, score, match_id=match.id
        )

    access = await match_service.finish_match(db_session, alice, match_id=match.id)
    data = await match_service.match_to_dict(db_session, access)

    assert data["finished"] is True
    players = {p["id"]: p for p in data["players"]}
    assert players[alice_mp.id]["score"] == 15
    assert players[alice_mp.id]["placement"] == 1
    assert players[alice_mp.id]["winner"] is True
    assert players[bob_mp.id]["placement"] == 2
    assert players[bob_mp.id]["round_scores"] == [
        {"round_id": first.id, "score": 3},
        {"round_id": second.id, "score": 4},
    ]

    # Scores changed after finishing re-derive the placements
    await match_service.update_round_score(
        db_session, alice, bob_mp.id, first.id, 30, match_id=match.id
    )
    data = await match_service.get_match(db_session, alice, match_id=match.id)
    players = {p["id"]: p for p in data["players"]}
    assert players[bob_mp.id]["placement"] == 1


@pytest.mark.asyncio
async def test_score_for_round_of_another_scoresheet(db_session, friends, played_match):
    match = played_match["match"]
    default = (
        await db_session.execute(
            select(Scoresheet.id).where(
                Scoresheet.game_id == played_match["game"].id,
                Scoresheet.type == ScoresheetType.DEFAULT.value,
            )
        )
    ).scalar_one()
    foreign_round = (await _rounds(db_session, default))[0]
    alice_mp = await _match_player(db_session, match, played_match["alice_player"])
    with pytest.raises(NotFoundError, match="Round not found"):
        await match_service.update_round_score(
            db_session, friends["alice"], alice_mp.id, foreign_round.id, 1, match_id=match.id
        )


@pytest.mark.asyncio
async def test_clock(db_session, friends, played_match):
    alice = friends["alice"]
    match_id = played_match["match"].id

    access = await match_service.start_match(db_session, alice, match_id=match_id)
    assert access.match.running is True
    assert access.match.start_time is not None

    access = await match_service.pause_match(db_session, alice, match_id=match_id)
    assert access.match.running is False
    assert access.match.start_time is None
    assert access.match.duration >= 0

    access.match.duration = 120
    access = await match_service.reset_duration(db_session, alice, match_id=match_id)
    assert access.match.duration == 0
    assert access.match.start_time is None


@pytest.mark.asyncio
async def test_view_recipient_can_read_but_not_play(db_session, friends, played_match):
    match = played_match["match"]
    await _share(db_session, friends, ShareItemType.MATCH, match.id)
    shared_match_id = await _shared_match_id(db_session, match.id)

    data = await match_service.get_match(db_session, friends["bob"], shared_match_id=shared_match_id)
    assert data["id"] == match.id
    assert data["shared_match_id"] == shared_match_id
    assert data["permission"] == "view"

    with pytest.raises(UnauthorizedError, match="permission to edit"):
        await match_service.start_match(db_session, friends["bob"], shared_match_id=shared_match_id)
    with pytest.raises(UnauthorizedError):
        await match_service.update_comment(
            db_session, friends["bob"], "gg", shared_match_id=shared_match_id
        )


@pytest.mark.asyncio
async def test_edit_recipient_writes_to_the_owners_match(db_session, friends, played_match):
    match = played_match["match"]
    await _share(db_session, friends, ShareItemType.MATCH, match.id, permission="edit")
    shared_match_id = await _shared_match_id(db_session, match.id)
    first, _ = await _rounds(db_session, match.scoresheet_id)
    bob_mp = await _match_player(db_session, match, played_match["bob_player"])

    await match_service.update_round_score(
        db_session, friends["bob"], bob_mp.id, first.id, 42, shared_match_id=shared_match_id
    )
    await match_service.update_comment(
        db_session, friends["bob"], "Close one", shared_match_id=shared_match_id
    )

    data = await match_service.get_match(db_session, friends["alice"], match_id=match.id)
    assert data["comment"] == "Close one"
    bob_row = next(p for p in data["players"] if p["id"] == bob_mp.id)
    assert {"round_id": first.id, "score": 42} in bob_row["round_scores"]


@pytest.mark.asyncio
async def test_team_assignment(db_session, friends, played_match):
    alice = friends["alice"]
    match, _ = await match_service.create_match(
        db_session,
        alice,
        played_match["game"].id,
        "Teams",
        utcnow(),
        [played_match["alice_player"].id],
        team_names=["Red"],
    )
    team = (await db_session.execute(select(Team).where(Team.match_id == match.id))).scalar_one()
    match_player = await _match_player(db_session, match, played_match["alice_player"])

    await match_service.update_match_player_team(
        db_session, alice, match_player.id, team.id, match_id=match.id
    )
    assert match_player.team_id == team.id

    # A team of another match is not accepted
    other_team = Team(match_id=played_match["match"].id, name="Other")
    db_session.add(other_team)
    await db_session.flush()
    with pytest.raises(NotFoundError, match="Team not found"):
        await match_service.update_match_player_team(
            db_session, alice, match_player.id, other_team.id, match_id=match.id
        )


# ──────────────────────────────────────────────────────────────
# Details and locations
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_owner_edits_details(db_session, world, friends, played_match):
    alice = friends["alice"]
    match = played_match["match"]
    park = await world.location(alice, "Park")

    access = await match_service.edit_match_details(
        db_session, alice, match_id=match.id, name="Rematch", location_id=park.id
    )
    assert access.match.name == "Rematch"
    assert access.match.location_id == park.id

    bob_place = await world.location(friends["bob"], "Bob's place")
    with pytest.raises(NotFoundError):
        await match_service.edit_match_details(
            db_session, alice, match_id=match.id, location_id=bob_place.id
        )


@pytest.mark.asyncio
async def test_recipient_picks_a_shared_location(db_session, world, friends, played_match):
    alice, bob = friends["alice"], friends["bob"]
    match = played_match["match"]
    await _share(db_session, friends, ShareItemType.MATCH, match.id, permission="edit")
    park = await world.location(alice, "Park")
    await _share(db_session, friends, ShareItemType.LOCATION, park.id)
    shared_park_id = (
        await db_session.execute(select(SharedLocation.id).where(SharedLocation.location_id == park.id))
    ).scalar_one()
    shared_match_id = await _shared_match_id(db_session, match.id)

    access = await match_service.edit_match_details(
        db_session, bob, shared_match_id=shared_match_id, shared_location_id=shared_park_id
    )

    assert access.match.location_id == park.id
    assert access.shared_match.shared_location_id == shared_park_id

    # A location id of the owner's means nothing to the recipient
    access = await match_service.edit_match_details(
        db_session, bob, shared_match_id=shared_match_id, location_id=played_match["location"].id
    )
    assert access.match.location_id == park.id

    with pytest.raises(NotFoundError):
        await match_service.edit_match_details(
            db_session, bob, shared_match_id=shared_match_id, shared_location_id=9999
        )


# ──────────────────────────────────────────────────────────────
# Roles
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_role_changes_reach_recipients(db_session, friends, played_match):
    alice = friends["alice"]
    match = played_match["match"]
    await _share(db_session, friends, ShareItemType.MATCH, match.id)
    banker = (
        await db_session.execute(select(GameRole).where(GameRole.game_id == played_match["game"].id))
    ).scalar_one()
    bob_mp = await _match_player(db_session, match, played_match["bob_player"])

    await match_service.update_match_player_roles(
        db_session, alice, bob_mp.id, [banker.id], match_id=match.id
    )
    assert await _count(db_session, SharedMatchPlayerRole) == 1
    data = await match_service.get_match(db_session, alice, match_id=match.id)
    assert next(p for p in data["players"] if p["id"] == bob_mp.id)["role_ids"] == [banker.id]

    await match_service.update_match_player_roles(db_session, alice, bob_mp.id, [], match_id=match.id)
    assert await _count(db_session, SharedMatchPlayerRole) == 0


@pytest.mark.asyncio
async def test_roles_must_belong_to_the_game(db_session, world, friends, played_match):
    alice = friends["alice"]
    other_game = await world.game(alice, name="Chess", roles=("White",))
    white = (
        await db_session.execute(select(GameRole).where(GameRole.game_id == other_game.id))
    ).scalar_one()
    alice_mp = await _match_player(db_session, played_match["match"], played_match["alice_player"])
    with pytest.raises(NotFoundError, match="Role not found"):
        await match_service.update_match_player_roles(
            db_session, alice, alice_mp.id, [white.id], match_id=played_match["match"].id
        )


# ──────────────────────────────────────────────────────────────
# Listing
# ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_list_shared_matches(db_session, friends, played_match):
    assert await match_service.list_shared_matches(db_session, friends["bob"]) == []
    await _share(db_session, friends, ShareItemType.MATCH, played_match["match"].id)

    listed = await match_service.list_shared_matches(db_session, friends["bob"])
    assert len(listed) == 1
    assert listed[0]["match_id"] == played_match["match"].id
    assert listed[0]["owner_id"] == friends["alice"]
    assert listed[0]["name"] == "Friday game"
    assert await match_service.list_shared_matches(db_session, friends["alice"]) == []
