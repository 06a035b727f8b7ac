"""
Catalog service: games, players, locations and roles in a user's collection.
"""

from typing import Optional, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from scorekeeper.database.models import (
    Game,
    GameRole,
    Location,
    Player,
    Round,
    Scoresheet,
    ScoresheetType,
    WinCondition,
)
from scorekeeper.services import friend_service
from scorekeeper.services.errors import ConflictError, NotFoundError
from scorekeeper.services.materializer import find_role_by_name
import logging

logger = logging.getLogger(__name__)


async def get_owned(session: AsyncSession, model, item_id: int, user_id: int, label: str):
    """
    Get a catalog row owned by the user.

    Raises:
        NotFoundError: If the row is missing or owned by someone else
    """
    row = await session.get(model, item_id)
    if row is None or row.created_by != user_id:
        raise NotFoundError(f"{label} not found")
    return row


async def create_game(
    session: AsyncSession,
    user_id: int,
    name: str,
    rounds: Sequence[str] = ("Round 1",),
    win_condition: str = WinCondition.HIGHEST_SCORE.value,
    target_score: Optional[int] = None,
    roles: Sequence[str] = (),
    **details,
) -> Game:
    """
    Create a game together with its default scoresheet.

    Args:
        session: Database session
        user_id: Owner
        name: Game name
        rounds: Round names of the default scoresheet, in order
        win_condition: Default scoresheet win condition
        target_score: Target for target-score games
        roles: Role names to create for the game
        **details: Other Game columns (year_published, description, rules,
            players_min, players_max, playtime_min, playtime_max)

    Returns:
        The new Game
    """
    game = Game(created_by=user_id, name=name, **details)
    session.add(game)
    await session.flush()

    scoresheet = Scoresheet(
        created_by=user_id,
        game_id=game.id,
        name="Default",
        type=ScoresheetType.DEFAULT.value,
        win_condition=WinCondition(win_condition).value,
        target_score=target_score,
    )
    session.add(scoresheet)
    await session.flush()

    session.add_all(
        Round(scoresheet_id=scoresheet.id, name=round_name, order=index)
        for index, round_name in enumerate(rounds)
    )
    session.add_all(GameRole(game_id=game.id, created_by=user_id, name=role) for role in roles)
    await session.flush()
    await session.refresh(game)

    logger.info(f"User {user_id} created game {game.id} ({name})")
    return game


async def create_player(
    session: AsyncSession, user_id: int, name: str, linked_user_id: Optional[int] = None
) -> Player:
    """
    Create a player, optionally standing in for one of the user's friends.

    Raises:
        NotFoundError: If ``linked_user_id`` is not a friend
    """
    if linked_user_id is not None and not await friend_service.are_friends(
        session, user_id, linked_user_id
    ):
        raise NotFoundError("Friend not found")

    player = Player(created_by=user_id, name=name, linked_user_id=linked_user_id)
    session.add(player)
    await session.flush()
    await session.refresh(player)
    return player


async def create_location(
    session: AsyncSession, user_id: int, name: str, is_default: bool = False
) -> Location:
    """Create a location."""
    location = Location(created_by=user_id, name=name, is_default=is_default)
    session.add(location)
    await session.flush()
    await session.refresh(location)
    return location


async def create_game_role(
    session: AsyncSession,
    user_id: int,
    game_id: int,
    name: str,
    description: Optional[str] = None,
) -> GameRole:
    """
    Add a role to one of the user's games.

    Raises:
        NotFoundError: If the game is not the user's
        ConflictError: If the game already has a role with this name
    """
    await get_owned(session, Game, game_id, user_id, "Game")
    if await find_role_by_name(session, game_id, name) is not None:
        raise ConflictError("Role already exists for this game")

    role = GameRole(game_id=game_id, created_by=user_id, name=name, description=description)
    session.add(role)
    await session.flush()
    await session.refresh(role)
    return role

