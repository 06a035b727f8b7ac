"""
Declarative copy rules for catalog entities and the shared
link-or-clone routine built on them.

Each CloneSpec says which table is copied, which mirror table records the
share, which mirror columns hold the source id and the resolved local id,
and which attributes travel with a clone. Acceptance, match creation and
role assignment all go through the helpers here, so the copy policy lives
in exactly one place.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type
from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from scorekeeper.database.models import (
    Game,
    GameRole,
    Location,
    Player,
    Round,
    Scoresheet,
    SharedGame,
    SharedGameRole,
    SharedLocation,
    SharedPlayer,
    SharedRound,
    SharedScoresheet,
)
from scorekeeper.services.errors import ForbiddenError, assert_inserted
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CloneSpec:
    """Table-to-table copy rules for one catalog entity."""

    label: str
    model: Type
    mirror: Type
    source_key: str  # Mirror column holding the owner's row id
    linked_key: str  # Mirror column holding the recipient's row id
    copy_fields: Tuple[str, ...]
    owner_field: Optional[str] = "created_by"
    overrides: Mapping[str, Any] = field(default_factory=dict)


GAME = CloneSpec(
    label="game",
    model=Game,
    mirror=SharedGame,
    source_key="game_id",
    linked_key="linked_game_id",
    copy_fields=(
        "name",
        "year_published",
        "description",
        "rules",
        "players_min",
        "players_max",
        "playtime_min",
        "playtime_max",
    ),
)

PLAYER = CloneSpec(
    label="player",
    model=Player,
    mirror=SharedPlayer,
    source_key="player_id",
    linked_key="linked_player_id",
    copy_fields=("name",),
)

LOCATION = CloneSpec(
    label="location",
    model=Location,
    mirror=SharedLocation,
    source_key="location_id",
    linked_key="linked_location_id",
    copy_fields=("name",),
    overrides={"is_default": False},
)

SCORESHEET = CloneSpec(
    label="scoresheet",
    model=Scoresheet,
    mirror=SharedScoresheet,
    source_key="scoresheet_id",
    linked_key="linked_scoresheet_id",
    copy_fields=("name", "type", "win_condition", "target_score", "is_coop"),
)

ROUND = CloneSpec(
    label="round",
    model=Round,
    mirror=SharedRound,
    source_key="round_id",
    linked_key="linked_round_id",
    copy_fields=("name", "type", "score", "color", "order"),
    owner_field=None,
)

GAME_ROLE = CloneSpec(
    label="role",
    model=GameRole,
    mirror=SharedGameRole,
    source_key="game_role_id",
    linked_key="linked_game_role_id",
    copy_fields=("name", "description"),
)


def copy_row(spec: CloneSpec, source: Any, owner_id: Optional[int] = None, **bound: Any) -> Any:
    """
    Build (but do not add) a copy of ``source`` per ``spec``.

    Args:
        spec: Copy rules
        source: Row being copied
        owner_id: New owner, written to ``spec.owner_field``
        **bound: Extra columns to set on the copy (e.g. rebound foreign keys)

    Returns:
        Unsaved model instance
    """
    values = {name: getattr(source, name) for name in spec.copy_fields}
    values.update(spec.overrides)
    if spec.owner_field is not None:
        values[spec.owner_field] = owner_id
    values.update(bound)
    return spec.model(**values)


async def get_mirror(
    session: AsyncSession,
    spec: CloneSpec,
    owner_id: int,
    shared_with_id: int,
    source_id: int,
) -> Optional[Any]:
    """Find the mirror row for ``(owner_id, shared_with_id, source_id)``."""
    mirror = spec.mirror
    result = await session.execute(
        select(mirror).where(
            and_(
                mirror.owner_id == owner_id,
                mirror.shared_with_id == shared_with_id,
                getattr(mirror, spec.source_key) == source_id,
            )
        )
    )
    return result.scalar_one_or_none()


async def get_or_create_row(
    session: AsyncSession,
    model: Type,
    lookup: Mapping[str, Any],
    values: Optional[Mapping[str, Any]] = None,
) -> Tuple[Any, bool]:
    """
    Return the row matching ``lookup``, inserting it if missing.

    The insert runs in its own SAVEPOINT; a unique-constraint conflict means
    another writer got there first, so the existing row is re-read and
    returned instead of failing.

    Returns:
        (row, created)
    """
    conditions = [getattr(model, key) == value for key, value in lookup.items()]
    result = await session.execute(select(model).where(and_(*conditions)))
    row = result.scalar_one_or_none()
    if row is not None:
        return row, False

    row = model(**dict(lookup), **dict(values or {}))
    try:
        async with session.begin_nested():
            session.add(row)
            await session.flush()
    except IntegrityError:
        logger.info(f"Concurrent insert on {model.__tablename__} for {dict(lookup)}; reusing existing row")
        result = await session.execute(select(model).where(and_(*conditions)))
        existing = assert_inserted(
            result.scalar_one_or_none(), f"Failed to insert {model.__tablename__} row"
        )
        return existing, False
    return row, True


async def get_or_create_mirror(
    session: AsyncSession,
    spec: CloneSpec,
    owner_id: int,
    shared_with_id: int,
    source_id: int,
    **values: Any,
) -> Any:
    """Idempotently fetch or insert the mirror row for a source entity."""
    mirror, _ = await get_or_create_row(
        session,
        spec.mirror,
        {"owner_id": owner_id, "shared_with_id": shared_with_id, spec.source_key: source_id},
        values,
    )
    return mirror


async def link_or_clone(
    session: AsyncSession,
    spec: CloneSpec,
    mirror: Any,
    source: Any,
    recipient_id: int,
    link_id: Optional[int] = None,
    link_scope: Optional[Mapping[str, Any]] = None,
    bound: Optional[Mapping[str, Any]] = None,
) -> int:
    """
    Resolve a mirror to a recipient-owned entity.

    Order of resolution:
      1. An explicit ``link_id`` is checked first: it must be owned by the
         recipient (and match ``link_scope``), otherwise ForbiddenError.
      2. An already resolved mirror is reused as is; the linked id never changes.
      3. Otherwise the mirror is linked to ``link_id``, or a clone of
         ``source`` is created under the recipient.

    Args:
        session: Database session
        spec: Copy rules
        mirror: Mirror row to resolve
        source: Owner's row being shared
        recipient_id: User receiving the share
        link_id: Existing recipient entity chosen by the recipient
        link_scope: Column values the link target must also have
        bound: Extra columns for a clone (e.g. rebound game_id)

    Returns:
        The resolved (linked or cloned) entity id

    Raises:
        ForbiddenError: If ``link_id`` is not the recipient's
    """
    if link_id is not None:
        target = await session.get(spec.model, link_id)
        if target is None or getattr(target, spec.owner_field) != recipient_id:
            raise ForbiddenError(f"You do not own this {spec.label}.")
        for key, value in (link_scope or {}).items():
            if getattr(target, key) != value:
                raise ForbiddenError(f"This {spec.label} does not belong to the linked game.")

    current = getattr(mirror, spec.linked_key)
    if current is not None:
        return current

    if link_id is not None:
        setattr(mirror, spec.linked_key, link_id)
        await session.flush()
        return link_id

    clone = copy_row(spec, source, owner_id=recipient_id, **dict(bound or {}))
    session.add(clone)
    await session.flush()
    setattr(mirror, spec.linked_key, assert_inserted(clone.id, f"Failed to clone {spec.label}"))
    await session.flush()
    logger.debug(f"Cloned {spec.label} {source.id} -> {clone.id} for user {recipient_id}")
    return clone.id


async def get_rounds(session: AsyncSession, scoresheet_id: int) -> List[Round]:
    """Rounds of a scoresheet in display order."""
    result = await session.execute(
        select(Round).where(Round.scoresheet_id == scoresheet_id).order_by(Round.order, Round.id)
    )
    return list(result.scalars().all())


async def clone_scoresheet(
    session: AsyncSession,
    source: Scoresheet,
    owner_id: int,
    game_id: int,
    **overrides: Any,
) -> Tuple[Scoresheet, List[Tuple[Round, Round]]]:
    """
    Copy a scoresheet and its rounds.

    The copy's ``parent_id`` points at ``source`` for provenance unless
    overridden.

    Returns:
        (new scoresheet, [(source round, new round), ...])
    """
    bound: Dict[str, Any] = {"game_id": game_id, "parent_id": source.id}
    bound.update(overrides)
    scoresheet = copy_row(SCORESHEET, source, owner_id=owner_id, **bound)
    session.add(scoresheet)
    await session.flush()

    pairs: List[Tuple[Round, Round]] = []
    for source_round in await get_rounds(session, source.id):
        new_round = copy_row(ROUND, source_round, scoresheet_id=scoresheet.id)
        session.add(new_round)
        pairs.append((source_round, new_round))
    await session.flush()
    return scoresheet, pairs


async def find_role_by_name(session: AsyncSession, game_id: int, name: str) -> Optional[GameRole]:
    """Find a role in a game by exact name."""
    result = await session.execute(
        select(GameRole).where(and_(GameRole.game_id == game_id, GameRole.name == name))
    )
    return result.scalar_one_or_none()


async def resolve_game_role(
    session: AsyncSession,
    role: GameRole,
    shared_game: SharedGame,
    permission: str,
) -> SharedGameRole:
    """
    Mirror an owner's game role for the recipient of ``shared_game``.

    The role is resolved under the recipient's copy of the game: a role of
    the same name already in that game is reused, otherwise it is cloned.
    """
    mirror = await get_or_create_mirror(
        session,
        GAME_ROLE,
        shared_game.owner_id,
        shared_game.shared_with_id,
        role.id,
        shared_game_id=shared_game.id,
        permission=permission,
    )
    if mirror.linked_game_role_id is None:
        game_id = assert_inserted(shared_game.linked_game_id, "Shared game is not resolved")
        existing = await find_role_by_name(session, game_id, role.name)
        if existing is not None and existing.created_by != shared_game.shared_with_id:
            existing = None
        await link_or_clone(
            session,
            GAME_ROLE,
            mirror,
            role,
            shared_game.shared_with_id,
            link_id=existing.id if existing is not None else None,
            link_scope={"game_id": game_id},
            bound={"game_id": game_id},
        )
    return mirror
