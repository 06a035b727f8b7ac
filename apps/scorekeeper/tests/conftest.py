"""
Shared pytest configuration for scorekeeper tests.

Runs against a throwaway SQLite file (aiosqlite) per test by default. Set
TEST_DATABASE_URL to run against PostgreSQL instead.

SAFETY: A TEST_DATABASE_URL whose database name does not contain the
substring "test" is REFUSED. Tables are dropped after every test, so this
prevents accidental data loss in a development or production database.
"""

import os
from datetime import timedelta
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from scorekeeper.database.db import Base, enable_sqlite_savepoints
from scorekeeper.services import catalog_service, friend_service, match_service, user_service
from scorekeeper.utils.datetime_utils import utcnow


def _resolve_test_database_url(tmp_path) -> str:
    """Build the test database URL with safety checks.

    Raises ``RuntimeError`` if TEST_DATABASE_URL points to a database whose
    name does not contain "test".
    """
    url = os.getenv("TEST_DATABASE_URL", "")
    if not url:
        return f"sqlite+aiosqlite:///{tmp_path / 'scorekeeper_test.db'}"

    # ── Safety gate: database name MUST contain "test" ──────────────────
    db_name = url.rsplit("/", 1)[-1].split("?")[0]  # strip query params
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"\n{'=' * 70}\n"
            f"  SAFETY: Refusing to run tests against database '{db_name}'.\n"
            f"  The database name must contain 'test' to prevent accidental\n"
            f"  data loss in development or production databases.\n\n"
            f"  Fix: set TEST_DATABASE_URL to a test database, e.g.:\n"
            f"    export TEST_DATABASE_URL=postgresql+asyncpg://.../{db_name}_test\n"
            f"  Or unset it to run against a temporary SQLite file.\n"
            f"{'=' * 70}"
        )
    return url


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a fresh schema for one test."""
    url = _resolve_test_database_url(tmp_path)
    # NullPool: each operation gets a new connection, so nothing outlives the test's event loop
    engine = create_async_engine(url, echo=False, poolclass=NullPool)
    if url.startswith("sqlite"):
        enable_sqlite_savepoints(engine)

    async with engine.begin() as conn:
        from scorekeeper.database import models  # noqa: F401

        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Code that opens its own sessions (db.AsyncSessionLocal) uses the test engine too
    from scorekeeper.database import db

    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )

    yield engine

    db.AsyncSessionLocal = original_async_session_local
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine):
    """Create a test database session; uncommitted work is rolled back afterwards."""
    async_session_maker = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()


class SharingWorld:
    """Builds users, friendships and catalog rows for sharing scenarios."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def user(self, name: str) -> int:
        return await user_service.create_user(
            self.session, name, f"{name.lower().replace(' ', '.')}@test.com"
        )

    async def befriend(self, user_id: int, other_user_id: int) -> None:
        await friend_service.create_friendship(self.session, user_id, other_user_id)

    async def settings(self, user_id: int, friend_user_id: int, **updates):
        return await friend_service.update_friend_settings(
            self.session, user_id, friend_user_id, updates
        )

    async def game(self, owner_id: int, name: str = "Catan", **kwargs):
        kwargs.setdefault("rounds", ("Round 1", "Round 2"))
        return await catalog_service.create_game(self.session, owner_id, name, **kwargs)

    async def player(self, owner_id: int, name: str, linked_user_id=None):
        return await catalog_service.create_player(self.session, owner_id, name, linked_user_id)

    async def location(self, owner_id: int, name: str = "Game Night Cafe"):
        return await catalog_service.create_location(self.session, owner_id, name)

    async def match(self, owner_id: int, game, players, location=None, name: str = "Friday game"):
        """Record a match; returns (match, auto-share results)."""
        return await match_service.create_match(
            self.session,
            owner_id,
            game.id,
            name,
            utcnow() - timedelta(hours=1),
            [player.id for player in players],
            location_id=location.id if location is not None else None,
        )


@pytest_asyncio.fixture
async def world(db_session):
    """Scenario builder bound to the test session."""
    return SharingWorld(db_session)


@pytest_asyncio.fixture
async def friends(world):
    """Alice and Bob are friends; Carol knows neither."""
    alice = await world.user("Alice")
    bob = await world.user("Bob")
    carol = await world.user("Carol")
    await world.befriend(alice, bob)
    return {"alice": alice, "bob": bob, "carol": carol}


@pytest_asyncio.fixture
async def played_match(world, friends):
    """
    Alice recorded a Catan match at a cafe with herself and a player linked to Bob.

    Auto-share is off, so nothing has been shared yet.
    """
    alice = friends["alice"]
    game = await world.game(alice, roles=("Banker",))
    location = await world.location(alice)
    alice_player = await world.player(alice, "Alice")
    bob_player = await world.player(alice, "Bob", linked_user_id=friends["bob"])
    match, _ = await world.match(alice, game, [alice_player, bob_player], location=location)
    return {
        "game": game,
        "location": location,
        "alice_player": alice_player,
        "bob_player": bob_player,
        "match": match,
    }
