#!/usr/bin/env python3
"""
Seed a local dev database with two friends and an auto-shared match.

Creates Alice and Bob as friends, turns on auto-share in Alice's settings,
gives Alice a game with a couple of rounds and a "Bob" player linked to Bob,
then records a match. Bob ends up with a pending (or, with auto-accept, an
accepted) share of it. Alice then shares the whole game with Bob by hand,
which pulls in a solo match Bob never played. Prints a dev access token for each user.

Idempotent - users that already exist are reused and the friendship is
only created once.

Usage:
    python scripts/seed_sharing.py [--auto-accept]
"""

import asyncio
import sys
from datetime import timedelta

from scorekeeper.database.db import AsyncSessionLocal, init_database
from scorekeeper.database.models import ShareItemType
from scorekeeper.services import (
    auth_service,
    catalog_service,
    friend_service,
    match_service,
    share_request_service,
    user_service,
)
from scorekeeper.services.errors import ShareError
from scorekeeper.utils.datetime_utils import utcnow

SEED_USERS = [
    {"name": "Alice Test", "email": "alice@test.com"},
    {"name": "Bob Test", "email": "bob@test.com"},
]


async def _get_or_create_user(session, name: str, email: str) -> int:
    existing = await user_service.get_user_by_email(session, email)
    if existing:
        print(f"  ⏭️  {name} already exists (user #{existing['id']})")
        return existing["id"]
    user_id = await user_service.create_user(session, name, email)
    print(f"  ✅ Created {name} (user #{user_id})")
    return user_id


async def main(auto_accept: bool = False):
    """Create the seed users, friendship, game and shared match."""
    print("\n🎲 Seeding sharing demo data...\n")
    await init_database()

    async with AsyncSessionLocal() as session:
        alice_id, bob_id = [
            await _get_or_create_user(session, user["name"], user["email"]) for user in SEED_USERS
        ]

        if not await friend_service.are_friends(session, alice_id, bob_id):
            await friend_service.create_friendship(session, alice_id, bob_id)
            print("  ✅ Alice and Bob are now friends")

        await friend_service.update_friend_settings(
            session, alice_id, bob_id, {"auto_share_matches": True}
        )
        if auto_accept:
            await friend_service.update_friend_settings(
                session,
                bob_id,
                alice_id,
                {
                    "auto_accept_matches": True,
                    "auto_accept_players": True,
                    "auto_accept_location": True,
                    "auto_accept_game": True,
                },
            )

        game = await catalog_service.create_game(
            session,
            alice_id,
            "Catan",
            rounds=("Settlements", "Cities", "Longest Road"),
            roles=("Banker",),
            players_min=3,
            players_max=4,
        )
        alice_player = await catalog_service.create_player(session, alice_id, "Alice")
        bob_player = await catalog_service.create_player(session, alice_id, "Bob", linked_user_id=bob_id)
        location = await catalog_service.create_location(session, alice_id, "Game Night Cafe")

        match, shares = await match_service.create_match(
            session,
            alice_id,
            game.id,
            "Friday Catan",
            utcnow(),
            [alice_player.id, bob_player.id],
            location_id=location.id,
        )
        await session.commit()

        print(f"  ✅ Created match #{match.id}")
        for share in shares:
            print(f"     -> friend #{share.friend_user_id}: {share.message}")

        # A solo match Bob did not play in only reaches him through a game share
        await match_service.create_match(
            session, alice_id, game.id, "Solo practice", utcnow(), [alice_player.id]
        )
        await session.commit()
        try:
            root = await share_request_service.create_share_request(
                session, alice_id, bob_id, ShareItemType.GAME, game.id
            )
        except ShareError as e:
            print(f"  ⏭️  Game share skipped: {e}")
        else:
            await session.commit()
            tree = await share_request_service.get_share_request(session, root.id, bob_id)
            print(f"  ✅ Shared game #{game.id} with Bob (request #{root.id})")
            for child in tree["children"]:
                print(f"     - {child['item_type']} #{child['item_id']}: {child['status']}")

    print("\n🔑 Dev tokens (valid 7 days):")
    for user_id in (alice_id, bob_id):
        token = auth_service.create_access_token({"user_id": user_id}, expires_delta=timedelta(days=7))
        print(f"  user #{user_id}: {token}")
    print()


if __name__ == "__main__":
    asyncio.run(main(auto_accept="--auto-accept" in sys.argv[1:]))
