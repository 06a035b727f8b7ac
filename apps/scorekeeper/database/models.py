"""
SQLAlchemy ORM models for the scorekeeper system.

Catalog entities (games, players, locations, scoresheets, rounds, roles) are
owned per user and fork into a private copy when a share is accepted.
Transactional entities (matches and their participants) exist exactly once
and are reached by other users only through a Shared* mirror row.
"""

import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    Boolean,
    DateTime,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)
from sqlalchemy.sql import func
from scorekeeper.database.db import Base


class ShareItemType(str, enum.Enum):
    """Kinds of items a share request can point at."""

    GAME = "game"
    MATCH = "match"
    PLAYER = "player"
    SCORESHEET = "scoresheet"
    LOCATION = "location"
    MATCH_PLAYER = "matchPlayer"


class SharePermission(str, enum.Enum):
    """Permission granted by a mirror row."""

    VIEW = "view"
    EDIT = "edit"


class ShareRequestStatus(str, enum.Enum):
    """Share request status enum. Accepted and rejected are terminal."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class ScoresheetType(str, enum.Enum):
    """Scoresheet type enum."""

    DEFAULT = "Default"
    GAME = "Game"
    MATCH = "Match"


class SharedScoresheetType(str, enum.Enum):
    """Whether a shared scoresheet came from a game or a match snapshot."""

    GAME = "game"
    MATCH = "match"


class WinCondition(str, enum.Enum):
    """Scoresheet win condition enum."""

    HIGHEST_SCORE = "Highest Score"
    LOWEST_SCORE = "Lowest Score"
    TARGET_SCORE = "Target Score"
    NO_WINNER = "No Winner"
    MANUAL = "Manual"


# ---------------------------------------------------------------------------
# Users and friends
# ---------------------------------------------------------------------------


class User(Base):
    """Account that owns a collection of games, players and matches."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True, unique=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Friend(Base):
    """Friendship between two users (stored once, user1_id < user2_id)."""

    __tablename__ = "friends"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user1_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    user2_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("user1_id", "user2_id"),
        CheckConstraint("user1_id < user2_id"),
        Index("idx_friends_user1", "user1_id"),
        Index("idx_friends_user2", "user2_id"),
    )


class FriendSetting(Base):
    """
    One direction of a friendship's sharing preferences.

    ``user_id`` is the user these settings belong to. The auto_share_* and
    default_permission_* flags describe what that user sends to the friend;
    allow_shared_* and auto_accept_* describe what that user takes in.
    """

    __tablename__ = "friend_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    friend_id = Column(Integer, ForeignKey("friends.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)

    # Outgoing
    auto_share_matches = Column(Boolean, default=False, nullable=False)
    share_players_with_match = Column(Boolean, default=True, nullable=False)
    include_location_with_match = Column(Boolean, default=True, nullable=False)
    default_permission_for_matches = Column(String(10), default=SharePermission.VIEW.value, nullable=False)
    default_permission_for_players = Column(String(10), default=SharePermission.VIEW.value, nullable=False)
    default_permission_for_location = Column(String(10), default=SharePermission.VIEW.value, nullable=False)
    default_permission_for_game = Column(String(10), default=SharePermission.VIEW.value, nullable=False)

    # Incoming
    allow_shared_games = Column(Boolean, default=True, nullable=False)
    allow_shared_matches = Column(Boolean, default=True, nullable=False)
    allow_shared_players = Column(Boolean, default=True, nullable=False)
    allow_shared_location = Column(Boolean, default=True, nullable=False)
    auto_accept_matches = Column(Boolean, default=False, nullable=False)
    auto_accept_players = Column(Boolean, default=False, nullable=False)
    auto_accept_location = Column(Boolean, default=False, nullable=False)
    auto_accept_game = Column(Boolean, default=False, nullable=False)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("friend_id", "user_id", name="uq_friend_settings_direction"),
    )


# ---------------------------------------------------------------------------
# Catalog entities
# ---------------------------------------------------------------------------


class Game(Base):
    """Board game in a user's collection."""

    __tablename__ = "games"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    name = Column(String, nullable=False)
    year_published = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)
    rules = Column(Text, nullable=True)
    players_min = Column(Integer, nullable=True)
    players_max = Column(Integer, nullable=True)
    playtime_min = Column(Integer, nullable=True)  # minutes
    playtime_max = Column(Integer, nullable=True)  # minutes
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_games_created_by", "created_by"),
    )


class Player(Base):
    """Person a user records matches for; may stand in for one of the user's friends."""

    __tablename__ = "players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    name = Column(String, nullable=False)
    linked_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)  # Friend this player represents
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_players_created_by", "created_by"),
        Index("idx_players_linked_user", "linked_user_id"),
    )


class Location(Base):
    """Place where matches are played."""

    __tablename__ = "locations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    name = Column(String, nullable=False)
    is_default = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class Scoresheet(Base):
    """Scoring layout for a game; match scoresheets are snapshots of a game scoresheet."""

    __tablename__ = "scoresheets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    game_id = Column(Integer, ForeignKey("games.id"), nullable=False)
    parent_id = Column(Integer, ForeignKey("scoresheets.id"), nullable=True)  # Provenance
    name = Column(String, nullable=False)
    type = Column(String(20), default=ScoresheetType.GAME.value, nullable=False)
    win_condition = Column(String(20), default=WinCondition.HIGHEST_SCORE.value, nullable=False)
    target_score = Column(Integer, nullable=True)
    is_coop = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_scoresheets_game", "game_id"),
    )


class Round(Base):
    """Single scoring row of a scoresheet."""

    __tablename__ = "rounds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    scoresheet_id = Column(Integer, ForeignKey("scoresheets.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)
    type = Column(String(20), default="Numeric", nullable=False)
    score = Column(Integer, default=0, nullable=False)  # Points for checkbox rounds
    color = Column(String(20), nullable=True)
    order = Column(Integer, default=0, nullable=False)


class GameRole(Base):
    """Role a player can take in a game (e.g. a character or faction)."""

    __tablename__ = "game_roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_id = Column(Integer, ForeignKey("games.id"), nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("game_id", "name", name="uq_game_roles_game_name"),
    )


# ---------------------------------------------------------------------------
# Transactional entities
# ---------------------------------------------------------------------------


class Match(Base):
    """Single play of a game."""

    __tablename__ = "matches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    game_id = Column(Integer, ForeignKey("games.id"), nullable=False)
    scoresheet_id = Column(Integer, ForeignKey("scoresheets.id"), nullable=False)  # Match snapshot
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=True)
    name = Column(String, nullable=False)
    date = Column(DateTime(timezone=True), nullable=False)
    finished = Column(Boolean, default=False, nullable=False)
    running = Column(Boolean, default=False, nullable=False)
    start_time = Column(DateTime(timezone=True), nullable=True)
    duration = Column(Integer, default=0, nullable=False)  # seconds
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("idx_matches_created_by", "created_by"),
        Index("idx_matches_game", "game_id"),
    )


class Team(Base):
    """Team within a match."""

    __tablename__ = "teams"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(Integer, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False)
    name = Column(String, nullable=False)


class MatchPlayer(Base):
    """Participant in a match."""

    __tablename__ = "match_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    match_id = Column(Integer, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False)
    player_id = Column(Integer, ForeignKey("players.id"), nullable=False)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True)
    score = Column(Integer, nullable=True)
    placement = Column(Integer, nullable=True)
    winner = Column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("match_id", "player_id", name="uq_match_players_match_player"),
    )


class RoundPlayer(Base):
    """Score a participant made in one round."""

    __tablename__ = "round_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    round_id = Column(Integer, ForeignKey("rounds.id"), nullable=False)
    match_player_id = Column(Integer, ForeignKey("match_players.id", ondelete="CASCADE"), nullable=False)
    score = Column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("round_id", "match_player_id", name="uq_round_players_round_match_player"),
    )


class MatchPlayerRole(Base):
    """Join table (MatchPlayer ↔ GameRole)."""

    __tablename__ = "match_player_roles"

    match_player_id = Column(
        Integer, ForeignKey("match_players.id", ondelete="CASCADE"), primary_key=True
    )
    role_id = Column(Integer, ForeignKey("game_roles.id"), primary_key=True)


# ---------------------------------------------------------------------------
# Sharing
# ---------------------------------------------------------------------------


class ShareRequest(Base):
    """
    Intent to share one item with a friend.

    Roots have no parent_share_id; every other item in the shared closure is
    a child pointing at the root.
    """

    __tablename__ = "share_requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    shared_with_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    item_type = Column(String(20), nullable=False)  # ShareItemType value
    item_id = Column(Integer, nullable=False)
    item_parent_id = Column(Integer, nullable=True)  # Item this one was reached from
    parent_share_id = Column(
        Integer, ForeignKey("share_requests.id", ondelete="CASCADE"), nullable=True
    )
    permission = Column(String(10), default=SharePermission.VIEW.value, nullable=False)
    status = Column(String(20), default=ShareRequestStatus.PENDING.value, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    expires_at = Column(DateTime(timezone=True), nullable=True)

    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        Index("idx_share_requests_recipient_status", "shared_with_id", "status"),
        Index("idx_share_requests_owner", "owner_id"),
        Index("idx_share_requests_parent", "parent_share_id"),
        Index("idx_share_requests_item", "item_type", "item_id"),
    )


class SharedGame(Base):
    """Game mirror: recipient's view of an owner's game."""

    __tablename__ = "shared_games"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    shared_with_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    game_id = Column(Integer, ForeignKey("games.id"), nullable=False)
    linked_game_id = Column(Integer, ForeignKey("games.id"), nullable=True)
    permission = Column(String(10), default=SharePermission.VIEW.value, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("owner_id", "shared_with_id", "game_id", name="uq_shared_games_source"),
    )


class SharedScoresheet(Base):
    """Scoresheet mirror; always resolved to a recipient-owned clone."""

    __tablename__ = "shared_scoresheets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    shared_with_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    scoresheet_id = Column(Integer, ForeignKey("scoresheets.id"), nullable=False)
    shared_game_id = Column(Integer, ForeignKey("shared_games.id"), nullable=False)
    linked_scoresheet_id = Column(Integer, ForeignKey("scoresheets.id"), nullable=True)
    type = Column(String(10), default=SharedScoresheetType.GAME.value, nullable=False)
    parent_id = Column(Integer, ForeignKey("shared_scoresheets.id"), nullable=True)
    permission = Column(String(10), default=SharePermission.VIEW.value, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "owner_id", "shared_with_id", "scoresheet_id", name="uq_shared_scoresheets_source"
        ),
    )


class SharedRound(Base):
    """Round mirror, created alongside its scoresheet clone."""

    __tablename__ = "shared_rounds"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    shared_with_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    round_id = Column(Integer, ForeignKey("rounds.id"), nullable=False)
    shared_scoresheet_id = Column(
        Integer, ForeignKey("shared_scoresheets.id", ondelete="CASCADE"), nullable=False
    )
    linked_round_id = Column(Integer, ForeignKey("rounds.id"), nullable=True)
    permission = Column(String(10), default=SharePermission.VIEW.value, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_id", "shared_with_id", "round_id", name="uq_shared_rounds_source"),
    )


class SharedLocation(Base):
    """Location mirror."""

    __tablename__ = "shared_locations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    shared_with_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    location_id = Column(Integer, ForeignKey("locations.id"), nullable=False)
    linked_location_id = Column(Integer, ForeignKey("locations.id"), nullable=True)
    permission = Column(String(10), default=SharePermission.VIEW.value, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint(
            "owner_id", "shared_with_id", "location_id", name="uq_shared_locations_source"
        ),
    )


class SharedPlayer(Base):
    """Player mirror."""

    __tablename__ = "shared_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    shared_with_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    player_id = Column(Integer, ForeignKey("players.id"), nullable=False)
    linked_player_id = Column(Integer, ForeignKey("players.id"), nullable=True)
    permission = Column(String(10), default=SharePermission.VIEW.value, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("owner_id", "shared_with_id", "player_id", name="uq_shared_players_source"),
    )


class SharedGameRole(Base):
    """Game role mirror, scoped to the shared game it belongs to."""

    __tablename__ = "shared_game_roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    shared_with_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    game_role_id = Column(Integer, ForeignKey("game_roles.id"), nullable=False)
    shared_game_id = Column(Integer, ForeignKey("shared_games.id"), nullable=False)
    linked_game_role_id = Column(Integer, ForeignKey("game_roles.id"), nullable=True)
    permission = Column(String(10), default=SharePermission.VIEW.value, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "owner_id", "shared_with_id", "game_role_id", name="uq_shared_game_roles_source"
        ),
    )


class SharedMatch(Base):
    """
    Match mirror. Never backed by a copy: every read and write goes to the
    owner's single Match row at the mirror's permission.
    """

    __tablename__ = "shared_matches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    shared_with_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=False)
    shared_game_id = Column(Integer, ForeignKey("shared_games.id"), nullable=False)
    shared_scoresheet_id = Column(Integer, ForeignKey("shared_scoresheets.id"), nullable=False)
    shared_location_id = Column(Integer, ForeignKey("shared_locations.id"), nullable=True)
    permission = Column(String(10), default=SharePermission.VIEW.value, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("owner_id", "shared_with_id", "match_id", name="uq_shared_matches_source"),
        Index("idx_shared_matches_recipient", "shared_with_id"),
    )


class SharedMatchPlayer(Base):
    """Match participant mirror."""

    __tablename__ = "shared_match_players"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    shared_with_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    match_player_id = Column(
        Integer, ForeignKey("match_players.id", ondelete="CASCADE"), nullable=False
    )
    shared_match_id = Column(
        Integer, ForeignKey("shared_matches.id", ondelete="CASCADE"), nullable=False
    )
    shared_player_id = Column(Integer, ForeignKey("shared_players.id"), nullable=True)
    permission = Column(String(10), default=SharePermission.VIEW.value, nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "owner_id", "shared_with_id", "match_player_id", name="uq_shared_match_players_source"
        ),
    )


class SharedMatchPlayerRole(Base):
    """Join table (SharedMatchPlayer ↔ SharedGameRole)."""

    __tablename__ = "shared_match_player_roles"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    shared_with_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    shared_match_player_id = Column(
        Integer, ForeignKey("shared_match_players.id", ondelete="CASCADE"), nullable=False
    )
    shared_game_role_id = Column(Integer, ForeignKey("shared_game_roles.id"), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "shared_match_player_id",
            "shared_game_role_id",
            name="uq_shared_match_player_roles_source",
        ),
    )
