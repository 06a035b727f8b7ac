"""
Pydantic models for API request/response validation.
"""

from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field, ConfigDict, model_validator

from scorekeeper.database.models import ShareItemType, SharePermission


# Share requests
class ShareRequestCreate(BaseModel):
    """Request to share an item with a friend."""

    item_type: ShareItemType
    item_id: int
    friend_user_id: int
    permission: SharePermission = SharePermission.VIEW
    include_players: bool = True
    include_location: bool = True
    expires_at: Optional[datetime] = None


class ShareItemDecision(BaseModel):
    """Recipient's choice for one item of a share tree."""

    share_request_id: int
    accept: bool = True
    link_id: Optional[int] = None  # Existing entity to link instead of cloning

    @model_validator(mode="after")
    def validate_link_requires_accept(self):
        """A link target only makes sense for an accepted item."""
        if self.link_id is not None and not self.accept:
            raise ValueError("link_id cannot be set on a rejected item")
        return self


class ShareRequestAccept(BaseModel):
    """Per-item decisions when accepting a share."""

    decisions: List[ShareItemDecision] = Field(default_factory=list)


class ShareRequestResponse(BaseModel):
    """Share request (a tree root includes its children)."""

    id: int
    owner_id: int
    shared_with_id: int
    item_type: str
    item_id: int
    item_parent_id: Optional[int] = None
    item_name: Optional[str] = None
    parent_share_id: Optional[int] = None
    permission: str
    status: str
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    expired: bool = False
    children: List["ShareRequestResponse"] = Field(default_factory=list)


class AcceptedItemResponse(BaseModel):
    """One materialized item."""

    share_request_id: int
    item_type: str
    item_id: int
    mirror_id: int
    linked_id: Optional[int] = None


class ShareAcceptResponse(BaseModel):
    """Result of accepting a share."""

    share_request_id: int
    status: str
    items: List[AcceptedItemResponse]


class ShareMessage(BaseModel):
    """Auto-share outcome for one friend."""

    friend_user_id: int
    success: bool
    message: str
    share_request_id: Optional[int] = None


# Matches
class MatchCreate(BaseModel):
    """Request to record a match."""

    game_id: int
    name: str = Field(..., min_length=1)
    date: datetime
    player_ids: List[int] = Field(..., min_length=1)
    location_id: Optional[int] = None
    scoresheet_id: Optional[int] = None
    team_names: List[str] = Field(default_factory=list)


class MatchUpdate(BaseModel):
    """Owner's edit of a match; roster changes trigger auto-share."""

    name: Optional[str] = Field(None, min_length=1)
    date: Optional[datetime] = None
    location_id: Optional[int] = None
    add_player_ids: List[int] = Field(default_factory=list)
    remove_match_player_ids: List[int] = Field(default_factory=list)


class SharedMatchUpdate(BaseModel):
    """Shared editor's edit of match details."""

    name: Optional[str] = Field(None, min_length=1)
    date: Optional[datetime] = None
    shared_location_id: Optional[int] = None


class RoundScoreUpdate(BaseModel):
    """Score of one participant in one round."""

    match_player_id: int
    round_id: int
    score: Optional[int] = None


class CommentUpdate(BaseModel):
    comment: Optional[str] = None


class TeamAssignment(BaseModel):
    team_id: Optional[int] = None


class RoleAssignment(BaseModel):
    role_ids: List[int] = Field(default_factory=list)


class RoundScoreResponse(BaseModel):
    round_id: int
    score: Optional[int] = None


class MatchPlayerResponse(BaseModel):
    """Match participant."""

    id: int
    player_id: int
    name: Optional[str] = None
    team_id: Optional[int] = None
    score: Optional[int] = None
    placement: Optional[int] = None
    winner: bool = False
    round_scores: List[RoundScoreResponse] = Field(default_factory=list)
    role_ids: List[int] = Field(default_factory=list)


class TeamResponse(BaseModel):
    id: int
    name: str


class MatchResponse(BaseModel):
    """Match as seen by the caller."""

    id: int
    shared_match_id: Optional[int] = None
    owner_id: int
    permission: str
    game_id: int
    scoresheet_id: int
    location_id: Optional[int] = None
    name: str
    date: datetime
    finished: bool
    running: bool
    start_time: Optional[datetime] = None
    duration: int
    comment: Optional[str] = None
    players: List[MatchPlayerResponse] = Field(default_factory=list)
    teams: List[TeamResponse] = Field(default_factory=list)


class MatchWriteResponse(BaseModel):
    """Match plus what auto-share did."""

    match: MatchResponse
    share_messages: List[ShareMessage] = Field(default_factory=list)


class SharedMatchSummary(BaseModel):
    """Row of the shared-with-me match list."""

    shared_match_id: int
    match_id: int
    owner_id: int
    permission: str
    name: str
    date: datetime
    finished: bool


# Friend settings
class FriendSettingsUpdate(BaseModel):
    """Partial update of the caller's side of a friendship."""

    auto_share_matches: Optional[bool] = None
    share_players_with_match: Optional[bool] = None
    include_location_with_match: Optional[bool] = None
    default_permission_for_matches: Optional[SharePermission] = None
    default_permission_for_players: Optional[SharePermission] = None
    default_permission_for_location: Optional[SharePermission] = None
    default_permission_for_game: Optional[SharePermission] = None
    allow_shared_games: Optional[bool] = None
    allow_shared_matches: Optional[bool] = None
    allow_shared_players: Optional[bool] = None
    allow_shared_location: Optional[bool] = None
    auto_accept_matches: Optional[bool] = None
    auto_accept_players: Optional[bool] = None
    auto_accept_location: Optional[bool] = None
    auto_accept_game: Optional[bool] = None


class FriendSettingsResponse(BaseModel):
    """One direction of a friendship's settings."""

    model_config = ConfigDict(from_attributes=True)

    friend_id: int
    user_id: int
    auto_share_matches: bool
    share_players_with_match: bool
    include_location_with_match: bool
    default_permission_for_matches: str
    default_permission_for_players: str
    default_permission_for_location: str
    default_permission_for_game: str
    allow_shared_games: bool
    allow_shared_matches: bool
    allow_shared_players: bool
    allow_shared_location: bool
    auto_accept_matches: bool
    auto_accept_players: bool
    auto_accept_location: bool
    auto_accept_game: bool
