"""Match route handlers, for owners and for friends a match was shared with."""

import enum
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from scorekeeper.database.db import get_db_session
from scorekeeper.services import match_service
from scorekeeper.api.auth_dependencies import require_user
from scorekeeper.api.routes import raise_client_error
from scorekeeper.models.schemas import (
    MatchCreate,
    MatchUpdate,
    SharedMatchUpdate,
    MatchResponse,
    MatchWriteResponse,
    SharedMatchSummary,
    RoundScoreUpdate,
    CommentUpdate,
    TeamAssignment,
    RoleAssignment,
)

logger = logging.getLogger(__name__)
router = APIRouter()


class MatchScope(str, enum.Enum):
    """How the caller addresses a match: by its own id, or by shared-match id."""

    OWNED = "matches"
    SHARED = "shared-matches"


def _target(scope: MatchScope, target_id: int) -> dict:
    if scope is MatchScope.SHARED:
        return {"shared_match_id": target_id}
    return {"match_id": target_id}


# ---------------------------------------------------------------------------
# Owner endpoints
# ---------------------------------------------------------------------------


@router.post("/api/matches", response_model=MatchWriteResponse)
async def create_match(
    payload: MatchCreate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Record a match; it is auto-shared with participating friends."""
    try:
        match, shares = await match_service.create_match(
            session,
            user["id"],
            payload.game_id,
            payload.name,
            payload.date,
            payload.player_ids,
            location_id=payload.location_id,
            scoresheet_id=payload.scoresheet_id,
            team_names=payload.team_names,
        )
        return {
            "match": await match_service.get_match(session, user["id"], match_id=match.id),
            "share_messages": [share.to_dict() for share in shares],
        }
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error creating match: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error creating match")


@router.get("/api/matches/{match_id}", response_model=MatchResponse)
async def get_match(
    match_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get a match the current user owns or was shared."""
    try:
        return await match_service.get_match(session, user["id"], match_id=match_id)
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error getting match {match_id}: {e}")
        raise HTTPException(status_code=500, detail="Error getting match")


@router.patch("/api/matches/{match_id}", response_model=MatchWriteResponse)
async def update_match(
    match_id: int,
    payload: MatchUpdate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Edit match details and roster; new friend participants are auto-shared."""
    try:
        await match_service.edit_match_details(
            session,
            user["id"],
            match_id=match_id,
            name=payload.name,
            date=payload.date,
            location_id=payload.location_id,
        )
        shares = []
        if payload.add_player_ids or payload.remove_match_player_ids:
            _, shares = await match_service.update_match_players(
                session,
                user["id"],
                match_id,
                add_player_ids=payload.add_player_ids,
                remove_match_player_ids=payload.remove_match_player_ids,
            )
        return {
            "match": await match_service.get_match(session, user["id"], match_id=match_id),
            "share_messages": [share.to_dict() for share in shares],
        }
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error updating match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error updating match")


@router.delete("/api/matches/{match_id}")
async def delete_match(
    match_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Delete a match and every share of it."""
    try:
        await match_service.delete_match(session, user["id"], match_id)
        return {"status": "ok", "message": "Match deleted"}
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error deleting match {match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error deleting match")


# ---------------------------------------------------------------------------
# Shared-match endpoints
# ---------------------------------------------------------------------------


@router.get("/api/shared-matches", response_model=List[SharedMatchSummary])
async def list_shared_matches(
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """List matches other users shared with the current user."""
    try:
        return await match_service.list_shared_matches(session, user["id"])
    except Exception as e:
        logger.error(f"Error listing shared matches: {e}")
        raise HTTPException(status_code=500, detail="Error listing shared matches")


@router.get("/api/shared-matches/{shared_match_id}", response_model=MatchResponse)
async def get_shared_match(
    shared_match_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get a match through the current user's share of it."""
    try:
        return await match_service.get_match(session, user["id"], shared_match_id=shared_match_id)
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error getting shared match {shared_match_id}: {e}")
        raise HTTPException(status_code=500, detail="Error getting shared match")


@router.patch("/api/shared-matches/{shared_match_id}", response_model=MatchResponse)
async def update_shared_match(
    shared_match_id: int,
    payload: SharedMatchUpdate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Edit name, date or (shared) location of a match shared with edit permission."""
    try:
        access = await match_service.edit_match_details(
            session,
            user["id"],
            shared_match_id=shared_match_id,
            name=payload.name,
            date=payload.date,
            shared_location_id=payload.shared_location_id,
        )
        return await match_service.match_to_dict(session, access)
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error updating shared match {shared_match_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error updating shared match")


# ---------------------------------------------------------------------------
# Match play endpoints (owner via /api/matches, editor via /api/shared-matches)
# ---------------------------------------------------------------------------

async def _clock_action(handler, action: str, scope: MatchScope, target_id: int, user_id: int, session):
    try:
        access = await handler(session, user_id, **_target(scope, target_id))
        return await match_service.match_to_dict(session, access)
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error running {action} on {scope.value} {target_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=f"Error running {action}")


@router.post("/api/{scope}/{target_id}/start", response_model=MatchResponse)
async def start_match(
    scope: MatchScope,
    target_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Start (or resume) the match clock."""
    return await _clock_action(match_service.start_match, "start", scope, target_id, user["id"], session)


@router.post("/api/{scope}/{target_id}/pause", response_model=MatchResponse)
async def pause_match(
    scope: MatchScope,
    target_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Pause the match clock."""
    return await _clock_action(match_service.pause_match, "pause", scope, target_id, user["id"], session)


@router.post("/api/{scope}/{target_id}/finish", response_model=MatchResponse)
async def finish_match(
    scope: MatchScope,
    target_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Finish the match and derive placements."""
    return await _clock_action(match_service.finish_match, "finish", scope, target_id, user["id"], session)


@router.post("/api/{scope}/{target_id}/reset-duration", response_model=MatchResponse)
async def reset_duration(
    scope: MatchScope,
    target_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Zero the match clock."""
    return await _clock_action(
        match_service.reset_duration, "reset-duration", scope, target_id, user["id"], session
    )


@router.put("/api/{scope}/{target_id}/scores", response_model=MatchResponse)
async def update_round_score(
    scope: MatchScope,
    target_id: int,
    payload: RoundScoreUpdate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Set one participant's score for one round."""
    try:
        access = await match_service.update_round_score(
            session,
            user["id"],
            payload.match_player_id,
            payload.round_id,
            payload.score,
            **_target(scope, target_id),
        )
        return await match_service.match_to_dict(session, access)
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error updating score on {scope.value} {target_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error updating score")


@router.put("/api/{scope}/{target_id}/comment", response_model=MatchResponse)
async def update_comment(
    scope: MatchScope,
    target_id: int,
    payload: CommentUpdate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Replace the match comment."""
    try:
        access = await match_service.update_comment(
            session, user["id"], payload.comment, **_target(scope, target_id)
        )
        return await match_service.match_to_dict(session, access)
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error updating comment on {scope.value} {target_id}: {e}")
        raise HTTPException(status_code=500, detail="Error updating comment")


@router.put("/api/{scope}/{target_id}/match-players/{match_player_id}/team", response_model=MatchResponse)
async def update_match_player_team(
    scope: MatchScope,
    target_id: int,
    match_player_id: int,
    payload: TeamAssignment,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Move a participant to a team."""
    try:
        access = await match_service.update_match_player_team(
            session, user["id"], match_player_id, payload.team_id, **_target(scope, target_id)
        )
        return await match_service.match_to_dict(session, access)
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error updating team on {scope.value} {target_id}: {e}")
        raise HTTPException(status_code=500, detail="Error updating team")


@router.put("/api/{scope}/{target_id}/match-players/{match_player_id}/roles", response_model=MatchResponse)
async def update_match_player_roles(
    scope: MatchScope,
    target_id: int,
    match_player_id: int,
    payload: RoleAssignment,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Replace a participant's roles."""
    try:
        access = await match_service.update_match_player_roles(
            session, user["id"], match_player_id, payload.role_ids, **_target(scope, target_id)
        )
        return await match_service.match_to_dict(session, access)
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error updating roles on {scope.value} {target_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error updating roles")
