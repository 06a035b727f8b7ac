"""Share request route handlers."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from scorekeeper.database.db import get_db_session
from scorekeeper.services import share_request_service
from scorekeeper.services.share_acceptance_service import ShareDecision
from scorekeeper.services.share_graph_service import ClosureOptions
from scorekeeper.api.auth_dependencies import require_user
from scorekeeper.api.routes import limiter, raise_client_error
from scorekeeper.models.schemas import (
    ShareRequestCreate,
    ShareRequestAccept,
    ShareRequestResponse,
    ShareAcceptResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/share-requests", response_model=ShareRequestResponse)
@limiter.limit("30/minute")
async def create_share_request(
    request: Request,
    payload: ShareRequestCreate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Share a game, match, player, scoresheet or location with a friend."""
    try:
        root = await share_request_service.create_share_request(
            session,
            user["id"],
            payload.friend_user_id,
            payload.item_type,
            payload.item_id,
            permission=payload.permission.value,
            options=ClosureOptions(
                include_players=payload.include_players,
                include_location=payload.include_location,
            ),
            expires_at=payload.expires_at,
        )
        return await share_request_service.get_share_request(session, root.id, user["id"])
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error creating share request: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error creating share request")


@router.get("/api/share-requests", response_model=List[ShareRequestResponse])
async def list_share_requests(
    direction: str = Query("incoming", pattern="^(incoming|outgoing)$"),
    status: Optional[str] = Query(None),
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """List share requests sent to (incoming) or by (outgoing) the current user."""
    try:
        return await share_request_service.list_share_requests(
            session, user["id"], direction=direction, status=status
        )
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error listing share requests: {e}")
        raise HTTPException(status_code=500, detail="Error listing share requests")


@router.get("/api/share-requests/{request_id}", response_model=ShareRequestResponse)
async def get_share_request(
    request_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get a share request with its child items."""
    try:
        return await share_request_service.get_share_request(session, request_id, user["id"])
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error getting share request {request_id}: {e}")
        raise HTTPException(status_code=500, detail="Error getting share request")


@router.post("/api/share-requests/{request_id}/accept", response_model=ShareAcceptResponse)
async def accept_share_request(
    request_id: int,
    payload: Optional[ShareRequestAccept] = None,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """
    Accept a share addressed to the current user.

    Items without a decision are accepted and cloned. A decision can reject
    a child item or link it to an entity the user already owns.
    """
    decisions = {
        decision.share_request_id: ShareDecision(accept=decision.accept, link_id=decision.link_id)
        for decision in (payload.decisions if payload else [])
    }
    try:
        return await share_request_service.accept_share_request(
            session, request_id, user["id"], decisions
        )
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error accepting share request {request_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Error accepting share request")


@router.post("/api/share-requests/{request_id}/reject", response_model=ShareRequestResponse)
async def reject_share_request(
    request_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Reject a share addressed to the current user."""
    try:
        root = await share_request_service.reject_share_request(session, request_id, user["id"])
        return await share_request_service.get_share_request(session, root.id, user["id"])
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error rejecting share request {request_id}: {e}")
        raise HTTPException(status_code=500, detail="Error rejecting share request")


@router.delete("/api/share-requests/{request_id}")
async def cancel_share_request(
    request_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Withdraw a share the current user sent, as long as nothing was accepted."""
    try:
        await share_request_service.cancel_share_request(session, request_id, user["id"])
        return {"status": "ok", "message": "Share request cancelled"}
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error cancelling share request {request_id}: {e}")
        raise HTTPException(status_code=500, detail="Error cancelling share request")
