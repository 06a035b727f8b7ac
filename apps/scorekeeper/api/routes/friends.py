"""Friend settings route handlers."""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from scorekeeper.database.db import get_db_session
from scorekeeper.services import friend_service
from scorekeeper.services.errors import NotFoundError
from scorekeeper.api.auth_dependencies import require_user
from scorekeeper.api.routes import raise_client_error
from scorekeeper.models.schemas import FriendSettingsUpdate, FriendSettingsResponse

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/friends/{friend_user_id}/settings", response_model=FriendSettingsResponse)
async def get_friend_settings(
    friend_user_id: int,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Get the current user's sharing settings towards a friend."""
    try:
        own_setting, _ = await friend_service.get_friend_settings(session, user["id"], friend_user_id)
        if own_setting is None:
            raise NotFoundError("Friend not found")
        return friend_service.setting_to_dict(own_setting)
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error getting friend settings: {e}")
        raise HTTPException(status_code=500, detail="Error getting friend settings")


@router.put("/api/friends/{friend_user_id}/settings", response_model=FriendSettingsResponse)
async def update_friend_settings(
    friend_user_id: int,
    payload: FriendSettingsUpdate,
    user: dict = Depends(require_user),
    session: AsyncSession = Depends(get_db_session),
):
    """Update the current user's sharing settings towards a friend."""
    try:
        setting = await friend_service.update_friend_settings(
            session, user["id"], friend_user_id, payload.model_dump(mode="json", exclude_none=True)
        )
        return friend_service.setting_to_dict(setting)
    except ValueError as e:
        raise_client_error(e)
    except Exception as e:
        logger.error(f"Error updating friend settings: {e}")
        raise HTTPException(status_code=500, detail="Error updating friend settings")
