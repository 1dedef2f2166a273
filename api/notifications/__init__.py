"""Notifications API endpoints."""

from typing import Any, Dict, List
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from auth import get_current_user
from engine import Engine

from ..dependencies import get_engine

router = APIRouter(
    prefix="/notifications",
    tags=["Notifications"]
)

@router.get("")
async def list_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
) -> List[Dict[str, Any]]:
    """Notifications for the current user, newest first."""
    return await engine.notifications.list_notifications(
        current_user, unread_only=unread_only, limit=limit, offset=offset
    )

@router.get("/stats")
async def get_notification_stats(
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
) -> Dict[str, int]:
    return await engine.notifications.get_stats(current_user)

@router.post("/read-all")
async def mark_all_notifications_read(
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
):
    updated = await engine.notifications.mark_all_notifications_read(current_user)
    return {"updated": updated}

@router.post("/{notification_id}/read")
async def mark_notification_read(
    notification_id: UUID,
    current_user: str = Depends(get_current_user),
    engine: Engine = Depends(get_engine)
) -> Dict[str, Any]:
    return await engine.notifications.mark_notification_read(notification_id, current_user)
