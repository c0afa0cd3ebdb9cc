"""Stored outcome notifications for the current user."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from stockcast.api.deps import get_current_user_id, get_registry
from stockcast.registry.queries import Registry


class MarkReadRequest(BaseModel):
    ids: list[int] | None = None


router = APIRouter()


@router.get("/notifications")
def list_notifications(
    unread: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
) -> dict:
    items = registry.get_notifications(user_id, unread_only=unread, limit=limit)
    return {"notifications": items, "count": len(items)}


@router.post("/notifications/read")
def mark_read(
    body: MarkReadRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    registry: Registry = Depends(get_registry),
) -> dict:
    """Mark the given notifications (or all of them) as read."""
    ids = body.ids if body else None
    updated = registry.mark_notifications_read(user_id, ids)
    return {"updated": updated}
