"""Notification routes for gigledger."""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, Field

from gigledger.contracts.models import Notification, NotificationType

from ..auth import CurrentPrincipal
from ..database import Engine
from ..errors import raise_for_outcome
from ..rate_limit import limiter

logger = logging.getLogger("gigledger.api.notifications")
router = APIRouter(prefix="/notifications", tags=["notifications"])


class NotificationResponse(BaseModel):
    id: str
    type: NotificationType
    title: str
    message: str
    reference_id: str | None = None
    reference_type: str | None = None
    amount: Decimal | None = None
    is_read: bool
    created_at: datetime | None = None


class MarkReadRequest(BaseModel):
    notification_ids: list[str] = Field(..., min_length=1)


class MarkReadResponse(BaseModel):
    updated: int


def to_notification_response(notification: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=notification.id,
        type=notification.type,
        title=notification.title,
        message=notification.message,
        reference_id=notification.reference_id,
        reference_type=notification.reference_type,
        amount=notification.amount,
        is_read=notification.is_read,
        created_at=notification.created_at,
    )


@router.get("", response_model=list[NotificationResponse])
@limiter.limit("60/minute")
async def list_notifications(
    request: Request,
    principal: CurrentPrincipal,
    engine: Engine,
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
):
    """The caller's notifications, newest first."""
    outcome = await asyncio.to_thread(
        engine.list_notifications, principal, unread_only=unread_only, limit=limit
    )
    notifications = raise_for_outcome(outcome)
    return [to_notification_response(n) for n in notifications]


@router.post("/read", response_model=MarkReadResponse)
@limiter.limit("30/minute")
async def mark_read(
    request: Request,
    body: MarkReadRequest,
    principal: CurrentPrincipal,
    engine: Engine,
):
    """Mark some of the caller's notifications as read."""
    outcome = await asyncio.to_thread(
        engine.mark_notifications_read, principal, body.notification_ids
    )
    updated = raise_for_outcome(outcome)
    logger.debug(f"Marked {updated} notifications read for {principal.id}")
    return MarkReadResponse(updated=updated)
