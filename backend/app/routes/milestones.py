"""Milestone routes for gigledger.

Progress updates drive milestone status; edits are limited to pending milestones.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from gigledger.contracts.commands import EditMilestone
from gigledger.contracts.models import MilestoneStatus, ProgressUpdate

from ..auth import CurrentPrincipal
from ..database import Engine
from ..errors import raise_for_outcome
from ..rate_limit import limiter
from .contracts import MilestoneResponse, to_milestone_response

logger = logging.getLogger("gigledger.api.milestones")
router = APIRouter(prefix="/milestones", tags=["milestones"])


# =============================================================================
# Request/Response Models
# =============================================================================


class ProgressCreate(BaseModel):
    """Request to post progress on a milestone."""

    description: str = Field(..., min_length=1)
    status: MilestoneStatus | None = None


class MilestoneEdit(BaseModel):
    """Request to edit a pending milestone."""

    title: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = None
    amount: Decimal | None = Field(None, gt=0, decimal_places=2)
    due_date: datetime | None = None
    clear_due_date: bool = False


class ProgressResponse(BaseModel):
    """One entry of a milestone's progress trail."""

    id: str
    milestone_id: str
    author_id: str
    description: str
    status: MilestoneStatus
    created_at: datetime | None = None


class ProgressRecordResponse(BaseModel):
    """Result of posting progress."""

    update: ProgressResponse
    milestone: MilestoneResponse
    payment_id: str | None = None


def to_progress_response(update: ProgressUpdate) -> ProgressResponse:
    return ProgressResponse(
        id=update.id,
        milestone_id=update.milestone_id,
        author_id=update.author_id,
        description=update.description,
        status=update.status,
        created_at=update.created_at,
    )


# =============================================================================
# Routes
# =============================================================================


@router.post(
    "/{milestone_id}/progress",
    response_model=ProgressRecordResponse,
    status_code=status.HTTP_201_CREATED,
)
@limiter.limit("30/minute")
async def record_progress(
    request: Request,
    milestone_id: str,
    body: ProgressCreate,
    principal: CurrentPrincipal,
    engine: Engine,
):
    """Post a progress update, optionally moving the milestone to a new status."""
    target = body.status.value if body.status else "-"
    logger.info(f"POST /milestones/{milestone_id}/progress | user={principal.id} | to={target}")

    outcome = await asyncio.to_thread(
        engine.record_milestone_progress, principal, milestone_id, body.description, body.status
    )
    record = raise_for_outcome(outcome)
    return ProgressRecordResponse(
        update=to_progress_response(record.update),
        milestone=to_milestone_response(record.milestone),
        payment_id=record.payment.id if record.payment else None,
    )


@router.get("/{milestone_id}/progress", response_model=list[ProgressResponse])
@limiter.limit("60/minute")
async def list_progress(
    request: Request,
    milestone_id: str,
    principal: CurrentPrincipal,
    engine: Engine,
):
    """Progress trail of a milestone, oldest first."""
    outcome = await asyncio.to_thread(engine.list_progress, principal, milestone_id)
    updates = raise_for_outcome(outcome)
    return [to_progress_response(u) for u in updates]


@router.patch("/{milestone_id}", response_model=MilestoneResponse)
@limiter.limit("20/minute")
async def update_milestone(
    request: Request,
    milestone_id: str,
    body: MilestoneEdit,
    principal: CurrentPrincipal,
    engine: Engine,
):
    """Edit a pending milestone."""
    logger.info(f"PATCH /milestones/{milestone_id} | user={principal.id}")

    try:
        command = EditMilestone(
            title=body.title,
            description=body.description,
            amount=body.amount,
            due_date=body.due_date,
            clear_due_date=body.clear_due_date,
        )
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"code": "VALIDATION", "message": str(e), "reason": None},
        )

    outcome = await asyncio.to_thread(
        engine.update_milestone_details, principal, milestone_id, command
    )
    milestone = raise_for_outcome(outcome)
    return to_milestone_response(milestone)
