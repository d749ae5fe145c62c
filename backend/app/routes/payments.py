"""Escrow payment routes for gigledger.

Funding opens a hold at the processor; release moves the held funds to the
freelancer; refund returns every held payment and cancels the contract.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel

from gigledger.payments.models import Payment, PaymentStatus
from gigledger.principals import Role

from ..auth import CurrentPrincipal
from ..database import Engine
from ..errors import raise_for_outcome
from ..rate_limit import limiter
from .contracts import ContractResponse, to_contract_response

logger = logging.getLogger("gigledger.api.payments")
router = APIRouter(tags=["payments"])


# =============================================================================
# Request/Response Models
# =============================================================================


class RefundRequest(BaseModel):
    """Request to refund a contract's escrow."""

    reason: str | None = None


class PaymentResponse(BaseModel):
    """Payment details response."""

    id: str
    contract_id: str
    milestone_id: str
    client_id: str
    freelancer_id: str
    amount: Decimal
    status: PaymentStatus
    payment_intent_id: str | None = None
    transfer_id: str | None = None
    refund_id: str | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class FundingResponse(BaseModel):
    """Result of funding a milestone."""

    payment: PaymentResponse
    client_secret: str | None = None


class ReleaseResponse(BaseModel):
    """Result of releasing escrow."""

    payment: PaymentResponse
    contract_completed: bool


class PaymentSummaryResponse(BaseModel):
    """Totals of the caller's payments."""

    user_id: str
    role: Role
    total_paid: Decimal
    total_in_escrow: Decimal
    total_pending: Decimal
    total_refunded: Decimal
    payments: list[PaymentResponse]


def to_payment_response(payment: Payment) -> PaymentResponse:
    """Convert a payment to its response model."""
    return PaymentResponse(
        id=payment.id,
        contract_id=payment.contract_id,
        milestone_id=payment.milestone_id,
        client_id=payment.client_id,
        freelancer_id=payment.freelancer_id,
        amount=payment.amount,
        status=payment.status,
        payment_intent_id=payment.payment_intent_id,
        transfer_id=payment.transfer_id,
        refund_id=payment.refund_id,
        completed_at=payment.completed_at,
        created_at=payment.created_at,
        updated_at=payment.updated_at,
    )


# =============================================================================
# Routes
# =============================================================================


@router.post(
    "/contracts/{contract_id}/milestones/{milestone_id}/fund",
    response_model=FundingResponse,
)
@limiter.limit("10/minute")
async def fund_milestone(
    request: Request,
    contract_id: str,
    milestone_id: str,
    principal: CurrentPrincipal,
    engine: Engine,
):
    """Open an escrow hold for a milestone whose payment was requested."""
    logger.info(
        f"POST fund | contract={contract_id} | milestone={milestone_id} | user={principal.id}"
    )

    outcome = await asyncio.to_thread(engine.fund_milestone, principal, contract_id, milestone_id)
    result = raise_for_outcome(outcome)
    logger.info(f"Milestone {milestone_id} funded | hold={result.hold.hold_id}")
    return FundingResponse(
        payment=to_payment_response(result.payment),
        client_secret=result.hold.client_secret,
    )


@router.post(
    "/contracts/{contract_id}/milestones/{milestone_id}/release",
    response_model=ReleaseResponse,
)
@limiter.limit("10/minute")
async def release_escrow(
    request: Request,
    contract_id: str,
    milestone_id: str,
    principal: CurrentPrincipal,
    engine: Engine,
):
    """Transfer a milestone's held funds to the freelancer."""
    logger.info(
        f"POST release | contract={contract_id} | milestone={milestone_id} | user={principal.id}"
    )

    outcome = await asyncio.to_thread(engine.release_escrow, principal, contract_id, milestone_id)
    result = raise_for_outcome(outcome)
    return ReleaseResponse(
        payment=to_payment_response(result.payment),
        contract_completed=result.contract_completed,
    )


@router.post("/contracts/{contract_id}/refund", response_model=ContractResponse)
@limiter.limit("5/minute")
async def refund_escrow(
    request: Request,
    contract_id: str,
    principal: CurrentPrincipal,
    engine: Engine,
    body: RefundRequest | None = None,
):
    """Refund every held payment of a contract and cancel it."""
    logger.info(f"POST /contracts/{contract_id}/refund | user={principal.id}")

    reason = body.reason if body else None
    outcome = await asyncio.to_thread(engine.refund_escrow, principal, contract_id, reason)
    contract = raise_for_outcome(outcome)
    return to_contract_response(contract)


@router.get("/payments/summary", response_model=PaymentSummaryResponse)
@limiter.limit("60/minute")
async def payment_summary(
    request: Request,
    principal: CurrentPrincipal,
    engine: Engine,
    role: str | None = Query(None, description="CLIENT or FREELANCER; defaults to caller's role"),
):
    """Totals of the caller's payments, by status."""
    as_role = None
    if role:
        try:
            as_role = Role(role.upper())
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail={"code": "VALIDATION", "message": f"Invalid role: {role}", "reason": None},
            )

    outcome = await asyncio.to_thread(engine.payment_summary, principal, as_role)
    summary = raise_for_outcome(outcome)
    return PaymentSummaryResponse(
        user_id=summary.user_id,
        role=summary.role,
        total_paid=summary.total_paid,
        total_in_escrow=summary.total_in_escrow,
        total_pending=summary.total_pending,
        total_refunded=summary.total_refunded,
        payments=[to_payment_response(p) for p in summary.payments],
    )
