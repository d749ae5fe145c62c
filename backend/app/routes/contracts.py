"""Contract routes for gigledger.

Endpoints for creating contracts from bids and moving them through their stages.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, field_validator

from gigledger.contracts.commands import AdvanceStage, SetTerms
from gigledger.contracts.models import (
    Contract,
    ContractStage,
    ContractTransition,
    Milestone,
    MilestoneDraft,
    MilestoneStatus,
)

from ..auth import CurrentPrincipal
from ..database import Engine
from ..errors import raise_for_outcome
from ..rate_limit import limiter

logger = logging.getLogger("gigledger.api.contracts")
router = APIRouter(prefix="/contracts", tags=["contracts"])


# =============================================================================
# Request/Response Models
# =============================================================================


class MilestoneCreate(BaseModel):
    """One milestone of a new contract."""

    title: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    description: str = ""
    due_date: datetime | None = None


class ContractCreate(BaseModel):
    """Request to create a contract from a bid."""

    bid_id: str = Field(..., min_length=1)
    terms: str = Field(..., min_length=1)
    amount: Decimal = Field(..., gt=0, decimal_places=2)
    title: str | None = Field(None, max_length=200)
    milestones: list[MilestoneCreate] = Field(..., min_length=1)

    @field_validator("terms")
    @classmethod
    def terms_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Terms cannot be empty")
        return v


class TermsUpdate(BaseModel):
    """Request to change the terms of a proposal."""

    terms: str = Field(..., min_length=1)
    title: str | None = Field(None, min_length=1, max_length=200)
    expected_stage: ContractStage | None = None


class StageUpdate(BaseModel):
    """Request to move a contract to another stage."""

    stage: ContractStage
    reason: str | None = None
    expected_stage: ContractStage | None = None


class MilestoneResponse(BaseModel):
    """Milestone details response."""

    id: str
    contract_id: str
    project_id: str
    title: str
    description: str
    amount: Decimal
    due_date: datetime | None = None
    status: MilestoneStatus
    position: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ContractResponse(BaseModel):
    """Contract details response."""

    id: str
    project_id: str
    client_id: str
    freelancer_id: str
    bid_id: str
    title: str
    description: str
    amount: Decimal
    stage: ContractStage
    terms_accepted: bool
    payment_intent_id: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    milestones: list[MilestoneResponse] = Field(default_factory=list)


class ContractListResponse(BaseModel):
    """Paginated list of contracts."""

    contracts: list[ContractResponse]
    total: int
    limit: int
    offset: int


class TransitionResponse(BaseModel):
    """One stage change of a contract."""

    id: str
    from_stage: ContractStage | None = None
    to_stage: ContractStage
    actor_id: str
    reason: str | None = None
    created_at: datetime | None = None


# =============================================================================
# Helper Functions
# =============================================================================


def to_milestone_response(milestone: Milestone) -> MilestoneResponse:
    """Convert a milestone to its response model."""
    return MilestoneResponse(
        id=milestone.id,
        contract_id=milestone.contract_id,
        project_id=milestone.project_id,
        title=milestone.title,
        description=milestone.description,
        amount=milestone.amount,
        due_date=milestone.due_date,
        status=milestone.status,
        position=milestone.position,
        created_at=milestone.created_at,
        updated_at=milestone.updated_at,
    )


def to_contract_response(contract: Contract) -> ContractResponse:
    """Convert a contract to its response model."""
    return ContractResponse(
        id=contract.id,
        project_id=contract.project_id,
        client_id=contract.client_id,
        freelancer_id=contract.freelancer_id,
        bid_id=contract.bid_id,
        title=contract.title,
        description=contract.description,
        amount=contract.amount,
        stage=contract.stage,
        terms_accepted=contract.terms_accepted,
        payment_intent_id=contract.payment_intent_id,
        start_date=contract.start_date,
        end_date=contract.end_date,
        created_at=contract.created_at,
        updated_at=contract.updated_at,
        milestones=[to_milestone_response(m) for m in contract.milestones],
    )


def to_transition_response(transition: ContractTransition) -> TransitionResponse:
    return TransitionResponse(
        id=transition.id,
        from_stage=transition.from_stage,
        to_stage=transition.to_stage,
        actor_id=transition.actor_id,
        reason=transition.reason,
        created_at=transition.created_at,
    )


def _unprocessable(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        detail={"code": "VALIDATION", "message": message, "reason": None},
    )


# =============================================================================
# Routes
# =============================================================================


@router.post("", response_model=ContractResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
async def create_contract(
    request: Request,
    body: ContractCreate,
    principal: CurrentPrincipal,
    engine: Engine,
):
    """Create a contract, with its milestones, from a bid on the caller's project."""
    logger.info(f"POST /contracts | user={principal.id} | bid={body.bid_id}")

    try:
        drafts = [
            MilestoneDraft(
                title=m.title, amount=m.amount, description=m.description, due_date=m.due_date
            )
            for m in body.milestones
        ]
    except ValueError as e:
        raise _unprocessable(str(e))

    outcome = await asyncio.to_thread(
        engine.create_contract,
        principal,
        body.bid_id,
        body.terms,
        body.amount,
        drafts,
        title=body.title,
    )
    contract = raise_for_outcome(outcome)
    logger.info(f"Contract created | id={contract.id} | amount={contract.amount}")
    return to_contract_response(contract)


@router.get("", response_model=ContractListResponse)
@limiter.limit("60/minute")
async def list_contracts(
    request: Request,
    principal: CurrentPrincipal,
    engine: Engine,
    stage: ContractStage | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """List the contracts the caller is a party to (all contracts for admins)."""
    outcome = await asyncio.to_thread(engine.list_contracts, principal, stage, limit, offset)
    contracts = raise_for_outcome(outcome)
    return ContractListResponse(
        contracts=[to_contract_response(c) for c in contracts],
        total=len(contracts),
        limit=limit,
        offset=offset,
    )


@router.get("/{contract_id}", response_model=ContractResponse)
@limiter.limit("60/minute")
async def get_contract(
    request: Request,
    contract_id: str,
    principal: CurrentPrincipal,
    engine: Engine,
):
    """Get a contract with its milestones."""
    outcome = await asyncio.to_thread(engine.get_contract, principal, contract_id)
    contract = raise_for_outcome(outcome)
    return to_contract_response(contract)


@router.put("/{contract_id}/terms", response_model=ContractResponse)
@limiter.limit("20/minute")
async def update_terms(
    request: Request,
    contract_id: str,
    body: TermsUpdate,
    principal: CurrentPrincipal,
    engine: Engine,
):
    """Change the terms of a contract that is still a proposal."""
    logger.info(f"PUT /contracts/{contract_id}/terms | user={principal.id}")

    try:
        command = SetTerms(terms=body.terms, title=body.title, expected_stage=body.expected_stage)
    except ValueError as e:
        raise _unprocessable(str(e))

    outcome = await asyncio.to_thread(engine.update_contract_terms, principal, contract_id, command)
    contract = raise_for_outcome(outcome)
    return to_contract_response(contract)


@router.put("/{contract_id}/stage", response_model=ContractResponse)
@limiter.limit("20/minute")
async def advance_stage(
    request: Request,
    contract_id: str,
    body: StageUpdate,
    principal: CurrentPrincipal,
    engine: Engine,
):
    """Move a contract to another stage."""
    logger.info(
        f"PUT /contracts/{contract_id}/stage | user={principal.id} | to={body.stage.value}"
    )

    command = AdvanceStage(
        target=body.stage, reason=body.reason, expected_stage=body.expected_stage
    )
    outcome = await asyncio.to_thread(
        engine.advance_contract_stage, principal, contract_id, command
    )
    contract = raise_for_outcome(outcome)
    logger.info(f"Contract {contract_id} is now {contract.stage.value}")
    return to_contract_response(contract)


@router.get("/{contract_id}/history", response_model=list[TransitionResponse])
@limiter.limit("60/minute")
async def contract_history(
    request: Request,
    contract_id: str,
    principal: CurrentPrincipal,
    engine: Engine,
):
    """Stage changes of a contract, oldest first."""
    outcome = await asyncio.to_thread(engine.contract_history, principal, contract_id)
    transitions = raise_for_outcome(outcome)
    return [to_transition_response(t) for t in transitions]
