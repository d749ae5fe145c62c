"""Contract service.

Business logic for contract lifecycle:
- Create a contract from an accepted bid, with its milestones
- Edit terms while the contract is still a proposal
- Advance the contract stage along the transition table
- Read contracts and their audit history
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Union

from gigledger.config import LedgerConfig
from gigledger.contracts import effects
from gigledger.contracts.commands import AdvanceStage, SetTerms
from gigledger.contracts.models import (
    MAX_TITLE_LENGTH,
    BidStatus,
    Contract,
    ContractStage,
    ContractTransition,
    Milestone,
    MilestoneDraft,
    MilestoneStatus,
    NotificationType,
    ProjectStatus,
    as_money,
)
from gigledger.contracts.policy import authorize, can_create_contract, can_transition, can_view
from gigledger.contracts.transitions import Effect, contract_rule, contract_targets
from gigledger.errors import (
    ConflictError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from gigledger.ledger.base import LedgerStore, LedgerTransaction, utc_now
from gigledger.logging_config import log_transition
from gigledger.payments.models import PaymentStatus
from gigledger.principals import Principal

logger = logging.getLogger(__name__)

MilestoneInput = Union[MilestoneDraft, Dict[str, Any]]


def _to_draft(item: MilestoneInput) -> MilestoneDraft:
    if isinstance(item, MilestoneDraft):
        return item
    try:
        return MilestoneDraft(
            title=item.get("title", ""),
            amount=item.get("amount"),
            description=item.get("description") or "",
            due_date=item.get("due_date"),
        )
    except (AttributeError, TypeError, ValueError) as e:
        raise ValidationError(f"Invalid milestone: {e}") from None


class ContractService:
    """Service for managing contracts."""

    def __init__(self, ledger: LedgerStore, config: Optional[LedgerConfig] = None):
        self.ledger = ledger
        self.config = config or LedgerConfig()

    # =========================================================================
    # Creation
    # =========================================================================

    def _validate_drafts(
        self, terms: str, amount: Decimal, drafts: List[MilestoneDraft], title: Optional[str]
    ) -> None:
        if not terms or not terms.strip():
            raise ValidationError("Contract terms cannot be empty")
        if title is not None and (not title.strip() or len(title) > MAX_TITLE_LENGTH):
            raise ValidationError(f"Title must be 1-{MAX_TITLE_LENGTH} characters")
        if amount <= 0:
            raise ValidationError("Contract amount must be positive")
        if not drafts:
            raise ValidationError("A contract needs at least one milestone")
        for index, draft in enumerate(drafts, start=1):
            if not draft.title or not draft.title.strip():
                raise ValidationError(f"Milestone {index} needs a title")
            if len(draft.title) > MAX_TITLE_LENGTH:
                raise ValidationError(f"Milestone {index} title too long")
            if draft.amount <= 0:
                raise ValidationError(f"Milestone {index} amount must be positive")
        milestone_sum = sum((d.amount for d in drafts), Decimal("0.00"))
        if abs(milestone_sum - amount) >= self.config.amount_tolerance:
            raise ValidationError(
                f"Milestone amounts ({milestone_sum}) must add up to the contract amount ({amount})"
            )

    def create_contract(
        self,
        principal: Principal,
        bid_id: str,
        terms: str,
        amount: Decimal,
        milestones: Sequence[MilestoneInput],
        title: Optional[str] = None,
    ) -> Contract:
        """Create a contract for a bid.

        The contract starts in PROPOSAL with every milestone PENDING. In the same
        transaction the bid is accepted, the project moves to IN_PROGRESS and the
        freelancer is notified.

        Args:
            principal: The project's client (or an admin).
            bid_id: The bid being contracted.
            terms: Contract terms (stored as the contract description).
            amount: Contract total; must equal the sum of the milestone amounts.
            milestones: ``MilestoneDraft`` objects or dicts with title/amount/description/due_date.
            title: Contract title; defaults to the project title.

        Returns:
            The created contract with its milestones.

        Raises:
            NotFoundError: If the bid or its project does not exist.
            ForbiddenError: If the caller does not own the project.
            InvalidStateError: If the bid was rejected.
            ConflictError: If the bid already has a contract.
            ValidationError: If the terms or milestones are malformed.
        """
        try:
            amount = as_money(amount)
        except ValueError as e:
            raise ValidationError(str(e)) from None
        drafts = [_to_draft(m) for m in milestones]
        self._validate_drafts(terms, amount, drafts, title)

        with self.ledger.transaction() as tx:
            bid = tx.get_bid(bid_id)
            if not bid:
                raise NotFoundError(f"Bid {bid_id} not found")
            project = tx.get_project(bid.project_id)
            if not project:
                raise NotFoundError(f"Project {bid.project_id} not found")

            authorize(can_create_contract(principal, project), "create a contract for this project")

            if bid.status == BidStatus.REJECTED:
                raise InvalidStateError("Cannot create a contract for a rejected bid")
            if tx.get_contract_for_bid(bid.id):
                raise ConflictError("A contract already exists for this bid")

            now = utc_now()
            contract = Contract(
                id=str(uuid.uuid4()),
                project_id=project.id,
                client_id=project.client_id,
                freelancer_id=bid.freelancer_id,
                bid_id=bid.id,
                title=title or project.title,
                description=terms,
                amount=amount,
                stage=ContractStage.PROPOSAL,
                created_at=now,
                updated_at=now,
            )
            contract.milestones = [
                Milestone(
                    id=str(uuid.uuid4()),
                    contract_id=contract.id,
                    project_id=project.id,
                    title=draft.title.strip(),
                    amount=draft.amount,
                    description=draft.description,
                    due_date=draft.due_date,
                    status=MilestoneStatus.PENDING,
                    position=position,
                    created_at=now,
                    updated_at=now,
                )
                for position, draft in enumerate(drafts)
            ]
            tx.insert_contract(contract)
            effects.record_transition(
                tx, contract.id, None, ContractStage.PROPOSAL, principal.id, "Contract created"
            )
            tx.update_bid_status(bid.id, BidStatus.ACCEPTED)
            tx.update_project_status(project.id, ProjectStatus.IN_PROGRESS)
            effects.notify(
                tx,
                contract.freelancer_id,
                NotificationType.CONTRACT_CREATED,
                "New contract",
                f'You have a new contract proposal for "{contract.title}".',
                reference_id=contract.id,
                reference_type="contract",
                amount=contract.amount,
            )

        logger.info(
            f"Created contract {contract.id} for bid {bid_id} "
            f"({len(contract.milestones)} milestones, {contract.amount})"
        )
        log_transition(
            "contract", contract.id, None, ContractStage.PROPOSAL.value, principal.id, contract.id
        )
        return contract

    # =========================================================================
    # Terms
    # =========================================================================

    def _load(self, tx: LedgerTransaction, contract_id: str) -> Contract:
        contract = tx.get_contract(contract_id)
        if not contract:
            raise NotFoundError(f"Contract {contract_id} not found")
        return contract

    def update_terms(self, principal: Principal, contract_id: str, command: SetTerms) -> Contract:
        """Replace the terms (and optionally the title) of a proposal.

        Raises:
            NotFoundError: If the contract does not exist.
            ForbiddenError: If the caller is not the contract's client.
            ConflictError: If ``command.expected_stage`` no longer matches.
            InvalidStateError: If the contract has left PROPOSAL.
        """
        with self.ledger.transaction() as tx:
            contract = self._load(tx, contract_id)
            authorize(can_view(principal, contract), "edit these terms")
            if command.expected_stage is not None and contract.stage != command.expected_stage:
                raise ConflictError(
                    f"Contract is {contract.stage.value}, expected {command.expected_stage.value}"
                )
            if contract.stage != ContractStage.PROPOSAL:
                raise InvalidStateError(
                    f"Terms can only change in PROPOSAL (contract is {contract.stage.value})"
                )
            authorize(can_transition(principal, contract, command), "edit these terms")

            fields = {"description": command.terms}
            if command.title is not None:
                fields["title"] = command.title.strip()
            tx.update_contract(contract.id, ContractStage.PROPOSAL, **fields)
            for user_id in effects.counterparty(contract, principal.id):
                effects.notify(
                    tx,
                    user_id,
                    NotificationType.CONTRACT_UPDATED,
                    "Contract terms updated",
                    f'The terms of "{fields.get("title", contract.title)}" were updated.',
                    reference_id=contract.id,
                    reference_type="contract",
                )
            updated = tx.get_contract(contract.id)

        logger.info(f"Updated terms of contract {contract_id}")
        return updated

    # =========================================================================
    # Stage transitions
    # =========================================================================

    def advance_stage(
        self, principal: Principal, contract_id: str, command: AdvanceStage
    ) -> Contract:
        """Move a contract to ``command.target``.

        The edge must be in the transition table, the caller must be allowed
        to request it, and the edge's preconditions must hold. All checks run
        before the first write.

        Raises:
            NotFoundError: If the contract does not exist.
            ForbiddenError: If the caller is not a party, or may not request the edge.
            ConflictError: If ``command.expected_stage`` no longer matches, or the
                stage changed concurrently.
            InvalidTransitionError: If the edge is not in the table.
            InvalidStateError: If a precondition fails (unpaid milestones,
                funds still held in escrow).
        """
        target = command.target
        with self.ledger.transaction() as tx:
            contract = self._load(tx, contract_id)
            current = contract.stage
            authorize(can_view(principal, contract), f"move this contract to {target.value}")
            if command.expected_stage is not None and current != command.expected_stage:
                raise ConflictError(
                    f"Contract is {current.value}, expected {command.expected_stage.value}"
                )

            rule = contract_rule(current, target)
            if rule is None:
                allowed = ", ".join(sorted(s.value for s in contract_targets(current))) or "none"
                raise InvalidTransitionError(
                    f"Cannot move contract from {current.value} to {target.value} "
                    f"(allowed: {allowed})"
                )
            authorize(
                can_transition(principal, contract, command),
                f"move this contract to {target.value}",
            )

            if rule.has(Effect.REQUIRE_ALL_PAID):
                if not effects.all_milestones_paid(tx, contract.id):
                    raise InvalidStateError("All milestones must be paid before completion")
            if rule.has(Effect.REQUIRE_NO_HELD_FUNDS):
                held = [
                    p
                    for p in tx.list_payments(contract.id)
                    if p.status == PaymentStatus.PROCESSING
                ]
                if held:
                    raise InvalidStateError(
                        f"{len(held)} payment(s) are held in escrow; "
                        "refund them instead of cancelling"
                    )

            effects.apply_transition(tx, contract, target, rule, principal.id, command.reason)
            updated = tx.get_contract(contract.id)

        logger.info(f"Contract {contract_id}: {current.value} -> {target.value} by {principal.id}")
        log_transition(
            "contract", contract_id, current.value, target.value, principal.id, contract_id
        )
        return updated

    # =========================================================================
    # Reads
    # =========================================================================

    def get_contract(self, principal: Principal, contract_id: str) -> Contract:
        contract = self.ledger.get_contract(contract_id)
        if not contract:
            raise NotFoundError(f"Contract {contract_id} not found")
        authorize(can_view(principal, contract), "view this contract")
        return contract

    def list_contracts(
        self,
        principal: Principal,
        stage: Optional[ContractStage] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Contract]:
        """Contracts the principal is party to; admins see all."""
        user_id = None if principal.is_admin else principal.id
        return self.ledger.list_contracts(user_id=user_id, stage=stage, limit=limit, offset=offset)

    def contract_history(self, principal: Principal, contract_id: str) -> List[ContractTransition]:
        """Stage changes of a contract, oldest first."""
        self.get_contract(principal, contract_id)
        return self.ledger.get_transitions(contract_id)
