"""Milestone service.

Progress updates are the only way a milestone changes status. Each update
appends to the milestone's trail; when it carries a new status the edge is
validated against the milestone table, and moving to PAYMENT_REQUESTED
creates the milestone's Payment.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional

from gigledger.config import LedgerConfig
from gigledger.contracts import effects
from gigledger.contracts.commands import EditMilestone, NarrateProgress, command_for_status
from gigledger.contracts.models import (
    EXECUTION_STAGES,
    Contract,
    ContractStage,
    Milestone,
    MilestoneStatus,
    NotificationType,
    ProgressUpdate,
)
from gigledger.contracts.policy import DenyReason, authorize, can_transition, can_view
from gigledger.contracts.transitions import Effect, milestone_rule
from gigledger.errors import (
    ForbiddenError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from gigledger.ledger.base import LedgerStore, LedgerTransaction, utc_now
from gigledger.logging_config import log_transition
from gigledger.payments.models import Payment, PaymentStatus
from gigledger.principals import Principal

logger = logging.getLogger(__name__)


@dataclass
class ProgressRecord:
    """Result of recording progress."""

    update: ProgressUpdate
    milestone: Milestone
    payment: Optional[Payment] = None


class MilestoneService:
    """Service for milestone progress and edits."""

    def __init__(self, ledger: LedgerStore, config: Optional[LedgerConfig] = None):
        self.ledger = ledger
        self.config = config or LedgerConfig()

    def _load(self, tx: LedgerTransaction, milestone_id: str):
        milestone = tx.get_milestone(milestone_id)
        if not milestone:
            raise NotFoundError(f"Milestone {milestone_id} not found")
        contract = tx.get_contract(milestone.contract_id, with_milestones=False)
        return milestone, contract

    # === Progress ===

    def record_progress(
        self,
        principal: Principal,
        milestone_id: str,
        description: str,
        new_status: Optional[MilestoneStatus] = None,
    ) -> ProgressRecord:
        """Append a progress update, optionally moving the milestone.

        Args:
            principal: Caller.
            milestone_id: Milestone to update.
            description: What happened.
            new_status: Target status; None (or the current status) only narrates.

        Returns:
            The update, the milestone as stored afterwards, and the payment
            created when the status moved to PAYMENT_REQUESTED.

        Raises:
            ValidationError: If the description is empty or the status unknown.
            NotFoundError: If the milestone does not exist.
            ForbiddenError: If the caller is not a party, or may not request the
                edge (``SYSTEM_ONLY`` for PAID and CANCELLED, which only the
                engine applies).
            InvalidTransitionError: If the milestone table has no such edge.
            InvalidStateError: If the contract is not in PAYMENT or REVIEW.
        """
        if not description or not description.strip():
            raise ValidationError("Progress description cannot be empty")
        if new_status is not None:
            try:
                new_status = MilestoneStatus(new_status)
            except ValueError:
                raise ValidationError(f"Invalid milestone status: {new_status}") from None

        payment = None
        with self.ledger.transaction() as tx:
            milestone, contract = self._load(tx, milestone_id)
            current = milestone.status
            authorize(can_view(principal, contract), "update this milestone")

            if new_status is None or new_status == current:
                authorize(
                    can_transition(principal, milestone, NarrateProgress(), contract=contract),
                    "post progress on this milestone",
                )
                target = current
            else:
                target = new_status
                rule = milestone_rule(current, target)
                if rule is None:
                    raise InvalidTransitionError(
                        f"Cannot move milestone from {current.value} to {target.value}"
                    )
                if rule.system_only:
                    raise ForbiddenError(
                        f"Milestones only become {target.value} through escrow settlement",
                        reason=DenyReason.SYSTEM_ONLY.value,
                    )
                if contract.stage not in EXECUTION_STAGES:
                    raise InvalidStateError(
                        f"Milestone work needs the contract in PAYMENT or REVIEW "
                        f"(contract is {contract.stage.value})"
                    )
                command = command_for_status(target)
                authorize(
                    can_transition(principal, milestone, command, contract=contract),
                    f"move this milestone to {target.value}",
                )

                tx.update_milestone(milestone.id, current, status=target)
                if rule.has(Effect.SET_START_DATE) and contract.start_date is None:
                    tx.update_contract(contract.id, contract.stage, start_date=utc_now())
                if rule.has(Effect.CREATE_PAYMENT):
                    payment = self._request_payment(tx, contract, milestone)
                else:
                    self._notify_status(tx, contract, milestone, target, principal.id)

            update = ProgressUpdate(
                id=str(uuid.uuid4()),
                milestone_id=milestone.id,
                author_id=principal.id,
                description=description.strip(),
                status=target,
                created_at=utc_now(),
            )
            tx.insert_progress(update)
            stored = tx.get_milestone(milestone.id)

        if target != current:
            logger.info(f"Milestone {milestone_id}: {current.value} -> {target.value}")
            log_transition(
                "milestone", milestone_id, current.value, target.value, principal.id, contract.id
            )
        return ProgressRecord(update=update, milestone=stored, payment=payment)

    def _request_payment(
        self, tx: LedgerTransaction, contract: Contract, milestone: Milestone
    ) -> Payment:
        payment = Payment(
            id=str(uuid.uuid4()),
            contract_id=contract.id,
            milestone_id=milestone.id,
            client_id=contract.client_id,
            freelancer_id=contract.freelancer_id,
            amount=milestone.amount,
            status=PaymentStatus.PENDING,
        )
        tx.insert_payment(payment)
        effects.notify(
            tx,
            contract.client_id,
            NotificationType.PAYMENT_REQUESTED,
            "Payment requested",
            f'Payment of ${milestone.amount} requested for milestone "{milestone.title}".',
            reference_id=milestone.id,
            reference_type="milestone",
            amount=milestone.amount,
        )
        return tx.get_payment(payment.id)

    def _notify_status(
        self,
        tx: LedgerTransaction,
        contract: Contract,
        milestone: Milestone,
        status: MilestoneStatus,
        actor_id: str,
    ) -> None:
        if status == MilestoneStatus.COMPLETED:
            kind, title = NotificationType.MILESTONE_COMPLETED, "Milestone completed"
        else:
            kind, title = NotificationType.MILESTONE_UPDATED, "Milestone updated"
        for user_id in effects.counterparty(contract, actor_id):
            effects.notify(
                tx,
                user_id,
                kind,
                title,
                f'Milestone "{milestone.title}" is now {status.value}.',
                reference_id=milestone.id,
                reference_type="milestone",
            )

    def list_progress(self, principal: Principal, milestone_id: str) -> List[ProgressUpdate]:
        """Progress trail of a milestone, oldest first."""
        milestone = self.ledger.get_milestone(milestone_id)
        if not milestone:
            raise NotFoundError(f"Milestone {milestone_id} not found")
        contract = self.ledger.get_contract(milestone.contract_id)
        authorize(can_view(principal, contract), "view this milestone")
        return self.ledger.list_progress(milestone_id)

    # === Edits ===

    def update_details(
        self, principal: Principal, milestone_id: str, command: EditMilestone
    ) -> Milestone:
        """Edit a pending milestone.

        The amount can only change while the contract is a proposal; the
        contract amount moves by the same delta so it keeps matching the sum of
        its milestones.

        Raises:
            NotFoundError: If the milestone does not exist.
            ForbiddenError: If the caller is not the contract's client.
            InvalidStateError: If the milestone is not PENDING, or the amount
                changes after the contract left PROPOSAL.
        """
        with self.ledger.transaction() as tx:
            milestone, contract = self._load(tx, milestone_id)
            authorize(can_view(principal, contract), "edit this milestone")
            if milestone.status != MilestoneStatus.PENDING:
                raise InvalidStateError(
                    f"Only PENDING milestones can be edited (milestone is {milestone.status.value})"
                )
            if contract.is_terminal:
                raise InvalidStateError(f"Contract is {contract.stage.value}")
            authorize(
                can_transition(principal, milestone, command, contract=contract),
                "edit this milestone",
            )

            fields: Dict[str, Any] = {}
            if command.title is not None:
                fields["title"] = command.title.strip()
            if command.description is not None:
                fields["description"] = command.description
            if command.due_date is not None:
                fields["due_date"] = command.due_date
            elif command.clear_due_date:
                fields["due_date"] = None

            if command.amount is not None and command.amount != milestone.amount:
                if contract.stage != ContractStage.PROPOSAL:
                    raise InvalidStateError(
                        "Milestone amounts are fixed once the contract leaves PROPOSAL"
                    )
                delta: Decimal = command.amount - milestone.amount
                fields["amount"] = command.amount
                tx.update_contract(
                    contract.id, ContractStage.PROPOSAL, amount=contract.amount + delta
                )

            if fields:
                tx.update_milestone(milestone.id, MilestoneStatus.PENDING, **fields)
            for user_id in effects.counterparty(contract, principal.id):
                effects.notify(
                    tx,
                    user_id,
                    NotificationType.MILESTONE_UPDATED,
                    "Milestone updated",
                    f'Milestone "{fields.get("title", milestone.title)}" was edited.',
                    reference_id=milestone.id,
                    reference_type="milestone",
                )
            updated = tx.get_milestone(milestone.id)

        logger.info(f"Updated milestone {milestone_id}: {sorted(fields)}")
        return updated
