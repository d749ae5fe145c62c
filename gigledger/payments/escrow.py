"""Escrow service.

Moves milestone money through the gateway:
- fund_milestone: open a hold for a requested payment
- release_escrow: transfer a secured hold to the freelancer
- refund_escrow: return every open hold to the client and cancel the contract
- void_stale_holds: cancel failed holds a payer could still confirm after
  the contract closed

Gateway calls always happen between two ledger transactions: the first
validates and snapshots, the gateway call runs with no lock held, and the
second re-reads and writes with compare-and-set. A gateway failure therefore
leaves the ledger untouched, and idempotency keys derived from the payment id
make a retry safe.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from gigledger.config import LedgerConfig
from gigledger.contracts import effects
from gigledger.contracts.commands import FundMilestone, RefundEscrow, ReleaseEscrow
from gigledger.contracts.models import (
    EXECUTION_STAGES,
    Contract,
    Milestone,
    MilestoneStatus,
    NotificationType,
)
from gigledger.contracts.policy import authorize, can_transition, can_view
from gigledger.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from gigledger.ledger.base import LedgerStore, LedgerTransaction
from gigledger.logging_config import log_payment, log_transition
from gigledger.payments.gateway import EscrowGateway, Hold, HoldStatus
from gigledger.payments.models import FUNDABLE_STATUSES, Payment, PaymentStatus
from gigledger.principals import Principal, Role

logger = logging.getLogger(__name__)


def hold_key(payment: Payment) -> str:
    """Idempotency key for opening a hold.

    A retry after a failed hold must open a new one, so the failed hold's id is
    part of the key.
    """
    if payment.payment_intent_id:
        return f"hold:{payment.id}:{payment.payment_intent_id}"
    return f"hold:{payment.id}"


def transfer_key(payment: Payment) -> str:
    return f"transfer:{payment.id}"


def refund_key(payment: Payment) -> str:
    return f"refund:{payment.id}"


def void_key(payment: Payment, hold_id: str) -> str:
    """Idempotency key for returning a hold of a contract that can no longer take it."""
    return f"void:{payment.id}:{hold_id}"


def _is_stale_hold(payment: Payment) -> bool:
    # A failed hold stays confirmable by the payer until it is cancelled
    return payment.status == PaymentStatus.FAILED and payment.payment_intent_id is not None


@dataclass
class FundingResult:
    payment: Payment
    hold: Hold


@dataclass
class ReleaseResult:
    payment: Payment
    contract_completed: bool = False


@dataclass
class PaymentSummary:
    """Totals of a user's payments, by status."""

    user_id: str
    role: Role
    totals: Dict[PaymentStatus, Decimal] = field(default_factory=dict)
    payments: List[Payment] = field(default_factory=list)

    @property
    def total_paid(self) -> Decimal:
        return self.totals.get(PaymentStatus.COMPLETED, Decimal("0.00"))

    @property
    def total_in_escrow(self) -> Decimal:
        return self.totals.get(PaymentStatus.PROCESSING, Decimal("0.00"))

    @property
    def total_pending(self) -> Decimal:
        return self.totals.get(PaymentStatus.PENDING, Decimal("0.00"))

    @property
    def total_refunded(self) -> Decimal:
        return self.totals.get(PaymentStatus.REFUNDED, Decimal("0.00"))


class EscrowService:
    """Service for escrow funding, release and refund."""

    def __init__(
        self,
        ledger: LedgerStore,
        gateway: EscrowGateway,
        config: Optional[LedgerConfig] = None,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.config = config or LedgerConfig()

    def _load_milestone(
        self, tx: LedgerTransaction, contract_id: str, milestone_id: str
    ) -> Tuple[Contract, Milestone, Optional[Payment]]:
        contract = tx.get_contract(contract_id, with_milestones=False)
        if not contract:
            raise NotFoundError(f"Contract {contract_id} not found")
        milestone = tx.get_milestone(milestone_id)
        if not milestone or milestone.contract_id != contract.id:
            raise NotFoundError(f"Milestone {milestone_id} not found in contract {contract_id}")
        return contract, milestone, tx.get_payment_for_milestone(milestone.id)

    # =========================================================================
    # Funding
    # =========================================================================

    def fund_milestone(
        self, principal: Principal, contract_id: str, milestone_id: str
    ) -> FundingResult:
        """Open an escrow hold for a milestone's requested payment.

        Returns the hold (with the client secret the payer confirms it with)
        and the payment, now PROCESSING.

        Raises:
            NotFoundError: If the contract or milestone does not exist.
            InvalidStateError: If the contract is not in PAYMENT/REVIEW, no
                payment was requested, or the payment is already funded.
            ForbiddenError: If the caller is not the contract's client.
            GatewayUnavailableError, GatewayRejectedError: From the gateway.
        """
        with self.ledger.transaction() as tx:
            contract, milestone, payment = self._load_milestone(tx, contract_id, milestone_id)
            authorize(can_view(principal, contract), "fund this milestone")
            if contract.stage not in EXECUTION_STAGES:
                raise InvalidStateError(
                    "Milestones can only be funded in PAYMENT or REVIEW "
                    f"(contract is {contract.stage.value})"
                )
            if milestone.status != MilestoneStatus.PAYMENT_REQUESTED or payment is None:
                raise InvalidStateError("No payment has been requested for this milestone")
            if payment.status not in FUNDABLE_STATUSES:
                raise InvalidStateError(f"Payment is already {payment.status.value}")
            authorize(
                can_transition(principal, contract, FundMilestone(milestone_id)),
                "fund this milestone",
            )

        hold = self.gateway.create_hold(
            amount=payment.amount,
            currency=self.config.currency,
            metadata={
                "payment_id": payment.id,
                "contract_id": contract.id,
                "milestone_id": milestone.id,
            },
            idempotency_key=hold_key(payment),
        )

        with self.ledger.transaction() as tx:
            current = tx.get_payment(payment.id)
            if (
                current.status == PaymentStatus.PROCESSING
                and current.payment_intent_id == hold.hold_id
            ):
                # Same request replayed; the idempotent hold is already recorded
                return FundingResult(payment=current, hold=hold)
            if (
                current.status != payment.status
                or current.payment_intent_id != payment.payment_intent_id
            ):
                logger.warning(
                    f"Payment {payment.id} changed while hold {hold.hold_id} was opened; "
                    "not recording it"
                )
                raise ConflictError("Payment changed while the hold was being opened")
            tx.update_payment(
                payment.id,
                payment.status,
                status=PaymentStatus.PROCESSING,
                payment_intent_id=hold.hold_id,
            )
            latest = tx.get_contract(contract.id, with_milestones=False)
            tx.update_contract(latest.id, latest.stage, payment_intent_id=hold.hold_id)
            funded = tx.get_payment(payment.id)

        logger.info(f"Funded milestone {milestone_id} with hold {hold.hold_id}")
        log_payment("hold", payment.id, payment.amount, hold.hold_id, contract.id)
        return FundingResult(payment=funded, hold=hold)

    # =========================================================================
    # Release
    # =========================================================================

    def release_escrow(
        self, principal: Principal, contract_id: str, milestone_id: str
    ) -> ReleaseResult:
        """Transfer a milestone's secured hold to the freelancer.

        Settles synchronously: payment COMPLETED, milestone PAID, and the
        contract COMPLETED if this was the last unpaid milestone of a contract
        under review. A later webhook for the same hold is a no-op.

        Raises:
            NotFoundError: If the contract or milestone does not exist.
            InvalidStateError: If the contract is not in PAYMENT/REVIEW, the
                milestone has no funded payment, the hold is not secured, or
                the freelancer has no payout account.
            ForbiddenError: If the caller is not the contract's client.
            GatewayUnavailableError, GatewayRejectedError: From the gateway.
        """
        with self.ledger.transaction() as tx:
            contract, milestone, payment = self._load_milestone(tx, contract_id, milestone_id)
            authorize(can_view(principal, contract), "release this escrow")
            if contract.stage not in EXECUTION_STAGES:
                raise InvalidStateError(
                    "Escrow can only be released in PAYMENT or REVIEW "
                    f"(contract is {contract.stage.value})"
                )
            if milestone.status != MilestoneStatus.PAYMENT_REQUESTED:
                raise InvalidStateError(
                    f"Milestone is {milestone.status.value}, not PAYMENT_REQUESTED"
                )
            if payment is None or not payment.holds_funds:
                raise InvalidStateError("No funds are held for this milestone")
            authorize(
                can_transition(principal, contract, ReleaseEscrow(milestone_id)),
                "release this escrow",
            )
            payee = tx.get_payout_account(contract.freelancer_id)
            if not payee:
                raise InvalidStateError("The freelancer has no payout account")

        status = self.gateway.verify_hold(payment.payment_intent_id)
        if status != HoldStatus.SUCCEEDED:
            raise InvalidStateError(f"Escrow hold is {status.value}, funds are not secured yet")

        transfer_id = self.gateway.transfer(
            hold_id=payment.payment_intent_id,
            payee_account_id=payee,
            amount=payment.amount,
            currency=self.config.currency,
            idempotency_key=transfer_key(payment),
        )
        log_payment("transfer", payment.id, payment.amount, transfer_id, contract.id)

        with self.ledger.transaction() as tx:
            current = tx.get_payment(payment.id)
            if current.status == PaymentStatus.COMPLETED and current.transfer_id == transfer_id:
                return ReleaseResult(payment=current)
            if current.status != PaymentStatus.PROCESSING:
                raise ConflictError(f"Payment became {current.status.value} during release")
            effects.settle_payment(tx, current, transfer_id)
            completed = effects.complete_if_settled(tx, contract.id, principal.id)
            settled = tx.get_payment(payment.id)

        logger.info(f"Released milestone {milestone_id} as transfer {transfer_id}")
        log_transition(
            "milestone",
            milestone_id,
            MilestoneStatus.PAYMENT_REQUESTED.value,
            MilestoneStatus.PAID.value,
            principal.id,
            contract.id,
        )
        return ReleaseResult(payment=settled, contract_completed=completed)

    # =========================================================================
    # Refund
    # =========================================================================

    def refund_escrow(
        self, principal: Principal, contract_id: str, reason: Optional[str] = None
    ) -> Contract:
        """Refund every open hold of a contract, void its failed holds, and cancel it.

        Raises:
            NotFoundError: If the contract does not exist.
            ForbiddenError: If the caller is not a party to the contract.
            InvalidStateError: If the contract is already COMPLETED or CANCELLED.
            ConflictError: If a payment was funded while the refunds ran.
            GatewayUnavailableError, GatewayRejectedError: From the gateway;
                refunds already made are repeated safely on retry.
        """
        with self.ledger.transaction() as tx:
            contract = tx.get_contract(contract_id, with_milestones=False)
            if not contract:
                raise NotFoundError(f"Contract {contract_id} not found")
            authorize(can_view(principal, contract), "refund this contract")
            if contract.is_terminal:
                raise InvalidStateError(f"Contract is already {contract.stage.value}")
            authorize(
                can_transition(principal, contract, RefundEscrow(reason)),
                "refund this contract",
            )
            payments = tx.list_payments(contract.id)
            held = [p for p in payments if p.holds_funds]
            stale = [p for p in payments if _is_stale_hold(p)]

        refunds: Dict[str, str] = {}
        for payment in held:
            refunds[payment.id] = self.gateway.refund(
                payment.payment_intent_id, idempotency_key=refund_key(payment)
            )
            log_payment("refund", payment.id, payment.amount, refunds[payment.id], contract.id)
        self._void_holds(contract.id, stale)

        with self.ledger.transaction() as tx:
            contract = tx.get_contract(contract_id, with_milestones=False)
            if contract.is_terminal:
                raise ConflictError(f"Contract became {contract.stage.value} during refund")
            for payment in tx.list_payments(contract.id):
                if payment.status != PaymentStatus.PROCESSING:
                    continue
                if payment.id not in refunds:
                    raise ConflictError(f"Payment {payment.id} was funded during refund")
                tx.update_payment(
                    payment.id,
                    PaymentStatus.PROCESSING,
                    status=PaymentStatus.REFUNDED,
                    refund_id=refunds[payment.id],
                )
                effects.notify(
                    tx,
                    payment.client_id,
                    NotificationType.PAYMENT_REFUNDED,
                    "Payment refunded",
                    f"${payment.amount} held in escrow has been refunded.",
                    reference_id=payment.milestone_id,
                    reference_type="milestone",
                    amount=payment.amount,
                )
            effects.cancel_contract(tx, contract, principal.id, reason or "Escrow refunded")
            cancelled = tx.get_contract(contract.id)

        logger.info(f"Refunded {len(refunds)} hold(s) and cancelled contract {contract_id}")
        log_transition(
            "contract",
            contract_id,
            contract.stage.value,
            cancelled.stage.value,
            principal.id,
            contract_id,
        )
        return cancelled

    def _void_holds(self, contract_id: str, payments: List[Payment]) -> List[str]:
        voided = []
        for payment in payments:
            result = self.gateway.refund(
                payment.payment_intent_id,
                idempotency_key=void_key(payment, payment.payment_intent_id),
            )
            log_payment("void", payment.id, payment.amount, result, contract_id)
            voided.append(payment.payment_intent_id)
        return voided

    def void_stale_holds(self, contract_id: str) -> List[str]:
        """Cancel the failed holds of a closed contract.

        A payer can still confirm a failed hold with its client secret. Voiding
        it stops money arriving for a contract that can no longer take it; a
        hold that succeeds anyway is refunded by the reconciler.

        Returns:
            The ids of the holds voided.

        Raises:
            NotFoundError: If the contract does not exist.
            InvalidStateError: If the contract is still open.
            GatewayUnavailableError, GatewayRejectedError: From the gateway.
        """
        with self.ledger.transaction() as tx:
            contract = tx.get_contract(contract_id, with_milestones=False)
            if not contract:
                raise NotFoundError(f"Contract {contract_id} not found")
            if not contract.is_terminal:
                raise InvalidStateError("Holds are only voided on a closed contract")
            stale = [p for p in tx.list_payments(contract.id) if _is_stale_hold(p)]

        voided = self._void_holds(contract_id, stale)
        if voided:
            logger.info(f"Voided {len(voided)} stale hold(s) of contract {contract_id}")
        return voided

    # =========================================================================
    # Reads
    # =========================================================================

    def payment_summary(self, principal: Principal, role: Optional[Role] = None) -> PaymentSummary:
        """Totals of the payments the principal makes (client) or receives (freelancer).

        ``role`` defaults to the principal's own role; admins must pick one.
        """
        try:
            role = Role(role) if role is not None else principal.role
        except ValueError:
            raise ValidationError(f"Invalid role: {role}") from None
        if role == Role.CLIENT:
            payments = self.ledger.list_payments(client_id=principal.id)
        elif role == Role.FREELANCER:
            payments = self.ledger.list_payments(freelancer_id=principal.id)
        else:
            payments = []
        summary = PaymentSummary(user_id=principal.id, role=role, payments=payments)
        for payment in payments:
            summary.totals[payment.status] = (
                summary.totals.get(payment.status, Decimal("0.00")) + payment.amount
            )
        return summary
