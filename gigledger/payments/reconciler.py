"""Escrow reconciler.

Applies asynchronous gateway confirmations to the ledger. Events may arrive
late, twice, or out of order; every handler is idempotent:

- a success for an already settled payment is a no-op, and the transfer it
  triggers reuses the payment's idempotency key, so it never pays twice
- a success for a closed contract is refunded; for one that is not yet
  executing the funds stay held
- an event that matches no payment is logged and acknowledged
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from gigledger.config import LedgerConfig
from gigledger.contracts import effects
from gigledger.contracts.models import (
    EXECUTION_STAGES,
    Contract,
    MilestoneStatus,
    NotificationType,
)
from gigledger.errors import ConflictError, OrphanEventError
from gigledger.ledger.base import LedgerStore, LedgerTransaction
from gigledger.logging_config import log_lifecycle_event, log_payment, log_transition
from gigledger.payments.escrow import transfer_key, void_key
from gigledger.payments.events import HoldEvent, HoldOutcome
from gigledger.payments.gateway import EscrowGateway
from gigledger.payments.models import Payment, PaymentStatus
from gigledger.principals import SYSTEM_ACTOR

logger = logging.getLogger(__name__)

SETTLED_STATUSES = frozenset({PaymentStatus.COMPLETED, PaymentStatus.REFUNDED})


class ReconcileAction(str, Enum):
    SETTLED = "SETTLED"  # Transfer made, milestone paid
    ALREADY_SETTLED = "ALREADY_SETTLED"  # Replay, nothing to do
    DEFERRED = "DEFERRED"  # Funds stay held until the contract can take them
    FAILED = "FAILED"  # Hold failed, payment can be funded again
    REFUNDED = "REFUNDED"  # Hold succeeded after the contract closed; returned
    IGNORED = "IGNORED"  # Event does not change anything


@dataclass
class ReconcileResult:
    action: ReconcileAction
    payment_id: Optional[str] = None
    contract_completed: bool = False


class EscrowReconciler:
    """Applies gateway hold confirmations to payments, milestones and contracts."""

    def __init__(
        self,
        ledger: LedgerStore,
        gateway: EscrowGateway,
        config: Optional[LedgerConfig] = None,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.config = config or LedgerConfig()

    def _find_payment(
        self, tx: LedgerTransaction, hold_id: str, payment_id: Optional[str]
    ) -> Payment:
        """Find the payment a hold belongs to.

        Falls back to the payment id carried in the hold metadata, which covers a
        hold whose id was never recorded (crash between opening and writing).
        """
        payment = tx.get_payment_by_intent(hold_id)
        if payment:
            return payment
        if payment_id:
            payment = tx.get_payment(payment_id)
            if payment and payment.payment_intent_id in (None, hold_id):
                return payment
            if payment:
                logger.warning(
                    f"Hold {hold_id} names payment {payment_id}, which now uses hold "
                    f"{payment.payment_intent_id}"
                )
        logger.warning(f"Orphan gateway event for hold {hold_id} (payment {payment_id or '-'})")
        log_lifecycle_event("orphan_event", f"hold={hold_id} | payment={payment_id or '-'}")
        raise OrphanEventError(f"No payment matches hold {hold_id}")

    def _record_hold(
        self, tx: LedgerTransaction, payment: Payment, contract: Contract, hold_id: str
    ) -> Payment:
        if payment.payment_intent_id == hold_id and payment.status == PaymentStatus.PROCESSING:
            return payment
        # Hold id never recorded, or a failure was delivered before this success
        tx.update_payment(
            payment.id,
            payment.status,
            status=PaymentStatus.PROCESSING,
            payment_intent_id=hold_id,
        )
        tx.update_contract(contract.id, contract.stage, payment_intent_id=hold_id)
        return tx.get_payment(payment.id)

    def _refund_late_hold(
        self, payment: Payment, contract: Contract, hold_id: str
    ) -> ReconcileResult:
        logger.warning(
            f"Hold {hold_id} succeeded but contract {contract.id} is "
            f"{contract.stage.value}; refunding it"
        )
        refund_id = self.gateway.refund(hold_id, idempotency_key=void_key(payment, hold_id))
        log_payment("refund", payment.id, payment.amount, refund_id, contract.id)

        with self.ledger.transaction() as tx:
            current = tx.get_payment(payment.id)
            if current.status in SETTLED_STATUSES:
                return ReconcileResult(ReconcileAction.ALREADY_SETTLED, payment.id)
            tx.update_payment(
                current.id,
                current.status,
                status=PaymentStatus.REFUNDED,
                payment_intent_id=hold_id,
                refund_id=refund_id,
            )
            effects.notify(
                tx,
                current.client_id,
                NotificationType.PAYMENT_REFUNDED,
                "Payment refunded",
                f"${current.amount} received after the contract closed has been refunded.",
                reference_id=current.milestone_id,
                reference_type="milestone",
                amount=current.amount,
            )

        logger.info(f"Refunded late hold {hold_id} of payment {payment.id} as {refund_id}")
        return ReconcileResult(ReconcileAction.REFUNDED, payment.id)

    def on_hold_succeeded(self, hold_id: str, payment_id: Optional[str] = None) -> ReconcileResult:
        """Settle the payment whose hold the gateway confirmed.

        A hold that succeeds after its contract closed (cancelled or completed)
        is refunded to the client instead.

        Raises:
            OrphanEventError: If no payment matches the hold.
            GatewayUnavailableError, GatewayRejectedError: If the transfer or
                refund fails; the ledger is untouched and the event can be
                redelivered.
        """
        with self.ledger.transaction() as tx:
            payment = self._find_payment(tx, hold_id, payment_id)
            if payment.status in SETTLED_STATUSES:
                logger.info(
                    f"Hold {hold_id} already settled ({payment.status.value}); ignoring replay"
                )
                return ReconcileResult(ReconcileAction.ALREADY_SETTLED, payment.id)

            contract = tx.get_contract(payment.contract_id, with_milestones=False)
            if not contract.is_terminal:
                payment = self._record_hold(tx, payment, contract, hold_id)
                if contract.stage not in EXECUTION_STAGES:
                    logger.warning(
                        f"Hold {hold_id} succeeded but contract {contract.id} is "
                        f"{contract.stage.value}; funds stay held"
                    )
                    return ReconcileResult(ReconcileAction.DEFERRED, payment.id)
                payee = tx.get_payout_account(contract.freelancer_id)
                if not payee:
                    logger.warning(
                        f"Freelancer {contract.freelancer_id} has no payout account; deferring"
                    )
                    return ReconcileResult(ReconcileAction.DEFERRED, payment.id)

        if contract.is_terminal:
            return self._refund_late_hold(payment, contract, hold_id)

        transfer_id = self.gateway.transfer(
            hold_id=hold_id,
            payee_account_id=payee,
            amount=payment.amount,
            currency=self.config.currency,
            idempotency_key=transfer_key(payment),
        )
        log_payment("transfer", payment.id, payment.amount, transfer_id, contract.id)

        with self.ledger.transaction() as tx:
            current = tx.get_payment(payment.id)
            if current.status in SETTLED_STATUSES:
                return ReconcileResult(ReconcileAction.ALREADY_SETTLED, payment.id)
            if current.status != PaymentStatus.PROCESSING:
                raise ConflictError(f"Payment became {current.status.value} during settlement")
            effects.settle_payment(tx, current, transfer_id)
            completed = effects.complete_if_settled(tx, contract.id, SYSTEM_ACTOR)

        logger.info(f"Settled payment {payment.id} from hold {hold_id} as transfer {transfer_id}")
        log_transition(
            "milestone",
            payment.milestone_id,
            MilestoneStatus.PAYMENT_REQUESTED.value,
            MilestoneStatus.PAID.value,
            SYSTEM_ACTOR,
            contract.id,
        )
        return ReconcileResult(ReconcileAction.SETTLED, payment.id, contract_completed=completed)

    def on_hold_failed(self, hold_id: str, payment_id: Optional[str] = None) -> ReconcileResult:
        """Mark a processing payment failed so the client can fund it again.

        Raises:
            OrphanEventError: If no payment matches the hold.
        """
        with self.ledger.transaction() as tx:
            payment = self._find_payment(tx, hold_id, payment_id)
            if payment.status != PaymentStatus.PROCESSING or payment.payment_intent_id != hold_id:
                logger.info(f"Hold {hold_id} failure ignored; payment is {payment.status.value}")
                return ReconcileResult(ReconcileAction.IGNORED, payment.id)
            tx.update_payment(payment.id, PaymentStatus.PROCESSING, status=PaymentStatus.FAILED)
            effects.notify(
                tx,
                payment.client_id,
                NotificationType.PAYMENT_FAILED,
                "Payment failed",
                f"The escrow payment of ${payment.amount} could not be completed.",
                reference_id=payment.milestone_id,
                reference_type="milestone",
                amount=payment.amount,
            )

        logger.info(f"Payment {payment.id} failed (hold {hold_id})")
        log_payment("hold_failed", payment.id, payment.amount, hold_id, payment.contract_id)
        return ReconcileResult(ReconcileAction.FAILED, payment.id)

    def handle(self, event: HoldEvent) -> ReconcileResult:
        """Dispatch a parsed gateway event."""
        if event.outcome == HoldOutcome.SUCCEEDED:
            return self.on_hold_succeeded(event.hold_id, event.payment_id)
        return self.on_hold_failed(event.hold_id, event.payment_id)
