"""Payment models.

A Payment is created when a milestone enters PAYMENT_REQUESTED and tracks the
escrow hold opened for it, the transfer that releases it, and any refund.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from gigledger.contracts.models import as_money


class PaymentStatus(str, Enum):
    """Payment lifecycle status."""

    PENDING = "PENDING"  # Requested by the freelancer, no hold yet
    PROCESSING = "PROCESSING"  # Hold opened, funds held or being confirmed
    COMPLETED = "COMPLETED"  # Funds transferred to the freelancer
    FAILED = "FAILED"  # Hold failed or request withdrawn; funding may be retried
    REFUNDED = "REFUNDED"  # Hold returned to the client


VALID_PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PROCESSING, PaymentStatus.FAILED},
    PaymentStatus.PROCESSING: {
        PaymentStatus.COMPLETED,
        PaymentStatus.FAILED,
        PaymentStatus.REFUNDED,
    },
    # A late success on a failed hold of a closed contract is refunded
    PaymentStatus.FAILED: {PaymentStatus.PROCESSING, PaymentStatus.REFUNDED},
    PaymentStatus.COMPLETED: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}

# Statuses a client can fund from
FUNDABLE_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.FAILED})


def can_transition_payment(from_status: PaymentStatus, to_status: PaymentStatus) -> bool:
    return PaymentStatus(to_status) in VALID_PAYMENT_TRANSITIONS[PaymentStatus(from_status)]


@dataclass
class Payment:
    id: str
    contract_id: str
    milestone_id: str
    client_id: str
    freelancer_id: str
    amount: Decimal
    status: PaymentStatus = PaymentStatus.PENDING
    payment_intent_id: Optional[str] = None
    transfer_id: Optional[str] = None
    refund_id: Optional[str] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = as_money(self.amount)
        if self.amount <= 0:
            raise ValueError("Payment amount must be positive")
        try:
            self.status = PaymentStatus(self.status)
        except ValueError:
            raise ValueError(f"Invalid status: {self.status}") from None

    @property
    def holds_funds(self) -> bool:
        """True while a hold exists that has been neither released nor refunded."""
        return self.status == PaymentStatus.PROCESSING and self.payment_intent_id is not None
