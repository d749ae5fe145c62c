"""Payments subsystem for gigledger.

Escrow holds client funds per milestone payment until they are released to
the freelancer or refunded.

Modules:
- models.py: Payment and its status table
- gateway.py: EscrowGateway protocol and the Stripe implementation
- events.py: Webhook verification and parsing
- escrow.py: Funding, release and refund orchestration
- reconciler.py: Applies asynchronous hold confirmations
"""

from gigledger.payments.events import HoldEvent, HoldOutcome, parse_gateway_event
from gigledger.payments.gateway import EscrowGateway, Hold, HoldStatus, StripeEscrowGateway
from gigledger.payments.models import VALID_PAYMENT_TRANSITIONS, Payment, PaymentStatus

__all__ = [
    "EscrowGateway",
    "Hold",
    "HoldEvent",
    "HoldOutcome",
    "HoldStatus",
    "Payment",
    "PaymentStatus",
    "StripeEscrowGateway",
    "VALID_PAYMENT_TRANSITIONS",
    "parse_gateway_event",
]
