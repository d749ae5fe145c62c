"""Escrow gateway client.

The gateway holds client funds, releases them to the freelancer and refunds
them. ``StripeEscrowGateway`` maps the operations onto Stripe:

- hold: a PaymentIntent for the milestone amount
- release: a Transfer to the freelancer's connected account, sourced from the
  intent's charge
- refund: a Refund of the intent (or cancelling it if it never succeeded)

Every call carries an idempotency key, so a retry after a timeout or a crash
never moves money twice. The gateway has no access to the ledger.
"""

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Callable, Dict, Optional, Protocol

import stripe

from gigledger.config import LedgerConfig
from gigledger.errors import GatewayRejectedError, GatewayUnavailableError

logger = logging.getLogger(__name__)

# Errors worth retrying: the request may not have reached Stripe, or Stripe
# asked us to back off
TRANSIENT_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


class HoldStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    PENDING = "PENDING"
    FAILED = "FAILED"


@dataclass(frozen=True)
class Hold:
    """An escrow hold opened at the processor."""

    hold_id: str
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


class EscrowGateway(Protocol):
    """Protocol for payment processors that can hold funds in escrow."""

    def create_hold(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> Hold:
        """Open a hold for ``amount``. Returns the hold reference."""
        ...

    def verify_hold(self, hold_id: str) -> HoldStatus:
        """Report whether the held funds have been secured."""
        ...

    def transfer(
        self,
        hold_id: str,
        payee_account_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> str:
        """Release held funds to the payee. Returns the transfer id."""
        ...

    def refund(self, hold_id: str, idempotency_key: str) -> str:
        """Return held funds to the payer. Returns the refund id."""
        ...


def to_minor_units(amount: Decimal) -> int:
    """Convert a two-place amount to cents."""
    return int((Decimal(amount) * 100).to_integral_value())


class StripeEscrowGateway:
    """Escrow gateway backed by Stripe PaymentIntents and Connect transfers."""

    def __init__(
        self,
        api_key: str,
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if not api_key:
            raise ValueError("A Stripe secret key is required")
        self.api_key = api_key
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

        # Retries are ours, so each attempt is a single bounded request
        stripe.max_network_retries = 0
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)

    @classmethod
    def from_config(cls, config: LedgerConfig) -> "StripeEscrowGateway":
        return cls(
            api_key=config.stripe_secret_key,
            timeout_seconds=config.gateway_timeout_seconds,
            max_retries=config.gateway_max_retries,
            backoff_seconds=config.gateway_backoff_seconds,
        )

    def _call(self, operation: str, fn: Callable, **kwargs):
        """Run a Stripe call with bounded retries on transient errors."""
        attempt = 0
        while True:
            try:
                return fn(api_key=self.api_key, **kwargs)
            except TRANSIENT_ERRORS as e:
                if attempt >= self.max_retries:
                    logger.error(f"Stripe {operation} failed after {attempt + 1} attempts: {e}")
                    raise GatewayUnavailableError(
                        f"Payment processor unavailable during {operation}"
                    ) from e
                delay = self.backoff_seconds * (2**attempt)
                logger.warning(
                    f"Stripe {operation} attempt {attempt + 1} failed ({type(e).__name__}), "
                    f"retrying in {delay:.2f}s"
                )
                self._sleep(delay)
                attempt += 1
            except stripe.StripeError as e:
                logger.error(f"Stripe rejected {operation}: {e}")
                raise GatewayRejectedError(
                    f"Payment processor rejected {operation}: "
                    f"{getattr(e, 'user_message', None) or e}"
                ) from e

    def create_hold(
        self,
        amount: Decimal,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> Hold:
        intent = self._call(
            "create_hold",
            stripe.PaymentIntent.create,
            amount=to_minor_units(amount),
            currency=currency,
            metadata=metadata,
            automatic_payment_methods={"enabled": True},
            idempotency_key=idempotency_key,
        )
        logger.info(f"Opened hold {intent.id} for {amount} {currency}")
        return Hold(hold_id=intent.id, client_secret=intent.client_secret, metadata=dict(metadata))

    def verify_hold(self, hold_id: str) -> HoldStatus:
        intent = self._call("verify_hold", stripe.PaymentIntent.retrieve, id=hold_id)
        if intent.status == "succeeded":
            return HoldStatus.SUCCEEDED
        if intent.status == "canceled":
            return HoldStatus.FAILED
        if intent.status == "requires_payment_method" and getattr(
            intent, "last_payment_error", None
        ):
            return HoldStatus.FAILED
        return HoldStatus.PENDING

    def transfer(
        self,
        hold_id: str,
        payee_account_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
    ) -> str:
        intent = self._call("transfer", stripe.PaymentIntent.retrieve, id=hold_id)
        transfer = self._call(
            "transfer",
            stripe.Transfer.create,
            amount=to_minor_units(amount),
            currency=currency,
            destination=payee_account_id,
            source_transaction=getattr(intent, "latest_charge", None),
            transfer_group=hold_id,
            metadata={"hold_id": hold_id},
            idempotency_key=idempotency_key,
        )
        logger.info(f"Transferred {amount} {currency} from hold {hold_id} as {transfer.id}")
        return transfer.id

    def refund(self, hold_id: str, idempotency_key: str) -> str:
        intent = self._call("refund", stripe.PaymentIntent.retrieve, id=hold_id)
        if intent.status != "succeeded":
            # Nothing was captured; cancelling releases the authorization
            if intent.status != "canceled":
                self._call(
                    "refund",
                    stripe.PaymentIntent.cancel,
                    intent=hold_id,
                    idempotency_key=idempotency_key,
                )
            logger.info(f"Cancelled uncaptured hold {hold_id}")
            return hold_id
        refund = self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=hold_id,
            idempotency_key=idempotency_key,
        )
        logger.info(f"Refunded hold {hold_id} as {refund.id}")
        return refund.id
