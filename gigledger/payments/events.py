"""Gateway events.

Stripe webhooks are verified with ``stripe.Webhook.construct_event`` and
reduced to a ``HoldEvent``: which hold it concerns, whether the hold
succeeded or failed, and the payment id we attached as metadata when the hold
was opened. Event types we do not act on parse to ``None``.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional, Union

import stripe

from gigledger.errors import ValidationError

logger = logging.getLogger(__name__)


class HoldOutcome(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


EVENT_OUTCOMES = {
    "payment_intent.succeeded": HoldOutcome.SUCCEEDED,
    "payment_intent.payment_failed": HoldOutcome.FAILED,
    "payment_intent.canceled": HoldOutcome.FAILED,
}


@dataclass(frozen=True)
class HoldEvent:
    event_id: Optional[str]
    hold_id: str
    outcome: HoldOutcome
    payment_id: Optional[str] = None


def parse_gateway_event(event: Mapping[str, Any]) -> Optional[HoldEvent]:
    """Reduce a decoded gateway event to a ``HoldEvent``.

    Returns None for event types the engine ignores.

    Raises:
        ValidationError: If a relevant event is missing its hold id.
    """
    event_type = event.get("type")
    outcome = EVENT_OUTCOMES.get(event_type)
    if outcome is None:
        logger.debug(f"Ignoring gateway event type {event_type}")
        return None

    obj = (event.get("data") or {}).get("object") or {}
    hold_id = obj.get("id")
    if not hold_id:
        raise ValidationError(f"Gateway event {event.get('id')} has no payment intent id")
    metadata = obj.get("metadata") or {}
    return HoldEvent(
        event_id=event.get("id"),
        hold_id=hold_id,
        outcome=outcome,
        payment_id=metadata.get("payment_id"),
    )


def verify_and_parse(
    payload: Union[bytes, str], signature: str, secret: str
) -> Optional[HoldEvent]:
    """Verify a Stripe webhook signature and parse the event.

    Raises:
        ValidationError: If the payload is malformed or the signature is invalid.
    """
    try:
        event = stripe.Webhook.construct_event(payload, signature, secret)
    except ValueError as e:
        logger.error(f"Invalid webhook payload: {e}")
        raise ValidationError("Invalid webhook payload") from e
    except stripe.SignatureVerificationError as e:
        logger.error(f"Invalid webhook signature: {e}")
        raise ValidationError("Invalid webhook signature", reason="BAD_SIGNATURE") from e
    if isinstance(event, stripe.StripeObject):
        # Stripe objects are not mappings on current library versions
        event = event.to_dict()
    return parse_gateway_event(event)
