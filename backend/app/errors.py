"""Translate engine outcomes into HTTP responses."""

from typing import TypeVar

from fastapi import HTTPException, status

from gigledger.engine import Outcome
from gigledger.errors import ErrorCode

T = TypeVar("T")

HTTP_STATUS_BY_CODE = {
    ErrorCode.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.VALIDATION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.INVALID_STATE: status.HTTP_400_BAD_REQUEST,
    ErrorCode.INVALID_TRANSITION: status.HTTP_400_BAD_REQUEST,
    ErrorCode.GATEWAY_REJECTED: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.GATEWAY_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def raise_for_outcome(outcome: Outcome[T]) -> T:
    """Return the outcome's value or raise the matching ``HTTPException``."""
    if outcome.ok:
        return outcome.value
    error = outcome.error
    raise HTTPException(
        status_code=HTTP_STATUS_BY_CODE.get(error.code, status.HTTP_400_BAD_REQUEST),
        detail=error.to_dict(),
    )
