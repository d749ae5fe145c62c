"""Lifecycle engine.

The public surface of gigledger. Every operation returns an ``Outcome``:
expected failures (authorization, state, validation, conflicts, gateway
errors) come back as ``Outcome(ok=False, error=ErrorInfo(...))`` rather than
exceptions. Anything else is a bug and propagates.

Example:
    engine = LifecycleEngine.from_config(LedgerConfig.from_env())
    outcome = engine.create_contract(client, bid_id, terms, amount, milestones)
    if not outcome.ok:
        print(outcome.error.code, outcome.error.message)
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Generic, List, Mapping, Optional, Sequence, TypeVar, Union

from gigledger.config import LedgerConfig
from gigledger.contracts.commands import AdvanceStage, EditMilestone, SetTerms
from gigledger.contracts.milestones import MilestoneService, ProgressRecord
from gigledger.contracts.models import (
    Contract,
    ContractStage,
    ContractTransition,
    MilestoneStatus,
    Notification,
    ProgressUpdate,
)
from gigledger.contracts.service import ContractService, MilestoneInput
from gigledger.errors import ErrorCode, LifecycleError, ValidationError
from gigledger.ledger.base import LedgerStore
from gigledger.ledger.sqlite import SQLiteLedgerStore
from gigledger.payments.escrow import EscrowService, FundingResult, PaymentSummary, ReleaseResult
from gigledger.payments.events import parse_gateway_event
from gigledger.payments.gateway import EscrowGateway, StripeEscrowGateway
from gigledger.payments.reconciler import EscrowReconciler, ReconcileAction, ReconcileResult
from gigledger.principals import Principal, Role

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ErrorInfo:
    code: ErrorCode
    message: str
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message, "reason": self.reason}


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of an engine operation."""

    ok: bool
    value: Optional[T] = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, exc: LifecycleError) -> "Outcome[T]":
        return cls(ok=False, error=ErrorInfo(exc.code, exc.message, exc.reason))

    def unwrap(self) -> T:
        """Return the value, or raise the failure as a ``LifecycleError``."""
        if not self.ok:
            raise _ERRORS_BY_CODE.get(self.error.code, LifecycleError)(
                self.error.message, self.error.reason
            )
        return self.value


def _error_classes():
    classes = {}
    stack = [LifecycleError]
    while stack:
        cls = stack.pop()
        for sub in cls.__subclasses__():
            classes[sub.code] = sub
            stack.append(sub)
    return classes


_ERRORS_BY_CODE = _error_classes()


class LifecycleEngine:
    """Contract, milestone and escrow operations behind one facade."""

    def __init__(
        self,
        ledger: LedgerStore,
        gateway: EscrowGateway,
        config: Optional[LedgerConfig] = None,
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.config = config or LedgerConfig()
        self.contracts = ContractService(ledger, self.config)
        self.milestones = MilestoneService(ledger, self.config)
        self.escrow = EscrowService(ledger, gateway, self.config)
        self.reconciler = EscrowReconciler(ledger, gateway, self.config)

    @classmethod
    def from_config(
        cls, config: LedgerConfig, gateway: Optional[EscrowGateway] = None
    ) -> "LifecycleEngine":
        """Build an engine on the SQLite ledger, with Stripe unless a gateway is given."""
        ledger = SQLiteLedgerStore(config.db_path)
        return cls(ledger, gateway or StripeEscrowGateway.from_config(config), config)

    def _run(self, operation: str, fn: Callable[..., T], *args, **kwargs) -> Outcome[T]:
        try:
            return Outcome.success(fn(*args, **kwargs))
        except LifecycleError as e:
            logger.info(f"{operation} failed: {e.code.value} {e.message}")
            return Outcome.failure(e)

    # === Contracts ===

    def create_contract(
        self,
        principal: Principal,
        bid_id: str,
        terms: str,
        amount: Any,
        milestones: Sequence[MilestoneInput],
        title: Optional[str] = None,
    ) -> Outcome[Contract]:
        return self._run(
            "create_contract",
            self.contracts.create_contract,
            principal,
            bid_id,
            terms,
            amount,
            milestones,
            title=title,
        )

    def update_contract_terms(
        self, principal: Principal, contract_id: str, command: SetTerms
    ) -> Outcome[Contract]:
        return self._run(
            "update_contract_terms", self.contracts.update_terms, principal, contract_id, command
        )

    def advance_contract_stage(
        self,
        principal: Principal,
        contract_id: str,
        command: Union[AdvanceStage, ContractStage, str],
    ) -> Outcome[Contract]:
        """Move a contract along its stage table.

        ``command`` may be a bare target stage for convenience. Cancelling also
        voids any failed holds the payer could still confirm.
        """
        if not isinstance(command, AdvanceStage):
            try:
                command = AdvanceStage(target=command)
            except ValueError as e:
                return Outcome.failure(ValidationError(str(e)))
        outcome = self._run(
            "advance_contract_stage", self.contracts.advance_stage, principal, contract_id, command
        )
        if outcome.ok and outcome.value.stage == ContractStage.CANCELLED:
            self._void_stale_holds(contract_id)
        return outcome

    def _void_stale_holds(self, contract_id: str) -> None:
        try:
            self.escrow.void_stale_holds(contract_id)
        except LifecycleError as e:
            # The cancel is committed; a hold that still succeeds is refunded on arrival
            logger.warning(f"Could not void stale holds of contract {contract_id}: {e.message}")

    # === Milestones ===

    def record_milestone_progress(
        self,
        principal: Principal,
        milestone_id: str,
        description: str,
        new_status: Optional[MilestoneStatus] = None,
    ) -> Outcome[ProgressRecord]:
        return self._run(
            "record_milestone_progress",
            self.milestones.record_progress,
            principal,
            milestone_id,
            description,
            new_status,
        )

    def update_milestone_details(
        self, principal: Principal, milestone_id: str, command: EditMilestone
    ) -> Outcome:
        return self._run(
            "update_milestone_details",
            self.milestones.update_details,
            principal,
            milestone_id,
            command,
        )

    # === Escrow ===

    def fund_milestone(
        self, principal: Principal, contract_id: str, milestone_id: str
    ) -> Outcome[FundingResult]:
        return self._run(
            "fund_milestone", self.escrow.fund_milestone, principal, contract_id, milestone_id
        )

    def release_escrow(
        self, principal: Principal, contract_id: str, milestone_id: str
    ) -> Outcome[ReleaseResult]:
        return self._run(
            "release_escrow", self.escrow.release_escrow, principal, contract_id, milestone_id
        )

    def refund_escrow(
        self, principal: Principal, contract_id: str, reason: Optional[str] = None
    ) -> Outcome[Contract]:
        return self._run("refund_escrow", self.escrow.refund_escrow, principal, contract_id, reason)

    def on_escrow_hold_succeeded(
        self, hold_id: str, payment_id: Optional[str] = None
    ) -> Outcome[ReconcileResult]:
        return self._run(
            "on_escrow_hold_succeeded", self.reconciler.on_hold_succeeded, hold_id, payment_id
        )

    def on_escrow_hold_failed(
        self, hold_id: str, payment_id: Optional[str] = None
    ) -> Outcome[ReconcileResult]:
        return self._run(
            "on_escrow_hold_failed", self.reconciler.on_hold_failed, hold_id, payment_id
        )

    def handle_gateway_event(self, event: Mapping[str, Any]) -> Outcome[ReconcileResult]:
        """Apply a decoded (already verified) gateway event."""
        try:
            parsed = parse_gateway_event(event)
        except LifecycleError as e:
            return Outcome.failure(e)
        if parsed is None:
            return Outcome.success(ReconcileResult(ReconcileAction.IGNORED))
        return self._run("handle_gateway_event", self.reconciler.handle, parsed)

    # === Read models ===

    def get_contract(self, principal: Principal, contract_id: str) -> Outcome[Contract]:
        return self._run("get_contract", self.contracts.get_contract, principal, contract_id)

    def list_contracts(
        self,
        principal: Principal,
        stage: Optional[ContractStage] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Outcome[List[Contract]]:
        return self._run(
            "list_contracts", self.contracts.list_contracts, principal, stage, limit, offset
        )

    def contract_history(
        self, principal: Principal, contract_id: str
    ) -> Outcome[List[ContractTransition]]:
        return self._run(
            "contract_history", self.contracts.contract_history, principal, contract_id
        )

    def list_progress(
        self, principal: Principal, milestone_id: str
    ) -> Outcome[List[ProgressUpdate]]:
        return self._run("list_progress", self.milestones.list_progress, principal, milestone_id)

    def list_notifications(
        self, principal: Principal, unread_only: bool = False, limit: int = 100
    ) -> Outcome[List[Notification]]:
        return Outcome.success(
            self.ledger.list_notifications(principal.id, unread_only=unread_only, limit=limit)
        )

    def mark_notifications_read(
        self, principal: Principal, notification_ids: List[str]
    ) -> Outcome[int]:
        return Outcome.success(self.ledger.mark_notifications_read(principal.id, notification_ids))

    def payment_summary(
        self, principal: Principal, role: Optional[Role] = None
    ) -> Outcome[PaymentSummary]:
        return self._run("payment_summary", self.escrow.payment_summary, principal, role)
