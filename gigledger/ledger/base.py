"""Ledger storage protocols.

The ledger is the only shared mutable resource of the engine. Every lifecycle
mutation runs inside one ``LedgerTransaction``: it re-reads current state,
validates, and writes with compare-and-set updates. A compare-and-set that
matches no row raises ``ConflictError`` and the whole transaction rolls back.
"""

from contextlib import AbstractContextManager
from datetime import datetime, timezone
from typing import Any, List, Optional, Protocol

from gigledger.contracts.models import (
    Bid,
    BidStatus,
    Contract,
    ContractStage,
    ContractTransition,
    Milestone,
    MilestoneStatus,
    Notification,
    Project,
    ProjectStatus,
    ProgressUpdate,
)
from gigledger.payments.models import Payment, PaymentStatus


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp as stored in the ledger."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class LedgerTransaction(Protocol):
    """Reads and writes inside one atomic unit of work."""

    # Reads
    def get_project(self, project_id: str) -> Optional[Project]:
        ...

    def get_bid(self, bid_id: str) -> Optional[Bid]:
        ...

    def get_contract(self, contract_id: str, with_milestones: bool = True) -> Optional[Contract]:
        ...

    def get_contract_for_bid(self, bid_id: str) -> Optional[Contract]:
        ...

    def get_milestone(self, milestone_id: str) -> Optional[Milestone]:
        ...

    def list_milestones(self, contract_id: str) -> List[Milestone]:
        ...

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        ...

    def get_payment_for_milestone(self, milestone_id: str) -> Optional[Payment]:
        ...

    def get_payment_by_intent(self, payment_intent_id: str) -> Optional[Payment]:
        ...

    def list_payments(self, contract_id: str) -> List[Payment]:
        ...

    def get_payout_account(self, user_id: str) -> Optional[str]:
        ...

    # Inserts
    def insert_contract(self, contract: Contract) -> str:
        """Insert a contract and its milestones. Returns the contract ID."""
        ...

    def insert_progress(self, update: ProgressUpdate) -> str:
        ...

    def insert_payment(self, payment: Payment) -> str:
        ...

    def insert_notification(self, notification: Notification) -> str:
        ...

    def insert_transition(self, transition: ContractTransition) -> str:
        ...

    # Compare-and-set updates
    def update_contract(
        self, contract_id: str, expected_stage: ContractStage, **fields: Any
    ) -> None:
        """Update a contract only if its stage is still ``expected_stage``."""
        ...

    def update_milestone(
        self, milestone_id: str, expected_status: MilestoneStatus, **fields: Any
    ) -> None:
        """Update a milestone only if its status is still ``expected_status``."""
        ...

    def update_payment(
        self, payment_id: str, expected_status: PaymentStatus, **fields: Any
    ) -> None:
        """Update a payment only if its status is still ``expected_status``."""
        ...

    def update_bid_status(self, bid_id: str, status: BidStatus) -> None:
        ...

    def update_project_status(self, project_id: str, status: ProjectStatus) -> None:
        ...


class LedgerStore(Protocol):
    """Protocol for ledger persistence backends."""

    def transaction(self) -> AbstractContextManager:
        """Open a write transaction. Yields a ``LedgerTransaction``."""
        ...

    # Seeding (projects, bids and payout accounts are owned by other services)
    def save_project(self, project: Project) -> str:
        ...

    def save_bid(self, bid: Bid) -> str:
        ...

    def save_payout_account(self, user_id: str, payout_account_id: str) -> None:
        ...

    # Read models
    def get_project(self, project_id: str) -> Optional[Project]:
        ...

    def get_bid(self, bid_id: str) -> Optional[Bid]:
        ...

    def get_contract(self, contract_id: str) -> Optional[Contract]:
        ...

    def get_milestone(self, milestone_id: str) -> Optional[Milestone]:
        ...

    def get_payment(self, payment_id: str) -> Optional[Payment]:
        ...

    def get_payment_for_milestone(self, milestone_id: str) -> Optional[Payment]:
        ...

    def list_contracts(
        self,
        user_id: Optional[str] = None,
        stage: Optional[ContractStage] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Contract]:
        """List contracts, newest first. ``user_id`` filters to contracts the user is party to."""
        ...

    def list_progress(self, milestone_id: str) -> List[ProgressUpdate]:
        ...

    def list_payments(
        self,
        contract_id: Optional[str] = None,
        client_id: Optional[str] = None,
        freelancer_id: Optional[str] = None,
    ) -> List[Payment]:
        ...

    def list_notifications(
        self, user_id: str, unread_only: bool = False, limit: int = 100
    ) -> List[Notification]:
        ...

    def mark_notifications_read(self, user_id: str, notification_ids: List[str]) -> int:
        ...

    def get_transitions(self, contract_id: str) -> List[ContractTransition]:
        ...

