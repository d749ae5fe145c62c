"""Commands accepted by the contract and milestone state machines.

One frozen dataclass per transition. Payloads are validated on construction,
before they reach a state machine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional, Union

from gigledger.contracts.models import MAX_TITLE_LENGTH, ContractStage, MilestoneStatus, as_money

# === Contract commands ===


@dataclass(frozen=True)
class SetTerms:
    terms: str
    title: Optional[str] = None
    expected_stage: Optional[ContractStage] = None

    def __post_init__(self):
        if not self.terms or not self.terms.strip():
            raise ValueError("Terms cannot be empty")
        if self.title is not None and not self.title.strip():
            raise ValueError("Title cannot be empty")
        if self.title is not None and len(self.title) > MAX_TITLE_LENGTH:
            raise ValueError(f"Title too long (max {MAX_TITLE_LENGTH} chars)")


@dataclass(frozen=True)
class AdvanceStage:
    target: ContractStage
    reason: Optional[str] = None
    # Stage the caller last observed; CONFLICT if it has moved since
    expected_stage: Optional[ContractStage] = None

    def __post_init__(self):
        try:
            object.__setattr__(self, "target", ContractStage(self.target))
        except ValueError:
            raise ValueError(f"Invalid contract stage: {self.target}") from None
        if self.expected_stage is not None:
            object.__setattr__(self, "expected_stage", ContractStage(self.expected_stage))


@dataclass(frozen=True)
class FundMilestone:
    milestone_id: str


@dataclass(frozen=True)
class ReleaseEscrow:
    milestone_id: str


@dataclass(frozen=True)
class RefundEscrow:
    reason: Optional[str] = None


ContractCommand = Union[SetTerms, AdvanceStage, FundMilestone, ReleaseEscrow, RefundEscrow]


# === Milestone commands ===


@dataclass(frozen=True)
class StartWork:
    target = MilestoneStatus.IN_PROGRESS


@dataclass(frozen=True)
class SubmitWork:
    target = MilestoneStatus.COMPLETED


@dataclass(frozen=True)
class RequestPayment:
    target = MilestoneStatus.PAYMENT_REQUESTED


@dataclass(frozen=True)
class MarkPaid:
    target = MilestoneStatus.PAID


@dataclass(frozen=True)
class CancelMilestone:
    target = MilestoneStatus.CANCELLED


@dataclass(frozen=True)
class NarrateProgress:
    """Progress note that leaves the status unchanged."""

    target = None


@dataclass(frozen=True)
class EditMilestone:
    title: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[Decimal] = None
    due_date: Optional[datetime] = None
    clear_due_date: bool = field(default=False)

    def __post_init__(self):
        if self.title is not None and not self.title.strip():
            raise ValueError("Title cannot be empty")
        if self.title is not None and len(self.title) > MAX_TITLE_LENGTH:
            raise ValueError(f"Title too long (max {MAX_TITLE_LENGTH} chars)")
        if self.amount is not None:
            amount = as_money(self.amount)
            if amount <= 0:
                raise ValueError("Milestone amount must be positive")
            object.__setattr__(self, "amount", amount)
        if self.due_date is not None and self.clear_due_date:
            raise ValueError("Cannot set and clear the due date at once")
        if self.is_empty:
            raise ValueError("No milestone fields to update")

    @property
    def is_empty(self) -> bool:
        return (
            self.title is None
            and self.description is None
            and self.amount is None
            and self.due_date is None
            and not self.clear_due_date
        )


StatusCommand = Union[StartWork, SubmitWork, RequestPayment, MarkPaid, CancelMilestone]
MilestoneCommand = Union[StatusCommand, NarrateProgress, EditMilestone]

_STATUS_COMMANDS = {
    MilestoneStatus.IN_PROGRESS: StartWork,
    MilestoneStatus.COMPLETED: SubmitWork,
    MilestoneStatus.PAYMENT_REQUESTED: RequestPayment,
    MilestoneStatus.PAID: MarkPaid,
    MilestoneStatus.CANCELLED: CancelMilestone,
}


def command_for_status(status: MilestoneStatus) -> StatusCommand:
    """The command that moves a milestone into ``status``."""
    status = MilestoneStatus(status)
    if status not in _STATUS_COMMANDS:
        raise ValueError(f"No milestone command leads to {status.value}")
    return _STATUS_COMMANDS[status]()
