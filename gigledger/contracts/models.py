"""Contract domain models.

Models:
- Project, Bid: the marketplace records a contract is created from
- Contract: the agreement between one client and one freelancer for one bid
- Milestone: an independently priced unit of work within a contract
- ProgressUpdate: append-only narrative/status trail of a milestone
- ContractTransition: audit log entry for contract stage changes
- Notification: informational record emitted on key transitions
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import List, Optional, Union

MAX_TITLE_LENGTH = 200

Money = Union[Decimal, int, float, str]


def as_money(value: Money) -> Decimal:
    """Convert a number to a two-place Decimal.

    Floats go through ``str`` so 0.1 stays 0.10 rather than its binary expansion.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"Invalid amount: {value!r}") from None
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


class ProjectStatus(str, Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class BidStatus(str, Enum):
    PENDING = "PENDING"
    SHORTLISTED = "SHORTLISTED"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class ContractStage(str, Enum):
    """Contract lifecycle stage."""

    PROPOSAL = "PROPOSAL"  # Drafted by the client, terms still editable
    APPROVAL = "APPROVAL"  # Freelancer accepted the terms
    PAYMENT = "PAYMENT"  # Funding and work in progress
    REVIEW = "REVIEW"  # Work submitted, settling remaining milestones
    COMPLETED = "COMPLETED"  # All milestones paid
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


TERMINAL_STAGES = frozenset({ContractStage.COMPLETED, ContractStage.CANCELLED})

# Stages in which milestone work and fund movements are allowed
EXECUTION_STAGES = frozenset({ContractStage.PAYMENT, ContractStage.REVIEW})


class MilestoneStatus(str, Enum):
    """Milestone lifecycle status."""

    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    PAYMENT_REQUESTED = "PAYMENT_REQUESTED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"


TERMINAL_MILESTONE_STATUSES = frozenset({MilestoneStatus.PAID, MilestoneStatus.CANCELLED})


class NotificationType(str, Enum):
    CONTRACT_CREATED = "CONTRACT_CREATED"
    CONTRACT_UPDATED = "CONTRACT_UPDATED"
    CONTRACT_COMPLETED = "CONTRACT_COMPLETED"
    CONTRACT_CANCELLED = "CONTRACT_CANCELLED"
    MILESTONE_UPDATED = "MILESTONE_UPDATED"
    MILESTONE_COMPLETED = "MILESTONE_COMPLETED"
    PAYMENT_REQUESTED = "PAYMENT_REQUESTED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"


@dataclass
class Project:
    id: str
    client_id: str
    title: str
    description: str = ""
    budget: Decimal = Decimal("0.00")
    deadline: Optional[datetime] = None
    skills: List[str] = field(default_factory=list)
    category: str = ""
    status: ProjectStatus = ProjectStatus.OPEN
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.budget = as_money(self.budget)
        self.status = ProjectStatus(self.status)


@dataclass
class Bid:
    id: str
    project_id: str
    freelancer_id: str
    amount: Decimal
    delivery_time_days: int = 0
    cover_letter: str = ""
    status: BidStatus = BidStatus.PENDING
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = as_money(self.amount)
        self.status = BidStatus(self.status)


@dataclass
class Contract:
    """A contract between a client and a freelancer.

    ``client_id``, ``freelancer_id``, ``project_id`` and ``bid_id`` never change
    after creation. ``amount`` always equals the sum of the milestone amounts.
    """

    id: str
    project_id: str
    client_id: str
    freelancer_id: str
    bid_id: str
    title: str
    description: str
    amount: Decimal
    stage: ContractStage = ContractStage.PROPOSAL
    terms_accepted: bool = False
    payment_intent_id: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    milestones: List["Milestone"] = field(default_factory=list)

    def __post_init__(self):
        self.amount = as_money(self.amount)
        if self.amount <= 0:
            raise ValueError("Contract amount must be positive")
        try:
            self.stage = ContractStage(self.stage)
        except ValueError:
            raise ValueError(f"Invalid stage: {self.stage}") from None
        if len(self.title) > MAX_TITLE_LENGTH:
            raise ValueError(f"Title too long (max {MAX_TITLE_LENGTH} chars)")

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    @property
    def milestone_total(self) -> Decimal:
        return sum((m.amount for m in self.milestones), Decimal("0.00"))

    def is_party(self, user_id: str) -> bool:
        return user_id in (self.client_id, self.freelancer_id)


@dataclass
class Milestone:
    id: str
    contract_id: str
    project_id: str
    title: str
    amount: Decimal
    description: str = ""
    due_date: Optional[datetime] = None
    status: MilestoneStatus = MilestoneStatus.PENDING
    position: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.amount = as_money(self.amount)
        if self.amount <= 0:
            raise ValueError("Milestone amount must be positive")
        if not self.title or not self.title.strip():
            raise ValueError("Milestone title is required")
        if len(self.title) > MAX_TITLE_LENGTH:
            raise ValueError(f"Title too long (max {MAX_TITLE_LENGTH} chars)")
        try:
            self.status = MilestoneStatus(self.status)
        except ValueError:
            raise ValueError(f"Invalid status: {self.status}") from None


@dataclass
class MilestoneDraft:
    """Milestone as supplied when a contract is created."""

    title: str
    amount: Decimal
    description: str = ""
    due_date: Optional[datetime] = None

    def __post_init__(self):
        self.amount = as_money(self.amount)


@dataclass
class ProgressUpdate:
    id: str
    milestone_id: str
    author_id: str
    description: str
    status: MilestoneStatus
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = MilestoneStatus(self.status)


@dataclass
class ContractTransition:
    """Audit log entry for a contract stage change."""

    id: str
    contract_id: str
    from_stage: Optional[ContractStage]
    to_stage: ContractStage
    actor_id: str
    reason: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        if self.from_stage is not None:
            self.from_stage = ContractStage(self.from_stage)
        self.to_stage = ContractStage(self.to_stage)


@dataclass
class Notification:
    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    amount: Optional[Decimal] = None
    is_read: bool = False
    created_at: Optional[datetime] = None

    def __post_init__(self):
        self.type = NotificationType(self.type)
        if self.amount is not None:
            self.amount = as_money(self.amount)
