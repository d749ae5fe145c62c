"""Contracts subsystem for gigledger.

Models:
- Contract: Agreement between a client and a freelancer for one bid
- Milestone: Independently priced unit of work within a contract
- ProgressUpdate: Append-only trail of milestone work
- ContractTransition: Audit log entry for stage changes

Transition tables and policy:
- CONTRACT_TRANSITIONS, MILESTONE_TRANSITIONS: legal edges and their effects
- can_transition: who may request which edge

Services (import from their modules):
- service.ContractService: create, edit terms, advance stage
- milestones.MilestoneService: progress updates and milestone edits
"""

from gigledger.contracts.commands import (
    AdvanceStage,
    CancelMilestone,
    EditMilestone,
    FundMilestone,
    MarkPaid,
    NarrateProgress,
    RefundEscrow,
    ReleaseEscrow,
    RequestPayment,
    SetTerms,
    StartWork,
    SubmitWork,
)
from gigledger.contracts.models import (
    Bid,
    BidStatus,
    Contract,
    ContractStage,
    ContractTransition,
    Milestone,
    MilestoneDraft,
    MilestoneStatus,
    Notification,
    NotificationType,
    Project,
    ProjectStatus,
    ProgressUpdate,
)
from gigledger.contracts.policy import Decision, DenyReason, can_transition
from gigledger.contracts.transitions import (
    CONTRACT_TRANSITIONS,
    MILESTONE_TRANSITIONS,
    Effect,
    TransitionRule,
)

__all__ = [
    # Commands
    "AdvanceStage",
    "CancelMilestone",
    "EditMilestone",
    "FundMilestone",
    "MarkPaid",
    "NarrateProgress",
    "RefundEscrow",
    "ReleaseEscrow",
    "RequestPayment",
    "SetTerms",
    "StartWork",
    "SubmitWork",
    # Models
    "Bid",
    "BidStatus",
    "Contract",
    "ContractStage",
    "ContractTransition",
    "Milestone",
    "MilestoneDraft",
    "MilestoneStatus",
    "Notification",
    "NotificationType",
    "Project",
    "ProjectStatus",
    "ProgressUpdate",
    # Policy and tables
    "CONTRACT_TRANSITIONS",
    "MILESTONE_TRANSITIONS",
    "Decision",
    "DenyReason",
    "Effect",
    "TransitionRule",
    "can_transition",
]
