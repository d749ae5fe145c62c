"""Authorization policy for contract and milestone commands.

``can_transition`` is a pure function of (principal, entity, command). It
never raises for a denial; it returns a ``Decision`` carrying a
machine-readable reason. Rules always combine the principal's role with its
relationship to the contract, never role alone. A principal on neither side
of the contract is denied with NOT_PARTY before any state is consulted.
"""

from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Union

from gigledger.contracts.commands import (
    AdvanceStage,
    EditMilestone,
    FundMilestone,
    NarrateProgress,
    RefundEscrow,
    ReleaseEscrow,
    SetTerms,
)
from gigledger.contracts.models import (
    EXECUTION_STAGES,
    Contract,
    ContractStage,
    Milestone,
    MilestoneStatus,
    Project,
)
from gigledger.contracts.transitions import BOTH_PARTIES, Party, contract_rule, milestone_rule
from gigledger.errors import ForbiddenError
from gigledger.principals import Principal, Role


class DenyReason(str, Enum):
    NOT_PARTY = "NOT_PARTY"
    NOT_OWNER = "NOT_OWNER"
    NOT_ASSIGNEE = "NOT_ASSIGNEE"
    WRONG_ROLE = "WRONG_ROLE"
    INVALID_SOURCE_STATE = "INVALID_SOURCE_STATE"
    SYSTEM_ONLY = "SYSTEM_ONLY"
    UNKNOWN_COMMAND = "UNKNOWN_COMMAND"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenyReason] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Decision(True)


def deny(reason: DenyReason) -> Decision:
    return Decision(False, reason)


CLIENT_ONLY = frozenset({Party.CLIENT})


def relationships(principal: Principal, contract: Contract) -> FrozenSet[Party]:
    """Which sides of the contract the principal is on."""
    found = set()
    if principal.id == contract.client_id:
        found.add(Party.CLIENT)
    if principal.id == contract.freelancer_id:
        found.add(Party.FREELANCER)
    return frozenset(found)


def _check_party(principal: Principal, contract: Contract, allowed: FrozenSet[Party]) -> Decision:
    matched = relationships(principal, contract) & allowed
    if not matched:
        if allowed == CLIENT_ONLY:
            return deny(DenyReason.NOT_OWNER)
        if allowed == frozenset({Party.FREELANCER}):
            return deny(DenyReason.NOT_ASSIGNEE)
        return deny(DenyReason.NOT_PARTY)
    if principal.role.value not in {p.value for p in matched}:
        return deny(DenyReason.WRONG_ROLE)
    return ALLOW


def _contract_decision(principal: Principal, contract: Contract, command) -> Decision:
    if not principal.is_admin and not relationships(principal, contract):
        return deny(DenyReason.NOT_PARTY)
    if isinstance(command, AdvanceStage):
        rule = contract_rule(contract.stage, command.target)
        if rule is None:
            return deny(DenyReason.INVALID_SOURCE_STATE)
        if rule.system_only:
            return deny(DenyReason.SYSTEM_ONLY)
        if principal.is_admin:
            return ALLOW
        return _check_party(principal, contract, rule.actors)

    if isinstance(command, SetTerms):
        required_state = contract.stage == ContractStage.PROPOSAL
        parties = CLIENT_ONLY
    elif isinstance(command, (FundMilestone, ReleaseEscrow)):
        required_state = contract.stage in EXECUTION_STAGES
        parties = CLIENT_ONLY
    elif isinstance(command, RefundEscrow):
        required_state = not contract.is_terminal
        parties = BOTH_PARTIES
    else:
        return deny(DenyReason.UNKNOWN_COMMAND)

    if principal.is_admin:
        return ALLOW
    decision = _check_party(principal, contract, parties)
    if not decision:
        return decision
    if not required_state:
        return deny(DenyReason.INVALID_SOURCE_STATE)
    return ALLOW


def _milestone_decision(
    principal: Principal, milestone: Milestone, contract: Contract, command
) -> Decision:
    if not principal.is_admin and not relationships(principal, contract):
        return deny(DenyReason.NOT_PARTY)
    if isinstance(command, NarrateProgress):
        if principal.is_admin:
            return ALLOW
        return _check_party(principal, contract, BOTH_PARTIES)

    if isinstance(command, EditMilestone):
        if principal.is_admin:
            return ALLOW
        decision = _check_party(principal, contract, CLIENT_ONLY)
        if not decision:
            return decision
        if milestone.status != MilestoneStatus.PENDING:
            return deny(DenyReason.INVALID_SOURCE_STATE)
        return ALLOW

    target = getattr(command, "target", None)
    if target is None:
        return deny(DenyReason.UNKNOWN_COMMAND)
    rule = milestone_rule(milestone.status, target)
    if rule is None:
        return deny(DenyReason.INVALID_SOURCE_STATE)
    if rule.system_only:
        return deny(DenyReason.SYSTEM_ONLY)
    if principal.is_admin:
        return ALLOW
    return _check_party(principal, contract, rule.actors)


def can_transition(
    principal: Principal,
    entity: Union[Contract, Milestone],
    command,
    *,
    contract: Optional[Contract] = None,
) -> Decision:
    """Decide whether ``principal`` may apply ``command`` to ``entity``.

    Args:
        principal: The caller.
        entity: The contract or milestone acted on.
        command: A command from ``gigledger.contracts.commands``.
        contract: The parent contract, required when ``entity`` is a milestone.

    Returns:
        ``Decision(True)`` or ``Decision(False, reason)``.
    """
    if isinstance(entity, Contract):
        return _contract_decision(principal, entity, command)
    if isinstance(entity, Milestone):
        if contract is None or contract.id != entity.contract_id:
            raise ValueError("Milestone decisions need the milestone's parent contract")
        return _milestone_decision(principal, entity, contract, command)
    raise TypeError(f"Unsupported entity: {type(entity).__name__}")


def can_create_contract(principal: Principal, project: Project) -> Decision:
    """Only the project's owner, acting as a client, may contract one of its bids."""
    if principal.is_admin:
        return ALLOW
    if principal.id != project.client_id:
        return deny(DenyReason.NOT_OWNER)
    if principal.role != Role.CLIENT:
        return deny(DenyReason.WRONG_ROLE)
    return ALLOW


def can_view(principal: Principal, contract: Contract) -> Decision:
    """Read access: either party or an admin."""
    if principal.is_admin or relationships(principal, contract):
        return ALLOW
    return deny(DenyReason.NOT_PARTY)


def authorize(decision: Decision, action: str) -> None:
    """Raise ``ForbiddenError`` for a denied decision."""
    if not decision:
        raise ForbiddenError(f"Not allowed to {action}", reason=decision.reason.value)
