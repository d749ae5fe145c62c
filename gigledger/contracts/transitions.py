"""State transition tables for contracts and milestones.

Each table maps ``(current, target)`` to a ``TransitionRule``. A pair missing
from the table is not a legal edge. The rule names which contract party may
request the edge and which side effects the state machine must apply.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from gigledger.contracts.models import (
    TERMINAL_MILESTONE_STATUSES,
    TERMINAL_STAGES,
    ContractStage,
    MilestoneStatus,
)


class Party(str, Enum):
    """Relationship of a principal to a contract."""

    CLIENT = "CLIENT"
    FREELANCER = "FREELANCER"


class Effect(str, Enum):
    """Side effects attached to an edge."""

    ACCEPT_TERMS = "ACCEPT_TERMS"
    SET_START_DATE = "SET_START_DATE"
    REQUIRE_ALL_PAID = "REQUIRE_ALL_PAID"
    SET_END_DATE = "SET_END_DATE"
    COMPLETE_PROJECT = "COMPLETE_PROJECT"
    REQUIRE_NO_HELD_FUNDS = "REQUIRE_NO_HELD_FUNDS"
    CANCEL_OPEN_WORK = "CANCEL_OPEN_WORK"
    REOPEN_PROJECT = "REOPEN_PROJECT"
    CREATE_PAYMENT = "CREATE_PAYMENT"


BOTH_PARTIES = frozenset({Party.CLIENT, Party.FREELANCER})


@dataclass(frozen=True)
class TransitionRule:
    actors: FrozenSet[Party] = frozenset()
    effects: Tuple[Effect, ...] = ()
    # Only the engine itself (reconciler, cascades) may apply the edge
    system_only: bool = False

    def has(self, effect: Effect) -> bool:
        return effect in self.effects


def _contract_table() -> Dict[Tuple[ContractStage, ContractStage], TransitionRule]:
    table = {
        (ContractStage.PROPOSAL, ContractStage.APPROVAL): TransitionRule(
            actors=frozenset({Party.FREELANCER}),
            effects=(Effect.ACCEPT_TERMS,),
        ),
        (ContractStage.APPROVAL, ContractStage.PAYMENT): TransitionRule(
            actors=frozenset({Party.CLIENT}),
        ),
        (ContractStage.PAYMENT, ContractStage.REVIEW): TransitionRule(
            actors=frozenset({Party.FREELANCER}),
            effects=(Effect.SET_START_DATE,),
        ),
        (ContractStage.REVIEW, ContractStage.COMPLETED): TransitionRule(
            actors=frozenset({Party.CLIENT}),
            effects=(Effect.REQUIRE_ALL_PAID, Effect.SET_END_DATE, Effect.COMPLETE_PROJECT),
        ),
    }
    for stage in ContractStage:
        if stage in TERMINAL_STAGES:
            continue
        table[(stage, ContractStage.CANCELLED)] = TransitionRule(
            actors=BOTH_PARTIES,
            effects=(
                Effect.REQUIRE_NO_HELD_FUNDS,
                Effect.CANCEL_OPEN_WORK,
                Effect.REOPEN_PROJECT,
            ),
        )
        if stage != ContractStage.DISPUTED:
            table[(stage, ContractStage.DISPUTED)] = TransitionRule(actors=BOTH_PARTIES)
    return table


def _milestone_table() -> Dict[Tuple[MilestoneStatus, MilestoneStatus], TransitionRule]:
    freelancer = frozenset({Party.FREELANCER})
    table = {
        (MilestoneStatus.PENDING, MilestoneStatus.IN_PROGRESS): TransitionRule(
            actors=freelancer,
            effects=(Effect.SET_START_DATE,),
        ),
        (MilestoneStatus.IN_PROGRESS, MilestoneStatus.COMPLETED): TransitionRule(actors=freelancer),
        (MilestoneStatus.COMPLETED, MilestoneStatus.PAYMENT_REQUESTED): TransitionRule(
            actors=freelancer,
            effects=(Effect.CREATE_PAYMENT,),
        ),
        (MilestoneStatus.PAYMENT_REQUESTED, MilestoneStatus.PAID): TransitionRule(system_only=True),
    }
    for status in MilestoneStatus:
        if status not in TERMINAL_MILESTONE_STATUSES:
            table[(status, MilestoneStatus.CANCELLED)] = TransitionRule(system_only=True)
    return table


CONTRACT_TRANSITIONS = _contract_table()
MILESTONE_TRANSITIONS = _milestone_table()


def contract_rule(current: ContractStage, target: ContractStage) -> Optional[TransitionRule]:
    return CONTRACT_TRANSITIONS.get((ContractStage(current), ContractStage(target)))


def milestone_rule(current: MilestoneStatus, target: MilestoneStatus) -> Optional[TransitionRule]:
    return MILESTONE_TRANSITIONS.get((MilestoneStatus(current), MilestoneStatus(target)))


def contract_targets(current: ContractStage) -> FrozenSet[ContractStage]:
    """All stages reachable in one step from ``current``."""
    return frozenset(to for (frm, to) in CONTRACT_TRANSITIONS if frm == current)
