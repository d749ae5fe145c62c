"""Side effects shared by the contract, milestone and escrow flows.

Every function here runs inside an open ledger transaction and assumes the
caller has already validated the transition.
"""

import uuid
from decimal import Decimal
from typing import List, Optional

from gigledger.contracts.models import (
    TERMINAL_MILESTONE_STATUSES,
    Contract,
    ContractStage,
    ContractTransition,
    MilestoneStatus,
    Notification,
    NotificationType,
    ProjectStatus,
)
from gigledger.contracts.transitions import Effect, TransitionRule, contract_rule
from gigledger.ledger.base import LedgerTransaction, utc_now
from gigledger.payments.models import Payment, PaymentStatus


def notify(
    tx: LedgerTransaction,
    user_id: str,
    type: NotificationType,
    title: str,
    message: str,
    reference_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    amount: Optional[Decimal] = None,
) -> Notification:
    notification = Notification(
        id=str(uuid.uuid4()),
        user_id=user_id,
        type=type,
        title=title,
        message=message,
        reference_id=reference_id,
        reference_type=reference_type,
        amount=amount,
        created_at=utc_now(),
    )
    tx.insert_notification(notification)
    return notification


def counterparty(contract: Contract, actor_id: str) -> List[str]:
    """Parties to notify about a change made by ``actor_id``.

    Both parties when the actor is neither (an admin or the system).
    """
    if actor_id == contract.client_id:
        return [contract.freelancer_id]
    if actor_id == contract.freelancer_id:
        return [contract.client_id]
    return [contract.client_id, contract.freelancer_id]


def record_transition(
    tx: LedgerTransaction,
    contract_id: str,
    from_stage: Optional[ContractStage],
    to_stage: ContractStage,
    actor_id: str,
    reason: Optional[str] = None,
) -> ContractTransition:
    transition = ContractTransition(
        id=str(uuid.uuid4()),
        contract_id=contract_id,
        from_stage=from_stage,
        to_stage=to_stage,
        actor_id=actor_id,
        reason=reason,
        created_at=utc_now(),
    )
    tx.insert_transition(transition)
    return transition


def move_stage(
    tx: LedgerTransaction,
    contract: Contract,
    to_stage: ContractStage,
    actor_id: str,
    reason: Optional[str] = None,
    **fields,
) -> None:
    """Compare-and-set the contract stage and write the audit row."""
    tx.update_contract(contract.id, contract.stage, stage=to_stage, **fields)
    record_transition(tx, contract.id, contract.stage, to_stage, actor_id, reason)


def _cancel_open_work(tx: LedgerTransaction, contract_id: str) -> None:
    for milestone in tx.list_milestones(contract_id):
        if milestone.status not in TERMINAL_MILESTONE_STATUSES:
            tx.update_milestone(milestone.id, milestone.status, status=MilestoneStatus.CANCELLED)
    for payment in tx.list_payments(contract_id):
        if payment.status == PaymentStatus.PENDING:
            tx.update_payment(payment.id, payment.status, status=PaymentStatus.FAILED)


def _notify_stage_change(
    tx: LedgerTransaction,
    contract: Contract,
    to_stage: ContractStage,
    actor_id: str,
    reason: Optional[str],
) -> None:
    if to_stage == ContractStage.COMPLETED:
        for user_id in (contract.client_id, contract.freelancer_id):
            notify(
                tx,
                user_id,
                NotificationType.CONTRACT_COMPLETED,
                "Contract completed",
                f'Contract "{contract.title}" has been completed.',
                reference_id=contract.id,
                reference_type="contract",
                amount=contract.amount,
            )
        return
    for user_id in counterparty(contract, actor_id):
        if to_stage == ContractStage.CANCELLED:
            notify(
                tx,
                user_id,
                NotificationType.CONTRACT_CANCELLED,
                "Contract cancelled",
                f'Contract "{contract.title}" has been cancelled.'
                + (f" Reason: {reason}" if reason else ""),
                reference_id=contract.id,
                reference_type="contract",
            )
        else:
            notify(
                tx,
                user_id,
                NotificationType.CONTRACT_UPDATED,
                "Contract stage changed",
                f'Contract "{contract.title}" moved from '
                f"{contract.stage.value} to {to_stage.value}.",
                reference_id=contract.id,
                reference_type="contract",
            )


def apply_transition(
    tx: LedgerTransaction,
    contract: Contract,
    to_stage: ContractStage,
    rule: TransitionRule,
    actor_id: str,
    reason: Optional[str] = None,
) -> None:
    """Move the contract to ``to_stage`` and apply the side effects ``rule`` names.

    Preconditions (``REQUIRE_*`` effects) are the caller's job; they must be
    checked before anything is written.
    """
    now = utc_now()
    fields = {}
    if rule.has(Effect.ACCEPT_TERMS):
        fields["terms_accepted"] = True
    if rule.has(Effect.SET_START_DATE) and contract.start_date is None:
        fields["start_date"] = now
    if rule.has(Effect.SET_END_DATE):
        fields["end_date"] = now
    if rule.has(Effect.CANCEL_OPEN_WORK):
        _cancel_open_work(tx, contract.id)

    move_stage(tx, contract, to_stage, actor_id, reason, **fields)

    if rule.has(Effect.COMPLETE_PROJECT):
        tx.update_project_status(contract.project_id, ProjectStatus.COMPLETED)
    if rule.has(Effect.REOPEN_PROJECT):
        tx.update_project_status(contract.project_id, ProjectStatus.OPEN)
    _notify_stage_change(tx, contract, to_stage, actor_id, reason)


def complete_contract(
    tx: LedgerTransaction, contract: Contract, actor_id: str, reason: Optional[str] = None
) -> None:
    """Close a fully paid contract and its project."""
    rule = contract_rule(contract.stage, ContractStage.COMPLETED)
    apply_transition(
        tx, contract, ContractStage.COMPLETED, rule, actor_id, reason or "All milestones paid"
    )


def all_milestones_paid(tx: LedgerTransaction, contract_id: str) -> bool:
    milestones = tx.list_milestones(contract_id)
    return bool(milestones) and all(m.status == MilestoneStatus.PAID for m in milestones)


def cancel_contract(
    tx: LedgerTransaction,
    contract: Contract,
    actor_id: str,
    reason: Optional[str] = None,
) -> None:
    """Cancel a contract that holds no funds.

    Unsettled milestones are cancelled, requested payments that were never
    funded are failed, and the project goes back to OPEN.
    """
    rule = contract_rule(contract.stage, ContractStage.CANCELLED)
    apply_transition(tx, contract, ContractStage.CANCELLED, rule, actor_id, reason)


def settle_payment(
    tx: LedgerTransaction, payment: Payment, transfer_id: str
) -> None:
    """Record a completed release: payment COMPLETED, milestone PAID."""
    tx.update_payment(
        payment.id,
        PaymentStatus.PROCESSING,
        status=PaymentStatus.COMPLETED,
        transfer_id=transfer_id,
        completed_at=utc_now(),
    )
    tx.update_milestone(
        payment.milestone_id, MilestoneStatus.PAYMENT_REQUESTED, status=MilestoneStatus.PAID
    )
    milestone = tx.get_milestone(payment.milestone_id)
    notify(
        tx,
        payment.freelancer_id,
        NotificationType.PAYMENT_RECEIVED,
        "Payment received",
        f'Payment of ${payment.amount} for milestone "{milestone.title}" has been released.',
        reference_id=payment.milestone_id,
        reference_type="milestone",
        amount=payment.amount,
    )


def complete_if_settled(tx: LedgerTransaction, contract_id: str, actor_id: str) -> bool:
    """Complete the contract when every milestone is paid and it is under review.

    A contract still in PAYMENT stays there; the client completes it after the
    freelancer moves it to REVIEW.
    """
    contract = tx.get_contract(contract_id, with_milestones=False)
    if contract.stage != ContractStage.REVIEW or not all_milestones_paid(tx, contract_id):
        return False
    complete_contract(tx, contract, actor_id)
    return True
