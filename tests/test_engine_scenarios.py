"""End-to-end lifecycle scenarios through the engine facade."""

from decimal import Decimal

import pytest

from gigledger.contracts.models import ContractStage, MilestoneStatus
from gigledger.engine import ErrorInfo, LifecycleEngine, Outcome
from gigledger.errors import ErrorCode, InvalidStateError, LifecycleError, ValidationError
from gigledger.payments.models import PaymentStatus


class TestOutcome:
    def test_unwrap_raises_matching_error(self):
        outcome = Outcome(ok=False, error=ErrorInfo(ErrorCode.INVALID_STATE, "nope"))
        with pytest.raises(InvalidStateError, match="nope"):
            outcome.unwrap()

    def test_unwrap_keeps_reason(self):
        outcome = Outcome(ok=False, error=ErrorInfo(ErrorCode.FORBIDDEN, "no", "NOT_PARTY"))
        with pytest.raises(LifecycleError) as exc_info:
            outcome.unwrap()
        assert exc_info.value.reason == "NOT_PARTY"

    def test_error_to_dict(self):
        info = ErrorInfo(ErrorCode.VALIDATION, "bad", None)
        assert info.to_dict() == {"code": "VALIDATION", "message": "bad", "reason": None}

    def test_bad_stage_name(self, engine, client, proposal):
        outcome = engine.advance_contract_stage(client, proposal.id, "SHIPPED")
        assert outcome.error.code == ErrorCode.VALIDATION
        with pytest.raises(ValidationError):
            outcome.unwrap()

    def test_from_config_uses_given_gateway(self, config, gateway):
        engine = LifecycleEngine.from_config(config, gateway=gateway)
        assert engine.gateway is gateway
        assert engine.ledger.db_path == config.db_path


class TestScenarios:
    def test_create_contract_in_proposal(self, engine, client, bid):
        contract = engine.create_contract(
            client,
            bid.id,
            "Deliver a responsive site",
            1000,
            [{"title": "Design", "amount": 400}, {"title": "Build", "amount": 600}],
        ).unwrap()

        assert contract.stage == ContractStage.PROPOSAL
        assert contract.amount == Decimal("1000.00")
        assert [m.status for m in contract.milestones] == [MilestoneStatus.PENDING] * 2

    def test_milestones_must_sum_to_amount(self, engine, client, bid):
        outcome = engine.create_contract(
            client,
            bid.id,
            "Deliver a responsive site",
            1000,
            [{"title": "Design", "amount": 400}, {"title": "Build", "amount": 500}],
        )
        assert outcome.error.code == ErrorCode.VALIDATION

    def test_payment_request_needs_completed_milestone(self, engine, freelancer, active_contract):
        milestone = active_contract.milestones[0]

        early = engine.record_milestone_progress(
            freelancer, milestone.id, "Pay me", MilestoneStatus.PAYMENT_REQUESTED
        )
        assert early.error.code == ErrorCode.INVALID_TRANSITION

        engine.record_milestone_progress(
            freelancer, milestone.id, "Started", MilestoneStatus.IN_PROGRESS
        ).unwrap()
        engine.record_milestone_progress(
            freelancer, milestone.id, "Done", MilestoneStatus.COMPLETED
        ).unwrap()
        record = engine.record_milestone_progress(
            freelancer, milestone.id, "Pay me", MilestoneStatus.PAYMENT_REQUESTED
        ).unwrap()

        assert record.payment.status == PaymentStatus.PENDING
        assert record.payment.amount == milestone.amount

    def test_completion_waits_for_every_milestone(
        self, engine, ledger, client, freelancer, active_contract, fund_milestone
    ):
        first = fund_milestone(active_contract, 0)
        engine.record_milestone_progress(
            freelancer, active_contract.milestones[1].id, "Started", MilestoneStatus.IN_PROGRESS
        ).unwrap()
        engine.on_escrow_hold_succeeded(first.hold.hold_id).unwrap()
        engine.advance_contract_stage(freelancer, active_contract.id, "REVIEW").unwrap()

        early = engine.advance_contract_stage(client, active_contract.id, "COMPLETED")
        assert early.error.code == ErrorCode.INVALID_STATE

        milestone = active_contract.milestones[1]
        engine.record_milestone_progress(
            freelancer, milestone.id, "Done", MilestoneStatus.COMPLETED
        ).unwrap()
        engine.record_milestone_progress(
            freelancer, milestone.id, "Pay me", MilestoneStatus.PAYMENT_REQUESTED
        ).unwrap()
        second = engine.fund_milestone(client, active_contract.id, milestone.id).unwrap()
        result = engine.on_escrow_hold_succeeded(second.hold.hold_id).unwrap()

        assert result.contract_completed is True
        contract = ledger.get_contract(active_contract.id)
        assert contract.stage == ContractStage.COMPLETED
        assert contract.end_date is not None

    def test_client_completes_after_settling_in_payment(
        self, engine, ledger, client, freelancer, active_contract, fund_milestone
    ):
        for index in (0, 1):
            funded = fund_milestone(active_contract, index)
            engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()
        engine.advance_contract_stage(freelancer, active_contract.id, "REVIEW").unwrap()

        contract = engine.advance_contract_stage(client, active_contract.id, "COMPLETED").unwrap()

        assert contract.stage == ContractStage.COMPLETED
        assert contract.end_date is not None
        history = engine.contract_history(client, active_contract.id).unwrap()
        assert [t.to_stage for t in history][-1] == ContractStage.COMPLETED

    def test_refund_after_completion_rejected(
        self, engine, client, freelancer, active_contract, fund_milestone
    ):
        for index in (0, 1):
            funded = fund_milestone(active_contract, index)
            engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()
        engine.advance_contract_stage(freelancer, active_contract.id, "REVIEW").unwrap()
        engine.advance_contract_stage(client, active_contract.id, "COMPLETED").unwrap()

        outcome = engine.refund_escrow(client, active_contract.id)

        assert outcome.error.code == ErrorCode.INVALID_STATE


class TestCancellation:
    def test_cancel_refused_while_funds_held(
        self, engine, ledger, client, active_contract, fund_milestone
    ):
        fund_milestone(active_contract)

        outcome = engine.advance_contract_stage(client, active_contract.id, "CANCELLED")

        assert outcome.error.code == ErrorCode.INVALID_STATE
        assert ledger.get_contract(active_contract.id).stage == ContractStage.PAYMENT

    def test_disputed_contract_can_only_cancel(self, engine, client, freelancer, active_contract):
        engine.advance_contract_stage(client, active_contract.id, "DISPUTED").unwrap()

        back = engine.advance_contract_stage(freelancer, active_contract.id, "REVIEW")
        assert back.error.code == ErrorCode.INVALID_TRANSITION

        cancelled = engine.advance_contract_stage(freelancer, active_contract.id, "CANCELLED")
        assert cancelled.unwrap().stage == ContractStage.CANCELLED
