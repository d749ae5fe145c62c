"""Tests for the escrow reconciler (asynchronous hold confirmations)."""

from decimal import Decimal

import pytest

from gigledger.contracts.models import ContractStage, MilestoneStatus, NotificationType
from gigledger.errors import ErrorCode, GatewayUnavailableError, OrphanEventError
from gigledger.payments.events import HoldEvent, HoldOutcome
from gigledger.payments.models import PaymentStatus
from gigledger.payments.reconciler import EscrowReconciler, ReconcileAction
from gigledger.principals import Principal, Role


def succeeded(hold_id, payment_id=None, event_type="payment_intent.succeeded"):
    return {
        "id": "evt_1",
        "type": event_type,
        "data": {"object": {"id": hold_id, "metadata": {"payment_id": payment_id}}},
    }


class TestHoldSucceeded:
    """Tests for on_escrow_hold_succeeded."""

    def test_settles_payment(self, engine, ledger, gateway, active_contract, fund_milestone):
        funded = fund_milestone(active_contract)

        result = engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()

        assert result.action == ReconcileAction.SETTLED
        assert result.payment_id == funded.payment.id
        payment = ledger.get_payment(funded.payment.id)
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.transfer_id == gateway.transfers[0]["id"]
        milestone = ledger.get_milestone(active_contract.milestones[0].id)
        assert milestone.status == MilestoneStatus.PAID

    def test_replay_is_idempotent(
        self, engine, ledger, gateway, freelancer, active_contract, fund_milestone
    ):
        funded = fund_milestone(active_contract)

        first = engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()
        second = engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()

        assert first.action == ReconcileAction.SETTLED
        assert second.action == ReconcileAction.ALREADY_SETTLED
        assert len(gateway.transfers) == 1
        received = [
            n
            for n in ledger.list_notifications(freelancer.id)
            if n.type == NotificationType.PAYMENT_RECEIVED
        ]
        assert len(received) == 1

    def test_webhook_after_release_is_noop(
        self, engine, gateway, client, active_contract, fund_milestone
    ):
        funded = fund_milestone(active_contract)
        engine.release_escrow(client, active_contract.id, active_contract.milestones[0].id).unwrap()

        result = engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()

        assert result.action == ReconcileAction.ALREADY_SETTLED
        assert len(gateway.transfers) == 1

    def test_orphan_event(self, engine):
        outcome = engine.on_escrow_hold_succeeded("pi_unknown")
        assert outcome.error.code == ErrorCode.ORPHAN_EVENT

    def test_orphan_raises_from_service(self, ledger, gateway, config):
        reconciler = EscrowReconciler(ledger, gateway, config)
        with pytest.raises(OrphanEventError):
            reconciler.on_hold_succeeded("pi_unknown", "no-such-payment")

    def test_finds_payment_by_metadata(
        self, engine, ledger, gateway, active_contract, drive_to_payment_requested
    ):
        record = drive_to_payment_requested(active_contract.milestones[0].id)

        result = engine.on_escrow_hold_succeeded("pi_unrecorded", record.payment.id).unwrap()

        assert result.action == ReconcileAction.SETTLED
        payment = ledger.get_payment(record.payment.id)
        assert payment.payment_intent_id == "pi_unrecorded"
        assert payment.status == PaymentStatus.COMPLETED
        assert ledger.get_contract(active_contract.id).payment_intent_id == "pi_unrecorded"

    def test_fallback_records_hold_on_contract(
        self, engine, ledger, freelancer, active_contract, drive_to_payment_requested
    ):
        record = drive_to_payment_requested(active_contract.milestones[0].id)
        engine.advance_contract_stage(freelancer, active_contract.id, "DISPUTED").unwrap()

        result = engine.on_escrow_hold_succeeded("pi_unrecorded", record.payment.id).unwrap()

        assert result.action == ReconcileAction.DEFERRED
        assert ledger.get_payment(record.payment.id).payment_intent_id == "pi_unrecorded"
        assert ledger.get_contract(active_contract.id).payment_intent_id == "pi_unrecorded"

    def test_metadata_for_superseded_hold_is_orphan(
        self, engine, active_contract, fund_milestone
    ):
        funded = fund_milestone(active_contract)
        outcome = engine.on_escrow_hold_succeeded("pi_stale", funded.payment.id)
        assert outcome.error.code == ErrorCode.ORPHAN_EVENT

    def test_deferred_when_contract_not_executing(
        self, engine, ledger, gateway, freelancer, active_contract, fund_milestone
    ):
        funded = fund_milestone(active_contract)
        engine.advance_contract_stage(freelancer, active_contract.id, "DISPUTED").unwrap()

        result = engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()

        assert result.action == ReconcileAction.DEFERRED
        assert gateway.transfers == []
        assert ledger.get_payment(funded.payment.id).status == PaymentStatus.PROCESSING

    def test_deferred_without_payout_account(self, engine, gateway, client, make_bid):
        bid = make_bid(payout_account=None, freelancer_id="freelancer-2")
        worker = Principal("freelancer-2", Role.FREELANCER)
        contract = engine.create_contract(
            client, bid.id, "Terms", 50, [{"title": "All", "amount": 50}]
        ).unwrap()
        engine.advance_contract_stage(worker, contract.id, "APPROVAL").unwrap()
        engine.advance_contract_stage(client, contract.id, "PAYMENT").unwrap()
        milestone_id = contract.milestones[0].id
        for status in ("IN_PROGRESS", "COMPLETED", "PAYMENT_REQUESTED"):
            engine.record_milestone_progress(worker, milestone_id, "step", status).unwrap()
        funded = engine.fund_milestone(client, contract.id, milestone_id).unwrap()

        result = engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()

        assert result.action == ReconcileAction.DEFERRED
        assert gateway.transfers == []

    def test_transfer_outage_is_redeliverable(
        self, engine, ledger, gateway, active_contract, fund_milestone
    ):
        funded = fund_milestone(active_contract)
        gateway.fail_next("transfer", GatewayUnavailableError("timeout"))

        outcome = engine.on_escrow_hold_succeeded(funded.hold.hold_id)
        assert outcome.error.code == ErrorCode.GATEWAY_UNAVAILABLE
        assert ledger.get_payment(funded.payment.id).status == PaymentStatus.PROCESSING

        assert engine.on_escrow_hold_succeeded(funded.hold.hold_id).ok
        assert ledger.get_payment(funded.payment.id).status == PaymentStatus.COMPLETED

    def test_completes_only_under_review(
        self, engine, ledger, freelancer, active_contract, fund_milestone
    ):
        first = fund_milestone(active_contract, 0)
        second = fund_milestone(active_contract, 1)

        engine.on_escrow_hold_succeeded(first.hold.hold_id).unwrap()
        engine.advance_contract_stage(freelancer, active_contract.id, "REVIEW").unwrap()
        result = engine.on_escrow_hold_succeeded(second.hold.hold_id).unwrap()

        assert result.contract_completed is True
        contract = ledger.get_contract(active_contract.id)
        assert contract.stage == ContractStage.COMPLETED
        assert contract.amount == Decimal("1000.00")

    def test_all_paid_in_payment_stage_stays_open(
        self, engine, ledger, active_contract, fund_milestone
    ):
        for index in (0, 1):
            funded = fund_milestone(active_contract, index)
            result = engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()
            assert result.contract_completed is False

        assert ledger.get_contract(active_contract.id).stage == ContractStage.PAYMENT


class TestHoldFailed:
    """Tests for on_escrow_hold_failed."""

    def test_marks_payment_failed(self, engine, ledger, client, active_contract, fund_milestone):
        funded = fund_milestone(active_contract)

        result = engine.on_escrow_hold_failed(funded.hold.hold_id).unwrap()

        assert result.action == ReconcileAction.FAILED
        assert ledger.get_payment(funded.payment.id).status == PaymentStatus.FAILED
        milestone = ledger.get_milestone(active_contract.milestones[0].id)
        assert milestone.status == MilestoneStatus.PAYMENT_REQUESTED
        notes = [n.type for n in ledger.list_notifications(client.id)]
        assert NotificationType.PAYMENT_FAILED in notes

    def test_failure_after_settlement_is_ignored(
        self, engine, ledger, active_contract, fund_milestone
    ):
        funded = fund_milestone(active_contract)
        engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()

        result = engine.on_escrow_hold_failed(funded.hold.hold_id).unwrap()

        assert result.action == ReconcileAction.IGNORED
        assert ledger.get_payment(funded.payment.id).status == PaymentStatus.COMPLETED

    def test_success_after_failure_settles(self, engine, ledger, active_contract, fund_milestone):
        funded = fund_milestone(active_contract)
        engine.on_escrow_hold_failed(funded.hold.hold_id).unwrap()

        result = engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()

        assert result.action == ReconcileAction.SETTLED
        assert ledger.get_payment(funded.payment.id).status == PaymentStatus.COMPLETED

    def test_orphan_failure(self, engine):
        outcome = engine.on_escrow_hold_failed("pi_unknown")
        assert outcome.error.code == ErrorCode.ORPHAN_EVENT


class TestClosedContracts:
    """Holds that succeed after their contract closed go back to the client."""

    def fail_then_cancel(self, engine, client, contract, funded):
        engine.on_escrow_hold_failed(funded.hold.hold_id).unwrap()
        engine.advance_contract_stage(client, contract.id, "CANCELLED").unwrap()

    def test_success_after_cancel_is_refunded(
        self, engine, ledger, gateway, client, active_contract, fund_milestone
    ):
        funded = fund_milestone(active_contract)
        self.fail_then_cancel(engine, client, active_contract, funded)

        result = engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()

        assert result.action == ReconcileAction.REFUNDED
        payment = ledger.get_payment(funded.payment.id)
        assert payment.status == PaymentStatus.REFUNDED
        assert payment.refund_id == gateway.refunds[0]["id"]
        # The void on cancel and the refund share a key, so money moves once
        assert len(gateway.refunds) == 1
        assert gateway.transfers == []
        notes = [n.type for n in ledger.list_notifications(client.id)]
        assert NotificationType.PAYMENT_REFUNDED in notes

    def test_refund_when_void_failed(
        self, engine, ledger, gateway, client, active_contract, fund_milestone
    ):
        funded = fund_milestone(active_contract)
        gateway.fail_next("refund", GatewayUnavailableError("timeout"))
        self.fail_then_cancel(engine, client, active_contract, funded)
        assert gateway.refunds == []

        result = engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()

        assert result.action == ReconcileAction.REFUNDED
        assert [r["hold_id"] for r in gateway.refunds] == [funded.hold.hold_id]
        assert ledger.get_payment(funded.payment.id).status == PaymentStatus.REFUNDED

    def test_replay_after_refund(self, engine, gateway, client, active_contract, fund_milestone):
        funded = fund_milestone(active_contract)
        self.fail_then_cancel(engine, client, active_contract, funded)
        engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()

        result = engine.on_escrow_hold_succeeded(funded.hold.hold_id).unwrap()

        assert result.action == ReconcileAction.ALREADY_SETTLED
        assert len(gateway.refunds) == 1

    def test_refund_outage_is_redeliverable(
        self, engine, ledger, gateway, client, active_contract, fund_milestone
    ):
        funded = fund_milestone(active_contract)
        self.fail_then_cancel(engine, client, active_contract, funded)
        gateway.fail_next("refund", GatewayUnavailableError("timeout"))

        outcome = engine.on_escrow_hold_succeeded(funded.hold.hold_id)

        assert outcome.error.code == ErrorCode.GATEWAY_UNAVAILABLE
        assert ledger.get_payment(funded.payment.id).status == PaymentStatus.FAILED
        assert engine.on_escrow_hold_succeeded(funded.hold.hold_id).ok
        assert ledger.get_payment(funded.payment.id).status == PaymentStatus.REFUNDED


class TestGatewayEvents:
    """Tests for handle_gateway_event dispatch."""

    def test_succeeded_event(self, engine, active_contract, fund_milestone):
        funded = fund_milestone(active_contract)

        result = engine.handle_gateway_event(
            succeeded(funded.hold.hold_id, funded.payment.id)
        ).unwrap()

        assert result.action == ReconcileAction.SETTLED

    @pytest.mark.parametrize(
        "event_type", ["payment_intent.payment_failed", "payment_intent.canceled"]
    )
    def test_failed_events(self, engine, active_contract, fund_milestone, event_type):
        funded = fund_milestone(active_contract)

        result = engine.handle_gateway_event(
            succeeded(funded.hold.hold_id, event_type=event_type)
        ).unwrap()

        assert result.action == ReconcileAction.FAILED

    def test_ignored_event_type(self, engine):
        result = engine.handle_gateway_event(succeeded("pi_1", event_type="charge.refunded"))
        assert result.unwrap().action == ReconcileAction.IGNORED

    def test_event_without_hold_id(self, engine):
        outcome = engine.handle_gateway_event(
            {"id": "evt", "type": "payment_intent.succeeded", "data": {"object": {}}}
        )
        assert outcome.error.code == ErrorCode.VALIDATION

    def test_reconciler_handle(self, ledger, gateway, config, active_contract, fund_milestone):
        funded = fund_milestone(active_contract)
        reconciler = EscrowReconciler(ledger, gateway, config)

        result = reconciler.handle(
            HoldEvent(event_id="evt", hold_id=funded.hold.hold_id, outcome=HoldOutcome.FAILED)
        )

        assert result.action == ReconcileAction.FAILED
