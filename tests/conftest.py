"""
Pytest fixtures and test configuration for gigledger tests.
"""

import uuid
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from gigledger.config import LedgerConfig
from gigledger.contracts.models import Bid, Contract, MilestoneStatus, Project
from gigledger.engine import LifecycleEngine
from gigledger.ledger.sqlite import SQLiteLedgerStore
from gigledger.payments.gateway import Hold, HoldStatus
from gigledger.principals import Principal, Role

CLIENT_ID = "client-1"
FREELANCER_ID = "freelancer-1"
OTHER_ID = "stranger-1"
PAYOUT_ACCOUNT = "acct_freelancer_1"


class FakeGateway:
    """In-memory escrow gateway.

    Idempotent on keys the way Stripe is: repeating a key returns the first
    result without moving money again. ``fail_next`` makes the next call of an
    operation raise the given error.
    """

    def __init__(self):
        self.holds: Dict[str, Hold] = {}
        self.hold_status: Dict[str, HoldStatus] = {}
        self.default_status = HoldStatus.SUCCEEDED
        self.transfers: List[dict] = []
        self.refunds: List[dict] = []
        self.calls: List[str] = []
        self._by_key: Dict[str, object] = {}
        self._failures: Dict[str, Exception] = {}

    def fail_next(self, operation: str, error: Exception) -> None:
        self._failures[operation] = error

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        error = self._failures.pop(operation, None)
        if error is not None:
            raise error

    def create_hold(self, amount, currency, metadata, idempotency_key) -> Hold:
        self._enter("create_hold")
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        hold = Hold(
            hold_id=f"pi_{uuid.uuid4().hex[:12]}",
            client_secret="secret",
            metadata=dict(metadata),
        )
        self.holds[hold.hold_id] = hold
        self._by_key[idempotency_key] = hold
        return hold

    def verify_hold(self, hold_id: str) -> HoldStatus:
        self._enter("verify_hold")
        return self.hold_status.get(hold_id, self.default_status)

    def transfer(self, hold_id, payee_account_id, amount, currency, idempotency_key) -> str:
        self._enter("transfer")
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        transfer_id = f"tr_{uuid.uuid4().hex[:12]}"
        self.transfers.append(
            {
                "id": transfer_id,
                "hold_id": hold_id,
                "destination": payee_account_id,
                "amount": Decimal(amount),
                "currency": currency,
            }
        )
        self._by_key[idempotency_key] = transfer_id
        return transfer_id

    def refund(self, hold_id: str, idempotency_key: str) -> str:
        self._enter("refund")
        if idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        refund_id = f"re_{uuid.uuid4().hex[:12]}"
        self.refunds.append({"id": refund_id, "hold_id": hold_id})
        self._by_key[idempotency_key] = refund_id
        return refund_id


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    """Point GIGLEDGER_DATA_DIR (and so the lifecycle logs) at a temp directory."""
    monkeypatch.setenv("GIGLEDGER_DATA_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture
def config(tmp_path):
    return LedgerConfig(db_path=tmp_path / "ledger.db")


@pytest.fixture
def ledger(config):
    return SQLiteLedgerStore(config.db_path)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def engine(ledger, gateway, config):
    return LifecycleEngine(ledger, gateway, config)


@pytest.fixture
def client():
    return Principal(CLIENT_ID, Role.CLIENT)


@pytest.fixture
def freelancer():
    return Principal(FREELANCER_ID, Role.FREELANCER)


@pytest.fixture
def stranger():
    return Principal(OTHER_ID, Role.CLIENT)


@pytest.fixture
def admin():
    return Principal("admin-1", Role.ADMIN)


def seed_bid(
    ledger: SQLiteLedgerStore,
    client_id: str = CLIENT_ID,
    freelancer_id: str = FREELANCER_ID,
    payout_account: Optional[str] = PAYOUT_ACCOUNT,
) -> Bid:
    """Save a project owned by ``client_id`` and a pending bid on it."""
    project = Project(
        id=str(uuid.uuid4()),
        client_id=client_id,
        title="Build a landing page",
        description="Marketing site",
        budget=Decimal("1000.00"),
        skills=["html", "css"],
        category="web",
    )
    ledger.save_project(project)
    bid = Bid(
        id=str(uuid.uuid4()),
        project_id=project.id,
        freelancer_id=freelancer_id,
        amount=Decimal("1000.00"),
        delivery_time_days=14,
        cover_letter="I can do this",
    )
    ledger.save_bid(bid)
    if payout_account:
        ledger.save_payout_account(freelancer_id, payout_account)
    return bid


@pytest.fixture
def make_bid(ledger):
    """Factory for extra project/bid pairs."""

    def _make(**kwargs) -> Bid:
        return seed_bid(ledger, **kwargs)

    return _make


@pytest.fixture
def bid(ledger):
    return seed_bid(ledger)


def two_milestones() -> List[dict]:
    return [
        {"title": "Design", "amount": "400.00"},
        {"title": "Build", "amount": "600.00"},
    ]


@pytest.fixture
def proposal(engine, client, bid) -> Contract:
    """A 1000.00 contract in PROPOSAL with milestones of 400 and 600."""
    return engine.create_contract(
        client, bid.id, "Deliver a responsive site", Decimal("1000.00"), two_milestones()
    ).unwrap()


@pytest.fixture
def active_contract(engine, client, freelancer, proposal) -> Contract:
    """The proposal moved to PAYMENT, ready for milestone work."""
    engine.advance_contract_stage(freelancer, proposal.id, "APPROVAL").unwrap()
    return engine.advance_contract_stage(client, proposal.id, "PAYMENT").unwrap()


def request_payment(engine, freelancer, milestone_id: str):
    """Drive a PENDING milestone to PAYMENT_REQUESTED. Returns the progress record."""
    engine.record_milestone_progress(
        freelancer, milestone_id, "Started", MilestoneStatus.IN_PROGRESS
    ).unwrap()
    engine.record_milestone_progress(
        freelancer, milestone_id, "Done", MilestoneStatus.COMPLETED
    ).unwrap()
    return engine.record_milestone_progress(
        freelancer, milestone_id, "Please pay", MilestoneStatus.PAYMENT_REQUESTED
    ).unwrap()


def fund(engine, client, freelancer, contract: Contract, index: int = 0):
    """Request payment for one milestone and fund it. Returns the funding result."""
    milestone = contract.milestones[index]
    request_payment(engine, freelancer, milestone.id)
    return engine.fund_milestone(client, contract.id, milestone.id).unwrap()


@pytest.fixture
def drive_to_payment_requested(engine, freelancer):
    """Callable that moves a milestone PENDING -> PAYMENT_REQUESTED."""

    def _drive(milestone_id: str):
        return request_payment(engine, freelancer, milestone_id)

    return _drive


@pytest.fixture
def fund_milestone(engine, client, freelancer):
    """Callable that requests payment for a milestone and funds it."""

    def _fund(contract: Contract, index: int = 0):
        return fund(engine, client, freelancer, contract, index)

    return _fund


@pytest.fixture
def milestone_specs() -> List[dict]:
    """Milestone dicts for a 1000.00 contract."""
    return two_milestones()
