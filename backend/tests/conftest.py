"""Pytest configuration and fixtures."""

import asyncio
import os
import secrets
import uuid
from decimal import Decimal

import pytest

# Generate a unique test secret for this test run to prevent token forgery
_TEST_JWT_SECRET = f"test-only-{secrets.token_urlsafe(32)}"

os.environ.setdefault("JWT_SECRET_KEY", _TEST_JWT_SECRET)
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_only")

from app.auth import create_access_token  # noqa: E402
from app.config import get_settings  # noqa: E402
from app.database import set_lifecycle_engine  # noqa: E402
from app.main import app  # noqa: E402
from app.rate_limit import limiter  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from gigledger.config import LedgerConfig  # noqa: E402
from gigledger.contracts.models import Bid, Project  # noqa: E402
from gigledger.engine import LifecycleEngine  # noqa: E402
from gigledger.ledger.sqlite import SQLiteLedgerStore  # noqa: E402
from gigledger.payments.gateway import Hold, HoldStatus  # noqa: E402

CLIENT_ID = "usr_TEST_CLIENT_000"
FREELANCER_ID = "usr_TEST_FREELANCER_000"


class StubGateway:
    """Escrow gateway that records calls instead of reaching Stripe."""

    def __init__(self):
        self.status = HoldStatus.SUCCEEDED
        self.transfers = []
        self.refunds = []
        self._by_key = {}

    def create_hold(self, amount, currency, metadata, idempotency_key):
        if idempotency_key not in self._by_key:
            self._by_key[idempotency_key] = Hold(
                hold_id=f"pi_{uuid.uuid4().hex[:12]}",
                client_secret="pi_secret_test",
                metadata=dict(metadata),
            )
        return self._by_key[idempotency_key]

    def verify_hold(self, hold_id):
        return self.status

    def transfer(self, hold_id, payee_account_id, amount, currency, idempotency_key):
        if idempotency_key not in self._by_key:
            self._by_key[idempotency_key] = f"tr_{uuid.uuid4().hex[:12]}"
            self.transfers.append((hold_id, payee_account_id, Decimal(amount)))
        return self._by_key[idempotency_key]

    def refund(self, hold_id, idempotency_key):
        if idempotency_key not in self._by_key:
            self._by_key[idempotency_key] = f"re_{uuid.uuid4().hex[:12]}"
            self.refunds.append(hold_id)
        return self._by_key[idempotency_key]


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    """Keep ledger and logs in a temp directory."""
    monkeypatch.setenv("GIGLEDGER_DATA_DIR", str(tmp_path))
    return tmp_path


@pytest.fixture(autouse=True)
def no_rate_limits(monkeypatch):
    """Rate limits are per IP; every TestClient request comes from the same one."""
    monkeypatch.setattr(limiter, "enabled", False)


@pytest.fixture
def gateway():
    return StubGateway()


@pytest.fixture
def engine(tmp_path, gateway):
    """Lifecycle engine on a temp ledger, injected into the app."""
    config = LedgerConfig(db_path=tmp_path / "ledger.db")
    engine = LifecycleEngine(SQLiteLedgerStore(config.db_path), gateway, config)
    set_lifecycle_engine(engine)
    yield engine
    set_lifecycle_engine(None)


@pytest.fixture
def engine_calls(engine, monkeypatch):
    """Record each engine call and whether it ran on the event loop thread."""
    seen = []

    def watch(name):
        original = getattr(engine, name)

        def watched(*args, **kwargs):
            try:
                asyncio.get_running_loop()
                seen.append((name, "event-loop"))
            except RuntimeError:
                seen.append((name, "worker"))
            return original(*args, **kwargs)

        monkeypatch.setattr(engine, name, watched)

    for name in (
        "get_contract",
        "advance_contract_stage",
        "record_milestone_progress",
        "on_escrow_hold_succeeded",
        "on_escrow_hold_failed",
    ):
        watch(name)
    return seen


@pytest.fixture
def client(engine):
    """Create a test client."""
    return TestClient(app)


def _headers(user_id: str, role: str) -> dict:
    token = create_access_token(user_id, role, get_settings())
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def client_headers():
    return _headers(CLIENT_ID, "CLIENT")


@pytest.fixture
def freelancer_headers():
    return _headers(FREELANCER_ID, "FREELANCER")


@pytest.fixture
def stranger_headers():
    return _headers("usr_TEST_STRANGER_000", "CLIENT")


@pytest.fixture
def bid(engine):
    """A pending bid from the freelancer on the client's project."""
    ledger = engine.ledger
    project = Project(
        id=str(uuid.uuid4()),
        client_id=CLIENT_ID,
        title="Logo redesign",
        budget=Decimal("500.00"),
    )
    ledger.save_project(project)
    bid = Bid(
        id=str(uuid.uuid4()),
        project_id=project.id,
        freelancer_id=FREELANCER_ID,
        amount=Decimal("500.00"),
        delivery_time_days=7,
    )
    ledger.save_bid(bid)
    ledger.save_payout_account(FREELANCER_ID, "acct_test_freelancer")
    return bid


@pytest.fixture
def contract_json(client, client_headers, bid):
    """A contract created through the API, as returned by it."""
    response = client.post(
        "/api/v1/contracts",
        json={
            "bid_id": bid.id,
            "terms": "Three logo concepts, two revision rounds",
            "amount": "500.00",
            "milestones": [
                {"title": "Concepts", "amount": "200.00"},
                {"title": "Final files", "amount": "300.00"},
            ],
        },
        headers=client_headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
def active_contract_json(client, client_headers, freelancer_headers, contract_json):
    """The contract moved to PAYMENT through the API."""
    path = f"/api/v1/contracts/{contract_json['id']}/stage"
    response = client.put(path, json={"stage": "APPROVAL"}, headers=freelancer_headers)
    assert response.status_code == 200
    response = client.put(path, json={"stage": "PAYMENT"}, headers=client_headers)
    assert response.status_code == 200
    return response.json()


@pytest.fixture
def requested_milestone(client, freelancer_headers, active_contract_json):
    """Callable that walks a milestone up to PAYMENT_REQUESTED through the API."""

    def _request(index: int = 0) -> dict:
        milestone = active_contract_json["milestones"][index]
        for status in ("IN_PROGRESS", "COMPLETED", "PAYMENT_REQUESTED"):
            response = client.post(
                f"/api/v1/milestones/{milestone['id']}/progress",
                json={"description": f"Now {status}", "status": status},
                headers=freelancer_headers,
            )
            assert response.status_code == 201, response.text
        return response.json()

    return _request
