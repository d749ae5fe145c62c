"""Tests for escrow payment API routes."""

from gigledger.errors import GatewayUnavailableError
from gigledger.payments.gateway import HoldStatus


def fund_path(contract, index=0):
    milestone_id = contract["milestones"][index]["id"]
    return f"/api/v1/contracts/{contract['id']}/milestones/{milestone_id}/fund"


def release_path(contract, index=0):
    milestone_id = contract["milestones"][index]["id"]
    return f"/api/v1/contracts/{contract['id']}/milestones/{milestone_id}/release"


class TestFunding:
    def test_fund(self, client, client_headers, requested_milestone, active_contract_json):
        requested_milestone(0)

        response = client.post(fund_path(active_contract_json), headers=client_headers)

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["client_secret"] == "pi_secret_test"
        assert data["payment"]["status"] == "PROCESSING"
        assert data["payment"]["amount"] == "200.00"

    def test_fund_without_request(self, client, client_headers, active_contract_json):
        response = client.post(fund_path(active_contract_json), headers=client_headers)
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_STATE"

    def test_freelancer_cannot_fund(
        self, client, freelancer_headers, requested_milestone, active_contract_json
    ):
        requested_milestone(0)
        response = client.post(fund_path(active_contract_json), headers=freelancer_headers)
        assert response.status_code == 403

    def test_gateway_outage(
        self,
        client,
        client_headers,
        gateway,
        monkeypatch,
        requested_milestone,
        active_contract_json,
    ):
        requested_milestone(0)

        def unavailable(*args, **kwargs):
            raise GatewayUnavailableError("timeout")

        monkeypatch.setattr(gateway, "create_hold", unavailable)

        response = client.post(fund_path(active_contract_json), headers=client_headers)

        assert response.status_code == 503
        assert response.json()["detail"]["code"] == "GATEWAY_UNAVAILABLE"


class TestRelease:
    def test_release(
        self, client, client_headers, gateway, requested_milestone, active_contract_json
    ):
        requested_milestone(0)
        client.post(fund_path(active_contract_json), headers=client_headers)

        response = client.post(release_path(active_contract_json), headers=client_headers)

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["payment"]["status"] == "COMPLETED"
        assert data["contract_completed"] is False
        assert gateway.transfers[0][1] == "acct_test_freelancer"

    def test_release_unsecured_hold(
        self, client, client_headers, gateway, requested_milestone, active_contract_json
    ):
        requested_milestone(0)
        client.post(fund_path(active_contract_json), headers=client_headers)
        gateway.status = HoldStatus.PENDING

        response = client.post(release_path(active_contract_json), headers=client_headers)

        assert response.status_code == 400
        assert gateway.transfers == []


class TestRefund:
    def test_refund_cancels_contract(
        self, client, client_headers, gateway, requested_milestone, active_contract_json
    ):
        requested_milestone(0)
        client.post(fund_path(active_contract_json), headers=client_headers)

        response = client.post(
            f"/api/v1/contracts/{active_contract_json['id']}/refund",
            json={"reason": "Project shelved"},
            headers=client_headers,
        )

        assert response.status_code == 200, response.text
        assert response.json()["stage"] == "CANCELLED"
        assert len(gateway.refunds) == 1

    def test_refund_without_body(self, client, freelancer_headers, contract_json):
        response = client.post(
            f"/api/v1/contracts/{contract_json['id']}/refund", headers=freelancer_headers
        )
        assert response.status_code == 200
        assert response.json()["stage"] == "CANCELLED"

    def test_outsider_cannot_refund(self, client, stranger_headers, contract_json):
        response = client.post(
            f"/api/v1/contracts/{contract_json['id']}/refund", headers=stranger_headers
        )
        assert response.status_code == 403


class TestSummary:
    def test_summary(
        self, client, client_headers, freelancer_headers, requested_milestone, active_contract_json
    ):
        requested_milestone(0)
        client.post(fund_path(active_contract_json), headers=client_headers)

        client_data = client.get("/api/v1/payments/summary", headers=client_headers).json()
        freelancer_data = client.get(
            "/api/v1/payments/summary", headers=freelancer_headers
        ).json()

        assert client_data["role"] == "CLIENT"
        assert client_data["total_in_escrow"] == "200.00"
        assert client_data["total_paid"] == "0.00"
        assert len(freelancer_data["payments"]) == 1

    def test_summary_as_other_role(self, client, client_headers):
        response = client.get(
            "/api/v1/payments/summary", params={"role": "freelancer"}, headers=client_headers
        )
        assert response.status_code == 200
        assert response.json()["role"] == "FREELANCER"

    def test_summary_bad_role(self, client, client_headers):
        response = client.get(
            "/api/v1/payments/summary", params={"role": "owner"}, headers=client_headers
        )
        assert response.status_code == 422
