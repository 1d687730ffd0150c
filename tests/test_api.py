"""
Integration tests for the loan servicing API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from datetime import date, timedelta
from fastapi.testclient import TestClient

from loan_servicing.api import app
from loan_servicing.api.dependencies import LoanServicingSystem, get_system
from loan_servicing.config import LoanServicingConfig
from loan_servicing.storage import InMemoryStorage


MERCHANT = {"X-Actor-Id": "merchant-1", "X-Actor-Role": "merchant"}
NBFC_ADMIN = {"X-Actor-Id": "nbfc-admin-1", "X-Actor-Role": "nbfc_admin", "X-Nbfc-Id": "nbfc-1"}
ADMIN = {"X-Actor-Id": "admin-1", "X-Actor-Role": "admin"}

APPLICATION = {
    "category": "product",
    "applicant": {
        "first_name": "Ravi",
        "last_name": "Kumar",
        "aadhaar_number": "123456789012",
        "pan_number": "ABCDE1234F",
        "mobile": "9876543210",
        "email": "ravi.kumar@example.com",
        "address": "12 MG Road, Bengaluru",
        "pin_code": "560001"
    },
    "principal_amount": "85000",
    "tenure_months": 6,
    "nbfc_id": "nbfc-1",
    "product_name": "Samsung Galaxy S24",
    "product_price": "85000"
}

DOCUMENTS = ["aadhaar", "pan", "utility_bill", "bank_statement", "photo", "proforma_invoice"]


@pytest.fixture
def system():
    """Fresh in-memory system per test"""
    return LoanServicingSystem(config=LoanServicingConfig(), storage=InMemoryStorage())


@pytest.fixture
def client(system):
    """merchant-1 is tied up with nbfc-1"""
    app.dependency_overrides[get_system] = lambda: system
    client = TestClient(app)
    assert client.post("/tie-ups", json={"nbfc_id": "nbfc-1"}, headers=MERCHANT).status_code == 201
    r = client.post("/tie-ups/merchant-1/nbfc-1/response", json={"approve": True}, headers=NBFC_ADMIN)
    assert r.status_code == 200
    yield client
    app.dependency_overrides.clear()


def submit(client):
    r = client.post("/loans", json=APPLICATION, headers=MERCHANT)
    assert r.status_code == 201
    return r.json()


def transition(client, loan_id, action, payload=None, headers=NBFC_ADMIN):
    return client.post(f"/loans/{loan_id}/transitions",
                       json={"action": action, "payload": payload or {}}, headers=headers)


def disbursed_loan(client):
    loan = submit(client)
    assert transition(client, loan["id"], "accept").status_code == 200
    for document_type in DOCUMENTS:
        r = client.post(f"/loans/{loan['id']}/documents", headers=MERCHANT, json={
            "document_type": document_type,
            "artifact_reference": f"kyc/{loan['id']}/{document_type}.pdf"
        })
        assert r.status_code == 201
    assert transition(client, loan["id"], "verify").status_code == 200
    r = transition(client, loan["id"], "disburse", {
        "disbursement_date": "2025-01-31",
        "amount": "85000",
        "transaction_reference": "UTR2025013100042",
        "proof_reference": "proofs/utr.pdf"
    })
    assert r.status_code == 200
    return r.json()


class TestHealthEndpoints:
    """Test basic health and root endpoints"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "healthy"

    def test_root(self, client):
        r = client.get("/")
        assert r.status_code == 200
        assert "loans" in r.json()["endpoints"]


class TestLoanEndpoints:
    """Test loan submission and lifecycle over HTTP"""

    def test_submit(self, client):
        loan = submit(client)

        assert loan["status"] == "Pending"
        assert loan["emi_amount"] == "15691"
        assert loan["total_payable"] == "94146"
        assert loan["terms"]["interest_rate_source"] == "default"
        assert loan["merchant_id"] == "merchant-1"

    def test_submit_invalid_pan(self, client):
        application = {**APPLICATION, "applicant": {**APPLICATION["applicant"], "pan_number": "12345"}}
        r = client.post("/loans", json=application, headers=MERCHANT)

        assert r.status_code == 422
        assert r.json()["error"] == "validation_error"
        assert r.json()["details"]["field"] == "pan_number"

    def test_missing_actor_headers(self, client):
        r = client.post("/loans", json=APPLICATION)
        assert r.status_code == 422

    def test_unknown_role(self, client):
        r = client.get("/loans", headers={"X-Actor-Id": "x", "X-Actor-Role": "auditor"})
        assert r.status_code == 422

    def test_get_missing_loan(self, client):
        r = client.get("/loans/does-not-exist", headers=ADMIN)
        assert r.status_code == 404
        assert r.json()["error"] == "loan_not_found"

    def test_verify_from_pending_conflicts(self, client):
        loan = submit(client)
        r = transition(client, loan["id"], "verify")

        assert r.status_code == 409
        assert r.json()["details"] == {"current": "Pending", "requested": "verify", "loan_id": loan["id"]}

    def test_merchant_cannot_accept(self, client):
        loan = submit(client)
        r = transition(client, loan["id"], "accept", headers=MERCHANT)
        assert r.status_code == 403

    def test_rejected_loan_is_terminal(self, client):
        loan = submit(client)
        transition(client, loan["id"], "reject", {"reason": "income proof mismatch"})

        r = transition(client, loan["id"], "accept")

        assert r.status_code == 409
        assert r.json()["error"] == "terminal_state"

    def test_full_lifecycle(self, client):
        loan = disbursed_loan(client)
        assert loan["status"] == "Loan Disbursed"

        r = transition(client, loan["id"], "deliver", {"delivery_date": "2025-02-05"}, headers=MERCHANT)
        assert r.status_code == 200
        assert r.json()["status"] == "Product Delivered"

        history = client.get(f"/loans/{loan['id']}/history", headers=ADMIN).json()["history"]
        assert [h["to_status"] for h in history] == [
            "Pending", "Accepted", "Verified", "Loan Disbursed", "Product Delivered"
        ]

        disbursement = client.get(f"/loans/{loan['id']}/disbursement", headers=ADMIN).json()["disbursement"]
        assert disbursement["transaction_reference"] == "UTR2025013100042"

    def test_deliver_tomorrow_rejected(self, client):
        loan = disbursed_loan(client)
        tomorrow = (date.today() + timedelta(days=1)).isoformat()

        r = transition(client, loan["id"], "deliver", {"delivery_date": tomorrow})

        assert r.status_code == 422

    def test_second_disbursement_conflicts(self, client):
        loan = disbursed_loan(client)
        r = transition(client, loan["id"], "disburse", {
            "disbursement_date": "2025-01-31", "amount": "85000",
            "transaction_reference": "UTR-2", "proof_reference": "proof-2"
        })
        assert r.status_code == 409

    def test_documents_listing(self, client):
        loan = submit(client)
        client.post(f"/loans/{loan['id']}/documents", headers=MERCHANT,
                    json={"document_type": "pan", "artifact_reference": "kyc/pan.pdf"})

        r = client.get(f"/loans/{loan['id']}/documents", headers=MERCHANT)

        assert [d["document_type"] for d in r.json()["documents"]] == ["pan"]
        assert "proforma_invoice" in r.json()["missing"]

    def test_list_is_scoped(self, client):
        submit(client)
        other = {"X-Actor-Id": "merchant-2", "X-Actor-Role": "merchant"}

        assert client.get("/loans", headers=MERCHANT).json()["count"] == 1
        assert client.get("/loans", headers=other).json()["count"] == 0
        assert client.get("/loans?status=Pending", headers=ADMIN).json()["count"] == 1


class TestPaymentEndpoints:
    """Test schedule and installment recording over HTTP"""

    def test_schedule(self, client):
        loan = disbursed_loan(client)
        r = client.get(f"/loans/{loan['id']}/schedule", headers=MERCHANT)

        assert r.status_code == 200
        schedule = r.json()["schedule"]
        assert len(schedule) == 6
        assert schedule[0]["due_date"] == "2025-02-28"
        assert schedule[0]["month"] == "Feb 2025"
        assert all(row["status"] == "Pending" for row in schedule)

    def test_record_payment_then_conflict(self, client):
        loan = disbursed_loan(client)
        url = f"/loans/{loan['id']}/installments/2"

        r = client.post(url, json={"status": "Paid", "paid_date": "2025-03-10"}, headers=NBFC_ADMIN)
        assert r.status_code == 200
        assert r.json()["paid_amount"] == "15691"

        r = client.post(url, json={"status": "ECS Bounce", "paid_date": "2025-03-10"}, headers=NBFC_ADMIN)
        assert r.status_code == 409
        assert r.json()["error"] == "already_completed"

        summary = client.get(f"/loans/{loan['id']}/summary", headers=ADMIN).json()
        assert summary["paid_amount"] == "15691"
        assert summary["installments_completed"] == 1

    def test_invalid_status_value(self, client):
        loan = disbursed_loan(client)
        r = client.post(f"/loans/{loan['id']}/installments/0", json={"status": "Bounced"}, headers=ADMIN)
        assert r.status_code == 422

    def test_merchant_cannot_record_payment(self, client):
        loan = disbursed_loan(client)
        r = client.post(f"/loans/{loan['id']}/installments/0", json={"status": "Paid"}, headers=MERCHANT)
        assert r.status_code == 403

    def test_installment_history(self, client):
        loan = disbursed_loan(client)
        client.post(f"/loans/{loan['id']}/installments/0", json={"status": "Due Missed"}, headers=ADMIN)

        r = client.get(f"/loans/{loan['id']}/installments/0/history", headers=ADMIN)

        assert r.json()["history"][0]["to_status"] == "Due Missed"

    def test_filter_by_payment_status(self, client):
        loan = disbursed_loan(client)
        client.post(f"/loans/{loan['id']}/installments/0", json={"status": "ECS Bounce"}, headers=ADMIN)
        submit(client)

        bounced = client.get("/loans?payment_status=bounce", headers=NBFC_ADMIN).json()
        on_track = client.get("/loans?payment_status=ontrack", headers=NBFC_ADMIN).json()

        assert [l["id"] for l in bounced["loans"]] == [loan["id"]]
        assert on_track["count"] == 0

    def test_portfolio(self, client):
        loan = disbursed_loan(client)
        client.post(f"/loans/{loan['id']}/installments/0", json={"status": "Paid"}, headers=ADMIN)

        r = client.get("/portfolio", headers=NBFC_ADMIN)

        assert r.status_code == 200
        assert r.json()["loan_count"] == 1
        assert r.json()["status_counts"]["ontrack"] == 1
        assert r.json()["total_collected"] == "15691"
        assert r.json()["total_remaining"] == "78455"


class TestTieUpEndpoints:
    """Test tie-up requests over HTTP"""

    OTHER_MERCHANT = {"X-Actor-Id": "merchant-2", "X-Actor-Role": "merchant"}

    def test_submit_without_tie_up(self, client):
        r = client.post("/loans", json={**APPLICATION, "nbfc_id": None}, headers=self.OTHER_MERCHANT)
        assert r.status_code == 403

    def test_submit_to_untied_nbfc(self, client):
        r = client.post("/loans", json={**APPLICATION, "nbfc_id": "nbfc-2"}, headers=MERCHANT)
        assert r.status_code == 403

    def test_list_tie_ups_is_scoped(self, client):
        client.post("/tie-ups", json={"nbfc_id": "nbfc-2"}, headers=self.OTHER_MERCHANT)

        mine = client.get("/tie-ups", headers=MERCHANT).json()
        nbfc = client.get("/tie-ups?status=approved", headers=NBFC_ADMIN).json()

        assert [t["nbfc_id"] for t in mine["tie_ups"]] == ["nbfc-1"]
        assert [t["merchant_id"] for t in nbfc["tie_ups"]] == ["merchant-1"]
        assert client.get("/tie-ups", headers=ADMIN).json()["count"] == 2

    def test_cancel_then_answer(self, client):
        client.post("/tie-ups", json={"nbfc_id": "nbfc-2"}, headers=self.OTHER_MERCHANT)

        r = client.post("/tie-ups/nbfc-2/cancel", headers=self.OTHER_MERCHANT)
        assert r.status_code == 200
        assert r.json()["status"] == "cancelled"

        r = client.post("/tie-ups/merchant-2/nbfc-2/response", json={"approve": True}, headers=ADMIN)
        assert r.status_code == 422

    def test_wrong_nbfc_cannot_approve(self, client):
        client.post("/tie-ups", json={"nbfc_id": "nbfc-2"}, headers=self.OTHER_MERCHANT)
        r = client.post("/tie-ups/merchant-2/nbfc-2/response", json={"approve": True}, headers=NBFC_ADMIN)
        assert r.status_code == 403
