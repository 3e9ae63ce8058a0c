"""
API integration tests

Drive the FastAPI app through TestClient over in-memory storage. With auth
disabled the caller is identified by X-User-Id, X-Role and X-School-Id.
"""

import jwt
import pytest
from fastapi.testclient import TestClient

from town_economy.api import create_app, status_for
from town_economy.errors import (
    ConflictError, InsufficientFundsError, InsufficientTreasuryFundsError, InternalError
)

from support import SCHOOL, TOWN, build_economy, student_context, teacher_context


def headers_for(ctx):
    return {"X-User-Id": ctx.user_id, "X-Role": ctx.role.value, "X-School-Id": ctx.school_id}


class TestErrorMapping:

    def test_status_codes(self):
        assert status_for(InsufficientFundsError("x")) == 402
        assert status_for(InsufficientTreasuryFundsError("x")) == 402
        assert status_for(ConflictError("x")) == 409
        assert status_for(InternalError("x")) == 500


class TestEconomyAPI:

    def setup_method(self):
        self.system = build_economy()
        self.client = TestClient(create_app(self.system))
        self.teacher_ctx = teacher_context(self.system)
        self.alice_ctx = student_context(self.system, "alice", balance="500.00", teacher=self.teacher_ctx)
        self.bob_ctx = student_context(self.system, "bob")
        self.teacher = headers_for(self.teacher_ctx)
        self.alice = headers_for(self.alice_ctx)
        self.bob = headers_for(self.bob_ctx)

    def test_health(self):
        response = self.client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_identity_rejected(self):
        assert self.client.get("/accounts/me").status_code == 401

    def test_my_account(self):
        response = self.client.get("/accounts/me", headers=self.alice)
        assert response.status_code == 200
        body = response.json()
        assert body["account"]["balance"] == "500.00"
        assert body["can_transact"] is True

    def test_transfer_approval_flow(self):
        response = self.client.post("/transfers", headers=self.alice, json={
            "to_user_id": self.bob_ctx.user_id, "amount": "100.00", "description": "Lunch"
        })
        assert response.status_code == 201
        transfer_id = response.json()["transfer"]["id"]

        pending = self.client.get("/transfers/pending", headers=self.teacher).json()["transfers"]
        assert [t["id"] for t in pending] == [transfer_id]

        response = self.client.post(f"/transfers/{transfer_id}/approve", headers=self.teacher)
        assert response.status_code == 200
        assert response.json()["transaction"]["amount"] == "100.00"

        bob = self.client.get("/accounts/me", headers=self.bob).json()
        assert bob["account"]["balance"] == "100.00"

        response = self.client.post(f"/transfers/{transfer_id}/approve", headers=self.teacher)
        assert response.status_code == 409
        assert response.json()["error"] == ConflictError.kind

    def test_deny_without_body(self):
        transfer_id = self.client.post("/transfers", headers=self.alice, json={
            "to_user_id": self.bob_ctx.user_id, "amount": "10.00"
        }).json()["transfer"]["id"]
        response = self.client.post(f"/transfers/{transfer_id}/deny", headers=self.teacher)
        assert response.status_code == 200
        assert response.json()["transfer"]["status"] == "denied"

    def test_students_cannot_approve(self):
        transfer_id = self.client.post("/transfers", headers=self.alice, json={
            "to_user_id": self.bob_ctx.user_id, "amount": "10.00"
        }).json()["transfer"]["id"]
        response = self.client.post(f"/transfers/{transfer_id}/approve", headers=self.bob)
        assert response.status_code == 403

    def test_insufficient_funds_is_402(self):
        response = self.client.post("/transfers", headers=self.alice, json={
            "to_user_id": self.bob_ctx.user_id, "amount": "500.01"
        })
        assert response.status_code == 402
        assert response.json()["error"] == InsufficientFundsError.kind

    def test_invalid_amount_is_400(self):
        response = self.client.post("/transfers", headers=self.alice, json={
            "to_user_id": self.bob_ctx.user_id, "amount": "lots"
        })
        assert response.status_code == 400

    def test_unknown_loan_is_404(self):
        assert self.client.get("/loans/missing", headers=self.teacher).status_code == 404

    def test_loan_flow(self):
        response = self.client.post("/loans/apply", headers=self.bob, json={
            "amount": "1000.00", "term_months": 6, "purpose": "Bike"
        })
        assert response.status_code == 201
        loan = response.json()["loan"]
        assert loan["monthly_payment"] == "175.00"

        response = self.client.post("/loans/approve", headers=self.teacher, json={
            "loan_id": loan["id"], "approved": True
        })
        assert response.json()["loan"]["status"] == "active"

        response = self.client.post("/loans/pay", headers=self.bob, json={
            "loan_id": loan["id"], "amount": "175.00"
        })
        assert response.status_code == 200
        assert response.json()["outstanding_balance"] == "875.00"

    def test_salary_run(self):
        self.client.put(f"/accounts/students/{self.bob_ctx.user_id}/job", headers=self.teacher, json={
            "job_title": "Mayor", "salary": "1500.00"
        })
        response = self.client.post(f"/treasury/{TOWN}/pay-salaries", headers=self.teacher)
        assert response.status_code == 200

        bob = self.client.get("/accounts/me", headers=self.bob).json()
        assert bob["account"]["balance"] == "1350.00"

    def test_land_purchase(self):
        response = self.client.post("/land/parcels", headers=self.teacher, json={
            "town_class": TOWN, "row_index": 0, "col_index": 0, "biome_type": "Desert", "value": "400.00"
        })
        assert response.status_code == 201
        parcel_id = response.json()["parcel"]["id"]

        response = self.client.post("/land/purchase-requests", headers=self.alice, json={
            "parcel_id": parcel_id, "offered_price": "400.00"
        })
        assert response.status_code == 201
        request_id = response.json()["request"]["id"]

        response = self.client.put(f"/land/purchase-requests/{request_id}", headers=self.teacher,
                                   json={"approve": True})
        assert response.status_code == 200

        properties = self.client.get("/land/my-properties", headers=self.alice).json()["properties"]
        assert properties[0]["parcel"]["grid_code"] == "A1"

        response = self.client.get(f"/land/parcels/{TOWN}/a1", headers=self.alice)
        assert response.json()["parcel"]["owner_id"] == self.alice_ctx.user_id

    def test_factory_reset_requires_confirmation(self):
        response = self.client.post("/admin/factory-reset", headers=self.teacher, json={"confirm": "yes"})
        assert response.status_code == 400

        response = self.client.post("/admin/factory-reset", headers=self.teacher, json={"confirm": "RESET"})
        assert response.status_code == 200
        assert self.client.get("/accounts/me", headers=self.alice).json()["account"]["balance"] == "0.00"

        verify = self.client.get("/admin/audit/verify", headers=self.teacher).json()
        assert verify["valid"] is True


class TestTokenAuth:

    def setup_method(self):
        self.system = build_economy(auth_enabled=True, jwt_secret="test-secret-with-enough-length-for-hs256")
        self.client = TestClient(create_app(self.system))
        self.alice = student_context(self.system, "alice")

    def _token(self, secret="test-secret-with-enough-length-for-hs256", **claims):
        payload = {"sub": self.alice.user_id, "school_id": SCHOOL, "role": "student"}
        payload.update(claims)
        return jwt.encode(payload, secret, algorithm="HS256")

    def test_valid_token(self):
        response = self.client.get("/accounts/me", headers={"Authorization": f"Bearer {self._token()}"})
        assert response.status_code == 200

    @pytest.mark.parametrize("headers", [
        {},
        {"Authorization": "Bearer not-a-token"},
    ])
    def test_rejected_credentials(self, headers):
        assert self.client.get("/accounts/me", headers=headers).status_code == 401

    def test_wrong_secret(self):
        token = self._token(secret="another-secret-with-enough-length-for-hs256")
        response = self.client.get("/accounts/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_headers_ignored_when_auth_enabled(self):
        response = self.client.get("/accounts/me", headers={
            "X-User-Id": self.alice.user_id, "X-School-Id": SCHOOL
        })
        assert response.status_code == 401
