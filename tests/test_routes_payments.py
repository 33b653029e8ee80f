import hashlib
import hmac
import json
from decimal import Decimal

import pytest

from core import config as core_config
from services import payments as payment_service


@pytest.fixture
def order(make_order):
    return make_order()


@pytest.fixture
def payment(db, order):
    return payment_service.create_payment(db, {"order_id": order.id})


class TestPublicPaymentRoutes:
    def test_create(self, client, order):
        resp = client.post("/payments/", json={"order_id": order.id})
        assert resp.status_code == 201
        data = resp.json()
        assert data["status"] == "pending"
        assert Decimal(data["amount"]) == Decimal("200")
        assert data["transaction_id"].startswith("TXN-")

    def test_create_for_missing_order(self, client):
        resp = client.post("/payments/", json={"order_id": 404})
        assert resp.status_code == 404

    def test_init(self, client, order, gateway):
        resp = client.post("/payments/init", json={"order_id": order.id, "callback_url": "https://shop.test/done"})
        assert resp.status_code == 201
        data = resp.json()
        assert data["payment"]["status"] == "processing"
        assert data["authorization_url"] == f"https://checkout.test/{data['payment']['transaction_id']}"
        assert data["access_code"] == "access-code"

    def test_create_rejects_caller_pricing(self, client, order):
        for extra in ({"amount": "1.00"}, {"currency": "NGN"}, {"transaction_id": "TXN-MINE"}):
            resp = client.post("/payments/", json={"order_id": order.id, **extra})
            assert resp.status_code == 422

    def test_confirm_always_asks_gateway(self, client, payment, gateway):
        gateway.verify_status = "failed"
        resp = client.post(f"/payments/{payment.transaction_id}/confirm", json={"status": "success", "fee": "2.00"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "failed"
        assert data["gateway_error"] == "Declined"
        assert data["next_retry_at"] is not None
        assert gateway.verified == [payment.transaction_id]

    def test_confirm_without_body_asks_gateway(self, client, payment, gateway):
        resp = client.post(f"/payments/{payment.transaction_id}/confirm")
        assert resp.status_code == 200
        assert resp.json()["status"] == "completed"
        assert gateway.verified == [payment.transaction_id]

    def test_anonymous_pushed_result_rejected(self, client, payment, order, admin_headers):
        resp = client.post(f"/payments/{payment.transaction_id}/result", json={"status": "success"})
        assert resp.status_code == 401
        order_data = client.get(f"/orders/{order.id}", headers=admin_headers).json()
        assert order_data["payment_status"] == "pending"

    def test_confirm_unknown(self, client):
        assert client.post("/payments/TXN-UNKNOWN/confirm").status_code == 404


class TestPaystackWebhook:
    """Signed gateway callbacks"""

    secret = "sk_test_hook"

    @pytest.fixture(autouse=True)
    def paystack_secret(self, monkeypatch):
        monkeypatch.setattr(core_config.settings, "PAYSTACK_SECRET_KEY", self.secret)

    def _post(self, client, event, signature=None):
        body = json.dumps(event).encode()
        if signature is None:
            signature = hmac.new(self.secret.encode(), body, hashlib.sha512).hexdigest()
        return client.post(
            "/payments/webhook/paystack",
            content=body,
            headers={"Content-Type": "application/json", "x-paystack-signature": signature},
        )

    def test_signed_charge_completes_payment(self, client, payment):
        event = {"event": "charge.success", "data": {"reference": payment.transaction_id, "status": "success"}}
        resp = self._post(client, event)
        assert resp.status_code == 200
        assert resp.json() == {
            "status": "processed",
            "transaction_id": payment.transaction_id,
            "payment_status": "completed",
        }

    def test_bad_signature_rejected(self, client, payment, admin_headers):
        event = {"event": "charge.success", "data": {"reference": payment.transaction_id, "status": "success"}}
        assert self._post(client, event, signature="0" * 128).status_code == 401
        resp = client.post("/payments/webhook/paystack", json=event)
        assert resp.status_code == 401
        assert client.get(f"/payments/{payment.id}", headers=admin_headers).json()["status"] == "pending"

    def test_unsigned_when_no_secret_configured(self, client, payment, monkeypatch):
        monkeypatch.setattr(core_config.settings, "PAYSTACK_SECRET_KEY", "")
        event = {"event": "charge.success", "data": {"reference": payment.transaction_id, "status": "success"}}
        assert self._post(client, event).status_code == 401

    def test_other_events_acknowledged(self, client):
        resp = self._post(client, {"event": "subscription.create", "data": {}})
        assert resp.status_code == 200
        assert resp.json() == {"status": "ignored"}


class TestAdminPaymentRoutes:
    def test_requires_admin(self, client, payment):
        assert client.get(f"/payments/{payment.id}").status_code == 401

    def test_list_and_get(self, client, payment, order, admin_headers):
        resp = client.get("/payments/", params={"order_id": order.id}, headers=admin_headers)
        assert [p["id"] for p in resp.json()] == [payment.id]
        resp = client.get(f"/payments/{payment.id}", headers=admin_headers)
        assert resp.json()["transaction_id"] == payment.transaction_id

    def test_status_and_refunds(self, client, payment, order, admin_headers):
        resp = client.post(f"/payments/{payment.id}/status", json={"status": "completed"}, headers=admin_headers)
        assert resp.json()["status"] == "completed"

        resp = client.post(f"/payments/{payment.id}/refund", json={"amount": "50.00"}, headers=admin_headers)
        assert resp.json()["status"] == "partially_refunded"
        assert Decimal(resp.json()["remaining_amount"]) == Decimal("150")

        resp = client.post(f"/payments/{payment.id}/refund", json={"amount": "150.01"}, headers=admin_headers)
        assert resp.status_code == 422
        assert resp.json()["error"] == "RefundExceedsAmountError"

        resp = client.post(
            f"/payments/{payment.id}/refund", json={"amount": "150.00", "reason": "Returned"}, headers=admin_headers
        )
        assert resp.json()["status"] == "refunded"

        order_data = client.get(f"/orders/{order.id}", headers=admin_headers).json()
        assert order_data["payment_status"] == "refunded"
        assert order_data["payment_transaction_id"] == payment.transaction_id

    def test_manual_payment_with_amount(self, client, order, admin_headers):
        payload = {"order_id": order.id, "amount": "50.00", "payment_method": "bank_transfer", "payment_provider": "manual"}
        assert client.post("/payments/manual", json=payload).status_code == 401
        resp = client.post("/payments/manual", json=payload, headers=admin_headers)
        assert resp.status_code == 201
        assert Decimal(resp.json()["amount"]) == Decimal("50")
        assert resp.json()["payment_provider"] == "manual"

    def test_pushed_result_by_admin(self, client, payment, admin_headers):
        resp = client.post(
            f"/payments/{payment.transaction_id}/result",
            json={"status": "failed", "error": "Declined"},
            headers=admin_headers,
        )
        data = resp.json()
        assert data["status"] == "failed"
        assert data["gateway_error"] == "Declined"
        assert data["next_retry_at"] is not None

    def test_list_filters_and_failed(self, client, payment, order, admin_headers):
        resp = client.get("/payments/", params={"payment_provider": "stripe"}, headers=admin_headers)
        assert resp.json() == []
        resp = client.get("/payments/", params={"payment_provider": "paystack"}, headers=admin_headers)
        assert [p["id"] for p in resp.json()] == [payment.id]

        assert client.get("/payments/failed", headers=admin_headers).json() == []
        client.post(f"/payments/{payment.id}/status", json={"status": "failed"}, headers=admin_headers)
        assert [p["id"] for p in client.get("/payments/failed", headers=admin_headers).json()] == [payment.id]

    def test_retry(self, client, payment, admin_headers):
        assert client.post(f"/payments/{payment.id}/retry", headers=admin_headers).status_code == 409

        client.post(f"/payments/{payment.id}/status", json={"status": "failed"}, headers=admin_headers)
        resp = client.post(f"/payments/{payment.id}/retry", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["status"] == "pending"
        assert resp.json()["retry_count"] == 1

    def test_delete(self, client, payment, admin_headers):
        assert client.delete(f"/payments/{payment.id}", headers=admin_headers).status_code == 204
        assert client.get(f"/payments/{payment.id}", headers=admin_headers).status_code == 404


class TestHealth:
    def test_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
