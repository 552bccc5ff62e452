import hashlib
import hmac
import json
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

from snapcart.core.config import settings
from snapcart.schemas.payment import RazorpayPaymentEntity
from snapcart.services import razorpay_payments


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


ADDRESS = {
    "full_name": "Kiran Das",
    "mobile": "9000011111",
    "city": "Kolkata",
    "state": "WB",
    "pincode": "700001",
    "full_address": "21 Park Street",
}

WEBHOOK_SECRET = "rzp_webhook_secret"
KEY_SECRET = "rzp_key_secret"


@pytest.fixture(autouse=True)
def _razorpay_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "razorpay_key_id", "rzp_test_key")
    monkeypatch.setattr(settings, "razorpay_key_secret", KEY_SECRET)
    monkeypatch.setattr(settings, "razorpay_webhook_secret", WEBHOOK_SECRET)


def razorpay_order(client: TestClient, token: str, variant_id, quantity: int = 1) -> str:
    client.post(
        "/api/v1/cart/items",
        json={"variant_id": str(variant_id), "quantity": quantity},
        headers=auth_headers(token),
    )
    res = client.post(
        "/api/v1/orders",
        json={"payment_method": "online", "online_payment_type": "razorpay", "delivery_address": ADDRESS},
        headers=auth_headers(token),
    )
    assert res.status_code == 201, res.text
    return res.json()["order_id"]


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def captured_body(order_id: str, amount: int, payment_id: str = "pay_test_1") -> bytes:
    return json.dumps(
        {
            "event": "payment.captured",
            "created_at": 1700000000,
            "payload": {
                "payment": {
                    "entity": {
                        "id": payment_id,
                        "amount": amount,
                        "currency": "INR",
                        "status": "captured",
                        "method": "upi",
                        "order_id": "order_rzp_1",
                        "created_at": 1700000000,
                        "notes": {"orderId": order_id},
                    }
                }
            },
        }
    ).encode("utf-8")


def test_signature_helpers() -> None:
    body = b'{"event":"payment.captured"}'
    assert razorpay_payments.verify_webhook_signature(body, sign(WEBHOOK_SECRET, body)) is True
    assert razorpay_payments.verify_webhook_signature(body, "deadbeef") is False
    assert razorpay_payments.verify_webhook_signature(body, None) is False
    expected = sign(KEY_SECRET, b"order_1|pay_1")
    assert razorpay_payments.verify_payment_signature("order_1", "pay_1", expected) is True
    assert razorpay_payments.verify_payment_signature("order_1", "pay_2", expected) is False


def test_webhook_rejects_bad_signature(test_app: Dict[str, Any]) -> None:
    client: TestClient = test_app["client"]
    body = captured_body("00000000-0000-0000-0000-000000000000", 100)
    res = client.post("/api/v1/payments/razorpay/webhook", content=body, headers={"X-Razorpay-Signature": "nope"})
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid signature"


def test_captured_webhook_confirms_order_once(
    test_app: Dict[str, Any], make_user, make_variant, get_variant_stock
) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Turmeric", selling_price="250", mrp="280", stock=6)
    order_id = razorpay_order(client, token, ids["variant_id"], 2)

    body = captured_body(order_id, 50000)
    headers = {"X-Razorpay-Signature": sign(WEBHOOK_SECRET, body), "X-Razorpay-Event-Id": "evt_rzp_1"}
    res = client.post("/api/v1/payments/razorpay/webhook", content=body, headers=headers)
    assert res.status_code == 200, res.text
    assert res.json()["message"] == "Payment confirmed"

    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(token)).json()
    assert order["payment_status"] == "paid"
    assert order["order_status"] == "confirmed"
    assert order["payments"][0]["transaction_id"] == "pay_test_1"
    assert order["payments"][0]["payment_method"] == "upi"
    assert get_variant_stock(ids["variant_id"]) == 4

    res = client.post("/api/v1/payments/razorpay/webhook", content=body, headers=headers)
    assert res.json()["message"] == "Event already processed"
    assert get_variant_stock(ids["variant_id"]) == 4


def test_other_events_are_acknowledged(test_app: Dict[str, Any]) -> None:
    client: TestClient = test_app["client"]
    body = json.dumps({"event": "order.paid", "created_at": 1700000001, "payload": {}}).encode("utf-8")
    res = client.post(
        "/api/v1/payments/razorpay/webhook",
        content=body,
        headers={"X-Razorpay-Signature": sign(WEBHOOK_SECRET, body)},
    )
    assert res.status_code == 200, res.text
    assert res.json()["message"] == "Event acknowledged"


def test_callback_verifies_signature_and_confirms(
    monkeypatch: pytest.MonkeyPatch, test_app: Dict[str, Any], make_user, make_variant, get_variant_stock
) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Pepper", selling_price="520", mrp="560", stock=3)
    order_id = razorpay_order(client, token, ids["variant_id"])

    monkeypatch.setattr(
        razorpay_payments,
        "fetch_payment",
        lambda payment_id: RazorpayPaymentEntity(
            id=payment_id, amount=52000, currency="INR", status="captured", method="card", order_id="order_rzp_7"
        ),
    )
    callback = {
        "gateway": "razorpay",
        "order_id": order_id,
        "payment_status": "success",
        "razorpay_order_id": "order_rzp_7",
        "razorpay_payment_id": "pay_rzp_7",
        "razorpay_signature": "forged",
    }
    res = client.post("/api/v1/payments/callback", json=callback, headers=auth_headers(token))
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid payment signature"

    callback["razorpay_signature"] = sign(KEY_SECRET, b"order_rzp_7|pay_rzp_7")
    res = client.post("/api/v1/payments/callback", json=callback, headers=auth_headers(token))
    assert res.status_code == 200, res.text
    assert res.json()["message"] == "Payment confirmed"
    assert get_variant_stock(ids["variant_id"]) == 2

    res = client.post("/api/v1/payments/callback", json=callback, headers=auth_headers(token))
    assert res.json()["already_processed"] is True
    assert get_variant_stock(ids["variant_id"]) == 2


def test_failed_callback_leaves_order_pending(test_app: Dict[str, Any], make_user, make_variant) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Nutmeg", stock=3)
    order_id = razorpay_order(client, token, ids["variant_id"])

    res = client.post(
        "/api/v1/payments/callback",
        json={"gateway": "razorpay", "order_id": order_id, "payment_status": "failed"},
        headers=auth_headers(token),
    )
    assert res.status_code == 200, res.text
    assert res.json()["message"] == "Payment not completed"
    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(token)).json()
    assert order["payment_status"] == "pending"


def test_razorpay_order_creation_and_mismatch(
    monkeypatch: pytest.MonkeyPatch, test_app: Dict[str, Any], make_user, make_variant
) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Mustard", selling_price="100", mrp="110", stock=3)
    order_id = razorpay_order(client, token, ids["variant_id"], 2)
    sent: dict[str, Any] = {}

    class FakeOrders:
        def create(self, data):
            sent.update(data)
            return {"id": "order_rzp_42", "amount": data["amount"], "currency": "INR", "receipt": data["receipt"]}

    class FakeClient:
        order = FakeOrders()

    monkeypatch.setattr(razorpay_payments, "get_client", lambda: FakeClient())

    res = client.post("/api/v1/payments/razorpay/order", json={"order_id": order_id}, headers=auth_headers(token))
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["razorpay_order_id"] == "order_rzp_42"
    assert body["amount"] == 24000
    assert body["key_id"] == "rzp_test_key"
    assert sent["notes"] == {"orderId": order_id}

    res = client.post(
        "/api/v1/payments/callback",
        json={
            "gateway": "razorpay",
            "order_id": order_id,
            "payment_status": "success",
            "razorpay_order_id": "order_rzp_other",
            "razorpay_payment_id": "pay_x",
            "razorpay_signature": sign(KEY_SECRET, b"order_rzp_other|pay_x"),
        },
        headers=auth_headers(token),
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Razorpay order mismatch"
