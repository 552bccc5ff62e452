import asyncio
from decimal import Decimal
from typing import Any, Dict
from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.exc import NoResultFound

from snapcart.models.coupon import Coupon, CouponUsage
from snapcart.models.user import UserRole
from snapcart.schemas.payment import PaymentConfirmation
from snapcart.services import order as order_service


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


ADDRESS = {
    "full_name": "Ravi Kumar",
    "mobile": "9123456780",
    "city": "Chennai",
    "state": "TN",
    "pincode": "600001",
    "full_address": "4 Beach Road",
}


def checkout(client: TestClient, token: str, variant_id, quantity: int, provider: str | None = None) -> str:
    res = client.post(
        "/api/v1/cart/items",
        json={"variant_id": str(variant_id), "quantity": quantity},
        headers=auth_headers(token),
    )
    assert res.status_code == 201, res.text
    payload: dict[str, Any] = {"payment_method": "online" if provider else "cod", "delivery_address": ADDRESS}
    if provider:
        payload["online_payment_type"] = provider
    res = client.post("/api/v1/orders", json=payload, headers=auth_headers(token))
    assert res.status_code == 201, res.text
    return res.json()["order_id"]


def confirm_payment(session_factory, order_id: str, amount: str, provider: str = "stripe"):
    async def run():
        async with session_factory() as session:
            return await order_service.confirm_order_payment(
                session,
                UUID(order_id),
                PaymentConfirmation(
                    provider=provider,
                    transaction_id="txn_1",
                    payment_method="card",
                    amount=Decimal(amount),
                    currency="INR",
                    status="paid",
                ),
            )

    return asyncio.run(run())


def test_cancel_pending_online_order_restores_cart(
    test_app: Dict[str, Any], make_user, make_variant, set_variant, get_variant_stock
) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Dates", selling_price="200", mrp="240", stock=6)
    order_id = checkout(client, token, ids["variant_id"], 2, provider="razorpay")
    set_variant(ids["variant_id"], selling_price=Decimal("260"))

    res = client.post(f"/api/v1/orders/{order_id}/cancel", headers=auth_headers(token))
    assert res.status_code == 200, res.text
    assert res.json() == {"message": "Order cancelled", "order_id": order_id, "changed": True}

    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(token)).json()
    assert order["order_status"] == "cancelled"
    assert order["cancelled_at"] is not None
    assert get_variant_stock(ids["variant_id"]) == 6

    cart = client.get("/api/v1/cart", headers=auth_headers(token)).json()
    assert cart["items"][0]["quantity"] == 2
    assert Decimal(cart["items"][0]["price_at_add"]["selling"]) == Decimal("200")

    res = client.post(f"/api/v1/orders/{order_id}/cancel", headers=auth_headers(token))
    assert res.json()["message"] == "Order already cancelled"
    assert res.json()["changed"] is False


def test_cancel_cod_order_puts_stock_back(
    test_app: Dict[str, Any], make_user, make_variant, get_variant_stock
) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Lentils", selling_price="150", mrp="170", stock=5)
    order_id = checkout(client, token, ids["variant_id"], 2)
    assert get_variant_stock(ids["variant_id"]) == 3

    res = client.post(f"/api/v1/orders/{order_id}/cancel", headers=auth_headers(token))
    assert res.json()["changed"] is True
    assert get_variant_stock(ids["variant_id"]) == 5


def test_cancelling_cod_order_releases_coupon_usage(
    test_app: Dict[str, Any], make_user, make_variant, make_coupon
) -> None:
    client: TestClient = test_app["client"]
    session_factory = test_app["session_factory"]
    token, _ = make_user()
    ids = make_variant("Ghee", selling_price="550", mrp="600", stock=5)
    coupon_id = make_coupon("ONCE", discount_value="50", usage_per_user=1)

    async def usage() -> tuple[int, int]:
        async with session_factory() as session:
            rows = await session.scalar(
                select(func.count()).select_from(CouponUsage).where(CouponUsage.coupon_id == coupon_id)
            )
            coupon = await session.get(Coupon, coupon_id)
            return int(rows or 0), coupon.usage_count

    client.post(
        "/api/v1/cart/items", json={"variant_id": str(ids["variant_id"]), "quantity": 1}, headers=auth_headers(token)
    )
    assert client.post("/api/v1/cart/coupon", json={"code": "ONCE"}, headers=auth_headers(token)).status_code == 200
    res = client.post(
        "/api/v1/orders", json={"payment_method": "cod", "delivery_address": ADDRESS}, headers=auth_headers(token)
    )
    assert res.status_code == 201, res.text
    order = res.json()["order"]
    assert Decimal(order["coupon_discount"]) == Decimal("50")
    assert asyncio.run(usage()) == (1, 1)

    res = client.post(f"/api/v1/orders/{order['id']}/cancel", headers=auth_headers(token))
    assert res.json()["changed"] is True
    assert asyncio.run(usage()) == (0, 0)

    res = client.post("/api/v1/cart/coupon", json={"code": "ONCE"}, headers=auth_headers(token))
    assert res.status_code == 200, res.text
    assert res.json()["coupon"]["code"] == "ONCE"


def test_paid_order_cannot_be_cancelled(test_app: Dict[str, Any], make_user, make_variant) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Walnuts", selling_price="600", mrp="650", stock=5)
    order_id = checkout(client, token, ids["variant_id"], 1, provider="stripe")
    result = confirm_payment(test_app["session_factory"], order_id, "600")
    assert result.message == "Payment confirmed"

    res = client.post(f"/api/v1/orders/{order_id}/cancel", headers=auth_headers(token))
    assert res.status_code == 200
    assert res.json() == {"message": "Order already paid", "order_id": order_id, "changed": False}
    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(token)).json()
    assert order["order_status"] == "confirmed"
    assert order["payment_status"] == "paid"


def test_only_owner_can_cancel(test_app: Dict[str, Any], make_user, make_variant) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    other_token, _ = make_user("intruder@example.com")
    ids = make_variant("Figs", stock=5)
    order_id = checkout(client, token, ids["variant_id"], 1)

    res = client.post(f"/api/v1/orders/{order_id}/cancel", headers=auth_headers(other_token))
    assert res.status_code == 403
    assert res.json()["detail"] == "Not allowed to cancel this order"


def test_shipped_order_cannot_be_cancelled(test_app: Dict[str, Any], make_user, make_variant) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    admin_token, _ = make_user("admin@example.com", role=UserRole.admin)
    ids = make_variant("Jaggery", stock=5)
    order_id = checkout(client, token, ids["variant_id"], 1)
    for target in ("packed", "shipped"):
        res = client.patch(
            f"/api/v1/admin/orders/{order_id}/status",
            json={"order_status": target},
            headers=auth_headers(admin_token),
        )
        assert res.status_code == 200, res.text

    res = client.post(f"/api/v1/orders/{order_id}/cancel", headers=auth_headers(token))
    assert res.status_code == 400
    assert res.json()["detail"] == "Order can no longer be cancelled"


def test_payment_for_confirmed_duplicate_is_ignored(
    test_app: Dict[str, Any], make_user, make_variant, get_variant_stock
) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Pistachios", selling_price="700", mrp="750", stock=5)
    order_id = checkout(client, token, ids["variant_id"], 1, provider="stripe")

    first = confirm_payment(test_app["session_factory"], order_id, "700")
    second = confirm_payment(test_app["session_factory"], order_id, "700")
    assert first.already_processed is False
    assert second.already_processed is True
    assert second.message == "Payment already processed"
    assert get_variant_stock(ids["variant_id"]) == 4
    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(token)).json()
    assert len(order["payments"]) == 1


def test_payment_after_cancellation_is_recorded_without_stock_change(
    test_app: Dict[str, Any], make_user, make_variant, get_variant_stock
) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Raisins", selling_price="550", mrp="600", stock=5)
    order_id = checkout(client, token, ids["variant_id"], 1, provider="razorpay")
    client.post(f"/api/v1/orders/{order_id}/cancel", headers=auth_headers(token))

    result = confirm_payment(test_app["session_factory"], order_id, "550", provider="razorpay")
    assert result.message == "Payment recorded for cancelled order"
    assert get_variant_stock(ids["variant_id"]) == 5
    order = client.get(f"/api/v1/orders/{order_id}", headers=auth_headers(token)).json()
    assert order["order_status"] == "cancelled"
    assert order["payment_status"] == "paid"


def test_admin_status_moves_forward_only(test_app: Dict[str, Any], make_user, make_variant) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    admin_token, _ = make_user("admin@example.com", role=UserRole.admin)
    ids = make_variant("Flour", selling_price="80", mrp="90", stock=5)
    order_id = checkout(client, token, ids["variant_id"], 1)

    def move(target: str):
        return client.patch(
            f"/api/v1/admin/orders/{order_id}/status",
            json={"order_status": target},
            headers=auth_headers(admin_token),
        )

    res = move("packed")
    assert res.status_code == 200, res.text
    assert res.json()["order_status"] == "packed"
    assert res.json()["packed_at"] is not None

    res = move("confirmed")
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid order status transition"

    res = move("teleported")
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid order status"

    res = move("cancelled")
    assert res.json()["detail"] == "Invalid order status"

    res = move("delivered")
    assert res.status_code == 200, res.text
    assert res.json()["order_status"] == "delivered"
    assert res.json()["payment_status"] == "paid"

    timeline = client.get(f"/api/v1/orders/{order_id}/timeline", headers=auth_headers(token)).json()
    assert timeline["order_status"] == "delivered"
    assert [entry["completed"] for entry in timeline["timeline"]] == [True] * 6


def test_unpaid_online_order_cannot_advance(test_app: Dict[str, Any], make_user, make_variant) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    admin_token, _ = make_user("admin@example.com", role=UserRole.admin)
    ids = make_variant("Butter", selling_price="90", mrp="95", stock=5)
    order_id = checkout(client, token, ids["variant_id"], 1, provider="stripe")

    res = client.patch(
        f"/api/v1/admin/orders/{order_id}/status",
        json={"order_status": "confirmed"},
        headers=auth_headers(admin_token),
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Order payment is pending"

    res = client.patch(
        f"/api/v1/admin/orders/{order_id}/status",
        json={"order_status": "packed"},
        headers=auth_headers(token),
    )
    assert res.status_code == 403

    res = client.get("/api/v1/admin/orders?order_status=pending", headers=auth_headers(admin_token))
    assert [o["id"] for o in res.json()] == [order_id]


def test_timeline_of_cancelled_order(test_app: Dict[str, Any], make_user, make_variant) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Vinegar", stock=5)
    order_id = checkout(client, token, ids["variant_id"], 1)
    client.post(f"/api/v1/orders/{order_id}/cancel", headers=auth_headers(token))

    timeline = client.get(f"/api/v1/orders/{order_id}/timeline", headers=auth_headers(token)).json()
    entries = {entry["status"]: entry["completed"] for entry in timeline["timeline"]}
    assert entries["pending"] is True
    assert entries["confirmed"] is True
    assert entries["packed"] is False
    assert entries["cancelled"] is True


def test_reload_of_missing_order_raises(test_app: Dict[str, Any]) -> None:
    async def reload() -> None:
        async with test_app["session_factory"]() as session:
            await order_service.reload_order(session, UUID("00000000-0000-0000-0000-000000000000"))

    with pytest.raises(NoResultFound):
        asyncio.run(reload())
