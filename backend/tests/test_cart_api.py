from decimal import Decimal
from typing import Any, Dict

from fastapi.testclient import TestClient


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_cart_crud_flow(test_app: Dict[str, Any], make_user, make_variant) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Apples", selling_price="120", mrp="150", stock=5)

    res = client.post(
        "/api/v1/cart/items",
        json={"variant_id": str(ids["variant_id"]), "quantity": 2},
        headers=auth_headers(token),
    )
    assert res.status_code == 201, res.text
    body = res.json()
    assert body["items"][0]["quantity"] == 2
    assert body["items"][0]["grocery_name"] == "Apples"
    assert Decimal(body["items"][0]["price_at_add"]["selling"]) == Decimal("120")
    assert Decimal(body["totals"]["subtotal"]) == Decimal("240")
    assert Decimal(body["totals"]["savings"]) == Decimal("60")
    assert Decimal(body["totals"]["delivery_fee"]) == Decimal("40")
    assert Decimal(body["totals"]["total"]) == Decimal("280")
    item_id = body["items"][0]["id"]

    res = client.patch(f"/api/v1/cart/items/{item_id}", json={"quantity": 3}, headers=auth_headers(token))
    assert res.status_code == 200, res.text
    assert res.json()["items"][0]["quantity"] == 3

    res = client.delete(f"/api/v1/cart/items/{item_id}", headers=auth_headers(token))
    assert res.status_code == 200, res.text
    assert res.json()["items"] == []

    res = client.get("/api/v1/cart", headers=auth_headers(token))
    assert res.status_code == 200
    assert res.json()["totals"]["total_items"] == 0


def test_adding_beyond_stock_is_rejected(test_app: Dict[str, Any], make_user, make_variant) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Milk", stock=3)

    res = client.post(
        "/api/v1/cart/items",
        json={"variant_id": str(ids["variant_id"]), "quantity": 2},
        headers=auth_headers(token),
    )
    assert res.status_code == 201, res.text

    res = client.post(
        "/api/v1/cart/items",
        json={"variant_id": str(ids["variant_id"]), "quantity": 2},
        headers=auth_headers(token),
    )
    assert res.status_code == 400
    assert res.json()["detail"] == "Only 3 items available"

    res = client.get("/api/v1/cart", headers=auth_headers(token))
    assert res.json()["items"][0]["quantity"] == 2


def test_update_to_zero_removes_line(test_app: Dict[str, Any], make_user, make_variant) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Bread", stock=4)

    res = client.post(
        "/api/v1/cart/items",
        json={"variant_id": str(ids["variant_id"]), "quantity": 1},
        headers=auth_headers(token),
    )
    item_id = res.json()["items"][0]["id"]

    res = client.patch(f"/api/v1/cart/items/{item_id}", json={"quantity": 0}, headers=auth_headers(token))
    assert res.status_code == 200, res.text
    assert res.json()["items"] == []

    res = client.patch(f"/api/v1/cart/items/{item_id}", json={"quantity": 1}, headers=auth_headers(token))
    assert res.status_code == 404
    assert res.json() == {"detail": "Cart item not found", "code": "not_found"}


def test_update_beyond_stock_is_rejected(test_app: Dict[str, Any], make_user, make_variant) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Eggs", stock=4)

    res = client.post(
        "/api/v1/cart/items",
        json={"variant_id": str(ids["variant_id"]), "quantity": 1},
        headers=auth_headers(token),
    )
    item_id = res.json()["items"][0]["id"]

    res = client.patch(f"/api/v1/cart/items/{item_id}", json={"quantity": 5}, headers=auth_headers(token))
    assert res.status_code == 400
    assert res.json()["detail"] == "Stock exceeded or item unavailable"


def test_inactive_grocery_cannot_be_added(test_app: Dict[str, Any], make_user, make_variant) -> None:
    import asyncio

    from snapcart.models.catalog import Grocery

    client: TestClient = test_app["client"]
    session_factory = test_app["session_factory"]
    token, _ = make_user()
    ids = make_variant("Cheese", stock=4)

    async def deactivate() -> None:
        async with session_factory() as session:
            grocery = await session.get(Grocery, ids["grocery_id"])
            grocery.is_active = False
            await session.commit()

    asyncio.run(deactivate())

    res = client.post(
        "/api/v1/cart/items",
        json={"variant_id": str(ids["variant_id"]), "quantity": 1},
        headers=auth_headers(token),
    )
    assert res.status_code == 404
    assert res.json()["detail"] == "Variant unavailable"


def test_coupon_is_applied_and_dropped_below_minimum(
    test_app: Dict[str, Any], make_user, make_variant, make_coupon
) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Rice", selling_price="300", mrp="350", stock=10)
    make_coupon("MIN500", discount_value="50", min_cart_value="500")

    res = client.post(
        "/api/v1/cart/items",
        json={"variant_id": str(ids["variant_id"]), "quantity": 2},
        headers=auth_headers(token),
    )
    item_id = res.json()["items"][0]["id"]

    res = client.post("/api/v1/cart/coupon", json={"code": "min500"}, headers=auth_headers(token))
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["coupon"]["code"] == "MIN500"
    assert Decimal(body["totals"]["coupon_discount"]) == Decimal("50")
    assert Decimal(body["totals"]["total"]) == Decimal("550")

    res = client.patch(f"/api/v1/cart/items/{item_id}", json={"quantity": 1}, headers=auth_headers(token))
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["coupon"] is None
    assert body["coupon_removed"] is True
    assert Decimal(body["totals"]["coupon_discount"]) == Decimal("0")


def test_coupon_rejections(test_app: Dict[str, Any], make_user, make_variant, make_coupon) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Oats", selling_price="200", mrp="220", stock=10)
    make_coupon("OLD", starts_in_days=-10, ends_in_days=-1)
    make_coupon("BIG", min_cart_value="1000")
    other = make_variant("Soap", selling_price="50", mrp="60", stock=10)
    make_coupon("SOAPONLY", applicable_product_ids=[str(other["grocery_id"])])

    res = client.post("/api/v1/cart/coupon", json={"code": "NOPE"}, headers=auth_headers(token))
    assert res.status_code == 400
    assert res.json()["detail"] == "Cart not found"

    client.post(
        "/api/v1/cart/items",
        json={"variant_id": str(ids["variant_id"]), "quantity": 1},
        headers=auth_headers(token),
    )

    res = client.post("/api/v1/cart/coupon", json={"code": "NOPE"}, headers=auth_headers(token))
    assert res.status_code == 400
    assert res.json()["detail"] == "Invalid coupon"

    res = client.post("/api/v1/cart/coupon", json={"code": "OLD"}, headers=auth_headers(token))
    assert res.json()["detail"] == "Coupon expired or inactive"

    res = client.post("/api/v1/cart/coupon", json={"code": "BIG"}, headers=auth_headers(token))
    assert res.json()["detail"] == "Minimum cart value 1000"

    res = client.post("/api/v1/cart/coupon", json={"code": "SOAPONLY"}, headers=auth_headers(token))
    assert res.json()["detail"] == "Coupon not applicable to cart items"


def test_remove_coupon_and_clear_cart(test_app: Dict[str, Any], make_user, make_variant, make_coupon) -> None:
    client: TestClient = test_app["client"]
    token, _ = make_user()
    ids = make_variant("Tea", selling_price="250", mrp="300", stock=10)
    make_coupon("TEA20", discount_value="20")

    client.post(
        "/api/v1/cart/items",
        json={"variant_id": str(ids["variant_id"]), "quantity": 1},
        headers=auth_headers(token),
    )
    assert client.post("/api/v1/cart/coupon", json={"code": "TEA20"}, headers=auth_headers(token)).status_code == 200

    res = client.delete("/api/v1/cart/coupon", headers=auth_headers(token))
    assert res.status_code == 200
    assert res.json()["coupon"] is None

    res = client.delete("/api/v1/cart", headers=auth_headers(token))
    assert res.status_code == 200
    assert res.json()["items"] == []


def test_cart_requires_authentication(test_app: Dict[str, Any]) -> None:
    client: TestClient = test_app["client"]
    res = client.get("/api/v1/cart")
    assert res.status_code == 401
    assert res.json()["detail"] == "Not authenticated"
