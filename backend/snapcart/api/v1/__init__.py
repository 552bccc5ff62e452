from fastapi import APIRouter

from snapcart.api.v1 import admin, cart, coupons, guest_cart, notifications, orders, payments

api_router = APIRouter()

api_router.include_router(cart.router)
api_router.include_router(guest_cart.router)
api_router.include_router(coupons.router)
api_router.include_router(orders.router)
api_router.include_router(payments.router)
api_router.include_router(notifications.router)
api_router.include_router(admin.router)


@api_router.get("/health", tags=["health"])
def healthcheck() -> dict[str, str]:
    return {"status": "ok"}
