import asyncio
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict
from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import snapcart.models  # noqa: F401
from snapcart.core import metrics
from snapcart.core.security import create_access_token
from snapcart.db.base import Base
from snapcart.db.session import get_session
from snapcart.main import app
from snapcart.models.catalog import Category, Grocery, GroceryVariant
from snapcart.models.coupon import Coupon, DiscountType
from snapcart.models.user import User, UserRole


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    # Counters are process-global and would leak across tests.
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def test_app() -> Generator[Dict[str, Any], None, None]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())

    async def override_get_session():
        async with SessionLocal() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    client = TestClient(app)
    yield {"client": client, "session_factory": SessionLocal}
    client.close()
    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())


@pytest.fixture
def make_user(test_app: Dict[str, Any]) -> Callable[..., tuple[str, UUID]]:
    session_factory = test_app["session_factory"]

    def _make(email: str = "shopper@example.com", role: UserRole = UserRole.user) -> tuple[str, UUID]:
        async def create() -> UUID:
            async with session_factory() as session:
                user = User(email=email, name=email.split("@")[0], role=role)
                session.add(user)
                await session.commit()
                return user.id

        user_id = asyncio.run(create())
        return create_access_token(str(user_id)), user_id

    return _make


@pytest.fixture
def make_variant(test_app: Dict[str, Any]) -> Callable[..., Dict[str, UUID]]:
    session_factory = test_app["session_factory"]

    def _make(
        name: str = "Apples",
        *,
        selling_price: str = "120",
        mrp: str = "150",
        stock: int = 10,
        category: str | None = None,
        label: str = "1 kg",
    ) -> Dict[str, UUID]:
        async def create() -> Dict[str, UUID]:
            async with session_factory() as session:
                category_row = Category(name=category or f"{name} category")
                grocery = Grocery(name=name, category=category_row, is_active=True)
                variant = GroceryVariant(
                    grocery=grocery,
                    label=label,
                    unit="kg",
                    value=Decimal("1"),
                    mrp=Decimal(mrp),
                    selling_price=Decimal(selling_price),
                    count_in_stock=stock,
                )
                session.add_all([category_row, grocery, variant])
                await session.commit()
                return {"variant_id": variant.id, "grocery_id": grocery.id, "category_id": category_row.id}

        return asyncio.run(create())

    return _make


@pytest.fixture
def make_coupon(test_app: Dict[str, Any]) -> Callable[..., UUID]:
    session_factory = test_app["session_factory"]

    def _make(
        code: str,
        *,
        discount_type: DiscountType = DiscountType.flat,
        discount_value: str = "50",
        max_discount_amount: str | None = None,
        min_cart_value: str | None = None,
        usage_limit: int | None = None,
        usage_per_user: int | None = None,
        starts_in_days: int = -1,
        ends_in_days: int = 7,
        **extra: Any,
    ) -> UUID:
        now = datetime.now(timezone.utc)

        async def create() -> UUID:
            async with session_factory() as session:
                coupon = Coupon(
                    code=code.upper(),
                    discount_type=discount_type,
                    discount_value=Decimal(discount_value),
                    max_discount_amount=Decimal(max_discount_amount) if max_discount_amount else None,
                    min_cart_value=Decimal(min_cart_value) if min_cart_value else None,
                    start_date=now + timedelta(days=starts_in_days),
                    end_date=now + timedelta(days=ends_in_days),
                    usage_limit=usage_limit,
                    usage_per_user=usage_per_user,
                    usage_count=0,
                    is_active=True,
                    **extra,
                )
                session.add(coupon)
                await session.commit()
                return coupon.id

        return asyncio.run(create())

    return _make


@pytest.fixture
def get_variant_stock(test_app: Dict[str, Any]) -> Callable[[UUID], int]:
    session_factory = test_app["session_factory"]

    def _get(variant_id: UUID) -> int:
        async def read() -> int:
            async with session_factory() as session:
                variant = await session.get(GroceryVariant, variant_id)
                assert variant is not None
                return variant.count_in_stock

        return asyncio.run(read())

    return _get


@pytest.fixture
def set_variant(test_app: Dict[str, Any]) -> Callable[..., None]:
    session_factory = test_app["session_factory"]

    def _set(variant_id: UUID, **values: Any) -> None:
        async def write() -> None:
            async with session_factory() as session:
                variant = await session.get(GroceryVariant, variant_id)
                assert variant is not None
                for key, value in values.items():
                    setattr(variant, key, value)
                await session.commit()

        asyncio.run(write())

    return _set
