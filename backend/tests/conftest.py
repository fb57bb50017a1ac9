import sys
import os
import itertools
import pytest
import pytest_asyncio
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator
from uuid import uuid4

# Add the backend directory to the Python path
# This is necessary for pytest to find the 'main' module and other packages
backend_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if backend_dir not in sys.path:
    sys.path.insert(0, backend_dir)

from fastapi import Depends
from httpx import AsyncClient, ASGITransport

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from core.database import get_db, Base
from core.dependencies import get_order_service, get_checkout_service
from services.orders import OrderLifecycleService
from services.checkout import CheckoutService
from models.product import Category, Product
from models.orders import (
    Order,
    OrderItem,
    OrderTimelineEntry,
    OrderStatus,
    ItemStatus,
    FulfillmentStatus,
    PaymentMethod,
    PaymentStatus,
)
from schemas.orders import Actor, ActorRole
from services.order_rules import money

# In-memory SQLite, shared by every session of a test through StaticPool
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

FIXED_NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

_order_numbers = itertools.count(1000)


class FrozenClock:
    """Injectable clock that only moves when a test says so"""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest_asyncio.fixture
async def async_engine():
    """Provides a fresh schema per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(async_engine):
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def async_client(session_factory, clock) -> AsyncGenerator[AsyncClient, None]:
    """
    HTTP client bound to the app, with get_db pointed at the test database
    and the order services running on the frozen clock.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    def override_order_service(db: AsyncSession = Depends(get_db)) -> OrderLifecycleService:
        return OrderLifecycleService(db, clock=clock)

    def override_checkout_service(db: AsyncSession = Depends(get_db)) -> CheckoutService:
        return CheckoutService(db, clock=clock)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_order_service] = override_order_service
    app.dependency_overrides[get_checkout_service] = override_checkout_service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def customer() -> Actor:
    return Actor(user_id=uuid4(), role=ActorRole.CUSTOMER)


@pytest.fixture
def other_customer() -> Actor:
    return Actor(user_id=uuid4(), role=ActorRole.CUSTOMER)


@pytest.fixture
def admin() -> Actor:
    return Actor(user_id=uuid4(), role=ActorRole.ADMIN)


@pytest_asyncio.fixture
async def test_category(db_session: AsyncSession) -> Category:
    category = Category(
        id=uuid4(),
        name="Test Category",
        description="Category for tests",
        offer_percentage=0.0,
        is_listed=True
    )
    db_session.add(category)
    await db_session.commit()
    return category


@pytest_asyncio.fixture
async def make_product(db_session: AsyncSession, test_category: Category):
    """Factory for listed products in the test category."""
    async def _make(name: str = "Test Product", regular_price: float = 100.0,
                    sale_price: float = None, quantity: int = 10,
                    offer_percentage: float = 0.0, is_listed: bool = True) -> Product:
        product = Product(
            id=uuid4(),
            name=name,
            description=f"{name} description",
            category_id=test_category.id,
            regular_price=regular_price,
            sale_price=sale_price,
            offer_percentage=offer_percentage,
            quantity=quantity,
            is_listed=is_listed
        )
        db_session.add(product)
        await db_session.commit()
        return product

    return _make


@pytest_asyncio.fixture
async def make_order(db_session: AsyncSession, make_product, customer: Actor, clock: FrozenClock):
    """
    Factory for orders inserted directly, bypassing checkout.

    Each line gets its own product with 10 units in stock, so restored stock
    can be read back as 10 + quantity.
    """
    async def _make(prices=(100.0, 200.0), quantities=None,
                    coupon_discount: float = 0.0, shipping_charges: float = 0.0,
                    payment_method: PaymentMethod = PaymentMethod.ONLINE_PAYMENT,
                    payment_status: PaymentStatus = PaymentStatus.COMPLETED,
                    fulfillment_status: FulfillmentStatus = FulfillmentStatus.PENDING,
                    user_id=None) -> Order:
        items = []
        for position, price in enumerate(prices):
            quantity = quantities[position] if quantities else 1
            product = await make_product(name=f"Product {position + 1}", regular_price=price)
            items.append(OrderItem(
                product_id=product.id,
                product_name=product.name,
                position=position,
                quantity=quantity,
                price=price,
                regular_price=price,
                total_price=money(price * quantity),
                status=ItemStatus.ACTIVE.value,
                fulfillment_status=fulfillment_status.value,
                return_attempted=False,
            ))

        line_total = money(sum(item.total_price for item in items))
        timeline = [
            OrderTimelineEntry(
                sequence=1,
                status=OrderStatus.PENDING.value,
                timestamp=clock(),
                description="Order placed successfully",
            )
        ]
        if fulfillment_status == FulfillmentStatus.DELIVERED:
            timeline.append(OrderTimelineEntry(
                sequence=2,
                status=OrderStatus.DELIVERED.value,
                timestamp=clock(),
                description="Package has been successfully delivered",
            ))

        order = Order(
            order_number=f"ORD-{clock():%Y%m%d}-{next(_order_numbers)}",
            user_id=user_id or customer.user_id,
            status=OrderStatus(fulfillment_status.value).value,
            subtotal=line_total,
            discount=0.0,
            coupon_code="SAVE" if coupon_discount else None,
            coupon_discount=coupon_discount,
            shipping_charges=shipping_charges,
            total_price=line_total,
            final_amount=money(line_total - coupon_discount + shipping_charges),
            payment_method=payment_method.value,
            payment_status=payment_status.value,
            return_attempted=False,
            items=items,
            timeline=timeline,
        )
        db_session.add(order)
        await db_session.commit()
        return order

    return _make


@pytest.fixture
def auth_headers():
    """Identity headers the gateway would set for an actor."""
    def _headers(actor: Actor) -> dict:
        return {"X-User-Id": str(actor.user_id), "X-User-Role": actor.role.value}
    return _headers
