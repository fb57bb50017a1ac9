"""
Property-based tests for refund consistency
Cancelling every item one at a time refunds exactly what cancelling the
whole order would, and never more than the customer paid.
"""
import asyncio
from datetime import datetime, timezone
from hypothesis import given, strategies as st, settings, HealthCheck
from uuid import uuid4

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.database import Base
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
from models.product import Category, Product
from schemas.orders import Actor
from services.orders import OrderLifecycleService
from services.wallet import WalletService

# Test database setup
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

PRICES = st.lists(st.integers(min_value=1, max_value=1000).map(float), min_size=1, max_size=5)
SHIPPING = st.sampled_from([0.0, 50.0])


async def _place(session: AsyncSession, customer: Actor, prices, coupon: float, shipping: float) -> Order:
    category = Category(id=uuid4(), name=f"Category {uuid4().hex[:8]}", is_listed=True, offer_percentage=0.0)
    session.add(category)
    items = []
    for position, price in enumerate(prices):
        product = Product(id=uuid4(), name=f"Product {position}", category_id=category.id,
                          regular_price=price, quantity=10, offer_percentage=0.0, is_listed=True)
        session.add(product)
        items.append(OrderItem(product_id=product.id, product_name=product.name, position=position,
                               quantity=1, price=price, total_price=price,
                               status=ItemStatus.ACTIVE.value,
                               fulfillment_status=FulfillmentStatus.PENDING.value,
                               return_attempted=False))
    line_total = sum(prices)
    order = Order(order_number=f"ORD-20240115-{uuid4().hex[:6].upper()}", user_id=customer.user_id,
                  status=OrderStatus.PENDING.value, subtotal=line_total, discount=0.0,
                  coupon_code="SAVE" if coupon else None, coupon_discount=coupon,
                  shipping_charges=shipping, total_price=line_total,
                  final_amount=line_total - coupon + shipping,
                  payment_method=PaymentMethod.ONLINE_PAYMENT.value,
                  payment_status=PaymentStatus.COMPLETED.value, return_attempted=False,
                  items=items,
                  timeline=[OrderTimelineEntry(sequence=1, status=OrderStatus.PENDING.value,
                                               timestamp=datetime.now(timezone.utc),
                                               description="Order placed successfully")])
    session.add(order)
    await session.commit()
    return order


async def _refunds(prices, cancel_order, coupon: float, shipping: float):
    """Return (one-by-one refund total, whole-order refund, amount paid, wallet balance)."""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool,
                                 connect_args={"check_same_thread": False})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    SessionLocal = sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    customer = Actor(user_id=uuid4())
    try:
        async with SessionLocal() as session:
            service = OrderLifecycleService(session)

            one_by_one = await _place(session, customer, prices, coupon, shipping)
            paid = one_by_one.final_amount
            items = list(one_by_one.items)
            total = 0.0
            for index in cancel_order:
                result = await service.cancel_item(one_by_one.id, items[index].id, customer)
                total += result.refund_amount

            whole = await _place(session, customer, prices, coupon, shipping)
            whole_result = await service.cancel_order(whole.id, customer)

            wallet = await WalletService(session).get_or_create_wallet(customer.user_id)
            return total, whole_result.refund_amount, paid, wallet.balance
    finally:
        await engine.dispose()


class TestRefundConsistencyProperty:

    @given(prices=PRICES, shipping=SHIPPING, data=st.data())
    @settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_one_by_one_matches_whole_order_without_coupon(self, prices, shipping, data):
        cancel_order = data.draw(st.permutations(range(len(prices))))

        total, whole, paid, balance = asyncio.run(_refunds(prices, cancel_order, 0.0, shipping))

        assert total == whole == paid
        assert balance == total + whole

    @given(prices=PRICES, shipping=SHIPPING, data=st.data())
    @settings(max_examples=25, deadline=None, suppress_health_check=[HealthCheck.too_slow])
    def test_coupon_orders_refund_what_was_paid(self, prices, shipping, data):
        coupon = data.draw(st.integers(min_value=1, max_value=int(sum(prices))).map(float))
        cancel_order = data.draw(st.permutations(range(len(prices))))

        total, whole, paid, _ = asyncio.run(_refunds(prices, cancel_order, coupon, shipping))

        assert total == whole == paid
