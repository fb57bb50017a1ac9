"""
Unit tests for checkout: offer pricing, shipping, coupons, payment methods
"""
import pytest
import pytest_asyncio
from uuid import uuid4
from sqlalchemy import select, func

from core.exceptions import InvalidTransitionException, NotFoundException, ValidationException
from models.coupon import Coupon
from models.orders import Order, OrderStatus, PaymentMethod, PaymentStatus
from models.product import StockAdjustment
from schemas.orders import OrderLineCreate, PlaceOrderRequest, PaymentOutcomeRequest
from services.checkout import CheckoutService
from services.wallet import WalletService


class TestCheckoutService:

    @pytest_asyncio.fixture
    async def checkout_service(self, db_session, clock):
        return CheckoutService(db_session, clock=clock)

    @pytest_asyncio.fixture
    async def offer_product(self, make_product):
        # 300 with a 10% product offer sells at 270
        return await make_product(name="Offer Product", regular_price=300.0, offer_percentage=10.0)

    @pytest_asyncio.fixture
    async def test_coupon(self, db_session, clock):
        coupon = Coupon(
            id=uuid4(),
            code="SAVE10",
            description="10% off, up to 30",
            discount_type="percentage",
            discount=10.0,
            min_purchase=100.0,
            max_discount=30.0,
            usage_limit=5,
            used_count=0,
            is_active=True
        )
        db_session.add(coupon)
        await db_session.commit()
        return coupon

    async def order_count(self, db_session) -> int:
        return await db_session.scalar(select(func.count(Order.id)))

    @pytest.mark.asyncio
    async def test_place_order_with_offer_and_free_shipping(self, db_session, checkout_service, offer_product, customer):
        request = PlaceOrderRequest(items=[OrderLineCreate(product_id=offer_product.id, quantity=2)])

        order = await checkout_service.place_order(customer.user_id, request)

        assert order.status == OrderStatus.PENDING.value
        assert order.order_number.startswith("ORD-20240115-")
        assert order.subtotal == 600.0
        assert order.discount == 60.0
        assert order.total_price == 540.0
        assert order.shipping_charges == 0.0
        assert order.final_amount == 540.0
        assert order.payment_status == PaymentStatus.PENDING.value
        assert len(order.items) == 1
        assert order.items[0].price == 270.0
        assert order.items[0].total_price == 540.0
        assert [entry.description for entry in order.timeline] == ["Order placed successfully"]

        await db_session.refresh(offer_product)
        assert offer_product.quantity == 8
        adjustment = await db_session.scalar(
            select(StockAdjustment).where(StockAdjustment.product_id == offer_product.id)
        )
        assert adjustment.quantity_change == -2
        assert adjustment.reason == "order_purchase"

    @pytest.mark.asyncio
    async def test_shipping_charged_below_threshold(self, checkout_service, make_product, customer):
        product = await make_product(regular_price=100.0)
        request = PlaceOrderRequest(items=[OrderLineCreate(product_id=product.id, quantity=1)])

        order = await checkout_service.place_order(customer.user_id, request)

        assert order.shipping_charges == 50.0
        assert order.final_amount == 150.0

    @pytest.mark.asyncio
    async def test_sale_price_applies_without_offer(self, checkout_service, make_product, customer):
        product = await make_product(regular_price=200.0, sale_price=180.0)
        request = PlaceOrderRequest(items=[OrderLineCreate(product_id=product.id, quantity=1)])

        order = await checkout_service.place_order(customer.user_id, request)

        assert order.items[0].price == 180.0
        assert order.subtotal == 180.0
        assert order.discount == 0.0

    @pytest.mark.asyncio
    async def test_coupon_is_captured_and_redeemed(self, db_session, checkout_service, offer_product, test_coupon, customer):
        request = PlaceOrderRequest(
            items=[OrderLineCreate(product_id=offer_product.id, quantity=2)],
            coupon_code="save10",
        )

        order = await checkout_service.place_order(customer.user_id, request)

        assert order.coupon_code == "SAVE10"
        assert order.coupon_discount == 30.0
        assert order.final_amount == 510.0
        await db_session.refresh(test_coupon)
        assert test_coupon.used_count == 1

    @pytest.mark.asyncio
    async def test_cash_on_delivery_limit(self, db_session, checkout_service, make_product, customer):
        product = await make_product(regular_price=2500.0)
        request = PlaceOrderRequest(
            items=[OrderLineCreate(product_id=product.id, quantity=1)],
            payment_method=PaymentMethod.CASH_ON_DELIVERY,
        )

        with pytest.raises(ValidationException):
            await checkout_service.place_order(customer.user_id, request)
        assert await self.order_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_wallet_payment_debits_wallet(self, db_session, checkout_service, offer_product, customer):
        await WalletService(db_session).credit(customer.user_id, 1000.0, "Top up")
        await db_session.commit()
        request = PlaceOrderRequest(
            items=[OrderLineCreate(product_id=offer_product.id, quantity=2)],
            payment_method=PaymentMethod.WALLET,
        )

        order = await checkout_service.place_order(customer.user_id, request)

        assert order.payment_status == PaymentStatus.COMPLETED.value
        wallet = await WalletService(db_session).get_or_create_wallet(customer.user_id)
        assert wallet.balance == 460.0

    @pytest.mark.asyncio
    async def test_insufficient_wallet_balance_rolls_back(self, db_session, checkout_service, offer_product, customer):
        product_id = offer_product.id
        request = PlaceOrderRequest(
            items=[OrderLineCreate(product_id=product_id, quantity=2)],
            payment_method=PaymentMethod.WALLET,
        )

        with pytest.raises(ValidationException):
            await checkout_service.place_order(customer.user_id, request)

        assert await self.order_count(db_session) == 0
        await db_session.refresh(offer_product)
        assert offer_product.quantity == 10

    @pytest.mark.asyncio
    async def test_unlisted_product_is_rejected(self, checkout_service, make_product, customer):
        product = await make_product(is_listed=False)
        request = PlaceOrderRequest(items=[OrderLineCreate(product_id=product.id, quantity=1)])

        with pytest.raises(ValidationException):
            await checkout_service.place_order(customer.user_id, request)

    @pytest.mark.asyncio
    async def test_insufficient_stock_is_rejected(self, checkout_service, make_product, customer):
        product = await make_product(quantity=1)
        request = PlaceOrderRequest(items=[OrderLineCreate(product_id=product.id, quantity=2)])

        with pytest.raises(ValidationException):
            await checkout_service.place_order(customer.user_id, request)

    @pytest.mark.asyncio
    async def test_record_online_payment(self, checkout_service, make_product, customer):
        product = await make_product(regular_price=100.0)
        order = await checkout_service.place_order(customer.user_id, PlaceOrderRequest(
            items=[OrderLineCreate(product_id=product.id, quantity=1)],
            payment_method=PaymentMethod.ONLINE_PAYMENT,
        ))

        order = await checkout_service.record_payment(order.id, customer, PaymentOutcomeRequest(
            success=True, gateway_order_id="gw_order_1", gateway_payment_id="gw_pay_1"
        ))

        assert order.payment_status == PaymentStatus.COMPLETED.value
        assert order.gateway_payment_id == "gw_pay_1"
        assert order.timeline[-1].status == "Payment Completed"

        with pytest.raises(InvalidTransitionException):
            await checkout_service.record_payment(order.id, customer, PaymentOutcomeRequest(success=True))

    @pytest.mark.asyncio
    async def test_record_failed_payment(self, checkout_service, make_product, customer):
        product = await make_product(regular_price=100.0)
        order = await checkout_service.place_order(customer.user_id, PlaceOrderRequest(
            items=[OrderLineCreate(product_id=product.id, quantity=1)],
            payment_method=PaymentMethod.ONLINE_PAYMENT,
        ))

        order = await checkout_service.record_payment(order.id, customer, PaymentOutcomeRequest(success=False))

        assert order.payment_status == PaymentStatus.FAILED.value

    @pytest.mark.asyncio
    async def test_payment_only_for_online_orders(self, checkout_service, make_product, customer, other_customer):
        product = await make_product(regular_price=100.0)
        order = await checkout_service.place_order(customer.user_id, PlaceOrderRequest(
            items=[OrderLineCreate(product_id=product.id, quantity=1)],
        ))

        with pytest.raises(InvalidTransitionException):
            await checkout_service.record_payment(order.id, customer, PaymentOutcomeRequest(success=True))
        with pytest.raises(NotFoundException):
            await checkout_service.record_payment(order.id, other_customer, PaymentOutcomeRequest(success=True))
