"""
Checkout service: turns a list of product lines into a placed order and
records the outcome of online payments.
"""
import logging
import random
from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.orm import selectinload
from sqlalchemy.exc import SQLAlchemyError

from core.config import settings
from core.exceptions import (
    APIException,
    DatabaseException,
    NotFoundException,
    ValidationException,
    InvalidTransitionException,
)
from core.utils.logging import structured_logger
from models.orders import (
    Order,
    OrderItem,
    OrderTimelineEntry,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from models.product import Product
from schemas.orders import Actor, PlaceOrderRequest, PaymentOutcomeRequest
from services.coupons import CouponService
from services.inventories import InventoryService
from services.order_rules import money
from services.pricing import PricingService
from services.wallet import WalletService

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CheckoutService:
    """Order placement with offer pricing, shipping, coupons and payment"""

    def __init__(self, db: AsyncSession, clock: Callable[[], datetime] = _utc_now):
        self.db = db
        self.clock = clock
        self.inventory_service = InventoryService(db)
        self.wallet_service = WalletService(db)
        self.coupon_service = CouponService(db)

    async def place_order(self, user_id: UUID, request: PlaceOrderRequest) -> Order:
        """
        Place an order for the requested product lines.

        Prices come from the best active offer, shipping is free above the
        configured threshold and an applied coupon is captured on the order.
        Wallet orders are paid immediately; stock is decremented in the same
        transaction.
        """
        now = self.clock()
        try:
            priced_lines = []
            subtotal = 0.0
            offer_discount = 0.0
            amount_after_discount = 0.0

            for line in request.items:
                product = await self._get_product(line.product_id)
                if not product or not product.is_available:
                    raise ValidationException(message=f"Product {line.product_id} is not available")
                if product.quantity < line.quantity:
                    raise ValidationException(message=f"Insufficient stock for {product.name}")

                unit_price = PricingService.best_offer(product)["final_price"]
                sale_price = product.sale_price or product.regular_price

                subtotal += sale_price * line.quantity
                offer_discount += max(sale_price - unit_price, 0) * line.quantity
                amount_after_discount += unit_price * line.quantity
                priced_lines.append((product, line.quantity, unit_price))

            shipping_charges = 0.0 if amount_after_discount >= settings.FREE_SHIPPING_THRESHOLD \
                else settings.SHIPPING_CHARGE

            coupon_code = None
            coupon_discount = 0.0
            if request.coupon_code:
                application = await self.coupon_service.apply_coupon(
                    request.coupon_code, amount_after_discount, now
                )
                coupon_code = application.code
                coupon_discount = application.discount_amount

            final_amount = money(amount_after_discount + shipping_charges - coupon_discount)

            payment_method = PaymentMethod(request.payment_method)
            if payment_method == PaymentMethod.CASH_ON_DELIVERY and final_amount > settings.COD_LIMIT:
                raise ValidationException(
                    message=f"Cash on Delivery is not available for orders above {settings.COD_LIMIT:g}. "
                            f"Please select Online Payment or Wallet."
                )

            order = Order(
                order_number=await self._generate_order_number(now),
                user_id=user_id,
                status=OrderStatus.PENDING.value,
                subtotal=money(subtotal),
                discount=money(offer_discount),
                coupon_code=coupon_code,
                coupon_discount=coupon_discount,
                shipping_charges=shipping_charges,
                total_price=money(amount_after_discount),
                final_amount=final_amount,
                payment_method=payment_method.value,
                payment_status=(
                    PaymentStatus.COMPLETED.value if payment_method == PaymentMethod.WALLET
                    else PaymentStatus.PENDING.value
                ),
                items=[
                    OrderItem(
                        product_id=product.id,
                        product_name=product.name,
                        position=position,
                        quantity=quantity,
                        price=unit_price,
                        regular_price=product.regular_price,
                        total_price=money(unit_price * quantity),
                    )
                    for position, (product, quantity, unit_price) in enumerate(priced_lines)
                ],
                timeline=[
                    OrderTimelineEntry(
                        sequence=1,
                        status=OrderStatus.PENDING.value,
                        timestamp=now,
                        description="Order placed successfully",
                    )
                ],
            )
            self.db.add(order)
            await self.db.flush()

            if payment_method == PaymentMethod.WALLET and final_amount > 0:
                await self.wallet_service.debit(
                    user_id, final_amount, f"Payment for order {order.order_number}", order_id=order.id
                )

            for product, quantity, _ in priced_lines:
                await self.inventory_service.decrement_stock_on_purchase(product.id, quantity, order_id=order.id)

            if coupon_code:
                await self.coupon_service.redeem(coupon_code)

            await self.db.commit()
            logger.info(f"Order {order.order_number} placed by user {user_id} for {final_amount}")
            return order

        except APIException:
            await self.db.rollback()
            raise
        except SQLAlchemyError as e:
            await self.db.rollback()
            structured_logger.error(
                message="Failed to place order",
                user_id=str(user_id),
                exception=e,
            )
            raise DatabaseException(message="Failed to place order")

    async def record_payment(self, order_id: UUID, actor: Actor, outcome: PaymentOutcomeRequest) -> Order:
        """Record the gateway outcome of an online payment."""
        order = await self.db.scalar(select(Order).where(Order.id == order_id))
        if order is None or (not actor.is_admin and order.user_id != actor.user_id):
            raise NotFoundException(message="Order not found", resource="order")

        if PaymentMethod(order.payment_method) != PaymentMethod.ONLINE_PAYMENT:
            raise InvalidTransitionException(message="Order is not paid online")
        if PaymentStatus(order.payment_status) == PaymentStatus.COMPLETED:
            raise InvalidTransitionException(
                message="Payment has already been completed",
                current_status=order.payment_status,
            )
        if OrderStatus(order.status) == OrderStatus.CANCELLED:
            raise InvalidTransitionException(message="Order has been cancelled", current_status=order.status)

        now = self.clock()
        order.gateway_order_id = outcome.gateway_order_id or order.gateway_order_id
        order.gateway_payment_id = outcome.gateway_payment_id or order.gateway_payment_id
        if outcome.success:
            order.payment_status = PaymentStatus.COMPLETED.value
            order.add_timeline_entry("Payment Completed", now, "Online payment received")
        else:
            order.payment_status = PaymentStatus.FAILED.value
            order.add_timeline_entry("Payment Failed", now, "Online payment failed")
        order.updated_at = now

        await self.db.commit()
        logger.info(f"Payment for order {order.order_number} recorded as {order.payment_status}")
        return order

    async def _get_product(self, product_id: UUID) -> Optional[Product]:
        result = await self.db.execute(
            select(Product)
            .options(selectinload(Product.category))
            .where(Product.id == product_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _generate_order_number(self, now: datetime) -> str:
        for _ in range(10):
            candidate = f"ORD-{now:%Y%m%d}-{random.randint(1000, 9999)}"
            exists = await self.db.scalar(select(Order.id).where(Order.order_number == candidate))
            if exists is None:
                return candidate
        raise DatabaseException(message="Could not allocate an order number")
