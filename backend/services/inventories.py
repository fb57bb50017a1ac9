import logging
from typing import Dict, Any, Optional
from uuid import UUID
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from models.product import Product, StockAdjustment
from core.exceptions import (
    NotFoundException,
    ValidationException,
    DependencyFailureException,
)

logger = logging.getLogger(__name__)


class InventoryService:
    """
    Product stock bookkeeping.

    Methods only stage changes on the caller's session; committing is left
    to the unit of work that owns the order mutation.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_product_for_update(self, product_id: UUID) -> Optional[Product]:
        result = await self.db.execute(
            select(Product)
            .where(Product.id == product_id)
            .with_for_update()  # Pessimistic lock prevents concurrent modifications
        )
        return result.scalar_one_or_none()

    async def check_stock_availability(self, product_id: UUID, quantity: int) -> Dict[str, Any]:
        product = await self.db.get(Product, product_id)
        if not product:
            raise NotFoundException(message=f"Product {product_id} not found", resource="product")
        return {
            "available": product.quantity >= quantity,
            "current_stock": product.quantity,
            "requested_quantity": quantity,
        }

    async def decrement_stock_on_purchase(
        self,
        product_id: UUID,
        quantity: int,
        order_id: Optional[UUID] = None
    ) -> Dict[str, Any]:
        """Remove purchased units from stock, refusing to go below zero."""
        product = await self._get_product_for_update(product_id)
        if not product:
            raise NotFoundException(message=f"Product {product_id} not found", resource="product")

        if product.quantity < quantity:
            raise ValidationException(
                message=f"Insufficient stock for {product.name}. Available: {product.quantity}, Requested: {quantity}"
            )

        old_quantity = product.quantity
        product.quantity -= quantity
        self.db.add(StockAdjustment(
            product_id=product.id,
            order_id=order_id,
            quantity_change=-quantity,
            reason="order_purchase",
            notes=f"Stock decremented for order {order_id}" if order_id else "Stock decremented for purchase"
        ))

        logger.info(f"Decremented stock for product {product_id}: {old_quantity} -> {product.quantity}")

        return {
            "success": True,
            "old_quantity": old_quantity,
            "new_quantity": product.quantity,
            "quantity_decremented": quantity,
        }

    async def increment_stock(
        self,
        product_id: UUID,
        quantity: int,
        order_id: Optional[UUID] = None,
        reason: str = "order_cancelled"
    ) -> Dict[str, Any]:
        """
        Restore units to stock when an item is cancelled or returned.
        Raises DependencyFailureException when the product no longer exists.
        """
        product = await self._get_product_for_update(product_id)
        if not product:
            raise DependencyFailureException(
                message=f"Cannot restore stock: product {product_id} not found",
                dependency="inventory"
            )

        old_quantity = product.quantity
        product.quantity += quantity
        self.db.add(StockAdjustment(
            product_id=product.id,
            order_id=order_id,
            quantity_change=quantity,
            reason=reason,
            notes=f"Stock restored from order {order_id}" if order_id else "Stock restored"
        ))

        logger.info(f"Incremented stock for product {product_id}: {old_quantity} -> {product.quantity}")

        return {
            "success": True,
            "old_quantity": old_quantity,
            "new_quantity": product.quantity,
            "quantity_incremented": quantity,
        }
