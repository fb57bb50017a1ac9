"""
Unit tests for inventory service
"""
import pytest
import pytest_asyncio
from uuid import uuid4
from sqlalchemy import select

from core.exceptions import DependencyFailureException, NotFoundException, ValidationException
from models.product import StockAdjustment
from services.inventories import InventoryService


class TestInventoryService:

    @pytest_asyncio.fixture
    async def inventory_service(self, db_session):
        return InventoryService(db_session)

    @pytest.mark.asyncio
    async def test_check_stock_availability(self, inventory_service, make_product):
        product = await make_product(quantity=5)

        sufficient = await inventory_service.check_stock_availability(product.id, 5)
        insufficient = await inventory_service.check_stock_availability(product.id, 6)

        assert sufficient["available"] is True
        assert insufficient["available"] is False
        assert insufficient["current_stock"] == 5

    @pytest.mark.asyncio
    async def test_decrement_stock(self, db_session, inventory_service, make_product):
        product = await make_product(quantity=10)
        order_id = uuid4()

        result = await inventory_service.decrement_stock_on_purchase(product.id, 4, order_id=order_id)
        await db_session.commit()

        assert result["new_quantity"] == 6
        assert product.quantity == 6
        adjustment = await db_session.scalar(
            select(StockAdjustment).where(StockAdjustment.product_id == product.id)
        )
        assert adjustment.quantity_change == -4
        assert adjustment.order_id == order_id

    @pytest.mark.asyncio
    async def test_decrement_below_zero_fails(self, inventory_service, make_product):
        product = await make_product(quantity=2)

        with pytest.raises(ValidationException):
            await inventory_service.decrement_stock_on_purchase(product.id, 3)

    @pytest.mark.asyncio
    async def test_decrement_unknown_product(self, inventory_service):
        with pytest.raises(NotFoundException):
            await inventory_service.decrement_stock_on_purchase(uuid4(), 1)

    @pytest.mark.asyncio
    async def test_increment_stock(self, db_session, inventory_service, make_product):
        product = await make_product(quantity=10)

        result = await inventory_service.increment_stock(product.id, 3, reason="order_returned")
        await db_session.commit()

        assert result["new_quantity"] == 13
        adjustment = await db_session.scalar(
            select(StockAdjustment).where(StockAdjustment.product_id == product.id)
        )
        assert adjustment.reason == "order_returned"

    @pytest.mark.asyncio
    async def test_increment_missing_product_is_dependency_failure(self, inventory_service):
        with pytest.raises(DependencyFailureException):
            await inventory_service.increment_stock(uuid4(), 1)
