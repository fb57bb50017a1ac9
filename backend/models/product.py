from sqlalchemy import Column, String, Boolean, ForeignKey, Text, Float, Integer
from sqlalchemy.orm import relationship
from core.database import BaseModel, CHAR_LENGTH, GUID


class Category(BaseModel):
    __tablename__ = "categories"
    __table_args__ = {'extend_existing': True}

    name = Column(String(CHAR_LENGTH), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    offer_percentage = Column(Float, nullable=False, default=0.0)
    is_listed = Column(Boolean, default=True)

    # Relationships
    products = relationship("Product", back_populates="category")

    def to_dict(self) -> dict:
        """Convert category to dictionary for API responses"""
        return {
            "id": str(self.id),
            "name": self.name,
            "description": self.description,
            "offer_percentage": self.offer_percentage,
            "is_listed": self.is_listed,
        }


class Product(BaseModel):
    __tablename__ = "products"
    __table_args__ = {'extend_existing': True}

    name = Column(String(CHAR_LENGTH), nullable=False, index=True)
    description = Column(Text, nullable=True)
    category_id = Column(GUID(), ForeignKey(
        "categories.id"), nullable=False, index=True)
    regular_price = Column(Float, nullable=False)
    sale_price = Column(Float, nullable=True)
    offer_percentage = Column(Float, nullable=False, default=0.0)
    quantity = Column(Integer, nullable=False, default=0)  # units in stock
    is_listed = Column(Boolean, default=True, index=True)

    category = relationship("Category", back_populates="products", lazy="selectin")

    @property
    def is_available(self) -> bool:
        return bool(self.is_listed and self.category is not None and self.category.is_listed)

    def to_dict(self) -> dict:
        """Convert product to dictionary for API responses"""
        return {
            "id": str(self.id),
            "name": self.name,
            "category_id": str(self.category_id),
            "regular_price": self.regular_price,
            "sale_price": self.sale_price,
            "offer_percentage": self.offer_percentage,
            "quantity": self.quantity,
            "is_listed": self.is_listed,
        }


class StockAdjustment(BaseModel):
    """Audit trail of stock movements caused by orders"""
    __tablename__ = "stock_adjustments"
    __table_args__ = {'extend_existing': True}

    product_id = Column(GUID(), ForeignKey("products.id"), nullable=False, index=True)
    order_id = Column(GUID(), nullable=True, index=True)
    quantity_change = Column(Integer, nullable=False)
    # order_purchase, order_cancelled, order_returned
    reason = Column(String(50), nullable=False)
    notes = Column(Text, nullable=True)
