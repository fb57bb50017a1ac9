"""
Consolidated order models
Includes: Order, OrderItem, OrderTimelineEntry, OrderMutation
"""
from enum import Enum
from sqlalchemy import Column, String, ForeignKey, Float, Text, Integer, DateTime, Boolean, Index
from sqlalchemy.orm import relationship
from core.database import BaseModel, GUID


class OrderStatus(str, Enum):
    """Order-level status, always derived from the line items"""
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURN_REQUESTED = "Return Requested"
    RETURNED = "Returned"
    PARTIALLY_CANCELLED = "Partially Cancelled"
    PARTIALLY_RETURNED = "Partially Returned"
    PARTIALLY_DELIVERED = "Partially Delivered"


class ItemStatus(str, Enum):
    """Lifecycle status of a single line item"""
    ACTIVE = "Active"
    CANCELLED = "Cancelled"
    RETURN_REQUESTED = "Return Requested"
    RETURNED = "Returned"


class FulfillmentStatus(str, Enum):
    """Shipment progression of a line item, in order"""
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"


class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "Cash on Delivery"
    ONLINE_PAYMENT = "Online Payment"
    WALLET = "Wallet"


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    FAILED = "Failed"


class Order(BaseModel):
    """Customer order with line items, payment state and return bookkeeping"""
    __tablename__ = "orders"
    __table_args__ = (
        Index('idx_orders_user_id', 'user_id'),
        Index('idx_orders_status', 'status'),
        Index('idx_orders_user_status', 'user_id', 'status'),
        {'extend_existing': True}
    )

    order_number = Column(String(50), unique=True, nullable=False)  # ORD-YYYYMMDD-XXXX
    user_id = Column(GUID(), nullable=False)
    # Cached value of derive_order_status(items)
    status = Column(String(50), default=OrderStatus.PENDING.value, nullable=False)

    # Financial information
    subtotal = Column(Float, nullable=False, default=0.0)
    discount = Column(Float, nullable=False, default=0.0)  # offer discount
    coupon_code = Column(String(50), nullable=True)
    coupon_discount = Column(Float, nullable=False, default=0.0)
    # Coupon discount already withheld from refunds
    coupon_absorbed = Column(Float, nullable=False, default=0.0)
    shipping_charges = Column(Float, nullable=False, default=0.0)
    total_price = Column(Float, nullable=False, default=0.0)  # active line totals
    final_amount = Column(Float, nullable=False, default=0.0)

    # Payment
    payment_method = Column(String(50), nullable=False, default=PaymentMethod.CASH_ON_DELIVERY.value)
    payment_status = Column(String(50), nullable=False, default=PaymentStatus.PENDING.value)
    gateway_order_id = Column(String(255), nullable=True)
    gateway_payment_id = Column(String(255), nullable=True)

    # Cancellation and return bookkeeping
    cancellation_reason = Column(Text, nullable=True)
    return_reason = Column(Text, nullable=True)
    return_requested_at = Column(DateTime(timezone=True), nullable=True)
    return_approved_at = Column(DateTime(timezone=True), nullable=True)
    return_rejected_at = Column(DateTime(timezone=True), nullable=True)
    admin_note = Column(Text, nullable=True)
    rejection_reason = Column(Text, nullable=True)
    return_attempted = Column(Boolean, nullable=False, default=False)

    # Optimistic locking
    version = Column(Integer, nullable=False, default=1)

    items = relationship("OrderItem", back_populates="order",
                         cascade="all, delete-orphan", lazy="selectin",
                         order_by="OrderItem.position")
    timeline = relationship("OrderTimelineEntry", back_populates="order",
                            cascade="all, delete-orphan", lazy="selectin",
                            order_by="OrderTimelineEntry.sequence")

    __mapper_args__ = {"version_id_col": version}

    def get_item(self, item_id):
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def add_timeline_entry(self, status: str, timestamp, description: str) -> "OrderTimelineEntry":
        entry = OrderTimelineEntry(
            status=status,
            timestamp=timestamp,
            description=description,
            sequence=len(self.timeline) + 1,
        )
        self.timeline.append(entry)
        return entry


class OrderItem(BaseModel):
    """Individual line item within an order"""
    __tablename__ = "order_items"
    __table_args__ = {'extend_existing': True}

    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(GUID(), ForeignKey("products.id"), nullable=False)
    product_name = Column(String(255), nullable=True)
    position = Column(Integer, nullable=False, default=0)
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)  # unit price after offers
    regular_price = Column(Float, nullable=True)
    total_price = Column(Float, nullable=False)

    status = Column(String(50), nullable=False, default=ItemStatus.ACTIVE.value)
    fulfillment_status = Column(String(50), nullable=False, default=FulfillmentStatus.PENDING.value)

    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    return_reason = Column(Text, nullable=True)
    return_requested_at = Column(DateTime(timezone=True), nullable=True)
    return_approved_at = Column(DateTime(timezone=True), nullable=True)
    return_rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    return_attempted = Column(Boolean, nullable=False, default=False)

    order = relationship("Order", back_populates="items")


class OrderTimelineEntry(BaseModel):
    """Append-only history of an order's status changes"""
    __tablename__ = "order_timeline"
    __table_args__ = {'extend_existing': True}

    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    status = Column(String(50), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    description = Column(Text, nullable=True)

    order = relationship("Order", back_populates="timeline")


class OrderMutation(BaseModel):
    """Result of an idempotent order mutation, keyed by the client's Idempotency-Key"""
    __tablename__ = "order_mutations"
    __table_args__ = {'extend_existing': True}

    idempotency_key = Column(String(255), unique=True, nullable=False)
    order_id = Column(GUID(), ForeignKey("orders.id"), nullable=False, index=True)
    operation = Column(String(50), nullable=False)
    result = Column(Text, nullable=False)  # JSON encoded OrderMutationResult
