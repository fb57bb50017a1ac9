from enum import Enum
from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import List, Optional
from datetime import datetime
from uuid import UUID

from models.orders import PaymentMethod


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class Actor(BaseModel):
    """Already-authenticated caller of an order operation"""
    user_id: UUID
    role: ActorRole = ActorRole.CUSTOMER

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


# --- Requests ---

class OrderLineCreate(BaseModel):
    product_id: UUID
    quantity: int = Field(..., gt=0)


class PlaceOrderRequest(BaseModel):
    items: List[OrderLineCreate] = Field(..., min_length=1)
    payment_method: PaymentMethod = PaymentMethod.CASH_ON_DELIVERY
    coupon_code: Optional[str] = None


class PaymentOutcomeRequest(BaseModel):
    success: bool
    gateway_order_id: Optional[str] = None
    gateway_payment_id: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class ReturnRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    # None targets every active item of the order
    item_ids: Optional[List[UUID]] = None


class ApproveReturnRequest(BaseModel):
    item_ids: Optional[List[UUID]] = None
    admin_note: Optional[str] = None


class RejectReturnRequest(BaseModel):
    rejection_reason: str
    item_ids: Optional[List[UUID]] = None

    @field_validator("rejection_reason")
    @classmethod
    def reason_not_blank(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("Rejection reason is required")
        return value.strip()


class StatusTransitionRequest(BaseModel):
    status: str


class ItemStatusUpdate(BaseModel):
    item_id: UUID
    status: str


class BulkItemUpdateRequest(BaseModel):
    updates: List[ItemStatusUpdate] = Field(..., min_length=1)


# --- Responses ---

class ItemUpdateResult(BaseModel):
    item_id: UUID
    success: bool
    message: str


class OrderMutationResult(BaseModel):
    success: bool = True
    order_id: UUID
    new_order_status: str
    refund_amount: float = 0.0
    already_processed: bool = False
    message: str = ""
    errors: List[str] = []
    item_results: List[ItemUpdateResult] = []


class OrderItemResponse(BaseModel):
    id: UUID
    product_id: UUID
    product_name: Optional[str] = None
    quantity: int
    price: float
    regular_price: Optional[float] = None
    total_price: float
    status: str
    fulfillment_status: str
    cancellation_reason: Optional[str] = None
    return_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    return_attempted: bool = False

    model_config = ConfigDict(from_attributes=True)


class TimelineEntryResponse(BaseModel):
    status: str
    timestamp: datetime
    description: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class OrderResponse(BaseModel):
    id: UUID
    order_number: str
    user_id: UUID
    status: str
    subtotal: float
    discount: float
    coupon_code: Optional[str] = None
    coupon_discount: float
    shipping_charges: float
    total_price: float
    final_amount: float
    payment_method: str
    payment_status: str
    return_reason: Optional[str] = None
    admin_note: Optional[str] = None
    rejection_reason: Optional[str] = None
    return_attempted: bool = False
    items: List[OrderItemResponse] = []
    timeline: List[TimelineEntryResponse] = []

    model_config = ConfigDict(from_attributes=True)


class ReturnRequestSummary(BaseModel):
    order_id: UUID
    order_number: str
    user_id: UUID
    # "order" for a whole-order request, "item" for an individual item
    request_type: str
    item_id: Optional[UUID] = None
    product_name: Optional[str] = None
    reason: Optional[str] = None
    requested_at: Optional[datetime] = None
    return_amount: float
