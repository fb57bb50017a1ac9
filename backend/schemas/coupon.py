from pydantic import BaseModel, Field
from typing import Optional


class ApplyCouponRequest(BaseModel):
    code: str = Field(..., min_length=1)
    cart_total: float = Field(..., ge=0)


class CouponApplication(BaseModel):
    code: str
    discount_type: str
    discount_amount: float
    max_discount: Optional[float] = None
