from sqlalchemy import Column, String, Boolean, DateTime, Float, Text, Integer
from core.database import BaseModel


class Coupon(BaseModel):
    __tablename__ = "coupons"

    code = Column(String(50), unique=True, nullable=False)  # stored upper-cased
    description = Column(Text, nullable=True)
    discount_type = Column(String(20), nullable=False)  # percentage, flat
    discount = Column(Float, nullable=False)  # 10 for 10% or 10 currency units
    min_purchase = Column(Float, nullable=True)
    max_discount = Column(Float, nullable=True)  # cap for percentage coupons
    usage_limit = Column(Integer, nullable=True)
    used_count = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)
    start_date = Column(DateTime(timezone=True), nullable=True)
    expiry = Column(DateTime(timezone=True), nullable=True)
