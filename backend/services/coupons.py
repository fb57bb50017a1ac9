from datetime import datetime, timezone
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Optional
from models.coupon import Coupon
from schemas.coupon import CouponApplication
from core.exceptions import NotFoundException, ValidationException
from services.pricing import round_half_up


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class CouponService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_coupon_by_code(self, code: str) -> Optional[Coupon]:
        result = await self.db.execute(
            select(Coupon).where(Coupon.code == code.strip().upper(), Coupon.is_active == True)
        )
        return result.scalars().first()

    async def apply_coupon(self, code: str, cart_total: float, now: Optional[datetime] = None) -> CouponApplication:
        """Validate a coupon against a cart total and compute the discount it grants."""
        now = now or datetime.now(timezone.utc)
        coupon = await self.get_coupon_by_code(code)
        if not coupon or not self._is_current(coupon, now):
            raise NotFoundException(message="Invalid or expired coupon code", resource="coupon")

        if coupon.usage_limit and (coupon.used_count or 0) >= coupon.usage_limit:
            raise ValidationException(message="Coupon usage limit exceeded")

        if coupon.min_purchase and cart_total < coupon.min_purchase:
            raise ValidationException(message=f"Minimum order amount {coupon.min_purchase:g} required")

        if coupon.discount_type == "percentage":
            discount_amount = cart_total * coupon.discount / 100
            if coupon.max_discount and discount_amount > coupon.max_discount:
                discount_amount = coupon.max_discount
        else:
            discount_amount = coupon.discount

        # Never discount more than the cart is worth
        discount_amount = min(discount_amount, cart_total)

        return CouponApplication(
            code=coupon.code,
            discount_type=coupon.discount_type,
            discount_amount=round_half_up(discount_amount),
            max_discount=coupon.max_discount,
        )

    @staticmethod
    def _is_current(coupon: Coupon, now: datetime) -> bool:
        start_date, expiry = _aware(coupon.start_date), _aware(coupon.expiry)
        if start_date and start_date > now:
            return False
        if expiry and expiry < now:
            return False
        return True

    async def redeem(self, code: str) -> None:
        coupon = await self.get_coupon_by_code(code)
        if coupon:
            coupon.used_count = (coupon.used_count or 0) + 1
