from typing import Optional
from uuid import UUID
from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import get_db
from core.exceptions import AuthenticationException, AuthorizationException
from schemas.orders import Actor, ActorRole
from services.orders import OrderLifecycleService
from services.checkout import CheckoutService
from services.coupons import CouponService
from services.wallet import WalletService


async def get_current_actor(
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
    role: Optional[str] = Header(None, alias="X-User-Role"),
) -> Actor:
    """
    Resolve the caller from identity headers set by the authenticating gateway.
    """
    if not user_id:
        raise AuthenticationException(message="Could not validate credentials")
    try:
        return Actor(user_id=UUID(user_id), role=ActorRole((role or ActorRole.CUSTOMER.value).lower()))
    except ValueError:
        raise AuthenticationException(message="Invalid identity headers")


async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    """Require admin role"""
    if not actor.is_admin:
        raise AuthorizationException(message="Admin access required")
    return actor


def get_order_service(db: AsyncSession = Depends(get_db)) -> OrderLifecycleService:
    return OrderLifecycleService(db)


def get_checkout_service(db: AsyncSession = Depends(get_db)) -> CheckoutService:
    return CheckoutService(db)


def get_coupon_service(db: AsyncSession = Depends(get_db)) -> CouponService:
    return CouponService(db)


def get_wallet_service(db: AsyncSession = Depends(get_db)) -> WalletService:
    return WalletService(db)
