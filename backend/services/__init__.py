# Services package - Consolidated imports only

from .orders import OrderLifecycleService
from .checkout import CheckoutService
from .inventories import InventoryService
from .wallet import WalletService
from .coupons import CouponService
from .pricing import PricingService

__all__ = [
    "OrderLifecycleService",
    "CheckoutService",
    "InventoryService",
    "WalletService",
    "CouponService",
    "PricingService",
]
