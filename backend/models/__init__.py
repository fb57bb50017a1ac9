# Models package - Consolidated imports only
from .product import Product, Category, StockAdjustment
from .coupon import Coupon
from .wallet import Wallet, WalletTransaction
from .orders import (
    Order,
    OrderItem,
    OrderTimelineEntry,
    OrderMutation,
    OrderStatus,
    ItemStatus,
    FulfillmentStatus,
    PaymentMethod,
    PaymentStatus,
)

__all__ = [
    # Product models
    "Product",
    "Category",
    "StockAdjustment",

    # Commerce models
    "Coupon",

    # Wallet models
    "Wallet",
    "WalletTransaction",

    # Order models (consolidated)
    "Order",
    "OrderItem",
    "OrderTimelineEntry",
    "OrderMutation",
    "OrderStatus",
    "ItemStatus",
    "FulfillmentStatus",
    "PaymentMethod",
    "PaymentStatus",
]
