"""
Pure order lifecycle rules.

Nothing in this module touches the database: every function works on
objects exposing the OrderItem / Order attributes, so the same rules drive
the service layer and can be exercised directly in tests.
"""
from typing import Iterable, List, Optional, Sequence

from models.orders import (
    OrderStatus,
    ItemStatus,
    FulfillmentStatus,
    PaymentMethod,
    PaymentStatus,
)

FULFILLMENT_SEQUENCE = [
    FulfillmentStatus.PENDING,
    FulfillmentStatus.PROCESSING,
    FulfillmentStatus.SHIPPED,
    FulfillmentStatus.DELIVERED,
]

# Orders in these statuses can no longer be cancelled by the customer
NON_CANCELLABLE_STATUSES = {
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
    OrderStatus.RETURN_REQUESTED,
    OrderStatus.RETURNED,
    OrderStatus.CANCELLED,
}

# Statuses an admin may cancel the whole order from
ADMIN_CANCELLABLE_STATUSES = {
    OrderStatus.PENDING,
    OrderStatus.PROCESSING,
    OrderStatus.PARTIALLY_CANCELLED,
}

LIVE_ITEM_STATUSES = {ItemStatus.ACTIVE, ItemStatus.RETURN_REQUESTED}


def fulfillment_rank(status) -> int:
    return FULFILLMENT_SEQUENCE.index(FulfillmentStatus(status))


def money(amount: float) -> float:
    return round(float(amount), 2)


def active_items(items: Iterable) -> List:
    return [item for item in items if ItemStatus(item.status) == ItemStatus.ACTIVE]


def live_items(items: Iterable) -> List:
    return [item for item in items if ItemStatus(item.status) in LIVE_ITEM_STATUSES]


def items_with_status(items: Iterable, status: ItemStatus) -> List:
    return [item for item in items if ItemStatus(item.status) == status]


def _progression_label(items: Sequence) -> OrderStatus:
    ranks = [fulfillment_rank(item.fulfillment_status) for item in items]
    delivered = fulfillment_rank(FulfillmentStatus.DELIVERED)
    if all(rank == delivered for rank in ranks):
        return OrderStatus.DELIVERED
    if any(rank == delivered for rank in ranks):
        return OrderStatus.PARTIALLY_DELIVERED
    return OrderStatus(FULFILLMENT_SEQUENCE[max(ranks)].value)


def derive_order_status(items: Sequence) -> OrderStatus:
    """
    Compute the order-level status from its line items.

    Priority: full cancellation/return, then partial return, then a pending
    return request, then normal progression (with pre-shipment cancellations
    reported as Partially Cancelled).
    """
    live = live_items(items)
    has_returned = any(ItemStatus(item.status) == ItemStatus.RETURNED for item in items)
    has_cancelled = any(ItemStatus(item.status) == ItemStatus.CANCELLED for item in items)

    if not live:
        return OrderStatus.RETURNED if has_returned else OrderStatus.CANCELLED

    if has_returned:
        return OrderStatus.PARTIALLY_RETURNED

    if not active_items(live):
        return OrderStatus.RETURN_REQUESTED

    label = _progression_label(live)
    if has_cancelled and label in (OrderStatus.PENDING, OrderStatus.PROCESSING):
        return OrderStatus.PARTIALLY_CANCELLED
    return label


def fulfillment_stage(items: Sequence) -> Optional[FulfillmentStatus]:
    """Lowest fulfillment status among active items, None when nothing is active."""
    active = active_items(items)
    if not active:
        return None
    return FULFILLMENT_SEQUENCE[min(fulfillment_rank(item.fulfillment_status) for item in active)]


def next_fulfillment_status(stage: FulfillmentStatus) -> Optional[FulfillmentStatus]:
    rank = fulfillment_rank(stage)
    if rank + 1 >= len(FULFILLMENT_SEQUENCE):
        return None
    return FULFILLMENT_SEQUENCE[rank + 1]


# --- Money ---

def line_value(items: Iterable) -> float:
    """Sum of every line total ever placed on the order, the proration base."""
    return sum(item.total_price for item in items)


def active_total(items: Iterable) -> float:
    return money(sum(item.total_price for item in active_items(items)))


def billable_total(items: Iterable) -> float:
    """Line totals the customer still holds: active and return-requested items."""
    return money(sum(item.total_price for item in live_items(items)))


def coupon_share(order, item) -> float:
    """Part of the captured coupon discount attributed to one line item."""
    base = line_value(order.items)
    if not order.coupon_discount or base <= 0:
        return 0.0
    return order.coupon_discount * item.total_price / base


def compute_final_amount(order) -> float:
    """
    Amount payable for the items the customer still holds.

    The coupon is prorated on the share of the original line value that is
    still held and never exceeds that total.
    """
    remaining = billable_total(order.items)
    if remaining <= 0:
        return 0.0
    base = line_value(order.items)
    coupon = 0.0
    if order.coupon_discount and base > 0:
        coupon = min(order.coupon_discount * remaining / base, remaining)
    return money(remaining - coupon + (order.shipping_charges or 0.0))


def unabsorbed_coupon(order) -> float:
    """Coupon discount not yet withheld from any refund."""
    return max((order.coupon_discount or 0.0) - (order.coupon_absorbed or 0.0), 0.0)


def live_total_after(order, leaving: Sequence) -> float:
    """Line totals still held once ``leaving`` is cancelled or returned."""
    gone = set(map(id, leaving))
    return sum(item.total_price for item in live_items(order.items) if id(item) not in gone)


def coupon_deduction(order, items: Sequence, prorate: bool) -> float:
    """
    Part of the coupon withheld from the refund for ``items``.

    The operation that leaves nothing live withholds whatever is still
    unabsorbed. Otherwise returns withhold their prorated share and
    cancellations nothing, but never so little that the items left behind
    could no longer carry the unabsorbed remainder.
    """
    remaining = unabsorbed_coupon(order)
    left = live_total_after(order, items)
    if left <= 0:
        return money(remaining)
    share = sum(coupon_share(order, item) for item in items) if prorate else 0.0
    return money(min(max(share, remaining - left, 0.0), remaining))


def cancellation_refund(order, items: Sequence) -> float:
    """
    Refund owed for cancelling ``items``.

    A partial cancellation refunds the item totals. The cancellation that
    leaves nothing live also settles shipping.
    """
    amount = sum(item.total_price for item in items) - coupon_deduction(order, items, prorate=False)
    if live_total_after(order, items) <= 0:
        amount += order.shipping_charges or 0.0
    return money(max(amount, 0.0))


def order_cancellation_refund(order) -> float:
    """Refund owed for cancelling every remaining active item at once."""
    return cancellation_refund(order, active_items(order.items))


def return_refund(order, items: Sequence, include_shipping: bool) -> float:
    """Item totals less their coupon deduction, plus shipping for a whole-order return."""
    amount = sum(item.total_price for item in items) - coupon_deduction(order, items, prorate=True)
    if include_shipping:
        amount += order.shipping_charges or 0.0
    return money(max(amount, 0.0))


def refund_payable(order, amount: float) -> float:
    """
    Portion of a refund that is actually credited.

    Cash on Delivery orders only hold money once payment is Completed.
    """
    if PaymentMethod(order.payment_method) == PaymentMethod.CASH_ON_DELIVERY \
            and PaymentStatus(order.payment_status) != PaymentStatus.COMPLETED:
        return 0.0
    return money(amount)
