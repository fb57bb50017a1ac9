# Order lifecycle service
# Owns every status change of an order and its line items, together with the
# stock and wallet effects those changes cause.

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Callable, Dict, Any, List, Optional, Tuple
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, desc
from sqlalchemy.exc import SQLAlchemyError, IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from core.config import settings
from core.exceptions import (
    APIException,
    NotFoundException,
    ValidationException,
    AuthorizationException,
    ConflictException,
    DatabaseException,
    InvalidTransitionException,
    AlreadyProcessedException,
)
from core.utils.logging import structured_logger
from models.orders import (
    Order,
    OrderItem,
    OrderMutation,
    OrderStatus,
    ItemStatus,
    FulfillmentStatus,
    PaymentMethod,
    PaymentStatus,
)
from schemas.orders import (
    Actor,
    ItemStatusUpdate,
    ItemUpdateResult,
    OrderMutationResult,
    ReturnRequestSummary,
)
from services.inventories import InventoryService
from services.wallet import WalletService
from services.order_rules import (
    NON_CANCELLABLE_STATUSES,
    ADMIN_CANCELLABLE_STATUSES,
    active_items,
    live_items,
    items_with_status,
    derive_order_status,
    fulfillment_rank,
    fulfillment_stage,
    next_fulfillment_status,
    billable_total,
    compute_final_amount,
    cancellation_refund,
    coupon_deduction,
    order_cancellation_refund,
    return_refund,
    refund_payable,
    money,
)

logger = logging.getLogger(__name__)

STATUS_DESCRIPTIONS = {
    OrderStatus.PROCESSING: "Order is being prepared for shipment",
    OrderStatus.SHIPPED: "Package has been shipped and is in transit",
    OrderStatus.DELIVERED: "Package has been successfully delivered",
}

PAYMENT_COMPLETED = "Payment Completed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass
class PendingEffects:
    """Stock and wallet effects decided by a mutation, applied before commit"""
    now: datetime
    restocks: List[Tuple[UUID, int, str]] = field(default_factory=list)
    refund: float = 0.0
    refund_description: str = "Refund"
    # Extra (status, description) timeline entries recorded after the main one
    notes: List[Tuple[str, str]] = field(default_factory=list)


def order_mutation(operation: str):
    """
    Wrap a lifecycle operation with idempotent replay and database error mapping.

    The wrapped coroutine receives the order id first and an optional
    ``idempotency_key`` keyword.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(self, order_id: UUID, *args, idempotency_key: Optional[str] = None, **kwargs):
            replay = await self._replay(idempotency_key, order_id, operation)
            if replay is not None:
                return replay
            try:
                return await func(self, order_id, *args, idempotency_key=idempotency_key, **kwargs)
            except StaleDataError as e:
                await self.db.rollback()
                structured_logger.warning(
                    message=f"Concurrent modification during {operation}",
                    metadata={"order_id": str(order_id)},
                    exception=e,
                )
                raise ConflictException(message="Order was modified by another request, please retry")
            except IntegrityError as e:
                await self.db.rollback()
                replay = await self._replay(idempotency_key, order_id, operation)
                if replay is not None:
                    return replay
                structured_logger.error(
                    message=f"Integrity error during {operation}",
                    metadata={"order_id": str(order_id)},
                    exception=e,
                )
                raise ConflictException(message="Conflicting order update")
            except APIException:
                raise
            except SQLAlchemyError as e:
                await self.db.rollback()
                structured_logger.error(
                    message=f"Database error during {operation}",
                    metadata={"order_id": str(order_id)},
                    exception=e,
                )
                raise DatabaseException(message=f"Failed to {operation.replace('_', ' ')}")
        return wrapper
    return decorator


class OrderLifecycleService:
    """Order lifecycle engine: cancellations, returns and admin status updates"""

    def __init__(
        self,
        db: AsyncSession,
        clock: Callable[[], datetime] = utc_now,
        inventory_service: Optional[InventoryService] = None,
        wallet_service: Optional[WalletService] = None,
        return_window_days: Optional[int] = None,
    ):
        self.db = db
        self.clock = clock
        self.inventory_service = inventory_service or InventoryService(db)
        self.wallet_service = wallet_service or WalletService(db)
        self.return_window_days = (
            return_window_days if return_window_days is not None else settings.RETURN_WINDOW_DAYS
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_order(self, order_id: UUID, actor: Optional[Actor] = None) -> Order:
        """Load an order with its items and timeline. Customers only see their own orders."""
        result = await self.db.execute(
            select(Order)
            .where(Order.id == order_id)
            .execution_options(populate_existing=True)
        )
        order = result.scalar_one_or_none()
        if order is None or (actor is not None and not actor.is_admin and order.user_id != actor.user_id):
            raise NotFoundException(message="Order not found", resource="order")
        return order

    async def get_user_orders(self, user_id: UUID, page: int = 1, limit: int = 10,
                              status_filter: Optional[str] = None) -> Dict[str, Any]:
        """Get paginated list of user's orders"""
        query = select(Order).where(Order.user_id == user_id)
        count_query = select(func.count(Order.id)).where(Order.user_id == user_id)
        if status_filter:
            query = query.where(Order.status == status_filter)
            count_query = count_query.where(Order.status == status_filter)

        total = await self.db.scalar(count_query) or 0
        result = await self.db.execute(
            query.order_by(desc(Order.created_at)).offset((page - 1) * limit).limit(limit)
        )
        return {
            "orders": result.scalars().all(),
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit
            }
        }

    async def list_return_requests(self, actor: Actor, page: int = 1, limit: int = 10) -> Dict[str, Any]:
        """
        Admin queue of pending return requests.

        A whole-order request is listed once with its full return amount,
        individual item requests are listed per item.
        """
        self._require_admin(actor)

        pending_orders = select(OrderItem.order_id).where(
            OrderItem.status == ItemStatus.RETURN_REQUESTED.value
        )
        total = await self.db.scalar(
            select(func.count(Order.id)).where(Order.id.in_(pending_orders))
        ) or 0
        result = await self.db.execute(
            select(Order)
            .where(Order.id.in_(pending_orders))
            .order_by(desc(Order.return_requested_at), desc(Order.created_at))
            .offset((page - 1) * limit)
            .limit(limit)
        )

        requests: List[ReturnRequestSummary] = []
        for order in result.scalars().all():
            requested = items_with_status(order.items, ItemStatus.RETURN_REQUESTED)
            if OrderStatus(order.status) == OrderStatus.RETURN_REQUESTED and order.return_attempted:
                whole = self._is_whole_order(order, requested)
                requests.append(ReturnRequestSummary(
                    order_id=order.id,
                    order_number=order.order_number,
                    user_id=order.user_id,
                    request_type="order",
                    reason=order.return_reason,
                    requested_at=order.return_requested_at,
                    return_amount=return_refund(order, requested, include_shipping=whole),
                ))
                continue
            for item in requested:
                requests.append(ReturnRequestSummary(
                    order_id=order.id,
                    order_number=order.order_number,
                    user_id=order.user_id,
                    request_type="item",
                    item_id=item.id,
                    product_name=item.product_name,
                    reason=item.return_reason,
                    requested_at=item.return_requested_at,
                    return_amount=return_refund(order, [item], include_shipping=False),
                ))

        return {
            "requests": requests,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit
            }
        }

    # ------------------------------------------------------------------
    # Customer operations
    # ------------------------------------------------------------------

    @order_mutation("cancel_item")
    async def cancel_item(self, order_id: UUID, item_id: UUID, actor: Actor,
                          reason: Optional[str] = None,
                          idempotency_key: Optional[str] = None) -> OrderMutationResult:
        """Cancel a single active line item before shipment."""
        order = await self.get_order(order_id, actor)
        self._ensure_customer_cancellable(order)

        item = self._get_item(order, item_id)
        self._ensure_item_cancellable(item)

        effects = PendingEffects(now=self.clock(), refund_description=f"Refund for cancelled item in order {order.order_number}")
        self._cancel_item(order, item, reason, effects)

        return await self._finalize(
            order, effects,
            operation="cancel_item",
            idempotency_key=idempotency_key,
            description=self._with_reason(f"Item {item.product_name or item.id} cancelled", reason),
            message="Item cancelled successfully",
        )

    @order_mutation("cancel_order")
    async def cancel_order(self, order_id: UUID, actor: Actor,
                           reason: Optional[str] = None,
                           idempotency_key: Optional[str] = None) -> OrderMutationResult:
        """Cancel every remaining active item of an order that has not shipped."""
        order = await self.get_order(order_id, actor)
        self._ensure_customer_cancellable(order)
        return await self._cancel_whole_order(order, reason, idempotency_key, operation="cancel_order")

    @order_mutation("request_return")
    async def request_return(self, order_id: UUID, actor: Actor, reason: str,
                             item_ids: Optional[List[UUID]] = None,
                             idempotency_key: Optional[str] = None) -> OrderMutationResult:
        """
        Request a return for the whole order or for selected items.

        Only delivered orders qualify, within the return window, and each
        order or item may be put up for return once.
        """
        if not reason or not reason.strip():
            raise ValidationException(message="Return reason is required")

        order = await self.get_order(order_id, actor)
        current = OrderStatus(order.status)
        if current != OrderStatus.DELIVERED:
            raise InvalidTransitionException(
                message=f"Returns can only be requested for delivered orders, order is {current.value}",
                current_status=current.value,
            )

        now = self.clock()
        self._ensure_within_return_window(order, now)

        if order.return_attempted:
            raise InvalidTransitionException(message="A return request has already been submitted for this order")

        if item_ids is None:
            if any(item.return_attempted for item in order.items):
                raise InvalidTransitionException(
                    message="A return request has already been submitted for items of this order"
                )
            targets = active_items(order.items)
        else:
            targets = []
            for item_id in dict.fromkeys(item_ids):
                item = self._get_item(order, item_id)
                if item.return_attempted:
                    raise InvalidTransitionException(
                        message="A return request has already been submitted for this item"
                    )
                if ItemStatus(item.status) != ItemStatus.ACTIVE:
                    raise InvalidTransitionException(
                        message=f"Item is {item.status} and cannot be returned",
                        current_status=item.status,
                    )
                targets.append(item)

        if not targets:
            raise InvalidTransitionException(message="No items available for return")

        effects = PendingEffects(now=now)
        self._mark_return_requested(order, targets, reason.strip(), now)

        return await self._finalize(
            order, effects,
            operation="request_return",
            idempotency_key=idempotency_key,
            description=self._with_reason("Return requested", reason.strip()),
            message="Return request submitted successfully",
        )

    # ------------------------------------------------------------------
    # Admin operations
    # ------------------------------------------------------------------

    @order_mutation("approve_return")
    async def approve_return(self, order_id: UUID, actor: Actor,
                             item_ids: Optional[List[UUID]] = None,
                             admin_note: Optional[str] = None,
                             idempotency_key: Optional[str] = None) -> OrderMutationResult:
        """
        Approve a pending return, restore stock and credit the prorated refund.

        Approving targets that are already returned is reported as an
        already-processed success without side effects.
        """
        self._require_admin(actor)
        order = await self.get_order(order_id)

        try:
            targets, whole = self._resolve_approval_targets(order, item_ids)
        except AlreadyProcessedException as e:
            logger.info(f"Return for order {order.order_number} already processed")
            return OrderMutationResult(
                order_id=order.id,
                new_order_status=order.status,
                already_processed=True,
                message=e.message,
            )

        effects = PendingEffects(now=self.clock(), refund_description=f"Refund for returned items in order {order.order_number}")
        self._approve_items(order, targets, whole, effects, admin_note)

        return await self._finalize(
            order, effects,
            operation="approve_return",
            idempotency_key=idempotency_key,
            description="Return approved" if whole else f"Return approved for {len(targets)} item(s)",
            message="Return approved successfully",
        )

    @order_mutation("reject_return")
    async def reject_return(self, order_id: UUID, actor: Actor, rejection_reason: str,
                            item_ids: Optional[List[UUID]] = None,
                            idempotency_key: Optional[str] = None) -> OrderMutationResult:
        """Reject a pending return; the targeted items become active again."""
        self._require_admin(actor)
        if not rejection_reason or not rejection_reason.strip():
            raise ValidationException(message="Rejection reason is required")
        rejection_reason = rejection_reason.strip()

        order = await self.get_order(order_id)
        if item_ids is None:
            targets = items_with_status(order.items, ItemStatus.RETURN_REQUESTED)
            if not targets:
                raise InvalidTransitionException(
                    message="No pending return request for this order",
                    current_status=order.status,
                )
        else:
            targets = []
            for item_id in dict.fromkeys(item_ids):
                item = self._get_item(order, item_id)
                if ItemStatus(item.status) != ItemStatus.RETURN_REQUESTED:
                    raise InvalidTransitionException(
                        message=f"Item is {item.status}, no return request to reject",
                        current_status=item.status,
                    )
                targets.append(item)

        now = self.clock()
        for item in targets:
            item.status = ItemStatus.ACTIVE.value
            item.return_rejected_at = now
            item.rejection_reason = rejection_reason
        order.return_rejected_at = now
        order.rejection_reason = rejection_reason

        return await self._finalize(
            order, PendingEffects(now=now),
            operation="reject_return",
            idempotency_key=idempotency_key,
            description=f"Return request rejected: {rejection_reason}",
            message="Return request rejected",
        )

    @order_mutation("admin_transition")
    async def admin_transition(self, order_id: UUID, actor: Actor, new_status: str,
                               idempotency_key: Optional[str] = None) -> OrderMutationResult:
        """
        Move an order one step along Pending -> Processing -> Shipped -> Delivered,
        or into one of the side branches (Cancelled, Return Requested, Returned).
        """
        self._require_admin(actor)
        try:
            target = OrderStatus(new_status)
        except ValueError:
            raise ValidationException(message=f"Unknown order status '{new_status}'")

        order = await self.get_order(order_id)
        current = OrderStatus(order.status)

        if current == OrderStatus.CANCELLED:
            raise InvalidTransitionException(
                message="Cannot update status of a cancelled order",
                current_status=current.value,
            )
        if PaymentMethod(order.payment_method) != PaymentMethod.CASH_ON_DELIVERY \
                and PaymentStatus(order.payment_status) != PaymentStatus.COMPLETED:
            raise InvalidTransitionException(
                message="Cannot update order status: payment has not been completed",
                current_status=current.value,
            )

        if target == OrderStatus.CANCELLED:
            if current not in ADMIN_CANCELLABLE_STATUSES:
                raise self._transition_error(current, target)
            return await self._cancel_whole_order(
                order, "Cancelled by admin", idempotency_key, operation="admin_transition"
            )

        now = self.clock()
        effects = PendingEffects(now=now)

        if target == OrderStatus.RETURN_REQUESTED:
            if current != OrderStatus.DELIVERED:
                raise self._transition_error(current, target)
            self._mark_return_requested(order, active_items(order.items), "Return initiated by admin", now)
            description = "Return initiated by admin"

        elif target == OrderStatus.RETURNED:
            if current != OrderStatus.RETURN_REQUESTED:
                raise self._transition_error(current, target)
            targets, whole = self._resolve_approval_targets(order, None)
            effects.refund_description = f"Refund for returned order {order.order_number}"
            self._approve_items(order, targets, whole, effects, None)
            description = "Return approved"

        elif target in (OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.DELIVERED):
            if current in (OrderStatus.RETURN_REQUESTED, OrderStatus.RETURNED, OrderStatus.PARTIALLY_RETURNED):
                raise self._transition_error(current, target)
            stage = fulfillment_stage(order.items)
            expected = next_fulfillment_status(stage) if stage is not None else None
            if expected is None or expected.value != target.value:
                raise self._transition_error(current, target, expected)

            for item in active_items(order.items):
                if fulfillment_rank(item.fulfillment_status) < fulfillment_rank(expected):
                    item.fulfillment_status = expected.value

            if target == OrderStatus.DELIVERED:
                self._settle_cash_on_delivery(order, effects)
            description = STATUS_DESCRIPTIONS[target]

        else:
            raise self._transition_error(current, target)

        return await self._finalize(
            order, effects,
            operation="admin_transition",
            idempotency_key=idempotency_key,
            description=description,
            message=f"Order status updated to {target.value}",
        )

    @order_mutation("bulk_update_items")
    async def bulk_update_items(self, order_id: UUID, actor: Actor, updates: List[ItemStatusUpdate],
                                idempotency_key: Optional[str] = None) -> OrderMutationResult:
        """
        Apply per-item status updates, reporting the outcome of each, then
        derive the order status from the resulting items.
        """
        self._require_admin(actor)
        order = await self.get_order(order_id)
        current = OrderStatus(order.status)

        if current == OrderStatus.CANCELLED:
            raise InvalidTransitionException(
                message="Cannot update items of a cancelled order",
                current_status=current.value,
            )
        if PaymentStatus(order.payment_status) != PaymentStatus.COMPLETED:
            raise InvalidTransitionException(
                message="Cannot update item statuses: payment has not been completed",
                current_status=current.value,
            )

        effects = PendingEffects(now=self.clock(), refund_description=f"Refund for items in order {order.order_number}")
        item_results: List[ItemUpdateResult] = []

        for update in updates:
            item = order.get_item(update.item_id)
            if item is None:
                item_results.append(ItemUpdateResult(item_id=update.item_id, success=False, message="Item not found"))
                continue
            try:
                message = self._apply_item_update(order, item, update.status, effects)
                item_results.append(ItemUpdateResult(item_id=item.id, success=True, message=message))
            except (InvalidTransitionException, ValidationException) as e:
                item_results.append(ItemUpdateResult(item_id=item.id, success=False, message=e.message))

        updated = [r for r in item_results if r.success]
        if not updated:
            raise InvalidTransitionException(
                message="No items were updated: " + "; ".join(r.message for r in item_results),
                current_status=current.value,
            )

        return await self._finalize(
            order, effects,
            operation="bulk_update_items",
            idempotency_key=idempotency_key,
            description=f"{len(updated)} item(s) updated by admin",
            message=f"{len(updated)} of {len(item_results)} item(s) updated",
            item_results=item_results,
        )

    # ------------------------------------------------------------------
    # In-memory mutation helpers
    # ------------------------------------------------------------------

    def _cancel_item(self, order: Order, item: OrderItem, reason: Optional[str], effects: PendingEffects):
        others = [other for other in live_items(order.items) if other is not item]
        effects.refund += cancellation_refund(order, [item])
        self._absorb_coupon(order, [item], prorate=False)

        item.status = ItemStatus.CANCELLED.value
        item.cancellation_reason = reason
        item.cancelled_at = effects.now
        effects.restocks.append((item.product_id, item.quantity, "order_cancelled"))

        if not others:
            order.cancellation_reason = reason

    async def _cancel_whole_order(self, order: Order, reason: Optional[str],
                                  idempotency_key: Optional[str], operation: str) -> OrderMutationResult:
        self._ensure_nothing_shipped(order)
        targets = active_items(order.items)
        if not targets:
            raise InvalidTransitionException(
                message="Order has no active items to cancel",
                current_status=order.status,
            )

        effects = PendingEffects(now=self.clock(), refund_description=f"Refund for cancelled order {order.order_number}")
        effects.refund = order_cancellation_refund(order)
        self._absorb_coupon(order, targets, prorate=False)
        for item in targets:
            item.status = ItemStatus.CANCELLED.value
            item.cancellation_reason = reason
            item.cancelled_at = effects.now
            effects.restocks.append((item.product_id, item.quantity, "order_cancelled"))
        order.cancellation_reason = reason

        return await self._finalize(
            order, effects,
            operation=operation,
            idempotency_key=idempotency_key,
            description=self._with_reason("Order cancelled", reason),
            message="Order cancelled successfully",
        )

    def _mark_return_requested(self, order: Order, targets: List[OrderItem], reason: str, now: datetime):
        whole = set(map(id, targets)) == set(map(id, active_items(order.items)))
        for item in targets:
            item.status = ItemStatus.RETURN_REQUESTED.value
            item.return_reason = reason
            item.return_requested_at = now
            item.return_attempted = True

        if whole:
            order.return_attempted = True
            order.return_reason = reason
        else:
            order.return_reason = f"Individual item return requested: {reason}"
        order.return_requested_at = now

    def _is_whole_order(self, order: Order, targets: List[OrderItem]) -> bool:
        return (
            OrderStatus(order.status) == OrderStatus.RETURN_REQUESTED
            and all(ItemStatus(item.status) in (ItemStatus.ACTIVE, ItemStatus.RETURN_REQUESTED) for item in order.items)
            and set(map(id, targets)) == set(map(id, live_items(order.items)))
        )

    def _resolve_approval_targets(self, order: Order, item_ids: Optional[List[UUID]]) -> Tuple[List[OrderItem], bool]:
        current = OrderStatus(order.status)

        if item_ids is None:
            if current == OrderStatus.RETURNED:
                raise AlreadyProcessedException(message="Return has already been approved for this order")
            if current == OrderStatus.RETURN_REQUESTED and self._is_whole_order(order, live_items(order.items)):
                return live_items(order.items), True
            requested = items_with_status(order.items, ItemStatus.RETURN_REQUESTED)
            if not requested:
                if items_with_status(order.items, ItemStatus.RETURNED):
                    raise AlreadyProcessedException(message="Returned items have already been processed")
                raise InvalidTransitionException(
                    message="No pending return request for this order",
                    current_status=current.value,
                )
            return requested, False

        targets = []
        for item_id in dict.fromkeys(item_ids):
            item = self._get_item(order, item_id)
            status = ItemStatus(item.status)
            if status == ItemStatus.RETURNED:
                continue
            if status != ItemStatus.RETURN_REQUESTED:
                raise InvalidTransitionException(
                    message=f"Item is {status.value}, no return request to approve",
                    current_status=status.value,
                )
            targets.append(item)
        if not targets:
            raise AlreadyProcessedException(message="Items have already been returned")
        return targets, self._is_whole_order(order, targets)

    def _approve_items(self, order: Order, targets: List[OrderItem], whole: bool,
                       effects: PendingEffects, admin_note: Optional[str]):
        effects.refund += return_refund(order, targets, include_shipping=whole)
        self._absorb_coupon(order, targets, prorate=True)
        for item in targets:
            item.status = ItemStatus.RETURNED.value
            item.return_approved_at = effects.now
            effects.restocks.append((item.product_id, item.quantity, "order_returned"))

        order.return_approved_at = effects.now
        if admin_note:
            order.admin_note = admin_note

    def _apply_item_update(self, order: Order, item: OrderItem, new_status: str, effects: PendingEffects) -> str:
        current = ItemStatus(item.status)
        if current in (ItemStatus.CANCELLED, ItemStatus.RETURNED):
            raise InvalidTransitionException(message=f"Item is already {current.value}", current_status=current.value)

        if new_status in {status.value for status in FulfillmentStatus}:
            if current != ItemStatus.ACTIVE:
                raise InvalidTransitionException(
                    message=f"Item is {current.value}, fulfillment cannot change",
                    current_status=current.value,
                )
            if FulfillmentStatus(item.fulfillment_status) == FulfillmentStatus.DELIVERED:
                raise InvalidTransitionException(message="Item has already been delivered")
            if fulfillment_rank(new_status) <= fulfillment_rank(item.fulfillment_status):
                raise InvalidTransitionException(
                    message=f"Cannot move item from {item.fulfillment_status} to {new_status}"
                )
            item.fulfillment_status = new_status
            return f"Item marked {new_status}"

        if new_status == ItemStatus.CANCELLED.value:
            self._ensure_item_cancellable(item)
            self._cancel_item(order, item, "Cancelled by admin", effects)
            return "Item cancelled"

        if new_status == ItemStatus.RETURN_REQUESTED.value:
            if current != ItemStatus.ACTIVE \
                    or FulfillmentStatus(item.fulfillment_status) != FulfillmentStatus.DELIVERED:
                raise InvalidTransitionException(message="Only delivered items can be marked for return")
            self._mark_return_requested(order, [item], "Return initiated by admin", effects.now)
            return "Return requested for item"

        if new_status == ItemStatus.RETURNED.value:
            if current != ItemStatus.RETURN_REQUESTED:
                raise InvalidTransitionException(
                    message="Item must have a pending return request before it can be returned",
                    current_status=current.value,
                )
            self._approve_items(order, [item], False, effects, None)
            return "Item returned"

        raise ValidationException(message=f"Unknown item status '{new_status}'")

    @staticmethod
    def _absorb_coupon(order: Order, items: List[OrderItem], prorate: bool):
        # Must run before the items change status
        withheld = coupon_deduction(order, items, prorate)
        order.coupon_absorbed = money((order.coupon_absorbed or 0.0) + withheld)

    def _settle_cash_on_delivery(self, order: Order, effects: PendingEffects):
        if PaymentMethod(order.payment_method) == PaymentMethod.CASH_ON_DELIVERY \
                and PaymentStatus(order.payment_status) == PaymentStatus.PENDING:
            order.payment_status = PaymentStatus.COMPLETED.value
            effects.notes.append((PAYMENT_COMPLETED, "Cash on Delivery payment collected"))

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------

    async def _finalize(self, order: Order, effects: PendingEffects, operation: str,
                        idempotency_key: Optional[str], description: str, message: str,
                        item_results: Optional[List[ItemUpdateResult]] = None) -> OrderMutationResult:
        """Refresh cached totals and status, apply side effects and commit once."""
        order.total_price = billable_total(order.items)
        order.final_amount = compute_final_amount(order)
        order.status = derive_order_status(order.items).value
        order.updated_at = effects.now

        order.add_timeline_entry(order.status, effects.now, description)
        for status, note in effects.notes:
            order.add_timeline_entry(status, effects.now, note)

        result = OrderMutationResult(
            order_id=order.id,
            new_order_status=order.status,
            message=message,
            item_results=item_results or [],
        )
        await self._apply_effects(order, effects, result)

        if idempotency_key:
            self.db.add(OrderMutation(
                idempotency_key=idempotency_key,
                order_id=order.id,
                operation=operation,
                result=result.model_dump_json(),
            ))

        await self.db.commit()
        logger.info(
            f"{operation} on order {order.order_number}: status {order.status}, refund {result.refund_amount}"
        )
        return result

    async def _apply_effects(self, order: Order, effects: PendingEffects, result: OrderMutationResult):
        """
        Restore stock and credit the wallet. A failing dependency is logged and
        reported in the result; the status change still commits.
        """
        for product_id, quantity, reason in effects.restocks:
            try:
                await self.inventory_service.increment_stock(product_id, quantity, order_id=order.id, reason=reason)
            except SQLAlchemyError:
                raise
            except Exception as e:
                structured_logger.error(
                    message="Failed to restore stock",
                    user_id=str(order.user_id),
                    metadata={"order_id": str(order.id), "product_id": str(product_id), "quantity": quantity},
                    exception=e,
                )
                result.errors.append(f"Stock restore failed for product {product_id}: {getattr(e, 'message', str(e))}")

        payable = refund_payable(order, effects.refund)
        if payable <= 0:
            return
        try:
            await self.wallet_service.credit(order.user_id, payable, effects.refund_description, order_id=order.id)
            result.refund_amount = money(payable)
        except SQLAlchemyError:
            raise
        except Exception as e:
            structured_logger.error(
                message="Failed to credit refund to wallet",
                user_id=str(order.user_id),
                metadata={"order_id": str(order.id), "amount": payable},
                exception=e,
            )
            result.errors.append(f"Wallet refund of {payable} failed: {getattr(e, 'message', str(e))}")

    async def _replay(self, idempotency_key: Optional[str], order_id: UUID,
                      operation: str) -> Optional[OrderMutationResult]:
        """Stored result for a repeated key; a key reused for another request is a conflict."""
        if not idempotency_key:
            return None
        record = await self.db.scalar(
            select(OrderMutation).where(OrderMutation.idempotency_key == idempotency_key)
        )
        if record is None:
            return None
        if record.order_id != order_id or record.operation != operation:
            structured_logger.warning(
                message="Idempotency key reused for a different request",
                metadata={
                    "idempotency_key": idempotency_key,
                    "order_id": str(order_id),
                    "operation": operation,
                    "original_order_id": str(record.order_id),
                    "original_operation": record.operation,
                },
            )
            raise ConflictException(message="Idempotency key has already been used for a different request")
        logger.info(f"Replaying {record.operation} for idempotency key {idempotency_key}")
        return OrderMutationResult.model_validate_json(record.result)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    @staticmethod
    def _require_admin(actor: Optional[Actor]):
        if actor is None or not actor.is_admin:
            raise AuthorizationException(message="Admin access required")

    @staticmethod
    def _get_item(order: Order, item_id: UUID) -> OrderItem:
        item = order.get_item(item_id)
        if item is None:
            raise NotFoundException(message="Order item not found", resource="order_item")
        return item

    @staticmethod
    def _ensure_customer_cancellable(order: Order):
        current = OrderStatus(order.status)
        if current in NON_CANCELLABLE_STATUSES:
            raise InvalidTransitionException(
                message=f"Order cannot be cancelled once it is {current.value}",
                current_status=current.value,
            )

    @staticmethod
    def _ensure_item_cancellable(item: OrderItem):
        if ItemStatus(item.status) != ItemStatus.ACTIVE:
            raise InvalidTransitionException(
                message=f"Item is already {item.status}",
                current_status=item.status,
            )
        if fulfillment_rank(item.fulfillment_status) >= fulfillment_rank(FulfillmentStatus.SHIPPED):
            raise InvalidTransitionException(
                message=f"Item has already been {item.fulfillment_status.lower()} and cannot be cancelled",
                current_status=item.fulfillment_status,
            )

    @staticmethod
    def _ensure_nothing_shipped(order: Order):
        for item in active_items(order.items):
            if fulfillment_rank(item.fulfillment_status) >= fulfillment_rank(FulfillmentStatus.SHIPPED):
                raise InvalidTransitionException(
                    message="Order has items that are already shipped and cannot be cancelled",
                    current_status=order.status,
                )

    def _ensure_within_return_window(self, order: Order, now: datetime):
        delivered_at = None
        for entry in order.timeline:
            if entry.status == OrderStatus.DELIVERED.value:
                delivered_at = as_utc(entry.timestamp)
                break
        if delivered_at is None:
            delivered_at = as_utc(order.updated_at or order.created_at)
        if delivered_at is None:
            raise InvalidTransitionException(message="Delivery date is unknown for this order")
        if as_utc(now) - delivered_at > timedelta(days=self.return_window_days):
            raise InvalidTransitionException(
                message=f"Return window of {self.return_window_days} days has expired"
            )

    @staticmethod
    def _transition_error(current: OrderStatus, target: OrderStatus,
                          expected: Optional[FulfillmentStatus] = None) -> InvalidTransitionException:
        message = f"Cannot change order status from {current.value} to {target.value}"
        if expected is not None:
            message += f"; next allowed status is {expected.value}"
        return InvalidTransitionException(message=message, current_status=current.value)

    @staticmethod
    def _with_reason(text: str, reason: Optional[str]) -> str:
        return f"{text}: {reason}" if reason else text
