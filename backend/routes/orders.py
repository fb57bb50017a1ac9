from uuid import UUID
from fastapi import APIRouter, Depends, Query, status, Header
from typing import Optional
from core.utils.response import Response
from core.exceptions import APIException
from services.orders import OrderLifecycleService
from services.checkout import CheckoutService
from schemas.orders import (
    Actor,
    PlaceOrderRequest,
    PaymentOutcomeRequest,
    CancelRequest,
    ReturnRequest,
    OrderResponse,
)
from core.dependencies import get_current_actor, get_order_service, get_checkout_service

router = APIRouter(prefix="/orders", tags=["Orders"])


@router.post("/", status_code=status.HTTP_201_CREATED)
async def place_order(
    request: PlaceOrderRequest,
    actor: Actor = Depends(get_current_actor),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """Place a new order."""
    try:
        order = await checkout_service.place_order(actor.user_id, request)
        return Response(
            success=True,
            data=OrderResponse.model_validate(order),
            message="Order placed successfully",
            status_code=status.HTTP_201_CREATED
        )
    except APIException:
        raise
    except Exception as e:
        raise APIException(
            status_code=status.HTTP_400_BAD_REQUEST,
            message=f"Failed to place order: {str(e)}"
        )


@router.get("/")
async def get_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status_filter: Optional[str] = None,
    actor: Actor = Depends(get_current_actor),
    order_service: OrderLifecycleService = Depends(get_order_service)
):
    """Get the caller's orders."""
    result = await order_service.get_user_orders(actor.user_id, page, limit, status_filter)
    return Response(
        success=True,
        data=[OrderResponse.model_validate(order) for order in result["orders"]],
        pagination=result["pagination"]
    )


@router.get("/{order_id}")
async def get_order(
    order_id: UUID,
    actor: Actor = Depends(get_current_actor),
    order_service: OrderLifecycleService = Depends(get_order_service)
):
    """Get a specific order."""
    order = await order_service.get_order(order_id, actor)
    return Response(success=True, data=OrderResponse.model_validate(order))


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: UUID,
    request: CancelRequest,
    actor: Actor = Depends(get_current_actor),
    order_service: OrderLifecycleService = Depends(get_order_service),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    """Cancel every remaining item of an order."""
    result = await order_service.cancel_order(
        order_id, actor, reason=request.reason, idempotency_key=idempotency_key
    )
    return Response(success=True, data=result, message=result.message)


@router.post("/{order_id}/items/{item_id}/cancel")
async def cancel_order_item(
    order_id: UUID,
    item_id: UUID,
    request: CancelRequest,
    actor: Actor = Depends(get_current_actor),
    order_service: OrderLifecycleService = Depends(get_order_service),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    """Cancel a single item of an order."""
    result = await order_service.cancel_item(
        order_id, item_id, actor, reason=request.reason, idempotency_key=idempotency_key
    )
    return Response(success=True, data=result, message=result.message)


@router.post("/{order_id}/return")
async def request_return(
    order_id: UUID,
    request: ReturnRequest,
    actor: Actor = Depends(get_current_actor),
    order_service: OrderLifecycleService = Depends(get_order_service),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    """Request a return for the whole order or for selected items."""
    result = await order_service.request_return(
        order_id, actor, request.reason, item_ids=request.item_ids, idempotency_key=idempotency_key
    )
    return Response(success=True, data=result, message=result.message)


@router.post("/{order_id}/payment")
async def record_payment(
    order_id: UUID,
    request: PaymentOutcomeRequest,
    actor: Actor = Depends(get_current_actor),
    checkout_service: CheckoutService = Depends(get_checkout_service)
):
    """Record the outcome of an online payment."""
    order = await checkout_service.record_payment(order_id, actor, request)
    message = "Payment completed" if request.success else "Payment failed"
    return Response(success=True, data=OrderResponse.model_validate(order), message=message)
