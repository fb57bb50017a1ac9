from uuid import UUID
from fastapi import APIRouter, Depends, Query, Header
from typing import Optional
from core.utils.response import Response
from services.orders import OrderLifecycleService
from schemas.orders import (
    Actor,
    StatusTransitionRequest,
    BulkItemUpdateRequest,
    ApproveReturnRequest,
    RejectReturnRequest,
    OrderResponse,
)
from core.dependencies import require_admin, get_order_service

router = APIRouter(prefix="/admin/orders", tags=["Admin - Orders"])


@router.get("/returns")
async def get_return_requests(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(require_admin),
    order_service: OrderLifecycleService = Depends(get_order_service)
):
    """List pending return requests with their refund amounts."""
    result = await order_service.list_return_requests(actor, page, limit)
    return Response(success=True, data=result["requests"], pagination=result["pagination"])


@router.get("/{order_id}")
async def get_order(
    order_id: UUID,
    actor: Actor = Depends(require_admin),
    order_service: OrderLifecycleService = Depends(get_order_service)
):
    """Get any order."""
    order = await order_service.get_order(order_id, actor)
    return Response(success=True, data=OrderResponse.model_validate(order))


@router.put("/{order_id}/status")
async def update_order_status(
    order_id: UUID,
    request: StatusTransitionRequest,
    actor: Actor = Depends(require_admin),
    order_service: OrderLifecycleService = Depends(get_order_service),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    """Move an order to its next status."""
    result = await order_service.admin_transition(
        order_id, actor, request.status, idempotency_key=idempotency_key
    )
    return Response(success=True, data=result, message=result.message)


@router.put("/{order_id}/items/status")
async def update_items_status(
    order_id: UUID,
    request: BulkItemUpdateRequest,
    actor: Actor = Depends(require_admin),
    order_service: OrderLifecycleService = Depends(get_order_service),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    """Update the status of several items at once."""
    result = await order_service.bulk_update_items(
        order_id, actor, request.updates, idempotency_key=idempotency_key
    )
    return Response(success=True, data=result, message=result.message)


@router.post("/{order_id}/return/approve")
async def approve_return(
    order_id: UUID,
    request: ApproveReturnRequest,
    actor: Actor = Depends(require_admin),
    order_service: OrderLifecycleService = Depends(get_order_service),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    """Approve a pending return request."""
    result = await order_service.approve_return(
        order_id, actor, item_ids=request.item_ids, admin_note=request.admin_note,
        idempotency_key=idempotency_key
    )
    return Response(success=True, data=result, message=result.message)


@router.post("/{order_id}/return/reject")
async def reject_return(
    order_id: UUID,
    request: RejectReturnRequest,
    actor: Actor = Depends(require_admin),
    order_service: OrderLifecycleService = Depends(get_order_service),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key")
):
    """Reject a pending return request."""
    result = await order_service.reject_return(
        order_id, actor, request.rejection_reason, item_ids=request.item_ids,
        idempotency_key=idempotency_key
    )
    return Response(success=True, data=result, message=result.message)
