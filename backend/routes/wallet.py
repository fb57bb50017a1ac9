from fastapi import APIRouter, Depends, Query
from core.utils.response import Response
from services.wallet import WalletService
from services.coupons import CouponService
from schemas.orders import Actor
from schemas.wallet import WalletResponse, WalletTransactionResponse
from schemas.coupon import ApplyCouponRequest
from core.dependencies import get_current_actor, get_wallet_service, get_coupon_service

router = APIRouter(tags=["Wallet & Coupons"])


@router.get("/wallet")
async def get_wallet(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(get_current_actor),
    wallet_service: WalletService = Depends(get_wallet_service)
):
    """Get the caller's wallet balance and transaction history."""
    history = await wallet_service.get_history(actor.user_id, page, limit)
    # A freshly created wallet is only flushed, persist it
    await wallet_service.db.commit()
    return Response(
        success=True,
        data={
            "wallet": WalletResponse.model_validate(history["wallet"]),
            "transactions": [WalletTransactionResponse.model_validate(t) for t in history["transactions"]],
        },
        pagination=history["pagination"]
    )


@router.post("/coupons/apply")
async def apply_coupon(
    request: ApplyCouponRequest,
    actor: Actor = Depends(get_current_actor),
    coupon_service: CouponService = Depends(get_coupon_service)
):
    """Preview the discount a coupon grants on a cart total."""
    application = await coupon_service.apply_coupon(request.code, request.cart_total)
    return Response(
        success=True,
        data={
            **application.model_dump(),
            "original_amount": request.cart_total,
            "final_amount": request.cart_total - application.discount_amount,
        },
        message="Coupon applied successfully"
    )
