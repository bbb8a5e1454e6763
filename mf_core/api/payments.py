"""
支付 API 路由
"""
from fastapi import APIRouter, Depends

from mf_core.services import Actor, PaymentVerifier
from .deps import current_actor, get_verifier
from .models import ApiResponse, CreatePaymentOrderRequest, PaymentStateResponse, VerifyPaymentRequest

router = APIRouter()


def _state_response(state) -> PaymentStateResponse:
    return PaymentStateResponse(
        payment_id=state.payment_id, status=state.status, amount=state.amount,
        currency=state.currency, method=state.method, order_id=state.order_id,
    )


@router.post("/create-order", response_model=ApiResponse[dict])
async def create_payment_order(
    body: CreatePaymentOrderRequest,
    actor: Actor = Depends(current_actor),
    verifier: PaymentVerifier = Depends(get_verifier),
):
    """创建支付网关订单，前端用返回的 order_id 拉起支付"""
    order = await verifier.create_gateway_order(body.amount, actor.user_id, body.currency, body.receipt)
    return ApiResponse.success(order)


@router.post("/verify", response_model=ApiResponse[PaymentStateResponse])
async def verify_payment(
    body: VerifyPaymentRequest,
    actor: Actor = Depends(current_actor),
    verifier: PaymentVerifier = Depends(get_verifier),
):
    state = await verifier.ensure_captured(body.gateway_order_id, body.payment_id, body.signature)
    return ApiResponse.success(_state_response(state))


@router.get("/status/{payment_id}", response_model=ApiResponse[PaymentStateResponse])
async def payment_status(
    payment_id: str,
    actor: Actor = Depends(current_actor),
    verifier: PaymentVerifier = Depends(get_verifier),
):
    state = await verifier.fetch_payment_state(payment_id)
    return ApiResponse.success(_state_response(state))
