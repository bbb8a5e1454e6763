"""
订单 API 路由
"""
from typing import List

from fastapi import APIRouter, Depends, Query

from mf_core.models.enums import OrderStatus
from mf_core.services import Actor, OrderLifecycle
from mf_core.utils.errors import ValidationError
from mf_core.utils.logger import get_logger
from .deps import current_actor, get_order_lifecycle, require_roles
from .models import (
    ApiResponse, CancelOrderRequest, CreateOnlineOrderRequest, CreateOrderRequest, InvoiceResponse, OrderResponse,
    PaginatedResponse, PaymentStateResponse, UpdateOrderStatusRequest
)

router = APIRouter()
logger = get_logger(__name__)


def _checkout_payload(body: CreateOrderRequest) -> dict:
    return body.model_dump(include={"items", "shipping_address", "discount", "coupon"})


@router.post("", response_model=ApiResponse[List[OrderResponse]], status_code=201)
async def create_cod_orders(
    body: CreateOrderRequest,
    actor: Actor = Depends(current_actor),
    orders: OrderLifecycle = Depends(get_order_lifecycle),
):
    """货到付款下单（按商家拆单）"""
    created = await orders.create_cod_orders(actor.user_id, _checkout_payload(body))
    return ApiResponse.success([OrderResponse.model_validate(o) for o in created])


@router.post("/with-payment", response_model=ApiResponse[List[OrderResponse]], status_code=201)
async def create_online_orders(
    body: CreateOnlineOrderRequest,
    actor: Actor = Depends(current_actor),
    orders: OrderLifecycle = Depends(get_order_lifecycle),
):
    """在线支付下单：校验签名与捕获状态后建单"""
    created, state = await orders.create_online_orders(
        actor.user_id, _checkout_payload(body), body.gateway_order_id, body.payment_id, body.signature
    )
    payment = PaymentStateResponse(
        payment_id=state.payment_id, status=state.status, amount=state.amount,
        currency=state.currency, method=state.method, order_id=state.order_id,
    )
    return ApiResponse.success(
        [OrderResponse.model_validate(o) for o in created],
        metadata={"payment": payment.model_dump(mode="json")},
    )


@router.get("", response_model=ApiResponse[PaginatedResponse[OrderResponse]])
async def list_orders(
    as_seller: bool = Query(False, description="以商家身份查询"),
    page_size: int = Query(50, ge=1, le=200, description="每页大小"),
    offset: int = Query(0, ge=0, description="偏移量"),
    actor: Actor = Depends(current_actor),
    orders: OrderLifecycle = Depends(get_order_lifecycle),
):
    """查询订单列表（买家看自己的，商家看店铺的，管理员看全部）"""
    items, total = await orders.list_orders(actor, as_seller=as_seller, limit=page_size, offset=offset)
    return ApiResponse.success(PaginatedResponse.build(
        [OrderResponse.model_validate(o) for o in items], total, page_size, offset
    ))


@router.get("/{order_id}", response_model=ApiResponse[OrderResponse])
async def get_order(
    order_id: int,
    actor: Actor = Depends(current_actor),
    orders: OrderLifecycle = Depends(get_order_lifecycle),
):
    order = await orders.get_order(order_id, actor)
    return ApiResponse.success(OrderResponse.model_validate(order))


@router.get("/{order_id}/invoice", response_model=ApiResponse[InvoiceResponse])
async def get_invoice(
    order_id: int,
    actor: Actor = Depends(current_actor),
    orders: OrderLifecycle = Depends(get_order_lifecycle),
):
    """发票数据：买家、该订单商家或管理员"""
    return ApiResponse.success(InvoiceResponse(**await orders.invoice(actor, order_id)))


@router.put("/{order_id}/status", response_model=ApiResponse[OrderResponse])
async def update_order_status(
    order_id: int,
    body: UpdateOrderStatusRequest,
    actor: Actor = Depends(require_roles("seller", "admin")),
    orders: OrderLifecycle = Depends(get_order_lifecycle),
):
    """更新订单状态；送达时结算商家收益"""
    try:
        status = OrderStatus(body.status)
    except ValueError:
        raise ValidationError(code="INVALID_ORDER_STATUS", detail=f"Unknown order status: {body.status}")
    order = await orders.update_status(order_id, status, actor)
    return ApiResponse.success(OrderResponse.model_validate(order))


@router.put("/{order_id}/cancel", response_model=ApiResponse[OrderResponse])
async def cancel_order(
    order_id: int,
    body: CancelOrderRequest,
    actor: Actor = Depends(current_actor),
    orders: OrderLifecycle = Depends(get_order_lifecycle),
):
    order = await orders.cancel_order(order_id, actor, body.reason)
    return ApiResponse.success(OrderResponse.model_validate(order))


@router.post("/{order_id}/cancel-request", response_model=ApiResponse[OrderResponse])
async def request_cancellation(
    order_id: int,
    body: CancelOrderRequest,
    actor: Actor = Depends(require_roles("buyer")),
    orders: OrderLifecycle = Depends(get_order_lifecycle),
):
    order = await orders.request_cancellation(order_id, actor, body.reason)
    return ApiResponse.success(OrderResponse.model_validate(order))


@router.put("/{order_id}/approve-cancellation", response_model=ApiResponse[OrderResponse])
async def approve_cancellation(
    order_id: int,
    actor: Actor = Depends(require_roles("admin")),
    orders: OrderLifecycle = Depends(get_order_lifecycle),
):
    order = await orders.approve_cancellation(order_id, actor)
    return ApiResponse.success(OrderResponse.model_validate(order))


@router.post("/{order_id}/refund", response_model=ApiResponse[OrderResponse])
async def refund_order(
    order_id: int,
    actor: Actor = Depends(require_roles("admin")),
    orders: OrderLifecycle = Depends(get_order_lifecycle),
):
    """退款并冲回已入账的商家收益"""
    order = await orders.refund_order(order_id, actor)
    return ApiResponse.success(OrderResponse.model_validate(order))
