"""
发运 API 路由
"""
from fastapi import APIRouter, Depends

from mf_core.services import Actor, ShipmentService
from .deps import current_actor, get_shipment_service, require_roles
from .models import (
    ApiResponse, CancelShipmentRequest, NdrActionRequest, OrderResponse, PickupRequest, RatesRequest,
    ShipmentCreateRequest, TrackRequest
)

router = APIRouter()


@router.post("/rates", response_model=ApiResponse[dict])
async def quote_rates(
    body: RatesRequest,
    actor: Actor = Depends(current_actor),
    shipments: ShipmentService = Depends(get_shipment_service),
):
    data = await shipments.quote_rates(body.pickup_pincode, body.delivery_pincode, body.weight_kg, body.cod_amount)
    return ApiResponse.success(data)


@router.post("/shipments", response_model=ApiResponse[OrderResponse], status_code=201)
async def create_shipment(
    body: ShipmentCreateRequest,
    actor: Actor = Depends(require_roles("seller", "admin")),
    shipments: ShipmentService = Depends(get_shipment_service),
):
    """为订单创建正向运单并分配 AWB"""
    order = await shipments.create_shipment_for_order(body.order_id, actor)
    return ApiResponse.success(OrderResponse.model_validate(order))


@router.post("/pickups", response_model=ApiResponse[dict])
async def schedule_pickup(
    body: PickupRequest,
    actor: Actor = Depends(require_roles("seller", "admin")),
    shipments: ShipmentService = Depends(get_shipment_service),
):
    return ApiResponse.success(await shipments.schedule_pickup(body.order_id, actor, body.pickup_date))


@router.get("/label/{order_id}", response_model=ApiResponse[dict])
async def get_label(
    order_id: int,
    actor: Actor = Depends(require_roles("seller", "admin")),
    shipments: ShipmentService = Depends(get_shipment_service),
):
    return ApiResponse.success(await shipments.get_label(order_id, actor))


@router.post("/cancel/{order_id}", response_model=ApiResponse[OrderResponse])
async def cancel_shipment(
    order_id: int,
    body: CancelShipmentRequest,
    actor: Actor = Depends(require_roles("seller", "admin")),
    shipments: ShipmentService = Depends(get_shipment_service),
):
    order = await shipments.cancel_shipment(order_id, actor, body.reason)
    return ApiResponse.success(OrderResponse.model_validate(order))


@router.post("/ndr-action", response_model=ApiResponse[dict])
async def ndr_action(
    body: NdrActionRequest,
    actor: Actor = Depends(require_roles("seller", "admin")),
    shipments: ShipmentService = Depends(get_shipment_service),
):
    """未妥投处理：重新派送或退回"""
    data = await shipments.ndr_action(
        body.order_id, actor, body.action, phone=body.phone, address1=body.address1, address2=body.address2
    )
    return ApiResponse.success(data)


@router.post("/track", response_model=ApiResponse[dict])
async def track(
    body: TrackRequest,
    actor: Actor = Depends(current_actor),
    shipments: ShipmentService = Depends(get_shipment_service),
):
    data = await shipments.track(actor, order_id=body.order_id, awb=body.awb, contact=body.contact, email=body.email)
    return ApiResponse.success(data)
