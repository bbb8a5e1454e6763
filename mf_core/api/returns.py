"""
退货 / 换货 API 路由
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from mf_core.services import Actor, ReturnLifecycle
from .deps import current_actor, get_return_lifecycle, require_roles
from .models import (
    ApiResponse, ManualReversePickupRequest, ReturnCreateRequest, ReturnNoteRequest, ReturnResponse
)

router = APIRouter()


def _many(items) -> List[ReturnResponse]:
    return [ReturnResponse.model_validate(r) for r in items]


@router.post("", response_model=ApiResponse[ReturnResponse], status_code=201)
async def create_return(
    body: ReturnCreateRequest,
    actor: Actor = Depends(require_roles("buyer")),
    returns: ReturnLifecycle = Depends(get_return_lifecycle),
):
    request = await returns.create_request(
        actor, body.order_id, body.type, body.reason_category, body.reason_text, body.refund_details
    )
    return ApiResponse.success(ReturnResponse.model_validate(request))


@router.get("/mine", response_model=ApiResponse[List[ReturnResponse]])
async def my_returns(
    actor: Actor = Depends(current_actor),
    returns: ReturnLifecycle = Depends(get_return_lifecycle),
):
    return ApiResponse.success(_many(await returns.list_mine(actor)))


@router.get("/seller", response_model=ApiResponse[List[ReturnResponse]])
async def seller_returns(
    actor: Actor = Depends(require_roles("seller", "admin")),
    returns: ReturnLifecycle = Depends(get_return_lifecycle),
):
    return ApiResponse.success(_many(await returns.list_for_seller(actor)))


@router.post("/seller/reverse-pickup", response_model=ApiResponse[dict])
async def manual_reverse_pickup(
    body: ManualReversePickupRequest,
    actor: Actor = Depends(require_roles("seller", "admin")),
    returns: ReturnLifecycle = Depends(get_return_lifecycle),
):
    """商家手动为已批准的退货创建逆向取件"""
    return ApiResponse.success(await returns.manual_reverse_pickup(actor, body.order_id))


@router.get("/admin", response_model=ApiResponse[List[ReturnResponse]])
async def all_returns(
    status: Optional[str] = Query(None),
    page_size: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(require_roles("admin")),
    returns: ReturnLifecycle = Depends(get_return_lifecycle),
):
    return ApiResponse.success(_many(await returns.list_all(status=status, limit=page_size, offset=offset)))


@router.put("/admin/{request_id}/approve", response_model=ApiResponse[ReturnResponse])
async def approve_return(
    request_id: int,
    body: ReturnNoteRequest,
    actor: Actor = Depends(require_roles("admin")),
    returns: ReturnLifecycle = Depends(get_return_lifecycle),
):
    """批准退货：分摊运费并安排逆向取件"""
    request = await returns.approve(request_id, actor, body.note)
    return ApiResponse.success(ReturnResponse.model_validate(request))


@router.put("/admin/{request_id}/reject", response_model=ApiResponse[ReturnResponse])
async def reject_return(
    request_id: int,
    body: ReturnNoteRequest,
    actor: Actor = Depends(require_roles("admin")),
    returns: ReturnLifecycle = Depends(get_return_lifecycle),
):
    request = await returns.reject(request_id, actor, body.note)
    return ApiResponse.success(ReturnResponse.model_validate(request))


@router.put("/admin/{request_id}/picked", response_model=ApiResponse[ReturnResponse])
async def mark_return_picked(
    request_id: int,
    actor: Actor = Depends(require_roles("admin")),
    returns: ReturnLifecycle = Depends(get_return_lifecycle),
):
    return ApiResponse.success(ReturnResponse.model_validate(await returns.mark_picked(request_id, actor)))


@router.put("/admin/{request_id}/complete", response_model=ApiResponse[ReturnResponse])
async def complete_return(
    request_id: int,
    actor: Actor = Depends(require_roles("admin")),
    returns: ReturnLifecycle = Depends(get_return_lifecycle),
):
    return ApiResponse.success(ReturnResponse.model_validate(await returns.complete(request_id, actor)))


@router.put("/{request_id}/cancel", response_model=ApiResponse[ReturnResponse])
async def cancel_return(
    request_id: int,
    actor: Actor = Depends(current_actor),
    returns: ReturnLifecycle = Depends(get_return_lifecycle),
):
    return ApiResponse.success(ReturnResponse.model_validate(await returns.cancel(request_id, actor)))
