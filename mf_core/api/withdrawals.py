"""
提现 API 路由
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from mf_core.services import Actor, WithdrawalService
from .deps import get_withdrawal_service, require_roles
from .models import (
    ApiResponse, PaginatedResponse, WithdrawalCreateRequest, WithdrawalResponse, WithdrawalStatusRequest
)

router = APIRouter()


@router.post("/request", response_model=ApiResponse[WithdrawalResponse], status_code=201)
async def request_withdrawal(
    body: WithdrawalCreateRequest,
    actor: Actor = Depends(require_roles("seller")),
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    """商家申请提现，金额不得超过可提现余额"""
    withdrawal = await service.request_withdrawal(
        actor, body.amount, body.method, body.payment_details, body.notes
    )
    return ApiResponse.success(WithdrawalResponse.model_validate(withdrawal))


@router.get("/mine", response_model=ApiResponse[PaginatedResponse[WithdrawalResponse]])
async def my_withdrawals(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    actor: Actor = Depends(require_roles("seller")),
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    items, total = await service.list_mine(actor, page=page, limit=limit)
    available = await service.available_balance(actor.user_id)
    return ApiResponse.success(
        PaginatedResponse.build([WithdrawalResponse.model_validate(w) for w in items],
                                total, limit, (page - 1) * limit),
        metadata={"available_balance": str(available)},
    )


@router.get("/admin", response_model=ApiResponse[PaginatedResponse[WithdrawalResponse]])
async def all_withdrawals(
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="按商家姓名 / 邮箱搜索"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor: Actor = Depends(require_roles("admin")),
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    items, total = await service.list_all(status=status, search=search, page=page, limit=limit)
    return ApiResponse.success(PaginatedResponse.build(
        [WithdrawalResponse.model_validate(w) for w in items], total, limit, (page - 1) * limit
    ))


@router.get("/admin/summary", response_model=ApiResponse[dict])
async def withdrawal_summary(
    actor: Actor = Depends(require_roles("admin")),
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    return ApiResponse.success(await service.summary())


@router.get("/admin/{withdrawal_id}", response_model=ApiResponse[WithdrawalResponse])
async def get_withdrawal(
    withdrawal_id: int,
    actor: Actor = Depends(require_roles("admin")),
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    withdrawal = await service.get(withdrawal_id)
    return ApiResponse.success(WithdrawalResponse.model_validate(withdrawal))


@router.put("/admin/{withdrawal_id}/status", response_model=ApiResponse[WithdrawalResponse])
async def update_withdrawal_status(
    withdrawal_id: int,
    body: WithdrawalStatusRequest,
    actor: Actor = Depends(require_roles("admin")),
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    """推进提现状态；进入 processed / paid 时触发打款"""
    withdrawal = await service.update_status(
        withdrawal_id, body.status, actor, transaction_id=body.transaction_id, notes=body.notes
    )
    return ApiResponse.success(WithdrawalResponse.model_validate(withdrawal))


@router.get("/admin/{withdrawal_id}/payout-status", response_model=ApiResponse[dict])
async def payout_status(
    withdrawal_id: int,
    actor: Actor = Depends(require_roles("admin")),
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    return ApiResponse.success(await service.refresh_payout_status(withdrawal_id))


@router.delete("/admin/{withdrawal_id}", response_model=ApiResponse[dict])
async def admin_delete_withdrawal(
    withdrawal_id: int,
    actor: Actor = Depends(require_roles("admin")),
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    """删除未结算的提现申请"""
    await service.delete(actor, withdrawal_id)
    return ApiResponse.success({"withdrawal_id": withdrawal_id, "deleted": True})


@router.delete("/{withdrawal_id}", response_model=ApiResponse[dict])
async def delete_my_withdrawal(
    withdrawal_id: int,
    actor: Actor = Depends(require_roles("seller")),
    service: WithdrawalService = Depends(get_withdrawal_service),
):
    await service.delete(actor, withdrawal_id)
    return ApiResponse.success({"withdrawal_id": withdrawal_id, "deleted": True})
