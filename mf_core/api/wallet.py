"""
钱包 API 路由
"""
from fastapi import APIRouter, Depends, Query

from mf_core.database import get_db_manager
from mf_core.services import Actor, WalletLedger
from .deps import current_actor, get_wallet_ledger
from .models import ApiResponse, WalletResponse, WalletTransactionResponse

router = APIRouter()


@router.get("/me", response_model=ApiResponse[WalletResponse])
async def my_wallet(
    page_size: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(current_actor),
    ledger: WalletLedger = Depends(get_wallet_ledger),
):
    """当前用户的钱包余额与流水"""
    async with get_db_manager().get_session() as session:
        balance = await ledger.balance(session, actor.user_id)
        entries = await ledger.history(session, actor.user_id, limit=page_size, offset=offset)
        return ApiResponse.success(WalletResponse(
            balance=balance,
            transactions=[WalletTransactionResponse.model_validate(e) for e in entries],
        ))
