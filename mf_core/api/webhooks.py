"""
Webhook API 路由
"""
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from mf_core.utils.logger import get_logger
from mf_core.webhooks import CarrierWebhookHandler
from .deps import get_webhook_handler

router = APIRouter()
logger = get_logger(__name__)


@router.post("/carrier")
async def carrier_webhook(
    request: Request,
    handler: CarrierWebhookHandler = Depends(get_webhook_handler),
):
    """
    承运商状态推送

    请求体不是 JSON 对象时返回 400；匹配不到订单也返回 200，避免承运商重试
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        logger.warning("Carrier webhook rejected: body is not a JSON object")
        return JSONResponse(status_code=400, content={"ok": False, "message": "Invalid payload"})

    result = await handler.handle(payload)
    return {"ok": True, "message": "Webhook processed", **result}
