"""
支付网关 API 客户端

金额一律以最小货币单位（分）传输；鉴权使用 key_id / key_secret 的 HTTP Basic Auth
"""
import time
import uuid
from typing import Any, Dict, Optional

import httpx

from mf_core.config import Settings, get_settings
from mf_core.utils.external_api_timing import log_external_api_timing
from mf_core.utils.logger import get_logger

logger = get_logger(__name__)

SERVICE_NAME = "PAYMENT"


class PaymentGatewayError(Exception):
    """支付网关调用失败"""

    def __init__(self, message: str, status_code: Optional[int] = None, retryable: bool = False,
                 payload: Optional[Dict[str, Any]] = None):
        self.status_code = status_code
        self.retryable = retryable
        self.payload = payload or {}
        super().__init__(message)


class PaymentGatewayClient:
    """支付网关客户端"""

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        base_url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=(key_id, key_secret),
            headers={"Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.client.aclose()

    async def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[Dict[str, Any]] = None,
        service: str = SERVICE_NAME,
    ) -> Dict[str, Any]:
        """
        发送 API 请求

        Raises:
            PaymentGatewayError: 网络错误（可重试）或非 2xx 响应
        """
        request_id = str(uuid.uuid4())
        api_start = time.perf_counter()
        logger.info("Payment gateway request", direction="outbound", service=service,
                    method=method, endpoint=endpoint, request_id=request_id)

        try:
            response = await self.client.request(method=method, url=endpoint, json=data,
                                                  headers={"X-Request-Id": request_id})
        except httpx.HTTPError as e:
            elapsed_ms = (time.perf_counter() - api_start) * 1000
            log_external_api_timing(service, method, endpoint, elapsed_ms, f"ERROR={type(e).__name__}")
            logger.warning("Payment gateway request failed", service=service, endpoint=endpoint,
                           request_id=request_id, err=str(e))
            raise PaymentGatewayError(f"{service} request failed: {type(e).__name__}", retryable=True) from e

        elapsed_ms = (time.perf_counter() - api_start) * 1000
        log_external_api_timing(service, method, endpoint, elapsed_ms, f"status={response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.is_error:
            error = body.get("error") if isinstance(body, dict) else None
            message = (error or {}).get("description") if isinstance(error, dict) else None
            logger.warning("Payment gateway error response", service=service, endpoint=endpoint,
                           request_id=request_id, status_code=response.status_code)
            raise PaymentGatewayError(
                message or f"{service} returned HTTP {response.status_code}",
                status_code=response.status_code,
                retryable=response.status_code >= 500,
                payload=body if isinstance(body, dict) else None,
            )

        logger.info("Payment gateway response", service=service, endpoint=endpoint,
                    request_id=request_id, status_code=response.status_code, latency_ms=int(elapsed_ms))
        return body if isinstance(body, dict) else {"result": body}

    async def create_order(self, amount_minor: int, currency: str, receipt: str,
                           notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """创建网关订单（自动捕获）"""
        payload = {
            "amount": int(amount_minor),
            "currency": currency,
            "receipt": receipt[:40],
            "payment_capture": 1,
            "notes": notes or {"order_source": "marketflow"},
        }
        return await self._request("POST", "/orders", payload)

    async def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/payments/{payment_id}")

    async def refund_payment(self, payment_id: str, amount_minor: int,
                             notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"amount": int(amount_minor)}
        if notes:
            payload["notes"] = notes
        return await self._request("POST", f"/payments/{payment_id}/refund", payload)


def build_payment_client(settings: Optional[Settings] = None,
                         transport: Optional[httpx.AsyncBaseTransport] = None) -> Optional[PaymentGatewayClient]:
    """根据配置构建支付网关客户端，未配置时返回 None"""
    settings = settings or get_settings()
    if not settings.payments_enabled:
        return None
    return PaymentGatewayClient(
        key_id=settings.payment_key_id,
        key_secret=settings.payment_key_secret,
        base_url=settings.payment_base_url,
        timeout=settings.payment_timeout_seconds,
        transport=transport,
    )
