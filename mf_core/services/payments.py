"""
支付校验服务
- 签名校验：HMAC-SHA256(key_secret, "gateway_order_id|payment_id")
- 支付状态：只有 captured 的支付才允许确认订单
- 网关下单与退款
"""
import asyncio
import hashlib
import hmac
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional

from mf_core.config import Settings, get_settings
from mf_core.gateways.payments import PaymentGatewayClient, PaymentGatewayError, build_payment_client
from mf_core.utils.errors import PaymentVerificationFailed, ServiceUnavailableError, ValidationError
from mf_core.utils.logger import get_logger
from mf_core.utils.money import ZERO, from_minor_units, round2, to_minor_units

logger = get_logger(__name__)

CAPTURED = "captured"


@dataclass
class PaymentState:
    payment_id: str
    status: str
    amount: Decimal
    currency: Optional[str] = None
    method: Optional[str] = None
    order_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def captured(self) -> bool:
        return self.status == CAPTURED


def compute_signature(secret: str, gateway_order_id: str, payment_id: str) -> str:
    message = f"{gateway_order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class PaymentVerifier:
    """支付校验器"""

    def __init__(
        self,
        client: Optional[PaymentGatewayClient] = None,
        key_secret: Optional[str] = None,
        retries: Optional[int] = None,
        retry_delay: float = 0.2,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.client = client
        self.key_secret = key_secret if key_secret is not None else settings.payment_key_secret
        self.retries = settings.payment_fetch_retries if retries is None else retries
        self.retry_delay = retry_delay
        self.currency = settings.currency

    @property
    def configured(self) -> bool:
        return self.client is not None and bool(self.key_secret)

    def _require_client(self) -> PaymentGatewayClient:
        if self.client is None:
            raise ServiceUnavailableError(
                code="PAYMENT_GATEWAY_NOT_CONFIGURED",
                detail="Payment gateway is not configured"
            )
        return self.client

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        """校验网关回传签名（常量时间比较）"""
        if not self.key_secret:
            raise ServiceUnavailableError(
                code="PAYMENT_GATEWAY_NOT_CONFIGURED",
                detail="Payment gateway secret is not configured"
            )
        if not gateway_order_id or not payment_id or not signature:
            return False
        expected = compute_signature(self.key_secret, gateway_order_id, payment_id)
        return hmac.compare_digest(expected, str(signature))

    async def fetch_payment_state(self, payment_id: str) -> PaymentState:
        """
        查询支付状态

        网络错误和 5xx 按配置重试，仍失败时抛出 ServiceUnavailableError
        """
        client = self._require_client()
        attempts = max(self.retries, 0) + 1

        for attempt in range(1, attempts + 1):
            try:
                payment = await client.fetch_payment(payment_id)
                break
            except PaymentGatewayError as e:
                if not e.retryable:
                    logger.warning("Payment lookup rejected", payment_id=payment_id, status_code=e.status_code)
                    raise PaymentVerificationFailed(
                        detail=f"Payment {payment_id} could not be fetched",
                        code="PAYMENT_LOOKUP_FAILED"
                    )
                if attempt == attempts:
                    logger.error("Payment lookup failed after retries", payment_id=payment_id, attempts=attempts)
                    raise ServiceUnavailableError(
                        code="PAYMENT_GATEWAY_UNAVAILABLE",
                        detail="Payment gateway is unreachable, please retry"
                    )
                logger.warning("Payment lookup failed, retrying", payment_id=payment_id, attempt=attempt)
                await asyncio.sleep(self.retry_delay * attempt)

        return PaymentState(
            payment_id=payment.get("id") or payment_id,
            status=str(payment.get("status") or "").lower(),
            amount=from_minor_units(payment.get("amount") or 0),
            currency=payment.get("currency"),
            method=payment.get("method"),
            order_id=payment.get("order_id"),
            raw=payment,
        )

    async def ensure_captured(self, gateway_order_id: str, payment_id: str, signature: str) -> PaymentState:
        """签名正确且支付已捕获，否则抛出 PaymentVerificationFailed"""
        if not self.verify_signature(gateway_order_id, payment_id, signature):
            logger.warning("Payment signature mismatch", gateway_order_id=gateway_order_id, payment_id=payment_id)
            raise PaymentVerificationFailed(detail="Invalid payment signature", code="INVALID_SIGNATURE")

        state = await self.fetch_payment_state(payment_id)
        if not state.captured:
            logger.warning("Payment not captured", payment_id=payment_id, status=state.status)
            raise PaymentVerificationFailed(
                detail=f"Payment not captured (status: {state.status or 'unknown'})",
                code="PAYMENT_NOT_CAPTURED"
            )
        return state

    async def create_gateway_order(self, amount, user_id: Optional[int] = None,
                                   currency: Optional[str] = None,
                                   receipt: Optional[str] = None) -> Dict[str, Any]:
        """创建网关订单，金额以分为单位提交"""
        amount = round2(amount)
        if amount <= ZERO:
            raise ValidationError(code="INVALID_AMOUNT", detail="Amount must be greater than zero")

        client = self._require_client()
        if receipt is None:
            receipt = f"rcpt_{str(user_id or '')[-8:]}_{str(int(time.time() * 1000))[-8:]}"

        try:
            order = await client.create_order(to_minor_units(amount), currency or self.currency, receipt)
        except PaymentGatewayError as e:
            logger.error("Gateway order creation failed", amount=str(amount), err=str(e))
            raise ServiceUnavailableError(
                code="PAYMENT_ORDER_FAILED",
                detail="Failed to create payment order"
            )

        logger.info("Gateway order created", gateway_order_id=order.get("id"), amount=str(amount))
        return {
            "order_id": order.get("id"),
            "amount": order.get("amount"),
            "currency": order.get("currency") or currency or self.currency,
            "receipt": order.get("receipt") or receipt,
            "key_id": client.key_id,
        }

    async def refund(self, payment_id: str, amount) -> Dict[str, Any]:
        """发起退款，返回网关退款记录"""
        client = self._require_client()
        try:
            refund = await client.refund_payment(payment_id, to_minor_units(amount))
        except PaymentGatewayError as e:
            logger.error("Gateway refund failed", payment_id=payment_id, err=str(e))
            raise ServiceUnavailableError(code="REFUND_FAILED", detail="Payment gateway refund failed")

        logger.info("Gateway refund created", payment_id=payment_id, refund_id=refund.get("id"),
                    amount=str(round2(amount)))
        return refund


_payment_verifier: Optional[PaymentVerifier] = None


def get_payment_verifier() -> PaymentVerifier:
    """获取支付校验器单例"""
    global _payment_verifier
    if _payment_verifier is None:
        _payment_verifier = PaymentVerifier(client=build_payment_client())
    return _payment_verifier


def set_payment_verifier(verifier: Optional[PaymentVerifier]) -> None:
    """替换全局支付校验器（测试注入）"""
    global _payment_verifier
    _payment_verifier = verifier
