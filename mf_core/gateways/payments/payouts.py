"""
商家打款服务

GatewayPayoutProvider 通过支付网关的打款接口自动打款；
ManualPayoutProvider 是未配置打款账户时的降级实现，由管理员线下打款后登记流水号。
"""
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from mf_core.config import Settings, get_settings
from mf_core.models.enums import WithdrawalMethod
from mf_core.utils.logger import get_logger
from mf_core.utils.money import from_minor_units, to_minor_units
from .client import PaymentGatewayClient, PaymentGatewayError

logger = get_logger(__name__)

SERVICE_NAME = "PAYOUT"
MANUAL_STATUS = "manual"


@dataclass
class Beneficiary:
    contact_id: str
    fund_account_id: str


@dataclass
class PayoutReceipt:
    payout_id: Optional[str]
    status: str
    utr: Optional[str] = None
    amount: Optional[Decimal] = None
    fees: Optional[Decimal] = None
    raw: Optional[Dict[str, Any]] = None


class ManualPayoutProvider:
    """人工打款"""

    configured = False

    async def register_beneficiary(self, name: str, email: str, phone: str,
                                   method: WithdrawalMethod, details: Dict[str, Any]) -> Optional[Beneficiary]:
        return None

    async def send_payout(self, fund_account_id: Optional[str], amount: Decimal,
                          reference: str) -> PayoutReceipt:
        return PayoutReceipt(payout_id=None, status=MANUAL_STATUS, amount=amount)

    async def fetch_payout(self, payout_id: str) -> PayoutReceipt:
        return PayoutReceipt(payout_id=payout_id, status=MANUAL_STATUS)


class GatewayPayoutProvider:
    """支付网关打款"""

    configured = True

    def __init__(self, client: PaymentGatewayClient, account_number: str, currency: str = "INR"):
        self.client = client
        self.account_number = account_number
        self.currency = currency

    async def register_beneficiary(self, name: str, email: str, phone: str,
                                   method: WithdrawalMethod, details: Dict[str, Any]) -> Optional[Beneficiary]:
        """
        创建联系人与收款账户

        Raises:
            PaymentGatewayError: 服务商调用失败，调用方降级为人工打款
        """
        contact = await self.client._request(
            "POST", "/contacts",
            {"name": name, "email": email, "contact": phone, "type": "vendor"},
            service=SERVICE_NAME,
        )

        contact_id = contact.get("id")
        if not contact_id:
            raise PaymentGatewayError("Contact response missing id", payload=contact)

        method = WithdrawalMethod(method)
        fund_account: Dict[str, Any] = {"contact_id": contact_id}
        if method == WithdrawalMethod.BANK:
            fund_account["account_type"] = "bank_account"
            fund_account["bank_account"] = {
                "name": details.get("account_holder_name"),
                "ifsc": details.get("ifsc_code"),
                "account_number": details.get("account_number"),
            }
        elif method == WithdrawalMethod.UPI:
            fund_account["account_type"] = "vpa"
            fund_account["vpa"] = {"address": details.get("upi_id")}
        else:
            fund_account["account_type"] = "wallet"
            fund_account["wallet"] = {"name": details.get("wallet_type"), "email": details.get("wallet_id")}

        account = await self.client._request("POST", "/fund_accounts", fund_account, service=SERVICE_NAME)
        if not account.get("id"):
            raise PaymentGatewayError("Fund account response missing id", payload=account)
        return Beneficiary(contact_id=contact_id, fund_account_id=account["id"])

    async def send_payout(self, fund_account_id: Optional[str], amount: Decimal,
                          reference: str) -> PayoutReceipt:
        if not fund_account_id:
            return PayoutReceipt(payout_id=None, status=MANUAL_STATUS, amount=amount)

        payout = await self.client._request(
            "POST", "/payouts",
            {
                "account_number": self.account_number,
                "fund_account_id": fund_account_id,
                "amount": to_minor_units(amount),
                "currency": self.currency,
                "mode": "NEFT",
                "purpose": "payout",
                "queue_if_low_balance": True,
                "reference_id": f"{reference}_{int(time.time() * 1000)}"[:40],
                "narration": "MarketFlow Seller Payout",
            },
            service=SERVICE_NAME,
        )
        return self._receipt(payout)

    async def fetch_payout(self, payout_id: str) -> PayoutReceipt:
        payout = await self.client._request("GET", f"/payouts/{payout_id}", service=SERVICE_NAME)
        return self._receipt(payout)

    @staticmethod
    def _receipt(payout: Dict[str, Any]) -> PayoutReceipt:
        return PayoutReceipt(
            payout_id=payout.get("id"),
            status=payout.get("status") or "processing",
            utr=payout.get("utr"),
            amount=from_minor_units(payout.get("amount")) if payout.get("amount") is not None else None,
            fees=from_minor_units(payout.get("fees")) if payout.get("fees") is not None else None,
            raw=payout,
        )


def build_payout_provider(settings: Optional[Settings] = None,
                          transport: Optional[httpx.AsyncBaseTransport] = None):
    """根据配置选择打款实现"""
    settings = settings or get_settings()
    if not settings.payouts_enabled:
        return ManualPayoutProvider()
    client = PaymentGatewayClient(
        key_id=settings.payment_key_id,
        key_secret=settings.payment_key_secret,
        base_url=settings.payout_base_url or settings.payment_base_url,
        timeout=settings.payment_timeout_seconds,
        transport=transport,
    )
    return GatewayPayoutProvider(client, settings.payout_account_number, settings.currency)


_payout_provider = None


def get_payout_provider():
    """获取打款服务单例"""
    global _payout_provider
    if _payout_provider is None:
        _payout_provider = build_payout_provider()
    return _payout_provider


def set_payout_provider(provider) -> None:
    """替换全局打款服务（测试注入）"""
    global _payout_provider
    _payout_provider = provider
