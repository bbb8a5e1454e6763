"""
物流承运商 API 客户端

所有方法返回统一的 CarrierResult(success, data, error)，调用方决定失败是否致命。
未配置 API 密钥时使用 UnconfiguredCarrierClient，所有调用直接返回失败。
"""
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from mf_core.config import Settings, get_settings
from mf_core.utils.external_api_timing import log_external_api_timing
from mf_core.utils.logger import get_logger

logger = get_logger(__name__)

SERVICE_NAME = "CARRIER"

# 默认包裹尺寸（cm）
DEFAULT_PACKAGE = {"packageLength": 20, "packageBreadth": 10, "packageHeight": 5}


@dataclass
class CarrierResult:
    """承运商调用结果"""
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None) -> "CarrierResult":
        return cls(success=True, data=data or {})

    @classmethod
    def fail(cls, error: str, data: Optional[Dict[str, Any]] = None) -> "CarrierResult":
        return cls(success=False, data=data or {}, error=error)


@dataclass
class CarrierAddress:
    """承运商地址（取件地或收件地）"""
    name: str
    line1: str
    pincode: str
    phone: str = ""
    email: str = ""
    line2: str = ""
    city: str = ""
    state: str = ""
    country: str = "India"

    @property
    def first_name(self) -> str:
        parts = self.name.strip().split(" ")
        return parts[0] if parts else ""

    @property
    def last_name(self) -> str:
        return " ".join(self.name.strip().split(" ")[1:])

    def as_shipping_address(self) -> Dict[str, str]:
        return {
            "firstName": self.first_name,
            "lastName": self.last_name,
            "addressLine1": self.line1,
            "addressLine2": self.line2,
            "pinCode": str(self.pincode),
            "city": self.city,
            "state": self.state,
            "country": self.country,
            "email": self.email,
            "phone": self.phone,
        }

    def as_pickup_location(self, pickup_name: str) -> Dict[str, str]:
        return {
            "contactName": self.first_name,
            "pickupName": pickup_name,
            "pickupLastName": self.last_name,
            "pickupEmail": self.email,
            "pickupPhone": self.phone,
            "pickupAddress1": self.line1,
            "pickupAddress2": self.line2,
            "pinCode": str(self.pincode),
            "city": self.city,
            "state": self.state,
            "country": self.country,
        }


@dataclass
class CarrierItem:
    name: str
    sku: str
    units: int
    unit_price: Decimal
    weight_kg: Decimal = Decimal("0.5")
    image_url: str = ""

    def as_payload(self) -> Dict[str, Any]:
        return {
            "itemName": self.name,
            "sku": self.sku,
            "description": self.name,
            "units": int(self.units),
            "unitPrice": float(self.unit_price),
            "tax": 0,
            "hsn": "",
            "productWeight": float(self.weight_kg),
            "imageURL": self.image_url,
        }


def _truncate_for_log(obj: Any, max_len: int = 5000) -> Optional[str]:
    """截断对象用于日志记录"""
    if obj is None:
        return None
    try:
        text = json.dumps(obj, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        text = str(obj)
    if len(text) > max_len:
        return text[:max_len] + f"... [truncated, total {len(text)} chars]"
    return text


class CarrierClient:
    """已配置的承运商客户端"""

    configured = True

    def __init__(
        self,
        api_key: str,
        base_url: str,
        timeout: float = 30.0,
        store_name: str = "DEFAULT",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.store_name = store_name
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Content-Type": "application/json", "carrier-token": api_key},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """关闭客户端连接"""
        await self.client.aclose()

    async def _request(self, method: str, endpoint: str, data: Optional[Dict[str, Any]] = None) -> CarrierResult:
        """
        发送 API 请求

        网络错误和非 2xx 响应都转换为失败结果，不向上抛出
        """
        request_id = str(uuid.uuid4())
        api_start = time.perf_counter()

        logger.info(
            "Carrier API request",
            direction="outbound",
            method=method,
            endpoint=endpoint,
            request_id=request_id,
            request_body=_truncate_for_log(data),
        )

        try:
            response = await self.client.request(
                method=method, url=endpoint, json=data, headers={"X-Request-Id": request_id}
            )
        except httpx.HTTPError as e:
            elapsed_ms = (time.perf_counter() - api_start) * 1000
            log_external_api_timing(SERVICE_NAME, method, endpoint, elapsed_ms, f"ERROR={type(e).__name__}")
            logger.warning(
                "Carrier API request failed",
                endpoint=endpoint,
                request_id=request_id,
                latency_ms=int(elapsed_ms),
                err=str(e),
            )
            return CarrierResult.fail(f"Carrier request failed: {type(e).__name__}")

        elapsed_ms = (time.perf_counter() - api_start) * 1000
        log_external_api_timing(SERVICE_NAME, method, endpoint, elapsed_ms, f"status={response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text[:1000]}
        if not isinstance(body, dict):
            body = {"result": body}

        if response.is_error:
            message = body.get("message") or body.get("remarks") or f"HTTP {response.status_code}"
            logger.warning(
                "Carrier API error response",
                endpoint=endpoint,
                request_id=request_id,
                status_code=response.status_code,
                latency_ms=int(elapsed_ms),
                response_body=_truncate_for_log(body),
            )
            return CarrierResult.fail(str(message), data=body)

        logger.info(
            "Carrier API response",
            direction="outbound",
            endpoint=endpoint,
            request_id=request_id,
            status_code=response.status_code,
            latency_ms=int(elapsed_ms),
            response_body=_truncate_for_log(body),
        )
        return CarrierResult.ok(body)

    async def get_rates(self, pickup_pincode: str, delivery_pincode: str, weight_kg=1, cod_amount=0) -> CarrierResult:
        """运费报价 / 可达性检查"""
        payload = {
            "Pickup_pincode": str(pickup_pincode),
            "Delivery_pincode": str(delivery_pincode),
            "cod": float(cod_amount or 0) > 0,
            "total_order_value": float(cod_amount or 0),
            "weight": float(weight_kg or 1),
        }
        return await self._request("POST", "/serviceability_check", payload)

    async def create_forward_shipment(
        self,
        *,
        order_reference: str,
        order_date: date,
        pickup: CarrierAddress,
        pickup_name: str,
        delivery: CarrierAddress,
        items: List[CarrierItem],
        payment_method: str,
        total_order_value,
        shipping_charges=0,
        package_weight_kg=1,
    ) -> CarrierResult:
        """一次调用完成下单、分配运单号、生成面单"""
        cod = payment_method.upper() == "COD"
        payload = {
            "orderId": str(order_reference),
            "orderDate": order_date.isoformat(),
            "storeName": self.store_name,
            "billingIsShipping": True,
            "shippingAddress": delivery.as_shipping_address(),
            "pickupLocation": pickup.as_pickup_location(pickup_name),
            "orderItems": [item.as_payload() for item in items],
            "paymentMethod": "COD" if cod else "PREPAID",
            "shippingCharges": float(shipping_charges or 0),
            "totalOrderValue": float(total_order_value or 0),
            "codCharges": float(total_order_value or 0) if cod else 0,
            "prepaidAmount": 0 if cod else float(total_order_value or 0),
            "packageDetails": {**DEFAULT_PACKAGE, "packageWeight": float(package_weight_kg)},
        }
        return await self._request("POST", "/wrapper", payload)

    async def create_reverse_pickup(
        self,
        *,
        reference: str,
        order_reference: str,
        pickup: CarrierAddress,
        deliver_to: CarrierAddress,
        weight_kg,
        item_label: str,
        description: str = "",
        pickup_label: str = "Reverse Pickup",
    ) -> CarrierResult:
        """逆向取件：从买家取件，送回商家"""
        weight = max(float(weight_kg or 1), 0.5)
        payload = {
            "orderId": str(reference),
            "orderDate": date.today().isoformat(),
            "storeName": self.store_name,
            "billingIsShipping": True,
            "shippingAddress": deliver_to.as_shipping_address(),
            "orderItems": [{
                "itemName": item_label,
                "sku": str(order_reference),
                "description": description,
                "units": 1,
                "unitPrice": 0,
                "tax": 0,
                "productWeight": weight,
            }],
            "paymentMethod": "PREPAID",
            "shippingCharges": 0,
            "totalOrderValue": 0,
            "packageDetails": {**DEFAULT_PACKAGE, "packageWeight": weight},
            "pickupLocation": pickup.as_pickup_location(f"{pickup_label} - {order_reference}"),
        }
        return await self._request("POST", "/create_order", payload)

    async def create_rto(
        self,
        *,
        order_reference: str,
        original_awb: Optional[str],
        pickup: CarrierAddress,
        return_to: CarrierAddress,
        weight_kg,
        reason: str = "",
    ) -> CarrierResult:
        """
        退回发件人（RTO）

        先取消原承运商订单；取消成功或已有运单号时再创建退回运单
        """
        cancel_result = await self.cancel_order(order_reference)

        if cancel_result.success or original_awb:
            rto_result = await self.create_reverse_pickup(
                reference=f"RTO_{order_reference}_{int(time.time() * 1000)}",
                order_reference=order_reference,
                pickup=pickup,
                deliver_to=return_to,
                weight_kg=weight_kg,
                item_label=f"RTO - {reason or 'Order cancelled'}",
                description=reason or "Return to Origin",
                pickup_label="RTO Pickup",
            )
            if rto_result.success:
                return CarrierResult.ok({
                    **rto_result.data,
                    "original_order_cancelled": cancel_result.success,
                    "original_awb": original_awb,
                })

        if cancel_result.success:
            return CarrierResult(
                success=True,
                data={"order_cancelled": True, "rto_shipment_created": False},
            )
        return CarrierResult.fail(cancel_result.error or "RTO creation failed",
                                  data={"order_cancelled": False, "rto_shipment_created": False})

    async def assign_awb(self, shipment_id: str, courier_code: str = "") -> CarrierResult:
        return await self._request("POST", "/assign_awb", {"shipment_id": str(shipment_id), "courier_code": courier_code})

    async def schedule_pickup(self, shipment_id: str, awb: Optional[str] = None) -> CarrierResult:
        payload = {"shipment_id": str(shipment_id)}
        if awb:
            payload["awb"] = str(awb)
        return await self._request("POST", "/schedule_pickup", payload)

    async def deallocate_shipment(self, order_reference: str, shipment_id: str) -> CarrierResult:
        return await self._request(
            "POST", "/de_allocate_shipment", {"orderId": str(order_reference), "shipmentId": str(shipment_id)}
        )

    async def cancel_order(self, order_reference: str) -> CarrierResult:
        return await self._request(
            "POST", "/cancel_order", {"orderId": str(order_reference), "storeName": self.store_name}
        )

    async def generate_label(self, shipment_ids: List[str]) -> CarrierResult:
        return await self._request("POST", "/generate_label", {"shipmentId": [str(s) for s in shipment_ids]})

    async def ndr_action(self, awb: str, action: str, phone: str = "", address1: str = "", address2: str = "") -> CarrierResult:
        """处理派送失败（NDR）：重新派送或退回"""
        action = action.upper()
        payload: Dict[str, Any] = {"awb": str(awb), "action": action}
        if action in ("RE_ATTEMPT", "REATTEMPT"):
            if phone:
                payload["phone"] = phone
            if address1:
                payload["address1"] = address1
            if address2:
                payload["address2"] = address2
        return await self._request("POST", "/ndr/action", payload)

    async def track_order(
        self,
        order_reference: Optional[str] = None,
        awb: Optional[str] = None,
        contact: str = "",
        email: str = "",
    ) -> CarrierResult:
        payload = {}
        if order_reference:
            payload["seller_order_id"] = str(order_reference)
        if contact:
            payload["contact"] = contact
        if email:
            payload["email"] = email
        if awb:
            payload["awb"] = str(awb)
        return await self._request("POST", "/track_order", payload)


class UnconfiguredCarrierClient:
    """未配置承运商时的降级实现：所有调用返回失败，由调用方走人工流程"""

    configured = False
    _ERROR = "Carrier API key not configured"

    async def close(self):
        return None

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)

        async def _unavailable(*args, **kwargs) -> CarrierResult:
            logger.warning("Carrier call skipped, integration not configured", operation=name)
            return CarrierResult.fail(self._ERROR)

        return _unavailable


def build_carrier_client(settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
    """根据配置构建承运商客户端"""
    settings = settings or get_settings()
    if not settings.carrier_enabled:
        return UnconfiguredCarrierClient()
    return CarrierClient(
        api_key=settings.carrier_api_key,
        base_url=settings.carrier_base_url,
        timeout=settings.carrier_timeout_seconds,
        store_name=settings.carrier_store_name,
        transport=transport,
    )


_carrier_client = None


def get_carrier_client():
    """获取承运商客户端单例"""
    global _carrier_client
    if _carrier_client is None:
        _carrier_client = build_carrier_client()
    return _carrier_client


def set_carrier_client(client) -> None:
    """替换全局承运商客户端（测试注入）"""
    global _carrier_client
    _carrier_client = client
