"""
承运商状态码映射

将承运商追踪状态码转换为 (订单状态, 发运状态, 是否退回) 三元组。
纯函数：同一状态码总是得到同一结果；未知状态码不报错，按运输中处理。
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from mf_core.models.enums import CarrierOrderStatus, OrderStatus, ShippingStatus


@dataclass(frozen=True)
class CarrierStatus:
    code: str
    description: str
    order_status: CarrierOrderStatus
    shipping_status: ShippingStatus
    is_returning: bool = False

    @property
    def is_rto(self) -> bool:
        return self.is_returning or self.code.startswith("RTO")


_C = CarrierOrderStatus
_S = ShippingStatus

# code: (description, order_status, shipping_status, is_returning)
STATUS_MAP: Dict[str, tuple] = {
    # 揽收阶段
    "SCB": ("Shipment Booked", _C.CREATED, _S.PENDING, False),
    "PSH": ("Pickup Scheduled", _C.PROCESSING, _S.PENDING, False),
    "OFP": ("Out for Pickup", _C.PROCESSING, _S.PENDING, False),
    "PUE": ("Pick up Exception", _C.PROCESSING, _S.PENDING, False),
    "PCN": ("Pickup Cancelled", _C.CANCELLED, _S.CANCELLED, False),
    "PUC": ("Pickup Completed", _C.PROCESSING, _S.SHIPPED, False),
    # 运输阶段
    "SPD": ("Shipped/Dispatched", _C.PROCESSING, _S.SHIPPED, False),
    "INT": ("In Transit", _C.PROCESSING, _S.SHIPPED, False),
    "RAD": ("Reached at Destination", _C.PROCESSING, _S.SHIPPED, False),
    "DED": ("Delivery Delayed", _C.PROCESSING, _S.SHIPPED, False),
    "OFD": ("Out for Delivery", _C.PROCESSING, _S.SHIPPED, False),
    "DEL": ("Delivered", _C.DELIVERED, _S.DELIVERED, False),
    "UND": ("Undelivered", _C.PROCESSING, _S.SHIPPED, False),
    # 退回（RTO）
    "RTO_REQ": ("RTO Requested", _C.CANCELLED, _S.SHIPPED, True),
    "RTO": ("RTO Confirmed", _C.CANCELLED, _S.SHIPPED, True),
    "RTO_INT": ("RTO In Transit", _C.CANCELLED, _S.SHIPPED, True),
    "RTO_RAD": ("RTO Reached at Destination", _C.CANCELLED, _S.SHIPPED, True),
    "RTO_OFD": ("RTO Out for Delivery", _C.CANCELLED, _S.SHIPPED, True),
    "RTO_DEL": ("RTO Delivered", _C.CANCELLED, _S.DELIVERED, True),
    "RTO_UND": ("RTO Undelivered", _C.CANCELLED, _S.SHIPPED, True),
    # 异常
    "CAN": ("Shipment Cancelled", _C.CANCELLED, _S.CANCELLED, False),
    "ONH": ("On Hold", _C.PROCESSING, _S.SHIPPED, False),
    "LST": ("Lost", _C.CANCELLED, _S.CANCELLED, False),
    "DMG": ("Damaged", _C.PROCESSING, _S.SHIPPED, False),
    "MSR": ("Misrouted", _C.PROCESSING, _S.SHIPPED, False),
    "DPO": ("Disposed-Off", _C.CANCELLED, _S.CANCELLED, False),
}

# 仅由 RTO 确认类状态码强制取消订单
RTO_CANCEL_CODES = frozenset({"RTO", "RTO_REQ"})

# 订单正向进度排序，用于保证状态只前进不后退
_ORDER_PROGRESS = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.PROCESSING: 2,
    OrderStatus.SHIPPED: 3,
    OrderStatus.DELIVERED: 4,
}


def normalize_code(status: Any) -> str:
    """
    规范化状态码

    承运商推送的 status 可能是字符串，也可能是 {"code": ...} / {"status": ...} 对象
    """
    if isinstance(status, dict):
        status = status.get("code") or status.get("status") or ""
    if status is None:
        return ""
    return str(status).strip().upper()


def get_status_details(status: Any) -> CarrierStatus:
    """获取状态码对应的三元组"""
    code = normalize_code(status)
    if not code:
        return CarrierStatus(code="", description="Unknown", order_status=_C.CREATED,
                             shipping_status=_S.PENDING, is_returning=False)

    entry = STATUS_MAP.get(code)
    if entry is None:
        # 未知状态码按运输中处理；RTO 前缀的新状态码同样视为退回
        return CarrierStatus(
            code=code,
            description=f"Status: {code}",
            order_status=_C.PROCESSING,
            shipping_status=_S.SHIPPED,
            is_returning=code.startswith("RTO"),
        )

    description, order_status, shipping_status, is_returning = entry
    return CarrierStatus(code, description, order_status, shipping_status, is_returning)


def is_rto_status(status: Any) -> bool:
    return get_status_details(status).is_rto


def merge_order_status(current: OrderStatus, mapped: CarrierStatus) -> OrderStatus:
    """
    将承运商状态合并到订单状态（单调）

    - 已送达订单不再变化
    - 取消类状态码直接取消订单
    - 其余状态只允许前进，created 不改变已存在订单的状态
    """
    current = OrderStatus(current)
    if current == OrderStatus.DELIVERED:
        return current
    if mapped.order_status == _C.DELIVERED:
        return OrderStatus.DELIVERED
    if mapped.order_status == _C.CANCELLED or mapped.code in RTO_CANCEL_CODES:
        return OrderStatus.CANCELLED
    if current == OrderStatus.CANCELLED:
        return current
    if mapped.order_status == _C.PROCESSING:
        target = OrderStatus.SHIPPED if mapped.shipping_status == _S.SHIPPED else OrderStatus.PROCESSING
        if _ORDER_PROGRESS[target] > _ORDER_PROGRESS[current]:
            return target
    return current


def merge_shipping_status(current: ShippingStatus, mapped: CarrierStatus) -> ShippingStatus:
    """发运状态合并：正向送达后不再回退（RTO 送达除外，其本身就是 delivered）"""
    current = ShippingStatus(current)
    if current == _S.DELIVERED:
        return current
    if mapped.code == "":
        return current
    return mapped.shipping_status


def process_tracking_response(tracking_data: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """
    规范化追踪接口返回

    Returns:
        {"success": bool, "records": [{"order_id", "order_date", "payment_method",
        "total_order_value", "shipments": [...]}]}，格式不符时返回 None
    """
    if not isinstance(tracking_data, dict) or not isinstance(tracking_data.get("records"), list):
        return None

    records: List[Dict[str, Any]] = []
    for record in tracking_data["records"]:
        details = record.get("shipment_details") if isinstance(record, dict) else None
        if not isinstance(details, list):
            continue

        shipments = []
        for shipment in details:
            raw_code = shipment.get("current_tracking_status_code") or shipment.get("shipment_status")
            status = get_status_details(raw_code)
            shipments.append({
                "shipment_id": shipment.get("shipment_id"),
                "awb": shipment.get("awb"),
                "status_code": status.code,
                "status_description": status.description,
                "courier_name": shipment.get("courier_name") or shipment.get("child_courier_name"),
                "order_status": status.order_status.value,
                "shipping_status": status.shipping_status.value,
                "is_returning": status.is_rto,
                "estimated_delivery": shipment.get("current_courier_edd"),
                "delivered_date": shipment.get("delivered_date") or record.get("delivered_date"),
                "rto_delivered_date": shipment.get("rto_delivered_date"),
                "track_scans": shipment.get("track_scans") or [],
                "ndr_reason": shipment.get("latest_ndr_reason_desc"),
                "ndr_code": shipment.get("latest_ndr_reason_code"),
            })

        records.append({
            "order_id": record.get("seller_order_id"),
            "order_date": record.get("creation_date"),
            "payment_method": record.get("payment_method"),
            "total_order_value": record.get("total_order_value"),
            "shipments": shipments,
        })

    return {"success": bool(tracking_data.get("success", True)), "records": records}
