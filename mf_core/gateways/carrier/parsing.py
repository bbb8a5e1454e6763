"""
承运商响应解析

下单接口存在三种返回结构：
1. shipment 数组（wrapper 接口）
2. 运单字段直接位于响应顶层
3. 仅创建了订单，运单号待分配
"""
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from mf_core.config import get_settings
from .status_mapper import get_status_details


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _to_amount(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def tracking_url_for(awb: Optional[str]) -> Optional[str]:
    if not awb:
        return None
    return get_settings().carrier_tracking_url_template.format(awb=awb)


def _details_from(source: Dict[str, Any], response: Dict[str, Any]) -> Dict[str, Any]:
    awb = _first(source, "awb")
    generated = source.get("awbGenerated") or source.get("awb_generated") or bool(awb)
    raw_code = _first(source, "shipment_status", "current_tracking_status_code", "status") or ("SCB" if generated else "PSH")
    status = get_status_details(raw_code)
    return {
        "courier_name": _first(source, "courierName", "courier_name", "parentCourierName", "parent_courier_name"),
        "courier_code": _first(source, "courier_code", "courierCode"),
        "awb": awb,
        "shipment_id": _first(source, "shipmentId", "shipment_id")
        or _first(response, "shipmentId", "shipment_id", "orderId", "order_id"),
        "tracking_url": tracking_url_for(awb),
        "label_url": _first(source, "labelURL", "label_url"),
        "manifest_url": _first(source, "manifestURL", "manifest_url"),
        "courier_cost": _to_amount(_first(source, "total_freight", "courier_cost")),
        "status_code": status.code,
        "status_description": status.description,
        "is_returning": status.is_rto,
    }


def extract_shipment_details(response: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    从下单响应中提取运单信息，无法识别时返回空字典
    """
    if not isinstance(response, dict):
        return {}

    shipments = response.get("shipment")
    if isinstance(shipments, list) and shipments and isinstance(shipments[0], dict):
        details = _details_from(shipments[0], response)
    elif _first(response, "awb", "shipment_id", "shipmentId"):
        details = _details_from(response, response)
    elif response.get("orderCreated") or _first(response, "order_id", "orderId"):
        status = get_status_details("PSH")
        details = {
            "shipment_id": _first(response, "shipmentId", "shipment_id", "orderId", "order_id"),
            "status_code": status.code,
            "status_description": status.description,
            "is_returning": False,
        }
    else:
        return {}

    carrier_order_id = _first(response, "orderId", "order_id")
    if carrier_order_id:
        details["carrier_order_id"] = str(carrier_order_id)
    estimated = _first(response, "estimatedDelivery", "estimated_delivery")
    if estimated:
        details["estimated_delivery"] = estimated
    if details.get("shipment_id") is not None:
        details["shipment_id"] = str(details["shipment_id"])
    return details


def extract_total_freight(response: Optional[Dict[str, Any]]) -> Optional[Decimal]:
    """承运商回报的实际运费"""
    if not isinstance(response, dict):
        return None
    freight = _to_amount(response.get("total_freight"))
    if freight is None:
        shipments = response.get("shipment")
        if isinstance(shipments, list) and shipments and isinstance(shipments[0], dict):
            freight = _to_amount(shipments[0].get("total_freight"))
    return freight
