"""
物流承运商集成
"""
from .client import (
    CarrierAddress,
    CarrierClient,
    CarrierItem,
    CarrierResult,
    UnconfiguredCarrierClient,
    build_carrier_client,
    get_carrier_client,
    set_carrier_client,
)
from .parsing import extract_shipment_details, extract_total_freight, tracking_url_for
from .status_mapper import (
    CarrierStatus,
    get_status_details,
    is_rto_status,
    merge_order_status,
    merge_shipping_status,
    normalize_code,
    process_tracking_response,
)

__all__ = [
    "CarrierAddress",
    "CarrierClient",
    "CarrierItem",
    "CarrierResult",
    "CarrierStatus",
    "UnconfiguredCarrierClient",
    "build_carrier_client",
    "extract_shipment_details",
    "extract_total_freight",
    "get_carrier_client",
    "get_status_details",
    "is_rto_status",
    "merge_order_status",
    "merge_shipping_status",
    "normalize_code",
    "process_tracking_response",
    "set_carrier_client",
    "tracking_url_for",
]
