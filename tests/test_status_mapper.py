"""
承运商状态码映射与响应解析测试
"""
from decimal import Decimal

import pytest

from mf_core.gateways.carrier.parsing import extract_shipment_details, extract_total_freight
from mf_core.gateways.carrier.status_mapper import (
    get_status_details,
    is_rto_status,
    merge_order_status,
    merge_shipping_status,
    normalize_code,
    process_tracking_response,
)
from mf_core.models.enums import CarrierOrderStatus, OrderStatus, ShippingStatus


class TestStatusDetails:

    def test_known_code_case_insensitive(self):
        status = get_status_details(" del ")
        assert status.code == "DEL"
        assert status.order_status == CarrierOrderStatus.DELIVERED
        assert status.shipping_status == ShippingStatus.DELIVERED
        assert not status.is_returning

    def test_object_payload(self):
        assert normalize_code({"code": "int"}) == "INT"
        assert normalize_code({"status": "ofd"}) == "OFD"
        assert normalize_code(None) == ""

    def test_unknown_code_treated_as_in_transit(self):
        status = get_status_details("XYZ")
        assert status.order_status == CarrierOrderStatus.PROCESSING
        assert status.shipping_status == ShippingStatus.SHIPPED
        assert not status.is_returning

    def test_unknown_rto_prefix_is_returning(self):
        assert get_status_details("RTO_NEWCODE").is_returning
        assert is_rto_status("rto_del")
        assert not is_rto_status("DEL")

    def test_empty_code(self):
        status = get_status_details("")
        assert status.code == ""
        assert status.order_status == CarrierOrderStatus.CREATED


class TestMergeOrderStatus:

    @pytest.mark.parametrize("current,code,expected", [
        (OrderStatus.PENDING, "INT", OrderStatus.SHIPPED),
        (OrderStatus.CONFIRMED, "PSH", OrderStatus.PROCESSING),
        (OrderStatus.SHIPPED, "PSH", OrderStatus.SHIPPED),
        (OrderStatus.PENDING, "SCB", OrderStatus.PENDING),
        (OrderStatus.SHIPPED, "DEL", OrderStatus.DELIVERED),
        (OrderStatus.SHIPPED, "RTO", OrderStatus.CANCELLED),
        (OrderStatus.PROCESSING, "CAN", OrderStatus.CANCELLED),
        (OrderStatus.CANCELLED, "INT", OrderStatus.CANCELLED),
    ])
    def test_transitions(self, current, code, expected):
        assert merge_order_status(current, get_status_details(code)) == expected

    def test_delivered_never_regresses(self):
        for code in ("RTO", "CAN", "INT", "PSH"):
            assert merge_order_status(OrderStatus.DELIVERED, get_status_details(code)) == OrderStatus.DELIVERED


class TestMergeShippingStatus:

    def test_delivered_is_final(self):
        assert merge_shipping_status(ShippingStatus.DELIVERED, get_status_details("RTO")) == ShippingStatus.DELIVERED

    def test_empty_code_keeps_current(self):
        assert merge_shipping_status(ShippingStatus.SHIPPED, get_status_details("")) == ShippingStatus.SHIPPED

    def test_follows_mapped_status(self):
        assert merge_shipping_status(ShippingStatus.PENDING, get_status_details("PUC")) == ShippingStatus.SHIPPED


class TestTrackingResponse:

    def test_invalid_shapes(self):
        assert process_tracking_response(None) is None
        assert process_tracking_response({"records": "nope"}) is None

    def test_records_are_normalized(self):
        result = process_tracking_response({
            "success": True,
            "records": [{
                "seller_order_id": "MF1001",
                "payment_method": "COD",
                "shipment_details": [{
                    "shipment_id": "S1",
                    "awb": "AWB1",
                    "current_tracking_status_code": "RTO_INT",
                    "courier_name": "Delhivery",
                    "current_courier_edd": "2026-06-10",
                    "track_scans": [{"scan": "picked"}],
                }],
            }, "garbage"],
        })
        assert result["success"] is True
        assert len(result["records"]) == 1
        record = result["records"][0]
        assert record["order_id"] == "MF1001"
        shipment = record["shipments"][0]
        assert shipment["status_code"] == "RTO_INT"
        assert shipment["order_status"] == "cancelled"
        assert shipment["is_returning"] is True
        assert shipment["estimated_delivery"] == "2026-06-10"
        assert shipment["track_scans"] == [{"scan": "picked"}]


class TestShipmentParsing:

    def test_shipment_array_shape(self):
        details = extract_shipment_details({
            "orderId": "CO1",
            "shipment": [{
                "shipmentId": 555, "awb": "AWB1", "courierName": "Delhivery",
                "total_freight": "85.50", "labelURL": "https://labels.test/1.pdf",
            }],
        })
        assert details["shipment_id"] == "555"
        assert details["awb"] == "AWB1"
        assert details["courier_name"] == "Delhivery"
        assert details["courier_cost"] == Decimal("85.50")
        assert details["label_url"] == "https://labels.test/1.pdf"
        assert details["carrier_order_id"] == "CO1"
        assert details["status_code"] == "SCB"
        assert "AWB1" in details["tracking_url"]

    def test_flat_shape(self):
        details = extract_shipment_details({"awb": "AWB9", "shipment_id": "S9", "status": "PUC"})
        assert details["shipment_id"] == "S9"
        assert details["status_code"] == "PUC"

    def test_order_only_shape(self):
        details = extract_shipment_details({"orderCreated": True, "orderId": 77})
        assert details["shipment_id"] == "77"
        assert details["status_code"] == "PSH"
        assert "awb" not in details

    def test_unrecognized(self):
        assert extract_shipment_details({"message": "ok"}) == {}
        assert extract_shipment_details(None) == {}

    def test_total_freight(self):
        assert extract_total_freight({"total_freight": 120}) == Decimal("120")
        assert extract_total_freight({"shipment": [{"total_freight": "64.2"}]}) == Decimal("64.2")
        assert extract_total_freight({"shipment": []}) is None
        assert extract_total_freight({"total_freight": "n/a"}) is None
