"""
承运商 HTTP 客户端测试（httpx.MockTransport）
"""
import json
from datetime import date
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio

from mf_core.config import Settings
from mf_core.gateways.carrier import (
    CarrierAddress, CarrierClient, CarrierItem, UnconfiguredCarrierClient, build_carrier_client
)

SELLER = CarrierAddress(name="Ravi Kumar Shah", line1="Warehouse 4", pincode="411001",
                        phone="9111111111", city="Pune", state="Maharashtra")
BUYER = CarrierAddress(name="Asha", line1="12 MG Road", pincode="560001",
                       phone="9876543210", city="Bengaluru", state="Karnataka")


class CarrierStub:
    """按路径返回预置响应，并记录请求体"""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def route(self, path, status=200, body=None, error=None):
        self.routes[path] = (status, body or {}, error)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, body, error = self.routes.get(request.url.path.rsplit("/v1", 1)[-1], (404, {"message": "no route"}, None))
        if error is not None:
            raise error
        return httpx.Response(status, json=body)

    def body(self, index=-1):
        return json.loads(self.requests[index].content)

    def paths(self):
        return [r.url.path.rsplit("/v1", 1)[-1] for r in self.requests]


@pytest.fixture
def stub():
    return CarrierStub()


@pytest_asyncio.fixture
async def client(stub):
    carrier = CarrierClient(api_key="carrier_key", base_url="https://carrier.test/v1",
                            store_name="MFSTORE", transport=httpx.MockTransport(stub.handler))
    yield carrier
    await carrier.close()


class TestRequests:

    async def test_rates_request_shape(self, client, stub):
        stub.route("/serviceability_check", body={"serviceable": True})

        result = await client.get_rates("411001", "560001", weight_kg=Decimal("1.5"), cod_amount=Decimal("930"))

        assert result.success is True
        assert result.data == {"serviceable": True}
        assert stub.requests[0].headers["carrier-token"] == "carrier_key"
        assert stub.body() == {
            "Pickup_pincode": "411001",
            "Delivery_pincode": "560001",
            "cod": True,
            "total_order_value": 930.0,
            "weight": 1.5,
        }

    async def test_error_response_becomes_failed_result(self, client, stub):
        stub.route("/cancel_order", status=422, body={"message": "Order already shipped"})

        result = await client.cancel_order("MF0001")

        assert result.success is False
        assert result.error == "Order already shipped"
        assert stub.body() == {"orderId": "MF0001", "storeName": "MFSTORE"}

    async def test_network_error_becomes_failed_result(self, client, stub):
        stub.route("/track_order", error=httpx.ConnectError("refused"))

        result = await client.track_order(awb="AWB1")

        assert result.success is False
        assert "ConnectError" in result.error

    async def test_forward_shipment_payload(self, client, stub):
        stub.route("/wrapper", body={"shipment_id": "S1", "awb": "AWB1"})
        items = [CarrierItem(name="Kurta", sku="SKU-1", units=2, unit_price=Decimal("500.00"))]

        result = await client.create_forward_shipment(
            order_reference="MF0001", order_date=date(2026, 6, 1), pickup=SELLER, pickup_name="Shop 1",
            delivery=BUYER, items=items, payment_method="cod", total_order_value=Decimal("1000.00"),
        )

        assert result.success is True
        body = stub.body()
        assert body["paymentMethod"] == "COD"
        assert body["codCharges"] == 1000.0
        assert body["prepaidAmount"] == 0
        assert body["shippingAddress"]["firstName"] == "Asha"
        assert body["shippingAddress"]["lastName"] == ""
        assert body["pickupLocation"]["pickupLastName"] == "Kumar Shah"
        assert body["orderItems"][0]["units"] == 2

    async def test_ndr_contact_fields_only_for_reattempt(self, client, stub):
        stub.route("/ndr/action", body={"status": True})

        await client.ndr_action("AWB1", "reattempt", phone="9000000000", address1="Flat 2")
        await client.ndr_action("AWB1", "RETURN", phone="9000000000")

        assert stub.body(0) == {"awb": "AWB1", "action": "REATTEMPT", "phone": "9000000000", "address1": "Flat 2"}
        assert stub.body(1) == {"awb": "AWB1", "action": "RETURN"}


class TestReturnToOrigin:

    async def rto(self, client, awb=None):
        return await client.create_rto(order_reference="MF0001", original_awb=awb, pickup=BUYER,
                                       return_to=SELLER, weight_kg=1, reason="Cancelled by buyer")

    async def test_cancel_then_reverse_shipment(self, client, stub):
        stub.route("/cancel_order", body={"status": True})
        stub.route("/create_order", body={"shipment_id": "R1", "awb": "RTO1"})

        result = await self.rto(client, awb="AWB1")

        assert result.success is True
        assert result.data["awb"] == "RTO1"
        assert result.data["original_order_cancelled"] is True
        assert stub.paths() == ["/cancel_order", "/create_order"]
        assert stub.body()["orderId"].startswith("RTO_MF0001_")

    async def test_cancel_only_when_reverse_fails(self, client, stub):
        stub.route("/cancel_order", body={"status": True})
        stub.route("/create_order", status=500, body={"message": "pincode not serviceable"})

        result = await self.rto(client)

        assert result.success is True
        assert result.data == {"order_cancelled": True, "rto_shipment_created": False}

    async def test_no_reverse_without_cancel_or_awb(self, client, stub):
        stub.route("/cancel_order", status=400, body={"message": "unknown order"})

        result = await self.rto(client)

        assert result.success is False
        assert result.error == "unknown order"
        assert stub.paths() == ["/cancel_order"]


class TestUnconfigured:

    async def test_calls_fail_without_network(self):
        carrier = UnconfiguredCarrierClient()

        result = await carrier.schedule_pickup("S1")

        assert result.success is False
        assert result.error == "Carrier API key not configured"

    def test_factory_depends_on_api_key(self):
        assert isinstance(build_carrier_client(Settings(carrier_api_key=None)), UnconfiguredCarrierClient)
        assert isinstance(build_carrier_client(Settings(carrier_api_key="k")), CarrierClient)
