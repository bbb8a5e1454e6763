"""
发运服务测试（承运商使用 FakeCarrier）
"""
from decimal import Decimal

import pytest
from sqlalchemy import select

from mf_core.gateways.carrier import CarrierResult
from mf_core.models import Order, ShipmentEvent
from mf_core.models.enums import (
    OrderStatus, PaymentMethod, PaymentStatus, RefundStatus, ShippingStatus
)
from mf_core.services import OrderLifecycle, ShipmentService
from mf_core.services.shipments import apply_carrier_status
from mf_core.utils.errors import (
    CarrierIntegrationError, DuplicateRequest, ForbiddenError, InvalidStateTransition, ValidationError
)
from tests.conftest import actor_for

BOOKED = {
    "orderId": "CO1",
    "shipment": [{
        "shipmentId": 555,
        "awb": "AWB1",
        "courierName": "Delhivery",
        "total_freight": "85.50",
        "labelURL": "https://labels.test/awb1.pdf",
    }],
}


@pytest.fixture
def shipping(services):
    return ShipmentService()


async def event_types(db_manager, order_id):
    async with db_manager.get_session() as session:
        result = await session.execute(
            select(ShipmentEvent.type).where(ShipmentEvent.order_id == order_id).order_by(ShipmentEvent.id)
        )
        return list(result.scalars().all())


class TestForwardShipment:

    async def test_create_shipment(self, shipping, market, carrier, db_manager):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop, payment_method=PaymentMethod.ONLINE,
                                   order_status=OrderStatus.CONFIRMED)
        carrier.respond("create_forward_shipment", CarrierResult.ok(BOOKED))

        updated = await shipping.create_shipment_for_order(order.id, actor_for(seller))

        shipment = updated.shipment
        assert shipment.shipment_id == "555"
        assert shipment.carrier_order_id == "CO1"
        assert shipment.awb == "AWB1"
        assert shipment.courier_cost == Decimal("85.50")
        assert shipment.status_code == "SCB"
        assert "AWB1" in shipment.tracking_url
        assert updated.shipping_status == ShippingStatus.PENDING
        assert updated.order_status == OrderStatus.CONFIRMED

        call = carrier.called("create_forward_shipment")[0]
        assert call["order_reference"] == order.order_number
        assert call["payment_method"] == "online"
        assert call["delivery"].pincode == "560001"
        assert call["pickup"].city == "Pune"
        assert await event_types(db_manager, order.id) == ["shipment_created"]

    async def test_pickup_scheduled_status_advances_order(self, shipping, market, carrier):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop)
        carrier.respond("create_forward_shipment", CarrierResult.ok({"orderCreated": True, "orderId": 901}))

        updated = await shipping.create_shipment_for_order(order.id, actor_for(seller))
        assert updated.shipment.shipment_id == "901"
        assert updated.shipment.awb is None
        assert updated.order_status == OrderStatus.PROCESSING

    async def test_duplicate_shipment_rejected(self, shipping, market, carrier):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop, shipment={"shipment_id": "S1"})

        with pytest.raises(DuplicateRequest) as exc_info:
            await shipping.create_shipment_for_order(order.id, actor_for(seller))
        assert exc_info.value.code == "SHIPMENT_EXISTS"
        assert carrier.called("create_forward_shipment") == []

    async def test_cancelled_order_not_shippable(self, shipping, market):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop, order_status=OrderStatus.CANCELLED)

        with pytest.raises(InvalidStateTransition) as exc_info:
            await shipping.create_shipment_for_order(order.id, actor_for(seller))
        assert exc_info.value.code == "ORDER_NOT_SHIPPABLE"

    async def test_buyer_cannot_create_shipment(self, shipping, market):
        buyer = await market.buyer()
        _, shop = await market.seller()
        order = await market.order(buyer, shop)

        with pytest.raises(ForbiddenError):
            await shipping.create_shipment_for_order(order.id, actor_for(buyer))

    async def test_carrier_failure_leaves_order_untouched(self, shipping, market, carrier):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop)
        carrier.respond("create_forward_shipment", CarrierResult.fail("pincode not serviceable"))

        with pytest.raises(CarrierIntegrationError) as exc_info:
            await shipping.create_shipment_for_order(order.id, actor_for(seller))
        assert exc_info.value.code == "SHIPMENT_CREATE_FAILED"
        assert (await market.reload(Order, order.id)).shipment.shipment_id is None


class TestShipmentOperations:

    async def test_rates(self, shipping, carrier):
        carrier.respond("get_rates", CarrierResult.ok({"rates": [{"courier": "Delhivery", "total": 65}]}))
        data = await shipping.quote_rates("411001", "560001", weight_kg=2)
        assert data["rates"][0]["total"] == 65

        with pytest.raises(ValidationError):
            await shipping.quote_rates("", "560001")

    async def test_pickup_requires_shipment(self, shipping, market):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop)

        with pytest.raises(ValidationError) as exc_info:
            await shipping.schedule_pickup(order.id, actor_for(seller))
        assert exc_info.value.code == "SHIPMENT_NOT_CREATED"

    async def test_schedule_pickup(self, shipping, market, carrier, db_manager):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop, shipment={"shipment_id": "S1", "awb": "AWB1"})
        carrier.respond("schedule_pickup", CarrierResult.ok({"shipmentId": "S1", "pickupScheduled": True}))

        await shipping.schedule_pickup(order.id, actor_for(seller), pickup_date="2026-06-02T10:00:00Z")

        reloaded = await market.reload(Order, order.id)
        assert reloaded.shipment.pickup_reference == "S1"
        assert reloaded.shipment.pickup_scheduled_at is not None
        assert "pickup_scheduled" in await event_types(db_manager, order.id)

    async def test_label_is_stored(self, shipping, market, carrier):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop, shipment={"shipment_id": "S1", "awb": "AWB1"})
        carrier.respond("generate_label", CarrierResult.ok({"labelData": [{"labelURL": "https://labels.test/s1.pdf"}]}))

        label = await shipping.get_label(order.id, actor_for(seller))
        assert label == {"label_url": "https://labels.test/s1.pdf", "label_type": "pdf", "awb": "AWB1"}
        assert (await market.reload(Order, order.id)).shipment.label_url == "https://labels.test/s1.pdf"

    async def test_cancel_shipment(self, shipping, market, carrier, db_manager):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop, payment_method=PaymentMethod.ONLINE,
                                   order_status=OrderStatus.PROCESSING, shipment={"shipment_id": "S1"})

        cancelled = await shipping.cancel_shipment(order.id, actor_for(seller), reason="out of stock")
        assert cancelled.order_status == OrderStatus.CANCELLED
        assert cancelled.shipping_status == ShippingStatus.CANCELLED
        assert cancelled.shipment.status_code == "CAN"
        assert cancelled.refund_status == RefundStatus.PENDING
        assert carrier.called("cancel_order") == [{"order_reference": order.order_number}]
        assert "shipment_cancelled" in await event_types(db_manager, order.id)

    async def test_cancel_shipment_carrier_failure(self, shipping, market, carrier):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop, shipment={"shipment_id": "S1"})
        carrier.respond("cancel_order", CarrierResult.fail("already picked"))

        with pytest.raises(CarrierIntegrationError):
            await shipping.cancel_shipment(order.id, actor_for(seller))
        assert (await market.reload(Order, order.id)).order_status == OrderStatus.PENDING


class TestNdr:

    async def test_invalid_action(self, shipping):
        with pytest.raises(ValidationError) as exc_info:
            await shipping.ndr_action(1, None, "DESTROY")
        assert exc_info.value.code == "INVALID_NDR_ACTION"

    async def test_missing_awb(self, shipping, market):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop)

        with pytest.raises(ValidationError) as exc_info:
            await shipping.ndr_action(order.id, actor_for(seller), "re_attempt")
        assert exc_info.value.code == "AWB_NOT_FOUND"

    async def test_return_action_cancels_order(self, shipping, market, carrier, db_manager):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop, order_status=OrderStatus.SHIPPED,
                                   shipment={"shipment_id": "S1", "awb": "AWB1"})

        await shipping.ndr_action(order.id, actor_for(seller), "RETURN")

        reloaded = await market.reload(Order, order.id)
        assert reloaded.order_status == OrderStatus.CANCELLED
        assert reloaded.shipment.is_returning is True
        assert reloaded.shipment.status_code == "RTO"
        assert carrier.called("ndr_action")[0]["action"] == "RETURN"
        assert "ndr_return" in await event_types(db_manager, order.id)

    async def test_reattempt_keeps_order_open(self, shipping, market):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop, order_status=OrderStatus.SHIPPED,
                                   shipment={"shipment_id": "S1", "awb": "AWB1"})

        await shipping.ndr_action(order.id, actor_for(seller), "RE_ATTEMPT", phone="9876543210")
        assert (await market.reload(Order, order.id)).order_status == OrderStatus.SHIPPED


class TestTracking:

    async def test_requires_reference(self, shipping, market):
        buyer = await market.buyer()
        with pytest.raises(ValidationError) as exc_info:
            await shipping.track(actor_for(buyer))
        assert exc_info.value.code == "MISSING_TRACKING_REFERENCE"

    async def test_delivered_tracking_settles_seller(self, shipping, market, carrier, db_manager):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop, order_status=OrderStatus.SHIPPED,
                                   shipping_status=ShippingStatus.SHIPPED,
                                   shipment={"shipment_id": "S1", "awb": "AWB1"})
        carrier.respond("track_order", CarrierResult.ok({
            "success": True,
            "records": [{
                "seller_order_id": order.order_number,
                "shipment_details": [{
                    "awb": "AWB1",
                    "current_tracking_status_code": "DEL",
                    "courier_name": "Delhivery",
                    "delivered_date": "2026-06-05T12:00:00Z",
                    "track_scans": [{"date": "2026-06-05T11:00:00Z", "activity": "Out for delivery"}],
                }],
            }],
        }))

        result = await shipping.track(actor_for(buyer), order_id=order.id)
        assert result["order_updated"] is True

        reloaded = await market.reload(Order, order.id)
        assert reloaded.order_status == OrderStatus.DELIVERED
        assert reloaded.payment_status == PaymentStatus.PAID
        assert reloaded.shipment.courier_name == "Delhivery"
        assert await market.balance(seller.id) == Decimal("930.00")
        assert "tracking_scan" in await event_types(db_manager, order.id)

    async def test_tracking_by_awb_only(self, shipping, market, carrier):
        buyer = await market.buyer()
        carrier.respond("track_order", CarrierResult.ok({"records": []}))

        result = await shipping.track(actor_for(buyer), awb="AWB404")
        assert result["order_updated"] is False
        assert carrier.called("track_order")[0]["awb"] == "AWB404"


class TestApplyCarrierStatus:

    async def test_rto_cancels_and_delivered_is_final(self, services, market, db_manager):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        lifecycle = OrderLifecycle()
        shipped = await market.order(buyer, shop, order_status=OrderStatus.SHIPPED)
        delivered = await market.order(buyer, shop, order_status=OrderStatus.DELIVERED,
                                       shipping_status=ShippingStatus.DELIVERED)

        async with db_manager.get_transaction() as session:
            order = await session.get(Order, shipped.id)
            assert await apply_carrier_status(session, order, "RTO", lifecycle)
            assert order.order_status == OrderStatus.CANCELLED
            assert order.shipment.is_returning is True

            final = await session.get(Order, delivered.id)
            await apply_carrier_status(session, final, "RTO_INT", lifecycle)
            assert final.order_status == OrderStatus.DELIVERED
            assert final.shipping_status == ShippingStatus.DELIVERED

            assert await apply_carrier_status(session, order, "", lifecycle) is False

    async def test_rto_delivered_timestamp(self, services, market, db_manager):
        buyer = await market.buyer()
        _, shop = await market.seller()
        created = await market.order(buyer, shop, order_status=OrderStatus.CANCELLED,
                                     shipment={"awb": "AWB1", "is_returning": True})

        async with db_manager.get_transaction() as session:
            order = await session.get(Order, created.id)
            await apply_carrier_status(session, order, "RTO_DEL", OrderLifecycle())
            assert order.shipment.rto_delivered_at is not None
            assert order.shipping_status == ShippingStatus.DELIVERED
