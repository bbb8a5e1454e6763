"""
承运商 Webhook 测试
"""
from decimal import Decimal

import pytest
from sqlalchemy import select

from mf_core.models import Order, ShipmentEvent
from mf_core.models.enums import OrderStatus, PaymentMethod, ShippingStatus
from mf_core.webhooks import CarrierWebhookHandler


@pytest.fixture
def handler(services):
    return CarrierWebhookHandler()


async def events(db_manager, order_id):
    async with db_manager.get_session() as session:
        result = await session.execute(
            select(ShipmentEvent).where(ShipmentEvent.order_id == order_id).order_by(ShipmentEvent.id)
        )
        return list(result.scalars().all())


class TestCarrierWebhook:

    async def test_unmatched_payload_acknowledged(self, handler):
        assert await handler.handle({"shipment_id": "missing", "status": "DEL"}) == {"matched": False}

    async def test_delivered_push_settles_once(self, handler, market, db_manager):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop, order_status=OrderStatus.SHIPPED,
                                   shipping_status=ShippingStatus.SHIPPED, shipment={"shipment_id": "S1", "awb": "AWB1"})
        payload = {"shipment_id": "S1", "status": "DEL", "event_type": "delivered",
                   "tracking_data": {"delivered_at": "2026-06-05T12:00:00Z"}}

        first = await handler.handle(payload)
        second = await handler.handle(payload)

        assert first == second == {
            "matched": True,
            "order_id": order.id,
            "order_status": "delivered",
            "shipping_status": "delivered",
        }
        assert await market.balance(seller.id) == Decimal("930.00")
        reloaded = await market.reload(Order, order.id)
        assert reloaded.delivered_at.day == 5
        assert [e.type for e in await events(db_manager, order.id)] == ["delivered", "delivered"]

    async def test_match_by_awb_and_rto(self, handler, market):
        buyer = await market.buyer()
        _, shop = await market.seller()
        order = await market.order(buyer, shop, payment_method=PaymentMethod.ONLINE,
                                   order_status=OrderStatus.SHIPPED, shipment={"awb": "AWB7"})

        result = await handler.handle({"awb": "AWB7", "status": {"code": "RTO"}})
        assert result["order_status"] == "cancelled"

        reloaded = await market.reload(Order, order.id)
        assert reloaded.shipment.is_returning is True
        assert reloaded.shipment.status_code == "RTO"

    async def test_delivered_order_never_regresses(self, handler, market):
        buyer = await market.buyer()
        _, shop = await market.seller()
        order = await market.order(buyer, shop, order_status=OrderStatus.DELIVERED,
                                   shipping_status=ShippingStatus.DELIVERED, shipment={"shipment_id": "S2"})

        result = await handler.handle({"shipment_id": "S2", "status": "RTO"})
        assert result["order_status"] == "delivered"
        assert result["shipping_status"] == "delivered"
        reloaded = await market.reload(Order, order.id)
        assert reloaded.shipment.status_code == "RTO"

    async def test_delivered_push_for_cancelled_order_not_settled(self, handler, market, db_manager):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop, payment_method=PaymentMethod.ONLINE,
                                   order_status=OrderStatus.CANCELLED, shipment={"shipment_id": "S3"})

        result = await handler.handle({"shipment_id": "S3", "status": "DEL"})

        assert result["order_status"] == "cancelled"
        assert await market.balance(seller.id) == Decimal("0.00")
        reloaded = await market.reload(Order, order.id)
        assert reloaded.seller_credited is False
        assert reloaded.delivered_at is None
        assert reloaded.shipment.status_code == "DEL"

    async def test_match_by_numeric_order_id_and_order_number(self, handler, market):
        buyer = await market.buyer()
        _, shop = await market.seller()
        first = await market.order(buyer, shop)
        second = await market.order(buyer, shop)

        by_id = await handler.handle({"order_id": str(first.id), "status": "PSH"})
        assert by_id["order_id"] == first.id
        assert by_id["order_status"] == "processing"

        by_number = await handler.handle({"seller_order_id": second.order_number, "status": "INT"})
        assert by_number["order_id"] == second.id
        assert by_number["order_status"] == "shipped"

    async def test_tracking_status_used_when_status_missing(self, handler, market):
        buyer = await market.buyer()
        _, shop = await market.seller()
        order = await market.order(buyer, shop, order_status=OrderStatus.CONFIRMED, shipment={"shipment_id": "S3"})

        result = await handler.handle({
            "shipment_id": "S3",
            "tracking_data": {
                "current_status": "OFD",
                "estimated_delivery": "2026-06-07",
                "tracking_url": "https://track.test/S3",
            },
        })
        assert result["order_status"] == "shipped"

        reloaded = await market.reload(Order, order.id)
        assert reloaded.shipment.status_code == "OFD"
        assert reloaded.shipment.tracking_url == "https://track.test/S3"
        assert reloaded.estimated_delivery is not None

    async def test_first_awb_is_recorded(self, handler, market, db_manager):
        buyer = await market.buyer()
        _, shop = await market.seller()
        order = await market.order(buyer, shop, shipment={"shipment_id": "S4"})

        await handler.handle({"shipment_id": "S4", "awb": "NEW1"})
        await handler.handle({"shipment_id": "S4", "awb": "OTHER"})

        reloaded = await market.reload(Order, order.id)
        assert reloaded.shipment.awb == "NEW1"
        assert "NEW1" in reloaded.shipment.tracking_url
        assert [e.type for e in await events(db_manager, order.id)] == ["webhook_event", "webhook_event"]

    async def test_unknown_status_treated_as_in_transit(self, handler, market):
        buyer = await market.buyer()
        _, shop = await market.seller()
        await market.order(buyer, shop, order_status=OrderStatus.CONFIRMED, shipment={"shipment_id": "S5"})

        result = await handler.handle({"shipment_id": "S5", "status": "HUB_SCAN"})
        assert result["order_status"] == "shipped"
        assert result["shipping_status"] == "shipped"
