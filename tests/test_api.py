"""
HTTP 接口测试（认证中间件、错误格式、路由到服务的连通）
"""
from decimal import Decimal

import httpx
import pytest_asyncio

from mf_core.app import create_app
from mf_core.models.enums import OrderStatus, PaymentStatus, ShippingStatus
from tests.conftest import ADDRESS

PREFIX = "/api/mf/v1"


def identity(user):
    return {"x-user-id": str(user.id), "x-user-role": user.role.value}


@pytest_asyncio.fixture
async def client(services):
    transport = httpx.ASGITransport(app=create_app())
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


class TestAuthAndHealth:

    async def test_health(self, client):
        response = await client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": True}

    async def test_missing_identity(self, client):
        response = await client.get(f"{PREFIX}/orders")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "MISSING_IDENTITY"

    async def test_invalid_identity(self, client):
        response = await client.get(f"{PREFIX}/orders", headers={"x-user-id": "7", "x-user-role": "root"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_IDENTITY"

        response = await client.get(f"{PREFIX}/orders", headers={"x-user-id": "abc", "x-user-role": "buyer"})
        assert response.json()["error"]["code"] == "INVALID_IDENTITY"


class TestOrderRoutes:

    async def test_checkout_creates_order(self, client, market):
        buyer = await market.buyer()
        _, shop = await market.seller()
        product = await market.product(shop, price="250.00")

        response = await client.post(f"{PREFIX}/orders", headers=identity(buyer), json={
            "items": [{"product_id": product.id, "seller_id": shop.id, "quantity": 2}],
            "shipping_address": ADDRESS,
        })

        assert response.status_code == 201
        body = response.json()
        assert body["ok"] is True
        assert len(body["data"]) == 1
        order = body["data"][0]
        assert order["buyer_id"] == buyer.id
        assert order["payment_method"] == "cod"
        assert Decimal(order["items_price"]) == Decimal("500.00")

    async def test_other_buyer_forbidden(self, client, market):
        owner = await market.buyer()
        stranger = await market.buyer()
        _, shop = await market.seller()
        order = await market.order(owner, shop)

        assert (await client.get(f"{PREFIX}/orders/{order.id}", headers=identity(owner))).status_code == 200
        response = await client.get(f"{PREFIX}/orders/{order.id}", headers=identity(stranger))
        assert response.status_code == 403

    async def test_buyer_cannot_set_status(self, client, market):
        buyer = await market.buyer()
        _, shop = await market.seller()
        order = await market.order(buyer, shop)

        response = await client.put(f"{PREFIX}/orders/{order.id}/status", headers=identity(buyer),
                                    json={"status": "delivered"})
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "ROLE_NOT_ALLOWED"

    async def test_seller_delivery_credits_wallet(self, client, market):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop, order_status=OrderStatus.SHIPPED,
                                   shipping_status=ShippingStatus.SHIPPED)

        response = await client.put(f"{PREFIX}/orders/{order.id}/status", headers=identity(seller),
                                    json={"status": "delivered"})
        assert response.status_code == 200
        assert response.json()["data"]["order_status"] == "delivered"

        wallet = await client.get(f"{PREFIX}/wallet/me", headers=identity(seller))
        data = wallet.json()["data"]
        assert Decimal(data["balance"]) == Decimal("930.00")
        assert [t["kind"] for t in data["transactions"]] == ["credit"]

    async def test_unknown_status_value(self, client, market):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        order = await market.order(buyer, shop)

        response = await client.put(f"{PREFIX}/orders/{order.id}/status", headers=identity(seller),
                                    json={"status": "teleported"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_ORDER_STATUS"

    async def test_body_validation_error(self, client, market):
        buyer = await market.buyer()

        response = await client.post(f"{PREFIX}/orders", headers=identity(buyer), json={"items": []})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_invoice(self, client, market):
        buyer = await market.buyer()
        stranger = await market.buyer()
        _, shop = await market.seller()
        order = await market.order(buyer, shop, items_price="750.00")

        response = await client.get(f"{PREFIX}/orders/{order.id}/invoice", headers=identity(buyer))
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["invoice_number"] == order.order_number
        assert Decimal(data["total_price"]) == Decimal("750.00")
        assert data["bill_to"]["address"]["pincode"] == ADDRESS["pincode"]

        response = await client.get(f"{PREFIX}/orders/{order.id}/invoice", headers=identity(stranger))
        assert response.status_code == 403


class TestWebhookRoute:

    async def test_rejects_non_json_body(self, client):
        response = await client.post(f"{PREFIX}/webhooks/carrier", content=b"not json",
                                     headers={"content-type": "application/json"})
        assert response.status_code == 400
        assert response.json()["ok"] is False

    async def test_unmatched_payload_needs_no_identity(self, client):
        response = await client.post(f"{PREFIX}/webhooks/carrier", json={"shipment_id": "nope", "status": "DEL"})
        assert response.status_code == 200
        assert response.json()["matched"] is False


class TestWithdrawalRoutes:

    async def test_admin_listing_requires_admin(self, client, market):
        seller, _ = await market.seller()

        response = await client.get(f"{PREFIX}/withdrawals/admin", headers=identity(seller))
        assert response.status_code == 403

        admin = await market.admin()
        response = await client.get(f"{PREFIX}/withdrawals/admin", headers=identity(admin))
        assert response.status_code == 200
        assert response.json()["data"]["items"] == []

    async def test_seller_deletes_pending_request(self, client, market):
        buyer = await market.buyer()
        seller, shop = await market.seller()
        await market.order(buyer, shop, order_status=OrderStatus.DELIVERED, payment_status=PaymentStatus.PAID)

        created = await client.post(f"{PREFIX}/withdrawals/request", headers=identity(seller), json={
            "amount": "100", "method": "upi", "payment_details": {"upi_id": "ravi@okbank"},
        })
        assert created.status_code == 201
        withdrawal_id = created.json()["data"]["id"]

        response = await client.delete(f"{PREFIX}/withdrawals/{withdrawal_id}", headers=identity(seller))
        assert response.status_code == 200
        assert response.json()["data"] == {"withdrawal_id": withdrawal_id, "deleted": True}

        admin = await market.admin()
        response = await client.delete(f"{PREFIX}/withdrawals/admin/{withdrawal_id}", headers=identity(admin))
        assert response.status_code == 404
