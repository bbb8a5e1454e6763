"""
Pytest 配置和 fixtures

每个测试使用独立的 SQLite 临时库（aiosqlite），外部系统全部替换为内存实现
"""
import json
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio

from mf_core.config import Settings
from mf_core.database import DatabaseManager, set_db_manager
from mf_core.gateways.carrier import CarrierResult, set_carrier_client
from mf_core.gateways.payments import ManualPayoutProvider, PaymentGatewayClient, set_payout_provider
from mf_core.models import Coupon, Order, OrderShipment, Product, SellerProfile, User
from mf_core.models.enums import (
    OrderStatus, PaymentMethod, PaymentStatus, RefundStatus, ShippingStatus, UserRole
)
from mf_core.services import Actor
from mf_core.services.notifications import Notifier, set_notifier
from mf_core.services.payments import PaymentVerifier, compute_signature, set_payment_verifier

PAYMENT_SECRET = "test_secret"

ADDRESS = {
    "full_name": "Asha Rao",
    "phone": "9876543210",
    "line1": "12 MG Road",
    "line2": "",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
    "country": "India",
}


class FakeCarrier:
    """记录调用的承运商替身，可按方法名预置返回结果"""

    configured = True

    def __init__(self):
        self.calls: List[tuple] = []
        self.results: Dict[str, CarrierResult] = {}
        self.errors: Dict[str, Exception] = {}

    def respond(self, method: str, result: CarrierResult) -> None:
        self.results[method] = result

    def raise_on(self, method: str, exc: Exception) -> None:
        self.errors[method] = exc

    def called(self, method: str) -> List[Dict[str, Any]]:
        return [kwargs for name, kwargs in self.calls if name == method]

    async def _call(self, name: str, **kwargs) -> CarrierResult:
        self.calls.append((name, kwargs))
        if name in self.errors:
            raise self.errors[name]
        return self.results.get(name, CarrierResult.ok({}))

    async def get_rates(self, pickup_pincode, delivery_pincode, weight_kg=1, cod_amount=0):
        return await self._call("get_rates", pickup_pincode=pickup_pincode, delivery_pincode=delivery_pincode)

    async def create_forward_shipment(self, **kwargs):
        return await self._call("create_forward_shipment", **kwargs)

    async def create_reverse_pickup(self, **kwargs):
        return await self._call("create_reverse_pickup", **kwargs)

    async def create_rto(self, **kwargs):
        return await self._call("create_rto", **kwargs)

    async def schedule_pickup(self, shipment_id, awb=None):
        return await self._call("schedule_pickup", shipment_id=shipment_id, awb=awb)

    async def cancel_order(self, order_reference):
        return await self._call("cancel_order", order_reference=order_reference)

    async def generate_label(self, shipment_ids):
        return await self._call("generate_label", shipment_ids=shipment_ids)

    async def ndr_action(self, awb, action, phone="", address1="", address2=""):
        return await self._call("ndr_action", awb=awb, action=action)

    async def track_order(self, order_reference=None, awb=None, contact="", email=""):
        return await self._call("track_order", order_reference=order_reference, awb=awb)

    async def close(self):
        return None


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent: List[tuple] = []

    async def _deliver(self, recipient_id, template, context):
        self.sent.append((recipient_id, template, context))


class PaymentGatewayStub:
    """支付网关 HTTP 替身（挂在 httpx.MockTransport 上）"""

    def __init__(self):
        self.payments: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.fail_with: Optional[int] = None

    def add_payment(self, payment_id: str, amount_minor: int, status: str = "captured") -> None:
        self.payments[payment_id] = {
            "id": payment_id, "status": status, "amount": amount_minor,
            "currency": "INR", "method": "upi", "order_id": "order_gw_1",
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"error": {"description": "gateway down"}})

        path = request.url.path
        if request.method == "POST" and path.endswith("/orders"):
            body = json.loads(request.content)
            return httpx.Response(200, json={"id": "order_gw_1", "amount": body["amount"],
                                             "currency": body["currency"], "receipt": body["receipt"]})
        if request.method == "POST" and path.endswith("/refund"):
            body = json.loads(request.content)
            return httpx.Response(200, json={"id": "rfnd_1", "amount": body["amount"]})
        if request.method == "GET" and "/payments/" in path:
            payment = self.payments.get(path.rsplit("/", 1)[-1])
            if payment is None:
                return httpx.Response(404, json={"error": {"description": "not found"}})
            return httpx.Response(200, json=payment)
        return httpx.Response(404, json={})


def sign(gateway_order_id: str, payment_id: str) -> str:
    return compute_signature(PAYMENT_SECRET, gateway_order_id, payment_id)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(database_url_override=f"sqlite+aiosqlite:///{tmp_path / 'marketflow_test.db'}")


@pytest_asyncio.fixture
async def db_manager(settings):
    """数据库管理器 fixture"""
    manager = DatabaseManager(settings)
    set_db_manager(manager)
    await manager.create_tables()

    yield manager

    await manager.close()
    set_db_manager(None)


@pytest.fixture
def carrier():
    fake = FakeCarrier()
    set_carrier_client(fake)
    yield fake
    set_carrier_client(None)


@pytest.fixture
def gateway():
    return PaymentGatewayStub()


@pytest_asyncio.fixture
async def verifier(gateway):
    client = PaymentGatewayClient(
        key_id="key_test", key_secret=PAYMENT_SECRET, base_url="https://gateway.test/v1",
        transport=httpx.MockTransport(gateway.handler),
    )
    instance = PaymentVerifier(client=client, key_secret=PAYMENT_SECRET, retries=1, retry_delay=0)
    set_payment_verifier(instance)
    yield instance
    await client.close()
    set_payment_verifier(None)


@pytest.fixture
def payouts():
    provider = ManualPayoutProvider()
    set_payout_provider(provider)
    yield provider
    set_payout_provider(None)


@pytest.fixture
def notifier():
    recording = RecordingNotifier()
    set_notifier(recording)
    yield recording
    set_notifier(None)


@pytest.fixture
def services(db_manager, carrier, verifier, payouts, notifier):
    """外部依赖全部替换后的服务环境"""
    return {"db": db_manager, "carrier": carrier, "verifier": verifier, "payouts": payouts, "notifier": notifier}


class Marketplace:
    """测试数据构造器"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager
        self._seq = 0

    def _next(self) -> int:
        self._seq += 1
        return self._seq

    async def user(self, role: UserRole = UserRole.BUYER, balance: Decimal = Decimal("0.00"), **kwargs) -> User:
        n = self._next()
        async with self.db.get_transaction() as session:
            user = User(
                username=kwargs.pop("username", f"{role.value}_{n}"),
                email=kwargs.pop("email", f"{role.value}_{n}@example.com"),
                phone=kwargs.pop("phone", "9000000000"),
                role=role,
                wallet_balance=balance,
                cart=kwargs.pop("cart", []),
                **kwargs,
            )
            session.add(user)
        return user

    async def admin(self, balance: Decimal = Decimal("0.00")) -> User:
        return await self.user(UserRole.ADMIN, balance=balance)

    async def buyer(self) -> User:
        return await self.user(UserRole.BUYER)

    async def seller(self, balance: Decimal = Decimal("0.00")) -> tuple:
        user = await self.user(UserRole.SELLER, balance=balance)
        async with self.db.get_transaction() as session:
            profile = SellerProfile(
                user_id=user.id,
                shop_name=f"Shop {user.id}",
                contact_name="Ravi Kumar",
                phone="9111111111",
                email=user.email,
                address={"line1": "Warehouse 4", "city": "Pune", "state": "Maharashtra", "pincode": "411001"},
            )
            session.add(profile)
        return user, profile

    async def product(self, profile: SellerProfile, price: str = "500.00", stock: int = 10) -> Product:
        async with self.db.get_transaction() as session:
            product = Product(seller_id=profile.id, name=f"Kurta {self._next()}", sku=f"SKU-{self._seq}",
                              price=Decimal(price), stock=stock, total_sold=0)
            session.add(product)
        return product

    async def coupon(self, code: str = "WELCOME10", usage_limit: Optional[int] = None) -> Coupon:
        async with self.db.get_transaction() as session:
            coupon = Coupon(code=code, usage_limit=usage_limit, used_count=0, is_active=True)
            session.add(coupon)
        return coupon

    async def order(
        self,
        buyer: User,
        profile: SellerProfile,
        items_price: str = "1000.00",
        payment_method: PaymentMethod = PaymentMethod.COD,
        order_status: OrderStatus = OrderStatus.PENDING,
        payment_status: Optional[PaymentStatus] = None,
        courier_cost: Optional[str] = None,
        **kwargs,
    ) -> Order:
        """直接写入一张订单（绕过下单流程，用于构造中间状态）"""
        items = Decimal(items_price)
        n = self._next()
        if payment_status is None:
            payment_status = PaymentStatus.PAID if payment_method == PaymentMethod.ONLINE else PaymentStatus.PENDING
        shipment_fields = kwargs.pop("shipment", {})
        async with self.db.get_transaction() as session:
            order = Order(
                order_number=f"MFTEST{n:04d}",
                buyer_id=buyer.id,
                seller_id=profile.id,
                shipping_address=dict(ADDRESS),
                payment_method=payment_method,
                items_price=items,
                tax_price=Decimal("0.00"),
                shipping_price=Decimal("0.00"),
                discount=Decimal("0.00"),
                total_price=kwargs.pop("total_price", items),
                commission=kwargs.pop("commission", (items * Decimal("0.07")).quantize(Decimal("0.01"))),
                seller_earnings=kwargs.pop("seller_earnings", items - (items * Decimal("0.07")).quantize(Decimal("0.01"))),
                seller_credited=kwargs.pop("seller_credited", False),
                order_status=order_status,
                payment_status=payment_status,
                shipping_status=kwargs.pop("shipping_status", ShippingStatus.PENDING),
                refund_status=kwargs.pop("refund_status", RefundStatus.NONE),
                payment_id=kwargs.pop("payment_id", f"pay_{n}" if payment_method == PaymentMethod.ONLINE else None),
                shipment=OrderShipment(
                    courier_cost=Decimal(courier_cost) if courier_cost is not None else None,
                    **shipment_fields,
                ),
                **kwargs,
            )
            session.add(order)
        return order

    async def reload(self, model, record_id):
        async with self.db.get_session() as session:
            return await session.get(model, record_id)

    async def balance(self, user_id: int) -> Decimal:
        user = await self.reload(User, user_id)
        return user.wallet_balance


@pytest.fixture
def market(db_manager) -> Marketplace:
    return Marketplace(db_manager)


def actor_for(user: User) -> Actor:
    return Actor(user_id=user.id, role=user.role)
