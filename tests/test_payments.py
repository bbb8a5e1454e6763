"""
支付校验测试（网关通过 httpx.MockTransport 模拟）
"""
import json
from decimal import Decimal

import httpx
import pytest

from mf_core.gateways.payments import PaymentGatewayClient
from mf_core.services.payments import PaymentVerifier, compute_signature
from mf_core.utils.errors import PaymentVerificationFailed, ServiceUnavailableError, ValidationError
from tests.conftest import PAYMENT_SECRET, sign


class TestSignature:

    def test_signature_is_hmac_of_order_and_payment(self, verifier):
        signature = compute_signature(PAYMENT_SECRET, "order_gw_1", "pay_1")
        assert len(signature) == 64
        assert verifier.verify_signature("order_gw_1", "pay_1", signature)

    def test_tampered_values_rejected(self, verifier):
        signature = sign("order_gw_1", "pay_1")
        assert not verifier.verify_signature("order_gw_1", "pay_2", signature)
        assert not verifier.verify_signature("order_gw_2", "pay_1", signature)
        assert not verifier.verify_signature("order_gw_1", "pay_1", "")

    def test_missing_secret_is_unavailable(self):
        unconfigured = PaymentVerifier(client=None, key_secret="")
        assert not unconfigured.configured
        with pytest.raises(ServiceUnavailableError):
            unconfigured.verify_signature("order_gw_1", "pay_1", "sig")


class TestEnsureCaptured:

    async def test_captured_payment(self, verifier, gateway):
        gateway.add_payment("pay_1", 125050)
        state = await verifier.ensure_captured("order_gw_1", "pay_1", sign("order_gw_1", "pay_1"))
        assert state.captured
        assert state.amount == Decimal("1250.50")
        assert state.method == "upi"

    async def test_bad_signature_skips_lookup(self, verifier, gateway):
        gateway.add_payment("pay_1", 1000)
        with pytest.raises(PaymentVerificationFailed) as exc_info:
            await verifier.ensure_captured("order_gw_1", "pay_1", "forged")
        assert exc_info.value.code == "INVALID_SIGNATURE"
        assert gateway.requests == []

    async def test_not_captured(self, verifier, gateway):
        gateway.add_payment("pay_1", 1000, status="authorized")
        with pytest.raises(PaymentVerificationFailed) as exc_info:
            await verifier.ensure_captured("order_gw_1", "pay_1", sign("order_gw_1", "pay_1"))
        assert exc_info.value.code == "PAYMENT_NOT_CAPTURED"

    async def test_unknown_payment(self, verifier):
        with pytest.raises(PaymentVerificationFailed) as exc_info:
            await verifier.fetch_payment_state("pay_missing")
        assert exc_info.value.code == "PAYMENT_LOOKUP_FAILED"

    async def test_gateway_outage_retries_then_fails(self, verifier, gateway):
        gateway.fail_with = 503
        with pytest.raises(ServiceUnavailableError) as exc_info:
            await verifier.fetch_payment_state("pay_1")
        assert exc_info.value.code == "PAYMENT_GATEWAY_UNAVAILABLE"
        # retries=1：首次 + 重试一次
        assert len(gateway.requests) == 2

    async def test_network_error_is_retried(self):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("boom", request=request)
            return httpx.Response(200, json={"id": "pay_9", "status": "captured", "amount": 500})

        client = PaymentGatewayClient("key_test", PAYMENT_SECRET, "https://gateway.test/v1",
                                      transport=httpx.MockTransport(handler))
        verifier = PaymentVerifier(client=client, key_secret=PAYMENT_SECRET, retries=2, retry_delay=0)
        try:
            state = await verifier.fetch_payment_state("pay_9")
        finally:
            await client.close()
        assert state.amount == Decimal("5.00")
        assert len(attempts) == 2


class TestGatewayOrders:

    async def test_create_gateway_order_in_minor_units(self, verifier, gateway):
        result = await verifier.create_gateway_order(Decimal("1250.50"), user_id=42)
        assert result["order_id"] == "order_gw_1"
        assert result["key_id"] == "key_test"
        body = json.loads(gateway.requests[0].content)
        assert body["amount"] == 125050
        assert body["currency"] == "INR"
        assert body["receipt"].startswith("rcpt_42_")

    async def test_non_positive_amount_rejected(self, verifier, gateway):
        with pytest.raises(ValidationError):
            await verifier.create_gateway_order(Decimal("0"))
        assert gateway.requests == []

    async def test_gateway_failure(self, verifier, gateway):
        gateway.fail_with = 500
        with pytest.raises(ServiceUnavailableError) as exc_info:
            await verifier.create_gateway_order(Decimal("10"))
        assert exc_info.value.code == "PAYMENT_ORDER_FAILED"

    async def test_refund(self, verifier, gateway):
        refund = await verifier.refund("pay_1", Decimal("930.00"))
        assert refund["id"] == "rfnd_1"
        request = gateway.requests[0]
        assert request.url.path.endswith("/payments/pay_1/refund")
        assert json.loads(request.content)["amount"] == 93000

    async def test_unconfigured_client(self):
        with pytest.raises(ServiceUnavailableError) as exc_info:
            await PaymentVerifier(client=None, key_secret="x").refund("pay_1", Decimal("1"))
        assert exc_info.value.code == "PAYMENT_GATEWAY_NOT_CONFIGURED"
