"""
钱包账本测试
"""
from decimal import Decimal

import pytest

from mf_core.models import Order, WalletTransaction
from mf_core.models.enums import LedgerEntryKind
from mf_core.services.wallet_ledger import WalletLedger, claim_once
from mf_core.utils.errors import NotFoundError, ValidationError


@pytest.fixture
def ledger():
    return WalletLedger()


class TestLedgerEntries:

    async def test_credit_and_debit(self, db_manager, market, ledger):
        seller, _ = await market.seller()

        async with db_manager.get_transaction() as session:
            after_credit = await ledger.credit(session, seller.id, Decimal("930.00"),
                                               reference_type="order", reference_id=1,
                                               idempotency_key="order:1:earnings")
            after_debit = await ledger.debit(session, seller.id, Decimal("50.00"),
                                             reference_type="return", reference_id=7,
                                             idempotency_key="return:7:vendor_charge")

        assert after_credit == Decimal("930.00")
        assert after_debit == Decimal("880.00")
        assert await market.balance(seller.id) == Decimal("880.00")

        async with db_manager.get_session() as session:
            entries = await ledger.history(session, seller.id)
        assert [e.kind for e in entries] == [LedgerEntryKind.DEBIT, LedgerEntryKind.CREDIT]
        assert entries[0].amount == Decimal("-50.00")
        assert entries[0].balance_after == Decimal("880.00")
        assert entries[1].reference_type == "order"

    async def test_duplicate_key_is_noop(self, db_manager, market, ledger):
        seller, _ = await market.seller()

        for _ in range(3):
            async with db_manager.get_transaction() as session:
                await ledger.credit(session, seller.id, Decimal("100"), reference_type="order",
                                    reference_id=5, idempotency_key="order:5:earnings")

        assert await market.balance(seller.id) == Decimal("100.00")
        async with db_manager.get_session() as session:
            assert len(await ledger.history(session, seller.id)) == 1

    async def test_debit_may_go_negative(self, db_manager, market, ledger):
        seller, _ = await market.seller(balance=Decimal("20.00"))
        async with db_manager.get_transaction() as session:
            balance = await ledger.debit(session, seller.id, Decimal("50"), reference_type="return",
                                         idempotency_key="return:1:vendor_charge")
        assert balance == Decimal("-30.00")

    async def test_negative_amount_rejected(self, db_manager, market, ledger):
        seller, _ = await market.seller()
        async with db_manager.get_session() as session:
            with pytest.raises(ValidationError):
                await ledger.credit(session, seller.id, Decimal("-1"), reference_type="order",
                                    idempotency_key="bad")
            with pytest.raises(ValidationError):
                await ledger.debit(session, seller.id, Decimal("-1"), reference_type="order",
                                   idempotency_key="bad")

    async def test_unknown_user(self, db_manager, ledger):
        async with db_manager.get_session() as session:
            with pytest.raises(NotFoundError):
                await ledger.credit(session, 9999, Decimal("1"), reference_type="order",
                                    idempotency_key="ghost")
            with pytest.raises(NotFoundError):
                await ledger.balance(session, 9999)

    async def test_rollback_discards_entry(self, db_manager, market, ledger):
        seller, _ = await market.seller()
        with pytest.raises(RuntimeError):
            async with db_manager.get_transaction() as session:
                await ledger.credit(session, seller.id, Decimal("10"), reference_type="order",
                                    idempotency_key="order:9:earnings")
                raise RuntimeError("abort")

        assert await market.balance(seller.id) == Decimal("0.00")
        async with db_manager.get_session() as session:
            assert await session.get(WalletTransaction, 1) is None

    async def test_history_pagination(self, db_manager, market, ledger):
        seller, _ = await market.seller()
        async with db_manager.get_transaction() as session:
            for i in range(5):
                await ledger.credit(session, seller.id, Decimal("1"), reference_type="order",
                                    reference_id=i, idempotency_key=f"order:{i}:earnings")
        async with db_manager.get_session() as session:
            page = await ledger.history(session, seller.id, limit=2, offset=1)
        assert [e.reference_id for e in page] == [3, 2]


class TestClaimOnce:

    async def test_flag_claimed_once(self, db_manager, market):
        buyer = await market.buyer()
        _, profile = await market.seller()
        order = await market.order(buyer, profile)

        async with db_manager.get_transaction() as session:
            loaded = await session.get(Order, order.id)
            assert await claim_once(session, Order, order.id, "seller_credited") is True
            assert loaded.seller_credited is True
            assert await claim_once(session, Order, order.id, "seller_credited") is False

        async with db_manager.get_transaction() as session:
            assert await claim_once(session, Order, order.id, "seller_credited") is False
