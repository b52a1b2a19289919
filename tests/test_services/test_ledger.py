"""Tests for the wallet ledger: conservation, idempotency and concurrency."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from esim_reseller.core.exceptions import (
    AgentNotFoundException,
    InsufficientFundsError,
    ValidationException,
)
from esim_reseller.db.base import Database
from esim_reseller.db.models import AuditLog, TransactionType, WalletTransaction
from esim_reseller.services import ledger


class TestDebitAndCredit:
    """Test basic wallet mutations."""

    async def test_debit_reduces_balance(self, session, agent) -> None:
        result = await ledger.debit(session, agent.id, Decimal("30.00"), "Purchase", "order-1")

        assert result.balance == Decimal("70.00")
        assert result.duplicate is False
        assert await ledger.get_balance(session, agent.id) == Decimal("70.00")

    async def test_debit_records_signed_amount(self, session, agent) -> None:
        await ledger.debit(session, agent.id, Decimal("12.34"), "Purchase", "order-1")

        tx = await ledger.find_transaction(session, agent.id, "order-1", TransactionType.PURCHASE)
        assert tx is not None
        assert Decimal(tx.amount) == Decimal("-12.34")
        assert Decimal(tx.balance_after) == Decimal("87.66")

    async def test_insufficient_funds_leaves_wallet_untouched(self, session, agent) -> None:
        with pytest.raises(InsufficientFundsError) as exc_info:
            await ledger.debit(session, agent.id, Decimal("100.01"), "Purchase", "order-1")

        assert exc_info.value.balance == Decimal("100.00")
        assert await ledger.get_balance(session, agent.id) == Decimal("100.00")
        assert await ledger.find_transaction(
            session, agent.id, "order-1", TransactionType.PURCHASE
        ) is None

    async def test_debit_of_whole_balance_allowed(self, session, agent) -> None:
        result = await ledger.debit(session, agent.id, Decimal("100.00"), "Purchase", None)
        assert result.balance == Decimal("0.00")

    @pytest.mark.parametrize("amount", ["0", "-5", "NaN"])
    async def test_non_positive_amount_rejected(self, session, agent, amount: str) -> None:
        with pytest.raises(ValidationException):
            await ledger.credit(session, agent.id, Decimal(amount), "Credit", "ref-1")

    async def test_unknown_agent(self, session) -> None:
        with pytest.raises(AgentNotFoundException):
            await ledger.debit(session, "missing", Decimal("1"), "Purchase", None)

    async def test_mutation_writes_audit_row(self, session, agent) -> None:
        await ledger.debit(session, agent.id, Decimal("5"), "Purchase", "order-1")

        count = await session.scalar(
            select(func.count()).select_from(AuditLog).where(AuditLog.action == "wallet_purchase")
        )
        assert count == 1

    async def test_attached_rows_commit_with_debit(self, session, agent) -> None:
        row = AuditLog(table_name="orders", action="paid_row", new_values={})

        await ledger.debit(session, agent.id, Decimal("5"), "Purchase", "order-1", attach=[row])

        count = await session.scalar(
            select(func.count()).select_from(AuditLog).where(AuditLog.action == "paid_row")
        )
        assert count == 1

    async def test_attached_rows_dropped_when_refused(self, session, agent) -> None:
        await ledger.debit(session, agent.id, Decimal("5"), "Purchase", "order-1")
        unpaid = AuditLog(table_name="orders", action="unpaid_row", new_values={})
        duplicate = AuditLog(table_name="orders", action="duplicate_row", new_values={})

        with pytest.raises(InsufficientFundsError):
            await ledger.debit(session, agent.id, Decimal("500"), "Purchase", "order-2", attach=[unpaid])
        await ledger.debit(session, agent.id, Decimal("5"), "Purchase", "order-1", attach=[duplicate])

        count = await session.scalar(
            select(func.count())
            .select_from(AuditLog)
            .where(AuditLog.action.in_(["unpaid_row", "duplicate_row"]))
        )
        assert count == 0


class TestIdempotency:
    """Test that references are applied at most once."""

    async def test_double_credit_same_reference(self, session, agent) -> None:
        first = await ledger.credit(session, agent.id, Decimal("25"), "Top-up", "pay_123")
        second = await ledger.credit(session, agent.id, Decimal("25"), "Top-up", "pay_123")

        assert first.balance == Decimal("125.00")
        assert second.duplicate is True
        assert second.balance == Decimal("125.00")
        assert second.transaction_id == first.transaction_id
        assert await ledger.get_balance(session, agent.id) == Decimal("125.00")

    async def test_double_refund_same_order(self, session, agent) -> None:
        await ledger.debit(session, agent.id, Decimal("30"), "Purchase", "order-1")
        await ledger.refund(session, agent.id, Decimal("30"), "order-1", "supplier failed")
        again = await ledger.refund(session, agent.id, Decimal("30"), "order-1", "supplier failed")

        assert again.duplicate is True
        assert await ledger.get_balance(session, agent.id) == Decimal("100.00")

        refunds = await session.scalar(
            select(func.count())
            .select_from(WalletTransaction)
            .where(
                WalletTransaction.reference_id == "order-1",
                WalletTransaction.transaction_type == TransactionType.REFUND,
            )
        )
        assert refunds == 1

    async def test_same_reference_different_type_is_independent(self, session, agent) -> None:
        await ledger.debit(session, agent.id, Decimal("30"), "Purchase", "order-1")
        result = await ledger.refund(session, agent.id, Decimal("30"), "order-1", "failed")

        assert result.duplicate is False
        assert result.balance == Decimal("100.00")

    async def test_duplicate_is_audited(self, session, agent) -> None:
        await ledger.credit(session, agent.id, Decimal("5"), "Top-up", "pay_1")
        await ledger.credit(session, agent.id, Decimal("5"), "Top-up", "pay_1")

        count = await session.scalar(
            select(func.count())
            .select_from(AuditLog)
            .where(AuditLog.action == "wallet_duplicate_reference")
        )
        assert count == 1


class TestConservation:
    """Stored balance always equals the replayed ledger."""

    async def test_replay_matches_balance(self, session, agent) -> None:
        await ledger.debit(session, agent.id, Decimal("30"), "Purchase", "order-1")
        await ledger.debit(session, agent.id, Decimal("19.99"), "Purchase", "order-2")
        await ledger.refund(session, agent.id, Decimal("30"), "order-1", "failed")
        await ledger.credit(session, agent.id, Decimal("0.01"), "Adjustment", None)

        balance = await ledger.get_balance(session, agent.id)
        assert balance == Decimal("80.02")
        assert await ledger.replay_balance(session, agent.id) == balance

    async def test_list_transactions_newest_first(self, session, agent) -> None:
        await ledger.debit(session, agent.id, Decimal("1"), "First", "a")
        await ledger.debit(session, agent.id, Decimal("2"), "Second", "b")

        transactions = await ledger.list_transactions(session, agent.id, limit=2)
        assert [tx.reference_id for tx in transactions] == ["b", "a"]


class TestConcurrency:
    """Concurrent debits never overdraw the wallet."""

    async def test_concurrent_debits_one_succeeds(self, database: Database, agent) -> None:
        async def attempt(reference: str) -> Decimal | Exception:
            async with database.session() as s:
                try:
                    result = await ledger.debit(s, agent.id, Decimal("60"), "Purchase", reference)
                except InsufficientFundsError as e:
                    return e
                return result.balance

        outcomes = await asyncio.gather(attempt("order-1"), attempt("order-2"))

        successes = [o for o in outcomes if isinstance(o, Decimal)]
        failures = [o for o in outcomes if isinstance(o, InsufficientFundsError)]
        assert successes == [Decimal("40.00")]
        assert len(failures) == 1

        async with database.session() as s:
            assert await ledger.get_balance(s, agent.id) == Decimal("40.00")
            assert await ledger.replay_balance(s, agent.id) == Decimal("40.00")
