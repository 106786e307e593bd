"""
Tests for the deposit / withdrawal journal
Run with: pytest tests/test_transactions.py -v
"""

import asyncio
from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from wagerline.core.errors import GatewayFailure, InsufficientFunds, LimitReached, NotFound, ValidationError
from wagerline.core.states import LedgerReason, TransactionKind, TransactionStatus
from wagerline.models import LedgerEntry, Transaction
from wagerline.services.gateway import GatewayResult, SimulatedPaymentGateway
from wagerline.services.ledger import get_balance
from wagerline.services.transactions import TransactionJournal
from wagerline.utils.timeutil import utcnow


def _gateway(deposit_ok=True, withdraw_ok=True, delay=0.0):
    return SimulatedPaymentGateway(
        deposit_success_rate=1.0 if deposit_ok else 0.0,
        withdraw_success_rate=1.0 if withdraw_ok else 0.0,
        delay_seconds=delay,
    )


class BrokenGateway(SimulatedPaymentGateway):
    """Transport failure on confirm/process"""

    def __init__(self):
        super().__init__(delay_seconds=0)

    async def confirm_deposit(self, txid):
        raise GatewayFailure("connection reset")

    async def process_withdraw(self, txid):
        raise GatewayFailure("connection reset")


@pytest.fixture
def journal_factory(session_factory, limits):
    def _make(gateway=None, auto_process=False, **limit_overrides):
        return TransactionJournal(
            gateway=gateway or _gateway(),
            session_factory=session_factory,
            limits=replace(limits, **limit_overrides),
            auto_process=auto_process,
        )
    return _make


def _balance(session_factory, account_id):
    db = session_factory()
    try:
        return get_balance(db, account_id)
    finally:
        db.close()


def _entries(session_factory, account_id, reason):
    db = session_factory()
    try:
        return db.query(LedgerEntry).filter(
            LedgerEntry.account_id == account_id, LedgerEntry.reason == reason
        ).count()
    finally:
        db.close()


# ---------------------------------------------------------------------------
# Deposits
# ---------------------------------------------------------------------------

class TestDeposit:

    def test_confirm_credits_exactly_once(self, journal_factory, make_account, session_factory):
        journal = journal_factory()
        acc = make_account()

        async def scenario():
            tx = await journal.create_deposit(acc, 100)
            assert tx.status == TransactionStatus.PENDING
            assert tx.payment_reference.endswith(tx.txid)
            assert _balance(session_factory, acc) == Decimal("0.00")

            first = await journal.confirm_deposit(tx.txid)
            second = await journal.confirm_deposit(tx.txid)
            return tx, first, second

        tx, first, second = asyncio.run(scenario())

        assert first == second == TransactionStatus.COMPLETED
        assert _balance(session_factory, acc) == Decimal("100.00")
        assert _entries(session_factory, acc, LedgerReason.DEPOSIT) == 1

    def test_concurrent_webhooks_credit_once(self, journal_factory, make_account, session_factory):
        journal = journal_factory(gateway=_gateway(delay=0.01))
        acc = make_account()

        async def scenario():
            tx = await journal.create_deposit(acc, 250)
            return await asyncio.gather(*(journal.confirm_deposit(tx.txid) for _ in range(4)))

        statuses = asyncio.run(scenario())

        assert set(statuses) == {TransactionStatus.COMPLETED}
        assert _balance(session_factory, acc) == Decimal("250.00")
        assert _entries(session_factory, acc, LedgerReason.DEPOSIT) == 1

    def test_declined_deposit(self, journal_factory, make_account, session_factory):
        journal = journal_factory(gateway=_gateway(deposit_ok=False))
        acc = make_account()

        async def scenario():
            tx = await journal.create_deposit(acc, 50)
            return tx, await journal.confirm_deposit(tx.txid)

        tx, status = asyncio.run(scenario())

        assert status == TransactionStatus.FAILED
        assert _balance(session_factory, acc) == Decimal("0.00")
        assert journal.get_transaction(tx.txid).details["reason"] == "declined"

    def test_gateway_failure_marks_failed(self, journal_factory, make_account, session_factory):
        journal = journal_factory(gateway=BrokenGateway())
        acc = make_account()

        async def scenario():
            tx = await journal.create_deposit(acc, 50)
            return await journal.confirm_deposit(tx.txid)

        assert asyncio.run(scenario()) == TransactionStatus.FAILED
        assert _balance(session_factory, acc) == Decimal("0.00")

    @pytest.mark.parametrize("amount", ["9.99", "10000.01", 0])
    def test_bounds(self, journal_factory, make_account, amount):
        journal = journal_factory()
        acc = make_account()
        with pytest.raises(ValidationError):
            asyncio.run(journal.create_deposit(acc, amount))

    @pytest.mark.parametrize("amount", ["10", "10000"])
    def test_bounds_inclusive(self, journal_factory, make_account, amount):
        journal = journal_factory()
        tx = asyncio.run(journal.create_deposit(make_account(), amount))
        assert tx.amount == Decimal(amount)

    def test_unknown_account(self, journal_factory):
        with pytest.raises(NotFound):
            asyncio.run(journal_factory().create_deposit(404, 100))

    def test_unknown_txid(self, journal_factory):
        with pytest.raises(NotFound):
            asyncio.run(journal_factory().confirm_deposit("TXNOPE"))

    def test_expired_deposit_is_voided(self, journal_factory, make_account, session_factory):
        journal = journal_factory()
        acc = make_account()
        tx = asyncio.run(journal.create_deposit(acc, 100))

        db = session_factory()
        db.query(Transaction).filter(Transaction.txid == tx.txid).update(
            {Transaction.expires_at: utcnow() - timedelta(minutes=1)}
        )
        db.commit()
        db.close()

        status = asyncio.run(journal.confirm_deposit(tx.txid))

        assert status == TransactionStatus.FAILED
        assert journal.get_transaction(tx.txid).details["reason"] == "expired"
        assert _balance(session_factory, acc) == Decimal("0.00")

    def test_expiry_sweep(self, journal_factory, make_account, session_factory):
        journal = journal_factory()
        acc = make_account()
        stale = asyncio.run(journal.create_deposit(acc, 100))
        fresh = asyncio.run(journal.create_deposit(acc, 100))

        db = session_factory()
        db.query(Transaction).filter(Transaction.txid == stale.txid).update(
            {Transaction.expires_at: utcnow() - timedelta(seconds=1)}
        )
        db.commit()
        db.close()

        assert journal.expire_stale_deposits() == 1
        assert journal.get_transaction(stale.txid).status == TransactionStatus.FAILED
        assert journal.get_transaction(fresh.txid).status == TransactionStatus.PENDING

    def test_pending_limit(self, journal_factory, make_account):
        journal = journal_factory(max_pending_transactions=2)
        acc = make_account()

        async def scenario():
            await journal.create_deposit(acc, 20)
            await journal.create_deposit(acc, 20)
            await journal.create_deposit(acc, 20)

        with pytest.raises(LimitReached):
            asyncio.run(scenario())

    def test_pending_limit_holds_under_concurrent_creates(self, journal_factory, make_account, session_factory):
        journal = journal_factory(gateway=_gateway(delay=0.05), max_pending_transactions=1)
        acc = make_account()

        async def scenario():
            return await asyncio.gather(
                journal.create_deposit(acc, 20),
                journal.create_deposit(acc, 20),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        assert sum(isinstance(r, LimitReached) for r in results) == 1
        db = session_factory()
        assert db.query(Transaction).filter(Transaction.account_id == acc).count() == 1
        db.close()


# ---------------------------------------------------------------------------
# Withdrawals
# ---------------------------------------------------------------------------

class TestWithdraw:

    def test_debits_immediately(self, journal_factory, make_account, session_factory):
        journal = journal_factory()
        acc = make_account(200)

        tx = asyncio.run(journal.create_withdraw(acc, 50))

        assert tx.kind == TransactionKind.WITHDRAW
        assert tx.status == TransactionStatus.PENDING
        assert _balance(session_factory, acc) == Decimal("150.00")

    def test_failure_refunds_exactly_once(self, journal_factory, make_account, session_factory):
        journal = journal_factory(gateway=_gateway(withdraw_ok=False))
        acc = make_account(200)

        async def scenario():
            tx = await journal.create_withdraw(acc, 50)
            first = await journal.process_withdraw(tx.txid)
            second = await journal.process_withdraw(tx.txid)
            return first, second

        first, second = asyncio.run(scenario())

        assert first == second == TransactionStatus.FAILED
        assert _balance(session_factory, acc) == Decimal("200.00")
        assert _entries(session_factory, acc, LedgerReason.WITHDRAW_REFUND) == 1

    def test_concurrent_failures_refund_once(self, journal_factory, make_account, session_factory):
        journal = journal_factory(gateway=_gateway(withdraw_ok=False, delay=0.01))
        acc = make_account(200)

        async def scenario():
            tx = await journal.create_withdraw(acc, 50)
            await asyncio.gather(*(journal.process_withdraw(tx.txid) for _ in range(3)))

        asyncio.run(scenario())

        assert _balance(session_factory, acc) == Decimal("200.00")

    def test_gateway_failure_refunds(self, journal_factory, make_account, session_factory):
        journal = journal_factory(gateway=BrokenGateway())
        acc = make_account(200)

        async def scenario():
            tx = await journal.create_withdraw(acc, 80)
            return await journal.process_withdraw(tx.txid)

        assert asyncio.run(scenario()) == TransactionStatus.FAILED
        assert _balance(session_factory, acc) == Decimal("200.00")

    def test_success_keeps_debit(self, journal_factory, make_account, session_factory):
        journal = journal_factory()
        acc = make_account(200)

        async def scenario():
            tx = await journal.create_withdraw(acc, 50)
            return await journal.process_withdraw(tx.txid)

        assert asyncio.run(scenario()) == TransactionStatus.COMPLETED
        assert _balance(session_factory, acc) == Decimal("150.00")

    def test_auto_process_runs_in_background(self, journal_factory, make_account, session_factory):
        journal = journal_factory(gateway=_gateway(withdraw_ok=False), auto_process=True)
        acc = make_account(200)

        async def scenario():
            tx = await journal.create_withdraw(acc, 50)
            assert _balance(session_factory, acc) == Decimal("150.00")
            await journal.drain()
            return tx

        tx = asyncio.run(scenario())

        assert journal.get_transaction(tx.txid).status == TransactionStatus.FAILED
        assert _balance(session_factory, acc) == Decimal("200.00")

    def test_insufficient_funds(self, journal_factory, make_account, session_factory):
        journal = journal_factory()
        acc = make_account(40)
        with pytest.raises(InsufficientFunds):
            asyncio.run(journal.create_withdraw(acc, 50))
        assert _balance(session_factory, acc) == Decimal("40.00")
        assert journal.list_transactions(acc) == []

    @pytest.mark.parametrize("amount", ["19.99", "50000.01"])
    def test_bounds(self, journal_factory, make_account, amount):
        journal = journal_factory()
        with pytest.raises(ValidationError):
            asyncio.run(journal.create_withdraw(make_account(100000), amount))

    def test_daily_limit(self, journal_factory, make_account, session_factory):
        journal = journal_factory(daily_withdraw_limit=Decimal("100"))
        acc = make_account(500)

        async def scenario():
            await journal.create_withdraw(acc, 60)
            await journal.create_withdraw(acc, 60)

        with pytest.raises(LimitReached):
            asyncio.run(scenario())
        assert _balance(session_factory, acc) == Decimal("440.00")

    def test_daily_limit_holds_under_concurrent_withdrawals(self, journal_factory, make_account, session_factory):
        journal = journal_factory(gateway=_gateway(delay=0.05), daily_withdraw_limit=Decimal("100"))
        acc = make_account(1000)

        async def scenario():
            return await asyncio.gather(
                journal.create_withdraw(acc, 60),
                journal.create_withdraw(acc, 60),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())

        assert sum(isinstance(r, LimitReached) for r in results) == 1
        assert _balance(session_factory, acc) == Decimal("940.00")
        assert _entries(session_factory, acc, LedgerReason.WITHDRAW) == 1

    def test_failed_withdrawals_do_not_count_towards_daily_limit(self, journal_factory, make_account):
        journal = journal_factory(gateway=_gateway(withdraw_ok=False), daily_withdraw_limit=Decimal("100"))
        acc = make_account(500)

        async def scenario():
            tx = await journal.create_withdraw(acc, 80)
            await journal.process_withdraw(tx.txid)
            return await journal.create_withdraw(acc, 80)

        assert asyncio.run(scenario()).status == TransactionStatus.PENDING

    def test_sweep_resolves_stale(self, journal_factory, make_account, session_factory):
        journal = journal_factory()
        acc = make_account(200)
        tx = asyncio.run(journal.create_withdraw(acc, 50))

        summary = asyncio.run(journal.sweep_pending_withdrawals(older_than_minutes=0))

        assert summary["swept"] == 1
        assert summary["outcomes"]["completed"] == 1
        assert journal.get_transaction(tx.txid).status == TransactionStatus.COMPLETED


class TestHistory:

    def test_newest_first(self, journal_factory, make_account):
        journal = journal_factory()
        acc = make_account(500)

        async def scenario():
            a = await journal.create_deposit(acc, 20)
            b = await journal.create_withdraw(acc, 30)
            return a, b

        a, b = asyncio.run(scenario())
        txids = [t.txid for t in journal.list_transactions(acc)]

        assert set(txids) == {a.txid, b.txid}
        assert txids[0] == b.txid


class TestGatewayContract:

    def test_non_terminal_result_rejected(self):
        with pytest.raises(GatewayFailure):
            GatewayResult(status=TransactionStatus.PENDING)

    def test_decision_is_stable_per_txid(self):
        gateway = SimulatedPaymentGateway(deposit_success_rate=0.5, delay_seconds=0)

        async def scenario():
            return [await gateway.confirm_deposit("TX1") for _ in range(10)]

        results = asyncio.run(scenario())
        assert len({r.status for r in results}) == 1
