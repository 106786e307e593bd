"""
Deposit / withdrawal lifecycle.

    deposit:   create (pending, no balance change)
               → confirm: gateway ok   → completed + credit      (one commit)
                          gateway fail → failed, no balance change
                          past expiry  → failed ("expired"), no balance change

    withdraw:  create (debit + pending row, one commit)
               → process: gateway ok   → completed, no balance change
                          gateway fail → failed + refund credit  (one commit)

Every terminal transition goes through ``_finalize``: a single
``UPDATE transactions SET status=<terminal> WHERE txid=? AND status IN
(pending, processing)``.  Only the caller whose UPDATE matched a row may
touch the ledger, and it does so before committing the same unit of work.
A duplicate webhook, a retried job or a concurrent sweep therefore sees 0
matched rows and becomes a no-op: the balance moves exactly once.
"""

import asyncio
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from wagerline.core.config import LedgerConfig, WalletLimits
from wagerline.core.errors import (
    AlreadyTerminal,
    GatewayFailure,
    InsufficientFunds,
    LimitReached,
    NotFound,
    ValidationError,
)
from wagerline.core.money import Number, to_money
from wagerline.core.states import (
    TRANSACTION_TRANSITIONS,
    LedgerReason,
    TransactionKind,
    TransactionStatus,
    sources_of,
)
from wagerline.models import Transaction, session_scope
from wagerline.services.gateway import GatewayResult, PaymentGateway
from wagerline.services.ledger import apply_credit, apply_debit, get_balance
from wagerline.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

_NON_TERMINAL = (TransactionStatus.PENDING, TransactionStatus.PROCESSING)


class TransactionJournal:
    """
    Owns every deposit and withdrawal.

    Usage::

        journal = TransactionJournal(gateway=SimulatedPaymentGateway())
        tx = await journal.create_deposit(account_id, 100)
        status = await journal.confirm_deposit(tx.txid)   # safe to repeat

    With ``auto_process=True`` (default) ``create_withdraw`` schedules
    ``process_withdraw`` on the running event loop; ``drain()`` awaits
    anything still in flight.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        session_factory=None,
        limits: Optional[WalletLimits] = None,
        ledger_config: Optional[LedgerConfig] = None,
        auto_process: bool = True,
    ):
        self.gateway = gateway
        self.session_factory = session_factory
        self.limits = limits or WalletLimits.from_env()
        self.max_retries = (ledger_config or LedgerConfig.from_env()).max_retries
        self.auto_process = auto_process
        self._inflight: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_bounds(amount: Decimal, low: Decimal, high: Decimal, what: str) -> None:
        if amount < low or amount > high:
            raise ValidationError(
                f"{what} must be between {low} and {high}",
                amount=amount, minimum=low, maximum=high,
            )

    def _check_pending_limit(self, db: Session, account_id: int) -> None:
        pending = (
            db.query(func.count(Transaction.txid))
            .filter(
                Transaction.account_id == account_id,
                Transaction.status.in_(_NON_TERMINAL),
            )
            .scalar()
        )
        if pending >= self.limits.max_pending_transactions:
            raise LimitReached(
                f"Account {account_id} already has {pending} pending transactions",
                account_id=account_id,
                limit=self.limits.max_pending_transactions,
            )

    def _check_daily_withdraw(self, db: Session, account_id: int, amount: Decimal) -> None:
        since = utcnow() - timedelta(hours=24)
        used = (
            db.query(func.coalesce(func.sum(Transaction.amount), 0))
            .filter(
                Transaction.account_id == account_id,
                Transaction.kind == TransactionKind.WITHDRAW,
                Transaction.status != TransactionStatus.FAILED,
                Transaction.created_at >= since,
            )
            .scalar()
        )
        used = to_money(used or 0)
        if used + amount > self.limits.daily_withdraw_limit:
            raise LimitReached(
                f"Daily withdrawal limit {self.limits.daily_withdraw_limit} exceeded",
                account_id=account_id,
                used=used,
            )

    def _load(self, txid: str, kind: TransactionKind) -> Transaction:
        with session_scope(self.session_factory) as db:
            tx = db.query(Transaction).filter(Transaction.txid == txid).first()
            if tx is None:
                raise NotFound(f"Transaction {txid} not found", txid=txid)
            if tx.kind != kind:
                raise ValidationError(f"Transaction {txid} is a {tx.kind.value}, not a {kind.value}")
            return tx

    # ------------------------------------------------------------------
    # Guarded transitions
    # ------------------------------------------------------------------

    def _mark_processing(self, txid: str) -> None:
        with session_scope(self.session_factory) as db:
            db.query(Transaction).filter(
                Transaction.txid == txid,
                Transaction.status == TransactionStatus.PENDING,
            ).update(
                {Transaction.status: TransactionStatus.PROCESSING, Transaction.updated_at: utcnow()},
                synchronize_session=False,
            )

    def _finalize(
        self,
        txid: str,
        target: TransactionStatus,
        credit_reason: Optional[LedgerReason] = None,
        details: Optional[Dict] = None,
    ) -> TransactionStatus:
        """
        Flip ``txid`` to a terminal status; optionally credit its amount.

        Returns the status the transaction holds afterwards.  When another
        caller already finalized it, that status is returned unchanged and
        no ledger write happens.
        """
        with session_scope(self.session_factory) as db:
            row = (
                db.query(Transaction.account_id, Transaction.amount, Transaction.details)
                .filter(Transaction.txid == txid)
                .one_or_none()
            )
            if row is None:
                raise NotFound(f"Transaction {txid} not found", txid=txid)
            account_id, amount, old_details = row

            now = utcnow()
            matched = (
                db.query(Transaction)
                .filter(
                    Transaction.txid == txid,
                    Transaction.status.in_(sources_of(TRANSACTION_TRANSITIONS, target)),
                )
                .update(
                    {
                        Transaction.status: target,
                        Transaction.resolved_at: now,
                        Transaction.updated_at: now,
                        Transaction.details: {**(old_details or {}), **(details or {})},
                    },
                    synchronize_session=False,
                )
            )
            if matched == 0:
                current = db.query(Transaction.status).filter(Transaction.txid == txid).scalar()
                logger.info("Transaction %s already %s; %s skipped", txid, current.value, target.value)
                return current

            if credit_reason is not None:
                apply_credit(db, account_id, amount, credit_reason, reference=txid,
                             max_retries=self.max_retries)

            logger.info("Transaction %s -> %s (%s)", txid, target.value, details or {})
            return target

    # ------------------------------------------------------------------
    # Deposits
    # ------------------------------------------------------------------

    async def create_deposit(self, account_id: int, amount: Number) -> Transaction:
        """Open a pending deposit and return it with its payment reference."""
        amount = to_money(amount)
        self._check_bounds(amount, self.limits.min_deposit, self.limits.max_deposit, "Deposit")

        with session_scope(self.session_factory) as db:
            get_balance(db, account_id)
            self._check_pending_limit(db, account_id)

        intent = await self.gateway.create_deposit(account_id, amount)

        with session_scope(self.session_factory) as db:
            # Re-checked in the writing transaction; the lock serializes concurrent creates
            self._check_pending_limit(db, account_id)
            tx = Transaction(
                txid=intent.txid,
                account_id=account_id,
                kind=TransactionKind.DEPOSIT,
                amount=amount,
                status=TransactionStatus.PENDING,
                payment_reference=intent.payment_reference,
                expires_at=intent.expires_at,
                details={},
            )
            db.add(tx)

        logger.info("Deposit %s created: account %d, amount %s", tx.txid, account_id, amount)
        return tx

    async def confirm_deposit(self, txid: str) -> TransactionStatus:
        """
        Webhook entry point. Safe under at-least-once delivery.

        Already-terminal deposits return their status untouched.
        """
        tx = self._load(txid, TransactionKind.DEPOSIT)
        if tx.is_terminal:
            logger.info("Deposit %s", AlreadyTerminal(txid, tx.status.value).message)
            return tx.status

        if tx.expires_at is not None and utcnow() > tx.expires_at:
            return self._finalize(txid, TransactionStatus.FAILED, details={"reason": "expired"})

        self._mark_processing(txid)
        try:
            result: GatewayResult = await self.gateway.confirm_deposit(txid)
        except GatewayFailure as exc:
            logger.error("Gateway failure confirming deposit %s: %s", txid, exc)
            return self._finalize(
                txid, TransactionStatus.FAILED,
                details={"reason": "gateway_failure", "error": str(exc)},
            )

        if result.succeeded:
            return self._finalize(
                txid, TransactionStatus.COMPLETED,
                credit_reason=LedgerReason.DEPOSIT,
                details={"gateway": result.detail},
            )
        return self._finalize(
            txid, TransactionStatus.FAILED,
            details={"reason": "declined", "gateway": result.detail},
        )

    def expire_stale_deposits(self) -> int:
        """Void pending deposits whose payment reference has expired."""
        with session_scope(self.session_factory) as db:
            stale = [
                txid for (txid,) in db.query(Transaction.txid).filter(
                    Transaction.kind == TransactionKind.DEPOSIT,
                    Transaction.status.in_(_NON_TERMINAL),
                    Transaction.expires_at < utcnow(),
                )
            ]
        expired = 0
        for txid in stale:
            if self._finalize(txid, TransactionStatus.FAILED, details={"reason": "expired"}) is TransactionStatus.FAILED:
                expired += 1
        if expired:
            logger.info("Voided %d expired deposit(s)", expired)
        return expired

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    async def create_withdraw(self, account_id: int, amount: Number) -> Transaction:
        """Debit immediately and persist a pending withdrawal in one commit."""
        amount = to_money(amount)
        self._check_bounds(amount, self.limits.min_withdraw, self.limits.max_withdraw, "Withdrawal")

        with session_scope(self.session_factory) as db:
            balance = get_balance(db, account_id)
            if amount > balance:
                raise InsufficientFunds(account_id, amount, balance)
            self._check_pending_limit(db, account_id)
            self._check_daily_withdraw(db, account_id, amount)

        intent = await self.gateway.create_withdraw(account_id, amount)

        with session_scope(self.session_factory) as db:
            # Re-checked in the writing transaction; the lock serializes concurrent creates
            self._check_pending_limit(db, account_id)
            self._check_daily_withdraw(db, account_id, amount)
            apply_debit(db, account_id, amount, LedgerReason.WITHDRAW, reference=intent.txid,
                        max_retries=self.max_retries)
            tx = Transaction(
                txid=intent.txid,
                account_id=account_id,
                kind=TransactionKind.WITHDRAW,
                amount=amount,
                status=TransactionStatus.PENDING,
                estimated_time=intent.estimated_time,
                details={},
            )
            db.add(tx)

        logger.info("Withdrawal %s created: account %d, amount %s (debited)", tx.txid, account_id, amount)

        if self.auto_process:
            self._spawn_processing(tx.txid)
        return tx

    def _spawn_processing(self, txid: str) -> None:
        task = asyncio.get_running_loop().create_task(self.process_withdraw(txid))
        self._inflight.add(task)

        def _done(t: asyncio.Task) -> None:
            self._inflight.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error("Background processing of %s failed: %s", txid, t.exception())

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for background withdrawal processing started by this journal."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def process_withdraw(self, txid: str) -> TransactionStatus:
        """
        Ask the gateway to pay out a pending withdrawal.

        Failure refunds the held amount exactly once; a repeat call after
        the withdrawal resolved is a no-op.
        """
        tx = self._load(txid, TransactionKind.WITHDRAW)
        if tx.is_terminal:
            logger.info("Withdrawal %s", AlreadyTerminal(txid, tx.status.value).message)
            return tx.status

        self._mark_processing(txid)
        try:
            result: GatewayResult = await self.gateway.process_withdraw(txid)
        except GatewayFailure as exc:
            logger.error("Gateway failure processing withdrawal %s: %s", txid, exc)
            return self._finalize(
                txid, TransactionStatus.FAILED,
                credit_reason=LedgerReason.WITHDRAW_REFUND,
                details={"reason": "gateway_failure", "error": str(exc)},
            )

        if result.succeeded:
            return self._finalize(txid, TransactionStatus.COMPLETED, details={"gateway": result.detail})
        return self._finalize(
            txid, TransactionStatus.FAILED,
            credit_reason=LedgerReason.WITHDRAW_REFUND,
            details={"reason": "declined", "gateway": result.detail},
        )

    async def sweep_pending_withdrawals(self, older_than_minutes: int = 10) -> Dict:
        """Re-drive withdrawals whose background processing never finished."""
        cutoff = utcnow() - timedelta(minutes=older_than_minutes)
        with session_scope(self.session_factory) as db:
            txids = [
                txid for (txid,) in db.query(Transaction.txid).filter(
                    Transaction.kind == TransactionKind.WITHDRAW,
                    Transaction.status.in_(_NON_TERMINAL),
                    Transaction.created_at <= cutoff,
                )
            ]

        outcomes = {s.value: 0 for s in TransactionStatus}
        errors: List[str] = []
        for txid in txids:
            try:
                status = await self.process_withdraw(txid)
                outcomes[status.value] += 1
            except Exception as exc:
                errors.append(f"{txid}: {exc}")
                logger.error("Sweep failed for withdrawal %s: %s", txid, exc, exc_info=True)

        summary = {"swept": len(txids), "outcomes": outcomes, "errors": errors}
        if txids:
            logger.info("Withdrawal sweep done: %s", summary)
        return summary

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_transaction(self, txid: str) -> Transaction:
        with session_scope(self.session_factory) as db:
            tx = db.query(Transaction).filter(Transaction.txid == txid).first()
            if tx is None:
                raise NotFound(f"Transaction {txid} not found", txid=txid)
            return tx

    def list_transactions(self, account_id: int, limit: int = 50) -> List[Transaction]:
        with session_scope(self.session_factory) as db:
            get_balance(db, account_id)
            return (
                db.query(Transaction)
                .filter(Transaction.account_id == account_id)
                .order_by(Transaction.created_at.desc(), Transaction.txid.desc())
                .limit(limit)
                .all()
            )
