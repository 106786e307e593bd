"""
Account balance primitive. The only code that writes accounts.balance.

Every credit and debit is an optimistic compare-and-swap on the account's
``version`` column:

    1. read (balance, version)
    2. UPDATE accounts SET balance=?, version=version+1
       WHERE id=? AND version=?
    3. 1 row matched → applied; 0 rows → another writer got there first,
       re-read and retry (bounded by LedgerConfig.max_retries)

A debit that would take the balance below zero raises InsufficientFunds
before any write.  The CHECK constraint on accounts.balance backs this up
at the database level.

Both primitives come in two shapes:
  apply_credit(db, ...) / apply_debit(db, ...)
      Join the caller's unit of work; nothing is committed here.  Used when
      the balance change must commit together with a status flip.
  LedgerAccount.credit(...) / .debit(...)
      Standalone, own session, committed on return.
"""

import logging
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from wagerline.core.config import LedgerConfig
from wagerline.core.errors import ConcurrencyConflict, InsufficientFunds, NotFound
from wagerline.core.money import Number, positive_money
from wagerline.core.states import LedgerReason
from wagerline.models import Account, LedgerEntry, session_scope
from wagerline.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

CREDIT = "credit"
DEBIT = "debit"


def get_balance(db: Session, account_id: int) -> Decimal:
    """Committed balance, read straight from the row (bypasses the identity map)."""
    row = db.query(Account.balance).filter(Account.id == account_id).one_or_none()
    if row is None:
        raise NotFound(f"Account {account_id} not found", account_id=account_id)
    return row[0]


def _apply(
    db: Session,
    account_id: int,
    amount: Number,
    direction: str,
    reason: LedgerReason,
    reference: Optional[str],
    max_retries: int,
) -> Decimal:
    amount = positive_money(amount)

    for attempt in range(1, max_retries + 1):
        row = (
            db.query(Account.balance, Account.version)
            .filter(Account.id == account_id)
            .one_or_none()
        )
        if row is None:
            raise NotFound(f"Account {account_id} not found", account_id=account_id)
        balance, version = row

        if direction == DEBIT:
            if amount > balance:
                raise InsufficientFunds(account_id, amount, balance)
            new_balance = balance - amount
        else:
            new_balance = balance + amount

        matched = (
            db.query(Account)
            .filter(Account.id == account_id, Account.version == version)
            .update(
                {
                    Account.balance: new_balance,
                    Account.version: version + 1,
                    Account.updated_at: utcnow(),
                },
                synchronize_session=False,
            )
        )
        if matched == 1:
            db.add(LedgerEntry(
                account_id=account_id,
                direction=direction,
                reason=reason,
                amount=amount,
                balance_after=new_balance,
                reference=reference,
            ))
            db.flush()
            cached = db.identity_map.get(Session.identity_key(Account, account_id))
            if cached is not None:
                db.expire(cached)
            logger.info(
                "%s %s account %d: %s -> %s (%s, ref=%s)",
                direction.upper(), amount, account_id, balance, new_balance,
                reason.value, reference,
            )
            return new_balance

        logger.warning(
            "Version conflict on account %d (attempt %d/%d), retrying",
            account_id, attempt, max_retries,
        )

    raise ConcurrencyConflict(account_id, attempts=max_retries)


def apply_credit(
    db: Session,
    account_id: int,
    amount: Number,
    reason: LedgerReason,
    reference: Optional[str] = None,
    max_retries: int = LedgerConfig.max_retries,
) -> Decimal:
    """Increase the balance inside the caller's transaction. Returns the new balance."""
    return _apply(db, account_id, amount, CREDIT, reason, reference, max_retries)


def apply_debit(
    db: Session,
    account_id: int,
    amount: Number,
    reason: LedgerReason,
    reference: Optional[str] = None,
    max_retries: int = LedgerConfig.max_retries,
) -> Decimal:
    """Decrease the balance inside the caller's transaction. Returns the new balance."""
    return _apply(db, account_id, amount, DEBIT, reason, reference, max_retries)


class LedgerAccount:
    """
    Standalone credit/debit with their own unit of work.

    Usage::

        ledger = LedgerAccount()
        ledger.credit(42, "100.00", LedgerReason.DEPOSIT, reference=txid)
        ledger.debit(42, "20.00", LedgerReason.BET_STAKE)
    """

    def __init__(self, session_factory=None, config: Optional[LedgerConfig] = None):
        self.session_factory = session_factory
        self.config = config or LedgerConfig.from_env()

    def credit(
        self,
        account_id: int,
        amount: Number,
        reason: LedgerReason = LedgerReason.ADMIN_CREDIT,
        reference: Optional[str] = None,
    ) -> Decimal:
        with session_scope(self.session_factory) as db:
            return apply_credit(db, account_id, amount, reason, reference, self.config.max_retries)

    def debit(
        self,
        account_id: int,
        amount: Number,
        reason: LedgerReason,
        reference: Optional[str] = None,
    ) -> Decimal:
        with session_scope(self.session_factory) as db:
            return apply_debit(db, account_id, amount, reason, reference, self.config.max_retries)

    def balance(self, account_id: int) -> Decimal:
        with session_scope(self.session_factory) as db:
            return get_balance(db, account_id)

    def entries(self, account_id: int, limit: int = 100) -> List[LedgerEntry]:
        with session_scope(self.session_factory) as db:
            get_balance(db, account_id)  # NotFound for unknown accounts
            return (
                db.query(LedgerEntry)
                .filter(LedgerEntry.account_id == account_id)
                .order_by(LedgerEntry.id.desc())
                .limit(limit)
                .all()
            )
