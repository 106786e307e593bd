"""
Account lifecycle and administrative balance operations.

Public API:
  create_account(username, opening_balance, session_factory)  → Account
  resolve_account(db, username_or_id)                          → Account
  credit_account(username_or_id, amount, actor, ...)           → AdminCreditResult
  account_statement(account_id, ...)                           → AccountStatement
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Optional, Union

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wagerline.core.errors import NotFound, ValidationError
from wagerline.core.money import ZERO, Number, positive_money, to_money
from wagerline.core.states import LedgerReason
from wagerline.models import Account, LedgerEntry, session_scope
from wagerline.services.ledger import apply_credit, get_balance

logger = logging.getLogger(__name__)


@dataclass
class AdminCreditResult:
    account_id: int
    username: str
    credited_amount: Decimal
    new_balance: Decimal


@dataclass
class AccountStatement:
    account_id: int
    username: str
    balance: Decimal
    entries: List[LedgerEntry] = field(default_factory=list)

    @property
    def entries_total(self) -> Decimal:
        return sum((e.signed_amount for e in self.entries), ZERO)


def create_account(
    username: str,
    opening_balance: Number = 0,
    session_factory=None,
) -> Account:
    """
    Register a wallet for a new user.

    A non-zero opening balance is applied through the ledger so the
    statement still reconciles to the balance.
    """
    username = (username or "").strip()
    if not username:
        raise ValidationError("username is required")
    opening = to_money(opening_balance, "opening_balance")
    if opening < ZERO:
        raise ValidationError("opening_balance cannot be negative")

    with session_scope(session_factory) as db:
        account = Account(username=username, balance=ZERO, version=0)
        db.add(account)
        try:
            db.flush()
        except IntegrityError as exc:
            raise ValidationError(f"username {username!r} already taken") from exc
        if opening > ZERO:
            apply_credit(db, account.id, opening, LedgerReason.OPENING_BALANCE, reference="signup")
            db.refresh(account)
        logger.info("Account %d created for %s (opening %s)", account.id, username, opening)
        return account


def resolve_account(db: Session, username_or_id: Union[int, str]) -> Account:
    """Look an account up by numeric id or username."""
    account: Optional[Account] = None
    if isinstance(username_or_id, int) or str(username_or_id).isdigit():
        account = db.query(Account).filter(Account.id == int(username_or_id)).first()
    if account is None:
        account = db.query(Account).filter(Account.username == str(username_or_id)).first()
    if account is None:
        raise NotFound(f"User {username_or_id!r} not found", user=username_or_id)
    return account


def credit_account(
    username_or_id: Union[int, str],
    amount: Number,
    actor: str,
    session_factory=None,
) -> AdminCreditResult:
    """Administrative credit. The caller must already hold admin privilege."""
    amount = positive_money(amount)
    with session_scope(session_factory) as db:
        account = resolve_account(db, username_or_id)
        new_balance = apply_credit(
            db, account.id, amount, LedgerReason.ADMIN_CREDIT, reference=f"admin:{actor}"
        )
        logger.info("%s credited %s to %s. New balance: %s", actor, amount, account.username, new_balance)
        return AdminCreditResult(
            account_id=account.id,
            username=account.username,
            credited_amount=amount,
            new_balance=new_balance,
        )


def account_statement(account_id: int, limit: Optional[int] = None, session_factory=None) -> AccountStatement:
    with session_scope(session_factory) as db:
        balance = get_balance(db, account_id)
        account = db.query(Account).filter(Account.id == account_id).one()
        q = (
            db.query(LedgerEntry)
            .filter(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.id.asc())
        )
        if limit:
            q = q.limit(limit)
        return AccountStatement(
            account_id=account_id,
            username=account.username,
            balance=balance,
            entries=q.all(),
        )
