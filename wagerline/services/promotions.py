"""
Promo codes.

redeem(account_id, code) runs as one unit of work:

    1. look the code up (strip + upper-case)       → NotFound
    2. inactive or past expires_at                 → Expired
    3. current_uses already at max_uses            → LimitReached
    4. redemption row for (code, account) exists   → AlreadyRedeemed
    5. UPDATE promo_codes SET current_uses = current_uses + 1
       WHERE id=? AND (max_uses IS NULL OR current_uses < max_uses)
       0 rows (lost a race for the last use)       → LimitReached
    6. insert the redemption row (UNIQUE(code_id, account_id))
    7. credit bonus_amount

Any failure rolls back all three writes, so a use is never consumed
without the bonus landing and the bonus never lands twice.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from wagerline.core.config import LedgerConfig
from wagerline.core.errors import AlreadyRedeemed, Expired, LimitReached, NotFound, ValidationError
from wagerline.core.money import Number, positive_money
from wagerline.core.states import LedgerReason
from wagerline.models import PromoCode, PromoRedemption, session_scope
from wagerline.services.ledger import apply_credit, get_balance
from wagerline.utils.timeutil import as_naive_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class RedemptionResult:
    code: str
    account_id: int
    bonus_credited: Decimal
    new_balance: Decimal


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def create_promo_code(
    code: str,
    bonus_amount: Number,
    max_uses: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    session_factory=None,
) -> PromoCode:
    code = normalize_code(code)
    if not code:
        raise ValidationError("code is required")
    bonus = positive_money(bonus_amount, "bonus_amount")
    if max_uses is not None and max_uses < 1:
        raise ValidationError("max_uses must be at least 1", max_uses=max_uses)

    with session_scope(session_factory) as db:
        promo = PromoCode(
            code=code,
            bonus_amount=bonus,
            max_uses=max_uses,
            current_uses=0,
            expires_at=as_naive_utc(expires_at) if expires_at else None,
            is_active=True,
        )
        db.add(promo)
        try:
            db.flush()
        except IntegrityError as exc:
            raise ValidationError(f"Promo code {code} already exists") from exc
        logger.info("Promo code %s created: bonus %s, max uses %s", code, bonus, max_uses or "unlimited")
        return promo


def deactivate_promo_code(code: str, session_factory=None) -> bool:
    with session_scope(session_factory) as db:
        matched = (
            db.query(PromoCode)
            .filter(PromoCode.code == normalize_code(code), PromoCode.is_active == True)  # noqa: E712
            .update({PromoCode.is_active: False}, synchronize_session=False)
        )
    return bool(matched)


def redeem(
    account_id: int,
    code: str,
    session_factory=None,
    max_retries: int = LedgerConfig.max_retries,
) -> RedemptionResult:
    normalized = normalize_code(code)
    if not normalized:
        raise ValidationError("code is required")

    with session_scope(session_factory) as db:
        get_balance(db, account_id)

        promo = db.query(PromoCode).filter(PromoCode.code == normalized).first()
        if promo is None:
            raise NotFound(f"Promo code {normalized} not found", code=normalized)
        if not promo.is_active:
            raise Expired(f"Promo code {normalized} is no longer active", code=normalized)
        if promo.expires_at is not None and utcnow() > promo.expires_at:
            raise Expired(f"Promo code {normalized} expired at {promo.expires_at}", code=normalized)
        if promo.max_uses is not None and promo.current_uses >= promo.max_uses:
            raise LimitReached(f"Promo code {normalized} has no uses left", code=normalized)

        already = (
            db.query(PromoRedemption.id)
            .filter(PromoRedemption.code_id == promo.id, PromoRedemption.account_id == account_id)
            .first()
        )
        if already is not None:
            raise AlreadyRedeemed(f"Account {account_id} already redeemed {normalized}", code=normalized)

        claimed = (
            db.query(PromoCode)
            .filter(
                PromoCode.id == promo.id,
                or_(PromoCode.max_uses.is_(None), PromoCode.current_uses < PromoCode.max_uses),
            )
            .update({PromoCode.current_uses: PromoCode.current_uses + 1}, synchronize_session=False)
        )
        if claimed == 0:
            raise LimitReached(f"Promo code {normalized} has no uses left", code=normalized)

        db.add(PromoRedemption(code_id=promo.id, account_id=account_id, bonus_amount=promo.bonus_amount))
        try:
            db.flush()
        except IntegrityError as exc:
            raise AlreadyRedeemed(f"Account {account_id} already redeemed {normalized}", code=normalized) from exc

        new_balance = apply_credit(
            db, account_id, promo.bonus_amount, LedgerReason.PROMO_BONUS,
            reference=f"promo:{normalized}", max_retries=max_retries,
        )
        logger.info("Account %d redeemed %s for %s", account_id, normalized, promo.bonus_amount)
        return RedemptionResult(
            code=normalized,
            account_id=account_id,
            bonus_credited=promo.bonus_amount,
            new_balance=new_balance,
        )


def list_promo_codes(active_only: bool = False, session_factory=None) -> List[PromoCode]:
    with session_scope(session_factory) as db:
        q = db.query(PromoCode)
        if active_only:
            q = q.filter(PromoCode.is_active == True)  # noqa: E712
        return q.order_by(PromoCode.created_at.desc()).all()
