"""
Tests for promo code redemption
Run with: pytest tests/test_promotions.py -v
"""

import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from wagerline.core.errors import AlreadyRedeemed, Expired, LimitReached, NotFound, ValidationError
from wagerline.core.states import LedgerReason
from wagerline.models import LedgerEntry, PromoCode, PromoRedemption
from wagerline.services.ledger import get_balance
from wagerline.services.promotions import (
    create_promo_code,
    deactivate_promo_code,
    list_promo_codes,
    normalize_code,
    redeem,
)
from wagerline.utils.timeutil import utcnow


def _balance(session_factory, account_id):
    db = session_factory()
    try:
        return get_balance(db, account_id)
    finally:
        db.close()


def _uses(session_factory, code):
    db = session_factory()
    try:
        return db.query(PromoCode.current_uses).filter(PromoCode.code == code).scalar()
    finally:
        db.close()


class TestRedeem:

    def test_bonus_credited(self, session_factory, make_account):
        acc = make_account(20)
        create_promo_code("WELCOME10", 10, session_factory=session_factory)

        result = redeem(acc, "WELCOME10", session_factory=session_factory)

        assert result.code == "WELCOME10"
        assert result.bonus_credited == Decimal("10.00")
        assert result.new_balance == Decimal("30.00")
        assert _balance(session_factory, acc) == Decimal("30.00")
        assert _uses(session_factory, "WELCOME10") == 1

        db = session_factory()
        entry = db.query(LedgerEntry).filter(LedgerEntry.reason == LedgerReason.PROMO_BONUS).one()
        db.close()
        assert entry.reference == "promo:WELCOME10"

    def test_code_is_normalized(self, session_factory, make_account):
        acc = make_account()
        create_promo_code(" summer ", 5, session_factory=session_factory)

        assert redeem(acc, "Summer  ", session_factory=session_factory).code == "SUMMER"
        assert normalize_code("  abc1 ") == "ABC1"

    def test_second_redemption_rejected(self, session_factory, make_account):
        acc = make_account()
        create_promo_code("ONCE", 5, session_factory=session_factory)
        redeem(acc, "ONCE", session_factory=session_factory)

        with pytest.raises(AlreadyRedeemed):
            redeem(acc, "once", session_factory=session_factory)

        assert _balance(session_factory, acc) == Decimal("5.00")
        assert _uses(session_factory, "ONCE") == 1

    def test_max_uses(self, session_factory, make_account):
        create_promo_code("TWO", 5, max_uses=2, session_factory=session_factory)
        first, second, third = make_account(), make_account(), make_account()
        redeem(first, "TWO", session_factory=session_factory)
        redeem(second, "TWO", session_factory=session_factory)

        with pytest.raises(LimitReached):
            redeem(third, "TWO", session_factory=session_factory)

        assert _balance(session_factory, third) == Decimal("0.00")
        assert _uses(session_factory, "TWO") == 2

        # Used up beats already-redeemed
        with pytest.raises(LimitReached):
            redeem(first, "TWO", session_factory=session_factory)

    def test_expired(self, session_factory, make_account):
        create_promo_code("OLD", 5, expires_at=utcnow() - timedelta(minutes=1), session_factory=session_factory)
        with pytest.raises(Expired):
            redeem(make_account(), "OLD", session_factory=session_factory)
        assert _uses(session_factory, "OLD") == 0

    def test_deactivated(self, session_factory, make_account):
        create_promo_code("PAUSED", 5, session_factory=session_factory)
        assert deactivate_promo_code("paused", session_factory=session_factory) is True
        assert deactivate_promo_code("paused", session_factory=session_factory) is False

        with pytest.raises(Expired):
            redeem(make_account(), "PAUSED", session_factory=session_factory)

    def test_unknown_code(self, session_factory, make_account):
        with pytest.raises(NotFound):
            redeem(make_account(), "NOPE", session_factory=session_factory)

    def test_unknown_account(self, session_factory):
        create_promo_code("GHOST", 5, session_factory=session_factory)
        with pytest.raises(NotFound):
            redeem(999, "GHOST", session_factory=session_factory)
        assert _uses(session_factory, "GHOST") == 0

    def test_parallel_redemptions_respect_limit(self, session_factory, make_account):
        create_promo_code("RUSH", 5, max_uses=3, session_factory=session_factory)
        accounts = [make_account() for _ in range(8)]
        won, refused = [], []

        def worker(acc):
            try:
                redeem(acc, "RUSH", session_factory=session_factory)
                won.append(acc)
            except LimitReached:
                refused.append(acc)

        threads = [threading.Thread(target=worker, args=(acc,)) for acc in accounts]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(won) == 3
        assert len(refused) == 5
        assert _uses(session_factory, "RUSH") == 3

        db = session_factory()
        assert db.query(PromoRedemption).count() == 3
        db.close()
        for acc in refused:
            assert _balance(session_factory, acc) == Decimal("0.00")


class TestCreate:

    def test_duplicate_code(self, session_factory):
        create_promo_code("DUP", 5, session_factory=session_factory)
        with pytest.raises(ValidationError):
            create_promo_code("dup", 10, session_factory=session_factory)

    @pytest.mark.parametrize("code, bonus, max_uses", [
        ("", 5, None),
        ("ZERO", 0, None),
        ("NEG", -5, None),
        ("NOUSES", 5, 0),
    ])
    def test_invalid(self, session_factory, code, bonus, max_uses):
        with pytest.raises(ValidationError):
            create_promo_code(code, bonus, max_uses=max_uses, session_factory=session_factory)

    def test_list_active_only(self, session_factory):
        create_promo_code("LIVE", 5, session_factory=session_factory)
        create_promo_code("GONE", 5, session_factory=session_factory)
        deactivate_promo_code("GONE", session_factory=session_factory)

        assert {p.code for p in list_promo_codes(session_factory=session_factory)} == {"LIVE", "GONE"}
        assert [p.code for p in list_promo_codes(active_only=True, session_factory=session_factory)] == ["LIVE"]
