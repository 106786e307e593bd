"""
Fixed-odds bet book.

Public API:
  BetBook.create_match(home_team, away_team, odds, match_date) → Match
  BetBook.place_bet(account_id, match_id, outcome, stake)      → Bet
  BetBook.list_open_matches()                                  → List[Match]
  BetBook.list_bets(account_id, status=None)                   → List[Bet]

Placement debits the stake and inserts the bet in one unit of work: if the
bet row cannot be written the debit is rolled back with it.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from wagerline.core.config import LedgerConfig, SettlementConfig
from wagerline.core.errors import InsufficientFunds, MatchClosed, NotFound, ValidationError
from wagerline.core.money import Number, floor_multiplier, payout, positive_money
from wagerline.core.states import BetStatus, LedgerReason, Outcome
from wagerline.models import Bet, Match, session_scope
from wagerline.services.ledger import apply_debit, get_balance
from wagerline.utils.timeutil import as_naive_utc, utcnow

logger = logging.getLogger(__name__)

MIN_ODDS = Decimal("1.00")


class BetBook:
    def __init__(
        self,
        session_factory=None,
        config: Optional[SettlementConfig] = None,
        ledger_config: Optional[LedgerConfig] = None,
    ):
        self.session_factory = session_factory
        self.config = config or SettlementConfig.from_env()
        self.max_retries = (ledger_config or LedgerConfig.from_env()).max_retries

    # ------------------------------------------------------------------
    # Matches
    # ------------------------------------------------------------------

    def create_match(
        self,
        home_team: str,
        away_team: str,
        odds: Dict[str, Number],
        match_date: datetime,
    ) -> Match:
        """
        Register a fixture.  ``odds`` maps outcome → decimal odds; ``draw``
        may be omitted for markets without a draw.
        """
        home_team = (home_team or "").strip()
        away_team = (away_team or "").strip()
        if not home_team or not away_team:
            raise ValidationError("home_team and away_team are required")
        if home_team.lower() == away_team.lower():
            raise ValidationError("A team cannot play itself")

        parsed: Dict[Outcome, Decimal] = {}
        for key, value in (odds or {}).items():
            if value is None:
                continue
            try:
                outcome = Outcome(key)
            except ValueError:
                raise ValidationError(f"Unknown outcome {key!r} in odds")
            price = floor_multiplier(value)
            if price <= MIN_ODDS:
                raise ValidationError(f"Odds for {outcome.value} must be greater than 1.00", odds=price)
            parsed[outcome] = price
        if Outcome.HOME not in parsed or Outcome.AWAY not in parsed:
            raise ValidationError("Odds for home and away are required")

        with session_scope(self.session_factory) as db:
            match = Match(
                home_team=home_team,
                away_team=away_team,
                match_date=as_naive_utc(match_date),
                odds_home=parsed[Outcome.HOME],
                odds_draw=parsed.get(Outcome.DRAW),
                odds_away=parsed[Outcome.AWAY],
                settled=False,
            )
            db.add(match)
            db.flush()
            logger.info(
                "Match %d created: %s vs %s on %s (%s)",
                match.id, home_team, away_team, match.match_date,
                {k.value: str(v) for k, v in parsed.items()},
            )
            return match

    def closes_at(self, match: Match) -> datetime:
        """Instant after which no new bets are accepted."""
        return match.match_date - timedelta(minutes=self.config.bet_cutoff_minutes)

    def is_open(self, match: Match, now: Optional[datetime] = None) -> bool:
        return not match.settled and (now or utcnow()) < self.closes_at(match)

    def get_match(self, match_id: int) -> Match:
        with session_scope(self.session_factory) as db:
            match = db.query(Match).filter(Match.id == match_id).first()
            if match is None:
                raise NotFound(f"Match {match_id} not found", match_id=match_id)
            return match

    def list_open_matches(self) -> List[Match]:
        now = utcnow()
        with session_scope(self.session_factory) as db:
            candidates = (
                db.query(Match)
                .filter(Match.settled == False)  # noqa: E712
                .order_by(Match.match_date.asc())
                .all()
            )
            return [m for m in candidates if self.is_open(m, now)]

    # ------------------------------------------------------------------
    # Bets
    # ------------------------------------------------------------------

    def _record_bet(self, db: Session, bet: Bet) -> Bet:
        db.add(bet)
        db.flush()
        return bet

    def place_bet(self, account_id: int, match_id: int, outcome, stake: Number) -> Bet:
        """
        Validate and record a bet at the match's current odds.

        Raises ValidationError, NotFound, MatchClosed, InvalidOutcome or
        InsufficientFunds; none of them leaves a balance change behind.
        """
        stake = positive_money(stake, "stake")

        with session_scope(self.session_factory) as db:
            # Row lock on databases that support it; settlement's latch
            # update waits for this transaction.
            match = (
                db.query(Match)
                .filter(Match.id == match_id)
                .with_for_update()
                .first()
            )
            if match is None:
                raise NotFound(f"Match {match_id} not found", match_id=match_id)
            if match.settled:
                raise MatchClosed(f"Match {match_id} is already settled", match_id=match_id)
            if not self.is_open(match):
                raise MatchClosed(
                    f"Betting on match {match_id} closed at {self.closes_at(match)}",
                    match_id=match_id,
                )

            odds = match.odds_for(outcome)
            balance = get_balance(db, account_id)
            if stake > balance:
                raise InsufficientFunds(account_id, stake, balance)

            apply_debit(
                db, account_id, stake, LedgerReason.BET_STAKE,
                reference=f"match:{match_id}", max_retries=self.max_retries,
            )
            bet = self._record_bet(db, Bet(
                account_id=account_id,
                match_id=match_id,
                outcome=Outcome(outcome),
                stake=stake,
                odds=odds,
                potential_win=payout(stake, odds),
                status=BetStatus.OPEN,
            ))
            logger.info(
                "Bet %d placed: account %d, match %d, %s @ %s, stake %s, potential %s",
                bet.id, account_id, match_id, bet.outcome.value, odds, stake, bet.potential_win,
            )
            return bet

    def list_bets(self, account_id: int, status: Optional[BetStatus] = None, limit: int = 100) -> List[Bet]:
        with session_scope(self.session_factory) as db:
            get_balance(db, account_id)
            q = db.query(Bet).filter(Bet.account_id == account_id)
            if status is not None:
                q = q.filter(Bet.status == BetStatus(status))
            return q.order_by(Bet.placed_at.desc(), Bet.id.desc()).limit(limit).all()

    def get_bet(self, bet_id: int) -> Bet:
        with session_scope(self.session_factory) as db:
            bet = db.query(Bet).filter(Bet.id == bet_id).first()
            if bet is None:
                raise NotFound(f"Bet {bet_id} not found", bet_id=bet_id)
            return bet
