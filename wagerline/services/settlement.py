"""
Match settlement.

    settle(match_id, winning_outcome)
      1. validate the outcome (home, draw or away; offered odds do not matter)
      2. flip the latch:  UPDATE matches SET settled=1, winning_outcome=?
                          WHERE id=? AND settled=0
         0 rows → AlreadySettled (or NotFound)
      3. load open bets, group by account
      4. resolve each account's bets on one worker; accounts run in parallel
         per bet, one unit of work:
           UPDATE bets SET status=won|lost WHERE id=? AND status='open'
           + credit potential_win when won and the UPDATE matched
      5. a failing bet is logged and skipped; the rest carry on

Because the latch commits before any bet is looked at, a duplicate
settlement request is rejected outright and can never re-pay.  Bets that
failed in step 4 stay open and are picked up by ``resume()`` (scheduled).
"""

import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from wagerline.core.config import LedgerConfig, SettlementConfig
from wagerline.core.errors import AlreadySettled, InvalidOutcome, NotFound, ValidationError
from wagerline.core.money import ZERO
from wagerline.core.states import BET_TRANSITIONS, BetStatus, LedgerReason, Outcome, sources_of
from wagerline.models import Bet, Match, session_scope
from wagerline.services.ledger import apply_credit
from wagerline.utils.timeutil import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SettlementSummary:
    match_id: int
    winning_outcome: Outcome
    bets_processed: int = 0
    winners: int = 0
    losers: int = 0
    total_paid_out: Decimal = ZERO
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "SettlementSummary") -> None:
        self.bets_processed += other.bets_processed
        self.winners += other.winners
        self.losers += other.losers
        self.total_paid_out += other.total_paid_out
        self.errors.extend(other.errors)

    def to_dict(self) -> Dict:
        return {
            "match_id": self.match_id,
            "winning_outcome": self.winning_outcome.value,
            "bets_processed": self.bets_processed,
            "winners": self.winners,
            "losers": self.losers,
            "total_paid_out": str(self.total_paid_out),
            "errors": list(self.errors),
        }


class MatchSettlementEngine:
    """
    Usage::

        engine = MatchSettlementEngine()
        summary = engine.settle(match_id, "home", home_score=2, away_score=1, actor="user1")
    """

    def __init__(
        self,
        session_factory=None,
        config: Optional[SettlementConfig] = None,
        ledger_config: Optional[LedgerConfig] = None,
    ):
        self.session_factory = session_factory
        self.config = config or SettlementConfig.from_env()
        self.max_retries = (ledger_config or LedgerConfig.from_env()).max_retries

    def settle(
        self,
        match_id: int,
        winning_outcome,
        home_score: Optional[int] = None,
        away_score: Optional[int] = None,
        actor: Optional[str] = None,
    ) -> SettlementSummary:
        for score in (home_score, away_score):
            if score is not None and score < 0:
                raise ValidationError("Scores cannot be negative")

        with session_scope(self.session_factory) as db:
            match = db.query(Match).filter(Match.id == match_id).first()
            if match is None:
                raise NotFound(f"Match {match_id} not found", match_id=match_id)
            if match.settled:
                raise AlreadySettled(f"Match {match_id} already settled", match_id=match_id)
            # Any result is settleable, including one the match offered no odds on
            try:
                outcome = Outcome(winning_outcome)
            except ValueError:
                raise InvalidOutcome(f"Unknown outcome {winning_outcome!r}", match_id=match_id)

            flipped = (
                db.query(Match)
                .filter(Match.id == match_id, Match.settled == False)  # noqa: E712
                .update(
                    {
                        Match.settled: True,
                        Match.winning_outcome: outcome,
                        Match.home_score: home_score,
                        Match.away_score: away_score,
                        Match.settled_at: utcnow(),
                        Match.settled_by: actor,
                    },
                    synchronize_session=False,
                )
            )
            if flipped == 0:
                raise AlreadySettled(f"Match {match_id} already settled", match_id=match_id)

        logger.info("Match %d settled as %s by %s", match_id, outcome.value, actor or "system")
        summary = self._resolve_open_bets(match_id, outcome)
        logger.info("Settlement of match %d done: %s", match_id, summary.to_dict())
        return summary

    def resume(self, match_id: int) -> SettlementSummary:
        """Resolve bets left open on an already-settled match."""
        with session_scope(self.session_factory) as db:
            match = db.query(Match).filter(Match.id == match_id).first()
            if match is None:
                raise NotFound(f"Match {match_id} not found", match_id=match_id)
            if not match.settled:
                raise ValidationError(f"Match {match_id} is not settled yet", match_id=match_id)
            outcome = Outcome(match.winning_outcome)

        summary = self._resolve_open_bets(match_id, outcome)
        if summary.bets_processed or summary.errors:
            logger.info("Resumed settlement of match %d: %s", match_id, summary.to_dict())
        return summary

    def resume_all(self) -> Dict:
        """Scheduler job: finish every settled match that still has open bets."""
        with session_scope(self.session_factory) as db:
            match_ids = [
                mid for (mid,) in (
                    db.query(Match.id)
                    .join(Bet, Bet.match_id == Match.id)
                    .filter(Match.settled == True, Bet.status == BetStatus.OPEN)  # noqa: E712
                    .distinct()
                )
            ]

        resumed = 0
        errors: List[str] = []
        for match_id in match_ids:
            try:
                summary = self.resume(match_id)
                resumed += summary.bets_processed
                errors.extend(summary.errors)
            except Exception as exc:
                errors.append(f"Match {match_id}: {exc}")
                logger.error("Resume failed for match %d: %s", match_id, exc, exc_info=True)

        return {"matches": len(match_ids), "bets_resolved": resumed, "errors": errors}

    # ------------------------------------------------------------------
    # Bet resolution
    # ------------------------------------------------------------------

    def _resolve_open_bets(self, match_id: int, outcome: Outcome) -> SettlementSummary:
        with session_scope(self.session_factory) as db:
            rows: List[Tuple[int, int]] = (
                db.query(Bet.id, Bet.account_id)
                .filter(Bet.match_id == match_id, Bet.status == BetStatus.OPEN)
                .order_by(Bet.id.asc())
                .all()
            )

        by_account: Dict[int, List[int]] = defaultdict(list)
        for bet_id, account_id in rows:
            by_account[account_id].append(bet_id)

        summary = SettlementSummary(match_id=match_id, winning_outcome=outcome)
        if not by_account:
            return summary

        workers = max(1, min(self.config.max_workers, len(by_account)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="settle") as pool:
            futures = {
                pool.submit(self._resolve_account_bets, match_id, bet_ids, outcome): account_id
                for account_id, bet_ids in by_account.items()
            }
            for future in as_completed(futures):
                summary.merge(future.result())
        return summary

    def _resolve_account_bets(self, match_id: int, bet_ids: List[int], outcome: Outcome) -> SettlementSummary:
        partial = SettlementSummary(match_id=match_id, winning_outcome=outcome)
        for bet_id in bet_ids:
            try:
                result = self._resolve_bet(bet_id, outcome)
            except Exception as exc:
                partial.errors.append(f"Bet {bet_id}: {exc}")
                logger.error("Error settling bet %d: %s", bet_id, exc, exc_info=True)
                continue
            if result is None:
                continue
            status, paid = result
            partial.bets_processed += 1
            if status is BetStatus.WON:
                partial.winners += 1
                partial.total_paid_out += paid
            else:
                partial.losers += 1
        return partial

    def _resolve_bet(self, bet_id: int, outcome: Outcome) -> Optional[Tuple[BetStatus, Decimal]]:
        """
        Flip one bet and credit it when won, in one commit.

        Returns None when the bet was already resolved by someone else.
        """
        with session_scope(self.session_factory) as db:
            bet = db.query(Bet).filter(Bet.id == bet_id).one()
            target = BetStatus.WON if Outcome(bet.outcome) == outcome else BetStatus.LOST

            matched = (
                db.query(Bet)
                .filter(Bet.id == bet_id, Bet.status.in_(sources_of(BET_TRANSITIONS, target)))
                .update(
                    {Bet.status: target, Bet.settled_at: utcnow()},
                    synchronize_session=False,
                )
            )
            if matched == 0:
                logger.info("Bet %d already resolved, skipping", bet_id)
                return None

            paid = ZERO
            if target is BetStatus.WON:
                apply_credit(
                    db, bet.account_id, bet.potential_win, LedgerReason.BET_WIN,
                    reference=f"bet:{bet_id}", max_retries=self.max_retries,
                )
                paid = bet.potential_win
            logger.info("%s: bet %d (account %d) | paid %s", target.value.upper(), bet_id, bet.account_id, paid)
            return target, paid

