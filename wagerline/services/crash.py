"""
Crash game round authority.

Two layers:

  CrashRoundState   pure, synchronous phase machine for one round.  Takes
                    ``now`` as an argument everywhere, so tests drive it
                    with a fake clock.
  CrashEngine       owns the current round, persists every effect and runs
                    the single tick loop.  Cashout requests are stamped with
                    the engine clock on arrival and queued; the tick loop is
                    the only code that resolves them.

Round lifecycle (a round waits for its first bet)::

    waiting ─first bet→ countdown ─countdown_seconds→ running
        ─flight duration→ crashed ─cooldown_seconds→ (next round, waiting)

Order of work on every tick while running:

    1. queued manual cashouts, each at the multiplier of its arrival time
    2. auto-cashouts whose threshold the multiplier has reached, paid at
       the threshold
    3. crash check; bets still active become losses

so a threshold reached on the crash tick itself still pays.  A manual
request is honored only when its multiplier is strictly below the crash
point.  The crash point is fixed when the round opens and is never exposed
before the round has crashed.
"""

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError

from wagerline.core.config import MIN_CRASH_POINT, CrashConfig, LedgerConfig
from wagerline.core.crash_math import flight_duration, generate_crash_point, multiplier_at
from wagerline.core.errors import InsufficientFunds, NotFound, PlatformError, RoundClosed, ValidationError
from wagerline.core.money import Number, floor_multiplier, payout, positive_money
from wagerline.core.states import (
    CRASH_BET_TRANSITIONS,
    CRASH_TRANSITIONS,
    CrashBetStatus,
    CrashPhase,
    LedgerReason,
    can_transition,
    sources_of,
)
from wagerline.models import CrashBet, CrashRound, session_scope
from wagerline.services.ledger import apply_credit, apply_debit, get_balance
from wagerline.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

ONE = Decimal("1.00")


@dataclass(frozen=True)
class CashoutResult:
    round_id: int
    account_id: int
    multiplier: Decimal
    payout: Decimal


@dataclass
class TickOutcome:
    phase: CrashPhase
    multiplier: Decimal = ONE
    started: bool = False
    auto_cashouts: List[Tuple[int, Decimal]] = field(default_factory=list)
    crashed: bool = False
    losers: List[int] = field(default_factory=list)
    finished: bool = False


# ---------------------------------------------------------------------------
# Pure round state
# ---------------------------------------------------------------------------


class CrashRoundState:
    def __init__(self, round_id: int, crash_point: Decimal, config: CrashConfig, now: float):
        self.round_id = round_id
        self.crash_point = crash_point
        self.config = config
        self.duration = flight_duration(crash_point, config.max_flight_seconds, config.seconds_per_multiple)
        self.phase = CrashPhase.WAITING
        self.phase_started_at = now
        self.stakes: Dict[int, Decimal] = {}
        self.auto_cashout: Dict[int, Decimal] = {}
        self.cashouts: Dict[int, Decimal] = {}

    def _move(self, target: CrashPhase, at: float) -> None:
        if not can_transition(CRASH_TRANSITIONS, self.phase, target):
            raise RoundClosed(f"Round {self.round_id} cannot go from {self.phase.value} to {target.value}")
        self.phase = target
        self.phase_started_at = at

    @property
    def active_accounts(self) -> List[int]:
        return [a for a in self.stakes if a not in self.cashouts]

    def multiplier(self, now: float) -> Decimal:
        if self.phase is CrashPhase.RUNNING:
            return multiplier_at(now - self.phase_started_at, self.crash_point, self.duration)
        if self.phase is CrashPhase.CRASHED:
            return self.crash_point
        return ONE

    def ensure_accepting(self, account_id: int) -> None:
        if not self.phase.accepts_bets:
            raise RoundClosed(f"Round {self.round_id} is {self.phase.value}; bets are closed")
        if account_id in self.stakes:
            raise ValidationError(f"Account {account_id} already has a bet in round {self.round_id}")

    def add_bet(self, account_id: int, stake: Decimal, auto_cashout: Optional[Decimal], now: float) -> None:
        self.ensure_accepting(account_id)
        self.stakes[account_id] = stake
        if auto_cashout is not None:
            self.auto_cashout[account_id] = auto_cashout
        if self.phase is CrashPhase.WAITING:
            self._move(CrashPhase.COUNTDOWN, now)

    def cashout(self, account_id: int, requested_at: float) -> Decimal:
        """Multiplier the request earns, or RoundClosed when it came too late."""
        if account_id not in self.stakes:
            raise NotFound(f"Account {account_id} has no bet in round {self.round_id}")
        if account_id in self.cashouts:
            return self.cashouts[account_id]
        if self.phase is not CrashPhase.RUNNING or requested_at < self.phase_started_at:
            raise RoundClosed(f"Round {self.round_id} is not running")
        m = multiplier_at(requested_at - self.phase_started_at, self.crash_point, self.duration)
        if m >= self.crash_point:
            raise RoundClosed(f"Round {self.round_id} crashed before the cashout")
        self.cashouts[account_id] = m
        return m

    def tick(self, now: float) -> TickOutcome:
        out = TickOutcome(phase=self.phase)

        if self.phase is CrashPhase.COUNTDOWN and now - self.phase_started_at >= self.config.countdown_seconds:
            self._move(CrashPhase.RUNNING, self.phase_started_at + self.config.countdown_seconds)
            out.started = True

        if self.phase is CrashPhase.RUNNING:
            m = self.multiplier(now)
            out.multiplier = m
            for account_id in self.active_accounts:
                threshold = self.auto_cashout.get(account_id)
                if threshold is not None and threshold <= m:
                    self.cashouts[account_id] = threshold
                    out.auto_cashouts.append((account_id, threshold))
            if now - self.phase_started_at >= self.duration:
                out.losers = self.active_accounts
                self._move(CrashPhase.CRASHED, self.phase_started_at + self.duration)
                out.crashed = True
        elif self.phase is CrashPhase.CRASHED:
            out.multiplier = self.crash_point
            out.finished = now - self.phase_started_at >= self.config.cooldown_seconds

        out.phase = self.phase
        return out


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class CrashEngine:
    """
    Usage (inside a running event loop)::

        engine = CrashEngine()
        engine.start()
        engine.place_bet(account_id, 10, auto_cashout="2.00")
        result = await engine.request_cashout(account_id)

    Tests drive ``step(now)`` directly with a fake clock instead of
    ``start()``.

    Round state lives on the event loop thread, so the tick loop and the
    crash routes do their SQLAlchemy writes there and a slow database
    stalls the loop.
    """

    def __init__(
        self,
        session_factory=None,
        config: Optional[CrashConfig] = None,
        ledger_config: Optional[LedgerConfig] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.session_factory = session_factory
        self.config = config or CrashConfig.from_env()
        self.max_retries = (ledger_config or LedgerConfig.from_env()).max_retries
        self.rng = rng
        self.clock = clock or time.monotonic
        self._state: Optional[CrashRoundState] = None
        self._requests: asyncio.Queue = asyncio.Queue()
        self._results: Dict[Tuple[int, int], CashoutResult] = {}
        self._task: Optional[asyncio.Task] = None
        self._stopping = False

    # -- round bookkeeping --------------------------------------------------

    @property
    def current_round(self) -> Optional[CrashRoundState]:
        return self._state

    def _open_round(self, now: float) -> CrashRoundState:
        crash_point = generate_crash_point(self.config.house_edge, self.rng)
        with session_scope(self.session_factory) as db:
            row = CrashRound(
                crash_point=crash_point,
                house_edge=self.config.house_edge,
                phase=CrashPhase.WAITING,
            )
            db.add(row)
            db.flush()
            round_id = row.id
        self._state = CrashRoundState(round_id, crash_point, self.config, now)
        logger.info("Crash round %d opened", round_id)
        return self._state

    def _persist_phase(self, round_id: int, phase: CrashPhase, **fields) -> None:
        with session_scope(self.session_factory) as db:
            values = {CrashRound.phase: phase}
            values.update({getattr(CrashRound, k): v for k, v in fields.items()})
            db.query(CrashRound).filter(CrashRound.id == round_id).update(values, synchronize_session=False)

    def _persist_crash(self, state: CrashRoundState) -> int:
        with session_scope(self.session_factory) as db:
            now = utcnow()
            db.query(CrashRound).filter(CrashRound.id == state.round_id).update(
                {CrashRound.phase: CrashPhase.CRASHED, CrashRound.crashed_at: now},
                synchronize_session=False,
            )
            lost = (
                db.query(CrashBet)
                .filter(
                    CrashBet.round_id == state.round_id,
                    CrashBet.status.in_(sources_of(CRASH_BET_TRANSITIONS, CrashBetStatus.LOST)),
                )
                .update(
                    {CrashBet.status: CrashBetStatus.LOST, CrashBet.payout: 0, CrashBet.resolved_at: now},
                    synchronize_session=False,
                )
            )
        logger.info("Crash round %d crashed at %sx (%d bet(s) lost)", state.round_id, state.crash_point, lost)
        return lost

    def _settle_cashout(self, state: CrashRoundState, account_id: int, multiplier: Decimal) -> CashoutResult:
        key = (state.round_id, account_id)
        if key in self._results:
            return self._results[key]

        stake = state.stakes[account_id]
        amount = payout(stake, multiplier)
        try:
            with session_scope(self.session_factory) as db:
                matched = (
                    db.query(CrashBet)
                    .filter(
                        CrashBet.round_id == state.round_id,
                        CrashBet.account_id == account_id,
                        CrashBet.status.in_(sources_of(CRASH_BET_TRANSITIONS, CrashBetStatus.CASHED_OUT)),
                    )
                    .update(
                        {
                            CrashBet.status: CrashBetStatus.CASHED_OUT,
                            CrashBet.cashout_multiplier: multiplier,
                            CrashBet.payout: amount,
                            CrashBet.resolved_at: utcnow(),
                        },
                        synchronize_session=False,
                    )
                )
                if matched == 1:
                    apply_credit(
                        db, account_id, amount, LedgerReason.CRASH_CASHOUT,
                        reference=f"crash:{state.round_id}", max_retries=self.max_retries,
                    )
        except Exception:
            # Not paid, so the bet is still live in the round
            state.cashouts.pop(account_id, None)
            raise

        result = CashoutResult(state.round_id, account_id, multiplier, amount)
        self._results[key] = result
        logger.info(
            "Crash round %d: account %d cashed out at %sx for %s",
            state.round_id, account_id, multiplier, amount,
        )
        return result

    # -- player operations --------------------------------------------------

    def place_bet(self, account_id: int, stake: Number, auto_cashout: Optional[Number] = None) -> CrashBet:
        """Debit the stake and join the current round (waiting or countdown only)."""
        stake = positive_money(stake, "stake")
        threshold = None
        if auto_cashout is not None:
            threshold = floor_multiplier(auto_cashout)
            if threshold < MIN_CRASH_POINT:
                raise ValidationError(f"auto_cashout must be at least {MIN_CRASH_POINT}", auto_cashout=threshold)

        now = self.clock()
        state = self._state or self._open_round(now)
        state.ensure_accepting(account_id)

        with session_scope(self.session_factory) as db:
            balance = get_balance(db, account_id)
            if stake > balance:
                raise InsufficientFunds(account_id, stake, balance)
            apply_debit(
                db, account_id, stake, LedgerReason.CRASH_STAKE,
                reference=f"crash:{state.round_id}", max_retries=self.max_retries,
            )
            bet = CrashBet(
                round_id=state.round_id,
                account_id=account_id,
                stake=stake,
                auto_cashout=threshold,
                status=CrashBetStatus.ACTIVE,
            )
            db.add(bet)
            try:
                db.flush()
            except IntegrityError as exc:
                raise ValidationError(
                    f"Account {account_id} already has a bet in round {state.round_id}"
                ) from exc

        was_waiting = state.phase is CrashPhase.WAITING
        state.add_bet(account_id, stake, threshold, now)
        if was_waiting:
            self._persist_phase(state.round_id, CrashPhase.COUNTDOWN)
        logger.info(
            "Crash round %d: account %d bet %s (auto %s)",
            state.round_id, account_id, stake, threshold or "-",
        )
        return bet

    async def request_cashout(self, account_id: int) -> CashoutResult:
        """
        Queue a cashout stamped with the current clock and wait for the tick
        loop to resolve it.  A repeat request returns the recorded result.
        """
        state = self._state
        if state is None:
            raise RoundClosed("No round in progress")
        if (state.round_id, account_id) in self._results:
            return self._results[(state.round_id, account_id)]
        if account_id not in state.stakes:
            raise NotFound(f"Account {account_id} has no bet in round {state.round_id}")

        future = asyncio.get_running_loop().create_future()
        self._requests.put_nowait((state.round_id, account_id, self.clock(), future))
        return await future

    def _drain_requests(self, state: CrashRoundState) -> None:
        while True:
            try:
                round_id, account_id, requested_at, future = self._requests.get_nowait()
            except asyncio.QueueEmpty:
                return
            if future.done():
                continue
            try:
                if round_id != state.round_id:
                    raise RoundClosed(f"Round {round_id} is over")
                multiplier = state.cashout(account_id, requested_at)
                future.set_result(self._settle_cashout(state, account_id, multiplier))
            except PlatformError as exc:
                future.set_exception(exc)
            except Exception as exc:
                logger.error("Cashout for account %d failed: %s", account_id, exc, exc_info=True)
                future.set_exception(exc)

    # -- tick loop ----------------------------------------------------------

    def step(self, now: Optional[float] = None) -> TickOutcome:
        """Advance the authoritative clock by one tick."""
        now = self.clock() if now is None else now
        state = self._state or self._open_round(now)

        self._drain_requests(state)
        out = state.tick(now)

        if out.started:
            self._persist_phase(state.round_id, CrashPhase.RUNNING, started_at=utcnow())
            logger.info("Crash round %d running with %d bet(s)", state.round_id, len(state.stakes))
        for account_id, threshold in out.auto_cashouts:
            try:
                self._settle_cashout(state, account_id, threshold)
            except Exception as exc:
                logger.error(
                    "Auto-cashout for account %d in round %d failed: %s",
                    account_id, state.round_id, exc, exc_info=True,
                )
        if out.crashed:
            self._persist_crash(state)
        if out.finished:
            self._results = {k: v for k, v in self._results.items() if k[0] != state.round_id}
            self._state = None
        return out

    def void_interrupted_rounds(self) -> int:
        """
        Close rounds a previous process left unfinished.  Active stakes are
        returned as a cashout at 1.00x.
        """
        voided = 0
        with session_scope(self.session_factory) as db:
            q = db.query(CrashRound).filter(CrashRound.phase != CrashPhase.CRASHED)
            if self._state is not None:
                q = q.filter(CrashRound.id != self._state.round_id)
            rounds = q.all()
            for rnd in rounds:
                bets = (
                    db.query(CrashBet)
                    .filter(CrashBet.round_id == rnd.id, CrashBet.status == CrashBetStatus.ACTIVE)
                    .all()
                )
                for bet in bets:
                    matched = (
                        db.query(CrashBet)
                        .filter(CrashBet.id == bet.id, CrashBet.status == CrashBetStatus.ACTIVE)
                        .update(
                            {
                                CrashBet.status: CrashBetStatus.CASHED_OUT,
                                CrashBet.cashout_multiplier: ONE,
                                CrashBet.payout: bet.stake,
                                CrashBet.resolved_at: utcnow(),
                            },
                            synchronize_session=False,
                        )
                    )
                    if matched:
                        apply_credit(
                            db, bet.account_id, bet.stake, LedgerReason.CRASH_CASHOUT,
                            reference=f"crash:{rnd.id}:void", max_retries=self.max_retries,
                        )
                rnd.phase = CrashPhase.CRASHED
                rnd.crashed_at = utcnow()
                voided += 1
        if voided:
            logger.warning("Voided %d interrupted crash round(s)", voided)
        return voided

    async def run(self) -> None:
        logger.info("Crash engine started (tick %.3fs, edge %.2f%%)", self.config.tick_seconds, self.config.house_edge * 100)
        self.void_interrupted_rounds()
        while not self._stopping:
            try:
                self.step()
            except Exception as exc:
                logger.error("Crash engine tick failed: %s", exc, exc_info=True)
            await asyncio.sleep(self.config.tick_seconds)
        logger.info("Crash engine stopped")

    def start(self) -> asyncio.Task:
        self._stopping = False
        self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        if self._task is not None:
            await self._task
            self._task = None

    # -- read side ----------------------------------------------------------

    def snapshot(self, now: Optional[float] = None) -> Dict:
        """Public round state; the crash point appears only once crashed."""
        now = self.clock() if now is None else now
        state = self._state
        if state is None:
            return {"round_id": None, "phase": CrashPhase.WAITING.value, "multiplier": str(ONE), "bets": 0}
        snap = {
            "round_id": state.round_id,
            "phase": state.phase.value,
            "multiplier": str(state.multiplier(now)),
            "bets": len(state.stakes),
            "cashed_out": len(state.cashouts),
        }
        if state.phase is CrashPhase.COUNTDOWN:
            snap["countdown_remaining"] = round(
                max(0.0, self.config.countdown_seconds - (now - state.phase_started_at)), 2
            )
        if state.phase is CrashPhase.CRASHED:
            snap["crash_point"] = str(state.crash_point)
        return snap

    def recent_rounds(self, limit: int = 20) -> List[Dict]:
        with session_scope(self.session_factory) as db:
            rows = (
                db.query(CrashRound)
                .order_by(CrashRound.id.desc())
                .limit(limit)
                .all()
            )
            return [
                {
                    "round_id": r.id,
                    "phase": CrashPhase(r.phase).value,
                    "crash_point": str(r.crash_point) if r.phase == CrashPhase.CRASHED else None,
                    "crashed_at": r.crashed_at.isoformat() if r.crashed_at else None,
                }
                for r in rows
            ]


_engine: Optional[CrashEngine] = None
_engine_lock = threading.Lock()


def get_crash_engine() -> CrashEngine:
    """Process-wide engine used by the API."""
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = CrashEngine()
        return _engine
