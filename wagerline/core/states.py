"""Status enums and their legal transitions.

Every state machine in the money path is an ``Enum`` paired with a complete
transition table.  ``_check_exhaustive`` runs at import so adding a member
without deciding its successors fails loudly instead of silently allowing
nothing (or everything).
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet


class TransactionKind(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return not TRANSACTION_TRANSITIONS[self]


class Outcome(str, Enum):
    HOME = "home"
    DRAW = "draw"
    AWAY = "away"


class BetStatus(str, Enum):
    OPEN = "open"
    WON = "won"
    LOST = "lost"

    @property
    def is_terminal(self) -> bool:
        return not BET_TRANSITIONS[self]


class CrashPhase(str, Enum):
    WAITING = "waiting"
    COUNTDOWN = "countdown"
    RUNNING = "running"
    CRASHED = "crashed"

    @property
    def accepts_bets(self) -> bool:
        return self in (CrashPhase.WAITING, CrashPhase.COUNTDOWN)


class CrashBetStatus(str, Enum):
    ACTIVE = "active"
    CASHED_OUT = "cashed_out"
    LOST = "lost"


class LedgerReason(str, Enum):
    """Why a balance moved.  Recorded on every ledger entry."""

    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    WITHDRAW_REFUND = "withdraw_refund"
    BET_STAKE = "bet_stake"
    BET_WIN = "bet_win"
    CRASH_STAKE = "crash_stake"
    CRASH_CASHOUT = "crash_cashout"
    PROMO_BONUS = "promo_bonus"
    ADMIN_CREDIT = "admin_credit"
    OPENING_BALANCE = "opening_balance"


TRANSACTION_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {TransactionStatus.PROCESSING, TransactionStatus.COMPLETED, TransactionStatus.FAILED}
    ),
    TransactionStatus.PROCESSING: frozenset(
        {TransactionStatus.COMPLETED, TransactionStatus.FAILED}
    ),
    TransactionStatus.COMPLETED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
}

BET_TRANSITIONS: Dict[BetStatus, FrozenSet[BetStatus]] = {
    BetStatus.OPEN: frozenset({BetStatus.WON, BetStatus.LOST}),
    BetStatus.WON: frozenset(),
    BetStatus.LOST: frozenset(),
}

CRASH_TRANSITIONS: Dict[CrashPhase, FrozenSet[CrashPhase]] = {
    CrashPhase.WAITING: frozenset({CrashPhase.COUNTDOWN}),
    CrashPhase.COUNTDOWN: frozenset({CrashPhase.RUNNING}),
    CrashPhase.RUNNING: frozenset({CrashPhase.CRASHED}),
    CrashPhase.CRASHED: frozenset({CrashPhase.WAITING}),
}

CRASH_BET_TRANSITIONS: Dict[CrashBetStatus, FrozenSet[CrashBetStatus]] = {
    CrashBetStatus.ACTIVE: frozenset({CrashBetStatus.CASHED_OUT, CrashBetStatus.LOST}),
    CrashBetStatus.CASHED_OUT: frozenset(),
    CrashBetStatus.LOST: frozenset(),
}


def sources_of(table: Dict[Enum, FrozenSet[Enum]], target: Enum) -> FrozenSet[Enum]:
    """All states from which ``target`` is reachable in one step.

    Used to build the ``WHERE status IN (...)`` guard of an atomic update.
    """
    return frozenset(state for state, successors in table.items() if target in successors)


def can_transition(table: Dict[Enum, FrozenSet[Enum]], current: Enum, target: Enum) -> bool:
    return target in table[current]


def _check_exhaustive() -> None:
    for enum_cls, table in (
        (TransactionStatus, TRANSACTION_TRANSITIONS),
        (BetStatus, BET_TRANSITIONS),
        (CrashPhase, CRASH_TRANSITIONS),
        (CrashBetStatus, CRASH_BET_TRANSITIONS),
    ):
        missing = set(enum_cls) - set(table)
        if missing:
            raise RuntimeError(f"{enum_cls.__name__} transitions missing: {sorted(m.value for m in missing)}")


_check_exhaustive()
