"""Platform configuration: every tunable money-path constant in one place.

Nowhere else in the codebase should deposit bounds, crash-game timing or
settlement concurrency be hard-coded.

Architecture
------------
Each concern gets a frozen dataclass with production defaults and a
``from_env()`` named constructor that reads overrides from the process
environment (``.env`` is loaded by :mod:`wagerline.models` at import).
Tests build instances directly, or override a single field via
:func:`dataclasses.replace`::

    from dataclasses import replace
    from wagerline.core.config import WalletLimits

    limits = replace(WalletLimits(), max_pending_transactions=1)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Final


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name, default))


def _env_float(name: str, default: str) -> float:
    return float(os.getenv(name, default))


def _env_int(name: str, default: str) -> int:
    return int(os.getenv(name, default))


#: Lowest crash point any round can produce.  Every round pays at least this
#: window, even when the sampled value would land below it.
MIN_CRASH_POINT: Final[Decimal] = Decimal("1.01")


@dataclass(frozen=True)
class WalletLimits:
    """Deposit / withdrawal bounds.

    Attributes:
        min_deposit / max_deposit: Inclusive bounds for a single deposit.
        min_withdraw / max_withdraw: Inclusive bounds for a single withdrawal.
        daily_withdraw_limit: Cap on the sum of withdrawals (pending or
            completed) created in the trailing 24 hours.
        max_pending_transactions: Cap on non-terminal transactions per account.
        deposit_expiry_minutes: Lifetime of a deposit payment reference.
    """

    min_deposit: Decimal = Decimal("10")
    max_deposit: Decimal = Decimal("10000")
    min_withdraw: Decimal = Decimal("20")
    max_withdraw: Decimal = Decimal("50000")
    daily_withdraw_limit: Decimal = Decimal("100000")
    max_pending_transactions: int = 5
    deposit_expiry_minutes: int = 15

    @classmethod
    def from_env(cls) -> "WalletLimits":
        return cls(
            min_deposit=_env_decimal("MIN_DEPOSIT", "10"),
            max_deposit=_env_decimal("MAX_DEPOSIT", "10000"),
            min_withdraw=_env_decimal("MIN_WITHDRAW", "20"),
            max_withdraw=_env_decimal("MAX_WITHDRAW", "50000"),
            daily_withdraw_limit=_env_decimal("DAILY_WITHDRAW_LIMIT", "100000"),
            max_pending_transactions=_env_int("MAX_PENDING_TRANSACTIONS", "5"),
            deposit_expiry_minutes=_env_int("DEPOSIT_EXPIRY_MINUTES", "15"),
        )


@dataclass(frozen=True)
class CrashConfig:
    """Crash-game constants.

    Attributes:
        house_edge: Fraction of the sampling range withheld by the platform.
        countdown_seconds: Length of the ``countdown`` phase (bets still open).
        cooldown_seconds: Pause after a crash before the next ``waiting`` phase.
        tick_seconds: Interval of the authoritative round clock.
        max_flight_seconds: Hard cap on the ``running`` phase.
        seconds_per_multiple: Flight length per 1.0x of crash point, so higher
            crash points take longer to reach (capped by ``max_flight_seconds``).
    """

    house_edge: float = 0.04
    countdown_seconds: float = 5.0
    cooldown_seconds: float = 3.0
    tick_seconds: float = 0.05
    max_flight_seconds: float = 5.0
    seconds_per_multiple: float = 2.0

    @classmethod
    def from_env(cls) -> "CrashConfig":
        return cls(
            house_edge=_env_float("CRASH_HOUSE_EDGE", "0.04"),
            countdown_seconds=_env_float("CRASH_COUNTDOWN_SECONDS", "5"),
            cooldown_seconds=_env_float("CRASH_COOLDOWN_SECONDS", "3"),
            tick_seconds=_env_float("CRASH_TICK_SECONDS", "0.05"),
            max_flight_seconds=_env_float("CRASH_MAX_FLIGHT_SECONDS", "5"),
            seconds_per_multiple=_env_float("CRASH_SECONDS_PER_MULTIPLE", "2"),
        )


@dataclass(frozen=True)
class SettlementConfig:
    """Match settlement and bet-acceptance constants.

    Attributes:
        max_workers: Threads used to resolve bets of different accounts in
            parallel.  Bets of one account always run on one worker.
        bet_cutoff_minutes: Bets close this many minutes before
            ``match_date`` (0 = at kickoff; negative values allow in-play).
    """

    max_workers: int = 4
    bet_cutoff_minutes: int = 0

    @classmethod
    def from_env(cls) -> "SettlementConfig":
        return cls(
            max_workers=_env_int("SETTLEMENT_WORKERS", "4"),
            bet_cutoff_minutes=_env_int("BET_CUTOFF_MINUTES", "0"),
        )


@dataclass(frozen=True)
class LedgerConfig:
    """Attributes:
        max_retries: Optimistic version-check attempts before a balance
            update gives up with ``ConcurrencyConflict``.
    """

    max_retries: int = 8

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        return cls(max_retries=_env_int("LEDGER_MAX_RETRIES", "8"))
