"""Payment gateway contract and the simulated gateway used in dev and tests.

:class:`PaymentGateway` is the boundary below the transaction journal.  The
journal never assumes *how* money moves; it only relies on these four
coroutines:

* ``create_deposit(account_id, amount)``  → :class:`DepositIntent`
* ``confirm_deposit(txid)``               → :class:`GatewayResult`
  (webhook-style, may be delivered more than once)
* ``create_withdraw(account_id, amount)`` → :class:`WithdrawIntent`
* ``process_withdraw(txid)``              → :class:`GatewayResult`

Transport problems are raised as :class:`~wagerline.core.errors.GatewayFailure`;
a clean "the payment did not go through" is a ``GatewayResult`` with
``succeeded == False``.

:class:`SimulatedPaymentGateway` mirrors the placeholder behaviour of the
original wallet client: a short delay and a fixed success probability
(95% deposits, 90% withdrawals).  It is a fixture, not a payment
integration; the probability source is injectable so tests are
deterministic.
"""

from __future__ import annotations

import asyncio
import logging
import random
import secrets
import string
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from wagerline.core.errors import GatewayFailure
from wagerline.core.states import TransactionStatus
from wagerline.utils.timeutil import utcnow

logger = logging.getLogger(__name__)

PAYMENT_BASE_URL = "https://payment-gateway.example.com/pay"


# ---------------------------------------------------------------------------
# Data transfer objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DepositIntent:
    txid: str
    payment_reference: str
    expires_at: datetime


@dataclass(frozen=True)
class WithdrawIntent:
    txid: str
    status: TransactionStatus
    estimated_time: str


@dataclass(frozen=True)
class GatewayResult:
    """Terminal answer from the gateway for one txid."""

    status: TransactionStatus
    detail: str = ""

    def __post_init__(self):
        if self.status not in (TransactionStatus.COMPLETED, TransactionStatus.FAILED):
            raise GatewayFailure(f"Gateway returned non-terminal status {self.status!r}")

    @property
    def succeeded(self) -> bool:
        return self.status is TransactionStatus.COMPLETED


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------


class PaymentGateway(ABC):
    """Asynchronous payment transport."""

    @abstractmethod
    async def create_deposit(self, account_id: int, amount: Decimal) -> DepositIntent:
        ...

    @abstractmethod
    async def confirm_deposit(self, txid: str) -> GatewayResult:
        ...

    @abstractmethod
    async def create_withdraw(self, account_id: int, amount: Decimal) -> WithdrawIntent:
        ...

    @abstractmethod
    async def process_withdraw(self, txid: str) -> GatewayResult:
        ...


def generate_txid(rng: Optional[random.Random] = None) -> str:
    """``TX<epoch ms><9 upper-case alphanumerics>``."""
    alphabet = string.ascii_uppercase + string.digits
    pick = (rng or secrets.SystemRandom()).choice
    suffix = "".join(pick(alphabet) for _ in range(9))
    return f"TX{int(time.time() * 1000)}{suffix}"


# ---------------------------------------------------------------------------
# Simulated gateway
# ---------------------------------------------------------------------------


class SimulatedPaymentGateway(PaymentGateway):
    """
    Stand-in gateway with a fixed success probability.

    Usage::

        gateway = SimulatedPaymentGateway(rng=random.Random(7), delay_seconds=0)
        intent = await gateway.create_deposit(1, Decimal("100"))
        result = await gateway.confirm_deposit(intent.txid)
    """

    def __init__(
        self,
        deposit_success_rate: float = 0.95,
        withdraw_success_rate: float = 0.90,
        delay_seconds: float = 0.5,
        expiry_minutes: int = 15,
        rng: Optional[random.Random] = None,
    ):
        self.deposit_success_rate = deposit_success_rate
        self.withdraw_success_rate = withdraw_success_rate
        self.delay_seconds = delay_seconds
        self.expiry_minutes = expiry_minutes
        self._rng = rng or random.Random()
        # Outcome per txid is decided once, so a redelivered webhook agrees
        # with the first delivery.
        self._decided: dict = {}

    async def _delay(self, factor: float = 1.0) -> None:
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds * factor)

    def _decide(self, txid: str, success_rate: float) -> GatewayResult:
        if txid not in self._decided:
            ok = self._rng.random() < success_rate
            self._decided[txid] = GatewayResult(
                status=TransactionStatus.COMPLETED if ok else TransactionStatus.FAILED,
                detail="simulated",
            )
        return self._decided[txid]

    async def create_deposit(self, account_id: int, amount: Decimal) -> DepositIntent:
        await self._delay(1.6)
        txid = generate_txid(self._rng)
        return DepositIntent(
            txid=txid,
            payment_reference=f"{PAYMENT_BASE_URL}/{txid}",
            expires_at=utcnow() + timedelta(minutes=self.expiry_minutes),
        )

    async def confirm_deposit(self, txid: str) -> GatewayResult:
        await self._delay(2.0)
        result = self._decide(txid, self.deposit_success_rate)
        logger.info("Simulated deposit confirmation %s: %s", txid, result.status.value)
        return result

    async def create_withdraw(self, account_id: int, amount: Decimal) -> WithdrawIntent:
        await self._delay(1.6)
        return WithdrawIntent(
            txid=generate_txid(self._rng),
            status=TransactionStatus.PENDING,
            estimated_time="1-24 hours",
        )

    async def process_withdraw(self, txid: str) -> GatewayResult:
        await self._delay(4.0)
        result = self._decide(txid, self.withdraw_success_rate)
        logger.info("Simulated withdraw processing %s: %s", txid, result.status.value)
        return result
