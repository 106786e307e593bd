"""Platform error taxonomy.

Every failure the money path can surface is a :class:`PlatformError`
subclass.  Services raise these directly; the FastAPI layer maps them to
HTTP responses through :attr:`PlatformError.status_code` so routes never
translate errors by hand.

``AlreadySettled`` and ``AlreadyTerminal`` are idempotency guards rather
than real failures: they tell a retried caller that the work it asked for
has already happened.
"""

from __future__ import annotations

from typing import Optional


class PlatformError(Exception):
    """Base class for all domain errors."""

    status_code: int = 400
    code: str = "platform_error"

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.context = context

    def to_dict(self) -> dict:
        payload = {"error": self.code, "detail": self.message}
        if self.context:
            payload["context"] = {k: str(v) for k, v in self.context.items()}
        return payload


class ValidationError(PlatformError):
    """Malformed or out-of-range input."""

    status_code = 422
    code = "validation_error"


class InvalidOutcome(ValidationError):
    """The outcome is not one of the match's defined outcomes."""

    code = "invalid_outcome"


class InsufficientFunds(PlatformError):
    status_code = 409
    code = "insufficient_funds"

    def __init__(self, account_id, requested, available):
        super().__init__(
            f"Account {account_id}: requested {requested}, available {available}",
            account_id=account_id,
            requested=requested,
            available=available,
        )
        self.account_id = account_id
        self.requested = requested
        self.available = available


class NotFound(PlatformError):
    status_code = 404
    code = "not_found"


class Forbidden(PlatformError):
    status_code = 403
    code = "forbidden"


class MatchClosed(PlatformError):
    """Match is settled or past its betting cutoff."""

    status_code = 409
    code = "match_closed"


class AlreadySettled(PlatformError):
    status_code = 409
    code = "already_settled"


class AlreadyTerminal(PlatformError):
    """Transaction already reached completed/failed."""

    status_code = 409
    code = "already_terminal"

    def __init__(self, txid: str, status: str):
        super().__init__(f"Transaction {txid} already {status}", txid=txid, status=status)
        self.txid = txid
        self.status = status


class GatewayFailure(PlatformError):
    """Payment transport failed or returned garbage."""

    status_code = 502
    code = "gateway_failure"


class Expired(PlatformError):
    status_code = 410
    code = "expired"


class LimitReached(PlatformError):
    status_code = 429
    code = "limit_reached"


class AlreadyRedeemed(PlatformError):
    status_code = 409
    code = "already_redeemed"


class RoundClosed(PlatformError):
    """Crash round is not in a phase that accepts the request."""

    status_code = 409
    code = "round_closed"


class ConcurrencyConflict(PlatformError):
    """Optimistic retries exhausted on a hot account row."""

    status_code = 503
    code = "concurrency_conflict"

    def __init__(self, account_id, attempts: Optional[int] = None):
        super().__init__(
            f"Account {account_id}: balance update lost {attempts} optimistic races",
            account_id=account_id,
        )
