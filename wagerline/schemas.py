"""
Pydantic request/response schemas for the Wagerline API.

Using explicit schemas instead of raw dicts prevents mass-assignment
on ORM models and generates accurate OpenAPI docs.  Money travels as
Decimal; responses serialize it as a string so no precision is lost.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from wagerline.core.states import (
    BetStatus,
    CrashBetStatus,
    LedgerReason,
    Outcome,
    TransactionKind,
    TransactionStatus,
)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

class AccountCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=64)
    opening_balance: Decimal = Field(Decimal("0"), ge=0)

    @field_validator("username")
    @classmethod
    def strip_username(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("username cannot be blank")
        return v


class AccountResponse(BaseModel):
    id: int
    username: str
    balance: Decimal
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class LedgerEntryResponse(BaseModel):
    id: int
    direction: str
    reason: LedgerReason
    amount: Decimal
    balance_after: Decimal
    reference: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class StatementResponse(BaseModel):
    account_id: int
    username: str
    balance: Decimal
    entries: list[LedgerEntryResponse]


# ---------------------------------------------------------------------------
# Deposits / withdrawals
# ---------------------------------------------------------------------------

class AmountRequest(BaseModel):
    """Payload for POST /api/accounts/{id}/deposits and /withdrawals."""

    amount: Decimal = Field(..., gt=0, decimal_places=2)

    model_config = {"json_schema_extra": {"example": {"amount": "100.00"}}}


class TransactionResponse(BaseModel):
    txid: str
    account_id: int
    kind: TransactionKind
    amount: Decimal
    status: TransactionStatus
    payment_reference: Optional[str] = None
    expires_at: Optional[datetime] = None
    estimated_time: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None
    details: Optional[dict] = None

    model_config = {"from_attributes": True}


class TransactionStatusResponse(BaseModel):
    txid: str
    status: TransactionStatus


# ---------------------------------------------------------------------------
# Matches and bets
# ---------------------------------------------------------------------------

class MatchCreate(BaseModel):
    """
    Payload for POST /admin/matches.

    Decimal odds, one per outcome.  Leave odds_draw out for a market
    without a draw.
    """

    home_team: str = Field(..., min_length=1, max_length=120)
    away_team: str = Field(..., min_length=1, max_length=120)
    match_date: datetime
    odds_home: Decimal = Field(..., gt=1)
    odds_draw: Optional[Decimal] = Field(None, gt=1)
    odds_away: Decimal = Field(..., gt=1)

    model_config = {
        "json_schema_extra": {
            "example": {
                "home_team": "Flamengo",
                "away_team": "Palmeiras",
                "match_date": "2026-11-01T19:00:00Z",
                "odds_home": "2.10",
                "odds_draw": "3.20",
                "odds_away": "3.40",
            }
        }
    }


class MatchResponse(BaseModel):
    id: int
    home_team: str
    away_team: str
    match_date: datetime
    odds_home: Decimal
    odds_draw: Optional[Decimal]
    odds_away: Decimal
    settled: bool
    winning_outcome: Optional[Outcome] = None
    home_score: Optional[int] = None
    away_score: Optional[int] = None

    model_config = {"from_attributes": True}


class BetCreate(BaseModel):
    account_id: int
    outcome: Outcome
    stake: Decimal = Field(..., gt=0)


class BetResponse(BaseModel):
    id: int
    account_id: int
    match_id: int
    outcome: Outcome
    stake: Decimal
    odds: Decimal
    potential_win: Decimal
    status: BetStatus
    placed_at: datetime
    settled_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class SettleRequest(BaseModel):
    """Payload for POST /admin/matches/{match_id}/settle."""

    winning_outcome: Outcome
    home_score: Optional[int] = Field(None, ge=0)
    away_score: Optional[int] = Field(None, ge=0)


class SettlementResponse(BaseModel):
    match_id: int
    winning_outcome: Outcome
    bets_processed: int
    winners: int
    losers: int
    total_paid_out: Decimal
    errors: list[str]


# ---------------------------------------------------------------------------
# Admin credit / promo codes
# ---------------------------------------------------------------------------

class AdminCreditRequest(BaseModel):
    user: str = Field(..., min_length=1, description="Username or numeric account id")
    amount: Decimal = Field(..., gt=0)


class AdminCreditResponse(BaseModel):
    account_id: int
    username: str
    credited_amount: Decimal
    new_balance: Decimal


class PromoCreate(BaseModel):
    code: str = Field(..., min_length=3, max_length=64)
    bonus_amount: Decimal = Field(..., gt=0)
    max_uses: Optional[int] = Field(None, ge=1)
    expires_at: Optional[datetime] = None

    @field_validator("code")
    @classmethod
    def normalize(cls, v: str) -> str:
        return v.strip().upper()


class PromoResponse(BaseModel):
    id: int
    code: str
    bonus_amount: Decimal
    max_uses: Optional[int]
    current_uses: int
    expires_at: Optional[datetime]
    is_active: bool

    model_config = {"from_attributes": True}


class RedeemRequest(BaseModel):
    account_id: int
    code: str = Field(..., min_length=1, max_length=64)


class RedeemResponse(BaseModel):
    code: str
    bonus_credited: Decimal
    new_balance: Decimal


# ---------------------------------------------------------------------------
# Crash
# ---------------------------------------------------------------------------

class CrashBetCreate(BaseModel):
    account_id: int
    stake: Decimal = Field(..., gt=0)
    auto_cashout: Optional[Decimal] = Field(None, ge=Decimal("1.01"))


class CrashBetResponse(BaseModel):
    id: int
    round_id: int
    account_id: int
    stake: Decimal
    auto_cashout: Optional[Decimal]
    status: CrashBetStatus

    model_config = {"from_attributes": True}


class CashoutRequest(BaseModel):
    account_id: int


class CashoutResponse(BaseModel):
    round_id: int
    account_id: int
    multiplier: Decimal
    payout: Decimal
