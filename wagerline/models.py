"""
Database models for the Wagerline betting platform
SQLAlchemy ORM (PostgreSQL in production, SQLite for development and tests)

Every balance or status change is applied through a keyed conditional
UPDATE whose matched row count tells the caller whether it won the
transition.  The models here only describe storage; the guarded writes
live in ``wagerline.services``.
"""

import logging
import os
from contextlib import contextmanager
from decimal import Decimal

from dotenv import load_dotenv
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from wagerline.core.errors import InvalidOutcome
from wagerline.core.states import (
    BetStatus,
    CrashBetStatus,
    CrashPhase,
    LedgerReason,
    Outcome,
    TransactionKind,
    TransactionStatus,
)
from wagerline.utils.timeutil import utcnow

load_dotenv()

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./wagerline.db")

MONEY = Numeric(18, 2, asdecimal=True)
MULTIPLIER = Numeric(10, 2, asdecimal=True)


def _configure_sqlite(engine) -> None:
    """
    Make SQLite behave like a row-locking database for our write pattern.

    pysqlite opens transactions lazily with a plain BEGIN, so two writers
    that both read first can deadlock on lock upgrade (SQLITE_BUSY with no
    wait).  Taking the write lock up front with BEGIN IMMEDIATE makes
    concurrent writers queue on the busy timeout instead.
    """

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: str, **kwargs):
    """Build an engine; SQLite URLs get thread-sharing and immediate locking."""
    if url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)
        engine = create_engine(url, connect_args=connect_args, **kwargs)
        _configure_sqlite(engine)
        return engine
    return create_engine(url, pool_pre_ping=True, echo=False, **kwargs)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
Base = declarative_base()


# Dependency for FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory=None):
    """One unit of work: commit on success, roll back on any exception."""
    db = (session_factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _enum(enum_cls, **kwargs):
    # Store the lowercase .value, not the member name
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=24,
        values_callable=lambda members: [m.value for m in members],
        **kwargs,
    )


class Account(Base):
    """A user's wallet. Mutated only through services.ledger"""

    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(64), unique=True, nullable=False, index=True)
    balance = Column(MONEY, nullable=False, default=Decimal("0.00"))
    version = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    ledger_entries = relationship("LedgerEntry", back_populates="account")

    __table_args__ = (CheckConstraint("balance >= 0", name="ck_accounts_balance_non_negative"),)


class LedgerEntry(Base):
    """Append-only record of every applied credit or debit"""

    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    direction = Column(String(6), nullable=False)  # "credit" | "debit"
    reason = Column(_enum(LedgerReason), nullable=False)
    amount = Column(MONEY, nullable=False)  # Always positive
    balance_after = Column(MONEY, nullable=False)
    reference = Column(String(64), index=True)  # txid, bet id, round id, promo code
    created_at = Column(DateTime, default=utcnow, index=True)

    account = relationship("Account", back_populates="ledger_entries")

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.direction == "credit" else -self.amount


class Transaction(Base):
    """Deposit / withdrawal lifecycle. Status is monotonic; completed and failed are terminal"""

    __tablename__ = "transactions"

    txid = Column(String(64), primary_key=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    kind = Column(_enum(TransactionKind), nullable=False)
    amount = Column(MONEY, nullable=False)
    status = Column(_enum(TransactionStatus), nullable=False, default=TransactionStatus.PENDING, index=True)

    # Gateway handles
    payment_reference = Column(String(255))
    expires_at = Column(DateTime)  # Deposits only
    estimated_time = Column(String(64))  # Withdrawals only

    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    resolved_at = Column(DateTime)

    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, default=dict)

    @property
    def is_terminal(self) -> bool:
        return TransactionStatus(self.status).is_terminal


class Match(Base):
    """Fixture with fixed odds. settled is a one-way latch"""

    __tablename__ = "matches"

    id = Column(Integer, primary_key=True, index=True)
    home_team = Column(String(120), nullable=False)
    away_team = Column(String(120), nullable=False)
    match_date = Column(DateTime, nullable=False, index=True)

    # Decimal odds fixed at creation; odds_draw NULL = no draw market
    odds_home = Column(MULTIPLIER, nullable=False)
    odds_draw = Column(MULTIPLIER)
    odds_away = Column(MULTIPLIER, nullable=False)

    # Result (filled at settlement)
    settled = Column(Boolean, nullable=False, default=False, index=True)
    winning_outcome = Column(_enum(Outcome))
    home_score = Column(Integer)
    away_score = Column(Integer)
    settled_at = Column(DateTime)
    settled_by = Column(String(64))

    created_at = Column(DateTime, default=utcnow)

    bets = relationship("Bet", back_populates="match")

    def outcomes(self) -> dict:
        """Outcome -> odds for every outcome this match offers."""
        offered = {Outcome.HOME: self.odds_home, Outcome.AWAY: self.odds_away}
        if self.odds_draw is not None:
            offered[Outcome.DRAW] = self.odds_draw
        return offered

    def odds_for(self, outcome) -> Decimal:
        try:
            key = Outcome(outcome)
        except ValueError:
            raise InvalidOutcome(f"Unknown outcome {outcome!r}", match_id=self.id)
        offered = self.outcomes()
        if key not in offered:
            raise InvalidOutcome(f"Match {self.id} does not offer {key.value}", match_id=self.id)
        return offered[key]


class Bet(Base):
    """Fixed-odds bet. Status moves open -> won | lost exactly once"""

    __tablename__ = "bets"

    id = Column(Integer, primary_key=True, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=False, index=True)

    outcome = Column(_enum(Outcome), nullable=False)
    stake = Column(MONEY, nullable=False)
    odds = Column(MULTIPLIER, nullable=False)  # Snapshot at placement
    potential_win = Column(MONEY, nullable=False)  # stake * odds, frozen

    status = Column(_enum(BetStatus), nullable=False, default=BetStatus.OPEN, index=True)
    placed_at = Column(DateTime, default=utcnow, index=True)
    settled_at = Column(DateTime)

    match = relationship("Match", back_populates="bets")


class CrashRound(Base):
    """One crash-game round. crash_point is fixed at creation"""

    __tablename__ = "crash_rounds"

    id = Column(Integer, primary_key=True, index=True)
    crash_point = Column(MULTIPLIER, nullable=False)
    house_edge = Column(Float, nullable=False)
    phase = Column(_enum(CrashPhase), nullable=False, default=CrashPhase.WAITING)

    created_at = Column(DateTime, default=utcnow, index=True)
    started_at = Column(DateTime)  # running phase began
    crashed_at = Column(DateTime)

    bets = relationship("CrashBet", back_populates="round")


class CrashBet(Base):
    """A stake in a crash round; one per account per round"""

    __tablename__ = "crash_bets"

    id = Column(Integer, primary_key=True, index=True)
    round_id = Column(Integer, ForeignKey("crash_rounds.id"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)

    stake = Column(MONEY, nullable=False)
    auto_cashout = Column(MULTIPLIER)
    status = Column(_enum(CrashBetStatus), nullable=False, default=CrashBetStatus.ACTIVE)
    cashout_multiplier = Column(MULTIPLIER)
    payout = Column(MONEY)

    placed_at = Column(DateTime, default=utcnow)
    resolved_at = Column(DateTime)

    round = relationship("CrashRound", back_populates="bets")

    __table_args__ = (UniqueConstraint("round_id", "account_id", name="_crash_round_account_uc"),)


class PromoCode(Base):
    """Bonus code. current_uses is only ever incremented through a guarded update"""

    __tablename__ = "promo_codes"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(64), unique=True, nullable=False, index=True)  # Upper-case
    bonus_amount = Column(MONEY, nullable=False)
    max_uses = Column(Integer)  # NULL = unlimited
    current_uses = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, default=utcnow)


class PromoRedemption(Base):
    """At most one per (code, account)"""

    __tablename__ = "promo_redemptions"

    id = Column(Integer, primary_key=True, index=True)
    code_id = Column(Integer, ForeignKey("promo_codes.id"), nullable=False, index=True)
    account_id = Column(Integer, ForeignKey("accounts.id"), nullable=False, index=True)
    bonus_amount = Column(MONEY, nullable=False)
    redeemed_at = Column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("code_id", "account_id", name="_promo_code_account_uc"),)


# Create all tables
def init_db(bind=None):
    """Initialize database tables"""
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
