"""
FastAPI application for the Wagerline betting core
Includes REST API, scheduled recovery jobs, and the crash round engine
"""

from fastapi import BackgroundTasks, Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from contextlib import asynccontextmanager
from typing import List, Optional
import asyncio
import logging
import os

from wagerline.models import Account, SessionLocal, get_db, init_db
from wagerline.auth import verify_api_key, verify_admin_api_key
from wagerline.core.config import WalletLimits
from wagerline.core.errors import NotFound, PlatformError, RoundClosed
from wagerline.services.accounts import account_statement, create_account, credit_account
from wagerline.services.bet_book import BetBook
from wagerline.services.crash import CrashEngine, get_crash_engine
from wagerline.services.gateway import SimulatedPaymentGateway
from wagerline.services.promotions import (
    create_promo_code,
    deactivate_promo_code,
    list_promo_codes,
    normalize_code,
    redeem,
)
from wagerline.services.settlement import MatchSettlementEngine
from wagerline.services.transactions import TransactionJournal
from wagerline.schemas import (
    AccountCreate,
    AccountResponse,
    AdminCreditRequest,
    AdminCreditResponse,
    AmountRequest,
    BetCreate,
    BetResponse,
    CashoutRequest,
    CashoutResponse,
    CrashBetCreate,
    CrashBetResponse,
    MatchCreate,
    MatchResponse,
    PromoCreate,
    PromoResponse,
    RedeemRequest,
    RedeemResponse,
    SettlementResponse,
    SettleRequest,
    StatementResponse,
    TransactionResponse,
    TransactionStatusResponse,
)

# Logging setup
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Scheduler instance
scheduler = BackgroundScheduler()

# Service singletons (swapped out through app.dependency_overrides in tests)
_journal: Optional[TransactionJournal] = None
_bet_book: Optional[BetBook] = None
_settlement: Optional[MatchSettlementEngine] = None


def get_session_factory():
    return SessionLocal


def get_journal() -> TransactionJournal:
    global _journal
    if _journal is None:
        limits = WalletLimits.from_env()
        _journal = TransactionJournal(
            gateway=SimulatedPaymentGateway(expiry_minutes=limits.deposit_expiry_minutes),
            limits=limits,
            auto_process=False,  # routes schedule processing as a BackgroundTask
        )
    return _journal


def get_bet_book() -> BetBook:
    global _bet_book
    if _bet_book is None:
        _bet_book = BetBook()
    return _bet_book


def get_settlement_engine() -> MatchSettlementEngine:
    global _settlement
    if _settlement is None:
        _settlement = MatchSettlementEngine()
    return _settlement


def crash_engine_enabled() -> bool:
    return os.getenv("CRASH_ENGINE_ENABLED", "false").lower() == "true"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events"""
    logger.info("Starting Wagerline")
    init_db()

    sweep_minutes = int(os.getenv("WITHDRAW_SWEEP_MINUTES", "10"))

    # Withdrawals whose background processing never ran (crash, restart)
    scheduler.add_job(
        _withdraw_sweep_job,
        IntervalTrigger(minutes=sweep_minutes),
        id="withdraw_sweep",
        name="Sweep Pending Withdrawals",
        replace_existing=True,
    )

    # Pending deposits past their payment reference expiry
    scheduler.add_job(
        _expire_deposits_job,
        IntervalTrigger(minutes=5),
        id="expire_deposits",
        name="Void Expired Deposits",
        replace_existing=True,
    )

    # Settled matches that still hold open bets
    scheduler.add_job(
        _resume_settlement_job,
        IntervalTrigger(minutes=15),
        id="resume_settlement",
        name="Resume Interrupted Settlements",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started: withdraw sweep every %dmin, deposit expiry every 5min, "
        "settlement resume every 15min",
        sweep_minutes,
    )

    engine: Optional[CrashEngine] = None
    if crash_engine_enabled():
        engine = get_crash_engine()
        engine.start()

    yield

    logger.info("Shutting down Wagerline")
    if engine is not None:
        await engine.stop()
    scheduler.shutdown()


app = FastAPI(
    title="Wagerline",
    description="Ledger, transaction and settlement core for a simulated betting platform",
    version="1.0",
    lifespan=lifespan,
)

# CORS (adjust origins for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# SCHEDULED JOBS
# ============================================================================

def _withdraw_sweep_job():
    """Re-drive stale pending withdrawals."""
    try:
        minutes = int(os.getenv("WITHDRAW_SWEEP_MINUTES", "10"))
        results = asyncio.run(get_journal().sweep_pending_withdrawals(older_than_minutes=minutes))
        if results["swept"]:
            logger.info("Withdraw sweep: %s", results)
    except Exception as exc:
        logger.error("Withdraw sweep job failed: %s", exc, exc_info=True)


def _expire_deposits_job():
    try:
        get_journal().expire_stale_deposits()
    except Exception as exc:
        logger.error("Deposit expiry job failed: %s", exc, exc_info=True)


def _resume_settlement_job():
    """Finish settlements that left bets open."""
    try:
        results = get_settlement_engine().resume_all()
        if results["matches"]:
            logger.info("Settlement resume: %s", results)
    except Exception as exc:
        logger.error("Settlement resume job failed: %s", exc, exc_info=True)


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/")
async def root():
    """Health check"""
    return {
        "app": "Wagerline",
        "version": "1.0",
        "status": "operational",
    }


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Health check endpoint"""
    health = {"status": "healthy", "database": "connected", "scheduler": "running"}

    try:
        db.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Health check database error: %s", e)
        health["status"] = "degraded"
        health["database"] = f"error: {str(e)}"

    if not scheduler.running:
        health["status"] = "degraded"
        health["scheduler"] = "stopped"

    return health


# ============================================================================
# ACCOUNTS
# ============================================================================

@app.post("/api/accounts", response_model=AccountResponse, status_code=201)
def open_account(
    payload: AccountCreate,
    user: str = Depends(verify_api_key),
    factory=Depends(get_session_factory),
):
    return create_account(payload.username, payload.opening_balance, session_factory=factory)


@app.get("/api/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: int,
    user: str = Depends(verify_api_key),
    db: Session = Depends(get_db),
):
    account = db.query(Account).filter(Account.id == account_id).first()
    if account is None:
        raise NotFound(f"Account {account_id} not found", account_id=account_id)
    return account


@app.get("/api/accounts/{account_id}/ledger", response_model=StatementResponse)
def get_ledger(
    account_id: int,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    user: str = Depends(verify_api_key),
    factory=Depends(get_session_factory),
):
    """Balance plus every ledger entry, oldest first"""
    statement = account_statement(account_id, limit=limit, session_factory=factory)
    return {
        "account_id": statement.account_id,
        "username": statement.username,
        "balance": statement.balance,
        "entries": statement.entries,
    }


@app.get("/api/accounts/{account_id}/transactions", response_model=List[TransactionResponse])
def get_transactions(
    account_id: int,
    limit: int = Query(50, ge=1, le=500),
    user: str = Depends(verify_api_key),
    journal: TransactionJournal = Depends(get_journal),
):
    return journal.list_transactions(account_id, limit=limit)


@app.get("/api/accounts/{account_id}/bets", response_model=List[BetResponse])
def get_bets(
    account_id: int,
    limit: int = Query(100, ge=1, le=500),
    user: str = Depends(verify_api_key),
    book: BetBook = Depends(get_bet_book),
):
    return book.list_bets(account_id, limit=limit)


# ============================================================================
# DEPOSITS / WITHDRAWALS
# ============================================================================

@app.post("/api/accounts/{account_id}/deposits", response_model=TransactionResponse, status_code=201)
async def create_deposit(
    account_id: int,
    payload: AmountRequest,
    user: str = Depends(verify_api_key),
    journal: TransactionJournal = Depends(get_journal),
):
    return await journal.create_deposit(account_id, payload.amount)


@app.post("/api/deposits/{txid}/confirm", response_model=TransactionStatusResponse)
async def confirm_deposit(
    txid: str,
    user: str = Depends(verify_api_key),
    journal: TransactionJournal = Depends(get_journal),
):
    """Gateway webhook. Safe to deliver more than once."""
    status = await journal.confirm_deposit(txid)
    return {"txid": txid, "status": status}


@app.post("/api/accounts/{account_id}/withdrawals", response_model=TransactionResponse, status_code=202)
async def create_withdrawal(
    account_id: int,
    payload: AmountRequest,
    background_tasks: BackgroundTasks,
    user: str = Depends(verify_api_key),
    journal: TransactionJournal = Depends(get_journal),
):
    """Debits immediately; gateway processing runs after the response"""
    tx = await journal.create_withdraw(account_id, payload.amount)
    background_tasks.add_task(journal.process_withdraw, tx.txid)
    return tx


@app.get("/api/transactions/{txid}", response_model=TransactionResponse)
def get_transaction(
    txid: str,
    user: str = Depends(verify_api_key),
    journal: TransactionJournal = Depends(get_journal),
):
    return journal.get_transaction(txid)


# ============================================================================
# MATCHES AND BETS
# ============================================================================

@app.get("/api/matches", response_model=List[MatchResponse])
def list_matches(
    user: str = Depends(verify_api_key),
    book: BetBook = Depends(get_bet_book),
):
    """Matches still accepting bets"""
    return book.list_open_matches()


@app.post("/api/matches/{match_id}/bets", response_model=BetResponse, status_code=201)
def place_bet(
    match_id: int,
    payload: BetCreate,
    user: str = Depends(verify_api_key),
    book: BetBook = Depends(get_bet_book),
):
    return book.place_bet(payload.account_id, match_id, payload.outcome, payload.stake)


@app.post("/admin/matches", response_model=MatchResponse, status_code=201)
def create_match(
    payload: MatchCreate,
    user: str = Depends(verify_admin_api_key),
    book: BetBook = Depends(get_bet_book),
):
    odds = {"home": payload.odds_home, "draw": payload.odds_draw, "away": payload.odds_away}
    return book.create_match(payload.home_team, payload.away_team, odds, payload.match_date)


@app.post("/admin/matches/{match_id}/settle", response_model=SettlementResponse)
def settle_match(
    match_id: int,
    payload: SettleRequest,
    user: str = Depends(verify_admin_api_key),
    engine: MatchSettlementEngine = Depends(get_settlement_engine),
):
    summary = engine.settle(
        match_id,
        payload.winning_outcome,
        home_score=payload.home_score,
        away_score=payload.away_score,
        actor=user,
    )
    return summary.to_dict()


# ============================================================================
# ADMIN CREDIT / PROMO CODES
# ============================================================================

@app.post("/admin/credit", response_model=AdminCreditResponse)
def admin_credit(
    payload: AdminCreditRequest,
    user: str = Depends(verify_admin_api_key),
    factory=Depends(get_session_factory),
):
    return credit_account(payload.user, payload.amount, actor=user, session_factory=factory)


@app.post("/admin/promos", response_model=PromoResponse, status_code=201)
def admin_create_promo(
    payload: PromoCreate,
    user: str = Depends(verify_admin_api_key),
    factory=Depends(get_session_factory),
):
    return create_promo_code(
        payload.code,
        payload.bonus_amount,
        max_uses=payload.max_uses,
        expires_at=payload.expires_at,
        session_factory=factory,
    )


@app.get("/admin/promos", response_model=List[PromoResponse])
def admin_list_promos(
    active_only: bool = False,
    user: str = Depends(verify_admin_api_key),
    factory=Depends(get_session_factory),
):
    return list_promo_codes(active_only=active_only, session_factory=factory)


@app.post("/admin/promos/{code}/deactivate")
def admin_deactivate_promo(
    code: str,
    user: str = Depends(verify_admin_api_key),
    factory=Depends(get_session_factory),
):
    """Stop further redemptions; existing bonuses stay credited"""
    if not deactivate_promo_code(code, session_factory=factory):
        raise NotFound(f"No active promo code {normalize_code(code)}", code=code)
    logger.info("%s deactivated promo code %s", user, normalize_code(code))
    return {"code": normalize_code(code), "is_active": False}


@app.post("/api/promos/redeem", response_model=RedeemResponse)
def redeem_promo(
    payload: RedeemRequest,
    user: str = Depends(verify_api_key),
    factory=Depends(get_session_factory),
):
    result = redeem(payload.account_id, payload.code, session_factory=factory)
    return {
        "code": result.code,
        "bonus_credited": result.bonus_credited,
        "new_balance": result.new_balance,
    }


# ============================================================================
# CRASH GAME
# ============================================================================

@app.get("/api/crash/state")
async def crash_state(
    user: str = Depends(verify_api_key),
    engine: CrashEngine = Depends(get_crash_engine),
):
    """Current round; the crash point is shown only after the crash"""
    return engine.snapshot()


@app.get("/api/crash/history")
def crash_history(
    limit: int = Query(20, ge=1, le=100),
    user: str = Depends(verify_api_key),
    engine: CrashEngine = Depends(get_crash_engine),
):
    return engine.recent_rounds(limit=limit)


# Crash routes touching round state stay on the event loop thread with the tick loop;
# their database writes block the loop while they run
@app.post("/api/crash/bets", response_model=CrashBetResponse, status_code=201)
async def crash_bet(
    payload: CrashBetCreate,
    user: str = Depends(verify_api_key),
    engine: CrashEngine = Depends(get_crash_engine),
):
    if not crash_engine_enabled():
        # No tick loop would ever start the round or return the stake
        raise RoundClosed("Crash game is not running")
    return engine.place_bet(payload.account_id, payload.stake, payload.auto_cashout)


@app.post("/api/crash/cashout", response_model=CashoutResponse)
async def crash_cashout(
    payload: CashoutRequest,
    user: str = Depends(verify_api_key),
    engine: CrashEngine = Depends(get_crash_engine),
):
    result = await engine.request_cashout(payload.account_id)
    return {
        "round_id": result.round_id,
        "account_id": result.account_id,
        "multiplier": result.multiplier,
        "payout": result.payout,
    }


# ============================================================================
# ADMIN
# ============================================================================

@app.get("/admin/scheduler/status")
async def get_scheduler_status(user: str = Depends(verify_admin_api_key)):
    """Get scheduler job status"""
    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": job.next_run_time.isoformat() if job.next_run_time else None,
        })

    return {
        "running": scheduler.running,
        "jobs": jobs,
        "crash_engine": crash_engine_enabled(),
    }


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(PlatformError)
async def platform_error_handler(request, exc: PlatformError):
    """Domain errors carry their own HTTP status"""
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.message)
    else:
        logger.info("%s on %s: %s", exc.code, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Catch-all exception handler"""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "type": type(exc).__name__}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
