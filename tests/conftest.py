"""Shared fixtures: an isolated SQLite database per test."""

import os

os.environ.setdefault("ENVIRONMENT", "development")

import pytest
from sqlalchemy.orm import sessionmaker

from wagerline.core.config import CrashConfig, LedgerConfig, SettlementConfig, WalletLimits
from wagerline.models import init_db, make_engine
from wagerline.services.accounts import create_account
from wagerline.services.ledger import LedgerAccount


@pytest.fixture
def session_factory(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'wagerline-test.db'}")
    init_db(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return LedgerAccount(session_factory=session_factory, config=LedgerConfig())


@pytest.fixture
def make_account(session_factory):
    counter = {"n": 0}

    def _make(opening_balance=0, username=None):
        counter["n"] += 1
        name = username or f"player{counter['n']}"
        return create_account(name, opening_balance=opening_balance, session_factory=session_factory).id

    return _make


@pytest.fixture
def limits():
    return WalletLimits()


@pytest.fixture
def settlement_config():
    return SettlementConfig(max_workers=4, bet_cutoff_minutes=0)


@pytest.fixture
def crash_config():
    return CrashConfig(
        house_edge=0.04,
        countdown_seconds=5.0,
        cooldown_seconds=3.0,
        tick_seconds=0.05,
        max_flight_seconds=5.0,
        seconds_per_multiple=2.0,
    )
