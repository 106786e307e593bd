"""
HTTP surface tests
Run with: pytest tests/test_api.py -v

The app runs without its lifespan (no scheduler, no crash loop); every
service dependency is pointed at the per-test SQLite database.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from wagerline import main
from wagerline.models import get_db
from wagerline.services.bet_book import BetBook
from wagerline.services.crash import CrashEngine
from wagerline.services.gateway import SimulatedPaymentGateway
from wagerline.services.settlement import MatchSettlementEngine
from wagerline.services.transactions import TransactionJournal
from wagerline.utils.timeutil import utcnow

ADMIN = {"X-API-Key": "admin-key"}
PLAYER = {"X-API-Key": "player-key"}


@pytest.fixture
def gateway():
    return SimulatedPaymentGateway(deposit_success_rate=1.0, withdraw_success_rate=1.0, delay_seconds=0)


@pytest.fixture
def client(monkeypatch, session_factory, settlement_config, crash_config, limits, gateway):
    monkeypatch.setenv("API_KEY_USER1", "admin-key")
    monkeypatch.setenv("API_KEY_USER2", "player-key")
    monkeypatch.setenv("ADMIN_USERS", "user1")
    monkeypatch.setenv("CRASH_ENGINE_ENABLED", "false")

    journal = TransactionJournal(gateway=gateway, session_factory=session_factory, limits=limits, auto_process=False)
    book = BetBook(session_factory=session_factory, config=settlement_config)
    settlement = MatchSettlementEngine(session_factory=session_factory, config=settlement_config)
    crash = CrashEngine(session_factory=session_factory, config=crash_config, clock=lambda: 0.0)

    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    main.app.dependency_overrides.update({
        get_db: override_db,
        main.get_session_factory: lambda: session_factory,
        main.get_journal: lambda: journal,
        main.get_bet_book: lambda: book,
        main.get_settlement_engine: lambda: settlement,
        main.get_crash_engine: lambda: crash,
    })
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def _open_account(client, username="alice", balance="100.00"):
    resp = client.post("/api/accounts", json={"username": username, "opening_balance": balance}, headers=PLAYER)
    assert resp.status_code == 201
    return resp.json()["id"]


def _balance(client, account_id):
    return client.get(f"/api/accounts/{account_id}", headers=PLAYER).json()["balance"]


class TestAuth:

    def test_missing_key(self, client):
        assert client.get("/api/matches").status_code == 401

    def test_wrong_key(self, client):
        assert client.get("/api/matches", headers={"X-API-Key": "nope"}).status_code == 401

    def test_admin_route_needs_admin(self, client):
        resp = client.post("/admin/credit", json={"user": "alice", "amount": "10"}, headers=PLAYER)
        assert resp.status_code == 403
        assert resp.json()["error"] == "forbidden"

    def test_development_fallback_key(self, client, monkeypatch):
        for slot in range(1, 6):
            monkeypatch.delenv(f"API_KEY_USER{slot}", raising=False)
        monkeypatch.setenv("ENVIRONMENT", "development")

        assert client.get("/api/matches", headers={"X-API-Key": "dev-key-insecure"}).status_code == 200
        # dev_user is not an admin
        assert client.get("/admin/promos", headers={"X-API-Key": "dev-key-insecure"}).status_code == 403

    def test_root_is_open(self, client):
        assert client.get("/").json()["status"] == "operational"


class TestAccounts:

    def test_open_and_read(self, client):
        acc = _open_account(client, balance="25.50")
        assert _balance(client, acc) == "25.50"

        statement = client.get(f"/api/accounts/{acc}/ledger", headers=PLAYER).json()
        assert statement["username"] == "alice"
        assert [e["reason"] for e in statement["entries"]] == ["opening_balance"]

    def test_unknown_account(self, client):
        resp = client.get("/api/accounts/999", headers=PLAYER)
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    def test_admin_credit(self, client):
        acc = _open_account(client)
        resp = client.post("/admin/credit", json={"user": "alice", "amount": "15"}, headers=ADMIN)

        assert resp.status_code == 200
        assert resp.json()["new_balance"] == "115.00"
        assert _balance(client, acc) == "115.00"

    def test_admin_credit_unknown_user(self, client):
        resp = client.post("/admin/credit", json={"user": "nobody", "amount": "15"}, headers=ADMIN)
        assert resp.status_code == 404


class TestMoneyMovement:

    def test_deposit_confirm_is_idempotent(self, client):
        acc = _open_account(client, balance="0")
        tx = client.post(f"/api/accounts/{acc}/deposits", json={"amount": "50.00"}, headers=PLAYER).json()
        assert tx["status"] == "pending"
        assert tx["payment_reference"]

        first = client.post(f"/api/deposits/{tx['txid']}/confirm", headers=PLAYER)
        second = client.post(f"/api/deposits/{tx['txid']}/confirm", headers=PLAYER)

        assert first.json()["status"] == "completed"
        assert second.json()["status"] == "completed"
        assert _balance(client, acc) == "50.00"

    def test_deposit_below_minimum(self, client):
        acc = _open_account(client)
        resp = client.post(f"/api/accounts/{acc}/deposits", json={"amount": "1.00"}, headers=PLAYER)
        assert resp.status_code == 422

    def test_withdrawal_completes_in_background(self, client):
        acc = _open_account(client)
        resp = client.post(f"/api/accounts/{acc}/withdrawals", json={"amount": "30.00"}, headers=PLAYER)

        assert resp.status_code == 202
        txid = resp.json()["txid"]
        assert client.get(f"/api/transactions/{txid}", headers=PLAYER).json()["status"] == "completed"
        assert _balance(client, acc) == "70.00"

    def test_failed_withdrawal_is_refunded(self, client, gateway):
        gateway.withdraw_success_rate = 0.0
        acc = _open_account(client)
        txid = client.post(f"/api/accounts/{acc}/withdrawals", json={"amount": "30.00"}, headers=PLAYER).json()["txid"]

        assert client.get(f"/api/transactions/{txid}", headers=PLAYER).json()["status"] == "failed"
        assert _balance(client, acc) == "100.00"

        history = client.get(f"/api/accounts/{acc}/transactions", headers=PLAYER).json()
        assert [t["txid"] for t in history] == [txid]

    def test_withdrawal_over_balance(self, client):
        acc = _open_account(client, balance="20.00")
        resp = client.post(f"/api/accounts/{acc}/withdrawals", json={"amount": "25.00"}, headers=PLAYER)
        assert resp.status_code == 409
        assert resp.json()["error"] == "insufficient_funds"


class TestMatchFlow:

    def _create_match(self, client):
        resp = client.post(
            "/admin/matches",
            json={
                "home_team": "Flamengo",
                "away_team": "Palmeiras",
                "match_date": (utcnow() + timedelta(days=1)).isoformat(),
                "odds_home": "2.10",
                "odds_draw": "3.20",
                "odds_away": "3.40",
            },
            headers=ADMIN,
        )
        assert resp.status_code == 201
        return resp.json()["id"]

    def test_bet_and_settle(self, client):
        acc = _open_account(client)
        match_id = self._create_match(client)
        assert [m["id"] for m in client.get("/api/matches", headers=PLAYER).json()] == [match_id]

        bet = client.post(
            f"/api/matches/{match_id}/bets",
            json={"account_id": acc, "outcome": "home", "stake": "10"},
            headers=PLAYER,
        )
        assert bet.status_code == 201
        assert bet.json()["potential_win"] == "21.00"

        settle = client.post(f"/admin/matches/{match_id}/settle", json={"winning_outcome": "home"}, headers=ADMIN)
        assert settle.status_code == 200
        assert settle.json()["winners"] == 1
        assert settle.json()["total_paid_out"] == "21.00"
        assert _balance(client, acc) == "111.00"

        again = client.post(f"/admin/matches/{match_id}/settle", json={"winning_outcome": "away"}, headers=ADMIN)
        assert again.status_code == 409
        assert again.json()["error"] == "already_settled"
        assert _balance(client, acc) == "111.00"

        bets = client.get(f"/api/accounts/{acc}/bets", headers=PLAYER).json()
        assert bets[0]["status"] == "won"

    def test_settle_requires_admin(self, client):
        match_id = self._create_match(client)
        resp = client.post(f"/admin/matches/{match_id}/settle", json={"winning_outcome": "home"}, headers=PLAYER)
        assert resp.status_code == 403

    def test_unknown_outcome_rejected(self, client):
        acc = _open_account(client)
        match_id = self._create_match(client)
        resp = client.post(
            f"/api/matches/{match_id}/bets",
            json={"account_id": acc, "outcome": "banana", "stake": "10"},
            headers=PLAYER,
        )
        assert resp.status_code == 422
        assert _balance(client, acc) == "100.00"


class TestPromos:

    def test_create_and_redeem(self, client):
        acc = _open_account(client)
        created = client.post("/admin/promos", json={"code": "welcome10", "bonus_amount": "10"}, headers=ADMIN)
        assert created.status_code == 201
        assert created.json()["code"] == "WELCOME10"

        resp = client.post("/api/promos/redeem", json={"account_id": acc, "code": "Welcome10"}, headers=PLAYER)
        assert resp.status_code == 200
        assert resp.json()["new_balance"] == "110.00"

        again = client.post("/api/promos/redeem", json={"account_id": acc, "code": "WELCOME10"}, headers=PLAYER)
        assert again.status_code == 409
        assert again.json()["error"] == "already_redeemed"

    def test_deactivate_and_list(self, client):
        acc = _open_account(client)
        client.post("/admin/promos", json={"code": "SPRING", "bonus_amount": "5"}, headers=ADMIN)
        client.post("/admin/promos", json={"code": "SUMMER", "bonus_amount": "5"}, headers=ADMIN)

        assert client.post("/admin/promos/spring/deactivate", headers=PLAYER).status_code == 403
        resp = client.post("/admin/promos/spring/deactivate", headers=ADMIN)
        assert resp.status_code == 200
        assert resp.json() == {"code": "SPRING", "is_active": False}
        assert client.post("/admin/promos/spring/deactivate", headers=ADMIN).status_code == 404

        active = client.get("/admin/promos", params={"active_only": True}, headers=ADMIN).json()
        assert [p["code"] for p in active] == ["SUMMER"]
        assert len(client.get("/admin/promos", headers=ADMIN).json()) == 2

        redeemed = client.post("/api/promos/redeem", json={"account_id": acc, "code": "SPRING"}, headers=PLAYER)
        assert redeemed.status_code == 410
        assert redeemed.json()["error"] == "expired"
        assert _balance(client, acc) == "100.00"


class TestCrash:

    def test_bet_and_state(self, client, monkeypatch):
        monkeypatch.setenv("CRASH_ENGINE_ENABLED", "true")
        acc = _open_account(client)
        resp = client.post("/api/crash/bets", json={"account_id": acc, "stake": "5", "auto_cashout": "2.00"}, headers=PLAYER)

        assert resp.status_code == 201
        assert resp.json()["status"] == "active"
        assert _balance(client, acc) == "95.00"

        state = client.get("/api/crash/state", headers=PLAYER).json()
        assert state["phase"] == "countdown"
        assert state["bets"] == 1
        assert "crash_point" not in state

        history = client.get("/api/crash/history", headers=PLAYER).json()
        assert history[0]["crash_point"] is None

    def test_cashout_without_round(self, client):
        acc = _open_account(client)
        resp = client.post("/api/crash/cashout", json={"account_id": acc}, headers=PLAYER)
        assert resp.status_code == 409
        assert resp.json()["error"] == "round_closed"

    def test_bet_refused_while_engine_disabled(self, client):
        acc = _open_account(client)
        resp = client.post("/api/crash/bets", json={"account_id": acc, "stake": "10"}, headers=PLAYER)

        assert resp.status_code == 409
        assert resp.json()["error"] == "round_closed"
        assert _balance(client, acc) == "100.00"
        assert client.get("/api/crash/state", headers=PLAYER).json()["round_id"] is None
