import pytest
from fastapi.testclient import TestClient

import scalper.main as main
from scalper.core.config import Settings, TradingConfig
from scalper.execution.executor import ExecutionerFactory
from scalper.ops.events import TRADE_LOG, EventBus
from scalper.persistence.audit import Audit
from scalper.runner.engine import TradingEngine
from scalper.strategy.base import Action, Decision, MarketSample


class _Feed:
    def fetch_all(self, tokens):
        return [MarketSample(t, 1.0, 0.0, 0) for t in tokens]


@pytest.fixture
def engine(monkeypatch, db, store, clock, tmp_path):
    s = Settings(WATCHLIST="SOL,JUP", SCAN_INTERVAL_SECONDS=60)
    cfg = TradingConfig.from_settings(s)
    eng = TradingEngine(
        s,
        cfg,
        _Feed(),
        ExecutionerFactory(s, cfg, store=store, clock=clock),
        bus=EventBus(),
        audit=Audit(db, str(tmp_path / "audit.jsonl")),
    )
    monkeypatch.setattr(main, "settings", s)
    monkeypatch.setattr(main, "engine_instance", eng)
    monkeypatch.setattr(main, "writer_instance", None)
    return eng


@pytest.fixture
def client(engine):
    return TestClient(main.app)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "OK"
    assert body["watchlist"] == ["SOL", "JUP"]
    assert body["state"]["mode"] == "PAPER"


def test_status_toggle(client):
    assert client.get("/api/status").json() == {"isTrading": False, "mode": "PAPER"}

    r = client.post("/api/status", json={"active": True})
    assert r.json() == {"success": True, "active": True, "message": "Bot Started"}
    assert client.get("/api/status").json()["isTrading"] is True

    r = client.post("/api/status", json={"active": False})
    assert r.json()["message"] == "Bot Paused"


@pytest.mark.parametrize("body", [{"active": "yes"}, {"active": 1}, {}])
def test_status_requires_boolean(client, body):
    assert client.post("/api/status", json=body).status_code == 422


def test_mode_switch_rejected_while_trading(client, engine):
    client.post("/api/status", json={"active": True})
    r = client.post("/api/mode", json={"mode": "PAPER"})
    assert r.status_code == 400
    assert engine.state.mode.value == "PAPER"


def test_live_mode_without_credentials_is_400(client, engine):
    r = client.post("/api/mode", json={"mode": "LIVE"})
    assert r.status_code == 400
    assert client.get("/api/status").json()["mode"] == "PAPER"


def test_paper_mode_switch_ok(client):
    r = client.post("/api/mode", json={"mode": "paper"})
    assert r.json() == {"success": True, "mode": "PAPER"}


def test_portfolio_trades_stats(client, engine):
    engine.executioner.execute_trade(Decision("SOL", Action.BUY, 80, "t"), 1.0)

    pf = client.get("/api/portfolio").json()
    assert pf["cashBalance"] == pytest.approx(8.8)
    assert [p["token"] for p in pf["positions"]] == ["SOL"]

    trades = client.get("/api/trades", params={"limit": 10}).json()
    assert [t["id"] for t in trades] == ["T1"]
    assert trades[0]["action"] == "BUY"

    assert client.get("/api/stats").json() == {"totalTrades": 1, "winningTrades": 0, "winRate": 0.0}


def test_trades_limit_bounds(client):
    assert client.get("/api/trades", params={"limit": 0}).status_code == 422
    assert client.get("/api/trades", params={"limit": 501}).status_code == 422


def test_event_tail_is_chronological(client):
    client.post("/api/status", json={"active": True})
    client.post("/api/status", json={"active": False})
    body = client.get("/logs/events/tail", params={"limit": 10}).json()
    assert body["count"] == 2
    assert [e["action"] for e in body["events"]] == ["START", "STOP"]


def test_debug_config_masks_secrets(client, monkeypatch):
    monkeypatch.setattr(main, "settings", Settings(GROQ_API_KEY="gsk_secret"))
    cfg = client.get("/debug/config").json()["config"]
    assert cfg["GROQ_API_KEY"] == "***"
    assert cfg["PRIVATE_KEY"] == ""


def test_websocket_sends_snapshot_then_events(client, engine):
    with client.websocket_connect("/ws") as ws:
        first = ws.receive_json()
        assert first["event"] == "portfolio_update"
        assert first["data"]["cashBalance"] == 10.0

        second = ws.receive_json()
        assert second == {"event": "bot_state", "data": {"isTrading": False, "mode": "PAPER"}}

        engine.bus.publish(TRADE_LOG, {"trade": {"id": "T9"}})
        assert ws.receive_json() == {"event": TRADE_LOG, "data": {"trade": {"id": "T9"}}}


def test_startup_and_shutdown_lifecycle(engine):
    with TestClient(main.app) as c:
        assert c.get("/api/status").json()["isTrading"] is False
        assert engine.run_id is not None
        assert main.loop_task is not None
    assert main.loop_task is None
