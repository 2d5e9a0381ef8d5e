"""
Unit Tests for the HTTP API

Routes are exercised with FastAPI's TestClient against an in-memory manager
and engine. The lifespan is not entered, so no connector touches the network.

Run with:
    pytest tests/unit/test_app.py -v
"""

import pytest
from fastapi.testclient import TestClient

from app import main
from core.config import Settings
from core.exchange_manager import ExchangeManager
from core.schemas import ConnectionState, FundingSnapshot, TickerSnapshot
from services.aggregator import AggregationEngine


@pytest.fixture
def manager(monkeypatch):
    config = Settings(_env_file=None, enabled_exchanges="okx,bybit")
    manager = ExchangeManager(config=config)
    monkeypatch.setattr(main, "manager", manager)
    return manager


@pytest.fixture
def engine(monkeypatch, manager):
    engine = AggregationEngine(manager.store, manager.stats, exchanges=manager.exchange_order)
    monkeypatch.setattr(main, "engine", engine)
    return engine


@pytest.fixture
def client(engine):
    return TestClient(main.app)


def seed(manager):
    manager.store.put_ticker(TickerSnapshot(exchange="okx", symbol="BTC/USDT:USDT", last=100.0))
    manager.store.put_ticker(TickerSnapshot(exchange="bybit", symbol="BTC/USDT:USDT", last=101.0))
    manager.store.replace_funding("okx", [
        FundingSnapshot(exchange="okx", symbol="BTC/USDT:USDT", funding_rate=0.0001),
    ])


class TestSystem:

    def test_root_lists_exchanges(self, client):
        body = client.get("/").json()
        assert body["success"] is True
        assert body["data"]["exchanges"] == ["okx", "bybit"]

    def test_health_degraded_until_all_connected(self, client, manager):
        body = client.get("/health").json()["data"]
        assert body["status"] == "degraded"
        assert body["exchanges"] == {"okx": "disconnected", "bybit": "disconnected"}

        for name in manager.list_exchanges():
            manager.get_session(name).state = ConnectionState.CONNECTED
        assert client.get("/health").json()["data"]["status"] == "healthy"


class TestOpportunities:

    def test_empty_before_first_cycle(self, client):
        data = client.get("/api/opportunities").json()["data"]
        assert data == {"opportunities": [], "lastUpdate": None, "count": 0}

    def test_latest_published_list(self, client, manager, engine):
        seed(manager)
        engine.run_cycle()

        data = client.get("/api/opportunities").json()["data"]

        assert data["count"] == 1
        assert data["lastUpdate"] is not None
        [opp] = data["opportunities"]
        assert opp["symbol"] == "BTC"
        assert opp["long_exchange"] == "okx"
        assert opp["short_exchange"] == "bybit"
        assert opp["exchanges"]["okx"]["funding_rate"] == 0.0001
        assert opp["exchanges"]["bybit"]["funding_rate"] is None

    def test_symbol_filter_is_case_insensitive(self, client, manager, engine):
        seed(manager)
        engine.run_cycle()

        assert client.get("/api/opportunities/btc").json()["data"]["count"] == 1
        assert client.get("/api/opportunities/ETH").json()["data"]["count"] == 0

    def test_status(self, client, manager, engine):
        seed(manager)
        engine.run_cycle()

        data = client.get("/api/status").json()["data"]

        assert data["totalOpportunities"] == 1
        assert data["isRunning"] is False
        assert set(data["fundingMaps"]) == {"okx", "bybit"}
        assert data["fundingMaps"]["okx"]["BTC/USDT:USDT"]["funding_rate"] == 0.0001


class TestExchanges:

    def test_exchange_status(self, client, manager):
        manager.stats.record_success("bybit", "tickers", 3)

        data = client.get("/api/exchanges/BYBIT/status").json()["data"]

        assert data["exchange"] == "bybit"
        assert data["state"] == "disconnected"
        assert data["counters"]["tickers"]["success"] == 3

    def test_exchange_funding(self, client, manager):
        seed(manager)
        data = client.get("/api/exchanges/okx/funding").json()["data"]
        assert data["count"] == 1
        assert "BTC/USDT:USDT" in data["funding"]

    @pytest.mark.parametrize("path", [
        "/api/exchanges/kraken/status",
        "/api/exchanges/binance/funding",
    ])
    def test_unknown_or_disabled_exchange_is_404(self, client, path):
        response = client.get(path)
        assert response.status_code == 404
        assert "not supported" in response.json()["detail"]

    def test_websocket_status_lists_streaming_sessions(self, client):
        data = client.get("/api/websocket/status").json()["data"]
        assert list(data) == ["bybit"]
        assert data["bybit"]["state"] == "disconnected"
        assert data["bybit"]["transport"] == "stream"
