"""
FastAPI Application - Perp Arbitrage Scanner API

Serves the latest cross-exchange opportunities and connector health.

Supported Exchanges:
    - OKX, Bybit, Binance Futures (USD-M), Backpack, EdgeX, Hyperliquid

Response Envelope:
    {"success": true, "data": {...}}

Usage:
    uvicorn app.main:app --reload --host 0.0.0.0 --port 8000

Docs:
    - Swagger: http://localhost:8000/docs
    - ReDoc: http://localhost:8000/redoc
"""

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from core.config import settings, validate_configuration
from core.exchange_manager import ExchangeManager
from core.logging import logger
from core.schemas import ConnectionState
from services.aggregator import AggregationEngine
from services.stats_reporter import StatsReporter


# ============================================
# Lifespan Management
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown."""
    # Startup
    logger.info("=== Application Starting ===")
    try:
        validate_configuration()
        await manager.start_all()
        await engine.start()
        await reporter.start()
        logger.info("=== Started Successfully ===")
    except Exception as e:
        logger.error(f"Startup failed: {e}")
        raise

    yield

    # Shutdown
    logger.info("=== Shutting Down ===")
    try:
        await reporter.stop()
    except Exception as e:
        logger.error(f"Error stopping StatsReporter: {e}")
    try:
        await engine.stop()
    except Exception as e:
        logger.error(f"Error stopping AggregationEngine: {e}")
    try:
        await manager.stop_all()
    except Exception as e:
        logger.error(f"Error stopping ExchangeManager: {e}")
    logger.info("=== Shutdown Complete ===")


# ============================================
# FastAPI Application
# ============================================

app = FastAPI(
    title="Perp Arbitrage Scanner API",
    description=(
        "Cross-exchange price and funding-rate arbitrage signals for perpetual futures.\n\n"
        "## REST Endpoints\n"
        "- `GET /api/opportunities` - Latest opportunities\n"
        "- `GET /api/opportunities/{symbol}` - Opportunities for one base asset\n"
        "- `GET /api/status` - Aggregation status and funding maps\n"
        "- `GET /api/exchanges/{exchange}/status` - Connection state and counters\n"
        "- `GET /api/exchanges/{exchange}/funding` - Current funding map\n"
        "- `GET /api/websocket/status` - Streaming session details\n"
        "- `GET /health` - Health check\n"
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

manager = ExchangeManager()
engine = AggregationEngine(
    manager.store,
    manager.stats,
    exchanges=manager.exchange_order,
    interval_ms=settings.aggregation_interval_ms,
    price_grouping=settings.price_grouping,
    funding_grouping=settings.funding_grouping,
)
reporter = StatsReporter(manager.stats, manager.exchange_order, interval_s=settings.summary_interval_s)


def envelope(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def _funding_map(exchange: str) -> Dict[str, Any]:
    return {symbol: record.model_dump() for symbol, record in manager.get_funding_map(exchange).items()}


# ============================================
# System Endpoints
# ============================================

@app.get("/", tags=["System"])
async def root():
    """API information and configured exchanges."""
    return envelope({
        "name": "Perp Arbitrage Scanner API",
        "version": "1.0.0",
        "status": "operational",
        "docs": "/docs",
        "exchanges": manager.list_exchanges(),
    })


@app.get("/health", tags=["System"])
async def health_check():
    """Per-exchange connection states; degraded when any exchange is not connected."""
    states = {}
    for name in manager.list_exchanges():
        state, _ = manager.get_exchange_status(name)
        states[name] = state.value
    healthy = bool(states) and all(s == ConnectionState.CONNECTED.value for s in states.values())
    return envelope({
        "status": "healthy" if healthy else "degraded",
        "exchanges": states,
    })


# ============================================
# Opportunities
# ============================================

@app.get("/api/opportunities", tags=["Opportunities"])
async def get_opportunities():
    opportunities, last_update = engine.get_latest_opportunities()
    return envelope({
        "opportunities": [o.model_dump() for o in opportunities],
        "lastUpdate": last_update,
        "count": len(opportunities),
    })


@app.get("/api/opportunities/{symbol}", tags=["Opportunities"])
async def get_opportunities_for_symbol(symbol: str):
    """Opportunities for one base asset (case-insensitive), e.g. /api/opportunities/btc."""
    opportunities, last_update = engine.get_latest_opportunities()
    matching = [o for o in opportunities if o.symbol.upper() == symbol.upper()]
    return envelope({
        "opportunities": [o.model_dump() for o in matching],
        "lastUpdate": last_update,
        "count": len(matching),
    })


@app.get("/api/status", tags=["Opportunities"])
async def get_status():
    opportunities, last_update = engine.get_latest_opportunities()
    return envelope({
        "lastUpdate": last_update,
        "totalOpportunities": len(opportunities),
        "isRunning": engine.is_running,
        "fundingMaps": {name: _funding_map(name) for name in manager.list_exchanges()},
    })


# ============================================
# Exchanges
# ============================================

@app.get("/api/exchanges/{exchange}/status", tags=["Exchanges"])
async def get_exchange_status(exchange: str):
    try:
        state, counters = manager.get_exchange_status(exchange)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return envelope({
        "exchange": exchange.lower(),
        "state": state.value,
        "counters": counters,
    })


@app.get("/api/exchanges/{exchange}/funding", tags=["Exchanges"])
async def get_exchange_funding(exchange: str):
    try:
        funding = _funding_map(exchange)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return envelope({
        "exchange": exchange.lower(),
        "funding": funding,
        "count": len(funding),
    })


@app.get("/api/websocket/status", tags=["Exchanges"])
async def get_websocket_status():
    return envelope(manager.streaming_status())
