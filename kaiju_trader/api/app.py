"""
KAIJU TRADER — FastAPI Application
Thin HTTP/WebSocket adapter over the trading engine's control surface.
"""
import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from kaiju_trader.config.settings import get_settings
from kaiju_trader.engines.trading_engine import TradingEngine, build_engine
from kaiju_trader.utils.helpers import utc_timestamp
from kaiju_trader.utils.logger import get_logger, setup_logging

logger = get_logger("api")

# Application state
app_state: Dict[str, Any] = {
    "instance_id": str(uuid.uuid4())[:8],
    "started_at": None,
    "engine": None,
    "autostart": True,
    "ws_clients": 0,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan — build and start the engine, stop it on shutdown."""
    setup_logging()
    settings = get_settings()
    app_state["started_at"] = utc_timestamp()

    engine: TradingEngine = app_state["engine"] or build_engine(settings)
    app_state["engine"] = engine
    logger.info("kaiju_trader_starting",
                version=settings.version,
                instance=app_state["instance_id"],
                mode=settings.trading.mode,
                pairs=settings.trading.pairs)
    if app_state["autostart"]:
        await engine.start()
    logger.info("kaiju_trader_ready")

    yield

    logger.info("kaiju_trader_shutting_down")
    await engine.close()


app = FastAPI(
    title="KAIJU TRADER",
    description="Automated trading engine control surface",
    version="1.0.0",
    lifespan=lifespan,
)


def _engine() -> TradingEngine:
    engine = app_state["engine"]
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


# ─── Health & Status ────────────────────────────────────────────

@app.get("/healthz", tags=["System"])
async def health_check():
    """Fast liveness check."""
    engine = app_state["engine"]
    return JSONResponse(
        status_code=200,
        content={
            "status": "healthy",
            "instance": app_state["instance_id"],
            "engine_state": engine.state.value if engine else None,
            "uptime_since": app_state["started_at"],
            "timestamp": utc_timestamp(),
        },
    )


@app.get("/status", tags=["System"])
async def status():
    settings = get_settings()
    return {
        "app": {
            "name": settings.app_name,
            "version": settings.version,
            "instance_id": app_state["instance_id"],
            "started_at": app_state["started_at"],
            "ws_clients": app_state["ws_clients"],
        },
        "engine": _engine().status,
        "timestamp": utc_timestamp(),
    }


# ─── Ledger & Risk ──────────────────────────────────────────────

@app.get("/positions", tags=["Portfolio"])
async def positions():
    return [p.model_dump(mode="json") for p in _engine().get_positions()]


@app.get("/trades", tags=["Portfolio"])
async def trades(limit: int = Query(default=100, ge=1, le=1000)):
    return [t.model_dump(mode="json") for t in _engine().get_trades()[-limit:]]


@app.get("/risk-metrics", tags=["Risk"])
async def risk_metrics():
    engine = _engine()
    return {
        **engine.get_risk_metrics().model_dump(mode="json"),
        "circuit_breaker_active": engine.risk_manager.is_circuit_breaker_active(),
    }


# ─── Control ────────────────────────────────────────────────────

@app.post("/analyze", tags=["Control"])
async def analyze():
    """Run an analysis cycle now, or queue one if a cycle is in progress."""
    summary = await _engine().force_analysis()
    if summary is None:
        return JSONResponse(status_code=202, content={"queued": True, "timestamp": utc_timestamp()})
    return {"queued": False, "summary": summary, "timestamp": utc_timestamp()}


# ─── Event stream ───────────────────────────────────────────────

@app.websocket("/ws")
async def event_stream(websocket: WebSocket):
    engine = _engine()
    await websocket.accept()
    subscription = engine.subscribe()
    app_state["ws_clients"] += 1
    logger.info("ws_client_connected", clients=app_state["ws_clients"])

    await websocket.send_json({
        "type": "connected",
        "data": {
            "status": engine.status,
            "positions": [p.model_dump(mode="json") for p in engine.get_positions()],
            "risk_metrics": engine.get_risk_metrics().model_dump(mode="json"),
        },
        "timestamp": utc_timestamp(),
    })

    async def pump():
        async for event in subscription:
            await websocket.send_json(event.model_dump(mode="json"))

    pump_task = asyncio.create_task(pump())
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        pump_task.cancel()
        subscription.close()
        app_state["ws_clients"] -= 1
        logger.info("ws_client_disconnected", clients=app_state["ws_clients"])
