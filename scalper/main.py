import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, StrictBool

from scalper.core.config import settings
from scalper.core.errors import ConfigurationError, ModeSwitchRejected
from scalper.ops.events import BOT_STATE, PORTFOLIO_UPDATE, EventBus
from scalper.persistence.writer import PersistenceWriter
from scalper.runner.engine import TradingEngine, build_engine

log = logging.getLogger("scalper.api")

app = FastAPI(title="Martingale Scalper")

bus = EventBus()
engine_instance: Optional[TradingEngine] = None
writer_instance: Optional[PersistenceWriter] = None
loop_task: Optional[asyncio.Task] = None

SENSITIVE_KEYS = {
    "PRIVATE_KEY",
    "GROQ_API_KEY",
}


class StatusBody(BaseModel):
    active: StrictBool


class ModeBody(BaseModel):
    mode: str


def get_engine() -> TradingEngine:
    global engine_instance, writer_instance
    if engine_instance is None:
        engine_instance, writer_instance = build_engine(settings, bus=bus)
    return engine_instance


async def engine_loop(engine: TradingEngine, interval_seconds: float):
    """Calls engine.run_tick() off the event loop every interval_seconds."""
    while True:
        try:
            await asyncio.to_thread(engine.run_tick)
        except asyncio.CancelledError:
            raise
        except Exception:
            # run_tick handles its own errors; this is the last line
            log.exception("engine loop iteration failed")
        await asyncio.sleep(interval_seconds)


@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    try:
        warnings = settings.validate_runtime()
        for w in warnings:
            log.warning("[CONFIG WARNING] %s", w)
    except ValueError as e:
        # Fail-closed: crash the service rather than running with a dangerous config
        log.error(str(e))
        raise


@app.on_event("startup")
async def _startup_engine():
    global loop_task
    engine = get_engine()
    run_id = engine.open_run()
    log.info("[RUN] started run_id=%s mode=%s", run_id, engine.state.mode.value)

    if settings.EXECUTION_MODE == "live":
        try:
            engine.set_mode("LIVE")
        except (ConfigurationError, ModeSwitchRejected) as e:
            log.error("live mode unavailable, staying in PAPER: %s", e)

    loop_task = asyncio.create_task(engine_loop(engine, settings.SCAN_INTERVAL_SECONDS))


@app.on_event("shutdown")
async def on_shutdown():
    global loop_task
    engine = engine_instance
    if engine is not None:
        engine.set_active(False)

    if loop_task and not loop_task.done():
        loop_task.cancel()
        try:
            await loop_task
        except asyncio.CancelledError:
            pass
    loop_task = None

    if engine is not None:
        engine.close_run()
        log.info("[RUN] stopped run_id=%s", engine.run_id)

    if writer_instance is not None:
        writer_instance.flush()
        writer_instance.close()


# ---------------- HTTP ----------------


@app.get("/health")
async def health():
    engine = get_engine()
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "state": engine.status_detail(),
        "watchlist": list(engine.watchlist),
        "advisory_enabled": settings.advisory_enabled,
        "news_enabled": settings.NEWS_ENABLED,
    }


@app.get("/api/status")
def get_status():
    return get_engine().status()


@app.post("/api/status")
def post_status(body: StatusBody):
    state = get_engine().set_active(body.active)
    return {
        "success": True,
        "active": state["isTrading"],
        "message": "Bot Started" if body.active else "Bot Paused",
    }


@app.post("/api/mode")
def post_mode(body: ModeBody):
    engine = get_engine()
    try:
        state = engine.set_mode(body.mode)
    except (ConfigurationError, ModeSwitchRejected) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "mode": state["mode"]}


@app.get("/api/portfolio")
def get_portfolio():
    return get_engine().executioner.portfolio().to_dict()


@app.get("/api/trades")
def get_trades(limit: int = Query(50, ge=1, le=500)):
    return [t.to_dict() for t in get_engine().executioner.recent_trades(limit)]


@app.get("/api/stats")
def get_stats():
    return get_engine().executioner.stats()


@app.get("/logs/events/tail")
def logs_events_tail(limit: int = 50):
    limit = max(1, min(int(limit), 500))
    engine = get_engine()
    if engine.audit is None:
        return {"count": 0, "events": []}
    events = engine.audit.tail(limit)[::-1]
    return {"count": len(events), "events": events}


def _settings_public_dict() -> Dict[str, Any]:
    data = settings.model_dump()
    # remove/mask secrets
    for k in list(data.keys()):
        if k in SENSITIVE_KEYS and data[k]:
            data[k] = "***"
    return data


@app.get("/debug/config")
async def debug_config():
    return {"config": _settings_public_dict()}


# ---------------- WebSocket ----------------


@app.websocket("/ws")
async def ws_events(websocket: WebSocket):
    await websocket.accept()
    engine = get_engine()
    q = engine.bus.subscribe_queue(asyncio.get_running_loop())
    try:
        await websocket.send_json(
            {"event": PORTFOLIO_UPDATE, "data": engine.executioner.portfolio().to_dict()}
        )
        await websocket.send_json({"event": BOT_STATE, "data": engine.status()})
        while True:
            kind, payload = await q.get()
            await websocket.send_json({"event": kind, "data": payload})
    except WebSocketDisconnect:
        log.info("websocket client disconnected")
    finally:
        engine.bus.unsubscribe_queue(q)
