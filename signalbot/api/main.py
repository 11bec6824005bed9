"""
FastAPI backend: webhook intake, risk sweep and position endpoints for SignalBot.
"""
from contextlib import asynccontextmanager
import logging
import sys
import os

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

from signalbot.database import (
    init_db, get_bot, get_position, list_orders, list_signals, get_bot_stats,
)
from signalbot.core.errors import PriceUnavailableError, SignalBotError
from signalbot.core.executor import close_position
from signalbot.core.guard import load_bot_context, resolve_price
from signalbot.core.monitor import PositionMonitor
from signalbot.core.normalizer import EXAMPLE_PAYLOADS
from signalbot.core.pipeline import SignalPipeline
from signalbot.models.trade import CloseReason, PositionStatus
from config.settings import settings

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("signalbot")

for _problem in settings.validate():
    logger.warning("Config: %s", _problem)

# Initialize SQLite database
init_db()

# ── Global state ──
pipeline = SignalPipeline()
monitor = PositionMonitor()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.MONITOR_INTERVAL_SECONDS > 0:
        monitor.start(settings.MONITOR_INTERVAL_SECONDS)
    yield
    monitor.stop()


app = FastAPI(title="SignalBot API", version="1.0.0", lifespan=lifespan)

# ── CORS, restricted to known origins ──
_cors_origins = [o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── API-key auth (single middleware for all routes) ──
_API_KEY = settings.API_KEY
# Webhook URLs carry the bot id, cron carries CRON_SECRET
_PUBLIC_PREFIXES = ("/api/health", "/api/webhook/", "/api/cron/")


class APIKeyMiddleware(BaseHTTPMiddleware):
    """Reject requests without a valid API key. Skips public routes and when API_KEY is unset."""
    async def dispatch(self, request: Request, call_next):
        if _API_KEY and not request.url.path.startswith(_PUBLIC_PREFIXES):
            key = request.headers.get("x-api-key") or request.query_params.get("api_key")
            if key != _API_KEY:
                return JSONResponse({"detail": "Invalid or missing API key"}, status_code=401)
        return await call_next(request)


app.add_middleware(APIKeyMiddleware)


def _error_response(error: SignalBotError) -> JSONResponse:
    return JSONResponse({"success": False, **error.to_dict()}, status_code=error.status_code)


# ──────────────────────────────────────
# WEBHOOK
# ──────────────────────────────────────

@app.post("/api/webhook/signal-bot/{bot_id}")
async def webhook_signal(bot_id: str, request: Request):
    raw = await request.body()
    content_type = request.headers.get("content-type")
    result = await run_in_threadpool(pipeline.process_alert, raw, content_type, bot_id)
    if result.success:
        return result.model_dump(mode="json", exclude={"status_code", "error", "category"})

    body = {
        "success": False,
        "category": result.category,
        "error": result.error,
        "signal_id": result.signal_id,
    }
    if result.details:
        body["details"] = result.details
    return JSONResponse(body, status_code=result.status_code)


@app.get("/api/webhook/signal-bot/{bot_id}")
def webhook_info(bot_id: str, request: Request):
    """Webhook URL, bot summary and the latest signals for setup screens."""
    bot = get_bot(bot_id)
    if not bot:
        raise HTTPException(status_code=404, detail="Bot not found")
    return {
        "bot": {
            "id": bot["id"],
            "name": bot["name"],
            "is_active": bot["is_active"],
            "account_type": bot["account_type"],
            "symbols": bot["symbols"],
            "trade_amount": bot["trade_amount"],
            "trade_amount_type": bot["trade_amount_type"],
        },
        "webhook_url": str(request.url),
        "formats": {
            "json": EXAMPLE_PAYLOADS["json"],
            "text": EXAMPLE_PAYLOADS["text"].replace("<botId>", bot_id),
        },
        "recent_signals": list_signals(bot_id, limit=10),
    }


# ──────────────────────────────────────
# RISK SWEEP
# ──────────────────────────────────────

@app.api_route("/api/cron/monitor-positions", methods=["GET", "POST"])
def cron_monitor_positions(request: Request):
    if settings.CRON_SECRET:
        auth = request.headers.get("authorization", "")
        if auth != f"Bearer {settings.CRON_SECRET}":
            raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        report = monitor.run_sweep()
    except Exception as e:
        logger.error("Monitor sweep failed: %s", e)
        raise HTTPException(status_code=500, detail="Failed to monitor positions")
    return {"success": True, **report.model_dump()}


# ──────────────────────────────────────
# POSITIONS / BOTS
# ──────────────────────────────────────

@app.get("/api/positions/{position_id}")
def position_detail(position_id: str):
    position = get_position(position_id)
    if not position:
        raise HTTPException(status_code=404, detail="Position not found")
    return {**position, "orders": list_orders(position_id)}


@app.post("/api/positions/{position_id}/market-close")
def position_market_close(position_id: str):
    position = get_position(position_id)
    if not position:
        raise HTTPException(status_code=404, detail="Position not found")
    if position["status"] != PositionStatus.OPEN.value:
        raise HTTPException(status_code=400, detail=f"Position is {position['status']}, not OPEN")

    try:
        ctx = load_bot_context(position["bot_id"], require_active=False)
        exchange = pipeline.exchange_factory(ctx.exchange)
        try:
            price = resolve_price(exchange, position["symbol"])
        except PriceUnavailableError:
            logger.warning("No reference price for manual close of %s, using fill price", position_id)
            price = None
        result = close_position(ctx, position_id, exchange, reason=CloseReason.MANUAL, reference_price=price)
    except SignalBotError as e:
        logger.error("Market close failed for %s: %s", position_id, e)
        return _error_response(e)

    if not result.success:
        return JSONResponse(
            {"success": False, "category": "EXCHANGE_REJECTION", "error": result.message,
             "position_status": result.position_status.value if result.position_status else None},
            status_code=500,
        )
    return result.model_dump(mode="json")


@app.get("/api/bots/{bot_id}/stats")
def bot_stats(bot_id: str):
    if not get_bot(bot_id):
        raise HTTPException(status_code=404, detail="Bot not found")
    return get_bot_stats(bot_id)


# ──────────────────────────────────────
# HEALTH
# ──────────────────────────────────────

@app.get("/api/health")
def health():
    return {
        "status": "ok",
        "monitor_running": monitor.is_running,
        "last_sweep": monitor.last_sweep.isoformat() if monitor.last_sweep else None,
    }
