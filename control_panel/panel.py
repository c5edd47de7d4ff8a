#!/usr/bin/env python3
"""
panel.py – REST control surface for the digit bot
-------------------------------------------------
Environment
-----------
API_PORT          port for the REST API          (default: 3000)
DERIV_APP_ID      Deriv application id           (default: 115442)
DERIV_API_TOKEN   API token used by /api/start   (default: empty)
SYMBOL            synthetic index to trade       (default: R_100)
DRY_RUN           paper broker instead of live   (default: 0)

Endpoints
---------
GET  /api/config    default form values
POST /api/start     build config from body, start executor task
POST /api/stop      stop engine + executor
GET  /api/status    running flag, P/L, balance, last 20 events
GET  /api/logs      every buffered event
POST /api/command   forward "start" / "stop" / … to the engine (start reopens the stream)
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from deriv_executor import executor as ex
from deriv_executor.deriv_client import APP_ID, SYMBOL, TOKEN
from shared.config import env
from shared.constants import EVENT_BUFFER
from shared.logging import get_logger
from shared.redis_client import last_heartbeat
from signal_engine.events import MemorySink
from signal_engine.rules import EngineConfig, InvalidConfiguration

# ───── CONFIG ──────────────────────────────────────────────────────────
API_PORT = env("API_PORT", 3000, int)

log = get_logger("control_panel")

# ───── PROCESS STATE ──────────────────────────────────────────────────
events = MemorySink(EVENT_BUFFER)
_executor: Optional[ex.Executor] = None
_task: Optional[asyncio.Task] = None


class Command(BaseModel):
    command: str


def _running() -> bool:
    return _executor is not None and _executor.engine.is_running


# ───── REST API ───────────────────────────────────────────────────────
app = FastAPI(title="Digit Bot Control Panel", docs_url=None, redoc_url=None)


@app.get("/api/config")
def get_config() -> Dict[str, Any]:
    cfg = EngineConfig.from_env()
    return {
        "appId": APP_ID,
        "token": TOKEN,
        "symbol": SYMBOL,
        "dryRun": ex.DRY_RUN,
        "maxTrades": cfg.max_trades,
        "baseStake": cfg.base_stake,
        "martingaleStakes": ", ".join(f"{s:.2f}" for s in cfg.primary_stakes),
        "overUnderStakes": ", ".join(f"{s:.2f}" for s in cfg.recovery_stakes),
        "takeProfit": cfg.take_profit,
        "stopLoss": cfg.stop_loss,
        "cooldownDuration": cfg.cooldown_ms,
        "minInterval": cfg.min_interval_ms,
        "triggerDigits": ",".join(str(d) for d in sorted(cfg.trigger_digits)),
        "enableRecovery": cfg.enable_recovery,
    }


@app.post("/api/start")
async def start(payload: Dict[str, Any]) -> Dict[str, Any]:
    global _executor, _task
    if _running():
        raise HTTPException(status_code=400, detail="Bot is already running")
    try:
        cfg = EngineConfig.from_mapping(payload)
    except InvalidConfiguration as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    if _task is not None and not _task.done():
        await _shutdown()

    events.clear()
    dry_run = payload.get("dryRun", payload.get("dry_run", ex.DRY_RUN))
    if isinstance(dry_run, str):
        dry_run = dry_run.strip().lower() in ("1", "true", "yes", "on")
    _executor = ex.Executor(
        cfg,
        symbol=payload.get("symbol") or SYMBOL,
        app_id=payload.get("appId") or APP_ID,
        token=payload.get("token") or TOKEN,
        dry_run=bool(dry_run),
        sink=ex.build_sink(events),
    )
    # started here, not only inside run(), so a second POST sees it running
    _executor.engine.start()
    _task = asyncio.create_task(_executor.run())
    log.info("bot started (dry_run=%s)", bool(dry_run))
    return {"success": True, "message": "Bot started successfully"}


async def _shutdown() -> None:
    global _task
    if _executor is not None:
        await _executor.stop()
    if _task is not None and not _task.done():
        _task.cancel()
        await asyncio.gather(_task, return_exceptions=True)
    _task = None


@app.post("/api/stop")
async def stop() -> Dict[str, Any]:
    await _shutdown()
    log.info("bot stopped by user")
    return {"success": True, "message": "Bot stopped"}


@app.get("/api/status")
def status() -> Dict[str, Any]:
    snap = _executor.engine.snapshot() if _executor is not None else {}
    client = _executor.client if _executor is not None else None
    return {
        "isRunning": _running(),
        "sessionProfit": snap.get("session_profit", 0.0),
        "tradeCount": snap.get("trade_count", 0),
        "balance": client.balance_value if client is not None else None,
        "currency": client.currency if client is not None else "USD",
        "heartbeat": last_heartbeat(ex.SERVICE),
        "engine": snap,
        "logs": events.entries(last=20),
    }


@app.get("/api/logs")
def logs() -> Dict[str, Any]:
    return {"logs": events.entries()}


@app.post("/api/command")
async def command(cmd: Command) -> Dict[str, Any]:
    global _task
    if _executor is None:
        raise HTTPException(status_code=400, detail="Bot has not been started")
    accepted = _executor.engine.handle_command(cmd.command)
    # the executor's stream ends whenever the engine stops; reopen it
    if _executor.engine.is_running and (_task is None or _task.done()):
        _task = asyncio.create_task(_executor.run())
        log.info("tick stream reopened by command")
    return {"accepted": accepted, "state": _executor.engine.state.value}


def main() -> None:
    log.info("control panel on http://0.0.0.0:%d", API_PORT)
    uvicorn.run(app, host="0.0.0.0", port=API_PORT, log_level="warning")


if __name__ == "__main__":
    main()
