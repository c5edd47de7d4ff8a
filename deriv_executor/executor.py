#!/usr/bin/env python3
"""
executor.py – Deriv tick stream ↔ signal engine
-----------------------------------------------
* Connects (and authorizes unless DRY_RUN), subscribes to SYMBOL ticks.
* Every tick is handed to the engine as its own task; the engine drops
  ticks that arrive while a previous one is still in flight.
* Connection loss → log, back off RECONNECT_SEC, reconnect.  The engine
  keeps its state across reconnects.
* The stream ends when the engine stops (stop(), trade cap, `stop`
  command); nothing streams while the engine is idle.
* Heartbeat `heartbeat:deriv_executor` every HEARTBEAT_SEC (Redis only).
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional, Set

from shared.config import env
from shared.logging import get_logger
from shared.redis_client import REDIS_URL, RedisEventSink, heartbeat
from signal_engine.engine import TradeEngine
from signal_engine.events import EventSink, FanoutSink, LoggingSink, MemorySink
from signal_engine.rules import EngineConfig, Tick, TransportFailure

from .deriv_client import DerivClient
from .paper_broker import PaperBroker

# ───── CONFIG ────────────────────────────────────────────────────────
DRY_RUN       = env("DRY_RUN", False, bool)
RECONNECT_SEC = env("RECONNECT_SEC", 5.0, float)
HEARTBEAT_SEC = env("HEARTBEAT_SEC", 15.0, float)
SERVICE       = "deriv_executor"

log = get_logger(SERVICE)


def build_sink(memory: Optional[MemorySink] = None) -> EventSink:
    """JSON log always; Redis when REDIS_URL is set; memory ring if given."""
    sinks: list = [LoggingSink()]
    if REDIS_URL:
        sinks.append(RedisEventSink())
    if memory is not None:
        sinks.append(memory)
    return FanoutSink(*sinks)


class Executor:
    def __init__(
        self,
        config: EngineConfig,
        symbol: Optional[str] = None,
        app_id: Optional[str] = None,
        token: Optional[str] = None,
        dry_run: bool = DRY_RUN,
        sink: Optional[EventSink] = None,
        client: Optional[DerivClient] = None,
    ) -> None:
        self.dry_run = dry_run
        # paper trading streams public ticks: no token, no authorize
        self.client = client or DerivClient(app_id=app_id,
                                            token="" if dry_run else token,
                                            symbol=symbol)
        self.paper = PaperBroker(decimals=config.quote_decimals) if dry_run else None
        broker = self.paper if self.paper is not None else self.client
        self.engine = TradeEngine(broker, config, sink or build_sink())

        self._stopping = False
        self._inflight: Set[asyncio.Task] = set()
        self._last_hb = 0.0

    @property
    def active(self) -> bool:
        return not self._stopping and self.engine.is_running

    async def run(self) -> None:
        """
        Stream until `stop()` or until the engine stops itself (trade cap,
        a `stop` command).  Calling run() again restarts the engine.
        """
        log.info("executor up – %s on %s", "DRY-RUN" if self.dry_run else "LIVE",
                 self.client.symbol)
        self._stopping = False
        self.engine.start()
        while self.active:
            try:
                await self.client.connect()
                async for tick in self.client.subscribe_ticks():
                    if not self.active:
                        break
                    self.dispatch(tick)
                    self._heartbeat()
            except TransportFailure as exc:
                log.error("tick stream failed – %s", exc)
            finally:
                await self.client.close()
            if self.active:
                log.info("reconnecting in %.0f s", RECONNECT_SEC)
                await asyncio.sleep(RECONNECT_SEC)
        log.info("executor stopped")

    def dispatch(self, tick: Tick) -> asyncio.Task:
        if self.paper is not None:
            self.paper.observe(tick)
        task = asyncio.create_task(self.engine.on_tick(tick))
        self._inflight.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error("tick handling crashed – %r", task.exception())

    def _heartbeat(self) -> None:
        now = time.time()
        if now - self._last_hb >= HEARTBEAT_SEC:
            heartbeat(SERVICE)
            self._last_hb = now

    async def stop(self) -> None:
        self._stopping = True
        self.engine.stop()
        await self.client.close()


def main() -> None:
    executor = Executor(EngineConfig.from_env())
    try:
        asyncio.run(executor.run())
    except KeyboardInterrupt:
        log.info("interrupted – bye")


if __name__ == "__main__":
    main()
