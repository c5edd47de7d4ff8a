"""
engine.py – tick-driven trade engine
====================================

Per tick, in this order:

1. COOLDOWN        → only check whether the cooldown is over.
2. history         → remember the signal digit (last 5).
3. AWAITING        → poll the broker for the open leg(s); on a full
                     settlement book P/L, maybe end the session, else
                     move the ladder / mode.  No new signals.
4. RUNNING         → rate limit, trade cap, evaluate signal, place.

The whole tick is one consistency unit guarded by an asyncio.Lock; a
tick that arrives while another is still in flight is dropped, never
queued.  Broker failures are caught here and leave state untouched so
the next tick simply tries again.

stop() may land while a broker call is awaited.  Whatever that call
returns afterwards is not booked: a contract bought in the gap is
reported as abandoned, a late settlement is ignored.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

from shared.constants import HISTORY_LEN
from shared.logging import get_logger

from .events import Event, EventSink, LoggingSink
from .ladder import ModeController, ModeTransition
from .monitor import ContractMonitor, Position, SettlementResult
from .rules import (
    Broker,
    BrokerError,
    EngineConfig,
    Mode,
    Tick,
    TradeInstruction,
    evaluate,
    signal_digit,
)
from .session import SessionTracker

log = get_logger("signal_engine.engine")


class EngineState(str, Enum):
    STOPPED = "STOPPED"
    RUNNING = "RUNNING"
    AWAITING_SETTLEMENT = "AWAITING_SETTLEMENT"
    COOLDOWN = "COOLDOWN"


class TradeEngine:
    def __init__(
        self,
        broker: Broker,
        config: Optional[EngineConfig] = None,
        sink: Optional[EventSink] = None,
    ) -> None:
        self.broker = broker
        self.cfg = config or EngineConfig()
        self.sink: EventSink = sink or LoggingSink()

        self.modes = ModeController.from_config(self.cfg)
        self.session = SessionTracker(self.cfg.take_profit, self.cfg.stop_loss)
        self.monitor = ContractMonitor()
        self.history: Deque[int] = deque(maxlen=HISTORY_LEN)

        self.is_running = False
        self.last_trade_time: Optional[float] = None
        self._lock = asyncio.Lock()
        # bumped on every start/stop; broker replies from an older run are stale
        self._run = 0

    # ── derived state ───────────────────────────────────────────────
    @property
    def state(self) -> EngineState:
        if not self.is_running:
            return EngineState.STOPPED
        if self.session.in_cooldown:
            return EngineState.COOLDOWN
        if self.monitor.waiting:
            return EngineState.AWAITING_SETTLEMENT
        return EngineState.RUNNING

    @property
    def waiting_for_exit(self) -> bool:
        return self.monitor.waiting

    # ── control surface ─────────────────────────────────────────────
    def start(self, now: Optional[float] = None) -> None:
        if self.is_running:
            return
        self.is_running = True
        self._run += 1
        self._new_session(now)
        self._emit("engine_started", ">>> DIGIT STRATEGY STARTED <<<", now,
                   config=self.cfg.describe())

    def stop(self, now: Optional[float] = None) -> None:
        if not self.is_running:
            return
        self.is_running = False
        self._run += 1
        abandoned = self.monitor.clear()
        if abandoned:
            self._abandon([p.contract_id for p in abandoned], now)
        self._emit("engine_stopped", ">>> STRATEGY STOPPED <<<", now,
                   session=self.session.summary(now))

    def _abandon(self, ids: List[str], now: Optional[float]) -> None:
        self._emit("positions_abandoned",
                   f"Stopped with {len(ids)} open contract(s), no longer tracked: {', '.join(ids)}",
                   now, level=logging.WARNING, contract_ids=ids)

    def handle_command(self, command: str) -> bool:
        cmd = command.strip().lower()
        if cmd == "start":
            self.start()
        elif cmd == "stop":
            self.stop()
        else:
            self._emit("unknown_command", f"Unknown command: {cmd}", command=cmd)
            return False
        return True

    # ── tick entry point ───────────────────────────────────────────
    async def on_tick(self, tick: Tick) -> None:
        if not self.is_running:
            return
        if self._lock.locked():
            log.debug("tick @%s dropped – previous tick still in flight", tick.epoch)
            return
        async with self._lock:
            await self._process(tick)

    async def _process(self, tick: Tick) -> None:
        now = float(tick.epoch)

        if self.session.in_cooldown:
            if self.session.is_cooldown_expired(now):
                self._new_session(now)
                self.last_trade_time = now
                self._emit("cooldown_expired",
                           ">>> COOLDOWN COMPLETE - RESTARTING SESSION <<<", now,
                           session=self.session.session_no)
            return

        try:
            digit = signal_digit(tick.quote, self.cfg.quote_decimals)
        except ValueError as exc:
            log.warning("unusable tick %r – %s", tick, exc)
            return
        self.history.append(digit)

        if self.monitor.waiting:
            await self._check_settlement(now)
            return

        if self.last_trade_time is not None and now - self.last_trade_time < self.cfg.min_interval_s:
            return

        if self.session.trade_count >= self.cfg.max_trades:
            self._emit("trade_cap_reached",
                       f"Trade cap {self.cfg.max_trades} reached – stopping", now,
                       level=logging.WARNING, trades=self.session.trade_count)
            self.stop(now)
            return

        instructions = evaluate(self.modes.mode, digit, self.cfg.trigger_digits)
        if not instructions:
            return

        self._emit("signal",
                   f"⚡ {self.modes.mode.value} Signal: digit {digit} → "
                   + " + ".join(_label(i) for i in instructions),
                   now, digit=digit, mode=self.modes.mode.value,
                   contracts=[_label(i) for i in instructions])
        await self._place(instructions, now)

    # ── placement ──────────────────────────────────────────────────
    async def _place(self, instructions: Tuple[TradeInstruction, ...], now: float) -> None:
        stake = self.modes.current_stake()
        mode = self.modes.mode
        run = self._run
        for ins in instructions:
            if run != self._run:
                return
            try:
                placed = await self.broker.place_trade(
                    ins.contract_type, stake,
                    self.cfg.duration, self.cfg.duration_unit, ins.barrier,
                )
            except BrokerError as exc:
                self._emit("placement_failed", f"Buy Failed: {_label(ins)} – {exc}", now,
                           level=logging.WARNING, contract=_label(ins), stake=stake,
                           error=str(exc))
                continue
            if run != self._run:
                # bought after stop(): live on the broker, unknown to the engine
                self._abandon([str(placed.contract_id)], now)
                return

            self.monitor.track(Position(
                contract_id=str(placed.contract_id),
                mode=mode,
                contract_type=ins.contract_type,
                barrier=ins.barrier,
                stake=stake,
                placed_at=now,
                buy_price=placed.buy_price,
            ))
            self.session.record_trade()
            self._emit("trade_placed",
                       f"Trade Executed → {_label(ins)} @ {stake:.2f} ID: {placed.contract_id}",
                       now, contract_id=str(placed.contract_id), contract=_label(ins),
                       stake=stake, mode=mode.value, level_index=self.modes.level)

    # ── settlement ─────────────────────────────────────────────────
    async def _check_settlement(self, now: float) -> None:
        run = self._run
        try:
            result = await self.monitor.poll(self.broker)
        except BrokerError as exc:
            if run != self._run:
                return
            self._emit("poll_failed", f"Error checking contract: {exc}", now,
                       level=logging.WARNING, error=str(exc),
                       contract_ids=[p.contract_id for p in self.monitor.pending])
            return
        if result is None or run != self._run:
            return

        self.monitor.clear()
        mode = self.modes.mode
        crossed = self.session.record_settlement(result.profit)

        if crossed:
            self._emit_settled(result, mode, now, next_stake=None)
            summary = self.session.summary(now)
            until = self.session.enter_cooldown(now, self.cfg.cooldown_s)
            self._emit("session_ended",
                       f"🛑 Session End. Profit: {self.session.profit:.2f}", now,
                       **summary)
            self._emit("cooldown_entered",
                       f"Cooling down for {self.cfg.cooldown_s:.0f}s", now,
                       until=until)
            return

        transition = self.modes.apply_win() if result.won else self.modes.apply_loss()
        self._emit_settled(result, mode, now, next_stake=self.modes.current_stake())
        self._emit_transition(transition, now)
        self.last_trade_time = now

    def _emit_settled(self, result: SettlementResult, mode: Mode, now: float,
                      next_stake: Optional[float]) -> None:
        outcome = "WIN" if result.won else "LOSS"
        msg = (f"{'✅' if result.won else '❌'} {outcome} ({mode.value}) "
               f"Profit: {result.profit:.2f} | Session Profit: {self.session.profit:.2f}")
        if next_stake is not None:
            msg += f" | Next Stake = {next_stake:.2f}"
        self._emit("settled", msg, now,
                   outcome=outcome.lower(), profit=result.profit, mode=mode.value,
                   session_profit=self.session.profit, next_stake=next_stake,
                   contract_ids=[p.contract_id for p in result.legs])

    def _emit_transition(self, t: ModeTransition, now: float) -> None:
        if t.switched:
            text = ("RECOVERY SUCCESS! Switching back to PRIMARY"
                    if t.mode is Mode.PRIMARY
                    else "MAX LEVEL REACHED (PRIMARY). Switching to RECOVERY")
            self._emit("mode_changed", f">>> {text} <<<", now,
                       previous=t.previous.value, mode=t.mode.value)
        elif t.overflowed:
            self._emit("ladder_reset", f"⚠️ Max Level Reached ({t.mode.value}). Resetting.",
                       now, level=logging.WARNING, mode=t.mode.value)

    # ── helpers ────────────────────────────────────────────────────
    def _new_session(self, now: Optional[float]) -> None:
        self.session.reset(now)
        self.modes.reset()
        self.monitor.clear()

    def _emit(self, kind: str, message: str, now: Optional[float] = None,
              level: int = logging.INFO, **data: Any) -> None:
        event = Event(kind, message, data=data, level=level) if now is None \
            else Event(kind, message, ts=now, data=data, level=level)
        self.sink(event)

    def snapshot(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "state": self.state.value,
            "mode": self.modes.mode.value,
            "ladder_index": self.modes.level,
            "stake": self.modes.current_stake(),
            "session": self.session.session_no,
            "session_profit": self.session.profit,
            "trade_count": self.session.trade_count,
            "wins": self.session.wins,
            "losses": self.session.losses,
            "cooldown_until": self.session.cooldown_until,
            "last_trade_time": self.last_trade_time,
            "open_contracts": [p.contract_id for p in self.monitor.outstanding],
            "digits": list(self.history),
        }


def _label(ins: TradeInstruction) -> str:
    return ins.contract_type if ins.barrier is None else f"{ins.contract_type} {ins.barrier}"
