"""
session.py – per-session P/L accounting, TP/SL thresholds and cooldown
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional


@dataclass
class SessionTracker:
    take_profit: float
    stop_loss: float
    profit: float = 0.0
    trade_count: int = 0
    wins: int = 0
    losses: int = 0
    session_no: int = 0
    started_at: Optional[float] = None
    cooldown_until: Optional[float] = None

    def record_trade(self) -> None:
        self.trade_count += 1

    def record_settlement(self, profit: float) -> bool:
        """
        Book a realised result.  Returns True when the session profit has
        reached take-profit or fallen to stop-loss.
        """
        # rounded so repeated cent stakes don't drift past a threshold
        self.profit = round(self.profit + profit, 8)
        if profit > 0:
            self.wins += 1
        else:
            self.losses += 1
        return self.threshold_crossed()

    def threshold_crossed(self) -> bool:
        return self.profit >= self.take_profit or self.profit <= self.stop_loss

    # ── cooldown ────────────────────────────────────────────────────
    @property
    def in_cooldown(self) -> bool:
        return self.cooldown_until is not None

    def enter_cooldown(self, now: float, duration: float) -> float:
        self.cooldown_until = now + duration
        return self.cooldown_until

    def is_cooldown_expired(self, now: float) -> bool:
        return self.cooldown_until is not None and now >= self.cooldown_until

    def reset(self, now: Optional[float] = None) -> None:
        """Start a brand-new session (mode/ladder reset is the caller's)."""
        self.profit = 0.0
        self.trade_count = 0
        self.wins = 0
        self.losses = 0
        self.cooldown_until = None
        self.started_at = now
        self.session_no += 1

    def summary(self, now: Optional[float] = None) -> Dict[str, Any]:
        return {
            "session": self.session_no,
            "profit": self.profit,
            "trades": self.trade_count,
            "wins": self.wins,
            "losses": self.losses,
            "started_at": self.started_at,
            "ended_at": now,
        }
