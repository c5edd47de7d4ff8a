"""
monitor.py – outstanding positions and settlement polling
=========================================================
One PRIMARY leg or two RECOVERY legs at a time.  Every leg is polled
until the broker reports it sold; only then is the combined result
handed back to the engine.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from .rules import Broker, Mode


@dataclass
class Position:
    contract_id: str
    mode: Mode
    contract_type: str
    stake: float
    placed_at: float
    barrier: Optional[int] = None
    buy_price: float = 0.0
    settled: bool = False
    profit: float = 0.0


@dataclass(frozen=True)
class SettlementResult:
    profit: float
    legs: Tuple[Position, ...]

    @property
    def won(self) -> bool:
        return self.profit > 0


class ContractMonitor:
    def __init__(self) -> None:
        self._positions: List[Position] = []

    def track(self, position: Position) -> None:
        self._positions.append(position)

    @property
    def outstanding(self) -> Tuple[Position, ...]:
        return tuple(self._positions)

    @property
    def pending(self) -> Tuple[Position, ...]:
        return tuple(p for p in self._positions if not p.settled)

    @property
    def waiting(self) -> bool:
        return bool(self._positions)

    def clear(self) -> List[Position]:
        dropped, self._positions = self._positions, []
        return dropped

    async def poll(self, broker: Broker) -> Optional[SettlementResult]:
        """
        Ask the broker about every unsettled leg.  None while any leg is
        still open; broker errors propagate to the caller untouched.
        """
        for pos in self.pending:
            res = await broker.check_settlement(pos.contract_id)
            if res is None or not res.is_sold:
                continue
            pos.settled = True
            pos.profit = float(res.profit)

        if not self._positions or self.pending:
            return None
        total = round(sum(p.profit for p in self._positions), 8)
        return SettlementResult(total, tuple(self._positions))
