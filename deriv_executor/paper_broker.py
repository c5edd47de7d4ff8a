"""
paper_broker.py – dry-run broker that settles against the live ticks
--------------------------------------------------------------------
Fills every buy at the stake and resolves it once `duration` further
ticks have been observed, using the exit tick's last digit:

    DIGITODD        win on an odd digit
    DIGITEVEN       win on an even digit
    DIGITOVER  b    win when digit > b
    DIGITUNDER b    win when digit < b

A win pays `stake * ((1 - house_edge) / p_win - 1)`, a loss costs the
stake.  Only tick durations are simulated.

A settled contract is reported once and then forgotten.  Nobody polls
contracts the engine abandoned, so those are dropped after
`retain_ticks` further ticks.
"""
from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Dict, Optional

from shared.config import env
from shared.constants import CONTRACT_ODD, CONTRACT_OVER, CONTRACT_UNDER
from shared.logging import get_logger
from signal_engine.rules import PlacedTrade, PlacementError, Settlement, Tick, signal_digit

CONTRACT_EVEN = "DIGITEVEN"
HOUSE_EDGE = env("PAPER_HOUSE_EDGE", 0.05, float)
RETAIN_TICKS = env("PAPER_RETAIN_TICKS", 50, int)

log = get_logger("paper_broker")


def win_probability(contract_type: str, barrier: Optional[int]) -> float:
    if contract_type in (CONTRACT_ODD, CONTRACT_EVEN):
        return 0.5
    if barrier is None:
        raise PlacementError(f"{contract_type} needs a barrier")
    if contract_type == CONTRACT_OVER:
        return (9 - barrier) / 10
    if contract_type == CONTRACT_UNDER:
        return barrier / 10
    raise PlacementError(f"unsupported contract type {contract_type}")


def is_win(contract_type: str, barrier: Optional[int], digit: int) -> bool:
    if contract_type == CONTRACT_ODD:
        return digit % 2 == 1
    if contract_type == CONTRACT_EVEN:
        return digit % 2 == 0
    if contract_type == CONTRACT_OVER:
        return digit > barrier
    return digit < barrier


@dataclass
class _PaperContract:
    contract_type: str
    barrier: Optional[int]
    stake: float
    ticks_left: int
    settlement: Optional[Settlement] = None
    unclaimed: int = 0          # ticks seen since settling


class PaperBroker:
    def __init__(
        self,
        house_edge: float = HOUSE_EDGE,
        decimals: int = 2,
        retain_ticks: int = RETAIN_TICKS,
    ) -> None:
        self.house_edge = house_edge
        self.decimals = decimals
        self.retain_ticks = retain_ticks
        self.contracts: Dict[str, _PaperContract] = {}
        self._ids = itertools.count(1)

    def observe(self, tick: Tick) -> None:
        """Feed every market tick; open contracts count down and settle."""
        digit = signal_digit(tick.quote, self.decimals)
        for cid, c in list(self.contracts.items()):
            if c.settlement is not None:
                c.unclaimed += 1
                if c.unclaimed > self.retain_ticks:
                    del self.contracts[cid]
                    log.info("paper %s never collected – dropped", cid)
                continue
            c.ticks_left -= 1
            if c.ticks_left > 0:
                continue
            if is_win(c.contract_type, c.barrier, digit):
                p = win_probability(c.contract_type, c.barrier)
                profit = round(c.stake * ((1 - self.house_edge) / p - 1), 2)
                c.settlement = Settlement(True, profit, "won")
            else:
                c.settlement = Settlement(True, -c.stake, "lost")
            log.info("paper %s %s settled on digit %d → %+.2f",
                     cid, c.contract_type, digit, c.settlement.profit)

    async def place_trade(
        self,
        contract_type: str,
        stake: float,
        duration: int,
        duration_unit: str,
        barrier: Optional[int] = None,
    ) -> PlacedTrade:
        if duration_unit != "t":
            raise PlacementError("paper broker only simulates tick durations")
        win_probability(contract_type, barrier)       # validates type/barrier
        cid = f"paper-{next(self._ids)}"
        self.contracts[cid] = _PaperContract(contract_type, barrier, stake, duration)
        log.info("paper BUY %s %s @ %.2f → %s", contract_type,
                 "" if barrier is None else barrier, stake, cid)
        return PlacedTrade(cid, stake)

    async def check_settlement(self, contract_id: str) -> Optional[Settlement]:
        c = self.contracts.get(contract_id)
        if c is None:
            return None
        if c.settlement is None:
            return Settlement(False, 0.0, "open")
        del self.contracts[contract_id]             # reported once, then forgotten
        return c.settlement
