import asyncio
import itertools
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pytest

# flat layout: make the service packages importable without an install
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_engine.engine import TradeEngine  # noqa: E402
from signal_engine.rules import EngineConfig, PlacedTrade, Settlement, Tick  # noqa: E402

SIGNAL = 100.01      # last digit 1 → default trigger
QUIET = 100.02       # last digit 2 → no signal


class FakeBroker:
    """Scripted broker: placements succeed unless told otherwise."""

    def __init__(self):
        self.placed: List[dict] = []
        self.results: Dict[str, Settlement] = {}
        self.place_error: Optional[Exception] = None
        self.poll_error: Optional[Exception] = None
        self.polls = 0
        self._ids = itertools.count(1)

    async def place_trade(self, contract_type, stake, duration, duration_unit, barrier=None):
        if self.place_error is not None:
            raise self.place_error
        cid = f"c{next(self._ids)}"
        self.placed.append({
            "id": cid,
            "contract_type": contract_type,
            "stake": stake,
            "barrier": barrier,
            "duration": duration,
            "duration_unit": duration_unit,
        })
        return PlacedTrade(cid, stake)

    async def check_settlement(self, contract_id):
        self.polls += 1
        if self.poll_error is not None:
            raise self.poll_error
        return self.results.get(contract_id)

    def settle(self, profit, contract_id=None):
        cid = contract_id or self.placed[-1]["id"]
        self.results[cid] = Settlement(True, profit, "won" if profit > 0 else "lost")

    @property
    def stakes(self):
        return [p["stake"] for p in self.placed]


class RecordingSink:
    def __init__(self):
        self.events = []

    def __call__(self, event):
        self.events.append(event)

    def kinds(self):
        return [e.kind for e in self.events]

    def of(self, kind):
        return [e for e in self.events if e.kind == kind]


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def config():
    return EngineConfig(
        base_stake=1,
        primary_stakes=(1, 2, 4),
        recovery_stakes=(1, 3, 9),
        take_profit=100,
        stop_loss=-100,
        cooldown_ms=60_000,
        min_interval_ms=2_000,
    )


@pytest.fixture
def engine(broker, config, sink):
    eng = TradeEngine(broker, config, sink)
    eng.start(now=0)
    return eng


def feed(engine, epoch, quote=QUIET):
    asyncio.run(engine.on_tick(Tick(quote, epoch)))
