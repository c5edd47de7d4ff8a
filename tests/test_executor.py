import asyncio
import json

import pytest

from deriv_executor.deriv_client import DerivClient, parse_tick
from deriv_executor.executor import Executor, build_sink
from deriv_executor.paper_broker import PaperBroker, is_win, win_probability
from signal_engine.engine import EngineState
from signal_engine.events import MemorySink
from signal_engine.rules import EngineConfig, PlacementError, Tick, TransportFailure

from conftest import SIGNAL, RecordingSink


# ───── paper broker ───────────────────────────────────────────────────

@pytest.mark.parametrize("ctype, barrier, digit, won", [
    ("DIGITODD", None, 3, True),
    ("DIGITODD", None, 4, False),
    ("DIGITOVER", 5, 6, True),
    ("DIGITOVER", 5, 5, False),
    ("DIGITUNDER", 6, 5, True),
    ("DIGITUNDER", 6, 6, False),
])
def test_paper_outcomes(ctype, barrier, digit, won):
    assert is_win(ctype, barrier, digit) is won


def test_paper_probabilities():
    assert win_probability("DIGITODD", None) == 0.5
    assert win_probability("DIGITOVER", 5) == pytest.approx(0.4)
    assert win_probability("DIGITUNDER", 6) == pytest.approx(0.6)
    with pytest.raises(PlacementError):
        win_probability("CALL", None)


def test_paper_contract_settles_on_next_tick():
    broker = PaperBroker(house_edge=0.05)

    async def scenario():
        placed = await broker.place_trade("DIGITODD", 1.0, 1, "t")
        before = await broker.check_settlement(placed.contract_id)
        broker.observe(Tick(100.03, 2))           # odd → win
        after = await broker.check_settlement(placed.contract_id)
        gone = await broker.check_settlement(placed.contract_id)
        return before, after, gone

    before, after, gone = asyncio.run(scenario())
    assert before.is_sold is False
    assert after.is_sold and after.status == "won"
    assert after.profit == pytest.approx(0.9)
    assert gone is None


def test_paper_loss_costs_stake():
    broker = PaperBroker()

    async def scenario():
        placed = await broker.place_trade("DIGITUNDER", 2.0, 1, "t", 6)
        broker.observe(Tick(100.09, 2))
        return await broker.check_settlement(placed.contract_id)

    res = asyncio.run(scenario())
    assert (res.profit, res.status) == (-2.0, "lost")


def test_paper_drops_contracts_nobody_collects():
    broker = PaperBroker(retain_ticks=2)

    async def scenario():
        abandoned = await broker.place_trade("DIGITODD", 1.0, 1, "t")
        broker.observe(Tick(100.03, 2))           # settles
        broker.observe(Tick(100.03, 3))
        broker.observe(Tick(100.03, 4))
        kept = abandoned.contract_id in broker.contracts
        broker.observe(Tick(100.03, 5))
        return abandoned.contract_id, kept

    cid, kept = asyncio.run(scenario())
    assert kept is True
    assert cid not in broker.contracts


def test_paper_rejects_non_tick_duration():
    with pytest.raises(PlacementError):
        asyncio.run(PaperBroker().place_trade("DIGITODD", 1.0, 5, "m"))


# ───── deriv client ───────────────────────────────────────────────────

def test_parse_tick_variants():
    assert parse_tick({"tick": {"quote": 1234.56, "epoch": 1700000000}}) == Tick(1234.56, 1700000000)
    assert parse_tick({"tick": {"quote": {"value": "99.1"}, "epoch": 5}}) == Tick(99.1, 5)
    assert parse_tick({"tick": {"ask": 10.5, "epoch": 6}}) == Tick(10.5, 6)
    assert parse_tick({"tick": {"epoch": 7}}) is None
    assert parse_tick({"msg_type": "ping"}) is None


class FakeWS:
    """Answers each request through `responder(msg) -> list[reply]`."""

    def __init__(self, responder):
        self.responder = responder
        self.sent = []
        self._inbox = asyncio.Queue()

    async def send(self, raw):
        msg = json.loads(raw)
        self.sent.append(msg)
        for reply in self.responder(msg):
            reply.setdefault("req_id", msg["req_id"])
            await self._inbox.put(json.dumps(reply))

    async def push(self, reply):
        await self._inbox.put(json.dumps(reply))

    def __aiter__(self):
        return self

    async def __anext__(self):
        raw = await self._inbox.get()
        if raw is None:
            raise StopAsyncIteration
        return raw

    async def close(self):
        await self._inbox.put(None)


def _deriv(msg):
    if "proposal" in msg:
        return [{"msg_type": "proposal", "proposal": {"id": "prop-1", "ask_price": msg["amount"]}}]
    if "buy" in msg:
        return [{"msg_type": "buy", "buy": {"contract_id": 4242, "buy_price": 0.35}}]
    if "proposal_open_contract" in msg:
        return [{"msg_type": "proposal_open_contract",
                 "proposal_open_contract": {"is_sold": 1, "profit": "-0.35", "status": "lost"}}]
    if "ticks" in msg:
        return [{"msg_type": "tick", "tick": {"quote": 100.01, "epoch": 1}}]
    return [{"error": {"code": "UnrecognisedRequest", "message": "nope"}}]


def test_client_places_and_checks_contract():
    async def scenario():
        client = DerivClient(app_id="1", token="", symbol="R_100", timeout=1)
        ws = FakeWS(_deriv)
        client.attach(ws)
        placed = await client.place_trade("DIGITOVER", 0.35, 1, "t", 5)
        settled = await client.check_settlement(placed.contract_id)
        await client.close()
        return ws.sent, placed, settled

    sent, placed, settled = asyncio.run(scenario())
    proposal = sent[0]
    assert proposal["contract_type"] == "DIGITOVER"
    assert proposal["barrier"] == "5"
    assert proposal["basis"] == "stake" and proposal["symbol"] == "R_100"
    assert sent[1]["buy"] == "prop-1"
    assert sent[2]["contract_id"] == 4242
    assert placed.contract_id == "4242"
    assert settled.is_sold and settled.profit == -0.35


def test_client_rejected_proposal_is_placement_error():
    def reject(msg):
        return [{"msg_type": "proposal", "error": {"code": "InvalidBarrier", "message": "bad barrier"}}]

    async def scenario():
        client = DerivClient(app_id="1", token="", timeout=1)
        client.attach(FakeWS(reject))
        try:
            await client.place_trade("DIGITOVER", 0.35, 1, "t", 11)
        finally:
            await client.close()

    with pytest.raises(PlacementError, match="bad barrier"):
        asyncio.run(scenario())


def test_client_timeout_is_transport_failure():
    async def scenario():
        client = DerivClient(app_id="1", token="", timeout=0.05)
        client.attach(FakeWS(lambda msg: []))
        try:
            await client.check_settlement("1")
        finally:
            await client.close()

    with pytest.raises(TransportFailure):
        asyncio.run(scenario())


def test_client_streams_ticks():
    async def scenario():
        client = DerivClient(app_id="1", token="", timeout=1)
        ws = FakeWS(_deriv)
        client.attach(ws)
        got = []
        async for tick in client.subscribe_ticks():
            got.append(tick)
            if len(got) == 1:
                await ws.push({"msg_type": "tick", "tick": {"quote": 100.02, "epoch": 2}})
            else:
                break
        await client.close()
        return got

    assert asyncio.run(scenario()) == [Tick(100.01, 1), Tick(100.02, 2)]


def test_request_without_connection():
    with pytest.raises(TransportFailure):
        asyncio.run(DerivClient(token="").check_settlement("1"))


# ───── executor wiring ────────────────────────────────────────────────

def test_dry_run_executor_trades_on_paper():
    cfg = EngineConfig(base_stake=1, primary_stakes=(1, 2), min_interval_ms=0)
    sink = RecordingSink()
    exe = Executor(cfg, dry_run=True, sink=sink, client=DerivClient(token=""))

    async def scenario():
        exe.engine.start(now=0)
        await exe.dispatch(Tick(SIGNAL, 1))           # DIGITODD placed
        await exe.dispatch(Tick(100.04, 2))           # even → loss, polled
        return exe.engine.snapshot()

    snap = asyncio.run(scenario())
    assert "trade_placed" in sink.kinds()
    settled = sink.of("settled")[0]
    assert settled.data["outcome"] == "loss"
    assert snap["session_profit"] == -1
    assert snap["stake"] == 2
    assert snap["state"] == EngineState.RUNNING.value


def test_build_sink_includes_memory():
    memory = MemorySink(5)
    sink = build_sink(memory)
    exe = Executor(EngineConfig(), dry_run=True, sink=sink, client=DerivClient(token=""))
    exe.engine.start()
    assert memory.entries()[0]["kind"] == "engine_started"


def test_stop_halts_engine():
    exe = Executor(EngineConfig(), dry_run=True, sink=RecordingSink(),
                   client=DerivClient(token=""))
    exe.engine.start()
    asyncio.run(exe.stop())
    assert exe.engine.state is EngineState.STOPPED


class StreamClient:
    """Endless scripted tick stream; counts connections."""

    symbol = "R_100"

    def __init__(self, quotes):
        self.quotes = quotes
        self.connects = 0
        self.closes = 0

    async def connect(self):
        self.connects += 1

    async def subscribe_ticks(self):
        epoch = 0
        while True:
            epoch += 1
            await asyncio.sleep(0)
            yield Tick(self.quotes[(epoch - 1) % len(self.quotes)], epoch)

    async def close(self):
        self.closes += 1


def test_stream_ends_when_engine_stops_itself():
    cfg = EngineConfig(base_stake=1, primary_stakes=(1, 2), max_trades=1, min_interval_ms=0)
    sink = RecordingSink()
    client = StreamClient([SIGNAL, 100.04])
    exe = Executor(cfg, dry_run=True, sink=sink, client=client)

    asyncio.run(asyncio.wait_for(exe.run(), timeout=5))
    assert "trade_cap_reached" in sink.kinds()
    assert exe.engine.is_running is False
    assert (client.connects, client.closes) == (1, 1)
