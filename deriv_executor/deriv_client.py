"""
deriv_client.py – light async wrapper around the Deriv websocket API
--------------------------------------------------------------------
One connection, one reader task.  Requests carry a `req_id`; the reader
resolves the matching future.  Tick-stream updates that nobody waits for
land on a queue consumed by `subscribe_ticks()`.

Every transport problem (connect, send, timeout, dropped socket) is
raised as `TransportFailure`; a rejected proposal/buy is a
`PlacementError`.  The engine decides what to do with either.
"""
from __future__ import annotations

import asyncio
import itertools
import json
from typing import Any, AsyncIterator, Dict, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from shared.config import env
from shared.constants import DEFAULT_APP_ID, DEFAULT_SYMBOL, DERIV_WS_URL
from shared.logging import get_logger
from signal_engine.rules import (
    PlacedTrade,
    PlacementError,
    Settlement,
    Tick,
    TransportFailure,
)

# ───── CONFIG ────────────────────────────────────────────────────────
APP_ID  = env("DERIV_APP_ID", DEFAULT_APP_ID)
TOKEN   = env("DERIV_API_TOKEN", "")
SYMBOL  = env("SYMBOL", DEFAULT_SYMBOL)
TIMEOUT = env("DERIV_TIMEOUT", 10.0, float)       # seconds per request

log = get_logger("deriv_client")


def parse_tick(msg: Dict[str, Any]) -> Optional[Tick]:
    """
    `{"msg_type": "tick", "tick": {"quote": …, "epoch": …}}` → Tick.
    Falls back to ask/bid and unwraps `{"value": …}` quotes.
    """
    body = msg.get("tick") or {}
    quote = body.get("quote")
    if quote is None:
        quote = body.get("ask", body.get("bid"))
    if isinstance(quote, dict):
        quote = quote.get("value")
    epoch = body.get("epoch")
    if quote is None or epoch is None:
        return None
    try:
        return Tick(quote=float(quote), epoch=float(epoch))
    except (TypeError, ValueError):
        return None


def _raise_on_error(msg: Dict[str, Any], exc_type: type) -> None:
    err = msg.get("error")
    if err:
        raise exc_type(err.get("message") or err.get("code") or "unknown error")


def _to_float(val: Any) -> Optional[float]:
    if isinstance(val, dict):
        val = val.get("value", val.get("display"))
    try:
        return float(val)
    except (TypeError, ValueError):
        return None


class DerivClient:
    """
    Thin OO façade so the engine doesn't depend on the websocket protocol.
    """

    def __init__(
        self,
        app_id: Optional[str] = None,
        token: Optional[str] = None,
        symbol: Optional[str] = None,
        timeout: float = TIMEOUT,
    ) -> None:
        self.app_id   = app_id or APP_ID
        self.token    = TOKEN if token is None else token
        self.symbol   = symbol or SYMBOL
        self.timeout  = timeout
        self.currency = "USD"
        self.balance_value: Optional[float] = None
        self.account: Dict[str, Any] = {}

        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: Dict[int, asyncio.Future] = {}
        self._ticks: Optional[asyncio.Queue] = None
        self._ids = itertools.count(1)
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    # ───── connection ──────────────────────────────────────────────
    async def connect(self) -> None:
        url = DERIV_WS_URL.format(self.app_id)
        log.info("Connecting to Deriv API (app_id %s)", self.app_id)
        try:
            ws = await websockets.connect(url, ping_interval=20, open_timeout=10)
        except (OSError, WebSocketException, asyncio.TimeoutError) as exc:
            raise TransportFailure(f"connect failed – {exc}") from exc

        self.attach(ws)
        if self.token:
            await self.authorize()

    def attach(self, ws: Any) -> None:
        """Adopt an open websocket and start reading from it."""
        self._ws = ws
        self._closing = False
        self._ticks = asyncio.Queue()
        self._reader = asyncio.create_task(self._read_loop())

    async def close(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._reader is not None:
            self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    msg = json.loads(raw)
                except ValueError:
                    log.warning("non-JSON frame ignored: %.80s", raw)
                    continue
                fut = self._pending.pop(msg.get("req_id"), None)
                if fut is not None:
                    if not fut.done():
                        fut.set_result(msg)
                elif msg.get("msg_type") == "tick":
                    self._ticks.put_nowait(msg)
        except ConnectionClosed as exc:
            if not self._closing:
                log.warning("Deriv connection closed – %s", exc)
        finally:
            err = TransportFailure("connection closed")
            for fut in self._pending.values():
                if not fut.done():
                    fut.set_exception(err)
            self._pending.clear()
            if self._ticks is not None:
                self._ticks.put_nowait(None)

    async def _request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        if self._ws is None:
            raise TransportFailure("not connected")
        req_id = next(self._ids)
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = fut
        try:
            await self._ws.send(json.dumps({**payload, "req_id": req_id}))
            return await asyncio.wait_for(fut, self.timeout)
        except asyncio.TimeoutError as exc:
            raise TransportFailure(f"no reply to {next(iter(payload))} within {self.timeout}s") from exc
        except ConnectionClosed as exc:
            raise TransportFailure(f"connection closed – {exc}") from exc
        finally:
            self._pending.pop(req_id, None)

    # ───── account ─────────────────────────────────────────────────
    async def authorize(self) -> Dict[str, Any]:
        msg = await self._request({"authorize": self.token})
        _raise_on_error(msg, TransportFailure)
        self.account = msg.get("authorize") or {}
        self.currency = self.account.get("currency") or self.currency
        self.balance_value = _to_float(self.account.get("balance"))
        log.info("Authorized as %s (%s) – balance %s %s",
                 self.account.get("fullname", "?"), self.account.get("loginid", "?"),
                 self.currency, self.balance_value)
        return self.account

    async def balance(self) -> Optional[float]:
        msg = await self._request({"balance": 1})
        _raise_on_error(msg, TransportFailure)
        self.balance_value = _to_float((msg.get("balance") or {}).get("balance"))
        return self.balance_value

    # ───── market data ─────────────────────────────────────────────
    async def subscribe_ticks(self, symbol: Optional[str] = None) -> AsyncIterator[Tick]:
        symbol = symbol or self.symbol
        first = await self._request({"ticks": symbol, "subscribe": 1})
        _raise_on_error(first, TransportFailure)
        log.info("Subscribed to %s ticks", symbol)

        tick = parse_tick(first)
        if tick is not None:
            yield tick
        while True:
            msg = await self._ticks.get()
            if msg is None:
                if self._closing:
                    return
                raise TransportFailure("tick stream closed")
            if msg.get("error"):
                log.warning("tick error – %s", msg["error"].get("message"))
                continue
            tick = parse_tick(msg)
            if tick is not None:
                yield tick

    # ───── trading actions ────────────────────────────────────────
    async def place_trade(
        self,
        contract_type: str,
        stake: float,
        duration: int,
        duration_unit: str,
        barrier: Optional[int] = None,
    ) -> PlacedTrade:
        """
        Proposal then buy at the proposed price.  Returns the contract id.
        """
        params: Dict[str, Any] = {
            "proposal": 1,
            "amount": stake,
            "basis": "stake",
            "contract_type": contract_type,
            "currency": self.currency,
            "duration": duration,
            "duration_unit": duration_unit,
            "symbol": self.symbol,
        }
        if barrier is not None:
            params["barrier"] = str(barrier)

        proposal = await self._request(params)
        _raise_on_error(proposal, PlacementError)
        proposal_id = (proposal.get("proposal") or {}).get("id")
        if not proposal_id:
            raise PlacementError("proposal reply without id")

        bought = await self._request({"buy": proposal_id, "price": stake})
        _raise_on_error(bought, PlacementError)
        buy = bought.get("buy") or {}
        if "contract_id" not in buy:
            raise PlacementError("buy reply without contract_id")
        return PlacedTrade(str(buy["contract_id"]), float(buy.get("buy_price", stake)))

    async def check_settlement(self, contract_id: str) -> Optional[Settlement]:
        cid: Any = int(contract_id) if str(contract_id).isdigit() else contract_id
        msg = await self._request({"proposal_open_contract": 1, "contract_id": cid})
        _raise_on_error(msg, TransportFailure)
        poc = msg.get("proposal_open_contract")
        if not poc:
            return None
        return Settlement(
            is_sold=bool(poc.get("is_sold")),
            profit=float(poc.get("profit") or 0.0),
            status=str(poc.get("status") or ""),
        )
