"""
rules.py – value types and pure helpers for the digit strategy
==============================================================
No broker, no Redis, no side-effects: config, tick/trade value objects,
broker error kinds, signal-digit extraction and the signal evaluator.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, FrozenSet, Mapping, Optional, Protocol, Tuple

from shared.config import env, env_list
from shared.constants import (
    CONTRACT_ODD,
    CONTRACT_OVER,
    CONTRACT_UNDER,
    RECOVERY_OVER_BARRIER,
    RECOVERY_UNDER_BARRIER,
)

DURATION_UNITS = ("t", "s", "m", "h", "d")

DEFAULT_PRIMARY_STAKES  = (0.35, 0.40, 0.80, 1.64)
DEFAULT_RECOVERY_STAKES = (0.35, 0.45, 0.90, 1.86, 3.82, 7.82, 16.03, 32.85)


# --------------------------- Errors ---------------------------


class InvalidConfiguration(ValueError):
    """Engine settings that cannot be traded with."""


class BrokerError(Exception):
    """Base for failures reported by a broker collaborator."""


class PlacementError(BrokerError):
    """Proposal or buy rejected."""


class TransportFailure(BrokerError):
    """Connection dropped, request timed out, or the reply was unusable."""


# --------------------------- Values ---------------------------


class Mode(str, Enum):
    PRIMARY = "PRIMARY"
    RECOVERY = "RECOVERY"


@dataclass(frozen=True)
class Tick:
    quote: float
    epoch: float


@dataclass(frozen=True)
class TradeInstruction:
    contract_type: str
    barrier: Optional[int] = None


@dataclass(frozen=True)
class PlacedTrade:
    contract_id: str
    buy_price: float = 0.0


@dataclass(frozen=True)
class Settlement:
    is_sold: bool
    profit: float = 0.0
    status: str = ""


class Broker(Protocol):
    async def place_trade(
        self,
        contract_type: str,
        stake: float,
        duration: int,
        duration_unit: str,
        barrier: Optional[int] = None,
    ) -> PlacedTrade: ...

    async def check_settlement(self, contract_id: str) -> Optional[Settlement]: ...


# --------------------------- Config ---------------------------


def _number(name: str, value: Any, cast: type = float) -> Any:
    if isinstance(value, bool):
        raise InvalidConfiguration(f"{name}: expected a number, got {value!r}")
    try:
        num = cast(value)
    except (TypeError, ValueError) as exc:
        raise InvalidConfiguration(f"{name}: expected a number, got {value!r}") from exc
    if cast is float and num != num:  # NaN
        raise InvalidConfiguration(f"{name}: NaN is not allowed")
    return num


def _stakes(name: str, value: Any) -> Tuple[float, ...]:
    if isinstance(value, str):
        value = [part for part in value.split(",") if part.strip()]
    try:
        items = tuple(_number(name, v) for v in value)
    except TypeError as exc:
        raise InvalidConfiguration(f"{name}: expected a sequence of stakes") from exc
    if not items:
        raise InvalidConfiguration(f"{name}: at least one stake is required")
    if any(s <= 0 for s in items):
        raise InvalidConfiguration(f"{name}: stakes must be positive, got {items}")
    return items


def _digits(value: Any) -> FrozenSet[int]:
    if isinstance(value, int) and not isinstance(value, bool):
        value = [value]
    elif isinstance(value, str):
        value = [part for part in value.split(",") if part.strip()]
    digits = frozenset(_number("trigger_digits", d, int) for d in value)
    if not digits or any(d < 0 or d > 9 for d in digits):
        raise InvalidConfiguration(f"trigger_digits: need digits 0-9, got {sorted(digits)}")
    return digits


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "y", "on")
    return bool(value)


@dataclass(frozen=True)
class EngineConfig:
    base_stake: float = 0.35
    primary_stakes: Tuple[float, ...] = DEFAULT_PRIMARY_STAKES
    recovery_stakes: Tuple[float, ...] = DEFAULT_RECOVERY_STAKES
    take_profit: float = 1.00
    stop_loss: float = -50.0
    cooldown_ms: int = 120_000
    min_interval_ms: int = 2_000
    max_trades: int = 99_999
    trigger_digits: FrozenSet[int] = field(default_factory=lambda: frozenset({1}))
    quote_decimals: int = 2
    duration: int = 1
    duration_unit: str = "t"
    enable_recovery: bool = True

    def __post_init__(self) -> None:
        # frozen: normalise through object.__setattr__
        put = lambda k, v: object.__setattr__(self, k, v)  # noqa: E731

        put("base_stake", _number("base_stake", self.base_stake))
        if self.base_stake <= 0:
            raise InvalidConfiguration("base_stake must be positive")
        put("primary_stakes", _stakes("primary_stakes", self.primary_stakes))
        put("recovery_stakes", _stakes("recovery_stakes", self.recovery_stakes))

        put("take_profit", _number("take_profit", self.take_profit))
        put("stop_loss", _number("stop_loss", self.stop_loss))
        if self.take_profit <= 0:
            raise InvalidConfiguration("take_profit must be above zero")
        if self.stop_loss >= 0:
            raise InvalidConfiguration("stop_loss must be below zero")

        for name in ("cooldown_ms", "min_interval_ms"):
            val = _number(name, getattr(self, name), int)
            if val < 0:
                raise InvalidConfiguration(f"{name} must not be negative")
            put(name, val)

        put("max_trades", _number("max_trades", self.max_trades, int))
        if self.max_trades < 1:
            raise InvalidConfiguration("max_trades must be at least 1")

        put("trigger_digits", _digits(self.trigger_digits))

        put("quote_decimals", _number("quote_decimals", self.quote_decimals, int))
        if self.quote_decimals < 1:
            raise InvalidConfiguration("quote_decimals must be at least 1")

        put("duration", _number("duration", self.duration, int))
        if self.duration < 1:
            raise InvalidConfiguration("duration must be at least 1")
        if self.duration_unit not in DURATION_UNITS:
            raise InvalidConfiguration(f"duration_unit must be one of {DURATION_UNITS}")

        put("enable_recovery", _flag(self.enable_recovery))

    @property
    def cooldown_s(self) -> float:
        return self.cooldown_ms / 1000.0

    @property
    def min_interval_s(self) -> float:
        return self.min_interval_ms / 1000.0

    # ── builders ────────────────────────────────────────────────────
    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Read every tunable from the environment (see `.env.example`)."""
        dflt = cls.__dataclass_fields__
        try:
            primary = env_list("PRIMARY_STAKES", DEFAULT_PRIMARY_STAKES, float)
            recovery = env_list("RECOVERY_STAKES", DEFAULT_RECOVERY_STAKES, float)
            digits = env_list("TRIGGER_DIGITS", (1,), int)
        except ValueError as exc:
            raise InvalidConfiguration(str(exc)) from exc
        return cls(
            base_stake=env("BASE_STAKE", dflt["base_stake"].default),
            primary_stakes=tuple(primary),
            recovery_stakes=tuple(recovery),
            take_profit=env("TAKE_PROFIT", dflt["take_profit"].default),
            stop_loss=env("STOP_LOSS", dflt["stop_loss"].default),
            cooldown_ms=env("COOLDOWN_MS", dflt["cooldown_ms"].default),
            min_interval_ms=env("MIN_INTERVAL_MS", dflt["min_interval_ms"].default),
            max_trades=env("MAX_TRADES", dflt["max_trades"].default),
            trigger_digits=frozenset(digits),
            quote_decimals=env("QUOTE_DECIMALS", dflt["quote_decimals"].default),
            enable_recovery=env("ENABLE_RECOVERY", True, bool),
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EngineConfig":
        """
        Build from a loose mapping (panel form / JSON body).  Blank values
        fall back to defaults; the camelCase keys of the web form are
        accepted next to the field names.
        """
        names = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, val in data.items():
            name = _ALIASES.get(key, key)
            if name not in names:
                continue
            if val is None or (isinstance(val, str) and not val.strip()):
                continue
            kwargs[name] = val
        return cls(**kwargs)

    def describe(self) -> dict[str, Any]:
        return {
            "base_stake": self.base_stake,
            "primary_stakes": list(self.primary_stakes),
            "recovery_stakes": list(self.recovery_stakes),
            "take_profit": self.take_profit,
            "stop_loss": self.stop_loss,
            "cooldown_ms": self.cooldown_ms,
            "min_interval_ms": self.min_interval_ms,
            "max_trades": self.max_trades,
            "trigger_digits": sorted(self.trigger_digits),
            "enable_recovery": self.enable_recovery,
        }


_ALIASES = {
    "baseStake": "base_stake",
    "martingaleStakes": "primary_stakes",
    "overUnderStakes": "recovery_stakes",
    "takeProfit": "take_profit",
    "stopLoss": "stop_loss",
    "cooldownDuration": "cooldown_ms",
    "minInterval": "min_interval_ms",
    "maxTrades": "max_trades",
    "triggerDigits": "trigger_digits",
    "enableRecovery": "enable_recovery",
}


# --------------------------- Signal ---------------------------


def signal_digit(quote: float | str, decimals: int = 2) -> int:
    """
    Last decimal digit of the quote printed to `decimals` places
    (half-up), e.g. 1234.5 → "1234.50" → 0.
    """
    try:
        q = Decimal(str(quote)).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"not a price: {quote!r}") from exc
    return int(format(q, "f")[-1])


def evaluate(mode: Mode, digit: int, trigger_digits: FrozenSet[int]) -> Tuple[TradeInstruction, ...]:
    """Trade instructions for this digit, or () when there is no signal."""
    if digit not in trigger_digits:
        return ()
    if mode is Mode.RECOVERY:
        return (
            TradeInstruction(CONTRACT_OVER, RECOVERY_OVER_BARRIER),
            TradeInstruction(CONTRACT_UNDER, RECOVERY_UNDER_BARRIER),
        )
    return (TradeInstruction(CONTRACT_ODD),)
