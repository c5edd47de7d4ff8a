"""
ladder.py – martingale stake ladder + PRIMARY/RECOVERY mode controller
======================================================================
Both are plain value holders; only TradeEngine calls the transitions,
and only after a settlement.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from .rules import EngineConfig, Mode


@dataclass
class StakeLadder:
    stakes: Tuple[float, ...]
    base_stake: float
    index: int = 0

    def __post_init__(self) -> None:
        self.stakes = tuple(self.stakes)

    @property
    def last_index(self) -> int:
        return len(self.stakes) - 1

    def current_stake(self) -> float:
        if 0 <= self.index < len(self.stakes):
            return self.stakes[self.index]
        return self.base_stake * 2      # degenerate guard only

    def on_win(self) -> None:
        self.index = 0

    def on_loss(self) -> bool:
        """Step up one rung.  Returns True when the ladder is exhausted."""
        if self.index >= self.last_index:
            self.index = max(self.last_index, 0)
            return True
        self.index += 1
        return False

    def reset(self) -> None:
        self.index = 0


@dataclass(frozen=True)
class ModeTransition:
    previous: Mode
    mode: Mode
    overflowed: bool = False

    @property
    def switched(self) -> bool:
        return self.previous is not self.mode


class ModeController:
    """
    PRIMARY ──ladder overflow──▶ RECOVERY ──win──▶ PRIMARY
    RECOVERY overflow resets the RECOVERY ladder and stays put.
    With recovery disabled a PRIMARY overflow just resets the ladder.
    """

    def __init__(
        self,
        primary: StakeLadder,
        recovery: StakeLadder,
        enable_recovery: bool = True,
    ) -> None:
        self.ladders = {Mode.PRIMARY: primary, Mode.RECOVERY: recovery}
        self.enable_recovery = enable_recovery
        self.mode = Mode.PRIMARY

    @classmethod
    def from_config(cls, cfg: EngineConfig) -> "ModeController":
        return cls(
            StakeLadder(cfg.primary_stakes, cfg.base_stake),
            StakeLadder(cfg.recovery_stakes, cfg.base_stake),
            enable_recovery=cfg.enable_recovery,
        )

    @property
    def ladder(self) -> StakeLadder:
        return self.ladders[self.mode]

    @property
    def level(self) -> int:
        return self.ladder.index

    def current_stake(self) -> float:
        return self.ladder.current_stake()

    def apply_win(self) -> ModeTransition:
        previous = self.mode
        self.ladder.on_win()
        if previous is Mode.RECOVERY:
            self._switch(Mode.PRIMARY)
        return ModeTransition(previous, self.mode)

    def apply_loss(self) -> ModeTransition:
        previous = self.mode
        overflowed = self.ladder.on_loss()
        if overflowed:
            if previous is Mode.PRIMARY and self.enable_recovery:
                self._switch(Mode.RECOVERY)
            else:
                self.ladder.reset()
        return ModeTransition(previous, self.mode, overflowed)

    def reset(self) -> None:
        self._switch(Mode.PRIMARY)

    def _switch(self, mode: Mode) -> None:
        for ladder in self.ladders.values():
            ladder.reset()
        self.mode = mode
