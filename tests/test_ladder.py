import pytest

from signal_engine.ladder import ModeController, StakeLadder
from signal_engine.rules import EngineConfig, Mode


@pytest.mark.parametrize("stakes", [(1,), (1, 2), (1, 2, 4), (0.35, 0.40, 0.80, 1.64)])
def test_consecutive_losses_walk_the_ladder(stakes):
    ladder = StakeLadder(stakes, base_stake=stakes[0])
    for n in range(1, len(stakes)):
        assert ladder.on_loss() is False
        assert ladder.current_stake() == stakes[n]
    # one more loss exhausts it; index saturates on the last rung
    assert ladder.on_loss() is True
    assert ladder.current_stake() == stakes[-1]


def test_win_resets_to_first_rung():
    ladder = StakeLadder((1, 2, 4), base_stake=1)
    ladder.on_loss()
    ladder.on_loss()
    ladder.on_win()
    assert ladder.index == 0
    assert ladder.current_stake() == 1


def test_out_of_range_index_falls_back_to_double_base():
    ladder = StakeLadder((1, 2), base_stake=0.5, index=7)
    assert ladder.current_stake() == 1.0


def _controller(enable_recovery=True):
    cfg = EngineConfig(base_stake=1, primary_stakes=(1, 2), recovery_stakes=(1, 3, 9),
                       enable_recovery=enable_recovery)
    return ModeController.from_config(cfg)


def test_primary_overflow_switches_to_recovery():
    mc = _controller()
    assert mc.apply_loss().switched is False
    t = mc.apply_loss()
    assert t.overflowed and t.switched
    assert (t.previous, t.mode) == (Mode.PRIMARY, Mode.RECOVERY)
    assert mc.level == 0
    assert mc.current_stake() == 1


def test_recovery_overflow_resets_and_stays():
    mc = _controller()
    mc.apply_loss()
    mc.apply_loss()                       # → RECOVERY
    mc.apply_loss()
    mc.apply_loss()
    assert mc.current_stake() == 9
    t = mc.apply_loss()
    assert t.overflowed and not t.switched
    assert mc.mode is Mode.RECOVERY
    assert mc.level == 0


def test_recovery_win_returns_to_primary_from_any_rung():
    mc = _controller()
    mc.apply_loss()
    mc.apply_loss()
    mc.apply_loss()
    mc.apply_loss()                       # recovery rung 2
    t = mc.apply_win()
    assert t.switched and t.mode is Mode.PRIMARY
    assert mc.level == 0
    assert mc.ladders[Mode.RECOVERY].index == 0


def test_recovery_disabled_primary_overflow_resets_ladder():
    mc = _controller(enable_recovery=False)
    mc.apply_loss()
    t = mc.apply_loss()
    assert t.overflowed and not t.switched
    assert mc.mode is Mode.PRIMARY
    assert mc.current_stake() == 1


def test_reset_returns_to_primary():
    mc = _controller()
    mc.apply_loss()
    mc.apply_loss()
    mc.apply_loss()
    mc.reset()
    assert mc.mode is Mode.PRIMARY
    assert all(l.index == 0 for l in mc.ladders.values())
