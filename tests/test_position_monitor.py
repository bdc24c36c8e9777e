"""Monitor decisions: exits, rebalance triggers and settings."""

from types import SimpleNamespace

import pytest

from binpilot.errors import EngineError, ErrorCode, ValidationError
from binpilot.services.liquidity.position_monitor import MonitorSettings, PositionMonitor, TrailingStop
from binpilot.services.liquidity.rebalance_engine import RebalanceContext, RebalanceResult
from binpilot.services.meteora_dlmm.strategy_calculator import Direction

from conftest import make_position


class ScriptedEngine:
    """Engine stand-in: fixed range, scripted active bins and P&L percentages."""

    def __init__(self, active_bins=(10,), pnl=None, baseline=True):
        self.positions = {'pos': make_position('pos', 0, 19, amount_x=1)}
        self.active_bins = list(active_bins)
        self.pnl = list(pnl or [])
        self.tracker = SimpleNamespace(has_baseline=baseline)
        self.rebalances = []
        self.closes = []
        self.close_error = None
        self.next_key = 'pos2'

    def get_position(self, key, keys=()):
        return self.positions.get(key)

    def get_active_bin(self):
        return self.active_bins.pop(0) if len(self.active_bins) > 1 else self.active_bins[0]

    def value_position(self, key, snapshot=None):
        if not self.pnl:
            return None
        value = self.pnl.pop(0) if len(self.pnl) > 1 else self.pnl[0]
        return SimpleNamespace(absolute_pnl_pct=value)

    def rebalance(self, key, context, direction):
        self.rebalances.append((key, direction))
        self.positions.pop(key, None)
        if self.next_key is None:
            return RebalanceResult(position_key=key)
        self.positions[self.next_key] = make_position(self.next_key, 20, 39, amount_y=1)
        return RebalanceResult(position_key=key, new_position_key=self.next_key,
                               new_position_keys=[self.next_key])

    def close_position(self, key, swap_to_sol=False, position_keys=()):
        self.closes.append((key, swap_to_sol))
        if self.close_error is not None:
            raise self.close_error
        self.positions.pop(key, None)


def monitor(engine, **settings) -> PositionMonitor:
    return PositionMonitor(engine, 'pos', RebalanceContext(position_keys=('pos',)),
                           MonitorSettings(**settings), sleep=lambda s: None)


class TestExits:

    def test_holds_when_healthy(self):
        status = monitor(ScriptedEngine(pnl=[1.0]), take_profit_pct=10).check_once()
        assert (status.action, status.reason, status.in_range) == ('hold', 'healthy', True)
        assert status.pnl_pct == 1.0

    def test_take_profit_closes(self):
        engine = ScriptedEngine(pnl=[12.0])
        m = monitor(engine, take_profit_pct=10, swap_to_sol_on_exit=False)
        status = m.check_once()

        assert (status.action, status.reason) == ('close', 'take_profit')
        assert engine.closes == [('pos', False)]
        assert m.finished

    def test_stop_loss_closes(self):
        engine = ScriptedEngine(pnl=[-8.0])
        status = monitor(engine, stop_loss_pct=5).check_once()
        assert status.reason == 'stop_loss'
        assert engine.closes == [('pos', True)]

    def test_trailing_stop_follows_peak(self):
        engine = ScriptedEngine(pnl=[3.0, 6.0, 9.0, 7.5, 6.5])
        m = monitor(engine, trailing_trigger_pct=5, trailing_distance_pct=2)
        history = m.run(max_cycles=10)

        assert [s.action for s in history] == ['hold', 'hold', 'hold', 'hold', 'close']
        assert history[-1].reason == 'trailing_stop'
        assert m.trailing.peak_pct == 9.0

    def test_no_exit_checks_without_baseline(self):
        engine = ScriptedEngine(pnl=[50.0], baseline=False)
        status = monitor(engine, take_profit_pct=10).check_once()
        assert status.action == 'hold'
        assert status.pnl_pct is None

    def test_failed_close_keeps_monitoring(self):
        engine = ScriptedEngine(pnl=[12.0])
        engine.close_error = EngineError("Blockhash not found")
        m = monitor(engine, take_profit_pct=10)
        status = m.check_once()

        assert status.reason == 'take_profit_failed'
        assert not m.finished


class TestRebalanceTriggers:

    def test_out_of_range_rebalances_and_follows_new_key(self):
        engine = ScriptedEngine(active_bins=[25])
        m = monitor(engine)
        status = m.check_once()

        assert (status.action, status.reason) == ('rebalance', 'out_of_range')
        assert status.direction is Direction.UP
        assert status.new_position_key == 'pos2'
        assert m.position_key == 'pos2'
        assert m.context.position_keys == ('pos2',)
        assert engine.rebalances == [('pos', Direction.UP)]

    def test_below_range_is_down(self):
        engine = ScriptedEngine(active_bins=[-3])
        assert monitor(engine).check_once().direction is Direction.DOWN

    def test_threshold_mode_fires_near_edge(self):
        engine = ScriptedEngine(active_bins=[17])
        status = monitor(engine, trigger_mode='threshold', upper_threshold_pct=20).check_once()
        assert (status.action, status.reason, status.direction) == ('rebalance', 'near_edge', Direction.UP)

    def test_out_of_range_mode_ignores_edge(self):
        assert monitor(ScriptedEngine(active_bins=[19])).check_once().action == 'hold'

    def test_depleted_rebalance_stops(self):
        engine = ScriptedEngine(active_bins=[40])
        engine.next_key = None
        m = monitor(engine)
        status = m.check_once()

        assert status.reason == 'depleted'
        assert m.finished
        assert m.check_once().action == 'stopped'

    def test_missing_position_stops(self):
        engine = ScriptedEngine()
        engine.positions.clear()
        m = monitor(engine)
        history = m.run(max_cycles=3)
        assert [s.action for s in history] == ['missing']


class TestSettings:

    @pytest.mark.parametrize("kwargs", [
        {'trigger_mode': 'sometimes'},
        {'check_interval_seconds': 0},
        {'lower_threshold_pct': 120},
        {'take_profit_pct': -1},
        {'trailing_trigger_pct': 5},
    ])
    def test_invalid(self, kwargs):
        with pytest.raises(ValidationError) as exc:
            MonitorSettings(**kwargs).validate()
        assert exc.value.code == ErrorCode.INVALID_PARAMS

    def test_dict_round_trip(self):
        settings = MonitorSettings(take_profit_pct=15, trailing_trigger_pct=5, trailing_distance_pct=2)
        assert MonitorSettings.from_dict(settings.to_dict()) == settings

    def test_update_clamps_interval_and_resets_trailing(self):
        m = monitor(ScriptedEngine())
        assert m.trailing is None
        settings = m.update_settings({'checkIntervalSeconds': 900, 'trailingTriggerPct': 4,
                                      'trailingDistancePct': 1, 'unknown': True})
        assert settings.check_interval_seconds == 300
        assert m.trailing == TrailingStop(4, 1)

    def test_trailing_stop_inactive_below_trigger(self):
        stop = TrailingStop(trigger_pct=5, distance_pct=2)
        stop.update(4.9)
        assert stop.stop_pct is None
        assert not stop.hit(-50)
