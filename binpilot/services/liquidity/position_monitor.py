#!/usr/bin/env python3
"""
Position Monitor Service
Polls the managed position, closes it on take-profit / trailing stop /
stop-loss, and rebalances it when the active bin leaves the range (or
drifts within the edge threshold).
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from binpilot.errors import EngineError, ErrorCode, ValidationError
from binpilot.services.meteora_dlmm.strategy_calculator import (
    Direction, check_rebalance_needed, out_of_range_direction,
)

logger = logging.getLogger("binpilot.position_monitor")

TRIGGER_MODES = ('out_of_range', 'threshold')


@dataclass
class MonitorSettings:
    """Configurable settings for position monitoring.

    Exit triggers are only active if their value is set (not None).
    """
    check_interval_seconds: int = 5
    trigger_mode: str = 'out_of_range'
    lower_threshold_pct: float = 20.0
    upper_threshold_pct: float = 20.0
    take_profit_pct: Optional[float] = None
    stop_loss_pct: Optional[float] = None
    trailing_trigger_pct: Optional[float] = None
    trailing_distance_pct: Optional[float] = None
    swap_to_sol_on_exit: bool = True

    def validate(self) -> 'MonitorSettings':
        if self.trigger_mode not in TRIGGER_MODES:
            raise ValidationError(f"Invalid trigger mode: {self.trigger_mode}", code=ErrorCode.INVALID_PARAMS)
        if self.check_interval_seconds <= 0:
            raise ValidationError("check_interval_seconds must be positive", code=ErrorCode.INVALID_PARAMS)
        for name in ('lower_threshold_pct', 'upper_threshold_pct'):
            value = getattr(self, name)
            if value < 0 or value > 100:
                raise ValidationError(f"{name} must be between 0 and 100", code=ErrorCode.INVALID_PARAMS)
        for name in ('take_profit_pct', 'stop_loss_pct', 'trailing_trigger_pct', 'trailing_distance_pct'):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValidationError(f"{name} must be positive", code=ErrorCode.INVALID_PARAMS)
        if (self.trailing_trigger_pct is None) != (self.trailing_distance_pct is None):
            raise ValidationError("Trailing stop needs both trigger and distance", code=ErrorCode.INVALID_PARAMS)
        return self

    @property
    def trailing_enabled(self) -> bool:
        return self.trailing_trigger_pct is not None and self.trailing_distance_pct is not None

    def to_dict(self) -> Dict:
        return {
            'checkIntervalSeconds': self.check_interval_seconds,
            'triggerMode': self.trigger_mode,
            'lowerThresholdPct': self.lower_threshold_pct,
            'upperThresholdPct': self.upper_threshold_pct,
            'takeProfitPct': self.take_profit_pct,
            'stopLossPct': self.stop_loss_pct,
            'trailingTriggerPct': self.trailing_trigger_pct,
            'trailingDistancePct': self.trailing_distance_pct,
            'swapToSolOnExit': self.swap_to_sol_on_exit,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'MonitorSettings':
        return cls(
            check_interval_seconds=data.get('checkIntervalSeconds', 5),
            trigger_mode=data.get('triggerMode', 'out_of_range'),
            lower_threshold_pct=data.get('lowerThresholdPct', 20.0),
            upper_threshold_pct=data.get('upperThresholdPct', 20.0),
            take_profit_pct=data.get('takeProfitPct'),
            stop_loss_pct=data.get('stopLossPct'),
            trailing_trigger_pct=data.get('trailingTriggerPct'),
            trailing_distance_pct=data.get('trailingDistancePct'),
            swap_to_sol_on_exit=data.get('swapToSolOnExit', True),
        )


@dataclass
class TrailingStop:
    """Peak-following stop on the P&L percentage."""
    trigger_pct: float
    distance_pct: float
    active: bool = False
    peak_pct: float = 0.0

    @property
    def stop_pct(self) -> Optional[float]:
        return self.peak_pct - self.distance_pct if self.active else None

    def update(self, pnl_pct: float):
        if not self.active and pnl_pct >= self.trigger_pct:
            self.active = True
            self.peak_pct = pnl_pct
            logger.info(f"[PositionMonitor] Trailing stop activated at {pnl_pct:+.1f}% "
                        f"(stop {self.stop_pct:+.1f}%)")
        elif self.active and pnl_pct > self.peak_pct:
            self.peak_pct = pnl_pct
            logger.info(f"[PositionMonitor] New peak {pnl_pct:+.1f}%, trailing stop moved to {self.stop_pct:+.1f}%")

    def hit(self, pnl_pct: float) -> bool:
        return self.active and pnl_pct <= self.stop_pct


@dataclass
class PositionStatus:
    """Result of one monitoring cycle."""
    position_key: Optional[str]
    active_bin: Optional[int] = None
    lower_bin_id: Optional[int] = None
    upper_bin_id: Optional[int] = None
    in_range: bool = False
    pnl_pct: Optional[float] = None
    action: str = 'hold'        # 'hold', 'rebalance', 'close', 'missing', 'stopped'
    reason: str = 'healthy'
    direction: Optional[Direction] = None
    new_position_key: Optional[str] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict:
        return {
            'positionKey': self.position_key,
            'activeBin': self.active_bin,
            'lowerBinId': self.lower_bin_id,
            'upperBinId': self.upper_bin_id,
            'inRange': self.in_range,
            'pnlPct': self.pnl_pct,
            'action': self.action,
            'reason': self.reason,
            'direction': self.direction.value if self.direction else None,
            'newPositionKey': self.new_position_key,
            'timestamp': self.timestamp,
        }


class PositionMonitor:
    """
    Watches one managed position through a LiquidityEngine.

    The engine supplies get_position, get_active_bin, value_position,
    rebalance and close_position; the monitor only decides and sequences.
    """

    def __init__(self, engine, position_key: str, context, settings: Optional[MonitorSettings] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.engine = engine
        self.position_key = position_key
        self.context = context
        self.settings = (settings or MonitorSettings()).validate()
        self.sleep = sleep
        self.trailing = self._new_trailing()
        self.history: List[PositionStatus] = []
        self.finished = False

        self._running = False
        self._thread: Optional[threading.Thread] = None

    def _new_trailing(self) -> Optional[TrailingStop]:
        if not self.settings.trailing_enabled:
            return None
        return TrailingStop(self.settings.trailing_trigger_pct, self.settings.trailing_distance_pct)

    # ── Thread control ──────────────────────────────────────────────────

    def start(self):
        """Start the position monitoring loop."""
        if self._running:
            logger.warning("[PositionMonitor] Already running")
            return

        self._running = True
        self._thread = threading.Thread(target=self._monitoring_loop, daemon=True)
        self._thread.start()
        logger.info("[PositionMonitor] Started with %ds interval", self.settings.check_interval_seconds)

    def stop(self):
        """Stop the position monitoring loop."""
        self._running = False
        if self._thread:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("[PositionMonitor] Stopped")

    def is_running(self) -> bool:
        return self._running

    def update_settings(self, updates: Dict) -> MonitorSettings:
        merged = self.settings.to_dict()
        merged.update({k: v for k, v in updates.items() if k in merged})
        if 'checkIntervalSeconds' in updates and updates['checkIntervalSeconds'] is not None:
            merged['checkIntervalSeconds'] = max(1, min(300, updates['checkIntervalSeconds']))
        self.settings = MonitorSettings.from_dict(merged).validate()
        self.trailing = self._new_trailing()
        logger.info("[PositionMonitor] Settings updated: %s", self.settings.to_dict())
        return self.settings

    def _monitoring_loop(self):
        while self._running and not self.finished:
            try:
                self.check_once()
            except Exception as e:
                logger.error("[PositionMonitor] Error in monitoring loop: %s", e)
            if self.finished:
                break
            self.sleep(self.settings.check_interval_seconds)
        self._running = False

    def run(self, max_cycles: Optional[int] = None) -> List[PositionStatus]:
        """Run cycles in the calling thread until the position is gone or `max_cycles` is reached."""
        cycles = 0
        while not self.finished and (max_cycles is None or cycles < max_cycles):
            self.check_once()
            cycles += 1
            if not self.finished and (max_cycles is None or cycles < max_cycles):
                self.sleep(self.settings.check_interval_seconds)
        return self.history

    # ── One cycle ───────────────────────────────────────────────────────

    def check_once(self) -> PositionStatus:
        if self.finished:
            return self._record(PositionStatus(position_key=self.position_key, action='stopped',
                                               reason='finished'))

        snapshot = self.engine.get_position(self.position_key, self.context.position_keys)
        if snapshot is None:
            logger.warning(f"[PositionMonitor] Position {self.position_key} no longer exists")
            self.finished = True
            return self._record(PositionStatus(position_key=self.position_key, action='missing',
                                               reason='not_found'))

        active_bin = self.engine.get_active_bin()
        status = PositionStatus(
            position_key=self.position_key,
            active_bin=active_bin,
            lower_bin_id=snapshot.lower_bin_id,
            upper_bin_id=snapshot.upper_bin_id,
            in_range=snapshot.contains(active_bin),
        )

        pnl_pct = self._pnl_pct(snapshot)
        status.pnl_pct = pnl_pct
        if pnl_pct is not None:
            exit_reason = self._exit_reason(pnl_pct)
            if exit_reason:
                return self._close(status, exit_reason)

        direction = self._trigger_direction(snapshot.lower_bin_id, snapshot.upper_bin_id, active_bin)
        if direction is None:
            return self._record(status)

        status.reason = 'near_edge' if status.in_range else 'out_of_range'
        logger.info(f"[PositionMonitor] Rebalance trigger ({status.reason}): active {active_bin}, "
                    f"range {snapshot.lower_bin_id}-{snapshot.upper_bin_id}, direction {direction.value}")
        status.action = 'rebalance'
        status.direction = direction
        result = self.engine.rebalance(self.position_key, self.context, direction)
        if result.new_position_key is None:
            logger.info("[PositionMonitor] Rebalance left no position, stopping")
            self.finished = True
            status.reason = 'depleted'
            return self._record(status)

        status.new_position_key = result.new_position_key
        self.position_key = result.new_position_key
        self.context.position_keys = tuple(result.new_position_keys)
        return self._record(status)

    def _pnl_pct(self, snapshot) -> Optional[float]:
        tracker = getattr(self.engine, 'tracker', None)
        if tracker is None or not tracker.has_baseline:
            return None
        report = self.engine.value_position(self.position_key, snapshot=snapshot)
        return report.absolute_pnl_pct if report is not None else None

    def _exit_reason(self, pnl_pct: float) -> Optional[str]:
        """Take profit, then trailing stop, then stop loss."""
        s = self.settings
        if self.trailing is not None:
            self.trailing.update(pnl_pct)
        if s.take_profit_pct is not None and pnl_pct >= s.take_profit_pct:
            return 'take_profit'
        if self.trailing is not None and self.trailing.hit(pnl_pct):
            return 'trailing_stop'
        if s.stop_loss_pct is not None and pnl_pct <= -s.stop_loss_pct:
            return 'stop_loss'
        return None

    def _trigger_direction(self, lower: int, upper: int, active_bin: int) -> Optional[Direction]:
        if self.settings.trigger_mode == 'threshold':
            check = check_rebalance_needed(lower, upper, active_bin,
                                           self.settings.lower_threshold_pct,
                                           self.settings.upper_threshold_pct)
            return check['direction']
        return out_of_range_direction(lower, upper, active_bin)

    def _close(self, status: PositionStatus, reason: str) -> PositionStatus:
        logger.info(f"[PositionMonitor] {reason.replace('_', ' ').upper()} at {status.pnl_pct:+.2f}%, closing")
        status.action = 'close'
        status.reason = reason
        try:
            self.engine.close_position(self.position_key, swap_to_sol=self.settings.swap_to_sol_on_exit,
                                       position_keys=self.context.position_keys)
        except EngineError as e:
            logger.error(f"[PositionMonitor] Close failed, continuing to monitor: {e}")
            status.reason = f"{reason}_failed"
            return self._record(status)
        self.finished = True
        return self._record(status)

    def _record(self, status: PositionStatus) -> PositionStatus:
        self.history.append(status)
        return status
