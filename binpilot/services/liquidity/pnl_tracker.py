#!/usr/bin/env python3
"""
P&L Tracker
Values the position plus claimed and unclaimed fees in USD and compares it
against three counterfactuals taken from the first-open baseline: holding the
original mix, holding everything as SOL, holding everything as the token.
"""

import json
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from binpilot.config import LAMPORTS_PER_SOL
from binpilot.errors import EngineError, ErrorCode, PriceUnavailableError, ValidationError

logger = logging.getLogger("binpilot.pnl")


@dataclass(frozen=True)
class PnLBaseline:
    """Initial deposit snapshot. Created once, never changed by rebalances."""
    sol_amount: int
    token_amount: int
    sol_price: float
    token_price: float
    token_decimals: int
    sol_usd: float
    token_usd: float
    total_usd: float
    created_at: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PnLBaseline':
        if float(data['sol_price']) <= 0 or float(data['token_price']) <= 0:
            raise PriceUnavailableError("Stored baseline has a non-positive price", context="pnl")
        return cls(
            sol_amount=int(data['sol_amount']),
            token_amount=int(data['token_amount']),
            sol_price=float(data['sol_price']),
            token_price=float(data['token_price']),
            token_decimals=int(data['token_decimals']),
            sol_usd=float(data['sol_usd']),
            token_usd=float(data['token_usd']),
            total_usd=float(data['total_usd']),
            created_at=float(data.get('created_at', 0)),
        )


@dataclass
class PnLReport:
    current_value: float
    position_value: float
    unclaimed_fees_usd: float
    claimed_fees_usd: float
    current_sol_usd: float
    current_token_usd: float
    hold_original_value: float
    hold_sol_value: float
    hold_token_value: float
    absolute_pnl: float
    absolute_pnl_pct: float
    vs_original: float
    vs_original_pct: float
    vs_sol_hold: float
    vs_sol_hold_pct: float
    vs_token_hold: float
    vs_token_hold_pct: float
    sol_price_change_pct: float
    token_price_change_pct: float
    initial_deposit: float
    rebalance_count: int
    sol_price: float
    token_price: float

    @property
    def total_fees_usd(self) -> float:
        return self.unclaimed_fees_usd + self.claimed_fees_usd

    def best_strategy(self) -> str:
        def pct(value: float) -> float:
            return (value - self.initial_deposit) / self.initial_deposit * 100

        candidates = [
            ("DLMM Strategy", self.absolute_pnl_pct),
            ("Hold Original Mix", pct(self.hold_original_value)),
            ("Hold All SOL", pct(self.hold_sol_value)),
            ("Hold All Token", pct(self.hold_token_value)),
        ]
        return max(candidates, key=lambda c: c[1])[0]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['total_fees_usd'] = self.total_fees_usd
        data['best_strategy'] = self.best_strategy()
        return data


def _sol_usd(lamports: int, price: float) -> float:
    return lamports / LAMPORTS_PER_SOL * price


def _token_usd(amount: int, price: float, decimals: int) -> float:
    if not amount or not price:
        return 0.0
    return amount / (10 ** decimals) * price


class PnLTracker:
    """Baseline, lifetime claimed fees and the rebalance counter for one managed position."""

    def __init__(self, state_path: Optional[str] = None, clock=time.time):
        self.state_path = state_path
        self.clock = clock
        self.baseline: Optional[PnLBaseline] = None
        self.claimed_sol = 0
        self.claimed_token = 0
        self.rebalance_count = 0
        self._lock = threading.Lock()

    @property
    def has_baseline(self) -> bool:
        return self.baseline is not None

    def initialize_baseline(self, sol_amount: int, token_amount: int, sol_price: float,
                            token_price: float, token_decimals: int) -> PnLBaseline:
        """Record the first-open snapshot. A second call keeps the existing baseline."""
        if self.baseline is not None:
            logger.debug("[PnL] Baseline already set, keeping the original")
            return self.baseline
        if sol_price is None or sol_price <= 0 or token_price is None or token_price <= 0:
            raise PriceUnavailableError("Baseline needs valid SOL and token prices", context="pnl")

        sol_usd = _sol_usd(sol_amount, sol_price)
        token_usd = _token_usd(token_amount, token_price, token_decimals)
        self.baseline = PnLBaseline(
            sol_amount=int(sol_amount),
            token_amount=int(token_amount),
            sol_price=sol_price,
            token_price=token_price,
            token_decimals=token_decimals,
            sol_usd=sol_usd,
            token_usd=token_usd,
            total_usd=sol_usd + token_usd,
            created_at=self.clock(),
        )
        logger.info(f"[PnL] Baseline set: ${self.baseline.total_usd:.2f} "
                    f"(${sol_usd:.2f} SOL + ${token_usd:.2f} token)")
        self._autosave()
        return self.baseline

    def add_claimed_fees(self, sol_lamports: int = 0, token_amount: int = 0):
        if sol_lamports < 0 or token_amount < 0:
            raise ValidationError("Claimed fees cannot be negative", code=ErrorCode.INVALID_PARAMS)
        with self._lock:
            self.claimed_sol += int(sol_lamports)
            self.claimed_token += int(token_amount)
        self._autosave()

    def increment_rebalance(self):
        with self._lock:
            self.rebalance_count += 1
        self._autosave()

    def calculate(self, position_sol: int, position_token: int, unclaimed_sol: int,
                  unclaimed_token: int, sol_price: float, token_price: float) -> PnLReport:
        if self.baseline is None:
            raise EngineError("P&L baseline not initialized", code=ErrorCode.VALIDATION_ERROR, context="pnl")
        if self.baseline.total_usd <= 0:
            raise EngineError("P&L baseline has zero value", code=ErrorCode.VALIDATION_ERROR, context="pnl")
        base = self.baseline
        decimals = base.token_decimals

        current_sol_usd = _sol_usd(position_sol, sol_price)
        current_token_usd = _token_usd(position_token, token_price, decimals)
        position_value = current_sol_usd + current_token_usd
        unclaimed_usd = _sol_usd(unclaimed_sol, sol_price) + _token_usd(unclaimed_token, token_price, decimals)
        claimed_usd = _sol_usd(self.claimed_sol, sol_price) + _token_usd(self.claimed_token, token_price, decimals)
        current_value = position_value + unclaimed_usd + claimed_usd

        hold_original = _sol_usd(base.sol_amount, sol_price) + _token_usd(base.token_amount, token_price, decimals)
        hold_sol = base.total_usd / base.sol_price * sol_price
        hold_token = base.total_usd / base.token_price * token_price

        initial = base.total_usd

        def pct(value: float) -> float:
            return value / initial * 100

        absolute = current_value - initial
        report = PnLReport(
            current_value=current_value,
            position_value=position_value,
            unclaimed_fees_usd=unclaimed_usd,
            claimed_fees_usd=claimed_usd,
            current_sol_usd=current_sol_usd,
            current_token_usd=current_token_usd,
            hold_original_value=hold_original,
            hold_sol_value=hold_sol,
            hold_token_value=hold_token,
            absolute_pnl=absolute,
            absolute_pnl_pct=pct(absolute),
            vs_original=current_value - hold_original,
            vs_original_pct=pct(current_value - hold_original),
            vs_sol_hold=current_value - hold_sol,
            vs_sol_hold_pct=pct(current_value - hold_sol),
            vs_token_hold=current_value - hold_token,
            vs_token_hold_pct=pct(current_value - hold_token),
            sol_price_change_pct=(sol_price - base.sol_price) / base.sol_price * 100,
            token_price_change_pct=(token_price - base.token_price) / base.token_price * 100,
            initial_deposit=initial,
            rebalance_count=self.rebalance_count,
            sol_price=sol_price,
            token_price=token_price,
        )
        logger.info(f"[PnL] Value ${current_value:.2f} | P&L {absolute:+.2f} ({report.absolute_pnl_pct:+.2f}%) | "
                    f"vs hold {report.vs_original:+.2f} | best: {report.best_strategy()}")
        return report

    # ── Persistence ─────────────────────────────────────────────────────

    def export_state(self) -> Dict[str, Any]:
        return {
            'baseline': self.baseline.to_dict() if self.baseline else None,
            'claimed_fees': {'sol': str(self.claimed_sol), 'token': str(self.claimed_token)},
            'rebalance_count': self.rebalance_count,
        }

    def import_state(self, state: Dict[str, Any]):
        baseline = state.get('baseline')
        self.baseline = PnLBaseline.from_dict(baseline) if baseline else None
        claimed = state.get('claimed_fees') or {}
        self.claimed_sol = int(claimed.get('sol') or 0)
        self.claimed_token = int(claimed.get('token') or 0)
        self.rebalance_count = int(state.get('rebalance_count') or 0)

    def save(self, path: Optional[str] = None):
        target = path or self.state_path
        if not target:
            raise ValidationError("No P&L state path configured", code=ErrorCode.INVALID_PARAMS)
        directory = os.path.dirname(os.path.abspath(target))
        os.makedirs(directory, exist_ok=True)
        tmp = f"{target}.tmp"
        with open(tmp, 'w') as f:
            json.dump(self.export_state(), f, indent=2)
        os.replace(tmp, target)

    def load(self, path: Optional[str] = None) -> bool:
        """Restore state from disk. Returns False when there is nothing to load."""
        target = path or self.state_path
        if not target or not os.path.exists(target):
            return False
        with open(target, 'r') as f:
            self.import_state(json.load(f))
        logger.info(f"[PnL] Restored state from {target} (rebalances={self.rebalance_count})")
        return True

    def _autosave(self):
        if self.state_path:
            self.save()
