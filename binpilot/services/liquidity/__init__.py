#!/usr/bin/env python3
"""
Liquidity Services
Balancing, budget enforcement, rebalancing, P&L and monitoring for one
managed DLMM position.
"""

from .balancer import TokenBalancer, plan_swap
from .budget import BudgetEnforcer, BudgetRequest, DepositAmounts, estimate_fee_headroom
from .rebalance_engine import (
    RebalanceEngine,
    RebalanceContext,
    RebalanceResult,
    RebalanceState,
    CloseResult,
)
from .pnl_tracker import PnLTracker, PnLReport, PnLBaseline
from .position_monitor import (
    PositionMonitor,
    MonitorSettings,
    PositionStatus
)

__all__ = [
    # Balancing / budget
    'TokenBalancer',
    'plan_swap',
    'BudgetEnforcer',
    'BudgetRequest',
    'DepositAmounts',
    'estimate_fee_headroom',
    # Rebalance Engine
    'RebalanceEngine',
    'RebalanceContext',
    'RebalanceResult',
    'RebalanceState',
    'CloseResult',
    # P&L
    'PnLTracker',
    'PnLReport',
    'PnLBaseline',
    # Position Monitor
    'PositionMonitor',
    'MonitorSettings',
    'PositionStatus',
]
