#!/usr/bin/env python3
"""Meteora DLMM service package: sidecar client, range allocation and position building."""

from .dlmm_client import DLMMClient, PoolInfo, PositionSnapshot, normalize_position
from .strategy_calculator import (
    BinRange,
    Direction,
    Side,
    StrategyType,
    SwaplessOptions,
    TokenRatio,
    calculate_bin_range,
    calculate_one_sided_range,
)
from .position_builder import BuildResult, DepositPlan, PositionBuilder

__all__ = [
    'DLMMClient',
    'PoolInfo',
    'PositionSnapshot',
    'normalize_position',
    'BinRange',
    'Direction',
    'Side',
    'StrategyType',
    'SwaplessOptions',
    'TokenRatio',
    'calculate_bin_range',
    'calculate_one_sided_range',
    'BuildResult',
    'DepositPlan',
    'PositionBuilder',
]
