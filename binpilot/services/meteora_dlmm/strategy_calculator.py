#!/usr/bin/env python3
"""
Strategy Calculator for Meteora DLMM
Bin range allocation for ratio-based, one-sided and swapless positions,
plus the rebalance trigger checks.
"""

import logging
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Optional

from binpilot.config import MAX_BIN_PER_TX, MAX_BIN_SPAN
from binpilot.errors import ErrorCode, ValidationError

logger = logging.getLogger("binpilot.dlmm.strategy")


class StrategyType(Enum):
    """Liquidity distribution strategy types."""
    SPOT = "Spot"       # Uniform distribution
    CURVE = "Curve"     # Bell curve, concentrated in middle
    BIDASK = "BidAsk"   # Edge-heavy, for volatility capture

    @classmethod
    def from_name(cls, name) -> 'StrategyType':
        if isinstance(name, cls):
            return name
        key = str(name or "").replace("_", "").replace("-", "").lower()
        for strategy in cls:
            if strategy.value.lower() == key:
                return strategy
        raise ValidationError(f"Unknown liquidity strategy: {name}", code=ErrorCode.INVALID_STRATEGY)


class Side(Enum):
    """Pool side. X fills bins above the active bin, Y fills bins below."""
    X = "X"
    Y = "Y"


class Direction(Enum):
    UP = "UP"
    DOWN = "DOWN"

    @classmethod
    def from_name(cls, name) -> Optional['Direction']:
        if name is None or isinstance(name, cls):
            return name
        try:
            return cls(str(name).upper())
        except ValueError:
            raise ValidationError(f"Invalid direction: {name}. Must be 'UP' or 'DOWN'",
                                  code=ErrorCode.INVALID_PARAMS)


# Venue bin-ordering convention: token X sits in bins above the active
# bin, token Y in bins below. Confirm against the pool SDK before changing.
ABOVE_ACTIVE_SIDE = Side.X
BELOW_ACTIVE_SIDE = Side.Y

RATIO_TOLERANCE = 0.01


def sol_side(sol_is_x: bool) -> Side:
    return Side.X if sol_is_x else Side.Y


def token_side(sol_is_x: bool) -> Side:
    return Side.Y if sol_is_x else Side.X


@dataclass(frozen=True)
class TokenRatio:
    """Target share of value held in SOL vs the other token (each 0..1)."""
    sol: float
    token: float

    def validate(self) -> 'TokenRatio':
        if self.sol < 0 or self.token < 0:
            raise ValidationError("Token ratio components must be non-negative", code=ErrorCode.INVALID_PARAMS)
        if abs(self.sol + self.token - 1.0) > RATIO_TOLERANCE:
            raise ValidationError(
                f"Token ratio must sum to 1 (got {self.sol + self.token:.4f})",
                code=ErrorCode.INVALID_PARAMS
            )
        return self

    @property
    def is_one_sided(self) -> bool:
        return self.sol in (0, 1) or self.token in (0, 1)

    def to_dict(self) -> Dict[str, float]:
        return {'sol': self.sol, 'token': self.token}


# value split used for balancing and budget shares when no ratio is given
EVEN_RATIO = TokenRatio(sol=0.5, token=0.5)


@dataclass(frozen=True)
class BinRange:
    """Inclusive bin range anchored on the active bin it was computed for."""
    min_bin: int
    max_bin: int
    active_bin: int
    single_side: Optional[Side] = None

    @property
    def bin_count(self) -> int:
        return self.max_bin - self.min_bin + 1

    @property
    def below(self) -> int:
        return self.active_bin - self.min_bin

    @property
    def above(self) -> int:
        return self.max_bin - self.active_bin

    @property
    def deposit_side(self) -> Optional[Side]:
        """The only side that may deposit, or None for a two-sided range."""
        if self.min_bin > self.active_bin:
            return ABOVE_ACTIVE_SIDE
        if self.max_bin < self.active_bin:
            return BELOW_ACTIVE_SIDE
        return self.single_side

    @property
    def is_multi_position(self) -> bool:
        return self.bin_count > MAX_BIN_PER_TX

    def reanchor(self, new_active_bin: int) -> 'BinRange':
        """Same below/above bin counts around a new active bin."""
        if new_active_bin == self.active_bin:
            return self
        delta = new_active_bin - self.active_bin
        logger.info(f"[DLMM] Active bin moved {self.active_bin} → {new_active_bin}, re-anchoring range")
        return replace(self, min_bin=self.min_bin + delta, max_bin=self.max_bin + delta,
                       active_bin=new_active_bin)

    def to_dict(self) -> Dict:
        return {
            'min_bin': self.min_bin,
            'max_bin': self.max_bin,
            'active_bin': self.active_bin,
            'bin_count': self.bin_count,
            'below': self.below,
            'above': self.above,
            'single_side': self.single_side.value if self.single_side else None,
        }


def validate_span(span: int) -> int:
    if not isinstance(span, int) or span < 1 or span > MAX_BIN_SPAN:
        raise ValidationError(f"Bin span must be between 1 and {MAX_BIN_SPAN} (got {span})",
                              code=ErrorCode.INVALID_PARAMS)
    return span


def positions_needed(span: int) -> int:
    return math.ceil(span / MAX_BIN_PER_TX)


def calculate_one_sided_range(active_bin: int, span: int, side: Side) -> BinRange:
    """`span` bins starting at the active bin and extending onto `side`."""
    validate_span(span)
    if side is ABOVE_ACTIVE_SIDE:
        return BinRange(active_bin, active_bin + span - 1, active_bin, single_side=side)
    return BinRange(active_bin - span + 1, active_bin, active_bin, single_side=side)


def calculate_bin_range(active_bin: int, span: int, ratio: Optional[TokenRatio],
                        sol_is_x: bool) -> BinRange:
    """
    Inclusive range of exactly `span` bins around `active_bin`.

    Without a ratio the range is centered. With a mixed ratio the span - 1
    non-active bins are split by floor(non_active * sol) for the SOL side,
    the remainder going to the token side. A 100% / 0% ratio puts the whole
    non-active span on one side.
    """
    validate_span(span)
    non_active = span - 1

    if ratio is None:
        below = non_active // 2
        result = BinRange(active_bin - below, active_bin + (non_active - below), active_bin)
    elif ratio.sol >= 1:
        result = calculate_one_sided_range(active_bin, span, sol_side(sol_is_x))
    elif ratio.sol <= 0:
        result = calculate_one_sided_range(active_bin, span, token_side(sol_is_x))
    else:
        sol_bins = math.floor(non_active * ratio.sol)
        token_bins = non_active - sol_bins
        if sol_side(sol_is_x) is ABOVE_ACTIVE_SIDE:
            below, above = token_bins, sol_bins
        else:
            below, above = sol_bins, token_bins
        result = BinRange(active_bin - below, active_bin + above, active_bin)

    logger.info(f"[DLMM] Bin range: {result.min_bin} to {result.max_bin} ({result.bin_count} bins, "
                f"{result.below} below / {result.above} above {active_bin})")
    return result


def direction_side(direction: Direction, sol_is_x: bool) -> Side:
    """UP leaves the position in SOL, DOWN leaves it in the token."""
    return sol_side(sol_is_x) if direction is Direction.UP else token_side(sol_is_x)


@dataclass(frozen=True)
class SwaplessOptions:
    """One-sided (no swap) open: a direction hint and an optional span override."""
    direction: Optional[Direction] = None
    bin_span: Optional[int] = None

    def to_dict(self) -> Dict:
        return {
            'direction': self.direction.value if self.direction else None,
            'bin_span': self.bin_span,
        }


@dataclass(frozen=True)
class SwaplessSide:
    side: Side
    declared: Optional[Direction]
    mismatch: bool
    reason: str


def resolve_swapless_side(amount_x: int, amount_y: int, usd_x: float, usd_y: float,
                          direction: Optional[Direction], sol_is_x: bool) -> SwaplessSide:
    """
    Side for a swapless reopen, decided by what the close actually left.

    The side holding a balance wins; with both non-zero the USD-dominant
    side wins. The declared direction only decides when nothing is held.
    A disagreement with the declared direction is reported, not raised.
    """
    declared_side = direction_side(direction, sol_is_x) if direction else None

    if amount_x > 0 and amount_y <= 0:
        side, reason = Side.X, "only X balance"
    elif amount_y > 0 and amount_x <= 0:
        side, reason = Side.Y, "only Y balance"
    elif amount_x > 0 and amount_y > 0:
        side = Side.X if usd_x >= usd_y else Side.Y
        reason = f"USD-dominant side (${usd_x:.2f} X vs ${usd_y:.2f} Y)"
    elif declared_side is not None:
        side, reason = declared_side, "declared direction"
    else:
        raise ValidationError("Swapless reopen with no balances and no direction",
                              code=ErrorCode.INVALID_PARAMS)

    mismatch = declared_side is not None and declared_side is not side
    if mismatch:
        logger.warning(
            f"[DLMM] Swapless direction {direction.value} implies {declared_side.value}, "
            f"but balances put the reopen on {side.value} ({reason})"
        )
    return SwaplessSide(side=side, declared=direction, mismatch=mismatch, reason=reason)


def out_of_range_direction(lower_bin_id: int, upper_bin_id: int, active_bin: int) -> Optional[Direction]:
    if active_bin < lower_bin_id:
        return Direction.DOWN
    if active_bin > upper_bin_id:
        return Direction.UP
    return None


def check_rebalance_needed(lower_bin_id: int, upper_bin_id: int, active_bin: int,
                           lower_threshold: float = 20, upper_threshold: float = 20) -> Dict:
    """
    Edge-proximity trigger.

    Distance from each edge as a percentage of the range width; within
    `lower_threshold` of the lower edge gives DOWN, within `upper_threshold`
    of the upper edge gives UP.
    """
    width = max(upper_bin_id - lower_bin_id, 1)
    pct_from_lower = (active_bin - lower_bin_id) / width * 100
    pct_from_upper = (upper_bin_id - active_bin) / width * 100

    direction = None
    if pct_from_lower <= lower_threshold:
        direction = Direction.DOWN
    elif pct_from_upper <= upper_threshold:
        direction = Direction.UP

    return {
        'needs_rebalance': direction is not None,
        'direction': direction,
        'pct_from_lower': pct_from_lower,
        'pct_from_upper': pct_from_upper,
        'active_bin': active_bin,
    }
