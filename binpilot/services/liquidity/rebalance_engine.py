#!/usr/bin/env python3
"""
Rebalance Engine
Closes a live position (withdraw everything, claim fees), decides what to do
with the fees and reopens centered on the current active bin.

The snapshot taken before the close is the source of truth for the reopen
size, never a post-close wallet read, so unrelated wallet funds are never
swept into the new position.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from binpilot.config import AUTO_COMPOUND_MODES, FEE_HANDLING_MODES, LAMPORTS_PER_SOL, SOL_MINT
from binpilot.errors import EngineError, ErrorCode, ValidationError, wrap_error
from binpilot.services.meteora_dlmm.dlmm_client import PositionSnapshot, merge_positions
from binpilot.services.meteora_dlmm.strategy_calculator import (
    Direction, StrategyType, SwaplessOptions, TokenRatio, validate_span,
)
from binpilot.services.outcome import EventKind, OutcomeLog
from binpilot.services.priority_fee import PriorityLevel
from binpilot.services.retry import RetryPolicy, execute_with_retry

logger = logging.getLogger("binpilot.rebalance")

CLOSE_RETRY = RetryPolicy(
    max_attempts=3,
    delay_seconds=1.0,
    backoff=2.0,
    priority_ladder=(PriorityLevel.MEDIUM, PriorityLevel.HIGH, PriorityLevel.VERY_HIGH),
)
CLOSURE_POLL_ATTEMPTS = 10
CLOSURE_POLL_SECONDS = 1.0
SETTLE_SECONDS = 1.0


class RebalanceState(Enum):
    POSITION_FOUND = 'position_found'
    FEES_SNAPSHOTTED = 'fees_snapshotted'
    LIQUIDITY_REMOVED = 'liquidity_removed'
    BALANCES_RECONCILED = 'balances_reconciled'
    FEE_CONVERSION_DECISION = 'fee_conversion_decision'
    REOPENED = 'reopened'
    SKIPPED_NO_FUNDS = 'skipped_no_funds'
    NOT_FOUND = 'not_found'


@dataclass
class RebalanceContext:
    """
    The original open parameters carried forward so a price-triggered reopen
    reproduces what the user asked for.

    Attributes:
        budget_sol: SOL ceiling of the original open (None = no ceiling).
        ratio: Target SOL/token value split (None = centered range).
        bin_span: Bins covered by a normal reopen.
        strategy: Strategy used for the first open.
        rebalance_strategy: Strategy for reopens; falls back to `strategy`.
        swapless: Reopen one-sided with whatever the close returned.
        swapless_span: Bin span for swapless reopens (None = `bin_span`).
        fee_handling_mode: "compound" folds fees into the reopen,
            "claim_to_sol" converts the token fee to SOL instead.
        auto_compound_mode: "both", "sol_only", "token_only" or "none".
        min_swap_usd: Smallest token fee worth converting to SOL.
        position_keys: Every underlying object of a multi-position open.
    """
    budget_sol: Optional[float] = None
    ratio: Optional[TokenRatio] = None
    bin_span: int = 20
    strategy: str = "Spot"
    rebalance_strategy: Optional[str] = None
    swapless: bool = False
    swapless_span: Optional[int] = None
    fee_handling_mode: str = "compound"
    auto_compound_mode: str = "both"
    min_swap_usd: float = 0.0
    position_keys: Tuple[str, ...] = ()

    def validate(self) -> 'RebalanceContext':
        validate_span(self.bin_span)
        if self.swapless_span is not None:
            validate_span(self.swapless_span)
        if self.fee_handling_mode not in FEE_HANDLING_MODES:
            raise ValidationError(f"Invalid fee handling mode: {self.fee_handling_mode}",
                                  code=ErrorCode.INVALID_PARAMS)
        if self.auto_compound_mode not in AUTO_COMPOUND_MODES:
            raise ValidationError(f"Invalid auto-compound mode: {self.auto_compound_mode}",
                                  code=ErrorCode.INVALID_PARAMS)
        if self.min_swap_usd < 0:
            raise ValidationError("min_swap_usd must be non-negative", code=ErrorCode.INVALID_PARAMS)
        if self.ratio is not None:
            self.ratio.validate()
        return self

    def reopen_strategy(self) -> StrategyType:
        return StrategyType.from_name(self.rebalance_strategy or self.strategy or StrategyType.SPOT)

    def to_dict(self) -> Dict:
        return {
            'budget_sol': self.budget_sol,
            'ratio': self.ratio.to_dict() if self.ratio else None,
            'bin_span': self.bin_span,
            'strategy': self.strategy,
            'rebalance_strategy': self.rebalance_strategy,
            'swapless': self.swapless,
            'swapless_span': self.swapless_span,
            'fee_handling_mode': self.fee_handling_mode,
            'auto_compound_mode': self.auto_compound_mode,
            'min_swap_usd': self.min_swap_usd,
            'position_keys': list(self.position_keys),
        }


@dataclass
class FeeDecision:
    """What happened to the claimed fees (raw units)."""
    fee_sol: int
    fee_token: int
    compound_sol: int = 0
    compound_token: int = 0
    claimed_usd: float = 0.0
    unswapped_usd: float = 0.0
    swap_signature: Optional[str] = None


@dataclass
class RebalanceResult:
    position_key: str
    new_position_key: Optional[str] = None
    signature: Optional[str] = None
    new_position_keys: List[str] = field(default_factory=list)
    direction: Optional[Direction] = None
    withdrawn_sol: int = 0
    withdrawn_token: int = 0
    reopen_sol: int = 0
    reopen_token: int = 0
    claimed_fees_usd: float = 0.0
    unswapped_fees_usd: float = 0.0
    bin_count: int = 0
    states: List[RebalanceState] = field(default_factory=list)
    events: OutcomeLog = field(default_factory=OutcomeLog)

    @property
    def reopened(self) -> bool:
        return self.new_position_key is not None

    def to_dict(self) -> Dict:
        return {
            'position_key': self.position_key,
            'new_position_key': self.new_position_key,
            'signature': self.signature,
            'new_position_keys': list(self.new_position_keys),
            'direction': self.direction.value if self.direction else None,
            'withdrawn_sol': self.withdrawn_sol,
            'withdrawn_token': self.withdrawn_token,
            'reopen_sol': self.reopen_sol,
            'reopen_token': self.reopen_token,
            'claimed_fees_usd': self.claimed_fees_usd,
            'unswapped_fees_usd': self.unswapped_fees_usd,
            'bin_count': self.bin_count,
            'states': [s.value for s in self.states],
            'events': self.events.to_list(),
        }


@dataclass
class CloseResult:
    position_key: str
    signatures: List[str]
    withdrawn_sol: int
    withdrawn_token: int
    fee_sol: int
    fee_token: int
    claimed_fees_usd: float = 0.0
    swap_signature: Optional[str] = None
    events: OutcomeLog = field(default_factory=OutcomeLog)

    def to_dict(self) -> Dict:
        return {
            'position_key': self.position_key,
            'signatures': list(self.signatures),
            'withdrawn_sol': self.withdrawn_sol,
            'withdrawn_token': self.withdrawn_token,
            'fee_sol': self.fee_sol,
            'fee_token': self.fee_token,
            'claimed_fees_usd': self.claimed_fees_usd,
            'swap_signature': self.swap_signature,
        }


def compound_amounts(mode: str, fee_sol: int, fee_token: int) -> Tuple[int, int]:
    """(sol, token) fee amounts folded back into the reopen for `mode`."""
    if mode == "both":
        return fee_sol, fee_token
    if mode == "sol_only":
        return fee_sol, 0
    if mode == "token_only":
        return 0, fee_token
    return 0, 0


class RebalanceEngine:
    """
    Drives PositionFound → FeesSnapshotted → LiquidityRemoved →
    BalancesReconciled → FeeConversionDecision → Reopened | SkippedNoFunds.

    `opener` is the engine's open path. It is called with keyword arguments
    budget_sol, ratio, bin_span, strategy, swapless, provided_balances and
    outcome, and returns an object with position_key, position_keys,
    signature and bin_count.
    """

    def __init__(self, dlmm, chain, swapper, oracle, pool_address: str,
                 opener: Callable, tracker=None, fee_estimator=None,
                 close_policy: RetryPolicy = CLOSE_RETRY,
                 closure_poll_attempts: int = CLOSURE_POLL_ATTEMPTS,
                 closure_poll_seconds: float = CLOSURE_POLL_SECONDS,
                 settle_seconds: float = SETTLE_SECONDS,
                 sleep: Callable[[float], None] = time.sleep):
        self.dlmm = dlmm
        self.chain = chain
        self.swapper = swapper
        self.oracle = oracle
        self.pool_address = pool_address
        self.opener = opener
        self.tracker = tracker
        self.fee_estimator = fee_estimator
        self.close_policy = close_policy
        self.closure_poll_attempts = closure_poll_attempts
        self.closure_poll_seconds = closure_poll_seconds
        self.settle_seconds = settle_seconds
        self.sleep = sleep

    @property
    def owner(self) -> str:
        return str(self.chain.wallet)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Rebalance
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def rebalance(self, position_key: str, context: RebalanceContext,
                  direction: Optional[Direction] = None,
                  outcome: Optional[OutcomeLog] = None) -> RebalanceResult:
        context.validate()
        direction = Direction.from_name(direction)
        outcome = outcome if outcome is not None else OutcomeLog()
        result = RebalanceResult(position_key=position_key, direction=direction, events=outcome)

        def enter(state: RebalanceState, **data):
            result.states.append(state)
            outcome.state(f"rebalance:{state.value}", **data)

        logger.info(f"[Rebalance] Starting rebalance of {position_key} "
                    f"(direction={direction.value if direction else 'NORMAL'})")

        pool = self.dlmm.get_pool(self.pool_address)
        snapshot = self.locate(position_key, context.position_keys)
        if snapshot is None:
            logger.warning(f"[Rebalance] Position {position_key} not found, skipping rebalance")
            enter(RebalanceState.NOT_FOUND)
            return result
        enter(RebalanceState.POSITION_FOUND, keys=list(snapshot.keys),
              lower_bin_id=snapshot.lower_bin_id, upper_bin_id=snapshot.upper_bin_id)

        sol_amount, token_amount = self._split(snapshot.amount_x, snapshot.amount_y, pool.sol_is_x)
        fee_sol, fee_token = self._split(snapshot.fee_x, snapshot.fee_y, pool.sol_is_x)
        sol_price = self.oracle.require_price(SOL_MINT, context="rebalance")
        token_price = self.oracle.require_price(pool.token_mint, context="rebalance")
        token_scale = 10 ** pool.token_decimals
        claimed_usd = fee_sol / LAMPORTS_PER_SOL * sol_price + fee_token / token_scale * token_price
        result.withdrawn_sol, result.withdrawn_token = sol_amount, token_amount
        enter(RebalanceState.FEES_SNAPSHOTTED, fee_sol=fee_sol, fee_token=fee_token,
              fee_usd=claimed_usd)
        logger.info(f"[Rebalance] Snapshot: {sol_amount:,} lamports SOL, {token_amount:,} token, "
                    f"fees {fee_sol:,} / {fee_token:,} (${claimed_usd:.4f})")

        self._remove_all(snapshot, outcome)
        enter(RebalanceState.LIQUIDITY_REMOVED, signatures=len(outcome.signatures()))

        native = self.chain.get_native_balance()
        wallet_token = self.chain.get_token_balance(pool.token_mint)
        enter(RebalanceState.BALANCES_RECONCILED, native_lamports=native, wallet_token=wallet_token)

        fees = self._decide_fees(context, pool.token_mint, token_scale, fee_sol, fee_token,
                                 sol_price, token_price, outcome)
        fees.claimed_usd = claimed_usd
        result.claimed_fees_usd = claimed_usd
        result.unswapped_fees_usd = fees.unswapped_usd
        enter(RebalanceState.FEE_CONVERSION_DECISION, mode=context.fee_handling_mode,
              compound_sol=fees.compound_sol, compound_token=fees.compound_token,
              unswapped_usd=fees.unswapped_usd)
        if self.tracker is not None:
            # compounded fees go back into the position and are valued there
            self.tracker.add_claimed_fees(fee_sol - fees.compound_sol, fee_token - fees.compound_token)

        reopen_sol = sol_amount + fees.compound_sol
        reopen_token = min(token_amount + fees.compound_token, wallet_token)
        result.reopen_sol, result.reopen_token = reopen_sol, reopen_token
        if snapshot.is_empty or (reopen_sol <= 0 and reopen_token <= 0):
            logger.info("[Rebalance] Position depleted, nothing to reopen")
            enter(RebalanceState.SKIPPED_NO_FUNDS)
            return result

        strategy = context.reopen_strategy()
        if context.swapless:
            swapless = SwaplessOptions(direction=direction, bin_span=context.swapless_span or context.bin_span)
            budget_sol = None
        else:
            swapless = None
            budget_sol = context.budget_sol

        opened = self.opener(
            budget_sol=budget_sol,
            ratio=None if context.swapless else context.ratio,
            bin_span=context.bin_span,
            strategy=strategy,
            swapless=swapless,
            provided_balances=(reopen_sol, reopen_token),
            outcome=outcome,
        )
        result.new_position_key = opened.position_key
        result.new_position_keys = list(opened.position_keys)
        result.signature = opened.signature
        result.bin_count = opened.bin_count
        enter(RebalanceState.REOPENED, position_key=opened.position_key, signature=opened.signature)
        if self.tracker is not None:
            self.tracker.increment_rebalance()

        logger.info(f"[Rebalance] Reopened as {opened.position_key} ({opened.bin_count} bins, "
                    f"{strategy.value})")
        return result

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Close (exits)
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def close_position(self, position_key: str, swap_to_sol: bool = False,
                       position_keys: Sequence[str] = (),
                       outcome: Optional[OutcomeLog] = None) -> Optional[CloseResult]:
        """Withdraw everything and close. Returns None when the position is already gone."""
        outcome = outcome if outcome is not None else OutcomeLog()
        pool = self.dlmm.get_pool(self.pool_address)
        snapshot = self.locate(position_key, position_keys)
        if snapshot is None:
            logger.warning(f"[Rebalance] Position {position_key} not found, nothing to close")
            outcome.note("position not found", position_key=position_key)
            return None

        sol_amount, token_amount = self._split(snapshot.amount_x, snapshot.amount_y, pool.sol_is_x)
        fee_sol, fee_token = self._split(snapshot.fee_x, snapshot.fee_y, pool.sol_is_x)
        self._remove_all(snapshot, outcome)
        if self.tracker is not None:
            self.tracker.add_claimed_fees(fee_sol, fee_token)

        result = CloseResult(
            position_key=position_key,
            signatures=outcome.signatures(),
            withdrawn_sol=sol_amount,
            withdrawn_token=token_amount,
            fee_sol=fee_sol,
            fee_token=fee_token,
            events=outcome,
        )
        sol_price = self.oracle.price(SOL_MINT)
        token_price = self.oracle.price(pool.token_mint)
        if sol_price is not None and token_price is not None:
            result.claimed_fees_usd = (fee_sol / LAMPORTS_PER_SOL * sol_price
                                       + fee_token / 10 ** pool.token_decimals * token_price)

        if swap_to_sol:
            held = self.chain.get_token_balance(pool.token_mint)
            amount = min(token_amount + fee_token, held)
            if amount > 0:
                swap = self.swapper.swap(pool.token_mint, SOL_MINT, amount)
                outcome.record(EventKind.SWAP, "exit swap to SOL", signature=swap.signature,
                               input_mint=pool.token_mint, output_mint=SOL_MINT,
                               amount=amount, out_amount=swap.out_amount)
                result.swap_signature = swap.signature
                self.sleep(self.settle_seconds)
                self.chain.unwrap_wsol()

        logger.info(f"[Rebalance] Closed {position_key} ({len(result.signatures)} tx)")
        return result

    # ── Steps ───────────────────────────────────────────────────────────

    @staticmethod
    def _split(amount_x: int, amount_y: int, sol_is_x: bool) -> Tuple[int, int]:
        """(sol, token) from pool-ordered amounts."""
        return (amount_x, amount_y) if sol_is_x else (amount_y, amount_x)

    def locate(self, position_key: str, position_keys: Sequence[str] = ()) -> Optional[PositionSnapshot]:
        keys = [position_key] + [k for k in position_keys if k != position_key]
        found = self.dlmm.find_positions(self.pool_address, self.owner, keys)
        if not found:
            return None
        if found[0].position_key != position_key:
            logger.warning(f"[Rebalance] Canonical position {position_key} gone, "
                           f"{len(found)} sibling object(s) remain")
        return merge_positions(found)

    def _still_open(self, key: str) -> bool:
        return self.dlmm.position_exists(self.pool_address, self.owner, key)

    def _remove_all(self, snapshot: PositionSnapshot, outcome: OutcomeLog):
        """Remove 100% with claim-and-close for every underlying object, then wait for closure."""
        for key in snapshot.keys:
            self._remove_one(key, outcome)
        self._wait_for_closure(snapshot.keys, outcome)
        self.chain.unwrap_wsol()

    def _remove_one(self, key: str, outcome: OutcomeLog) -> List[str]:
        def attempt(ctx):
            if not ctx.is_first and not self._still_open(key):
                logger.info(f"[Rebalance] Position {key} already closed by an earlier attempt")
                return []
            priority = self.fee_estimator.estimate(ctx.priority_level) if self.fee_estimator else 0
            txs = self.dlmm.build_remove_liquidity(self.pool_address, self.owner, key,
                                                   bps=10_000, claim_and_close=True,
                                                   priority_micro_lamports=priority)
            signatures = []
            for i, tx in enumerate(txs):
                sig = self.chain.send_transaction(tx)
                signatures.append(sig)
                outcome.transaction(sig, "remove liquidity", position_key=key, index=i, total=len(txs))
            return signatures

        try:
            return execute_with_retry(attempt, self.close_policy, context="close_position", sleep=self.sleep)
        except EngineError as e:
            if e.code == ErrorCode.POSITION_NOT_FOUND and not self._still_open(key):
                logger.info(f"[Rebalance] Position {key} already closed")
                return []
            raise

    def _wait_for_closure(self, keys: Sequence[str], outcome: OutcomeLog) -> bool:
        for attempt in range(1, self.closure_poll_attempts + 1):
            remaining = self.dlmm.find_positions(self.pool_address, self.owner, keys)
            if not remaining:
                logger.info(f"[Rebalance] Closure confirmed after {attempt} check(s)")
                return True
            logger.info(f"[Rebalance] Position still visible, waiting "
                        f"({attempt}/{self.closure_poll_attempts})")
            self.sleep(self.closure_poll_seconds)
        logger.warning("[Rebalance] Closure not confirmed after polling; continuing with reopen")
        outcome.note("closure not confirmed", keys=list(keys))
        return False

    def _decide_fees(self, context: RebalanceContext, token_mint: str, token_scale: int,
                     fee_sol: int, fee_token: int, sol_price: float, token_price: float,
                     outcome: OutcomeLog) -> FeeDecision:
        decision = FeeDecision(fee_sol=fee_sol, fee_token=fee_token)
        token_fee_usd = fee_token / token_scale * token_price

        if context.fee_handling_mode == "compound":
            decision.compound_sol, decision.compound_token = compound_amounts(
                context.auto_compound_mode, fee_sol, fee_token)
            if decision.compound_token < fee_token:
                decision.unswapped_usd = token_fee_usd
            logger.info(f"[Rebalance] Compounding fees (mode={context.auto_compound_mode}): "
                        f"+{decision.compound_sol:,} SOL, +{decision.compound_token:,} token")
            return decision

        # claim_to_sol
        if fee_token <= 0:
            return decision
        if token_fee_usd < context.min_swap_usd:
            logger.info(f"[Rebalance] Token fee ${token_fee_usd:.2f} below ${context.min_swap_usd:.2f}, "
                        f"leaving unswapped")
            decision.unswapped_usd = token_fee_usd
            outcome.note("fee swap skipped", usd_value=token_fee_usd, min_swap_usd=context.min_swap_usd)
            return decision

        try:
            swap = self.swapper.swap(token_mint, SOL_MINT, fee_token)
        except EngineError as e:
            error = wrap_error(e, "fee_conversion")
            logger.warning(f"[Rebalance] Fee conversion failed, continuing without swap: {error}")
            outcome.note("fee swap failed", error=error.message, code=error.code)
            decision.unswapped_usd = token_fee_usd
            return decision

        decision.swap_signature = swap.signature
        outcome.record(EventKind.SWAP, "fee conversion to SOL", signature=swap.signature,
                       input_mint=token_mint, output_mint=SOL_MINT, amount=fee_token,
                       out_amount=swap.out_amount, usd_value=token_fee_usd)
        self.sleep(self.settle_seconds)
        return decision
