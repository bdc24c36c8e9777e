#!/usr/bin/env python3
"""
Liquidity Engine
Entry point for one managed DLMM position: open, rebalance, close, value and
monitor. Collaborators are injected so the same engine runs against the
live sidecar and chain or against test fakes.
"""

import logging
import math
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from binpilot.config import LAMPORTS_PER_SOL, SOL_MINT, EngineConfig
from binpilot.errors import EngineError, ErrorCode, ValidationError, wrap_error
from binpilot.services.liquidity.balancer import TokenBalancer
from binpilot.services.liquidity.budget import (
    SOL, TOKEN, BudgetEnforcer, BudgetRequest, DepositAmounts, estimate_fee_headroom,
)
from binpilot.services.liquidity.pnl_tracker import PnLReport, PnLTracker
from binpilot.services.liquidity.position_monitor import MonitorSettings, PositionMonitor
from binpilot.services.liquidity.rebalance_engine import (
    CloseResult, RebalanceContext, RebalanceEngine, RebalanceResult,
)
from binpilot.services.meteora_dlmm.dlmm_client import PoolInfo, PositionSnapshot, merge_positions
from binpilot.services.meteora_dlmm.position_builder import (
    SLIPPAGE_LADDER, BuildResult, DepositPlan, PositionBuilder,
)
from binpilot.services.meteora_dlmm.strategy_calculator import (
    EVEN_RATIO, BinRange, StrategyType, SwaplessOptions, TokenRatio, calculate_bin_range,
    calculate_one_sided_range, positions_needed, resolve_swapless_side, sol_side,
)
from binpilot.services.outcome import OutcomeLog
from binpilot.services.priority_fee import PriorityLevel
from binpilot.services.retry import RetryPolicy, execute_with_retry
from binpilot.validation import validate_open_params, validate_pool_address

logger = logging.getLogger("binpilot.engine")

OPEN_RETRY = RetryPolicy(
    max_attempts=3,
    delay_seconds=1.0,
    backoff=2.0,
    slippage_ladder=SLIPPAGE_LADDER,
    priority_ladder=(PriorityLevel.MEDIUM, PriorityLevel.HIGH, PriorityLevel.VERY_HIGH),
)


@dataclass
class OpenResult:
    position_key: str
    position_keys: List[str]
    signature: Optional[str]
    bin_count: int
    bin_range: Optional[BinRange] = None
    signatures: List[str] = field(default_factory=list)
    deposit_sol: int = 0
    deposit_token: int = 0
    deposits: Optional[DepositAmounts] = None
    transaction_count: int = 0
    used_bundle: bool = False
    adopted: bool = False
    events: OutcomeLog = field(default_factory=OutcomeLog)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'position_key': self.position_key,
            'position_keys': list(self.position_keys),
            'signature': self.signature,
            'signatures': list(self.signatures),
            'bin_count': self.bin_count,
            'bin_range': self.bin_range.to_dict() if self.bin_range else None,
            'deposit_sol': self.deposit_sol,
            'deposit_token': self.deposit_token,
            'reserves': [r.to_dict() for r in self.deposits.reserves] if self.deposits else [],
            'transaction_count': self.transaction_count,
            'used_bundle': self.used_bundle,
            'adopted': self.adopted,
            'events': self.events.to_list(),
        }


class LiquidityEngine:
    """
    Owns one pool for one wallet.

    Open runs validation → balancing → range allocation → budget
    enforcement → position building under the retry controller. Any failure
    after validation leaves the wallet with native SOL (WSOL unwrapped)
    before the error surfaces.
    """

    def __init__(self, config: EngineConfig, dlmm, chain, swapper, oracle,
                 bundle_executor=None, fee_estimator=None,
                 tracker: Optional[PnLTracker] = None,
                 balancer: Optional[TokenBalancer] = None,
                 enforcer: Optional[BudgetEnforcer] = None,
                 open_policy: RetryPolicy = OPEN_RETRY,
                 adopt_existing: bool = True,
                 keypair_factory: Optional[Callable] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 listener: Optional[Callable] = None):
        self.config = config
        self.pool_address = validate_pool_address(config.pool_address)
        self.dlmm = dlmm
        self.chain = chain
        self.swapper = swapper
        self.oracle = oracle
        self.bundle_executor = bundle_executor
        self.fee_estimator = fee_estimator
        self.tracker = tracker if tracker is not None else PnLTracker(config.pnl_state_path)
        self.balancer = balancer or TokenBalancer(chain, swapper, oracle, sleep=sleep)
        self.enforcer = enforcer or BudgetEnforcer(config.haircut_bps)
        self.open_policy = open_policy
        self.adopt_existing = adopt_existing
        self.keypair_factory = keypair_factory
        self.sleep = sleep
        self.listener = listener
        self.rebalancer = RebalanceEngine(
            dlmm, chain, swapper, oracle, self.pool_address,
            opener=self.open_position,
            tracker=self.tracker,
            fee_estimator=fee_estimator,
            sleep=sleep,
        )

    @property
    def owner(self) -> str:
        return str(self.chain.wallet)

    def _outcome(self, outcome: Optional[OutcomeLog]) -> OutcomeLog:
        return outcome if outcome is not None else OutcomeLog(self.listener)

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Open
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def open_position(self, budget_sol: Optional[float] = None, ratio=None,
                      bin_span: Optional[int] = None, strategy=None, swapless=None,
                      provided_balances: Optional[Tuple[int, int]] = None,
                      outcome: Optional[OutcomeLog] = None) -> OpenResult:
        """
        Open a position around the current active bin.

        Args:
            budget_sol: SOL ceiling for the deposit (None = wallet minus headroom).
            ratio: Target SOL/token value split; None gives a centered range
                funded 50/50.
            bin_span: Total bins, active bin included.
            strategy: Spot, Curve or BidAsk.
            swapless: SwaplessOptions (or True / dict) for a one-sided open
                that never swaps.
            provided_balances: (sol lamports, token raw) to deposit instead
                of the wallet balances; used by the rebalance reopen.
        """
        params = validate_open_params(
            budget_sol=budget_sol,
            ratio=ratio,
            bin_span=bin_span if bin_span is not None else self.config.total_bins_span,
            strategy=strategy if strategy is not None else self.config.liquidity_strategy,
            swapless=swapless,
            provided_balances=provided_balances,
        )
        outcome = self._outcome(outcome)
        try:
            return self._open(outcome, **params)
        except ValidationError:
            raise
        except Exception as e:
            error = wrap_error(e, "open_position")
            logger.error(f"[DLMM] Open failed: {error}")
            self._leave_wallet_native(outcome)
            raise error

    def _open(self, outcome: OutcomeLog, budget_sol: Optional[float], ratio: Optional[TokenRatio],
              bin_span: int, strategy: StrategyType, swapless: Optional[SwaplessOptions],
              provided_balances: Optional[Tuple[int, int]]) -> OpenResult:
        pool = self._pool()

        if provided_balances is None and self.adopt_existing:
            existing = self._existing_position()
            if existing is not None:
                logger.info(f"[DLMM] Adopting existing position {existing.position_key} "
                            f"({existing.bin_count} bins)")
                outcome.note("existing position adopted", position_key=existing.position_key)
                return OpenResult(
                    position_key=existing.position_key,
                    position_keys=list(existing.keys),
                    signature=None,
                    bin_count=existing.bin_count,
                    adopted=True,
                    events=outcome,
                )

        sol_price = self.oracle.require_price(SOL_MINT, context="open_position")
        token_price = self.oracle.require_price(pool.token_mint, context="open_position")
        budget_lamports = int(budget_sol * LAMPORTS_PER_SOL) if budget_sol is not None else None
        initial_open = provided_balances is None
        span = swapless.bin_span if swapless is not None and swapless.bin_span else bin_span

        rent = self.chain.get_rent_exemption()
        priority_fee = self._priority_fee()
        tx_count = self._transaction_estimate(span)
        headroom = estimate_fee_headroom(rent, tx_count, initial_open, priority_micro_lamports=priority_fee)

        balanced = self.balancer.balance(
            pool.token_mint, pool.token_decimals,
            None if swapless is not None else ratio,
            swapless=swapless is not None,
            budget_lamports=budget_lamports,
            reserve_lamports=headroom,
            holdings=provided_balances,
            outcome=outcome,
        )
        sol_available, token_available = balanced.sol_amount, balanced.token_amount

        active_bin = self.dlmm.get_active_bin(self.pool_address)
        if swapless is not None:
            bin_range = self._swapless_range(pool, active_bin, span, swapless, sol_available,
                                             token_available, sol_price, token_price, outcome)
        else:
            bin_range = calculate_bin_range(active_bin, span, ratio, pool.sol_is_x)
        outcome.state("open:range", **bin_range.to_dict())

        creation_cost = self._creation_cost(bin_range, strategy, outcome)
        if creation_cost:
            headroom = estimate_fee_headroom(rent, tx_count, initial_open,
                                             priority_micro_lamports=priority_fee,
                                             creation_cost_lamports=creation_cost)

        only_side = None
        if bin_range.deposit_side is not None:
            only_side = SOL if bin_range.deposit_side is sol_side(pool.sol_is_x) else TOKEN

        # no ratio shares the budget 50/50
        share = ratio if ratio is not None else EVEN_RATIO
        token_cap = None
        if budget_lamports is not None and only_side is None and token_price > 0:
            token_value_usd = budget_lamports / LAMPORTS_PER_SOL * sol_price * share.token
            token_cap = math.floor(token_value_usd / token_price * 10 ** pool.token_decimals)

        deposits = self.enforcer.enforce(BudgetRequest(
            requested_sol=sol_available,
            requested_token=token_available,
            wallet_sol=balanced.native_lamports,
            wallet_token=balanced.token_balance,
            headroom_lamports=headroom,
            budget_lamports=budget_lamports,
            sol_ratio=share.sol,
            token_cap=token_cap,
            only_side=only_side,
        ), outcome)
        logger.info(f"[DLMM] Depositing {deposits.sol / LAMPORTS_PER_SOL:.6f} SOL + "
                    f"{deposits.token:,} token over {bin_range.bin_count} bins ({strategy.value})")

        amount_x, amount_y = ((deposits.sol, deposits.token) if pool.sol_is_x
                              else (deposits.token, deposits.sol))
        plan = DepositPlan(amount_x=amount_x, amount_y=amount_y, bin_range=bin_range,
                           strategy=strategy).validate()
        builder = self._builder(pool)

        def attempt(ctx) -> BuildResult:
            attempt_plan = replace(plan, slippage_pct=ctx.slippage_pct) if ctx.slippage_pct else plan
            return builder.build(attempt_plan, outcome, ctx.priority_level)

        built = execute_with_retry(attempt, self.open_policy, context="open_position", sleep=self.sleep)

        deposit_sol, deposit_token = ((built.amount_x, built.amount_y) if pool.sol_is_x
                                      else (built.amount_y, built.amount_x))
        if initial_open and not self.tracker.has_baseline:
            self.tracker.initialize_baseline(deposit_sol, deposit_token, sol_price, token_price,
                                             pool.token_decimals)

        logger.info(f"[DLMM] Position open: {built.position_key} "
                    f"({built.transaction_count} tx{', bundled' if built.used_bundle else ''})")
        return OpenResult(
            position_key=built.position_key,
            position_keys=list(built.position_keys),
            signature=built.signature,
            bin_count=built.bin_count,
            bin_range=built.bin_range,
            signatures=list(built.signatures),
            deposit_sol=deposit_sol,
            deposit_token=deposit_token,
            deposits=deposits,
            transaction_count=built.transaction_count,
            used_bundle=built.used_bundle,
            events=outcome,
        )

    # ── Open helpers ────────────────────────────────────────────────────

    def _pool(self) -> PoolInfo:
        pool = self.dlmm.get_pool(self.pool_address)
        if SOL_MINT not in (pool.token_x_mint, pool.token_y_mint):
            raise ValidationError(f"Pool {self.pool_address} has no SOL side", code=ErrorCode.INVALID_POOL)
        return pool

    def _existing_position(self) -> Optional[PositionSnapshot]:
        live = [p for p in self.dlmm.get_positions(self.pool_address, self.owner) if not p.is_empty]
        if not live:
            return None
        return merge_positions(live)

    def _priority_fee(self) -> int:
        if self.fee_estimator is None:
            return 0
        return self.fee_estimator.estimate(PriorityLevel.MEDIUM)

    @staticmethod
    def _transaction_estimate(span: int) -> int:
        positions = positions_needed(span)
        # init + add per underlying position
        return 1 if positions == 1 else positions * 2

    def _swapless_range(self, pool: PoolInfo, active_bin: int, span: int, swapless: SwaplessOptions,
                        sol_amount: int, token_amount: int, sol_price: float, token_price: float,
                        outcome: OutcomeLog) -> BinRange:
        sol_usd = sol_amount / LAMPORTS_PER_SOL * sol_price
        token_usd = token_amount / 10 ** pool.token_decimals * token_price
        if pool.sol_is_x:
            amounts, usd = (sol_amount, token_amount), (sol_usd, token_usd)
        else:
            amounts, usd = (token_amount, sol_amount), (token_usd, sol_usd)
        choice = resolve_swapless_side(amounts[0], amounts[1], usd[0], usd[1],
                                       swapless.direction, pool.sol_is_x)
        if choice.mismatch:
            outcome.note("swapless direction mismatch", declared=choice.declared.value,
                         side=choice.side.value, reason=choice.reason)
        return calculate_one_sided_range(active_bin, span, choice.side)

    def _creation_cost(self, bin_range: BinRange, strategy: StrategyType, outcome: OutcomeLog) -> int:
        """Lamports for bin-array init and position rent; 0 when no quote is available."""
        try:
            quote = self.dlmm.quote_create_position(self.pool_address, bin_range.min_bin,
                                                    bin_range.max_bin, strategy.value)
        except EngineError as e:
            logger.warning(f"[DLMM] Creation quote unavailable, using default headroom: {e}")
            return 0
        if quote.requires_bin_array_init:
            logger.warning(f"[DLMM] Range needs {quote.bin_array_count} new bin array(s) "
                           f"({quote.bin_array_cost:.4f} SOL)")
            outcome.note("bin array initialization", count=quote.bin_array_count,
                         cost_sol=quote.bin_array_cost)
        return int((quote.bin_array_cost + quote.position_cost) * LAMPORTS_PER_SOL)

    def _builder(self, pool: PoolInfo) -> PositionBuilder:
        kwargs = {}
        if self.keypair_factory is not None:
            kwargs['keypair_factory'] = self.keypair_factory
        return PositionBuilder(
            self.dlmm, self.chain, self.pool_address,
            bundle_executor=self.bundle_executor,
            fee_estimator=self.fee_estimator,
            cluster=self.config.cluster,
            use_bundles=self.config.use_jito_bundles,
            jito_priority=self.config.jito_priority,
            sol_side=sol_side(pool.sol_is_x),
            **kwargs,
        )

    def _leave_wallet_native(self, outcome: OutcomeLog):
        try:
            signature = self.chain.unwrap_wsol()
        except Exception as e:
            error = wrap_error(e, "unwrap_wsol")
            logger.error(f"[DLMM] WSOL unwrap after failure also failed: {error}")
            outcome.note("wsol unwrap failed", error=error.message, code=error.code)
            return
        if signature:
            outcome.transaction(signature, "unwrap WSOL after failure")

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Rebalance / close
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def rebalance_context(self, budget_sol: Optional[float] = None, ratio=None,
                          bin_span: Optional[int] = None, strategy=None, swapless: bool = False,
                          swapless_span: Optional[int] = None,
                          position_keys: Sequence[str] = ()) -> RebalanceContext:
        """Context for later rebalances, filled from the engine config where not given."""
        params = validate_open_params(
            budget_sol=budget_sol,
            ratio=ratio,
            bin_span=bin_span if bin_span is not None else self.config.total_bins_span,
            strategy=strategy if strategy is not None else self.config.liquidity_strategy,
        )
        return RebalanceContext(
            budget_sol=params['budget_sol'],
            ratio=params['ratio'],
            bin_span=params['bin_span'],
            strategy=params['strategy'].value,
            rebalance_strategy=self.config.rebalance_strategy,
            swapless=swapless,
            swapless_span=swapless_span,
            fee_handling_mode=self.config.fee_handling_mode,
            auto_compound_mode=self.config.auto_compound_mode,
            min_swap_usd=self.config.min_swap_usd,
            position_keys=tuple(position_keys),
        ).validate()

    def rebalance(self, position_key: str, context: Optional[RebalanceContext] = None,
                  direction=None, outcome: Optional[OutcomeLog] = None) -> RebalanceResult:
        context = context or self.rebalance_context()
        outcome = self._outcome(outcome)
        try:
            return self.rebalancer.rebalance(position_key, context, direction, outcome)
        except ValidationError:
            raise
        except Exception as e:
            error = wrap_error(e, "rebalance", position_key=position_key)
            logger.error(f"[Rebalance] Failed: {error}")
            self._leave_wallet_native(outcome)
            raise error

    def close_position(self, position_key: str, swap_to_sol: bool = False,
                       position_keys: Sequence[str] = (),
                       outcome: Optional[OutcomeLog] = None) -> Optional[CloseResult]:
        return self.rebalancer.close_position(position_key, swap_to_sol=swap_to_sol,
                                              position_keys=position_keys,
                                              outcome=self._outcome(outcome))

    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
    # Queries
    # ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

    def get_active_bin(self) -> int:
        return self.dlmm.get_active_bin(self.pool_address)

    def get_position(self, position_key: str, position_keys: Sequence[str] = ()) -> Optional[PositionSnapshot]:
        return self.rebalancer.locate(position_key, position_keys)

    def value_position(self, position_key: str, position_keys: Sequence[str] = (),
                       snapshot: Optional[PositionSnapshot] = None) -> Optional[PnLReport]:
        """P&L report for the position, or None when it no longer exists."""
        if snapshot is None:
            snapshot = self.get_position(position_key, position_keys)
        if snapshot is None:
            return None
        pool = self.dlmm.get_pool(self.pool_address)
        sol_price = self.oracle.require_price(SOL_MINT, context="value_position")
        token_price = self.oracle.require_price(pool.token_mint, context="value_position")
        if pool.sol_is_x:
            position = (snapshot.amount_x, snapshot.amount_y)
            fees = (snapshot.fee_x, snapshot.fee_y)
        else:
            position = (snapshot.amount_y, snapshot.amount_x)
            fees = (snapshot.fee_y, snapshot.fee_x)
        return self.tracker.calculate(position[0], position[1], fees[0], fees[1], sol_price, token_price)

    def monitor(self, position_key: str, context: Optional[RebalanceContext] = None,
                settings: Optional[MonitorSettings] = None) -> PositionMonitor:
        """Monitor bound to this engine (not started)."""
        if settings is None:
            settings = MonitorSettings(check_interval_seconds=self.config.monitor_interval_seconds)
        if context is None:
            context = self.rebalance_context()
        return PositionMonitor(self, position_key, context, settings, sleep=self.sleep)
