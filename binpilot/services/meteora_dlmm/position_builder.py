#!/usr/bin/env python3
"""
Position Transaction Builder for Meteora DLMM
Creates a position from a deposit plan: one transaction for ranges within
the per-position bin limit, a sequence of initialize / add-liquidity
transactions across several positions beyond it.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from solders.keypair import Keypair

from binpilot.config import SHRINK_MARGIN
from binpilot.errors import (
    BundleError, EngineError, ErrorCode, ValidationError, is_bin_slippage_error,
    is_transfer_insufficient_funds, wrap_error,
)
from binpilot.services.jito import should_use_bundles
from binpilot.services.meteora_dlmm.strategy_calculator import BinRange, Side, StrategyType, positions_needed
from binpilot.services.outcome import EventKind, OutcomeLog
from binpilot.services.priority_fee import PriorityLevel

logger = logging.getLogger("binpilot.dlmm.builder")

SLIPPAGE_LADDER = (1.0, 2.0, 3.0)


class BuildState(Enum):
    SIZING = 'sizing'
    SINGLE_TX = 'single_tx'
    MULTI_TX = 'multi_tx'
    SUBMITTED = 'submitted'
    CONFIRMED = 'confirmed'
    FAILED = 'failed'


@dataclass(frozen=True)
class DepositPlan:
    """Amounts in raw base units for pool side X and Y."""
    amount_x: int
    amount_y: int
    bin_range: BinRange
    strategy: StrategyType = StrategyType.SPOT
    slippage_pct: float = 1.0

    def validate(self) -> 'DepositPlan':
        if self.amount_x < 0 or self.amount_y < 0:
            raise ValidationError("Deposit amounts must be non-negative", code=ErrorCode.INVALID_PARAMS)
        if self.amount_x == 0 and self.amount_y == 0:
            raise ValidationError("Deposit needs at least one positive amount", code=ErrorCode.INVALID_PARAMS)
        side = self.bin_range.deposit_side
        if side is Side.X and self.amount_y > 0:
            raise ValidationError("Range only accepts token X but Y amount is non-zero",
                                  code=ErrorCode.INVALID_PARAMS)
        if side is Side.Y and self.amount_x > 0:
            raise ValidationError("Range only accepts token Y but X amount is non-zero",
                                  code=ErrorCode.INVALID_PARAMS)
        return self

    def amount(self, side: Side) -> int:
        return self.amount_x if side is Side.X else self.amount_y

    def with_amount(self, side: Side, value: int) -> 'DepositPlan':
        if side is Side.X:
            return replace(self, amount_x=value)
        return replace(self, amount_y=value)


@dataclass
class BuildResult:
    position_key: str
    position_keys: List[str]
    signatures: List[str]
    bin_range: BinRange
    amount_x: int
    amount_y: int
    transaction_count: int
    slippage_pct: float
    used_bundle: bool = False
    states: List[BuildState] = field(default_factory=list)

    @property
    def signature(self) -> Optional[str]:
        return self.signatures[0] if self.signatures else None

    @property
    def bin_count(self) -> int:
        return self.bin_range.bin_count


class PositionBuilder:
    """
    Drives one position creation through Sizing → SingleTx | MultiTx →
    Submitted → Confirmed | Failed, recording every signature on the
    outcome log as it lands.
    """

    def __init__(self, dlmm, chain, pool_address: str, bundle_executor=None,
                 fee_estimator=None, cluster: str = "mainnet", use_bundles: bool = True,
                 jito_priority: str = "medium",
                 slippage_ladder: Sequence[float] = SLIPPAGE_LADDER,
                 keypair_factory: Callable[[], Keypair] = Keypair,
                 sol_side: Optional[Side] = None):
        self.dlmm = dlmm
        self.chain = chain
        self.pool_address = pool_address
        self.bundle_executor = bundle_executor
        self.fee_estimator = fee_estimator
        self.cluster = cluster
        self.use_bundles = use_bundles
        self.jito_priority = jito_priority
        self.slippage_ladder = tuple(slippage_ladder)
        self.keypair_factory = keypair_factory
        self.sol_side = sol_side

    @property
    def owner(self) -> str:
        return str(self.chain.wallet)

    def _priority(self, level: PriorityLevel) -> int:
        if self.fee_estimator is None:
            return 0
        return self.fee_estimator.estimate(level)

    def _state(self, states: List[BuildState], state: BuildState, outcome: OutcomeLog, **data):
        states.append(state)
        outcome.state(f"build:{state.value}", **data)

    def build(self, plan: DepositPlan, outcome: OutcomeLog,
              priority: PriorityLevel = PriorityLevel.MEDIUM) -> BuildResult:
        states: List[BuildState] = []
        self._state(states, BuildState.SIZING, outcome)

        active = self.dlmm.get_active_bin(self.pool_address)
        if active != plan.bin_range.active_bin:
            plan = replace(plan, bin_range=plan.bin_range.reanchor(active))
            outcome.note("range re-anchored", active_bin=active,
                         min_bin=plan.bin_range.min_bin, max_bin=plan.bin_range.max_bin)
        plan.validate()

        try:
            if plan.bin_range.is_multi_position:
                self._state(states, BuildState.MULTI_TX, outcome,
                            positions=positions_needed(plan.bin_range.bin_count))
                result = self._build_multi(plan, outcome, priority, states)
            else:
                self._state(states, BuildState.SINGLE_TX, outcome)
                result = self._build_single(plan, outcome, priority, states)
        except Exception:
            self._state(states, BuildState.FAILED, outcome)
            raise

        self._state(states, BuildState.CONFIRMED, outcome, position_key=result.position_key)
        result.states = states
        return result

    # ── Single position ─────────────────────────────────────────────────

    def _shrink_side(self, plan: DepositPlan) -> Side:
        if self.sol_side is not None and plan.amount(self.sol_side) > 0:
            return self.sol_side
        return Side.Y if plan.amount_y > 0 else Side.X

    def _build_single(self, plan: DepositPlan, outcome: OutcomeLog, priority: PriorityLevel,
                      states: List[BuildState]) -> BuildResult:
        position_kp = self.keypair_factory()
        position_key = str(position_kp.pubkey())
        shrunk = False

        while True:
            tx = self.dlmm.build_create_position(
                self.pool_address, self.owner, position_key,
                plan.amount_x, plan.amount_y,
                plan.bin_range.min_bin, plan.bin_range.max_bin,
                plan.strategy.value, plan.slippage_pct,
                priority_micro_lamports=self._priority(priority),
            )
            try:
                self._state(states, BuildState.SUBMITTED, outcome, position_key=position_key)
                sig = self.chain.send_transaction(tx, [position_kp])
                break
            except Exception as e:
                if shrunk or not is_transfer_insufficient_funds(e):
                    raise
                side = self._shrink_side(plan)
                before = plan.amount(side)
                after = max(before - SHRINK_MARGIN, 0)
                plan = plan.with_amount(side, after).validate()
                outcome.reserve(before - after, "adaptive_shrink", side.value)
                logger.warning(f"[DLMM] Insufficient funds on transfer, shrinking {side.value} "
                               f"{before:,} → {after:,} and rebuilding once")
                shrunk = True

        outcome.transaction(sig, "create position", position_key=position_key)
        return BuildResult(
            position_key=position_key,
            position_keys=[position_key],
            signatures=[sig],
            bin_range=plan.bin_range,
            amount_x=plan.amount_x,
            amount_y=plan.amount_y,
            transaction_count=1,
            slippage_pct=plan.slippage_pct,
        )

    # ── Multiple positions ──────────────────────────────────────────────

    def _build_multi(self, plan: DepositPlan, outcome: OutcomeLog, priority: PriorityLevel,
                     states: List[BuildState]) -> BuildResult:
        last_error: Optional[EngineError] = None
        for slippage in self.slippage_ladder:
            attempt_plan = replace(plan, slippage_pct=slippage)
            keypairs = [self.keypair_factory() for _ in range(positions_needed(plan.bin_range.bin_count))]
            by_key: Dict[str, Keypair] = {str(kp.pubkey()): kp for kp in keypairs}

            batches = self.dlmm.build_create_positions_extended(
                self.pool_address, self.owner, list(by_key),
                attempt_plan.amount_x, attempt_plan.amount_y,
                attempt_plan.bin_range.min_bin, attempt_plan.bin_range.max_bin,
                attempt_plan.strategy.value, slippage,
                priority_micro_lamports=self._priority(priority),
            )
            ordered: List[Tuple[str, str, List[Keypair], str]] = []
            for batch in batches:
                kp = by_key[batch.position_key]
                ordered.append((batch.position_key, batch.init_transaction, [kp], "initialize position"))
                for add_tx in batch.add_liquidity_transactions:
                    ordered.append((batch.position_key, add_tx, [kp], "add liquidity"))

            self._state(states, BuildState.SUBMITTED, outcome, transactions=len(ordered), slippage=slippage)
            try:
                signatures, used_bundle = self._submit(ordered, outcome)
            except EngineError as e:
                last_error = e
                if not is_bin_slippage_error(e):
                    raise
                logger.warning(f"[DLMM] Bin slippage at {slippage}% – aborting attempt, next tier")
                outcome.note("bin slippage, retrying at next tier", slippage=slippage)
                continue

            keys = [batch.position_key for batch in batches]
            return BuildResult(
                position_key=keys[0],
                position_keys=keys,
                signatures=signatures,
                bin_range=attempt_plan.bin_range,
                amount_x=attempt_plan.amount_x,
                amount_y=attempt_plan.amount_y,
                transaction_count=len(ordered),
                slippage_pct=slippage,
                used_bundle=used_bundle,
            )

        raise EngineError(
            f"Position creation failed at every slippage tier {list(self.slippage_ladder)}: "
            f"{last_error.message if last_error else 'no attempt made'}",
            code=ErrorCode.SLIPPAGE_EXCEEDED, context="build_multi"
        )

    def _submit(self, ordered: List[Tuple[str, str, List[Keypair], str]],
                outcome: OutcomeLog) -> Tuple[List[str], bool]:
        """Bundle when eligible, otherwise (or on bundle failure) one by one."""
        if self.bundle_executor is not None and should_use_bundles(
                len(ordered), multi_position=True, cluster=self.cluster, enabled=self.use_bundles):
            try:
                bundle = self.bundle_executor.send_with_confirmation(
                    [(tx, signers) for _, tx, signers, _ in ordered], self.jito_priority
                )
            except BundleError as e:
                logger.warning(f"[DLMM] Bundle failed ({e.message}); falling back to sequential submission")
                outcome.record(EventKind.FALLBACK, "bundle failed, sequential submission",
                               error=e.message, transactions=len(ordered))
            else:
                for (key, _, _, label), sig in zip(ordered, bundle.payload_signatures):
                    outcome.transaction(sig, label, position_key=key, bundle_id=bundle.bundle_id)
                return list(bundle.payload_signatures), True

        return self._submit_sequential(ordered, outcome), False

    def _submit_sequential(self, ordered: List[Tuple[str, str, List[Keypair], str]],
                           outcome: OutcomeLog) -> List[str]:
        signatures: List[str] = []
        funded: Dict[str, bool] = {}
        try:
            for key, tx, signers, label in ordered:
                sig = self.chain.send_transaction(tx, signers)
                signatures.append(sig)
                outcome.transaction(sig, label, position_key=key)
                if label == "initialize position":
                    funded[key] = False
                else:
                    funded[key] = True
        except Exception as e:
            error = wrap_error(e, "build_multi", submitted=len(signatures))
            self._cleanup(funded, outcome)
            raise error
        return signatures

    def _cleanup(self, funded: Dict[str, bool], outcome: OutcomeLog):
        """Close positions left behind by an aborted multi-position attempt."""
        for key, has_liquidity in funded.items():
            try:
                if has_liquidity:
                    txs = self.dlmm.build_remove_liquidity(self.pool_address, self.owner, key,
                                                           bps=10_000, claim_and_close=True)
                else:
                    txs = [self.dlmm.build_close_position(self.pool_address, self.owner, key)]
                for tx in txs:
                    sig = self.chain.send_transaction(tx)
                    outcome.transaction(sig, "close abandoned position", position_key=key)
            except Exception as e:
                error = wrap_error(e, "cleanup", position_key=key)
                logger.error(f"[DLMM] Could not close abandoned position {key}: {error}")
                outcome.note("abandoned position left open", position_key=key, error=error.message)
