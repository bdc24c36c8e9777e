#!/usr/bin/env python3
"""
Token Balancer
Decides whether a pre-deposit swap between SOL and the pool token is needed
to hit the target ratio, sizes it in USD terms and executes it.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from binpilot.config import LAMPORTS_PER_SOL, POSITION_SOL_BUFFER, SOL_DECIMALS, SOL_MINT
from binpilot.errors import PriceUnavailableError
from binpilot.services.meteora_dlmm.strategy_calculator import EVEN_RATIO, TokenRatio
from binpilot.services.outcome import EventKind, OutcomeLog

logger = logging.getLogger("binpilot.balancer")

MIN_SWAP_USD = 0.01
SWAP_SOL_BUFFER = POSITION_SOL_BUFFER   # 0.02 SOL on top of the fee reserve
SETTLE_SECONDS = 1.0


@dataclass(frozen=True)
class SwapPlan:
    input_mint: str
    output_mint: str
    amount: int
    usd_value: float
    sol_to_token: bool


@dataclass(frozen=True)
class BalanceDecision:
    plan: Optional[SwapPlan]
    skip_reason: Optional[str]
    usd_sol: float = 0.0
    usd_token: float = 0.0
    target_token_usd: float = 0.0

    @property
    def skipped(self) -> bool:
        return self.plan is None


def plan_swap(sol_balance: int, token_balance: int, token_mint: str, token_decimals: int,
              sol_price: Optional[float], token_price: Optional[float],
              ratio: Optional[TokenRatio], swapless: bool = False,
              budget_lamports: Optional[int] = None,
              native_lamports: Optional[int] = None,
              reserve_lamports: int = 0,
              from_holdings: bool = False) -> BalanceDecision:
    """
    Pure swap sizing.

    With a budget the universe is the budget's USD value and tokens already
    held count toward the token share. Without one it is the wallet's
    combined value. When the balances are holdings returned by a close
    (`from_holdings`) the universe is their combined value, capped by the
    budget. No ratio balances to 50/50.
    """
    if swapless:
        return BalanceDecision(None, "swapless")
    if ratio is None:
        ratio = EVEN_RATIO
    if ratio.is_one_sided:
        return BalanceDecision(None, "one_sided")
    if sol_price is None or token_price is None:
        missing = SOL_MINT if sol_price is None else token_mint
        raise PriceUnavailableError(f"Price unavailable for {missing}", context="balancer")

    usd_sol = sol_balance / LAMPORTS_PER_SOL * sol_price
    usd_token = token_balance / (10 ** token_decimals) * token_price
    budget_usd = budget_lamports / LAMPORTS_PER_SOL * sol_price if budget_lamports is not None else None
    if from_holdings:
        universe = usd_sol + usd_token
        if budget_usd is not None:
            universe = min(universe, budget_usd)
    elif budget_usd is not None:
        universe = budget_usd
    else:
        universe = usd_sol + usd_token
    if universe < MIN_SWAP_USD:
        return BalanceDecision(None, "dust_total", usd_sol, usd_token)

    target_token_usd = universe * ratio.token
    diff = target_token_usd - usd_token
    if abs(diff) < MIN_SWAP_USD:
        return BalanceDecision(None, "balanced", usd_sol, usd_token, target_token_usd)

    native = sol_balance if native_lamports is None else native_lamports
    if native < reserve_lamports + SWAP_SOL_BUFFER:
        logger.warning(
            f"[Balance] Fee reserve too thin to swap safely ({native:,} < "
            f"{reserve_lamports + SWAP_SOL_BUFFER:,} lamports); using balances as-is"
        )
        return BalanceDecision(None, "low_fee_reserve", usd_sol, usd_token, target_token_usd)

    if diff > 0:
        amount = math.floor(diff / sol_price * 10 ** SOL_DECIMALS)
        spendable = max(native - reserve_lamports - SWAP_SOL_BUFFER, 0)
        amount = min(amount, spendable, sol_balance)
        if budget_lamports is not None:
            amount = min(amount, math.floor(budget_lamports * ratio.token))
        plan = SwapPlan(SOL_MINT, token_mint, int(amount), amount / LAMPORTS_PER_SOL * sol_price, True)
    else:
        amount = math.floor(-diff / token_price * 10 ** token_decimals)
        amount = min(amount, token_balance)
        plan = SwapPlan(token_mint, SOL_MINT, int(amount),
                        amount / (10 ** token_decimals) * token_price, False)

    if plan.amount <= 0:
        return BalanceDecision(None, "nothing_to_swap", usd_sol, usd_token, target_token_usd)
    return BalanceDecision(plan, None, usd_sol, usd_token, target_token_usd)


@dataclass
class BalanceOutcome:
    """
    Amounts available for the deposit after balancing.

    `sol_amount` / `token_amount` are the holdings the deposit is sized
    from: the wallet balances, or the provided holdings adjusted by the swap.
    """
    decision: BalanceDecision
    native_lamports: int
    token_balance: int
    sol_amount: int
    token_amount: int
    swap_signature: Optional[str] = None


class TokenBalancer:
    """Runs plan_swap against live balances and executes the swap."""

    def __init__(self, chain, swapper, oracle, settle_seconds: float = SETTLE_SECONDS,
                 sleep: Callable[[float], None] = time.sleep):
        self.chain = chain
        self.swapper = swapper
        self.oracle = oracle
        self.settle_seconds = settle_seconds
        self.sleep = sleep

    def balance(self, token_mint: str, token_decimals: int, ratio: Optional[TokenRatio],
                swapless: bool = False, budget_lamports: Optional[int] = None,
                reserve_lamports: int = 0, holdings: Optional[Tuple[int, int]] = None,
                outcome: Optional[OutcomeLog] = None) -> BalanceOutcome:
        """
        Balance toward `ratio`.

        `holdings` (sol lamports, token raw) restricts balancing to funds that
        came out of a closed position instead of the whole wallet.
        """
        native = self.chain.get_native_balance()
        token = self.chain.get_token_balance(token_mint)
        sol_amount, token_amount = holdings if holdings is not None else (native, token)

        needs_prices = not swapless and (ratio is None or not ratio.is_one_sided)
        sol_price = self.oracle.price(SOL_MINT) if needs_prices else None
        token_price = self.oracle.price(token_mint) if needs_prices else None

        decision = plan_swap(
            sol_balance=sol_amount, token_balance=min(token_amount, token), token_mint=token_mint,
            token_decimals=token_decimals, sol_price=sol_price, token_price=token_price,
            ratio=ratio, swapless=swapless, budget_lamports=budget_lamports,
            native_lamports=native, reserve_lamports=reserve_lamports,
            from_holdings=holdings is not None,
        )
        if decision.skipped:
            logger.info(f"[Balance] No swap ({decision.skip_reason})")
            if outcome is not None:
                outcome.note("swap skipped", reason=decision.skip_reason)
            return BalanceOutcome(decision, native, token, sol_amount, token_amount)

        plan = decision.plan
        logger.info(
            f"[Balance] Swapping {'SOL→token' if plan.sol_to_token else 'token→SOL'} "
            f"worth ${plan.usd_value:.2f} ({plan.amount:,} raw)"
        )
        result = self.swapper.swap(plan.input_mint, plan.output_mint, plan.amount)
        if outcome is not None:
            outcome.record(EventKind.SWAP, "balance swap", signature=result.signature,
                           input_mint=plan.input_mint, output_mint=plan.output_mint,
                           amount=plan.amount, out_amount=result.out_amount,
                           usd_value=plan.usd_value)

        # let indexers catch up before re-reading
        self.sleep(self.settle_seconds)
        native = self.chain.get_native_balance()
        token = self.chain.get_token_balance(token_mint)

        if holdings is None:
            sol_amount, token_amount = native, token
        elif plan.sol_to_token:
            sol_amount = max(sol_amount - result.in_amount, 0)
            token_amount = min(token_amount + result.out_amount, token)
        else:
            token_amount = max(token_amount - result.in_amount, 0)
            sol_amount = sol_amount + result.out_amount
        return BalanceOutcome(decision, native, token, sol_amount, token_amount,
                              swap_signature=result.signature)
