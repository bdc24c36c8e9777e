#!/usr/bin/env python3
"""
Budget & Reserve Enforcer
Clamps deposit amounts to the user's budget, the wallet's fee/rent headroom
and the ratio share, then applies a one-time haircut. Every reduction is
reported as a reserve entry so callers can reconcile the budget.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from binpilot.config import (
    DEFAULT_COMPUTE_UNITS, DEFAULT_HAIRCUT_BPS, DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS,
    DUST_CLAMP_LAMPORTS, EXTRA_HEADROOM_LAMPORTS, POSITION_SOL_BUFFER, SIGNATURE_FEE_LAMPORTS,
)
from binpilot.errors import ErrorCode, InsufficientFundsError, ValidationError
from binpilot.services.outcome import OutcomeLog
from binpilot.services.priority_fee import estimate_priority_lamports

logger = logging.getLogger("binpilot.budget")

SOL = "sol"
TOKEN = "token"


def estimate_fee_headroom(rent_lamports: int, tx_count: int = 1, initial_open: bool = False,
                          priority_micro_lamports: int = DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS,
                          compute_units: int = DEFAULT_COMPUTE_UNITS,
                          new_token_accounts: int = 1,
                          creation_cost_lamports: int = 0) -> int:
    """Lamports to hold back for signatures, priority fees and account rent."""
    per_tx = SIGNATURE_FEE_LAMPORTS + estimate_priority_lamports(priority_micro_lamports, compute_units)
    headroom = per_tx * max(tx_count, 1) + rent_lamports * max(new_token_accounts, 0)
    headroom += max(creation_cost_lamports, 0)
    if initial_open:
        headroom += POSITION_SOL_BUFFER + EXTRA_HEADROOM_LAMPORTS
    return int(headroom)


@dataclass(frozen=True)
class ReserveEntry:
    amount: int
    reason: str
    side: str

    def to_dict(self) -> Dict:
        return {'amount': self.amount, 'reason': self.reason, 'side': self.side}


@dataclass
class BudgetRequest:
    """
    Inputs for one enforcement pass. SOL amounts are lamports, token
    amounts raw base units.

    Attributes:
        requested_sol / requested_token: amounts the caller wants to deposit.
        budget_lamports: spending ceiling for the SOL side (None = wallet only).
        wallet_sol: native SOL available before the deposit.
        wallet_token: token balance available before the deposit.
        headroom_lamports: fee + rent estimate to keep out of the deposit.
        sol_ratio: SOL share of the budget in two-sided ratio mode.
        token_cap: budget-implied token allowance (None = uncapped).
        only_side: "sol" or "token" for single-sided ranges.
    """
    requested_sol: int
    requested_token: int
    wallet_sol: int
    wallet_token: int
    headroom_lamports: int = 0
    budget_lamports: Optional[int] = None
    sol_ratio: Optional[float] = None
    token_cap: Optional[int] = None
    only_side: Optional[str] = None


@dataclass
class DepositAmounts:
    sol: int
    token: int
    requested_sol: int
    requested_token: int
    reserves: List[ReserveEntry] = field(default_factory=list)

    def reserved_total(self, side: Optional[str] = None) -> int:
        return sum(r.amount for r in self.reserves if side is None or r.side == side)

    def to_dict(self) -> Dict:
        return {
            'sol': self.sol,
            'token': self.token,
            'requested_sol': self.requested_sol,
            'requested_token': self.requested_token,
            'reserves': [r.to_dict() for r in self.reserves],
        }


class BudgetEnforcer:
    """Applies budget, headroom, ratio and haircut caps in a fixed order."""

    def __init__(self, haircut_bps: int = DEFAULT_HAIRCUT_BPS, dust_lamports: int = DUST_CLAMP_LAMPORTS):
        if haircut_bps < 0 or haircut_bps >= 10_000:
            raise ValidationError(f"Invalid haircut: {haircut_bps} bps", code=ErrorCode.INVALID_PARAMS)
        self.haircut_bps = haircut_bps
        self.dust_lamports = dust_lamports

    def enforce(self, request: BudgetRequest, outcome: Optional[OutcomeLog] = None) -> DepositAmounts:
        if request.requested_sol < 0 or request.requested_token < 0:
            raise ValidationError("Requested amounts must be non-negative", code=ErrorCode.INVALID_PARAMS)
        if request.budget_lamports is not None and request.budget_lamports <= 0:
            raise ValidationError("Budget must be positive", code=ErrorCode.INVALID_PARAMS)
        if request.only_side not in (None, SOL, TOKEN):
            raise ValidationError(f"Invalid single side: {request.only_side}", code=ErrorCode.INVALID_PARAMS)

        amounts = {SOL: int(request.requested_sol), TOKEN: int(request.requested_token)}
        reserves: List[ReserveEntry] = []

        def cap(side: str, limit: int, reason: str):
            limit = max(int(limit), 0)
            if amounts[side] > limit:
                entry = ReserveEntry(amount=amounts[side] - limit, reason=reason, side=side)
                reserves.append(entry)
                amounts[side] = limit
                if outcome is not None:
                    outcome.reserve(entry.amount, reason, side)
                logger.info(f"[Budget] Reserved {entry.amount:,} {side} ({reason})")

        if request.only_side == SOL:
            cap(TOKEN, 0, "single_sided")
        elif request.only_side == TOKEN:
            cap(SOL, 0, "single_sided")

        # SOL side: (a) budget, (b) wallet minus headroom, (c) ratio share, (d) haircut
        if amounts[SOL] > 0:
            if request.budget_lamports is not None:
                cap(SOL, request.budget_lamports, "budget_cap")
            ceiling = request.wallet_sol
            if request.budget_lamports is not None:
                ceiling = min(request.budget_lamports, request.wallet_sol)
            cap(SOL, ceiling - request.headroom_lamports, "fee_headroom")
            if (request.only_side is None and request.sol_ratio is not None
                    and request.budget_lamports is not None):
                cap(SOL, request.budget_lamports * request.sol_ratio, "ratio_cap")
            cap(SOL, self._after_haircut(amounts[SOL]), "haircut")

        if amounts[TOKEN] > 0:
            cap(TOKEN, request.wallet_token, "wallet_balance")
            if request.token_cap is not None:
                cap(TOKEN, request.token_cap, "budget_share")
            cap(TOKEN, self._after_haircut(amounts[TOKEN]), "haircut")

        dust_cleared = False
        if request.only_side is None and 0 < amounts[SOL] < self.dust_lamports and amounts[TOKEN] > 0:
            cap(SOL, 0, "dust")
            dust_cleared = True

        result = DepositAmounts(
            sol=amounts[SOL],
            token=amounts[TOKEN],
            requested_sol=int(request.requested_sol),
            requested_token=int(request.requested_token),
            reserves=reserves,
        )
        self._check_required(request, result, dust_cleared)
        return result

    def _after_haircut(self, amount: int) -> int:
        return amount - (amount * self.haircut_bps) // 10_000

    @staticmethod
    def _check_required(request: BudgetRequest, result: DepositAmounts, dust_cleared: bool):
        if request.only_side is not None:
            required = {request.only_side}
        else:
            required = {side for side, asked in ((SOL, request.requested_sol), (TOKEN, request.requested_token))
                        if asked > 0}
            if dust_cleared:
                required.discard(SOL)
        if not required:
            raise InsufficientFundsError("Nothing to deposit: both amounts are zero", context="budget")

        final = {SOL: result.sol, TOKEN: result.token}
        for side in sorted(required):
            if final[side] <= 0:
                code = ErrorCode.INSUFFICIENT_SOL if side == SOL else ErrorCode.INSUFFICIENT_FUNDS
                raise InsufficientFundsError(
                    f"{side.upper()} deposit collapsed to zero after caps "
                    f"(requested {result.requested_sol if side == SOL else result.requested_token:,}, "
                    f"reserved {result.reserved_total(side):,})",
                    code=code, context="budget",
                    details={'reserves': [r.to_dict() for r in result.reserves]}
                )
