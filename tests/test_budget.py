"""Budget enforcement and fee headroom."""

import pytest

from binpilot.config import EXTRA_HEADROOM_LAMPORTS, LAMPORTS_PER_SOL, POSITION_SOL_BUFFER
from binpilot.errors import ErrorCode, InsufficientFundsError, ValidationError
from binpilot.services.liquidity.budget import (
    SOL, TOKEN, BudgetEnforcer, BudgetRequest, estimate_fee_headroom,
)
from binpilot.services.outcome import OutcomeLog


class TestFeeHeadroom:

    def test_single_tx_reopen(self):
        headroom = estimate_fee_headroom(rent_lamports=2_000_000, tx_count=1,
                                         priority_micro_lamports=0)
        assert headroom == 5_000 + 2_000_000

    def test_initial_open_adds_position_buffer(self):
        base = estimate_fee_headroom(2_000_000, 1, False, priority_micro_lamports=0)
        first = estimate_fee_headroom(2_000_000, 1, True, priority_micro_lamports=0)
        assert first - base == POSITION_SOL_BUFFER + EXTRA_HEADROOM_LAMPORTS

    def test_priority_and_tx_count_scale(self):
        headroom = estimate_fee_headroom(0, tx_count=4, priority_micro_lamports=1_000_000,
                                         compute_units=200_000, new_token_accounts=0)
        assert headroom == 4 * (5_000 + 200_000)

    def test_creation_cost_included(self):
        base = estimate_fee_headroom(0, 1, priority_micro_lamports=0)
        with_cost = estimate_fee_headroom(0, 1, priority_micro_lamports=0, creation_cost_lamports=70_000_000)
        assert with_cost - base == 70_000_000


class TestBudgetEnforcer:

    def test_budget_below_wallet_keeps_headroom_reserved(self):
        # budget 1.0, wallet 1.2, fees + rent 0.05
        outcome = OutcomeLog()
        result = BudgetEnforcer(haircut_bps=10).enforce(BudgetRequest(
            requested_sol=int(1.2 * LAMPORTS_PER_SOL),
            requested_token=0,
            wallet_sol=int(1.2 * LAMPORTS_PER_SOL),
            wallet_token=0,
            headroom_lamports=int(0.05 * LAMPORTS_PER_SOL),
            budget_lamports=LAMPORTS_PER_SOL,
            only_side=SOL,
        ), outcome)

        ceiling = int(0.95 * LAMPORTS_PER_SOL)
        assert result.sol <= ceiling - ceiling * 10 // 10_000
        assert result.sol == 949_050_000
        assert result.reserved_total(SOL) >= int(0.05 * LAMPORTS_PER_SOL)
        assert [r.reason for r in result.reserves] == ["budget_cap", "fee_headroom", "haircut"]
        assert outcome.reserved_total(SOL) == result.reserved_total(SOL)

    def test_wallet_below_budget_caps_at_wallet_minus_headroom(self):
        result = BudgetEnforcer(haircut_bps=0).enforce(BudgetRequest(
            requested_sol=500_000_000, requested_token=0,
            wallet_sol=500_000_000, wallet_token=0,
            headroom_lamports=30_000_000, budget_lamports=2 * LAMPORTS_PER_SOL,
            only_side=SOL,
        ))
        assert result.sol == 470_000_000

    def test_ratio_share_of_budget(self):
        result = BudgetEnforcer(haircut_bps=0).enforce(BudgetRequest(
            requested_sol=3 * LAMPORTS_PER_SOL, requested_token=1_000,
            wallet_sol=3 * LAMPORTS_PER_SOL, wallet_token=1_000,
            headroom_lamports=0, budget_lamports=LAMPORTS_PER_SOL, sol_ratio=0.3,
        ))
        assert result.sol == 300_000_000
        assert result.token == 1_000

    def test_token_capped_by_wallet_and_budget_share(self):
        result = BudgetEnforcer(haircut_bps=0).enforce(BudgetRequest(
            requested_sol=0, requested_token=9_000,
            wallet_sol=LAMPORTS_PER_SOL, wallet_token=5_000,
            token_cap=4_000, only_side=TOKEN,
        ))
        assert result.token == 4_000
        assert [r.reason for r in result.reserves] == ["wallet_balance", "budget_share"]

    def test_single_sided_zeroes_other_side(self):
        result = BudgetEnforcer(haircut_bps=0).enforce(BudgetRequest(
            requested_sol=100_000_000, requested_token=5_000,
            wallet_sol=LAMPORTS_PER_SOL, wallet_token=5_000, only_side=TOKEN,
        ))
        assert result.sol == 0
        assert result.token == 5_000

    def test_tiny_budget_collapses_sol_side(self):
        # 0.05 SOL budget fully eaten by headroom
        with pytest.raises(InsufficientFundsError) as exc:
            BudgetEnforcer().enforce(BudgetRequest(
                requested_sol=LAMPORTS_PER_SOL, requested_token=0,
                wallet_sol=LAMPORTS_PER_SOL, wallet_token=0,
                headroom_lamports=int(0.06 * LAMPORTS_PER_SOL),
                budget_lamports=int(0.05 * LAMPORTS_PER_SOL), only_side=SOL,
            ))
        assert exc.value.code == ErrorCode.INSUFFICIENT_SOL

    def test_sol_dust_dropped_when_token_side_funded(self):
        result = BudgetEnforcer(haircut_bps=0).enforce(BudgetRequest(
            requested_sol=5_000, requested_token=10_000,
            wallet_sol=LAMPORTS_PER_SOL, wallet_token=10_000,
        ))
        assert result.sol == 0
        assert result.token == 10_000

    def test_nothing_requested(self):
        with pytest.raises(InsufficientFundsError):
            BudgetEnforcer().enforce(BudgetRequest(0, 0, LAMPORTS_PER_SOL, 0))

    def test_invalid_haircut(self):
        with pytest.raises(ValidationError):
            BudgetEnforcer(haircut_bps=10_000)

    def test_never_exceeds_wallet(self):
        request = BudgetRequest(
            requested_sol=10 * LAMPORTS_PER_SOL, requested_token=10**12,
            wallet_sol=2 * LAMPORTS_PER_SOL, wallet_token=10**9,
            headroom_lamports=10_000_000,
        )
        result = BudgetEnforcer().enforce(request)
        assert result.sol <= request.wallet_sol - request.headroom_lamports
        assert result.token <= request.wallet_token
