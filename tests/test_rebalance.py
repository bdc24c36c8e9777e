"""Close → fee decision → reopen cycle."""

from dataclasses import replace

import pytest

from binpilot.config import SOL_MINT
from binpilot.errors import EngineError, ErrorCode
from binpilot.services.liquidity.rebalance_engine import RebalanceState, compound_amounts
from binpilot.services.meteora_dlmm.strategy_calculator import Direction
from binpilot.services.outcome import EventKind

from conftest import ACTIVE_BIN, TOKEN_MINT, FakeDLMM, make_position

TOKEN = 10 ** 6


class StickyDLMM(FakeDLMM):
    """Removal transactions land but the position stays visible."""

    def build_remove_liquidity(self, pool_address, owner, position_key, bps=10_000,
                               claim_and_close=True, priority_micro_lamports=0):
        self.remove_calls.append(position_key)
        return [f"tx-remove-{position_key[:4]}"]


class TestRebalance:

    def test_swapless_reopen_uses_only_held_side(self, engine, dlmm, chain):
        dlmm.positions['old'] = make_position('old', 990, 1009, amount_x=500 * TOKEN, amount_y=0)
        dlmm.active_bin = 1020
        chain.tokens = {TOKEN_MINT: 500 * TOKEN}
        context = engine.rebalance_context(swapless=True)

        result = engine.rebalance('old', context, direction=Direction.UP)

        assert result.reopened
        assert dlmm.remove_calls == ['old']
        call = dlmm.create_calls[0]
        assert (call['min_bin_id'], call['max_bin_id']) == (1020, 1039)
        assert call['amount_y'] == 0
        assert 0 < call['amount_x'] <= 500 * TOKEN
        notes = [e.message for e in result.events.of_kind(EventKind.NOTE)]
        assert "swapless direction mismatch" in notes
        assert engine.tracker.rebalance_count == 1

    def test_reopen_sized_from_snapshot_not_wallet(self, engine, dlmm, chain):
        dlmm.positions['old'] = make_position('old', 980, 999, amount_x=70 * TOKEN, amount_y=300_000_000,
                                              fee_x=TOKEN, fee_y=10_000_000)
        context = engine.rebalance_context(budget_sol=1.0, ratio=0.3)

        result = engine.rebalance('old', context)

        # 300M + 10M compounded, then the 0.3 ratio share and the haircut
        assert result.reopen_sol == 310_000_000
        assert dlmm.create_calls[0]['amount_y'] == 299_700_000
        assert result.reopen_token == 70 * TOKEN
        assert result.new_position_key == dlmm.create_calls[0]['position_key']
        assert result.states[-1] is RebalanceState.REOPENED
        assert engine.tracker.claimed_sol == 0
        # a reopen never resets the first-open baseline
        assert not engine.tracker.has_baseline

    def test_reopen_balances_what_the_close_returned(self, engine, dlmm, chain, swapper):
        # position worth $80 against a $100 budget
        dlmm.positions['old'] = make_position('old', 980, 999, amount_x=0, amount_y=800_000_000)
        chain.tokens = {TOKEN_MINT: 0}
        context = engine.rebalance_context(budget_sol=1.0, ratio=0.5)

        result = engine.rebalance('old', context)

        assert result.reopened
        assert swapper.calls == [(SOL_MINT, TOKEN_MINT, 400_000_000)]

    def test_depleted_position_not_reopened(self, engine, dlmm):
        dlmm.positions['old'] = make_position('old', 990, 1009, fee_y=1_000)

        result = engine.rebalance('old', engine.rebalance_context())

        assert result.new_position_key is None
        assert result.signature is None
        assert result.states[-1] is RebalanceState.SKIPPED_NO_FUNDS
        assert dlmm.create_calls == []
        assert dlmm.remove_calls == ['old']

    def test_missing_position_is_null_result(self, engine, dlmm, chain):
        result = engine.rebalance('ghost')
        assert result.states == [RebalanceState.NOT_FOUND]
        assert not result.reopened
        assert chain.sent == []

    def test_claim_to_sol_converts_token_fee(self, engine, dlmm, swapper):
        dlmm.positions['old'] = make_position('old', 980, 999, amount_x=70 * TOKEN, amount_y=300_000_000,
                                              fee_x=2 * TOKEN, fee_y=5_000_000)
        context = replace(engine.rebalance_context(budget_sol=1.0, ratio=0.3),
                          fee_handling_mode="claim_to_sol")

        result = engine.rebalance('old', context)

        assert swapper.calls == [(TOKEN_MINT, SOL_MINT, 2 * TOKEN)]
        assert result.reopen_sol == 300_000_000
        assert engine.tracker.claimed_token == 2 * TOKEN
        assert engine.tracker.claimed_sol == 5_000_000
        assert result.claimed_fees_usd == pytest.approx(2.5)

    def test_fee_swap_failure_is_not_fatal(self, engine, dlmm, swapper):
        swapper.error = EngineError("Jupiter quote failed", code=ErrorCode.SWAP_FAILED)
        dlmm.positions['old'] = make_position('old', 980, 999, amount_x=70 * TOKEN, amount_y=300_000_000,
                                              fee_x=2 * TOKEN)
        context = replace(engine.rebalance_context(budget_sol=1.0, ratio=0.3),
                          fee_handling_mode="claim_to_sol")

        result = engine.rebalance('old', context)

        assert result.reopened
        assert result.unswapped_fees_usd == pytest.approx(2.0)
        assert any(e.message == "fee swap failed" for e in result.events.of_kind(EventKind.NOTE))

    def test_small_token_fee_left_unswapped(self, engine, dlmm, swapper):
        dlmm.positions['old'] = make_position('old', 980, 999, amount_x=70 * TOKEN, amount_y=300_000_000,
                                              fee_x=TOKEN // 2)
        context = replace(engine.rebalance_context(budget_sol=1.0, ratio=0.3),
                          fee_handling_mode="claim_to_sol", min_swap_usd=1.0)

        result = engine.rebalance('old', context)

        assert swapper.calls == []
        assert result.unswapped_fees_usd == pytest.approx(0.5)

    def test_reopen_failure_leaves_wallet_native(self, engine, dlmm, chain):
        dlmm.positions['old'] = make_position('old', 980, 999, amount_x=70 * TOKEN, amount_y=300_000_000)
        chain.failures = [None, EngineError("Position already exists", code=ErrorCode.POSITION_EXISTS)]

        with pytest.raises(EngineError) as exc:
            engine.rebalance('old', engine.rebalance_context(budget_sol=1.0, ratio=0.3))

        assert exc.value.code == ErrorCode.POSITION_EXISTS
        assert dlmm.remove_calls == ['old']
        # once after the close, again after the failed reopen
        assert chain.unwrap_calls >= 2

    def test_unconfirmed_closure_still_reopens(self, config, chain, swapper, oracle, sleeps):
        from binpilot.engine import LiquidityEngine
        from binpilot.services.liquidity.pnl_tracker import PnLTracker

        dlmm = StickyDLMM()
        dlmm.positions['old'] = make_position('old', 980, 999, amount_x=70 * TOKEN, amount_y=300_000_000)
        engine = LiquidityEngine(config, dlmm, chain, swapper, oracle,
                                 tracker=PnLTracker(), sleep=sleeps.append)

        result = engine.rebalance('old', engine.rebalance_context(budget_sol=1.0, ratio=0.3))

        assert result.reopened
        assert sleeps.count(1.0) >= 10
        assert any(e.message == "closure not confirmed" for e in result.events.of_kind(EventKind.NOTE))

    def test_removal_retry_treats_vanished_position_as_closed(self, engine, dlmm, chain):
        dlmm.positions['old'] = make_position('old', 980, 999, amount_x=70 * TOKEN, amount_y=300_000_000)
        chain.failures = [RuntimeError("Request timed out")]

        result = engine.rebalance('old', engine.rebalance_context(budget_sol=1.0, ratio=0.3))

        assert dlmm.remove_calls == ['old']
        assert result.reopened

    def test_multi_position_keys_all_removed(self, engine, dlmm):
        dlmm.positions['a'] = make_position('a', 900, 968, amount_y=100_000_000)
        dlmm.positions['b'] = make_position('b', 969, 999, amount_y=50_000_000)
        context = engine.rebalance_context(budget_sol=1.0, ratio=0.3, position_keys=['a', 'b'])

        result = engine.rebalance('a', context)

        assert dlmm.remove_calls == ['a', 'b']
        assert result.withdrawn_sol == 150_000_000


class TestClose:

    def test_close_swaps_token_to_sol(self, engine, dlmm, swapper, chain):
        dlmm.positions['pos'] = make_position('pos', 990, 1009, amount_x=50 * TOKEN, amount_y=10_000_000,
                                              fee_x=TOKEN)

        result = engine.close_position('pos', swap_to_sol=True)

        assert result.signatures == ['sig-1']
        assert swapper.calls == [(TOKEN_MINT, SOL_MINT, 51 * TOKEN)]
        assert result.swap_signature == 'swap-1'
        assert result.fee_token == TOKEN
        assert engine.tracker.claimed_token == TOKEN
        assert chain.unwrap_calls == 2

    def test_close_without_swap(self, engine, dlmm, swapper):
        dlmm.positions['pos'] = make_position('pos', 990, 1009, amount_x=50 * TOKEN)
        result = engine.close_position('pos')
        assert swapper.calls == []
        assert result.withdrawn_token == 50 * TOKEN

    def test_close_missing_returns_none(self, engine):
        assert engine.close_position('gone') is None


class TestCompoundModes:

    @pytest.mark.parametrize("mode,expected", [
        ("both", (10, 20)), ("sol_only", (10, 0)), ("token_only", (0, 20)), ("none", (0, 0)),
    ])
    def test_compound_amounts(self, mode, expected):
        assert compound_amounts(mode, 10, 20) == expected


def test_active_bin_passthrough(engine, dlmm):
    dlmm.active_bin = ACTIVE_BIN + 7
    assert engine.get_active_bin() == ACTIVE_BIN + 7
