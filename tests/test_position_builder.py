"""Position creation state machine: single, multi, bundled and fallback paths."""

import pytest
from solders.keypair import Keypair

from binpilot.config import SHRINK_MARGIN
from binpilot.errors import BundleError, EngineError, ValidationError
from binpilot.services.jito import JitoBundleExecutor, TipFloorCache
from binpilot.services.meteora_dlmm.position_builder import BuildState, DepositPlan, PositionBuilder
from binpilot.services.meteora_dlmm.strategy_calculator import BinRange, Side, StrategyType
from binpilot.services.outcome import EventKind, OutcomeLog

from conftest import (
    ACTIVE_BIN, POOL_ADDRESS, BlockhashOutageChain, FakeBundleExecutor, FakeResponse, FakeSession,
)

TRANSFER_SHORTFALL = "Program log: Instruction: TransferChecked | Error: insufficient funds"

NARROW = BinRange(ACTIVE_BIN - 5, ACTIVE_BIN + 14, ACTIVE_BIN)
WIDE = BinRange(ACTIVE_BIN - 50, ACTIVE_BIN + 49, ACTIVE_BIN)


def builder(dlmm, chain, **kwargs) -> PositionBuilder:
    kwargs.setdefault('use_bundles', False)
    return PositionBuilder(dlmm, chain, POOL_ADDRESS, sol_side=Side.Y, **kwargs)


class TestDepositPlan:

    def test_needs_a_positive_amount(self):
        with pytest.raises(ValidationError):
            DepositPlan(0, 0, NARROW).validate()

    def test_one_sided_range_rejects_other_side(self):
        above = BinRange(ACTIVE_BIN + 1, ACTIVE_BIN + 20, ACTIVE_BIN)
        with pytest.raises(ValidationError):
            DepositPlan(amount_x=10, amount_y=5, bin_range=above).validate()
        assert DepositPlan(amount_x=10, amount_y=0, bin_range=above).validate()


class TestSinglePosition:

    def test_one_transaction_signed_by_position_keypair(self, dlmm, chain):
        kp = Keypair()
        outcome = OutcomeLog()
        result = builder(dlmm, chain, keypair_factory=lambda: kp).build(
            DepositPlan(amount_x=1_000, amount_y=2_000, bin_range=NARROW, strategy=StrategyType.CURVE),
            outcome)

        assert result.position_key == str(kp.pubkey())
        assert result.transaction_count == 1
        assert result.signature == "sig-1"
        assert chain.sent == [("tx-create-1", [kp])]
        assert dlmm.create_calls[0]['strategy'] == "Curve"
        assert result.states == [BuildState.SIZING, BuildState.SINGLE_TX,
                                 BuildState.SUBMITTED, BuildState.CONFIRMED]
        assert outcome.signatures() == ["sig-1"]

    def test_range_follows_moved_active_bin(self, dlmm, chain):
        dlmm.active_bin = ACTIVE_BIN + 3
        outcome = OutcomeLog()
        result = builder(dlmm, chain).build(DepositPlan(1_000, 2_000, NARROW), outcome)

        assert (result.bin_range.min_bin, result.bin_range.max_bin) == (ACTIVE_BIN - 2, ACTIVE_BIN + 17)
        assert dlmm.create_calls[0]['min_bin_id'] == ACTIVE_BIN - 2
        assert any(e.message == "range re-anchored" for e in outcome.of_kind(EventKind.NOTE))

    def test_transfer_shortfall_shrinks_sol_side_once(self, dlmm, chain):
        chain.failures = [EngineError(TRANSFER_SHORTFALL)]
        outcome = OutcomeLog()
        result = builder(dlmm, chain).build(DepositPlan(1_000, 2_000_000, NARROW), outcome)

        assert [c['amount_y'] for c in dlmm.create_calls] == [2_000_000, 2_000_000 - SHRINK_MARGIN]
        assert dlmm.create_calls[1]['position_key'] == dlmm.create_calls[0]['position_key']
        assert result.amount_y == 2_000_000 - SHRINK_MARGIN
        assert outcome.reserves()[0].data['reason'] == "adaptive_shrink"

    def test_second_shortfall_fails(self, dlmm, chain):
        chain.failures = [EngineError(TRANSFER_SHORTFALL), EngineError(TRANSFER_SHORTFALL)]
        outcome = OutcomeLog()
        with pytest.raises(EngineError):
            builder(dlmm, chain).build(DepositPlan(1_000, 2_000_000, NARROW), outcome)
        assert len(dlmm.create_calls) == 2
        assert outcome.states()[-1] == "build:failed"

    def test_other_failures_propagate_without_shrink(self, dlmm, chain):
        chain.failures = [RuntimeError("Blockhash not found")]
        with pytest.raises(RuntimeError):
            builder(dlmm, chain).build(DepositPlan(1_000, 2_000, NARROW), OutcomeLog())
        assert len(dlmm.create_calls) == 1


class TestMultiPosition:

    def test_sequential_init_then_add(self, dlmm, chain):
        outcome = OutcomeLog()
        result = builder(dlmm, chain).build(DepositPlan(5_000, 5_000, WIDE), outcome)

        assert len(result.position_keys) == 2
        assert result.transaction_count == 4
        assert not result.used_bundle
        assert [tx for tx, _ in chain.sent][0].startswith("tx-init")
        assert [tx for tx, _ in chain.sent][1].startswith("tx-add")
        assert BuildState.MULTI_TX in result.states

    def test_bundle_used_on_mainnet(self, dlmm, chain):
        bundles = FakeBundleExecutor()
        result = builder(dlmm, chain, bundle_executor=bundles, use_bundles=True).build(
            DepositPlan(5_000, 5_000, WIDE), OutcomeLog())

        assert result.used_bundle
        assert result.transaction_count == 4
        assert result.signatures == ["bundle-sig-0", "bundle-sig-1", "bundle-sig-2", "bundle-sig-3"]
        assert chain.sent == []

    def test_bundle_failure_falls_back_to_sequential(self, dlmm, chain):
        bundles = FakeBundleExecutor(error=BundleError("Bundle not landed"))
        outcome = OutcomeLog()
        result = builder(dlmm, chain, bundle_executor=bundles, use_bundles=True).build(
            DepositPlan(5_000, 5_000, WIDE), outcome)

        assert not result.used_bundle
        assert result.transaction_count == 4
        assert len(chain.sent) == 4
        assert len(outcome.of_kind(EventKind.FALLBACK)) == 1

    def test_bundle_blockhash_outage_falls_back_to_sequential(self, dlmm):
        chain = BlockhashOutageChain()
        executor = JitoBundleExecutor(chain,
                                      tip_cache=TipFloorCache(session=FakeSession(get=[FakeResponse([])])),
                                      session=FakeSession(), sleep=lambda s: None)
        outcome = OutcomeLog()
        result = builder(dlmm, chain, bundle_executor=executor, use_bundles=True).build(
            DepositPlan(5_000, 5_000, WIDE), outcome)

        assert not result.used_bundle
        assert len(chain.sent) == 4
        assert len(outcome.of_kind(EventKind.FALLBACK)) == 1

    def test_no_bundles_off_mainnet(self, dlmm, chain):
        bundles = FakeBundleExecutor()
        result = builder(dlmm, chain, bundle_executor=bundles, use_bundles=True, cluster="devnet").build(
            DepositPlan(5_000, 5_000, WIDE), OutcomeLog())
        assert bundles.bundles == []
        assert not result.used_bundle

    def test_bin_slippage_moves_to_next_tier(self, dlmm, chain):
        chain.failures = [RuntimeError("ExceededBinSlippageTolerance")]
        result = builder(dlmm, chain).build(DepositPlan(5_000, 5_000, WIDE), OutcomeLog())

        assert [c['slippage'] for c in dlmm.extended_calls] == [1.0, 2.0]
        assert result.slippage_pct == 2.0

    def test_partial_failure_closes_initialized_position(self, dlmm, chain):
        chain.failures = [None, RuntimeError("connection reset")]
        outcome = OutcomeLog()
        with pytest.raises(EngineError):
            builder(dlmm, chain).build(DepositPlan(5_000, 5_000, WIDE), outcome)

        first_key = dlmm.extended_calls[0]['keys'][0]
        assert dlmm.close_calls == [first_key]
        labels = [e.message for e in outcome.of_kind(EventKind.TRANSACTION)]
        assert labels == ["initialize position", "close abandoned position"]
