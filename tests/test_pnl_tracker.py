"""P&L against the first-open baseline and the three hold strategies."""

import json

import pytest

from binpilot.errors import EngineError, PriceUnavailableError, ValidationError
from binpilot.services.liquidity.pnl_tracker import PnLTracker

SOL = 1_000_000_000
TOKEN = 1_000_000  # 6 decimals


@pytest.fixture
def tracker():
    t = PnLTracker(clock=lambda: 1_700_000_000.0)
    # 1 SOL @ $100 + 100 tokens @ $1
    t.initialize_baseline(SOL, 100 * TOKEN, 100.0, 1.0, 6)
    return t


class TestBaseline:

    def test_values(self, tracker):
        base = tracker.baseline
        assert base.sol_usd == pytest.approx(100.0)
        assert base.token_usd == pytest.approx(100.0)
        assert base.total_usd == pytest.approx(200.0)
        assert base.created_at == 1_700_000_000.0

    def test_set_only_once(self, tracker):
        tracker.initialize_baseline(5 * SOL, 0, 50.0, 1.0, 6)
        assert tracker.baseline.total_usd == pytest.approx(200.0)

    def test_needs_prices(self):
        with pytest.raises(PriceUnavailableError):
            PnLTracker().initialize_baseline(SOL, 0, None, 1.0, 6)

    @pytest.mark.parametrize("token_price", [0.0, -1.0])
    def test_rejects_non_positive_token_price(self, token_price):
        tracker = PnLTracker()
        with pytest.raises(PriceUnavailableError):
            tracker.initialize_baseline(SOL, 0, 50.0, token_price, 6)
        assert not tracker.has_baseline

    def test_stored_zero_price_rejected(self, tracker):
        state = tracker.export_state()
        state['baseline']['token_price'] = 0.0
        with pytest.raises(PriceUnavailableError):
            PnLTracker().import_state(state)

    def test_calculate_without_baseline(self):
        with pytest.raises(EngineError):
            PnLTracker().calculate(SOL, 0, 0, 0, 100.0, 1.0)


class TestCalculate:

    def test_against_hold_strategies(self, tracker):
        # SOL rallies to $120: position holds 0.5 SOL + 150 tokens = $210
        report = tracker.calculate(SOL // 2, 150 * TOKEN, 0, 0, 120.0, 1.0)

        assert report.current_value == pytest.approx(210.0)
        assert report.hold_original_value == pytest.approx(220.0)
        assert report.hold_sol_value == pytest.approx(240.0)
        assert report.hold_token_value == pytest.approx(200.0)
        assert report.absolute_pnl == pytest.approx(10.0)
        assert report.absolute_pnl_pct == pytest.approx(5.0)
        assert report.vs_original == pytest.approx(-10.0)
        assert report.vs_sol_hold_pct == pytest.approx(-15.0)
        assert report.sol_price_change_pct == pytest.approx(20.0)
        assert report.best_strategy() == "Hold All SOL"

    def test_fees_count_towards_value(self, tracker):
        tracker.add_claimed_fees(sol_lamports=SOL // 10)
        report = tracker.calculate(SOL, 100 * TOKEN, 0, 5 * TOKEN, 100.0, 1.0)

        assert report.claimed_fees_usd == pytest.approx(10.0)
        assert report.unclaimed_fees_usd == pytest.approx(5.0)
        assert report.total_fees_usd == pytest.approx(15.0)
        assert report.absolute_pnl_pct == pytest.approx(7.5)
        assert report.best_strategy() == "DLMM Strategy"

    def test_negative_claimed_fees_rejected(self, tracker):
        with pytest.raises(ValidationError):
            tracker.add_claimed_fees(sol_lamports=-1)

    def test_report_dict(self, tracker):
        tracker.increment_rebalance()
        data = tracker.calculate(SOL, 100 * TOKEN, 0, 0, 100.0, 1.0).to_dict()
        assert data['rebalance_count'] == 1
        assert data['best_strategy'] in ("DLMM Strategy", "Hold Original Mix")
        assert data['total_fees_usd'] == 0


class TestPersistence:

    def test_state_survives_restart(self, tmp_path, tracker):
        path = tmp_path / "state" / "pnl.json"
        tracker.state_path = str(path)
        tracker.add_claimed_fees(sol_lamports=123, token_amount=456)
        tracker.increment_rebalance()

        stored = json.loads(path.read_text())
        assert stored['claimed_fees'] == {'sol': "123", 'token': "456"}

        restored = PnLTracker(state_path=str(path))
        assert restored.load()
        assert restored.baseline == tracker.baseline
        assert (restored.claimed_sol, restored.claimed_token) == (123, 456)
        assert restored.rebalance_count == 1

    def test_load_missing_file(self, tmp_path):
        assert not PnLTracker(state_path=str(tmp_path / "none.json")).load()

    def test_save_needs_path(self, tracker):
        with pytest.raises(ValidationError):
            tracker.save()
