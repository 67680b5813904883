import pytest

from signal_oracle.core.categories import prior_bucket
from signal_oracle.core.priors import PriorModel, calibrate_prior, time_progress

from helpers import DAY, NOW, make_snapshot


def _guardrail(category):
    low, high = prior_bucket(category)
    span = max(0.05, high - low)
    return max(0.0001, low - span * 0.5), min(0.99, high + span * 0.5)


class TestCalibratePrior:
    @pytest.mark.parametrize("category", ["MACRO", "POLITICS", "CRYPTO", "EVENT", "ETF_APPROVAL"])
    @pytest.mark.parametrize("raw", [0.0, 0.02, 0.3, 0.75, 1.0, float("nan")])
    def test_stays_inside_guardrail(self, category, raw):
        low, high = _guardrail(category)
        value = calibrate_prior(raw, category)
        assert low <= value <= high

    def test_midpoint_is_fixed_point(self):
        low, high = prior_bucket("CRYPTO")
        midpoint = (low + high) / 2
        assert calibrate_prior(midpoint, "CRYPTO") == pytest.approx(midpoint)


class TestTimeProgress:
    def test_halfway(self):
        snap = make_snapshot(start_offset=-50 * DAY, end_offset=50 * DAY)
        assert time_progress(snap, now=NOW) == pytest.approx(0.5)

    def test_missing_or_past_end_counts_as_elapsed(self):
        assert time_progress(make_snapshot(end_offset=None), now=NOW) == 1.0
        assert time_progress(make_snapshot(start_offset=-10 * DAY, end_offset=-DAY), now=NOW) == 1.0

    def test_missing_start_assumes_default_lifetime(self):
        snap = make_snapshot(start_offset=None, end_offset=90 * DAY)
        assert time_progress(snap, now=NOW, default_lifetime_days=180) == pytest.approx(0.5)


class TestPriorModel:
    def test_structural_rate_bypasses_calibration(self):
        model = PriorModel()
        snap = make_snapshot(question="Will the Jets win the Super Bowl?", yes=0.40)
        assert model.base_rate(snap, now=NOW) == 1 / 32

    def test_base_rate_within_guardrail(self):
        model = PriorModel()
        low, high = _guardrail("EVENT")
        for yes in (0.01, 0.3, 0.6, 0.99):
            snap = make_snapshot(yes=yes, start_offset=-100 * DAY, end_offset=DAY)
            assert low <= model.base_rate(snap, now=NOW) <= high

    def test_update_is_ema(self):
        model = PriorModel()
        model.update([make_snapshot(yes=0.2, liquidity=50_000)], now=NOW)
        model.update([make_snapshot(yes=0.4, liquidity=50_000)], now=NOW + 60)

        stats = model.stats["EVENT"]
        assert stats.ema_market_price == pytest.approx(0.3)
        assert stats.ema_liquidity == pytest.approx(50_000)
        assert stats.updated_at == NOW + 60

    def test_snapshot_round_trip(self):
        model = PriorModel()
        model.update([make_snapshot(yes=0.2)], now=NOW)

        restored = PriorModel()
        restored.load(model.snapshot())

        snap = make_snapshot(yes=0.55)
        assert restored.base_rate(snap, now=NOW) == model.base_rate(snap, now=NOW)
