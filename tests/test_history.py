import pytest

from signal_oracle.core.history import (
    baseline_velocity,
    derive_features,
    merge_history,
    price_drift,
    price_trend,
    short_window_delta,
    volume_velocity,
)
from signal_oracle.polymarket.models import PricePoint

from helpers import DAY, NOW, make_snapshot


def _points(*prices, start=NOW - 600, step=60.0, volume_step=100.0):
    return [
        PricePoint(timestamp=start + i * step, price=p, volume=i * volume_step)
        for i, p in enumerate(prices)
    ]


class TestMergeHistory:
    def test_newer_point_wins_on_same_timestamp(self):
        old = [PricePoint(timestamp=NOW - 60, price=0.50), PricePoint(timestamp=NOW - 30, price=0.52)]
        new = [PricePoint(timestamp=NOW - 30, price=0.55), PricePoint(timestamp=NOW, price=0.56)]

        merged = merge_history(old, new, now=NOW, window_seconds=3600)

        assert [p.timestamp for p in merged] == [NOW - 60, NOW - 30, NOW]
        assert merged[1].price == 0.55

    def test_trims_to_window(self):
        old = [PricePoint(timestamp=NOW - 7200, price=0.4), PricePoint(timestamp=NOW - 1800, price=0.5)]

        merged = merge_history(old, [PricePoint(timestamp=NOW, price=0.6)], now=NOW, window_seconds=3600)

        assert [p.price for p in merged] == [0.5, 0.6]


class TestDerivedFields:
    def test_drift(self):
        assert price_drift(_points(0.50, 0.52, 0.55)) == pytest.approx(0.10)
        assert price_drift(_points(0.50)) == 0.0

    def test_velocity_uses_last_two_points(self):
        history = _points(0.5, 0.5, 0.5, volume_step=120.0)
        assert volume_velocity(history) == pytest.approx(2.0)

    def test_baseline_needs_three_points(self):
        assert baseline_velocity(_points(0.5, 0.5)) == 0.1
        assert baseline_velocity(_points(0.5, 0.5, 0.5, volume_step=60.0)) == pytest.approx(1.0)

    def test_short_window_delta_ignores_old_points(self):
        history = [
            PricePoint(timestamp=NOW - 900, price=0.30),
            PricePoint(timestamp=NOW - 200, price=0.50),
            PricePoint(timestamp=NOW - 10, price=0.55),
        ]
        assert short_window_delta(history, now=NOW, window_seconds=300) == pytest.approx(0.10)

    def test_trend_requires_enough_points(self):
        assert price_trend(_points(0.5, 0.6), points=5) == 0.0
        assert price_trend(_points(0.50, 0.51, 0.52, 0.53, 0.54), points=5) == pytest.approx(0.01)

    def test_derive_features_dates(self):
        snap = make_snapshot(start_offset=-2 * DAY, end_offset=10 * DAY)
        features = derive_features(snap, now=NOW)
        assert features.age_days == pytest.approx(2.0)
        assert features.days_to_resolution == pytest.approx(10.0)

    def test_derive_features_without_dates(self):
        snap = make_snapshot(start_offset=None, end_offset=None)
        features = derive_features(snap, now=NOW)
        assert features.age_days is None
        assert features.days_to_resolution is None
