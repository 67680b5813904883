import asyncio
import logging
from dataclasses import replace

import pytest

from signal_oracle.core.analysis_cache import AnalysisCache
from signal_oracle.core.price_cache import PriceCache
from signal_oracle.core.resilience import ResilientCaller, build_caller
from signal_oracle.core.settings import PROB_FLOOR, ResilienceSettings, SynthesizerSettings
from signal_oracle.core.signals import Direction
from signal_oracle.core.synthesizer import ProbabilitySynthesizer, SynthesisResult, clamp_probability
from signal_oracle.estimators.base import Estimate

from helpers import DAY, NOW, Clock, FailingEstimator, FakeEstimator, HangingEstimator, make_book, make_snapshot


def _synth(estimator=None, *, settings=None, caller=None, price_cache=None, clock=None):
    return ProbabilitySynthesizer(
        settings or SynthesizerSettings(),
        estimator=estimator,
        caller=caller or ResilientCaller("estimator", timeout=1),
        analysis_cache=AnalysisCache(clock=clock or Clock()),
        price_cache=price_cache,
    )


def _result(market_id, probability, market_price=0.3):
    return SynthesisResult(
        market_id=market_id, probability=probability, confidence=70.0,
        prior=0.1, market_price=market_price,
    )


class BrokenEstimator(FakeEstimator):
    async def estimate(self, snapshot, context):
        if snapshot.id == "bad":
            raise RuntimeError("unexpected payload")
        return await super().estimate(snapshot, context)


class TestSynthesize:
    def test_uses_estimate(self):
        synth = _synth(FakeEstimator(default=(0.72, 80.0)))
        result = asyncio.run(synth.synthesize(make_snapshot(yes=0.60), now=NOW))

        assert result.probability == 0.72
        assert result.confidence == 80.0
        assert not result.fallback
        assert not result.hallucination_damped

    def test_hallucination_guard_moves_halfway_to_market(self):
        synth = _synth(FakeEstimator(default=(0.95, 90.0)))
        result = asyncio.run(synth.synthesize(make_snapshot(yes=0.40), now=NOW))

        assert result.hallucination_damped
        assert result.estimate == 0.95
        assert result.probability == pytest.approx(0.675)

    def test_no_guard_inside_threshold(self):
        synth = _synth(FakeEstimator(default=(0.75, 90.0)))
        result = asyncio.run(synth.synthesize(make_snapshot(yes=0.40), now=NOW))
        assert result.probability == 0.75

    def test_cached_estimate_is_reused(self):
        estimator = FakeEstimator(default=(0.72, 80.0))
        synth = _synth(estimator)
        snap = make_snapshot(yes=0.60)

        first = asyncio.run(synth.synthesize(snap, now=NOW))
        second = asyncio.run(synth.synthesize(snap, now=NOW))

        assert estimator.calls == ["m1"]
        assert synth.estimator_calls == 1
        assert second.cache_hit
        assert replace(second, cache_hit=False) == first
        assert synth.finalize(second, snap, now=NOW).probability == synth.finalize(first, snap, now=NOW).probability

    def test_price_move_invalidates_cache(self):
        estimator = FakeEstimator()
        synth = _synth(estimator)

        asyncio.run(synth.synthesize(make_snapshot(yes=0.60), now=NOW))
        asyncio.run(synth.synthesize(make_snapshot(yes=0.70), now=NOW))

        assert len(estimator.calls) == 2

    def test_live_price_comes_from_fresh_quote(self):
        async def fetch(token_id):
            return make_book(0.61, 0.63)

        clock = Clock()
        cache = PriceCache(fetch_book=fetch, clock=clock)
        cache.watch({"m1": "tok"})
        asyncio.run(cache.poll_once())

        synth = _synth(FakeEstimator(), price_cache=cache, clock=clock)
        result = asyncio.run(synth.synthesize(make_snapshot(yes=0.60, token_id="tok"), now=NOW))
        assert result.market_price == pytest.approx(0.62)


class TestFallback:
    def test_estimator_failure_uses_prior(self):
        estimator = FailingEstimator()
        synth = _synth(estimator)
        snap = make_snapshot(yes=0.60)

        result = asyncio.run(synth.synthesize(snap, now=NOW))

        assert result.fallback
        assert result.confidence == 30.0
        assert result.probability == result.prior
        assert result.estimate is None

    def test_fallback_is_not_cached(self):
        estimator = FailingEstimator()
        synth = _synth(estimator)
        snap = make_snapshot(yes=0.60)

        asyncio.run(synth.synthesize(snap, now=NOW))
        asyncio.run(synth.synthesize(snap, now=NOW))
        assert estimator.calls == 2

    def test_no_estimator_configured(self):
        result = asyncio.run(_synth(None).synthesize(make_snapshot(), now=NOW))
        assert result.fallback

    def test_breaker_stops_calling_failing_estimator(self):
        estimator = FailingEstimator()
        caller = build_caller(
            "estimator", ResilienceSettings(estimator_retries=0, failure_threshold=5), estimator=True
        )
        synth = _synth(estimator, caller=caller)

        results = [asyncio.run(synth.synthesize(make_snapshot(), now=NOW)) for _ in range(7)]

        assert estimator.calls == 5
        assert all(r.fallback for r in results)


class TestExclusiveGroups:
    def test_group_rescaled_and_directions_forced(self):
        synth = _synth()
        snaps = [make_snapshot("a", group="g"), make_snapshot("b", group="g")]

        out = synth.normalize_exclusive_groups([_result("a", 0.4), _result("b", 0.2)], snaps)

        assert out[0].probability == pytest.approx(2 / 3, abs=1e-4)
        assert out[1].probability == pytest.approx(1 / 3, abs=1e-4)
        assert sum(r.probability for r in out) == pytest.approx(1.0, abs=1e-6)
        assert out[0].forced_direction == Direction.BUY_YES
        assert out[1].forced_direction == Direction.BUY_NO
        assert out[0].group == out[1].group == "g"

    def test_keyword_groups_from_settings(self):
        settings = SynthesizerSettings(exclusive_groups=(("launches", ("starship", "falcon 9")),))
        synth = _synth(settings=settings)
        snaps = [
            make_snapshot("a", question="Will Starship reach orbit first?"),
            make_snapshot("b", question="Will Falcon 9 launch the probe first?"),
            make_snapshot("c", question="Will the new bridge open?"),
        ]
        results = [_result("a", 0.5), _result("b", 0.7), _result("c", 0.3)]

        out = synth.normalize_exclusive_groups(results, snaps)

        assert out[0].probability + out[1].probability == pytest.approx(1.0, abs=1e-6)
        assert out[1].forced_direction == Direction.BUY_YES
        assert out[2] == results[2]

    def test_single_member_group_untouched(self):
        synth = _synth()
        results = [_result("a", 0.4)]
        assert synth.normalize_exclusive_groups(results, [make_snapshot("a", group="g")]) == results

    def test_tie_goes_to_first_member(self):
        synth = _synth()
        snaps = [make_snapshot("a", group="g"), make_snapshot("b", group="g")]
        out = synth.normalize_exclusive_groups([_result("a", 0.3), _result("b", 0.3)], snaps)
        assert [r.forced_direction for r in out] == [Direction.BUY_YES, Direction.BUY_NO]


class TestTimeDecay:
    def test_penalty_proportional_to_elapsed_lifetime(self):
        synth = _synth()
        snap = make_snapshot(yes=0.5, start_offset=-90 * DAY, end_offset=90 * DAY)
        assert synth.time_decay_penalty(snap, now=NOW) == pytest.approx(0.075)

    def test_capped_for_near_certain_markets(self):
        synth = _synth()
        snap = make_snapshot(yes=0.95, start_offset=-170 * DAY, end_offset=10 * DAY)
        assert synth.time_decay_penalty(snap, now=NOW) == pytest.approx(0.05)

    def test_no_penalty_without_future_end(self):
        synth = _synth()
        assert synth.time_decay_penalty(make_snapshot(end_offset=None), now=NOW) == 0.0
        assert synth.time_decay_penalty(make_snapshot(start_offset=-10 * DAY, end_offset=-DAY), now=NOW) == 0.0

    def test_finalize_skips_group_members(self):
        synth = _synth()
        snap = make_snapshot(yes=0.5, start_offset=-90 * DAY, end_offset=90 * DAY)

        plain = synth.finalize(_result("m1", 0.6), snap, now=NOW)
        grouped = synth.finalize(replace(_result("m1", 0.6), group="g"), snap, now=NOW)

        assert plain.probability == pytest.approx(0.525)
        assert grouped.probability == 0.6
        assert grouped.time_penalty == 0.0


class TestClamp:
    def test_out_of_range_is_clamped_and_logged(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert clamp_probability(1.5, "m1") == 1 - PROB_FLOOR
            assert clamp_probability(-0.2, "m1") == PROB_FLOOR
        assert "clamped" in caplog.text

    def test_non_finite_becomes_half(self):
        assert clamp_probability(float("nan")) == 0.5
        assert clamp_probability(float("inf")) == 0.5

    def test_finalize_never_leaves_open_interval(self):
        synth = _synth()
        snap = make_snapshot(yes=0.05, start_offset=-170 * DAY, end_offset=10 * DAY)
        result = synth.finalize(_result("m1", 0.01), snap, now=NOW)
        assert result.probability == PROB_FLOOR


class TestSynthesizeAll:
    def test_group_sums_to_one_after_all_steps(self):
        estimator = FakeEstimator({"a": (0.5, 80), "b": (0.4, 80), "c": (0.3, 80)})
        synth = _synth(estimator)
        snaps = [
            make_snapshot("a", yes=0.45, group="g"),
            make_snapshot("b", yes=0.35, group="g"),
            make_snapshot("c", yes=0.25, group="g"),
        ]

        out = asyncio.run(synth.synthesize_all(snaps, now=NOW))

        assert sum(r.probability for r in out) == pytest.approx(1.0, abs=1e-6)
        assert all(0 < r.probability < 1 for r in out)

    def test_unexpected_estimator_error_falls_back(self):
        synth = _synth(BrokenEstimator())
        snaps = [make_snapshot("ok"), make_snapshot("bad")]

        out = asyncio.run(synth.synthesize_all(snaps, now=NOW))

        assert [r.market_id for r in out] == ["ok", "bad"]
        assert not out[0].fallback
        assert out[1].fallback
        assert out[1].confidence == 30.0

    def test_hung_estimate_falls_back_at_deadline(self, caplog):
        estimator = HangingEstimator(hang=("slow",), default=(0.72, 80.0))
        synth = _synth(estimator, settings=SynthesizerSettings(estimate_deadline_seconds=0.05))
        snaps = [make_snapshot("ok"), make_snapshot("slow")]

        with caplog.at_level(logging.WARNING):
            out = asyncio.run(synth.synthesize_all(snaps, now=NOW))

        assert [r.market_id for r in out] == ["ok", "slow"]
        assert out[0].estimate == 0.72
        assert out[1].fallback
        assert out[1].estimate is None
        assert "missed the" in caplog.text
        assert sorted(estimator.calls) == ["ok", "slow"]

    def test_partial_group_is_normalized_over_present_members(self):
        estimator = FakeEstimator({"a": (0.3, 80), "b": (0.2, 80)})
        synth = _synth(estimator)
        snaps = [make_snapshot("a", yes=0.30, group="g"), make_snapshot("b", yes=0.20, group="g")]

        out = asyncio.run(synth.synthesize_all(snaps, now=NOW))

        assert [r.probability for r in out] == [pytest.approx(0.6), pytest.approx(0.4)]


def test_estimate_model_bounds():
    with pytest.raises(ValueError):
        Estimate(probability=1.0, confidence=50)
    with pytest.raises(ValueError):
        Estimate(probability=0.5, confidence=101)
