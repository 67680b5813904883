import asyncio
import logging
import random

import httpx
import pytest

from signal_oracle.bot.scheduler import CycleScheduler
from signal_oracle.core.analysis_cache import AnalysisCache
from signal_oracle.core.engine import EngineContext, SignalEngine, validate_snapshot
from signal_oracle.core.errors import DataQualityError
from signal_oracle.core.price_cache import PriceCache
from signal_oracle.core.settings import (
    MAX_POSITION_SIZE,
    EngineSettings,
    ResilienceSettings,
    SelectorSettings,
    SynthesizerSettings,
)
from signal_oracle.core.signals import Bucket, Direction, TradeTier

from helpers import (
    DAY,
    NOW,
    Clock,
    FakeEstimator,
    FakeProvider,
    HangingEstimator,
    RecordingSink,
    make_book,
    make_snapshot,
)


async def _no_book(token_id):
    return {}


def _engine(batches, *, estimator=None, settings=None, clock=None, sink=None, price_cache=None, provider=None):
    clock = clock or Clock()
    settings = settings or EngineSettings()
    context = EngineContext.from_settings(
        settings,
        analysis_cache=AnalysisCache(settings.analysis_cache, clock=clock),
        price_cache=price_cache or PriceCache(settings.price_cache, fetch_book=_no_book, clock=clock),
    )
    return SignalEngine(
        context,
        provider or FakeProvider(batches),
        estimator=estimator,
        sink=sink,
        poll_prices=False,
        clock=clock,
    )


def _run(engine, cycles=1):
    async def go():
        outcomes = [await engine.run_cycle() for _ in range(cycles)]
        await engine.close()
        return outcomes
    return asyncio.run(go())


class ExplodingProvider:
    def __init__(self):
        self.calls = 0

    async def fetch_markets(self):
        self.calls += 1
        raise httpx.ConnectError("gamma unreachable")


class TestValidateSnapshot:
    def test_price_outside_unit_interval(self):
        with pytest.raises(DataQualityError):
            validate_snapshot(make_snapshot(yes=1.2, no=0.1))

    def test_missing_question(self):
        with pytest.raises(DataQualityError):
            validate_snapshot(make_snapshot(question=""))

    def test_pair_deviation_is_only_flagged(self, caplog):
        snap = make_snapshot(yes=0.60, no=0.45)
        with caplog.at_level(logging.WARNING):
            assert validate_snapshot(snap) is snap
        assert "sums to" in caplog.text


class TestCycle:
    def test_clear_edge_becomes_executable_signal(self):
        sink = RecordingSink()
        engine = _engine([[make_snapshot(yes=0.60)]], estimator=FakeEstimator(default=(0.72, 80)), sink=sink)

        outcome = _run(engine)[0]

        assert outcome.record.candidates == 1
        assert outcome.record.executable == 1
        signal = outcome.buckets.executable[0]
        assert signal.direction == Direction.BUY_YES
        assert signal.tier == TradeTier.STRONG_TRADE
        assert signal.exposure == MAX_POSITION_SIZE
        assert signal.bucket == Bucket.EXECUTABLE
        assert signal.net_edge > 0.05
        assert signal.cluster == "event"
        assert sink.emitted[0][0] == outcome.record

    def test_spread_from_fresh_quote(self):
        clock = Clock()

        async def fetch(token_id):
            return make_book(0.595, 0.605)

        cache = PriceCache(fetch_book=fetch, clock=clock)
        cache.watch({"m1": "tok"})
        asyncio.run(cache.poll_once())
        engine = _engine(
            [[make_snapshot(yes=0.60, token_id="tok")]],
            estimator=FakeEstimator(default=(0.72, 80)),
            clock=clock,
            price_cache=cache,
        )

        signal = _run(engine)[0].buckets.executable[0]

        assert signal.spread == pytest.approx(0.01)
        assert signal.market_price == pytest.approx(0.60)
        assert signal.net_edge == pytest.approx((0.72 - 0.60 - 0.0055) * 0.95, abs=0.002)

    def test_without_estimator_signals_are_flagged_fallbacks(self):
        engine = _engine([[make_snapshot(yes=0.60)]])

        outcome = _run(engine)[0]

        assert outcome.record.executable == 0
        assert all(s.fallback and s.confidence == 30.0 for s in outcome.buckets.all())

    def test_bad_snapshot_dropped_cycle_continues(self):
        batch = [make_snapshot("bad", yes=1.2, no=0.1), make_snapshot("good", question="Will it work?")]
        outcome = _run(_engine([batch], estimator=FakeEstimator()))[0]

        assert outcome.record.fetched == 2
        assert outcome.record.eligible == 1
        assert outcome.record.dropped == 1
        assert [s.market_id for s in outcome.buckets.all()] == ["good"]

    def test_provider_outage_yields_empty_cycle(self):
        provider = ExplodingProvider()
        engine = _engine([], provider=provider, estimator=FakeEstimator())

        outcome = _run(engine)[0]

        assert provider.calls == 3
        assert outcome.record.fetched == 0
        assert len(outcome.buckets) == 0

    def test_hung_estimator_still_completes_cycle(self):
        settings = EngineSettings(
            selector=SelectorSettings(max_category_share=1.0),
            synthesizer=SynthesizerSettings(estimate_deadline_seconds=0.2),
            resilience=ResilienceSettings(estimator_timeout=0.3, estimator_retries=1),
        )
        sink = RecordingSink()
        batch = [make_snapshot("m1", yes=0.60), make_snapshot("slow", question="Will the launch slip again?", yes=0.40)]
        engine = _engine([batch], estimator=HangingEstimator(hang=("slow",)), settings=settings, sink=sink)
        scheduler = CycleScheduler(engine.run_cycle, cycle_timeout=0.6)

        async def go():
            try:
                return await scheduler.run_once()
            finally:
                await scheduler.stop()
                await engine.close()

        outcome = asyncio.run(go())

        assert scheduler.failed == 0
        assert outcome is not None
        by_id = {s.market_id: s for s in outcome.buckets.all()}
        assert by_id["slow"].fallback
        assert not by_id["m1"].fallback
        assert len(sink.emitted) == 1

    def test_unchanged_price_reuses_estimate(self):
        estimator = FakeEstimator()
        clock = Clock()
        engine = _engine([[make_snapshot(yes=0.60)]], estimator=estimator, clock=clock)

        async def go():
            first = await engine.run_cycle()
            clock.advance(60)
            second = await engine.run_cycle()
            return first, second

        first, second = asyncio.run(go())

        assert first.record.estimator_calls == 1
        assert second.record.estimator_calls == 0
        assert second.record.cache_hits == 1
        assert estimator.calls == ["m1"]


class TestContextState:
    def test_history_merged_and_pruned(self):
        clock = Clock()
        batches = [[make_snapshot("m1")], [make_snapshot("m1")], [make_snapshot("m2", question="Other?")]]
        engine = _engine(batches, estimator=FakeEstimator(), clock=clock)

        async def go():
            await engine.run_cycle()
            clock.advance(60)
            await engine.run_cycle()
            assert len(engine.context.history["m1"]) == 2
            clock.advance(60)
            await engine.run_cycle()

        asyncio.run(go())
        assert set(engine.context.history) == {"m2"}

    def test_cycle_history_is_bounded_newest_first(self):
        engine = _engine([[make_snapshot()]], estimator=FakeEstimator(), settings=EngineSettings(cycle_history_cap=3))

        _run(engine, cycles=5)

        assert [r.cycle for r in engine.context.cycle_history] == [5, 4, 3]

    def test_no_signal_flag_after_consecutive_empty_cycles(self):
        batches = [[], [], [], [], [], [make_snapshot()]]
        engine = _engine(batches, estimator=FakeEstimator())

        outcomes = _run(engine, cycles=6)

        flags = [o.record.no_signal for o in outcomes]
        assert flags == [False, False, False, False, True, False]
        assert not engine.context.no_signal


def test_cycle_invariants_over_a_mixed_universe():
    rng = random.Random(7)
    questions = [
        "Will Bitcoin close above {n}k this month?",
        "Will the Senate pass bill {n}?",
        "Will CPI print above {n} percent?",
        "Will the sequel gross {n}m at the box office?",
        "Will project {n} ship on time?",
    ]
    snaps, estimates = [], {}
    for i in range(60):
        yes = round(rng.uniform(0.01, 0.99), 3)
        snaps.append(make_snapshot(
            f"m{i}",
            question=questions[i % len(questions)].format(n=i),
            yes=yes,
            liquidity=rng.choice([2_000, 15_000, 80_000, 250_000]),
            start_offset=-rng.uniform(0.1, 60) * DAY,
            end_offset=rng.uniform(8, 300) * DAY,
            group="bracket" if i % 10 == 0 else None,
        ))
        estimates[f"m{i}"] = (round(rng.uniform(0.02, 0.98), 3), rng.choice([40, 60, 75, 85, 95]))

    settings = EngineSettings.from_config({"engine": {"selector": {"top_k": 60, "max_category_share": 1.0}}})
    engine = _engine([snaps], estimator=FakeEstimator(estimates), settings=settings)
    buckets = _run(engine)[0].buckets

    assert len(buckets) > 0
    for signal in buckets.all():
        assert 0 < signal.probability < 1
        assert 0 <= signal.exposure <= MAX_POSITION_SIZE
    assert buckets.executable_exposure <= 1.0 + 1e-9
    assert all(s.reason for s in buckets.rejected)
    ids = [s.market_id for s in buckets.all()]
    assert len(ids) == len(set(ids))
