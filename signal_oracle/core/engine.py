"""
Signal engine: one full pipeline cycle.

  fetch → validate → merge history → update priors → select
        → synthesize → size → dampen → reject/classify → global cap → sink

All cross-cycle mutable state (caches, retained history, category stats,
cycle history, the no-signal counter) lives on an explicit ``EngineContext``
owned by the engine instead of in module globals.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Sequence

from ..estimators.base import ProbabilityEstimator
from ..polymarket.models import MarketSnapshot, PricePoint
from .analysis_cache import AnalysisCache
from .categories import cluster_for_category, resolve_category
from .correlation import CorrelationDampener
from .errors import DataQualityError, TransientIOError
from .history import MarketFeatures, derive_features, merge_history
from .price_cache import PriceCache
from .priors import PriorModel
from .rejection import RejectionPipeline
from .resilience import ResilientCaller, build_caller
from .selector import AlphaSelector, ScoredMarket
from .settings import EngineSettings
from .signals import CycleRecord, Signal, SignalBuckets, polymarket_link, uncertainty_band
from .sizing import EdgeAndSizingEngine
from .synthesizer import ProbabilitySynthesizer, SynthesisResult

logger = logging.getLogger(__name__)

PRICE_PAIR_TOLERANCE = 0.01


# ── Collaborators ────────────────────────────────────────────────────

class MarketDataProvider(Protocol):
    async def fetch_markets(self) -> list[MarketSnapshot]:
        ...


class SignalSink(Protocol):
    async def emit(self, record: CycleRecord, buckets: SignalBuckets) -> None:
        ...


# ── Context ──────────────────────────────────────────────────────────

@dataclass
class EngineContext:
    settings: EngineSettings
    price_cache: PriceCache
    analysis_cache: AnalysisCache
    priors: PriorModel
    history: dict[str, list[PricePoint]] = field(default_factory=dict)
    cycle_history: deque = field(default_factory=deque)  # newest first
    consecutive_empty_cycles: int = 0
    no_signal: bool = False
    cycle_count: int = 0

    @classmethod
    def from_settings(cls, settings: Optional[EngineSettings] = None, **kwargs) -> "EngineContext":
        settings = settings or EngineSettings()
        return cls(
            settings=settings,
            price_cache=kwargs.pop("price_cache", None) or PriceCache(settings.price_cache),
            analysis_cache=kwargs.pop("analysis_cache", None) or AnalysisCache(settings.analysis_cache),
            priors=kwargs.pop("priors", None) or PriorModel(settings.synthesizer),
            cycle_history=deque(maxlen=settings.cycle_history_cap),
            **kwargs,
        )

    def record_cycle(self, record: CycleRecord) -> None:
        if self.cycle_history.maxlen is None:
            self.cycle_history = deque(self.cycle_history, maxlen=self.settings.cycle_history_cap)
        self.cycle_history.appendleft(record)


@dataclass
class CycleOutcome:
    record: CycleRecord
    buckets: SignalBuckets


def validate_snapshot(snapshot: MarketSnapshot) -> MarketSnapshot:
    """Reject unusable snapshots; a YES+NO pair off 1 is only flagged."""
    if not snapshot.id or not snapshot.question:
        raise DataQualityError(snapshot.id or "?", "missing id or question")
    for name, price in (("yes", snapshot.yes_price), ("no", snapshot.no_price)):
        if not 0 < price < 1:
            raise DataQualityError(snapshot.id, f"{name} price {price} outside (0, 1)")
    if snapshot.price_sum_deviation > PRICE_PAIR_TOLERANCE:
        logger.warning(
            "Price pair for %s sums to %.4f (yes=%.4f no=%.4f)",
            snapshot.id, snapshot.yes_price + snapshot.no_price, snapshot.yes_price, snapshot.no_price,
        )
    return snapshot


# ── Engine ───────────────────────────────────────────────────────────

class SignalEngine:

    def __init__(
        self,
        context: EngineContext,
        provider: MarketDataProvider,
        *,
        estimator: Optional[ProbabilityEstimator] = None,
        sink: Optional[SignalSink] = None,
        poll_prices: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        s = context.settings
        self.context = context
        self.provider = provider
        self.sink = sink
        self.poll_prices = poll_prices
        self._clock = clock
        self.market_caller: ResilientCaller = build_caller("market-data", s.resilience)
        self.selector = AlphaSelector(s.selector, context.priors)
        self.synthesizer = ProbabilitySynthesizer(
            s.synthesizer,
            priors=context.priors,
            estimator=estimator,
            caller=build_caller("estimator", s.resilience, estimator=True),
            analysis_cache=context.analysis_cache,
            price_cache=context.price_cache,
        )
        self.sizing = EdgeAndSizingEngine(s.sizing)
        self.dampener = CorrelationDampener(s.dampener, tier_for=self.sizing.tier_for)
        self.rejection = RejectionPipeline(s.rejection, tier_for=self.sizing.tier_for)

    # ── Stages ───────────────────────────────────────────────────────

    async def fetch(self) -> list[MarketSnapshot]:
        try:
            return await self.market_caller.call(self.provider.fetch_markets)
        except TransientIOError as e:
            logger.warning("Market fetch failed, skipping this cycle: %s", e)
            return []

    def prepare(self, raw: Sequence[MarketSnapshot], *, now: float) -> list[MarketSnapshot]:
        """Validate, merge retained history and drop history for vanished markets."""
        window = self.context.settings.history_window_seconds
        prepared: list[MarketSnapshot] = []
        retained: dict[str, list[PricePoint]] = {}
        for snap in raw:
            try:
                validate_snapshot(snap)
            except DataQualityError as e:
                logger.warning("Dropping market: %s", e)
                continue
            current = snap.price_history or [
                PricePoint(timestamp=now, price=snap.yes_price, volume=snap.volume)
            ]
            merged = merge_history(
                self.context.history.get(snap.id, []), current, now=now, window_seconds=window
            )
            retained[snap.id] = merged
            prepared.append(snap.model_copy(update={"price_history": merged}))
        self.context.history = retained
        return prepared

    def build_signal(self, market: ScoredMarket, result: SynthesisResult, *, now: float) -> Signal:
        snap = market.snapshot
        quote = self.context.price_cache.get_quote(snap.id)
        spread = quote.spread if quote is not None else None
        sized = self.sizing.size(
            result.probability,
            result.market_price,
            confidence=result.confidence,
            liquidity=snap.liquidity,
            spread=spread,
            days_to_resolution=market.features.days_to_resolution,
            forced_direction=result.forced_direction,
        )
        return Signal(
            market_id=snap.id,
            question=snap.question,
            category=market.category,
            cluster=cluster_for_category(market.category),
            direction=sized.direction,
            probability=result.probability,
            market_price=result.market_price,
            raw_edge=sized.raw_edge,
            net_edge=sized.net_edge,
            confidence=result.confidence,
            exposure=sized.exposure,
            tier=sized.tier,
            timestamp=now,
            liquidity=snap.liquidity,
            spread=spread if spread is not None else self.sizing.settings.default_spread,
            days_to_resolution=market.features.days_to_resolution,
            fallback=result.fallback,
            forced=result.forced_direction is not None,
            uncertainty=uncertainty_band(result.confidence),
            link=polymarket_link(snap.slug, snap.question),
            narrative=result.narrative,
        )

    # ── Cycle ────────────────────────────────────────────────────────

    async def run_cycle(self) -> CycleOutcome:
        ctx = self.context
        s = ctx.settings
        started = time.monotonic()
        now = self._clock()
        ctx.cycle_count += 1
        calls_before = self.synthesizer.estimator_calls

        raw = await self.fetch()
        markets = self.prepare(raw, now=now)
        ctx.priors.update(markets, now=now)

        features: dict[str, MarketFeatures] = {
            m.id: derive_features(
                m,
                now=now,
                delta_window_seconds=s.selector.delta_window_seconds,
                trend_points=s.selector.trend_points,
            )
            for m in markets
        }
        selected = self.selector.select(markets, features, now=now)

        if self.poll_prices and selected:
            ctx.price_cache.start_polling(
                {m.id: m.snapshot.token_id for m in selected if m.snapshot.token_id}
            )

        results = await self.synthesizer.synthesize_all([m.snapshot for m in selected], now=now)
        by_id = {m.id: m for m in selected}
        signals: list[Signal] = []
        dropped = len(selected) - len(results)
        for result in results:
            try:
                signals.append(self.build_signal(by_id[result.market_id], result, now=now))
            except ValueError as e:
                dropped += 1
                logger.warning("Could not build signal for %s: %s", result.market_id, e)

        buckets = self.rejection.run(self.dampener.apply(signals))

        if selected:
            ctx.consecutive_empty_cycles = 0
        else:
            ctx.consecutive_empty_cycles += 1
        was_flagged = ctx.no_signal
        ctx.no_signal = ctx.consecutive_empty_cycles >= s.no_signal_threshold
        if ctx.no_signal and not was_flagged:
            logger.warning("No candidates for %d consecutive cycles", ctx.consecutive_empty_cycles)
        elif was_flagged and not ctx.no_signal:
            logger.info("Candidates are back, clearing no-signal flag")

        record = CycleRecord(
            cycle=ctx.cycle_count,
            timestamp=now,
            fetched=len(raw),
            eligible=len(markets),
            candidates=len(selected),
            signals=len(buckets),
            executable=len(buckets.executable),
            outlook=len(buckets.outlook),
            rejected=len(buckets.rejected),
            dropped=len(raw) - len(markets) + dropped,
            executable_exposure=buckets.executable_exposure,
            estimator_calls=self.synthesizer.estimator_calls - calls_before,
            cache_hits=sum(1 for r in results if r.cache_hit),
            duration_seconds=time.monotonic() - started,
            no_signal=ctx.no_signal,
        )
        if self.sink is not None:
            await self.sink.emit(record, buckets)
        ctx.record_cycle(record)

        logger.info(
            "Cycle #%d: fetched=%d eligible=%d candidates=%d executable=%d outlook=%d rejected=%d exposure=%.4f",
            record.cycle, record.fetched, record.eligible, record.candidates,
            record.executable, record.outlook, record.rejected, record.executable_exposure,
        )
        return CycleOutcome(record=record, buckets=buckets)

    async def close(self) -> None:
        await self.context.price_cache.stop()
