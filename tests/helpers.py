"""Builders and fakes shared by the test modules."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Optional

from signal_oracle.core.errors import EstimatorFailure
from signal_oracle.core.signals import Bucket, Direction, Signal, TradeTier
from signal_oracle.estimators.base import Estimate, EstimateContext, ProbabilityEstimator
from signal_oracle.polymarket.models import MarketSnapshot, PricePoint

NOW = 1_750_000_000.0
DAY = 86_400.0


def ts(offset_seconds: float) -> datetime:
    return datetime.fromtimestamp(NOW + offset_seconds, tz=timezone.utc)


def make_snapshot(
    market_id: str = "m1",
    question: str = "Will the new bridge open this year?",
    yes: float = 0.60,
    no: Optional[float] = None,
    *,
    liquidity: float = 80_000.0,
    volume: float = 100_000.0,
    category: str = "",
    start_offset: Optional[float] = -3600.0,
    end_offset: Optional[float] = 10 * DAY,
    token_id: Optional[str] = None,
    group: Optional[str] = None,
    slug: str = "",
    history: Optional[list[PricePoint]] = None,
) -> MarketSnapshot:
    return MarketSnapshot(
        id=market_id,
        question=question,
        slug=slug,
        category=category,
        yes_price=yes,
        no_price=no if no is not None else round(1 - yes, 6),
        liquidity=liquidity,
        volume=volume,
        start_date=ts(start_offset) if start_offset is not None else None,
        end_date=ts(end_offset) if end_offset is not None else None,
        token_id=token_id,
        exclusive_group=group,
        price_history=history or [],
    )


def make_signal(**overrides) -> Signal:
    fields = dict(
        market_id="m1",
        question="Will the new bridge open this year?",
        category="EVENT",
        cluster="event",
        direction=Direction.BUY_YES,
        probability=0.72,
        market_price=0.60,
        raw_edge=0.12,
        net_edge=0.1145,
        confidence=80.0,
        exposure=0.05,
        tier=TradeTier.STRONG_TRADE,
        timestamp=NOW,
        liquidity=80_000.0,
    )
    fields.update(overrides)
    return Signal(**fields)


def make_book(bid: float, ask: float, size: float = 500.0) -> dict:
    return {
        "bids": [{"price": str(bid), "size": str(size)}],
        "asks": [{"price": str(ask), "size": str(size)}],
    }


class FakeEstimator(ProbabilityEstimator):
    """Returns canned estimates per market id and counts calls."""

    def __init__(self, estimates: Optional[dict[str, tuple[float, float]]] = None, default=(0.72, 80.0)):
        super().__init__({})
        self.estimates = estimates or {}
        self.default = default
        self.calls: list[str] = []

    @property
    def name(self) -> str:
        return "fake"

    async def estimate(self, snapshot: MarketSnapshot, context: EstimateContext) -> Estimate:
        self.calls.append(snapshot.id)
        probability, confidence = self.estimates.get(snapshot.id, self.default)
        return Estimate(probability=probability, confidence=confidence, narrative="fake")


class FailingEstimator(ProbabilityEstimator):
    def __init__(self):
        super().__init__({})
        self.calls = 0

    @property
    def name(self) -> str:
        return "failing"

    async def estimate(self, snapshot: MarketSnapshot, context: EstimateContext) -> Estimate:
        self.calls += 1
        raise EstimatorFailure("model unavailable")


class HangingEstimator(FakeEstimator):
    """Never answers for the ids in ``hang``; canned estimates for the rest."""

    def __init__(self, hang: tuple[str, ...] = ("slow",), **kwargs):
        super().__init__(**kwargs)
        self.hang = hang

    async def estimate(self, snapshot: MarketSnapshot, context: EstimateContext) -> Estimate:
        if snapshot.id in self.hang:
            self.calls.append(snapshot.id)
            await asyncio.sleep(3600)
        return await super().estimate(snapshot, context)


class FakeProvider:
    def __init__(self, batches: Optional[list[list[MarketSnapshot]]] = None):
        self.batches = batches or []
        self.calls = 0

    async def fetch_markets(self) -> list[MarketSnapshot]:
        batch = self.batches[min(self.calls, len(self.batches) - 1)] if self.batches else []
        self.calls += 1
        return list(batch)


class RecordingSink:
    def __init__(self):
        self.emitted = []

    async def emit(self, record, buckets) -> None:
        self.emitted.append((record, buckets))


class Clock:
    """Settable clock for caches and the engine."""

    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def bucket_of(signal: Signal) -> Optional[Bucket]:
    return signal.bucket
