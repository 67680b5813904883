"""
Category priors: static buckets, structural base rates and the adaptive
per-category statistics learned from the live market universe.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Optional

from ..polymarket.models import MarketSnapshot
from .categories import bucket_midpoint, prior_bucket, resolve_category, structural_base_rate
from .history import DAY_SECONDS
from .settings import PROB_FLOOR, SynthesizerSettings

logger = logging.getLogger(__name__)

_PRIOR_CEILING = 0.99


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def time_progress(snapshot: MarketSnapshot, *, now: float, default_lifetime_days: float = 180.0) -> float:
    """
    Fraction of the market's lifetime already elapsed, in [0, 1].

    Markets without an end date, or already past it, count as fully elapsed.
    A missing start date assumes ``default_lifetime_days`` before the end.
    """
    end = snapshot.end_ts
    if end is None or end <= now:
        return 1.0
    start = snapshot.start_ts
    if start is None:
        start = end - default_lifetime_days * DAY_SECONDS
    total = max(DAY_SECONDS, end - start)
    elapsed = _clamp(now - start, 0.0, total)
    return _clamp(elapsed / total, 0.0, 1.0)


def calibrate_prior(prior: float, category: str, damping_base: float = 0.35, damping_slope: float = 0.25) -> float:
    """
    Pull a blended prior toward its bucket midpoint and hard-clamp it into
    a guardrail band of half a bucket-span on either side of the bucket.
    """
    low, high = prior_bucket(category)
    midpoint = (low + high) / 2
    span = max(0.05, high - low)

    value = prior if math.isfinite(prior) else midpoint
    value = _clamp(value, PROB_FLOOR, _PRIOR_CEILING)

    guard_min = max(PROB_FLOOR, low - span * 0.5)
    guard_max = min(_PRIOR_CEILING, high + span * 0.5)
    guard_half = max(0.0001, (guard_max - guard_min) / 2)
    strength = _clamp(abs(value - midpoint) / guard_half, 0.0, 1.0)
    damping = damping_base + damping_slope * strength

    blended = value * (1 - damping) + midpoint * damping
    return _clamp(blended, guard_min, guard_max)


@dataclass
class CategoryStats:
    """Liquidity-weighted EMAs of realized category prices."""
    ema_market_price: Optional[float] = None
    ema_error: Optional[float] = None
    ema_liquidity: Optional[float] = None
    updated_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "ema_market_price": self.ema_market_price,
            "ema_error": self.ema_error,
            "ema_liquidity": self.ema_liquidity,
            "updated_at": self.updated_at,
        }


def _ema(previous: Optional[float], value: float, alpha: float) -> float:
    return value if previous is None else previous * (1 - alpha) + value * alpha


class PriorModel:
    """Structural + adaptive category prior shared by the selector and the synthesizer."""

    def __init__(self, settings: Optional[SynthesizerSettings] = None):
        self.settings = settings or SynthesizerSettings()
        self.stats: dict[str, CategoryStats] = {}

    def update(self, snapshots: Iterable[MarketSnapshot], *, now: float) -> None:
        """Fold one cycle's market universe into the per-category EMAs."""
        aggregates: dict[str, list[float]] = {}
        for snap in snapshots:
            category = resolve_category(snap.question, snap.category)
            liquidity = max(1000.0, snap.liquidity)
            error = abs(bucket_midpoint(category) - snap.yes_price)
            agg = aggregates.setdefault(category, [0.0, 0.0, 0.0, 0.0, 0])
            agg[0] += liquidity
            agg[1] += snap.yes_price * liquidity
            agg[2] += error * liquidity
            agg[3] += liquidity
            agg[4] += 1

        alpha = self.settings.ema_alpha
        for category, (weight, price_sum, error_sum, liq_sum, count) in aggregates.items():
            if weight <= 0:
                continue
            stats = self.stats.setdefault(category, CategoryStats())
            stats.ema_market_price = _ema(stats.ema_market_price, price_sum / weight, alpha)
            stats.ema_error = _ema(stats.ema_error, error_sum / weight, alpha)
            stats.ema_liquidity = _ema(stats.ema_liquidity, liq_sum / max(1, count), alpha)
            stats.updated_at = now
        if aggregates:
            logger.debug("Updated category stats for %d categories", len(aggregates))

    def base_rate(self, snapshot: MarketSnapshot, *, now: float) -> float:
        """Calibrated prior for one market (structural rates bypass calibration)."""
        structural = structural_base_rate(snapshot.question)
        if structural is not None:
            return structural

        s = self.settings
        category = resolve_category(snapshot.question, snapshot.category)
        prior = bucket_midpoint(category)

        stats = self.stats.get(category)
        if stats is not None:
            weight = _clamp((stats.ema_liquidity or 0.0) / s.adaptive_liquidity_scale, 0.0, 1.0)
            if stats.ema_market_price is not None:
                prior = prior * (1 - weight * 0.5) + stats.ema_market_price * weight * 0.5
            if stats.ema_error is not None:
                penalty = _clamp(stats.ema_error * 2, 0.0, 0.4)
                prior = prior * (1 - penalty) + 0.5 * penalty

        if snapshot.yes_price:
            progress = time_progress(snapshot, now=now, default_lifetime_days=s.default_lifetime_days)
            blend = _clamp(
                s.market_blend_min + progress * (s.market_blend_max - s.market_blend_min),
                s.market_blend_min,
                s.market_blend_max,
            )
            prior = prior * (1 - blend) + snapshot.yes_price * blend

        return calibrate_prior(prior, category, s.damping_base, s.damping_slope)

    def snapshot(self) -> dict[str, dict]:
        return {category: stats.to_dict() for category, stats in self.stats.items()}

    def load(self, data: dict[str, dict]) -> None:
        for category, raw in (data or {}).items():
            self.stats[category] = CategoryStats(**raw)
