"""
Price/volume history merging and the derived fields the selector needs.

Each cycle's snapshot carries only the newest observation(s); the engine
merges them with the points retained from earlier cycles and trims the
result to a sliding window (60 minutes by default).
"""

from __future__ import annotations

import statistics
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from ..polymarket.models import MarketSnapshot, PricePoint

DAY_SECONDS = 86_400.0


def merge_history(
    previous: Iterable[PricePoint],
    current: Iterable[PricePoint],
    *,
    now: float,
    window_seconds: float,
) -> list[PricePoint]:
    """
    Merge two histories, de-duplicated by timestamp (newer wins), sorted
    oldest-first and trimmed to ``[now - window_seconds, now]``.
    """
    by_ts: dict[float, PricePoint] = {}
    for point in previous:
        by_ts[point.timestamp] = point
    for point in current:
        by_ts[point.timestamp] = point
    cutoff = now - window_seconds
    return [by_ts[ts] for ts in sorted(by_ts) if ts >= cutoff]


# ── Derived fields ───────────────────────────────────────────────────

def price_drift(history: Sequence[PricePoint]) -> float:
    """Relative change between the first and last retained price."""
    if len(history) < 2:
        return 0.0
    first, last = history[0].price, history[-1].price
    if first <= 0:
        return 0.0
    return (last - first) / first


def _velocities(history: Sequence[PricePoint]) -> list[float]:
    out = []
    for prev, cur in zip(history, history[1:]):
        dt = cur.timestamp - prev.timestamp
        if dt > 0:
            out.append((cur.volume - prev.volume) / dt)
    return out


def volume_velocity(history: Sequence[PricePoint]) -> float:
    """Volume per second between the last two observations."""
    if len(history) < 2:
        return 0.0
    prev, last = history[-2], history[-1]
    dt = last.timestamp - prev.timestamp
    return (last.volume - prev.volume) / dt if dt > 0 else 0.0


def baseline_velocity(history: Sequence[PricePoint], default: float = 0.1) -> float:
    """Mean per-interval volume velocity over the window (needs 3+ points)."""
    if len(history) < 3:
        return default
    velocities = _velocities(history)
    return sum(velocities) / len(velocities) if velocities else default


def short_window_delta(history: Sequence[PricePoint], *, now: float, window_seconds: float = 300.0) -> float:
    """Relative high/low range of prices observed within the last ``window_seconds``."""
    prices = [p.price for p in history if p.timestamp > now - window_seconds]
    if len(prices) < 2:
        return 0.0
    low = min(prices)
    if low <= 0:
        return 0.0
    return (max(prices) - low) / low


def price_volatility(history: Sequence[PricePoint]) -> float:
    if len(history) < 2:
        return 0.0
    return statistics.pstdev(p.price for p in history)


def price_trend(history: Sequence[PricePoint], points: int = 5) -> float:
    """Average step over the last ``points`` prices; 0 when fewer are retained."""
    if len(history) < points:
        return 0.0
    recent = [p.price for p in history[-points:]]
    return (recent[-1] - recent[0]) / (len(recent) - 1)


@dataclass(frozen=True)
class MarketFeatures:
    """Per-cycle derived fields for one market."""
    drift: float = 0.0
    velocity: float = 0.0
    baseline_velocity: float = 0.1
    delta_5m: float = 0.0
    volatility: float = 0.0
    trend: float = 0.0
    age_days: Optional[float] = None
    days_to_resolution: Optional[float] = None


def derive_features(
    snapshot: MarketSnapshot,
    *,
    now: float,
    delta_window_seconds: float = 300.0,
    trend_points: int = 5,
) -> MarketFeatures:
    history = snapshot.price_history
    age = (now - snapshot.start_ts) / DAY_SECONDS if snapshot.start_ts is not None else None
    remaining = (snapshot.end_ts - now) / DAY_SECONDS if snapshot.end_ts is not None else None
    return MarketFeatures(
        drift=price_drift(history),
        velocity=volume_velocity(history),
        baseline_velocity=baseline_velocity(history),
        delta_5m=short_window_delta(history, now=now, window_seconds=delta_window_seconds),
        volatility=price_volatility(history),
        trend=price_trend(history, trend_points),
        age_days=age,
        days_to_resolution=remaining,
    )
