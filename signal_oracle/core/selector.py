"""
Alpha selection: narrow the market universe to a bounded candidate set.

Seven independent heuristic filters each contribute a capped top-N list.
The union is de-duplicated, post-filtered on horizon and per-category
divergence gates and ranked by a composite score.  The top ``top_k`` are
then rebalanced for category diversity, so the share cap holds on the list
that is returned.  Given identical input the output is identical.
"""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Sequence

from ..polymarket.models import MarketSnapshot
from .categories import (
    category_edge_floor,
    category_liquidity_floor,
    is_meme_market,
    resolve_category,
)
from .history import MarketFeatures
from .priors import PriorModel
from .settings import SelectorSettings

logger = logging.getLogger(__name__)

_NON_WORD = re.compile(r"[^a-z0-9]+")
_UNKNOWN_HORIZON_DAYS = 365.0


@dataclass(frozen=True)
class ScoredMarket:
    snapshot: MarketSnapshot
    features: MarketFeatures
    category: str
    prior: float
    edge: float  # |prior - yes price|
    index: int  # position in the eligible universe

    @property
    def id(self) -> str:
        return self.snapshot.id


def dedupe_key(snapshot: MarketSnapshot) -> str:
    """Normalized question text + end date; catches one market listed under two ids."""
    question = _NON_WORD.sub(" ", snapshot.question.lower()).strip()
    end = snapshot.end_date.date().isoformat() if snapshot.end_date else ""
    return f"{question}|{end}"


def composite_score(market: ScoredMarket) -> float:
    liquidity = max(1000.0, market.snapshot.liquidity)
    liquidity_boost = math.log10(liquidity) / 2
    trend_boost = min(0.2, abs(market.features.drift) * 2)
    volatility_penalty = min(0.3, market.features.volatility * 4)
    return max(0.0, market.edge * (1 + liquidity_boost + trend_boost) - volatility_penalty)


def _rank_key(market: ScoredMarket) -> tuple[float, int]:
    return (-composite_score(market), market.index)


def _top(
    markets: Sequence[ScoredMarket],
    keep: Callable[[ScoredMarket], bool],
    key: Callable[[ScoredMarket], float],
    cap: int,
) -> list[ScoredMarket]:
    """Filter, sort descending by ``key`` (stable on universe index) and cap."""
    hits = [m for m in markets if keep(m)]
    hits.sort(key=lambda m: (-key(m), m.index))
    return hits[:cap]


class AlphaSelector:

    def __init__(self, settings: Optional[SelectorSettings] = None, priors: Optional[PriorModel] = None):
        self.settings = settings or SelectorSettings()
        self.priors = priors or PriorModel()

    # ── Universe ─────────────────────────────────────────────────────

    def score_universe(
        self,
        snapshots: Sequence[MarketSnapshot],
        features: Mapping[str, MarketFeatures],
        *,
        now: float,
    ) -> list[ScoredMarket]:
        """Eligible, de-duplicated universe with category, prior and static edge."""
        out: list[ScoredMarket] = []
        seen_ids: set[str] = set()
        seen_keys: set[str] = set()
        for snap in snapshots:
            if snap.id in seen_ids:
                continue
            key = dedupe_key(snap)
            if key in seen_keys:
                logger.debug("Duplicate market %s (%s)", snap.id, snap.question[:50])
                continue
            seen_ids.add(snap.id)
            seen_keys.add(key)

            if is_meme_market(snap.question):
                continue
            if not 0.005 <= snap.yes_price <= 0.995:
                continue
            if snap.liquidity < self.settings.min_liquidity:
                continue
            prior = self.priors.base_rate(snap, now=now)
            out.append(ScoredMarket(
                snapshot=snap,
                features=features.get(snap.id) or MarketFeatures(),
                category=resolve_category(snap.question, snap.category),
                prior=prior,
                edge=abs(prior - snap.yes_price),
                index=len(out),
            ))
        return out

    # ── Filters ──────────────────────────────────────────────────────

    def static_mispricing(self, universe: Sequence[ScoredMarket]) -> list[ScoredMarket]:
        def keep(m: ScoredMarket) -> bool:
            floor = category_edge_floor(m.category, m.snapshot.liquidity, m.features.age_days)
            return m.edge > floor and m.snapshot.liquidity > category_liquidity_floor(m.category)
        return _top(universe, keep, lambda m: m.edge, self.settings.static_cap)

    def price_drift(self, universe: Sequence[ScoredMarket]) -> list[ScoredMarket]:
        s = self.settings
        return _top(
            universe,
            lambda m: abs(m.features.drift) > s.drift_threshold,
            lambda m: abs(m.features.drift),
            s.drift_cap,
        )

    def volume_velocity(self, universe: Sequence[ScoredMarket]) -> list[ScoredMarket]:
        s = self.settings

        def keep(m: ScoredMarket) -> bool:
            baseline = max(s.min_baseline_velocity, m.features.baseline_velocity)
            return m.features.velocity > baseline * s.velocity_multiple
        return _top(universe, keep, lambda m: m.features.velocity, s.velocity_cap)

    def short_window_delta(self, universe: Sequence[ScoredMarket]) -> list[ScoredMarket]:
        s = self.settings

        def keep(m: ScoredMarket) -> bool:
            threshold = (
                s.delta_threshold_high_liquidity
                if m.snapshot.liquidity > s.delta_high_liquidity
                else s.delta_threshold_low_liquidity
            )
            return m.features.delta_5m > threshold
        return _top(universe, keep, lambda m: m.snapshot.volume, s.delta_cap)

    def new_listings(self, universe: Sequence[ScoredMarket]) -> list[ScoredMarket]:
        s = self.settings
        max_days = s.new_listing_max_age_hours / 24

        def keep(m: ScoredMarket) -> bool:
            age = m.features.age_days
            return age is not None and 0 <= age < max_days
        return _top(universe, keep, lambda m: m.snapshot.volume, s.new_listing_cap)

    def discovery(self, universe: Sequence[ScoredMarket]) -> list[ScoredMarket]:
        def keep(m: ScoredMarket) -> bool:
            return m.features.age_days is not None and m.features.age_days > 0
        return _top(
            universe,
            keep,
            lambda m: m.snapshot.volume / max(m.features.age_days or 1.0, 1.0),
            self.settings.discovery_cap,
        )

    def trends(self, universe: Sequence[ScoredMarket]) -> list[ScoredMarket]:
        s = self.settings
        return _top(
            universe,
            lambda m: abs(m.features.trend) > s.trend_threshold,
            lambda m: abs(m.features.trend),
            s.trend_cap,
        )

    # ── Post-filter & diversity ──────────────────────────────────────

    def passes_post_filter(self, market: ScoredMarket) -> bool:
        s = self.settings
        days = market.features.days_to_resolution
        if days is None:
            days = _UNKNOWN_HORIZON_DAYS
        if days < s.min_days_to_resolution or days > s.max_days_to_resolution:
            return False
        return market.edge >= s.divergence_gate(market.category)

    def enforce_diversity(
        self, selected: list[ScoredMarket], pool: Sequence[ScoredMarket]
    ) -> list[ScoredMarket]:
        """Cap any one category's share and guarantee each priority category a seat."""
        s = self.settings
        if not selected:
            return []
        updated = list(selected)
        chosen = {m.id for m in updated}
        max_per_category = max(1, math.floor(len(updated) * s.max_category_share))

        counts = Counter(m.category for m in updated)
        over = {cat for cat, count in counts.items() if count > max_per_category}
        for category in sorted(over, key=lambda c: -counts[c]):
            excess = counts[category] - max_per_category
            demote = sorted(
                (m for m in updated if m.category == category), key=lambda m: (m.edge, -m.index)
            )[:excess]
            backfill = sorted(
                (m for m in pool if m.id not in chosen and m.category not in over),
                key=lambda m: (-m.edge, m.index),
            )
            for drop in demote:
                idx = updated.index(drop)
                counts[category] -= 1
                # Backfill must not push another category over the cap.
                replacement = next((m for m in backfill if counts[m.category] < max_per_category), None)
                if replacement is not None:
                    backfill.remove(replacement)
                    updated[idx] = replacement
                    chosen.add(replacement.id)
                    counts[replacement.category] += 1
                else:
                    updated.pop(idx)
                chosen.discard(drop.id)
            logger.info("Diversity: demoted %d %s markets", len(demote), category)

        for category in s.priority_categories:
            if any(m.category == category for m in updated):
                continue
            candidates = sorted(
                (m for m in pool if m.id not in chosen and m.category == category),
                key=lambda m: (-m.edge, m.index),
            )
            if not candidates:
                continue
            victims = sorted(
                (i for i, m in enumerate(updated) if m.category not in s.priority_categories),
                key=lambda i: (updated[i].edge, -updated[i].index),
            )
            if not victims:
                continue
            victim = victims[0]
            chosen.discard(updated[victim].id)
            updated[victim] = candidates[0]
            chosen.add(candidates[0].id)
            logger.info("Diversity: injected %s market %s", category, candidates[0].snapshot.question[:40])
        return updated

    # ── Entry point ──────────────────────────────────────────────────

    def select(
        self,
        snapshots: Sequence[MarketSnapshot],
        features: Mapping[str, MarketFeatures],
        *,
        now: float,
    ) -> list[ScoredMarket]:
        universe = self.score_universe(snapshots, features, now=now)

        sublists = [
            self.static_mispricing(universe),
            self.price_drift(universe),
            self.volume_velocity(universe),
            self.short_window_delta(universe),
            self.new_listings(universe),
            self.discovery(universe),
            self.trends(universe),
        ]
        union: list[ScoredMarket] = []
        seen: set[str] = set()
        for sub in sublists:
            for m in sub:
                if m.id not in seen:
                    seen.add(m.id)
                    union.append(m)

        selected = [m for m in union if self.passes_post_filter(m)]
        pool = [m for m in universe if self.passes_post_filter(m)]
        ranked = sorted(selected, key=_rank_key)
        diversified = self.enforce_diversity(ranked[: self.settings.top_k], pool)
        result = sorted(diversified, key=_rank_key)

        logger.info(
            "Selector: universe=%d union=%d post-filter=%d final=%d (%s)",
            len(universe), len(union), len(selected), len(result),
            ", ".join(f"{cat}:{n}" for cat, n in Counter(m.category for m in result).most_common()),
        )
        return result
