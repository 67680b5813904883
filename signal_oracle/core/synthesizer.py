"""
Probability synthesis: one calibrated probability per candidate market.

Per market (``synthesize``):
  1. calibrated base prior (structural rate, or bucket + adaptive stats +
     lifetime-weighted market blend, then guardrail calibration)
  2. estimator probability, reused from the analysis cache when the price
     has not moved; on failure the prior becomes a flagged fallback
  3. hallucination guard: estimates far from the market are damped halfway
     back toward it

Across markets (``normalize_exclusive_groups``):
  4. mutually exclusive groups are rescaled to sum to 1, with the top
     member forced to BUY_YES and the rest to BUY_NO

Per market again (``finalize``):
  5. time decay proportional to elapsed lifetime, capped for near-certain markets
  6. clamp into (PROB_FLOOR, 1 - PROB_FLOOR)
"""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass, field, replace
from typing import Iterable, Optional, Sequence

from ..estimators.base import Estimate, EstimateContext, ProbabilityEstimator
from ..polymarket.models import MarketSnapshot
from .analysis_cache import AnalysisCache
from .errors import InvariantViolation
from .history import DAY_SECONDS
from .price_cache import PriceCache
from .priors import PriorModel
from .resilience import ResilientCaller
from .settings import PROB_FLOOR, SynthesizerSettings
from .signals import Direction

logger = logging.getLogger(__name__)


def clamp_probability(value: float, market_id: str = "") -> float:
    """Clamp into [PROB_FLOOR, 1 - PROB_FLOOR]; out-of-range input is logged, never raised."""
    low, high = PROB_FLOOR, 1 - PROB_FLOOR
    if not math.isfinite(value):
        logger.warning("%s", InvariantViolation(f"{market_id}: non-finite probability {value}, using 0.5"))
        return 0.5
    if value < low or value > high:
        logger.warning("%s", InvariantViolation(f"{market_id}: probability {value:.6f} clamped"))
        return min(max(value, low), high)
    return value


@dataclass(frozen=True)
class SynthesisResult:
    market_id: str
    probability: float
    confidence: float
    prior: float
    market_price: float
    estimate: Optional[float] = None  # estimator probability before the guard
    fallback: bool = False
    cache_hit: bool = False
    hallucination_damped: bool = False
    group: Optional[str] = None
    forced_direction: Optional[Direction] = None
    time_penalty: float = 0.0
    narrative: str = ""
    citations: tuple[str, ...] = field(default_factory=tuple)


class ProbabilitySynthesizer:

    def __init__(
        self,
        settings: Optional[SynthesizerSettings] = None,
        *,
        priors: Optional[PriorModel] = None,
        estimator: Optional[ProbabilityEstimator] = None,
        caller: Optional[ResilientCaller] = None,
        analysis_cache: Optional[AnalysisCache] = None,
        price_cache: Optional[PriceCache] = None,
    ):
        self.settings = settings or SynthesizerSettings()
        self.priors = priors or PriorModel(self.settings)
        self.estimator = estimator
        self.caller = caller or ResilientCaller("estimator")
        self.analysis_cache = analysis_cache or AnalysisCache()
        self.price_cache = price_cache
        self.estimator_calls = 0

    # ── Steps 1-3 ────────────────────────────────────────────────────

    def live_price(self, snapshot: MarketSnapshot) -> float:
        if self.price_cache is None:
            return snapshot.yes_price
        return self.price_cache.get_price(snapshot.id, fallback=snapshot.yes_price)

    async def synthesize(self, snapshot: MarketSnapshot, *, now: float) -> SynthesisResult:
        price = self.live_price(snapshot)
        prior = self.priors.base_rate(snapshot, now=now)

        estimate, cache_hit = await self._estimate(snapshot, price, prior)

        probability = estimate.probability
        damped = False
        if not estimate.fallback and abs(probability - price) > self.settings.hallucination_threshold:
            damped = True
            guarded = probability + (price - probability) * self.settings.hallucination_damping
            logger.info(
                "Hallucination guard on %s: estimate %.3f vs market %.3f → %.3f",
                snapshot.id, probability, price, guarded,
            )
            probability = guarded

        return SynthesisResult(
            market_id=snapshot.id,
            probability=probability,
            confidence=estimate.confidence,
            prior=prior,
            market_price=price,
            estimate=None if estimate.fallback else estimate.probability,
            fallback=estimate.fallback,
            cache_hit=cache_hit,
            hallucination_damped=damped,
            narrative=estimate.narrative,
            citations=tuple(estimate.citations),
        )

    async def _estimate(self, snapshot: MarketSnapshot, price: float, prior: float) -> tuple[Estimate, bool]:
        entry = self.analysis_cache.get(snapshot.id, price)
        if entry is not None:
            return Estimate.model_validate(entry.result), True

        if self.estimator is None:
            return self._fallback(prior, "no estimator configured"), False

        context = EstimateContext(
            prior=prior,
            live_price=price,
            order_book=self.price_cache.get_order_book(snapshot.id) if self.price_cache else None,
            headlines=list(snapshot.metadata.get("headlines") or []),
        )
        self.estimator_calls += 1
        try:
            estimate = await self.caller.call(self.estimator.estimate, snapshot, context)
        except Exception as e:
            logger.warning("Estimator failed for %s, using fallback: %r", snapshot.id, e)
            return self._fallback(prior, str(e)), False

        self.analysis_cache.put(snapshot.id, price, estimate.model_dump())
        return estimate, False

    def fallback_result(self, snapshot: MarketSnapshot, *, now: float, reason: str) -> SynthesisResult:
        """Steps 1-3 with the estimator skipped: the flagged structural estimate."""
        prior = self.priors.base_rate(snapshot, now=now)
        estimate = self._fallback(prior, reason)
        return SynthesisResult(
            market_id=snapshot.id,
            probability=estimate.probability,
            confidence=estimate.confidence,
            prior=prior,
            market_price=self.live_price(snapshot),
            fallback=True,
            narrative=estimate.narrative,
        )

    def _fallback(self, prior: float, reason: str) -> Estimate:
        return Estimate(
            probability=clamp_probability(prior),
            confidence=self.settings.fallback_confidence,
            narrative=f"Structural fallback estimate ({reason})",
            fallback=True,
        )

    # ── Step 4 ───────────────────────────────────────────────────────

    def group_for(self, snapshot: MarketSnapshot) -> Optional[str]:
        if snapshot.exclusive_group:
            return snapshot.exclusive_group
        question = snapshot.question.lower()
        for name, keywords in self.settings.exclusive_groups:
            if any(k in question for k in keywords):
                return name
        return None

    def normalize_exclusive_groups(
        self,
        results: Sequence[SynthesisResult],
        snapshots: Iterable[MarketSnapshot],
    ) -> list[SynthesisResult]:
        """
        Rescale each exclusive group (2+ members) to sum to 1 and force directions.

        Only the members present in ``results`` are rescaled.  When the
        selector kept part of a neg-risk group, the mass of the unselected
        outcomes is spread over the kept ones, so their probabilities read
        as "given one of these resolves YES".
        """
        groups: dict[str, list[int]] = {}
        by_id = {s.id: s for s in snapshots}
        for idx, result in enumerate(results):
            snap = by_id.get(result.market_id)
            name = self.group_for(snap) if snap is not None else None
            if name:
                groups.setdefault(name, []).append(idx)

        out = list(results)
        for name, members in groups.items():
            if len(members) < 2:
                continue
            total = sum(out[i].probability for i in members)
            if total <= 0:
                logger.warning("Exclusive group %s has non-positive sum, left as-is", name)
                continue
            top = max(members, key=lambda i: (out[i].probability, -i))
            for i in members:
                out[i] = replace(
                    out[i],
                    probability=out[i].probability / total,
                    group=name,
                    forced_direction=Direction.BUY_YES if i == top else Direction.BUY_NO,
                )
            logger.debug("Normalized exclusive group %s (%d members, raw sum %.3f)", name, len(members), total)
        return out

    # ── Steps 5-6 ────────────────────────────────────────────────────

    def time_decay_penalty(self, snapshot: MarketSnapshot, *, now: float) -> float:
        end = snapshot.end_ts
        if end is None or end <= now:
            return 0.0
        start = snapshot.start_ts
        total = end - start if start is not None and end > start else self.settings.default_lifetime_days * DAY_SECONDS
        progress = 1 - min(1.0, (end - now) / total)
        penalty = min(self.settings.time_decay_max, progress * self.settings.time_decay_max)
        if max(snapshot.yes_price, snapshot.no_price) > self.settings.near_certain_price:
            penalty = min(penalty, self.settings.time_decay_near_certain_cap)
        return max(0.0, penalty)

    def finalize(self, result: SynthesisResult, snapshot: MarketSnapshot, *, now: float) -> SynthesisResult:
        penalty = 0.0
        probability = result.probability
        # Group members already partition probability mass; decaying them would break the sum.
        if result.group is None:
            penalty = self.time_decay_penalty(snapshot, now=now)
            probability -= penalty
        return replace(
            result,
            probability=clamp_probability(probability, result.market_id),
            time_penalty=penalty,
        )

    # ── Whole candidate set ──────────────────────────────────────────

    async def synthesize_all(
        self, snapshots: Sequence[MarketSnapshot], *, now: float
    ) -> list[SynthesisResult]:
        """
        Run all steps for every candidate.

        Markets still waiting on the estimator after
        ``estimate_deadline_seconds`` are cancelled and get the structural
        fallback, so one hung call cannot stall the cycle.  Any other failure
        is logged and the market dropped.
        """
        tasks = [asyncio.ensure_future(self.synthesize(s, now=now)) for s in snapshots]
        late: set[asyncio.Future] = set()
        if tasks:
            try:
                _, late = await asyncio.wait(tasks, timeout=self.settings.estimate_deadline_seconds)
            finally:
                for task in tasks:
                    if not task.done():
                        task.cancel()
            await asyncio.gather(*late, return_exceptions=True)

        kept: list[SynthesisResult] = []
        kept_snaps: list[MarketSnapshot] = []
        for snap, task in zip(snapshots, tasks):
            if task in late or task.cancelled():
                logger.warning(
                    "Estimate for %s missed the %.0fs deadline, using fallback",
                    snap.id, self.settings.estimate_deadline_seconds,
                )
                result = self.fallback_result(snap, now=now, reason="estimate deadline exceeded")
            elif task.exception() is not None:
                logger.warning("Synthesis failed for %s: %r", snap.id, task.exception())
                continue
            else:
                result = task.result()
            kept.append(result)
            kept_snaps.append(snap)

        normalized = self.normalize_exclusive_groups(kept, kept_snaps)
        return [self.finalize(r, s, now=now) for r, s in zip(normalized, kept_snaps)]
