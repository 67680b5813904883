"""
Typed settings for every pipeline stage.

``load_config`` returns the raw YAML dict; ``EngineSettings.from_config``
turns it into frozen dataclasses.  Every field has a working default, so
an empty config produces a usable engine.  Unknown keys are ignored.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from typing import Any, Mapping, TypeVar

PROB_FLOOR = 0.0001
MAX_POSITION_SIZE = 0.05
CYCLE_SLACK_SECONDS = 30.0

T = TypeVar("T")


def _build(cls: type[T], raw: Mapping[str, Any] | None) -> T:
    """Instantiate a settings dataclass from a mapping, keeping only known keys."""
    if not raw:
        return cls()
    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in raw.items():
        if key not in known:
            continue
        if isinstance(value, list):
            value = tuple(tuple(v) if isinstance(v, list) else v for v in value)
        kwargs[key] = value
    return cls(**kwargs)


@dataclass(frozen=True)
class PriceCacheSettings:
    poll_interval_seconds: float = 4.0
    freshness_ms: float = 5000.0
    fetch_timeout_seconds: float = 5.0


@dataclass(frozen=True)
class AnalysisCacheSettings:
    ttl_seconds: float = 3600.0
    price_delta_threshold_pct: float = 2.0


@dataclass(frozen=True)
class SelectorSettings:
    top_k: int = 30
    static_cap: int = 50
    drift_cap: int = 20
    velocity_cap: int = 20
    delta_cap: int = 15
    new_listing_cap: int = 15
    discovery_cap: int = 15
    trend_cap: int = 15
    drift_threshold: float = 0.03
    velocity_multiple: float = 3.0
    min_baseline_velocity: float = 0.05
    delta_window_seconds: float = 300.0
    delta_high_liquidity: float = 100_000.0
    delta_threshold_high_liquidity: float = 0.02
    delta_threshold_low_liquidity: float = 0.10
    new_listing_max_age_hours: float = 4.0
    trend_threshold: float = 0.01
    trend_points: int = 5
    min_liquidity: float = 10_000.0
    min_days_to_resolution: float = 7.0
    max_days_to_resolution: float = 365.0
    max_category_share: float = 0.5
    priority_categories: tuple[str, ...] = ("POLITICS", "MACRO", "CRYPTO")
    min_divergence: tuple[tuple[str, float], ...] = (("CELEBRITY", 0.15), ("POLITICS", 0.08))

    def divergence_gate(self, category: str) -> float:
        return dict(self.min_divergence).get(category, 0.0)


@dataclass(frozen=True)
class SynthesizerSettings:
    default_lifetime_days: float = 180.0
    adaptive_liquidity_scale: float = 75_000.0
    ema_alpha: float = 0.5
    market_blend_min: float = 0.1
    market_blend_max: float = 0.5
    damping_base: float = 0.35
    damping_slope: float = 0.25
    hallucination_threshold: float = 0.40
    hallucination_damping: float = 0.5
    time_decay_max: float = 0.15
    time_decay_near_certain_cap: float = 0.05
    near_certain_price: float = 0.90
    fallback_confidence: float = 30.0
    estimate_deadline_seconds: float = 45.0
    exclusive_groups: tuple[tuple[str, tuple[str, ...]], ...] = ()


@dataclass(frozen=True)
class SizingSettings:
    default_spread: float = 0.02
    slippage: float = 0.0005
    min_net_edge: float = 0.015
    kelly_multiplier: float = 2.0
    kelly_edge_buffer: float = 0.0
    max_position_size: float = MAX_POSITION_SIZE
    # (liquidity upper bound, multiplier); last entry applies above all bounds
    liquidity_tiers: tuple[tuple[float, float], ...] = (
        (1_000.0, 0.0),
        (5_000.0, 0.9),
        (20_000.0, 1.0),
        (100_000.0, 1.1),
    )
    top_liquidity_multiplier: float = 1.2
    # (min confidence, min net edge, exposure floor), checked in order
    confidence_floors: tuple[tuple[float, float, float], ...] = (
        (90.0, 0.005, 0.02),
        (80.0, 0.01, 0.01),
        (70.0, 0.02, 0.005),
    )
    # (min days, discount); first bound not yet reached wins
    horizon_discounts: tuple[tuple[float, float], ...] = (
        (7.0, 1.0),
        (30.0, 0.95),
        (90.0, 0.90),
        (180.0, 0.85),
    )
    horizon_discount_max: float = 0.80
    strong_exposure: float = 0.04
    medium_exposure: float = 0.02
    small_exposure: float = 0.005
    probe_exposure: float = 0.0005


@dataclass(frozen=True)
class DampenerSettings:
    decay_steps: tuple[float, ...] = (1.0, 0.9, 0.7)
    decay_floor: float = 0.5


@dataclass(frozen=True)
class RejectionSettings:
    tail_low: float = 0.03
    tail_high: float = 0.97
    tail_min_confidence: float = 90.0
    min_liquidity: float = 10_000.0
    ultra_high_odds: float = 0.95
    ultra_high_odds_min_edge: float = 0.03
    min_net_edge: float = 0.05
    min_exposure: float = 0.0005
    min_confidence: float = 50.0
    exposure_ceiling: float = 1.0


@dataclass(frozen=True)
class ResilienceSettings:
    market_data_timeout: float = 30.0
    market_data_retries: int = 2
    estimator_timeout: float = 30.0
    estimator_retries: int = 1
    failure_threshold: int = 5
    cooldown_seconds: float = 60.0


@dataclass(frozen=True)
class EngineSettings:
    price_cache: PriceCacheSettings = field(default_factory=PriceCacheSettings)
    analysis_cache: AnalysisCacheSettings = field(default_factory=AnalysisCacheSettings)
    selector: SelectorSettings = field(default_factory=SelectorSettings)
    synthesizer: SynthesizerSettings = field(default_factory=SynthesizerSettings)
    sizing: SizingSettings = field(default_factory=SizingSettings)
    dampener: DampenerSettings = field(default_factory=DampenerSettings)
    rejection: RejectionSettings = field(default_factory=RejectionSettings)
    resilience: ResilienceSettings = field(default_factory=ResilienceSettings)
    history_window_seconds: float = 3600.0
    cycle_history_cap: int = 168
    no_signal_threshold: int = 5
    max_markets: int = 2000

    @property
    def cycle_budget_seconds(self) -> float:
        """Default scheduler timeout: a fully retried market fetch plus the estimate deadline, with slack."""
        r = self.resilience
        fetch = r.market_data_timeout * (r.market_data_retries + 1)
        return fetch + self.synthesizer.estimate_deadline_seconds + CYCLE_SLACK_SECONDS

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> "EngineSettings":
        """Build settings from the ``engine`` section of the loaded config."""
        raw = dict((config or {}).get("engine") or {})

        synth_raw = dict(raw.get("synthesizer") or {})
        groups = synth_raw.pop("exclusive_groups", None) or {}
        synthesizer = _build(SynthesizerSettings, synth_raw)
        if groups:
            synthesizer = replace(synthesizer, exclusive_groups=tuple(
                (name, tuple(k.lower() for k in keywords)) for name, keywords in groups.items()
            ))

        selector_raw = dict(raw.get("selector") or {})
        gates = selector_raw.pop("min_divergence", None)
        selector = _build(SelectorSettings, selector_raw)
        if isinstance(gates, Mapping):
            selector = replace(selector, min_divergence=tuple(
                (k.upper(), float(v)) for k, v in gates.items()
            ))

        return cls(
            price_cache=_build(PriceCacheSettings, raw.get("price_cache")),
            analysis_cache=_build(AnalysisCacheSettings, raw.get("analysis_cache")),
            selector=selector,
            synthesizer=synthesizer,
            sizing=_build(SizingSettings, raw.get("sizing")),
            dampener=_build(DampenerSettings, raw.get("dampener")),
            rejection=_build(RejectionSettings, raw.get("rejection")),
            resilience=_build(ResilienceSettings, raw.get("resilience")),
            history_window_seconds=float(raw.get("history_window_seconds", 3600.0)),
            cycle_history_cap=int(raw.get("cycle_history_cap", 168)),
            no_signal_threshold=int(raw.get("no_signal_threshold", 5)),
            max_markets=int(raw.get("max_markets", 2000)),
        )
