"""
Final veto rules, bucketing and the per-cycle global exposure cap.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable, Optional, Sequence

from .settings import RejectionSettings
from .signals import Bucket, Direction, Signal, SignalBuckets, TradeTier

logger = logging.getLogger(__name__)


class RejectionPipeline:
    """
    Ordered veto checks (first match wins), then executable/outlook
    classification, then the global cap over executable exposure.
    """

    def __init__(
        self,
        settings: Optional[RejectionSettings] = None,
        tier_for: Optional[Callable[[float], TradeTier]] = None,
    ):
        self.settings = settings or RejectionSettings()
        self._tier_for = tier_for

    def veto_reason(self, signal: Signal) -> Optional[str]:
        s = self.settings
        price = signal.market_price
        if (price < s.tail_low or price > s.tail_high) and signal.confidence < s.tail_min_confidence:
            return "tail market skipped"
        if signal.liquidity < s.min_liquidity:
            return f"liquidity ${signal.liquidity:,.0f} below ${s.min_liquidity:,.0f}"
        if price > s.ultra_high_odds and abs(signal.raw_edge) < s.ultra_high_odds_min_edge:
            return "ultra-high odds with small edge"
        if signal.net_edge < s.min_net_edge:
            return f"net edge {signal.net_edge * 100:.2f}% below {s.min_net_edge * 100:.1f}%"
        return None

    def classify(self, signal: Signal) -> Signal:
        reason = self.veto_reason(signal)
        if reason is not None:
            return signal.model_copy(update={"bucket": Bucket.REJECTED, "reason": reason})
        s = self.settings
        if (
            signal.direction is not Direction.NO_TRADE
            and signal.exposure >= s.min_exposure
            and signal.confidence >= s.min_confidence
        ):
            return signal.model_copy(update={"bucket": Bucket.EXECUTABLE, "reason": ""})
        return signal.model_copy(update={"bucket": Bucket.OUTLOOK, "reason": "below execution thresholds"})

    def apply_global_cap(self, executable: Sequence[Signal]) -> list[Signal]:
        """Scale every executable exposure by ``ceiling / total`` when the total exceeds the ceiling."""
        ceiling = self.settings.exposure_ceiling
        total = sum(s.exposure for s in executable)
        if total <= ceiling or total <= 0:
            return list(executable)
        scale = ceiling / total
        logger.info("Executable exposure %.4f exceeds ceiling %.2f, scaling by %.4f", total, ceiling, scale)
        out = []
        for signal in executable:
            exposure = signal.exposure * scale
            update: dict = {"exposure": exposure}
            if self._tier_for is not None:
                update["tier"] = self._tier_for(exposure)
            out.append(signal.model_copy(update=update))
        return out

    def run(self, signals: Iterable[Signal]) -> SignalBuckets:
        buckets = SignalBuckets()
        for signal in signals:
            classified = self.classify(signal)
            if classified.bucket is Bucket.EXECUTABLE:
                buckets.executable.append(classified)
            elif classified.bucket is Bucket.OUTLOOK:
                buckets.outlook.append(classified)
            else:
                logger.debug("Rejected %s: %s", signal.market_id, classified.reason)
                buckets.rejected.append(classified)
        buckets.executable = self.apply_global_cap(buckets.executable)
        return buckets
