"""
Correlation-aware exposure dampening within one cycle.

Signals are ranked by descending net edge (ties keep input order).  The
nth signal seen in a cluster has its exposure and edges multiplied by the
nth decay step, or by the floor once the steps run out, so the strongest
signal in each cluster keeps full weight.
"""

from __future__ import annotations

from typing import Callable, Optional, Sequence

from .settings import DampenerSettings
from .signals import Signal, TradeTier


class CorrelationDampener:

    def __init__(
        self,
        settings: Optional[DampenerSettings] = None,
        tier_for: Optional[Callable[[float], TradeTier]] = None,
    ):
        self.settings = settings or DampenerSettings()
        self._tier_for = tier_for

    def factor(self, rank: int) -> float:
        """Multiplier for the ``rank``-th (1-based) member of a cluster."""
        steps = self.settings.decay_steps
        if 1 <= rank <= len(steps):
            return max(steps[rank - 1], self.settings.decay_floor)
        return self.settings.decay_floor

    @staticmethod
    def rank_order(signals: Sequence[Signal]) -> list[Signal]:
        order = sorted(range(len(signals)), key=lambda i: (-signals[i].net_edge, i))
        return [signals[i] for i in order]

    def apply(self, signals: Sequence[Signal]) -> list[Signal]:
        """Return new, dampened signals in rank order; the input is left untouched."""
        seen: dict[str, int] = {}
        out: list[Signal] = []
        for signal in self.rank_order(signals):
            rank = seen.get(signal.cluster, 0) + 1
            seen[signal.cluster] = rank
            factor = self.factor(rank)
            if factor == 1.0:
                out.append(signal)
                continue
            exposure = signal.exposure * factor
            update = {
                "exposure": exposure,
                "raw_edge": signal.raw_edge * factor,
                "net_edge": signal.net_edge * factor,
            }
            if self._tier_for is not None:
                update["tier"] = self._tier_for(exposure)
            out.append(signal.model_copy(update=update))
        return out
