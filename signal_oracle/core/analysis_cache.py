"""Reuse gate for expensive probability estimates."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, Field

from .settings import AnalysisCacheSettings

logger = logging.getLogger(__name__)


class AnalysisCacheEntry(BaseModel):
    market_id: str
    price: float  # YES price when the estimate was made
    timestamp: float  # epoch seconds
    result: dict[str, Any] = Field(default_factory=dict)


def price_delta_percent(previous: float, current: float) -> Optional[float]:
    """
    Absolute relative move in percent.  ``None`` when it is undefined
    (previous price 0 and current price non-zero).
    """
    if previous == 0:
        return 0.0 if current == 0 else None
    return abs((current - previous) / previous) * 100


class AnalysisCache:
    """market id → last estimate; last writer wins."""

    def __init__(
        self,
        settings: Optional[AnalysisCacheSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or AnalysisCacheSettings()
        self._clock = clock
        self._entries: dict[str, AnalysisCacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def is_valid(self, entry: AnalysisCacheEntry, current_price: float) -> bool:
        age = self._clock() - entry.timestamp
        if age > self.settings.ttl_seconds:
            return False
        delta = price_delta_percent(entry.price, current_price)
        return delta is not None and delta <= self.settings.price_delta_threshold_pct

    def get(self, market_id: str, current_price: float) -> Optional[AnalysisCacheEntry]:
        """Cached entry if still reusable at ``current_price``, else ``None``."""
        entry = self._entries.get(market_id)
        if entry is None:
            return None
        if not self.is_valid(entry, current_price):
            logger.debug("Analysis cache miss for %s (price %.4f → %.4f)", market_id, entry.price, current_price)
            return None
        return entry

    def put(self, market_id: str, price: float, result: Mapping[str, Any]) -> AnalysisCacheEntry:
        entry = AnalysisCacheEntry(
            market_id=market_id, price=price, timestamp=self._clock(), result=dict(result)
        )
        self._entries[market_id] = entry
        return entry

    def snapshot(self) -> dict[str, dict]:
        return {mid: e.model_dump() for mid, e in self._entries.items()}

    def load(self, data: Mapping[str, dict]) -> None:
        for market_id, raw in (data or {}).items():
            self._entries[market_id] = AnalysisCacheEntry.model_validate(raw)
