"""
Pydantic models for Polymarket data.

Shared type definitions used by the market provider, the caches and the
signal pipeline.  Only models that are actually consumed by the codebase
live here.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class PricePoint(BaseModel):
    """One observation of a market's YES price and cumulative volume."""
    timestamp: float  # epoch seconds
    price: float
    volume: float = 0.0


class MarketSnapshot(BaseModel):
    """
    Point-in-time snapshot of a binary market.

    Built every cycle from the market data provider and merged with the
    previous cycle's retained history.  ``yes_price + no_price`` should be
    close to 1; deviations are flagged by the engine, never corrected.
    """
    id: str
    question: str
    slug: str = ""
    category: str = ""
    yes_price: float
    no_price: float
    liquidity: float = 0.0
    volume: float = 0.0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    token_id: Optional[str] = None
    exclusive_group: Optional[str] = None
    price_history: list[PricePoint] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def start_ts(self) -> Optional[float]:
        return self.start_date.timestamp() if self.start_date else None

    @property
    def end_ts(self) -> Optional[float]:
        return self.end_date.timestamp() if self.end_date else None

    @property
    def price_sum_deviation(self) -> float:
        return abs(self.yes_price + self.no_price - 1.0)
