"""
Signal records emitted by the pipeline.

Signals are immutable pydantic models; every later stage (dampening,
rejection, global cap) produces a new record with ``model_copy(update=...)``
instead of mutating the one it was given.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional
from urllib.parse import quote_plus

from pydantic import BaseModel, ConfigDict, Field

from .settings import MAX_POSITION_SIZE

POLYMARKET_BASE_URL = "https://polymarket.com"
UNCERTAINTY_MARGIN = 0.15


class Direction(str, Enum):
    BUY_YES = "BUY_YES"
    BUY_NO = "BUY_NO"
    NO_TRADE = "NO_TRADE"

    @property
    def opposite(self) -> "Direction":
        if self is Direction.BUY_YES:
            return Direction.BUY_NO
        if self is Direction.BUY_NO:
            return Direction.BUY_YES
        return Direction.NO_TRADE


class TradeTier(str, Enum):
    NO_TRADE = "NO_TRADE"
    PROBE = "PROBE"
    SMALL_TRADE = "SMALL_TRADE"
    MEDIUM_TRADE = "MEDIUM_TRADE"
    STRONG_TRADE = "STRONG_TRADE"


class Bucket(str, Enum):
    EXECUTABLE = "executable"
    OUTLOOK = "outlook"
    REJECTED = "rejected"


def polymarket_link(slug: str, question: str = "") -> str:
    if slug:
        return f"{POLYMARKET_BASE_URL}/event/{slug}"
    if question:
        return f"{POLYMARKET_BASE_URL}/search?q={quote_plus(question)}"
    return POLYMARKET_BASE_URL


def uncertainty_band(confidence: float) -> tuple[float, float]:
    """Band around a 0-100 confidence, returned as fractions in [0.01, 0.99]."""
    c = min(max(confidence / 100, 0.0), 1.0)
    margin = (1 - c) * UNCERTAINTY_MARGIN
    return max(0.01, c - margin), min(0.99, c + margin)


class Signal(BaseModel):
    """One sized trade signal for one market in one cycle."""

    model_config = ConfigDict(frozen=True)

    market_id: str
    question: str = ""
    category: str = ""
    cluster: str = ""
    direction: Direction
    probability: float = Field(gt=0.0, lt=1.0)
    market_price: float
    raw_edge: float  # signed, P_final - market price
    net_edge: float  # after execution cost and horizon discount
    confidence: float = Field(ge=0.0, le=100.0)
    exposure: float = Field(ge=0.0, le=MAX_POSITION_SIZE)
    tier: TradeTier = TradeTier.NO_TRADE
    timestamp: float
    liquidity: float = 0.0
    spread: float = 0.0
    days_to_resolution: Optional[float] = None
    fallback: bool = False
    forced: bool = False  # direction set by exclusive-group normalization
    uncertainty: tuple[float, float] = (0.01, 0.99)
    link: str = ""
    narrative: str = ""
    bucket: Optional[Bucket] = None
    reason: str = ""

    @property
    def raw_edge_percent(self) -> float:
        return self.raw_edge * 100

    @property
    def net_edge_percent(self) -> float:
        return self.net_edge * 100


@dataclass
class SignalBuckets:
    executable: list[Signal] = field(default_factory=list)
    outlook: list[Signal] = field(default_factory=list)
    rejected: list[Signal] = field(default_factory=list)

    def all(self) -> list[Signal]:
        return [*self.executable, *self.outlook, *self.rejected]

    @property
    def executable_exposure(self) -> float:
        return sum(s.exposure for s in self.executable)

    def __len__(self) -> int:
        return len(self.executable) + len(self.outlook) + len(self.rejected)


class CycleRecord(BaseModel):
    """Summary counts for one completed cycle."""
    cycle: int
    timestamp: float
    fetched: int = 0
    eligible: int = 0
    candidates: int = 0
    signals: int = 0
    executable: int = 0
    outlook: int = 0
    rejected: int = 0
    dropped: int = 0
    executable_exposure: float = 0.0
    estimator_calls: int = 0
    cache_hits: int = 0
    duration_seconds: float = 0.0
    no_signal: bool = False
