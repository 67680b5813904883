"""
Probability estimator interface.

Domain-agnostic: estimators receive a MarketSnapshot plus supporting
context and return an Estimate.  The pipeline treats them as black boxes
that may fail or time out.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from pydantic import BaseModel, Field

from ..polymarket.models import MarketSnapshot


# ── Estimate ─────────────────────────────────────────────────────────

class Estimate(BaseModel):
    """Outcome probability for a market's YES side."""
    probability: float = Field(gt=0.0, lt=1.0)
    confidence: float = Field(ge=0.0, le=100.0)  # 0-100
    narrative: str = ""
    citations: list[str] = Field(default_factory=list)
    fallback: bool = False


@dataclass
class EstimateContext:
    """Supporting context handed to the estimator alongside the snapshot."""
    prior: float
    live_price: Optional[float] = None
    order_book: Optional[dict[str, Any]] = None
    headlines: list[str] = field(default_factory=list)


# ── Prompt builder protocol ──────────────────────────────────────────

class PromptBuilder(Protocol):
    """Builds the LLM prompt for one market."""

    def build_estimate_prompt(self, snapshot: MarketSnapshot, context: EstimateContext) -> str:
        ...


# ── Base estimator ───────────────────────────────────────────────────

class ProbabilityEstimator(ABC):
    """Base class that all probability estimators must implement."""

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}

    @property
    @abstractmethod
    def name(self) -> str:
        """Return estimator name for logging."""
        ...

    @abstractmethod
    async def estimate(self, snapshot: MarketSnapshot, context: EstimateContext) -> Estimate:
        """
        Estimate the probability that the market resolves YES.

        Raises:
            EstimatorFailure: the response could not be turned into an Estimate.
            httpx.HTTPError / asyncio.TimeoutError: transport failures.
        """
        ...
