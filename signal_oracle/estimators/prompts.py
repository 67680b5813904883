"""
Prompt template for the LLM estimator.

Implements the PromptBuilder protocol expected by ``estimators.llm.LLMEstimator``.
"""

from __future__ import annotations

from ..polymarket.clob import best_bid_ask
from ..polymarket.models import MarketSnapshot
from .base import EstimateContext


class MarketPromptBuilder:
    """Builds a forecasting prompt for a binary prediction market."""

    def build_estimate_prompt(self, snapshot: MarketSnapshot, context: EstimateContext) -> str:
        price = context.live_price if context.live_price is not None else snapshot.yes_price

        book_str = "  (order book unavailable)"
        if context.order_book:
            bid, ask = best_bid_ask(context.order_book)
            if bid is not None and ask is not None:
                book_str = f"  Best bid: {bid * 100:.1f}c | Best ask: {ask * 100:.1f}c"

        headlines_str = "\n".join(f"  - {h}" for h in context.headlines[:8]) or "  (none)"
        end_str = f"{snapshot.end_date:%Y-%m-%d}" if snapshot.end_date else "unknown"

        prompt = f"""You are a calibrated forecaster estimating the outcome of a Polymarket market.

MARKET DATA:
- Question: {snapshot.question}
- Category: {snapshot.category or "unclassified"}
- Resolves: {end_str}
- YES price: {price * 100:.1f}c (implied prob: {price * 100:.1f}%)
- Volume: ${snapshot.volume:,.0f}
- Liquidity: ${snapshot.liquidity:,.0f}
- Order book:
{book_str}
- Base-rate prior: {context.prior * 100:.1f}%

RECENT HEADLINES:
{headlines_str}

YOUR TASK:
Estimate the probability that this market resolves YES.

Consider:
1. The base rate for this kind of question
2. Evidence in the headlines (ignore anything you cannot attribute)
3. Time remaining until resolution
4. Do not simply repeat the market price

Return your estimate in this EXACT format:
PROBABILITY: [0-1, e.g., 0.62]
CONFIDENCE: [0-100, how sure you are of the estimate]
SOURCES: [comma-separated URLs, or N/A]
REASONING: [2-3 sentences explaining your estimate]

Now estimate the market above:"""

        return prompt
