"""
Gamma market data provider.

Uses the Polymarket Gamma API (via ``polymarket.gamma``) to page through
the active market universe and convert each binary market into a
MarketSnapshot for the engine.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from ..core.errors import DataQualityError
from ..polymarket import gamma
from ..polymarket.models import MarketSnapshot, PricePoint
from ..polymarket.utils import parse_timestamp, safe_float, safe_json

logger = logging.getLogger(__name__)


def _first_event(raw: dict) -> dict:
    events = raw.get("events") or []
    return events[0] if events and isinstance(events[0], dict) else {}


def to_snapshot(raw: dict[str, Any], *, now: Optional[float] = None) -> MarketSnapshot:
    """
    Convert one Gamma market row into a MarketSnapshot.

    Raises:
        DataQualityError: not a binary market, or prices missing.
    """
    market_id = str(raw.get("id") or raw.get("conditionId") or "")
    if not market_id:
        raise DataQualityError("?", "market row without id")

    prices = safe_json(raw.get("outcomePrices", "[]"))
    if len(prices) != 2:
        raise DataQualityError(market_id, f"expected 2 outcome prices, got {len(prices)}")
    yes_price = safe_float(prices[0], -1.0)
    no_price = safe_float(prices[1], -1.0)

    tokens = safe_json(raw.get("clobTokenIds", "[]"))
    event = _first_event(raw)
    group = None
    if raw.get("negRisk") and raw.get("negRiskMarketID"):
        group = f"negrisk:{raw['negRiskMarketID']}"

    liquidity = safe_float(raw.get("liquidityNum"), safe_float(raw.get("liquidity")))
    volume = safe_float(raw.get("volumeNum"), safe_float(raw.get("volume")))
    ts = now if now is not None else time.time()

    return MarketSnapshot(
        id=market_id,
        question=raw.get("question") or "",
        slug=event.get("slug") or raw.get("slug") or "",
        category=(raw.get("category") or "").upper(),
        yes_price=yes_price,
        no_price=no_price,
        liquidity=liquidity,
        volume=volume,
        start_date=parse_timestamp(raw.get("startDate") or raw.get("createdAt")),
        end_date=parse_timestamp(raw.get("endDate")),
        token_id=str(tokens[0]) if tokens else None,
        exclusive_group=group,
        price_history=[PricePoint(timestamp=ts, price=yes_price, volume=volume)],
        metadata={"event_id": event.get("id"), "condition_id": raw.get("conditionId")},
    )


class GammaMarketProvider:
    """MarketDataProvider backed by the Gamma ``/markets`` endpoint."""

    def __init__(self, max_markets: int = 2000):
        self.max_markets = max_markets

    async def fetch_markets(self) -> list[MarketSnapshot]:
        rows = await gamma.fetch_all_markets(max_markets=self.max_markets)
        now = time.time()
        snapshots: list[MarketSnapshot] = []
        skipped = 0
        for row in rows:
            try:
                snapshots.append(to_snapshot(row, now=now))
            except DataQualityError as e:
                skipped += 1
                logger.debug("Skipping market: %s", e)
        logger.info("Provider returned %d binary markets (%d skipped)", len(snapshots), skipped)
        return snapshots

    async def close(self) -> None:
        await gamma.close()
