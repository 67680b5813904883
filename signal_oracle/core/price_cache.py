"""
Near-real-time order-book price cache.

A background task polls the CLOB for every watched market on a fixed
interval.  Each tick is best-effort: a failing book is logged and its
entry left stale, and the next tick is the retry.  Readers get the cached
mid only while it is fresh and otherwise fall back to a slower source
(usually the Gamma price on the snapshot).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Mapping, Optional

from pydantic import BaseModel, Field

from ..polymarket import clob
from .settings import PriceCacheSettings

logger = logging.getLogger(__name__)

BookFetcher = Callable[[str], Awaitable[dict]]


class CachedQuote(BaseModel):
    market_id: str
    bid: float
    ask: float
    mid: float
    spread: float
    depth: float
    timestamp: float  # epoch seconds
    book: dict[str, Any] = Field(default_factory=dict)


def quote_from_book(market_id: str, book: dict, now: float) -> Optional[CachedQuote]:
    """Build a quote from a raw book; ``None`` when either side is empty."""
    bid, ask = clob.best_bid_ask(book)
    if not bid or not ask:
        return None
    return CachedQuote(
        market_id=market_id,
        bid=bid,
        ask=ask,
        mid=(bid + ask) / 2,
        spread=ask - bid,
        depth=clob.book_depth(book),
        timestamp=now,
        book=book,
    )


class PriceCache:
    """Order-book cache keyed by market id (token ids are only used to fetch)."""

    def __init__(
        self,
        settings: Optional[PriceCacheSettings] = None,
        fetch_book: Optional[BookFetcher] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings or PriceCacheSettings()
        self._fetch_book = fetch_book or clob.get_orderbook
        self._clock = clock
        self._quotes: dict[str, CachedQuote] = {}
        self._watched: dict[str, str] = {}
        self._task: Optional[asyncio.Task] = None

    # ── Polling ──────────────────────────────────────────────────────

    def watch(self, ids: Mapping[str, str]) -> None:
        """Replace the watch list (market id → token id)."""
        self._watched = {mid: tid for mid, tid in ids.items() if tid}

    @property
    def watched(self) -> dict[str, str]:
        return dict(self._watched)

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    def start_polling(self, ids: Mapping[str, str]) -> None:
        """Start the poll loop, or just swap the watch list if already running."""
        self.watch(ids)
        if self.is_polling:
            return
        self._task = asyncio.create_task(self._poll_loop(), name="price-cache-poll")
        logger.info(
            "Price cache polling %d markets every %.1fs",
            len(self._watched), self.settings.poll_interval_seconds,
        )

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Price cache polling stopped")

    async def _poll_loop(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.settings.poll_interval_seconds)

    async def poll_once(self) -> int:
        """Fetch every watched book concurrently; returns how many quotes were refreshed."""
        watched = list(self._watched.items())
        if not watched:
            return 0
        results = await asyncio.gather(
            *(self._fetch_one(token_id) for _, token_id in watched),
            return_exceptions=True,
        )
        refreshed = 0
        now = self._clock()
        for (market_id, _), result in zip(watched, results):
            if isinstance(result, BaseException):
                logger.warning("Order book fetch failed for %s: %r", market_id, result)
                continue
            quote = quote_from_book(market_id, result or {}, now)
            if quote is None:
                logger.debug("Empty book for %s, keeping previous quote", market_id)
                continue
            self._quotes[market_id] = quote
            refreshed += 1
        return refreshed

    async def _fetch_one(self, token_id: str) -> dict:
        return await asyncio.wait_for(
            self._fetch_book(token_id), timeout=self.settings.fetch_timeout_seconds
        )

    # ── Reads ────────────────────────────────────────────────────────

    def is_fresh(self, market_id: str) -> bool:
        quote = self._quotes.get(market_id)
        if quote is None:
            return False
        age_ms = (self._clock() - quote.timestamp) * 1000
        return age_ms < self.settings.freshness_ms

    def get_quote(self, market_id: str) -> Optional[CachedQuote]:
        """Fresh quote or ``None``."""
        return self._quotes[market_id] if self.is_fresh(market_id) else None

    def get_price(self, market_id: str, fallback: Optional[float] = None) -> Optional[float]:
        quote = self.get_quote(market_id)
        if quote is not None:
            return quote.mid
        if market_id in self._quotes:
            logger.debug("Stale quote for %s, using fallback %s", market_id, fallback)
        return fallback

    def get_order_book(self, market_id: str) -> Optional[dict]:
        """Raw cached book regardless of age, or ``None``."""
        quote = self._quotes.get(market_id)
        return quote.book if quote is not None else None

    # ── Persistence ──────────────────────────────────────────────────

    def snapshot(self) -> dict[str, dict]:
        return {mid: q.model_dump() for mid, q in self._quotes.items()}

    def load(self, data: Mapping[str, dict]) -> None:
        for market_id, raw in (data or {}).items():
            self._quotes[market_id] = CachedQuote.model_validate(raw)
