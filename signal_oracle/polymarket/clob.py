"""
CLOB API client for Polymarket order-book data.

Domain-agnostic: works with any Polymarket token ID.

Endpoints used (all public, no auth):
  GET /book?token_id=X      -- full orderbook (bids + asks)
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)

CLOB_BASE = "https://clob.polymarket.com"
TIMEOUT = 5.0
DEPTH_LEVELS = 5


_client: httpx.AsyncClient | None = None

async def _get_client() -> httpx.AsyncClient:
    """Get or create shared HTTP client."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=TIMEOUT)
    return _client

async def _get(path: str, params: dict[str, Any] | None = None) -> Any:
    """Issue a GET to the CLOB API and return parsed JSON."""
    client = await _get_client()
    url = f"{CLOB_BASE}{path}"
    logger.debug("GET %s params=%s", url, params)
    resp = await client.get(url, params=params)
    resp.raise_for_status()
    return resp.json()


async def close() -> None:
    """Close the shared client (used on shutdown)."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None


# ── Orderbook ────────────────────────────────────────────────────────

async def get_orderbook(token_id: str) -> dict:
    """
    Get full orderbook for a token (all bids and asks).

    Returns:
        {
            "market": "0x...",
            "asset_id": "TOKEN_ID",
            "bids": [{"price": "0.64", "size": "500"}, ...],
            "asks": [{"price": "0.66", "size": "300"}, ...]
        }
    """
    return await _get("/book", params={"token_id": token_id})


# ── Helpers ──────────────────────────────────────────────────────────

def best_bid_ask(book: dict) -> tuple[Optional[float], Optional[float]]:
    """
    Return (best_bid, best_ask) from a raw book.

    The CLOB does not guarantee level ordering, so take max bid / min ask.
    """
    bids = [float(b["price"]) for b in book.get("bids") or [] if b.get("price") is not None]
    asks = [float(a["price"]) for a in book.get("asks") or [] if a.get("price") is not None]
    best_bid = max(bids) if bids else None
    best_ask = min(asks) if asks else None
    return best_bid, best_ask


def book_depth(book: dict, levels: int = DEPTH_LEVELS) -> float:
    """Sum of resting size over the top ``levels`` of each side."""
    total = 0.0
    for side in ("bids", "asks"):
        for level in (book.get(side) or [])[:levels]:
            try:
                total += float(level.get("size", 0))
            except (TypeError, ValueError):
                continue
    return total
