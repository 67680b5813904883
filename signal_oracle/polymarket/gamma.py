"""
Gamma API client for Polymarket market discovery.

Domain-agnostic: no category or pricing knowledge here.

Endpoints used (all public, no auth):
  GET /markets?active=true&closed=false&...   -- paginated market universe
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

GAMMA_BASE = "https://gamma-api.polymarket.com"
TIMEOUT = 30.0
PAGE_SIZE = 500


_client: httpx.AsyncClient | None = None

async def _get_client() -> httpx.AsyncClient:
    """Get or create shared HTTP client."""
    global _client
    if _client is None:
        _client = httpx.AsyncClient(timeout=TIMEOUT)
    return _client

async def _get(path: str, params: dict[str, Any] | None = None) -> Any:
    """Issue a GET to the Gamma API and return parsed JSON."""
    client = await _get_client()
    url = f"{GAMMA_BASE}{path}"
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


# ── Markets ──────────────────────────────────────────────────────────

async def list_markets(
    *,
    active: bool = True,
    closed: bool = False,
    limit: int = PAGE_SIZE,
    offset: int = 0,
    order: str = "volumeNum",
    ascending: bool = False,
) -> list[dict]:
    """List one page of markets from the Gamma API."""
    params: dict[str, Any] = {
        "active": str(active).lower(),
        "closed": str(closed).lower(),
        "limit": limit,
        "offset": offset,
        "order": order,
        "ascending": str(ascending).lower(),
    }
    result = await _get("/markets", params=params)
    return result if isinstance(result, list) else []


async def fetch_all_markets(max_markets: int = 2000) -> list[dict]:
    """
    Page through the active market universe until exhausted or
    ``max_markets`` rows have been collected.
    """
    markets: list[dict] = []
    offset = 0
    while len(markets) < max_markets:
        page = await list_markets(limit=min(PAGE_SIZE, max_markets - len(markets)), offset=offset)
        if not page:
            break
        markets.extend(page)
        if len(page) < PAGE_SIZE:
            break
        offset += len(page)
    logger.info("Fetched %d markets from Gamma", len(markets))
    return markets
