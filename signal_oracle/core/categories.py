"""
Static category configuration: keyword classifier, prior buckets,
per-category edge floors, correlation clusters and structural base rates.

These tables are configuration, not learned state.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

DEFAULT_CATEGORY = "EVENT"

# Ordered: first matching rule wins.
_CLASSIFIER_RULES: list[tuple[str, re.Pattern]] = [
    ("CRYPTO", re.compile(r"^(bitcoin|ethereum|btc|eth|solana|bnb|ada|doge|avax|matic|link)\b")),
    ("CRYPTO", re.compile(
        r"\b(crypto|cryptocurrency|defi|nft|web3|blockchain|altcoin|stablecoin)\b")),
    ("CRYPTO", re.compile(r"\b(bitcoin|ethereum|solana|cardano|polkadot|chainlink|uniswap)\b")),
    ("POLITICS", re.compile(
        r"\b(election|president|trump|biden|harris|senate|congress|parliament|vote|primary"
        r"|ballot|campaign|democrat|republican|prime minister|chancellor|senator|governor|mayor)\b")),
    ("MACRO", re.compile(
        r"\b(recession|inflation|fed|federal reserve|interest rate|cpi|ppi|gdp|unemployment"
        r"|jobs report|nfp|payroll|rate hike|rate cut|economy)\b")),
    ("ETF_APPROVAL", re.compile(r"\b(etf|exchange-traded fund|sec approval)\b")),
    ("TECH_ADOPTION", re.compile(
        r"\b(app downloads|user growth|install base|daus|maus|active users)\b")),
    ("TECH", re.compile(
        r"\b(ai model|gpt|claude|gemini|llm|artificial intelligence|semiconductor|nvidia|amd"
        r"|intel|tsmc|openai|anthropic|xai|tesla|spacex|elon musk)\b")),
    ("ENTERTAINMENT", re.compile(
        r"\b(movie|film|oscar|academy award|emmy|grammy|box office|album|netflix|disney)\b")),
    ("CELEBRITY", re.compile(
        r"\b(celebrity|royal family|kardashian|taylor swift|kanye|drake|influencer|youtuber)\b")),
    ("SPORTS_FUTURES", re.compile(
        r"\b(super bowl|world series|nba finals|nfl|mlb|nhl|premier league|champions league"
        r"|world cup|olympics|wimbledon|championship|mvp|stanley cup)\b")),
    ("WAR_OUTCOMES", re.compile(
        r"\b(war|ceasefire|invasion|military strike|missile|troops|ukraine|gaza|hamas"
        r"|hezbollah|russia|putin|zelenskyy)\b")),
]


def classify_market(question: str) -> str:
    """Classify a market question into a category by keyword rules."""
    q = (question or "").lower().strip()
    if not q:
        return DEFAULT_CATEGORY
    for category, pattern in _CLASSIFIER_RULES:
        if pattern.search(q):
            return category
    return DEFAULT_CATEGORY


def resolve_category(question: str, provided: str = "") -> str:
    """Use the provider's category when present, else classify the question."""
    return (provided or "").strip().upper() or classify_market(question)


# ── Priors ───────────────────────────────────────────────────────────

PRIOR_BUCKETS: dict[str, tuple[float, float]] = {
    "MACRO": (0.05, 0.20),
    "POLITICS": (0.03, 0.15),
    "SPORTS_FUTURES": (0.01, 0.05),
    "SPORTS_PLAYER": (0.01, 0.05),
    "CRYPTO": (0.08, 0.30),
    "CELEBRITY": (0.01, 0.05),
    "TECH": (0.05, 0.25),
    "ENTERTAINMENT": (0.02, 0.10),
    "TECH_ADOPTION": (0.05, 0.25),
    "ETF_APPROVAL": (0.10, 0.40),
    "WAR_OUTCOMES": (0.03, 0.15),
    "EVENT": (0.03, 0.12),
    "OTHER": (0.03, 0.10),
}


def prior_bucket(category: str) -> tuple[float, float]:
    return PRIOR_BUCKETS.get(category, PRIOR_BUCKETS["OTHER"])


def bucket_midpoint(category: str) -> float:
    low, high = prior_bucket(category)
    return (low + high) / 2


# Structural base rates keyed by question pattern (league size, field size).
_STRUCTURAL_RATES: list[tuple[re.Pattern, float]] = [
    (re.compile(r"win the (super bowl|afc championship|nfc championship)"), 1 / 32),
    (re.compile(r"win the (stanley cup|nhl championship)"), 1 / 32),
    (re.compile(r"win the nba championship"), 1 / 30),
    (re.compile(r"win the (world series|mlb championship)"), 1 / 30),
    (re.compile(r"win the (premier league|epl)"), 1 / 20),
    (re.compile(r"win the (2024|2025|2026|2028) (presidential|election)"), 0.5),
]
_FIELD_SIZE = re.compile(r"\b(\d{1,3}) (teams|candidates|options)\b")


def structural_base_rate(question: str) -> Optional[float]:
    """Return a base rate implied by the question's structure, if any."""
    q = (question or "").lower()
    for pattern, rate in _STRUCTURAL_RATES:
        if pattern.search(q):
            return rate
    match = _FIELD_SIZE.search(q)
    if match:
        count = int(match.group(1))
        if 0 < count <= 100:
            return 1 / count
    return None


# ── Edge floors ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class CategoryEdgeConfig:
    base: float
    low: float  # applies above hi_liquidity
    hi_liquidity: float


CATEGORY_EDGE_CONFIG: dict[str, CategoryEdgeConfig] = {
    "SPORTS_FUTURES": CategoryEdgeConfig(0.01, 0.008, 150_000),
    "POLITICS": CategoryEdgeConfig(0.015, 0.01, 120_000),
    "MACRO": CategoryEdgeConfig(0.015, 0.01, 100_000),
    "CRYPTO": CategoryEdgeConfig(0.015, 0.01, 90_000),
    "TECH": CategoryEdgeConfig(0.015, 0.01, 80_000),
    "TECH_ADOPTION": CategoryEdgeConfig(0.015, 0.01, 80_000),
    "ETF_APPROVAL": CategoryEdgeConfig(0.015, 0.01, 80_000),
    "ENTERTAINMENT": CategoryEdgeConfig(0.02, 0.015, 60_000),
    "CELEBRITY": CategoryEdgeConfig(0.02, 0.015, 40_000),
    "WAR_OUTCOMES": CategoryEdgeConfig(0.02, 0.015, 70_000),
}
DEFAULT_EDGE_CONFIG = CategoryEdgeConfig(0.02, 0.015, 60_000)


def category_edge_floor(category: str, liquidity: float, age_days: Optional[float]) -> float:
    """Minimum static mispricing for a category; newer markets get a 5% discount."""
    config = CATEGORY_EDGE_CONFIG.get(category, DEFAULT_EDGE_CONFIG)
    floor = config.low if liquidity > config.hi_liquidity else config.base
    if age_days is not None and age_days < 7:
        floor *= 0.95
    return floor


def category_liquidity_floor(category: str) -> float:
    return CATEGORY_EDGE_CONFIG.get(category, DEFAULT_EDGE_CONFIG).hi_liquidity


# ── Correlation clusters ─────────────────────────────────────────────

CORRELATION_CLUSTERS: dict[str, tuple[str, ...]] = {
    "politics": ("POLITICS", "WAR_OUTCOMES"),
    "crypto": ("CRYPTO", "ETF_APPROVAL"),
    "macro": ("MACRO",),
}

_CATEGORY_TO_CLUSTER = {
    category: cluster
    for cluster, categories in CORRELATION_CLUSTERS.items()
    for category in categories
}


def cluster_for_category(category: str) -> str:
    """Map a category to its correlation cluster; unmapped categories form their own."""
    key = (category or DEFAULT_CATEGORY).upper()
    return _CATEGORY_TO_CLUSTER.get(key, key.lower())


# ── Meme markets ─────────────────────────────────────────────────────

_MEME_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"before GTA ?VI",
        r"before GTA ?6",
        r"before Grand Theft Auto",
        r"Jesus Christ (return|come back)",
        r"Second Coming",
        r"Rapture before",
    )
]


def is_meme_market(question: str) -> bool:
    return any(p.search(question or "") for p in _MEME_PATTERNS)
