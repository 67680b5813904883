"""
Edge and position sizing.

Turns a synthesized probability into a direction, a net edge after
execution costs and horizon discount, and a Kelly-based exposure
fraction bounded by ``MAX_POSITION_SIZE``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .settings import SizingSettings
from .signals import Direction, TradeTier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SizingResult:
    direction: Direction
    raw_edge: float
    net_edge: float
    execution_cost: float
    horizon_discount: float
    kelly: float
    liquidity_multiplier: float
    exposure: float
    tier: TradeTier
    executable: bool


def kelly_fraction(p: float, price: float, buffer: float = 0.0) -> float:
    """Full Kelly f* = (p·b − q)/b with b = (1 − price)/price; 0 without edge."""
    if price <= 0 or price >= 1 or p <= price + buffer:
        return 0.0
    b = (1 - price) / price
    q = 1 - p
    return max(0.0, (p * b - q) / b)


class EdgeAndSizingEngine:

    def __init__(self, settings: Optional[SizingSettings] = None):
        self.settings = settings or SizingSettings()

    def execution_cost(self, spread: Optional[float]) -> float:
        s = self.settings
        observed = spread if spread is not None and spread >= 0 else s.default_spread
        return observed / 2 + s.slippage

    def horizon_discount(self, days_to_resolution: Optional[float]) -> float:
        if days_to_resolution is None or days_to_resolution <= 0:
            return 1.0
        for bound, discount in self.settings.horizon_discounts:
            if days_to_resolution < bound:
                return discount
        return self.settings.horizon_discount_max

    def liquidity_multiplier(self, liquidity: float) -> float:
        for bound, multiplier in self.settings.liquidity_tiers:
            if liquidity < bound:
                return multiplier
        return self.settings.top_liquidity_multiplier

    def confidence_floor(self, confidence: float, net_edge: float) -> float:
        for min_conf, min_edge, floor in self.settings.confidence_floors:
            if confidence >= min_conf and net_edge >= min_edge:
                return floor
        return 0.0

    def tier_for(self, exposure: float) -> TradeTier:
        s = self.settings
        if exposure >= s.strong_exposure:
            return TradeTier.STRONG_TRADE
        if exposure >= s.medium_exposure:
            return TradeTier.MEDIUM_TRADE
        if exposure >= s.small_exposure:
            return TradeTier.SMALL_TRADE
        if exposure >= s.probe_exposure:
            return TradeTier.PROBE
        return TradeTier.NO_TRADE

    def size(
        self,
        probability: float,
        market_price: float,
        *,
        confidence: float,
        liquidity: float,
        spread: Optional[float] = None,
        days_to_resolution: Optional[float] = None,
        forced_direction: Optional[Direction] = None,
    ) -> SizingResult:
        s = self.settings
        raw_edge = probability - market_price

        if forced_direction is not None:
            direction = forced_direction
        elif raw_edge > 0:
            direction = Direction.BUY_YES
        elif raw_edge < 0:
            direction = Direction.BUY_NO
        else:
            direction = Direction.NO_TRADE

        cost = self.execution_cost(spread)
        discount = self.horizon_discount(days_to_resolution)
        if direction is Direction.BUY_YES:
            side_edge, p, price = raw_edge, probability, market_price
        elif direction is Direction.BUY_NO:
            side_edge, p, price = -raw_edge, 1 - probability, 1 - market_price
        else:
            side_edge, p, price = 0.0, probability, market_price
        net_edge = (side_edge - cost) * discount

        liq_mult = self.liquidity_multiplier(liquidity)
        kelly = kelly_fraction(p, price, s.kelly_edge_buffer) if direction is not Direction.NO_TRADE else 0.0
        executable = direction is not Direction.NO_TRADE and net_edge >= s.min_net_edge

        exposure = 0.0
        if executable:
            exposure = min(kelly * s.kelly_multiplier * liq_mult, s.max_position_size)
            if liq_mult > 0:
                exposure = max(exposure, self.confidence_floor(confidence, net_edge))
            exposure = min(max(exposure, 0.0), s.max_position_size)

        result = SizingResult(
            direction=direction,
            raw_edge=raw_edge,
            net_edge=net_edge,
            execution_cost=cost,
            horizon_discount=discount,
            kelly=kelly,
            liquidity_multiplier=liq_mult,
            exposure=exposure,
            tier=self.tier_for(exposure),
            executable=executable,
        )
        logger.debug(
            "Sized %s: raw=%.4f net=%.4f kelly=%.4f exposure=%.4f tier=%s",
            direction.value, raw_edge, net_edge, kelly, exposure, result.tier.value,
        )
        return result
