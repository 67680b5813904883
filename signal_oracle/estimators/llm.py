"""
LLM-powered probability estimator.

Domain-agnostic: takes a PromptBuilder to produce prompts, then calls an
LLM (via OpenRouter) and parses the structured response into an Estimate.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .base import Estimate, EstimateContext, ProbabilityEstimator, PromptBuilder
from .prompts import MarketPromptBuilder
from ..core.errors import EstimatorFailure
from ..polymarket.models import MarketSnapshot

logger = logging.getLogger(__name__)

OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"


class LLMEstimator(ProbabilityEstimator):
    """Estimator that asks an LLM for a YES probability and a confidence."""

    def __init__(self, config: dict, prompt_builder: Optional[PromptBuilder] = None):
        """
        Args:
            config: Must include 'api_key'; optionally 'model', 'temperature',
                    'max_tokens', 'timeout'.
            prompt_builder: PromptBuilder implementation (defaults to MarketPromptBuilder).
        """
        super().__init__(config)
        self.api_key = config["api_key"]
        self.model = config.get("model", "anthropic/claude-3.5-sonnet")
        self.temperature = config.get("temperature", 0.2)
        self.max_tokens = config.get("max_tokens", 500)
        self.timeout = config.get("timeout", 30.0)
        self.prompt_builder = prompt_builder or MarketPromptBuilder()

    @property
    def name(self) -> str:
        return f"LLM Estimator ({self.model})"

    # ── Main entry ───────────────────────────────────────────────────

    async def estimate(self, snapshot: MarketSnapshot, context: EstimateContext) -> Estimate:
        prompt = self.prompt_builder.build_estimate_prompt(snapshot, context)
        response_text = await self._call_llm(prompt)
        estimate = self.parse_response(response_text)
        logger.debug(
            "%s: p=%.3f conf=%.0f for %s",
            self.name, estimate.probability, estimate.confidence, snapshot.id,
        )
        return estimate

    # ── LLM call ─────────────────────────────────────────────────────

    async def _call_llm(self, prompt: str) -> str:
        """Call an LLM via OpenRouter API."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(OPENROUTER_URL, json=payload, headers=headers)
            response.raise_for_status()
            data = response.json()
        try:
            return data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise EstimatorFailure(f"Malformed OpenRouter response: {e}") from e

    # ── Response parser ──────────────────────────────────────────────

    @staticmethod
    def parse_response(response: str) -> Estimate:
        """
        Parse the LLM's structured response into an Estimate.

        Expected format (one field per line):
            PROBABILITY: 0.72
            CONFIDENCE: 80
            SOURCES: https://a, https://b
            REASONING: Some explanation ...

        Probability may be given as a fraction or a percentage; confidence
        as 0-1 or 0-100.
        """
        data: dict[str, str] = {}
        for line in (response or "").strip().splitlines():
            if ":" in line:
                key, _, value = line.partition(":")
                data[key.strip().lower()] = value.strip()

        def _number(key: str) -> Optional[float]:
            raw = data.get(key, "").rstrip("%").strip()
            try:
                return float(raw)
            except ValueError:
                return None

        probability = _number("probability")
        if probability is None:
            raise EstimatorFailure("LLM response has no PROBABILITY field")
        if probability > 1:
            probability /= 100
        if not 0 < probability < 1:
            raise EstimatorFailure(f"LLM probability out of range: {probability}")

        confidence = _number("confidence")
        if confidence is None:
            confidence = 50.0
        elif confidence <= 1:
            confidence *= 100
        confidence = min(max(confidence, 0.0), 100.0)

        sources = data.get("sources", "")
        citations = [s.strip() for s in sources.split(",") if s.strip() and s.strip().upper() != "N/A"]

        return Estimate(
            probability=probability,
            confidence=confidence,
            narrative=data.get("reasoning", "No reasoning provided"),
            citations=citations,
        )
