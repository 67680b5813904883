"""
Error taxonomy for the signal pipeline.

Per-market errors are isolated by the engine and never abort a cycle;
only unexpected exceptions reach the scheduler boundary.
"""

from __future__ import annotations


class OracleError(Exception):
    """Base class for all pipeline errors."""


class TransientIOError(OracleError):
    """Network failure or timeout on a collaborator; retried next tick/cycle."""


class CircuitOpenError(TransientIOError):
    """The collaborator's circuit breaker is open; call short-circuited."""


class DataQualityError(OracleError):
    """Malformed or incomplete snapshot; the market is dropped this cycle."""

    def __init__(self, market_id: str, reason: str):
        super().__init__(f"{market_id}: {reason}")
        self.market_id = market_id
        self.reason = reason


class EstimatorFailure(OracleError):
    """The probability estimator failed or timed out; a fallback is used."""


class InvariantViolation(OracleError):
    """A numeric invariant was broken before clamping (logged, never raised outward)."""
