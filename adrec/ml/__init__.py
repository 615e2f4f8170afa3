"""Model scoring client"""

from .scoring import ScoringClient, CircuitBreaker, CircuitState

__all__ = ["ScoringClient", "CircuitBreaker", "CircuitState"]
