"""Service-level utilities shared by the rebalancer and its transport layers."""

from .telemetry import CircuitBreaker, CircuitOpenError, ResiliencePolicy, Telemetry

__all__ = ["CircuitBreaker", "CircuitOpenError", "ResiliencePolicy", "Telemetry"]
