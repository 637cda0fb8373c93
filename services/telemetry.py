"""Health tracking and bounded-wait calls for external collaborators."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union

logger = logging.getLogger(__name__)

Call = Callable[[], Union[Awaitable[Any], Any]]

HEALTHY = "healthy"
DEGRADED = "degraded"
UNKNOWN = "unknown"


class CircuitOpenError(RuntimeError):
    """Raised when a collaborator has failed too often and is being skipped."""


@dataclass
class ResiliencePolicy:
    """Timeout and retry settings applied to one collaborator call.

    ``max_retries`` defaults to zero: retries are opt-in per collaborator.
    """

    timeout_seconds: float = 5.0
    max_retries: int = 0
    backoff_seconds: float = 0.5
    failure_threshold: int = 3
    cooldown_seconds: float = 300.0

    @classmethod
    def from_mapping(cls, payload: Optional[Mapping[str, Any]]) -> "ResiliencePolicy":
        known = {item.name for item in fields(cls)}
        return cls(**{key: value for key, value in (payload or {}).items() if key in known})


class CircuitBreaker:
    """Skip a collaborator for ``cooldown_seconds`` after consecutive failures."""

    def __init__(self, failure_threshold: int, cooldown_seconds: float) -> None:
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.consecutive_failures = 0
        self._open_until: Optional[float] = None

    @property
    def is_open(self) -> bool:
        if self._open_until is None:
            return False
        if time.monotonic() < self._open_until:
            return True
        # Cooldown over: the next call is a trial.
        self._open_until = None
        self.consecutive_failures = 0
        return False

    def on_failure(self) -> None:
        self.consecutive_failures += 1
        if self._open_until is None and self.consecutive_failures >= self.failure_threshold:
            self._open_until = time.monotonic() + self.cooldown_seconds
            logger.warning(
                "Circuit opened",
                extra={"failures": self.consecutive_failures, "cooldown_seconds": self.cooldown_seconds},
            )

    def on_success(self) -> None:
        self.consecutive_failures = 0
        self._open_until = None


@dataclass
class CollaboratorStatus:
    state: str = UNKNOWN
    detail: Optional[str] = None
    last_ok_at: Optional[datetime] = None
    checked_at: Optional[datetime] = None
    error_count: int = 0
    ok_count: int = 0
    latency_ms: Optional[float] = None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "status": self.state,
            "reason": self.detail,
            "last_success": self.last_ok_at.isoformat() if self.last_ok_at else None,
            "last_checked": self.checked_at.isoformat() if self.checked_at else None,
            "failures": self.error_count,
            "successes": self.ok_count,
            "last_latency_ms": self.latency_ms,
        }


class Telemetry:
    """Track the health of market-data feeds and other collaborators by name."""

    def __init__(self, *, policy: Optional[ResiliencePolicy] = None) -> None:
        self.policy = policy or ResiliencePolicy()
        self.collaborators: Dict[str, CollaboratorStatus] = {}
        self._circuits: Dict[str, CircuitBreaker] = {}

    def circuit(self, name: str) -> CircuitBreaker:
        if name not in self._circuits:
            self._circuits[name] = CircuitBreaker(self.policy.failure_threshold, self.policy.cooldown_seconds)
        return self._circuits[name]

    def mark_healthy(self, name: str, *, latency_ms: Optional[float] = None) -> None:
        status = self.collaborators.setdefault(name, CollaboratorStatus())
        status.state, status.detail = HEALTHY, None
        status.checked_at = status.last_ok_at = datetime.now(timezone.utc)
        status.ok_count += 1
        if latency_ms is not None:
            status.latency_ms = latency_ms

    def mark_degraded(self, name: str, reason: str) -> None:
        status = self.collaborators.setdefault(name, CollaboratorStatus())
        status.state, status.detail = DEGRADED, reason
        status.checked_at = datetime.now(timezone.utc)
        status.error_count += 1

    async def call(self, name: str, func: Call, *, policy: Optional[ResiliencePolicy] = None) -> Any:
        """Run ``func`` with a bounded wait, circuit breaking and health tracking.

        Timeouts surface as :class:`asyncio.TimeoutError`. The last error is
        re-raised once the policy's retries are exhausted.
        """

        policy = policy or self.policy
        circuit = self.circuit(name)
        if circuit.is_open:
            self.mark_degraded(name, "circuit_open")
            raise CircuitOpenError(f"Circuit open for {name}")

        attempts = policy.max_retries + 1
        for attempt in range(1, attempts + 1):
            started = time.perf_counter()
            try:
                outcome = func()
                if inspect.isawaitable(outcome):
                    outcome = await asyncio.wait_for(outcome, timeout=policy.timeout_seconds)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                circuit.on_failure()
                reason = "timeout" if isinstance(exc, asyncio.TimeoutError) else (str(exc) or type(exc).__name__)
                self.mark_degraded(name, reason)
                logger.warning(
                    "Collaborator call failed",
                    extra={"collaborator": name, "attempt": attempt, "error": reason},
                )
                if attempt == attempts:
                    raise
                if circuit.is_open:
                    logger.warning("Circuit opened; abandoning retries", extra={"collaborator": name, "attempt": attempt})
                    raise
                await asyncio.sleep(policy.backoff_seconds * attempt)
            else:
                circuit.on_success()
                self.mark_healthy(name, latency_ms=round((time.perf_counter() - started) * 1000, 2))
                return outcome
        raise AssertionError("unreachable")  # pragma: no cover

    def health_snapshot(self) -> Dict[str, Any]:
        degraded = any(status.state != HEALTHY for status in self.collaborators.values())
        return {
            "status": DEGRADED if degraded else HEALTHY,
            "collaborators": {name: status.to_payload() for name, status in self.collaborators.items()},
        }


__all__ = ["CircuitBreaker", "CircuitOpenError", "CollaboratorStatus", "ResiliencePolicy", "Telemetry"]
