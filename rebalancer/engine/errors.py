"""Exception hierarchy for the rebalancing engine."""

from __future__ import annotations


class RebalancerError(Exception):
    """Base class for errors raised by the rebalancing engine."""


class EmptyInputError(RebalancerError, ValueError):
    """Raised when an operation needs at least one protocol but received none."""


class UnknownProtocolError(RebalancerError, KeyError):
    """Raised when a protocol id is not present in the current market data."""

    def __init__(self, protocol_id: str, known: tuple[str, ...] = ()) -> None:
        self.protocol_id = protocol_id
        self.known = tuple(known)
        message = f"Unknown protocol {protocol_id!r}"
        if self.known:
            message += f" (available: {', '.join(self.known)})"
        super().__init__(message)

    def __str__(self) -> str:
        return self.args[0]


class StateConflictError(RebalancerError):
    """Raised when a compare-and-set update finds a newer stored state."""

    def __init__(self, expected_version: int, actual_version: int) -> None:
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"System state changed concurrently (expected version {expected_version}, found {actual_version})"
        )


class TickInProgressError(RebalancerError):
    """Raised when a control-loop tick is requested while another one is running."""


class PersistenceError(RebalancerError):
    """Raised by state stores when a write cannot be completed."""

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        super().__init__(f"{kind}: {message}")
