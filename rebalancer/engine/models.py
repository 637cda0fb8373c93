"""Typed records shared by every stage of the rebalancing pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

NO_POSITION = "none"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


@dataclass(frozen=True)
class ProtocolMetrics:
    """Raw market observation for a single protocol, refreshed every tick."""

    id: str
    name: str
    apy: float  # percent, e.g. 4.5
    tvl: float  # USD
    age_months: Optional[int] = None
    chain: Optional[str] = None


@dataclass(frozen=True)
class RiskAssessment:
    protocol_id: str
    name: str
    apy: float
    tvl: float
    risk_score: float
    adjusted_yield: float

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AllocationEntry:
    protocol_id: str
    percentage: float
    amount_usd: float
    expected_yield: float
    risk_score: float

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AllocationPlan:
    """Target split of capital across protocols."""

    total_capital_usd: float
    entries: Tuple[AllocationEntry, ...] = ()
    expected_portfolio_apy: float = 0.0
    weighted_risk_score: float = 0.0
    computed_at: datetime = field(default_factory=utcnow)

    @property
    def is_empty(self) -> bool:
        return not self.entries

    @property
    def total_percentage(self) -> float:
        return sum(entry.percentage for entry in self.entries)

    @property
    def total_amount_usd(self) -> float:
        return sum(entry.amount_usd for entry in self.entries)

    def amounts_by_protocol(self) -> Dict[str, float]:
        return {entry.protocol_id: entry.amount_usd for entry in self.entries}

    def to_payload(self) -> Dict[str, Any]:
        return {
            "total_capital_usd": self.total_capital_usd,
            "entries": [entry.to_payload() for entry in self.entries],
            "expected_portfolio_apy": self.expected_portfolio_apy,
            "weighted_risk_score": self.weighted_risk_score,
            "computed_at": self.computed_at.isoformat(),
        }


@dataclass(frozen=True)
class SystemState:
    """Durable record of where the capital currently sits.

    ``version`` increases by one on every successful write and backs the
    compare-and-set discipline of the state stores.
    """

    current_protocol_id: str = NO_POSITION
    current_apy: float = 0.0
    current_risk_score: float = 0.0
    last_rebalance_at: Optional[datetime] = None
    version: int = 0

    @classmethod
    def initial(cls) -> "SystemState":
        return cls()

    @property
    def is_allocated(self) -> bool:
        return bool(self.current_protocol_id) and self.current_protocol_id != NO_POSITION

    @property
    def current_adjusted_yield(self) -> float:
        return self.current_apy * (1 - self.current_risk_score)

    def advance_to(self, target: RiskAssessment, *, at: Optional[datetime] = None) -> "SystemState":
        return replace(
            self,
            current_protocol_id=target.protocol_id,
            current_apy=target.apy,
            current_risk_score=target.risk_score,
            last_rebalance_at=at or utcnow(),
        )

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["last_rebalance_at"] = _isoformat(self.last_rebalance_at)
        return payload

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SystemState":
        raw_ts = payload.get("last_rebalance_at")
        last_rebalance = datetime.fromisoformat(raw_ts) if raw_ts else None
        return cls(
            current_protocol_id=str(payload.get("current_protocol_id") or NO_POSITION),
            current_apy=float(payload.get("current_apy") or 0.0),
            current_risk_score=float(payload.get("current_risk_score") or 0.0),
            last_rebalance_at=last_rebalance,
            version=int(payload.get("version") or 0),
        )


class ActionType(str, Enum):
    INITIAL = "initial"
    WITHDRAW = "withdraw"
    DEPOSIT = "deposit"
    REBALANCE = "rebalance"


@dataclass(frozen=True)
class RebalanceAction:
    type: ActionType
    amount_usd: Optional[float]
    reason: str
    from_protocol_id: Optional[str] = None
    to_protocol_id: Optional[str] = None
    priority: int = 0

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["type"] = self.type.value
        return payload


class ExecutionStep(str, Enum):
    WITHDRAW = "withdraw"
    APPROVE = "approve"
    DEPOSIT = "deposit"


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of one attempted on-chain step."""

    action: RebalanceAction
    step: ExecutionStep
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "action": self.action.to_payload(),
            "step": self.step.value,
            "success": self.success,
            "tx_hash": self.tx_hash,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
        }


class TransitionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL_FAILURE = "partial_failure"
    DRY_RUN = "dry_run"


@dataclass
class TransitionResult:
    """Aggregate outcome of a withdraw -> deposit transition.

    ``PARTIAL_FAILURE`` means the withdraw went through but the capital never
    reached the target protocol and needs reconciliation.
    """

    status: TransitionStatus
    from_protocol_id: Optional[str]
    to_protocol_id: str
    amount_usd: Optional[float]
    steps: List[ExecutionResult] = field(default_factory=list)
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    history_persisted: bool = False
    state_persisted: bool = False
    persistence_errors: Dict[str, str] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def success(self) -> bool:
        return self.status is TransitionStatus.SUCCESS

    @property
    def requires_reconciliation(self) -> bool:
        return self.status is TransitionStatus.PARTIAL_FAILURE

    def to_payload(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "success": self.success,
            "requires_reconciliation": self.requires_reconciliation,
            "from_protocol_id": self.from_protocol_id,
            "to_protocol_id": self.to_protocol_id,
            "amount_usd": self.amount_usd,
            "tx_hash": self.tx_hash,
            "error": self.error,
            "history_persisted": self.history_persisted,
            "state_persisted": self.state_persisted,
            "persistence_errors": dict(self.persistence_errors),
            "steps": [step.to_payload() for step in self.steps],
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class BatchSummary:
    results: List[ExecutionResult] = field(default_factory=list)
    success_count: int = 0
    fail_count: int = 0
    cancelled: bool = False
    dry_run: bool = False
    skipped: List[RebalanceAction] = field(default_factory=list)
    persistence_errors: List[str] = field(default_factory=list)

    def to_payload(self) -> Dict[str, Any]:
        return {
            "results": [result.to_payload() for result in self.results],
            "success_count": self.success_count,
            "fail_count": self.fail_count,
            "cancelled": self.cancelled,
            "dry_run": self.dry_run,
            "skipped": [action.to_payload() for action in self.skipped],
            "persistence_errors": list(self.persistence_errors),
        }


@dataclass(frozen=True)
class RebalanceRecord:
    """History entry appended after every attempted transition that moved funds."""

    from_protocol_id: Optional[str]
    to_protocol_id: str
    amount_usd: Optional[float]
    outcome: TransitionStatus
    tx_hash: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["outcome"] = self.outcome.value
        payload["created_at"] = self.created_at.isoformat()
        return payload
