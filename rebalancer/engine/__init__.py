"""Decision-and-execution engine for yield rebalancing.

The package composes a pure risk scorer, allocator and rebalance policy with a
side-effectful execution orchestrator, a state store and the control loop that
ties them together on every tick.
"""

from .allocator import choose_best, optimal_allocation, plan_actions, transition_actions
from .config import RebalancerConfig, Settings, load_config
from .control_loop import ControlLoop, PortfolioReport, TickReport, rebalance_portfolio, rebalance_tick
from .errors import (
    EmptyInputError,
    PersistenceError,
    RebalancerError,
    StateConflictError,
    TickInProgressError,
    UnknownProtocolError,
)
from .execution import ExecutionOrchestrator
from .market_data import MarketDataSource, ProtocolFeed, StaticMarketData, metrics_from_payload
from .metrics import MetricRegistry
from .models import (
    AllocationPlan,
    ExecutionResult,
    ProtocolMetrics,
    RebalanceAction,
    RiskAssessment,
    SystemState,
    TransitionResult,
    TransitionStatus,
)
from .rebalance_policy import PositionState, RebalanceDecision, ThresholdMode, decide
from .risk_scorer import score, score_all
from .signer import SignerAdapter, SignerReceipt, SimulatedSigner
from .state_store import FileStateStore, InMemoryStateStore, StateStore

__all__ = [
    "AllocationPlan",
    "ControlLoop",
    "EmptyInputError",
    "ExecutionOrchestrator",
    "ExecutionResult",
    "FileStateStore",
    "InMemoryStateStore",
    "MarketDataSource",
    "MetricRegistry",
    "PersistenceError",
    "PortfolioReport",
    "PositionState",
    "ProtocolFeed",
    "ProtocolMetrics",
    "RebalanceAction",
    "RebalanceDecision",
    "RebalancerConfig",
    "RebalancerError",
    "RiskAssessment",
    "Settings",
    "SignerAdapter",
    "SignerReceipt",
    "SimulatedSigner",
    "StateConflictError",
    "StateStore",
    "StaticMarketData",
    "SystemState",
    "ThresholdMode",
    "TickInProgressError",
    "TickReport",
    "TransitionResult",
    "TransitionStatus",
    "UnknownProtocolError",
    "choose_best",
    "decide",
    "load_config",
    "metrics_from_payload",
    "optimal_allocation",
    "plan_actions",
    "rebalance_portfolio",
    "rebalance_tick",
    "score",
    "score_all",
    "transition_actions",
]
