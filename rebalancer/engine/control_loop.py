"""Top-level orchestration of one rebalancing tick."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from .allocator import choose_best, eligible, optimal_allocation, plan_actions, transition_actions
from .config import RebalancerConfig
from .errors import EmptyInputError, PersistenceError, RebalancerError, TickInProgressError, UnknownProtocolError
from .execution import ExecutionOrchestrator
from .market_data import MarketDataSource
from .metrics import MetricRegistry
from .models import (
    AllocationPlan,
    BatchSummary,
    ProtocolMetrics,
    RebalanceAction,
    RiskAssessment,
    SystemState,
    TransitionResult,
)
from .rebalance_policy import PositionState, RebalanceDecision, classify_position, decide
from .risk_scorer import score_all
from .state_store import SNAPSHOT, StateStore

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    """Everything one tick computed and did, for callers and transports."""

    assessments: List[RiskAssessment]
    plan: AllocationPlan
    state: SystemState
    best: Optional[RiskAssessment] = None
    decision: Optional[RebalanceDecision] = None
    reason: str = ""
    actions: List[RebalanceAction] = field(default_factory=list)
    transition: Optional[TransitionResult] = None
    forced: bool = False
    dry_run: bool = False
    snapshot_persisted: bool = False
    persistence_errors: Dict[str, str] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def should_rebalance(self) -> bool:
        return self.decision is not None and self.decision.should_rebalance

    @property
    def executed(self) -> bool:
        return self.transition is not None

    def to_payload(self) -> Dict[str, Any]:
        return {
            "assessments": [item.to_payload() for item in self.assessments],
            "plan": self.plan.to_payload(),
            "state": self.state.to_payload(),
            "best": self.best.to_payload() if self.best else None,
            "decision": self.decision.to_payload() if self.decision else None,
            "should_rebalance": self.should_rebalance,
            "reason": self.reason,
            "actions": [action.to_payload() for action in self.actions],
            "executed": self.executed,
            "transition": self.transition.to_payload() if self.transition else None,
            "forced": self.forced,
            "dry_run": self.dry_run,
            "snapshot_persisted": self.snapshot_persisted,
            "persistence_errors": dict(self.persistence_errors),
            "duration_seconds": round(self.duration_seconds, 4),
        }


@dataclass
class PortfolioReport:
    plan: AllocationPlan
    actions: List[RebalanceAction]
    summary: BatchSummary

    def to_payload(self) -> Dict[str, Any]:
        return {
            "plan": self.plan.to_payload(),
            "actions": [action.to_payload() for action in self.actions],
            "summary": self.summary.to_payload(),
        }


async def fetch_assessments(source: MarketDataSource, metrics: MetricRegistry) -> List[RiskAssessment]:
    """Fetch and score market data, raising ``EmptyInputError`` when nothing is available."""

    try:
        observed: Sequence[ProtocolMetrics] = await source.fetch_protocols()
    except Exception as exc:
        metrics.inc("market_data_errors_total")
        logger.error("Market data source failed", extra={"error": str(exc)}, exc_info=True)
        observed = []
    if not observed:
        raise EmptyInputError("No protocol metrics available this tick")
    return score_all(observed)


async def rebalance_tick(
    source: MarketDataSource,
    orchestrator: ExecutionOrchestrator,
    state_store: StateStore,
    config: RebalancerConfig,
    *,
    metrics: Optional[MetricRegistry] = None,
    force_protocol_id: Optional[str] = None,
    dry_run: bool = False,
) -> TickReport:
    """Run a single iteration of the rebalancing pipeline.

    Steps:
    1. Fetch protocol metrics (protocols that fail to load are dropped) and score them.
    2. Compute the target allocation and record it as a snapshot.
    3. Read the current position and pick the best risk-eligible protocol.
    4. Decide whether to move (or honour ``force_protocol_id``).
    5. Execute the transition via ``orchestrator`` unless ``dry_run``.
    """

    metrics = metrics or MetricRegistry()
    started = time.perf_counter()
    allocation = config.allocation

    assessments = await fetch_assessments(source, metrics)
    plan = optimal_allocation(
        assessments,
        allocation.total_capital_usd,
        allocation.max_protocols,
        allocation.max_risk_score,
    )
    state = state_store.get_state() or SystemState.initial()
    report = TickReport(assessments=assessments, plan=plan, state=state, forced=force_protocol_id is not None, dry_run=dry_run)

    if not dry_run:
        try:
            state_store.append_snapshot(plan)
            report.snapshot_persisted = True
        except PersistenceError as exc:
            report.persistence_errors[SNAPSHOT] = str(exc)
            metrics.inc("persistence_errors_total", labels={"kind": SNAPSHOT})
            logger.error("Failed to record allocation snapshot", extra={"error": str(exc)}, exc_info=True)

    by_id = {item.protocol_id: item for item in assessments}
    if force_protocol_id is not None:
        best = by_id.get(force_protocol_id)
        if best is None:
            raise UnknownProtocolError(force_protocol_id, tuple(by_id))
        position = classify_position(state.current_protocol_id, best)
        if position is PositionState.ALIGNED:
            decision = RebalanceDecision(False, f"Already in requested protocol {best.name}", position)
        else:
            decision = RebalanceDecision(True, f"Forced rebalance into {best.name}", position)
    else:
        candidates = eligible(assessments, allocation.max_risk_score)
        if not candidates:
            report.reason = f"No protocol within risk limit {allocation.max_risk_score}; staying put"
            logger.warning("No eligible protocol this tick", extra={"max_risk_score": allocation.max_risk_score})
            return _complete(report, started, metrics)
        best = choose_best(candidates)
        current = by_id.get(state.current_protocol_id)
        decision = decide(
            state.current_protocol_id,
            best,
            allocation.min_yield_improvement_pct,
            mode=allocation.threshold_mode,
            current_adjusted_yield=current.adjusted_yield if current else (state.current_adjusted_yield if state.is_allocated else None),
        )

    report.best = best
    report.decision = decision
    report.reason = decision.reason
    if not decision.should_rebalance:
        return _complete(report, started, metrics)

    # Initial allocations deploy the configured capital; moves take the whole position.
    amount = None if state.is_allocated else allocation.total_capital_usd
    report.actions = transition_actions(state, best, amount, decision.reason)
    if dry_run:
        return _complete(report, started, metrics)

    source_assessment = None
    if state.is_allocated:
        source_assessment = by_id.get(state.current_protocol_id) or _assessment_from_state(state)
    report.transition = await orchestrator.execute(source_assessment, best, amount, state=state)
    return _complete(report, started, metrics)


async def rebalance_portfolio(
    source: MarketDataSource,
    orchestrator: ExecutionOrchestrator,
    state_store: StateStore,
    config: RebalancerConfig,
    *,
    holdings: Mapping[str, float],
    cancel_event: Optional[asyncio.Event] = None,
    metrics: Optional[MetricRegistry] = None,
) -> PortfolioReport:
    """Move ``holdings`` toward the multi-venue target allocation."""

    metrics = metrics or MetricRegistry()
    assessments = await fetch_assessments(source, metrics)
    allocation = config.allocation
    plan = optimal_allocation(
        assessments,
        allocation.total_capital_usd,
        allocation.max_protocols,
        allocation.max_risk_score,
    )
    known = {item.protocol_id for item in assessments}
    unknown = [protocol_id for protocol_id in holdings if protocol_id not in known]
    if unknown:
        logger.warning("Holdings reference protocols missing from market data", extra={"protocols": unknown})
    actions = plan_actions(holdings, plan, min_trade_usd=config.execution.min_trade_usd)
    summary = await orchestrator.execute_actions(actions, cancel_event=cancel_event)
    if not config.execution.dry_run:
        try:
            state_store.append_snapshot(plan)
        except PersistenceError as exc:
            metrics.inc("persistence_errors_total", labels={"kind": SNAPSHOT})
            logger.error("Failed to record allocation snapshot", extra={"error": str(exc)}, exc_info=True)
    return PortfolioReport(plan=plan, actions=actions, summary=summary)


def _assessment_from_state(state: SystemState) -> RiskAssessment:
    # The current protocol dropped out of this tick's market data.
    return RiskAssessment(
        protocol_id=state.current_protocol_id,
        name=state.current_protocol_id,
        apy=state.current_apy,
        tvl=0.0,
        risk_score=state.current_risk_score,
        adjusted_yield=state.current_adjusted_yield,
    )


def _complete(report: TickReport, started: float, metrics: MetricRegistry) -> TickReport:
    report.duration_seconds = time.perf_counter() - started
    metrics.observe("tick_latency_seconds", report.duration_seconds)
    outcome = report.transition.status.value if report.transition else ("rebalance" if report.should_rebalance else "hold")
    metrics.inc("ticks_total", labels={"outcome": outcome})
    logger.info(
        "Rebalance tick completed",
        extra={
            "best": report.best.protocol_id if report.best else None,
            "current": report.state.current_protocol_id,
            "should_rebalance": report.should_rebalance,
            "outcome": outcome,
            "reason": report.reason,
            "dry_run": report.dry_run,
            "duration": report.duration_seconds,
        },
    )
    return report


class ControlLoop:
    """Serialises ticks so at most one iteration touches ``SystemState`` at a time."""

    def __init__(
        self,
        source: MarketDataSource,
        orchestrator: ExecutionOrchestrator,
        state_store: StateStore,
        config: RebalancerConfig,
        *,
        metrics: Optional[MetricRegistry] = None,
    ) -> None:
        self.source = source
        self.orchestrator = orchestrator
        self.state_store = state_store
        self.config = config
        self.metrics = metrics or MetricRegistry()
        self._lock = asyncio.Lock()
        self.last_report: Optional[TickReport] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run_once(self, *, force_protocol_id: Optional[str] = None) -> TickReport:
        if self._lock.locked():
            raise TickInProgressError("A rebalance tick is already running")
        async with self._lock:
            report = await rebalance_tick(
                self.source,
                self.orchestrator,
                self.state_store,
                self.config,
                metrics=self.metrics,
                force_protocol_id=force_protocol_id,
            )
        self.last_report = report
        return report

    async def preview(self, *, force_protocol_id: Optional[str] = None) -> TickReport:
        """Compute the tick without executing or persisting anything."""

        return await rebalance_tick(
            self.source,
            self.orchestrator,
            self.state_store,
            self.config,
            metrics=self.metrics,
            force_protocol_id=force_protocol_id,
            dry_run=True,
        )

    async def rebalance_portfolio(
        self, holdings: Mapping[str, float], *, cancel_event: Optional[asyncio.Event] = None
    ) -> PortfolioReport:
        if self._lock.locked():
            raise TickInProgressError("A rebalance tick is already running")
        async with self._lock:
            return await rebalance_portfolio(
                self.source,
                self.orchestrator,
                self.state_store,
                self.config,
                holdings=holdings,
                cancel_event=cancel_event,
                metrics=self.metrics,
            )

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        """Tick every ``rebalance_interval_hours`` until ``stop_event`` is set."""

        interval = self.config.schedule.rebalance_interval_hours * 3600
        while not stop_event.is_set():
            try:
                await self.run_once()
            except RebalancerError as exc:
                logger.error("Rebalance tick rejected: %s", exc)
            except Exception:
                logger.exception("Rebalance tick crashed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
