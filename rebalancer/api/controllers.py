"""Orchestrators bridging the control loop and the HTTP layer."""

from __future__ import annotations

from typing import Any, Dict, Optional

from services.telemetry import Telemetry

from ..engine.allocator import optimal_allocation
from ..engine.config import as_payload
from ..engine.control_loop import ControlLoop, fetch_assessments


class RebalanceController:
    """Expose control-loop operations as JSON-ready payloads."""

    def __init__(self, loop: ControlLoop, *, telemetry: Optional[Telemetry] = None) -> None:
        self.loop = loop
        self.telemetry = telemetry

    async def list_yields(self, max_risk: Optional[float] = None) -> Dict[str, Any]:
        assessments = await fetch_assessments(self.loop.source, self.loop.metrics)
        if max_risk is not None:
            assessments = [item for item in assessments if item.risk_score <= max_risk]
        assessments.sort(key=lambda item: item.adjusted_yield, reverse=True)
        return {"count": len(assessments), "yields": [item.to_payload() for item in assessments]}

    async def compute_allocation(self) -> Dict[str, Any]:
        allocation = self.loop.config.allocation
        assessments = await fetch_assessments(self.loop.source, self.loop.metrics)
        plan = optimal_allocation(
            assessments,
            allocation.total_capital_usd,
            allocation.max_protocols,
            allocation.max_risk_score,
        )
        return plan.to_payload()

    async def preview(self, protocol_id: Optional[str] = None) -> Dict[str, Any]:
        report = await self.loop.preview(force_protocol_id=protocol_id)
        return report.to_payload()

    async def rebalance(
        self, *, force: bool = False, protocol_id: Optional[str] = None, dry_run: bool = False
    ) -> Dict[str, Any]:
        if dry_run:
            return await self.preview(protocol_id)
        target = protocol_id
        if force and target is None:
            # Forcing without a target means "move into today's best regardless of threshold".
            preview = await self.loop.preview()
            target = preview.best.protocol_id if preview.best else None
            if target is None:
                return preview.to_payload()
        report = await self.loop.run_once(force_protocol_id=target)
        return report.to_payload()

    def metrics_payload(self, history_limit: int = 20) -> Dict[str, Any]:
        store = self.loop.state_store
        state = store.get_state()
        return {
            "state": state.to_payload() if state else None,
            "latest_snapshot": store.latest_snapshot(),
            "history": store.list_history(history_limit),
            "metrics": self.loop.metrics.snapshot(),
            "config": as_payload(self.loop.config),
        }

    def health(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"status": "healthy", "collaborators": {}}
        if self.telemetry is not None:
            payload = self.telemetry.health_snapshot()
        last = self.loop.last_report
        payload["tick_running"] = self.loop.running
        payload["last_tick"] = (
            {"reason": last.reason, "executed": last.executed, "duration_seconds": last.duration_seconds}
            if last
            else None
        )
        return payload
