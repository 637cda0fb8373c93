"""Pure decision logic: does the current position justify a transition?"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .models import NO_POSITION, RiskAssessment

logger = logging.getLogger(__name__)


class PositionState(str, Enum):
    UNALLOCATED = "unallocated"
    ALIGNED = "aligned"
    MISALIGNED = "misaligned"


class ThresholdMode(str, Enum):
    """How ``min_yield_improvement_pct`` is applied to a misaligned position.

    ``ABSOLUTE`` compares the candidate's adjusted yield against the floor.
    ``IMPROVEMENT`` compares the gain over the current protocol's adjusted yield.
    """

    ABSOLUTE = "absolute"
    IMPROVEMENT = "improvement"


@dataclass(frozen=True)
class RebalanceDecision:
    should_rebalance: bool
    reason: str
    position: PositionState

    def to_payload(self) -> Dict[str, Any]:
        return {"should_rebalance": self.should_rebalance, "reason": self.reason, "position": self.position.value}


def classify_position(current_protocol_id: Optional[str], best: RiskAssessment) -> PositionState:
    if not current_protocol_id or current_protocol_id == NO_POSITION:
        return PositionState.UNALLOCATED
    if current_protocol_id == best.protocol_id:
        return PositionState.ALIGNED
    return PositionState.MISALIGNED


def decide(
    current_protocol_id: Optional[str],
    best: RiskAssessment,
    min_yield_improvement_pct: float,
    *,
    mode: ThresholdMode = ThresholdMode.ABSOLUTE,
    current_adjusted_yield: Optional[float] = None,
) -> RebalanceDecision:
    """Decide whether moving into ``best`` is warranted."""

    position = classify_position(current_protocol_id, best)
    if position is PositionState.UNALLOCATED:
        decision = RebalanceDecision(True, "No current position - initial allocation needed", position)
    elif position is PositionState.ALIGNED:
        decision = RebalanceDecision(False, f"Already in optimal protocol {best.name}", position)
    else:
        decision = _decide_misaligned(best, min_yield_improvement_pct, mode, current_adjusted_yield)

    logger.log(
        logging.INFO if decision.should_rebalance else logging.DEBUG,
        "Evaluated rebalance decision",
        extra={
            "position": position.value,
            "current_protocol": current_protocol_id,
            "best_protocol": best.protocol_id,
            "adjusted_yield": best.adjusted_yield,
            "should_rebalance": decision.should_rebalance,
            "reason": decision.reason,
        },
    )
    return decision


def _decide_misaligned(
    best: RiskAssessment,
    threshold: float,
    mode: ThresholdMode,
    current_adjusted_yield: Optional[float],
) -> RebalanceDecision:
    position = PositionState.MISALIGNED
    if mode is ThresholdMode.IMPROVEMENT:
        if current_adjusted_yield is None:
            logger.warning(
                "Current adjusted yield unknown; falling back to absolute threshold",
                extra={"best_protocol": best.protocol_id, "threshold": threshold},
            )
        else:
            improvement = best.adjusted_yield - current_adjusted_yield
            if improvement >= threshold:
                return RebalanceDecision(
                    True,
                    f"Better yield available: {best.name} improves adjusted yield by {improvement:.2f}%",
                    position,
                )
            return RebalanceDecision(
                False,
                f"Improvement too small ({improvement:.2f}% < {threshold}% threshold)",
                position,
            )

    if best.adjusted_yield >= threshold:
        return RebalanceDecision(
            True,
            f"Better yield available: {best.name} ({best.adjusted_yield:.2f}% adjusted)",
            position,
        )
    return RebalanceDecision(
        False,
        f"Improvement too small ({best.adjusted_yield:.2f}% < {threshold}% threshold)",
        position,
    )
