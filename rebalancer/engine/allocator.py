"""Target allocation computation over scored protocols."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import List, Mapping, Optional, Sequence

from .errors import EmptyInputError
from .models import (
    ActionType,
    AllocationEntry,
    AllocationPlan,
    RebalanceAction,
    RiskAssessment,
    SystemState,
    utcnow,
)

logger = logging.getLogger(__name__)

WITHDRAW_PRIORITY = 1
DEPOSIT_PRIORITY = 2


def choose_best(assessed: Sequence[RiskAssessment]) -> RiskAssessment:
    """Return the assessment with the highest adjusted yield.

    Ties keep the first entry seen in ``assessed``.
    """

    if not assessed:
        raise EmptyInputError("No protocols available to choose from")
    best = assessed[0]
    for candidate in assessed[1:]:
        if candidate.adjusted_yield > best.adjusted_yield:
            best = candidate
    return best


def eligible(assessed: Sequence[RiskAssessment], max_risk_score: float) -> List[RiskAssessment]:
    return [item for item in assessed if item.risk_score <= max_risk_score]


def optimal_allocation(
    assessed: Sequence[RiskAssessment],
    total_capital_usd: float,
    max_protocols: int,
    max_risk_score: float,
    *,
    now: Optional[datetime] = None,
) -> AllocationPlan:
    """Split ``total_capital_usd`` across the best risk-eligible protocols.

    Protocols with a negative adjusted yield are excluded. Survivors are
    weighted proportionally to their adjusted yield. When every survivor has a
    zero adjusted yield the capital is split equally. An empty survivor set
    produces an empty plan, meaning the capital stays in cash.
    """

    if max_protocols < 1:
        raise ValueError(f"max_protocols must be at least 1, got {max_protocols}")
    if total_capital_usd < 0:
        raise ValueError(f"total_capital_usd must not be negative, got {total_capital_usd}")
    computed_at = now or utcnow()

    within_risk = eligible(assessed, max_risk_score)
    negative = [item.protocol_id for item in within_risk if item.adjusted_yield < 0]
    if negative:
        logger.warning("Excluding protocols with negative adjusted yield", extra={"protocols": negative})
    survivors = sorted(
        (item for item in within_risk if item.adjusted_yield >= 0),
        key=lambda item: item.adjusted_yield,
        reverse=True,
    )
    survivors = survivors[:max_protocols]
    if not survivors:
        logger.info(
            "No protocol within risk limit; keeping capital unallocated",
            extra={"max_risk_score": max_risk_score, "candidates": len(assessed)},
        )
        return AllocationPlan(total_capital_usd=total_capital_usd, computed_at=computed_at)

    total_adjusted = sum(item.adjusted_yield for item in survivors)
    if total_adjusted > 0:
        weights = [item.adjusted_yield / total_adjusted for item in survivors]
    else:
        # Only reachable when every survivor yields exactly zero.
        logger.warning(
            "All eligible protocols have zero adjusted yield; using equal weights",
            extra={"protocols": [item.protocol_id for item in survivors]},
        )
        weights = [1.0 / len(survivors)] * len(survivors)

    entries = tuple(
        AllocationEntry(
            protocol_id=item.protocol_id,
            percentage=weight * 100,
            amount_usd=total_capital_usd * weight,
            expected_yield=item.apy,
            risk_score=item.risk_score,
        )
        for item, weight in zip(survivors, weights)
    )
    expected_apy = sum(entry.expected_yield * entry.percentage / 100 for entry in entries)
    weighted_risk = sum(entry.risk_score * entry.percentage / 100 for entry in entries)
    return AllocationPlan(
        total_capital_usd=total_capital_usd,
        entries=entries,
        expected_portfolio_apy=expected_apy,
        weighted_risk_score=weighted_risk,
        computed_at=computed_at,
    )


def transition_actions(
    state: SystemState, best: RiskAssessment, amount_usd: Optional[float], reason: str
) -> List[RebalanceAction]:
    """Single-venue instruction moving everything into ``best``."""

    if not state.is_allocated:
        return [
            RebalanceAction(
                type=ActionType.INITIAL,
                amount_usd=amount_usd,
                reason=reason,
                to_protocol_id=best.protocol_id,
                priority=DEPOSIT_PRIORITY,
            )
        ]
    if state.current_protocol_id == best.protocol_id:
        return []
    return [
        RebalanceAction(
            type=ActionType.REBALANCE,
            amount_usd=amount_usd,
            reason=reason,
            from_protocol_id=state.current_protocol_id,
            to_protocol_id=best.protocol_id,
            priority=WITHDRAW_PRIORITY,
        )
    ]


def plan_actions(
    current: Mapping[str, float],
    target: AllocationPlan,
    *,
    min_trade_usd: float = 1.0,
) -> List[RebalanceAction]:
    """Diff current holdings against ``target`` into ordered actions.

    ``current`` maps protocol id to the USD amount held there. Withdrawals are
    ordered before deposits so freed capital is available for the deposits.
    """

    held = {protocol_id: amount for protocol_id, amount in current.items() if amount > 0}
    wanted = target.amounts_by_protocol()

    if not held:
        return [
            RebalanceAction(
                type=ActionType.INITIAL,
                amount_usd=amount,
                reason=f"Initial allocation of {amount:.2f} USD",
                to_protocol_id=protocol_id,
                priority=DEPOSIT_PRIORITY,
            )
            for protocol_id, amount in wanted.items()
            if amount >= min_trade_usd
        ]

    actions: List[RebalanceAction] = []
    for protocol_id, amount in held.items():
        delta = amount - wanted.get(protocol_id, 0.0)
        if delta < min_trade_usd:
            continue
        exiting = protocol_id not in wanted
        actions.append(
            RebalanceAction(
                type=ActionType.WITHDRAW,
                # A full exit withdraws the whole position.
                amount_usd=None if exiting else delta,
                reason="Protocol no longer in target allocation" if exiting else f"Reduce by {delta:.2f} USD",
                from_protocol_id=protocol_id,
                priority=WITHDRAW_PRIORITY,
            )
        )
    for protocol_id, amount in wanted.items():
        delta = amount - held.get(protocol_id, 0.0)
        if delta < min_trade_usd:
            continue
        actions.append(
            RebalanceAction(
                type=ActionType.DEPOSIT,
                amount_usd=delta,
                reason=f"Increase by {delta:.2f} USD",
                to_protocol_id=protocol_id,
                priority=DEPOSIT_PRIORITY,
            )
        )
    actions.sort(key=lambda action: action.priority)
    return actions
