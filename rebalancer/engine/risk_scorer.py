"""Additive risk model turning protocol metrics into a risk-adjusted yield."""

from __future__ import annotations

from typing import Iterable, List

from .models import ProtocolMetrics, RiskAssessment

SMALL_TVL_USD = 10_000_000
MEDIUM_TVL_USD = 50_000_000
SMALL_TVL_PENALTY = 0.3
MEDIUM_TVL_PENALTY = 0.1

ANOMALOUS_APY_PCT = 25.0
ELEVATED_APY_PCT = 15.0
ANOMALOUS_APY_PENALTY = 0.3
ELEVATED_APY_PENALTY = 0.2

IMMATURE_AGE_MONTHS = 6
IMMATURITY_PENALTY = 0.15

MAX_RISK_SCORE = 0.9


def tvl_penalty(tvl: float) -> float:
    if tvl < SMALL_TVL_USD:
        return SMALL_TVL_PENALTY
    if tvl < MEDIUM_TVL_USD:
        return MEDIUM_TVL_PENALTY
    return 0.0


def yield_anomaly_penalty(apy: float) -> float:
    # The higher bracket supersedes the lower one.
    if apy > ANOMALOUS_APY_PCT:
        return ANOMALOUS_APY_PENALTY
    if apy > ELEVATED_APY_PCT:
        return ELEVATED_APY_PENALTY
    return 0.0


def immaturity_penalty(age_months: int | None) -> float:
    if age_months is not None and age_months < IMMATURE_AGE_MONTHS:
        return IMMATURITY_PENALTY
    return 0.0


def score(metrics: ProtocolMetrics) -> RiskAssessment:
    """Return the risk assessment for ``metrics``.

    The score is the sum of the TVL, yield-anomaly and immaturity penalties,
    clamped to ``[0, MAX_RISK_SCORE]`` so no protocol is ever modelled as a
    certain loss.
    """

    raw = tvl_penalty(metrics.tvl) + yield_anomaly_penalty(metrics.apy) + immaturity_penalty(metrics.age_months)
    risk_score = round(min(max(raw, 0.0), MAX_RISK_SCORE), 10)
    return RiskAssessment(
        protocol_id=metrics.id,
        name=metrics.name,
        apy=metrics.apy,
        tvl=metrics.tvl,
        risk_score=risk_score,
        adjusted_yield=metrics.apy * (1 - risk_score),
    )


def score_all(metrics: Iterable[ProtocolMetrics]) -> List[RiskAssessment]:
    return [score(item) for item in metrics]
