import logging

from rebalancer.engine.models import RiskAssessment
from rebalancer.engine.rebalance_policy import PositionState, ThresholdMode, decide


def _best(protocol_id: str = "morpho", adjusted: float = 4.68) -> RiskAssessment:
    return RiskAssessment(
        protocol_id=protocol_id,
        name="Morpho",
        apy=5.2,
        tvl=30_000_000,
        risk_score=0.1,
        adjusted_yield=adjusted,
    )


def test_unallocated_always_rebalances():
    decision = decide("none", _best(adjusted=0.01), 0.5)
    assert decision.should_rebalance
    assert decision.position is PositionState.UNALLOCATED
    assert decision.reason == "No current position - initial allocation needed"


def test_empty_current_id_counts_as_unallocated():
    assert decide(None, _best(), 0.5).position is PositionState.UNALLOCATED


def test_aligned_position_holds():
    decision = decide("morpho", _best(), 0.5)
    assert not decision.should_rebalance
    assert decision.reason == "Already in optimal protocol Morpho"


def test_absolute_threshold_compares_candidate_yield():
    decision = decide("aave-v3", _best(adjusted=4.68), 0.5)
    assert decision.should_rebalance
    assert decision.position is PositionState.MISALIGNED
    assert decision.reason.startswith("Better yield available: Morpho")


def test_absolute_threshold_rejects_tiny_yields():
    decision = decide("aave-v3", _best(adjusted=0.3), 0.5)
    assert not decision.should_rebalance
    assert decision.reason == "Improvement too small (0.30% < 0.5% threshold)"


def test_improvement_mode_compares_against_current_yield():
    decision = decide(
        "aave-v3",
        _best(adjusted=4.68),
        0.5,
        mode=ThresholdMode.IMPROVEMENT,
        current_adjusted_yield=4.5,
    )
    assert not decision.should_rebalance
    assert "0.18%" in decision.reason

    decision = decide(
        "aave-v3",
        _best(adjusted=4.68),
        0.5,
        mode=ThresholdMode.IMPROVEMENT,
        current_adjusted_yield=3.0,
    )
    assert decision.should_rebalance


def test_improvement_mode_falls_back_without_current_yield(caplog):
    caplog.set_level(logging.WARNING)
    decision = decide("aave-v3", _best(adjusted=4.68), 0.5, mode=ThresholdMode.IMPROVEMENT)
    assert decision.should_rebalance
    assert any("falling back to absolute threshold" in record.getMessage() for record in caplog.records)


def test_decision_payload():
    payload = decide("morpho", _best(), 0.5).to_payload()
    assert payload == {
        "should_rebalance": False,
        "reason": "Already in optimal protocol Morpho",
        "position": "aligned",
    }
