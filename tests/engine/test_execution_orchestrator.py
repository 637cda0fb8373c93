import asyncio
import logging
from typing import List, Optional, Set, Tuple

import pytest

from rebalancer.engine.config import ExecutionConfig, RebalancerConfig
from rebalancer.engine.errors import PersistenceError
from rebalancer.engine.execution import ExecutionOrchestrator
from rebalancer.engine.metrics import MetricRegistry
from rebalancer.engine.models import (
    ActionType,
    ExecutionStep,
    RebalanceAction,
    RiskAssessment,
    SystemState,
    TransitionStatus,
)
from rebalancer.engine.signer import SignerReceipt
from rebalancer.engine.state_store import InMemoryStateStore


def _assessment(protocol_id: str, apy: float = 5.0, risk: float = 0.0) -> RiskAssessment:
    return RiskAssessment(protocol_id, protocol_id.title(), apy, 100_000_000, risk, apy * (1 - risk))


AAVE = _assessment("aave-v3", 4.5)
MORPHO = _assessment("morpho", 5.2, 0.1)


class FakeSigner:
    def __init__(self, *, fail: Set[Tuple[str, str]] = frozenset(), hang: Set[Tuple[str, str]] = frozenset()):
        self.fail = set(fail)
        self.hang = set(hang)
        self.calls: List[Tuple[str, str, Optional[float]]] = []

    async def _handle(self, op: str, protocol_id: str, amount: Optional[float]):
        self.calls.append((op, protocol_id, amount))
        if (op, protocol_id) in self.hang:
            await asyncio.sleep(10)
        if (op, protocol_id) in self.fail:
            return {"success": False, "error": f"{op} reverted"}
        return {"success": True, "txHash": f"0x{op}-{protocol_id}"}

    async def withdraw(self, protocol_id, amount=None):
        return await self._handle("withdraw", protocol_id, amount)

    async def approve(self, protocol_id, amount=None):
        return await self._handle("approve", protocol_id, amount)

    async def deposit(self, protocol_id, amount=None):
        return await self._handle("deposit", protocol_id, amount)


class RaisingSigner:
    async def withdraw(self, protocol_id, amount=None):
        raise ConnectionError("rpc down")

    async def deposit(self, protocol_id, amount=None):
        return SignerReceipt(success=True, tx_hash="0xdeposit")


class FailingHistoryStore(InMemoryStateStore):
    def append_history(self, record):
        raise PersistenceError("history", "disk full")


def _orchestrator(signer, store, *, dry_run=False, timeout=1.0, metrics=None):
    config = RebalancerConfig(execution=ExecutionConfig(dry_run=dry_run, call_timeout_seconds=timeout))
    return ExecutionOrchestrator(config, signer=signer, state_store=store, metrics=metrics)


def test_initial_allocation_deposits_and_advances_state():
    signer = FakeSigner()
    store = InMemoryStateStore()
    metrics = MetricRegistry()

    result = asyncio.run(_orchestrator(signer, store, metrics=metrics).execute(None, MORPHO, 1000.0))

    assert result.status is TransitionStatus.SUCCESS
    assert [call[0] for call in signer.calls] == ["approve", "deposit"]
    assert result.tx_hash == "0xdeposit-morpho"
    state = store.get_state()
    assert state.current_protocol_id == "morpho"
    assert state.current_apy == 5.2
    assert state.version == 1
    assert result.history_persisted and result.state_persisted
    assert store.history[0]["outcome"] == "success"
    assert metrics.count("rebalance_transitions_total", labels={"status": "success"}) == 1


def test_rebalance_withdraws_entire_position_then_deposits():
    signer = FakeSigner()
    store = InMemoryStateStore(SystemState(current_protocol_id="aave-v3", current_apy=4.5))

    result = asyncio.run(_orchestrator(signer, store).execute(AAVE, MORPHO))

    assert result.success
    assert signer.calls == [
        ("withdraw", "aave-v3", None),
        ("approve", "morpho", None),
        ("deposit", "morpho", None),
    ]
    assert store.get_state().current_protocol_id == "morpho"


def test_withdraw_failure_aborts_without_deposit_or_history():
    signer = FakeSigner(fail={("withdraw", "aave-v3")})
    original = SystemState(current_protocol_id="aave-v3", current_apy=4.5)
    store = InMemoryStateStore(original)

    result = asyncio.run(_orchestrator(signer, store).execute(AAVE, MORPHO))

    assert result.status is TransitionStatus.FAILED
    assert result.error.startswith("Withdraw from aave-v3 failed")
    assert [call[0] for call in signer.calls] == ["withdraw"]
    assert store.get_state() == original
    assert store.history == []


def test_deposit_failure_after_withdraw_is_partial_failure(caplog):
    caplog.set_level(logging.CRITICAL)
    signer = FakeSigner(fail={("deposit", "morpho")})
    original = SystemState(current_protocol_id="aave-v3", current_apy=4.5)
    store = InMemoryStateStore(original)

    result = asyncio.run(_orchestrator(signer, store).execute(AAVE, MORPHO))

    assert result.status is TransitionStatus.PARTIAL_FAILURE
    assert result.requires_reconciliation
    assert not result.state_persisted
    assert store.get_state() == original
    assert store.history[-1]["outcome"] == "partial_failure"
    assert any(record.levelno == logging.CRITICAL for record in caplog.records)
    # One attempt per step, no automatic retry.
    assert [call[0] for call in signer.calls].count("deposit") == 1


def test_failed_initial_deposit_is_a_clean_failure():
    signer = FakeSigner(fail={("deposit", "morpho")})
    store = InMemoryStateStore()

    result = asyncio.run(_orchestrator(signer, store).execute(None, MORPHO, 100.0))

    assert result.status is TransitionStatus.FAILED
    assert not result.requires_reconciliation
    assert store.get_state() is None


def test_signer_exception_becomes_failed_result():
    metrics = MetricRegistry()
    store = InMemoryStateStore(SystemState(current_protocol_id="aave-v3"))

    result = asyncio.run(_orchestrator(RaisingSigner(), store, metrics=metrics).execute(AAVE, MORPHO))

    assert result.status is TransitionStatus.FAILED
    assert "rpc down" in result.error
    assert metrics.count(
        "signer_errors_total", labels={"protocol": "aave-v3", "op": "withdraw", "code": "ConnectionError"}
    ) == 1


def test_signer_timeout_is_bounded():
    signer = FakeSigner(hang={("withdraw", "aave-v3")})
    store = InMemoryStateStore(SystemState(current_protocol_id="aave-v3"))

    result = asyncio.run(_orchestrator(signer, store, timeout=0.01).execute(AAVE, MORPHO))

    assert result.status is TransitionStatus.FAILED
    assert "timed out" in result.error


def test_signer_without_approve_skips_approval():
    signer = RaisingSigner()
    store = InMemoryStateStore()

    result = asyncio.run(_orchestrator(signer, store).execute(None, MORPHO, 10.0))

    assert result.success
    assert [step.step for step in result.steps] == [ExecutionStep.DEPOSIT]


def test_dry_run_never_calls_signer():
    signer = FakeSigner()
    store = InMemoryStateStore()

    result = asyncio.run(_orchestrator(signer, store, dry_run=True).execute(None, MORPHO, 10.0))

    assert result.status is TransitionStatus.DRY_RUN
    assert signer.calls == []
    assert store.get_state() is None


def test_history_failure_is_reported_but_state_still_advances():
    store = FailingHistoryStore()

    result = asyncio.run(_orchestrator(FakeSigner(), store).execute(None, MORPHO, 10.0))

    assert result.success
    assert not result.history_persisted
    assert "history" in result.persistence_errors
    assert result.state_persisted


def test_stale_state_is_not_overwritten():
    store = InMemoryStateStore(SystemState(current_protocol_id="aave-v3"))
    stale = store.get_state()
    store.set_state(SystemState(current_protocol_id="compound-v3"))

    result = asyncio.run(_orchestrator(FakeSigner(), store).execute(AAVE, MORPHO, state=stale))

    assert result.success
    assert not result.state_persisted
    assert "state" in result.persistence_errors
    assert store.get_state().current_protocol_id == "compound-v3"


def _batch_actions():
    return [
        RebalanceAction(ActionType.DEPOSIT, 50.0, "grow", to_protocol_id="morpho", priority=2),
        RebalanceAction(ActionType.WITHDRAW, None, "exit", from_protocol_id="compound-v3", priority=1),
        RebalanceAction(ActionType.DEPOSIT, 25.0, "grow", to_protocol_id="aave-v3", priority=2),
    ]


def test_batch_runs_in_priority_order_and_continues_after_failure():
    signer = FakeSigner(fail={("deposit", "morpho")})
    store = InMemoryStateStore()

    summary = asyncio.run(_orchestrator(signer, store).execute_actions(_batch_actions()))

    assert signer.calls[0] == ("withdraw", "compound-v3", None)
    assert ("deposit", "aave-v3", 25.0) in signer.calls
    assert summary.fail_count == 1
    assert summary.success_count == 4  # withdraw, approve x2, deposit into aave
    assert not summary.cancelled
    assert store.get_state() is None


def test_batch_cancellation_between_actions():
    store = InMemoryStateStore()
    cancel = asyncio.Event()

    class CancellingSigner(FakeSigner):
        async def withdraw(self, protocol_id, amount=None):
            cancel.set()
            return await super().withdraw(protocol_id, amount)

    signer = CancellingSigner()
    summary = asyncio.run(_orchestrator(signer, store).execute_actions(_batch_actions(), cancel_event=cancel))

    assert summary.cancelled
    assert [call[0] for call in signer.calls] == ["withdraw"]
    assert len(summary.skipped) == 2


def test_batch_dry_run_skips_everything():
    signer = FakeSigner()
    summary = asyncio.run(_orchestrator(signer, InMemoryStateStore(), dry_run=True).execute_actions(_batch_actions()))
    assert summary.dry_run
    assert len(summary.skipped) == 3
    assert signer.calls == []


def test_batch_rejects_malformed_action_before_signing():
    signer = FakeSigner()
    actions = _batch_actions() + [RebalanceAction(ActionType.DEPOSIT, 10.0, "missing target")]
    with pytest.raises(ValueError):
        asyncio.run(_orchestrator(signer, InMemoryStateStore()).execute_actions(actions))
    assert signer.calls == []


class FailingStateWriteStore(InMemoryStateStore):
    def set_state(self, state, *, expected_version=None):
        raise PersistenceError("state", "read-only filesystem")


def test_state_write_failure_is_distinguished_from_history_failure(caplog):
    caplog.set_level(logging.CRITICAL)
    store = FailingStateWriteStore()

    result = asyncio.run(_orchestrator(FakeSigner(), store).execute(None, MORPHO, 10.0))

    assert result.success
    assert result.persistence_errors == {"state": "state: read-only filesystem"}
    assert result.history_persisted is True
    assert result.state_persisted is False
    assert store.history[-1]["outcome"] == "success"
    assert "Failed to update system state" in caplog.text


def _move(amount=100.0):
    return RebalanceAction(ActionType.REBALANCE, amount, "move", from_protocol_id="aave-v3", to_protocol_id="morpho")


def test_batch_rebalance_withdraws_then_deposits():
    signer = FakeSigner()
    store = InMemoryStateStore()

    summary = asyncio.run(_orchestrator(signer, store).execute_actions([_move()]))

    assert signer.calls == [
        ("withdraw", "aave-v3", 100.0),
        ("approve", "morpho", 100.0),
        ("deposit", "morpho", 100.0),
    ]
    assert summary.success_count == 3
    assert summary.fail_count == 0
    assert store.history[-1]["from_protocol_id"] == "aave-v3"
    assert store.history[-1]["to_protocol_id"] == "morpho"
    assert store.history[-1]["outcome"] == "success"


def test_batch_rebalance_skips_deposit_after_failed_withdraw(caplog):
    caplog.set_level(logging.ERROR)
    signer = FakeSigner(fail={("withdraw", "aave-v3")})
    store = InMemoryStateStore()

    summary = asyncio.run(_orchestrator(signer, store).execute_actions([_move()]))

    assert [call[0] for call in signer.calls] == ["withdraw"]
    assert summary.fail_count == 1
    assert summary.success_count == 0
    assert store.history == []
    assert "Skipping deposit after failed withdraw" in caplog.text


def test_batch_rebalance_failed_deposit_records_partial_failure(caplog):
    caplog.set_level(logging.CRITICAL)
    signer = FakeSigner(fail={("deposit", "morpho")})
    store = InMemoryStateStore()

    summary = asyncio.run(_orchestrator(signer, store).execute_actions([_move()]))

    assert [call[0] for call in signer.calls] == ["withdraw", "approve", "deposit"]
    assert summary.fail_count == 1
    assert store.history[-1]["outcome"] == "partial_failure"
    assert any(record.levelno == logging.CRITICAL for record in caplog.records)


def test_batch_history_failure_is_reported_in_summary():
    metrics = MetricRegistry()
    actions = [RebalanceAction(ActionType.WITHDRAW, None, "exit", from_protocol_id="compound-v3")]

    summary = asyncio.run(
        _orchestrator(FakeSigner(), FailingHistoryStore(), metrics=metrics).execute_actions(actions)
    )

    assert summary.success_count == 1
    assert summary.persistence_errors == ["history: disk full"]
    assert summary.to_payload()["persistence_errors"] == ["history: disk full"]
    assert metrics.count("persistence_errors_total", labels={"kind": "history"}) == 1
