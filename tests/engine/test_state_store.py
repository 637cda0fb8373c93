import json

import pytest

from rebalancer.engine.errors import PersistenceError, StateConflictError
from rebalancer.engine.models import AllocationPlan, RebalanceRecord, SystemState, TransitionStatus
from rebalancer.engine.state_store import FileStateStore, InMemoryStateStore


def test_file_store_round_trips_state(tmp_path):
    store = FileStateStore(tmp_path)
    assert store.get_state() is None

    stored = store.set_state(SystemState(current_protocol_id="morpho", current_apy=5.2, current_risk_score=0.1))

    assert stored.version == 1
    reloaded = FileStateStore(tmp_path).get_state()
    assert reloaded == stored
    assert json.loads((tmp_path / "system_state.json").read_text())["current_protocol_id"] == "morpho"


def test_compare_and_set_rejects_stale_version(tmp_path):
    store = FileStateStore(tmp_path)
    store.set_state(SystemState(current_protocol_id="aave-v3"), expected_version=0)
    store.set_state(SystemState(current_protocol_id="morpho"), expected_version=1)

    with pytest.raises(StateConflictError) as excinfo:
        store.set_state(SystemState(current_protocol_id="compound-v3"), expected_version=1)

    assert excinfo.value.actual_version == 2
    assert store.get_state().current_protocol_id == "morpho"


def test_in_memory_store_compare_and_set():
    store = InMemoryStateStore()
    store.set_state(SystemState(current_protocol_id="aave-v3"), expected_version=0)
    with pytest.raises(StateConflictError):
        store.set_state(SystemState(current_protocol_id="morpho"), expected_version=0)


def test_corrupt_state_file_is_not_treated_as_empty(tmp_path):
    (tmp_path / "system_state.json").write_text("{not json")
    with pytest.raises(PersistenceError) as excinfo:
        FileStateStore(tmp_path).get_state()
    assert excinfo.value.kind == "state"


def test_history_is_listed_newest_first(tmp_path):
    store = FileStateStore(tmp_path)
    for target in ("aave-v3", "morpho", "compound-v3"):
        store.append_history(RebalanceRecord(None, target, 100.0, TransitionStatus.SUCCESS, "0xabc"))

    history = store.list_history(limit=2)

    assert [entry["to_protocol_id"] for entry in history] == ["compound-v3", "morpho"]
    assert history[0]["outcome"] == "success"


def test_snapshots_and_bad_lines(tmp_path, caplog):
    store = FileStateStore(tmp_path)
    assert store.latest_snapshot() is None
    store.append_snapshot(AllocationPlan(total_capital_usd=100.0))
    with (tmp_path / "portfolio_snapshots.jsonl").open("a") as handle:
        handle.write("garbage\n")

    latest = store.latest_snapshot()

    assert latest["total_capital_usd"] == 100.0
    assert "Skipping invalid JSON line" in caplog.text


def test_write_failure_raises_persistence_error(tmp_path):
    store = FileStateStore(tmp_path)
    (tmp_path / "rebalance_history.jsonl").mkdir()
    with pytest.raises(PersistenceError) as excinfo:
        store.append_history(RebalanceRecord(None, "morpho", 1.0, TransitionStatus.SUCCESS))
    assert excinfo.value.kind == "history"
