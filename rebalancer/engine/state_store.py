"""Persistence of the current position, rebalance history and plan snapshots."""

from __future__ import annotations

import json
import logging
import tempfile
import threading
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import PersistenceError, StateConflictError
from .models import AllocationPlan, RebalanceRecord, SystemState

logger = logging.getLogger(__name__)

STATE = "state"
HISTORY = "history"
SNAPSHOT = "snapshot"


class StateStore:
    """Storage collaborator interface.

    ``set_state`` with ``expected_version`` is a compare-and-set: it raises
    :class:`StateConflictError` when the stored version differs. Write failures
    raise :class:`PersistenceError` whose ``kind`` names the record type.
    """

    def get_state(self) -> Optional[SystemState]:  # pragma: no cover - interface
        raise NotImplementedError

    def set_state(self, state: SystemState, *, expected_version: Optional[int] = None) -> SystemState:  # pragma: no cover - interface
        raise NotImplementedError

    def append_history(self, record: RebalanceRecord) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def append_snapshot(self, plan: AllocationPlan) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def list_history(self, limit: int = 20) -> List[Dict[str, Any]]:  # pragma: no cover - interface
        raise NotImplementedError

    def latest_snapshot(self) -> Optional[Dict[str, Any]]:  # pragma: no cover - interface
        raise NotImplementedError


class InMemoryStateStore(StateStore):
    """Process-local store for dry runs and tests."""

    def __init__(self, state: Optional[SystemState] = None) -> None:
        self._state = state
        self._lock = threading.Lock()
        self.history: List[Dict[str, Any]] = []
        self.snapshots: List[Dict[str, Any]] = []

    def get_state(self) -> Optional[SystemState]:
        return self._state

    def set_state(self, state: SystemState, *, expected_version: Optional[int] = None) -> SystemState:
        with self._lock:
            current_version = self._state.version if self._state is not None else 0
            if expected_version is not None and expected_version != current_version:
                raise StateConflictError(expected_version, current_version)
            stored = replace(state, version=current_version + 1)
            self._state = stored
            return stored

    def append_history(self, record: RebalanceRecord) -> None:
        self.history.append(record.to_payload())

    def append_snapshot(self, plan: AllocationPlan) -> None:
        self.snapshots.append(plan.to_payload())

    def list_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        return list(reversed(self.history))[:limit]

    def latest_snapshot(self) -> Optional[Dict[str, Any]]:
        return self.snapshots[-1] if self.snapshots else None


class FileStateStore(StateStore):
    """JSON state file plus JSONL history and snapshot logs in ``directory``."""

    def __init__(self, directory: Path) -> None:
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        self._state_path = self._directory / "system_state.json"
        self._history_path = self._directory / "rebalance_history.jsonl"
        self._snapshot_path = self._directory / "portfolio_snapshots.jsonl"
        self._lock = threading.Lock()

    @property
    def directory(self) -> Path:
        return self._directory

    def get_state(self) -> Optional[SystemState]:
        if not self._state_path.exists():
            return None
        try:
            payload = json.loads(self._state_path.read_text(encoding="utf-8"))
            return SystemState.from_payload(payload)
        except (OSError, ValueError, TypeError, AttributeError) as exc:
            # An unreadable position must not be mistaken for "no position".
            raise PersistenceError(STATE, f"unreadable state file {self._state_path}: {exc}") from exc

    def set_state(self, state: SystemState, *, expected_version: Optional[int] = None) -> SystemState:
        with self._lock:
            current = self.get_state()
            current_version = current.version if current is not None else 0
            if expected_version is not None and expected_version != current_version:
                raise StateConflictError(expected_version, current_version)
            stored = replace(state, version=current_version + 1)
            try:
                _atomic_write(self._state_path, json.dumps(stored.to_payload(), indent=2))
            except OSError as exc:
                raise PersistenceError(STATE, f"failed to write {self._state_path}: {exc}") from exc
            logger.debug("Persisted system state", extra={"version": stored.version, "protocol": stored.current_protocol_id})
            return stored

    def append_history(self, record: RebalanceRecord) -> None:
        self._append(self._history_path, record.to_payload(), kind=HISTORY)

    def append_snapshot(self, plan: AllocationPlan) -> None:
        self._append(self._snapshot_path, plan.to_payload(), kind=SNAPSHOT)

    def list_history(self, limit: int = 20) -> List[Dict[str, Any]]:
        entries = self._read_lines(self._history_path)
        return list(reversed(entries))[:limit]

    def latest_snapshot(self) -> Optional[Dict[str, Any]]:
        entries = self._read_lines(self._snapshot_path)
        return entries[-1] if entries else None

    def _append(self, path: Path, payload: Dict[str, Any], *, kind: str) -> None:
        line = json.dumps(payload, sort_keys=True)
        try:
            with self._lock, path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            raise PersistenceError(kind, f"failed to append to {path}: {exc}") from exc

    def _read_lines(self, path: Path) -> List[Dict[str, Any]]:
        try:
            with path.open("r", encoding="utf-8") as handle:
                lines = [line.strip() for line in handle if line.strip()]
        except FileNotFoundError:
            return []
        entries: List[Dict[str, Any]] = []
        for line in lines:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.error("Skipping invalid JSON line in %s", path)
        return entries


def _atomic_write(path: Path, content: str) -> None:
    tmp = tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding="utf-8")
    try:
        with tmp as handle:
            handle.write(content)
            handle.flush()
        Path(tmp.name).replace(path)
    except Exception:
        Path(tmp.name).unlink(missing_ok=True)
        raise
