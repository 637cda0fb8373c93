"""Configuration schema for the rebalancing engine."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .rebalance_policy import ThresholdMode


@dataclass
class AllocationConfig:
    """Capital and risk constraints consumed by the allocator and policy."""

    total_capital_usd: float = 1_000.0
    max_protocols: int = 3
    max_risk_score: float = 0.5
    min_yield_improvement_pct: float = 0.5
    threshold_mode: ThresholdMode = ThresholdMode.ABSOLUTE


@dataclass
class ExecutionConfig:
    """Safety rails for the execution orchestrator."""

    dry_run: bool = False
    call_timeout_seconds: float = 5.0
    require_approval: bool = True
    min_trade_usd: float = 1.0


@dataclass
class ScheduleConfig:
    rebalance_interval_hours: float = 24.0
    data_timeout_seconds: float = 5.0
    data_max_retries: int = 0


@dataclass
class ProtocolConfig:
    """A venue known to the feed; ``apy``/``tvl`` seed the static data source."""

    id: str
    name: str
    chain: str = "base"
    enabled: bool = True
    apy: Optional[float] = None
    tvl: Optional[float] = None
    age_months: Optional[int] = None


DEFAULT_PROTOCOLS = (
    ProtocolConfig(id="aave-v3", name="Aave", apy=4.5, tvl=50_000_000),
    ProtocolConfig(id="morpho", name="Morpho", apy=5.2, tvl=30_000_000),
    ProtocolConfig(id="compound-v3", name="Compound", apy=3.8, tvl=80_000_000, enabled=False),
)


@dataclass
class RebalancerConfig:
    """Unified configuration for allocation, execution and scheduling."""

    allocation: AllocationConfig = field(default_factory=AllocationConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    protocols: List[ProtocolConfig] = field(default_factory=lambda: [replace(p) for p in DEFAULT_PROTOCOLS])
    state_dir: Optional[Path] = None

    @property
    def enabled_protocols(self) -> List[ProtocolConfig]:
        return [protocol for protocol in self.protocols if protocol.enabled]

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any], *, base_dir: Optional[Path] = None) -> "RebalancerConfig":
        """Build a config from a parsed JSON object, keeping defaults for missing keys."""

        config = cls()
        allocation = _section(payload, "allocation")
        if "total_capital_usd" in allocation:
            config.allocation.total_capital_usd = float(allocation["total_capital_usd"])
        if "max_protocols" in allocation:
            config.allocation.max_protocols = int(allocation["max_protocols"])
        if "max_risk_score" in allocation:
            config.allocation.max_risk_score = float(allocation["max_risk_score"])
        if "min_yield_improvement_pct" in allocation:
            config.allocation.min_yield_improvement_pct = float(allocation["min_yield_improvement_pct"])
        if "threshold_mode" in allocation:
            config.allocation.threshold_mode = _threshold_mode(allocation["threshold_mode"])

        execution = _section(payload, "execution")
        if "dry_run" in execution:
            config.execution.dry_run = _coerce_bool(execution["dry_run"])
        if "call_timeout_seconds" in execution:
            config.execution.call_timeout_seconds = float(execution["call_timeout_seconds"])
        if "require_approval" in execution:
            config.execution.require_approval = _coerce_bool(execution["require_approval"], default=True)
        if "min_trade_usd" in execution:
            config.execution.min_trade_usd = float(execution["min_trade_usd"])

        schedule = _section(payload, "schedule")
        if "rebalance_interval_hours" in schedule:
            config.schedule.rebalance_interval_hours = float(schedule["rebalance_interval_hours"])
        if "data_timeout_seconds" in schedule:
            config.schedule.data_timeout_seconds = float(schedule["data_timeout_seconds"])
        if "data_max_retries" in schedule:
            config.schedule.data_max_retries = int(schedule["data_max_retries"])

        protocols = payload.get("protocols")
        if protocols is not None:
            if not isinstance(protocols, list):
                raise TypeError(f"protocols must be a JSON array, not {type(protocols).__name__}.")
            config.protocols = [_protocol_from_mapping(item) for item in protocols]

        state_dir = payload.get("state_dir")
        if state_dir:
            path = Path(str(state_dir)).expanduser()
            if not path.is_absolute() and base_dir is not None:
                path = base_dir / path
            config.state_dir = path.resolve()

        config.validate()
        return config

    def validate(self) -> None:
        if self.allocation.total_capital_usd < 0:
            raise ValueError("allocation.total_capital_usd must not be negative")
        if self.allocation.max_protocols < 1:
            raise ValueError("allocation.max_protocols must be at least 1")
        if not 0 <= self.allocation.max_risk_score <= 1:
            raise ValueError("allocation.max_risk_score must be between 0 and 1")
        if self.execution.call_timeout_seconds <= 0:
            raise ValueError("execution.call_timeout_seconds must be positive")
        if self.schedule.rebalance_interval_hours <= 0:
            raise ValueError("schedule.rebalance_interval_hours must be positive")
        seen = set()
        for protocol in self.protocols:
            if protocol.id in seen:
                raise ValueError(f"Duplicate protocol id {protocol.id!r}")
            seen.add(protocol.id)


def load_config(path: Path) -> RebalancerConfig:
    """Load a JSON configuration file with helpful error messages."""

    path = Path(path)
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"Configuration file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in configuration file {path}: {exc}") from exc
    if not isinstance(payload, Mapping):
        raise TypeError(f"Configuration in {path} must be a JSON object, not {type(payload).__name__}.")
    return RebalancerConfig.from_mapping(payload, base_dir=path.parent)


@dataclass
class Settings:
    """Single entry point for configuration with environment overrides."""

    config: RebalancerConfig
    debug_level: int = 1

    @classmethod
    def from_environment(
        cls, *, config: Optional[RebalancerConfig] = None, env: Optional[Mapping[str, str]] = None
    ) -> "Settings":
        env = os.environ if env is None else env
        if config is None:
            config_path = env.get("REBALANCER_CONFIG")
            config = load_config(Path(config_path)) if config_path else RebalancerConfig()

        capital = _env_float(env.get("REBALANCER_TOTAL_CAPITAL_USD"))
        if capital is not None:
            config.allocation.total_capital_usd = capital
        max_protocols = _env_int(env.get("REBALANCER_MAX_PROTOCOLS"))
        if max_protocols is not None and max_protocols > 0:
            config.allocation.max_protocols = max_protocols
        max_risk = _env_float(env.get("REBALANCER_MAX_RISK_SCORE"))
        if max_risk is not None:
            config.allocation.max_risk_score = max_risk
        min_improvement = _env_float(env.get("REBALANCER_MIN_YIELD_IMPROVEMENT_PCT"))
        if min_improvement is not None:
            config.allocation.min_yield_improvement_pct = min_improvement
        mode = env.get("REBALANCER_THRESHOLD_MODE")
        if mode:
            config.allocation.threshold_mode = _threshold_mode(mode)

        interval = _env_float(env.get("REBALANCER_REBALANCE_INTERVAL_HOURS"))
        if interval is not None and interval > 0:
            config.schedule.rebalance_interval_hours = interval

        dry_run = _env_bool(env.get("REBALANCER_DRY_RUN"))
        if dry_run is not None:
            config.execution.dry_run = dry_run
        timeout = _env_float(env.get("REBALANCER_CALL_TIMEOUT_SECONDS"))
        if timeout is not None and timeout > 0:
            config.execution.call_timeout_seconds = timeout

        state_dir = env.get("REBALANCER_STATE_DIR")
        if state_dir:
            config.state_dir = Path(state_dir).expanduser()

        debug_level = _env_int(env.get("REBALANCER_DEBUG"))
        config.validate()
        return cls(config=config, debug_level=1 if debug_level is None else debug_level)


def _section(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key) or {}
    if not isinstance(value, Mapping):
        raise TypeError(f"{key} must be a JSON object, not {type(value).__name__}.")
    return value


def _protocol_from_mapping(item: Any) -> ProtocolConfig:
    if not isinstance(item, Mapping):
        raise TypeError(f"protocol entries must be JSON objects, not {type(item).__name__}.")
    name = str(item.get("name") or "").strip()
    protocol_id = str(item.get("id") or name.lower()).strip()
    if not protocol_id:
        raise ValueError("protocol entries require an 'id' or 'name'")
    age = item.get("age_months")
    return ProtocolConfig(
        id=protocol_id,
        name=name or protocol_id,
        chain=str(item.get("chain") or "base"),
        enabled=_coerce_bool(item.get("enabled"), default=True),
        apy=float(item["apy"]) if item.get("apy") is not None else None,
        tvl=float(item["tvl"]) if item.get("tvl") is not None else None,
        age_months=int(age) if age is not None else None,
    )


def _threshold_mode(value: Any) -> ThresholdMode:
    try:
        return ThresholdMode(str(value).strip().lower())
    except ValueError as exc:
        choices = ", ".join(mode.value for mode in ThresholdMode)
        raise ValueError(f"threshold_mode must be one of {choices}, got {value!r}") from exc


def _coerce_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        return default
    return bool(value)


def _env_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _env_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _env_bool(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def as_payload(config: RebalancerConfig) -> Dict[str, Any]:
    return {
        "allocation": {
            "total_capital_usd": config.allocation.total_capital_usd,
            "max_protocols": config.allocation.max_protocols,
            "max_risk_score": config.allocation.max_risk_score,
            "min_yield_improvement_pct": config.allocation.min_yield_improvement_pct,
            "threshold_mode": config.allocation.threshold_mode.value,
        },
        "execution": {
            "dry_run": config.execution.dry_run,
            "call_timeout_seconds": config.execution.call_timeout_seconds,
            "require_approval": config.execution.require_approval,
            "min_trade_usd": config.execution.min_trade_usd,
        },
        "schedule": {"rebalance_interval_hours": config.schedule.rebalance_interval_hours},
        "protocols": [
            {"id": protocol.id, "name": protocol.name, "chain": protocol.chain, "enabled": protocol.enabled}
            for protocol in config.protocols
        ],
    }
