"""Market data boundary: raw protocol payloads in, typed metrics out."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Iterable, List, Mapping, Optional, Protocol, Sequence, Union

from services.telemetry import Telemetry

from .config import ProtocolConfig
from .models import ProtocolMetrics

logger = logging.getLogger(__name__)

RawMetrics = Union[ProtocolMetrics, Mapping[str, Any]]
Fetcher = Callable[[], Awaitable[RawMetrics]]


class MarketDataSource(Protocol):
    async def fetch_protocols(self) -> Sequence[ProtocolMetrics]:
        ...


def metrics_from_payload(payload: RawMetrics) -> ProtocolMetrics:
    """Convert a ``{id?, name, apy, tvl, chain?, age_months?}`` payload.

    Raises ``ValueError`` when the payload lacks a usable name, APY or TVL.
    """

    if isinstance(payload, ProtocolMetrics):
        _check_ranges(payload.id, payload.apy, payload.tvl)
        return payload
    if not isinstance(payload, Mapping):
        raise ValueError(f"Protocol payload must be a mapping, got {type(payload).__name__}")
    name = str(payload.get("name") or "").strip()
    protocol_id = str(payload.get("id") or name.lower()).strip()
    if not protocol_id:
        raise ValueError("Protocol payload is missing both 'id' and 'name'")
    apy = _require_float(payload, "apy")
    tvl = _require_float(payload, "tvl")
    _check_ranges(protocol_id, apy, tvl)
    age = payload.get("age_months", payload.get("ageMonths"))
    try:
        age_months = int(age) if age is not None else None
    except (TypeError, ValueError):
        logger.debug("Ignoring unparseable age %r for %s", age, protocol_id)
        age_months = None
    chain = payload.get("chain")
    return ProtocolMetrics(
        id=protocol_id,
        name=name or protocol_id,
        apy=apy,
        tvl=tvl,
        age_months=age_months,
        chain=str(chain) if chain else None,
    )


def _check_ranges(protocol_id: str, apy: float, tvl: float) -> None:
    if tvl < 0:
        raise ValueError(f"Protocol {protocol_id} reported negative TVL {tvl}")
    if apy < 0:
        raise ValueError(f"Protocol {protocol_id} reported negative APY {apy}")


def _require_float(payload: Mapping[str, Any], key: str) -> float:
    value = payload.get(key)
    if value is None:
        raise ValueError(f"Protocol payload is missing {key!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Protocol payload has non-numeric {key!r}: {value!r}") from exc
    if number != number:
        raise ValueError(f"Protocol payload has NaN {key!r}")
    return number


class ProtocolFeed:
    """Collect metrics from one fetcher per protocol, tolerating partial failure.

    A protocol whose fetcher raises, times out or returns an unusable payload is
    dropped for this tick; the remaining protocols are returned in fetcher order.
    """

    def __init__(
        self,
        fetchers: Mapping[str, Fetcher],
        *,
        telemetry: Optional[Telemetry] = None,
        enabled: Optional[Iterable[str]] = None,
    ) -> None:
        self._fetchers = dict(fetchers)
        self._telemetry = telemetry or Telemetry()
        self._enabled = set(enabled) if enabled is not None else None

    @property
    def telemetry(self) -> Telemetry:
        return self._telemetry

    async def fetch_protocols(self) -> List[ProtocolMetrics]:
        collected: List[ProtocolMetrics] = []
        for protocol_id, fetcher in self._fetchers.items():
            if self._enabled is not None and protocol_id not in self._enabled:
                continue
            try:
                raw = await self._telemetry.call(f"market_data:{protocol_id}", fetcher)
            except Exception as exc:
                logger.error(
                    "Failed to fetch protocol metrics",
                    extra={"protocol": protocol_id, "error": str(exc) or type(exc).__name__},
                    exc_info=True,
                )
                continue
            try:
                metrics = metrics_from_payload(raw)
            except ValueError as exc:
                self._telemetry.mark_degraded(f"market_data:{protocol_id}", "malformed")
                logger.warning(
                    "Ignoring malformed protocol metrics",
                    extra={"protocol": protocol_id, "error": str(exc)},
                )
                continue
            collected.append(metrics)
        logger.info(
            "Fetched protocol metrics",
            extra={"available": len(collected), "configured": len(self._fetchers)},
        )
        return collected


class StaticMarketData:
    """Serve configured APY/TVL figures for enabled protocols."""

    def __init__(self, protocols: Iterable[ProtocolConfig]) -> None:
        self._protocols = list(protocols)

    async def fetch_protocols(self) -> List[ProtocolMetrics]:
        metrics: List[ProtocolMetrics] = []
        for protocol in self._protocols:
            if not protocol.enabled:
                continue
            if protocol.apy is None or protocol.tvl is None:
                logger.warning("Protocol %s has no static APY/TVL configured; skipping", protocol.id)
                continue
            payload = {
                "id": protocol.id,
                "name": protocol.name,
                "apy": protocol.apy,
                "tvl": protocol.tvl,
                "age_months": protocol.age_months,
                "chain": protocol.chain,
            }
            try:
                metrics.append(metrics_from_payload(payload))
            except ValueError as exc:
                logger.warning("Skipping misconfigured protocol %s: %s", protocol.id, exc)
        return metrics
