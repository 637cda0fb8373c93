import asyncio

import pytest

from rebalancer.engine.config import ProtocolConfig
from rebalancer.engine.market_data import ProtocolFeed, StaticMarketData, metrics_from_payload
from rebalancer.engine.models import ProtocolMetrics
from services.telemetry import ResiliencePolicy, Telemetry


def test_metrics_from_payload_accepts_camel_case_age_and_name_only():
    metrics = metrics_from_payload({"name": "Aave", "apy": "4.5", "tvl": 50_000_000, "ageMonths": 40})
    assert metrics.id == "aave"
    assert metrics.apy == 4.5
    assert metrics.age_months == 40


@pytest.mark.parametrize(
    "payload",
    [
        {"name": "X", "tvl": 1.0},
        {"name": "X", "apy": "n/a", "tvl": 1.0},
        {"name": "X", "apy": float("nan"), "tvl": 1.0},
        {"name": "X", "apy": 1.0, "tvl": -5},
        {"name": "X", "apy": -1.0, "tvl": 1.0},
        {"apy": 1.0, "tvl": 1.0},
        ["not", "a", "mapping"],
    ],
)
def test_metrics_from_payload_rejects_unusable_payloads(payload):
    with pytest.raises(ValueError):
        metrics_from_payload(payload)


def test_feed_drops_failing_and_malformed_protocols(caplog):
    async def aave():
        return {"id": "aave-v3", "name": "Aave", "apy": 4.5, "tvl": 50_000_000}

    async def morpho():
        raise ConnectionError("subgraph unavailable")

    async def broken():
        return {"id": "broken", "name": "Broken", "apy": None, "tvl": 1}

    telemetry = Telemetry()
    feed = ProtocolFeed({"aave-v3": aave, "morpho": morpho, "broken": broken}, telemetry=telemetry)

    metrics = asyncio.run(feed.fetch_protocols())

    assert [item.id for item in metrics] == ["aave-v3"]
    health = telemetry.health_snapshot()
    assert health["status"] == "degraded"
    assert health["collaborators"]["market_data:aave-v3"]["status"] == "healthy"
    assert health["collaborators"]["market_data:morpho"]["reason"] == "subgraph unavailable"
    assert health["collaborators"]["market_data:broken"]["reason"] == "malformed"
    assert "Failed to fetch protocol metrics" in caplog.text


def test_feed_times_out_slow_protocols():
    async def slow():
        await asyncio.sleep(5)
        return {"id": "slow", "name": "Slow", "apy": 1.0, "tvl": 1.0}

    feed = ProtocolFeed({"slow": slow}, telemetry=Telemetry(policy=ResiliencePolicy(timeout_seconds=0.01)))

    assert asyncio.run(feed.fetch_protocols()) == []
    assert feed.telemetry.collaborators["market_data:slow"].detail == "timeout"


def test_feed_respects_enabled_filter():
    async def fetch():
        return {"id": "aave-v3", "name": "Aave", "apy": 4.5, "tvl": 1.0}

    feed = ProtocolFeed({"aave-v3": fetch, "morpho": fetch}, enabled=["morpho"])
    assert len(asyncio.run(feed.fetch_protocols())) == 1


def test_static_market_data_serves_enabled_protocols_only():
    source = StaticMarketData(
        [
            ProtocolConfig(id="aave-v3", name="Aave", apy=4.5, tvl=50_000_000),
            ProtocolConfig(id="compound-v3", name="Compound", apy=3.8, tvl=80_000_000, enabled=False),
            ProtocolConfig(id="pending", name="Pending"),
        ]
    )
    metrics = asyncio.run(source.fetch_protocols())
    assert [item.id for item in metrics] == ["aave-v3"]
    assert metrics[0].chain == "base"


def test_typed_metrics_with_negative_yield_are_rejected():
    with pytest.raises(ValueError):
        metrics_from_payload(ProtocolMetrics(id="neg", name="Neg", apy=-1.0, tvl=1.0))


def test_static_market_data_skips_negative_yields(caplog):
    source = StaticMarketData(
        [
            ProtocolConfig(id="aave-v3", name="Aave", apy=4.5, tvl=50_000_000),
            ProtocolConfig(id="neg", name="Neg", apy=-2.0, tvl=50_000_000),
        ]
    )
    assert [item.id for item in asyncio.run(source.fetch_protocols())] == ["aave-v3"]
    assert "Skipping misconfigured protocol neg" in caplog.text
