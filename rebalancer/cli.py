"""Command line entry point for the yield rebalancer."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, TYPE_CHECKING

from services.telemetry import ResiliencePolicy, Telemetry

from .api.controllers import RebalanceController
from .engine.config import ProtocolConfig, RebalancerConfig, Settings, load_config
from .engine.control_loop import ControlLoop
from .engine.errors import RebalancerError
from .engine.execution import ExecutionOrchestrator
from .engine.market_data import Fetcher, ProtocolFeed
from .engine.metrics import MetricRegistry
from .engine.signer import SimulatedSigner
from .engine.state_store import FileStateStore, InMemoryStateStore, StateStore
from .logging_setup import configure_logging

if TYPE_CHECKING:  # pragma: no cover - used only for type hints
    import uvicorn

logger = logging.getLogger(__name__)


def _import_uvicorn() -> "uvicorn":
    """Import :mod:`uvicorn` with a helpful error message when missing."""

    try:
        import uvicorn  # type: ignore[import]
    except ModuleNotFoundError as exc:  # pragma: no cover - depends on runtime environment
        raise ModuleNotFoundError(
            "The 'uvicorn' package is required to serve the rebalancer API. "
            "Install yield-rebalancer with its default dependencies or add uvicorn to your environment."
        ) from exc
    return uvicorn


def _configured_fetcher(protocol: ProtocolConfig) -> Fetcher:
    async def fetch() -> Dict[str, Any]:
        return {
            "id": protocol.id,
            "name": protocol.name,
            "apy": protocol.apy,
            "tvl": protocol.tvl,
            "age_months": protocol.age_months,
            "chain": protocol.chain,
        }

    return fetch


def build_controller(config: RebalancerConfig, *, state_store: Optional[StateStore] = None) -> RebalanceController:
    """Wire a controller around configured market data and the simulated signer."""

    telemetry = Telemetry(
        policy=ResiliencePolicy(
            timeout_seconds=config.schedule.data_timeout_seconds,
            max_retries=config.schedule.data_max_retries,
        )
    )
    metrics = MetricRegistry()
    source = ProtocolFeed(
        {protocol.id: _configured_fetcher(protocol) for protocol in config.enabled_protocols},
        telemetry=telemetry,
    )
    if state_store is None:
        state_store = FileStateStore(config.state_dir) if config.state_dir else InMemoryStateStore()
    # No on-chain signer ships with the package; transactions are simulated.
    orchestrator = ExecutionOrchestrator(config, signer=SimulatedSigner(), state_store=state_store, metrics=metrics)
    loop = ControlLoop(source, orchestrator, state_store, config, metrics=metrics)
    return RebalanceController(loop, telemetry=telemetry)


def _print(payload: Dict[str, Any]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


async def _run_tick(controller: RebalanceController, args: argparse.Namespace) -> Dict[str, Any]:
    return await controller.rebalance(
        force=args.force is not None,
        protocol_id=args.force or None,
        dry_run=args.dry_run,
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Risk-adjusted yield rebalancer")
    parser.add_argument("--config", type=Path, help="Path to a JSON configuration file")
    parser.add_argument("--debug", type=int, help="Verbosity: 0 warnings, 1 info, 2 debug")
    subparsers = parser.add_subparsers(dest="command", required=True)

    tick = subparsers.add_parser("tick", help="Run one rebalancing tick")
    tick.add_argument("--dry-run", action="store_true", help="Decide without signing or persisting")
    tick.add_argument(
        "--force",
        nargs="?",
        const="",
        default=None,
        metavar="PROTOCOL",
        help="Ignore the improvement threshold; optionally name the target protocol",
    )

    subparsers.add_parser("preview", help="Show the decision the next tick would take")

    serve = subparsers.add_parser("serve", help="Serve the HTTP API")
    serve.add_argument("--host", default="127.0.0.1", help="Host address for the API server")
    serve.add_argument("--port", type=int, default=8000, help="Port for the API server")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    config = load_config(args.config) if args.config else None
    settings = Settings.from_environment(config=config)
    configure_logging(settings.debug_level if args.debug is None else args.debug)
    controller = build_controller(settings.config)

    if args.command == "serve":
        from .api.app import create_app

        uvicorn = _import_uvicorn()
        logger.info("Starting rebalancer API", extra={"host": args.host, "port": args.port})
        uvicorn.run(create_app(controller), host=args.host, port=args.port, log_config=None)
        return 0

    try:
        if args.command == "preview":
            payload = asyncio.run(controller.preview())
        else:
            payload = asyncio.run(_run_tick(controller, args))
    except RebalancerError as exc:
        logger.error("Rebalance rejected: %s", exc)
        return 2
    _print(payload)
    transition = payload.get("transition") or {}
    return 1 if transition.get("status") in {"failed", "partial_failure"} else 0


if __name__ == "__main__":  # pragma: no cover - manual execution
    raise SystemExit(main())
