"""FastAPI application exposing the rebalancer over HTTP."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse

from .controllers import RebalanceController
from ..engine.errors import EmptyInputError, PersistenceError, TickInProgressError, UnknownProtocolError

logger = logging.getLogger(__name__)


def _optional_bool(payload: Mapping[str, Any], key: str) -> bool:
    value = payload.get(key, False)
    if isinstance(value, bool):
        return value
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"'{key}' must be a boolean")


def _parse_max_risk(raw: Optional[str]) -> Optional[float]:
    if raw in (None, ""):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="max_risk must be numeric")
    if not 0 <= value <= 1:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="max_risk must be between 0 and 1")
    return value


def create_app(controller: RebalanceController) -> FastAPI:
    app = FastAPI(title="Yield Rebalancer")
    app.state.controller = controller

    def get_controller(request: Request) -> RebalanceController:
        return request.app.state.controller

    @app.exception_handler(EmptyInputError)
    async def _empty_input(_: Request, exc: EmptyInputError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)

    @app.exception_handler(UnknownProtocolError)
    async def _unknown_protocol(_: Request, exc: UnknownProtocolError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_400_BAD_REQUEST)

    @app.exception_handler(TickInProgressError)
    async def _tick_in_progress(_: Request, exc: TickInProgressError) -> JSONResponse:
        return JSONResponse({"detail": str(exc)}, status_code=status.HTTP_409_CONFLICT)

    @app.exception_handler(PersistenceError)
    async def _persistence(_: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("Persistence failure while serving request", extra={"kind": exc.kind})
        return JSONResponse({"detail": str(exc), "kind": exc.kind}, status_code=status.HTTP_503_SERVICE_UNAVAILABLE)

    @app.get("/api/health", response_class=JSONResponse)
    async def api_health(controller: RebalanceController = Depends(get_controller)) -> JSONResponse:
        return JSONResponse(controller.health())

    @app.get("/api/yields", response_class=JSONResponse)
    async def api_yields(
        max_risk: Optional[str] = None,
        controller: RebalanceController = Depends(get_controller),
    ) -> JSONResponse:
        return JSONResponse(await controller.list_yields(_parse_max_risk(max_risk)))

    @app.get("/api/allocate", response_class=JSONResponse)
    async def api_allocate(controller: RebalanceController = Depends(get_controller)) -> JSONResponse:
        return JSONResponse(await controller.compute_allocation())

    @app.get("/api/rebalance", response_class=JSONResponse)
    async def api_rebalance_preview(
        protocol_id: Optional[str] = None,
        controller: RebalanceController = Depends(get_controller),
    ) -> JSONResponse:
        return JSONResponse(await controller.preview(protocol_id or None))

    @app.post("/api/rebalance", response_class=JSONResponse)
    async def api_rebalance(
        request: Request,
        controller: RebalanceController = Depends(get_controller),
    ) -> JSONResponse:
        body = await request.body()
        payload: Any = {}
        if body:
            try:
                payload = await request.json()
            except Exception as exc:  # pragma: no cover - invalid JSON yields 400
                raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON payload") from exc
        if not isinstance(payload, Mapping):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Rebalance payload must be an object")
        protocol_id = payload.get("protocol_id")
        if protocol_id is not None and (not isinstance(protocol_id, str) or not protocol_id.strip()):
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="protocol_id must be a non-empty string")
        result = await controller.rebalance(
            force=_optional_bool(payload, "force"),
            protocol_id=protocol_id.strip() if protocol_id else None,
            dry_run=_optional_bool(payload, "dry_run"),
        )
        return JSONResponse(result)

    @app.get("/api/metrics", response_class=JSONResponse)
    async def api_metrics(
        history_limit: int = 20,
        controller: RebalanceController = Depends(get_controller),
    ) -> JSONResponse:
        if history_limit < 1:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="history_limit must be positive")
        return JSONResponse(controller.metrics_payload(history_limit))

    return app
