"""Side-effectful execution of withdraw -> approve -> deposit transitions."""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional, Union

from .config import RebalancerConfig
from .errors import PersistenceError, StateConflictError
from .metrics import MetricRegistry
from .models import (
    ActionType,
    BatchSummary,
    ExecutionResult,
    ExecutionStep,
    RebalanceAction,
    RebalanceRecord,
    RiskAssessment,
    SystemState,
    TransitionResult,
    TransitionStatus,
)
from .signer import Signer, SignerAdapter, SignerReceipt
from .state_store import HISTORY, STATE, StateStore

logger = logging.getLogger(__name__)


class ExecutionOrchestrator:
    """Carry out transitions against the signer and persist their outcome.

    Every step is attempted at most once. A failed withdraw aborts the
    transition cleanly; a failure after a successful withdraw is reported as
    ``PARTIAL_FAILURE`` and leaves ``SystemState`` on the source protocol.
    """

    def __init__(
        self,
        config: RebalancerConfig,
        *,
        signer: Union[Signer, SignerAdapter],
        state_store: StateStore,
        metrics: Optional[MetricRegistry] = None,
    ) -> None:
        self._config = config
        self._metrics = metrics or MetricRegistry()
        if isinstance(signer, SignerAdapter):
            self._signer = signer
        else:
            self._signer = SignerAdapter(
                signer, timeout_seconds=config.execution.call_timeout_seconds, metrics=self._metrics
            )
        self._state_store = state_store

    async def execute(
        self,
        from_: Optional[RiskAssessment],
        to: RiskAssessment,
        amount: Optional[float] = None,
        *,
        state: Optional[SystemState] = None,
    ) -> TransitionResult:
        """Move ``amount`` (``None`` = everything) from ``from_`` into ``to``.

        ``from_`` is ``None`` for an initial allocation, which skips the
        withdraw. ``state`` is the compare-and-set base; it is read from the
        store when omitted.
        """

        from_id = from_.protocol_id if from_ is not None else None
        action = RebalanceAction(
            type=ActionType.INITIAL if from_ is None else ActionType.REBALANCE,
            amount_usd=amount,
            reason=f"Move capital into {to.name}",
            from_protocol_id=from_id,
            to_protocol_id=to.protocol_id,
        )
        result = TransitionResult(
            status=TransitionStatus.FAILED,
            from_protocol_id=from_id,
            to_protocol_id=to.protocol_id,
            amount_usd=amount,
        )
        context = {"from_protocol": from_id, "to_protocol": to.protocol_id, "amount": amount}

        if state is None:
            try:
                state = self._state_store.get_state() or SystemState.initial()
            except PersistenceError as exc:
                result.error = f"Cannot read current state: {exc}"
                logger.error("Aborting transition; state unavailable", extra={**context, "error": str(exc)})
                return self._finish(result)

        if self._config.execution.dry_run:
            logger.warning("[DRY-RUN] Would move capital", extra=context)
            result.status = TransitionStatus.DRY_RUN
            return self._finish(result)

        logger.info("Starting transition", extra=context)
        if from_ is not None:
            withdraw = await self._step(action, ExecutionStep.WITHDRAW, from_.protocol_id, amount, result)
            if not withdraw.success:
                result.error = f"Withdraw from {from_id} failed: {withdraw.error}"
                logger.error("Transition aborted at withdraw; no deposit attempted", extra={**context, "error": withdraw.error})
                return self._finish(result)

        deposit = await self._approve_and_deposit(action, to.protocol_id, amount, result)
        if not deposit.success:
            result.error = f"Deposit into {to.protocol_id} failed: {deposit.error}"
            if from_ is None:
                logger.error("Initial allocation failed; capital remains in wallet", extra={**context, "error": deposit.error})
                return self._finish(result)
            result.status = TransitionStatus.PARTIAL_FAILURE
            logger.critical(
                "Withdraw succeeded but deposit failed; capital is outside every protocol and needs reconciliation",
                extra={**context, "error": deposit.error},
            )
            self._record_history(result, RebalanceRecord(from_id, to.protocol_id, amount, result.status, None, result.error))
            return self._finish(result)

        result.status = TransitionStatus.SUCCESS
        result.tx_hash = deposit.tx_hash
        self._record_history(result, RebalanceRecord(from_id, to.protocol_id, amount, result.status, deposit.tx_hash))
        self._advance_state(result, state, to)
        return self._finish(result)

    async def execute_actions(
        self,
        actions: Iterable[RebalanceAction],
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchSummary:
        """Run independent actions in priority order.

        One action failing does not block the next. Cancellation is only
        honoured between actions, never in the middle of one.
        """

        ordered = sorted(actions, key=lambda action: action.priority)
        for action in ordered:
            _validate(action)
        summary = BatchSummary()
        if self._config.execution.dry_run:
            logger.warning("[DRY-RUN] Would execute %d actions", len(ordered))
            summary.skipped = list(ordered)
            summary.dry_run = True
            return summary

        for index, action in enumerate(ordered):
            if cancel_event is not None and cancel_event.is_set():
                summary.cancelled = True
                summary.skipped = ordered[index:]
                logger.warning(
                    "Batch cancelled between actions",
                    extra={"completed": index, "skipped": len(summary.skipped)},
                )
                break
            for step_result in await self._run_action(action, summary):
                summary.results.append(step_result)
                if step_result.success:
                    summary.success_count += 1
                else:
                    summary.fail_count += 1

        self._metrics.inc("rebalance_batch_steps_total", labels={"outcome": "success"}, amount=summary.success_count)
        self._metrics.inc("rebalance_batch_steps_total", labels={"outcome": "failed"}, amount=summary.fail_count)
        logger.info(
            "Batch execution finished",
            extra={
                "success_count": summary.success_count,
                "fail_count": summary.fail_count,
                "cancelled": summary.cancelled,
            },
        )
        return summary

    async def _run_action(self, action: RebalanceAction, summary: BatchSummary) -> List[ExecutionResult]:
        steps: List[ExecutionResult] = []
        amount = action.amount_usd
        if action.type is ActionType.WITHDRAW:
            receipt = await self._step(action, ExecutionStep.WITHDRAW, _require(action.from_protocol_id, action), amount, steps)
            if receipt.success:
                self._append_batch_history(
                    RebalanceRecord(action.from_protocol_id, "wallet", amount, TransitionStatus.SUCCESS, receipt.tx_hash),
                    summary,
                )
            return steps

        target = _require(action.to_protocol_id, action)
        withdrew = False
        if action.type is ActionType.REBALANCE:
            receipt = await self._step(action, ExecutionStep.WITHDRAW, _require(action.from_protocol_id, action), amount, steps)
            if not receipt.success:
                logger.error(
                    "Skipping deposit after failed withdraw",
                    extra={"from_protocol": action.from_protocol_id, "to_protocol": target, "error": receipt.error},
                )
                return steps
            withdrew = True

        deposit = await self._approve_and_deposit(action, target, amount, steps)
        if deposit.success:
            outcome = TransitionStatus.SUCCESS
        elif withdrew:
            outcome = TransitionStatus.PARTIAL_FAILURE
            logger.critical(
                "Withdraw succeeded but deposit failed; capital needs reconciliation",
                extra={"from_protocol": action.from_protocol_id, "to_protocol": target, "error": deposit.error},
            )
        else:
            return steps
        self._append_batch_history(
            RebalanceRecord(action.from_protocol_id, target, amount, outcome, deposit.tx_hash, deposit.error),
            summary,
        )
        return steps

    async def _approve_and_deposit(
        self,
        action: RebalanceAction,
        protocol_id: str,
        amount: Optional[float],
        sink: Union[TransitionResult, List[ExecutionResult]],
    ) -> SignerReceipt:
        if self._config.execution.require_approval and self._signer.supports_approve:
            approval = await self._step(action, ExecutionStep.APPROVE, protocol_id, amount, sink)
            if not approval.success:
                return approval
        return await self._step(action, ExecutionStep.DEPOSIT, protocol_id, amount, sink)

    async def _step(
        self,
        action: RebalanceAction,
        step: ExecutionStep,
        protocol_id: str,
        amount: Optional[float],
        sink: Union[TransitionResult, List[ExecutionResult]],
    ) -> SignerReceipt:
        call = getattr(self._signer, step.value)
        receipt: SignerReceipt = await call(protocol_id, amount)
        outcome = ExecutionResult(
            action=action,
            step=step,
            success=receipt.success,
            tx_hash=receipt.tx_hash,
            error=receipt.error,
        )
        steps = sink.steps if isinstance(sink, TransitionResult) else sink
        steps.append(outcome)
        logger.info(
            "Executed %s step",
            step.value,
            extra={"protocol": protocol_id, "amount": amount, "success": receipt.success, "tx_hash": receipt.tx_hash},
        )
        return receipt

    def _record_history(self, result: TransitionResult, record: RebalanceRecord) -> None:
        try:
            self._state_store.append_history(record)
        except PersistenceError as exc:
            result.persistence_errors[HISTORY] = str(exc)
            self._metrics.inc("persistence_errors_total", labels={"kind": HISTORY})
            logger.error(
                "Failed to record rebalance history",
                extra={"from_protocol": record.from_protocol_id, "to_protocol": record.to_protocol_id, "error": str(exc)},
                exc_info=True,
            )
            return
        result.history_persisted = True

    def _append_batch_history(self, record: RebalanceRecord, summary: BatchSummary) -> None:
        try:
            self._state_store.append_history(record)
        except PersistenceError as exc:
            summary.persistence_errors.append(str(exc))
            self._metrics.inc("persistence_errors_total", labels={"kind": HISTORY})
            logger.error("Failed to record rebalance history: %s", exc, exc_info=True)

    def _advance_state(self, result: TransitionResult, base: SystemState, to: RiskAssessment) -> None:
        try:
            self._state_store.set_state(base.advance_to(to), expected_version=base.version)
        except StateConflictError as exc:
            result.persistence_errors[STATE] = str(exc)
            self._metrics.inc("persistence_errors_total", labels={"kind": "state_conflict"})
            logger.critical(
                "System state changed during transition; next tick may act on a stale position",
                extra={"to_protocol": to.protocol_id, "error": str(exc)},
            )
            return
        except PersistenceError as exc:
            result.persistence_errors[STATE] = str(exc)
            self._metrics.inc("persistence_errors_total", labels={"kind": STATE})
            logger.critical(
                "Failed to update system state; next tick will act on a stale position",
                extra={"to_protocol": to.protocol_id, "error": str(exc)},
                exc_info=True,
            )
            return
        result.state_persisted = True

    def _finish(self, result: TransitionResult) -> TransitionResult:
        self._metrics.inc("rebalance_transitions_total", labels={"status": result.status.value})
        return result


def _validate(action: RebalanceAction) -> None:
    if action.type in (ActionType.WITHDRAW, ActionType.REBALANCE):
        _require(action.from_protocol_id, action)
    if action.type is not ActionType.WITHDRAW:
        _require(action.to_protocol_id, action)
    if action.amount_usd is not None and action.amount_usd <= 0:
        raise ValueError(f"{action.type.value} action has a non-positive amount: {action.amount_usd}")


def _require(protocol_id: Optional[str], action: RebalanceAction) -> str:
    if not protocol_id:
        raise ValueError(f"{action.type.value} action is missing a protocol id: {action!r}")
    return protocol_id
