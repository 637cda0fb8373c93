"""Adapters around the external transaction signer."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Protocol, Tuple, Union

from .metrics import MetricRegistry, Timer
from .models import ExecutionStep

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignerReceipt:
    success: bool
    tx_hash: Optional[str] = None
    error: Optional[str] = None


SignerReply = Union[SignerReceipt, Mapping[str, Any]]


class Signer(Protocol):
    """Signer collaborator; ``amount=None`` means the entire position.

    Implementations may also expose ``approve(protocol_id, amount=None)``.
    """

    async def withdraw(self, protocol_id: str, amount: Optional[float] = None) -> SignerReply:
        ...

    async def deposit(self, protocol_id: str, amount: Optional[float] = None) -> SignerReply:
        ...


class SignerAdapter:
    """Bounded-wait wrapper converting every signer failure into a receipt.

    Exceptions, timeouts and malformed replies become ``success=False``
    receipts. Nothing is retried here.
    """

    def __init__(
        self,
        signer: Signer,
        *,
        timeout_seconds: float = 5.0,
        metrics: Optional[MetricRegistry] = None,
    ) -> None:
        self._signer = signer
        self._timeout = timeout_seconds
        self._metrics = metrics or MetricRegistry()

    @property
    def supports_approve(self) -> bool:
        return callable(getattr(self._signer, "approve", None))

    async def withdraw(self, protocol_id: str, amount: Optional[float] = None) -> SignerReceipt:
        return await self._call(ExecutionStep.WITHDRAW, protocol_id, amount)

    async def approve(self, protocol_id: str, amount: Optional[float] = None) -> SignerReceipt:
        if not self.supports_approve:
            return SignerReceipt(success=True)
        return await self._call(ExecutionStep.APPROVE, protocol_id, amount)

    async def deposit(self, protocol_id: str, amount: Optional[float] = None) -> SignerReceipt:
        return await self._call(ExecutionStep.DEPOSIT, protocol_id, amount)

    async def _call(self, step: ExecutionStep, protocol_id: str, amount: Optional[float]) -> SignerReceipt:
        labels = {"protocol": protocol_id, "op": step.value}
        method = getattr(self._signer, step.value)
        with Timer(self._metrics, "signer_call_latency_seconds", labels=labels):
            try:
                reply = await asyncio.wait_for(method(protocol_id, amount), timeout=self._timeout)
            except asyncio.TimeoutError:
                self._metrics.inc("signer_errors_total", labels={**labels, "code": "timeout"})
                logger.error(
                    "Signer call timed out",
                    extra={"protocol": protocol_id, "op": step.value, "timeout_seconds": self._timeout},
                )
                return SignerReceipt(success=False, error=f"{step.value} timed out after {self._timeout}s")
            except Exception as exc:
                self._metrics.inc("signer_errors_total", labels={**labels, "code": _error_code(exc)})
                logger.error(
                    "Signer call raised",
                    extra={"protocol": protocol_id, "op": step.value, "error": str(exc)},
                    exc_info=True,
                )
                return SignerReceipt(success=False, error=str(exc) or type(exc).__name__)
        receipt = _coerce_receipt(reply)
        if not receipt.success:
            self._metrics.inc("signer_errors_total", labels={**labels, "code": "rejected"})
            logger.warning(
                "Signer rejected transaction",
                extra={"protocol": protocol_id, "op": step.value, "error": receipt.error},
            )
        return receipt


def _coerce_receipt(reply: Any) -> SignerReceipt:
    if isinstance(reply, SignerReceipt):
        return reply
    if isinstance(reply, Mapping):
        success = reply.get("success")
        if not isinstance(success, bool):
            return SignerReceipt(success=False, error=f"Malformed signer reply: {dict(reply)!r}")
        tx_hash = reply.get("tx_hash") or reply.get("txHash")
        error = reply.get("error")
        return SignerReceipt(
            success=success,
            tx_hash=str(tx_hash) if tx_hash else None,
            error=str(error) if error else None,
        )
    return SignerReceipt(success=False, error=f"Malformed signer reply of type {type(reply).__name__}")


def _error_code(exc: Exception) -> str:
    code = getattr(exc, "code", None)
    if isinstance(code, (int, str)) and str(code):
        return str(code)
    return type(exc).__name__


class SimulatedSigner:
    """Signer that never touches a chain; used for dry runs and local setups."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, str, Optional[float]]] = []

    async def withdraw(self, protocol_id: str, amount: Optional[float] = None) -> SignerReceipt:
        return self._record("withdraw", protocol_id, amount)

    async def approve(self, protocol_id: str, amount: Optional[float] = None) -> SignerReceipt:
        return self._record("approve", protocol_id, amount)

    async def deposit(self, protocol_id: str, amount: Optional[float] = None) -> SignerReceipt:
        return self._record("deposit", protocol_id, amount)

    def _record(self, op: str, protocol_id: str, amount: Optional[float]) -> SignerReceipt:
        self.calls.append((op, protocol_id, amount))
        logger.info("[SIMULATED] %s %s %s", op, "all" if amount is None else f"{amount:.2f}", protocol_id)
        return SignerReceipt(success=True, tx_hash=f"0x{op}_{int(time.time() * 1000)}")
