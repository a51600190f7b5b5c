"""Simulated swap executor used for replay and dry runs."""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass

import config
from utils.addressing import short_id

logger = logging.getLogger(__name__)


@dataclass
class EntryRequest:
    token_id: str
    size: float
    reference_price: float


@dataclass
class ExitRequest:
    token_id: str
    reason: str
    token_quantity: float
    reference_price: float


@dataclass
class ExecutionResult:
    ok: bool
    token_id: str
    fill_price: float = 0.0
    token_quantity: float = 0.0
    cost_basis: float = 0.0
    proceeds: float = 0.0
    tx_id: str = ""
    error: str = ""


class PaperExecutor:
    """Fills at the reference price adjusted by ``PAPER_SLIPPAGE_PCT``.

    ``PAPER_FAIL_RATE`` makes a share of requests fail so the open/close
    failure paths get exercised in replays.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._rng = rng or random.Random()
        self.buys = 0
        self.sells = 0
        self.failures = 0

    def _should_fail(self) -> bool:
        rate = float(getattr(config, "PAPER_FAIL_RATE", 0.0) or 0.0)
        return rate > 0 and self._rng.random() < rate

    @staticmethod
    def _slippage() -> float:
        return max(0.0, float(getattr(config, "PAPER_SLIPPAGE_PCT", 0.0) or 0.0)) / 100.0

    async def buy(self, request: EntryRequest) -> ExecutionResult:
        await asyncio.sleep(0)
        if request.reference_price <= 0 or request.size <= 0:
            self.failures += 1
            return ExecutionResult(ok=False, token_id=request.token_id, error="invalid_buy_request")
        if self._should_fail():
            self.failures += 1
            logger.warning("PAPER_BUY_FAIL token=%s size=%.4f", short_id(request.token_id), request.size)
            return ExecutionResult(ok=False, token_id=request.token_id, error="paper_simulated_failure")
        fill = request.reference_price * (1.0 + self._slippage())
        qty = request.size / fill
        self.buys += 1
        logger.info(
            "PAPER_BUY token=%s size=%.4f fill=%.10g qty=%.6g",
            short_id(request.token_id),
            request.size,
            fill,
            qty,
        )
        return ExecutionResult(
            ok=True,
            token_id=request.token_id,
            fill_price=fill,
            token_quantity=qty,
            cost_basis=request.size,
            tx_id=f"paper-{uuid.uuid4().hex[:16]}",
        )

    async def sell(self, request: ExitRequest) -> ExecutionResult:
        await asyncio.sleep(0)
        if request.reference_price <= 0:
            self.failures += 1
            return ExecutionResult(ok=False, token_id=request.token_id, error="invalid_sell_request")
        if self._should_fail():
            self.failures += 1
            logger.warning("PAPER_SELL_FAIL token=%s reason=%s", short_id(request.token_id), request.reason)
            return ExecutionResult(ok=False, token_id=request.token_id, error="paper_simulated_failure")
        fill = request.reference_price * (1.0 - self._slippage())
        proceeds = max(0.0, request.token_quantity) * fill
        self.sells += 1
        logger.info(
            "PAPER_SELL token=%s reason=%s fill=%.10g proceeds=%.6f",
            short_id(request.token_id),
            request.reason,
            fill,
            proceeds,
        )
        return ExecutionResult(
            ok=True,
            token_id=request.token_id,
            fill_price=fill,
            token_quantity=request.token_quantity,
            proceeds=proceeds,
            tx_id=f"paper-{uuid.uuid4().hex[:16]}",
        )
