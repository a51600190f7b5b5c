"""Wires the momentum gate, position store and exit engine to incoming events.

Event handlers never raise: a bad event for one token is logged and the next
event is processed normally.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable

import config
from monitor.holder_fetcher import HolderConcentrationFetcher, HolderShare, top_holder_concentration
from monitor.price_feed import PriceFeed, PriceTick
from trading.exit_engine import ExitDecision, evaluate_exit
from trading.holder_watch import HolderDumpAlert, HolderWatch
from trading.metrics import SELL, normalize_side
from trading.momentum import MomentumCheck, MomentumValidator, WatchStatus
from trading.paper_executor import EntryRequest, ExitRequest, PaperExecutor
from trading.positions import Position, PositionStore
from utils.addressing import normalize_token_id, short_id
from utils.log_contracts import gate_decision_event, trade_decision_event
from utils.state_file import append_jsonl

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TradeEvent:
    token_id: str
    side: str
    price: float
    size: float
    trader_id: str
    timestamp: float | None = None
    token_amount: float = 0.0

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> "TradeEvent":
        token_id = normalize_token_id(row.get("token_id") or row.get("mint"))
        if not token_id:
            raise ValueError("trade event without token_id")
        ts = row.get("timestamp", row.get("ts"))
        return cls(
            token_id=token_id,
            side=normalize_side(row.get("side", row.get("is_buy"))),
            price=_finite(row.get("price")),
            size=_finite(row.get("size", row.get("sol_amount"))),
            trader_id=normalize_token_id(row.get("trader_id") or row.get("trader")),
            timestamp=float(ts) if ts is not None else None,
            token_amount=_finite(row.get("token_amount")),
        )

    def tokens_sold(self) -> float | None:
        """Token units moved by this trade; ``None`` when it cannot be derived."""
        if self.token_amount > 0:
            return self.token_amount
        if self.price > 0 and self.size > 0:
            return self.size / self.price
        return None


def _finite(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    out = float(value)
    if not math.isfinite(out):
        raise ValueError(f"non-finite number: {value!r}")
    return out


class EntryExitOrchestrator:
    def __init__(
        self,
        *,
        validator: MomentumValidator | None = None,
        positions: PositionStore | None = None,
        executor: Any = None,
        holder_fetcher: HolderConcentrationFetcher | None = None,
        holder_watch: HolderWatch | None = None,
        price_feed: PriceFeed | None = None,
        decision_log_file: str | None = None,
        persist_state: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self.validator = validator or MomentumValidator(clock=clock)
        self.positions = positions or PositionStore(clock=clock)
        self.executor = executor or PaperExecutor()
        self.holder_fetcher = holder_fetcher
        self.holder_watch = holder_watch or HolderWatch()
        self.price_feed = price_feed
        self.decision_log_file = (
            decision_log_file
            if decision_log_file is not None
            else str(getattr(config, "DECISION_LOG_FILE", "") or "")
        )
        self.persist_state = bool(persist_state)
        self._holder_tasks: dict[str, asyncio.Task] = {}
        self._holders: dict[str, list[HolderShare]] = {}
        self._entering: set[str] = set()
        self._exiting: set[str] = set()
        # Tokens that reached Ready or Expired, by the time they got there.
        self._terminal: dict[str, float] = {}
        self.stats = {
            "trades": 0,
            "ticks": 0,
            "watched": 0,
            "ready": 0,
            "expired": 0,
            "opened": 0,
            "closed": 0,
            "buy_failed": 0,
            "sell_failed": 0,
            "errors": 0,
        }

    def now(self) -> float:
        return float(self._clock())

    # Decision log

    def _write_decision(self, event: dict[str, Any]) -> None:
        if not self.decision_log_file:
            return
        run_tag = str(getattr(config, "RUN_TAG", "") or "")
        stage = str(event.get("decision_stage", ""))
        event.setdefault("ts", self.now())
        try:
            if stage in ("trade_open", "trade_close"):
                payload = trade_decision_event(event, run_tag=run_tag)
            else:
                payload = gate_decision_event(event, run_tag=run_tag)
            append_jsonl(self.decision_log_file, payload)
        except Exception:
            logger.exception("DECISION_LOG write failed path=%s", self.decision_log_file)

    def _gate_event(self, check: MomentumCheck, decision: str, reason: str) -> dict[str, Any]:
        record = check.record
        event: dict[str, Any] = {
            "decision_stage": "gate",
            "decision": decision,
            "reason": reason,
            "reasons": list(check.reasons),
            "token_id": check.token_id,
            "status": check.status.value,
        }
        if record is not None:
            event["first_seen_at"] = record.first_seen_at
            event["holder_concentration"] = record.holder_concentration
            event["holder_data_fetched"] = record.holder_data_fetched
            event["metrics"] = record.metrics.as_dict()
        return event

    # Holder data

    def _start_holder_fetch(self, token_id: str) -> None:
        if self.holder_fetcher is None:
            return
        existing = self._holder_tasks.get(token_id)
        if existing is not None and not existing.done():
            return
        task = asyncio.create_task(self._fetch_holders(token_id), name=f"holders:{short_id(token_id)}")
        self._holder_tasks[token_id] = task

    def _cancel_holder_fetch(self, token_id: str) -> None:
        task = self._holder_tasks.pop(token_id, None)
        # The fetch task itself may be the caller when its result decided the watch.
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _fetch_holders(self, token_id: str) -> None:
        try:
            result = await self.holder_fetcher.fetch_holders(
                token_id, int(getattr(config, "HOLDER_FETCH_TOP_N", 10))
            )
            if result.ok:
                await self.on_holder_data(token_id, holders=result.holders)
            else:
                await self._on_holder_fetch_failed(token_id, result.error)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("HOLDER_FETCH_ERROR token=%s err=%s", short_id(token_id), exc, exc_info=True)
            await self._on_holder_fetch_failed(token_id, f"exception:{exc}")
        finally:
            if self._holder_tasks.get(token_id) is asyncio.current_task():
                self._holder_tasks.pop(token_id, None)

    async def _on_holder_fetch_failed(self, token_id: str, error: str) -> None:
        changed = await self.validator.mark_holder_fetch_failed(token_id, error)
        if changed:
            await self._evaluate_watch(token_id)

    async def on_holder_data(
        self,
        token_id: str,
        holders: list[HolderShare] | None = None,
        concentration: float | None = None,
    ) -> bool:
        """Apply fetched holder data; ``concentration`` overrides the top holder share."""
        key = normalize_token_id(token_id)
        rows = list(holders or [])
        value = float(concentration) if concentration is not None else top_holder_concentration(rows)
        try:
            applied = await self.validator.set_holder_concentration(key, value)
            if not applied:
                return False
            if rows:
                self._holders[key] = rows
            await self._evaluate_watch(key)
            return True
        except Exception:
            self.stats["errors"] += 1
            logger.exception("HOLDER_DATA_ERROR token=%s", short_id(key))
            return False

    # Discovery and trades

    async def on_token_discovered(self, token_id: str, ts: float | None = None) -> bool:
        """Start observing a newly created token.

        An explicit creation event also re-admits a token whose previous
        watch ended in Ready or Expired.
        """
        key = normalize_token_id(token_id)
        if not key or key in self._entering or self.positions.has_open(key):
            return False
        created = await self.validator.watch(key, ts=ts if ts is not None else self.now())
        if not created:
            return False
        self._terminal.pop(key, None)
        self.stats["watched"] += 1
        self._write_decision(
            {
                "decision_stage": "watch",
                "decision": "watch",
                "reason": "watch_start",
                "token_id": key,
                "ts": ts if ts is not None else self.now(),
            }
        )
        self._start_holder_fetch(key)
        return True

    async def on_holder_balance(
        self,
        token_id: str,
        holder_id: str,
        amount: Any,
        ts: float | None = None,
    ) -> bool:
        """Apply a polled balance of a watched holder; exits on a qualifying drop."""
        key = normalize_token_id(token_id)
        try:
            balance = _finite(amount)
        except (TypeError, ValueError) as exc:
            self.stats["errors"] += 1
            logger.warning("HOLDER_BALANCE_INVALID token=%s err=%s", short_id(key), exc)
            return False
        try:
            if not self.positions.has_open(key):
                return False
            applied = self.holder_watch.update_balance(
                key, holder_id, balance, ts=ts if ts is not None else self.now()
            )
            if not applied:
                return False
            alert = self.holder_watch.dump_alert(key)
            if alert is not None:
                await self._evaluate_exit(key, alert)
            return True
        except Exception:
            self.stats["errors"] += 1
            logger.exception("HOLDER_BALANCE_ERROR token=%s", short_id(key))
            return False

    async def on_trade(self, event: TradeEvent | dict[str, Any]) -> None:
        try:
            trade = event if isinstance(event, TradeEvent) else TradeEvent.from_dict(event)
        except (TypeError, ValueError) as exc:
            self.stats["errors"] += 1
            logger.warning("TRADE_EVENT_INVALID err=%s event=%r", exc, event)
            return
        self.stats["trades"] += 1
        try:
            await self._handle_trade(trade)
        except Exception:
            self.stats["errors"] += 1
            logger.exception("TRADE_EVENT_ERROR token=%s", short_id(trade.token_id))

    async def _handle_trade(self, trade: TradeEvent) -> None:
        key = trade.token_id
        if self.positions.has_open(key):
            if trade.side == SELL:
                if self.holder_watch.record_sell(key, trade.trader_id, trade.tokens_sold(), ts=trade.timestamp):
                    alert = self.holder_watch.dump_alert(key)
                    if alert is not None:
                        await self._evaluate_exit(key, alert)
            return
        if key in self._entering:
            return

        if not self.validator.is_watching(key):
            if not bool(getattr(config, "MOMENTUM_WATCH_ON_FIRST_TRADE", True)):
                return
            if self._is_terminal(key):
                logger.debug("WATCH_SKIP_TERMINAL token=%s", short_id(key))
                return
            await self.on_token_discovered(key, ts=trade.timestamp)

        recorded = await self.validator.record_trade(
            key, trade.side, trade.price, trade.size, trade.trader_id, trade.timestamp
        )
        if recorded:
            await self._evaluate_watch(key)

    async def _evaluate_watch(self, token_id: str) -> None:
        check = await self.validator.check(token_id, now=self.now())
        if check.status is WatchStatus.READY:
            await self.validator.remove(token_id)
            self._cancel_holder_fetch(token_id)
            self.stats["ready"] += 1
            self._mark_terminal(token_id)
            self._write_decision(self._gate_event(check, "ready", "ready"))
            await self._enter(token_id, check)
        elif check.status is WatchStatus.EXPIRED:
            await self._drop_expired(token_id, check)
        elif check.status is WatchStatus.OBSERVING:
            logger.debug("MOMENTUM_OBSERVING token=%s %s", short_id(token_id), check.summary)

    async def _drop_expired(self, token_id: str, check: MomentumCheck | None = None) -> None:
        await self.validator.remove(token_id)
        self._cancel_holder_fetch(token_id)
        self._holders.pop(token_id, None)
        self._mark_terminal(token_id)
        self.stats["expired"] += 1
        if check is None:
            check = MomentumCheck(token_id=token_id, status=WatchStatus.EXPIRED)
        self._write_decision(self._gate_event(check, "skip", "expired"))

    async def sweep(self) -> list[str]:
        """Expire observation windows that ran out without a trade to notice it."""
        expired = await self.validator.expire_stale(now=self.now())
        for token_id in expired:
            self._cancel_holder_fetch(token_id)
            self._holders.pop(token_id, None)
            self._mark_terminal(token_id)
            self.stats["expired"] += 1
            self._write_decision(
                {
                    "decision_stage": "gate",
                    "decision": "skip",
                    "reason": "expired",
                    "token_id": token_id,
                    "status": WatchStatus.EXPIRED.value,
                }
            )
        self._prune_terminal()
        return expired

    def _mark_terminal(self, token_id: str) -> None:
        self._terminal.pop(token_id, None)
        self._terminal[token_id] = self.now()
        self._prune_terminal()

    def _is_terminal(self, token_id: str) -> bool:
        reached_at = self._terminal.get(token_id)
        if reached_at is None:
            return False
        ttl = float(getattr(config, "MOMENTUM_TERMINAL_TTL_SECONDS", 600.0) or 0.0)
        if self.now() - reached_at > ttl:
            self._terminal.pop(token_id, None)
            return False
        return True

    def _prune_terminal(self) -> None:
        ttl = float(getattr(config, "MOMENTUM_TERMINAL_TTL_SECONDS", 600.0) or 0.0)
        limit = max(1, int(getattr(config, "MOMENTUM_TERMINAL_MAX_TOKENS", 5000)))
        now = self.now()
        for key, reached_at in list(self._terminal.items()):
            if now - reached_at > ttl:
                self._terminal.pop(key, None)
        # Insertion order is oldest first.
        while len(self._terminal) > limit:
            self._terminal.pop(next(iter(self._terminal)))

    # Entry

    async def _enter(self, token_id: str, check: MomentumCheck) -> bool:
        record = check.record
        reference_price = float(record.last_price or 0.0) if record is not None else 0.0
        size = float(getattr(config, "ENTRY_SIZE_SOL", 0.05))
        holders = self._holders.pop(token_id, [])
        self._entering.add(token_id)
        try:
            result = await self.executor.buy(
                EntryRequest(token_id=token_id, size=size, reference_price=reference_price)
            )
            if not result.ok:
                self.stats["buy_failed"] += 1
                logger.warning("ENTRY_NOT_TAKEN token=%s err=%s", short_id(token_id), result.error)
                self._write_decision(
                    {
                        "decision_stage": "trade_open",
                        "decision": "skip",
                        "reason": "buy_fail",
                        "token_id": token_id,
                        "error": result.error,
                    }
                )
                return False

            entry_time = self.now()
            ok, detail = await self.positions.open(
                Position(
                    token_id=token_id,
                    entry_price=result.fill_price,
                    entry_time=entry_time,
                    cost_basis=result.cost_basis,
                    token_quantity=result.token_quantity,
                    current_price=result.fill_price,
                )
            )
            if not ok:
                logger.warning("ENTRY_OPEN_REJECTED token=%s detail=%s", short_id(token_id), detail)
                self._write_decision(
                    {
                        "decision_stage": "trade_open",
                        "decision": "skip",
                        "reason": "open_rejected",
                        "token_id": token_id,
                        "detail": detail,
                    }
                )
                return False

            self.stats["opened"] += 1
            self.holder_watch.watch(token_id, holders)
            if self.price_feed is not None:
                self.price_feed.subscribe(token_id)
            self._write_decision(
                {
                    "decision_stage": "trade_open",
                    "decision": "open",
                    "reason": "buy_paper",
                    "token_id": token_id,
                    "entry_time": entry_time,
                    "entry_price": result.fill_price,
                    "cost_basis": result.cost_basis,
                    "token_quantity": result.token_quantity,
                    "tx_id": result.tx_id,
                }
            )
            self._save_state()
            return True
        finally:
            self._entering.discard(token_id)

    # Price ticks and exits

    async def on_price_tick(self, tick: PriceTick | dict[str, Any]) -> None:
        try:
            if isinstance(tick, dict):
                ts = tick.get("timestamp", tick.get("ts"))
                tick = PriceTick(
                    token_id=normalize_token_id(tick.get("token_id")),
                    price=_finite(tick.get("price")),
                    timestamp=float(ts) if ts is not None else self.now(),
                )
        except (TypeError, ValueError) as exc:
            self.stats["errors"] += 1
            logger.warning("PRICE_TICK_INVALID err=%s tick=%r", exc, tick)
            return
        self.stats["ticks"] += 1
        try:
            ok, detail = await self.positions.update_price(tick.token_id, tick.price, tick.timestamp)
            if not ok:
                logger.debug("PRICE_TICK_REJECTED token=%s detail=%s", short_id(tick.token_id), detail)
                return
            await self._evaluate_exit(tick.token_id)
        except Exception:
            self.stats["errors"] += 1
            logger.exception("PRICE_TICK_ERROR token=%s", short_id(tick.token_id))

    async def _evaluate_exit(self, token_id: str, alert: HolderDumpAlert | None = None) -> ExitDecision | None:
        if token_id in self._exiting:
            return None
        position = self.positions.get(token_id)
        if position is None:
            return None
        dump = alert or self.holder_watch.dump_alert(token_id)
        decision = evaluate_exit(position, dump)
        if decision is None:
            return None

        self._exiting.add(token_id)
        try:
            logger.info(
                "EXIT_SIGNAL token=%s reason=%s pnl=%+.2f%% peak=%+.2f%% %s",
                short_id(token_id),
                decision.reason.value,
                decision.pnl_pct,
                decision.peak_pnl_pct,
                decision.detail,
            )
            result = await self.executor.sell(
                ExitRequest(
                    token_id=token_id,
                    reason=decision.reason.value,
                    token_quantity=position.token_quantity,
                    reference_price=position.current_price,
                )
            )
            if not result.ok:
                self.stats["sell_failed"] += 1
                logger.warning("EXIT_SELL_FAILED token=%s err=%s position=open", short_id(token_id), result.error)
                self._write_decision(
                    {
                        "decision_stage": "trade_close",
                        "decision": "hold",
                        "reason": "sell_fail",
                        "token_id": token_id,
                        "entry_time": position.entry_time,
                        "error": result.error,
                        **decision.as_dict(),
                    }
                )
                return decision

            ok, detail = await self.positions.close(token_id, result.proceeds, decision.reason.value, ts=self.now())
            if not ok:
                logger.info("EXIT_CLOSE_SKIPPED token=%s detail=%s", short_id(token_id), detail)
                return decision
            self.stats["closed"] += 1
            self.holder_watch.unwatch(token_id)
            if self.price_feed is not None:
                self.price_feed.unsubscribe(token_id)
            self._write_decision(
                {
                    "decision_stage": "trade_close",
                    "decision": "close",
                    "reason": decision.reason.log_reason,
                    "token_id": token_id,
                    "entry_time": position.entry_time,
                    "entry_price": position.entry_price,
                    "exit_price": result.fill_price,
                    "proceeds": result.proceeds,
                    "realized_pnl": result.proceeds - position.cost_basis,
                    **decision.as_dict(),
                }
            )
            self._save_state()
            return decision
        finally:
            self._exiting.discard(token_id)

    # Lifecycle

    def _save_state(self) -> None:
        if self.persist_state:
            self.positions.save()

    async def run_sweeper(self, stop: asyncio.Event) -> None:
        interval = max(0.1, float(getattr(config, "SWEEP_INTERVAL_SECONDS", 1.0)))
        while not stop.is_set():
            try:
                await self.sweep()
            except Exception:
                logger.exception("SWEEP_ERROR")
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    async def close(self) -> None:
        tasks = [t for t in self._holder_tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._holder_tasks.clear()
        self._save_state()

    def runtime_stats(self) -> dict[str, Any]:
        return {
            **self.stats,
            "watching": self.validator.watched_count(),
            "open_positions": len(self.positions.open_positions),
            "holder_fetches_pending": len(self._holder_tasks),
            "terminal_tokens": len(self._terminal),
        }
