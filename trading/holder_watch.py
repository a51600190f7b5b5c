"""Track the top holders captured at entry and flag when one of them sells."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

import config
from utils.addressing import normalize_token_id, short_id

logger = logging.getLogger(__name__)

URGENCY_CRITICAL = "critical"
URGENCY_HIGH = "high"
URGENCY_MEDIUM = "medium"


@dataclass
class WatchedHolder:
    holder_id: str
    rank: int
    original_amount: float
    original_pct: float
    current_amount: float
    sold_amount: float = 0.0
    sell_count: int = 0
    last_sell_at: float | None = None

    @property
    def sold_pct(self) -> float:
        if self.original_amount <= 0:
            return 100.0 if self.sold_amount > 0 else 0.0
        return min(100.0, self.sold_amount / self.original_amount * 100.0)

    @property
    def reduced(self) -> bool:
        return self.sold_amount > 0 or self.sell_count > 0


@dataclass(frozen=True)
class HolderDumpAlert:
    token_id: str
    holder_id: str
    rank: int
    original_pct: float
    sold_pct: float
    urgency: str
    detail: str = ""


@dataclass
class _TokenWatch:
    token_id: str
    started_at: float
    holders: list[WatchedHolder] = field(default_factory=list)


def _urgency(rank: int, original_pct: float) -> str:
    if rank == 1:
        return URGENCY_CRITICAL
    if rank <= 3 or original_pct > 10.0:
        return URGENCY_HIGH
    return URGENCY_MEDIUM


class HolderWatch:
    def __init__(self) -> None:
        self._watched: dict[str, _TokenWatch] = {}

    def watch(self, token_id: str, holders: Iterable[Any], watch_count: int | None = None) -> int:
        """Snapshot the top holders of a freshly opened position.

        ``holders`` is an ordered iterable of objects or dicts exposing
        ``holder_id``, ``amount`` and ``percentage``. Returns how many were kept.
        """
        key = normalize_token_id(token_id)
        limit = int(watch_count if watch_count is not None else getattr(config, "HOLDER_DUMP_WATCH_COUNT", 3))
        rows: list[WatchedHolder] = []
        for holder in holders:
            if len(rows) >= max(1, limit):
                break
            holder_id = normalize_token_id(_field(holder, "holder_id"))
            if not holder_id:
                continue
            amount = max(0.0, float(_field(holder, "amount") or 0.0))
            pct = max(0.0, float(_field(holder, "percentage") or 0.0))
            rows.append(
                WatchedHolder(
                    holder_id=holder_id,
                    rank=len(rows) + 1,
                    original_amount=amount,
                    original_pct=pct,
                    current_amount=amount,
                )
            )
        if not rows:
            logger.info("HOLDER_WATCH_EMPTY token=%s", short_id(key))
            self._watched.pop(key, None)
            return 0
        self._watched[key] = _TokenWatch(token_id=key, started_at=time.time(), holders=rows)
        logger.info(
            "HOLDER_WATCH token=%s holders=%s top=%.1f%%",
            short_id(key),
            len(rows),
            rows[0].original_pct,
        )
        return len(rows)

    def is_watched(self, token_id: str) -> bool:
        return normalize_token_id(token_id) in self._watched

    def watched_holders(self, token_id: str) -> list[str]:
        watch = self._watched.get(normalize_token_id(token_id))
        if watch is None:
            return []
        return [h.holder_id for h in watch.holders]

    def _find(self, token_id: str, holder_id: str) -> WatchedHolder | None:
        watch = self._watched.get(normalize_token_id(token_id))
        if watch is None:
            return None
        wanted = normalize_token_id(holder_id)
        for holder in watch.holders:
            if holder.holder_id == wanted:
                return holder
        return None

    def record_sell(self, token_id: str, trader_id: str, amount: float | None, ts: float | None = None) -> bool:
        """Apply a sell by a watched holder; returns True if it was one.

        ``amount`` is in token units. ``None`` means the size is unknown and the
        whole remaining balance counts as sold.
        """
        holder = self._find(token_id, trader_id)
        if holder is None:
            return False
        sold = holder.current_amount if amount is None else max(0.0, float(amount or 0.0))
        holder.sell_count += 1
        holder.sold_amount += sold
        holder.current_amount = max(0.0, holder.current_amount - sold)
        holder.last_sell_at = float(ts) if ts is not None else time.time()
        log = logger.warning if holder.rank <= 3 else logger.info
        log(
            "HOLDER_SELL token=%s holder=%s rank=%s urgency=%s sold=%.1f%%",
            short_id(token_id),
            short_id(holder.holder_id),
            holder.rank,
            _urgency(holder.rank, holder.original_pct),
            holder.sold_pct,
        )
        return True

    def update_balance(self, token_id: str, holder_id: str, amount: float, ts: float | None = None) -> bool:
        """Apply a polled balance; only reductions below the entry snapshot count."""
        holder = self._find(token_id, holder_id)
        if holder is None:
            return False
        balance = max(0.0, float(amount or 0.0))
        reduction = max(0.0, holder.original_amount - balance)
        holder.current_amount = balance
        if reduction > holder.sold_amount:
            holder.sold_amount = reduction
            holder.sell_count = max(1, holder.sell_count)
            holder.last_sell_at = float(ts) if ts is not None else time.time()
            logger.warning(
                "HOLDER_BALANCE_DROP token=%s holder=%s rank=%s sold=%.1f%%",
                short_id(token_id),
                short_id(holder.holder_id),
                holder.rank,
                holder.sold_pct,
            )
        return True

    def dump_alert(self, token_id: str) -> HolderDumpAlert | None:
        key = normalize_token_id(token_id)
        watch = self._watched.get(key)
        if watch is None:
            return None
        any_sell = bool(getattr(config, "HOLDER_DUMP_EXIT_ON_ANY_SELL", True))
        min_sold_pct = float(getattr(config, "HOLDER_DUMP_MIN_SOLD_PCT", 10.0) or 0.0)
        for holder in watch.holders:
            if not holder.reduced:
                continue
            if any_sell or holder.sold_pct >= min_sold_pct:
                return HolderDumpAlert(
                    token_id=key,
                    holder_id=holder.holder_id,
                    rank=holder.rank,
                    original_pct=holder.original_pct,
                    sold_pct=holder.sold_pct,
                    urgency=_urgency(holder.rank, holder.original_pct),
                    detail=f"holder#{holder.rank}:{short_id(holder.holder_id)} sold:{holder.sold_pct:.1f}%",
                )
        return None

    def unwatch(self, token_id: str) -> bool:
        removed = self._watched.pop(normalize_token_id(token_id), None)
        if removed is not None:
            logger.info("HOLDER_UNWATCH token=%s", short_id(token_id))
        return removed is not None

    def __len__(self) -> int:
        return len(self._watched)


def _field(row: Any, name: str) -> Any:
    if isinstance(row, dict):
        return row.get(name)
    return getattr(row, name, None)
