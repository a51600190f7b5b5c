"""Running per-token trade counters."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Any

from utils.addressing import normalize_token_id

logger = logging.getLogger(__name__)

BUY = "buy"
SELL = "sell"


def normalize_side(side: Any) -> str:
    if isinstance(side, bool):
        return BUY if side else SELL
    text = str(side or "").strip().lower()
    if text in ("buy", "b", "bid"):
        return BUY
    if text in ("sell", "s", "ask"):
        return SELL
    raise ValueError(f"unknown trade side: {side!r}")


@dataclass
class TokenMetrics:
    token_id: str
    trade_count: int = 0
    buy_count: int = 0
    sell_count: int = 0
    cumulative_volume: float = 0.0
    buy_volume: float = 0.0
    sell_volume: float = 0.0
    first_price: float | None = None
    last_price: float | None = None
    high_price: float | None = None
    low_price: float | None = None
    first_trade_at: float | None = None
    last_trade_at: float | None = None
    traders: set[str] = field(default_factory=set)
    # Welford accumulators over trade prices.
    _price_n: int = 0
    _price_mean: float = 0.0
    _price_m2: float = 0.0

    @property
    def unique_trader_count(self) -> int:
        return len(self.traders)

    @property
    def buy_ratio(self) -> float:
        total = self.buy_count + self.sell_count
        if total <= 0:
            return 0.0
        return self.buy_count / total

    @property
    def volume_buy_ratio(self) -> float:
        total = self.buy_volume + self.sell_volume
        if total <= 0:
            return 0.0
        return self.buy_volume / total

    @property
    def net_flow(self) -> float:
        return self.buy_volume - self.sell_volume

    @property
    def price_change_pct(self) -> float:
        """Signed change from first to last observed price, in percent."""
        if not self.first_price or self.last_price is None:
            return 0.0
        return (self.last_price / self.first_price - 1.0) * 100.0

    @property
    def survival_ratio(self) -> float:
        if not self.high_price or self.last_price is None:
            return 0.0
        return self.last_price / self.high_price

    @property
    def volatility(self) -> float:
        """Coefficient of variation of trade prices (scale independent)."""
        if self._price_n < 2 or self._price_mean <= 0:
            return 0.0
        return math.sqrt(self._price_m2 / self._price_n) / self._price_mean

    def apply(self, side: str, price: float, size: float, trader_id: str, ts: float | None) -> None:
        self.trade_count += 1
        if side == BUY:
            self.buy_count += 1
        else:
            self.sell_count += 1
        if trader_id:
            self.traders.add(trader_id)
        if size > 0 and math.isfinite(size):
            self.cumulative_volume += size
            if side == BUY:
                self.buy_volume += size
            else:
                self.sell_volume += size
        if price > 0 and math.isfinite(price):
            if self.first_price is None:
                self.first_price = price
            self.last_price = price
            self.high_price = price if self.high_price is None else max(self.high_price, price)
            self.low_price = price if self.low_price is None else min(self.low_price, price)
            self._price_n += 1
            delta = price - self._price_mean
            self._price_mean += delta / self._price_n
            self._price_m2 += delta * (price - self._price_mean)
        if ts is not None:
            if self.first_trade_at is None:
                self.first_trade_at = ts
            self.last_trade_at = ts if self.last_trade_at is None else max(self.last_trade_at, ts)

    def copy(self) -> "TokenMetrics":
        return replace(self, traders=set(self.traders))

    def as_dict(self) -> dict[str, Any]:
        return {
            "trade_count": self.trade_count,
            "buy_count": self.buy_count,
            "sell_count": self.sell_count,
            "unique_trader_count": self.unique_trader_count,
            "cumulative_volume": round(self.cumulative_volume, 9),
            "buy_ratio": round(self.buy_ratio, 4),
            "volume_buy_ratio": round(self.volume_buy_ratio, 4),
            "net_flow": round(self.net_flow, 9),
            "first_price": self.first_price,
            "last_price": self.last_price,
            "price_change_pct": round(self.price_change_pct, 4),
            "survival_ratio": round(self.survival_ratio, 4),
            "volatility": round(self.volatility, 6),
        }


class MetricsAggregator:
    """Folds trade events into running counters, one record per token."""

    def __init__(self) -> None:
        self._metrics: dict[str, TokenMetrics] = {}

    def record_trade(
        self,
        token_id: str,
        side: Any,
        price: float,
        size: float,
        trader_id: str,
        ts: float | None = None,
    ) -> TokenMetrics:
        key = normalize_token_id(token_id)
        row = self._metrics.get(key)
        if row is None:
            row = TokenMetrics(token_id=key)
            self._metrics[key] = row
        try:
            normalized_side = normalize_side(side)
        except ValueError:
            # Unknown sides count as sells.
            logger.debug("METRICS_UNKNOWN_SIDE token=%s side=%r", key, side)
            normalized_side = SELL
        row.apply(
            normalized_side,
            _as_float(price),
            _as_float(size),
            normalize_token_id(trader_id),
            ts,
        )
        return row

    def get(self, token_id: str) -> TokenMetrics | None:
        return self._metrics.get(normalize_token_id(token_id))

    def snapshot(self, token_id: str) -> TokenMetrics:
        key = normalize_token_id(token_id)
        row = self._metrics.get(key)
        if row is None:
            return TokenMetrics(token_id=key)
        return row.copy()

    def forget(self, token_id: str) -> None:
        self._metrics.pop(normalize_token_id(token_id), None)

    def __contains__(self, token_id: object) -> bool:
        return normalize_token_id(str(token_id)) in self._metrics

    def __len__(self) -> int:
        return len(self._metrics)


def _as_float(value: Any) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return 0.0
    return out if math.isfinite(out) else 0.0
