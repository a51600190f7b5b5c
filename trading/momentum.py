"""Momentum validator: observe a new token before allowing entry.

Every watched token gets one ``WatchRecord``. The record moves
``Observing -> Ready`` once trade activity clears all configured thresholds
and holder-concentration data has arrived and is acceptable, or
``Observing -> Expired`` when the observation window runs out first. Both
outcomes are terminal for that record; the caller removes it afterwards and a
later reappearance of the token starts a fresh record.

Holder data arrives from an independent task at any time. It is applied under
the same per-token lock as trade events and is ignored once the record is no
longer observing, so a late result can never turn an expired token into an
entry.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable

import config
from trading.metrics import MetricsAggregator, TokenMetrics
from utils.addressing import normalize_token_id, short_id
from utils.keyed_lock import KeyedLock

logger = logging.getLogger(__name__)


class WatchStatus(str, Enum):
    NOT_WATCHED = "NotWatched"
    OBSERVING = "Observing"
    READY = "Ready"
    EXPIRED = "Expired"


@dataclass(frozen=True)
class MomentumSettings:
    min_trades: int
    min_volume: float
    min_price_change_pct: float
    min_unique_traders: int
    min_buy_ratio: float
    max_holder_concentration: float
    observation_window_seconds: float
    min_observation_seconds: float = 0.0
    min_survival_ratio: float = 0.0
    min_volatility: float = 0.0
    require_positive_net_flow: bool = False
    holder_fetch_fail_closed: bool = True

    @classmethod
    def from_config(cls) -> "MomentumSettings":
        return cls(
            min_trades=int(config.MOMENTUM_MIN_TRADES),
            min_volume=float(config.MOMENTUM_MIN_VOLUME_SOL),
            min_price_change_pct=float(config.MOMENTUM_MIN_PRICE_CHANGE_PCT),
            min_unique_traders=int(config.MOMENTUM_MIN_UNIQUE_TRADERS),
            min_buy_ratio=float(config.MOMENTUM_MIN_BUY_RATIO),
            max_holder_concentration=float(config.MOMENTUM_MAX_HOLDER_CONCENTRATION),
            observation_window_seconds=float(config.MOMENTUM_OBSERVATION_WINDOW_SECONDS),
            min_observation_seconds=float(getattr(config, "MOMENTUM_MIN_OBSERVATION_SECONDS", 0.0) or 0.0),
            min_survival_ratio=float(getattr(config, "MOMENTUM_MIN_SURVIVAL_RATIO", 0.0) or 0.0),
            min_volatility=float(getattr(config, "MOMENTUM_MIN_VOLATILITY", 0.0) or 0.0),
            require_positive_net_flow=bool(getattr(config, "MOMENTUM_REQUIRE_POSITIVE_NET_FLOW", False)),
            holder_fetch_fail_closed=bool(getattr(config, "HOLDER_FETCH_FAIL_CLOSED", True)),
        )


@dataclass
class WatchRecord:
    token_id: str
    first_seen_at: float
    metrics: TokenMetrics
    holder_concentration: float | None = None
    holder_data_fetched: bool = False
    holder_fetch_failed: bool = False
    status: WatchStatus = WatchStatus.OBSERVING
    status_changed_at: float | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @property
    def trade_count(self) -> int:
        return self.metrics.trade_count

    @property
    def unique_trader_count(self) -> int:
        return self.metrics.unique_trader_count

    @property
    def buy_count(self) -> int:
        return self.metrics.buy_count

    @property
    def sell_count(self) -> int:
        return self.metrics.sell_count

    @property
    def cumulative_volume(self) -> float:
        return self.metrics.cumulative_volume

    @property
    def first_price(self) -> float | None:
        return self.metrics.first_price

    @property
    def last_price(self) -> float | None:
        return self.metrics.last_price

    @property
    def buy_ratio(self) -> float:
        return self.metrics.buy_ratio

    @property
    def abs_price_change_pct(self) -> float:
        return abs(self.metrics.price_change_pct)

    def age_seconds(self, now: float) -> float:
        return max(0.0, now - self.first_seen_at)

    def snapshot(self) -> "WatchRecord":
        return replace(self, metrics=self.metrics.copy(), meta=dict(self.meta))


@dataclass
class MomentumCheck:
    token_id: str
    status: WatchStatus
    reasons: list[str] = field(default_factory=list)
    record: WatchRecord | None = None

    @property
    def ready(self) -> bool:
        return self.status is WatchStatus.READY

    @property
    def summary(self) -> str:
        if self.status is WatchStatus.READY:
            return "READY"
        if not self.reasons:
            return self.status.value.upper()
        return f"{self.status.value.upper()}: {', '.join(self.reasons)}"


def unmet_conditions(record: WatchRecord, settings: MomentumSettings, now: float) -> list[str]:
    """Return the entry conditions the record does not meet yet; empty means ready."""
    m = record.metrics
    missing: list[str] = []

    age = record.age_seconds(now)
    if settings.min_observation_seconds > 0 and age < settings.min_observation_seconds:
        missing.append(f"obs:{age:.0f}s<{settings.min_observation_seconds:.0f}s")
    if m.trade_count < settings.min_trades:
        missing.append(f"trades:{m.trade_count}<{settings.min_trades}")
    if m.cumulative_volume < settings.min_volume:
        missing.append(f"vol:{m.cumulative_volume:.2f}<{settings.min_volume:.2f}")
    if record.abs_price_change_pct < settings.min_price_change_pct:
        missing.append(f"price:{record.abs_price_change_pct:.1f}%<{settings.min_price_change_pct:.1f}%")
    if m.unique_trader_count < settings.min_unique_traders:
        missing.append(f"traders:{m.unique_trader_count}<{settings.min_unique_traders}")
    if m.buy_ratio < settings.min_buy_ratio:
        missing.append(f"buy_ratio:{m.buy_ratio * 100:.0f}%<{settings.min_buy_ratio * 100:.0f}%")
    if settings.require_positive_net_flow and m.net_flow < 0:
        missing.append(f"net_flow:{m.net_flow:+.2f}<0")
    if settings.min_volatility > 0 and m.volatility < settings.min_volatility:
        missing.append(f"volatility:{m.volatility:.4f}<{settings.min_volatility:.4f}")
    if settings.min_survival_ratio > 0 and m.survival_ratio < settings.min_survival_ratio:
        missing.append(f"survival:{m.survival_ratio * 100:.0f}%<{settings.min_survival_ratio * 100:.0f}%")

    if not record.holder_data_fetched:
        missing.append("holder_data:failed" if record.holder_fetch_failed else "holder_data:pending")
    else:
        concentration = float(record.holder_concentration or 0.0)
        if concentration > settings.max_holder_concentration:
            missing.append(f"whale:{concentration * 100:.0f}%>{settings.max_holder_concentration * 100:.0f}%")
    return missing


class MomentumValidator:
    def __init__(
        self,
        aggregator: MetricsAggregator | None = None,
        settings: MomentumSettings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._aggregator = aggregator or MetricsAggregator()
        self._fixed_settings = settings
        self._clock = clock
        self._records: dict[str, WatchRecord] = {}
        self._locks = KeyedLock()

    @property
    def settings(self) -> MomentumSettings:
        return self._fixed_settings or MomentumSettings.from_config()

    @property
    def aggregator(self) -> MetricsAggregator:
        return self._aggregator

    def _now(self, now: float | None) -> float:
        return float(now) if now is not None else float(self._clock())

    async def watch(self, token_id: str, ts: float | None = None, **meta: Any) -> bool:
        """Start observing a token; returns False when it is already watched."""
        key = normalize_token_id(token_id)
        if not key:
            return False
        async with self._locks.hold(key):
            if key in self._records:
                logger.debug("MOMENTUM_ALREADY_WATCHED token=%s", short_id(key))
                return False
            first_seen = self._now(ts)
            # A reappearing token starts from clean counters.
            self._aggregator.forget(key)
            self._records[key] = WatchRecord(
                token_id=key,
                first_seen_at=first_seen,
                metrics=self._aggregator.snapshot(key),
                status_changed_at=first_seen,
                meta=dict(meta),
            )
            logger.info(
                "MOMENTUM_WATCH token=%s window=%.1fs",
                short_id(key),
                self.settings.observation_window_seconds,
            )
            return True

    async def record_trade(
        self,
        token_id: str,
        side: Any,
        price: float,
        size: float,
        trader_id: str,
        ts: float | None = None,
    ) -> bool:
        key = normalize_token_id(token_id)
        async with self._locks.hold(key):
            record = self._records.get(key)
            if record is None or record.status is not WatchStatus.OBSERVING:
                return False
            record.metrics = self._aggregator.record_trade(key, side, price, size, trader_id, ts)
            logger.debug(
                "MOMENTUM_TRADE token=%s side=%s size=%.4f trades=%s vol=%.4f",
                short_id(key),
                side,
                float(size or 0.0),
                record.trade_count,
                record.cumulative_volume,
            )
            return True

    async def set_holder_concentration(self, token_id: str, fraction: float) -> bool:
        key = normalize_token_id(token_id)
        async with self._locks.hold(key):
            record = self._records.get(key)
            if record is None:
                logger.debug("MOMENTUM_HOLDER_IGNORED token=%s reason=not_watched", short_id(key))
                return False
            if record.status is not WatchStatus.OBSERVING:
                logger.debug(
                    "MOMENTUM_HOLDER_IGNORED token=%s reason=status_%s",
                    short_id(key),
                    record.status.value.lower(),
                )
                return False
            value = min(1.0, max(0.0, float(fraction)))
            record.holder_concentration = value
            record.holder_data_fetched = True
            record.holder_fetch_failed = False
            logger.info("MOMENTUM_HOLDER_DATA token=%s top_holder=%.1f%%", short_id(key), value * 100.0)
            return True

    async def mark_holder_fetch_failed(self, token_id: str, error: str = "") -> bool:
        """Apply the holder-fetch failure policy; returns True if the record changed."""
        key = normalize_token_id(token_id)
        if not self.settings.holder_fetch_fail_closed:
            logger.warning(
                "MOMENTUM_HOLDER_FETCH_FAILED token=%s policy=permissive concentration=0 error=%s",
                short_id(key),
                error,
            )
            return await self.set_holder_concentration(key, 0.0)
        async with self._locks.hold(key):
            record = self._records.get(key)
            if record is None or record.status is not WatchStatus.OBSERVING:
                return False
            record.holder_fetch_failed = True
            logger.warning(
                "MOMENTUM_HOLDER_FETCH_FAILED token=%s policy=fail_closed error=%s",
                short_id(key),
                error,
            )
            return True

    async def check(self, token_id: str, now: float | None = None) -> MomentumCheck:
        key = normalize_token_id(token_id)
        async with self._locks.hold(key):
            record = self._records.get(key)
            if record is None:
                return MomentumCheck(token_id=key, status=WatchStatus.NOT_WATCHED)
            if record.status is not WatchStatus.OBSERVING:
                return MomentumCheck(token_id=key, status=record.status, record=record.snapshot())

            current = self._now(now)
            settings = self.settings
            reasons = unmet_conditions(record, settings, current)
            if record.age_seconds(current) > settings.observation_window_seconds:
                self._transition(record, WatchStatus.EXPIRED, current, reasons)
                return MomentumCheck(token_id=key, status=WatchStatus.EXPIRED, reasons=reasons, record=record.snapshot())
            if not reasons:
                self._transition(record, WatchStatus.READY, current, reasons)
                return MomentumCheck(token_id=key, status=WatchStatus.READY, record=record.snapshot())
            return MomentumCheck(token_id=key, status=WatchStatus.OBSERVING, reasons=reasons, record=record.snapshot())

    def _transition(self, record: WatchRecord, status: WatchStatus, now: float, reasons: list[str]) -> None:
        record.status = status
        record.status_changed_at = now
        m = record.metrics
        if status is WatchStatus.READY:
            logger.info(
                "MOMENTUM_READY token=%s trades=%s vol=%.4f change=%.1f%% traders=%s buy_ratio=%.2f top_holder=%.1f%% age=%.1fs",
                short_id(record.token_id),
                m.trade_count,
                m.cumulative_volume,
                record.abs_price_change_pct,
                m.unique_trader_count,
                m.buy_ratio,
                float(record.holder_concentration or 0.0) * 100.0,
                record.age_seconds(now),
            )
        else:
            logger.info(
                "MOMENTUM_EXPIRED token=%s trades=%s vol=%.4f change=%.1f%% missing=%s",
                short_id(record.token_id),
                m.trade_count,
                m.cumulative_volume,
                record.abs_price_change_pct,
                ",".join(reasons) or "none",
            )

    async def remove(self, token_id: str) -> WatchRecord | None:
        key = normalize_token_id(token_id)
        async with self._locks.hold(key):
            record = self._records.pop(key, None)
            self._aggregator.forget(key)
            if record is not None:
                logger.debug("MOMENTUM_REMOVED token=%s status=%s", short_id(key), record.status.value)
            return record

    async def expire_stale(self, now: float | None = None) -> list[str]:
        """Expire and drop every observing record whose window has elapsed."""
        current = self._now(now)
        window = self.settings.observation_window_seconds
        expired: list[str] = []
        for key in list(self._records.keys()):
            record = self._records.get(key)
            if record is None or record.status is not WatchStatus.OBSERVING:
                continue
            if record.age_seconds(current) <= window:
                continue
            result = await self.check(key, now=current)
            if result.status is WatchStatus.EXPIRED:
                await self.remove(key)
                expired.append(key)
        return expired

    def is_watching(self, token_id: str) -> bool:
        return normalize_token_id(token_id) in self._records

    def watched_count(self) -> int:
        return len(self._records)

    def get(self, token_id: str) -> WatchRecord | None:
        record = self._records.get(normalize_token_id(token_id))
        return record.snapshot() if record is not None else None

    def statuses(self) -> dict[str, WatchStatus]:
        return {key: record.status for key, record in self._records.items()}
