"""Per-tick exit evaluation for open positions.

Rules are checked in a fixed order and the first match wins:

1. holder dump (a watched top holder reduced its balance since entry)
2. trailing stop (armed by the peak gain, fires on the drop from peak)
3. take profit
4. stop loss

The evaluation only reads the position; selling and closing it is left to the
caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

import config
from trading.positions import Position


class ExitReason(str, Enum):
    HOLDER_DUMP = "HolderDump"
    TRAILING_STOP = "TrailingStop"
    TAKE_PROFIT = "TakeProfit"
    STOP_LOSS = "StopLoss"

    @property
    def log_reason(self) -> str:
        return {
            ExitReason.HOLDER_DUMP: "holder_dump",
            ExitReason.TRAILING_STOP: "trailing_stop",
            ExitReason.TAKE_PROFIT: "take_profit",
            ExitReason.STOP_LOSS: "stop_loss",
        }[self]


@dataclass(frozen=True)
class ExitSettings:
    take_profit_pct: float
    stop_loss_pct: float
    trailing_enabled: bool
    trailing_activation_pct: float
    trailing_distance_pct: float

    @classmethod
    def from_config(cls) -> "ExitSettings":
        return cls(
            take_profit_pct=float(config.EXIT_TAKE_PROFIT_PCT),
            stop_loss_pct=float(config.EXIT_STOP_LOSS_PCT),
            trailing_enabled=bool(config.EXIT_TRAILING_STOP_ENABLED),
            trailing_activation_pct=float(config.EXIT_TRAILING_ACTIVATION_PCT),
            trailing_distance_pct=float(config.EXIT_TRAILING_DISTANCE_PCT),
        )


@dataclass(frozen=True)
class ExitDecision:
    reason: ExitReason
    pnl_pct: float
    peak_pnl_pct: float
    drop_from_peak_pct: float
    detail: str = ""

    def as_dict(self) -> dict[str, Any]:
        return {
            "exit_reason": self.reason.value,
            "pnl_pct": round(self.pnl_pct, 4),
            "peak_pnl_pct": round(self.peak_pnl_pct, 4),
            "drop_from_peak_pct": round(self.drop_from_peak_pct, 4),
            "detail": self.detail,
        }


def evaluate_exit(
    position: Position,
    holder_dump: Any = None,
    settings: ExitSettings | None = None,
) -> ExitDecision | None:
    """Return the exit to take for this tick, or None to keep holding.

    ``holder_dump`` is any truthy alert from the holder watch; its ``detail``
    attribute, when present, is carried into the decision.
    """
    cfg = settings or ExitSettings.from_config()
    entry = float(position.entry_price or 0.0)
    if entry <= 0:
        return None
    current = float(position.current_price or 0.0)
    # Unset peak falls back to entry.
    peak = float(position.peak_price) if position.peak_price is not None else entry
    pnl_pct = (current - entry) / entry * 100.0
    peak_pnl_pct = (peak - entry) / entry * 100.0
    drop_pct = (peak - current) / peak * 100.0 if peak > 0 else 0.0

    def _decision(reason: ExitReason, detail: str) -> ExitDecision:
        return ExitDecision(
            reason=reason,
            pnl_pct=pnl_pct,
            peak_pnl_pct=peak_pnl_pct,
            drop_from_peak_pct=drop_pct,
            detail=detail,
        )

    if holder_dump:
        return _decision(ExitReason.HOLDER_DUMP, str(getattr(holder_dump, "detail", "") or "holder_reduced_balance"))

    if (
        cfg.trailing_enabled
        and peak > entry
        and peak_pnl_pct >= cfg.trailing_activation_pct
        and drop_pct >= cfg.trailing_distance_pct
    ):
        return _decision(
            ExitReason.TRAILING_STOP,
            f"peak:+{peak_pnl_pct:.1f}% drop:{drop_pct:.1f}%>={cfg.trailing_distance_pct:.1f}%",
        )

    if pnl_pct >= cfg.take_profit_pct:
        return _decision(ExitReason.TAKE_PROFIT, f"pnl:{pnl_pct:+.1f}%>={cfg.take_profit_pct:.1f}%")

    if pnl_pct <= -cfg.stop_loss_pct:
        return _decision(ExitReason.STOP_LOSS, f"pnl:{pnl_pct:+.1f}%<=-{cfg.stop_loss_pct:.1f}%")

    return None
