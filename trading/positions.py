"""Open position bookkeeping with monotonic peak tracking and JSON persistence."""

from __future__ import annotations

import logging
import math
import os
import time
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable

import config
from utils.addressing import normalize_token_id, short_id
from utils.keyed_lock import KeyedLock
from utils.state_file import StateFileLockError, read_json_locked, write_json_atomic_locked

logger = logging.getLogger(__name__)

STATE_VERSION = 1


@dataclass
class Position:
    token_id: str
    entry_price: float
    entry_time: float
    cost_basis: float
    token_quantity: float
    current_price: float = 0.0
    peak_price: float | None = None
    realized: bool = False
    last_tick_at: float | None = None
    exit_proceeds: float = 0.0
    realized_pnl: float = 0.0
    exit_reason: str = ""
    closed_at: float | None = None

    @property
    def pnl_pct(self) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (self.current_price - self.entry_price) / self.entry_price * 100.0

    @property
    def peak_pnl_pct(self) -> float:
        if self.entry_price <= 0 or self.peak_price is None:
            return 0.0
        return (self.peak_price - self.entry_price) / self.entry_price * 100.0

    @property
    def drop_from_peak_pct(self) -> float:
        if not self.peak_price:
            return 0.0
        return (self.peak_price - self.current_price) / self.peak_price * 100.0

    @property
    def market_value(self) -> float:
        return self.token_quantity * self.current_price

    def snapshot(self) -> "Position":
        return replace(self)


def _positive(value: Any) -> float:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(out) or out <= 0:
        return 0.0
    return out


def serialize_position(pos: Position) -> dict[str, Any]:
    row = asdict(pos)
    row["entry_time_iso"] = datetime.fromtimestamp(pos.entry_time, tz=timezone.utc).isoformat()
    return row


def deserialize_position(row: dict[str, Any]) -> Position | None:
    if not isinstance(row, dict):
        return None
    token_id = normalize_token_id(row.get("token_id"))
    entry_price = _positive(row.get("entry_price"))
    if not token_id or entry_price <= 0:
        return None
    peak = _positive(row.get("peak_price"))
    last_tick = row.get("last_tick_at")
    closed_at = row.get("closed_at")
    try:
        return Position(
            token_id=token_id,
            entry_price=entry_price,
            entry_time=float(row.get("entry_time", 0.0) or 0.0),
            cost_basis=float(row.get("cost_basis", 0.0) or 0.0),
            token_quantity=float(row.get("token_quantity", 0.0) or 0.0),
            current_price=_positive(row.get("current_price")) or entry_price,
            # A missing or sub-entry peak goes back to unset; the next tick seeds it.
            peak_price=peak if peak >= entry_price else None,
            realized=bool(row.get("realized", False)),
            last_tick_at=float(last_tick) if last_tick is not None else None,
            exit_proceeds=float(row.get("exit_proceeds", 0.0) or 0.0),
            realized_pnl=float(row.get("realized_pnl", 0.0) or 0.0),
            exit_reason=str(row.get("exit_reason", "") or ""),
            closed_at=float(closed_at) if closed_at is not None else None,
        )
    except (TypeError, ValueError):
        return None


class PositionStore:
    """Owns the open positions; every mutation holds the token's lock.

    Rejections come back as ``(False, detail)`` instead of raising so the
    orchestrator can log them and keep going with other tokens.
    """

    def __init__(self, state_file: str | None = None, clock: Callable[[], float] = time.time) -> None:
        self.state_file = state_file if state_file is not None else str(getattr(config, "STATE_FILE", "") or "")
        self.open_positions: dict[str, Position] = {}
        self.closed: list[Position] = []
        self._locks = KeyedLock()
        self._clock = clock

    async def open(self, position: Position) -> tuple[bool, str]:
        key = normalize_token_id(position.token_id)
        if not key:
            return False, "empty_token_id"
        if _positive(position.entry_price) <= 0:
            return False, f"invalid_entry_price:{position.entry_price}"
        async with self._locks.hold(key):
            if key in self.open_positions:
                return False, "position_already_open"
            pos = replace(position, token_id=key, realized=False, closed_at=None)
            if _positive(pos.current_price) <= 0:
                pos.current_price = pos.entry_price
            if pos.peak_price is None or pos.peak_price < pos.entry_price:
                pos.peak_price = pos.entry_price
            self.open_positions[key] = pos
        logger.info(
            "POSITION_OPEN token=%s entry=%.10g qty=%.6g cost=%.6f",
            short_id(key),
            pos.entry_price,
            pos.token_quantity,
            pos.cost_basis,
        )
        return True, "opened"

    async def update_price(self, token_id: str, price: float, ts: float | None = None) -> tuple[bool, str]:
        key = normalize_token_id(token_id)
        value = _positive(price)
        if value <= 0:
            return False, f"invalid_price:{price}"
        tick_at = float(ts) if ts is not None else float(self._clock())
        async with self._locks.hold(key):
            pos = self.open_positions.get(key)
            if pos is None:
                return False, "no_open_position"
            if pos.last_tick_at is not None and tick_at < pos.last_tick_at:
                logger.debug(
                    "POSITION_STALE_TICK token=%s tick_at=%.3f last=%.3f",
                    short_id(key),
                    tick_at,
                    pos.last_tick_at,
                )
                return False, "stale_tick"
            pos.current_price = value
            pos.last_tick_at = tick_at
            if pos.peak_price is None:
                pos.peak_price = max(pos.entry_price, value)
            else:
                pos.peak_price = max(pos.peak_price, value)
        return True, "updated"

    async def close(self, token_id: str, proceeds: float, reason: str = "", ts: float | None = None) -> tuple[bool, str]:
        key = normalize_token_id(token_id)
        async with self._locks.hold(key):
            pos = self.open_positions.pop(key, None)
            if pos is None:
                return False, "already_closed"
            pos.realized = True
            pos.exit_proceeds = float(proceeds or 0.0)
            pos.realized_pnl = pos.exit_proceeds - pos.cost_basis
            pos.exit_reason = str(reason or "")
            pos.closed_at = float(ts) if ts is not None else float(self._clock())
            self.closed.append(pos)
            self._prune_closed()
        logger.info(
            "POSITION_CLOSE token=%s reason=%s proceeds=%.6f pnl=%+.6f peak=%.10g",
            short_id(key),
            pos.exit_reason or "-",
            pos.exit_proceeds,
            pos.realized_pnl,
            pos.peak_price or 0.0,
        )
        return True, "closed"

    def _prune_closed(self) -> None:
        keep = max(1, int(getattr(config, "CLOSED_POSITIONS_KEEP", 500) or 500))
        if len(self.closed) > keep:
            del self.closed[: len(self.closed) - keep]

    def get(self, token_id: str) -> Position | None:
        pos = self.open_positions.get(normalize_token_id(token_id))
        return pos.snapshot() if pos is not None else None

    def has_open(self, token_id: str) -> bool:
        return normalize_token_id(token_id) in self.open_positions

    def list_open(self) -> list[Position]:
        return [pos.snapshot() for pos in self.open_positions.values()]

    def closed_positions(self) -> list[Position]:
        return [pos.snapshot() for pos in self.closed]

    def save(self) -> tuple[bool, str]:
        if not self.state_file:
            return False, "no_state_file"
        payload = {
            "version": STATE_VERSION,
            "saved_at": time.time(),
            "open_positions": [serialize_position(p) for p in self.open_positions.values()],
            "closed_positions": [serialize_position(p) for p in self.closed],
        }
        timeout = float(getattr(config, "STATE_LOCK_TIMEOUT_SECONDS", 2.0) or 2.0)
        try:
            write_json_atomic_locked(self.state_file, payload, timeout_seconds=timeout)
        except (OSError, StateFileLockError) as exc:
            logger.warning("POSITION_STATE_SAVE_FAILED path=%s err=%s", self.state_file, exc)
            return False, str(exc)
        return True, "saved"

    def load(self) -> tuple[bool, str]:
        if not self.state_file or not os.path.exists(self.state_file):
            return False, "no_state_file"
        timeout = float(getattr(config, "STATE_LOCK_TIMEOUT_SECONDS", 2.0) or 2.0)
        try:
            payload = read_json_locked(self.state_file, timeout_seconds=timeout)
        except (OSError, ValueError, StateFileLockError) as exc:
            logger.warning("POSITION_STATE_LOAD_FAILED path=%s err=%s", self.state_file, exc)
            return False, str(exc)
        if not isinstance(payload, dict):
            return False, "invalid_state_payload"

        self.open_positions.clear()
        for row in payload.get("open_positions", []) or []:
            pos = deserialize_position(row)
            if pos is not None and not pos.realized:
                self.open_positions[pos.token_id] = pos
        self.closed = []
        for row in payload.get("closed_positions", []) or []:
            pos = deserialize_position(row)
            if pos is not None:
                pos.realized = True
                self.closed.append(pos)
        self._prune_closed()
        logger.info(
            "POSITION_STATE_LOADED open=%s closed=%s path=%s",
            len(self.open_positions),
            len(self.closed),
            self.state_file,
        )
        return True, "loaded"
