"""Stable decision-log contracts for gate and exit events."""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Any

from utils.addressing import normalize_token_id

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_GATE_DECISION = "gate_decision.v1"
SCHEMA_TRADE_DECISION = "trade_decision.v1"

_STAGE_PREFIX: dict[str, str] = {
    "watch": "WATCH",
    "gate": "GATE",
    "trade_open": "EXEC",
    "trade_close": "EXIT",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "watch_start": "WATCH_START",
    "trades": "GATE_TRADES_LOW",
    "vol": "GATE_VOLUME_LOW",
    "price": "GATE_PRICE_CHANGE_LOW",
    "traders": "GATE_UNIQUE_TRADERS_LOW",
    "buy_ratio": "GATE_BUY_RATIO_LOW",
    "holder_data": "GATE_HOLDER_DATA_PENDING",
    "whale": "GATE_WHALE_CONCENTRATION",
    "obs": "GATE_OBSERVATION_SHORT",
    "survival": "GATE_SURVIVAL_LOW",
    "volatility": "GATE_VOLATILITY_LOW",
    "net_flow": "GATE_NET_FLOW_NEGATIVE",
    "ready": "GATE_READY",
    "expired": "GATE_EXPIRED",
    "buy_paper": "EXEC_BUY_PAPER",
    "buy_fail": "EXEC_BUY_FAIL",
    "open_rejected": "EXEC_OPEN_REJECTED",
    "sell_fail": "EXEC_SELL_FAIL",
    "holder_dump": "EXIT_HOLDER_DUMP",
    "trailing_stop": "EXIT_TRAILING_STOP",
    "take_profit": "EXIT_TAKE_PROFIT",
    "stop_loss": "EXIT_STOP_LOSS",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "GATE_READY": {"severity": "INFO", "category": "gate", "title": "Momentum gate passed"},
    "GATE_EXPIRED": {"severity": "INFO", "category": "gate", "title": "Observation window elapsed"},
    "GATE_HOLDER_DATA_PENDING": {"severity": "INFO", "category": "gate", "title": "Holder data not fetched yet"},
    "GATE_WHALE_CONCENTRATION": {"severity": "WARN", "category": "gate", "title": "Top holder owns too much supply"},
    "EXEC_BUY_PAPER": {"severity": "INFO", "category": "execute", "title": "Paper buy opened"},
    "EXEC_BUY_FAIL": {"severity": "WARN", "category": "execute", "title": "Buy failed, entry not taken"},
    "EXEC_SELL_FAIL": {"severity": "WARN", "category": "execute", "title": "Sell failed, position still open"},
    "EXIT_HOLDER_DUMP": {"severity": "WARN", "category": "exit", "title": "Top holder reduced balance"},
    "EXIT_TRAILING_STOP": {"severity": "INFO", "category": "exit", "title": "Closed by trailing stop"},
    "EXIT_TAKE_PROFIT": {"severity": "INFO", "category": "exit", "title": "Closed by take profit"},
    "EXIT_STOP_LOSS": {"severity": "WARN", "category": "exit", "title": "Closed by stop loss"},
}


def _as_ts(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value or "").strip()
    if not text:
        return datetime.now(timezone.utc).timestamp()
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return datetime.now(timezone.utc).timestamp()
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _normalize_reason_text(value: Any) -> str:
    text = str(value or "").strip().lower()
    if not text:
        return ""
    # "whale:62%>50%" -> "whale", "holder_data:pending" -> "holder_data"
    text = text.split(":", 1)[0]
    text = re.sub(r"[^a-z0-9]+", "_", text)
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    return re.sub(r"_+", "_", text).strip("_") or "UNKNOWN"


def reason_code_for_event(*, reason: Any, decision_stage: Any = "") -> str:
    normalized = _normalize_reason_text(reason)
    if not normalized:
        return "UNKNOWN"
    override = _REASON_CODE_OVERRIDES.get(normalized)
    if override:
        return override
    stage = _normalize_reason_text(decision_stage) or "unknown"
    return f"{_STAGE_PREFIX.get(stage, 'UNKNOWN')}_{_sanitize_code_token(normalized)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {"severity": "INFO", "category": "unknown", "title": key.replace("_", " ").title()}


def _digest(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()[:20]


def stamp_event(event: dict[str, Any], *, schema_name: str, run_tag: str = "") -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts"))
    payload["ts"] = ts
    payload["timestamp"] = datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    if run_tag:
        payload.setdefault("run_tag", run_tag)
    token_id = normalize_token_id(payload.get("token_id"))
    payload["token_id"] = token_id
    payload.setdefault("decision_stage", "unknown")
    payload.setdefault("decision", "unknown")
    reasons = payload.get("reasons") or []
    payload["reasons"] = [str(r) for r in reasons]
    payload["reason"] = str(payload.get("reason", "") or (payload["reasons"][0] if payload["reasons"] else ""))
    payload["reason_code"] = str(
        payload.get("reason_code", "")
        or reason_code_for_event(reason=payload["reason"], decision_stage=payload["decision_stage"])
    ).upper()
    meta = reason_code_meta(payload["reason_code"])
    payload["reason_severity"] = meta["severity"]
    payload["reason_category"] = meta["category"]
    payload["trace_id"] = str(payload.get("trace_id", "") or f"tr_{_digest(token_id, payload.get('first_seen_at', ''))}")
    payload["decision_id"] = "dec_" + _digest(
        run_tag, payload["trace_id"], payload["decision_stage"], payload["decision"], payload["reason"], f"{ts:.6f}"
    )
    return payload


def gate_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    return stamp_event(event, schema_name=SCHEMA_GATE_DECISION, run_tag=run_tag)


def trade_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = stamp_event(event, schema_name=SCHEMA_TRADE_DECISION, run_tag=run_tag)
    if payload["decision_stage"] in {"trade_open", "trade_close"} and payload["token_id"]:
        payload.setdefault("position_id", f"pos_{_digest(payload['token_id'], payload.get('entry_time', ''))}")
    return payload
