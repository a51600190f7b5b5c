"""Application configuration."""

import math
import os
from pathlib import Path
from typing import Dict, Tuple

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


class ConfigError(RuntimeError):
    """Raised at startup when thresholds are missing or nonsensical."""


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y", "on")


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(1.0, float(window_part.strip()))
        except ValueError:
            continue
        out[source] = (count, window_seconds)
    return out


RUN_TAG = os.getenv("RUN_TAG", "").strip()

# Momentum gate (entry validation).
MOMENTUM_MIN_TRADES = int(os.getenv("MOMENTUM_MIN_TRADES", "3"))
MOMENTUM_MIN_VOLUME_SOL = float(os.getenv("MOMENTUM_MIN_VOLUME_SOL", "0.2"))
MOMENTUM_MIN_PRICE_CHANGE_PCT = float(os.getenv("MOMENTUM_MIN_PRICE_CHANGE_PCT", "2.0"))
MOMENTUM_MIN_UNIQUE_TRADERS = int(os.getenv("MOMENTUM_MIN_UNIQUE_TRADERS", "2"))
MOMENTUM_MIN_BUY_RATIO = float(os.getenv("MOMENTUM_MIN_BUY_RATIO", "0.5"))
MOMENTUM_MAX_HOLDER_CONCENTRATION = float(os.getenv("MOMENTUM_MAX_HOLDER_CONCENTRATION", "0.5"))
MOMENTUM_OBSERVATION_WINDOW_SECONDS = float(os.getenv("MOMENTUM_OBSERVATION_WINDOW_SECONDS", "5"))
# Optional gates, 0/false disables them.
MOMENTUM_MIN_OBSERVATION_SECONDS = float(os.getenv("MOMENTUM_MIN_OBSERVATION_SECONDS", "0"))
MOMENTUM_MIN_SURVIVAL_RATIO = float(os.getenv("MOMENTUM_MIN_SURVIVAL_RATIO", "0"))
MOMENTUM_MIN_VOLATILITY = float(os.getenv("MOMENTUM_MIN_VOLATILITY", "0"))
MOMENTUM_REQUIRE_POSITIVE_NET_FLOW = _env_flag("MOMENTUM_REQUIRE_POSITIVE_NET_FLOW", "false")
MOMENTUM_WATCH_ON_FIRST_TRADE = _env_flag("MOMENTUM_WATCH_ON_FIRST_TRADE", "true")
# Ready/Expired tokens are not re-watched from trades for this long; a create event still re-watches.
MOMENTUM_TERMINAL_TTL_SECONDS = float(os.getenv("MOMENTUM_TERMINAL_TTL_SECONDS", "600"))
MOMENTUM_TERMINAL_MAX_TOKENS = max(1, int(os.getenv("MOMENTUM_TERMINAL_MAX_TOKENS", "5000")))

# Holder concentration data.
HOLDER_API_URL = os.getenv("HOLDER_API_URL", "https://mainnet.helius-rpc.com/")
HOLDER_API_KEY = os.getenv("HOLDER_API_KEY", "")
HOLDER_API_TIMEOUT_SECONDS = float(os.getenv("HOLDER_API_TIMEOUT_SECONDS", "8"))
HOLDER_FETCH_TOP_N = int(os.getenv("HOLDER_FETCH_TOP_N", "10"))
# true: a failed fetch leaves the token blocked until it expires.
# false: a failed fetch counts as fetched with concentration 0.
HOLDER_FETCH_FAIL_CLOSED = _env_flag("HOLDER_FETCH_FAIL_CLOSED", "true")

# Holder dump kill switch.
HOLDER_DUMP_WATCH_COUNT = int(os.getenv("HOLDER_DUMP_WATCH_COUNT", "3"))
HOLDER_DUMP_EXIT_ON_ANY_SELL = _env_flag("HOLDER_DUMP_EXIT_ON_ANY_SELL", "true")
HOLDER_DUMP_MIN_SOLD_PCT = float(os.getenv("HOLDER_DUMP_MIN_SOLD_PCT", "10"))

# Exit engine.
EXIT_TAKE_PROFIT_PCT = float(os.getenv("EXIT_TAKE_PROFIT_PCT", "50"))
EXIT_STOP_LOSS_PCT = float(os.getenv("EXIT_STOP_LOSS_PCT", "15"))
EXIT_TRAILING_STOP_ENABLED = _env_flag("EXIT_TRAILING_STOP_ENABLED", "true")
EXIT_TRAILING_ACTIVATION_PCT = float(os.getenv("EXIT_TRAILING_ACTIVATION_PCT", "10"))
EXIT_TRAILING_DISTANCE_PCT = float(os.getenv("EXIT_TRAILING_DISTANCE_PCT", "15"))

# Entry sizing and price polling.
ENTRY_SIZE_SOL = float(os.getenv("ENTRY_SIZE_SOL", "0.05"))
PRICE_API_URL = os.getenv("PRICE_API_URL", "https://api.dexscreener.com/latest/dex")
PRICE_CHAIN_ID = os.getenv("PRICE_CHAIN_ID", "solana").strip().lower()
PRICE_POLL_INTERVAL_MS = max(100, int(os.getenv("PRICE_POLL_INTERVAL_MS", "1000")))
SWEEP_INTERVAL_SECONDS = max(0.1, float(os.getenv("SWEEP_INTERVAL_SECONDS", "1.0")))

# Paper execution.
PAPER_FAIL_RATE = float(os.getenv("PAPER_FAIL_RATE", "0"))
PAPER_SLIPPAGE_PCT = max(0.0, float(os.getenv("PAPER_SLIPPAGE_PCT", "0")))

# State and decision log.
STATE_FILE = os.getenv("STATE_FILE", os.path.join("data", "positions_state.json"))
STATE_LOCK_TIMEOUT_SECONDS = max(0.05, float(os.getenv("STATE_LOCK_TIMEOUT_SECONDS", "2.0")))
CLOSED_POSITIONS_KEEP = max(0, int(os.getenv("CLOSED_POSITIONS_KEEP", "500")))
DECISION_LOG_FILE = os.getenv("DECISION_LOG_FILE", os.path.join("logs", "decisions.jsonl"))

# Shared HTTP client.
HTTP_TIMEOUT_SECONDS = max(1.0, float(os.getenv("HTTP_TIMEOUT_SECONDS", "10")))
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.5")))
HTTP_BACKOFF_MAX_SECONDS = max(0.1, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.0")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_RATE_LIMIT_DELAY_SECONDS = max(0.0, float(os.getenv("HTTP_RATE_LIMIT_DELAY_SECONDS", "2.0")))
HTTP_429_COOLDOWN_SECONDS = max(0.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "30")))
HTTP_SOURCE_RATE_LIMITS = _parse_source_rate_limits(os.getenv("HTTP_SOURCE_RATE_LIMITS", "holders:10/1,price:5/1"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")


def validate_config() -> None:
    """Fail fast on nonsensical thresholds before any token is processed."""
    errors: list[str] = []
    g = globals()

    for key in ("MOMENTUM_MIN_TRADES", "MOMENTUM_MIN_UNIQUE_TRADERS"):
        if int(g[key]) < 0:
            errors.append(f"{key} must be >= 0 (got {g[key]})")

    for key in (
        "MOMENTUM_MIN_VOLUME_SOL",
        "MOMENTUM_MIN_PRICE_CHANGE_PCT",
        "MOMENTUM_MIN_OBSERVATION_SECONDS",
        "MOMENTUM_TERMINAL_TTL_SECONDS",
        "MOMENTUM_MIN_VOLATILITY",
        "EXIT_TAKE_PROFIT_PCT",
        "EXIT_STOP_LOSS_PCT",
        "EXIT_TRAILING_ACTIVATION_PCT",
        "EXIT_TRAILING_DISTANCE_PCT",
        "HOLDER_DUMP_MIN_SOLD_PCT",
        "ENTRY_SIZE_SOL",
    ):
        value = float(g[key])
        if math.isnan(value) or value < 0:
            errors.append(f"{key} must be a non-negative number (got {g[key]})")

    for key in ("MOMENTUM_MIN_BUY_RATIO", "MOMENTUM_MAX_HOLDER_CONCENTRATION", "MOMENTUM_MIN_SURVIVAL_RATIO", "PAPER_FAIL_RATE"):
        value = float(g[key])
        if not (0.0 <= value <= 1.0):
            errors.append(f"{key} must be within [0, 1] (got {g[key]})")

    if float(g["MOMENTUM_OBSERVATION_WINDOW_SECONDS"]) <= 0:
        errors.append(
            f"MOMENTUM_OBSERVATION_WINDOW_SECONDS must be > 0 (got {g['MOMENTUM_OBSERVATION_WINDOW_SECONDS']})"
        )
    if float(g["EXIT_TAKE_PROFIT_PCT"]) == 0:
        errors.append("EXIT_TAKE_PROFIT_PCT must be > 0")
    if float(g["EXIT_STOP_LOSS_PCT"]) == 0:
        errors.append("EXIT_STOP_LOSS_PCT must be > 0")
    if bool(g["EXIT_TRAILING_STOP_ENABLED"]) and float(g["EXIT_TRAILING_DISTANCE_PCT"]) <= 0:
        errors.append("EXIT_TRAILING_DISTANCE_PCT must be > 0 when trailing stop is enabled")
    if int(g["HOLDER_DUMP_WATCH_COUNT"]) < 1:
        errors.append(f"HOLDER_DUMP_WATCH_COUNT must be >= 1 (got {g['HOLDER_DUMP_WATCH_COUNT']})")
    if int(g["HOLDER_FETCH_TOP_N"]) < int(g["HOLDER_DUMP_WATCH_COUNT"]):
        errors.append("HOLDER_FETCH_TOP_N must be >= HOLDER_DUMP_WATCH_COUNT")

    if errors:
        raise ConfigError("invalid configuration: " + "; ".join(errors))
