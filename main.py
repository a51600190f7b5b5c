"""Entry point: feed a JSON-lines event stream through the momentum gate and exit engine."""

import argparse
import asyncio
import json
import logging
import os
import sys
import time
from logging.handlers import RotatingFileHandler
from typing import Any, TextIO

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from monitor.holder_fetcher import HolderConcentrationFetcher, HolderShare
from monitor.price_feed import PriceFeed
from trading.momentum import MomentumValidator
from trading.orchestrator import EntryExitOrchestrator
from trading.paper_executor import PaperExecutor
from trading.positions import PositionStore


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    logging.getLogger("aiohttp").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


class ReplayClock:
    """Event-time clock: follows the newest event timestamp seen so far."""

    def __init__(self) -> None:
        self.current: float | None = None

    def advance(self, ts: Any) -> None:
        try:
            value = float(ts)
        except (TypeError, ValueError):
            return
        if self.current is None or value > self.current:
            self.current = value

    def __call__(self) -> float:
        return self.current if self.current is not None else time.time()


def _holder_rows(rows: Any) -> list[HolderShare]:
    out: list[HolderShare] = []
    for row in rows or []:
        if not isinstance(row, dict):
            continue
        out.append(
            HolderShare(
                holder_id=str(row.get("holder_id", "") or ""),
                amount=float(row.get("amount", 0) or 0),
                percentage=float(row.get("percentage", 0) or 0),
            )
        )
    out.sort(key=lambda h: h.amount, reverse=True)
    return out


async def dispatch_event(orchestrator: EntryExitOrchestrator, row: dict[str, Any]) -> None:
    kind = str(row.get("type", "trade") or "trade").strip().lower()
    ts = row.get("timestamp", row.get("ts"))
    if kind == "create":
        await orchestrator.on_token_discovered(str(row.get("token_id", "")), ts=float(ts) if ts is not None else None)
    elif kind == "trade":
        await orchestrator.on_trade(row)
    elif kind in ("tick", "price"):
        await orchestrator.on_price_tick(row)
    elif kind == "holders":
        concentration = row.get("concentration")
        await orchestrator.on_holder_data(
            str(row.get("token_id", "")),
            holders=_holder_rows(row.get("holders")),
            concentration=float(concentration) if concentration is not None else None,
        )
    elif kind == "balance":
        await orchestrator.on_holder_balance(
            str(row.get("token_id", "")),
            str(row.get("holder_id", "")),
            row.get("amount"),
            ts=float(ts) if ts is not None else None,
        )
    else:
        logger.warning("REPLAY_UNKNOWN_EVENT type=%s", kind)


async def replay_stream(
    stream: TextIO,
    orchestrator: EntryExitOrchestrator,
    clock: ReplayClock | None = None,
) -> int:
    """Replay every JSON line of ``stream``; returns the number of events dispatched."""
    count = 0
    line_no = 0
    while True:
        line = await asyncio.to_thread(stream.readline)
        if not line:
            break
        line_no += 1
        text = line.strip()
        if not text or text.startswith("#"):
            continue
        try:
            row = json.loads(text)
        except ValueError as exc:
            logger.warning("REPLAY_BAD_LINE line=%s err=%s", line_no, exc)
            continue
        if not isinstance(row, dict):
            logger.warning("REPLAY_BAD_LINE line=%s err=not_an_object", line_no)
            continue
        if clock is not None:
            clock.advance(row.get("timestamp", row.get("ts")))
        await dispatch_event(orchestrator, row)
        await orchestrator.sweep()
        count += 1
    return count


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Momentum-gated paper trader fed by a JSON-lines event stream.")
    parser.add_argument("--events", default="-", help="Path to a JSON-lines event file, '-' for stdin (default)")
    parser.add_argument("--state-file", default="", help="Override STATE_FILE for position persistence")
    parser.add_argument("--load-state", action="store_true", help="Load open positions from the state file first")
    parser.add_argument("--decision-log", default=None, help="Override DECISION_LOG_FILE ('' disables it)")
    parser.add_argument("--live-holders", action="store_true", help="Fetch holder concentration from HOLDER_API_URL")
    parser.add_argument(
        "--poll-prices",
        action="store_true",
        help="Poll PRICE_API_URL for open positions and keep running after the replay until they close",
    )
    return parser


async def run(args: argparse.Namespace) -> int:
    live = bool(args.poll_prices)
    clock = None if live else ReplayClock()
    clock_fn = time.time if clock is None else clock

    positions = PositionStore(state_file=args.state_file or None, clock=clock_fn)
    if args.load_state:
        ok, detail = positions.load()
        if not ok:
            logger.info("STATE_NOT_LOADED detail=%s", detail)

    holder_fetcher = HolderConcentrationFetcher() if args.live_holders else None
    orchestrator = EntryExitOrchestrator(
        validator=MomentumValidator(clock=clock_fn),
        positions=positions,
        executor=PaperExecutor(),
        holder_fetcher=holder_fetcher,
        decision_log_file=args.decision_log,
        persist_state=bool(positions.state_file),
        clock=clock_fn,
    )
    price_feed: PriceFeed | None = None
    if live:
        price_feed = PriceFeed(orchestrator.on_price_tick)
        orchestrator.price_feed = price_feed
        for pos in positions.list_open():
            price_feed.subscribe(pos.token_id)

    stop = asyncio.Event()
    background: list[asyncio.Task] = []
    if live:
        background.append(asyncio.create_task(orchestrator.run_sweeper(stop), name="sweeper"))
        background.append(asyncio.create_task(price_feed.run(), name="price_feed"))

    stream: TextIO = sys.stdin
    try:
        if args.events and args.events != "-":
            stream = open(args.events, "r", encoding="utf-8-sig")
        count = await replay_stream(stream, orchestrator, clock)
        logger.info("REPLAY_DONE events=%s stats=%s", count, orchestrator.runtime_stats())
        if live:
            while positions.open_positions:
                await asyncio.sleep(1.0)
    finally:
        if stream is not sys.stdin:
            stream.close()
        stop.set()
        if price_feed is not None:
            price_feed.stop()
        for task in background:
            task.cancel()
        if background:
            await asyncio.gather(*background, return_exceptions=True)
        await orchestrator.close()
        if price_feed is not None:
            await price_feed.close()
        if holder_fetcher is not None:
            await holder_fetcher.close()

    stats = orchestrator.runtime_stats()
    logger.info(
        "SESSION_SUMMARY watched=%s ready=%s expired=%s opened=%s closed=%s open=%s errors=%s",
        stats["watched"],
        stats["ready"],
        stats["expired"],
        stats["opened"],
        stats["closed"],
        stats["open_positions"],
        stats["errors"],
    )
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    try:
        config.validate_config()
    except config.ConfigError as exc:
        logger.error("CONFIG_INVALID %s", exc)
        return 2
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 130


if __name__ == "__main__":
    sys.exit(main())
