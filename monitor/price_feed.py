"""Price polling for open positions (DexScreener tokens endpoint)."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import config
from utils.addressing import normalize_token_id, short_id
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PriceTick:
    token_id: str
    price: float
    timestamp: float
    liquidity_usd: float = 0.0


TickHandler = Callable[[PriceTick], Awaitable[Any]]


def best_pair_price(payload: Any, chain_id: str) -> tuple[float, float]:
    """Return ``(price, liquidity_usd)`` of the most liquid pair on ``chain_id``.

    Prices are quoted in the chain's native token (``priceNative``); ``(0, 0)``
    when no usable pair is present.
    """
    if not isinstance(payload, dict):
        return 0.0, 0.0
    pairs = payload.get("pairs", []) or []
    best_liq = -1.0
    best_price = 0.0
    for pair in pairs:
        if not isinstance(pair, dict):
            continue
        if str(pair.get("chainId", "")).lower() != str(chain_id).lower():
            continue
        try:
            liq = float((pair.get("liquidity") or {}).get("usd") or 0)
            price = float(pair.get("priceNative") or 0)
        except (TypeError, ValueError):
            continue
        if price <= 0:
            continue
        if liq > best_liq:
            best_liq = liq
            best_price = price
    if best_price <= 0:
        return 0.0, 0.0
    return best_price, max(0.0, best_liq)


class PriceFeed:
    def __init__(self, on_tick: TickHandler, http: ResilientHttpClient | None = None) -> None:
        self._on_tick = on_tick
        self._owns_http = http is None
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(getattr(config, "HTTP_TIMEOUT_SECONDS", 10.0) or 10.0),
            headers={"Accept": "application/json, text/plain, */*"},
            source_limits={"price": 5},
        )
        self._tokens: set[str] = set()
        self._stop = asyncio.Event()

    def subscribe(self, token_id: str) -> None:
        key = normalize_token_id(token_id)
        if key and key not in self._tokens:
            self._tokens.add(key)
            logger.info("PRICE_SUBSCRIBE token=%s", short_id(key))

    def unsubscribe(self, token_id: str) -> None:
        key = normalize_token_id(token_id)
        if key in self._tokens:
            self._tokens.discard(key)
            logger.info("PRICE_UNSUBSCRIBE token=%s", short_id(key))

    def subscribed(self) -> list[str]:
        return sorted(self._tokens)

    async def fetch_price(self, token_id: str) -> PriceTick | None:
        key = normalize_token_id(token_id)
        if not key:
            return None
        base = str(getattr(config, "PRICE_API_URL", "") or "").rstrip("/")
        result = await self._http.get_json(f"{base}/tokens/{key}", source="price")
        if not result.ok:
            if result.status == 429:
                logger.warning("RATE_LIMIT source=price status=429 token=%s", short_id(key))
            logger.debug("PRICE_FETCH_FAIL token=%s err=%s", short_id(key), result.error)
            return None
        price, liquidity = best_pair_price(result.data, str(getattr(config, "PRICE_CHAIN_ID", "solana")))
        if price <= 0:
            logger.debug("PRICE_FETCH_EMPTY token=%s", short_id(key))
            return None
        return PriceTick(token_id=key, price=price, timestamp=time.time(), liquidity_usd=liquidity)

    async def poll_once(self) -> int:
        """Fetch every subscribed token once and deliver the ticks; returns ticks delivered."""
        tokens = sorted(self._tokens)
        if not tokens:
            return 0
        ticks = await asyncio.gather(*[self.fetch_price(token) for token in tokens])
        delivered = 0
        for tick in ticks:
            # Unsubscribed while the request was in flight.
            if tick is None or tick.token_id not in self._tokens:
                continue
            await self._on_tick(tick)
            delivered += 1
        return delivered

    async def run(self) -> None:
        interval = max(0.1, float(getattr(config, "PRICE_POLL_INTERVAL_MS", 1000)) / 1000.0)
        logger.info("PRICE_FEED_START interval=%.2fs", interval)
        while not self._stop.is_set():
            started = time.monotonic()
            await self.poll_once()
            elapsed = time.monotonic() - started
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, interval - elapsed))
            except asyncio.TimeoutError:
                continue
        logger.info("PRICE_FEED_STOP")

    def stop(self) -> None:
        self._stop.set()

    async def close(self) -> None:
        self.stop()
        if self._owns_http:
            await self._http.close()
