"""Top-holder lookup through the Helius ``getTokenAccounts`` JSON-RPC method."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import config
from utils.addressing import normalize_token_id, short_id
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HolderShare:
    holder_id: str
    amount: float
    percentage: float


@dataclass
class HolderFetchResult:
    ok: bool
    token_id: str
    holders: list[HolderShare] = field(default_factory=list)
    error: str = ""

    @property
    def top_holder_concentration(self) -> float:
        return top_holder_concentration(self.holders)


def top_holder_concentration(holders: list[HolderShare]) -> float:
    """Largest holder's share of supply as a fraction in [0, 1]."""
    if not holders:
        return 0.0
    top = max(h.percentage for h in holders)
    return min(1.0, max(0.0, top / 100.0))


def parse_token_accounts(payload: Any) -> tuple[list[HolderShare], str]:
    """Turn a ``getTokenAccounts`` response into holders sorted by amount.

    Accounts of the same owner are merged. Percentages are relative to the
    total of the returned accounts.
    """
    if not isinstance(payload, dict):
        return [], "invalid_payload"
    error = payload.get("error")
    if error:
        message = error.get("message") if isinstance(error, dict) else error
        return [], f"rpc_error:{message}"
    result = payload.get("result")
    if not isinstance(result, dict):
        return [], "no_result"
    accounts = result.get("token_accounts")
    if not isinstance(accounts, list):
        return [], "no_token_accounts"

    by_owner: dict[str, float] = {}
    for account in accounts:
        if not isinstance(account, dict):
            continue
        owner = normalize_token_id(account.get("owner"))
        try:
            amount = float(account.get("amount") or 0)
        except (TypeError, ValueError):
            continue
        if not owner or amount <= 0:
            continue
        by_owner[owner] = by_owner.get(owner, 0.0) + amount

    total = sum(by_owner.values())
    holders = [
        HolderShare(
            holder_id=owner,
            amount=amount,
            percentage=(amount / total * 100.0) if total > 0 else 0.0,
        )
        for owner, amount in by_owner.items()
    ]
    holders.sort(key=lambda h: h.amount, reverse=True)
    return holders, ""


class HolderConcentrationFetcher:
    def __init__(self, http: ResilientHttpClient | None = None) -> None:
        self._owns_http = http is None
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(getattr(config, "HOLDER_API_TIMEOUT_SECONDS", 8.0)),
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            source_limits={"holders": 4},
        )

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()

    def runtime_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        return self._http.snapshot_stats(reset=reset)

    async def fetch_holders(self, token_id: str, top_n: int | None = None) -> HolderFetchResult:
        key = normalize_token_id(token_id)
        if not key:
            return HolderFetchResult(ok=False, token_id=key, error="empty_token_id")
        limit = max(1, int(top_n if top_n is not None else getattr(config, "HOLDER_FETCH_TOP_N", 10)))
        url = str(getattr(config, "HOLDER_API_URL", "") or "").strip()
        if not url:
            return HolderFetchResult(ok=False, token_id=key, error="holder_api_not_configured")
        params: dict[str, Any] = {}
        api_key = str(getattr(config, "HOLDER_API_KEY", "") or "").strip()
        if api_key:
            params["api-key"] = api_key
        request = {
            "jsonrpc": "2.0",
            "id": "holders",
            "method": "getTokenAccounts",
            "params": {
                "page": 1,
                "limit": limit,
                "mint": key,
                "options": {"showZeroBalance": False},
            },
        }
        result = await self._http.post_json(url, request, source="holders", params=params or None)
        if not result.ok:
            if result.status == 429:
                logger.warning("RATE_LIMIT source=holders status=429 token=%s", short_id(key))
            logger.warning("HOLDER_FETCH_FAIL token=%s err=%s", short_id(key), result.error or result.status)
            return HolderFetchResult(ok=False, token_id=key, error=result.error or f"http_status_{result.status}")

        holders, error = parse_token_accounts(result.data)
        if not error and not holders:
            error = "no_holders"
        if error:
            logger.warning("HOLDER_FETCH_FAIL token=%s err=%s", short_id(key), error)
            return HolderFetchResult(ok=False, token_id=key, error=error)
        holders = holders[:limit]
        logger.debug(
            "HOLDER_FETCH_OK token=%s holders=%s top=%.1f%%",
            short_id(key),
            len(holders),
            holders[0].percentage if holders else 0.0,
        )
        return HolderFetchResult(ok=True, token_id=key, holders=holders)
