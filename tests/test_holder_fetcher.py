from __future__ import annotations

import unittest
from typing import Any

import config
from monitor.holder_fetcher import (
    HolderConcentrationFetcher,
    HolderShare,
    parse_token_accounts,
    top_holder_concentration,
)
from utils.http_client import HttpResult


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class _StubHttp:
    def __init__(self, result: HttpResult) -> None:
        self.result = result
        self.calls: list[dict[str, Any]] = []

    async def post_json(self, url: str, payload: Any, **kwargs: Any) -> HttpResult:
        self.calls.append({"url": url, "payload": payload, **kwargs})
        return self.result

    async def close(self) -> None:
        return None


def _accounts(*rows: tuple[str, int]) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": "holders",
        "result": {"token_accounts": [{"owner": owner, "amount": amount} for owner, amount in rows]},
    }


class HolderFetcherTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(HOLDER_API_URL="https://rpc.test/", HOLDER_API_KEY="k-123", HOLDER_FETCH_TOP_N=10)

    async def test_fetch_sorts_holders_and_computes_shares(self) -> None:
        http = _StubHttp(HttpResult(ok=True, status=200, data=_accounts(("b", 200), ("a", 600), ("c", 200))))
        fetcher = HolderConcentrationFetcher(http=http)

        result = await fetcher.fetch_holders("MintA", top_n=5)

        self.assertTrue(result.ok)
        self.assertEqual([h.holder_id for h in result.holders], ["a", "b", "c"])
        self.assertAlmostEqual(result.holders[0].percentage, 60.0)
        self.assertAlmostEqual(result.top_holder_concentration, 0.6)
        call = http.calls[0]
        self.assertEqual(call["url"], "https://rpc.test/")
        self.assertEqual(call["source"], "holders")
        self.assertEqual(call["params"], {"api-key": "k-123"})
        self.assertEqual(call["payload"]["method"], "getTokenAccounts")
        self.assertEqual(call["payload"]["params"]["mint"], "MintA")
        self.assertEqual(call["payload"]["params"]["limit"], 5)

    async def test_fetch_trims_to_top_n(self) -> None:
        http = _StubHttp(HttpResult(ok=True, status=200, data=_accounts(("a", 5), ("b", 4), ("c", 3), ("d", 2))))
        result = await HolderConcentrationFetcher(http=http).fetch_holders("MintA", top_n=2)
        self.assertEqual([h.holder_id for h in result.holders], ["a", "b"])

    async def test_http_failure_is_reported(self) -> None:
        http = _StubHttp(HttpResult(ok=False, status=503, data=None, error="http_status_503"))
        result = await HolderConcentrationFetcher(http=http).fetch_holders("MintA")
        self.assertFalse(result.ok)
        self.assertEqual(result.error, "http_status_503")
        self.assertEqual(result.holders, [])

    async def test_rpc_error_is_reported(self) -> None:
        http = _StubHttp(HttpResult(ok=True, status=200, data={"error": {"message": "bad mint"}}))
        result = await HolderConcentrationFetcher(http=http).fetch_holders("MintA")
        self.assertFalse(result.ok)
        self.assertEqual(result.error, "rpc_error:bad mint")

    async def test_empty_holder_list_is_a_failure(self) -> None:
        http = _StubHttp(HttpResult(ok=True, status=200, data=_accounts()))
        result = await HolderConcentrationFetcher(http=http).fetch_holders("MintA")
        self.assertFalse(result.ok)
        self.assertEqual(result.error, "no_holders")

    async def test_missing_api_url_fails_without_request(self) -> None:
        self.patch_cfg(HOLDER_API_URL="")
        http = _StubHttp(HttpResult(ok=True, status=200, data=_accounts(("a", 1))))
        result = await HolderConcentrationFetcher(http=http).fetch_holders("MintA")
        self.assertFalse(result.ok)
        self.assertEqual(http.calls, [])

    def test_parse_merges_accounts_of_same_owner(self) -> None:
        holders, error = parse_token_accounts(_accounts(("a", 100), ("b", 300), ("a", 300), ("z", 0)))
        self.assertEqual(error, "")
        self.assertEqual([(h.holder_id, h.amount) for h in holders], [("a", 400.0), ("b", 300.0)])

    def test_top_holder_concentration(self) -> None:
        self.assertEqual(top_holder_concentration([]), 0.0)
        shares = [HolderShare("a", 1.0, 12.5), HolderShare("b", 2.0, 40.0)]
        self.assertAlmostEqual(top_holder_concentration(shares), 0.4)


if __name__ == "__main__":
    unittest.main()
