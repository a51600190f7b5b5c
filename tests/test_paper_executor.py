from __future__ import annotations

import random
import unittest

import config
from trading.paper_executor import EntryRequest, ExitRequest, PaperExecutor


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


class PaperExecutorTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    async def test_buy_and_sell_apply_slippage(self) -> None:
        self.patch_cfg(PAPER_FAIL_RATE=0.0, PAPER_SLIPPAGE_PCT=1.0)
        executor = PaperExecutor(rng=random.Random(1))

        bought = await executor.buy(EntryRequest(token_id="MintA", size=0.101, reference_price=1.0))
        self.assertTrue(bought.ok)
        self.assertAlmostEqual(bought.fill_price, 1.01)
        self.assertAlmostEqual(bought.token_quantity, 0.1)
        self.assertAlmostEqual(bought.cost_basis, 0.101)
        self.assertTrue(bought.tx_id.startswith("paper-"))

        sold = await executor.sell(
            ExitRequest(token_id="MintA", reason="take_profit", token_quantity=0.1, reference_price=2.0)
        )
        self.assertTrue(sold.ok)
        self.assertAlmostEqual(sold.fill_price, 1.98)
        self.assertAlmostEqual(sold.proceeds, 0.198)
        self.assertEqual((executor.buys, executor.sells, executor.failures), (1, 1, 0))

    async def test_fail_rate_one_always_fails(self) -> None:
        self.patch_cfg(PAPER_FAIL_RATE=1.0, PAPER_SLIPPAGE_PCT=0.0)
        executor = PaperExecutor(rng=random.Random(1))
        bought = await executor.buy(EntryRequest(token_id="MintA", size=0.05, reference_price=1.0))
        sold = await executor.sell(ExitRequest(token_id="MintA", reason="stop_loss", token_quantity=1.0, reference_price=1.0))
        self.assertFalse(bought.ok)
        self.assertFalse(sold.ok)
        self.assertEqual(bought.error, "paper_simulated_failure")
        self.assertEqual(executor.failures, 2)

    async def test_invalid_requests_rejected(self) -> None:
        self.patch_cfg(PAPER_FAIL_RATE=0.0)
        executor = PaperExecutor()
        result = await executor.buy(EntryRequest(token_id="MintA", size=0.05, reference_price=0.0))
        self.assertFalse(result.ok)
        self.assertEqual(result.error, "invalid_buy_request")


if __name__ == "__main__":
    unittest.main()
