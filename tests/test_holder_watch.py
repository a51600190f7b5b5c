from __future__ import annotations

import unittest

import config
from monitor.holder_fetcher import HolderShare
from trading.holder_watch import URGENCY_CRITICAL, HolderWatch


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


HOLDERS = [
    HolderShare(holder_id="whale1", amount=3000.0, percentage=30.0),
    HolderShare(holder_id="whale2", amount=2000.0, percentage=20.0),
    HolderShare(holder_id="whale3", amount=1000.0, percentage=10.0),
    HolderShare(holder_id="small4", amount=500.0, percentage=5.0),
]


class HolderWatchTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(HOLDER_DUMP_WATCH_COUNT=3, HOLDER_DUMP_EXIT_ON_ANY_SELL=True, HOLDER_DUMP_MIN_SOLD_PCT=10.0)
        self.watch = HolderWatch()

    def test_watch_keeps_top_n(self) -> None:
        self.assertEqual(self.watch.watch("MintA", HOLDERS), 3)
        self.assertEqual(self.watch.watched_holders("MintA"), ["whale1", "whale2", "whale3"])

    def test_watch_accepts_dict_rows(self) -> None:
        rows = [{"holder_id": "w1", "amount": 10, "percentage": 60.0}]
        self.assertEqual(self.watch.watch("MintA", rows), 1)
        self.assertTrue(self.watch.is_watched("MintA"))

    def test_no_alert_without_sells(self) -> None:
        self.watch.watch("MintA", HOLDERS)
        self.assertIsNone(self.watch.dump_alert("MintA"))

    def test_sell_by_unwatched_trader_is_ignored(self) -> None:
        self.watch.watch("MintA", HOLDERS)
        self.assertFalse(self.watch.record_sell("MintA", "small4", 100.0))
        self.assertFalse(self.watch.record_sell("MintB", "whale1", 100.0))
        self.assertIsNone(self.watch.dump_alert("MintA"))

    def test_any_sell_by_watched_holder_alerts(self) -> None:
        self.watch.watch("MintA", HOLDERS)
        self.assertTrue(self.watch.record_sell("MintA", "whale1", 30.0))

        alert = self.watch.dump_alert("MintA")

        self.assertIsNotNone(alert)
        self.assertEqual(alert.holder_id, "whale1")
        self.assertEqual(alert.rank, 1)
        self.assertEqual(alert.urgency, URGENCY_CRITICAL)
        self.assertAlmostEqual(alert.sold_pct, 1.0)

    def test_threshold_mode_needs_cumulative_reduction(self) -> None:
        self.patch_cfg(HOLDER_DUMP_EXIT_ON_ANY_SELL=False)
        self.watch.watch("MintA", HOLDERS)
        self.watch.record_sell("MintA", "whale2", 100.0)
        self.assertIsNone(self.watch.dump_alert("MintA"))
        self.watch.record_sell("MintA", "whale2", 100.0)

        alert = self.watch.dump_alert("MintA")

        self.assertIsNotNone(alert)
        self.assertEqual(alert.holder_id, "whale2")
        self.assertAlmostEqual(alert.sold_pct, 10.0)

    def test_sell_of_unknown_size_counts_whole_balance(self) -> None:
        self.patch_cfg(HOLDER_DUMP_EXIT_ON_ANY_SELL=False)
        self.watch.watch("MintA", HOLDERS)
        self.assertTrue(self.watch.record_sell("MintA", "whale1", None))

        alert = self.watch.dump_alert("MintA")

        self.assertEqual(alert.holder_id, "whale1")
        self.assertAlmostEqual(alert.sold_pct, 100.0)

    def test_polled_balance_drop_counts_as_reduction(self) -> None:
        self.patch_cfg(HOLDER_DUMP_EXIT_ON_ANY_SELL=False)
        self.watch.watch("MintA", HOLDERS)
        self.assertTrue(self.watch.update_balance("MintA", "whale3", 1200.0))
        self.assertIsNone(self.watch.dump_alert("MintA"))
        self.watch.update_balance("MintA", "whale3", 850.0)

        alert = self.watch.dump_alert("MintA")

        self.assertEqual(alert.holder_id, "whale3")
        self.assertAlmostEqual(alert.sold_pct, 15.0)

    def test_unwatch_clears_alerts(self) -> None:
        self.watch.watch("MintA", HOLDERS)
        self.watch.record_sell("MintA", "whale1", 10.0)
        self.assertTrue(self.watch.unwatch("MintA"))
        self.assertIsNone(self.watch.dump_alert("MintA"))
        self.assertFalse(self.watch.unwatch("MintA"))
        self.assertEqual(len(self.watch), 0)

    def test_empty_holder_list_watches_nothing(self) -> None:
        self.assertEqual(self.watch.watch("MintA", []), 0)
        self.assertFalse(self.watch.is_watched("MintA"))


if __name__ == "__main__":
    unittest.main()
