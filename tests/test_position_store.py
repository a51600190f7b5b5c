from __future__ import annotations

import json
import os
import tempfile
import unittest

import config
from trading.positions import Position, PositionStore


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


def _mk_position(token_id: str = "MintA", entry: float = 1.0) -> Position:
    return Position(
        token_id=token_id,
        entry_price=entry,
        entry_time=1000.0,
        cost_basis=0.05,
        token_quantity=0.05 / entry,
    )


class PositionStoreTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.store = PositionStore(state_file="")

    async def test_open_seeds_peak_from_entry(self) -> None:
        ok, detail = await self.store.open(_mk_position())
        self.assertTrue(ok, detail)
        pos = self.store.get("MintA")
        self.assertEqual(pos.peak_price, 1.0)
        self.assertEqual(pos.current_price, 1.0)
        self.assertFalse(pos.realized)

    async def test_open_rejects_duplicate_and_bad_entry(self) -> None:
        await self.store.open(_mk_position())
        ok, detail = await self.store.open(_mk_position())
        self.assertFalse(ok)
        self.assertEqual(detail, "position_already_open")
        zero_entry = Position(token_id="MintB", entry_price=0.0, entry_time=1000.0, cost_basis=0.05, token_quantity=1.0)
        ok, detail = await self.store.open(zero_entry)
        self.assertFalse(ok)
        self.assertTrue(detail.startswith("invalid_entry_price"))

    async def test_peak_is_monotonic(self) -> None:
        await self.store.open(_mk_position())
        peaks = []
        for ts, price in enumerate([1.15, 1.30, 1.05, 0.90, 1.20], start=1):
            ok, _ = await self.store.update_price("MintA", price, float(ts))
            self.assertTrue(ok)
            peaks.append(self.store.get("MintA").peak_price)
        self.assertEqual(peaks, [1.15, 1.30, 1.30, 1.30, 1.30])
        self.assertEqual(self.store.get("MintA").current_price, 1.20)

    async def test_unset_peak_is_seeded_on_first_tick(self) -> None:
        pos = _mk_position()
        await self.store.open(pos)
        self.store.open_positions["MintA"].peak_price = None

        await self.store.update_price("MintA", 0.8, 1.0)
        self.assertEqual(self.store.get("MintA").peak_price, 1.0)

        self.store.open_positions["MintA"].peak_price = None
        await self.store.update_price("MintA", 1.4, 2.0)
        self.assertEqual(self.store.get("MintA").peak_price, 1.4)

    async def test_rejects_bad_and_stale_ticks(self) -> None:
        await self.store.open(_mk_position())
        self.assertEqual(await self.store.update_price("MintA", 0.0, 1.0), (False, "invalid_price:0.0"))
        self.assertFalse((await self.store.update_price("MintA", -2.0, 1.0))[0])
        self.assertEqual(await self.store.update_price("Ghost", 1.0, 1.0), (False, "no_open_position"))

        self.assertTrue((await self.store.update_price("MintA", 1.2, 10.0))[0])
        self.assertEqual(await self.store.update_price("MintA", 2.0, 9.0), (False, "stale_tick"))
        pos = self.store.get("MintA")
        self.assertEqual(pos.current_price, 1.2)
        self.assertEqual(pos.peak_price, 1.2)
        self.assertEqual(pos.last_tick_at, 10.0)

    async def test_untimed_ticks_use_store_clock(self) -> None:
        now = [100.0]
        store = PositionStore(state_file="", clock=lambda: now[0])
        await store.open(_mk_position())

        self.assertEqual(await store.update_price("MintA", 1.1), (True, "updated"))
        self.assertEqual(store.get("MintA").last_tick_at, 100.0)
        now[0] = 101.0
        self.assertEqual(await store.update_price("MintA", 1.2, 101.0), (True, "updated"))
        self.assertEqual(await store.update_price("MintA", 1.3), (True, "updated"))

        ok, _ = await store.close("MintA", proceeds=0.06)
        self.assertTrue(ok)
        self.assertEqual(store.closed_positions()[0].closed_at, 101.0)

    async def test_close_is_idempotent(self) -> None:
        await self.store.open(_mk_position())
        await self.store.update_price("MintA", 1.5, 1.0)

        ok, _ = await self.store.close("MintA", proceeds=0.075, reason="TakeProfit", ts=2.0)
        self.assertTrue(ok)
        ok, detail = await self.store.close("MintA", proceeds=0.075, reason="TakeProfit", ts=3.0)
        self.assertFalse(ok)
        self.assertEqual(detail, "already_closed")

        self.assertIsNone(self.store.get("MintA"))
        self.assertEqual(self.store.list_open(), [])
        closed = self.store.closed_positions()
        self.assertEqual(len(closed), 1)
        self.assertTrue(closed[0].realized)
        self.assertAlmostEqual(closed[0].realized_pnl, 0.025)
        self.assertEqual(closed[0].exit_reason, "TakeProfit")
        self.assertEqual((await self.store.update_price("MintA", 2.0, 4.0))[1], "no_open_position")

    async def test_snapshots_do_not_leak_mutations(self) -> None:
        await self.store.open(_mk_position())
        snap = self.store.get("MintA")
        snap.peak_price = 99.0
        self.assertEqual(self.store.get("MintA").peak_price, 1.0)

    async def test_closed_history_is_bounded(self) -> None:
        self.patch_cfg(CLOSED_POSITIONS_KEEP=2)
        for idx in range(4):
            token = f"Mint{idx}"
            await self.store.open(_mk_position(token))
            await self.store.close(token, proceeds=0.05)
        self.assertEqual([p.token_id for p in self.store.closed_positions()], ["Mint2", "Mint3"])

    async def test_save_and_load_roundtrip(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "positions.json")
            store = PositionStore(state_file=path)
            await store.open(_mk_position("MintA"))
            await store.update_price("MintA", 1.3, 5.0)
            await store.open(_mk_position("MintB"))
            await store.close("MintB", proceeds=0.04, reason="StopLoss")
            self.assertEqual(store.save(), (True, "saved"))

            loaded = PositionStore(state_file=path)
            self.assertEqual(loaded.load(), (True, "loaded"))
            pos = loaded.get("MintA")
            self.assertEqual(pos.peak_price, 1.3)
            self.assertEqual(pos.last_tick_at, 5.0)
            self.assertEqual(len(loaded.closed_positions()), 1)
            self.assertFalse(loaded.has_open("MintB"))

    async def test_load_resets_missing_peak_to_unset(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "positions.json")
            with open(path, "w", encoding="utf-8") as f:
                json.dump(
                    {
                        "open_positions": [
                            {"token_id": "MintA", "entry_price": 2.0, "peak_price": 0, "token_quantity": 1.0},
                            {"token_id": "", "entry_price": 1.0},
                        ]
                    },
                    f,
                )
            store = PositionStore(state_file=path)
            self.assertTrue(store.load()[0])
            self.assertEqual([p.token_id for p in store.list_open()], ["MintA"])
            self.assertIsNone(store.get("MintA").peak_price)

            await store.update_price("MintA", 1.5, 1.0)
            self.assertEqual(store.get("MintA").peak_price, 2.0)

    def test_load_without_file_reports_it(self) -> None:
        self.assertEqual(PositionStore(state_file="").load(), (False, "no_state_file"))

    def test_pnl_helpers(self) -> None:
        pos = _mk_position()
        pos.current_price = 0.8
        pos.peak_price = 1.3
        self.assertAlmostEqual(pos.pnl_pct, -20.0)
        self.assertAlmostEqual(pos.peak_pnl_pct, 30.0)
        self.assertAlmostEqual(pos.drop_from_peak_pct, (1.3 - 0.8) / 1.3 * 100.0)


if __name__ == "__main__":
    unittest.main()
