from __future__ import annotations

import asyncio
import unittest

from utils.keyed_lock import KeyedLock


class KeyedLockTests(unittest.IsolatedAsyncioTestCase):
    async def test_same_key_is_serialized(self) -> None:
        locks = KeyedLock()
        order: list[str] = []

        async def worker(name: str) -> None:
            async with locks.hold("MintA"):
                order.append(f"{name}:in")
                await asyncio.sleep(0.01)
                order.append(f"{name}:out")

        await asyncio.gather(worker("a"), worker("b"))
        self.assertEqual(order, ["a:in", "a:out", "b:in", "b:out"])

    async def test_different_keys_do_not_block_each_other(self) -> None:
        locks = KeyedLock()
        inside = asyncio.Event()

        async def hold_a() -> None:
            async with locks.hold("MintA"):
                await asyncio.wait_for(inside.wait(), timeout=1.0)

        async def hold_b() -> None:
            async with locks.hold("MintB"):
                inside.set()

        await asyncio.gather(hold_a(), hold_b())
        self.assertTrue(inside.is_set())

    async def test_idle_locks_are_released(self) -> None:
        locks = KeyedLock()
        async with locks.hold("MintA"):
            self.assertTrue(locks.locked("MintA"))
            self.assertEqual(len(locks), 1)
        self.assertFalse(locks.locked("MintA"))
        self.assertEqual(len(locks), 0)


if __name__ == "__main__":
    unittest.main()
