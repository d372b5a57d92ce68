#!/usr/bin/env python3
"""
Call Context Test Suite - tests/test_context.py

Run with: python -m pytest tests/test_context.py -v
"""

import asyncio
import sys
import time
import unittest
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from gateway_layer.context import CallContext
from gateway_layer.errors import CancelledByCaller, DeadlineExceeded


class TestCallContext(unittest.IsolatedAsyncioTestCase):

    async def test_background_has_no_deadline(self):
        ctx = CallContext.background()
        self.assertFalse(ctx.has_deadline)
        self.assertIsNone(ctx.remaining())
        self.assertFalse(ctx.cancelled)

    async def test_run_returns_result(self):
        async def answer():
            return 42
        self.assertEqual(await CallContext.background().run(answer()), 42)

    async def test_run_propagates_errors(self):
        async def boom():
            raise KeyError("x")
        with self.assertRaises(KeyError):
            await CallContext.background().run(boom())

    async def test_run_past_deadline_raises_deadline_exceeded(self):
        ctx = CallContext.with_timeout(0.01)
        started = asyncio.Event()
        cancelled = asyncio.Event()

        async def slow():
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with self.assertRaises(DeadlineExceeded):
            await ctx.run(slow(), ctx.deadline)
        self.assertTrue(started.is_set())
        # The loser is torn down before run() returns
        self.assertTrue(cancelled.is_set())

    async def test_cancel_interrupts_run(self):
        ctx = CallContext.background()
        asyncio.get_running_loop().call_later(0.01, ctx.cancel)
        with self.assertRaises(CancelledByCaller):
            await ctx.run(asyncio.sleep(10))

    async def test_run_on_cancelled_context_fails_fast(self):
        ctx = CallContext.background()
        ctx.cancel()
        with self.assertRaises(CancelledByCaller):
            await ctx.run(asyncio.sleep(10))
        with self.assertRaises(CancelledByCaller):
            ctx.check()

    async def test_cancel_cascades_to_children_only(self):
        parent = CallContext.background()
        child = parent.child()
        grandchild = child.child()

        child.cancel()
        self.assertTrue(child.cancelled)
        self.assertTrue(grandchild.cancelled)
        self.assertFalse(parent.cancelled)

        other = parent.child()
        parent.cancel()
        self.assertTrue(other.cancelled)

    async def test_child_of_cancelled_parent_starts_cancelled(self):
        parent = CallContext.background()
        parent.cancel()
        self.assertTrue(parent.child().cancelled)

    async def test_child_inherits_earlier_deadline(self):
        parent = CallContext.with_timeout(1.0)
        child = CallContext(deadline=time.monotonic() + 60, parent=parent)
        self.assertEqual(child.deadline, parent.deadline)

    async def test_default_timeout_is_idempotent(self):
        ctx = CallContext.with_timeout(7.0)
        self.assertIs(ctx.with_default_timeout(3.0), ctx)
        self.assertIs(ctx.with_default_timeout(3.0).with_default_timeout(1.0), ctx)

        bare = CallContext.background()
        derived = bare.with_default_timeout(3.0)
        self.assertIsNot(derived, bare)
        self.assertAlmostEqual(derived.remaining(), 3.0, delta=0.5)

    async def test_sleep_wakes_on_cancel(self):
        ctx = CallContext.background()
        asyncio.get_running_loop().call_later(0.01, ctx.cancel)
        start = time.monotonic()
        with self.assertRaises(CancelledByCaller):
            await ctx.sleep(10)
        self.assertLess(time.monotonic() - start, 1.0)


if __name__ == "__main__":
    unittest.main(verbosity=2)
