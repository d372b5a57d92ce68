#!/usr/bin/env python3
"""
Stream Supervisor Test Suite - tests/test_stream.py

Ordering, backpressure, resubscribe across server closes, cancellation
teardown and single delivery of fatal errors.

Run with: python -m pytest tests/test_stream.py -v
"""

import asyncio
import sys
import unittest
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))
sys.path.insert(0, str(Path(__file__).parent.parent))

from fakes import CREDENTIALS, FakeGateway, RecordingSleep

from gateway_layer.backoff import RetryPolicy
from gateway_layer.context import CallContext
from gateway_layer.errors import (
    ApiError,
    AuthenticationError,
    GatewayConnectionError,
    RetriesExhausted,
    StreamClosedByServer,
)
from gateway_layer.session import Session
from gateway_layer.stream import StreamRequest, StreamSupervisor, SubscriptionState

TICKS = StreamRequest("Subscriptions/OnSymbolTick", {"symbol_names": ["EURUSD"]})


def ticks(start, count):
    return [{"seq": i} for i in range(start, start + count)]


async def take(feed, count, timeout=2.0):
    items = []
    for _ in range(count):
        items.append(await asyncio.wait_for(feed.get(), timeout))
    return items


async def drain(feed, timeout=2.0):
    async def collect():
        return [item async for item in feed]
    return await asyncio.wait_for(collect(), timeout)


class TestStreamSupervisor(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.gateway = FakeGateway()
        self.session = Session(CREDENTIALS, "https://gateway.test", self.gateway.factory)
        self.sleep = RecordingSleep()
        self.supervisor = StreamSupervisor(self.session, sleep=self.sleep)

    async def asyncTearDown(self):
        await self.supervisor.close()
        await self.session.close()

    # =========================================================================
    # SCENARIOS
    # =========================================================================

    async def test_resubscribe_after_server_close_keeps_order(self):
        """5 messages, server close, 3 more: one feed, no duplicates, no reorder."""
        self.gateway.stream_scripts.extend([
            ticks(0, 5) + [StreamClosedByServer("server ended stream")],
            ticks(5, 3),
        ])
        sub = self.supervisor.subscribe(None, TICKS)
        data = sub.data

        received = await take(sub.data, 8)
        sub.cancel()
        await asyncio.wait_for(sub.wait_closed(), 1.0)

        self.assertEqual([m["seq"] for m in received], list(range(8)))
        self.assertIs(sub.data, data)
        self.assertEqual(sub.reconnects, 1)
        self.assertEqual(self.session.reconnect_count, 1)
        self.assertEqual(len(self.sleep.delays), 1)
        self.assertEqual(len(self.gateway.stream_opens), 2)
        # Resubscribed on the new handle with the new terminal id
        self.assertEqual(self.gateway.stream_opens[1]["headers"]["terminal"], "terminal-2")

    async def test_cancel_closes_both_feeds_without_more_messages(self):
        self.gateway.stream_scripts.append(ticks(0, 100))
        sub = self.supervisor.subscribe(None, TICKS)

        self.assertEqual(len(await take(sub.data, 2)), 2)
        sub.cancel()
        await asyncio.wait_for(sub.wait_closed(), 1.0)

        self.assertIs(sub.state, SubscriptionState.CLOSED)
        self.assertTrue(sub.data.closed)
        self.assertTrue(sub.errors.closed)
        self.assertEqual(await drain(sub.data), [])
        # Cancellation is not an error
        self.assertEqual(await drain(sub.errors), [])
        self.assertTrue(self.gateway.streams[0].closed)

    async def test_authentication_failure_ends_subscription_immediately(self):
        self.gateway.handshake_errors.append(AuthenticationError("invalid account"))
        sub = self.supervisor.subscribe(None, TICKS)

        errors = await drain(sub.errors)

        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], AuthenticationError)
        self.assertEqual(await drain(sub.data), [])
        self.assertEqual(sub.reconnects, 0)
        self.assertEqual(self.session.reconnect_count, 0)
        self.assertEqual(self.sleep.delays, [])

    # =========================================================================
    # ERRORS
    # =========================================================================

    async def test_fatal_error_is_delivered_once(self):
        self.gateway.stream_scripts.append(ticks(0, 1) + [ApiError({"error_code": "INVALID_SYMBOL"})])
        sub = self.supervisor.subscribe(None, TICKS)

        data = await drain(sub.data)
        errors = await drain(sub.errors)

        self.assertEqual(data, [{"seq": 0}])
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], ApiError)
        self.assertEqual(sub.reconnects, 0)

    async def test_bounded_policy_gives_up_with_retries_exhausted(self):
        supervisor = StreamSupervisor(self.session, RetryPolicy(max_attempts=3, base_delay=0.5), sleep=self.sleep)
        self.gateway.open_errors.extend([GatewayConnectionError("unavailable")] * 5)
        sub = supervisor.subscribe(None, TICKS)

        errors = await drain(sub.errors)

        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], RetriesExhausted)
        self.assertEqual(errors[0].attempts, 3)
        self.assertEqual(len(self.gateway.stream_opens), 3)
        self.assertEqual(self.sleep.delays, [0.5, 1.0])

    async def test_failures_reset_after_successful_reopen(self):
        supervisor = StreamSupervisor(self.session, RetryPolicy(max_attempts=2, base_delay=0.5), sleep=self.sleep)
        self.gateway.stream_scripts.extend([
            ticks(0, 1) + [GatewayConnectionError("reset")],
            ticks(1, 1) + [GatewayConnectionError("reset")],
            ticks(2, 1),
        ])
        sub = supervisor.subscribe(None, TICKS)

        received = await take(sub.data, 3)
        sub.cancel()
        await asyncio.wait_for(sub.wait_closed(), 1.0)

        self.assertEqual([m["seq"] for m in received], [0, 1, 2])
        self.assertEqual(sub.reconnects, 2)
        self.assertEqual(self.sleep.delays, [0.5, 0.5])

    # =========================================================================
    # FLOW CONTROL & LIFECYCLE
    # =========================================================================

    async def test_slow_consumer_applies_backpressure(self):
        self.gateway.stream_scripts.append(ticks(0, 5))
        sub = self.supervisor.subscribe(None, TICKS)

        await asyncio.sleep(0.05)
        # One message buffered, the next one waiting on the full feed
        self.assertEqual(sub.messages, 1)
        self.assertEqual(sub.data.qsize(), 1)

        received = await take(sub.data, 5)
        self.assertEqual([m["seq"] for m in received], list(range(5)))

    async def test_state_transitions(self):
        self.gateway.stream_scripts.append([])
        sub = self.supervisor.subscribe(None, TICKS)
        self.assertIs(sub.state, SubscriptionState.CONNECTING)

        for _ in range(20):
            if sub.state is SubscriptionState.STREAMING:
                break
            await asyncio.sleep(0.01)
        self.assertIs(sub.state, SubscriptionState.STREAMING)

        sub.cancel()
        await asyncio.wait_for(sub.wait_closed(), 1.0)
        self.assertIs(sub.state, SubscriptionState.CLOSED)

    async def test_parent_context_cancels_subscriptions(self):
        self.gateway.stream_scripts.extend([[], []])
        ctx = CallContext.background()
        first = self.supervisor.subscribe(ctx, TICKS)
        second = self.supervisor.subscribe(ctx, StreamRequest("Subscriptions/OnTrade"))

        await asyncio.sleep(0.02)
        ctx.cancel()
        await asyncio.wait_for(asyncio.gather(first.wait_closed(), second.wait_closed()), 1.0)
        self.assertTrue(first.closed and second.closed)

    async def test_finished_subscriptions_detach_from_parent_context(self):
        ctx = CallContext.background()
        self.gateway.stream_scripts.extend([[ApiError({"error_code": "INVALID_SYMBOL"})]] * 5)
        self.gateway.stream_scripts.append([])

        failed = [self.supervisor.subscribe(ctx, TICKS) for _ in range(5)]
        await asyncio.wait_for(asyncio.gather(*(sub.wait_closed() for sub in failed)), 1.0)
        self.assertEqual(ctx._children, [])

        live = self.supervisor.subscribe(ctx, TICKS)
        self.assertEqual(len(ctx._children), 1)
        live.cancel()
        await asyncio.wait_for(live.wait_closed(), 1.0)
        self.assertEqual(ctx._children, [])
        self.assertFalse(ctx.cancelled)

    async def test_supervisor_close_tears_down_everything(self):
        self.gateway.stream_scripts.extend([[], []])
        subs = [self.supervisor.subscribe(None, TICKS) for _ in range(2)]
        await asyncio.sleep(0.02)

        await asyncio.wait_for(self.supervisor.close(), 1.0)

        self.assertTrue(all(s.closed for s in subs))
        await asyncio.sleep(0.01)
        self.assertEqual(self.supervisor.active, 0)

    async def test_feeds_unpack(self):
        sub = self.supervisor.subscribe(None, TICKS)
        data, errors = sub.feeds
        self.assertIs(data, sub.data)
        self.assertIs(errors, sub.errors)
        async with sub:
            pass
        self.assertTrue(sub.closed)


if __name__ == "__main__":
    unittest.main(verbosity=2)
