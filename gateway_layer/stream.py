"""
Stream Supervisor

Turns one long-lived server-push subscription into two caller-facing feeds
(data, errors) that keep working across transient disconnects.

One supervising task per subscription:
1. open the subscription on the session's current handle (CONNECTING -> STREAMING)
2. forward every message to `data` in receipt order, blocking when the
   consumer falls behind
3. on a retryable failure: RECONNECTING, backoff, lock-protected session
   reconnect, reopen; messages lost in the gap are not replayed
4. on cancellation or a fatal error: close the transport stream, push a fatal
   error to `errors` once, close both feeds once, CLOSED
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Set, Tuple

import structlog

from gateway_layer.backoff import DEFAULT_STREAM_POLICY, BackoffPolicy, RetryPolicy
from gateway_layer.context import CallContext
from gateway_layer.errors import (
    CancelledByCaller,
    GatewayError,
    RetriesExhausted,
    classify,
)
from gateway_layer.feeds import Feed
from gateway_layer.session import Session
from gateway_layer.transport import Transport, TransportStream

log = structlog.get_logger()


class SubscriptionState(Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True)
class StreamRequest:
    """Gateway stream method plus its request payload (opaque to this layer)."""
    method: str
    payload: Mapping[str, Any] = field(default_factory=dict)


class StreamSubscription:
    """
    Handle returned by StreamSupervisor.subscribe().

    The supervising task is the only producer and the only closer of
    `data` and `errors`; callers just consume and cancel.
    """

    def __init__(self, request: StreamRequest, ctx: CallContext, data_capacity: int = 1):
        self.id = uuid.uuid4().hex[:12]
        self.request = request
        self.data: Feed[Dict[str, Any]] = Feed(data_capacity, name=f"{request.method}.data")
        self.errors: Feed[BaseException] = Feed(1, name=f"{request.method}.errors")
        self.reconnects = 0
        self.messages = 0
        self._ctx = ctx
        self._state = SubscriptionState.CONNECTING
        self._closed_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._state is SubscriptionState.CLOSED

    @property
    def feeds(self) -> Tuple[Feed, Feed]:
        """(data, errors), for `data, errors = subscription.feeds`."""
        return self.data, self.errors

    def cancel(self) -> None:
        """Ask the supervising task to tear down. Returns immediately."""
        self._ctx.cancel()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    def _set_state(self, state: SubscriptionState) -> None:
        if self._state is SubscriptionState.CLOSED or self._state is state:
            return
        log.debug("subscription_state", subscription=self.id, state=state.value)
        self._state = state

    async def _finish(self, error: Optional[BaseException], discard: bool) -> None:
        if self._state is SubscriptionState.CLOSED:
            return
        if error is not None:
            await self.errors.put(error)
        await self.data.close(discard=discard)
        await self.errors.close()
        self._state = SubscriptionState.CLOSED
        self._closed_event.set()

    async def __aenter__(self) -> "StreamSubscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cancel()
        await self.wait_closed()

    def __repr__(self) -> str:
        return (
            f"StreamSubscription(id={self.id}, method={self.request.method!r}, "
            f"state={self._state.value}, messages={self.messages}, reconnects={self.reconnects})"
        )


class StreamSupervisor:
    """
    Starts and supervises subscriptions over a shared Session.

    Usage:
        supervisor = StreamSupervisor(session)
        sub = supervisor.subscribe(ctx, StreamRequest("OnSymbolTick", {"symbol_names": ["EURUSD"]}))
        async for tick in sub.data:
            ...
    """

    def __init__(
        self,
        session: Session,
        policy: RetryPolicy = DEFAULT_STREAM_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        data_capacity: int = 1,
    ):
        self._session = session
        self._policy = policy
        self._backoff = BackoffPolicy(policy)
        self._sleep = sleep
        self._data_capacity = data_capacity
        self._subscriptions: Set[StreamSubscription] = set()

    @property
    def active(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, ctx: Optional[CallContext], request: StreamRequest) -> StreamSubscription:
        """Start a supervised subscription. Must be called from a running event loop."""
        scope = (ctx or CallContext.background()).child()
        sub = StreamSubscription(request, scope, self._data_capacity)
        sub._task = asyncio.create_task(self._supervise(sub), name=f"stream-{request.method}-{sub.id}")
        self._subscriptions.add(sub)
        sub._task.add_done_callback(lambda _: self._subscriptions.discard(sub))
        log.info("subscription_started", subscription=sub.id, method=request.method)
        return sub

    async def close(self) -> None:
        """Cancel every live subscription and wait for their teardown."""
        subs = list(self._subscriptions)
        for sub in subs:
            sub.cancel()
        await asyncio.gather(*(sub.wait_closed() for sub in subs))

    async def _supervise(self, sub: StreamSubscription) -> None:
        ctx = sub._ctx
        request = sub.request
        stale: Optional[Transport] = None
        needs_reconnect = False
        failures = 0
        fatal: Optional[BaseException] = None
        cancelled = False

        try:
            while True:
                handle: Optional[Transport] = None
                stream: Optional[TransportStream] = None
                try:
                    if needs_reconnect:
                        handle = await ctx.run(self._session.reconnect(stale))
                    else:
                        handle = await ctx.run(self._session.ensure_connected())
                    stream = await ctx.run(
                        handle.open_stream(request.method, request.payload, self._session.headers())
                    )
                    sub._set_state(SubscriptionState.STREAMING)
                    failures = 0

                    while True:
                        message = await ctx.run(stream.recv())
                        await ctx.run(sub.data.put(message))
                        sub.messages += 1

                except CancelledByCaller:
                    cancelled = True
                    break
                except GatewayError as e:
                    if not e.retryable:
                        fatal = e
                        break
                    error = e
                except Exception as e:
                    if not classify(e).retryable:
                        fatal = e
                        break
                    error = e
                finally:
                    if stream is not None:
                        await self._close_stream(sub, stream)

                failures += 1
                needs_reconnect = True
                if handle is not None:
                    stale = handle
                if not self._policy.allows(failures + 1):
                    fatal = RetriesExhausted(failures, error)
                    break

                sub._set_state(SubscriptionState.RECONNECTING)
                sub.reconnects += 1
                delay = self._backoff.delay(failures)
                log.warning(
                    "subscription_resubscribing",
                    subscription=sub.id,
                    method=request.method,
                    attempt=failures,
                    delay=round(delay, 3),
                    error=str(error),
                )
                try:
                    await ctx.run(self._sleep(delay))
                except CancelledByCaller:
                    cancelled = True
                    break
        finally:
            if fatal is not None:
                log.error("subscription_failed", subscription=sub.id, method=request.method, error=str(fatal))
            else:
                log.info("subscription_closed", subscription=sub.id, method=request.method)
            try:
                await sub._finish(fatal, discard=cancelled)
            finally:
                # Detaches the scope from the caller's context
                ctx.cancel()

    async def _close_stream(self, sub: StreamSubscription, stream: TransportStream) -> None:
        try:
            await stream.close()
        except Exception as e:
            log.warning("stream_close_failed", subscription=sub.id, error=str(e))
