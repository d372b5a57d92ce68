"""
Retry Executor

Makes a single request/response call resilient to transient connectivity
failures:
- injects a default deadline per operation class when the caller has none
- classifies failures; only connection-type errors are retried
- between attempts: backoff sleep, lock-protected session reconnect, replay

Replay note: a retried call is sent again as-is. For state-mutating calls the
gateway may already have applied the first copy, so pass an idempotency key
when that matters.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar

import structlog

from gateway_layer.backoff import DEFAULT_CALL_POLICY, BackoffPolicy, RetryPolicy
from gateway_layer.context import CallContext
from gateway_layer.deadlines import DeadlinePolicy, OperationClass
from gateway_layer.errors import (
    DeadlineExceeded,
    ErrorKind,
    GatewayError,
    RetriesExhausted,
    classify,
)
from gateway_layer.session import Session
from gateway_layer.transport import Transport

log = structlog.get_logger()

T = TypeVar("T")


@dataclass
class CallAttempt:
    """State of one attempt inside a single execute() call."""
    index: int
    deadline: float                              # time.monotonic() based
    last_error: Optional[BaseException] = None

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())


Operation = Callable[[Transport, CallAttempt], Awaitable[T]]


class RetryExecutor:
    """
    Runs operations against a Session with reconnect-and-replay.

    The executor is not a background service: everything happens on the
    caller's task, and the only extra suspension is the backoff sleep.
    """

    def __init__(
        self,
        session: Session,
        policy: RetryPolicy = DEFAULT_CALL_POLICY,
        deadlines: Optional[DeadlinePolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if policy.max_attempts is None:
            raise ValueError("unary calls need a bounded max_attempts")
        self._session = session
        self._policy = policy
        self._backoff = BackoffPolicy(policy)
        self._deadlines = deadlines or DeadlinePolicy()
        self._sleep = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    @property
    def session(self) -> Session:
        return self._session

    async def execute(
        self,
        ctx: Optional[CallContext],
        op_class: OperationClass,
        operation: Operation,
    ) -> T:
        """
        Run `operation(handle, attempt)` until it succeeds or fails for good.

        Raises:
            CancelledByCaller: ctx was cancelled (no further sleep)
            DeadlineExceeded: an attempt ran past its deadline
            AuthenticationError / ProtocolError: on first occurrence
            RetriesExhausted: every allowed attempt failed with a retryable error
        """
        ctx = ctx or CallContext.background()
        ctx.check()

        default_timeout = self._deadlines.timeout_for(op_class)
        caller_deadline = ctx.deadline
        last_error: Optional[BaseException] = None
        stale: Optional[Transport] = None
        needs_reconnect = False
        attempt = 0

        while True:
            attempt += 1
            handle: Optional[Transport] = None

            try:
                # Handshakes carry their own timeout; only the caller's deadline bounds them
                if needs_reconnect:
                    handle = await ctx.run(self._session.reconnect(stale), caller_deadline)
                else:
                    handle = await ctx.run(self._session.ensure_connected(), caller_deadline)
                # Fresh per-attempt deadline, or the caller's own deadline untouched
                deadline = caller_deadline if caller_deadline is not None else time.monotonic() + default_timeout
                call = CallAttempt(index=attempt, deadline=deadline, last_error=last_error)
                return await ctx.run(operation(handle, call), deadline)

            except GatewayError as e:
                if not e.retryable:
                    raise
                error = e
            except Exception as e:
                kind = classify(e)
                if kind is ErrorKind.DEADLINE:
                    raise DeadlineExceeded(str(e) or "deadline exceeded") from e
                if not kind.retryable:
                    raise
                error = e

            last_error = error
            needs_reconnect = True
            if handle is not None:
                stale = handle

            if not self._policy.allows(attempt + 1):
                log.error(
                    "call_retries_exhausted",
                    op_class=op_class.value,
                    attempts=attempt,
                    error=str(error),
                )
                raise RetriesExhausted(attempt, error) from error

            delay = self._backoff.delay(attempt)
            log.warning(
                "call_retry",
                op_class=op_class.value,
                attempt=attempt,
                kind=classify(error).value,
                delay=round(delay, 3),
                error=str(error),
            )
            await ctx.run(self._sleep(delay), caller_deadline)

    async def call(
        self,
        ctx: Optional[CallContext],
        op_class: OperationClass,
        method: str,
        request: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """Shortcut for a plain unary gateway method."""
        request = dict(request or {})

        async def operation(handle: Transport, attempt: CallAttempt) -> Any:
            merged = self._session.headers()
            if headers:
                merged.update(headers)
            return await handle.call(method, request, merged, attempt.remaining())

        return await self.execute(ctx, op_class, operation)
