"""
Call Context

A cancellable scope with an optional absolute deadline, passed by the caller
into every executor call and subscription. Children are cancelled together
with their parent; cancelling a child never touches the parent.
"""

import asyncio
import time
from typing import Any, Awaitable, List, Optional

from gateway_layer.errors import CancelledByCaller, DeadlineExceeded


class CallContext:
    """
    Cooperative cancellation plus deadline for one logical operation.

    Deadlines are absolute `time.monotonic()` values. `run()` races any
    awaitable against cancellation and an optional deadline and turns the
    loser into CancelledByCaller / DeadlineExceeded.
    """

    def __init__(self, deadline: Optional[float] = None, parent: Optional["CallContext"] = None):
        self._deadline = deadline
        self._cancelled = asyncio.Event()
        self._children: List["CallContext"] = []
        self._parent = parent
        if parent is not None:
            if parent._deadline is not None:
                self._deadline = parent._deadline if deadline is None else min(deadline, parent._deadline)
            parent._children.append(self)
            if parent.cancelled:
                self._cancelled.set()

    @classmethod
    def background(cls) -> "CallContext":
        """Never cancelled by anyone but its owner, no deadline."""
        return cls()

    @classmethod
    def with_timeout(cls, seconds: float, parent: Optional["CallContext"] = None) -> "CallContext":
        return cls(deadline=time.monotonic() + seconds, parent=parent)

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    @property
    def has_deadline(self) -> bool:
        return self._deadline is not None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left until the deadline, None when there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    # --------------------------------------------------------
    # DERIVATION
    # --------------------------------------------------------

    def child(self) -> "CallContext":
        return CallContext(parent=self)

    def with_default_timeout(self, seconds: float) -> "CallContext":
        """
        Apply a default deadline only if none is set.

        Returns self unchanged when a deadline already exists, so applying a
        default twice never shortens or extends the caller's deadline.
        """
        if self._deadline is not None:
            return self
        return CallContext(deadline=time.monotonic() + seconds, parent=self)

    # --------------------------------------------------------
    # CANCELLATION
    # --------------------------------------------------------

    def cancel(self) -> None:
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        for child in self._children:
            child.cancel()
        self._children.clear()
        if self._parent is not None:
            try:
                self._parent._children.remove(self)
            except ValueError:
                pass

    async def wait_cancelled(self) -> None:
        await self._cancelled.wait()

    def check(self) -> None:
        """Raise CancelledByCaller if this context was cancelled."""
        if self._cancelled.is_set():
            raise CancelledByCaller("context cancelled")

    async def run(self, aw: Awaitable[Any], deadline: Optional[float] = None) -> Any:
        """
        Await `aw` unless cancellation or `deadline` comes first.

        The loser is cancelled and awaited before the error is raised, so
        nothing keeps running in the background.
        """
        task = asyncio.ensure_future(aw)
        if self._cancelled.is_set():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise CancelledByCaller("context cancelled")

        waiter = asyncio.ensure_future(self._cancelled.wait())
        timeout = None if deadline is None else max(0.0, deadline - time.monotonic())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if self._cancelled.is_set():
            raise CancelledByCaller("context cancelled")
        raise DeadlineExceeded(f"deadline exceeded after {timeout:.3f}s")

    async def sleep(self, seconds: float) -> None:
        """Sleep that wakes up early, with CancelledByCaller, on cancellation."""
        await self.run(asyncio.sleep(seconds))

    def __repr__(self) -> str:
        remaining = self.remaining()
        left = "none" if remaining is None else f"{remaining:.3f}s"
        return f"CallContext(cancelled={self.cancelled}, remaining={left})"
