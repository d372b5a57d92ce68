"""
Gateway Session

One authenticated relationship with the gateway. Owns the credentials, the
endpoint, the single current transport handle and the terminal-instance id
returned by the handshake.

Locking:
- `_connect_lock` (asyncio) serialises every handshake. It is the only place
  a reconnect can happen, so unary calls and streams never race each other.
- `_handle_lock` (threading) guards the handle/terminal-id pair so readers
  never wait on an in-flight handshake.
"""

import asyncio
import threading
import uuid
from typing import Dict, Optional

import structlog

from gateway_layer.deadlines import DeadlinePolicy, OperationClass
from gateway_layer.errors import (
    DeadlineExceeded,
    GatewayConnectionError,
    GatewayError,
    SessionClosedError,
)
from gateway_layer.transport import Credentials, Transport, TransportFactory

log = structlog.get_logger()


class Session:
    """
    Session with the trading-terminal gateway.

    Usage:
        session = Session(credentials, "https://mt5.mrpc.pro", transport_factory)
        terminal_id = await session.connect()
        ...
        await session.close()
    """

    def __init__(
        self,
        credentials: Credentials,
        endpoint: str,
        transport_factory: TransportFactory,
        deadlines: Optional[DeadlinePolicy] = None,
        session_id: Optional[uuid.UUID] = None,
    ):
        self.session_id = session_id or uuid.uuid4()
        self.credentials = credentials
        self.endpoint = endpoint
        self._transport_factory = transport_factory
        self._deadlines = deadlines or DeadlinePolicy()

        self._handle: Optional[Transport] = None
        self._terminal_id: Optional[str] = None
        self._closed = False
        self._handle_lock = threading.Lock()
        self._connect_lock = asyncio.Lock()

        # Instrumentation
        self.handshake_count = 0
        self.reconnect_count = 0
        self.max_concurrent_handshakes = 0
        self._handshakes_in_flight = 0

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def terminal_instance_id(self) -> Optional[str]:
        with self._handle_lock:
            return self._terminal_id

    @property
    def is_connected(self) -> bool:
        with self._handle_lock:
            return not self._closed and self._handle is not None

    @property
    def closed(self) -> bool:
        return self._closed

    def headers(self) -> Dict[str, str]:
        """Metadata sent with every call."""
        headers = {"id": str(self.session_id)}
        terminal_id = self.terminal_instance_id
        if terminal_id:
            headers["terminal"] = terminal_id
        return headers

    def current_handle(self) -> Optional[Transport]:
        """Active transport, or None before the first handshake."""
        with self._handle_lock:
            if self._closed:
                raise SessionClosedError("session is closed")
            return self._handle

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self, handshake_timeout: Optional[float] = None) -> str:
        """
        Dial a new transport, handshake, and install it as current.

        Safe to call repeatedly: every call replaces the handle in place and
        overwrites the terminal-instance id.

        Returns:
            The terminal-instance id assigned by the gateway.

        Raises:
            AuthenticationError: credentials rejected (never retried)
            GatewayConnectionError: gateway unreachable or timed out
            SessionClosedError: session already closed
        """
        self._check_open()
        async with self._connect_lock:
            return await self._handshake_locked(
                handshake_timeout or self._deadlines.timeout_for(OperationClass.CONNECT)
            )

    async def ensure_connected(self) -> Transport:
        """Current handle, connecting first if there is none yet."""
        handle = self.current_handle()
        if handle is not None:
            return handle
        async with self._connect_lock:
            handle = self.current_handle()
            if handle is None:
                await self._handshake_locked(self._deadlines.timeout_for(OperationClass.CONNECT))
                handle = self.current_handle()
        return handle

    async def reconnect(self, stale: Optional[Transport] = None, timeout: Optional[float] = None) -> Transport:
        """
        Replace `stale` with a freshly handshaken transport.

        If another task already swapped the handle while we waited for the
        lock, the new handle is returned as-is and no second handshake runs.
        """
        self._check_open()
        async with self._connect_lock:
            current = self.current_handle()
            if current is not None and current is not stale:
                log.debug("session_reconnect_skipped", session_id=str(self.session_id))
                return current

            self.reconnect_count += 1
            log.warning(
                "session_reconnecting",
                session_id=str(self.session_id),
                reconnects=self.reconnect_count,
            )
            await self._handshake_locked(timeout or self._deadlines.timeout_for(OperationClass.RECONNECT))
            return self.current_handle()

    async def _handshake_locked(self, timeout: float) -> str:
        """Caller must hold _connect_lock."""
        self._check_open()
        self._handshakes_in_flight += 1
        self.max_concurrent_handshakes = max(self.max_concurrent_handshakes, self._handshakes_in_flight)
        try:
            handle = await self._dial(timeout)
            try:
                terminal_id = await asyncio.wait_for(
                    handle.handshake(self.credentials, self.headers(), timeout),
                    timeout,
                )
            except (asyncio.TimeoutError, DeadlineExceeded):
                await self._close_quietly(handle)
                raise GatewayConnectionError(f"handshake timed out after {timeout:.1f}s")
            except (ConnectionError, OSError) as e:
                await self._close_quietly(handle)
                raise GatewayConnectionError(f"handshake failed: {e}") from e
            except BaseException:
                await self._close_quietly(handle)
                raise
        finally:
            self._handshakes_in_flight -= 1

        with self._handle_lock:
            if self._closed:
                installed = False
                previous = None
            else:
                installed = True
                previous, self._handle = self._handle, handle
                self._terminal_id = terminal_id

        if not installed:
            await self._close_quietly(handle)
            raise SessionClosedError("session closed during handshake")

        if previous is not None and previous is not handle:
            await self._close_quietly(previous)

        self.handshake_count += 1
        log.info(
            "session_connected",
            session_id=str(self.session_id),
            endpoint=self.endpoint,
            terminal_id=terminal_id,
        )
        return terminal_id

    async def _dial(self, timeout: float) -> Transport:
        try:
            return await asyncio.wait_for(self._transport_factory(self.endpoint), timeout)
        except GatewayError:
            raise
        except asyncio.TimeoutError:
            raise GatewayConnectionError(f"dial to {self.endpoint} timed out after {timeout:.1f}s")
        except (ConnectionError, OSError) as e:
            raise GatewayConnectionError(f"dial to {self.endpoint} failed: {e}") from e

    async def close(self) -> None:
        """Release the transport. Terminal; a second call does nothing."""
        with self._handle_lock:
            if self._closed:
                return
            self._closed = True
            handle, self._handle = self._handle, None
            self._terminal_id = None

        if handle is not None:
            await self._close_quietly(handle)
        log.info("session_closed", session_id=str(self.session_id))

    async def _close_quietly(self, handle: Transport) -> None:
        try:
            await handle.close()
        except Exception as e:
            log.warning("transport_close_failed", error=str(e))

    def _check_open(self) -> None:
        if self._closed:
            raise SessionClosedError("session is closed")

    async def __aenter__(self) -> "Session":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return (
            f"Session(id={self.session_id}, endpoint={self.endpoint!r}, "
            f"terminal={self._terminal_id!r}, closed={self._closed})"
        )
