"""
HTTP / WebSocket Gateway Transport

Concrete Transport for gateways that expose unary methods over HTTP(S) and
server-push subscriptions over WebSocket:
- unary:  POST {endpoint}/{method}, JSON body, reply {"data": ..., "error": {...}}
- stream: {ws_endpoint}/{method}, JSON request sent first, one JSON reply per message

Every failure is mapped onto the gateway error taxonomy so the executor and
supervisor can decide what to retry.
"""

import json
from typing import Any, Dict, Mapping, Optional, Set

import httpx
import structlog
from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import (
    ConnectionClosedError,
    ConnectionClosedOK,
    InvalidStatus,
    WebSocketException,
)

from gateway_layer.errors import (
    AuthenticationError,
    DeadlineExceeded,
    GatewayConnectionError,
    GatewayError,
    ProtocolError,
    StreamClosedByServer,
    error_from_payload,
)
from gateway_layer.transport import Credentials, Transport, TransportFactory, TransportStream

log = structlog.get_logger()

HANDSHAKE_METHOD = "Connection/ConnectEx"

AUTH_STATUSES = frozenset({401, 403})
UNAVAILABLE_STATUSES = frozenset({502, 503, 504})


def error_for_status(status: int, context: str) -> Optional[GatewayError]:
    """Map an HTTP status to a gateway error, None for success."""
    if status < 400:
        return None
    if status in AUTH_STATUSES:
        return AuthenticationError(f"{context}: HTTP {status}")
    if status in UNAVAILABLE_STATUSES:
        return GatewayConnectionError(f"{context}: HTTP {status}")
    if status == 408:
        return DeadlineExceeded(f"{context}: HTTP {status}")
    return ProtocolError(f"{context}: HTTP {status}")


def unwrap_reply(body: Any, context: str) -> Any:
    """Return the reply's data, raising its error payload if it has one."""
    if not isinstance(body, dict):
        raise ProtocolError(f"{context}: reply is not an object")
    error = body.get("error")
    if error and error.get("error_code"):
        raise error_from_payload(error)
    return body.get("data")


def ws_url_for(endpoint: str) -> str:
    if endpoint.startswith("https://"):
        return "wss://" + endpoint[len("https://"):]
    if endpoint.startswith("http://"):
        return "ws://" + endpoint[len("http://"):]
    return endpoint


class WebSocketStream(TransportStream):
    """One subscription over a dedicated WebSocket connection."""

    def __init__(self, method: str, ws, owner: Optional["HttpGatewayTransport"] = None):
        self.method = method
        self._ws = ws
        self._owner = owner

    async def recv(self) -> Dict[str, Any]:
        while True:
            try:
                raw = await self._ws.recv()
            except ConnectionClosedOK as e:
                raise StreamClosedByServer(f"{self.method}: server closed the stream") from e
            except ConnectionClosedError as e:
                raise GatewayConnectionError(f"{self.method}: connection lost ({e})") from e
            except OSError as e:
                raise GatewayConnectionError(f"{self.method}: {e}") from e

            try:
                message = json.loads(raw)
            except ValueError as e:
                raise ProtocolError(f"{self.method}: invalid JSON message") from e

            data = unwrap_reply(message, self.method)
            # Replies without data are keep-alives
            if data is not None:
                return data

    async def close(self) -> None:
        if self._owner is not None:
            self._owner._streams.discard(self)
        await self._ws.close()


class HttpGatewayTransport(Transport):
    """
    Transport backed by an httpx AsyncClient and per-stream WebSockets.

    Usage:
        factory = HttpGatewayTransport.factory(verify=True)
        session = Session(credentials, "https://mt5.mrpc.pro", factory)
    """

    def __init__(
        self,
        endpoint: str,
        client: Optional[httpx.AsyncClient] = None,
        ws_endpoint: Optional[str] = None,
        verify: bool = True,
        connect=ws_connect,
    ):
        self.endpoint = endpoint.rstrip("/")
        self.ws_endpoint = (ws_endpoint or ws_url_for(self.endpoint)).rstrip("/")
        self._client = client or httpx.AsyncClient(base_url=self.endpoint, verify=verify)
        self._connect = connect
        self._streams: Set[WebSocketStream] = set()
        self._closed = False

    @classmethod
    def factory(cls, **kwargs) -> TransportFactory:
        """TransportFactory for Session: one fresh transport per dial."""
        async def dial(endpoint: str) -> "HttpGatewayTransport":
            return cls(endpoint, **kwargs)
        return dial

    async def handshake(
        self,
        credentials: Credentials,
        headers: Mapping[str, str],
        timeout: Optional[float],
    ) -> str:
        data = await self.call(HANDSHAKE_METHOD, credentials.to_request(), headers, timeout)
        terminal_id = (data or {}).get("terminal_instance_guid")
        if not terminal_id:
            raise ProtocolError("handshake reply carries no terminal instance id")
        return str(terminal_id)

    async def call(
        self,
        method: str,
        request: Mapping[str, Any],
        headers: Mapping[str, str],
        timeout: Optional[float],
    ) -> Any:
        if self._closed:
            raise GatewayConnectionError("transport is closed")
        try:
            resp = await self._client.post(
                f"/{method}",
                json=dict(request),
                headers=dict(headers),
                timeout=timeout,
            )
        except httpx.ConnectTimeout as e:
            raise GatewayConnectionError(f"{method}: connect timeout") from e
        except httpx.TimeoutException as e:
            raise DeadlineExceeded(f"{method}: timed out") from e
        except httpx.TransportError as e:
            raise GatewayConnectionError(f"{method}: {e}") from e

        error = error_for_status(resp.status_code, method)
        if error is not None:
            raise error
        try:
            body = resp.json()
        except ValueError as e:
            raise ProtocolError(f"{method}: invalid JSON reply") from e
        return unwrap_reply(body, method)

    async def open_stream(
        self,
        method: str,
        request: Mapping[str, Any],
        headers: Mapping[str, str],
    ) -> TransportStream:
        if self._closed:
            raise GatewayConnectionError("transport is closed")
        url = f"{self.ws_endpoint}/{method}"
        try:
            ws = await self._connect(url, additional_headers=dict(headers))
        except InvalidStatus as e:
            error = error_for_status(e.response.status_code, method)
            raise (error or ProtocolError(f"{method}: {e}")) from e
        except (OSError, WebSocketException) as e:
            raise GatewayConnectionError(f"{method}: {e}") from e

        try:
            await ws.send(json.dumps(dict(request)))
        except (OSError, WebSocketException) as e:
            await ws.close()
            raise GatewayConnectionError(f"{method}: subscribe failed ({e})") from e

        stream = WebSocketStream(method, ws, owner=self)
        self._streams.add(stream)
        log.debug("stream_opened", method=method)
        return stream

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for stream in list(self._streams):
            try:
                await stream.close()
            except Exception as e:
                log.warning("stream_close_failed", method=stream.method, error=str(e))
        await self._client.aclose()
