#!/usr/bin/env python3
"""
HTTP / WebSocket Transport Test Suite - tests/test_http_transport.py

Unary calls run against httpx.MockTransport; streams against an in-memory
WebSocket stand-in.

Run with: python -m pytest tests/test_http_transport.py -v
"""

import json
import sys
import unittest
from collections import deque
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent))
sys.path.insert(0, str(Path(__file__).parent.parent))

import httpx
from websockets.datastructures import Headers
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK, InvalidStatus
from websockets.frames import Close
from websockets.http11 import Response

from fakes import CREDENTIALS

from gateway_layer.errors import (
    ApiError,
    AuthenticationError,
    DeadlineExceeded,
    GatewayConnectionError,
    ProtocolError,
    StreamClosedByServer,
)
from gateway_layer.utils.http_transport import HttpGatewayTransport, ws_url_for

ENDPOINT = "https://gateway.test"
HEADERS = {"id": "session-1"}


def mock_transport(handler, **kwargs) -> HttpGatewayTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url=ENDPOINT)
    return HttpGatewayTransport(ENDPOINT, client=client, **kwargs)


class FakeWebSocket:

    def __init__(self, frames):
        self.frames = deque(frames)
        self.sent = []
        self.closed = False

    async def send(self, message):
        self.sent.append(message)

    async def recv(self):
        frame = self.frames.popleft()
        if isinstance(frame, BaseException):
            raise frame
        return frame

    async def close(self):
        self.closed = True


class TestUnaryCalls(unittest.IsolatedAsyncioTestCase):

    async def test_call_posts_json_and_returns_data(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["id"] = request.headers.get("id")
            return httpx.Response(200, json={"data": {"total": 12}})

        transport = mock_transport(handler)
        data = await transport.call("MarketInfo/SymbolsTotal", {"mode": False}, HEADERS, 3.0)
        await transport.close()

        self.assertEqual(data, {"total": 12})
        self.assertEqual(seen["path"], "/MarketInfo/SymbolsTotal")
        self.assertEqual(seen["body"], {"mode": False})
        self.assertEqual(seen["id"], "session-1")

    async def test_handshake_returns_terminal_id(self):
        def handler(request):
            body = json.loads(request.content)
            self.assertEqual(body["user"], CREDENTIALS.login)
            return httpx.Response(200, json={"data": {"terminal_instance_guid": "abc-123"}})

        transport = mock_transport(handler)
        self.assertEqual(await transport.handshake(CREDENTIALS, HEADERS, 5.0), "abc-123")

    async def test_handshake_without_terminal_id_is_protocol_error(self):
        transport = mock_transport(lambda request: httpx.Response(200, json={"data": {}}))
        with self.assertRaises(ProtocolError):
            await transport.handshake(CREDENTIALS, HEADERS, 5.0)

    async def test_error_payload_becomes_api_error(self):
        transport = mock_transport(lambda request: httpx.Response(
            200, json={"error": {"error_code": "INVALID_SYMBOL", "error_message": "no such symbol"}}
        ))
        with self.assertRaises(ApiError) as cm:
            await transport.call("MarketInfo/SymbolSelect", {}, HEADERS, 3.0)
        self.assertEqual(cm.exception.error_code, "INVALID_SYMBOL")

    async def test_stale_session_payload_is_connection_error(self):
        transport = mock_transport(lambda request: httpx.Response(
            200, json={"error": {"error_code": "TERMINAL_INSTANCE_NOT_FOUND"}}
        ))
        with self.assertRaises(GatewayConnectionError):
            await transport.call("Account/AccountSummary", {}, HEADERS, 3.0)

    async def test_status_mapping(self):
        cases = [
            (401, AuthenticationError),
            (403, AuthenticationError),
            (400, ProtocolError),
            (404, ProtocolError),
            (422, ProtocolError),
            (502, GatewayConnectionError),
            (503, GatewayConnectionError),
            (504, GatewayConnectionError),
        ]
        for status, expected in cases:
            with self.subTest(status=status):
                transport = mock_transport(lambda request, s=status: httpx.Response(s))
                with self.assertRaises(expected):
                    await transport.call("Account/AccountSummary", {}, HEADERS, 3.0)

    async def test_invalid_json_is_protocol_error(self):
        transport = mock_transport(lambda request: httpx.Response(200, content=b"<html>"))
        with self.assertRaises(ProtocolError):
            await transport.call("Account/AccountSummary", {}, HEADERS, 3.0)

    async def test_network_errors(self):
        def refused(request):
            raise httpx.ConnectError("connection refused", request=request)

        def read_timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        def connect_timeout(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        def dropped(request):
            raise httpx.RemoteProtocolError("server disconnected", request=request)

        cases = [
            (refused, GatewayConnectionError),
            (read_timeout, DeadlineExceeded),
            (connect_timeout, GatewayConnectionError),
            (dropped, GatewayConnectionError),
        ]
        for handler, expected in cases:
            with self.subTest(handler=handler.__name__):
                transport = mock_transport(handler)
                with self.assertRaises(expected):
                    await transport.call("Account/AccountSummary", {}, HEADERS, 3.0)

    async def test_closed_transport_refuses_calls(self):
        transport = mock_transport(lambda request: httpx.Response(200, json={"data": 1}))
        await transport.close()
        await transport.close()
        with self.assertRaises(GatewayConnectionError):
            await transport.call("Account/AccountSummary", {}, HEADERS, 3.0)

    async def test_factory_dials_fresh_transports(self):
        factory = HttpGatewayTransport.factory(ws_endpoint="wss://stream.test")
        first = await factory(ENDPOINT)
        second = await factory(ENDPOINT)
        self.assertIsNot(first, second)
        self.assertEqual(first.ws_endpoint, "wss://stream.test")
        await first.close()
        await second.close()

    def test_ws_url_derivation(self):
        self.assertEqual(ws_url_for("https://gateway.test"), "wss://gateway.test")
        self.assertEqual(ws_url_for("http://localhost:8080"), "ws://localhost:8080")


class TestStreams(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.connects = []
        self.sockets = deque()

    async def fake_connect(self, url, additional_headers=None):
        self.connects.append((url, additional_headers))
        socket = self.sockets.popleft()
        if isinstance(socket, BaseException):
            raise socket
        return socket

    def transport(self):
        return mock_transport(lambda request: httpx.Response(404), connect=self.fake_connect)

    async def test_stream_sends_request_and_yields_data(self):
        ws = FakeWebSocket([
            json.dumps({"data": {"symbol_tick": {"symbol": "EURUSD", "bid": 1.1}}}),
            json.dumps({}),  # keep-alive
            json.dumps({"data": {"symbol_tick": {"symbol": "EURUSD", "bid": 1.2}}}),
        ])
        self.sockets.append(ws)
        transport = self.transport()

        stream = await transport.open_stream("Subscriptions/OnSymbolTick", {"symbol_names": ["EURUSD"]}, HEADERS)
        first = await stream.recv()
        second = await stream.recv()

        self.assertEqual(self.connects[0], ("wss://gateway.test/Subscriptions/OnSymbolTick", HEADERS))
        self.assertEqual(json.loads(ws.sent[0]), {"symbol_names": ["EURUSD"]})
        self.assertEqual(first["symbol_tick"]["bid"], 1.1)
        self.assertEqual(second["symbol_tick"]["bid"], 1.2)

        await transport.close()
        self.assertTrue(ws.closed)

    async def test_clean_close_is_stream_closed_by_server(self):
        self.sockets.append(FakeWebSocket([ConnectionClosedOK(Close(1000, "bye"), Close(1000, "bye"))]))
        stream = await self.transport().open_stream("Subscriptions/OnTrade", {}, HEADERS)
        with self.assertRaises(StreamClosedByServer):
            await stream.recv()

    async def test_abnormal_close_is_connection_error(self):
        self.sockets.append(FakeWebSocket([ConnectionClosedError(Close(1011, "internal error"), None)]))
        stream = await self.transport().open_stream("Subscriptions/OnTrade", {}, HEADERS)
        with self.assertRaises(GatewayConnectionError):
            await stream.recv()

    async def test_error_message_on_stream(self):
        self.sockets.append(FakeWebSocket([json.dumps({"error": {"error_code": "INVALID_SYMBOL"}})]))
        stream = await self.transport().open_stream("Subscriptions/OnSymbolTick", {}, HEADERS)
        with self.assertRaises(ApiError):
            await stream.recv()

    async def test_rejected_websocket_handshake(self):
        self.sockets.append(InvalidStatus(Response(401, "Unauthorized", Headers())))
        with self.assertRaises(AuthenticationError):
            await self.transport().open_stream("Subscriptions/OnTrade", {}, HEADERS)

    async def test_unreachable_stream_endpoint(self):
        self.sockets.append(ConnectionRefusedError("refused"))
        with self.assertRaises(GatewayConnectionError):
            await self.transport().open_stream("Subscriptions/OnTrade", {}, HEADERS)


if __name__ == "__main__":
    unittest.main(verbosity=2)
