import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import FastAPI, WebSocket
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from origin_mask.upstream.websocket import (
    WebSocketRelay,
    origin_of,
    prepare_websocket_headers,
    to_websocket_url,
)

TARGET = "https://api.origin.example/socket?room=1"


class FakeUpstream:
    """Upstream connection that echoes what it is sent, then yields queued frames."""

    def __init__(self, frames=(), close_code=1000):
        self.subprotocol = None
        self.close_code = close_code
        self.close_reason = ""
        self.sent = []
        self.closed = False
        self._queue = asyncio.Queue()
        for frame in frames:
            self._queue.put_nowait(frame)

    async def send(self, message):
        self.sent.append(message)
        await self._queue.put(message)

    async def close(self, code=1000, reason=""):
        self.closed = True
        await self._queue.put(None)

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame


def make_client(relay: WebSocketRelay) -> TestClient:
    app = FastAPI()

    @app.websocket("/{path:path}")
    async def endpoint(websocket: WebSocket, path: str):
        await relay.relay(websocket, TARGET, websocket.headers.items())

    return TestClient(app)


class TestHelpers:
    def test_to_websocket_url(self):
        assert to_websocket_url("https://a.example/x?y=1") == "wss://a.example/x?y=1"
        assert to_websocket_url("http://a.example/x") == "ws://a.example/x"

    def test_origin_of(self):
        assert origin_of("https://cdn.origin.example/assets/x") == "https://cdn.origin.example"

    def test_prepare_websocket_headers(self):
        result = prepare_websocket_headers(
            [
                ("Host", "proxy.example.com"),
                ("Upgrade", "websocket"),
                ("Connection", "Upgrade"),
                ("Sec-WebSocket-Key", "abc"),
                ("Origin", "https://proxy.example.com"),
                ("X-Forwarded-For", "10.0.0.1"),
                ("Cookie", "sid=1"),
                ("Authorization", "Bearer t"),
            ]
        )

        assert result == [("cookie", "sid=1"), ("authorization", "Bearer t")]


class TestWebSocketRelay:
    def test_frames_relayed_both_ways(self):
        upstream = FakeUpstream()
        with patch(
            "origin_mask.upstream.websocket.connect", new=AsyncMock(return_value=upstream)
        ) as connect_mock:
            with make_client(WebSocketRelay()).websocket_connect("/socket") as ws:
                ws.send_text("ping")
                assert ws.receive_text() == "ping"
                ws.send_bytes(b"\x00\x01")
                assert ws.receive_bytes() == b"\x00\x01"

        assert upstream.sent == ["ping", b"\x00\x01"]
        assert upstream.closed
        assert connect_mock.await_args.args == ("wss://api.origin.example/socket?room=1",)
        assert connect_mock.await_args.kwargs["origin"] == "https://api.origin.example"

    def test_upstream_close_closes_client(self):
        upstream = FakeUpstream(frames=["hello", None], close_code=1001)
        with patch(
            "origin_mask.upstream.websocket.connect", new=AsyncMock(return_value=upstream)
        ):
            with make_client(WebSocketRelay()).websocket_connect("/socket") as ws:
                assert ws.receive_text() == "hello"
                message = ws.receive()

        assert message["type"] == "websocket.close"
        assert message["code"] == 1001

    def test_unreachable_upstream_rejects_handshake(self):
        with patch(
            "origin_mask.upstream.websocket.connect",
            new=AsyncMock(side_effect=OSError("connection refused")),
        ):
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with make_client(WebSocketRelay()).websocket_connect("/socket"):
                    pass

        assert exc_info.value.code == 1011
