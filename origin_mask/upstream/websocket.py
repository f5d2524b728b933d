import asyncio
import logging
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from fastapi import WebSocket
from starlette.websockets import WebSocketState
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from origin_mask.upstream.client import HOP_BY_HOP_HEADERS, STRIPPED_REQUEST_HEADERS
from origin_mask.utils.exception_logging import log_exception_with_details

logger = logging.getLogger("uvicorn.error")

# Written by the websockets client during its own handshake
CLIENT_HANDSHAKE_HEADERS = {
    "origin",
    "user-agent",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
}

# Reserved codes that must never appear in a close frame
_RESERVED_CLOSE_CODES = {1005, 1006, 1015}


def to_websocket_url(url: str) -> str:
    """https://host/path -> wss://host/path, http -> ws."""
    if url.startswith("https://"):
        return "wss://" + url[len("https://"):]
    if url.startswith("http://"):
        return "ws://" + url[len("http://"):]
    return url


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def prepare_websocket_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    """Client handshake headers worth forwarding, such as cookies and auth."""
    forwarded = []
    for name, value in headers:
        name_lower = name.lower()
        if (
            name_lower in HOP_BY_HOP_HEADERS
            or name_lower in STRIPPED_REQUEST_HEADERS
            or name_lower in CLIENT_HANDSHAKE_HEADERS
        ):
            continue
        forwarded.append((name_lower, value))
    return forwarded


class WebSocketRelay:
    """
    Pipes frames between an accepted client socket and an upstream socket.

    The upstream handshake happens first so a refused upstream turns into a
    rejected client handshake instead of an open socket that closes at once.
    The upstream sees its own origin in the Origin header, never the proxy.
    """

    def __init__(self, open_timeout: float = 10.0):
        self.open_timeout = open_timeout

    async def relay(
        self,
        websocket: WebSocket,
        target_url: str,
        headers: Iterable[Tuple[str, str]],
    ) -> bool:
        """Relay until either side closes. Returns False when the upstream was unreachable."""
        headers = list(headers)
        ws_url = to_websocket_url(target_url)
        connect_kwargs = {
            "additional_headers": prepare_websocket_headers(headers),
            "subprotocols": websocket.scope.get("subprotocols") or None,
            "origin": origin_of(target_url),
            "open_timeout": self.open_timeout,
        }
        user_agent = next(
            (value for name, value in headers if name.lower() == "user-agent"), None
        )
        if user_agent:
            connect_kwargs["user_agent_header"] = user_agent

        try:
            upstream = await connect(ws_url, **connect_kwargs)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            log_exception_with_details(
                logger, f"[WebSocket] Handshake with {ws_url} failed", e, logging.WARNING
            )
            await websocket.close(code=1011)
            return False

        logger.debug(f"[WebSocket] Relaying to {ws_url}")
        try:
            await websocket.accept(subprotocol=upstream.subprotocol)
            pumps = {
                asyncio.create_task(self._client_to_upstream(websocket, upstream)),
                asyncio.create_task(self._upstream_to_client(websocket, upstream)),
            }
            try:
                done, _ = await asyncio.wait(pumps, return_when=asyncio.FIRST_COMPLETED)
            finally:
                # Also reached when the relay itself is cancelled
                for task in pumps:
                    task.cancel()
                await asyncio.gather(*pumps, return_exceptions=True)
            for task in done:
                task.result()
        finally:
            await upstream.close()
        return True

    @staticmethod
    async def _client_to_upstream(websocket: WebSocket, upstream) -> None:
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])
        except ConnectionClosed:
            return

    @staticmethod
    async def _upstream_to_client(websocket: WebSocket, upstream) -> None:
        try:
            async for message in upstream:
                if isinstance(message, str):
                    await websocket.send_text(message)
                else:
                    await websocket.send_bytes(message)
        except ConnectionClosed:
            pass

        code: Optional[int] = upstream.close_code
        if code is None or code in _RESERVED_CLOSE_CODES:
            code = 1000
        if (
            websocket.application_state == WebSocketState.CONNECTED
            and websocket.client_state == WebSocketState.CONNECTED
        ):
            await websocket.close(code=code, reason=upstream.close_reason or "")
