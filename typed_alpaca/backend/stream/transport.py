# typed_alpaca/backend/stream/transport.py
from __future__ import annotations

import asyncio
from typing import Optional, Union

import aiohttp
from loguru import logger

from typed_alpaca.backend.errors import StreamTransportError
from typed_alpaca.domain.interfaces import WebSocketTransport

_CLOSED_TYPES = (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED)


class AiohttpTransport(WebSocketTransport):
    """aiohttp websocket; pings are answered by aiohttp itself (autoping + heartbeat)."""

    def __init__(self, heartbeat: float = 20.0, session: Optional[aiohttp.ClientSession] = None) -> None:
        self.heartbeat = heartbeat
        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    async def connect(self, url: str) -> None:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(url, heartbeat=self.heartbeat)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise StreamTransportError(f"connect to {url} failed: {e.__class__.__name__}: {e}") from e

    async def send(self, frame: str) -> None:
        if self._ws is None or self._ws.closed:
            raise StreamTransportError("socket is not open")
        try:
            await self._ws.send_str(frame)
        except (aiohttp.ClientError, ConnectionError) as e:
            raise StreamTransportError(f"send failed: {e}") from e

    async def receive(self) -> Optional[Union[str, bytes]]:
        if self._ws is None:
            raise StreamTransportError("socket is not open")
        while True:
            msg = await self._ws.receive()
            if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                # binary payloads are decoded by the protocol
                return msg.data
            if msg.type in _CLOSED_TYPES:
                logger.debug("Socket closed: {} {}", msg.data, msg.extra)
                return None
            if msg.type == aiohttp.WSMsgType.ERROR:
                raise StreamTransportError(f"socket error: {self._ws.exception()}")

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            await ws.close()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
