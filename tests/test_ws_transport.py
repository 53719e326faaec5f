from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import aiohttp
import pytest

from typed_alpaca.backend.errors import StreamTransportError
from typed_alpaca.backend.stream.transport import AiohttpTransport


def _msg(kind, data=None):
    return SimpleNamespace(type=kind, data=data, extra=None)


@pytest.fixture
def ws():
    ws = Mock()
    ws.closed = False
    ws.send_str = AsyncMock()
    ws.close = AsyncMock()
    ws.receive = AsyncMock()
    return ws


@pytest.fixture
def http_session(ws):
    session = Mock()
    session.ws_connect = AsyncMock(return_value=ws)
    session.close = AsyncMock()
    return session


class TestAiohttpTransport:
    @pytest.mark.asyncio
    async def test_frames(self, ws, http_session):
        ws.receive.side_effect = [
            _msg(aiohttp.WSMsgType.TEXT, '[{"T":"success"}]'),
            _msg(aiohttp.WSMsgType.PING, b""),
            _msg(aiohttp.WSMsgType.BINARY, b'{"stream":"listening"}'),
            _msg(aiohttp.WSMsgType.CLOSE, 1000),
        ]
        transport = AiohttpTransport(heartbeat=5.0, session=http_session)

        await transport.connect("wss://example")
        http_session.ws_connect.assert_awaited_once_with("wss://example", heartbeat=5.0)

        assert await transport.receive() == '[{"T":"success"}]'
        assert await transport.receive() == b'{"stream":"listening"}'
        assert await transport.receive() is None

        await transport.send('{"action":"auth"}')
        ws.send_str.assert_awaited_once_with('{"action":"auth"}')

        await transport.close()
        ws.close.assert_awaited_once()
        http_session.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_socket_error(self, ws, http_session):
        ws.receive.side_effect = [_msg(aiohttp.WSMsgType.ERROR)]
        ws.exception = Mock(return_value=ConnectionResetError("reset"))
        transport = AiohttpTransport(session=http_session)
        await transport.connect("wss://example")
        with pytest.raises(StreamTransportError):
            await transport.receive()

    @pytest.mark.asyncio
    async def test_connect_failure(self, http_session):
        http_session.ws_connect.side_effect = aiohttp.ClientConnectionError("refused")
        with pytest.raises(StreamTransportError):
            await AiohttpTransport(session=http_session).connect("wss://example")

    @pytest.mark.asyncio
    async def test_send_before_connect(self):
        with pytest.raises(StreamTransportError):
            await AiohttpTransport().send("x")
