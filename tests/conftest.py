"""Shared fixtures: wire payloads as Alpaca sends them, fake transports."""
import asyncio
import copy
from typing import List, Optional, Union

import pytest

from typed_alpaca.backend.errors import StreamTransportError
from typed_alpaca.config import Credentials
from typed_alpaca.domain.interfaces import WebSocketTransport

ACCOUNT = {
    "id": "904837e3-3b76-47ec-b432-046db621571b",
    "account_number": "PA2W3J6XQF3Q",
    "status": "ACTIVE",
    "currency": "USD",
    "buying_power": "262113.632",
    "regt_buying_power": "262113.632",
    "daytrading_buying_power": "0",
    "cash": "-23140.2",
    "portfolio_value": "103820.56",
    "equity": "103820.56",
    "last_equity": "103529.24",
    "long_market_value": "126960.76",
    "short_market_value": "0",
    "initial_margin": "63480.38",
    "maintenance_margin": "38088.228",
    "last_maintenance_margin": "38000.832",
    "multiplier": "4",
    "sma": "0",
    "daytrade_count": 0,
    "pattern_day_trader": False,
    "shorting_enabled": True,
    "trading_blocked": False,
    "transfers_blocked": False,
    "account_blocked": False,
    "trade_suspended_by_user": False,
    "created_at": "2019-06-12T22:47:07.99658Z",
}

ORDER = {
    "id": "61e69015-8549-4bfd-b9c3-01e75843f47d",
    "client_order_id": "eb9e2aaa-f71a-4f51-b5b4-52a6c565dad4",
    "created_at": "2021-03-16T18:38:01.942282Z",
    "updated_at": "2021-03-16T18:38:01.942282Z",
    "submitted_at": "2021-03-16T18:38:01.937734Z",
    "filled_at": None,
    "expired_at": None,
    "canceled_at": None,
    "failed_at": None,
    "replaced_at": None,
    "replaced_by": None,
    "replaces": None,
    "asset_id": "b0b6dd9d-8b9b-48a9-ba46-b9d54906e415",
    "symbol": "AAPL",
    "asset_class": "us_equity",
    "notional": "500",
    "qty": None,
    "filled_qty": "0",
    "filled_avg_price": None,
    "order_class": "",
    "order_type": "market",
    "type": "market",
    "side": "buy",
    "time_in_force": "day",
    "limit_price": None,
    "stop_price": None,
    "status": "accepted",
    "extended_hours": False,
    "legs": None,
    "trail_percent": None,
    "trail_price": None,
    "hwm": None,
}

POSITION = {
    "asset_id": "904837e3-3b76-47ec-b432-046db621571b",
    "symbol": "AAPL",
    "exchange": "NASDAQ",
    "asset_class": "us_equity",
    "avg_entry_price": "100.0",
    "qty": "5",
    "qty_available": "4",
    "side": "long",
    "market_value": "600.0",
    "cost_basis": "500.0",
    "unrealized_pl": "100.0",
    "unrealized_plpc": "0.20",
    "unrealized_intraday_pl": "10.0",
    "unrealized_intraday_plpc": "0.0084",
    "current_price": "120.0",
    "lastday_price": "119.0",
    "change_today": "0.0084",
}

FILL = {
    "activity_type": "FILL",
    "id": "20220202135509981::2d7be4ff-d1f3-43e9-856a-0f5cf5c5088e",
    "cum_qty": "1",
    "leaves_qty": "0",
    "price": "3574.28",
    "qty": "1",
    "side": "buy",
    "symbol": "AMZN",
    "transaction_time": "2022-02-02T18:55:09.981185Z",
    "order_id": "8bc6c9df-ea37-4b3a-9d2c-a4c6e0b1c2a3",
    "type": "fill",
}

DIVIDEND = {
    "activity_type": "DIV",
    "id": "20190801011955195::5f596936-6f23-4cef-bdf1-3806aae57dbf",
    "date": "2019-08-01",
    "net_amount": "1.02",
    "symbol": "T",
    "qty": "2",
    "per_share_amount": "0.51",
}

TRADE = {"t": "2021-02-06T13:04:56.334320128Z", "x": "C", "p": 387.62, "s": 100, "c": [" ", "T"], "i": 52983525029461, "z": "B"}
QUOTE = {
    "t": "2021-02-06T13:35:08.946977536Z",
    "ax": "C", "ap": 387.7, "as": 1,
    "bx": "N", "bp": 387.67, "bs": 1,
    "c": ["R"], "z": "C",
}
BAR = {"t": "2021-02-01T16:01:00Z", "o": 133.32, "h": 133.74, "l": 133.31, "c": 133.5, "v": 9876, "n": 12, "vw": 133.5}

TRADE_UPDATE = {
    "event": "fill",
    "execution_id": "2f63ea93-423d-4169-b3f6-3fdafc10c418",
    "event_id": "1",
    "at": "2021-05-07T10:10:00.123456Z",
    "timestamp": "2021-05-07T10:10:00.123456Z",
    "position_qty": "100",
    "price": "179.08",
    "qty": "100",
}

ASSET = {
    "id": "b0b6dd9d-8b9b-48a9-ba46-b9d54906e415",
    "class": "us_equity",
    "exchange": "NASDAQ",
    "symbol": "AAPL",
    "name": "Apple Inc. Common Stock",
    "status": "active",
    "tradable": True,
    "marginable": True,
    "shortable": True,
    "easy_to_borrow": True,
    "fractionable": True,
}

WATCHLIST = {
    "id": "3174d6df-7726-44b4-a5bd-7fda5ae6e009",
    "account_id": "904837e3-3b76-47ec-b432-046db621571b",
    "name": "Primary Watchlist",
    "created_at": "2020-01-23T00:01:05.284Z",
    "updated_at": "2020-01-23T00:01:05.284Z",
    "assets": [ASSET],
}

PORTFOLIO_HISTORY = {
    "timestamp": [1580826600, 1580827500, 1580828400],
    "equity": [27423.73, 27408.19, None],
    "profit_loss": [11.8, -3.74, None],
    "profit_loss_pct": [0.000430469507254688, -0.0001364369455197062, None],
    "base_value": 27411.93,
    "timeframe": "15Min",
}


@pytest.fixture
def account_payload():
    return copy.deepcopy(ACCOUNT)


@pytest.fixture
def order_payload():
    return copy.deepcopy(ORDER)


@pytest.fixture
def position_payload():
    return copy.deepcopy(POSITION)


@pytest.fixture
def fill_payload():
    return copy.deepcopy(FILL)


@pytest.fixture
def dividend_payload():
    return copy.deepcopy(DIVIDEND)


@pytest.fixture
def trade_payload():
    return copy.deepcopy(TRADE)


@pytest.fixture
def quote_payload():
    return copy.deepcopy(QUOTE)


@pytest.fixture
def bar_payload():
    return copy.deepcopy(BAR)


@pytest.fixture
def trade_update_payload():
    payload = copy.deepcopy(TRADE_UPDATE)
    payload["order"] = copy.deepcopy(ORDER)
    return payload


@pytest.fixture
def watchlist_payload():
    return copy.deepcopy(WATCHLIST)


@pytest.fixture
def portfolio_history_payload():
    return copy.deepcopy(PORTFOLIO_HISTORY)


@pytest.fixture
def key_credentials():
    return Credentials(key="PKTEST1234ABCD", secret="s3cr3t", paper=True)


@pytest.fixture
def oauth_credentials():
    return Credentials(access_token="oauth-token-123456", paper=True)


class FakeTransport(WebSocketTransport):
    """
    Scripted websocket. Frames pushed with feed() are returned by receive();
    drop() makes the next receive() report a closed connection.
    """

    def __init__(self, connect_error: Optional[Exception] = None) -> None:
        self.connect_error = connect_error
        self.url: Optional[str] = None
        self.sent: List[str] = []
        self.closed = False
        self._inbox: "asyncio.Queue[Optional[Union[str, bytes]]]" = asyncio.Queue()

    async def connect(self, url: str) -> None:
        self.url = url
        if self.connect_error is not None:
            raise self.connect_error

    async def send(self, frame: str) -> None:
        if self.closed:
            raise StreamTransportError("socket is not open")
        self.sent.append(frame)

    async def receive(self) -> Optional[Union[str, bytes]]:
        return await self._inbox.get()

    async def close(self) -> None:
        self.closed = True

    def feed(self, frame: Union[str, bytes]) -> None:
        self._inbox.put_nowait(frame)

    def drop(self) -> None:
        self._inbox.put_nowait(None)


class TransportFactory:
    """Hands out a fresh FakeTransport per connect and remembers all of them."""

    def __init__(self, *connect_errors: Optional[Exception]) -> None:
        self.created: List[FakeTransport] = []
        self._errors = list(connect_errors)

    def __call__(self) -> FakeTransport:
        error = self._errors.pop(0) if self._errors else None
        transport = FakeTransport(connect_error=error)
        self.created.append(transport)
        return transport

    @property
    def current(self) -> FakeTransport:
        return self.created[-1]


@pytest.fixture
def transports():
    return TransportFactory()


@pytest.fixture
def transport_factory():
    """The TransportFactory class, for tests that script connect failures."""
    return TransportFactory
