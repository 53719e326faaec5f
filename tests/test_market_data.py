from datetime import datetime, timezone
from unittest.mock import Mock

import pandas as pd
import pytest

from typed_alpaca.backend import parse
from typed_alpaca.backend.broker.client import AlpacaClient
from typed_alpaca.backend.data.market_data import COLUMNS, MarketDataService, normalize_timeframe
from typed_alpaca.backend.errors import BrokerValidationError


@pytest.mark.parametrize(
    "given, expected",
    [("1Day", "1Day"), ("1day", "1Day"), ("15min", "15Min"), ("5Min", "5Min"), ("1hour", "1Hour"), ("1H", "1Hour"), ("1Week", "1Week"), ("1Month", "1Month")],
)
def test_normalize_timeframe(given, expected):
    assert normalize_timeframe(given) == expected


@pytest.mark.parametrize("bad", ["", "Day", "0Day", "1Fortnight", "1.5Hour"])
def test_bad_timeframe(bad):
    with pytest.raises(BrokerValidationError):
        normalize_timeframe(bad)


class TestMarketDataService:
    def _bar(self, bar_payload, ts, close):
        return dict(bar_payload, t=ts, c=close)

    def test_walks_all_pages(self, key_credentials, bar_payload):
        transport = Mock()
        transport.request.side_effect = [
            {"bars": [self._bar(bar_payload, "2021-02-02T00:00:00Z", 2.0), self._bar(bar_payload, "2021-02-01T00:00:00Z", 1.0)], "symbol": "AAPL", "next_page_token": "n"},
            {"bars": [self._bar(bar_payload, "2021-02-02T00:00:00Z", 2.0), self._bar(bar_payload, "2021-02-03T00:00:00Z", 3.0)], "symbol": "AAPL", "next_page_token": None},
        ]
        client = AlpacaClient(key_credentials, transport, Mock())
        start = datetime(2021, 2, 1)

        df = MarketDataService(client).get_bars("aapl", "1day", start=start)

        assert list(df.columns) == COLUMNS
        assert list(df["close"]) == [1.0, 2.0, 3.0]
        assert str(df["timestamp"].dt.tz) == "UTC"
        assert df["timestamp"].is_monotonic_increasing

        first_call = transport.request.call_args_list[0]
        assert first_call.args[1].endswith("/stocks/AAPL/bars")
        assert first_call.kwargs["params"]["timeframe"] == "1Day"
        assert first_call.kwargs["params"]["start"] == "2021-02-01T00:00:00+00:00"
        assert transport.request.call_args_list[1].kwargs["params"]["page_token"] == "n"

    def test_empty(self, key_credentials):
        client = Mock(spec=AlpacaClient)
        client.iter_pages.return_value = iter([parse.page_of_bars({"bars": None, "symbol": "AAPL", "next_page_token": None})])
        df = MarketDataService(client).get_bars("AAPL", start=datetime(2021, 1, 1, tzinfo=timezone.utc))
        assert df.empty
        assert isinstance(df, pd.DataFrame)
        assert list(df.columns) == COLUMNS
