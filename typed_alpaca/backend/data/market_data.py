# typed_alpaca/backend/data/market_data.py
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

import pandas as pd
from loguru import logger

from typed_alpaca.backend.broker.client import AlpacaClient
from typed_alpaca.backend.errors import BrokerValidationError

COLUMNS = ["timestamp", "open", "high", "low", "close", "volume"]

_TIMEFRAME = re.compile(r"^\s*(\d+)\s*(min|minute|t|hour|h|day|d|week|w|month|mo)\s*$", re.IGNORECASE)
_UNITS = {
    "min": "Min", "minute": "Min", "t": "Min",
    "hour": "Hour", "h": "Hour",
    "day": "Day", "d": "Day",
    "week": "Week", "w": "Week",
    "month": "Month", "mo": "Month",
}


def normalize_timeframe(tf: str) -> str:
    """
    Accepts '1Day', '1hour', '15min', '5Min', '1d' ...
    Returns the form the bars endpoint expects ('15Min', '1Hour', '1Day', '1Week', '1Month').
    """
    m = _TIMEFRAME.match(tf or "")
    if not m:
        raise BrokerValidationError(f"unknown timeframe {tf!r}")
    n, unit = int(m.group(1)), _UNITS[m.group(2).lower()]
    if n <= 0:
        raise BrokerValidationError(f"timeframe amount must be > 0: {tf!r}")
    return f"{n}{unit}"


def _ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes are taken as UTC; aware ones are converted. None stays None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class MarketDataService:
    """Historical bars as a DataFrame, walking every page of the bars endpoint."""

    def __init__(self, client: AlpacaClient) -> None:
        self.client = client

    def get_bars(
        self,
        symbol: str,
        timeframe: str = "1Day",
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: int = 10_000,
    ) -> pd.DataFrame:
        """
        Returns a DataFrame with columns: timestamp, open, high, low, close, volume.
        Default range: last 365 days for daily bars, 30 days otherwise.
        """
        symbol = symbol.strip().upper()
        tf = normalize_timeframe(timeframe)
        end = _ensure_utc(end)
        start = _ensure_utc(start)
        if start is None:
            default_days = 30 if tf.endswith(("Min", "Hour")) else 365
            start = (end or datetime.now(timezone.utc)) - timedelta(days=default_days)

        rows = []
        pages = 0
        for page in self.client.iter_pages(self.client.get_bars, symbol, tf, start=start, end=end, limit=limit):
            pages += 1
            rows.extend(
                (b.timestamp, b.open, b.high, b.low, b.close, b.volume) for b in page.items
            )
        logger.debug("{} {}: {} bars from {} page(s)", symbol, tf, len(rows), pages)

        df = pd.DataFrame.from_records(rows, columns=COLUMNS)
        if df.empty:
            return df
        df["timestamp"] = pd.to_datetime(df["timestamp"], utc=True)
        df = df.drop_duplicates(subset=["timestamp"]).sort_values("timestamp").reset_index(drop=True)
        return df
