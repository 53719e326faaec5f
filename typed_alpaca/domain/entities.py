"""Parsed entities.

Each one is an immutable snapshot built by `typed_alpaca.backend.parse`: decimal
strings become floats, RFC-3339 strings become tz-aware datetimes, and `raw()`
returns the exact payload the entity was built from. Unset timestamps and
nullable numbers are `None`, never 0 or epoch.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Generic, Literal, Optional, Tuple, TypeVar, Union

TradeActivityType = Literal["fill", "partial_fill"]
PositionSide = Literal["long", "short"]
OrderSide = Literal["buy", "sell"]
OrderType = Literal["market", "limit", "stop", "stop_limit", "trailing_stop"]
OrderTimeInForce = Literal["day", "gtc", "opg", "cls", "ioc", "fok"]
OrderClass = Literal["simple", "bracket", "oto", "oco"]
DataSource = Literal["iex", "sip"]
Channel = Literal["trades", "quotes", "bars", "trade_updates"]

T = TypeVar("T")


@dataclass(frozen=True)
class _RawBacked:
    _raw: Any = field(repr=False, compare=False)

    def raw(self) -> Any:
        """The payload exactly as it came from Alpaca."""
        return self._raw


@dataclass(frozen=True)
class Account(_RawBacked):
    id: str
    account_number: str
    status: str
    currency: str
    buying_power: float
    regt_buying_power: float
    daytrading_buying_power: float
    cash: float
    portfolio_value: float  # deprecated upstream, equal to equity
    equity: float
    last_equity: float
    long_market_value: float
    short_market_value: float
    initial_margin: float
    maintenance_margin: float
    last_maintenance_margin: float
    multiplier: float  # 1, 2 or 4
    sma: float
    daytrade_count: int
    pattern_day_trader: bool
    shorting_enabled: bool
    trading_blocked: bool
    transfers_blocked: bool
    account_blocked: bool
    trade_suspended_by_user: bool
    created_at: datetime


@dataclass(frozen=True)
class AccountConfigurations(_RawBacked):
    dtbp_check: str
    no_shorting: bool
    suspend_trade: bool
    trade_confirm_email: str


@dataclass(frozen=True)
class Clock(_RawBacked):
    timestamp: datetime
    is_open: bool
    next_open: datetime
    next_close: datetime


@dataclass(frozen=True)
class Calendar(_RawBacked):
    date: date
    open: str  # HH:MM, exchange local time
    close: str


@dataclass(frozen=True)
class Asset(_RawBacked):
    id: str
    asset_class: str
    exchange: str
    symbol: str
    name: Optional[str]
    status: str
    tradable: bool
    marginable: bool
    shortable: bool
    easy_to_borrow: bool
    fractionable: bool


@dataclass(frozen=True)
class Watchlist(_RawBacked):
    id: str
    account_id: str
    name: str
    created_at: datetime
    updated_at: datetime
    assets: Optional[Tuple[Asset, ...]]  # None when the response did not include them


@dataclass(frozen=True)
class PortfolioHistory(_RawBacked):
    """Equity and P/L series; every series has one entry per timestamp."""

    timestamp: Tuple[datetime, ...]
    equity: Tuple[Optional[float], ...]
    profit_loss: Tuple[Optional[float], ...]
    profit_loss_pct: Tuple[Optional[float], ...]
    base_value: float
    timeframe: str


@dataclass(frozen=True)
class Order(_RawBacked):
    """An order. At most one of filled/expired/canceled/failed/replaced_at is set."""

    id: str
    client_order_id: str
    created_at: datetime
    updated_at: Optional[datetime]
    submitted_at: Optional[datetime]
    filled_at: Optional[datetime]
    expired_at: Optional[datetime]
    canceled_at: Optional[datetime]
    failed_at: Optional[datetime]
    replaced_at: Optional[datetime]
    replaced_by: Optional[str]
    replaces: Optional[str]
    asset_id: str
    symbol: str
    asset_class: str
    notional: Optional[float]
    qty: Optional[float]
    filled_qty: float
    type: str
    side: str
    time_in_force: str
    limit_price: Optional[float]
    stop_price: Optional[float]
    filled_avg_price: Optional[float]
    status: str
    extended_hours: bool
    legs: Optional[Tuple["Order", ...]]
    trail_price: Optional[float]
    trail_percent: Optional[float]
    hwm: Optional[float]
    order_class: str


@dataclass(frozen=True)
class OrderCancelation(_RawBacked):
    id: str
    status: int  # HTTP status of the individual cancel
    order: Optional[Order]  # set on 2xx
    error: Any = None  # the entry body otherwise

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass(frozen=True)
class PositionClosing(_RawBacked):
    """One entry of a close-all-positions response."""

    symbol: str
    status: int
    order: Optional[Order]  # the liquidating order, set on 2xx
    error: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass(frozen=True)
class Position(_RawBacked):
    """Market-dependent numbers are None when the broker cannot compute them."""

    asset_id: str
    symbol: str
    exchange: str
    asset_class: str
    avg_entry_price: float
    qty: float
    qty_available: Optional[float]
    side: str
    market_value: Optional[float]
    cost_basis: float
    unrealized_pl: Optional[float]
    unrealized_plpc: Optional[float]
    unrealized_intraday_pl: Optional[float]
    unrealized_intraday_plpc: Optional[float]
    current_price: Optional[float]
    lastday_price: Optional[float]
    change_today: Optional[float]


@dataclass(frozen=True)
class TradeActivity(_RawBacked):
    activity_type: Literal["FILL"]
    id: str
    cum_qty: float
    leaves_qty: float
    price: float
    qty: float
    side: str
    symbol: str
    transaction_time: datetime
    order_id: str
    type: TradeActivityType


@dataclass(frozen=True)
class NonTradeActivity(_RawBacked):
    activity_type: str
    id: str
    date: date
    net_amount: float
    symbol: Optional[str]
    qty: Optional[float]
    per_share_amount: Optional[float]
    description: Optional[str]
    status: Optional[str]


Activity = Union[TradeActivity, NonTradeActivity]


@dataclass(frozen=True)
class Trade(_RawBacked):
    symbol: Optional[str]  # absent inside pages/snapshots, where the symbol is on the container
    timestamp: datetime
    exchange: Optional[str]
    price: float
    size: float
    conditions: Optional[Tuple[str, ...]]
    id: Optional[int]
    tape: Optional[str]


@dataclass(frozen=True)
class Quote(_RawBacked):
    symbol: Optional[str]
    timestamp: datetime
    ask_exchange: Optional[str]
    ask_price: float
    ask_size: float
    bid_exchange: Optional[str]
    bid_price: float
    bid_size: float
    conditions: Optional[Tuple[str, ...]]
    tape: Optional[str]


@dataclass(frozen=True)
class Bar(_RawBacked):
    symbol: Optional[str]
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float
    trade_count: Optional[int]
    vwap: Optional[float]


@dataclass(frozen=True)
class Page(_RawBacked, Generic[T]):
    """One page of a paginated result. `next_page_token` is None iff nothing is left upstream."""

    items: Tuple[T, ...]
    symbol: Optional[str]
    next_page_token: Optional[str]

    @property
    def has_next(self) -> bool:
        return self.next_page_token is not None


PageOfTrades = Page[Trade]
PageOfQuotes = Page[Quote]
PageOfBars = Page[Bar]


@dataclass(frozen=True)
class LatestTrade(_RawBacked):
    symbol: str
    trade: Trade


@dataclass(frozen=True)
class Snapshot(_RawBacked):
    symbol: Optional[str]
    latest_trade: Optional[Trade]
    latest_quote: Optional[Quote]
    minute_bar: Optional[Bar]
    daily_bar: Optional[Bar]
    prev_daily_bar: Optional[Bar]


@dataclass(frozen=True)
class TradeUpdate(_RawBacked):
    event: str
    execution_id: Optional[str]
    order: Order
    event_id: Optional[int]
    at: Optional[datetime]
    timestamp: Optional[datetime]
    position_qty: Optional[float]
    price: Optional[float]
    qty: Optional[float]


@dataclass(frozen=True)
class News(_RawBacked):
    id: int
    headline: str
    author: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]
    summary: Optional[str]
    url: Optional[str]
    images: Tuple[Any, ...]
    symbols: Tuple[str, ...]
    source: Optional[str]


NewsPage = Page[News]
