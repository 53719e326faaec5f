"""Wire shapes, exactly as Alpaca sends them.

Numbers that Alpaca encodes as decimal strings stay strings here; timestamps are
RFC-3339 strings. Use the parsed entities in `typed_alpaca.domain.entities` for
ergonomic types; every parsed entity gives these back through `raw()`.
"""
from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional, TypedDict


ActivityType = Literal[
    "FILL", "TRANS", "MISC", "ACATC", "ACATS", "CSD", "CSR", "DIV", "DIVCGL", "DIVCGS",
    "DIVFEE", "DIVFT", "DIVNRA", "DIVROC", "DIVTW", "DIVTXEX", "INT", "INTNRA", "INTTW",
    "JNL", "JNLC", "JNLS", "MA", "NC", "OPASN", "OPEXP", "OPXRC", "PTC", "PTR", "REORG",
    "SC", "SSO", "SSP",
]

OrderClass = Literal["simple", "bracket", "oto", "oco"]


class RawAccount(TypedDict):
    id: str
    account_number: str
    status: str
    currency: str
    buying_power: str
    regt_buying_power: str
    daytrading_buying_power: str
    cash: str
    portfolio_value: str
    equity: str
    last_equity: str
    long_market_value: str
    short_market_value: str
    initial_margin: str
    maintenance_margin: str
    last_maintenance_margin: str
    multiplier: str
    sma: str
    daytrade_count: int
    pattern_day_trader: bool
    shorting_enabled: bool
    trading_blocked: bool
    transfers_blocked: bool
    account_blocked: bool
    trade_suspended_by_user: bool
    created_at: str


class RawAccountConfigurations(TypedDict):
    dtbp_check: Literal["both", "entry", "exit"]
    no_shorting: bool
    suspend_trade: bool
    trade_confirm_email: Literal["all", "none"]


class RawClock(TypedDict):
    timestamp: str
    is_open: bool
    next_open: str
    next_close: str


class RawCalendar(TypedDict):
    date: str
    open: str
    close: str


class RawAsset(TypedDict):
    id: str
    # "class" is a keyword; Alpaca sends it under that name anyway.
    exchange: str
    symbol: str
    name: str
    status: str
    tradable: bool
    marginable: bool
    shortable: bool
    easy_to_borrow: bool
    fractionable: bool


class RawWatchlist(TypedDict, total=False):
    id: str
    account_id: str
    name: str
    created_at: str
    updated_at: str
    assets: List[RawAsset]  # absent in the list endpoint


class RawPortfolioHistory(TypedDict):
    timestamp: List[int]  # unix seconds, left edge of each window
    equity: List[Optional[float]]
    profit_loss: List[Optional[float]]
    profit_loss_pct: List[Optional[float]]
    base_value: float
    timeframe: str


class RawOrder(TypedDict, total=False):
    id: str
    client_order_id: str
    created_at: str
    updated_at: Optional[str]
    submitted_at: Optional[str]
    filled_at: Optional[str]
    expired_at: Optional[str]
    canceled_at: Optional[str]
    failed_at: Optional[str]
    replaced_at: Optional[str]
    replaced_by: Optional[str]
    replaces: Optional[str]
    asset_id: str
    symbol: str
    asset_class: str
    notional: Optional[str]
    qty: Optional[str]
    filled_qty: str
    type: str
    side: str
    time_in_force: str
    limit_price: Optional[str]
    stop_price: Optional[str]
    filled_avg_price: Optional[str]
    status: str
    extended_hours: bool
    legs: Optional[List["RawOrder"]]
    trail_price: Optional[str]
    trail_percent: Optional[str]
    hwm: Optional[str]
    order_class: str


class RawOrderCancelation(TypedDict, total=False):
    id: str
    status: int
    body: Any  # RawOrder on 2xx, an error object otherwise


class RawPositionClosing(TypedDict, total=False):
    symbol: str
    status: int
    body: Any


class RawPosition(TypedDict):
    asset_id: str
    symbol: str
    exchange: str
    asset_class: str
    avg_entry_price: str
    qty: str
    qty_available: Optional[str]
    side: str
    market_value: Optional[str]
    cost_basis: str
    unrealized_pl: Optional[str]
    unrealized_plpc: Optional[str]
    unrealized_intraday_pl: Optional[str]
    unrealized_intraday_plpc: Optional[str]
    current_price: Optional[str]
    lastday_price: Optional[str]
    change_today: Optional[str]


class RawTradeActivity(TypedDict):
    activity_type: Literal["FILL"]
    id: str
    cum_qty: str
    leaves_qty: str
    price: str
    qty: str
    side: str
    symbol: str
    transaction_time: str
    order_id: str
    type: Literal["fill", "partial_fill"]


class RawNonTradeActivity(TypedDict, total=False):
    activity_type: str
    id: str
    date: str
    net_amount: str
    symbol: Optional[str]
    qty: Optional[str]
    per_share_amount: Optional[str]
    description: Optional[str]
    status: Optional[str]


RawActivity = Dict[str, Any]  # RawTradeActivity | RawNonTradeActivity, keyed on activity_type


class RawTrade(TypedDict, total=False):
    T: str
    S: str
    t: str
    x: str
    p: float
    s: float
    c: Optional[List[str]]
    i: int
    z: str


class RawQuote(TypedDict, total=False):
    T: str
    S: str
    t: str
    ax: str
    ap: float
    # "as" is a keyword: ask size.
    bx: str
    bp: float
    bs: float
    c: Optional[List[str]]
    z: str


class RawBar(TypedDict, total=False):
    T: str
    S: str
    t: str
    o: float
    h: float
    l: float
    c: float
    v: float
    n: int
    vw: float


class RawPageOfTrades(TypedDict):
    trades: Optional[List[RawTrade]]
    symbol: str
    next_page_token: Optional[str]


class RawPageOfQuotes(TypedDict):
    quotes: Optional[List[RawQuote]]
    symbol: str
    next_page_token: Optional[str]


class RawPageOfBars(TypedDict):
    bars: Optional[List[RawBar]]
    symbol: str
    next_page_token: Optional[str]


class RawLatestTrade(TypedDict):
    symbol: str
    trade: RawTrade


class RawSnapshot(TypedDict, total=False):
    symbol: str
    latestTrade: Optional[RawTrade]
    latestQuote: Optional[RawQuote]
    minuteBar: Optional[RawBar]
    dailyBar: Optional[RawBar]
    prevDailyBar: Optional[RawBar]


class RawTradeUpdate(TypedDict, total=False):
    event: str
    execution_id: str
    order: RawOrder
    event_id: Optional[str]
    at: Optional[str]
    timestamp: Optional[str]
    position_qty: Optional[str]
    price: Optional[str]
    qty: Optional[str]


class RawNews(TypedDict):
    id: int
    headline: str
    author: str
    created_at: str
    updated_at: str
    summary: str
    url: str
    images: List[Dict[str, Any]]
    symbols: List[str]
    source: str


class RawNewsPage(TypedDict):
    news: List[RawNews]
    next_page_token: Optional[str]
