# typed_alpaca/backend/parse.py
"""Raw -> parsed conversions.

Every function here is pure: same input, equal output, no I/O. Parsed entities
keep a reference to the payload they were built from (`entity.raw() is payload`).

Rules applied everywhere:
- decimal strings become finite floats (NaN and infinities raise); a required number that is missing or does not
  parse raises MalformedEntityError, a nullable one that is None/"" becomes None;
- RFC-3339 strings become tz-aware UTC datetimes; None/"" on a nullable timestamp
  becomes None, anything unparseable raises (never "now", never epoch);
- sequences keep their order.
"""
from __future__ import annotations

import math
import re
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, TypeVar

from typed_alpaca.backend.errors import MalformedEntityError
from typed_alpaca.domain.entities import (
    Account,
    AccountConfigurations,
    Activity,
    Asset,
    Bar,
    Calendar,
    Clock,
    LatestTrade,
    News,
    NonTradeActivity,
    Order,
    OrderCancelation,
    Page,
    PortfolioHistory,
    Position,
    PositionClosing,
    Quote,
    Snapshot,
    Trade,
    TradeActivity,
    TradeUpdate,
    Watchlist,
)
from typed_alpaca.domain.raw import (
    RawAccount,
    RawAccountConfigurations,
    RawActivity,
    RawAsset,
    RawBar,
    RawCalendar,
    RawClock,
    RawLatestTrade,
    RawNews,
    RawNewsPage,
    RawNonTradeActivity,
    RawOrder,
    RawOrderCancelation,
    RawPageOfBars,
    RawPageOfQuotes,
    RawPageOfTrades,
    RawPortfolioHistory,
    RawPosition,
    RawPositionClosing,
    RawQuote,
    RawSnapshot,
    RawTrade,
    RawTradeActivity,
    RawTradeUpdate,
    RawWatchlist,
)

T = TypeVar("T")

TRADE_ACTIVITY_TYPE = "FILL"
NON_TRADE_ACTIVITY_TYPES = frozenset(
    {
        "TRANS", "MISC", "ACATC", "ACATS", "CSD", "CSR", "DIV", "DIVCGL", "DIVCGS",
        "DIVFEE", "DIVFT", "DIVNRA", "DIVROC", "DIVTW", "DIVTXEX", "INT", "INTNRA",
        "INTTW", "JNL", "JNLC", "JNLS", "MA", "NC", "OPASN", "OPEXP", "OPXRC", "PTC",
        "PTR", "REORG", "SC", "SSO", "SSP",
    }
)
TRADE_ACTIVITY_KINDS = frozenset({"fill", "partial_fill"})

# 2021-02-06T13:04:56.334320128Z -> date/time, fraction (any precision), offset
_RFC3339 = re.compile(
    r"^(\d{4}-\d{2}-\d{2})[Tt ](\d{2}:\d{2}:\d{2})(?:\.(\d+))?([Zz]|[+-]\d{2}:?\d{2})?$"
)


# ---------- field helpers ----------

def _mapping(raw: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(raw, Mapping):
        raise MalformedEntityError(f"{what}: expected an object, got {type(raw).__name__}")
    return raw


def _field(raw: Mapping[str, Any], key: str) -> Any:
    try:
        return raw[key]
    except KeyError:
        raise MalformedEntityError(f"missing required field {key!r}") from None


def _number(value: Any, key: str) -> float:
    if value is None or value == "":
        raise MalformedEntityError(f"{key!r} must be a number, got {value!r}")
    if isinstance(value, bool):
        raise MalformedEntityError(f"{key!r} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError) as e:
        raise MalformedEntityError(f"{key!r} must be a number, got {value!r}") from e
    if not math.isfinite(number):
        raise MalformedEntityError(f"{key!r} must be a finite number, got {value!r}")
    return number


def _optional_number(value: Any, key: str) -> Optional[float]:
    if value is None or value == "":
        return None
    return _number(value, key)


def _int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise MalformedEntityError(f"{key!r} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise MalformedEntityError(f"{key!r} must be an integer, got {value!r}") from e


def _optional_int(value: Any, key: str) -> Optional[int]:
    if value is None or value == "":
        return None
    return _int(value, key)


def parse_timestamp(value: Any, key: str = "timestamp") -> datetime:
    """RFC-3339 string -> UTC datetime. Fractions beyond microseconds are truncated."""
    if not isinstance(value, str) or not value.strip():
        raise MalformedEntityError(f"{key!r} must be an RFC-3339 timestamp, got {value!r}")
    m = _RFC3339.match(value.strip())
    if m is None:
        raise MalformedEntityError(f"{key!r} is not an RFC-3339 timestamp: {value!r}")
    day, clock, fraction, offset = m.groups()
    micros = (fraction or "")[:6].ljust(6, "0")
    if offset is None or offset in ("Z", "z"):
        offset = "+00:00"
    elif ":" not in offset:
        offset = f"{offset[:3]}:{offset[3:]}"
    try:
        parsed = datetime.fromisoformat(f"{day}T{clock}.{micros}{offset}")
    except ValueError as e:
        raise MalformedEntityError(f"{key!r} is not a valid instant: {value!r}") from e
    return parsed.astimezone(timezone.utc)


def _optional_timestamp(value: Any, key: str) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return parse_timestamp(value, key)


def _date(value: Any, key: str) -> date:
    if isinstance(value, str) and len(value) == 10:
        try:
            return date.fromisoformat(value)
        except ValueError as e:
            raise MalformedEntityError(f"{key!r} is not a date: {value!r}") from e
    return parse_timestamp(value, key).date()


def _conditions(value: Any) -> Optional[tuple]:
    return tuple(value) if value is not None else None


def _optional(parser: Callable[[Any], T], value: Any) -> Optional[T]:
    return parser(value) if value is not None else None


def _many(parser: Callable[[Any], T], raws: Optional[Iterable[Any]]) -> List[T]:
    return [parser(r) for r in (raws or [])]


# ---------- account ----------

def account(raw: RawAccount) -> Account:
    raw = _mapping(raw, "account")
    n = lambda key: _number(_field(raw, key), key)  # noqa: E731
    return Account(
        _raw=raw,
        id=_field(raw, "id"),
        account_number=_field(raw, "account_number"),
        status=_field(raw, "status"),
        currency=_field(raw, "currency"),
        buying_power=n("buying_power"),
        regt_buying_power=n("regt_buying_power"),
        daytrading_buying_power=n("daytrading_buying_power"),
        cash=n("cash"),
        portfolio_value=n("portfolio_value"),
        equity=n("equity"),
        last_equity=n("last_equity"),
        long_market_value=n("long_market_value"),
        short_market_value=n("short_market_value"),
        initial_margin=n("initial_margin"),
        maintenance_margin=n("maintenance_margin"),
        last_maintenance_margin=n("last_maintenance_margin"),
        multiplier=n("multiplier"),
        sma=n("sma"),
        daytrade_count=_int(_field(raw, "daytrade_count"), "daytrade_count"),
        pattern_day_trader=bool(_field(raw, "pattern_day_trader")),
        shorting_enabled=bool(_field(raw, "shorting_enabled")),
        trading_blocked=bool(_field(raw, "trading_blocked")),
        transfers_blocked=bool(_field(raw, "transfers_blocked")),
        account_blocked=bool(_field(raw, "account_blocked")),
        trade_suspended_by_user=bool(_field(raw, "trade_suspended_by_user")),
        created_at=parse_timestamp(_field(raw, "created_at"), "created_at"),
    )


def account_configurations(raw: RawAccountConfigurations) -> AccountConfigurations:
    raw = _mapping(raw, "account configurations")
    return AccountConfigurations(
        _raw=raw,
        dtbp_check=_field(raw, "dtbp_check"),
        no_shorting=bool(_field(raw, "no_shorting")),
        suspend_trade=bool(_field(raw, "suspend_trade")),
        trade_confirm_email=_field(raw, "trade_confirm_email"),
    )


# ---------- calendar / clock / assets ----------

def clock(raw: RawClock) -> Clock:
    raw = _mapping(raw, "clock")
    return Clock(
        _raw=raw,
        timestamp=parse_timestamp(_field(raw, "timestamp"), "timestamp"),
        is_open=bool(_field(raw, "is_open")),
        next_open=parse_timestamp(_field(raw, "next_open"), "next_open"),
        next_close=parse_timestamp(_field(raw, "next_close"), "next_close"),
    )


def calendar(raw: RawCalendar) -> Calendar:
    raw = _mapping(raw, "calendar")
    return Calendar(
        _raw=raw,
        date=_date(_field(raw, "date"), "date"),
        open=_field(raw, "open"),
        close=_field(raw, "close"),
    )


def calendars(raws: Iterable[RawCalendar]) -> List[Calendar]:
    return _many(calendar, raws)


def asset(raw: RawAsset) -> Asset:
    raw = _mapping(raw, "asset")
    return Asset(
        _raw=raw,
        id=_field(raw, "id"),
        asset_class=_field(raw, "class"),
        exchange=_field(raw, "exchange"),
        symbol=_field(raw, "symbol"),
        name=raw.get("name"),
        status=_field(raw, "status"),
        tradable=bool(_field(raw, "tradable")),
        marginable=bool(_field(raw, "marginable")),
        shortable=bool(_field(raw, "shortable")),
        easy_to_borrow=bool(_field(raw, "easy_to_borrow")),
        fractionable=bool(_field(raw, "fractionable")),
    )


def assets(raws: Iterable[RawAsset]) -> List[Asset]:
    return _many(asset, raws)


def watchlist(raw: RawWatchlist) -> Watchlist:
    raw = _mapping(raw, "watchlist")
    items = raw.get("assets")
    return Watchlist(
        _raw=raw,
        id=_field(raw, "id"),
        account_id=_field(raw, "account_id"),
        name=_field(raw, "name"),
        created_at=parse_timestamp(_field(raw, "created_at"), "created_at"),
        updated_at=parse_timestamp(_field(raw, "updated_at"), "updated_at"),
        assets=tuple(asset(a) for a in items) if items is not None else None,
    )


def watchlists(raws: Iterable[RawWatchlist]) -> List[Watchlist]:
    return _many(watchlist, raws)


# ---------- portfolio history ----------

def _unix_seconds(value: Any, key: str) -> datetime:
    seconds = _int(value, key)
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise MalformedEntityError(f"{key!r} is out of range: {value!r}") from e


def portfolio_history(raw: RawPortfolioHistory) -> PortfolioHistory:
    """Series may contain nulls (windows before the account had equity); lengths must agree."""
    raw = _mapping(raw, "portfolio history")

    def series(key: str) -> list:
        values = _field(raw, key)
        if values is None:
            return []
        if not isinstance(values, list):
            raise MalformedEntityError(f"{key!r} must be a list, got {type(values).__name__}")
        return values

    stamps = series("timestamp")
    columns = {key: series(key) for key in ("equity", "profit_loss", "profit_loss_pct")}
    for key, values in columns.items():
        if len(values) != len(stamps):
            raise MalformedEntityError(f"{key!r} has {len(values)} entries for {len(stamps)} timestamps")
    numbers = {key: tuple(_optional_number(v, key) for v in values) for key, values in columns.items()}
    return PortfolioHistory(
        _raw=raw,
        timestamp=tuple(_unix_seconds(ts, "timestamp") for ts in stamps),
        equity=numbers["equity"],
        profit_loss=numbers["profit_loss"],
        profit_loss_pct=numbers["profit_loss_pct"],
        base_value=_number(_field(raw, "base_value"), "base_value"),
        timeframe=_field(raw, "timeframe"),
    )


# ---------- orders ----------

def order(raw: RawOrder) -> Order:
    """Convert an order and, recursively, its legs (bracket/oco/oto children)."""
    raw = _mapping(raw, "order")
    ts = lambda key: _optional_timestamp(raw.get(key), key)  # noqa: E731
    num = lambda key: _optional_number(raw.get(key), key)  # noqa: E731
    legs = raw.get("legs")
    return Order(
        _raw=raw,
        id=_field(raw, "id"),
        client_order_id=_field(raw, "client_order_id"),
        created_at=parse_timestamp(_field(raw, "created_at"), "created_at"),
        updated_at=ts("updated_at"),
        submitted_at=ts("submitted_at"),
        filled_at=ts("filled_at"),
        expired_at=ts("expired_at"),
        canceled_at=ts("canceled_at"),
        failed_at=ts("failed_at"),
        replaced_at=ts("replaced_at"),
        replaced_by=raw.get("replaced_by"),
        replaces=raw.get("replaces"),
        asset_id=_field(raw, "asset_id"),
        symbol=_field(raw, "symbol"),
        asset_class=_field(raw, "asset_class"),
        notional=num("notional"),
        qty=num("qty"),
        filled_qty=_number(_field(raw, "filled_qty"), "filled_qty"),
        type=_field(raw, "type"),
        side=_field(raw, "side"),
        time_in_force=_field(raw, "time_in_force"),
        limit_price=num("limit_price"),
        stop_price=num("stop_price"),
        filled_avg_price=num("filled_avg_price"),
        status=_field(raw, "status"),
        extended_hours=bool(raw.get("extended_hours", False)),
        legs=tuple(order(leg) for leg in legs) if legs is not None else None,
        trail_price=num("trail_price"),
        trail_percent=num("trail_percent"),
        hwm=num("hwm"),
        order_class=raw.get("order_class") or "simple",
    )


def orders(raws: Iterable[RawOrder]) -> List[Order]:
    return _many(order, raws)


def _bulk_entry(raw: Mapping[str, Any]) -> tuple:
    """(status, order, error) of one entry of a bulk cancel/close response."""
    status = _int(_field(raw, "status"), "status")
    if 200 <= status < 300:
        return status, order(_field(raw, "body")), None
    return status, None, raw.get("body")


def order_cancelation(raw: RawOrderCancelation) -> OrderCancelation:
    raw = _mapping(raw, "order cancelation")
    status, placed, error = _bulk_entry(raw)
    return OrderCancelation(_raw=raw, id=_field(raw, "id"), status=status, order=placed, error=error)


def order_cancelations(raws: Iterable[RawOrderCancelation]) -> List[OrderCancelation]:
    return _many(order_cancelation, raws)


def position_closing(raw: RawPositionClosing) -> PositionClosing:
    raw = _mapping(raw, "position closing")
    status, placed, error = _bulk_entry(raw)
    return PositionClosing(_raw=raw, symbol=_field(raw, "symbol"), status=status, order=placed, error=error)


def position_closings(raws: Iterable[RawPositionClosing]) -> List[PositionClosing]:
    return _many(position_closing, raws)


# ---------- positions ----------

def position(raw: RawPosition) -> Position:
    raw = _mapping(raw, "position")
    num = lambda key: _optional_number(raw.get(key), key)  # noqa: E731
    return Position(
        _raw=raw,
        asset_id=_field(raw, "asset_id"),
        symbol=_field(raw, "symbol"),
        exchange=_field(raw, "exchange"),
        asset_class=_field(raw, "asset_class"),
        avg_entry_price=_number(_field(raw, "avg_entry_price"), "avg_entry_price"),
        qty=_number(_field(raw, "qty"), "qty"),
        qty_available=num("qty_available"),
        side=_field(raw, "side"),
        market_value=num("market_value"),
        cost_basis=_number(_field(raw, "cost_basis"), "cost_basis"),
        unrealized_pl=num("unrealized_pl"),
        unrealized_plpc=num("unrealized_plpc"),
        unrealized_intraday_pl=num("unrealized_intraday_pl"),
        unrealized_intraday_plpc=num("unrealized_intraday_plpc"),
        current_price=num("current_price"),
        lastday_price=num("lastday_price"),
        change_today=num("change_today"),
    )


def positions(raws: Iterable[RawPosition]) -> List[Position]:
    return _many(position, raws)


# ---------- activities ----------

def trade_activity(raw: RawTradeActivity) -> TradeActivity:
    raw = _mapping(raw, "trade activity")
    if raw.get("activity_type") != TRADE_ACTIVITY_TYPE:
        raise MalformedEntityError(f"not a trade activity: activity_type={raw.get('activity_type')!r}")
    kind = _field(raw, "type")
    if kind not in TRADE_ACTIVITY_KINDS:
        raise MalformedEntityError(f"unknown trade activity type {kind!r}")
    n = lambda key: _number(_field(raw, key), key)  # noqa: E731
    return TradeActivity(
        _raw=raw,
        activity_type=TRADE_ACTIVITY_TYPE,
        id=_field(raw, "id"),
        cum_qty=n("cum_qty"),
        leaves_qty=n("leaves_qty"),
        price=n("price"),
        qty=n("qty"),
        side=_field(raw, "side"),
        symbol=_field(raw, "symbol"),
        transaction_time=parse_timestamp(_field(raw, "transaction_time"), "transaction_time"),
        order_id=_field(raw, "order_id"),
        type=kind,
    )


def non_trade_activity(raw: RawNonTradeActivity) -> NonTradeActivity:
    raw = _mapping(raw, "non-trade activity")
    kind = raw.get("activity_type")
    if kind not in NON_TRADE_ACTIVITY_TYPES:
        raise MalformedEntityError(f"not a non-trade activity: activity_type={kind!r}")
    return NonTradeActivity(
        _raw=raw,
        activity_type=kind,
        id=_field(raw, "id"),
        date=_date(_field(raw, "date"), "date"),
        net_amount=_number(_field(raw, "net_amount"), "net_amount"),
        symbol=raw.get("symbol") or None,
        qty=_optional_number(raw.get("qty"), "qty"),
        per_share_amount=_optional_number(raw.get("per_share_amount"), "per_share_amount"),
        description=raw.get("description"),
        status=raw.get("status"),
    )


def activity(raw: RawActivity) -> Activity:
    """Route on `activity_type`: exactly "FILL" is a trade, known codes are non-trade, the rest is an error."""
    raw = _mapping(raw, "activity")
    kind = raw.get("activity_type")
    if kind == TRADE_ACTIVITY_TYPE:
        return trade_activity(raw)
    if kind in NON_TRADE_ACTIVITY_TYPES:
        return non_trade_activity(raw)
    raise MalformedEntityError(f"unknown activity_type {kind!r}")


def activities(raws: Iterable[RawActivity]) -> List[Activity]:
    return _many(activity, raws)


# ---------- market data ----------

def trade(raw: RawTrade) -> Trade:
    raw = _mapping(raw, "trade")
    return Trade(
        _raw=raw,
        symbol=raw.get("S"),
        timestamp=parse_timestamp(_field(raw, "t"), "t"),
        exchange=raw.get("x"),
        price=_number(_field(raw, "p"), "p"),
        size=_number(_field(raw, "s"), "s"),
        conditions=_conditions(raw.get("c")),
        id=_optional_int(raw.get("i"), "i"),
        tape=raw.get("z"),
    )


def quote(raw: RawQuote) -> Quote:
    raw = _mapping(raw, "quote")
    n = lambda key: _number(_field(raw, key), key)  # noqa: E731
    return Quote(
        _raw=raw,
        symbol=raw.get("S"),
        timestamp=parse_timestamp(_field(raw, "t"), "t"),
        ask_exchange=raw.get("ax"),
        ask_price=n("ap"),
        ask_size=n("as"),
        bid_exchange=raw.get("bx"),
        bid_price=n("bp"),
        bid_size=n("bs"),
        conditions=_conditions(raw.get("c")),
        tape=raw.get("z"),
    )


def bar(raw: RawBar) -> Bar:
    raw = _mapping(raw, "bar")
    n = lambda key: _number(_field(raw, key), key)  # noqa: E731
    return Bar(
        _raw=raw,
        symbol=raw.get("S"),
        timestamp=parse_timestamp(_field(raw, "t"), "t"),
        open=n("o"),
        high=n("h"),
        low=n("l"),
        close=n("c"),
        volume=n("v"),
        trade_count=_optional_int(raw.get("n"), "n"),
        vwap=_optional_number(raw.get("vw"), "vw"),
    )


def _page(raw: Mapping[str, Any], key: str, parser: Callable[[Any], T]) -> Page[T]:
    raw = _mapping(raw, f"page of {key}")
    return Page(
        _raw=raw,
        items=tuple(parser(item) for item in (raw.get(key) or [])),
        symbol=raw.get("symbol"),
        # "" and None both mean the result set is exhausted
        next_page_token=raw.get("next_page_token") or None,
    )


def page_of_trades(raw: RawPageOfTrades) -> Page[Trade]:
    return _page(raw, "trades", trade)


def page_of_quotes(raw: RawPageOfQuotes) -> Page[Quote]:
    return _page(raw, "quotes", quote)


def page_of_bars(raw: RawPageOfBars) -> Page[Bar]:
    return _page(raw, "bars", bar)


def latest_trade(raw: RawLatestTrade) -> LatestTrade:
    raw = _mapping(raw, "latest trade")
    return LatestTrade(_raw=raw, symbol=_field(raw, "symbol"), trade=trade(_field(raw, "trade")))


def snapshot(raw: RawSnapshot, symbol: Optional[str] = None) -> Snapshot:
    """Each sub-object is normalized on its own; a missing one (e.g. no minute bar yet) is None."""
    raw = _mapping(raw, "snapshot")
    return Snapshot(
        _raw=raw,
        symbol=raw.get("symbol", symbol),
        latest_trade=_optional(trade, raw.get("latestTrade")),
        latest_quote=_optional(quote, raw.get("latestQuote")),
        minute_bar=_optional(bar, raw.get("minuteBar")),
        daily_bar=_optional(bar, raw.get("dailyBar")),
        prev_daily_bar=_optional(bar, raw.get("prevDailyBar")),
    )


def snapshots(raw: Dict[str, Optional[RawSnapshot]]) -> Dict[str, Snapshot]:
    """Multi-symbol snapshot response: {symbol: snapshot}."""
    raw = _mapping(raw, "snapshots")
    return {sym: snapshot(snap, sym) for sym, snap in raw.items() if snap is not None}


# ---------- streaming / news ----------

def trade_update(raw: RawTradeUpdate) -> TradeUpdate:
    raw = _mapping(raw, "trade update")
    return TradeUpdate(
        _raw=raw,
        event=_field(raw, "event"),
        execution_id=raw.get("execution_id"),
        order=order(_field(raw, "order")),
        event_id=_optional_int(raw.get("event_id"), "event_id"),
        at=_optional_timestamp(raw.get("at"), "at"),
        timestamp=_optional_timestamp(raw.get("timestamp"), "timestamp"),
        position_qty=_optional_number(raw.get("position_qty"), "position_qty"),
        price=_optional_number(raw.get("price"), "price"),
        qty=_optional_number(raw.get("qty"), "qty"),
    )


def news(raw: RawNews) -> News:
    raw = _mapping(raw, "news")
    return News(
        _raw=raw,
        id=_int(_field(raw, "id"), "id"),
        headline=_field(raw, "headline"),
        author=raw.get("author"),
        created_at=parse_timestamp(_field(raw, "created_at"), "created_at"),
        updated_at=_optional_timestamp(raw.get("updated_at"), "updated_at"),
        summary=raw.get("summary"),
        url=raw.get("url"),
        images=tuple(raw.get("images") or ()),
        symbols=tuple(raw.get("symbols") or ()),
        source=raw.get("source"),
    )


def news_page(raw: RawNewsPage) -> Page[News]:
    return _page(raw, "news", news)
