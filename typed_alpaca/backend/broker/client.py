# typed_alpaca/backend/broker/client.py
from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Literal, Mapping, Optional, TypeVar

from loguru import logger

from typed_alpaca.backend import parse
from typed_alpaca.backend.broker.transport import RequestsTransport, TokenBucketLimiter
from typed_alpaca.backend.errors import BrokerHttpError, BrokerOrderRejected, BrokerValidationError
from typed_alpaca.config import Credentials, Endpoints, settings
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
    Order,
    OrderCancelation,
    Page,
    PortfolioHistory,
    Position,
    PositionClosing,
    Quote,
    Snapshot,
    Trade,
    Watchlist,
)
from typed_alpaca.domain.interfaces import HttpTransport, RateLimiter

P = TypeVar("P", bound=Page)

Side = Literal["buy", "sell"]
ORDER_TYPES = ("market", "limit", "stop", "stop_limit", "trailing_stop")
TIME_IN_FORCE = ("day", "gtc", "opg", "cls", "ioc", "fok")
ORDER_CLASSES = ("simple", "bracket", "oco", "oto")


def _wire(value: Any) -> Any:
    """Query-string encoding Alpaca expects."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (list, tuple, set, frozenset)):
        return ",".join(str(v) for v in value)
    return value


class AlpacaClient:
    """
    REST access to the trading and market data APIs.

    Every public method is: rate-limit gate -> one HTTP call -> one parse.
    Errors from the transport (BrokerHttpError and subclasses, BrokerNetworkError)
    reach the caller unchanged; nothing is retried here.
    """

    def __init__(
        self,
        credentials: Optional[Credentials] = None,
        transport: Optional[HttpTransport] = None,
        rate_limiter: Optional[RateLimiter] = None,
        *,
        endpoints: Optional[Endpoints] = None,
        data_feed: Optional[str] = None,
        client_prefix: Optional[str] = None,
    ) -> None:
        self.credentials = credentials or settings.credentials()
        self.endpoints = endpoints or Endpoints(paper=self.credentials.paper)
        self.transport = transport or RequestsTransport(timeout=settings.APCA_REQUEST_TIMEOUT)
        self.rate_limiter = rate_limiter or TokenBucketLimiter(settings.APCA_RATE_LIMIT_PER_MINUTE)
        self.data_feed = data_feed or settings.APCA_DATA_FEED
        self.client_prefix = client_prefix or settings.ORDER_CLIENT_PREFIX

        logger.info(
            "AlpacaClient initialized (auth={}, id={}, paper={}, feed={})",
            self.credentials.kind,
            self.credentials.masked(),
            self.credentials.paper,
            self.data_feed,
        )

    # ---------- PUBLIC API: ACCOUNT ----------

    def get_account(self) -> Account:
        return parse.account(self._get(self.endpoints.account, "/account"))

    def get_account_configurations(self) -> AccountConfigurations:
        return parse.account_configurations(self._get(self.endpoints.account, "/account/configurations"))

    def update_account_configurations(self, **changes: Any) -> AccountConfigurations:
        """PATCH only the given keys (dtbp_check, no_shorting, suspend_trade, trade_confirm_email)."""
        raw = self._request("PATCH", self.endpoints.account, "/account/configurations", json=changes)
        return parse.account_configurations(raw)

    def get_activities(
        self,
        activity_types: Optional[Iterable[str]] = None,
        *,
        date: Optional[date] = None,
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
        direction: Optional[Literal["asc", "desc"]] = None,
        page_size: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> List[Activity]:
        """Account activities; `page_token` is the id of the last activity of the previous page."""
        raw = self._get(
            self.endpoints.account,
            "/account/activities",
            activity_types=list(activity_types) if activity_types else None,
            date=date,
            after=after,
            until=until,
            direction=direction,
            page_size=page_size,
            page_token=page_token,
        )
        return parse.activities(raw)

    # ---------- PUBLIC API: MARKET STATUS / ASSETS ----------

    def get_clock(self) -> Clock:
        """Market status and the next open/close."""
        return parse.clock(self._get(self.endpoints.account, "/clock"))

    def get_calendar(self, start: Optional[date] = None, end: Optional[date] = None) -> List[Calendar]:
        return parse.calendars(self._get(self.endpoints.account, "/calendar", start=start, end=end))

    def get_asset(self, symbol_or_id: str) -> Asset:
        return parse.asset(self._get(self.endpoints.account, f"/assets/{symbol_or_id}"))

    def get_assets(self, status: Optional[str] = None, asset_class: Optional[str] = None) -> List[Asset]:
        return parse.assets(
            self._get(self.endpoints.account, "/assets", status=status, asset_class=asset_class)
        )

    # ---------- PUBLIC API: ORDERS ----------

    def get_order(self, order_id: str, nested: Optional[bool] = None) -> Order:
        return parse.order(self._get(self.endpoints.account, f"/orders/{order_id}", nested=nested))

    def get_order_by_client_id(self, client_order_id: str) -> Order:
        raw = self._get(
            self.endpoints.account, "/orders:by_client_order_id", client_order_id=client_order_id
        )
        return parse.order(raw)

    def get_orders(
        self,
        status: Optional[Literal["open", "closed", "all"]] = None,
        *,
        limit: Optional[int] = None,
        after: Optional[datetime] = None,
        until: Optional[datetime] = None,
        direction: Optional[Literal["asc", "desc"]] = None,
        nested: Optional[bool] = None,
        symbols: Optional[Iterable[str]] = None,
    ) -> List[Order]:
        raw = self._get(
            self.endpoints.account,
            "/orders",
            status=status,
            limit=limit,
            after=after,
            until=until,
            direction=direction,
            nested=nested,
            symbols=list(symbols) if symbols else None,
        )
        return parse.orders(raw)

    def place_order(
        self,
        symbol: str,
        side: Side,
        *,
        type: str = "market",
        time_in_force: str = "day",
        qty: Optional[float] = None,
        notional: Optional[float] = None,
        limit_price: Optional[float] = None,
        stop_price: Optional[float] = None,
        trail_price: Optional[float] = None,
        trail_percent: Optional[float] = None,
        extended_hours: bool = False,
        client_order_id: Optional[str] = None,
        order_class: Optional[str] = None,
        take_profit: Optional[Mapping[str, Any]] = None,
        stop_loss: Optional[Mapping[str, Any]] = None,
    ) -> Order:
        """
        Submits an order (with an idempotency client_order_id).
        Validates the parameters before anything is sent.
        """
        self._validate_order(
            symbol, side, type, time_in_force, qty, notional, limit_price, stop_price,
            trail_price, trail_percent, order_class,
        )
        coid = client_order_id or self._make_client_order_id(symbol, side)
        body: Dict[str, Any] = {
            "symbol": symbol,
            "side": side,
            "type": type,
            "time_in_force": time_in_force,
            "client_order_id": coid,
        }
        optional = {
            "qty": qty,
            "notional": notional,
            "limit_price": limit_price,
            "stop_price": stop_price,
            "trail_price": trail_price,
            "trail_percent": trail_percent,
            "order_class": order_class,
            "take_profit": dict(take_profit) if take_profit else None,
            "stop_loss": dict(stop_loss) if stop_loss else None,
        }
        # Alpaca wants decimal strings for amounts
        for key, value in optional.items():
            if value is None:
                continue
            body[key] = str(value) if isinstance(value, (int, float)) else value
        if extended_hours:
            body["extended_hours"] = True

        logger.info(
            "Placing {} {} {} (qty={}, notional={}, tif={}, coid={})",
            type, side.upper(), symbol, qty, notional, time_in_force, coid,
        )
        try:
            raw = self._request("POST", self.endpoints.account, "/orders", json=body)
        except BrokerHttpError as e:
            raise self._order_error(e) from e
        return parse.order(raw)

    def replace_order(
        self,
        order_id: str,
        *,
        qty: Optional[float] = None,
        time_in_force: Optional[str] = None,
        limit_price: Optional[float] = None,
        stop_price: Optional[float] = None,
        trail: Optional[float] = None,
        client_order_id: Optional[str] = None,
    ) -> Order:
        if time_in_force is not None and time_in_force not in TIME_IN_FORCE:
            raise BrokerValidationError(f"time_in_force must be one of {TIME_IN_FORCE}")
        changes = {
            "qty": qty,
            "time_in_force": time_in_force,
            "limit_price": limit_price,
            "stop_price": stop_price,
            "trail": trail,
            "client_order_id": client_order_id,
        }
        body = {
            k: (str(v) if isinstance(v, (int, float)) else v) for k, v in changes.items() if v is not None
        }
        if not body:
            raise BrokerValidationError("replace_order needs at least one field to change")
        try:
            raw = self._request("PATCH", self.endpoints.account, f"/orders/{order_id}", json=body)
        except BrokerHttpError as e:
            raise self._order_error(e) from e
        return parse.order(raw)

    def cancel_order(self, order_id: str) -> None:
        self._request("DELETE", self.endpoints.account, f"/orders/{order_id}")

    def cancel_orders(self) -> List[OrderCancelation]:
        """Cancels every open order; one entry (with its own HTTP status) per order."""
        return parse.order_cancelations(self._request("DELETE", self.endpoints.account, "/orders") or [])

    # ---------- PUBLIC API: POSITIONS ----------

    def get_position(self, symbol_or_asset_id: str) -> Position:
        return parse.position(self._get(self.endpoints.account, f"/positions/{symbol_or_asset_id}"))

    def get_positions(self) -> List[Position]:
        return parse.positions(self._get(self.endpoints.account, "/positions"))

    def close_position(
        self, symbol_or_asset_id: str, *, qty: Optional[float] = None, percentage: Optional[float] = None
    ) -> Order:
        if qty is not None and percentage is not None:
            raise BrokerValidationError("qty and percentage are mutually exclusive")
        raw = self._request(
            "DELETE",
            self.endpoints.account,
            f"/positions/{symbol_or_asset_id}",
            params={"qty": qty, "percentage": percentage},
        )
        return parse.order(raw)

    def close_positions(self, cancel_orders: Optional[bool] = None) -> List[PositionClosing]:
        """Liquidates everything; one entry per position with its own HTTP status (check `.ok`)."""
        raw = self._request(
            "DELETE", self.endpoints.account, "/positions", params={"cancel_orders": cancel_orders}
        )
        closings = parse.position_closings(raw or [])
        failed = [c.symbol for c in closings if not c.ok]
        if failed:
            logger.warning("Could not close positions {}", failed)
        return closings

    # ---------- PUBLIC API: WATCHLISTS ----------

    def get_watchlists(self) -> List[Watchlist]:
        """All watchlists of the account; the list endpoint leaves out `assets`."""
        return parse.watchlists(self._get(self.endpoints.account, "/watchlists"))

    def get_watchlist(self, watchlist_id: str) -> Watchlist:
        return parse.watchlist(self._get(self.endpoints.account, f"/watchlists/{watchlist_id}"))

    def create_watchlist(self, name: str, symbols: Optional[Iterable[str]] = None) -> Watchlist:
        body: Dict[str, Any] = {"name": self._watchlist_name(name)}
        if symbols is not None:
            body["symbols"] = list(symbols)
        return parse.watchlist(self._request("POST", self.endpoints.account, "/watchlists", json=body))

    def update_watchlist(
        self, watchlist_id: str, *, name: Optional[str] = None, symbols: Optional[Iterable[str]] = None
    ) -> Watchlist:
        """Rename and/or replace the whole symbol list."""
        body: Dict[str, Any] = {}
        if name is not None:
            body["name"] = self._watchlist_name(name)
        if symbols is not None:
            body["symbols"] = list(symbols)
        if not body:
            raise BrokerValidationError("update_watchlist needs a name or symbols")
        raw = self._request("PUT", self.endpoints.account, f"/watchlists/{watchlist_id}", json=body)
        return parse.watchlist(raw)

    def add_to_watchlist(self, watchlist_id: str, symbol: str) -> Watchlist:
        raw = self._request(
            "POST", self.endpoints.account, f"/watchlists/{watchlist_id}", json={"symbol": symbol}
        )
        return parse.watchlist(raw)

    def remove_from_watchlist(self, watchlist_id: str, symbol: str) -> Watchlist:
        return parse.watchlist(
            self._request("DELETE", self.endpoints.account, f"/watchlists/{watchlist_id}/{symbol}")
        )

    def delete_watchlist(self, watchlist_id: str) -> None:
        self._request("DELETE", self.endpoints.account, f"/watchlists/{watchlist_id}")

    # ---------- PUBLIC API: PORTFOLIO HISTORY ----------

    def get_portfolio_history(
        self,
        *,
        period: Optional[str] = None,
        timeframe: Optional[Literal["1Min", "5Min", "15Min", "1H", "1D"]] = None,
        date_end: Optional[date] = None,
        extended_hours: Optional[bool] = None,
    ) -> PortfolioHistory:
        """Equity / P&L series, e.g. period="1M", timeframe="1D"."""
        raw = self._get(
            self.endpoints.account,
            "/account/portfolio/history",
            period=period,
            timeframe=timeframe,
            date_end=date_end,
            extended_hours=extended_hours,
        )
        return parse.portfolio_history(raw)

    # ---------- PUBLIC API: MARKET DATA ----------

    def get_trades(
        self,
        symbol: str,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> Page[Trade]:
        raw = self._get(
            self.endpoints.market_data,
            f"/stocks/{symbol}/trades",
            start=start,
            end=end,
            limit=limit,
            page_token=page_token,
            feed=self.data_feed,
        )
        return parse.page_of_trades(raw)

    def get_quotes(
        self,
        symbol: str,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> Page[Quote]:
        raw = self._get(
            self.endpoints.market_data,
            f"/stocks/{symbol}/quotes",
            start=start,
            end=end,
            limit=limit,
            page_token=page_token,
            feed=self.data_feed,
        )
        return parse.page_of_quotes(raw)

    def get_bars(
        self,
        symbol: str,
        timeframe: str = "1Day",
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        page_token: Optional[str] = None,
        adjustment: Optional[Literal["raw", "split", "dividend", "all"]] = None,
    ) -> Page[Bar]:
        raw = self._get(
            self.endpoints.market_data,
            f"/stocks/{symbol}/bars",
            timeframe=timeframe,
            start=start,
            end=end,
            limit=limit,
            page_token=page_token,
            adjustment=adjustment,
            feed=self.data_feed,
        )
        return parse.page_of_bars(raw)

    def get_latest_trade(self, symbol: str) -> LatestTrade:
        raw = self._get(self.endpoints.market_data, f"/stocks/{symbol}/trades/latest", feed=self.data_feed)
        return parse.latest_trade(raw)

    def get_snapshot(self, symbol: str) -> Snapshot:
        raw = self._get(self.endpoints.market_data, f"/stocks/{symbol}/snapshot", feed=self.data_feed)
        return parse.snapshot(raw, symbol)

    def get_snapshots(self, symbols: Iterable[str]) -> Dict[str, Snapshot]:
        raw = self._get(
            self.endpoints.market_data, "/stocks/snapshots", symbols=list(symbols), feed=self.data_feed
        )
        return parse.snapshots(raw)

    def get_news(
        self,
        symbols: Optional[Iterable[str]] = None,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        limit: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> Page[News]:
        raw = self._get(
            self.endpoints.beta,
            "/news",
            symbols=list(symbols) if symbols else None,
            start=start,
            end=end,
            limit=limit,
            page_token=page_token,
        )
        return parse.news_page(raw)

    # ---------- PAGING ----------

    @staticmethod
    def iter_pages(fetch: Callable[..., P], *args: Any, **params: Any) -> Iterator[P]:
        """
        Follows next_page_token until the server says there is nothing left, e.g.
        `for page in client.iter_pages(client.get_bars, "AAPL", "1Min", start=...)`.
        """
        token = params.pop("page_token", None)
        while True:
            page = fetch(*args, page_token=token, **params)
            yield page
            token = page.next_page_token
            if token is None:
                return

    def close(self) -> None:
        self.transport.close()

    # ---------- HELPERS ----------

    def _get(self, base: str, path: str, **params: Any) -> Any:
        return self._request("GET", base, path, params=params)

    def _request(
        self,
        method: str,
        base: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
    ) -> Any:
        self.rate_limiter.acquire()
        query = {k: _wire(v) for k, v in (params or {}).items() if v is not None}
        return self.transport.request(
            method,
            f"{base}{path}",
            params=query or None,
            json=json,
            headers=self.credentials.auth_headers(),
        )

    @staticmethod
    def _watchlist_name(name: str) -> str:
        if not name or not name.strip():
            raise BrokerValidationError("watchlist name must not be empty")
        if len(name) > 64:
            raise BrokerValidationError("watchlist name is limited to 64 characters")
        return name

    @staticmethod
    def _order_error(e: BrokerHttpError) -> BrokerHttpError:
        body = e.body
        low = str(body.get("message") if isinstance(body, dict) else body).lower()
        if e.status_code == 422 or "insufficient" in low or "rejected" in low:
            return BrokerOrderRejected(f"Order rejected: {e}", status_code=e.status_code, body=body)
        return e

    def _validate_order(
        self,
        symbol: str,
        side: str,
        type: str,
        tif: str,
        qty: Optional[float],
        notional: Optional[float],
        limit_price: Optional[float],
        stop_price: Optional[float],
        trail_price: Optional[float],
        trail_percent: Optional[float],
        order_class: Optional[str],
    ) -> None:
        if not symbol or not symbol.strip():
            raise BrokerValidationError("symbol must not be empty")
        if side not in ("buy", "sell"):
            raise BrokerValidationError("side must be 'buy' or 'sell'")
        if type not in ORDER_TYPES:
            raise BrokerValidationError(f"type must be one of {ORDER_TYPES}")
        if tif not in TIME_IN_FORCE:
            raise BrokerValidationError(f"time_in_force must be one of {TIME_IN_FORCE}")
        if order_class is not None and order_class not in ORDER_CLASSES:
            raise BrokerValidationError(f"order_class must be one of {ORDER_CLASSES}")
        if (qty is None) == (notional is None):
            raise BrokerValidationError("exactly one of qty / notional is required")
        if qty is not None and qty <= 0:
            raise BrokerValidationError("qty must be > 0")
        if notional is not None and notional <= 0:
            raise BrokerValidationError("notional must be > 0")
        if type in ("limit", "stop_limit") and limit_price is None:
            raise BrokerValidationError(f"{type} order requires limit_price")
        if type in ("stop", "stop_limit") and stop_price is None:
            raise BrokerValidationError(f"{type} order requires stop_price")
        if type == "trailing_stop" and (trail_price is None) == (trail_percent is None):
            raise BrokerValidationError("trailing_stop order requires exactly one of trail_price / trail_percent")

    def _make_client_order_id(self, symbol: str, side: str) -> str:
        # Format: <prefix>-<symbol>-<side>-<random>
        return f"{self.client_prefix}-{symbol}-{side}-{uuid.uuid4().hex[:8]}"
