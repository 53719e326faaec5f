# typed_alpaca/app/__main__.py
from __future__ import annotations

import argparse
import asyncio
import sys

from loguru import logger

from typed_alpaca.backend.broker.client import AlpacaClient
from typed_alpaca.backend.data.market_data import MarketDataService
from typed_alpaca.backend.errors import BrokerError, StreamAuthError
from typed_alpaca.backend.stream.protocol import QUOTES, TRADES
from typed_alpaca.backend.stream.session import StreamSession
from typed_alpaca.config import settings
from typed_alpaca.infra.logging import setup_logging

ACTIONS = ["info", "positions", "orders", "activities", "bars", "stream"]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="typed-alpaca",
        description="Runner for the typed Alpaca client (paper account by default).",
    )
    p.add_argument(
        "action",
        choices=ACTIONS,
        help="info (account+clock), positions, orders (open), activities, bars (history), stream (live trades/quotes).",
    )
    p.add_argument("--symbol", default="AAPL", help="Ticker for 'bars' and 'stream' (default AAPL).")
    p.add_argument("--timeframe", default="1Day", help="Bar timeframe for 'bars' (default 1Day).")
    p.add_argument(
        "--log-level",
        default=settings.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default from LOG_LEVEL, INFO).",
    )
    return p


def _info(client: AlpacaClient) -> None:
    account = client.get_account()
    clock = client.get_clock()
    print("\n=== ACCOUNT ===")
    print(f"Equity       : {account.equity}")
    print(f"Cash         : {account.cash}")
    print(f"Buying Power : {account.buying_power}")
    print(f"Status       : {account.status}")
    print("\n=== CLOCK ===")
    print(f"Is Open      : {clock.is_open}")
    print(f"Next Open    : {clock.next_open}")
    print(f"Next Close   : {clock.next_close}")
    print()


def _positions(client: AlpacaClient) -> None:
    print("\n=== OPEN POSITIONS ===")
    positions = client.get_positions()
    if not positions:
        print("(none)")
    for p in positions:
        print(
            f"{p.symbol:>6}  qty={p.qty:<8}  avg={p.avg_entry_price:<10}  "
            f"mkt_val={p.market_value}  uPL={p.unrealized_pl}"
        )
    print()


def _orders(client: AlpacaClient) -> None:
    print("\n=== OPEN ORDERS ===")
    orders = client.get_orders("open")
    if not orders:
        print("(none)")
    for o in orders:
        print(f"{o.symbol:>6}  {o.side:<4}  {o.type:<13}  qty={o.qty}  status={o.status}  id={o.id}")
    print()


def _activities(client: AlpacaClient) -> None:
    print("\n=== ACTIVITIES ===")
    for a in client.get_activities(page_size=50):
        print(a)
    print()


def _bars(client: AlpacaClient, symbol: str, timeframe: str) -> None:
    df = MarketDataService(client).get_bars(symbol, timeframe)
    print(f"\n=== BARS {symbol.upper()} {timeframe} ===")
    print(df.tail(20).to_string(index=False))
    print()


async def _stream(symbol: str) -> None:
    session = StreamSession.market_data()
    session.on_error(lambda e: logger.warning("stream error: {}", e))
    await session.subscribe(TRADES, symbol, listener=lambda t: print(f"T {t.symbol} {t.price} x {t.size} @ {t.timestamp}"))
    await session.subscribe(QUOTES, symbol, listener=lambda q: print(f"Q {q.symbol} {q.bid_price}/{q.ask_price}"))
    await session.connect()
    try:
        await session.wait_closed()
    finally:
        await session.close()
    if isinstance(session.last_error, StreamAuthError):
        raise session.last_error


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        if args.action == "stream":
            asyncio.run(_stream(args.symbol))
            return 0

        client = AlpacaClient()
        try:
            if args.action == "info":
                _info(client)
            elif args.action == "positions":
                _positions(client)
            elif args.action == "orders":
                _orders(client)
            elif args.action == "activities":
                _activities(client)
            elif args.action == "bars":
                _bars(client, args.symbol, args.timeframe)
        finally:
            client.close()
        return 0

    except BrokerError as e:
        logger.error("Error: {}", e)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130


if __name__ == "__main__":
    sys.exit(main())
