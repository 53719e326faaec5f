# typed_alpaca/backend/stream/protocol.py
"""
Frame encoding/decoding for the two Alpaca streams.

Both are reduced to the same two message kinds before the session sees them:
- Control: {T: success|error|subscription}, as the market data stream sends them;
- Data: one record for one channel (+ symbol), still in wire form.

Subscriptions are {channel: {symbol, ...}}; "*" means every symbol (and is the
only "symbol" trade_updates has).
"""
from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple, Union

from loguru import logger

from typed_alpaca.backend.errors import BrokerValidationError, StreamProtocolError
from typed_alpaca.config import Credentials

ALL = "*"
TRADES, QUOTES, BARS, TRADE_UPDATES = "trades", "quotes", "bars", "trade_updates"

# Market data error codes
# 400 invalid syntax, 401 not authenticated, 402 auth failed, 403 already authenticated,
# 404 auth timeout, 405 symbol limit exceeded, 406 connection limit exceeded,
# 407 slow client, 409 insufficient subscription, 410 invalid subscribe action, 500 internal
AUTH_ERROR_CODES: FrozenSet[int] = frozenset({401, 402, 403, 404, 406})
SUBSCRIPTION_ERROR_CODES: FrozenSet[int] = frozenset({400, 405, 409, 410})

Subscriptions = Mapping[str, FrozenSet[str]]


@dataclass(frozen=True)
class Control:
    kind: str  # success | error | subscription
    msg: Optional[str] = None
    code: Optional[int] = None
    subscriptions: Optional[Dict[str, Tuple[str, ...]]] = None
    raw: Any = field(default=None, repr=False, compare=False)

    @property
    def is_auth_error(self) -> bool:
        return self.kind == "error" and self.code in AUTH_ERROR_CODES

    @property
    def is_subscription_error(self) -> bool:
        return self.kind == "error" and self.code in SUBSCRIPTION_ERROR_CODES


@dataclass(frozen=True)
class Data:
    channel: str
    symbol: Optional[str]
    payload: Mapping[str, Any] = field(repr=False)


Message = Union[Control, Data]


def _load(frame: Union[str, bytes]) -> Any:
    try:
        if isinstance(frame, (bytes, bytearray)):
            frame = frame.decode("utf-8")
        return json.loads(frame)
    except ValueError as e:  # UnicodeDecodeError included
        raise StreamProtocolError(f"frame is not JSON: {frame[:200]!r}") from e


def _symbol_list(rec: Mapping[str, Any], key: str) -> Tuple[str, ...]:
    value = rec.get(key)
    if value is None:
        return ()
    if not isinstance(value, list) or not all(isinstance(s, str) for s in value):
        raise StreamProtocolError(f"{key!r} must be a list of symbols, got {value!r}")
    return tuple(value)


def _object(value: Any, what: str) -> Mapping[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise StreamProtocolError(f"{what} must be an object, got {value!r}")
    return value


def _dump(message: Mapping[str, Any]) -> str:
    return json.dumps(message, separators=(",", ":"))


class StreamProtocol(ABC):
    channels: Tuple[str, ...] = ()

    @abstractmethod
    def auth_frame(self, credentials: Credentials) -> str: ...

    @abstractmethod
    def subscribe_frame(self, delta: Subscriptions, desired: Subscriptions) -> str: ...

    @abstractmethod
    def unsubscribe_frame(self, delta: Subscriptions, desired: Subscriptions) -> str: ...

    @abstractmethod
    def decode(self, frame: Union[str, bytes]) -> List[Message]: ...

    def is_auth_success(self, control: Control) -> bool:
        return control.kind == "success" and control.msg == "authenticated"

    def check_credentials(self, credentials: Credentials) -> None:
        return None


class MarketDataProtocol(StreamProtocol):
    """wss://stream.data.alpaca.markets/v2/{iex|sip}: JSON arrays of {T: ...} records."""

    channels = (TRADES, QUOTES, BARS)
    DATA_TYPES = {"t": TRADES, "q": QUOTES, "b": BARS}

    def check_credentials(self, credentials: Credentials) -> None:
        if credentials.kind != "key":
            raise BrokerValidationError("the market data stream authenticates with a key/secret pair only")

    def auth_frame(self, credentials: Credentials) -> str:
        self.check_credentials(credentials)
        return _dump({"action": "auth", "key": credentials.key, "secret": credentials.secret})

    def _frame(self, action: str, delta: Subscriptions) -> str:
        message: Dict[str, Any] = {"action": action}
        for channel in self.channels:
            symbols = delta.get(channel)
            if symbols:
                message[channel] = sorted(symbols)
        return _dump(message)

    def subscribe_frame(self, delta: Subscriptions, desired: Subscriptions) -> str:
        return self._frame("subscribe", delta)

    def unsubscribe_frame(self, delta: Subscriptions, desired: Subscriptions) -> str:
        return self._frame("unsubscribe", delta)

    def decode(self, frame: Union[str, bytes]) -> List[Message]:
        loaded = _load(frame)
        records = loaded if isinstance(loaded, list) else [loaded]
        out: List[Message] = []
        for rec in records:
            if not isinstance(rec, dict):
                raise StreamProtocolError(f"unexpected record {rec!r}")
            kind = rec.get("T")
            if kind == "success":
                out.append(Control("success", msg=rec.get("msg"), raw=rec))
            elif kind == "error":
                code = rec.get("code")
                if code is not None and (not isinstance(code, int) or isinstance(code, bool)):
                    raise StreamProtocolError(f"error code must be an integer, got {code!r}")
                out.append(Control("error", msg=rec.get("msg"), code=code, raw=rec))
            elif kind == "subscription":
                subs = {ch: _symbol_list(rec, ch) for ch in self.channels}
                out.append(Control("subscription", subscriptions=subs, raw=rec))
            elif kind in self.DATA_TYPES:
                out.append(Data(self.DATA_TYPES[kind], rec.get("S"), rec))
            else:
                # statuses, LULDs, corrections, daily/updated bars: not routed
                logger.debug("Ignoring market data record of type {!r}", kind)
        return out


class TradeUpdatesProtocol(StreamProtocol):
    """wss://{paper-}api.alpaca.markets/stream: {"stream": ..., "data": {...}} objects."""

    channels = (TRADE_UPDATES,)

    def auth_frame(self, credentials: Credentials) -> str:
        if credentials.kind == "oauth":
            data = {"oauth_token": credentials.access_token}
        else:
            data = {"key_id": credentials.key, "secret_key": credentials.secret}
        return _dump({"action": "authenticate", "data": data})

    def _listen(self, desired: Subscriptions) -> str:
        streams = [ch for ch in self.channels if desired.get(ch)]
        return _dump({"action": "listen", "data": {"streams": streams}})

    # "listen" replaces the whole set, so both directions send the full desired state
    def subscribe_frame(self, delta: Subscriptions, desired: Subscriptions) -> str:
        return self._listen(desired)

    def unsubscribe_frame(self, delta: Subscriptions, desired: Subscriptions) -> str:
        return self._listen(desired)

    def decode(self, frame: Union[str, bytes]) -> List[Message]:
        rec = _load(frame)
        if not isinstance(rec, dict):
            raise StreamProtocolError(f"unexpected frame {rec!r}")
        stream = rec.get("stream")
        data = _object(rec.get("data"), f"{stream!r} data")
        if stream == "authorization":
            if data.get("status") == "authorized":
                return [Control("success", msg="authenticated", raw=rec)]
            return [Control("error", msg=data.get("status") or "unauthorized", code=402, raw=rec)]
        if stream == "listening":
            if data.get("error"):
                return [Control("error", msg=data["error"], code=400, raw=rec)]
            streams = _symbol_list(data, "streams")
            subs = {ch: ((ALL,) if ch in streams else ()) for ch in self.channels}
            return [Control("subscription", subscriptions=subs, raw=rec)]
        if stream == TRADE_UPDATES:
            order = _object(data.get("order"), "trade update order")
            return [Data(TRADE_UPDATES, order.get("symbol"), data)]
        if data.get("error"):
            return [Control("error", msg=data["error"], raw=rec)]
        logger.debug("Ignoring account stream frame {!r}", stream)
        return []
