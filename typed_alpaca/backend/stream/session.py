# typed_alpaca/backend/stream/session.py
"""
StreamSession: one long-lived streaming connection with automatic reconnects.

    DISCONNECTED -> CONNECTING -> AUTHENTICATING -> AUTHENTICATED -> SUBSCRIBING -> SUBSCRIBED
                        ^                                                              |
                        +------ RECONNECTING <--- DISCONNECTED <--- (transport drop) ---+
    any state -> CLOSED (terminal, only via close())

The session keeps the caller's desired subscription set across reconnects and replays it
after every successful authentication. An auth rejection is fatal: the session stops in
DISCONNECTED and only a new connect() starts it again. Everything runs on the event loop of
the caller, so listener dispatch and subscription updates never interleave.
"""
from __future__ import annotations

import asyncio
import contextlib
import random
from collections import defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple, Union

from loguru import logger

from typed_alpaca.backend import parse
from typed_alpaca.backend.errors import (
    BrokerError,
    BrokerValidationError,
    StreamAuthError,
    StreamError,
    StreamProtocolError,
    StreamStateError,
    StreamSubscriptionError,
    StreamTransportError,
)
from typed_alpaca.backend.stream.protocol import (
    ALL,
    BARS,
    QUOTES,
    TRADE_UPDATES,
    TRADES,
    Control,
    Data,
    MarketDataProtocol,
    StreamProtocol,
    TradeUpdatesProtocol,
)
from typed_alpaca.config import Credentials, Endpoints, settings
from typed_alpaca.domain.interfaces import WebSocketTransport


class State(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    SUBSCRIBING = "subscribing"
    SUBSCRIBED = "subscribed"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


_TRANSITIONS: Dict[State, FrozenSet[State]] = {
    State.DISCONNECTED: frozenset({State.CONNECTING, State.RECONNECTING}),
    State.RECONNECTING: frozenset({State.CONNECTING}),
    State.CONNECTING: frozenset({State.AUTHENTICATING, State.DISCONNECTED}),
    State.AUTHENTICATING: frozenset({State.AUTHENTICATED, State.DISCONNECTED}),
    State.AUTHENTICATED: frozenset({State.SUBSCRIBING, State.DISCONNECTED}),
    State.SUBSCRIBING: frozenset({State.SUBSCRIBED, State.AUTHENTICATED, State.DISCONNECTED}),
    State.SUBSCRIBED: frozenset({State.SUBSCRIBING, State.DISCONNECTED}),
    State.CLOSED: frozenset(),
}

_DATA_STATES = frozenset({State.SUBSCRIBING, State.SUBSCRIBED})
_LIVE_STATES = frozenset({State.AUTHENTICATED, State.SUBSCRIBING, State.SUBSCRIBED})

_PARSERS: Dict[str, Callable[[Any], Any]] = {
    TRADES: parse.trade,
    QUOTES: parse.quote,
    BARS: parse.bar,
    TRADE_UPDATES: parse.trade_update,
}

Listener = Callable[[Any], None]
ErrorListener = Callable[[StreamError], None]
StateListener = Callable[[State, State], None]
TransportFactory = Callable[[], WebSocketTransport]


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential reconnect delay: min(maximum, base * factor**attempt), jittered downwards."""

    base: float = 1.0
    factor: float = 2.0
    maximum: float = 30.0
    jitter: float = 0.1

    def __post_init__(self) -> None:
        if self.base < 0 or self.maximum < 0 or self.factor < 1:
            raise BrokerValidationError("backoff needs base >= 0, maximum >= 0 and factor >= 1")
        if not 0.0 <= self.jitter <= 1.0:
            raise BrokerValidationError("backoff jitter must be within [0, 1]")

    def delay(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        # cap the exponent so huge attempt counts cannot overflow
        raw = self.base * self.factor ** min(attempt, 64)
        d = min(self.maximum, raw)
        if self.jitter:
            d *= 1.0 - self.jitter * (rng or random).random()
        return d

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            base=settings.STREAM_BACKOFF_BASE,
            factor=settings.STREAM_BACKOFF_FACTOR,
            maximum=settings.STREAM_BACKOFF_MAX,
            jitter=settings.STREAM_BACKOFF_JITTER,
        )


def _default_transport() -> WebSocketTransport:
    from typed_alpaca.backend.stream.transport import AiohttpTransport

    return AiohttpTransport()


class StreamSession:
    def __init__(
        self,
        url: str,
        protocol: StreamProtocol,
        credentials: Credentials,
        *,
        transport_factory: Optional[TransportFactory] = None,
        backoff: Optional[BackoffPolicy] = None,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        protocol.check_credentials(credentials)
        self.url = url
        self.protocol = protocol
        self.credentials = credentials
        self.backoff = backoff or BackoffPolicy.from_settings()
        self._transport_factory = transport_factory or _default_transport
        self._rng = rng or random.Random()
        self._sleep = sleep

        self._state = State.DISCONNECTED
        self._transport: Optional[WebSocketTransport] = None
        self._task: Optional[asyncio.Task] = None
        self._attempt = 0
        self.last_error: Optional[StreamError] = None

        # desired: what the caller asked for; active: what the server last acknowledged
        self._desired: Dict[str, Set[str]] = {ch: set() for ch in protocol.channels}
        self.active: Dict[str, Tuple[str, ...]] = {}
        self._pending: Deque[Tuple[str, Dict[str, FrozenSet[str]]]] = deque()

        self._listeners: Dict[Tuple[str, str], List[Listener]] = defaultdict(list)
        # listeners attached by subscribe(listener=...); unsubscribe detaches only these
        self._attached: Dict[Tuple[str, str], List[Listener]] = defaultdict(list)
        self._error_listeners: List[ErrorListener] = []
        self._state_listeners: List[StateListener] = []

    # constructors
    @classmethod
    def market_data(cls, credentials: Optional[Credentials] = None, source: Optional[str] = None, **kwargs: Any) -> "StreamSession":
        source = source or settings.APCA_DATA_FEED
        return cls(Endpoints.market_data_stream(source), MarketDataProtocol(), credentials or settings.credentials(), **kwargs)  # type: ignore[arg-type]

    @classmethod
    def trade_updates(cls, credentials: Optional[Credentials] = None, **kwargs: Any) -> "StreamSession":
        credentials = credentials or settings.credentials()
        return cls(Endpoints(paper=credentials.paper).account_stream, TradeUpdatesProtocol(), credentials, **kwargs)

    # inspection
    @property
    def state(self) -> State:
        return self._state

    @property
    def subscriptions(self) -> Dict[str, FrozenSet[str]]:
        return {ch: frozenset(symbols) for ch, symbols in self._desired.items() if symbols}

    # registration
    def on(self, channel: str, listener: Listener, symbol: Optional[str] = None) -> None:
        """Register a listener for one channel, optionally narrowed to one symbol."""
        self._check_channel(channel)
        self._listeners[(channel, symbol or ALL)].append(listener)

    def on_error(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def on_state_change(self, listener: StateListener) -> None:
        self._state_listeners.append(listener)

    async def subscribe(self, channel: str, symbols: Union[str, Iterable[str]] = ALL, listener: Optional[Listener] = None) -> None:
        """
        Add symbols to the desired set. Sent right away when authenticated, otherwise
        on the next (re)connect.
        """
        self._check_open()
        self._check_channel(channel)
        wanted = self._symbols(channel, symbols)
        if listener is not None:
            for sym in wanted:
                self.on(channel, listener, sym)
                self._attached[(channel, sym)].append(listener)
        added = frozenset(wanted - self._desired[channel])
        if not added:
            return
        self._desired[channel] |= added
        logger.info("Subscribe {} {}", channel, sorted(added))
        if self._state in _LIVE_STATES:
            await self._send_subscription("subscribe", {channel: added})

    async def unsubscribe(self, channel: str, symbols: Union[str, Iterable[str]] = ALL) -> None:
        self._check_open()
        self._check_channel(channel)
        removed = frozenset(self._symbols(channel, symbols) & self._desired[channel])
        if not removed:
            return
        self._desired[channel] -= removed
        for sym in removed:
            self._detach(channel, sym)
        logger.info("Unsubscribe {} {}", channel, sorted(removed))
        if self._state in _LIVE_STATES:
            await self._send_subscription("unsubscribe", {channel: removed})

    # lifecycle
    async def connect(self) -> None:
        """Start the connection loop in the background. No-op while it is already running."""
        self._check_open()
        if self._task is not None and not self._task.done():
            return
        self._attempt = 0
        self.last_error = None
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def close(self) -> None:
        """Stop for good: cancels any pending reconnect and closes the socket."""
        if self._state is State.CLOSED:
            return
        self._set_state(State.CLOSED)
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._close_transport()
        logger.info("Stream {} closed", self.url)

    async def wait_closed(self) -> None:
        """Wait until the connection loop stops (close() or a fatal auth error)."""
        task = self._task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def wait_for(self, *states: State, timeout: Optional[float] = None) -> State:
        if self._state in states:
            return self._state
        fut: asyncio.Future = asyncio.get_running_loop().create_future()

        def _watch(old: State, new: State) -> None:
            if new in states and not fut.done():
                fut.set_result(new)

        self._state_listeners.append(_watch)
        try:
            return await asyncio.wait_for(fut, timeout)
        finally:
            self._state_listeners.remove(_watch)

    async def __aenter__(self) -> "StreamSession":
        await self.connect()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    def _detach(self, channel: str, symbol: str) -> None:
        key = (channel, symbol)
        registered = self._listeners.get(key, [])
        for listener in self._attached.pop(key, ()):
            if listener in registered:
                registered.remove(listener)
        if not registered:
            self._listeners.pop(key, None)

    # connection loop
    async def _run(self) -> None:
        while self._state is not State.CLOSED:
            try:
                await self._connect_once()
            except StreamAuthError as e:
                self._report(e)
                await self._drop()
                logger.error("Stream {} authentication rejected, not reconnecting: {}", self.url, e)
                return
            except (StreamTransportError, OSError) as e:
                self._report(e if isinstance(e, StreamTransportError) else StreamTransportError(str(e)))
            except Exception as e:
                # anything else from the receive path is treated like a dropped socket
                logger.exception("Stream {} receive loop failed", self.url)
                self._report(StreamTransportError(f"receive loop failed: {e.__class__.__name__}: {e}"))
            await self._drop()
            if self._state is State.CLOSED:
                return
            delay = self.backoff.delay(self._attempt, self._rng)
            self._attempt += 1
            self._set_state(State.RECONNECTING)
            logger.warning("Stream {} dropped, reconnecting in {:.2f}s (attempt {})", self.url, delay, self._attempt)
            await self._sleep(delay)

    async def _connect_once(self) -> None:
        self._set_state(State.CONNECTING)
        transport = self._transport_factory()
        self._transport = transport
        await transport.connect(self.url)
        self._set_state(State.AUTHENTICATING)
        logger.info("Stream {} connected, authenticating as {}", self.url, self.credentials.masked())
        await transport.send(self.protocol.auth_frame(self.credentials))
        while True:
            frame = await transport.receive()
            if frame is None:
                raise StreamTransportError("connection closed by peer")
            await self._on_frame(frame)

    async def _drop(self) -> None:
        self._pending.clear()
        self.active = {}
        await self._close_transport()
        if self._state is not State.CLOSED and self._state is not State.DISCONNECTED:
            self._set_state(State.DISCONNECTED)

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except (StreamTransportError, OSError) as e:
            logger.debug("Ignoring error while closing transport: {}", e)

    # inbound
    async def _on_frame(self, frame: Union[str, bytes]) -> None:
        try:
            messages = self.protocol.decode(frame)
        except StreamProtocolError as e:
            self._report(e)
            return
        for message in messages:
            if isinstance(message, Control):
                await self._on_control(message)
            else:
                self._dispatch(message)

    async def _on_control(self, control: Control) -> None:
        if control.kind == "success":
            if self._state is State.AUTHENTICATING and self.protocol.is_auth_success(control):
                await self._authenticated()
            return
        if control.kind == "subscription":
            self._acknowledged(control)
            return
        # error
        if self._state is State.AUTHENTICATING or control.is_auth_error:
            raise StreamAuthError(control.msg or "authentication failed", code=control.code)
        if control.is_subscription_error:
            self._rejected(control)
            return
        self._report(StreamError(control.msg or "stream error", code=control.code))

    async def _authenticated(self) -> None:
        self._attempt = 0
        self._set_state(State.AUTHENTICATED)
        logger.info("Stream {} authenticated", self.url)
        desired = {ch: frozenset(s) for ch, s in self._desired.items() if s}
        if desired:
            await self._send_subscription("subscribe", desired)

    def _acknowledged(self, control: Control) -> None:
        if self._pending:
            self._pending.popleft()
        self.active = {ch: syms for ch, syms in (control.subscriptions or {}).items() if syms}
        if self._state is State.SUBSCRIBING and not self._pending:
            self._set_state(State.SUBSCRIBED)

    def _rejected(self, control: Control) -> None:
        action, request = self._pending.popleft() if self._pending else ("", {})
        if action == "subscribe":
            for channel, symbols in request.items():
                self._desired[channel] -= symbols
        err = StreamSubscriptionError(control.msg or "subscription rejected", code=control.code)
        logger.warning("Stream {} rejected {} {}: {}", self.url, action or "request", {k: sorted(v) for k, v in request.items()}, err)
        self._report(err)
        if self._state is State.SUBSCRIBING and not self._pending:
            self._set_state(State.SUBSCRIBED if self.active else State.AUTHENTICATED)

    def _dispatch(self, message: Data) -> None:
        if self._state not in _DATA_STATES:
            self._report(StreamProtocolError(f"{message.channel} data received while {self._state.value}"))
            return
        wanted = self._desired.get(message.channel, set())
        if ALL not in wanted and message.symbol not in wanted:
            return
        try:
            entity = _PARSERS[message.channel](message.payload)
        except BrokerError as e:
            self._report(StreamProtocolError(f"dropping malformed {message.channel} record: {e}"))
            return
        listeners = list(self._listeners.get((message.channel, message.symbol or ALL), ()))
        if message.symbol is not None:
            listeners += self._listeners.get((message.channel, ALL), ())
        for listener in listeners:
            try:
                listener(entity)
            except Exception as e:
                logger.exception("Listener {!r} failed on {} {}", listener, message.channel, message.symbol)
                self._report(StreamError(f"listener failed: {e.__class__.__name__}: {e}"))

    # outbound
    async def _send_subscription(self, action: str, delta: Dict[str, FrozenSet[str]]) -> None:
        desired = {ch: frozenset(s) for ch, s in self._desired.items()}
        if action == "subscribe":
            frame = self.protocol.subscribe_frame(delta, desired)
        else:
            frame = self.protocol.unsubscribe_frame(delta, desired)
        if self._state is not State.SUBSCRIBING:
            self._set_state(State.SUBSCRIBING)
        self._pending.append((action, delta))
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.send(frame)
        except StreamTransportError as e:
            # the receive loop sees the drop too and the desired set is replayed after reconnect
            logger.warning("Could not send {} on {}: {}", action, self.url, e)
            self._report(e)

    # helpers
    def _set_state(self, new: State) -> None:
        old = self._state
        if old is new:
            return
        if new is not State.CLOSED and new not in _TRANSITIONS[old]:
            raise StreamStateError(f"illegal transition {old.value} -> {new.value}")
        self._state = new
        logger.debug("Stream {} {} -> {}", self.url, old.value, new.value)
        for listener in list(self._state_listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("State listener {!r} failed", listener)

    def _report(self, error: StreamError) -> None:
        self.last_error = error
        if not self._error_listeners:
            logger.warning("Stream {}: {}", self.url, error)
        for listener in list(self._error_listeners):
            try:
                listener(error)
            except Exception:
                logger.exception("Error listener {!r} failed", listener)

    def _check_open(self) -> None:
        if self._state is State.CLOSED:
            raise StreamStateError("session is closed")

    def _check_channel(self, channel: str) -> None:
        if channel not in self.protocol.channels:
            raise BrokerValidationError(f"unknown channel {channel!r}; expected one of {self.protocol.channels}")

    @staticmethod
    def _symbols(channel: str, symbols: Union[str, Iterable[str]]) -> Set[str]:
        if channel == TRADE_UPDATES:
            return {ALL}
        if isinstance(symbols, str):
            symbols = [symbols]
        out = {s.strip().upper() for s in symbols if s and s.strip()}
        if not out:
            raise BrokerValidationError(f"no symbols given for {channel}")
        return out
