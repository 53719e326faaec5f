import json

import pytest

from typed_alpaca.backend.errors import BrokerValidationError, StreamProtocolError
from typed_alpaca.backend.stream.protocol import (
    ALL,
    Control,
    Data,
    MarketDataProtocol,
    TradeUpdatesProtocol,
)


class TestMarketDataProtocol:
    def setup_method(self):
        self.protocol = MarketDataProtocol()

    def test_auth_frame(self, key_credentials):
        frame = json.loads(self.protocol.auth_frame(key_credentials))
        assert frame == {"action": "auth", "key": "PKTEST1234ABCD", "secret": "s3cr3t"}

    def test_oauth_not_accepted(self, oauth_credentials):
        with pytest.raises(BrokerValidationError):
            self.protocol.check_credentials(oauth_credentials)

    def test_subscribe_frame_only_carries_delta(self):
        delta = {"trades": frozenset({"MSFT", "AAPL"}), "bars": frozenset()}
        frame = json.loads(self.protocol.subscribe_frame(delta, delta))
        assert frame == {"action": "subscribe", "trades": ["AAPL", "MSFT"]}

    def test_unsubscribe_frame(self):
        frame = json.loads(self.protocol.unsubscribe_frame({"quotes": frozenset({"AAPL"})}, {}))
        assert frame == {"action": "unsubscribe", "quotes": ["AAPL"]}

    def test_decode_control_and_data(self, trade_payload):
        frame = json.dumps(
            [
                {"T": "success", "msg": "authenticated"},
                {"T": "subscription", "trades": ["AAPL"], "quotes": [], "bars": ["*"]},
                dict(trade_payload, T="t", S="AAPL"),
                {"T": "error", "code": 405, "msg": "symbol limit exceeded"},
                {"T": "s", "S": "AAPL", "sc": "H"},
            ]
        )
        auth, sub, data, error = self.protocol.decode(frame)
        assert auth == Control("success", msg="authenticated")
        assert sub.subscriptions == {"trades": ("AAPL",), "quotes": (), "bars": ("*",)}
        assert isinstance(data, Data)
        assert (data.channel, data.symbol) == ("trades", "AAPL")
        assert error.is_subscription_error and not error.is_auth_error

    @pytest.mark.parametrize("code", [401, 402, 403, 404, 406])
    def test_auth_error_codes(self, code):
        (error,) = self.protocol.decode(json.dumps([{"T": "error", "code": code, "msg": "x"}]))
        assert error.is_auth_error

    def test_binary_frames(self):
        (msg,) = self.protocol.decode(b'[{"T":"success","msg":"connected"}]')
        assert msg.msg == "connected"

    def test_garbage(self):
        with pytest.raises(StreamProtocolError):
            self.protocol.decode("not json")
        with pytest.raises(StreamProtocolError):
            self.protocol.decode("[1, 2]")

    @pytest.mark.parametrize(
        "frame",
        [
            b"\xff\xfe",
            '[{"T":"subscription","trades":5}]',
            '[{"T":"subscription","quotes":[1,2]}]',
            '[{"T":"error","code":"402","msg":"auth failed"}]',
        ],
    )
    def test_wrong_shapes_are_protocol_errors(self, frame):
        with pytest.raises(StreamProtocolError):
            self.protocol.decode(frame)


class TestTradeUpdatesProtocol:
    def setup_method(self):
        self.protocol = TradeUpdatesProtocol()

    def test_key_auth(self, key_credentials):
        frame = json.loads(self.protocol.auth_frame(key_credentials))
        assert frame == {"action": "authenticate", "data": {"key_id": "PKTEST1234ABCD", "secret_key": "s3cr3t"}}

    def test_oauth_auth(self, oauth_credentials):
        frame = json.loads(self.protocol.auth_frame(oauth_credentials))
        assert frame == {"action": "authenticate", "data": {"oauth_token": "oauth-token-123456"}}

    def test_listen_sends_full_set(self):
        desired = {"trade_updates": frozenset({ALL})}
        assert json.loads(self.protocol.subscribe_frame(desired, desired)) == {
            "action": "listen",
            "data": {"streams": ["trade_updates"]},
        }
        assert json.loads(self.protocol.unsubscribe_frame(desired, {"trade_updates": frozenset()})) == {
            "action": "listen",
            "data": {"streams": []},
        }

    def test_authorization(self):
        (ok,) = self.protocol.decode('{"stream":"authorization","data":{"action":"authenticate","status":"authorized"}}')
        assert self.protocol.is_auth_success(ok)
        (bad,) = self.protocol.decode('{"stream":"authorization","data":{"action":"authenticate","status":"unauthorized"}}')
        assert bad.is_auth_error

    def test_listening_ack(self):
        (ack,) = self.protocol.decode('{"stream":"listening","data":{"streams":["trade_updates"]}}')
        assert ack.kind == "subscription"
        assert ack.subscriptions == {"trade_updates": (ALL,)}

    def test_update(self, trade_update_payload):
        (msg,) = self.protocol.decode(json.dumps({"stream": "trade_updates", "data": trade_update_payload}).encode())
        assert msg.channel == "trade_updates"
        assert msg.symbol == "AAPL"
        assert msg.payload["event"] == "fill"

    @pytest.mark.parametrize(
        "frame",
        [
            '{"stream":"trade_updates","data":"filled"}',
            '{"stream":"trade_updates","data":{"event":"fill","order":[]}}',
            '{"stream":"listening","data":{"streams":"trade_updates"}}',
            b'{"stream":"authorization","data":\xff}',
        ],
    )
    def test_wrong_shapes_are_protocol_errors(self, frame):
        with pytest.raises(StreamProtocolError):
            self.protocol.decode(frame)
