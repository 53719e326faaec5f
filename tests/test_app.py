from unittest.mock import Mock

import pytest

from typed_alpaca.app import __main__ as runner
from typed_alpaca.backend.errors import BrokerAuthError


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(runner, "setup_logging", Mock())


def test_parser_defaults():
    args = runner.build_parser().parse_args(["bars"])
    assert (args.action, args.symbol, args.timeframe) == ("bars", "AAPL", "1Day")


def test_unknown_action():
    with pytest.raises(SystemExit):
        runner.build_parser().parse_args(["order"])


def test_positions(monkeypatch, capsys, position_payload):
    client = Mock()
    from typed_alpaca.backend import parse

    client.get_positions.return_value = [parse.position(position_payload)]
    monkeypatch.setattr(runner, "AlpacaClient", Mock(return_value=client))

    assert runner.main(["positions"]) == 0
    assert "AAPL" in capsys.readouterr().out
    client.close.assert_called_once()


def test_broker_error_exit_code(monkeypatch):
    client = Mock()
    client.get_account.side_effect = BrokerAuthError("Auth error: HTTP 401", status_code=401)
    monkeypatch.setattr(runner, "AlpacaClient", Mock(return_value=client))

    assert runner.main(["info"]) == 1
    client.close.assert_called_once()
