import json

import pytest

import main
from models import DefaultCoin


def test_parser_uppercases_side():
    args = main.build_parser().parse_args(["signal", "open", "ENA", "--side", "long"])
    assert (args.action, args.symbol, args.side) == ("open", "ENA", "LONG")
    assert args.func is main.cmd_signal


def test_parser_rejects_unknown_action():
    with pytest.raises(SystemExit):
        main.build_parser().parse_args(["signal", "hold", "ENA"])


def test_init_db_seeds_defaults(app_ctx, capsys):
    assert main.cmd_init_db(main.build_parser().parse_args(["init-db"])) == 0
    assert DefaultCoin.query.count() == 8
    assert "seeded 8 default coins" in capsys.readouterr().out


def test_signal_without_accounts_exits_nonzero(app_ctx, capsys):
    args = main.build_parser().parse_args(["signal", "close", "ENAUSDT"])
    assert main.cmd_signal(args) == 1
    out = json.loads(capsys.readouterr().out)
    assert out["message"] == "No stored credentials to trade with"


def test_signal_validation_error(app_ctx, capsys):
    args = main.build_parser().parse_args(["signal", "open", "ENAUSDT"])
    assert main.cmd_signal(args) == 2
    assert "Side is required" in capsys.readouterr().err
