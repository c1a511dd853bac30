from datetime import datetime, timedelta

import pytest

from database import db
from models import TradingTransaction
from utils.db_logger import (
    DBLogger, calculate_portfolio_pnl, get_position_status, get_position_status_by_symbols,
)


def test_entry_opens_and_exit_closes(app_ctx):
    ledger = DBLogger()
    ledger.log_transaction("h1", "binance", "enausdt", "buy", 100, 0.5, "entry")

    [row] = get_position_status("h1")
    assert row["symbol"] == "ENAUSDT"
    assert row["isOpen"] is True
    assert row["lastTransactionType"] == "entry"

    ledger.log_transaction("h1", "binance", "ENAUSDT", "SELL", 100, 0.6, "exit")
    [row] = get_position_status("h1", "ENAUSDT")
    assert row["isOpen"] is False
    assert TradingTransaction.query.count() == 2


def test_status_by_symbols(app_ctx):
    ledger = DBLogger()
    ledger.log_transaction("h1", "binance", "ENAUSDT", "BUY", 1, 1, "entry")
    ledger.log_transaction("h1", "bybit", "SOLUSDT", "BUY", 1, 1, "entry")
    ledger.log_transaction("h1", "bybit", "SOLUSDT", "SELL", 1, 1, "exit")
    ledger.log_transaction("h2", "binance", "TAOUSDT", "BUY", 1, 1, "entry")

    status = get_position_status_by_symbols("h1", ["enausdt", "SOLUSDT", "TAOUSDT"])
    assert status == {"ENAUSDT": "open", "SOLUSDT": "closed", "TAOUSDT": "unknown"}
    assert get_position_status_by_symbols("h1", []) == {}


def test_rejects_unknown_transaction_type(app_ctx):
    with pytest.raises(ValueError):
        DBLogger().log_transaction("h1", "binance", "ENAUSDT", "BUY", 1, 1, "open")


def _tx(symbol, ttype, qty, price, at):
    side = "BUY" if ttype == "entry" else "SELL"
    db.session.add(TradingTransaction(api_key_hash="h1", exchange="binance", symbol=symbol, side=side,
                                      quantity=qty, price=price, total_value=qty * price,
                                      transaction_type=ttype, created_at=at))


def test_average_cost_realized_pnl(app_ctx):
    t0 = datetime(2024, 1, 1)
    _tx("ENAUSDT", "entry", 100, 1.0, t0)
    _tx("ENAUSDT", "entry", 100, 2.0, t0 + timedelta(minutes=1))
    _tx("ENAUSDT", "exit", 100, 3.0, t0 + timedelta(minutes=2))
    _tx("SOLUSDT", "entry", 1, 100.0, t0)
    db.session.commit()

    out = calculate_portfolio_pnl("h1")

    ena, sol = out["breakdown"]
    assert ena["symbol"] == "ENAUSDT"
    assert ena["realizedPNL"] == pytest.approx(150)
    assert ena["pnlPercentage"] == pytest.approx(100)
    assert ena["openQuantity"] == pytest.approx(100)
    assert ena["isOpen"] is True
    assert (ena["entries"], ena["exits"]) == (2, 1)
    assert sol["realizedPNL"] == 0
    assert out["totalPNL"] == pytest.approx(150)
    assert out["totalPNLPercentage"] == pytest.approx(100)


def test_exit_without_entry_is_ignored(app_ctx):
    _tx("ENAUSDT", "exit", 10, 1.0, datetime(2024, 1, 1))
    db.session.commit()
    out = calculate_portfolio_pnl("h1")
    assert out["totalPNL"] == 0
    assert out["breakdown"][0]["exits"] == 1


def test_empty_ledger(app_ctx):
    assert calculate_portfolio_pnl("nobody") == {"totalPNL": 0.0, "totalPNLPercentage": 0.0, "breakdown": []}
