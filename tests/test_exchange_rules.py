from decimal import Decimal

import ccxt
import pytest

from utils.errors import TradeRejected
from utils.exchange import (
    SymbolRules, base_asset, ccxt_linear_symbol, check_notional, describe_exchange_error,
    normalize_symbol, qty_to_str, quantize_quantity, symbol_rules_from_info, weighted_from_fills,
)


def _info(**extra):
    filters = [
        {"filterType": "LOT_SIZE", "stepSize": "0.01000000", "minQty": "0.10000000", "maxQty": "1000.00000000"},
        {"filterType": "NOTIONAL", "minNotional": "5.00000000"},
        {"filterType": "PRICE_FILTER", "tickSize": "0.00010000"},
    ]
    filters.extend(extra.get("filters", []))
    return {"symbol": "ENAUSDT", "filters": filters}


def test_symbol_helpers():
    assert normalize_symbol("ena") == "ENAUSDT"
    assert normalize_symbol("ENAUSDT") == "ENAUSDT"
    assert normalize_symbol("ENA/USDT") == "ENAUSDT"
    assert base_asset("ENAUSDT") == "ENA"
    assert ccxt_linear_symbol("ENAUSDT") == "ENA/USDT:USDT"


def test_rules_from_filters():
    rules = symbol_rules_from_info(_info())
    assert rules.step_size == "0.01000000"
    assert rules.min_qty == Decimal("0.1")
    assert rules.max_qty == Decimal("1000")
    assert rules.min_notional == Decimal("5")
    assert rules.tick_size == Decimal("0.0001")


def test_market_lot_size_only_narrows_max_qty():
    info = _info(filters=[{"filterType": "MARKET_LOT_SIZE", "stepSize": "0", "minQty": "0", "maxQty": "500"}])
    rules = symbol_rules_from_info(info)
    assert rules.max_qty == Decimal("500")
    assert rules.step_size == "0.01000000"


def test_legacy_min_notional_filter():
    info = {"symbol": "X", "filters": [
        {"filterType": "LOT_SIZE", "stepSize": "1", "minQty": "1", "maxQty": "100"},
        {"filterType": "MIN_NOTIONAL", "minNotional": "10"},
    ]}
    assert symbol_rules_from_info(info).min_notional == Decimal("10")


def test_missing_lot_size_is_rejected():
    with pytest.raises(TradeRejected, match="Could not get trading rules"):
        symbol_rules_from_info({"symbol": "ENAUSDT", "filters": [{"filterType": "PRICE_FILTER"}]})
    with pytest.raises(TradeRejected):
        symbol_rules_from_info(None)


def test_quantize_floors_to_step():
    rules = symbol_rules_from_info(_info())
    assert quantize_quantity(1.23456, rules) == Decimal("1.23")
    assert quantize_quantity(0.1999, rules) == Decimal("0.19")


def test_quantize_clamps_to_max():
    rules = symbol_rules_from_info(_info())
    assert quantize_quantity(5000, rules) == Decimal("1000.00")


def test_quantize_raises_to_min_qty():
    rules = symbol_rules_from_info(_info())
    assert quantize_quantity(0.05, rules) == Decimal("0.1")
    assert quantize_quantity(0.0999, rules) == Decimal("0.1")


def test_quantize_to_zero_is_rejected():
    rules = symbol_rules_from_info(_info())
    with pytest.raises(TradeRejected, match="Order quantity too small"):
        quantize_quantity(0.004, rules)


def test_integer_step():
    rules = SymbolRules(symbol="PUMPUSDT", step_size="1", min_qty=Decimal("1"), max_qty=Decimal("0"))
    assert quantize_quantity(1234.9, rules) == Decimal("1234")
    assert qty_to_str(Decimal("1234"), "1") == "1234"


def test_check_notional():
    rules = symbol_rules_from_info(_info())
    assert check_notional(Decimal("20"), 0.5, rules) == Decimal("10.0")
    with pytest.raises(TradeRejected, match="Minimum notional value is 5"):
        check_notional(Decimal("5"), 0.5, rules)


def test_qty_to_str_uses_step_decimals():
    assert qty_to_str(Decimal("1.2"), "0.01000000") == "1.20"
    assert qty_to_str(3, "0.001") == "3.000"


def test_weighted_from_fills():
    qty, px = weighted_from_fills([{"qty": "1", "price": "10"}, {"qty": "3", "price": "20"}])
    assert qty == 4
    assert px == pytest.approx(17.5)
    assert weighted_from_fills([]) == (None, None)


class CodedError(Exception):
    def __init__(self, code, message):
        super().__init__(message)
        self.code = code


@pytest.mark.parametrize("code,status", [
    (-2010, 400), (-1121, 400), (-1022, 401), (-2015, 401), (-2014, 401),
    (-2011, 401), (-1001, 408), (-1003, 429), (-1015, 429),
])
def test_binance_codes(code, status):
    _, got = describe_exchange_error(CodedError(code, "boom"))
    assert got == status


def test_code_embedded_in_message():
    msg, status = describe_exchange_error(Exception("APIError(code=-2010): Account has insufficient balance"))
    assert status == 400
    assert msg == "Insufficient balance for this order"


def test_lot_size_variant():
    msg, status = describe_exchange_error(CodedError(-1013, "Filter failure: LOT_SIZE"))
    assert status == 400
    assert "minimum requirements" in msg
    msg, _ = describe_exchange_error(CodedError(-1013, "Filter failure: PRICE"))
    assert msg.startswith("Invalid quantity")


def test_ccxt_exceptions():
    assert describe_exchange_error(ccxt.AuthenticationError("bad key"))[1] == 401
    assert describe_exchange_error(ccxt.InsufficientFunds("no money"))[1] == 400
    assert describe_exchange_error(ccxt.BadSymbol("nope"))[1] == 400
    assert describe_exchange_error(ccxt.RateLimitExceeded("slow down"))[1] == 429
    assert describe_exchange_error(ccxt.RequestTimeout("timeout"))[1] == 408


def test_unknown_errors_are_500():
    msg, status = describe_exchange_error(RuntimeError("weird"), "Failed to fetch balances")
    assert status == 500
    assert msg == "Failed to fetch balances: weird"


def test_trade_rejected_passes_through():
    assert describe_exchange_error(TradeRejected("nope", 403)) == ("nope", 403)
