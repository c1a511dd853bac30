import os
import re
import time
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN

import ccxt
from binance.client import Client
from binance.exceptions import BinanceAPIException, BinanceRequestException
from dotenv import load_dotenv

from utils.errors import TradeRejected

load_dotenv()

log = logging.getLogger("rebalancer.exchange")

QUOTE = "USDT"


def env_true(name, default="false"):
    return str(os.getenv(name, default)).strip().lower() in ("1", "true", "yes", "y", "on")


BINANCE_TLD = os.getenv("BINANCE_TLD", "com")
BINANCE_TESTNET = env_true("BINANCE_TESTNET", "false")
RECV_WINDOW = int(os.getenv("RECV_WINDOW", "10000"))

SUPPORTED_EXCHANGES = ("binance", "bybit", "bingx")


# =========================
# Client factories
# =========================
def make_binance_client(api_key: str, api_secret: str) -> Client:
    client = Client(api_key, api_secret, tld=BINANCE_TLD, testnet=BINANCE_TESTNET)
    try:
        server_time = client.get_server_time()["serverTime"]  # ms
        client.TIME_OFFSET = server_time - int(time.time() * 1000)
    except (BinanceAPIException, BinanceRequestException, KeyError) as e:
        log.warning("[Binance] could not set TIME_OFFSET: %s", e)
    return client


def make_ccxt_client(exchange_id: str, api_key: str, api_secret: str):
    if exchange_id not in ("bybit", "bingx"):
        raise TradeRejected(f"Unsupported futures exchange: {exchange_id}")
    klass = getattr(ccxt, exchange_id)
    return klass({
        "apiKey": api_key,
        "secret": api_secret,
        "enableRateLimit": True,
        "options": {"defaultType": "swap"},
    })


# =========================
# Symbols
# =========================
def normalize_symbol(symbol: str) -> str:
    """ENA -> ENAUSDT; ENAUSDT stays as is."""
    s = (symbol or "").strip().upper().replace("/", "")
    if not s:
        return s
    return s if s.endswith(QUOTE) else f"{s}{QUOTE}"


def base_asset(symbol: str) -> str:
    s = (symbol or "").strip().upper().replace("/", "")
    return s[:-len(QUOTE)] if s.endswith(QUOTE) and len(s) > len(QUOTE) else s


def ccxt_linear_symbol(symbol: str) -> str:
    """ENAUSDT -> ENA/USDT:USDT (ccxt unified linear perpetual)."""
    return f"{base_asset(symbol)}/{QUOTE}:{QUOTE}"


# =========================
# Lot size / notional rules
# =========================
@dataclass
class SymbolRules:
    symbol: str
    step_size: str = "1"
    min_qty: Decimal = Decimal("0")
    max_qty: Decimal = Decimal("0")
    tick_size: Decimal = Decimal("0")
    min_notional: Decimal = Decimal("0")

    @property
    def step(self) -> Decimal:
        return Decimal(self.step_size)


def symbol_rules_from_info(info: dict) -> SymbolRules:
    """
    Build rules from a Binance ``exchangeInfo`` symbol entry.
    MARKET_LOT_SIZE only narrows maxQty; stepSize always comes from LOT_SIZE.
    """
    if not info:
        raise TradeRejected("Could not get trading rules for this symbol")
    rules = SymbolRules(symbol=info.get("symbol", ""))
    have_lot = False
    for f in info.get("filters", []):
        t = f.get("filterType")
        if t == "LOT_SIZE":
            have_lot = True
            rules.step_size = f.get("stepSize", rules.step_size)
            rules.min_qty = Decimal(f.get("minQty") or "0")
            rules.max_qty = Decimal(f.get("maxQty") or "0")
        elif t == "MARKET_LOT_SIZE":
            mx = Decimal(f.get("maxQty") or "0")
            if mx > 0 and (rules.max_qty == 0 or mx < rules.max_qty):
                rules.max_qty = mx
        elif t == "PRICE_FILTER":
            rules.tick_size = Decimal(f.get("tickSize") or "0")
        elif t in ("NOTIONAL", "MIN_NOTIONAL"):
            mn = f.get("minNotional") or f.get("notional")
            if mn is not None:
                rules.min_notional = Decimal(str(mn))
    if not have_lot:
        raise TradeRejected("Could not get trading rules for this symbol")
    return rules


def step_decimals(step_str: str) -> int:
    return len(step_str.split(".", 1)[1].rstrip("0")) if "." in step_str else 0


def quantize_to_step(qty: Decimal, step: Decimal) -> Decimal:
    if step == 0:
        return qty
    return (qty // step) * step  # floor


def round_to_tick(price: Decimal, tick: Decimal) -> Decimal:
    if tick == 0:
        return price
    return (price // tick) * tick  # floor


def quantize_quantity(qty, rules: SymbolRules) -> Decimal:
    """
    Floor qty to stepSize and cap at maxQty. A positive result below minQty
    is raised to minQty; notional and balance checks decide from there.
    Raises TradeRejected when the floored quantity is zero.
    """
    q = quantize_to_step(Decimal(str(qty)), rules.step)
    if rules.max_qty > 0 and q > rules.max_qty:
        q = quantize_to_step(rules.max_qty, rules.step)
    places = step_decimals(rules.step_size)
    q = q.quantize(Decimal(1).scaleb(-places), rounding=ROUND_DOWN) if places else q.to_integral_value(ROUND_DOWN)
    if q <= 0:
        raise TradeRejected(
            f"Order quantity too small. After applying trading rules, quantity became {q}. "
            f"Minimum required quantity is {rules.min_qty} {rules.symbol}."
        )
    if q < rules.min_qty:
        log.info("%s quantity %s below minQty, using %s", rules.symbol, q, rules.min_qty)
        q = rules.min_qty
    return q


def check_notional(qty: Decimal, price, rules: SymbolRules) -> Decimal:
    notional = Decimal(str(qty)) * Decimal(str(price))
    if rules.min_notional > 0 and notional < rules.min_notional:
        raise TradeRejected(
            f"Order value too small. Minimum notional value is {rules.min_notional} USDT, "
            f"your order value is {notional:.2f} USDT"
        )
    return notional


def qty_to_str(qty, step_str: str) -> str:
    return f"{Decimal(str(qty)):.{step_decimals(step_str)}f}"


def weighted_from_fills(fills):
    """Returns (filled_qty, avg_price) from Binance order fills, or (None, None)."""
    if not fills:
        return None, None
    qty = sum(float(f["qty"]) for f in fills)
    if qty <= 0:
        return None, None
    px = sum(float(f["price"]) * float(f["qty"]) for f in fills) / qty
    return qty, px


# =========================
# Error mapping
# =========================
_BINANCE_CODES = {
    -2010: ("Insufficient balance for this order", 400),
    -1121: ("Invalid symbol. Please check the trading pair", 400),
    -1022: ("Signature validation failed. Please check your API credentials", 401),
    -2015: ("Invalid API credentials. Please verify your API key and secret.", 401),
    -2014: ("Invalid API credentials. Please verify your API key and secret.", 401),
    -2013: ("Invalid API credentials. Please verify your API key and secret.", 401),
    -2011: ("API key does not have the required permissions", 401),
    -1001: ("Request timeout. Please try again.", 408),
    -1003: ("Rate limit exceeded. Please wait before making more requests", 429),
    -1015: ("Too many requests. Please wait before refreshing again.", 429),
}

_CODE_RE = re.compile(r"(-[12]\d{3})")


def _binance_code(e: Exception):
    code = getattr(e, "code", None)
    if isinstance(code, int) and code < 0:
        return code
    m = _CODE_RE.search(str(e))
    return int(m.group(1)) if m else None


def describe_exchange_error(e: Exception, default: str = "Exchange request failed"):
    """Map an SDK exception to (user message, http status)."""
    if isinstance(e, TradeRejected):
        return e.message, e.status_code

    if isinstance(e, ccxt.PermissionDenied):
        return "API key does not have the required permissions", 401
    if isinstance(e, ccxt.AuthenticationError):
        return "Invalid API credentials. Please verify your API key and secret.", 401
    if isinstance(e, ccxt.InsufficientFunds):
        return "Insufficient balance for this order", 400
    if isinstance(e, ccxt.BadSymbol):
        return "Invalid symbol. Please check the trading pair", 400
    if isinstance(e, ccxt.InvalidOrder):
        return f"Invalid order: {e}", 400
    if isinstance(e, (ccxt.RateLimitExceeded, ccxt.DDoSProtection)):
        return "Rate limit exceeded. Please wait before making more requests", 429
    if isinstance(e, ccxt.RequestTimeout):
        return "Request timeout. Please try again.", 408

    code = _binance_code(e)
    if code == -1013:
        if "LOT_SIZE" in str(e):
            return ("Invalid quantity. The order size does not meet the minimum requirements "
                    "for this trading pair. Please try with a larger amount."), 400
        return "Invalid quantity. Please check the minimum order size requirements", 400
    if code in _BINANCE_CODES:
        return _BINANCE_CODES[code]
    if "request weight" in str(e):
        return "Rate limit exceeded. Please wait 1 minute before refreshing again.", 429
    return f"{default}: {e}", 500
