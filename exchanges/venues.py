from __future__ import annotations

from exchanges.binance_futures import BinanceFutures
from exchanges.binance_spot import BinanceSpot, UnstakePolicy
from exchanges.ccxt_futures import BybitFutures, BingXFutures
from utils.errors import CredentialsMissing, TradeRejected
from utils.exchange import SUPPORTED_EXCHANGES

FUTURES_VENUES = {"bybit": BybitFutures, "bingx": BingXFutures}


def exchange_of(creds: dict) -> str:
    name = str(creds.get("exchange") or "binance").strip().lower()
    if name not in SUPPORTED_EXCHANGES:
        raise TradeRejected(f"Unsupported exchange: {name}. Use one of {', '.join(SUPPORTED_EXCHANGES)}")
    return name


def require_keys(creds: dict) -> dict:
    if not creds or not creds.get("apiKey") or not creds.get("secretKey"):
        raise CredentialsMissing()
    return creds


def make_venue(creds: dict, config=None):
    """Spot venue for Binance, futures venue for Bybit / BingX."""
    config = config or {}
    require_keys(creds)
    name = exchange_of(creds)
    if name == "binance":
        return BinanceSpot.from_credentials(creds, UnstakePolicy.from_config(config))
    return FUTURES_VENUES[name].from_credentials(creds, float(config.get("FUTURES_LEVERAGE", 1)))


def make_futures_view(creds: dict, config=None):
    config = config or {}
    require_keys(creds)
    name = exchange_of(creds)
    if name == "binance":
        return BinanceFutures.from_credentials(creds)
    return FUTURES_VENUES[name].from_credentials(creds, float(config.get("FUTURES_LEVERAGE", 1)))
