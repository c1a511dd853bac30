import os
import math

import ccxt
import pytest

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENCRYPTION_KEY"] = "test-encryption-key"
os.environ["WEBHOOK_AUTH_KEY"] = "tv-secret"
os.environ["ADMIN_TOKEN"] = "admin-secret"
os.environ["UNSTAKE_SETTLE_SECONDS"] = "0"
os.environ.pop("TELEGRAM_BOT_TOKEN", None)
os.environ.pop("TELEGRAM_CHAT_ID", None)

from app import app as flask_app  # noqa: E402
from database import db  # noqa: E402


DEFAULT_FILTERS = [
    {"filterType": "PRICE_FILTER", "tickSize": "0.00010000"},
    {"filterType": "LOT_SIZE", "stepSize": "0.01000000", "minQty": "0.01000000", "maxQty": "9000000.00000000"},
    {"filterType": "NOTIONAL", "minNotional": "5.00000000"},
]


class FakeBinanceClient:
    """In-memory stand-in for python-binance ``Client``; orders fill at the ticker price."""

    def __init__(self):
        self.balances = {"USDT": [1000.0, 0.0]}
        self.prices = {"ENAUSDT": 0.5, "SOLUSDT": 150.0, "BTCUSDT": 60000.0}
        self.earn = []
        self.trades = {}
        self.futures_positions = []
        self.orders = []
        self.redeems = []
        self.subscribes = []
        self.credit_redeems = True
        self.fail_account = None

    def set_balance(self, asset, free, locked=0.0):
        self.balances[asset] = [float(free), float(locked)]

    def get_account(self, **kwargs):
        if self.fail_account:
            raise self.fail_account
        return {
            "accountType": "SPOT",
            "balances": [{"asset": a, "free": f"{v[0]:.8f}", "locked": f"{v[1]:.8f}"}
                         for a, v in self.balances.items()],
        }

    def get_all_tickers(self):
        return [{"symbol": s, "price": str(p)} for s, p in self.prices.items()]

    def get_symbol_ticker(self, symbol):
        return {"symbol": symbol, "price": str(self.prices[symbol])}

    def get_symbol_info(self, symbol):
        if symbol not in self.prices:
            return None
        return {"symbol": symbol, "filters": DEFAULT_FILTERS}

    def get_my_trades(self, symbol, limit=1000, **kwargs):
        return self.trades.get(symbol, [])

    def create_order(self, symbol, side, type, quantity, **kwargs):
        qty = float(quantity)
        price = self.prices[symbol]
        base = symbol[:-4]
        self.balances.setdefault(base, [0.0, 0.0])
        if side == "BUY":
            self.balances["USDT"][0] -= qty * price
            self.balances[base][0] += qty
        else:
            self.balances[base][0] -= qty
            self.balances["USDT"][0] += qty * price
        order = {"orderId": len(self.orders) + 1, "symbol": symbol, "side": side, "type": type,
                 "status": "FILLED", "origQty": quantity,
                 "fills": [{"price": str(price), "qty": quantity}]}
        self.orders.append(order)
        return order

    def get_simple_earn_flexible_product_position(self, asset=None, size=100, **kwargs):
        rows = [dict(r) for r in self.earn if not asset or r["asset"] == asset]
        return {"rows": rows, "total": len(rows)}

    def get_simple_earn_flexible_product_list(self, asset=None, size=100, **kwargs):
        return {"rows": [{"asset": "USDT", "productId": "USDT001", "status": "SUBSCRIBABLE", "canPurchase": True}],
                "total": 1}

    def redeem_simple_earn_flexible_product(self, productId, amount, **kwargs):
        amt = float(amount)
        self.redeems.append((productId, amount))
        for row in self.earn:
            if row["productId"] == productId:
                row["totalAmount"] = f"{float(row['totalAmount']) - amt:.8f}"
        if self.credit_redeems:
            self.balances["USDT"][0] += amt
        return {"redeemId": len(self.redeems), "success": True}

    def subscribe_simple_earn_flexible_product(self, productId, amount, **kwargs):
        amt = float(amount)
        self.subscribes.append((productId, amount))
        self.balances["USDT"][0] -= amt
        for row in self.earn:
            if row["productId"] == productId:
                row["totalAmount"] = f"{float(row['totalAmount']) + amt:.8f}"
                break
        else:
            self.earn.append({"asset": "USDT", "productId": productId, "totalAmount": f"{amt:.8f}"})
        return {"purchaseId": len(self.subscribes), "success": True}

    def futures_position_information(self, **kwargs):
        return self.futures_positions


class FakeCcxtExchange:
    """Minimal ccxt linear-swap exchange with one-contract precision."""

    def __init__(self):
        self.balance = {"free": {"USDT": 1000.0}, "used": {"USDT": 0.0}, "total": {"USDT": 1000.0}}
        self.tickers = {"ENA/USDT:USDT": {"symbol": "ENA/USDT:USDT", "last": 0.5},
                        "SOL/USDT:USDT": {"symbol": "SOL/USDT:USDT", "last": 150.0}}
        self.markets = {s: {"symbol": s, "contractSize": 1.0,
                            "limits": {"amount": {"min": 1.0}, "cost": {"min": 5.0}}}
                        for s in self.tickers}
        self.open = []
        self.orders = []

    def load_markets(self):
        return self.markets

    def market(self, symbol):
        if symbol not in self.markets:
            raise ccxt.BadSymbol(f"{symbol} not found")
        return self.markets[symbol]

    def fetch_balance(self, params=None):
        return self.balance

    def fetch_tickers(self, symbols=None, params=None):
        return self.tickers

    def fetch_ticker(self, symbol, params=None):
        return self.tickers[symbol]

    def fetch_positions(self, symbols=None, params=None):
        return list(self.open)

    def amount_to_precision(self, symbol, amount):
        return str(math.floor(amount))

    def create_order(self, symbol, type, side, amount, price=None, params=None):
        order = {"id": f"o{len(self.orders) + 1}", "symbol": symbol, "type": type, "side": side,
                 "amount": amount, "filled": amount, "average": self.tickers[symbol]["last"],
                 "params": params or {}}
        self.orders.append(order)
        return order


@pytest.fixture()
def app_ctx():
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
        yield flask_app
        db.session.remove()


@pytest.fixture()
def client(app_ctx):
    return app_ctx.test_client()


@pytest.fixture()
def fake_binance(monkeypatch):
    fake = FakeBinanceClient()
    monkeypatch.setattr("utils.exchange.make_binance_client", lambda key, secret: fake)
    return fake


@pytest.fixture()
def fake_ccxt(monkeypatch):
    fake = FakeCcxtExchange()
    created = []

    def _make(exchange_id, key, secret):
        created.append(exchange_id)
        return fake

    monkeypatch.setattr("utils.exchange.make_ccxt_client", _make)
    fake.created = created
    return fake


@pytest.fixture()
def binance_creds():
    return {"exchange": "binance", "apiKey": "binance-key-0001", "secretKey": "binance-secret"}
