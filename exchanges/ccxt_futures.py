from __future__ import annotations

import logging

import ccxt

from utils import exchange
from utils.errors import TradeRejected, TradeSkipped
from utils.pnl import STABLES

log = logging.getLogger("rebalancer.futures")


def _f(x, default=0.0) -> float:
    try:
        return float(x) if x is not None else default
    except (TypeError, ValueError):
        return default


class CcxtFutures:
    """
    USDT-margined linear perpetuals through ccxt.

    Subclasses only differ in the extra order params their venue needs for
    opening and reducing a position.
    """

    exchange = ""

    def __init__(self, client, leverage: float = 1.0):
        self.client = client
        self.leverage = float(leverage or 1.0)

    @classmethod
    def from_credentials(cls, creds: dict, leverage: float = 1.0):
        return cls(exchange.make_ccxt_client(cls.exchange, creds["apiKey"], creds["secretKey"]), leverage)

    def _open_params(self, side: str) -> dict:
        return {}

    def _close_params(self, position_side: str) -> dict:
        return {"reduceOnly": True}

    # ---------- reads ----------
    def prices(self) -> dict[str, float]:
        out = {}
        for sym, t in (self.client.fetch_tickers() or {}).items():
            last = t.get("last") or t.get("close")
            if last is not None:
                out[sym] = float(last)
        return out

    def usdt_equity(self) -> float:
        bal = self.client.fetch_balance()
        return _f((bal.get("total") or {}).get("USDT"))

    def positions(self) -> list[dict]:
        rows = []
        for p in self.client.fetch_positions() or []:
            contracts = _f(p.get("contracts"))
            if contracts == 0:
                continue
            size = abs(contracts) * _f(p.get("contractSize"), 1.0)
            entry = _f(p.get("entryPrice"))
            mark = _f(p.get("markPrice"))
            notional = abs(_f(p.get("notional"))) or size * mark
            pnl = _f(p.get("unrealizedPnl"))
            entry_value = size * entry
            side = (p.get("side") or ("long" if contracts > 0 else "short")).upper()
            rows.append({
                "symbol": exchange.normalize_symbol(p.get("symbol", "").split(":")[0]),
                "marketSymbol": p.get("symbol"),
                "side": side,
                "size": size,
                "contracts": abs(contracts),
                "entryPrice": entry,
                "markPrice": mark,
                "entryValue": entry_value,
                "currentValue": size * mark,
                "notional": notional,
                "pnl": pnl,
                "pnlPercentage": (pnl / entry_value * 100) if entry_value > 0 else 0.0,
                "leverage": p.get("leverage"),
            })
        rows.sort(key=lambda r: abs(r["pnl"]), reverse=True)
        return rows

    def open_positions(self) -> dict:
        positions = self.positions()
        return {
            "positions": positions,
            "totalPositions": len(positions),
            "totalPnl": sum(r["pnl"] for r in positions),
            "totalNotional": sum(r["notional"] for r in positions),
        }

    def balances(self) -> dict:
        bal = self.client.fetch_balance()
        prices = self.prices()
        free_map = bal.get("free") or {}
        used_map = bal.get("used") or {}

        balances: dict[str, float] = {}
        total = 0.0
        rows = []
        for coin in sorted(set(free_map) | set(used_map)):
            free = _f(free_map.get(coin))
            used = _f(used_map.get(coin))
            amount = free + used
            if free <= 0 and used <= 0:
                continue
            if coin in STABLES:
                usd = amount
            else:
                usd = amount * prices.get(exchange.ccxt_linear_symbol(coin), 0.0)
            balances[coin] = balances.get(coin, 0.0) + usd
            total += usd
            rows.append({"asset": coin, "free": str(free), "locked": str(used),
                         "usdValue": usd, "wallet": "futures"})

        by_asset: dict[str, float] = {}
        for p in self.positions():
            base = exchange.base_asset(p["symbol"])
            by_asset[base] = by_asset.get(base, 0.0) + p["notional"]
        for asset, value in by_asset.items():
            balances[asset] = balances.get(asset, 0.0) + value
            total += value

        return {
            "balances": balances,
            "totalBalance": total,
            "walletBalances": {"futures": rows},
            "futuresBalances": by_asset,
        }

    def test_credentials(self) -> dict:
        self.client.fetch_balance()
        return {"accountType": f"{self.exchange.upper()}_FUTURES"}

    # ---------- orders ----------
    def open_position(self, symbol: str, side: str, target_pct: float) -> dict:
        side = side.upper()
        if side not in ("LONG", "SHORT"):
            raise TradeRejected("side must be LONG or SHORT")
        self.client.load_markets()
        sym = exchange.ccxt_linear_symbol(symbol)
        market = self.client.market(sym)

        for p in self.positions():
            if p["marketSymbol"] == sym and p["side"] == side:
                raise TradeSkipped(f"{side} {sym} already open ({p['contracts']} contracts)")

        equity = self.usdt_equity()
        notional = equity * float(target_pct) / 100 * self.leverage
        ticker = self.client.fetch_ticker(sym)
        price = _f(ticker.get("last") or ticker.get("close"))
        if notional <= 0 or price <= 0:
            raise TradeRejected(f"Cannot size {sym}: equity {equity:.2f} USDT, price {price}")

        raw = notional / price / _f(market.get("contractSize"), 1.0)
        try:
            amount = float(self.client.amount_to_precision(sym, raw))
        except ccxt.InvalidOrder as e:
            raise TradeRejected(f"Order quantity too small for {sym}: {e}")
        limits = market.get("limits") or {}
        min_amount = _f((limits.get("amount") or {}).get("min"))
        min_cost = _f((limits.get("cost") or {}).get("min"))
        if amount <= 0 or (min_amount and amount < min_amount):
            raise TradeRejected(
                f"Order quantity too small. After applying trading rules, quantity became {amount}. "
                f"Minimum required quantity is {min_amount} {sym}.")
        if min_cost and amount * price < min_cost:
            raise TradeRejected(
                f"Order value too small. Minimum notional value is {min_cost} USDT, "
                f"your order value is {amount * price:.2f} USDT")

        order_side = "buy" if side == "LONG" else "sell"
        log.info("[%s] MARKET %s %s amount=%s (notional %.2f)", self.exchange, order_side, sym, amount, notional)
        order = self.client.create_order(sym, "market", order_side, amount, None, self._open_params(side))
        fill_price = _f(order.get("average")) or price
        filled = _f(order.get("filled")) or amount
        return {"order": order, "symbol": exchange.normalize_symbol(symbol), "side": side,
                "quantity": filled, "price": fill_price, "totalValue": filled * fill_price}

    def close_position(self, symbol: str) -> list[dict]:
        self.client.load_markets()
        sym = exchange.ccxt_linear_symbol(symbol)
        open_rows = [p for p in self.positions() if p["marketSymbol"] == sym]
        if not open_rows:
            raise TradeSkipped(f"No open position for {sym}")

        fills = []
        for p in open_rows:
            order_side = "sell" if p["side"] == "LONG" else "buy"
            log.info("[%s] CLOSE %s %s contracts=%s", self.exchange, p["side"], sym, p["contracts"])
            order = self.client.create_order(sym, "market", order_side, p["contracts"], None,
                                             self._close_params(p["side"]))
            fill_price = _f(order.get("average")) or p["markPrice"]
            filled = _f(order.get("filled")) or p["size"]
            fills.append({"order": order, "symbol": p["symbol"], "side": p["side"],
                          "quantity": filled, "price": fill_price, "totalValue": filled * fill_price})
        return fills


class BybitFutures(CcxtFutures):
    exchange = "bybit"


class BingXFutures(CcxtFutures):
    """BingX accounts run in hedge mode, so every order names its position side."""

    exchange = "bingx"

    def _open_params(self, side: str) -> dict:
        return {"positionSide": side}

    def _close_params(self, position_side: str) -> dict:
        return {"positionSide": position_side}
