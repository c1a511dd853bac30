from __future__ import annotations

import time
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN

from binance.client import Client
from binance.exceptions import BinanceAPIException

from utils import exchange
from utils.errors import TradeRejected, TradeSkipped
from utils.pnl import calculate_pnl_data, STABLES

log = logging.getLogger("rebalancer.binance")

# Redemptions below this are dust and Binance rejects them
MIN_REDEEM_USDT = 0.001
MIN_STAKE_USDT = 1.0


@dataclass
class UnstakePolicy:
    buffer_pct: float = 0.001        # 0.1% headroom for rounding on the order
    min_trigger_usdt: float = 0.1    # don't touch Earn for dust-sized buys
    settle_seconds: float = 2.0      # wait after redeem before re-reading balance
    tolerance_usdt: float = 0.01

    @classmethod
    def from_config(cls, config) -> "UnstakePolicy":
        return cls(
            buffer_pct=float(config.get("UNSTAKE_BUFFER_PCT", cls.buffer_pct)),
            min_trigger_usdt=float(config.get("UNSTAKE_MIN_TRIGGER_USDT", cls.min_trigger_usdt)),
            settle_seconds=float(config.get("UNSTAKE_SETTLE_SECONDS", cls.settle_seconds)),
            tolerance_usdt=float(config.get("UNSTAKE_TOLERANCE_USDT", cls.tolerance_usdt)),
        )


def _is_earn_mirror(asset: str) -> bool:
    # Simple Earn holdings show up in the spot account as LD<asset>
    return asset.startswith("LD") and len(asset) > 2


def _floor8(x: float) -> float:
    return float(Decimal(str(x)).quantize(Decimal("0.00000001"), rounding=ROUND_DOWN))


class BinanceSpot:
    """Binance spot account plus its Simple Earn flexible wallet."""

    exchange = "binance"

    def __init__(self, client: Client, policy: UnstakePolicy | None = None, sleep=time.sleep):
        self.client = client
        self.policy = policy or UnstakePolicy()
        self._sleep = sleep

    @classmethod
    def from_credentials(cls, creds: dict, policy: UnstakePolicy | None = None) -> "BinanceSpot":
        return cls(exchange.make_binance_client(creds["apiKey"], creds["secretKey"]), policy)

    # ---------- reads ----------
    def account(self) -> dict:
        return self.client.get_account(recvWindow=exchange.RECV_WINDOW)

    def balance_entry(self, asset: str) -> tuple[float, float]:
        for b in self.account().get("balances", []):
            if b["asset"] == asset:
                return float(b.get("free") or 0.0), float(b.get("locked") or 0.0)
        return 0.0, 0.0

    def free_balance(self, asset: str) -> float:
        return self.balance_entry(asset)[0]

    def prices(self) -> dict[str, float]:
        return {t["symbol"]: float(t["price"]) for t in self.client.get_all_tickers()}

    def price(self, symbol: str) -> float:
        return float(self.client.get_symbol_ticker(symbol=symbol)["price"])

    def rules(self, symbol: str) -> exchange.SymbolRules:
        info = self.client.get_symbol_info(symbol)
        if not info:
            raise TradeRejected(f"Symbol {symbol} not found in exchange info")
        return exchange.symbol_rules_from_info(info)

    def my_trades(self, symbol: str) -> list:
        return self.client.get_my_trades(symbol=symbol, limit=1000, recvWindow=exchange.RECV_WINDOW)

    def earn_positions(self, asset: str | None = None) -> list[dict]:
        params = {"size": 100}
        if asset:
            params["asset"] = asset
        data = self.client.get_simple_earn_flexible_product_position(**params) or {}
        rows = data.get("rows", []) if isinstance(data, dict) else list(data)
        return [r for r in rows if not asset or r.get("asset") == asset]

    def usdt_products(self) -> list[dict]:
        """Subscribable USDT flexible products, falling back to products already held."""
        known = [p.get("productId") for p in self.earn_positions("USDT") if p.get("productId")]
        try:
            data = self.client.get_simple_earn_flexible_product_list(asset="USDT", size=100) or {}
        except BinanceAPIException as e:
            if known:
                return [{"productId": pid, "asset": "USDT", "status": "SUBSCRIBABLE"} for pid in known]
            raise TradeRejected(
                "Simple Earn product list is not accessible. Please confirm that Simple Earn "
                f"permissions are enabled on this API key. Binance returned: {e}", 403)
        rows = data.get("rows", []) if isinstance(data, dict) else list(data)
        products = [r for r in rows
                    if r.get("asset") == "USDT"
                    and (r.get("status") == "SUBSCRIBABLE" or r.get("canPurchase") is True)]
        if not products and known:
            products = [{"productId": pid, "asset": "USDT", "status": "SUBSCRIBABLE"} for pid in known]
        return products

    @staticmethod
    def usd_value(asset: str, amount: float, prices: dict[str, float]) -> float:
        if asset in STABLES:
            return amount
        if f"{asset}USDT" in prices:
            return amount * prices[f"{asset}USDT"]
        if f"{asset}BTC" in prices and "BTCUSDT" in prices:
            return amount * prices[f"{asset}BTC"] * prices["BTCUSDT"]
        return 0.0

    def wallet_balances(self, with_pnl: bool = True) -> dict:
        prices = self.prices()
        balances: dict[str, float] = {}
        total = 0.0
        wallets = {"spot": [], "earn": []}

        spot_rows = []
        for b in self.account().get("balances", []):
            free = float(b.get("free") or 0.0)
            locked = float(b.get("locked") or 0.0)
            if free + locked <= 0 or _is_earn_mirror(b["asset"]):
                continue
            spot_rows.append((b["asset"], b.get("free", "0"), b.get("locked", "0"), free + locked))

        pnl = {}
        if with_pnl:
            pnl = calculate_pnl_data(self, [a for a, *_ in spot_rows if a not in STABLES])

        for asset, free_s, locked_s, amount in spot_rows:
            usd = self.usd_value(asset, amount, prices)
            balances[asset] = balances.get(asset, 0.0) + usd
            total += usd
            wallets["spot"].append({
                "asset": asset, "free": free_s, "locked": locked_s, "usdValue": usd, "wallet": "spot",
                "pnl": pnl.get(asset, {}).get("pnl"),
                "pnlPercentage": pnl.get(asset, {}).get("pnlPercentage"),
            })

        for p in self.earn_positions():
            amount = float(p.get("totalAmount") or 0.0)
            if amount <= 0:
                continue
            asset = p.get("asset")
            usd = self.usd_value(asset, amount, prices)
            balances[asset] = balances.get(asset, 0.0) + usd
            total += usd
            wallets["earn"].append({
                "asset": asset, "free": str(p.get("totalAmount")), "locked": "0",
                "usdValue": usd, "wallet": "earn",
            })

        return {"balances": balances, "totalBalance": total, "walletBalances": wallets}

    def balances(self) -> dict:
        return self.wallet_balances(with_pnl=True)

    def test_credentials(self) -> dict:
        return {"accountType": self.account().get("accountType")}

    # ---------- earn ----------
    def redeem_usdt(self, amount: float) -> float:
        positions = self.earn_positions("USDT")
        if not positions:
            raise TradeRejected("No staked USDT positions found in Earn wallet")

        remaining = amount
        redeemed = 0.0
        for pos in positions:
            if remaining <= 0:
                break
            available = float(pos.get("totalAmount") or 0.0)
            product_id = pos.get("productId")
            take = _floor8(min(remaining, available))
            if take <= MIN_REDEEM_USDT or not product_id:
                continue
            log.info("redeeming %.8f USDT from %s (available %.8f)", take, product_id, available)
            try:
                self.client.redeem_simple_earn_flexible_product(productId=product_id, amount=f"{take:.8f}")
            except BinanceAPIException as e:
                raise TradeRejected(f"Failed to unstake {take} USDT: {e}")
            redeemed += take
            remaining -= take

        if redeemed <= 0:
            raise TradeRejected("No redeemable USDT found in Earn wallet")
        return redeemed

    def ensure_free_usdt(self, amount: float) -> float:
        """
        Make sure ``amount`` USDT (plus buffer) is free for a market buy,
        redeeming the shortfall from Simple Earn. Returns the redeemed amount.
        """
        free, _ = self.balance_entry("USDT")
        needed = amount * (1 + self.policy.buffer_pct)
        if free >= needed:
            return 0.0

        if amount >= self.policy.min_trigger_usdt:
            shortfall = needed - free
            log.info("free USDT %.4f < %.4f, unstaking %.4f from Earn", free, needed, shortfall)
            try:
                redeemed = self.redeem_usdt(shortfall)
            except TradeRejected as e:
                free2, locked2 = self.balance_entry("USDT")
                raise TradeRejected(
                    f"Insufficient USDT balance ({free2 + locked2:.2f} USDT available, {needed:.2f} USDT needed). "
                    f"Could not unstake additional USDT: {e.message}")

            self._sleep(self.policy.settle_seconds)
            free2, _ = self.balance_entry("USDT")
            if free2 < needed - self.policy.tolerance_usdt:
                raise TradeRejected(
                    f"Still insufficient FREE USDT after unstaking: {free2:.2f} USDT free available, "
                    f"{needed:.2f} USDT needed (unstaked: {redeemed})")
            return redeemed

        if free < amount:
            raise TradeRejected(
                f"Insufficient USDT balance. Available: {free:.2f} USDT, Required: {amount:.2f} USDT")
        return 0.0

    def stake_usdt(self, amount: float, product_id: str | None = None) -> dict:
        if amount <= 0:
            raise TradeRejected("Amount must be greater than 0")
        free = self.free_balance("USDT")
        if free < amount:
            raise TradeRejected(
                f"Insufficient USDT balance. Available: {free:.2f} USDT, Required: {amount:.2f} USDT",
                availableBalance=free, requestedAmount=amount)
        if not product_id:
            products = self.usdt_products()
            if not products:
                raise TradeRejected("No USDT staking products available. This may be due to API permissions "
                                    "or USDT staking being temporarily unavailable.")
            product_id = products[0]["productId"]
        log.info("staking %.8f USDT into %s", amount, product_id)
        result = self.client.subscribe_simple_earn_flexible_product(productId=product_id, amount=f"{_floor8(amount):.8f}")
        return {"result": result, "amount": amount, "productId": product_id}

    def unstake_usdt(self, amount: float) -> dict:
        if amount <= 0:
            raise TradeRejected("Amount must be greater than 0")
        positions = self.earn_positions("USDT")
        if not positions:
            raise TradeRejected("No staked USDT positions found")
        staked = sum(float(p.get("totalAmount") or 0.0) for p in positions)
        if amount > staked:
            raise TradeRejected(
                f"Insufficient staked USDT. Available: {staked:.2f} USDT, Requested: {amount:.2f} USDT",
                availableStaked=staked, requestedAmount=amount)
        return {"amount": self.redeem_usdt(amount)}

    def restake_idle_usdt(self, target_pct) -> dict | None:
        """Top the Earn wallet back up to ``target_pct`` of the portfolio from free USDT."""
        if not target_pct or float(target_pct) <= 0:
            return None
        wb = self.wallet_balances(with_pnl=False)
        earn_usdt = sum(float(e["free"]) for e in wb["walletBalances"]["earn"] if e["asset"] == "USDT")
        gap = wb["totalBalance"] * float(target_pct) / 100 - earn_usdt
        amount = _floor8(min(gap, self.free_balance("USDT")))
        if amount < MIN_STAKE_USDT:
            return None
        return self.stake_usdt(amount)

    # ---------- orders ----------
    def market_order(self, symbol: str, side: str, qty_str: str) -> dict:
        log.info("MARKET %s %s qty=%s", side, symbol, qty_str)
        return self.client.create_order(
            symbol=symbol, side=side, type=Client.ORDER_TYPE_MARKET,
            quantity=qty_str, recvWindow=exchange.RECV_WINDOW,
        )

    def _fill(self, order: dict, symbol: str, side: str, qty: Decimal, price: float) -> dict:
        fqty, fprice = exchange.weighted_from_fills(order.get("fills") or [])
        fqty = fqty if fqty is not None else float(qty)
        fprice = fprice if fprice is not None else price
        return {
            "order": order,
            "symbol": symbol,
            "side": side,
            "quantity": fqty,
            "price": fprice,
            "totalValue": fqty * fprice,
        }

    def buy_usd(self, symbol: str, usd_amount: float) -> dict:
        """Market BUY worth ``usd_amount`` USDT."""
        symbol = exchange.normalize_symbol(symbol)
        if usd_amount <= 0:
            raise TradeRejected("Quantity must be greater than 0")
        rules = self.rules(symbol)
        price = self.price(symbol)
        unstaked = self.ensure_free_usdt(usd_amount)
        qty = exchange.quantize_quantity(usd_amount / price, rules)
        exchange.check_notional(qty, price, rules)
        order = self.market_order(symbol, "BUY", exchange.qty_to_str(qty, rules.step_size))
        fill = self._fill(order, symbol, "BUY", qty, price)
        fill["unstaked"] = unstaked
        return fill

    def sell_quantity(self, symbol: str, quantity: float) -> dict:
        symbol = exchange.normalize_symbol(symbol)
        if quantity <= 0:
            raise TradeRejected("Quantity must be greater than 0")
        rules = self.rules(symbol)
        free = self.free_balance(exchange.base_asset(symbol))
        if free < quantity:
            raise TradeRejected(
                f"Insufficient {symbol} balance. Available: {free:.6f} {symbol}, Required: {quantity:.6f} {symbol}. "
                "Please check your actual balance in Binance.",
                availableBalance=free, requestedQuantity=quantity, symbol=symbol)
        qty = exchange.quantize_quantity(quantity, rules)
        if qty > Decimal(str(free)):
            raise TradeRejected(
                f"Insufficient {symbol} balance. Minimum order quantity is {qty} {symbol}, "
                f"available: {free:.6f} {symbol}.",
                availableBalance=free, requestedQuantity=quantity, symbol=symbol)
        price = self.price(symbol)
        exchange.check_notional(qty, price, rules)
        order = self.market_order(symbol, "SELL", exchange.qty_to_str(qty, rules.step_size))
        return self._fill(order, symbol, "SELL", qty, price)

    def sell_all(self, symbol: str) -> dict:
        symbol = exchange.normalize_symbol(symbol)
        base = exchange.base_asset(symbol)
        free = self.free_balance(base)
        if free <= 0:
            raise TradeSkipped(f"No free {base} balance to sell")
        rules = self.rules(symbol)
        price = self.price(symbol)
        try:
            qty = exchange.quantize_quantity(free, rules)
            if qty > Decimal(str(free)):
                raise TradeRejected(f"{base} balance {free} is below the minimum quantity {qty}")
            exchange.check_notional(qty, price, rules)
        except TradeRejected as e:
            raise TradeSkipped(f"Nothing sellable for {symbol} ({e.message})")
        order = self.market_order(symbol, "SELL", exchange.qty_to_str(qty, rules.step_size))
        return self._fill(order, symbol, "SELL", qty, price)

    def buy_to_target(self, symbol: str, target_pct: float) -> dict:
        symbol = exchange.normalize_symbol(symbol)
        base = exchange.base_asset(symbol)
        wb = self.wallet_balances(with_pnl=False)
        total = wb["totalBalance"]
        current = wb["balances"].get(base, 0.0)
        target = total * float(target_pct) / 100
        spend = target - current
        rules = self.rules(symbol)
        if spend <= 0 or spend < float(rules.min_notional):
            raise TradeSkipped(
                f"{symbol} already at target ({current:.2f} of {target:.2f} USDT)")
        fill = self.buy_usd(symbol, spend)
        fill.update({"targetAmount": target, "previousAmount": current})
        return fill
