from __future__ import annotations

import logging

log = logging.getLogger("rebalancer.pnl")

STABLES = ("USDT", "USD")


def pnl_from_trades(trades, current_price: float) -> dict | None:
    """
    Average-cost open PNL from a Binance ``myTrades`` list.

    The average entry is taken over every buy in the window, so it is only an
    approximation once partial sells are involved.
    """
    buy_qty = buy_cost = sell_qty = 0.0
    for t in trades:
        qty = float(t["qty"])
        if t.get("isBuyer"):
            buy_qty += qty
            buy_cost += float(t["quoteQty"])
        else:
            sell_qty += qty

    net = buy_qty - sell_qty
    if net <= 0 or buy_qty <= 0:
        return None

    avg = buy_cost / buy_qty
    total_value = net * current_price
    total_cost = net * avg
    pnl = total_value - total_cost
    return {
        "totalQuantity": net,
        "averagePrice": avg,
        "currentPrice": current_price,
        "totalValue": total_value,
        "totalCost": total_cost,
        "pnl": pnl,
        "pnlPercentage": (pnl / total_cost * 100) if total_cost > 0 else 0.0,
    }


def calculate_pnl_data(spot, assets) -> dict[str, dict]:
    """PNL per asset; an asset whose history can't be fetched is left out."""
    out = {}
    if not assets:
        return out
    prices = spot.prices()
    for asset in assets:
        if asset in STABLES:
            continue
        symbol = f"{asset}USDT"
        try:
            trades = spot.my_trades(symbol)
        except Exception as e:
            log.info("Error fetching PNL for %s: %s", asset, e)
            continue
        if not trades:
            continue
        row = pnl_from_trades(trades, float(prices.get(symbol, 0.0)))
        if row:
            out[asset] = {"asset": asset, **row}
    return out
