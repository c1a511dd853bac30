from __future__ import annotations

import logging

from binance.client import Client

from utils import exchange

log = logging.getLogger("rebalancer.binance")


def _position_row(p: dict) -> dict | None:
    amt = float(p.get("positionAmt") or 0.0)
    if amt == 0:
        return None
    entry = float(p.get("entryPrice") or 0.0)
    mark = float(p.get("markPrice") or 0.0)
    unrealized = float(p.get("unRealizedProfit") or 0.0)
    notional = abs(float(p.get("notional") or 0.0))
    size = abs(amt)
    side = "LONG" if amt > 0 else "SHORT"

    entry_value = size * entry
    current_value = size * mark
    pnl = current_value - entry_value if side == "LONG" else entry_value - current_value
    return {
        "symbol": p.get("symbol"),
        "side": side,
        "size": size,
        "entryPrice": entry,
        "markPrice": mark,
        "entryValue": entry_value,
        "currentValue": current_value,
        "pnl": pnl,
        "pnlPercentage": (pnl / entry_value * 100) if entry_value > 0 else 0.0,
        "unrealizedProfit": unrealized,
        "notional": notional,
        "roe": (unrealized / notional * 100) if notional > 0 else 0.0,
        "leverage": p.get("leverage"),
        "marginType": p.get("marginType"),
        "liquidationPrice": float(p.get("liquidationPrice") or 0.0),
    }


class BinanceFutures:
    """Read-only USD-M futures view."""

    exchange = "binance"

    def __init__(self, client: Client):
        self.client = client

    @classmethod
    def from_credentials(cls, creds: dict) -> "BinanceFutures":
        return cls(exchange.make_binance_client(creds["apiKey"], creds["secretKey"]))

    def open_positions(self) -> dict:
        raw = self.client.futures_position_information(recvWindow=exchange.RECV_WINDOW)
        positions = [row for row in (_position_row(p) for p in raw) if row]
        positions.sort(key=lambda r: abs(r["pnl"]), reverse=True)
        log.info("[Binance] %d open futures positions", len(positions))
        return {
            "positions": positions,
            "totalPositions": len(positions),
            "totalPnl": sum(r["pnl"] for r in positions),
            "totalNotional": sum(r["notional"] for r in positions),
        }
