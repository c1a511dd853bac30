"""
Target allocation: which coins, at what share of the portfolio, and how far
each one currently is from its target.
"""
from __future__ import annotations

import logging
from decimal import Decimal

from database import db
from models import DefaultCoin
from utils.errors import TradeRejected
from utils.exchange import base_asset, normalize_symbol
from utils.sync_store import get_portfolio

log = logging.getLogger("rebalancer.allocation")

# Seeded into default_coins on first boot; also served when the table is empty.
FALLBACK_COINS = [
    ("ENAUSDT", 12.5),
    ("TAOUSDT", 12.5),
    ("SUIUSDT", 12.5),
    ("UNIUSDT", 15.0),
    ("APTUSDT", 15.0),
    ("AVAXUSDT", 15.0),
    ("PUMPUSDT", 10.0),
    ("SOLUSDT", 7.5),
]


def fallback_items() -> list[dict]:
    return [{"coin": c, "targetPercent": p, "display_order": i + 1} for i, (c, p) in enumerate(FALLBACK_COINS)]


def normalize_items(items) -> list[dict]:
    """Accepts [{coin, targetPercent}] (or {"items": [...]}) and returns clean copies."""
    if isinstance(items, dict):
        items = items.get("items") or items.get("coins") or []
    out = []
    for it in items or []:
        coin = normalize_symbol(str(it.get("coin") or it.get("symbol") or ""))
        if not coin:
            continue
        try:
            pct = float(it.get("targetPercent", 0))
        except (TypeError, ValueError):
            raise TradeRejected(f"targetPercent for {coin} must be a number")
        row = dict(it)
        row.update({"coin": coin, "targetPercent": pct})
        out.append(row)
    return out


def total_target_percent(items) -> float:
    return round(sum(float(it["targetPercent"]) for it in items), 6)


def target_percent_for(symbol: str, items):
    symbol = normalize_symbol(symbol)
    for it in items:
        if it["coin"] == symbol:
            return float(it["targetPercent"])
    return None


def validate_allocation(items, require_full: bool = False) -> list[dict]:
    seen = set()
    for it in items:
        if it["coin"] in seen:
            raise TradeRejected(f"Duplicate coin in allocation: {it['coin']}")
        seen.add(it["coin"])
        if not 0 <= it["targetPercent"] <= 100:
            raise TradeRejected(f"targetPercent for {it['coin']} must be between 0 and 100")
    total = total_target_percent(items)
    if total > 100:
        raise TradeRejected(f"Total target percentage is {total:g}%, it cannot exceed 100%")
    if require_full and abs(total - 100) > 1e-6:
        raise TradeRejected(f"Total target percentage must be exactly 100% (got {total:g}%)")
    return items


def compute_allocation(items, balances: dict, total_balance: float, position_status=None) -> list[dict]:
    """
    Per item: currentAmount (USD), targetAmount, currentPercent and the
    difference still to buy (positive) or sell (negative).
    """
    position_status = position_status or {}
    rows = []
    for it in items:
        coin = it["coin"]
        current = float(balances.get(base_asset(coin), 0.0))
        target = total_balance * float(it["targetPercent"]) / 100
        rows.append({
            **it,
            "currentAmount": current,
            "targetAmount": target,
            "currentPercent": (current / total_balance * 100) if total_balance > 0 else 0.0,
            "difference": target - current,
            "positionStatus": position_status.get(coin, "unknown"),
        })
    return rows


def active_default_items() -> list[dict]:
    rows = (DefaultCoin.query
            .filter_by(is_active=True)
            .order_by(DefaultCoin.display_order.asc())
            .all())
    return [{"coin": r.coin_symbol, "targetPercent": float(r.target_percentage),
             "display_order": r.display_order} for r in rows]


def resolve_allocation(user=None) -> list[dict]:
    """User's synced portfolio, else active default coins, else the built-in list."""
    if user is not None:
        stored = get_portfolio(user.id)
        if stored:
            items = normalize_items(stored["data"])
            if items:
                return items
    items = active_default_items()
    return items or fallback_items()


def seed_default_coins() -> int:
    if DefaultCoin.query.count():
        return 0
    for i, (coin, pct) in enumerate(FALLBACK_COINS):
        db.session.add(DefaultCoin(coin_symbol=coin, target_percentage=Decimal(str(pct)),
                                   display_order=i + 1, is_active=True))
    db.session.commit()
    log.info("seeded %d default coins", len(FALLBACK_COINS))
    return len(FALLBACK_COINS)


def replace_default_coins(items) -> list[dict]:
    """Replace the active default list; the new list must sum to exactly 100%."""
    items = validate_allocation(normalize_items(items), require_full=True)
    try:
        DefaultCoin.query.delete()
        for i, it in enumerate(items):
            db.session.add(DefaultCoin(coin_symbol=it["coin"],
                                       target_percentage=Decimal(str(it["targetPercent"])),
                                       display_order=it.get("display_order") or i + 1,
                                       is_active=True))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return active_default_items()
