from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from database import db
from models import TradingTransaction, PositionStatus

log = logging.getLogger("rebalancer.ledger")


class DBLogger:
    """Trade ledger: every executed order becomes an entry or exit row."""

    def log_transaction(self, api_key_hash: str, exchange: str, symbol: str, side: str,
                        quantity: float, price: float, transaction_type: str):
        if transaction_type not in ("entry", "exit"):
            raise ValueError(f"transaction_type must be entry or exit, got {transaction_type!r}")
        symbol = symbol.upper()
        try:
            db.session.add(TradingTransaction(
                api_key_hash=api_key_hash,
                exchange=exchange,
                symbol=symbol,
                side=side.upper(),
                quantity=quantity,
                price=price,
                total_value=float(quantity) * float(price),
                transaction_type=transaction_type,
            ))
            self._touch_position(api_key_hash, symbol, transaction_type)
            db.session.commit()
            log.info("Logged %s %s %s qty=%s @ %s", transaction_type, side, symbol, quantity, price)
        except SQLAlchemyError as e:
            db.session.rollback()
            log.warning("DB logging error: %s", e)
            raise

    def _touch_position(self, api_key_hash: str, symbol: str, transaction_type: str):
        row = PositionStatus.query.filter_by(api_key_hash=api_key_hash, symbol=symbol).first()
        if not row:
            row = PositionStatus(api_key_hash=api_key_hash, symbol=symbol)
            db.session.add(row)
        row.is_open = transaction_type == "entry"
        row.last_transaction_type = transaction_type
        row.last_transaction_date = datetime.utcnow()


def _status_dict(row: PositionStatus) -> dict:
    return {
        "symbol": row.symbol,
        "isOpen": bool(row.is_open),
        "lastTransactionType": row.last_transaction_type,
        "lastTransactionDate": row.last_transaction_date.isoformat() if row.last_transaction_date else None,
    }


def get_position_status(api_key_hash: str, symbol: str | None = None) -> list[dict]:
    q = PositionStatus.query.filter_by(api_key_hash=api_key_hash)
    if symbol:
        q = q.filter_by(symbol=symbol.upper())
    return [_status_dict(r) for r in q.order_by(PositionStatus.symbol.asc()).all()]


def get_position_status_by_symbols(api_key_hash: str, symbols) -> dict[str, str]:
    wanted = [str(s).upper() for s in symbols]
    rows = (PositionStatus.query
            .filter(PositionStatus.api_key_hash == api_key_hash)
            .filter(PositionStatus.symbol.in_(wanted))
            .all()) if wanted else []
    found = {r.symbol: ("open" if r.is_open else "closed") for r in rows}
    return {s: found.get(s, "unknown") for s in wanted}


def calculate_portfolio_pnl(api_key_hash: str) -> dict:
    """
    Realized PNL from the ledger using average cost per symbol.
    Exits beyond the open quantity are ignored for cost purposes.
    """
    rows = (TradingTransaction.query
            .filter_by(api_key_hash=api_key_hash)
            .order_by(TradingTransaction.created_at.asc())
            .all())

    books: dict[str, dict] = {}
    for t in rows:
        b = books.setdefault(t.symbol, {"qty": 0.0, "cost": 0.0, "realized": 0.0,
                                        "closed_cost": 0.0, "entries": 0, "exits": 0})
        qty = float(t.quantity)
        px = float(t.price)
        if t.transaction_type == "entry":
            b["qty"] += qty
            b["cost"] += qty * px
            b["entries"] += 1
            continue
        b["exits"] += 1
        matched = min(qty, b["qty"])
        if matched <= 0:
            continue
        avg = b["cost"] / b["qty"]
        b["realized"] += matched * (px - avg)
        b["closed_cost"] += matched * avg
        b["qty"] -= matched
        b["cost"] -= matched * avg

    breakdown = []
    total_pnl = 0.0
    total_cost = 0.0
    for symbol, b in sorted(books.items()):
        total_pnl += b["realized"]
        total_cost += b["closed_cost"]
        breakdown.append({
            "symbol": symbol,
            "realizedPNL": b["realized"],
            "pnlPercentage": (b["realized"] / b["closed_cost"] * 100) if b["closed_cost"] > 0 else 0.0,
            "entries": b["entries"],
            "exits": b["exits"],
            "openQuantity": b["qty"],
            "isOpen": b["qty"] > 1e-12,
        })

    return {
        "totalPNL": total_pnl,
        "totalPNLPercentage": (total_pnl / total_cost * 100) if total_cost > 0 else 0.0,
        "breakdown": breakdown,
    }
