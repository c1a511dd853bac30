"""
Runs an open/close/alert signal against every stored credential set.

Accounts are processed one after another; a failure on one account is
recorded in its result and the loop moves on.
"""
from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from database import db
from exchanges.venues import exchange_of, make_venue
from strategies.rebalance import resolve_allocation, target_percent_for
from utils.db_logger import DBLogger
from utils.errors import TradeRejected, TradeSkipped
from utils.exchange import describe_exchange_error, normalize_symbol
from utils.sync_store import iter_credential_sets
from utils.telegram import notify, send_telegram_message
from utils.vault import hash_api_key

log = logging.getLogger("rebalancer.signals")

ACTIONS = ("open", "close", "alert")


def validate_signal(action, symbol=None, side=None, alert_message=None):
    if not action:
        raise TradeRejected("Missing required field: action")
    action = str(action).strip().lower()
    if action not in ACTIONS:
        raise TradeRejected('Invalid action. Must be "open", "close", or "alert"')
    if action in ("open", "close") and not symbol:
        raise TradeRejected(f'Symbol is required for "{action}" action')
    if action == "open":
        side = str(side or "").strip().upper()
        if side not in ("LONG", "SHORT"):
            raise TradeRejected('Side is required for "open" action. Must be "LONG" or "SHORT"')
    else:
        side = None
    if action == "alert" and not alert_message:
        raise TradeRejected('Alert message is required for "alert" action')
    return action, (normalize_symbol(symbol) if symbol else None), side


def _record(ledger: DBLogger, key_hash: str, exchange: str, fill: dict, side: str, ttype: str):
    try:
        ledger.log_transaction(key_hash, exchange, fill["symbol"], side,
                               fill["quantity"], fill["price"], ttype)
        return None
    except SQLAlchemyError as e:
        # the order is already on the exchange; keep the result and surface the ledger gap
        log.exception("ledger write failed for %s %s", exchange, fill.get("symbol"))
        return str(e)


def _strip(fill: dict) -> dict:
    order = fill.get("order") or {}
    row = {k: v for k, v in fill.items() if k != "order"}
    row["orderId"] = order.get("orderId") or order.get("id")
    return row


def execute_for_credentials(creds: dict, action: str, symbol: str, side, allocation,
                            config=None, ledger: DBLogger | None = None) -> dict:
    """
    Execute one signal on one account. Returns ``{"message", "fills"}``;
    raises TradeSkipped when there is nothing to do for this account.
    """
    ledger = ledger or DBLogger()
    name = exchange_of(creds)
    key_hash = hash_api_key(creds["apiKey"])

    if action == "open":
        if name == "binance" and side == "SHORT":
            raise TradeSkipped("SHORT signals are not traded on Binance spot")
        pct = target_percent_for(symbol, allocation)
        if not pct or pct <= 0:
            raise TradeSkipped(f"{symbol} is not in the target allocation")

    venue = make_venue(creds, config)
    fills, ledger_errors = [], []
    restake_error = None

    if name == "binance":
        if action == "open":
            fill = venue.buy_to_target(symbol, pct)
            err = _record(ledger, key_hash, name, fill, "BUY", "entry")
            fills.append(fill)
            message = f"Bought {fill['quantity']} {symbol} @ {fill['price']}"
        else:
            fill = venue.sell_all(symbol)
            err = _record(ledger, key_hash, name, fill, "SELL", "exit")
            fills.append(fill)
            message = f"Sold {fill['quantity']} {symbol} @ {fill['price']}"
            try:
                restake = venue.restake_idle_usdt(creds.get("usdtEarnTarget"))
            except Exception as e:
                # the sell already filled; report the restake problem beside it
                log.warning("restake after closing %s failed: %s", symbol, e)
                restake_error, _ = describe_exchange_error(e, "Restake failed")
                restake = None
            if restake:
                message += f", restaked {restake['amount']:.2f} USDT"
            elif restake_error:
                message += f", restake failed: {restake_error}"
        if err:
            ledger_errors.append(err)
    else:
        if action == "open":
            fill = venue.open_position(symbol, side, pct)
            err = _record(ledger, key_hash, name, fill, "BUY" if side == "LONG" else "SELL", "entry")
            fills.append(fill)
            if err:
                ledger_errors.append(err)
            message = f"Opened {side} {fill['quantity']} {symbol} @ {fill['price']}"
        else:
            for fill in venue.close_position(symbol):
                err = _record(ledger, key_hash, name, fill,
                              "SELL" if fill["side"] == "LONG" else "BUY", "exit")
                fills.append(fill)
                if err:
                    ledger_errors.append(err)
            message = f"Closed {len(fills)} position(s) on {symbol}"

    out = {"message": message, "fills": [_strip(f) for f in fills]}
    if ledger_errors:
        out["ledgerErrors"] = ledger_errors
    if restake_error:
        out["restakeError"] = restake_error
    return out


def _summary(action, symbol, side, results, success) -> str:
    head = f"{'OK' if success else 'FAILED'} {action.upper()} {symbol}" + (f" {side}" if side else "")
    lines = [head]
    for r in results:
        lines.append(f"- {r['exchange']} {r['apiKeyHash']}: {r['status']} {r['message']}")
    if not results:
        lines.append("- no stored credentials")
    return "\n".join(lines)


def run_signal(action, symbol=None, side=None, alert_message=None, config=None) -> dict:
    action, symbol, side = validate_signal(action, symbol, side, alert_message)

    if action == "alert":
        send_telegram_message(str(alert_message), parse_mode=None)
        return {"success": True, "action": "alert", "message": "Alert sent to Telegram"}

    ledger = DBLogger()
    results = []
    for user, creds in iter_credential_sets():
        row = {
            "exchange": str(creds.get("exchange") or "binance").lower(),
            "apiKeyHash": hash_api_key(creds["apiKey"])[:12],
            "deviceId": user.device_id,
        }
        try:
            allocation = resolve_allocation(user)
            out = execute_for_credentials(creds, action, symbol, side, allocation, config, ledger)
            row.update(status="success", **out)
        except TradeSkipped as e:
            row.update(status="skipped", message=str(e))
        except Exception as e:
            if isinstance(e, SQLAlchemyError):
                db.session.rollback()
            message, _ = describe_exchange_error(e, "Trade failed")
            log.warning("[%s %s] %s %s failed: %s", row["exchange"], row["apiKeyHash"], action, symbol, e)
            row.update(status="error", message=message)
        results.append(row)

    success = any(r["status"] != "error" for r in results)
    notify(_summary(action, symbol, side, results, success))
    log.info("signal %s %s %s: %d accounts, success=%s", action, symbol, side or "", len(results), success)
    return {
        "success": success,
        "action": action,
        "symbol": symbol,
        "side": side,
        "results": results,
        "message": (f"{action} {symbol} processed for {len(results)} account(s)"
                    if results else "No stored credentials to trade with"),
    }
