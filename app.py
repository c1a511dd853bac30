# app.py
from __future__ import annotations

import os
import json
import logging
from datetime import datetime, timezone

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from sqlalchemy import func, inspect
from sqlalchemy.exc import SQLAlchemyError

from database import db, DATABASE_URL
from models import DefaultCoin, TradingTransaction, User, REQUIRED_TABLES
from exchanges.binance_spot import BinanceSpot
from exchanges.venues import make_venue, make_futures_view, require_keys
from strategies.rebalance import (
    active_default_items, compute_allocation, fallback_items, normalize_items,
    replace_default_coins, resolve_allocation, seed_default_coins,
    total_target_percent, validate_allocation,
)
from strategies.signal_executor import run_signal
from utils.db_logger import (
    DBLogger, calculate_portfolio_pnl, get_position_status, get_position_status_by_symbols,
)
from utils.errors import TradeRejected
from utils.exchange import describe_exchange_error, env_true, normalize_symbol
from utils.pnl import calculate_pnl_data
from utils.sync_store import (
    get_credentials, get_or_create_user, get_portfolio, get_sync_status,
    save_credentials, save_portfolio,
)
from utils.telegram import TelegramError, send_telegram_message, telegram_configured
from utils.vault import VaultError, generate_device_id, hash_api_key, mask_key


# =========================
# Load env & Flask config
# =========================
load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = Flask(__name__)
app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-fallback')
app.config['SQLALCHEMY_DATABASE_URI'] = DATABASE_URL
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False

app.config['UNSTAKE_BUFFER_PCT'] = float(os.getenv('UNSTAKE_BUFFER_PCT', '0.001'))
app.config['UNSTAKE_MIN_TRIGGER_USDT'] = float(os.getenv('UNSTAKE_MIN_TRIGGER_USDT', '0.1'))
app.config['UNSTAKE_SETTLE_SECONDS'] = float(os.getenv('UNSTAKE_SETTLE_SECONDS', '2'))
app.config['UNSTAKE_TOLERANCE_USDT'] = float(os.getenv('UNSTAKE_TOLERANCE_USDT', '0.01'))
app.config['FUTURES_LEVERAGE'] = float(os.getenv('FUTURES_LEVERAGE', '1'))
app.config.setdefault("SEED_DEFAULT_COINS", env_true("SEED_DEFAULT_COINS", "true"))

db.init_app(app)

# Shared secret for TradingView (body field "authKey")
WEBHOOK_AUTH_KEY = os.getenv("WEBHOOK_AUTH_KEY")
# Admin-only endpoints (X-Admin-Token header)
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN")


# --- DB bootstrap (runs once on startup) ---

def _bootstrap_db_once():
    try:
        with app.app_context():
            db.create_all()
            if app.config["SEED_DEFAULT_COINS"] and seed_default_coins():
                app.logger.info("DB ready: default coins seeded")
            else:
                app.logger.info("DB ready: tables exist")
    except SQLAlchemyError as e:
        # clear a failed transaction so future queries work
        db.session.rollback()
        app.logger.exception("DB bootstrap failed: %s", e)

_bootstrap_db_once()
# --- end bootstrap ---


# ============== Auth helpers ==============
def require_admin() -> bool:
    token = request.headers.get("X-Admin-Token")
    return bool(ADMIN_TOKEN) and token == ADMIN_TOKEN

def is_authorized(req) -> bool:
    if require_admin():
        return True
    if WEBHOOK_AUTH_KEY:
        if req.headers.get("X-Webhook-Secret") == WEBHOOK_AUTH_KEY:
            return True
        body = req.get_json(silent=True) or {}
        if body.get("authKey") == WEBHOOK_AUTH_KEY:
            return True
    return False


# ============== Request helpers ==============
def _body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}

def _creds_from(data: dict, exchange: str | None = None) -> dict:
    creds = {
        "exchange": (exchange or data.get("exchange") or "binance"),
        "apiKey": (data.get("apiKey") or "").strip(),
        "secretKey": (data.get("secretKey") or "").strip(),
    }
    if data.get("usdtEarnTarget") is not None:
        creds["usdtEarnTarget"] = data.get("usdtEarnTarget")
    return require_keys(creds)

def _as_float(value, field: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise TradeRejected(f"{field} must be a number")

def _exchange_failure(e: Exception, default: str):
    if isinstance(e, TradeRejected):
        return jsonify(e.to_dict()), e.status_code
    message, status = describe_exchange_error(e, default)
    if status >= 500:
        app.logger.exception("%s: %s", default, e)
    else:
        app.logger.warning("%s: %s", default, e)
    return jsonify({"error": message}), status

def _method_not_allowed(hint: str):
    return jsonify({"error": f"Method not supported. {hint}"}), 405


@app.errorhandler(TradeRejected)
def handle_trade_rejected(e: TradeRejected):
    return jsonify(e.to_dict()), e.status_code

@app.errorhandler(TelegramError)
def handle_telegram_error(e: TelegramError):
    app.logger.warning("Telegram error: %s", e)
    body = dict(e.result) if e.result else {}
    body.setdefault("error", str(e))
    return jsonify(body), e.status_code


@app.route("/healthz")
def healthz():
    return "ok", 200


# =========================
# Balances / portfolio
# =========================
@app.route('/api/balances', methods=['POST'])
def balances():
    creds = _creds_from(_body())
    try:
        venue = make_venue(creds, app.config)
        return jsonify(venue.balances())
    except Exception as e:
        return _exchange_failure(e, "Failed to fetch balances")

@app.route('/api/portfolio', methods=['POST'])
def portfolio():
    data = _body()
    creds = _creds_from(data)

    if data.get("portfolio"):
        items = normalize_items(data["portfolio"])
    elif data.get("deviceId"):
        items = resolve_allocation(get_or_create_user(data["deviceId"]))
    else:
        items = resolve_allocation()
    validate_allocation(items)

    try:
        venue = make_venue(creds, app.config)
        wb = venue.balances()
    except Exception as e:
        return _exchange_failure(e, "Failed to fetch balances")

    status = get_position_status_by_symbols(hash_api_key(creds["apiKey"]), [it["coin"] for it in items])
    rows = compute_allocation(items, wb["balances"], wb["totalBalance"], status)
    return jsonify({
        "success": True,
        "portfolio": rows,
        "totalBalance": wb["totalBalance"],
        "totalTargetPercent": total_target_percent(items),
        "walletBalances": wb["walletBalances"],
    })


# =========================
# Manual trading (Binance spot)
# =========================
@app.route('/api/trading', methods=['POST'])
def trading():
    data = _body()
    symbol = data.get('symbol')
    side = (data.get('side') or '').upper()
    quantity = data.get('quantity')

    if not data.get('apiKey') or not data.get('secretKey') or not symbol or not side or quantity is None:
        return jsonify({"error": "Missing required fields: apiKey, secretKey, symbol, side, quantity"}), 400
    if side not in ('BUY', 'SELL'):
        return jsonify({"error": 'Invalid side. Must be "BUY" or "SELL"'}), 400
    qty = _as_float(quantity, "quantity")
    if qty <= 0:
        return jsonify({"error": "Quantity must be greater than 0"}), 400

    creds = _creds_from(data, exchange="binance")
    symbol = normalize_symbol(symbol)
    try:
        spot = make_venue(creds, app.config)
        if side == 'BUY':
            fill = spot.buy_usd(symbol, qty)
        else:
            fill = spot.sell_quantity(symbol, qty)
    except Exception as e:
        return _exchange_failure(e, "Failed to execute trading order")

    try:
        DBLogger().log_transaction(hash_api_key(creds["apiKey"]), "binance", symbol, side,
                                   fill["quantity"], fill["price"],
                                   "entry" if side == "BUY" else "exit")
    except SQLAlchemyError:
        app.logger.exception("ledger write failed for manual %s %s", side, symbol)

    return jsonify({
        "success": True,
        "order": fill["order"],
        "symbol": symbol,
        "side": side,
        "quantity": fill["quantity"],
        "price": fill["price"],
        "totalValue": fill["totalValue"],
        "unstaked": fill.get("unstaked", 0.0),
        "message": (f"{side} order executed successfully for {fill['quantity']:.6f} {symbol} "
                    f"at {fill['price']:.2f} USDT"),
    })

@app.route('/api/trading/signal', methods=['POST'])
def trading_signal():
    if not is_authorized(request):
        return jsonify({'error': 'Unauthorized'}), 401
    data = _body()
    result = run_signal(data.get("action"), data.get("symbol"), data.get("side"),
                        data.get("alertMessage"), app.config)
    return jsonify(result), (200 if result["success"] else 500)


# =========================
# Staking (Simple Earn flexible)
# =========================
@app.route('/api/staking', methods=['POST'])
def staking():
    data = _body()
    action = (data.get('action') or '').lower()
    amount = data.get('amount')
    if not data.get('apiKey') or not data.get('secretKey') or not action or amount is None:
        return jsonify({"error": "Missing required fields: apiKey, secretKey, action, amount"}), 400
    if action not in ('stake', 'unstake'):
        return jsonify({"error": 'Invalid action. Must be "stake" or "unstake"'}), 400
    amount = _as_float(amount, "amount")
    if amount <= 0:
        return jsonify({"error": "Amount must be greater than 0"}), 400

    creds = _creds_from(data, exchange="binance")
    try:
        spot: BinanceSpot = make_venue(creds, app.config)
        if action == 'stake':
            out = spot.stake_usdt(amount, data.get('productId'))
            message = f"Successfully staked {amount} USDT to simple earn"
        else:
            out = spot.unstake_usdt(amount)
            message = f"Successfully initiated unstaking of {amount} USDT from simple earn"
    except Exception as e:
        return _exchange_failure(e, f"Failed to {action} USDT")

    return jsonify({
        "success": True,
        "result": out.get("result"),
        "message": message,
        "amount": amount,
        "action": action,
    })


# =========================
# Futures / PNL
# =========================
@app.route('/api/futures-positions', methods=['POST'])
def futures_positions():
    creds = _creds_from(_body())
    try:
        view = make_futures_view(creds, app.config)
        return jsonify({"success": True, **view.open_positions()})
    except Exception as e:
        return _exchange_failure(e, "Failed to fetch futures positions")

@app.route('/api/pnl', methods=['POST'])
def pnl():
    data = _body()
    creds = _creds_from(data, exchange="binance")
    assets = data.get('assets')
    if not assets or not isinstance(assets, list):
        return jsonify({"error": "Assets array is required"}), 400
    try:
        spot = make_venue(creds, app.config)
        return jsonify({"success": True, "pnlData": calculate_pnl_data(spot, [str(a).upper() for a in assets])})
    except Exception as e:
        return _exchange_failure(e, "Failed to calculate PNL")

@app.route('/api/pnl-history', methods=['POST'])
def pnl_history():
    api_key = (_body().get('apiKey') or '').strip()
    if not api_key:
        return jsonify({"error": "API key is required"}), 400
    try:
        return jsonify({"success": True, "pnlData": calculate_portfolio_pnl(hash_api_key(api_key))})
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.exception("pnl-history failed: %s", e)
        return jsonify({"error": "Failed to calculate P&L history"}), 500

@app.route('/api/pnl-history', methods=['GET'])
def pnl_history_get():
    return _method_not_allowed("Use POST to retrieve P&L data.")

@app.route('/api/position-status', methods=['GET'])
def position_status():
    api_key = request.args.get('apiKey')
    symbol = request.args.get('symbol')
    symbols = request.args.get('symbols')
    if not api_key:
        return jsonify({"error": "API key is required"}), 400

    key_hash = hash_api_key(api_key)
    if symbols:
        try:
            wanted = json.loads(symbols)
        except ValueError:
            wanted = None
        if not isinstance(wanted, list) or not all(isinstance(s, str) for s in wanted):
            return jsonify({"error": "Invalid symbols format. Should be JSON array of strings."}), 400
        status = get_position_status_by_symbols(key_hash, [normalize_symbol(s) for s in wanted])
    else:
        status = get_position_status(key_hash, normalize_symbol(symbol) if symbol else None)
    return jsonify({"success": True, "positionStatus": status})

@app.route('/api/position-status', methods=['POST'])
def position_status_post():
    return _method_not_allowed("Use GET to fetch position status.")


# =========================
# Default coins
# =========================
@app.route('/api/default-coins', methods=['GET'])
def default_coins():
    try:
        coins = active_default_items()
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.warning("default coins unavailable, using fallback: %s", e)
        coins = []
    if not coins:
        return jsonify({"coins": fallback_items(), "source": "fallback"})
    return jsonify({"coins": coins, "source": "database"})

@app.route('/api/default-coins', methods=['PUT'])
def default_coins_put():
    if not require_admin():
        return jsonify({'error': 'Unauthorized'}), 401
    coins = replace_default_coins(_body().get("coins") or [])
    app.logger.info("default coins replaced (%d coins)", len(coins))
    return jsonify({"success": True, "coins": coins})


# =========================
# Credentials
# =========================
@app.route('/api/test-credentials', methods=['POST'])
def test_credentials():
    creds = _creds_from(_body())
    try:
        info = make_venue(creds, app.config).test_credentials()
    except Exception as e:
        app.logger.warning("credential test failed: %s", e)
        return jsonify({"error": "Invalid credentials or API error"}), 401
    return jsonify({"success": True, "message": "Credentials are valid", **info})

@app.route('/api/debug-credentials', methods=['GET'])
def debug_credentials():
    if not require_admin():
        return jsonify({'error': 'Unauthorized'}), 401
    device_id = request.args.get('deviceId')
    user = User.query.filter_by(device_id=device_id).first() if device_id else None

    stored, decrypt_error = None, None
    if user:
        try:
            stored = get_credentials(user.id)
        except (VaultError, ValueError) as e:
            decrypt_error = str(e)

    data = (stored or {}).get("data") or {}
    return jsonify({
        "success": True,
        "deviceId": device_id,
        "userId": user.id if user else None,
        "hasCredentials": bool(stored) or decrypt_error is not None,
        "credentials": {
            "exchange": data.get("exchange", "binance") if data else None,
            "apiKey": mask_key(data.get("apiKey")) if data else None,
            "hasSecretKey": bool(data.get("secretKey")),
            "usdtEarnTarget": data.get("usdtEarnTarget"),
            "version": (stored or {}).get("version"),
        },
        "decryptError": decrypt_error,
        "environment": {
            "DATABASE_URL": bool(os.getenv("DATABASE_URL")),
            "ENCRYPTION_KEY": bool(os.getenv("ENCRYPTION_KEY")),
            "WEBHOOK_AUTH_KEY": bool(WEBHOOK_AUTH_KEY),
            "TELEGRAM": telegram_configured(),
        },
        "message": "Debug information retrieved successfully",
    })


# =========================
# Sync
# =========================
@app.route('/api/sync/credentials', methods=['POST'])
def sync_credentials_post():
    data = _body()
    credentials = data.get('credentials')
    if not credentials or not isinstance(credentials, dict):
        return jsonify({"error": "Credentials data is required"}), 400
    device_id = data.get('deviceId') or generate_device_id()
    try:
        user = get_or_create_user(device_id)
        saved = save_credentials(user.id, credentials, device_id)
    except (VaultError, SQLAlchemyError) as e:
        app.logger.exception("Credentials sync error: %s", e)
        return jsonify({"error": str(e) or "Failed to sync credentials"}), 500
    return jsonify({"success": True, "deviceId": device_id, "version": saved["version"],
                    "message": "Credentials synced successfully"})

@app.route('/api/sync/credentials', methods=['GET'])
def sync_credentials_get():
    device_id = request.args.get('deviceId')
    if not device_id:
        return jsonify({"error": "Device ID is required"}), 400
    try:
        user = get_or_create_user(device_id)
        stored = get_credentials(user.id)
    except (VaultError, SQLAlchemyError, ValueError) as e:
        app.logger.exception("Credentials fetch error: %s", e)
        return jsonify({"error": str(e) or "Failed to fetch credentials"}), 500
    if not stored:
        return jsonify({"success": True, "data": None, "message": "No credentials found"})
    return jsonify({
        "success": True,
        "data": stored["data"],
        "version": stored["version"],
        "updatedAt": stored["updatedAt"].isoformat() if stored["updatedAt"] else None,
        "message": "Credentials retrieved successfully",
    })

@app.route('/api/sync/portfolio', methods=['POST'])
def sync_portfolio_post():
    data = _body()
    if not data.get('portfolio'):
        return jsonify({"error": "Portfolio data is required"}), 400
    items = validate_allocation(normalize_items(data['portfolio']))
    device_id = data.get('deviceId') or generate_device_id()
    try:
        user = get_or_create_user(device_id)
        saved = save_portfolio(user.id, items, device_id)
    except SQLAlchemyError as e:
        app.logger.exception("Portfolio sync error: %s", e)
        return jsonify({"error": "Failed to sync portfolio"}), 500
    return jsonify({"success": True, "deviceId": device_id, "version": saved["version"],
                    "message": "Portfolio synced successfully"})

@app.route('/api/sync/portfolio', methods=['GET'])
def sync_portfolio_get():
    device_id = request.args.get('deviceId')
    if not device_id:
        return jsonify({"error": "Device ID is required"}), 400
    user = get_or_create_user(device_id)
    stored = get_portfolio(user.id)
    if not stored:
        return jsonify({"success": True, "data": None, "message": "No portfolio found"})
    return jsonify({
        "success": True,
        "data": stored["data"],
        "version": stored["version"],
        "updatedAt": stored["updatedAt"].isoformat() if stored["updatedAt"] else None,
        "message": "Portfolio retrieved successfully",
    })

@app.route('/api/sync/status', methods=['GET'])
def sync_status():
    device_id = request.args.get('deviceId')
    if not device_id:
        return jsonify({"error": "Device ID is required"}), 400
    since = None
    raw = request.args.get('lastSyncTime')
    if raw:
        try:
            since = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            if since.tzinfo is not None:
                since = since.astimezone(timezone.utc).replace(tzinfo=None)
        except ValueError:
            return jsonify({"error": "lastSyncTime must be an ISO-8601 timestamp"}), 400
    user = get_or_create_user(device_id)
    return jsonify({
        "success": True,
        "changes": get_sync_status(user.id, since),
        "serverTime": datetime.utcnow().isoformat(),
    })


# =========================
# Database status
# =========================
@app.route('/api/database-status', methods=['GET'])
def database_status():
    try:
        names = sorted(inspect(db.engine).get_table_names())
        existing = [t for t in REQUIRED_TABLES if t in names]
        missing = [t for t in REQUIRED_TABLES if t not in names]

        tx_count = TradingTransaction.query.count() if "trading_transactions" in names else 0
        coin_count, coin_total = 0, 0.0
        if "default_coins" in names:
            coin_count, coin_total = (db.session.query(func.count(DefaultCoin.id),
                                                       func.sum(DefaultCoin.target_percentage))
                                      .filter(DefaultCoin.is_active.is_(True))
                                      .one())
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.exception("Database status check error: %s", e)
        return jsonify({"success": False, "error": "Failed to check database status"}), 500

    return jsonify({
        "success": True,
        "database": {
            "tables": {"existing": existing, "missing": missing, "all": names},
            "data": {
                "trading_transactions": tx_count,
                "default_coins": {"count": coin_count or 0, "total_percentage": float(coin_total or 0)},
            },
            "status": "healthy" if not missing else "needs_initialization",
        },
    })

@app.route('/api/database-status', methods=['POST'])
def database_init():
    if not require_admin():
        return jsonify({'error': 'Unauthorized'}), 401
    try:
        db.create_all()
        seeded = seed_default_coins()
    except SQLAlchemyError as e:
        db.session.rollback()
        app.logger.exception("Database initialization error: %s", e)
        return jsonify({"success": False, "error": "Failed to initialize database"}), 500
    return jsonify({
        "success": True,
        "message": "Database initialized successfully",
        "tables": sorted(inspect(db.engine).get_table_names()),
        "seededDefaultCoins": seeded,
    })


# =========================
# Alerts / webhook
# =========================
@app.route('/api/alert', methods=['POST'])
def alert():
    data = _body()
    text = data.get('text')
    if not text:
        return jsonify({"error": "Missing text"}), 400
    result = send_telegram_message(str(text), chat_id=data.get('chat_id'))
    return jsonify({"ok": True, "result": result})

@app.route('/api/webhook/tradingview', methods=['POST'])
def tradingview_webhook():
    app.logger.info("TV webhook hit: %s", request.headers.get("User-Agent"))
    data = _body()

    if not WEBHOOK_AUTH_KEY:
        app.logger.error("WEBHOOK_AUTH_KEY is not set")
        return jsonify({"error": "Webhook authentication not configured"}), 500
    if data.get('authKey') != WEBHOOK_AUTH_KEY:
        return jsonify({"error": "Invalid authentication key provided"}), 401

    action = data.get('action')
    result = run_signal(action, data.get('symbol'), data.get('side'), data.get('alertMessage'), app.config)
    if not result["success"]:
        return jsonify({"error": "Trading action failed", "details": result}), 500
    return jsonify({
        "success": True,
        "message": f"Successfully processed {result['action']} action",
        "action": result["action"],
        "symbol": result.get("symbol") or "ALL",
        "result": result,
    })

@app.route('/api/webhook/tradingview', methods=['GET'])
def tradingview_webhook_get():
    return _method_not_allowed("Use POST to process TradingView webhooks.")


if __name__ == "__main__":
    port = int(os.getenv("PORT", "5000"))
    app.run(host="0.0.0.0", port=port, debug=env_true("FLASK_DEBUG", "false"))
