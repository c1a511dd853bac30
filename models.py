# models.py
import uuid
from datetime import datetime

from database import db


def _uuid() -> str:
    return str(uuid.uuid4())


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    device_id = db.Column(db.String(128), unique=True, nullable=False, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Portfolio(db.Model):
    __tablename__ = "portfolios"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"),
                        unique=True, index=True)
    portfolio_data = db.Column(db.JSON, nullable=False)
    version = db.Column(db.Integer, default=1)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Credential(db.Model):
    __tablename__ = "credentials"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"),
                        unique=True, index=True)
    encrypted_credentials = db.Column(db.Text, nullable=False)
    version = db.Column(db.Integer, default=1)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class SyncLog(db.Model):
    __tablename__ = "sync_log"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    user_id = db.Column(db.String(36), db.ForeignKey("users.id", ondelete="CASCADE"), index=True)
    table_name = db.Column(db.String(64), nullable=False)
    record_id = db.Column(db.String(36), nullable=False)
    operation = db.Column(db.String(16), nullable=False)  # create / update / delete
    timestamp = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    device_id = db.Column(db.String(128), nullable=False)


class DefaultCoin(db.Model):
    __tablename__ = "default_coins"
    __table_args__ = (
        db.CheckConstraint("target_percentage >= 0 AND target_percentage <= 100",
                           name="ck_default_coins_pct"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    coin_symbol = db.Column(db.String(32), unique=True, nullable=False)
    target_percentage = db.Column(db.Numeric(5, 2), nullable=False)
    display_order = db.Column(db.Integer, default=0, index=True)
    is_active = db.Column(db.Boolean, default=True, index=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class TradingTransaction(db.Model):
    __tablename__ = "trading_transactions"
    __table_args__ = (
        db.CheckConstraint("transaction_type IN ('entry', 'exit')",
                           name="ck_trading_transactions_type"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    api_key_hash = db.Column(db.String(64), nullable=False, index=True)
    exchange = db.Column(db.String(16), default="binance")
    symbol = db.Column(db.String(32), nullable=False, index=True)
    side = db.Column(db.String(10), nullable=False)  # BUY / SELL
    quantity = db.Column(db.Numeric(20, 8), nullable=False)
    price = db.Column(db.Numeric(20, 8), nullable=False)
    total_value = db.Column(db.Numeric(20, 8), nullable=False)
    transaction_type = db.Column(db.String(8), nullable=False)  # entry / exit
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)


class PositionStatus(db.Model):
    __tablename__ = "position_status"
    __table_args__ = (db.UniqueConstraint("api_key_hash", "symbol", name="uq_position_status_key_symbol"),)

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    api_key_hash = db.Column(db.String(64), nullable=False, index=True)
    symbol = db.Column(db.String(32), nullable=False, index=True)
    is_open = db.Column(db.Boolean, default=False)
    last_transaction_type = db.Column(db.String(8))
    last_transaction_date = db.Column(db.DateTime, default=datetime.utcnow)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


REQUIRED_TABLES = [
    "trading_transactions",
    "position_status",
    "default_coins",
    "users",
    "portfolios",
    "credentials",
    "sync_log",
]
