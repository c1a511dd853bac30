"""
Per-device storage of portfolios and encrypted exchange credentials.

Every write bumps the row version and appends a ``sync_log`` entry so other
devices can see what changed since their last sync.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime

from database import db
from models import User, Portfolio, Credential, SyncLog
from utils.vault import encrypt, decrypt, VaultError

log = logging.getLogger("rebalancer.sync")


def get_or_create_user(device_id: str) -> User:
    user = User.query.filter_by(device_id=device_id).first()
    if user:
        return user
    user = User(device_id=device_id)
    db.session.add(user)
    db.session.commit()
    log.info("created user %s for device %s", user.id, device_id)
    return user


def _log_sync(user_id: str, table_name: str, record_id: str, operation: str, device_id: str):
    db.session.add(SyncLog(user_id=user_id, table_name=table_name, record_id=record_id,
                           operation=operation, device_id=device_id))


def _upsert(model, user_id: str, device_id: str, **values):
    row = model.query.filter_by(user_id=user_id).first()
    try:
        if row:
            for k, v in values.items():
                setattr(row, k, v)
            row.version = (row.version or 0) + 1
            row.updated_at = datetime.utcnow()
            operation = "update"
        else:
            row = model(user_id=user_id, version=1, **values)
            db.session.add(row)
            operation = "create"
        db.session.flush()
        _log_sync(user_id, model.__tablename__, row.id, operation, device_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return {"id": row.id, "version": row.version}


def save_portfolio(user_id: str, portfolio_data, device_id: str) -> dict:
    return _upsert(Portfolio, user_id, device_id, portfolio_data=portfolio_data)


def get_portfolio(user_id: str):
    row = Portfolio.query.filter_by(user_id=user_id).first()
    if not row:
        return None
    return {"data": row.portfolio_data, "version": row.version, "updatedAt": row.updated_at}


def save_credentials(user_id: str, credentials: dict, device_id: str) -> dict:
    blob = encrypt(json.dumps(credentials))
    return _upsert(Credential, user_id, device_id, encrypted_credentials=blob)


def get_credentials(user_id: str):
    row = Credential.query.filter_by(user_id=user_id).first()
    if not row:
        return None
    return {
        "data": json.loads(decrypt(row.encrypted_credentials)),
        "version": row.version,
        "updatedAt": row.updated_at,
    }


def get_sync_status(user_id: str, last_sync_time: datetime | None = None) -> list[dict]:
    q = SyncLog.query.filter_by(user_id=user_id)
    if last_sync_time is not None:
        q = q.filter(SyncLog.timestamp > last_sync_time)
    return [
        {
            "table_name": r.table_name,
            "record_id": r.record_id,
            "operation": r.operation,
            "timestamp": r.timestamp.isoformat() if r.timestamp else None,
            "device_id": r.device_id,
        }
        for r in q.order_by(SyncLog.timestamp.asc()).all()
    ]


def iter_credential_sets():
    """Yield (user, credentials dict) for every stored credential row that decrypts."""
    rows = (db.session.query(Credential, User)
            .join(User, User.id == Credential.user_id)
            .order_by(Credential.created_at.asc())
            .all())
    for cred, user in rows:
        try:
            data = json.loads(decrypt(cred.encrypted_credentials))
        except (VaultError, ValueError) as e:
            log.warning("skipping credentials for user %s: %s", user.id, e)
            continue
        if not data.get("apiKey") or not data.get("secretKey"):
            log.warning("skipping incomplete credentials for user %s", user.id)
            continue
        yield user, data
