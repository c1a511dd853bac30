import os
import base64
import hashlib
import secrets

from cryptography.fernet import Fernet, InvalidToken
from dotenv import load_dotenv

load_dotenv()

_PREFIX = "v1:"


class VaultError(RuntimeError):
    pass


def _fernet() -> Fernet:
    raw = (os.getenv("ENCRYPTION_KEY") or "").strip()
    if not raw:
        raise VaultError("ENCRYPTION_KEY is required")
    key = base64.urlsafe_b64encode(hashlib.sha256(raw.encode("utf-8")).digest())
    return Fernet(key)


def encrypt(text: str) -> str:
    token = _fernet().encrypt(text.encode("utf-8")).decode("utf-8")
    return f"{_PREFIX}{token}"


def decrypt(value: str) -> str:
    raw = (value or "").strip()
    if not raw.startswith(_PREFIX):
        raise VaultError("unsupported credential blob format")
    try:
        return _fernet().decrypt(raw[len(_PREFIX):].encode("utf-8")).decode("utf-8")
    except InvalidToken:
        raise VaultError("failed to decrypt stored credentials")


def generate_device_id() -> str:
    return secrets.token_hex(16)


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256((api_key or "").encode("utf-8")).hexdigest()


def mask_key(api_key: str) -> str:
    raw = str(api_key or "").strip()
    if len(raw) <= 8:
        return "*" * len(raw)
    return f"{raw[:4]}{'*' * (len(raw) - 8)}{raw[-4:]}"
