import os
import time
import logging
import threading

import requests
from dotenv import load_dotenv

load_dotenv()

log = logging.getLogger("rebalancer.telegram")

# Telegram throttles bursts to a single chat
MIN_SPACING_SEC = 1.2

_lock = threading.Lock()
_last_send = 0.0


class TelegramError(RuntimeError):
    def __init__(self, message, status_code=500, result=None):
        super().__init__(message)
        self.status_code = status_code
        self.result = result or {}


def telegram_configured() -> bool:
    return bool(os.getenv("TELEGRAM_BOT_TOKEN")) and bool(os.getenv("TELEGRAM_CHAT_ID"))


def send_telegram_message(text: str, chat_id=None, parse_mode: str = "Markdown") -> dict:
    global _last_send
    token = os.getenv("TELEGRAM_BOT_TOKEN")
    chat_id = chat_id or os.getenv("TELEGRAM_CHAT_ID")
    if not token or not chat_id:
        raise TelegramError("Telegram is not configured (TELEGRAM_BOT_TOKEN / TELEGRAM_CHAT_ID)")

    with _lock:
        wait = MIN_SPACING_SEC - (time.monotonic() - _last_send)
        if wait > 0:
            time.sleep(wait)
        _last_send = time.monotonic()

    payload = {"chat_id": chat_id, "text": text}
    if parse_mode:
        payload["parse_mode"] = parse_mode

    try:
        r = requests.post(
            f"https://api.telegram.org/bot{token}/sendMessage",
            json=payload,
            timeout=10,
        )
    except requests.RequestException as e:
        raise TelegramError(f"Telegram request failed: {e}")

    try:
        result = r.json()
    except ValueError:
        result = {"ok": False, "description": r.text}
    if r.status_code != 200 or not result.get("ok", False):
        log.warning("[TG] send status %s: %s", r.status_code, result)
        raise TelegramError(result.get("description") or "Telegram error", 500, result)
    return result


def notify(text: str) -> bool:
    """Best-effort notification; never raises."""
    if not telegram_configured():
        return False
    try:
        send_telegram_message(text, parse_mode=None)
        return True
    except TelegramError as e:
        log.warning("[TG] notify failed: %s", e)
        return False
