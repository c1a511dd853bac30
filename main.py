import sys
import json
import argparse

from dotenv import load_dotenv

load_dotenv()

from app import app
from database import db
from strategies.rebalance import seed_default_coins
from strategies.signal_executor import run_signal
from utils.errors import TradeRejected
from utils.telegram import TelegramError


def cmd_signal(args) -> int:
    with app.app_context():
        try:
            result = run_signal(args.action, args.symbol if args.action != "alert" else None,
                                args.side, args.symbol if args.action == "alert" else None,
                                app.config)
        except (TradeRejected, TelegramError) as e:
            print(f"error: {e}", file=sys.stderr)
            return 2
    print(json.dumps(result, indent=2, default=str))
    return 0 if result["success"] else 1


def cmd_init_db(args) -> int:
    with app.app_context():
        db.create_all()
        seeded = seed_default_coins()
    print(f"tables ready, seeded {seeded} default coins")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Portfolio rebalancer maintenance and signal runner")
    sub = parser.add_subparsers(dest="command", required=True)

    sig = sub.add_parser("signal", help="Run an open/close/alert signal against all stored accounts")
    sig.add_argument("action", choices=("open", "close", "alert"))
    sig.add_argument("symbol", help="Trading pair (ENAUSDT or ENA), or the message text for alert")
    sig.add_argument("--side", choices=("LONG", "SHORT"), type=str.upper)
    sig.set_defaults(func=cmd_signal)

    init = sub.add_parser("init-db", help="Create tables and seed default coins")
    init.set_defaults(func=cmd_init_db)
    return parser


if __name__ == "__main__":
    args = build_parser().parse_args()
    sys.exit(args.func(args))
