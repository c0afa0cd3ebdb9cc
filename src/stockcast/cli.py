"""CLI entry point for Stockcast.

Provides commands for operating the prediction engine:
  - migrate: Run database migrations
  - evaluate: Run one evaluation tick
  - scheduler: Run the evaluation loop in the foreground
  - price-refresh: Pull instrument prices from yfinance
  - add-instrument: Register tradable instruments
  - status: Show prediction counts and the leaderboard
  - token: Issue a JWT for a user
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from stockcast.config import AppConfig, load_config
from stockcast.registry.db import Database
from stockcast.registry.queries import Registry


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _connect(config: AppConfig, pooled: bool = False) -> tuple[Database, Registry]:
    db = Database(config.db_dsn)
    db.connect(pooled=pooled)
    return db, Registry(db)


def _build_scheduler(config: AppConfig, registry: Registry):
    from stockcast.data.price_source import build_price_source
    from stockcast.lifecycle.notifications import NotificationDispatcher
    from stockcast.lifecycle.reputation import ReputationEngine
    from stockcast.lifecycle.scheduler import EvaluationScheduler

    price_source = build_price_source(config, registry)
    return EvaluationScheduler.from_config(
        config,
        registry,
        price_source,
        ReputationEngine(registry),
        NotificationDispatcher(registry),
    )


def cmd_migrate(args: argparse.Namespace) -> None:
    """Run database migrations."""
    config = load_config()
    db, _ = _connect(config)
    try:
        applied = db.run_migrations()
    finally:
        db.close()
    if applied:
        print(f"Applied {len(applied)} migration(s): {', '.join(applied)}")
    print("Migrations complete.")


def cmd_evaluate(args: argparse.Namespace) -> None:
    """Run one evaluation tick and print the result."""
    config = load_config()
    db, registry = _connect(config)
    try:
        scheduler = _build_scheduler(config, registry)
        result = scheduler.run_once()
    finally:
        db.close()
    print(json.dumps(result.to_dict(), indent=2))


def cmd_scheduler(args: argparse.Namespace) -> None:
    """Run the evaluation loop until interrupted."""
    config = load_config()
    db, registry = _connect(config, pooled=True)
    scheduler = _build_scheduler(config, registry)
    if args.interval:
        scheduler.interval_seconds = args.interval

    try:
        asyncio.run(scheduler.run_forever())
    except KeyboardInterrupt:
        logging.info("Scheduler interrupted")
    finally:
        db.close()


def cmd_price_refresh(args: argparse.Namespace) -> None:
    """Refresh stored instrument prices from yfinance."""
    from stockcast.data.price_refresh import refresh_instrument_prices
    from stockcast.data.yfinance_client import YFinanceClient

    config = load_config()
    db, registry = _connect(config)
    try:
        summary = refresh_instrument_prices(registry, YFinanceClient(cache_ttl_seconds=0))
    finally:
        db.close()
    msg = f"Price refresh: {summary['updated']}/{summary['requested']} instruments updated"
    logging.info(msg)
    print(msg)
    if summary["missing"]:
        print(f"  No price: {', '.join(summary['missing'])}")


def cmd_add_instrument(args: argparse.Namespace) -> None:
    """Register instruments that predictions may reference."""
    config = load_config()
    db, registry = _connect(config)
    try:
        for ticker in args.tickers:
            registry.add_instrument(ticker.strip().upper(), args.name or "")
    finally:
        db.close()
    print(f"Registered {len(args.tickers)} instrument(s).")


def cmd_status(args: argparse.Namespace) -> None:
    """Show prediction counts and the leaderboard."""
    from datetime import UTC, datetime

    from stockcast.lifecycle.reputation import reputation_tier

    config = load_config()
    db, registry = _connect(config)
    try:
        stats = registry.get_prediction_stats()
        pending = registry.count_pending()
        due = registry.count_pending(due_before=datetime.now(UTC))
        leaders = registry.get_leaderboard(args.limit)
    finally:
        db.close()

    print("Predictions:")
    print(f"  Total: {stats['total']}")
    print(f"  Pending: {pending} ({due} due)")
    print(f"  Evaluated: {stats['evaluated']} ({stats['correct']} correct)")

    if leaders:
        print(f"\nTop {len(leaders)} by reputation:")
        for i, r in enumerate(leaders, 1):
            print(
                f"  {i:2d}. {r.user_id:20s} "
                f"score={r.reputation_score:>9} "
                f"acc={r.accuracy_pct:5.1f}% "
                f"n={r.total_predictions} "
                f"[{reputation_tier(r.reputation_score)}]"
            )


def cmd_token(args: argparse.Namespace) -> None:
    """Issue a JWT for a user (for testing and trusted integrations)."""
    from stockcast.api.auth import create_token

    config = load_config()
    if not config.auth_secret_key:
        print("AUTH_SECRET_KEY is not set.", file=sys.stderr)
        sys.exit(1)
    hours = args.hours or config.auth_token_expiry_hours
    print(create_token(config.auth_secret_key, hours, args.user_id))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="stockcast",
        description="Prediction lifecycle and evaluation engine",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")

    subs = parser.add_subparsers(dest="command", required=True)

    # migrate
    subs.add_parser("migrate", help="Run database migrations")

    # evaluate
    subs.add_parser("evaluate", help="Run one evaluation tick")

    # scheduler
    p_sched = subs.add_parser("scheduler", help="Run the evaluation loop")
    p_sched.add_argument("--interval", type=int, default=None, help="Seconds between ticks")

    # price-refresh
    subs.add_parser("price-refresh", help="Refresh instrument prices from yfinance")

    # add-instrument
    p_inst = subs.add_parser("add-instrument", help="Register instruments")
    p_inst.add_argument("tickers", nargs="+", help="Instrument tickers")
    p_inst.add_argument("--name", default=None, help="Display name")

    # status
    p_status = subs.add_parser("status", help="Show prediction counts and leaderboard")
    p_status.add_argument("--limit", type=int, default=10, help="Leaderboard size")

    # token
    p_token = subs.add_parser("token", help="Issue a JWT for a user")
    p_token.add_argument("user_id", help="User id placed in the sub claim")
    p_token.add_argument("--hours", type=int, default=None, help="Token lifetime")

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    commands = {
        "migrate": cmd_migrate,
        "evaluate": cmd_evaluate,
        "scheduler": cmd_scheduler,
        "price-refresh": cmd_price_refresh,
        "add-instrument": cmd_add_instrument,
        "status": cmd_status,
        "token": cmd_token,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
