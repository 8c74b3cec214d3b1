"""
Batch job entry points: process alerts, send pending emails, send digests.
"""

import argparse
import logging
import sys
import time
from datetime import datetime
from typing import Callable, Optional

from dotenv import load_dotenv

load_dotenv()

from src.alerts.dispatcher import AlertDispatcher, DispatchSummary
from src.config import AppConfig, ConfigurationError, load_config
from src.data.context import ContextProvider
from src.data.fetcher import MarketDataFetcher
from src.database.connection import Database, utcnow
from src.database.repository import (
    AlertHistoryRepository,
    DigestRunRepository,
    EmailQueueRepository,
    NotFoundError,
    PreferenceRepository,
    RuleRepository,
    SnapshotRepository,
    UserRepository,
)
from src.delivery.digest import PERIODS, DigestRunResult, DigestScheduler
from src.delivery.email_queue import DeliveryQueue, QueueRunResult
from src.notifiers.base import EmailProvider, NotifierFactory
from src.notifiers.router import NotificationRouter
from src.rules.engine import RuleEvaluator

logger = logging.getLogger(__name__)


class AlertApp:
    """Wires repositories and services for the batch jobs."""

    def __init__(
        self,
        db: Database,
        config: AppConfig,
        provider: Optional[EmailProvider] = None,
        fetcher: Optional[MarketDataFetcher] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the app.

        Args:
            db: Initialized database
            config: Loaded configuration
            provider: Email provider; built from config.email when omitted
            fetcher: Market data source; Yahoo Finance when omitted
            clock: Source of the current time
            sleep: Used for the delay between symbols
        """
        self.db = db
        self.config = config
        self.clock = clock
        self.sleep = sleep

        # Initialize repositories
        self.user_repo = UserRepository(db)
        self.rule_repo = RuleRepository(db)
        self.alert_repo = AlertHistoryRepository(db)
        self.queue_repo = EmailQueueRepository(db)
        self.pref_repo = PreferenceRepository(db)
        self.run_repo = DigestRunRepository(db)
        self.snapshot_repo = SnapshotRepository(db)

        # Initialize services
        self.provider = provider or NotifierFactory.create(config.email)
        self.context_provider = ContextProvider(
            fetcher or MarketDataFetcher(), self.snapshot_repo
        )
        self.evaluator = RuleEvaluator(
            earnings_match=config.alerts.earnings_match, clock=clock
        )
        self.router = NotificationRouter(
            provider=self.provider,
            alert_repo=self.alert_repo,
            queue_repo=self.queue_repo,
            pref_repo=self.pref_repo,
            app_url=config.app.url,
            clock=clock,
        )
        self.dispatcher = AlertDispatcher(
            evaluator=self.evaluator,
            rule_repo=self.rule_repo,
            alert_repo=self.alert_repo,
            user_repo=self.user_repo,
            router=self.router,
            clock=clock,
        )
        self.digest_scheduler = DigestScheduler(
            pref_repo=self.pref_repo,
            user_repo=self.user_repo,
            alert_repo=self.alert_repo,
            queue_repo=self.queue_repo,
            run_repo=self.run_repo,
            timezone_name=config.schedule.timezone,
            clock=clock,
        )

    def process_alerts(self, symbols: Optional[list[str]] = None) -> DispatchSummary:
        """Evaluate and dispatch rules for every symbol with an active rule."""
        if symbols is None:
            symbols = self.rule_repo.get_active_symbols()
        logger.info(f"Processing alerts for {len(symbols)} symbols")

        summary = DispatchSummary()
        delay = self.config.alerts.symbol_delay_seconds
        for index, symbol in enumerate(symbols):
            if index and delay > 0:
                self.sleep(delay)
            try:
                context, snapshot = self.context_provider.build(symbol)
            except NotFoundError as e:
                logger.warning(f"No data found for {symbol}: {e}")
                continue
            except Exception as e:
                summary.errors += 1
                logger.error(f"Error fetching data for {symbol}: {e}")
                continue

            try:
                symbol_summary = self.dispatcher.process_symbol(symbol, context)
            except Exception as e:
                summary.errors += 1
                logger.error(f"Error processing alerts for {symbol}: {e}")
                continue
            summary.merge(symbol_summary)

            # Failed triggers are retried against the old snapshot next run
            if symbol_summary.errors:
                logger.warning(f"Not updating snapshot for {symbol} after dispatch errors")
                continue
            try:
                self.context_provider.commit(snapshot)
            except Exception as e:
                summary.errors += 1
                logger.error(f"Error saving snapshot for {symbol}: {e}")

        return summary

    def send_pending_emails(self, batch_size: Optional[int] = None) -> QueueRunResult:
        """Drain one batch of the email queue."""
        if self.provider is None:
            raise ConfigurationError("RESEND_API_KEY not configured")

        delivery = self.config.delivery
        queue = DeliveryQueue(
            provider=self.provider,
            queue_repo=self.queue_repo,
            alert_repo=self.alert_repo,
            max_retries=delivery.max_retries,
            backoff_base_seconds=delivery.backoff_base_seconds,
            backoff_max_seconds=delivery.backoff_max_seconds,
            clock=self.clock,
        )
        return queue.process_queue(batch_size or delivery.batch_size)

    def send_digests(self, period: str) -> DigestRunResult:
        """Enqueue due digests for the period."""
        return self.digest_scheduler.send_digests(period)


def _parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("--config", default="config.yaml", help="Path to config file")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    return parser


def _load(args: argparse.Namespace) -> AppConfig:
    """Load config and set up logging."""
    config = load_config(args.config)

    log_level = logging.DEBUG if args.debug else config.advanced.log_level.upper()
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return config


def _open_database(config: AppConfig) -> Database:
    db = Database(config.database.path)
    db.initialize()
    return db


def process_alerts_main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point: evaluate all active rules."""
    args = _parser("Evaluate alert rules and dispatch notifications").parse_args(argv)
    try:
        config = _load(args)
    except (ConfigurationError, FileNotFoundError) as e:
        print(f"Alert processing failed: {e}", file=sys.stderr)
        return 1
    db = _open_database(config)

    print("Starting alert processing...")
    start = time.monotonic()
    try:
        summary = AlertApp(db, config).process_alerts()
    finally:
        db.close()

    print("Alert processing complete!")
    print(f"   Duration: {time.monotonic() - start:.2f}s")
    print(f"   Alerts created: {summary.alerts_created}")
    print(f"   Notifications sent: {summary.sent_now}")
    print(f"   Notifications queued: {summary.queued}")
    if summary.errors:
        print(f"   Errors: {summary.errors}")
    return 0


def send_pending_emails_main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point: send one batch of queued emails."""
    args = _parser("Send pending emails from the queue").parse_args(argv)
    try:
        config = _load(args)
        config.require_email_credentials()
    except (ConfigurationError, FileNotFoundError) as e:
        print(f"Email processing failed: {e}", file=sys.stderr)
        return 1
    db = _open_database(config)

    print("Processing email queue...")
    start = time.monotonic()
    try:
        result = AlertApp(db, config).send_pending_emails()
    finally:
        db.close()

    print(
        f"Email processing complete! ({time.monotonic() - start:.2f}s) "
        f"sent={result.sent} retried={result.retried} failed={result.failed}"
    )
    return 0


def send_digests_main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point: enqueue daily or weekly digests."""
    parser = _parser("Send digest emails")
    parser.add_argument("period", nargs="?", help="daily or weekly")
    args = parser.parse_args(argv)

    if args.period not in PERIODS:
        print("Usage: send-digests <daily|weekly>", file=sys.stderr)
        return 1

    try:
        config = _load(args)
    except (ConfigurationError, FileNotFoundError) as e:
        print(f"{args.period} digests failed: {e}", file=sys.stderr)
        return 1
    db = _open_database(config)

    print(f"Sending {args.period} digests...")
    start = time.monotonic()
    try:
        result = AlertApp(db, config).send_digests(args.period)
    finally:
        db.close()

    print(f"{args.period} digests complete!")
    print(f"   Duration: {time.monotonic() - start:.2f}s")
    print(f"   Digests queued: {result.sent}")
    return 0


def run(entry: Callable[[Optional[list[str]]], int]) -> None:
    sys.exit(entry(None))


def process_alerts() -> None:
    run(process_alerts_main)


def send_pending_emails() -> None:
    run(send_pending_emails_main)


def send_digests() -> None:
    run(send_digests_main)


if __name__ == "__main__":
    process_alerts()
