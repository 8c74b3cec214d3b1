"""
Admin CLI for the alert pipeline.
"""

import argparse
import json
from typing import Any, Optional

from dotenv import load_dotenv

load_dotenv()

from src.database.connection import Database
from src.database.repository import (
    EmailQueueRepository,
    NotFoundError,
    PreferenceRepository,
    RuleRepository,
    SnapshotRepository,
    UserRepository,
)
from src.database.models import (
    AlertRule,
    CHANNELS,
    DIGEST_FREQUENCIES,
    NotificationPreference,
    RULE_TYPES,
    User,
)
from src.rules.types import ValidationError, parse_conditions


def add_user(db: Database, email: str, name: Optional[str] = None) -> User:
    """Add a new user."""
    repo = UserRepository(db)
    return repo.create(User(email=email, name=name))


def add_rule(
    db: Database,
    rule_type: str,
    conditions: dict[str, Any],
    user_id: Optional[int] = None,
    symbol: Optional[str] = None,
    channels: Optional[list[str]] = None,
    name: Optional[str] = None,
) -> AlertRule:
    """
    Add an alert rule after validating its conditions.

    Raises:
        ValidationError: If the conditions do not fit the rule type
        NotFoundError: If the user does not exist
    """
    parse_conditions(rule_type, conditions)

    channels = channels or ["email"]
    unknown = [c for c in channels if c not in CHANNELS]
    if unknown:
        raise ValidationError(f"Unknown notification channels: {unknown}")

    if user_id is not None and UserRepository(db).get_by_id(user_id) is None:
        raise NotFoundError(f"User {user_id} not found")

    rule = AlertRule(
        rule_type=rule_type,
        conditions=conditions,
        user_id=user_id,
        symbol=symbol.upper() if symbol else None,
        notification_channels=channels,
        name=name,
    )
    return RuleRepository(db).create(rule)


def set_preference(
    db: Database,
    user_id: int,
    frequency: Optional[str] = None,
    day: Optional[int] = None,
    time: Optional[str] = None,
    email_enabled: Optional[bool] = None,
) -> NotificationPreference:
    """Create or update a user's notification preferences."""
    repo = PreferenceRepository(db)
    pref = repo.get(user_id) or NotificationPreference(user_id=user_id)

    if frequency is not None:
        pref.digest_frequency = frequency
    if day is not None:
        if not 0 <= day <= 6:
            raise ValidationError("digest day must be 0 (Sunday) through 6 (Saturday)")
        pref.digest_day = day
    if time is not None:
        pref.digest_time = _normalize_time(time)
    if email_enabled is not None:
        pref.email_enabled = email_enabled

    return repo.upsert(pref)


def _normalize_time(value: str) -> str:
    """Accept HH:MM or HH:MM:SS and return HH:MM:SS."""
    parts = value.split(":")
    try:
        numbers = [int(p) for p in parts]
    except ValueError:
        raise ValidationError(f"Invalid time: {value}")
    if len(numbers) == 2:
        numbers.append(0)
    if len(numbers) != 3 or not (
        0 <= numbers[0] <= 23 and 0 <= numbers[1] <= 59 and 0 <= numbers[2] <= 59
    ):
        raise ValidationError(f"Invalid time: {value}")
    return "{:02d}:{:02d}:{:02d}".format(*numbers)


def queue_status(db: Database) -> dict[str, int]:
    """Count queued emails by status."""
    counts = EmailQueueRepository(db).count_by_status()
    return {status: counts.get(status, 0) for status in ("pending", "sent", "failed")}


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Earnlytics alerts CLI")
    parser.add_argument("--db", default="data/earnlytics.db", help="Database path")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # User commands
    user_parser = subparsers.add_parser("user", help="User management")
    user_subparsers = user_parser.add_subparsers(dest="action")

    add_user_parser = user_subparsers.add_parser("add", help="Add user")
    add_user_parser.add_argument("--email", required=True, help="User email")
    add_user_parser.add_argument("--name", help="Display name")

    user_subparsers.add_parser("list", help="List users")

    # Rules commands
    rules_parser = subparsers.add_parser("rules", help="Rules management")
    rules_subparsers = rules_parser.add_subparsers(dest="action")

    add_rule_parser = rules_subparsers.add_parser("add", help="Add rule")
    add_rule_parser.add_argument("--user", type=int, help="User ID (omit for market-wide)")
    add_rule_parser.add_argument("--symbol", help="Symbol (omit for every symbol)")
    add_rule_parser.add_argument("--type", required=True, choices=RULE_TYPES)
    add_rule_parser.add_argument("--conditions", default="{}", help="JSON conditions")
    add_rule_parser.add_argument(
        "--channels", default="email", help="Comma-separated channels"
    )
    add_rule_parser.add_argument("--name", help="Rule name")

    list_rules_parser = rules_subparsers.add_parser("list", help="List rules")
    list_rules_parser.add_argument("--user", type=int, help="User ID")

    for action, help_text in (("pause", "Deactivate rule"), ("resume", "Reactivate rule")):
        action_parser = rules_subparsers.add_parser(action, help=help_text)
        action_parser.add_argument("rule_id", type=int, help="Rule ID")

    # Preference commands
    prefs_parser = subparsers.add_parser("prefs", help="Notification preferences")
    prefs_subparsers = prefs_parser.add_subparsers(dest="action")

    set_prefs_parser = prefs_subparsers.add_parser("set", help="Set preferences")
    set_prefs_parser.add_argument("--user", type=int, required=True, help="User ID")
    set_prefs_parser.add_argument("--frequency", choices=DIGEST_FREQUENCIES)
    set_prefs_parser.add_argument("--day", type=int, help="Weekly digest day, 0 = Sunday")
    set_prefs_parser.add_argument("--time", help="Digest time, HH:MM")
    email_group = set_prefs_parser.add_mutually_exclusive_group()
    email_group.add_argument("--email-on", dest="email_enabled", action="store_true")
    email_group.add_argument("--email-off", dest="email_enabled", action="store_false")
    set_prefs_parser.set_defaults(email_enabled=None)

    # Valuation commands
    valuation_parser = subparsers.add_parser("valuation", help="Valuation data")
    valuation_subparsers = valuation_parser.add_subparsers(dest="action")

    set_valuation_parser = valuation_subparsers.add_parser("set", help="Set P/E percentile")
    set_valuation_parser.add_argument("--symbol", required=True)
    set_valuation_parser.add_argument("--pe", type=float, help="Current P/E ratio")
    set_valuation_parser.add_argument(
        "--percentile", type=float, required=True, help="5-year P/E percentile"
    )

    # Queue commands
    queue_parser = subparsers.add_parser("queue", help="Email queue")
    queue_subparsers = queue_parser.add_subparsers(dest="action")
    queue_subparsers.add_parser("status", help="Show queue counts")

    # DB commands
    db_parser = subparsers.add_parser("db", help="Database management")
    db_subparsers = db_parser.add_subparsers(dest="action")
    db_subparsers.add_parser("migrate", help="Create missing tables")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    # Initialize database
    db = Database(args.db)
    db.initialize()

    try:
        return _run(db, args)
    except (ValidationError, NotFoundError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        db.close()


def _run(db: Database, args: argparse.Namespace) -> int:
    if args.command == "user":
        if args.action == "add":
            user = add_user(db, email=args.email, name=args.name)
            print(f"Created user with ID: {user.id}")
        elif args.action == "list":
            for user in UserRepository(db).list_all():
                print(f"ID: {user.id}, Email: {user.email}, Name: {user.name or '-'}")

    elif args.command == "rules":
        repo = RuleRepository(db)
        if args.action == "add":
            try:
                conditions = json.loads(args.conditions)
            except json.JSONDecodeError as e:
                raise ValidationError(f"Conditions are not valid JSON: {e}")
            if not isinstance(conditions, dict):
                raise ValidationError("Conditions must be a JSON object")
            channels = [c.strip() for c in args.channels.split(",") if c.strip()]
            created = add_rule(
                db,
                rule_type=args.type,
                conditions=conditions,
                user_id=args.user,
                symbol=args.symbol,
                channels=channels,
                name=args.name,
            )
            print(f"Created rule with ID: {created.id}")
        elif args.action == "list":
            for rule in repo.list_all(user_id=args.user):
                state = "active" if rule.is_active else "paused"
                print(
                    f"ID: {rule.id}, Type: {rule.rule_type}, "
                    f"Symbol: {rule.symbol or '*'}, User: {rule.user_id or '-'}, "
                    f"{state}, triggered {rule.trigger_count}x, "
                    f"conditions: {json.dumps(rule.conditions)}"
                )
        elif args.action in ("pause", "resume"):
            repo.set_active(args.rule_id, args.action == "resume")
            print(f"Rule {args.rule_id} {'resumed' if args.action == 'resume' else 'paused'}")

    elif args.command == "prefs":
        if args.action == "set":
            pref = set_preference(
                db,
                user_id=args.user,
                frequency=args.frequency,
                day=args.day,
                time=args.time,
                email_enabled=args.email_enabled,
            )
            print(
                f"User {pref.user_id}: digest={pref.digest_frequency}, "
                f"day={pref.digest_day}, time={pref.digest_time}, "
                f"email={'on' if pref.email_enabled else 'off'}"
            )

    elif args.command == "valuation":
        if args.action == "set":
            SnapshotRepository(db).set_valuation(
                args.symbol.upper(), args.pe, args.percentile
            )
            print(f"Valuation updated for {args.symbol.upper()}")

    elif args.command == "queue":
        if args.action == "status":
            for status, count in queue_status(db).items():
                print(f"{status}: {count}")

    elif args.command == "db":
        if args.action == "migrate":
            db.initialize()
            print("Migrations applied")

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
