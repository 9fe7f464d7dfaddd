from __future__ import annotations

import argparse
import json
import logging

from pydantic import ValidationError

from scenariomarket.adapters.webhook_publisher import WebhookEventPublisher
from scenariomarket.api import MarketApi, Payload
from scenariomarket.config import Settings
from scenariomarket.domain.models import Outcome
from scenariomarket.logging_utils import setup_logging
from scenariomarket.observability import configure_instrumentation
from scenariomarket.persistence.sqlite.sqlite_connection import initialize_database
from scenariomarket.persistence.uow import UnitOfWorkFactory
from scenariomarket.services.events import BackgroundEventPublisher
from scenariomarket.services.ledger_service import BalanceLedger
from scenariomarket.services.prediction_tally import StaticPredictionTally

logger = logging.getLogger(__name__)


def _load_settings() -> Settings:
    return Settings()


def _emit(payload: Payload) -> int:
    print(json.dumps(payload, sort_keys=True, default=str))
    return 0 if payload.get("success", False) else 2


def _parse_stake(raw: str) -> tuple[str, int]:
    user_id, sep, amount = raw.partition("=")
    if not sep or not user_id.strip():
        raise argparse.ArgumentTypeError(f"stake must look like USER=AMOUNT, got {raw!r}")
    try:
        value = int(amount)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"stake amount must be an integer, got {amount!r}") from exc
    if value <= 0:
        raise argparse.ArgumentTypeError("stake amount must be > 0")
    return user_id.strip(), value


def _positive_int(raw: str) -> int:
    value = int(raw)
    if value <= 0:
        raise argparse.ArgumentTypeError("value must be > 0")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scenariomarket",
        description="Operate the scenario ownership market stored in STATE_DB_PATH.",
    )
    parser.add_argument("--db", default=None, help="Override STATE_DB_PATH")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the schema if it does not exist")

    grant_parser = subparsers.add_parser("grant", help="Credit coins to a user")
    grant_parser.add_argument("user_id")
    grant_parser.add_argument("amount", type=_positive_int)

    create_parser = subparsers.add_parser("create", help="Create a scenario")
    create_parser.add_argument("--creator", required=True)
    create_parser.add_argument("--title", required=True)
    create_parser.add_argument("--description", default="")
    create_parser.add_argument("--category", default=None)
    create_parser.add_argument("--draft", action="store_true", help="Create without activating")

    duplicate_parser = subparsers.add_parser(
        "check-duplicate", help="Run the duplicate gate without creating anything"
    )
    duplicate_parser.add_argument("--title", required=True)
    duplicate_parser.add_argument("--description", default="")
    duplicate_parser.add_argument("--category", default=None)

    state_parser = subparsers.add_parser("state", help="Show a scenario snapshot")
    state_parser.add_argument("scenario_id")

    steal_parser = subparsers.add_parser("steal", help="Steal a scenario")
    steal_parser.add_argument("scenario_id")
    steal_parser.add_argument("--buyer", required=True)
    steal_parser.add_argument("--expected-price", type=int, default=None)

    shield_parser = subparsers.add_parser("shield", help="Buy a shield for a held scenario")
    shield_parser.add_argument("scenario_id")
    shield_parser.add_argument("--user", required=True)
    shield_parser.add_argument("--preset", required=True)

    close_parser = subparsers.add_parser("close", help="Stop steals on a scenario")
    close_parser.add_argument("scenario_id")

    resolve_parser = subparsers.add_parser("resolve", help="Pay out a closed scenario")
    resolve_parser.add_argument("scenario_id")
    resolve_parser.add_argument("--outcome", required=True, choices=[str(item) for item in Outcome])
    resolve_parser.add_argument(
        "--stake",
        action="append",
        default=[],
        type=_parse_stake,
        help="Winning stake as USER=AMOUNT; repeatable",
    )

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a scenario and refund its pool")
    cancel_parser.add_argument("scenario_id")

    stats_parser = subparsers.add_parser("stats", help="Steal statistics for a user")
    stats_parser.add_argument("user_id")

    leaderboard_parser = subparsers.add_parser("leaderboard", help="Top thieves")
    leaderboard_parser.add_argument("--limit", type=_positive_int, default=10)

    subparsers.add_parser("verify-ledger", help="Replay the balance ledger and report mismatches")
    return parser


def _run_command(args: argparse.Namespace, settings: Settings) -> int:
    if args.command == "init-db":
        initialize_database(settings.state_db_path, busy_timeout_ms=settings.db_busy_timeout_ms)
        return _emit({"success": True, "dbPath": settings.state_db_path})

    factory = UnitOfWorkFactory(settings.state_db_path, busy_timeout_ms=settings.db_busy_timeout_ms)
    if args.command == "grant":
        entry = BalanceLedger(factory).grant(args.user_id, args.amount)
        return _emit({"success": True, "userId": entry.user_id, "balance": entry.balance_after})
    if args.command == "verify-ledger":
        report = BalanceLedger(factory).verify()
        return _emit(
            {
                "success": report.ok,
                "usersChecked": report.users_checked,
                "entriesChecked": report.entries_checked,
                "discrepancies": len(report.discrepancies),
                "mismatchedUsers": report.mismatched_users,
            }
        )

    tally = StaticPredictionTally()
    if args.command == "resolve":
        for user_id, stake in args.stake:
            tally.record(args.scenario_id, Outcome(args.outcome), user_id, stake)

    webhook = WebhookEventPublisher.from_settings(settings)
    publisher = (
        BackgroundEventPublisher(webhook, max_pending=settings.events_queue_max_pending)
        if webhook is not None
        else None
    )
    try:
        api = MarketApi.from_settings(settings, tally=tally, publisher=publisher)
        if args.command == "create":
            return _emit(
                api.create_scenario(
                    args.creator,
                    args.title,
                    args.description,
                    category=args.category,
                    draft=args.draft,
                )
            )
        if args.command == "check-duplicate":
            return _emit(api.check_duplicate(args.title, args.description, args.category))
        if args.command == "state":
            return _emit(api.scenario_state(args.scenario_id))
        if args.command == "steal":
            return _emit(api.steal(args.scenario_id, args.buyer, args.expected_price))
        if args.command == "shield":
            return _emit(api.purchase_shield(args.scenario_id, args.user, args.preset))
        if args.command == "resolve":
            return _emit(api.resolve(args.scenario_id, args.outcome))
        if args.command == "stats":
            return _emit(api.user_stats(args.user_id))
        if args.command == "leaderboard":
            return _emit(api.leaderboard(args.limit))
        if args.command == "close":
            return _emit(api.close(args.scenario_id))
        if args.command == "cancel":
            return _emit(api.cancel(args.scenario_id))
    finally:
        if publisher is not None:
            publisher.close()
        if webhook is not None:
            webhook.close()
    raise ValueError(f"unknown command {args.command}")


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    try:
        settings = _load_settings()
    except ValidationError as exc:
        print(json.dumps({"success": False, "error": "ConfigurationError", "message": str(exc)}))
        return 2
    if args.db:
        settings = settings.model_copy(update={"state_db_path": args.db})
    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        otlp_endpoint=settings.observability_otlp_endpoint,
    )
    try:
        return _run_command(args, settings)
    except Exception as exc:  # noqa: BLE001
        logger.exception(
            "command_failed",
            extra={"extra": {"command": args.command, "error_type": type(exc).__name__}},
        )
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
