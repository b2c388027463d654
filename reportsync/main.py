import argparse
from datetime import datetime
import logging

from reportsync.backfill import reconcile
from reportsync.config import Settings, get_settings
from reportsync.database import build_session_factory
from reportsync.dataset_store import list_accounts, request_reprocess, set_account_enabled, summarize_datasets, upsert_account
from reportsync.db_models import utc_now
from reportsync.errors import ConfigurationError
from reportsync.jobs import register_jobs
from reportsync.notifier import DatasetEvent, EventKind, Notifier, log_event
from reportsync.periods import to_naive_utc
from reportsync.report_client import HttpReportClient
from reportsync.runner import DatasetRefreshRunner
from reportsync.scheduler import JobQueue, start_scheduler
from reportsync.schemas import Aggregation, DatasetKey, EntityType


def _add_account_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--account-id", required=True, help="Advertiser account id")
    parser.add_argument("--country-code", required=True, help="Marketplace country code, e.g. US")


def _add_dataset_args(parser: argparse.ArgumentParser) -> None:
    _add_account_args(parser)
    parser.add_argument("--aggregation", required=True, choices=[item.value for item in Aggregation])
    parser.add_argument("--entity-type", required=True, choices=[item.value for item in EntityType])
    parser.add_argument("--period-start", required=True, help="Period start as ISO timestamp (UTC if no offset)")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Keep report datasets in sync with the report export API")
    subparsers = parser.add_subparsers(dest="command", required=True)

    accounts_parser = subparsers.add_parser("accounts", help="manage advertiser accounts")
    accounts_subparsers = accounts_parser.add_subparsers(dest="accounts_command", required=True)
    add_parser = accounts_subparsers.add_parser("add", help="register or update an account")
    _add_account_args(add_parser)
    add_parser.add_argument("--profile-id", required=True, help="Profile id sent as the API scope")
    add_parser.add_argument("--disabled", action="store_true", help="register without scheduling it")
    _add_account_args(accounts_subparsers.add_parser("enable", help="include an account in scheduled refreshes"))
    _add_account_args(accounts_subparsers.add_parser("disable", help="exclude an account from scheduled refreshes"))
    accounts_subparsers.add_parser("list", help="list registered accounts")

    _add_account_args(subparsers.add_parser("reconcile", help="create and prune dataset rows for an account"))
    _add_account_args(subparsers.add_parser("refresh-account", help="run one refresh cycle for an account"))
    _add_dataset_args(subparsers.add_parser("refresh", help="advance one dataset by one step"))
    _add_dataset_args(subparsers.add_parser("reprocess", help="make one dataset due immediately"))
    _add_account_args(subparsers.add_parser("status", help="dataset counts per type and status"))

    schedule_parser = subparsers.add_parser("schedule", help="start the recurring scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    return parser.parse_args(argv)


def _dataset_key(args: argparse.Namespace) -> DatasetKey:
    try:
        period_start = to_naive_utc(datetime.fromisoformat(args.period_start))
    except ValueError as exc:
        raise ConfigurationError(f"invalid --period-start {args.period_start!r}") from exc
    return DatasetKey(
        account_id=args.account_id,
        country_code=args.country_code,
        period_start=period_start,
        aggregation=Aggregation(args.aggregation),
        entity_type=EntityType(args.entity_type),
    )


def _run_accounts(args: argparse.Namespace, session_factory) -> None:
    with session_factory() as db:
        if args.accounts_command == "add":
            account = upsert_account(
                db,
                account_id=args.account_id,
                country_code=args.country_code,
                profile_id=args.profile_id,
                enabled=not args.disabled,
            )
            accounts = [account]
        elif args.accounts_command == "list":
            accounts = list_accounts(db)
        else:
            enabled = args.accounts_command == "enable"
            accounts = [set_account_enabled(db, args.account_id, args.country_code, enabled)]

        for account in accounts:
            print(
                f"account_id={account.account_id} country={account.country_code} "
                f"profile_id={account.profile_id} enabled={account.enabled}"
            )


def _refresh_account(args: argparse.Namespace, settings: Settings, session_factory) -> int:
    notifier = Notifier()
    notifier.subscribe(log_event)
    errors: list[DatasetEvent] = []
    notifier.subscribe(lambda event: errors.append(event) if event.kind is EventKind.ERROR else None)

    queue = JobQueue(settings)
    jobs = register_jobs(queue, settings, session_factory, HttpReportClient.from_settings(settings), notifier)
    try:
        # The account step runs inline so an unknown account ends the command with an error.
        jobs.refresh_account(args.account_id, args.country_code)
        queue.wait_idle()
    finally:
        queue.shutdown()

    _print_status(args, session_factory)
    return 1 if errors else 0


def _print_status(args: argparse.Namespace, session_factory) -> None:
    with session_factory() as db:
        for aggregation, entity_type, status, count in summarize_datasets(db, args.account_id, args.country_code):
            print(f"aggregation={aggregation} entity_type={entity_type} status={status} count={count}")


def run_command(args: argparse.Namespace, settings: Settings) -> int:
    session_factory = build_session_factory(settings.database_url)

    if args.command == "schedule":
        start_scheduler(settings, session_factory, run_now=args.run_now)
        return 0

    if args.command == "accounts":
        _run_accounts(args, session_factory)
        return 0

    if args.command == "reconcile":
        with session_factory() as db:
            result = reconcile(
                db,
                account_id=args.account_id,
                country_code=args.country_code,
                now=utc_now(),
                settings=settings,
            )
        print(f"inserted={result.inserted} deleted={result.deleted}")
        return 0

    if args.command == "refresh-account":
        return _refresh_account(args, settings, session_factory)

    if args.command == "status":
        _print_status(args, session_factory)
        return 0

    key = _dataset_key(args)
    if args.command == "reprocess":
        with session_factory() as db:
            dataset = request_reprocess(db, key, now=utc_now())
            print(f"period_start={dataset.period_start.isoformat()} next_refresh_at={dataset.next_refresh_at.isoformat()}")
        return 0

    notifier = Notifier()
    notifier.subscribe(log_event)
    runner = DatasetRefreshRunner(settings, session_factory, HttpReportClient.from_settings(settings), notifier)
    outcome = runner.refresh(key)
    print(
        "period_start={period_start} action={action} status={status} report_id={report_id} next_refresh_at={next_refresh_at} error={error}".format(
            period_start=key.period_start.isoformat(),
            action=outcome.action.value if outcome.action else None,
            status=outcome.status,
            report_id=outcome.report_id,
            next_refresh_at=outcome.next_refresh_at.isoformat() if outcome.next_refresh_at else None,
            error=outcome.error,
        )
    )
    return 1 if outcome.status == "error" else 0


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    try:
        settings = get_settings()
    except ValueError as exc:
        print(f"error: invalid configuration: {exc}")
        raise SystemExit(1) from exc

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    try:
        exit_code = run_command(args, settings)
    except ConfigurationError as exc:
        logging.getLogger(__name__).error("configuration error", extra={"error": str(exc)})
        print(f"error: {exc}")
        raise SystemExit(1) from exc

    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
