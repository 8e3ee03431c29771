"""Command-line entry point for Subscout."""

from __future__ import annotations

import argparse
from pathlib import Path

from subscout.core import (
    AppSettings,
    ServiceContainer,
    configure_logging,
    load_app_settings,
)
from subscout.core.interfaces import CandidateStateError, ScanConflictError
from subscout.core.models import CANDIDATE_STATUSES, ScanReport
from subscout.runtime import build_admin, build_container, build_review
from subscout.storage.connection_pool import ConnectionPool
from subscout.transport import SUPPORTED_PROVIDERS

COMMANDS = (
    "info",
    "connect",
    "scan",
    "scan-all",
    "reset",
    "disconnect",
    "purge",
    "reparse",
    "candidates",
)


def build_parser() -> argparse.ArgumentParser:
    """Create and configure the CLI argument parser."""
    parser = argparse.ArgumentParser(
        description="Discover subscriptions from billing receipts"
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file containing configuration overrides.",
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="info",
        choices=COMMANDS,
        help="Operation to execute.",
    )
    parser.add_argument(
        "--connection",
        dest="connection_id",
        type=int,
        default=None,
        help="Connection id for scan, reset, disconnect and reparse.",
    )
    parser.add_argument(
        "--user",
        dest="user_id",
        default=None,
        help="User id for connect, scan-all and candidates.",
    )
    parser.add_argument(
        "--provider",
        choices=SUPPORTED_PROVIDERS,
        default="gmail",
        help="Mail provider for the connect command (default: gmail).",
    )
    parser.add_argument(
        "--account",
        default=None,
        help="External account (email address) for the connect command.",
    )
    parser.add_argument(
        "--auth-handle",
        dest="auth_handle",
        default=None,
        help="Secret store handle holding the refresh token for connect.",
    )
    parser.add_argument(
        "--status",
        choices=(*CANDIDATE_STATUSES, "all"),
        default="pending",
        help="Status filter for the candidates command (default: pending).",
    )
    parser.add_argument(
        "--accept",
        type=int,
        default=None,
        help="Accept the candidate with this id before listing.",
    )
    parser.add_argument(
        "--dismiss",
        type=int,
        default=None,
        help="Dismiss the candidate with this id before listing.",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Reset even if another process holds the scan claim.",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm destructive commands such as purge.",
    )
    return parser


def execute(
    args: argparse.Namespace,
    settings: AppSettings,
    container: ServiceContainer | None = None,
) -> int:
    """Execute the requested CLI command and return the exit status."""
    command = args.command
    if command == "info":
        print("Subscout is ready. Connect an account and run a scan to start.")
        print(f"Database path: {settings.storage.db_path}")
        print(f"Parallel scans: {settings.scan.max_workers}")
        return 0

    services = container or build_container(settings, env_file=args.env_file)
    try:
        return _dispatch(args, services)
    except (LookupError, ScanConflictError, CandidateStateError) as exc:
        print(f"Error: {exc}")
        return 1
    except ValueError as exc:
        print(f"Invalid request: {exc}")
        return 2
    finally:
        if container is None:
            services.close()


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    settings = load_app_settings(env_file=args.env_file)
    configure_logging(settings.logging)
    return execute(args, settings)


def _dispatch(args: argparse.Namespace, services: ServiceContainer) -> int:
    # pylint: disable=too-many-return-statements
    command = args.command
    if command == "connect":
        return _run_connect(args, services)
    if command == "scan":
        return _run_scan(_require_connection_id(args), services)
    if command == "scan-all":
        return _run_scan_all(args.user_id, services)
    if command == "candidates":
        return _run_candidates(args, services)

    pool: ConnectionPool = services.resolve("pool")
    with pool.acquire() as repository:
        admin = build_admin(services, repository)
        if command == "reset":
            connection = admin.reset(_require_connection_id(args), force=args.force)
            print(f"Connection {connection.id} reset to {connection.scan_status}.")
        elif command == "disconnect":
            connection_id = _require_connection_id(args)
            if not admin.disconnect(connection_id):
                print(f"Connection {connection_id} does not exist.")
                return 1
            print(f"Connection {connection_id} disconnected.")
        elif command == "purge":
            if not args.yes:
                print("Refusing to purge receipts without --yes.")
                return 2
            print(f"Removed {admin.purge_receipts()} receipt(s).")
        elif command == "reparse":
            report = admin.reparse(_require_connection_id(args))
            print(
                f"Re-parsed {report.processed} receipt(s): {report.changed} changed, "
                f"{report.newly_parsed} newly parsed, "
                f"{report.candidates_created} candidate(s) created, "
                f"{report.errors} error(s)."
            )
    return 0


def _run_connect(args: argparse.Namespace, services: ServiceContainer) -> int:
    if not (args.user_id and args.account and args.auth_handle):
        raise ValueError("connect requires --user, --account and --auth-handle")
    pool: ConnectionPool = services.resolve("pool")
    with pool.acquire() as repository:
        connection = repository.upsert_connection(
            args.user_id, args.provider, args.account, args.auth_handle
        )
    print(
        f"Connection {connection.id} "
        f"({connection.provider} {connection.external_account}) "
        f"is {connection.status}."
    )
    return 0


def _run_scan(connection_id: int, services: ServiceContainer) -> int:
    scheduler = services.resolve("scheduler")
    report = scheduler.submit(connection_id).result()
    _print_report(report)
    return 0 if report.outcome in ("completed", "paused") else 1


def _run_scan_all(user_id: str | None, services: ServiceContainer) -> int:
    scheduler = services.resolve("scheduler")
    futures = scheduler.scan_all(user_id)
    if not futures:
        print("No active connections to scan.")
        return 0
    status = 0
    for connection_id in sorted(futures):
        report = futures[connection_id].result()
        _print_report(report)
        if report.outcome not in ("completed", "paused"):
            status = 1
    return status


def _run_candidates(args: argparse.Namespace, services: ServiceContainer) -> int:
    if not args.user_id:
        raise ValueError("candidates requires --user")
    status_filter = None if args.status == "all" else args.status
    pool: ConnectionPool = services.resolve("pool")
    with pool.acquire() as repository:
        review = build_review(repository)
        if args.accept is not None:
            _, subscription = review.accept(args.accept)
            print(
                f"Accepted candidate {args.accept} as subscription {subscription.id}."
            )
        if args.dismiss is not None:
            review.dismiss(args.dismiss)
            print(f"Dismissed candidate {args.dismiss}.")
        candidates = repository.list_candidates(args.user_id, status=status_filter)

    if not candidates:
        print("No detection candidates found.")
        return 0

    print(f"Showing {len(candidates)} candidate(s):")
    header = (
        f"{'ID':>4}  {'Status':<9}  {'Amount':>10}  {'Cadence':<9}  {'Conf':>5}  Name"
    )
    print(header)
    print("-" * len(header))
    for candidate in candidates:
        amount = f"{candidate.proposed_amount:.2f} {candidate.proposed_currency}"
        print(
            f"{str(candidate.id):>4}  {candidate.status:<9}  {amount:>10}  "
            f"{candidate.proposed_cadence:<9}  {candidate.confidence:>5.2f}  "
            f"{candidate.proposed_name}"
        )
    return 0


def _require_connection_id(args: argparse.Namespace) -> int:
    if args.connection_id is None:
        raise ValueError(f"{args.command} requires --connection")
    return args.connection_id


def _print_report(report: ScanReport) -> None:
    line = f"Connection {report.connection_id}: {report.outcome}"
    if report.reason:
        line += f" ({report.reason})"
    if report.error_code:
        line += f" [{report.error_code}] {report.error_message}"
    print(line)
    if report.pages:
        print(
            f"  {report.pages} page(s), {report.emails_scanned} email(s), "
            f"{report.receipts_found} receipt(s), "
            f"{report.candidates_created} new / {report.candidates_merged} merged "
            f"candidate(s), {report.message_errors} message error(s)"
        )


if __name__ == "__main__":
    raise SystemExit(main())
