from __future__ import annotations

import argparse
import json

from backend.app.dependencies import get_quota_ledger, get_sync_orchestrator, get_user_repository
from backend.app.logging_config import configure_cli_logging
from backend.app.models.sync_contracts import (
    CronSyncResultResponse,
    QuotaStatusResponse,
    SyncResultResponse,
)
from backend.app.services.quota_ledger import seconds_until
from backend.app.services.sync_orchestrator import SYNC_STATUS_SUCCESS


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run subscription feed syncs and inspect quota from the command line.",
    )
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    user_parser = subparsers.add_parser("user", help="Sync one user now.")
    user_parser.add_argument("user_id", help="User id (usr_...).")

    subparsers.add_parser("all", help="Sync every known user, one after another.")
    subparsers.add_parser("quota", help="Show today's quota usage.")
    subparsers.add_parser("users", help="List known users and their last sync time.")

    return parser.parse_args()


def _print_json(payload: dict[str, object]) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True))


def main() -> None:
    args = _parse_args()
    configure_cli_logging(verbose=args.verbose)

    if args.command == "user":
        result = get_sync_orchestrator().run_sync_for_user(args.user_id)
        _print_json(SyncResultResponse.from_result(result).model_dump())
        if result.status != SYNC_STATUS_SUCCESS:
            raise SystemExit(1)
        return

    if args.command == "all":
        cron_result = get_sync_orchestrator().run_sync_for_all_users()
        _print_json(CronSyncResultResponse.from_result(cron_result).model_dump())
        if cron_result.failed_syncs:
            raise SystemExit(1)
        return

    if args.command == "quota":
        ledger = get_quota_ledger()
        usage = ledger.current_usage()
        status = QuotaStatusResponse.from_usage(
            usage,
            utilization_percent=ledger.utilization_percent(),
            should_throttle=ledger.should_throttle(),
            recommended_delay_seconds=ledger.recommended_delay(),
            seconds_until_reset=seconds_until(usage.reset_at),
            operations=ledger.operation_history()[-20:],
        )
        _print_json(status.model_dump())
        return

    if args.command == "users":
        users = get_user_repository().list_all()
        if not users:
            print("No users found.")
            return
        print("user_id\temail\tlast_sync_at\thas_access_token")
        for user in users:
            print(
                "\t".join(
                    [
                        user.id,
                        user.email,
                        user.last_sync_at or "-",
                        "yes" if user.access_token else "no",
                    ]
                )
            )
        return

    raise RuntimeError(f"Unhandled command: {args.command}")


if __name__ == "__main__":
    main()
