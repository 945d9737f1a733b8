import argparse
import sys
from typing import List, Optional

from application.services import (
    OperationResult,
    advance_withdrawal,
    ensure_house_account,
    get_account_summary,
    list_withdrawals,
)
from domain.models import WithdrawalStatus
from infrastructure.config import build_store, load_settings
from infrastructure.logging_config import configure_logging


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledger-admin",
        description="Administrative tasks for the game economy ledger.",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="create tables and the house account")

    show = commands.add_parser("show", help="show an account")
    show.add_argument("account_id")

    listing = commands.add_parser("list", help="list withdrawal requests")
    listing.add_argument(
        "--status",
        choices=[s.value for s in WithdrawalStatus],
        default=WithdrawalStatus.PENDING.value,
    )
    listing.add_argument("--all", action="store_true", help="ignore --status")

    for name in ("complete", "reject"):
        review = commands.add_parser(name, help=f"{name} a pending withdrawal")
        review.add_argument("withdrawal_id")

    return parser


def _report(result: OperationResult) -> int:
    if not result.success:
        print(f"error ({result.reason}): {result.error_message}", file=sys.stderr)
        return 1
    if result.account is not None:
        for key, value in result.public_fields.items():
            print(f"{key}: {value}")
    if result.withdrawal is not None:
        w = result.withdrawal
        print(f"withdrawal {w.id}: {w.amount} to {w.phone_number} [{w.status.value}]")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    settings = load_settings()
    configure_logging(settings.log_level)
    store = build_store(settings)

    if args.command == "init":
        return _report(ensure_house_account(store, settings.rules))

    if args.command == "show":
        return _report(get_account_summary(args.account_id, store))

    if args.command == "list":
        status = None if args.all else WithdrawalStatus(args.status)
        result = list_withdrawals(store, status)
        if not result.success:
            print(f"error: {result.error_message}", file=sys.stderr)
            return 1
        if not result.withdrawals:
            print("No withdrawal requests.")
        for w in result.withdrawals:
            print(
                f"{w.id}  {w.created_at.isoformat()}  account={w.account_id}  "
                f"{w.amount} -> {w.phone_number}  [{w.status.value}]"
            )
        return 0

    new_status = (
        WithdrawalStatus.COMPLETED if args.command == "complete" else WithdrawalStatus.REJECTED
    )
    return _report(advance_withdrawal(args.withdrawal_id, new_status, store))


if __name__ == "__main__":
    sys.exit(main())
