from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from domain.account_number import derive_account_number
from domain.errors import (
    ErrorKind,
    LedgerError,
    NotFound,
    PreconditionFailed,
    StorageUnavailable,
    ValidationError,
)
from domain.ledger import BalanceDelta, always
from domain.models import (
    Account,
    Currency,
    WagerOutcome,
    WithdrawalRequest,
    WithdrawalStatus,
)
from domain.repositories import LedgerStore
from domain.rules import EconomyRules

logger = logging.getLogger(__name__)


@dataclass
class OperationResult:
    """
    Outcome of one economy operation.

    On success `account` holds the updated account (and `withdrawal` the new
    request, where relevant). On failure nothing was changed and
    `error_kind`, `reason` and `error_message` describe why.
    """

    success: bool
    error_kind: Optional[ErrorKind] = None
    reason: Optional[str] = None
    error_message: Optional[str] = None
    account: Optional[Account] = None
    withdrawal: Optional[WithdrawalRequest] = None

    @property
    def public_fields(self) -> Optional[dict]:
        return self.account.public_fields() if self.account is not None else None


@dataclass
class WithdrawalListResult:
    success: bool
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    withdrawals: Optional[List[WithdrawalRequest]] = None


def _failure(operation: str, exc: LedgerError) -> OperationResult:
    if isinstance(exc, StorageUnavailable):
        logger.error("%s failed: storage unavailable", operation)
    else:
        logger.info("%s rejected: %s", operation, exc.reason)
    return OperationResult(
        success=False,
        error_kind=exc.kind,
        reason=exc.reason,
        error_message=exc.message,
    )


def _run(operation: str, work: Callable[[], OperationResult]) -> OperationResult:
    try:
        return work()
    except LedgerError as exc:
        return _failure(operation, exc)


def _validate_positive_amount(amount: int, limit: int, what: str = "Amount") -> None:
    # bool is an int subclass; True must not count as an amount of 1.
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("invalid_amount", f"{what} must be a whole number greater than zero.")
    if amount > limit:
        raise ValidationError("invalid_amount", f"{what} must not exceed {limit}.")


def _require_balance(account: Account, currency: Currency, amount: int) -> None:
    if currency is Currency.REAL:
        if account.real_balance < amount:
            raise PreconditionFailed("insufficient_balance", "Not enough real money balance.")
    elif account.game_currency < amount:
        raise PreconditionFailed("insufficient_coins", "Not enough coins.")


def register_account(
    display_name: str,
    store: LedgerStore,
    rules: EconomyRules,
) -> OperationResult:
    """
    Create a new account with zero balances and the variant's base upgrades.

    The account number is derived from the first letter of the name, so at
    most one account exists per letter; collisions surface as `DuplicateKey`.
    """

    def work() -> OperationResult:
        if not isinstance(display_name, str) or not display_name.strip():
            raise ValidationError("invalid_display_name", "Account name is required.")

        account = Account(
            id=uuid.uuid4().hex,
            display_name=display_name,
            account_number=derive_account_number(display_name),
            upgrades=rules.base_upgrades(),
        )
        created = store.create_account(account)
        logger.info(
            "Registered account %s (number %s)", created.id, created.account_number
        )
        return OperationResult(success=True, account=created)

    return _run("register_account", work)


def ensure_house_account(store: LedgerStore, rules: EconomyRules) -> OperationResult:
    """Return the house account, creating it on first use."""

    def work() -> OperationResult:
        try:
            return OperationResult(
                success=True, account=store.get_by_name(rules.house_account_name)
            )
        except NotFound:
            pass

        result = register_account(rules.house_account_name, store, rules)
        if result.success or result.error_kind is not ErrorKind.DUPLICATE_KEY:
            return result
        # Lost a creation race with another process; the winner's row is ours
        # too. A different account holding the same number stays an error.
        try:
            return OperationResult(
                success=True, account=store.get_by_name(rules.house_account_name)
            )
        except NotFound:
            return result

    return _run("ensure_house_account", work)


def get_account_summary(account_id: str, store: LedgerStore) -> OperationResult:
    return _run(
        "get_account_summary",
        lambda: OperationResult(success=True, account=store.get_by_id(account_id)),
    )


def reload_funds(
    account_id: str,
    amount: int,
    store: LedgerStore,
    rules: EconomyRules,
) -> OperationResult:
    """
    Credit real money and, for variants with coins, the matching coins.
    """

    def work() -> OperationResult:
        _validate_positive_amount(amount, rules.max_amount)
        coins = amount * rules.reload_conversion_rate
        account = store.apply_if_atomic(
            account_id,
            always,
            BalanceDelta(real_balance=amount, game_currency=coins),
        )
        logger.info("Reloaded %s (+%s balance, +%s coins)", account_id, amount, coins)
        return OperationResult(success=True, account=account)

    return _run("reload_funds", work)


def buy_upgrade(
    account_id: str,
    kind: str,
    store: LedgerStore,
    rules: EconomyRules,
) -> OperationResult:
    """
    Buy the next level of an upgrade.

    Buying an upgrade that is already at its maximum level is rejected
    without charging, so repeated or concurrent purchases of a flag upgrade
    debit exactly once.
    """

    def work() -> OperationResult:
        upgrade = rules.upgrade(kind)
        if upgrade is None:
            raise ValidationError("unknown_upgrade", f"Unknown upgrade {kind!r}.")

        def check(account: Account) -> None:
            if account.upgrades.get(kind, 0) >= upgrade.max_level:
                raise PreconditionFailed("upgrade_owned", "You already own this upgrade.")
            _require_balance(account, upgrade.currency, upgrade.cost)

        if upgrade.currency is Currency.REAL:
            delta = BalanceDelta(real_balance=-upgrade.cost, upgrades={kind: 1})
        else:
            delta = BalanceDelta(game_currency=-upgrade.cost, upgrades={kind: 1})
        account = store.apply_if_atomic(account_id, check, delta)
        logger.info(
            "Account %s bought %s (now level %s)", account_id, kind, account.upgrades[kind]
        )
        return OperationResult(success=True, account=account)

    return _run("buy_upgrade", work)


def buy_ticket_bundle(
    account_id: str,
    store: LedgerStore,
    rules: EconomyRules,
) -> OperationResult:
    def work() -> OperationResult:
        def check(account: Account) -> None:
            _require_balance(account, Currency.REAL, rules.ticket_bundle_cost)

        account = store.apply_if_atomic(
            account_id,
            check,
            BalanceDelta(
                real_balance=-rules.ticket_bundle_cost,
                ticket_count=rules.ticket_bundle_size,
            ),
        )
        logger.info("Account %s bought %s tickets", account_id, rules.ticket_bundle_size)
        return OperationResult(success=True, account=account)

    return _run("buy_ticket_bundle", work)


def spend_ticket(account_id: str, store: LedgerStore) -> OperationResult:
    def work() -> OperationResult:
        def check(account: Account) -> None:
            if account.ticket_count <= 0:
                raise PreconditionFailed("insufficient_tickets", "No tickets left.")

        account = store.apply_if_atomic(account_id, check, BalanceDelta(ticket_count=-1))
        return OperationResult(success=True, account=account)

    return _run("spend_ticket", work)


def earn_tickets(
    account_id: str,
    store: LedgerStore,
    rules: EconomyRules,
) -> OperationResult:
    def work() -> OperationResult:
        account = store.apply_if_atomic(
            account_id, always, BalanceDelta(ticket_count=rules.earned_tickets)
        )
        return OperationResult(success=True, account=account)

    return _run("earn_tickets", work)


def complete_race(
    account_id: str,
    rank: int,
    store: LedgerStore,
    rules: EconomyRules,
) -> OperationResult:
    """
    Pay out the prize for a finishing rank.

    The rank is trusted as given; ranks without a prize pay nothing.
    """

    def work() -> OperationResult:
        if isinstance(rank, bool) or not isinstance(rank, int):
            raise ValidationError("invalid_rank", "Rank must be a whole number.")

        payout = rules.race_payout(rank)
        account = store.apply_if_atomic(account_id, always, BalanceDelta(real_balance=payout))
        logger.info("Account %s finished rank %s, paid %s", account_id, rank, payout)
        return OperationResult(success=True, account=account)

    return _run("complete_race", work)


def resolve_wager(
    account_id: str,
    bet_amount: int,
    outcome: WagerOutcome,
    store: LedgerStore,
    rules: EconomyRules,
) -> OperationResult:
    """
    Settle a bet for the caller.

    A win credits the bet amount. A loss debits the bet and credits the
    house its commission in the same transaction.
    """

    def work() -> OperationResult:
        _validate_positive_amount(bet_amount, rules.max_amount, "Bet amount")
        try:
            resolved = WagerOutcome(outcome)
        except ValueError:
            raise ValidationError("invalid_outcome", "Outcome must be 'won' or 'lost'.") from None

        def check(account: Account) -> None:
            _require_balance(account, Currency.REAL, bet_amount)

        if resolved is WagerOutcome.WON:
            account = store.apply_if_atomic(
                account_id, check, BalanceDelta(real_balance=bet_amount)
            )
            logger.info("Account %s won %s", account_id, bet_amount)
            return OperationResult(success=True, account=account)

        house = store.get_by_name(rules.house_account_name)
        commission = rules.commission_for(bet_amount)
        bettor_delta = BalanceDelta(real_balance=-bet_amount)
        house_delta = BalanceDelta(real_balance=commission)

        if house.id == account_id:
            account = store.apply_if_atomic(
                account_id, check, bettor_delta.merge(house_delta)
            )
        else:
            account, _ = store.apply_pair_atomic(
                account_id,
                bettor_delta,
                house.id,
                house_delta,
                lambda bettor, _house: check(bettor),
            )
        logger.info(
            "Account %s lost %s, house commission %s", account_id, bet_amount, commission
        )
        return OperationResult(success=True, account=account)

    return _run("resolve_wager", work)


def request_withdrawal(
    account_id: str,
    phone_number: str,
    store: LedgerStore,
    rules: EconomyRules,
) -> OperationResult:
    """
    Queue a real-money payout to `phone_number`.

    Requires a balance of at least the withdrawal threshold at the moment of
    the debit. Only the fixed payout amount is debited, and the Pending
    request is written in the same transaction.
    """

    def work() -> OperationResult:
        if (
            not isinstance(phone_number, str)
            or len(phone_number.strip()) < rules.min_phone_number_length
        ):
            raise ValidationError("invalid_phone_number", "Please enter a valid phone number.")

        def check(account: Account) -> None:
            if account.real_balance < rules.withdrawal_threshold:
                raise PreconditionFailed(
                    "below_withdrawal_threshold",
                    f"You need at least {rules.withdrawal_threshold} in your real money "
                    "balance to withdraw.",
                )

        request = WithdrawalRequest(
            id=uuid.uuid4().hex,
            account_id=account_id,
            phone_number=phone_number.strip(),
            amount=rules.withdrawal_payout_amount,
            created_at=datetime.now(timezone.utc),
        )
        account = store.apply_if_atomic(
            account_id,
            check,
            BalanceDelta(real_balance=-rules.withdrawal_payout_amount),
            withdrawal=request,
        )
        logger.info(
            "Account %s requested withdrawal %s of %s", account_id, request.id, request.amount
        )
        return OperationResult(success=True, account=account, withdrawal=request)

    return _run("request_withdrawal", work)


def advance_withdrawal(
    withdrawal_id: str,
    new_status: WithdrawalStatus,
    store: LedgerStore,
) -> OperationResult:
    """
    Administrative review: mark a Pending request Completed or Rejected.

    The ledger never does this on its own. Rejecting does not refund the
    debit; refunds are a separate, manual `reload_funds`.
    """

    def work() -> OperationResult:
        try:
            status = WithdrawalStatus(new_status)
        except ValueError:
            raise ValidationError("invalid_status", f"Unknown status {new_status!r}.") from None
        if status is WithdrawalStatus.PENDING:
            raise ValidationError(
                "invalid_status", "A withdrawal can only be completed or rejected."
            )

        request = store.advance_withdrawal_status(withdrawal_id, status)
        return OperationResult(success=True, withdrawal=request)

    return _run("advance_withdrawal", work)


def list_withdrawals(
    store: LedgerStore,
    status: Optional[WithdrawalStatus] = None,
) -> WithdrawalListResult:
    try:
        return WithdrawalListResult(success=True, withdrawals=store.list_withdrawals(status))
    except LedgerError as exc:
        logger.error("list_withdrawals failed: %s", exc.reason)
        return WithdrawalListResult(
            success=False, error_kind=exc.kind, error_message=exc.message
        )
