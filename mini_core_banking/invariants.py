"""
Invariant Checks Module

Guard functions shared by the ledger, account and loan managers. Each one
either returns a normalized value or raises the typed error for the rule.
"""

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping, Set

from .exceptions import (
    AccountNotActiveError, InvalidAmountError, InvalidStateError,
    InvalidTermError, UnauthorizedError
)
from .amortization import RATE_PRECISION
from .identity import Principal
from .money import AmountLike, Currency, has_excess_precision, quantize, to_decimal


def require_positive_amount(amount: AmountLike, currency: Currency) -> Decimal:
    """
    Validate a monetary amount for the given currency.

    Returns:
        The amount as a Decimal at the currency's precision

    Raises:
        InvalidAmountError: If the amount is not numeric, not positive, or has
            more fractional digits than the currency allows
    """
    try:
        value = to_decimal(amount)
    except ValueError as exc:
        raise InvalidAmountError(str(exc)) from exc

    if not value.is_finite() or value <= 0:
        raise InvalidAmountError(f"Amount must be positive, got {amount}")
    try:
        if has_excess_precision(value, currency):
            raise InvalidAmountError(
                f"Amount {value} has more than {currency.precision} decimal places for {currency.code}"
            )
        return quantize(value, currency.quantum)
    except InvalidOperation as exc:
        # Too many digits to hold at the currency's precision
        raise InvalidAmountError(f"Amount {amount} is too large") from exc


def require_rate(rate: AmountLike) -> Decimal:
    """Annual interest rate in percent; zero is allowed, negative is not"""
    try:
        value = to_decimal(rate)
    except ValueError as exc:
        raise InvalidAmountError(str(exc)) from exc

    if not value.is_finite() or value < 0:
        raise InvalidAmountError(f"Interest rate must not be negative, got {rate}")
    try:
        value.quantize(RATE_PRECISION)
    except InvalidOperation as exc:
        raise InvalidAmountError(f"Interest rate {rate} is too large") from exc
    return value


def require_positive_term(term_months: Any) -> int:
    if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months <= 0:
        raise InvalidTermError(f"Term must be a positive number of months, got {term_months}")
    return term_months


def require_active(account: Any) -> None:
    """Raise AccountNotActiveError unless the account is ACTIVE"""
    if not account.is_active:
        raise AccountNotActiveError(
            f"Account {account.account_number} is {account.status.name}"
        )


def require_owner(caller: Principal, owner_id: str, entity_type: str, key: str) -> None:
    if caller.user_id != owner_id:
        raise UnauthorizedError(f"User {caller.user_id} does not own {entity_type} {key}")


def require_owner_or_staff(caller: Principal, owner_id: str, entity_type: str, key: str) -> None:
    if caller.is_staff:
        return
    require_owner(caller, owner_id, entity_type, key)


def require_staff(caller: Principal, action: str) -> None:
    if not caller.is_staff:
        raise UnauthorizedError(f"User {caller.user_id} is not allowed to {action}")


def ensure_transition(
    transitions: Mapping[Enum, Set[Enum]],
    current: Enum,
    target: Enum,
    entity: str
) -> None:
    """
    Check a lifecycle transition against a transition table.

    Raises:
        InvalidStateError: If target is not reachable from current
    """
    if target not in transitions.get(current, set()):
        raise InvalidStateError(
            f"Cannot move {entity} from {current.name} to {target.name}"
        )
