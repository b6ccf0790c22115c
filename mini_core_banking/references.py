"""
Reference Generator Module

Human-readable, effectively-unique identifiers: a prefix, a timestamp and a
random suffix. Uniqueness is finally enforced by the store; a collision is
regenerated once via retry_on_duplicate.
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import Callable, Optional, TypeVar

from .exceptions import DuplicateKeyError, DuplicateReferenceError
from .logging_config import get_logger, log_action

T = TypeVar("T")


class ReferenceGenerator:
    """
    Generates transaction references, loan numbers, repayment references
    and account numbers.

    Formats:
        TXN + yyyyMMddHHmmssSSS + 3 random digits
        LOAN + yyyyMMdd + 5 random digits
        PAY + yyyyMMddHHmmss + 4 random digits
        ACC + 10 random digits
    """

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        randbelow: Callable[[int], int] = secrets.randbelow
    ):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._randbelow = randbelow

    def _random_digits(self, digits: int) -> str:
        # Leading digit is never zero so every suffix has a fixed width
        low = 10 ** (digits - 1)
        return str(low + self._randbelow(9 * low))

    def transaction_reference(self) -> str:
        now = self._clock()
        millis = f"{now.microsecond // 1000:03d}"
        return f"TXN{now.strftime('%Y%m%d%H%M%S')}{millis}{self._random_digits(3)}"

    def loan_number(self) -> str:
        return f"LOAN{self._clock().strftime('%Y%m%d')}{self._random_digits(5)}"

    def payment_reference(self) -> str:
        return f"PAY{self._clock().strftime('%Y%m%d%H%M%S')}{self._random_digits(4)}"

    def account_number(self) -> str:
        return f"ACC{self._random_digits(10)}"


def retry_on_duplicate(
    operation: Callable[[], T],
    attempts: int = 1,
    logger: Optional[logging.Logger] = None,
) -> T:
    """
    Run a unit of work that generates its own reference, re-running it when
    the store rejects the reference as a duplicate.

    Args:
        operation: Callable performing the whole unit of work; it must draw a
            fresh reference on every call
        attempts: Number of regenerations allowed after the first collision

    Returns:
        The operation's result

    Raises:
        DuplicateReferenceError: If the last allowed attempt also collides
    """
    logger = logger or get_logger("minicore.references")
    attempt = 0
    while True:
        try:
            return operation()
        except DuplicateKeyError as exc:
            if attempt >= attempts:
                raise DuplicateReferenceError(
                    f"Generated {exc.field} collided {attempt + 1} times in {exc.table}"
                ) from exc
            attempt += 1
            log_action(
                logger, "warning", f"Duplicate {exc.field} generated, regenerating",
                action="regenerate_reference", resource=f"{exc.table}:{exc.value}",
                extra={"attempt": attempt}
            )
