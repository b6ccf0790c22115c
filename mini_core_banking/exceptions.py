"""
Error Taxonomy Module

Every caller-visible failure of the ledger and loan engines. All of them are
terminal: the unit of work that raised them has been rolled back.
"""

from typing import Optional


class CoreBankingError(Exception):
    """Base exception for all mini core banking errors."""


class NotFoundError(CoreBankingError):
    """Raised when a referenced account, loan or transaction does not exist."""

    def __init__(self, entity_type: str, key: str):
        self.entity_type = entity_type
        self.key = key
        super().__init__(f"{entity_type.capitalize()} {key} not found")


class UnauthorizedError(CoreBankingError):
    """Raised when the caller does not own the entity or lacks the required role."""


class InvalidStateError(CoreBankingError):
    """Raised on an illegal lifecycle transition."""


class ValidationError(CoreBankingError):
    """Raised when an operation argument is outside its legal domain."""


class InvalidAmountError(ValidationError):
    """Raised when a monetary amount is not positive or has too many decimals."""


class InvalidTermError(ValidationError):
    """Raised when a loan term is not a positive number of months."""


class InsufficientBalanceError(CoreBankingError):
    """Raised when a debit would take an account balance below zero."""


class ExceedsBalanceError(CoreBankingError):
    """Raised when a repayment is larger than the loan's outstanding balance."""


class AccountNotActiveError(CoreBankingError):
    """Raised when an account involved in an operation is FROZEN or CLOSED."""


class SameAccountError(CoreBankingError):
    """Raised when a transfer's source and destination are the same account."""


class CurrencyMismatchError(CoreBankingError):
    """Raised when a transfer spans accounts held in different currencies."""


class ConflictError(CoreBankingError):
    """Raised when a concurrency token no longer matches the stored version."""

    def __init__(self, table: str, record_id: str, expected: Optional[int], actual: Optional[int]):
        self.table = table
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Concurrent modification of {table}/{record_id}: "
            f"expected version {expected}, found {actual}"
        )


class DuplicateKeyError(CoreBankingError):
    """Raised by the store when an insert collides on a primary or unique key."""

    def __init__(self, table: str, field: str, value: str):
        self.table = table
        self.field = field
        self.value = value
        super().__init__(f"Duplicate {field} '{value}' in {table}")


class DuplicateReferenceError(CoreBankingError):
    """Raised when a regenerated reference collides a second time."""
