"""
Account Management Module

Manages customer accounts: creation with a zero balance, lookup, and the
ACTIVE / FROZEN / CLOSED lifecycle. Balances are changed only by the ledger
engine, through load_account and save_account.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import uuid

from .config import MiniCoreConfig, get_config
from .exceptions import InvalidStateError, NotFoundError
from .identity import Principal
from .invariants import ensure_transition, require_owner_or_staff, require_staff
from .logging_config import get_logger, log_action
from .money import ZERO, Currency, format_amount
from .references import ReferenceGenerator, retry_on_duplicate
from .storage import StorageInterface, StorageManager, StorageRecord

ACCOUNTS_TABLE = "accounts"


class AccountType(Enum):
    """Banking product types"""
    SAVINGS = "savings"
    CURRENT = "current"
    FIXED_DEPOSIT = "fixed_deposit"


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "active"      # Normal operation
    FROZEN = "frozen"      # Temporarily suspended
    CLOSED = "closed"      # Permanently closed


ACCOUNT_TRANSITIONS = {
    AccountStatus.ACTIVE: {AccountStatus.FROZEN, AccountStatus.CLOSED},
    AccountStatus.FROZEN: {AccountStatus.ACTIVE, AccountStatus.CLOSED},
    AccountStatus.CLOSED: set(),
}


@dataclass
class Account(StorageRecord):
    """Customer account holding a single-currency balance"""
    account_number: str
    owner_id: str
    account_type: AccountType
    currency: Currency
    balance: Decimal = ZERO
    status: AccountStatus = AccountStatus.ACTIVE
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


class AccountManager:
    """
    Manages account lifecycle and lookups
    """

    def __init__(
        self,
        storage: StorageInterface,
        references: ReferenceGenerator,
        config: Optional[MiniCoreConfig] = None
    ):
        self.storage = storage
        self.records = StorageManager(storage)
        self.references = references
        self.config = config or get_config()
        self.accounts_table = ACCOUNTS_TABLE
        self.logger = get_logger("minicore.accounts")

    def create_account(
        self,
        caller: Principal,
        account_type: AccountType,
        currency: Optional[Currency] = None
    ) -> Account:
        """
        Open a new account for the caller with a zero balance.

        Args:
            caller: Account owner
            account_type: Type of banking product
            currency: Account currency (configured default if not provided)

        Returns:
            Created Account object

        Raises:
            DuplicateReferenceError: If the generated account number collides twice
        """
        currency = currency or Currency.from_code(self.config.default_currency)

        def open_account() -> Account:
            now = datetime.now(timezone.utc)
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                account_number=self.references.account_number(),
                owner_id=caller.user_id,
                account_type=account_type,
                currency=currency
            )
            self.records.insert_record(self.accounts_table, account, unique_fields=("account_number",))
            return account

        account = retry_on_duplicate(open_account, self.config.reference_retry_attempts, self.logger)

        log_action(
            self.logger, "info", f"Account {account.account_number} opened",
            user_id=caller.user_id, action="create_account", resource=f"account:{account.id}",
            extra={"account_type": account_type.name, "currency": currency.code}
        )
        return account

    def load_account(self, account_id: str) -> Account:
        """Load an account without authorization checks"""
        account = self.records.load_record(Account, self.accounts_table, account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        return account

    def find_by_number(self, account_number: str) -> Account:
        """Resolve an account number without authorization checks"""
        data = self.storage.find_one(self.accounts_table, {"account_number": account_number})
        if data is None:
            raise NotFoundError("account", account_number)
        return Account.from_dict(data)

    def save_account(self, account: Account) -> None:
        """Write back an account read at account.version"""
        self.records.update_record(self.accounts_table, account)

    def get_account(self, caller: Principal, account_id: str) -> Account:
        """Get account by ID (owner or staff)"""
        account = self.load_account(account_id)
        require_owner_or_staff(caller, account.owner_id, "account", account_id)
        return account

    def get_account_by_number(self, caller: Principal, account_number: str) -> Account:
        """Get account by account number (owner or staff)"""
        account = self.find_by_number(account_number)
        require_owner_or_staff(caller, account.owner_id, "account", account_number)
        return account

    def get_caller_accounts(self, caller: Principal) -> List[Account]:
        """Get all accounts owned by the caller, oldest first"""
        accounts = self.records.find_records(Account, self.accounts_table, {"owner_id": caller.user_id})
        return sorted(accounts, key=lambda a: a.created_at)

    def get_balance(self, caller: Principal, account_id: str) -> Decimal:
        return self.get_account(caller, account_id).balance

    def freeze_account(self, caller: Principal, account_id: str, reason: str = "") -> Account:
        """Freeze an account"""
        return self._change_status(caller, account_id, AccountStatus.FROZEN, reason)

    def unfreeze_account(self, caller: Principal, account_id: str, reason: str = "") -> Account:
        """Unfreeze an account"""
        return self._change_status(caller, account_id, AccountStatus.ACTIVE, reason)

    def close_account(self, caller: Principal, account_id: str, reason: str = "") -> Account:
        """Close an account; the balance must be zero"""
        return self._change_status(caller, account_id, AccountStatus.CLOSED, reason)

    def _change_status(
        self,
        caller: Principal,
        account_id: str,
        new_status: AccountStatus,
        reason: str
    ) -> Account:
        require_staff(caller, f"change account status to {new_status.name}")

        with self.storage.atomic(), self.storage.lock_rows(self.accounts_table, [account_id]):
            account = self.load_account(account_id)
            old_status = account.status
            ensure_transition(ACCOUNT_TRANSITIONS, old_status, new_status, f"account {account.account_number}")

            if new_status == AccountStatus.CLOSED and account.balance != 0:
                raise InvalidStateError(
                    f"Cannot close account with non-zero balance: {format_amount(account.balance, account.currency)}"
                )

            account.status = new_status
            account.updated_at = datetime.now(timezone.utc)
            self.save_account(account)

        log_action(
            self.logger, "info", f"Account {account.account_number} is now {new_status.name}",
            user_id=caller.user_id, action="change_account_status", resource=f"account:{account.id}",
            extra={"old_status": old_status.name, "new_status": new_status.name, "reason": reason}
        )
        return account
