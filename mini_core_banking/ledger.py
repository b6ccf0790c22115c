"""
Ledger Engine Module

Deposits, withdrawals and transfers. Every operation runs as one unit of
work: the account rows are locked, exactly one Transaction is recorded and
the balances are written back with their concurrency tokens. Any failure
rolls the whole unit back, so no partial postings are ever visible.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Optional
import uuid

from .accounts import ACCOUNTS_TABLE, Account, AccountManager
from .config import MiniCoreConfig, get_config
from .exceptions import CurrencyMismatchError, InsufficientBalanceError, SameAccountError
from .identity import Principal
from .invariants import require_active, require_owner, require_owner_or_staff, require_positive_amount
from .logging_config import get_logger, log_action
from .money import AmountLike, format_amount
from .references import ReferenceGenerator, retry_on_duplicate
from .storage import StorageInterface
from .transactions import Transaction, TransactionPage, TransactionStore, TransactionType


@dataclass(frozen=True)
class PostingResult:
    """Outcome of a ledger operation"""
    transaction: Transaction
    balance: Decimal  # source balance for withdrawals and transfers

    @property
    def reference(self) -> str:
        return self.transaction.reference


class LedgerEngine:
    """
    Applies balance changes to accounts and records them
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        transactions: TransactionStore,
        references: ReferenceGenerator,
        config: Optional[MiniCoreConfig] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.transactions = transactions
        self.references = references
        self.config = config or get_config()
        self.logger = get_logger("minicore.ledger")

    def deposit(
        self,
        caller: Principal,
        account_id: str,
        amount: AmountLike,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> PostingResult:
        """
        Credit an account.

        Args:
            caller: Account owner or staff member
            account_id: Account to credit
            amount: Positive amount in the account currency
            description: Free text stored on the transaction
            metadata: Extra tags stored on the transaction

        Returns:
            PostingResult with the DEPOSIT transaction and the new balance

        Raises:
            NotFoundError: If the account does not exist
            UnauthorizedError: If the caller is neither owner nor staff
            InvalidAmountError: If the amount is not a positive currency amount
            AccountNotActiveError: If the account is frozen or closed
        """
        def post() -> PostingResult:
            with self.storage.atomic(), self.storage.lock_rows(ACCOUNTS_TABLE, [account_id]):
                account = self.accounts.load_account(account_id)
                require_owner_or_staff(caller, account.owner_id, "account", account_id)
                value = require_positive_amount(amount, account.currency)
                require_active(account)

                transaction = self._record(
                    caller, TransactionType.DEPOSIT, value, account,
                    destination=account, description=description, metadata=metadata
                )
                self._apply(account, value, transaction.created_at)
                self.accounts.save_account(account)
                return PostingResult(transaction, account.balance)

        result = retry_on_duplicate(post, self.config.reference_retry_attempts, self.logger)
        self._log_posting(caller, "deposit", result, account_id)
        return result

    def withdraw(
        self,
        caller: Principal,
        account_id: str,
        amount: AmountLike,
        description: str = ""
    ) -> PostingResult:
        """
        Debit an account owned by the caller.

        Raises:
            NotFoundError: If the account does not exist
            UnauthorizedError: If the caller does not own the account
            InvalidAmountError: If the amount is not a positive currency amount
            AccountNotActiveError: If the account is frozen or closed
            InsufficientBalanceError: If the balance is below the amount
        """
        def post() -> PostingResult:
            with self.storage.atomic(), self.storage.lock_rows(ACCOUNTS_TABLE, [account_id]):
                account = self.accounts.load_account(account_id)
                require_owner(caller, account.owner_id, "account", account_id)
                value = require_positive_amount(amount, account.currency)
                require_active(account)
                self._require_funds(account, value)

                transaction = self._record(
                    caller, TransactionType.WITHDRAWAL, value, account,
                    source=account, description=description
                )
                self._apply(account, -value, transaction.created_at)
                self.accounts.save_account(account)
                return PostingResult(transaction, account.balance)

        result = retry_on_duplicate(post, self.config.reference_retry_attempts, self.logger)
        self._log_posting(caller, "withdraw", result, account_id)
        return result

    def transfer(
        self,
        caller: Principal,
        source_account_id: str,
        destination_account_number: str,
        amount: AmountLike,
        description: str = ""
    ) -> PostingResult:
        """
        Move money from an account the caller owns to any account by number.

        Both rows are locked and written in ascending id order, whichever side
        is the source.

        Raises:
            NotFoundError: If either account does not exist
            UnauthorizedError: If the caller does not own the source
            InvalidAmountError: If the amount is not a positive currency amount
            SameAccountError: If both sides resolve to the same account
            AccountNotActiveError: If either account is frozen or closed
            CurrencyMismatchError: If the accounts hold different currencies
            InsufficientBalanceError: If the source balance is below the amount
        """
        def post() -> PostingResult:
            with self.storage.atomic():
                source = self.accounts.load_account(source_account_id)
                require_owner(caller, source.owner_id, "account", source_account_id)
                value = require_positive_amount(amount, source.currency)
                destination = self.accounts.find_by_number(destination_account_number)
                if destination.id == source.id:
                    raise SameAccountError(f"Cannot transfer from account {source.account_number} to itself")

                with self.storage.lock_rows(ACCOUNTS_TABLE, [source.id, destination.id]):
                    # Re-read under the row locks
                    source = self.accounts.load_account(source.id)
                    destination = self.accounts.load_account(destination.id)
                    require_active(source)
                    require_active(destination)
                    if source.currency != destination.currency:
                        raise CurrencyMismatchError(
                            f"Cannot transfer {source.currency.code} to a {destination.currency.code} account"
                        )
                    self._require_funds(source, value)

                    transaction = self._record(
                        caller, TransactionType.TRANSFER, value, source,
                        source=source, destination=destination, description=description
                    )
                    self._apply(source, -value, transaction.created_at)
                    self._apply(destination, value, transaction.created_at)
                    for account in sorted((source, destination), key=lambda a: a.id):
                        self.accounts.save_account(account)
                    return PostingResult(transaction, source.balance)

        result = retry_on_duplicate(post, self.config.reference_retry_attempts, self.logger)
        self._log_posting(caller, "transfer", result, source_account_id)
        return result

    def get_account_transactions(
        self,
        caller: Principal,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 0,
        size: Optional[int] = None
    ) -> TransactionPage:
        """Paginated history of an account, newest first (owner or staff)"""
        account = self.accounts.load_account(account_id)
        require_owner_or_staff(caller, account.owner_id, "account", account_id)
        return self.transactions.page([account_id], start, end, page, size)

    def get_caller_transactions(
        self,
        caller: Principal,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 0,
        size: Optional[int] = None
    ) -> TransactionPage:
        """
        Paginated history across every account the caller owns, newest first.

        A transfer between two of the caller's accounts appears once.
        """
        account_ids = [account.id for account in self.accounts.get_caller_accounts(caller)]
        return self.transactions.page(account_ids, start, end, page, size)

    def _record(
        self,
        caller: Principal,
        transaction_type: TransactionType,
        value: Decimal,
        account: Account,
        source: Optional[Account] = None,
        destination: Optional[Account] = None,
        description: str = "",
        metadata: Optional[Dict[str, Any]] = None
    ) -> Transaction:
        """Insert the transaction; a fresh reference is drawn on every call"""
        now = datetime.now(timezone.utc)
        transaction = Transaction(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            reference=self.references.transaction_reference(),
            transaction_type=transaction_type,
            amount=value,
            currency=account.currency,
            source_account_id=source.id if source else None,
            destination_account_id=destination.id if destination else None,
            description=description,
            initiated_by=caller.user_id,
            metadata=dict(metadata or {})
        )
        self.transactions.record(transaction)
        return transaction

    @staticmethod
    def _apply(account: Account, delta: Decimal, now: datetime) -> None:
        account.balance = account.balance + delta
        account.updated_at = now

    @staticmethod
    def _require_funds(account: Account, value: Decimal) -> None:
        if account.balance < value:
            raise InsufficientBalanceError(
                f"Insufficient balance in {account.account_number}: "
                f"{format_amount(account.balance, account.currency)} available, "
                f"{format_amount(value, account.currency)} requested"
            )

    def _log_posting(self, caller: Principal, action: str, result: PostingResult, account_id: str) -> None:
        # Nested postings are logged by the enclosing operation once it commits
        if self.storage.in_unit_of_work:
            return
        transaction = result.transaction
        log_action(
            self.logger, "info",
            f"{transaction.transaction_type.name} {format_amount(transaction.amount, transaction.currency)} posted",
            user_id=caller.user_id, action=action, resource=f"account:{account_id}",
            extra={"reference": transaction.reference, "balance": str(result.balance)}
        )
