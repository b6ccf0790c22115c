"""
System Wiring Module

Builds a fully wired banking system from configuration.
"""

from typing import Optional

from .accounts import Account, AccountManager, AccountType
from .config import MiniCoreConfig, get_config
from .exceptions import InvalidAmountError
from .identity import Principal
from .invariants import require_positive_amount
from .ledger import LedgerEngine
from .loans import LoanManager
from .logging_config import setup_logging
from .money import AmountLike, Currency, to_decimal
from .references import ReferenceGenerator
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .transactions import TransactionStore


def create_storage(config: MiniCoreConfig) -> StorageInterface:
    """Storage backend selected by configuration"""
    backend = config.storage_backend.lower()
    if backend == "memory":
        return InMemoryStorage()
    if backend == "sqlite":
        return SQLiteStorage(config.sqlite_path)
    raise ValueError(f"Unknown storage backend: {config.storage_backend}")


class BankingSystem:
    """Core banking system with all components initialized"""

    def __init__(
        self,
        config: Optional[MiniCoreConfig] = None,
        storage: Optional[StorageInterface] = None,
        references: Optional[ReferenceGenerator] = None,
        configure_logging: bool = True
    ):
        self.config = config or get_config()
        if configure_logging:
            setup_logging(self.config.log_level, self.config.log_format, self.config.log_file)

        self.storage = storage or create_storage(self.config)
        self.references = references or ReferenceGenerator()

        self.account_manager = AccountManager(self.storage, self.references, self.config)
        self.transaction_store = TransactionStore(self.storage, self.config)
        self.ledger = LedgerEngine(
            self.storage, self.account_manager, self.transaction_store,
            self.references, self.config
        )
        self.loan_manager = LoanManager(
            self.storage, self.account_manager, self.ledger,
            self.references, self.config
        )

    def close(self) -> None:
        self.storage.close()

    def open_account(
        self,
        caller: Principal,
        account_type: AccountType,
        currency: Optional[Currency] = None,
        initial_deposit: Optional[AmountLike] = None
    ) -> Account:
        """
        Open an account for the caller and fund it with an optional first deposit.

        The deposit is validated before the account is created, then posted as
        a separate ledger deposit described as "Initial deposit". A missing or
        zero initial deposit posts nothing.

        Raises:
            InvalidAmountError: If the initial deposit is not a valid amount
        """
        currency = currency or Currency.from_code(self.config.default_currency)

        amount = None
        if initial_deposit is not None:
            try:
                value = to_decimal(initial_deposit)
            except ValueError as exc:
                raise InvalidAmountError(str(exc)) from exc
            if value.is_nan() or value != 0:
                amount = require_positive_amount(value, currency)

        account = self.account_manager.create_account(caller, account_type, currency)
        if amount is None:
            return account

        self.ledger.deposit(caller, account.id, amount, "Initial deposit")
        return self.account_manager.load_account(account.id)
