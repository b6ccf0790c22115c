"""
Transaction History Module

Immutable records of balance-affecting ledger operations. Transactions are
appended once and never updated or deleted; this module only records and
queries them.
"""

from decimal import Decimal
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Collection, Dict, Iterable, List, Optional
from enum import Enum
import math

from .config import MiniCoreConfig, get_config
from .exceptions import ValidationError
from .money import Currency
from .storage import StorageInterface, StorageManager, StorageRecord

TRANSACTIONS_TABLE = "transactions"


class TransactionType(Enum):
    """Types of ledger transactions"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"


class TransactionStatus(Enum):
    """States of a transaction"""
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Transaction(StorageRecord):
    """
    Record of one balance-affecting operation.

    Deposits have no source account, withdrawals no destination account.
    """
    reference: str
    transaction_type: TransactionType
    amount: Decimal
    currency: Currency
    source_account_id: Optional[str] = None
    destination_account_id: Optional[str] = None
    description: str = ""
    status: TransactionStatus = TransactionStatus.COMPLETED
    initiated_by: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    version: int = 0

    def involves(self, account_ids: Collection[str]) -> bool:
        """True when either side of the transaction is one of the accounts"""
        return self.source_account_id in account_ids or self.destination_account_id in account_ids


@dataclass
class TransactionPage:
    """One page of transaction history, newest first"""
    items: List[Transaction]
    page: int
    size: int
    total_elements: int
    total_pages: int

    @property
    def has_next(self) -> bool:
        return self.page + 1 < self.total_pages


class TransactionStore:
    """Append-only transaction table"""

    def __init__(self, storage: StorageInterface, config: Optional[MiniCoreConfig] = None):
        self.storage = storage
        self.records = StorageManager(storage)
        self.config = config or get_config()
        self.table_name = TRANSACTIONS_TABLE

    def record(self, transaction: Transaction) -> None:
        """
        Persist a new transaction.

        Raises:
            DuplicateKeyError: If the reference is already taken
        """
        self.records.insert_record(self.table_name, transaction, unique_fields=("reference",))

    def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        return self.records.load_record(Transaction, self.table_name, transaction_id)

    def get_by_reference(self, reference: str) -> Optional[Transaction]:
        data = self.storage.find_one(self.table_name, {"reference": reference})
        return Transaction.from_dict(data) if data else None

    def account_history(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[Transaction]:
        """All transactions touching the account within [start, end], newest first"""
        return self.history([account_id], start, end)

    def history(
        self,
        account_ids: Iterable[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[Transaction]:
        """
        Transactions touching any of the accounts within [start, end], newest
        first. A transfer between two of the accounts is listed once.
        """
        account_ids = set(account_ids)
        transactions = []
        for data in self.storage.load_all(self.table_name):
            transaction = Transaction.from_dict(data)
            if not transaction.involves(account_ids):
                continue
            if start and transaction.created_at < start:
                continue
            if end and transaction.created_at > end:
                continue
            transactions.append(transaction)

        # Stored in insertion order; reversing first keeps ties newest first
        transactions.reverse()
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions

    def page(
        self,
        account_ids: Iterable[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        page: int = 0,
        size: Optional[int] = None
    ) -> TransactionPage:
        """
        Paginated history of one or more accounts.

        Args:
            page: Zero-based page index
            size: Page size (configured default if not provided, capped at the
                configured maximum)

        Raises:
            ValidationError: If page is negative or size is not positive
        """
        size = self.config.default_page_size if size is None else size
        if page < 0:
            raise ValidationError(f"Page index must not be negative, got {page}")
        if size <= 0:
            raise ValidationError(f"Page size must be positive, got {size}")
        size = min(size, self.config.max_page_size)

        history = self.history(account_ids, start, end)
        offset = page * size
        return TransactionPage(
            items=history[offset:offset + size],
            page=page,
            size=size,
            total_elements=len(history),
            total_pages=math.ceil(len(history) / size)
        )
