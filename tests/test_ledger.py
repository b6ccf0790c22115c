"""
Test suite for the ledger engine

Validates deposits, withdrawals and transfers, their all-or-nothing
behaviour, reference regeneration, history paging and concurrent postings.
"""

import pytest
import threading
from unittest.mock import patch
from decimal import Decimal
from datetime import datetime, timedelta, timezone

from mini_core_banking.accounts import AccountManager, AccountType
from mini_core_banking.config import MiniCoreConfig
from mini_core_banking.exceptions import (
    AccountNotActiveError, ConflictError, CurrencyMismatchError, DuplicateReferenceError,
    InsufficientBalanceError, InvalidAmountError, NotFoundError,
    SameAccountError, UnauthorizedError, ValidationError
)
from mini_core_banking.identity import Principal
from mini_core_banking.ledger import LedgerEngine
from mini_core_banking.money import Currency
from mini_core_banking.references import ReferenceGenerator
from mini_core_banking.storage import InMemoryStorage
from mini_core_banking.transactions import TransactionStatus, TransactionStore, TransactionType


class ScriptedReferences(ReferenceGenerator):
    """Hands out a fixed sequence of transaction references"""

    def __init__(self, transaction_references):
        super().__init__()
        self._transaction_references = iter(transaction_references)

    def transaction_reference(self):
        return next(self._transaction_references)


class LedgerTestBase:

    def setup_method(self):
        """Set up test fixtures"""
        self.config = MiniCoreConfig()
        self.storage = InMemoryStorage()
        self.build(ReferenceGenerator())
        self.alice = Principal.customer("alice")
        self.bob = Principal.customer("bob")
        self.officer = Principal.loan_officer("officer-1")
        self.admin = Principal.admin("admin-1")

    def build(self, references):
        self.account_manager = AccountManager(self.storage, references, self.config)
        self.transactions = TransactionStore(self.storage, self.config)
        self.ledger = LedgerEngine(self.storage, self.account_manager, self.transactions, references, self.config)

    def open_account(self, owner, initial=None, currency=Currency.USD):
        account = self.account_manager.create_account(owner, AccountType.SAVINGS, currency)
        if initial is not None:
            self.ledger.deposit(owner, account.id, initial)
        return account

    def balance(self, account):
        return self.account_manager.load_account(account.id).balance

    def history(self, account):
        return self.transactions.account_history(account.id)


class TestDeposit(LedgerTestBase):
    """Test crediting accounts"""

    def test_deposit(self):
        account = self.open_account(self.alice)

        result = self.ledger.deposit(self.alice, account.id, Decimal("100.00"), "salary")

        assert result.balance == Decimal("100.00")
        assert self.balance(account) == Decimal("100.00")
        history = self.history(account)
        assert len(history) == 1
        transaction = history[0]
        assert transaction.transaction_type == TransactionType.DEPOSIT
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.amount == Decimal("100.00")
        assert transaction.destination_account_id == account.id
        assert transaction.source_account_id is None
        assert transaction.description == "salary"
        assert transaction.initiated_by == "alice"
        assert result.reference == transaction.reference
        assert result.reference.startswith("TXN")

    def test_transaction_lookup(self):
        account = self.open_account(self.alice)
        result = self.ledger.deposit(self.alice, account.id, "12.00")

        assert self.transactions.get_by_reference(result.reference) == result.transaction
        assert self.transactions.get_transaction(result.transaction.id) == result.transaction
        assert self.transactions.get_by_reference("TXN-UNKNOWN") is None
        assert self.transactions.get_transaction("missing") is None

    def test_deposit_accepts_strings_and_ints(self):
        account = self.open_account(self.alice)
        self.ledger.deposit(self.alice, account.id, "10.5")
        self.ledger.deposit(self.alice, account.id, 4)
        assert self.balance(account) == Decimal("14.50")

    def test_staff_may_deposit(self):
        account = self.open_account(self.alice)
        self.ledger.deposit(self.officer, account.id, "5.00")
        assert self.balance(account) == Decimal("5.00")

    def test_other_customer_cannot_deposit(self):
        account = self.open_account(self.alice)
        with pytest.raises(UnauthorizedError):
            self.ledger.deposit(self.bob, account.id, "5.00")
        assert self.history(account) == []

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5.00"), "abc", Decimal("1.005"), 1.5, "NaN", "1e30"])
    def test_invalid_amounts_rejected(self, amount):
        account = self.open_account(self.alice)
        with pytest.raises(InvalidAmountError):
            self.ledger.deposit(self.alice, account.id, amount)
        assert self.balance(account) == Decimal("0.00")
        assert self.history(account) == []

    def test_missing_account(self):
        with pytest.raises(NotFoundError):
            self.ledger.deposit(self.alice, "missing", "1.00")

    def test_frozen_account_rejects_deposit(self):
        account = self.open_account(self.alice)
        self.account_manager.freeze_account(self.admin, account.id)

        with pytest.raises(AccountNotActiveError):
            self.ledger.deposit(self.alice, account.id, "1.00")
        assert self.history(account) == []


class TestWithdraw(LedgerTestBase):
    """Test debiting accounts"""

    def test_withdraw(self):
        account = self.open_account(self.alice, "100.00")

        result = self.ledger.withdraw(self.alice, account.id, "30.25")

        assert result.balance == Decimal("69.75")
        assert self.balance(account) == Decimal("69.75")
        latest = self.history(account)[0]
        assert latest.transaction_type == TransactionType.WITHDRAWAL
        assert latest.source_account_id == account.id
        assert latest.destination_account_id is None

    def test_withdraw_entire_balance(self):
        account = self.open_account(self.alice, "50.00")
        assert self.ledger.withdraw(self.alice, account.id, "50.00").balance == Decimal("0.00")

    def test_insufficient_balance_leaves_nothing_behind(self):
        account = self.open_account(self.alice, "20.00")

        with pytest.raises(InsufficientBalanceError):
            self.ledger.withdraw(self.alice, account.id, "20.01")

        assert self.balance(account) == Decimal("20.00")
        assert len(self.history(account)) == 1

    def test_only_owner_may_withdraw(self):
        account = self.open_account(self.alice, "20.00")
        with pytest.raises(UnauthorizedError):
            self.ledger.withdraw(self.admin, account.id, "1.00")
        with pytest.raises(UnauthorizedError):
            self.ledger.withdraw(self.bob, account.id, "1.00")

    def test_closed_account_rejects_withdrawal(self):
        account = self.open_account(self.alice)
        self.account_manager.close_account(self.admin, account.id)
        with pytest.raises(AccountNotActiveError):
            self.ledger.withdraw(self.alice, account.id, "1.00")


class TestTransfer(LedgerTestBase):
    """Test moving money between accounts"""

    def test_transfer(self):
        source = self.open_account(self.alice, "100.00")
        destination = self.open_account(self.bob)

        result = self.ledger.transfer(self.alice, source.id, destination.account_number, "40.00", "rent")

        assert result.balance == Decimal("60.00")
        assert self.balance(source) == Decimal("60.00")
        assert self.balance(destination) == Decimal("40.00")

        transaction = result.transaction
        assert transaction.transaction_type == TransactionType.TRANSFER
        assert transaction.source_account_id == source.id
        assert transaction.destination_account_id == destination.id
        assert transaction.amount == Decimal("40.00")
        assert self.history(destination) == [transaction]
        assert len(self.storage.load_all("transactions")) == 2

    def test_transfer_to_same_account(self):
        source = self.open_account(self.alice, "100.00")

        with pytest.raises(SameAccountError):
            self.ledger.transfer(self.alice, source.id, source.account_number, "10.00")

        assert self.balance(source) == Decimal("100.00")
        assert len(self.history(source)) == 1

    def test_same_account_checked_before_status(self):
        source = self.open_account(self.alice, "100.00")
        self.account_manager.freeze_account(self.admin, source.id)
        with pytest.raises(SameAccountError):
            self.ledger.transfer(self.alice, source.id, source.account_number, "10.00")

    def test_caller_must_own_source(self):
        source = self.open_account(self.alice, "100.00")
        destination = self.open_account(self.bob)
        with pytest.raises(UnauthorizedError):
            self.ledger.transfer(self.bob, source.id, destination.account_number, "10.00")
        assert self.balance(source) == Decimal("100.00")

    def test_unknown_destination(self):
        source = self.open_account(self.alice, "100.00")
        with pytest.raises(NotFoundError):
            self.ledger.transfer(self.alice, source.id, "ACC0000000000", "10.00")

    def test_inactive_destination(self):
        source = self.open_account(self.alice, "100.00")
        destination = self.open_account(self.bob)
        self.account_manager.freeze_account(self.admin, destination.id)

        with pytest.raises(AccountNotActiveError):
            self.ledger.transfer(self.alice, source.id, destination.account_number, "10.00")

        assert self.balance(source) == Decimal("100.00")
        assert self.balance(destination) == Decimal("0.00")

    def test_currency_mismatch(self):
        source = self.open_account(self.alice, "100.00")
        destination = self.open_account(self.bob, currency=Currency.EUR)

        with pytest.raises(CurrencyMismatchError):
            self.ledger.transfer(self.alice, source.id, destination.account_number, "10.00")
        assert self.balance(source) == Decimal("100.00")

    def test_insufficient_balance(self):
        source = self.open_account(self.alice, "5.00")
        destination = self.open_account(self.bob)

        with pytest.raises(InsufficientBalanceError):
            self.ledger.transfer(self.alice, source.id, destination.account_number, "5.01")

        assert self.balance(source) == Decimal("5.00")
        assert self.balance(destination) == Decimal("0.00")
        assert self.history(destination) == []


class TestReferenceCollisions(LedgerTestBase):
    """Test regeneration of duplicate transaction references"""

    def test_duplicate_reference_regenerated(self):
        self.build(ScriptedReferences(["TXN-A", "TXN-A", "TXN-B"]))
        account = self.open_account(self.alice)

        self.ledger.deposit(self.alice, account.id, "1.00")
        second = self.ledger.deposit(self.alice, account.id, "2.00")

        assert second.reference == "TXN-B"
        assert self.balance(account) == Decimal("3.00")
        assert len(self.history(account)) == 2

    def test_second_collision_is_fatal(self):
        self.build(ScriptedReferences(["TXN-A", "TXN-A", "TXN-A"]))
        account = self.open_account(self.alice)
        self.ledger.deposit(self.alice, account.id, "1.00")

        with pytest.raises(DuplicateReferenceError):
            self.ledger.deposit(self.alice, account.id, "2.00")

        assert self.balance(account) == Decimal("1.00")
        assert len(self.history(account)) == 1


class TestTransactionHistory(LedgerTestBase):
    """Test history paging and filtering"""

    def setup_method(self):
        super().setup_method()
        self.account = self.open_account(self.alice)
        for amount in ["1.00", "2.00", "3.00", "4.00", "5.00"]:
            self.ledger.deposit(self.alice, self.account.id, amount)

    def test_pages_newest_first(self):
        first = self.ledger.get_account_transactions(self.alice, self.account.id, page=0, size=2)
        last = self.ledger.get_account_transactions(self.alice, self.account.id, page=2, size=2)

        assert first.total_elements == 5
        assert first.total_pages == 3
        assert first.has_next
        assert [t.amount for t in first.items] == [Decimal("5.00"), Decimal("4.00")]
        assert [t.amount for t in last.items] == [Decimal("1.00")]
        assert not last.has_next

    def test_default_page_size(self):
        page = self.ledger.get_account_transactions(self.alice, self.account.id)
        assert page.size == self.config.default_page_size
        assert len(page.items) == 5

    def test_page_size_capped(self):
        page = self.ledger.get_account_transactions(self.alice, self.account.id, size=10_000)
        assert page.size == self.config.max_page_size

    def test_date_range_filter(self):
        now = datetime.now(timezone.utc)
        future = self.ledger.get_account_transactions(
            self.alice, self.account.id, start=now + timedelta(days=1)
        )
        window = self.ledger.get_account_transactions(
            self.alice, self.account.id, start=now - timedelta(days=1), end=now + timedelta(days=1)
        )
        assert future.total_elements == 0
        assert future.items == []
        assert window.total_elements == 5

    def test_invalid_paging(self):
        with pytest.raises(ValidationError):
            self.ledger.get_account_transactions(self.alice, self.account.id, page=-1)
        with pytest.raises(ValidationError):
            self.ledger.get_account_transactions(self.alice, self.account.id, size=0)

    def test_history_requires_owner_or_staff(self):
        assert self.ledger.get_account_transactions(self.admin, self.account.id).total_elements == 5
        with pytest.raises(UnauthorizedError):
            self.ledger.get_account_transactions(self.bob, self.account.id)


class TestCallerTransactions(LedgerTestBase):
    """Test history merged across all of a caller's accounts"""

    def setup_method(self):
        super().setup_method()
        self.savings = self.open_account(self.alice)
        self.current = self.open_account(self.alice)
        self.ledger.deposit(self.alice, self.savings.id, "1.00")
        self.ledger.deposit(self.alice, self.current.id, "2.00")
        self.ledger.deposit(self.alice, self.savings.id, "3.00")
        self.ledger.deposit(self.alice, self.current.id, "4.00")

    def test_accounts_merged_newest_first(self):
        page = self.ledger.get_caller_transactions(self.alice)

        assert page.total_elements == 4
        assert [t.amount for t in page.items] == [
            Decimal("4.00"), Decimal("3.00"), Decimal("2.00"), Decimal("1.00")
        ]
        assert [t.destination_account_id for t in page.items] == [
            self.current.id, self.savings.id, self.current.id, self.savings.id
        ]

    def test_paging_across_accounts(self):
        first = self.ledger.get_caller_transactions(self.alice, page=0, size=3)
        second = self.ledger.get_caller_transactions(self.alice, page=1, size=3)

        assert first.total_pages == 2
        assert first.has_next
        assert [t.amount for t in second.items] == [Decimal("1.00")]
        assert not second.has_next

    def test_other_callers_excluded(self):
        other = self.open_account(self.bob, "9.00")

        alice_page = self.ledger.get_caller_transactions(self.alice)
        bob_page = self.ledger.get_caller_transactions(self.bob)

        assert alice_page.total_elements == 4
        assert all(not t.involves([other.id]) for t in alice_page.items)
        assert [t.amount for t in bob_page.items] == [Decimal("9.00")]

    def test_transfer_between_own_accounts_listed_once(self):
        self.ledger.transfer(self.alice, self.savings.id, self.current.account_number, "0.50")

        page = self.ledger.get_caller_transactions(self.alice)

        assert page.total_elements == 5
        assert page.items[0].transaction_type == TransactionType.TRANSFER

    def test_caller_without_accounts(self):
        page = self.ledger.get_caller_transactions(self.bob)
        assert page.total_elements == 0
        assert page.items == []
        assert not page.has_next

    def test_date_range_and_invalid_paging(self):
        now = datetime.now(timezone.utc)
        assert self.ledger.get_caller_transactions(
            self.alice, start=now + timedelta(days=1)
        ).total_elements == 0
        with pytest.raises(ValidationError):
            self.ledger.get_caller_transactions(self.alice, page=-1)


class TestConflicts(LedgerTestBase):
    """Test that version conflicts surface to the caller and roll back"""

    def test_conflict_on_save_is_not_retried(self):
        account = self.open_account(self.alice, "10.00")
        conflict = ConflictError("accounts", account.id, 1, 2)

        with patch.object(self.account_manager, "save_account", side_effect=conflict) as save:
            with pytest.raises(ConflictError):
                self.ledger.deposit(self.alice, account.id, "5.00")

        assert save.call_count == 1
        assert self.balance(account) == Decimal("10.00")
        assert len(self.history(account)) == 1

    def test_conflict_during_transfer_rolls_back_both_sides(self):
        source = self.open_account(self.alice, "10.00")
        destination = self.open_account(self.bob)
        conflict = ConflictError("accounts", destination.id, 0, 1)

        with patch.object(self.account_manager, "save_account", side_effect=[None, conflict]):
            with pytest.raises(ConflictError):
                self.ledger.transfer(self.alice, source.id, destination.account_number, "4.00")

        assert self.balance(source) == Decimal("10.00")
        assert self.balance(destination) == Decimal("0.00")
        assert self.history(destination) == []


class TestConcurrentPostings(LedgerTestBase):
    """Test postings from many threads"""

    def run_threads(self, targets):
        errors = []

        def wrap(target):
            def run():
                try:
                    target()
                except Exception as exc:
                    errors.append(exc)
            return run

        threads = [threading.Thread(target=wrap(target)) for target in targets]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        assert not any(thread.is_alive() for thread in threads)
        assert errors == []

    def test_concurrent_deposits_to_one_account(self):
        account = self.open_account(self.alice)

        def deposit_ten():
            for _ in range(10):
                self.ledger.deposit(self.alice, account.id, "1.00")

        self.run_threads([deposit_ten] * 8)

        assert self.balance(account) == Decimal("80.00")
        assert len(self.history(account)) == 80

    def test_opposing_transfers_do_not_deadlock(self):
        first = self.open_account(self.alice, "500.00")
        second = self.open_account(self.bob, "500.00")

        def forward():
            for _ in range(20):
                self.ledger.transfer(self.alice, first.id, second.account_number, "3.00")

        def backward():
            for _ in range(20):
                self.ledger.transfer(self.bob, second.id, first.account_number, "2.00")

        self.run_threads([forward, backward, forward, backward])

        assert self.balance(first) == Decimal("460.00")
        assert self.balance(second) == Decimal("540.00")

    def test_disjoint_pairs_do_not_interfere(self):
        pairs = []
        for index in range(4):
            owner = Principal.customer(f"owner-{index}")
            source = self.open_account(owner, "100.00")
            destination = self.open_account(Principal.customer(f"payee-{index}"))
            pairs.append((owner, source, destination))

        def make_target(owner, source, destination):
            def run():
                for _ in range(10):
                    self.ledger.transfer(owner, source.id, destination.account_number, "1.50")
            return run

        self.run_threads([make_target(*pair) for pair in pairs])

        for _, source, destination in pairs:
            assert self.balance(source) == Decimal("85.00")
            assert self.balance(destination) == Decimal("15.00")
