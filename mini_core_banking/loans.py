"""
Loan Management Module

Loan lifecycle: application, approval or rejection, disbursement into the
linked account through the ledger engine, repayment and closure.

States:
    PENDING -> APPROVED -> ACTIVE -> CLOSED
    PENDING -> REJECTED
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import List, Optional
from enum import Enum
import uuid

from .accounts import AccountManager
from .amortization import (
    ScheduleEntry, add_months, allocate_repayment, amortization_schedule,
    monthly_payment, total_interest
)
from .config import MiniCoreConfig, get_config
from .exceptions import ExceedsBalanceError, InvalidStateError, NotFoundError
from .identity import Principal
from .invariants import (
    ensure_transition, require_active, require_owner, require_owner_or_staff,
    require_positive_amount, require_positive_term, require_rate, require_staff
)
from .ledger import LedgerEngine
from .logging_config import get_logger, log_action
from .money import ZERO, AmountLike, Currency, format_amount
from .references import ReferenceGenerator, retry_on_duplicate
from .storage import StorageInterface, StorageManager, StorageRecord

LOANS_TABLE = "loans"
REPAYMENTS_TABLE = "loan_repayments"


class LoanType(Enum):
    """Types of loans"""
    PERSONAL = "personal"
    BUSINESS = "business"
    MORTGAGE = "mortgage"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"      # Applied, awaiting a decision
    APPROVED = "approved"    # Approved, not yet disbursed
    REJECTED = "rejected"    # Terminal
    ACTIVE = "active"        # Disbursed, being repaid
    CLOSED = "closed"        # Terminal, fully repaid


class PaymentMethod(Enum):
    """How a repayment was made"""
    DEBIT = "debit"
    TRANSFER = "transfer"
    CASH = "cash"


class RepaymentStatus(Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# Annual rate in percent by loan type
INTEREST_RATES = {
    LoanType.PERSONAL: Decimal("12.50"),
    LoanType.BUSINESS: Decimal("10.00"),
    LoanType.MORTGAGE: Decimal("7.50"),
}

LOAN_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED},
    LoanStatus.APPROVED: {LoanStatus.ACTIVE},
    LoanStatus.ACTIVE: {LoanStatus.CLOSED},
    LoanStatus.REJECTED: set(),
    LoanStatus.CLOSED: set(),
}


@dataclass
class Loan(StorageRecord):
    """
    Loan against a customer account.

    outstanding_balance only ever decreases, by the principal portion of
    each repayment.
    """
    loan_number: str
    owner_id: str
    loan_type: LoanType
    principal: Decimal
    interest_rate: Decimal  # Annual rate in percent
    term_months: int
    monthly_payment: Decimal
    outstanding_balance: Decimal
    currency: Currency
    account_id: Optional[str] = None
    status: LoanStatus = LoanStatus.PENDING
    purpose: str = ""
    application_date: Optional[datetime] = None
    approval_date: Optional[datetime] = None
    disbursement_date: Optional[datetime] = None
    closed_date: Optional[datetime] = None
    maturity_date: Optional[date] = None
    rejection_reason: Optional[str] = None
    approved_by: Optional[str] = None
    version: int = 0

    @property
    def total_interest(self) -> Decimal:
        """Interest over the full term if every installment is paid"""
        return total_interest(self.principal, self.monthly_payment, self.term_months)

    @property
    def principal_repaid(self) -> Decimal:
        return self.principal - self.outstanding_balance


@dataclass
class LoanRepayment(StorageRecord):
    """Repayment applied to a loan; never modified after it is recorded"""
    loan_id: str
    payment_reference: str
    amount: Decimal
    principal_portion: Decimal
    interest_portion: Decimal
    payment_date: datetime
    method: PaymentMethod
    status: RepaymentStatus = RepaymentStatus.COMPLETED
    paid_by: Optional[str] = None
    version: int = 0


@dataclass
class RepaymentHistory:
    """Repayments of a loan, oldest first"""
    loan_id: str
    repayments: List[LoanRepayment]
    total_repaid: Decimal
    remaining_balance: Decimal


class LoanManager:
    """
    Manages loan origination, servicing and closure
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountManager,
        ledger: LedgerEngine,
        references: ReferenceGenerator,
        config: Optional[MiniCoreConfig] = None
    ):
        self.storage = storage
        self.records = StorageManager(storage)
        self.accounts = accounts
        self.ledger = ledger
        self.references = references
        self.config = config or get_config()
        self.loans_table = LOANS_TABLE
        self.repayments_table = REPAYMENTS_TABLE
        self.logger = get_logger("minicore.loans")

    def apply(
        self,
        caller: Principal,
        account_id: str,
        loan_type: LoanType,
        principal: AmountLike,
        term_months: int,
        purpose: str = ""
    ) -> Loan:
        """
        Apply for a loan against one of the caller's accounts.

        Args:
            caller: Applicant; must own the account
            account_id: Account the principal will be disbursed into
            loan_type: Determines the annual interest rate
            principal: Positive amount in the account currency
            term_months: Positive number of monthly installments
            purpose: Free text

        Returns:
            The PENDING loan

        Raises:
            NotFoundError: If the account does not exist
            UnauthorizedError: If the caller does not own the account
            InvalidAmountError: If the principal is not a positive currency amount
            InvalidTermError: If the term is not a positive integer
        """
        account = self.accounts.load_account(account_id)
        require_owner(caller, account.owner_id, "account", account_id)
        value = require_positive_amount(principal, account.currency)
        term = require_positive_term(term_months)
        rate = INTEREST_RATES[loan_type]

        def create() -> Loan:
            now = datetime.now(timezone.utc)
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_number=self.references.loan_number(),
                owner_id=caller.user_id,
                loan_type=loan_type,
                principal=value,
                interest_rate=rate,
                term_months=term,
                monthly_payment=monthly_payment(value, rate, term),
                outstanding_balance=value,
                currency=account.currency,
                account_id=account.id,
                purpose=purpose,
                application_date=now
            )
            self.records.insert_record(self.loans_table, loan, unique_fields=("loan_number",))
            return loan

        loan = retry_on_duplicate(create, self.config.reference_retry_attempts, self.logger)

        log_action(
            self.logger, "info", f"Loan {loan.loan_number} applied for",
            user_id=caller.user_id, action="apply_loan", resource=f"loan:{loan.id}",
            extra={
                "loan_type": loan_type.name,
                "principal": str(value),
                "term_months": term,
                "monthly_payment": str(loan.monthly_payment)
            }
        )
        return loan

    def approve(
        self,
        caller: Principal,
        loan_id: str,
        interest_rate: Optional[AmountLike] = None
    ) -> Loan:
        """
        Approve a pending loan, optionally overriding its rate.

        Raises:
            UnauthorizedError: If the caller is not staff
            NotFoundError: If the loan does not exist
            InvalidStateError: If the loan is not PENDING
            InvalidAmountError: If the override rate is negative
        """
        require_staff(caller, "approve loans")
        rate = require_rate(interest_rate) if interest_rate is not None else None

        with self.storage.atomic(), self.storage.lock_rows(self.loans_table, [loan_id]):
            loan = self._load(loan_id)
            ensure_transition(LOAN_TRANSITIONS, loan.status, LoanStatus.APPROVED, f"loan {loan.loan_number}")

            if rate is not None:
                loan.interest_rate = rate
                loan.monthly_payment = monthly_payment(loan.principal, rate, loan.term_months)

            now = datetime.now(timezone.utc)
            loan.status = LoanStatus.APPROVED
            loan.approval_date = now
            loan.approved_by = caller.user_id
            loan.maturity_date = add_months(now.date(), loan.term_months)
            loan.updated_at = now
            self._save(loan)

        log_action(
            self.logger, "info", f"Loan {loan.loan_number} approved",
            user_id=caller.user_id, action="approve_loan", resource=f"loan:{loan.id}",
            extra={"interest_rate": str(loan.interest_rate), "monthly_payment": str(loan.monthly_payment)}
        )
        return loan

    def reject(self, caller: Principal, loan_id: str, reason: str) -> Loan:
        """Reject a pending loan (staff only)"""
        require_staff(caller, "reject loans")

        with self.storage.atomic(), self.storage.lock_rows(self.loans_table, [loan_id]):
            loan = self._load(loan_id)
            ensure_transition(LOAN_TRANSITIONS, loan.status, LoanStatus.REJECTED, f"loan {loan.loan_number}")

            loan.status = LoanStatus.REJECTED
            loan.rejection_reason = reason
            loan.updated_at = datetime.now(timezone.utc)
            self._save(loan)

        log_action(
            self.logger, "info", f"Loan {loan.loan_number} rejected",
            user_id=caller.user_id, action="reject_loan", resource=f"loan:{loan.id}",
            extra={"reason": reason}
        )
        return loan

    def disburse(self, caller: Principal, loan_id: str) -> Loan:
        """
        Pay out an approved loan into its linked account.

        The ledger deposit and the loan update commit together.

        Raises:
            UnauthorizedError: If the caller is not staff
            NotFoundError: If the loan or its account does not exist
            InvalidStateError: If the loan is not APPROVED or has no linked account
            AccountNotActiveError: If the linked account is frozen or closed
        """
        require_staff(caller, "disburse loans")

        def pay_out():
            with self.storage.atomic(), self.storage.lock_rows(self.loans_table, [loan_id]):
                loan = self._load(loan_id)
                ensure_transition(LOAN_TRANSITIONS, loan.status, LoanStatus.ACTIVE, f"loan {loan.loan_number}")
                if loan.account_id is None:
                    raise InvalidStateError(f"Loan {loan.loan_number} has no linked account")
                require_active(self.accounts.load_account(loan.account_id))

                posting = self.ledger.deposit(
                    caller, loan.account_id, loan.principal,
                    description=f"Loan disbursement - {loan.loan_number}",
                    metadata={"kind": "loan_disbursement", "loan_id": loan.id, "loan_number": loan.loan_number}
                )

                now = posting.transaction.created_at
                loan.status = LoanStatus.ACTIVE
                loan.disbursement_date = now
                loan.outstanding_balance = loan.principal
                loan.maturity_date = add_months(now.date(), loan.term_months)
                loan.updated_at = now
                self._save(loan)
                return loan, posting

        loan, posting = retry_on_duplicate(pay_out, self.config.reference_retry_attempts, self.logger)

        log_action(
            self.logger, "info",
            f"Loan {loan.loan_number} disbursed: {format_amount(loan.principal, loan.currency)}",
            user_id=caller.user_id, action="disburse_loan", resource=f"loan:{loan.id}",
            extra={"account_id": loan.account_id, "reference": posting.reference}
        )
        return loan

    def repay(
        self,
        caller: Principal,
        loan_id: str,
        amount: AmountLike,
        method: PaymentMethod = PaymentMethod.TRANSFER
    ) -> LoanRepayment:
        """
        Apply a repayment to an active loan.

        Interest is one month on the outstanding balance; the rest reduces the
        principal. A payment of exactly the outstanding balance settles the
        loan and closes it.

        Raises:
            NotFoundError: If the loan does not exist
            UnauthorizedError: If the caller does not own the loan
            InvalidStateError: If the loan is not ACTIVE
            InvalidAmountError: If the amount is not a positive currency amount
            ExceedsBalanceError: If the amount is above the outstanding balance
        """
        def pay():
            with self.storage.atomic(), self.storage.lock_rows(self.loans_table, [loan_id]):
                loan = self._load(loan_id)
                require_owner(caller, loan.owner_id, "loan", loan_id)
                if loan.status != LoanStatus.ACTIVE:
                    raise InvalidStateError(
                        f"Loan {loan.loan_number} is {loan.status.name}; only ACTIVE loans accept repayments"
                    )
                value = require_positive_amount(amount, loan.currency)
                if value > loan.outstanding_balance:
                    raise ExceedsBalanceError(
                        f"Repayment {format_amount(value, loan.currency)} exceeds outstanding balance "
                        f"{format_amount(loan.outstanding_balance, loan.currency)}"
                    )

                principal_portion, interest_portion = allocate_repayment(
                    value, loan.outstanding_balance, loan.interest_rate
                )
                now = datetime.now(timezone.utc)
                repayment = LoanRepayment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    payment_reference=self.references.payment_reference(),
                    amount=value,
                    principal_portion=principal_portion,
                    interest_portion=interest_portion,
                    payment_date=now,
                    method=method,
                    paid_by=caller.user_id
                )
                self.records.insert_record(self.repayments_table, repayment, unique_fields=("payment_reference",))

                loan.outstanding_balance = loan.outstanding_balance - principal_portion
                if loan.outstanding_balance == 0:
                    ensure_transition(LOAN_TRANSITIONS, loan.status, LoanStatus.CLOSED, f"loan {loan.loan_number}")
                    loan.status = LoanStatus.CLOSED
                    loan.closed_date = now
                loan.updated_at = now
                self._save(loan)
                return loan, repayment

        loan, repayment = retry_on_duplicate(pay, self.config.reference_retry_attempts, self.logger)

        log_action(
            self.logger, "info",
            f"Repayment {repayment.payment_reference} applied to loan {loan.loan_number}",
            user_id=caller.user_id, action="repay_loan", resource=f"loan:{loan.id}",
            extra={
                "amount": str(repayment.amount),
                "principal_portion": str(repayment.principal_portion),
                "interest_portion": str(repayment.interest_portion),
                "outstanding_balance": str(loan.outstanding_balance),
                "status": loan.status.name
            }
        )
        return repayment

    def get_loan(self, caller: Principal, loan_id: str) -> Loan:
        """Get loan by ID (owner or staff)"""
        loan = self._load(loan_id)
        require_owner_or_staff(caller, loan.owner_id, "loan", loan_id)
        return loan

    def get_caller_loans(self, caller: Principal) -> List[Loan]:
        """Get all loans of the caller, newest application first"""
        loans = self.records.find_records(Loan, self.loans_table, {"owner_id": caller.user_id})
        loans.reverse()
        return sorted(loans, key=lambda loan: loan.application_date or loan.created_at, reverse=True)

    def get_loan_repayments(self, caller: Principal, loan_id: str) -> RepaymentHistory:
        """Repayment history of a loan with the totals (owner or staff)"""
        loan = self.get_loan(caller, loan_id)
        repayments = self.records.find_records(LoanRepayment, self.repayments_table, {"loan_id": loan_id})
        repayments.sort(key=lambda r: (r.payment_date, r.payment_reference))
        return RepaymentHistory(
            loan_id=loan_id,
            repayments=repayments,
            total_repaid=sum((r.amount for r in repayments), ZERO),
            remaining_balance=loan.outstanding_balance
        )

    def get_amortization_schedule(self, caller: Principal, loan_id: str) -> List[ScheduleEntry]:
        """
        Monthly schedule for the loan's original terms.

        The first installment falls one month after disbursement, or one month
        after application for loans not yet disbursed.
        """
        loan = self.get_loan(caller, loan_id)
        start = loan.disbursement_date or loan.application_date or loan.created_at
        return amortization_schedule(
            loan.principal, loan.interest_rate, loan.term_months, add_months(start.date(), 1)
        )

    def _load(self, loan_id: str) -> Loan:
        loan = self.records.load_record(Loan, self.loans_table, loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan

    def _save(self, loan: Loan) -> None:
        self.records.update_record(self.loans_table, loan)
