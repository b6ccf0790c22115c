"""
Amortization Calculator Module

Pure, stateless loan math on Decimal: the equal-installment monthly payment
M = P * r(1+r)^n / ((1+r)^n - 1), the principal/interest split of a payment
and the simple monthly schedule. No storage access, no side effects.
"""

import calendar
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Tuple

from .money import ZERO, quantize

RATE_PRECISION = Decimal("0.0000000001")  # 10 fractional digits for r


@dataclass(frozen=True)
class ScheduleEntry:
    """Single row of a monthly amortization schedule"""
    payment_number: int
    payment_date: date
    payment_amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    remaining_balance: Decimal


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    """Annual percentage rate to a monthly decimal rate (annual / 12 / 100)"""
    per_month = (Decimal(annual_rate_percent) / Decimal("12")).quantize(
        RATE_PRECISION, rounding=ROUND_HALF_UP
    )
    return (per_month / Decimal("100")).quantize(RATE_PRECISION, rounding=ROUND_HALF_UP)


def monthly_payment(principal: Decimal, annual_rate_percent: Decimal, term_months: int) -> Decimal:
    """
    Fixed monthly installment that repays principal and interest over the term.

    A zero-month term returns 0; callers are expected not to ask for one.
    """
    if term_months == 0:
        return ZERO

    rate = monthly_rate(annual_rate_percent)
    if rate == 0:
        return quantize(Decimal(principal) / Decimal(term_months))

    growth = (Decimal("1") + rate) ** term_months
    return quantize(Decimal(principal) * rate * growth / (growth - Decimal("1")))


def payment_portions(
    payment_amount: Decimal,
    outstanding_balance: Decimal,
    annual_rate_percent: Decimal
) -> Tuple[Decimal, Decimal]:
    """
    Split a payment into (principal_portion, interest_portion).

    Interest is one month on the current outstanding balance regardless of
    the payment amount. The principal portion never exceeds the balance.
    """
    interest = quantize(Decimal(outstanding_balance) * monthly_rate(annual_rate_percent))
    principal = quantize(Decimal(payment_amount) - interest)
    if principal > outstanding_balance:
        principal = Decimal(outstanding_balance)
    return principal, interest


def total_interest(principal: Decimal, monthly_payment_amount: Decimal, term_months: int) -> Decimal:
    """Interest paid over the life of the loan if every installment is paid"""
    return Decimal(monthly_payment_amount) * Decimal(term_months) - Decimal(principal)


def allocate_repayment(
    amount: Decimal,
    outstanding_balance: Decimal,
    annual_rate_percent: Decimal
) -> Tuple[Decimal, Decimal]:
    """
    Repayment policy applied on top of payment_portions.

    - A payment of exactly the outstanding balance settles the loan: all of
      it is principal.
    - A payment smaller than the interest due is all interest, so the
      balance never grows.
    """
    if amount == outstanding_balance:
        return Decimal(outstanding_balance), ZERO

    principal, interest = payment_portions(amount, outstanding_balance, annual_rate_percent)
    if principal < 0:
        return ZERO, Decimal(amount)
    return principal, interest


def add_months(start: date, months: int) -> date:
    """Add months to a date, clamping to the last day of the target month"""
    month = start.month - 1 + months
    year = start.year + month // 12
    month = month % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def amortization_schedule(
    principal: Decimal,
    annual_rate_percent: Decimal,
    term_months: int,
    first_payment_date: date
) -> List[ScheduleEntry]:
    """
    Monthly equal-installment schedule.

    The last row pays off whatever balance remains so the schedule always
    ends at exactly zero.
    """
    if term_months <= 0:
        return []

    installment = monthly_payment(principal, annual_rate_percent, term_months)
    rate = monthly_rate(annual_rate_percent)
    remaining = Decimal(principal)
    schedule = []

    for number in range(1, term_months + 1):
        interest = quantize(remaining * rate)
        if number == term_months:
            principal_part = remaining
        else:
            principal_part = min(installment - interest, remaining)
        payment = principal_part + interest
        remaining = remaining - principal_part

        schedule.append(ScheduleEntry(
            payment_number=number,
            payment_date=add_months(first_payment_date, number - 1),
            payment_amount=payment,
            principal_amount=principal_part,
            interest_amount=interest,
            remaining_balance=remaining
        ))

        if remaining == 0:
            break

    return schedule
