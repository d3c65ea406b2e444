"""
Amortization Schedule Module

Pure level-payment amortization. No storage, no side effects: given principal,
annual rate, term and start date it returns the installment table.

Rounding policy: interest and principal are rounded half-up to the currency's
minor unit each period and the remaining balance is reduced by the *rounded*
principal, so it stays exact to the cent. The final installment takes whatever
principal remains, which makes the principal column sum to the original
principal exactly.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List
import calendar

from .currency import Money


@dataclass(frozen=True)
class ScheduleRow:
    """One expected installment"""
    installment_number: int
    due_date: date
    principal_due: Money
    interest_due: Money
    total_due: Money
    remaining_balance: Money


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the end of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    """Convert an annual percentage (e.g. 6 for 6%) to a monthly fraction"""
    return Decimal(annual_rate_percent) / Decimal('100') / Decimal('12')


def _validate(principal: Money, annual_rate_percent: Decimal, term_months: int) -> None:
    if not principal.is_positive():
        raise ValueError(f"Principal must be positive, got {principal.to_string()}")
    if isinstance(term_months, bool) or not isinstance(term_months, int) or term_months < 1:
        raise ValueError(f"Term must be a whole number of months >= 1, got {term_months!r}")
    if not isinstance(annual_rate_percent, Decimal):
        raise ValueError("Annual rate must be a Decimal")
    if annual_rate_percent < 0 or annual_rate_percent >= 100:
        raise ValueError(f"Annual rate must be in [0, 100), got {annual_rate_percent}")


def calculate_level_payment(principal: Money, annual_rate_percent: Decimal, term_months: int) -> Money:
    """
    Level monthly payment, rounded to the currency's minor unit

    Uses M = P * r * (1+r)^n / ((1+r)^n - 1); a zero rate degrades to
    straight-line P / n.
    """
    _validate(principal, annual_rate_percent, term_months)

    rate = monthly_rate(annual_rate_percent)
    if rate == 0:
        return principal / Decimal(term_months)

    factor = (Decimal('1') + rate) ** term_months
    payment = principal.amount * rate * factor / (factor - Decimal('1'))
    return Money(payment, principal.currency)


def generate_amortization_schedule(
    principal: Money,
    annual_rate_percent: Decimal,
    term_months: int,
    start_date: date
) -> List[ScheduleRow]:
    """
    Generate a level-payment amortization schedule

    Args:
        principal: Loan principal
        annual_rate_percent: Annual interest rate in percent, 0 <= rate < 100
        term_months: Number of monthly installments
        start_date: Loan start; installment i is due start_date + i months

    Returns:
        Exactly term_months rows ordered by due date

    Raises:
        ValueError: If any input is outside its valid range
    """
    payment = calculate_level_payment(principal, annual_rate_percent, term_months)
    rate = monthly_rate(annual_rate_percent)
    currency = principal.currency
    zero = Money.zero(currency)

    schedule: List[ScheduleRow] = []
    remaining = principal

    for number in range(1, term_months + 1):
        interest_due = remaining * rate

        if number == term_months:
            principal_due = remaining
            total_due = principal_due + interest_due
        else:
            principal_due = payment - interest_due
            if principal_due.is_negative():
                principal_due = zero
            elif principal_due > remaining:
                principal_due = remaining
            total_due = principal_due + interest_due

        remaining = remaining - principal_due

        schedule.append(ScheduleRow(
            installment_number=number,
            due_date=add_months(start_date, number),
            principal_due=principal_due,
            interest_due=interest_due,
            total_due=total_due,
            remaining_balance=remaining
        ))

    return schedule


def schedule_totals(schedule: List[ScheduleRow]) -> dict:
    """Sum the principal, interest and total columns of a schedule"""
    if not schedule:
        return {}
    zero = Money.zero(schedule[0].principal_due.currency)
    totals = {"principal": zero, "interest": zero, "total": zero}
    for row in schedule:
        totals["principal"] = totals["principal"] + row.principal_due
        totals["interest"] = totals["interest"] + row.interest_due
        totals["total"] = totals["total"] + row.total_due
    return totals
