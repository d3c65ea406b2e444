"""
Test suite for amortization module

The schedule generator is pure, so everything here runs without storage.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.currency import Money, Currency
from loan_servicing.amortization import (
    add_months, calculate_level_payment, generate_amortization_schedule, schedule_totals
)


def usd(amount: str) -> Money:
    return Money(Decimal(amount), Currency.USD)


class TestAddMonths:
    """Test calendar month arithmetic"""

    def test_same_day_next_month(self):
        assert add_months(date(2024, 1, 15), 1) == date(2024, 2, 15)

    def test_clamps_to_month_end(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 3, 31), 1) == date(2024, 4, 30)

    def test_crosses_year(self):
        assert add_months(date(2024, 11, 30), 3) == date(2025, 2, 28)
        assert add_months(date(2024, 1, 1), 24) == date(2026, 1, 1)


class TestLevelPayment:
    """Test level payment calculation"""

    def test_standard_formula(self):
        payment = calculate_level_payment(usd('12000'), Decimal('6'), 12)
        assert payment == usd('1032.80')

    def test_zero_rate_is_straight_line(self):
        payment = calculate_level_payment(usd('1200'), Decimal('0'), 12)
        assert payment == usd('100.00')


class TestScheduleGeneration:
    """Test amortization schedule generation"""

    def test_twelve_thousand_at_six_percent(self):
        """12,000 at 6% for 12 months"""
        schedule = generate_amortization_schedule(usd('12000'), Decimal('6'), 12, date(2024, 1, 15))

        first = schedule[0]
        assert first.installment_number == 1
        assert first.due_date == date(2024, 2, 15)
        assert first.interest_due == usd('60.00')
        assert first.principal_due == usd('972.80')
        assert first.total_due == usd('1032.80')
        assert first.remaining_balance == usd('11027.20')

        last = schedule[-1]
        assert last.due_date == date(2025, 1, 15)
        assert last.remaining_balance.is_zero()
        assert last.total_due == last.principal_due + last.interest_due

    def test_length_matches_term(self):
        for term in (1, 2, 7, 36, 360):
            schedule = generate_amortization_schedule(usd('5000'), Decimal('7.25'), term, date(2024, 1, 1))
            assert len(schedule) == term

    @pytest.mark.parametrize("principal,rate,term", [
        ('12000', '6', 12),
        ('1000', '19.99', 7),
        ('250000', '3.75', 360),
        ('999.99', '12.5', 13),
        ('0.03', '5', 2),
        ('100', '99.99', 24),
    ])
    def test_principal_sums_to_loan_amount(self, principal, rate, term):
        schedule = generate_amortization_schedule(usd(principal), Decimal(rate), term, date(2024, 5, 31))
        totals = schedule_totals(schedule)

        assert totals["principal"] == usd(principal)
        assert totals["total"] == totals["principal"] + totals["interest"]

    def test_zero_rate_equal_installments(self):
        schedule = generate_amortization_schedule(usd('1200'), Decimal('0'), 12, date(2024, 1, 1))

        assert all(row.interest_due.is_zero() for row in schedule)
        assert all(row.principal_due == usd('100.00') for row in schedule)
        assert schedule_totals(schedule)["principal"] == usd('1200')

    def test_zero_rate_last_row_absorbs_remainder(self):
        schedule = generate_amortization_schedule(usd('100'), Decimal('0'), 3, date(2024, 1, 1))

        assert [row.principal_due for row in schedule] == [usd('33.33'), usd('33.33'), usd('33.34')]

    def test_due_dates_ascending_and_clamped(self):
        schedule = generate_amortization_schedule(usd('3000'), Decimal('5'), 3, date(2024, 1, 31))

        assert [row.due_date for row in schedule] == [
            date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)
        ]

    def test_remaining_balance_never_negative(self):
        schedule = generate_amortization_schedule(usd('0.05'), Decimal('99'), 12, date(2024, 1, 1))

        assert all(not row.remaining_balance.is_negative() for row in schedule)
        assert all(not row.principal_due.is_negative() for row in schedule)
        assert schedule_totals(schedule)["principal"] == usd('0.05')

    def test_single_installment(self):
        schedule = generate_amortization_schedule(usd('1000'), Decimal('12'), 1, date(2024, 1, 1))

        assert len(schedule) == 1
        assert schedule[0].principal_due == usd('1000')
        assert schedule[0].interest_due == usd('10.00')


class TestScheduleValidation:
    """Invalid inputs fail fast"""

    @pytest.mark.parametrize("principal,rate,term", [
        ('0', '5', 12),
        ('-100', '5', 12),
        ('1000', '-1', 12),
        ('1000', '100', 12),
        ('1000', '5', 0),
    ])
    def test_rejects_out_of_range(self, principal, rate, term):
        with pytest.raises(ValueError):
            generate_amortization_schedule(usd(principal), Decimal(rate), term, date(2024, 1, 1))

    def test_rejects_fractional_term(self):
        with pytest.raises(ValueError):
            generate_amortization_schedule(usd('1000'), Decimal('5'), 12.5, date(2024, 1, 1))

    def test_rejects_float_rate(self):
        with pytest.raises(ValueError):
            generate_amortization_schedule(usd('1000'), 5.0, 12, date(2024, 1, 1))
