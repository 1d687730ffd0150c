"""
Test suite for EMI module

Tests the reducing-balance EMI formula, whole-unit rounding, month-end
clamping of due dates and determinism of the generated schedule.
"""

import pytest
from decimal import Decimal
from datetime import date

from loan_servicing.emi import (
    DEFAULT_ANNUAL_INTEREST_RATE, ScheduleEntry, add_months, build_schedule,
    calculate_emi, monthly_rate, quote_emi, resolve_anchor_date
)
from loan_servicing.errors import ValidationError


class TestEmiCalculation:
    """Test EMI formula and rounding"""

    def test_default_rate_is_three_percent_a_month(self):
        """36% p.a. converts to a 0.03 monthly fraction"""
        assert DEFAULT_ANNUAL_INTEREST_RATE == Decimal('36')
        assert monthly_rate(DEFAULT_ANNUAL_INTEREST_RATE) == Decimal('0.03')

    def test_85000_over_six_months(self):
        """₹85,000 for 6 months at 3% a month"""
        emi = calculate_emi(Decimal('85000'), 6)

        # 85000 × 0.03 × 1.03^6 / (1.03^6 − 1) = 15690.79...
        assert emi == Decimal('15691')

    def test_quote_totals(self):
        """Total payable is EMI × tenure and interest is the residual"""
        quote = quote_emi(Decimal('85000'), 6)

        assert quote.emi == Decimal('15691')
        assert quote.total_payable == Decimal('94146')
        assert quote.total_interest == Decimal('9146')
        assert quote.tenure_months == 6

    def test_emi_is_whole_units(self):
        """EMI is rounded half-up to whole currency units"""
        emi = calculate_emi(Decimal('12345'), 9, Decimal('24'))
        assert emi == emi.to_integral_value()

    def test_zero_rate_divides_evenly(self):
        """A zero rate degenerates to principal / tenure"""
        assert calculate_emi(Decimal('60000'), 12, Decimal('0')) == Decimal('5000')

    def test_zero_rate_rounds_half_up(self):
        """10000 / 3 = 3333.33 rounds to 3333"""
        assert calculate_emi(Decimal('10000'), 3, Decimal('0')) == Decimal('3333')

    def test_zero_rate_rounding_down_is_data_error(self):
        """Rounded EMI that under-collects the principal is rejected, not clamped"""
        with pytest.raises(ValidationError) as exc_info:
            quote_emi(Decimal('10000'), 3, Decimal('0'))
        assert exc_info.value.field == "total_interest"

    @pytest.mark.parametrize("tenure", [0, -3])
    def test_non_positive_tenure_rejected(self, tenure):
        """Tenure must be at least one month"""
        with pytest.raises(ValidationError):
            calculate_emi(Decimal('50000'), tenure)

    def test_non_positive_principal_rejected(self):
        """Principal must be positive"""
        with pytest.raises(ValidationError):
            calculate_emi(Decimal('0'), 6)

    def test_negative_rate_rejected(self):
        """Negative interest rates are malformed"""
        with pytest.raises(ValidationError):
            calculate_emi(Decimal('50000'), 6, Decimal('-1'))


class TestDueDates:
    """Test month arithmetic and anchor resolution"""

    def test_add_months_preserves_day(self):
        """Day of month carries over when the target month has it"""
        assert add_months(date(2025, 1, 15), 1) == date(2025, 2, 15)

    def test_add_months_clamps_to_february(self):
        """Jan 31 + 1 month lands on Feb 28 in a non-leap year"""
        assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)

    def test_add_months_clamps_to_leap_february(self):
        """Jan 31 + 1 month lands on Feb 29 in a leap year"""
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)

    def test_add_months_crosses_year(self):
        """Months roll over into the next year"""
        assert add_months(date(2025, 11, 30), 3) == date(2026, 2, 28)

    def test_anchor_prefers_delivery(self):
        """Delivery date wins over disbursement date"""
        anchor = resolve_anchor_date(date(2025, 2, 5), date(2025, 1, 20))
        assert anchor == date(2025, 2, 5)

    def test_anchor_falls_back_to_disbursement(self):
        """Without delivery the disbursement date anchors"""
        assert resolve_anchor_date(None, date(2025, 1, 20)) == date(2025, 1, 20)

    def test_anchor_falls_back_to_today(self):
        """Loans not yet disbursed get a provisional anchor"""
        assert resolve_anchor_date(None, None, today=date(2025, 6, 1)) == date(2025, 6, 1)


class TestBuildSchedule:
    """Test schedule generation"""

    def test_six_entries_from_anchor(self):
        """Six installments, first one month after the anchor"""
        schedule = build_schedule(Decimal('85000'), 6, date(2025, 1, 10))

        assert len(schedule) == 6
        assert schedule[0] == ScheduleEntry(
            index=0, month_label="Feb 2025", due_date=date(2025, 2, 10), amount=Decimal('15691')
        )
        assert [entry.index for entry in schedule] == [0, 1, 2, 3, 4, 5]
        assert all(entry.amount == Decimal('15691') for entry in schedule)

    def test_month_end_anchor_clamps_each_month(self):
        """Anchor on Jan 31 gives month-end due dates, not drifting ones"""
        schedule = build_schedule(Decimal('85000'), 6, date(2025, 1, 31))

        assert [entry.due_date for entry in schedule] == [
            date(2025, 2, 28),
            date(2025, 3, 31),
            date(2025, 4, 30),
            date(2025, 5, 31),
            date(2025, 6, 30),
            date(2025, 7, 31),
        ]

    def test_schedule_is_deterministic(self):
        """Identical inputs give identical output"""
        first = build_schedule(Decimal('85000'), 6, date(2025, 1, 31))
        second = build_schedule(Decimal('85000'), 6, date(2025, 1, 31))

        assert first == second
        assert repr(first) == repr(second)

    def test_schedule_is_immutable(self):
        """Entries are frozen"""
        schedule = build_schedule(Decimal('85000'), 3, date(2025, 1, 1))
        assert isinstance(schedule, tuple)
        with pytest.raises(AttributeError):
            schedule[0].amount = Decimal('1')
