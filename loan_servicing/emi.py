"""
EMI Schedule Module

Reducing-balance EMI calculation and monthly due-date schedule generation.
Everything here is a pure function of its inputs: the same principal, tenure,
rate and anchor date always produce the same schedule.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date
from dataclasses import dataclass
from typing import Optional, Tuple
import calendar

from .errors import ValidationError


DEFAULT_ANNUAL_INTEREST_RATE = Decimal('36')  # percent p.a. → 3% a month
WHOLE_UNIT = Decimal('1')


@dataclass(frozen=True)
class EmiQuote:
    """EMI and totals for one set of loan terms"""
    principal: Decimal
    tenure_months: int
    annual_interest_rate: Decimal
    emi: Decimal
    total_payable: Decimal
    total_interest: Decimal


@dataclass(frozen=True)
class ScheduleEntry:
    """Single installment in the repayment schedule"""
    index: int          # 0-based installment index
    month_label: str    # e.g. "Feb 2025"
    due_date: date
    amount: Decimal


def monthly_rate(annual_interest_rate: Decimal) -> Decimal:
    """Convert an annual percentage (36) to a monthly fraction (0.03)"""
    return Decimal(annual_interest_rate) / Decimal('12') / Decimal('100')


def calculate_emi(principal: Decimal, tenure_months: int,
                  annual_interest_rate: Decimal = DEFAULT_ANNUAL_INTEREST_RATE) -> Decimal:
    """
    Calculate the equal monthly installment

    EMI = P × r × (1+r)^n / ((1+r)^n − 1), rounded half-up to whole units.
    A zero rate degenerates to P / n.

    Args:
        principal: Financed amount (loan amount less any down payment)
        tenure_months: Number of monthly installments
        annual_interest_rate: Annual rate in percent

    Returns:
        EMI in whole currency units
    """
    principal = Decimal(principal)
    annual_interest_rate = Decimal(annual_interest_rate)
    if principal <= 0:
        raise ValidationError("Principal must be positive", field="principal", value=principal)
    if not isinstance(tenure_months, int) or isinstance(tenure_months, bool) or tenure_months <= 0:
        raise ValidationError("Tenure must be a positive number of months",
                              field="tenure_months", value=tenure_months)
    if annual_interest_rate < 0:
        raise ValidationError("Interest rate cannot be negative",
                              field="annual_interest_rate", value=annual_interest_rate)

    r = monthly_rate(annual_interest_rate)
    if r == 0:
        emi = principal / Decimal(tenure_months)
    else:
        factor = (Decimal('1') + r) ** tenure_months
        emi = principal * r * factor / (factor - Decimal('1'))

    return emi.quantize(WHOLE_UNIT, rounding=ROUND_HALF_UP)


def quote_emi(principal: Decimal, tenure_months: int,
              annual_interest_rate: Decimal = DEFAULT_ANNUAL_INTEREST_RATE) -> EmiQuote:
    """EMI plus total payable and interest; negative interest is a data error"""
    emi = calculate_emi(principal, tenure_months, annual_interest_rate)
    total_payable = emi * tenure_months
    total_interest = total_payable - Decimal(principal)
    if total_interest < 0:
        raise ValidationError(
            f"Computed interest {total_interest} is negative for principal {principal}",
            field="total_interest", value=total_interest
        )

    return EmiQuote(
        principal=Decimal(principal),
        tenure_months=tenure_months,
        annual_interest_rate=Decimal(annual_interest_rate),
        emi=emi,
        total_payable=total_payable,
        total_interest=total_interest
    )


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the target month's length"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def resolve_anchor_date(delivery_date: Optional[date], disbursement_date: Optional[date],
                        today: Optional[date] = None) -> date:
    """
    Date the schedule counts from

    Product delivery wins over disbursement; a loan with neither gets a
    provisional schedule anchored on today.
    """
    if delivery_date:
        return delivery_date
    if disbursement_date:
        return disbursement_date
    return today or date.today()


def build_schedule(principal: Decimal, tenure_months: int, anchor_date: date,
                   annual_interest_rate: Decimal = DEFAULT_ANNUAL_INTEREST_RATE) -> Tuple[ScheduleEntry, ...]:
    """
    Generate the monthly installment schedule

    Installment i falls due in the month anchor + i + 1 on the anchor's day of
    month, clamped to the last day of shorter months (31 Jan → 28/29 Feb).

    Args:
        principal: Financed amount
        tenure_months: Number of installments
        anchor_date: Delivery or disbursement date
        annual_interest_rate: Annual rate in percent

    Returns:
        Tuple of ScheduleEntry, one per installment
    """
    quote = quote_emi(principal, tenure_months, annual_interest_rate)

    entries = []
    for index in range(tenure_months):
        due_date = add_months(anchor_date, index + 1)
        entries.append(ScheduleEntry(
            index=index,
            month_label=f"{calendar.month_abbr[due_date.month]} {due_date.year}",
            due_date=due_date,
            amount=quote.emi
        ))

    return tuple(entries)
