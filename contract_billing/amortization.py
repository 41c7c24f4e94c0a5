"""
Amortization Module

Pure functions that turn a financed amount into an installment schedule. Equal
principal amortization: every installment repays the same principal share and
interest accrues on the outstanding balance, so later installments carry less
interest. No storage, no clock, no side effects.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_DOWN
from typing import List, Union
import calendar

from .currency import Currency, quantize, to_decimal
from .exceptions import InvalidScheduleParameters


Number = Union[Decimal, int, str]


@dataclass(frozen=True)
class ScheduleLine:
    """One generated installment"""
    sequence: int
    amount: Decimal                 # principal share
    due_date: date
    interest_amount: Decimal
    remaining_principal: Decimal    # balance after this installment

    @property
    def total_due(self) -> Decimal:
        return self.amount + self.interest_amount


def add_months(start_date: date, months: int) -> date:
    """Add months, clamping to the last day when the target month is shorter"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def generate_schedule(
    principal: Number,
    installment_count: int,
    monthly_rate: Number,
    penalty_rate: Number,
    start_date: date,
    currency: Currency = Currency.EGP
) -> List[ScheduleLine]:
    """
    Generate an equal-principal installment schedule.

    Args:
        principal: Financed amount
        installment_count: Number of monthly installments
        monthly_rate: Interest per month as a fraction (0.01 = 1%)
        penalty_rate: Late penalty per month as a fraction; validated here,
            applied later by ``calculate_late_penalty``
        start_date: Installment k falls due k months after this date
        currency: Currency whose precision the amounts are rounded to

    Returns:
        Lines ordered by sequence; principal shares sum to ``principal`` exactly

    Raises:
        InvalidScheduleParameters: count or principal not positive, or negative rates
    """
    if isinstance(installment_count, bool) or not isinstance(installment_count, int) or installment_count <= 0:
        raise InvalidScheduleParameters(
            f"Installment count must be a positive integer, got {installment_count!r}",
            installment_count=installment_count
        )

    principal = to_decimal(principal)
    monthly_rate = to_decimal(monthly_rate)
    penalty_rate = to_decimal(penalty_rate)

    if principal <= 0:
        raise InvalidScheduleParameters(
            f"Principal must be positive, got {principal}", principal=str(principal)
        )
    if monthly_rate < 0 or penalty_rate < 0:
        raise InvalidScheduleParameters(
            "Interest and penalty rates cannot be negative",
            monthly_rate=str(monthly_rate), penalty_rate=str(penalty_rate)
        )

    # Regular shares round down so the final share absorbs a non-negative remainder
    unit = Decimal('0.1') ** currency.precision
    principal_share = (principal / installment_count).quantize(unit, rounding=ROUND_DOWN)

    schedule = []
    remaining = principal

    for sequence in range(1, installment_count + 1):
        interest = quantize(remaining * monthly_rate, currency)

        if sequence == installment_count:
            share = remaining
        else:
            share = principal_share

        remaining = remaining - share
        schedule.append(ScheduleLine(
            sequence=sequence,
            amount=share,
            due_date=add_months(start_date, sequence),
            interest_amount=interest,
            remaining_principal=remaining
        ))

    return schedule


def months_late(due_date: date, as_of: date) -> int:
    """Started months past due; one day late counts as one month"""
    if as_of <= due_date:
        return 0

    months = (as_of.year - due_date.year) * 12 + (as_of.month - due_date.month)
    if add_months(due_date, months) < as_of:
        months += 1
    return months


def calculate_late_penalty(
    overdue_amount: Number,
    penalty_rate: Number,
    months: int,
    currency: Currency = Currency.EGP
) -> Decimal:
    """Penalty = overdue amount × monthly penalty rate × months late"""
    if months <= 0:
        return quantize(Decimal('0'), currency)
    return quantize(to_decimal(overdue_amount) * to_decimal(penalty_rate) * months, currency)
