"""Billing period and adjustment window date arithmetic.

All comparisons against the enrollment ledger are made on UTC calendar
days: a timestamp is first reduced to its UTC date with ``to_utc_date``.
"""

import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone


BILLING_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")


@dataclass(frozen=True)
class BillingPeriod:
    year: int
    month: int
    period_start: date
    period_end: date
    days_in_period: int


@dataclass(frozen=True)
class AdjustmentWindow:
    """
    Dates for the T+1 lagged model of billing month M.

    ``base_cutoff`` is the cutoff in M-1. Adjustments cover the half-open
    window ``(window_start, window_end]`` = ``(cutoff in M-2, cutoff in M-1]``.
    """
    base_cutoff: date
    window_start: date
    window_end: date

    def contains(self, day: date) -> bool:
        return self.window_start < day <= self.window_end


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def shift_month(year: int, month: int, delta: int) -> tuple[int, int]:
    """Move (year, month) by ``delta`` months."""
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def parse_billing_period(value: str) -> BillingPeriod:
    """
    Parse a ``YYYY-MM`` token into the calendar month it names.

    Raises:
        ValueError: malformed token or month outside 01-12
    """
    match = BILLING_PERIOD_RE.match(value or "")
    if not match:
        raise ValueError(f"Invalid billing period '{value}', expected YYYY-MM")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12 or year < 1:
        raise ValueError(f"Invalid billing period '{value}', month must be 01-12")

    dim = days_in_month(year, month)
    return BillingPeriod(
        year=year,
        month=month,
        period_start=date(year, month, 1),
        period_end=date(year, month, dim),
        days_in_period=dim,
    )


def cutoff_date(year: int, month: int, cutoff_day: int) -> date:
    """Cutoff date of a month; days past the month's end clamp to its last day."""
    if not 1 <= cutoff_day <= 31:
        raise ValueError(f"Invalid billing cutoff day {cutoff_day}, must be 1-31")
    return date(year, month, min(cutoff_day, days_in_month(year, month)))


def get_adjustment_window(billing_period: str, cutoff_day: int) -> AdjustmentWindow:
    period = parse_billing_period(billing_period)
    prev_year, prev_month = shift_month(period.year, period.month, -1)
    prev2_year, prev2_month = shift_month(period.year, period.month, -2)
    base_cutoff = cutoff_date(prev_year, prev_month, cutoff_day)
    return AdjustmentWindow(
        base_cutoff=base_cutoff,
        window_start=cutoff_date(prev2_year, prev2_month, cutoff_day),
        window_end=base_cutoff,
    )


def days_between_inclusive(start: date, end: date) -> int:
    """Number of calendar days in ``[start, end]``; 0 when ``end`` precedes ``start``."""
    return max((end - start).days + 1, 0)


def to_utc_date(value: datetime | date) -> date:
    """UTC calendar day of a timestamp. Naive datetimes are taken as UTC."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def start_of_day_utc(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def end_of_day_exclusive_utc(day: date) -> datetime:
    """First instant after ``day``; ``ts < end_of_day_exclusive_utc(d)`` means ``date(ts) <= d``."""
    return start_of_day_utc(day + timedelta(days=1))
