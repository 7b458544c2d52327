"""Dashboard aggregates for the admin and resident views."""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

from .billing import sort_oldest_first
from .models import ConsumptionRecord
from .money import ZERO

_MONTH_ABBREVIATIONS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)


def month_label(value: date) -> str:
    return f"{_MONTH_ABBREVIATIONS[value.month - 1]} {value.year}"


@dataclass(frozen=True)
class ChartPoint:
    label: str
    value: Decimal


@dataclass(frozen=True)
class AdminKPIs:
    """Headline figures for the admin dashboard."""

    total_users: int
    total_bill: Decimal
    total_balance: Decimal
    total_income: Decimal
    new_users: int
    years: Tuple[int, ...]
    monthly_bills: List[ChartPoint] = field(default_factory=list)


def _matches_period(value: Optional[date], year: Optional[int], month: Optional[int]) -> bool:
    if year is None and month is None:
        return True
    if value is None:
        return False
    if year is not None and value.year != year:
        return False
    if month is not None and value.month != month:
        return False
    return True


def available_years(records: Iterable[ConsumptionRecord]) -> Tuple[int, ...]:
    years = {record.effective_date.year for record in records if record.effective_date}
    return tuple(sorted(years, reverse=True))


def filter_period(
    records: Iterable[ConsumptionRecord],
    *,
    year: Optional[int] = None,
    month: Optional[int] = None,
) -> List[ConsumptionRecord]:
    return [record for record in records if _matches_period(record.effective_date, year, month)]


def monthly_bill_series(records: Iterable[ConsumptionRecord]) -> List[ChartPoint]:
    """Sum ``total_bill`` per billing month, in chronological order."""

    totals: "OrderedDict[Tuple[int, int], Decimal]" = OrderedDict()
    for record in records:
        if record.billing_date is None:
            continue
        key = (record.billing_date.year, record.billing_date.month)
        totals[key] = totals.get(key, ZERO) + record.total_bill
    return [
        ChartPoint(label=month_label(date(year, month, 1)), value=total)
        for (year, month), total in sorted(totals.items())
    ]


def admin_kpis(
    records: Sequence[ConsumptionRecord],
    *,
    year: Optional[int] = None,
    month: Optional[int] = None,
) -> AdminKPIs:
    """Aggregate the consumption list for the optional year/month filter."""

    selected = filter_period(records, year=year, month=month)
    created = [
        record
        for record in selected
        if _matches_period(record.created_at.date() if record.created_at else None, year, month)
    ]
    return AdminKPIs(
        total_users=len(selected),
        total_bill=sum((record.total_bill for record in selected), ZERO),
        total_balance=sum((record.remaining_balance for record in selected), ZERO),
        total_income=sum((record.payment_1 + record.payment_2 for record in selected), ZERO),
        new_users=len(created),
        years=available_years(records),
        monthly_bills=monthly_bill_series(selected),
    )


@dataclass(frozen=True)
class UsagePoint:
    label: str
    cubic_used: Decimal
    bill: Decimal
    remaining_balance: Decimal


@dataclass(frozen=True)
class ResidentKPIs:
    average_consumption: Decimal
    average_bill: Decimal
    compliance_rate: int
    history: List[UsagePoint]
    current: Optional[UsagePoint]
    previous: Optional[UsagePoint]


_TWO_PLACES = Decimal("0.01")


def resident_kpis(records: Iterable[ConsumptionRecord]) -> ResidentKPIs:
    """Averages and compliance over a resident's full billing history.

    Compliance is the share of months with nothing left to pay.
    """

    ordered = sort_oldest_first(records)
    history = [
        UsagePoint(
            label=month_label(record.billing_date),
            cubic_used=record.cubic_used,
            bill=record.total_bill,
            remaining_balance=record.remaining_balance,
        )
        for record in ordered
        if record.billing_date is not None
    ]
    count = len(history)
    if count == 0:
        return ResidentKPIs(
            average_consumption=ZERO,
            average_bill=ZERO,
            compliance_rate=0,
            history=[],
            current=None,
            previous=None,
        )

    total_usage = sum((point.cubic_used for point in history), Decimal(0))
    total_bill = sum((point.bill for point in history), ZERO)
    settled = sum(1 for point in history if point.remaining_balance == ZERO)
    rate = (Decimal(settled) * 100 / count).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return ResidentKPIs(
        average_consumption=(total_usage / count).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP),
        average_bill=(total_bill / count).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP),
        compliance_rate=int(rate),
        history=history,
        current=history[-1],
        previous=history[-2] if count > 1 else None,
    )


__all__ = [
    "AdminKPIs",
    "ChartPoint",
    "ResidentKPIs",
    "UsagePoint",
    "admin_kpis",
    "available_years",
    "filter_period",
    "month_label",
    "monthly_bill_series",
    "resident_kpis",
]
