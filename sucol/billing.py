"""Billing view model: status derivation, tier pricing, and record selection.

Every page that shows bills goes through these helpers so admin, meter
reader, and resident screens classify a record the same way.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .models import ConsumptionRecord
from .money import ZERO, to_decimal, to_money


class BillingStatus(str, Enum):
    """Settlement status of a single bill."""

    PAID = "Paid"
    PARTIAL = "Partial"
    UNPAID = "Unpaid"
    UNKNOWN = "Unknown"


_STATUS_BADGES: Dict[str, str] = {
    BillingStatus.UNPAID.value: "badge badge--danger",
    BillingStatus.PARTIAL.value: "badge badge--warning",
    BillingStatus.PAID.value: "badge badge--success",
    "Pending": "badge badge--info",
}

NEUTRAL_BADGE = "badge badge--muted"


def classify_balance(remaining_balance: Any, total_bill: Any) -> BillingStatus:
    """Classify a bill from its remaining balance and total.

    Both values are coerced to cents first, so string payloads and float
    noise from upstream arithmetic compare exactly.
    """

    remaining = to_money(remaining_balance)
    total = to_money(total_bill)
    if remaining == total:
        return BillingStatus.UNPAID
    if ZERO < remaining < total:
        return BillingStatus.PARTIAL
    if remaining == ZERO:
        return BillingStatus.PAID
    return BillingStatus.UNKNOWN


def billing_status(record: ConsumptionRecord) -> BillingStatus:
    return classify_balance(record.remaining_balance, record.total_bill)


def status_badge(status: Any) -> str:
    """CSS classes for a status label; anything unrecognised gets the neutral badge."""

    label = status.value if isinstance(status, BillingStatus) else str(status)
    return _STATUS_BADGES.get(label, NEUTRAL_BADGE)


@dataclass(frozen=True)
class Tariff:
    """Flat charge for the first ``base_allowance`` cubic metres, then a per-metre rate."""

    base_charge: Decimal = Decimal("270")
    base_allowance: Decimal = Decimal("5")
    excess_rate: Decimal = Decimal("17")

    @staticmethod
    def from_dict(data: Dict[str, object]) -> "Tariff":
        defaults = Tariff()
        return Tariff(
            base_charge=to_decimal(data.get("base_charge", defaults.base_charge)),
            base_allowance=to_decimal(data.get("base_allowance", defaults.base_allowance)),
            excess_rate=to_decimal(data.get("excess_rate", defaults.excess_rate)),
        )


DEFAULT_TARIFF = Tariff()


def calculate_bill(cubic_used: Any, tariff: Tariff = DEFAULT_TARIFF) -> Decimal:
    """Preview the bill for *cubic_used* cubic metres.

    The billing API computes the stored ``total_bill`` itself; this value is
    only shown to the meter reader before saving.
    """

    usage = to_decimal(cubic_used)
    if usage <= tariff.base_allowance:
        return to_money(tariff.base_charge)
    return to_money(tariff.base_charge + (usage - tariff.base_allowance) * tariff.excess_rate)


class ReadingValidationError(ValueError):
    """Raised when a meter reading cannot be submitted."""


def parse_reading(raw: Any) -> Decimal:
    usage = to_decimal(raw)
    if usage <= 0:
        raise ReadingValidationError("Current reading must be greater than 0.")
    return usage


def tariff_drift(record: ConsumptionRecord, tariff: Tariff = DEFAULT_TARIFF) -> Decimal:
    """Difference between the stored bill and the local preview for the same usage."""

    return record.total_bill - calculate_bill(record.cubic_used, tariff)


def is_settled(record: ConsumptionRecord) -> bool:
    """Meter-reader notion of paid: everything billed has been collected."""

    return record.payment_total >= record.total_bill


def filter_by_settlement(
    records: Iterable[ConsumptionRecord], status_filter: str
) -> List[ConsumptionRecord]:
    items = list(records)
    if status_filter == "paid":
        return [record for record in items if is_settled(record)]
    if status_filter == "unpaid":
        return [record for record in items if not is_settled(record)]
    return items


def latest_per_customer(records: Iterable[ConsumptionRecord]) -> List[ConsumptionRecord]:
    """Keep the most recent bill of every resident, in first-seen order."""

    latest: Dict[int, ConsumptionRecord] = {}
    for record in records:
        current = latest.get(record.user_id)
        if current is None:
            latest[record.user_id] = record
            continue
        if record.billing_date and (
            current.billing_date is None or record.billing_date > current.billing_date
        ):
            latest[record.user_id] = record
    return list(latest.values())


def _sort_key(record: ConsumptionRecord) -> date:
    return record.effective_date or date.min


def sort_oldest_first(records: Iterable[ConsumptionRecord]) -> List[ConsumptionRecord]:
    return sorted(records, key=_sort_key)


def unpaid_records(records: Iterable[ConsumptionRecord]) -> List[ConsumptionRecord]:
    """Bills with an outstanding balance, oldest first."""

    return sort_oldest_first(record for record in records if record.remaining_balance > ZERO)


def same_month(value: Optional[date], today: date) -> bool:
    return value is not None and value.year == today.year and value.month == today.month


def current_month_records(
    records: Iterable[ConsumptionRecord], today: date
) -> List[ConsumptionRecord]:
    return [record for record in records if same_month(record.billing_date, today)]


def matches_status(record: Optional[ConsumptionRecord], status_filter: str) -> bool:
    """Apply the admin ``all | paid | partial | unpaid`` filter to a user's current bill."""

    if status_filter in ("", "all"):
        return True
    if record is None:
        return False
    return billing_status(record).value.lower() == status_filter.lower()


def _month_start(value: date) -> date:
    return value.replace(day=1)


def _add_months(value: date, months: int) -> date:
    index = value.year * 12 + (value.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def payment_window(today: date) -> tuple[date, date]:
    """Dates a resident may settle: the two previous months and the current one.

    Returned as a half-open ``[start, end)`` range.
    """

    current = _month_start(today)
    return _add_months(current, -2), _add_months(current, 1)


@dataclass(frozen=True)
class PayableSelection:
    """Which bill the resident payment form targets, and why."""

    bill: Optional[ConsumptionRecord]
    enforced: Optional[ConsumptionRecord]
    current_month: Optional[ConsumptionRecord]
    current_month_blocked: bool


def select_bill_to_pay(records: Sequence[ConsumptionRecord], today: date) -> PayableSelection:
    """Pick the bill a resident must settle next.

    The oldest unpaid bill from the two months before the current one takes
    priority and blocks the current month. Otherwise the current month's bill
    is payable, falling back to the latest unpaid bill overall.
    """

    ordered = sort_oldest_first(records)
    window_start, _ = payment_window(today)
    current_start = _month_start(today)

    unpaid = [record for record in ordered if record.remaining_balance > ZERO]
    enforced = next(
        (
            record
            for record in unpaid
            if record.billing_date is not None
            and window_start <= record.billing_date < current_start
        ),
        None,
    )
    current = next((record for record in ordered if same_month(record.billing_date, today)), None)
    blocked = current is not None and enforced is not None

    if enforced is not None:
        bill: Optional[ConsumptionRecord] = enforced
    elif current is not None and current.remaining_balance > ZERO:
        bill = current
    else:
        bill = unpaid[-1] if unpaid else None

    return PayableSelection(
        bill=bill,
        enforced=enforced,
        current_month=None if blocked else current,
        current_month_blocked=blocked,
    )


def in_payment_window(record: ConsumptionRecord, today: date) -> bool:
    start, end = payment_window(today)
    return record.billing_date is not None and start <= record.billing_date < end


def payable_amount(record: ConsumptionRecord) -> Decimal:
    """Balance still claimable once unverified submissions are subtracted."""

    return to_money(record.remaining_balance - record.pending_amount)


def payment_type(record: ConsumptionRecord) -> str:
    return "second" if record.payment_1 > ZERO else "full"


@dataclass(frozen=True)
class MonthSummary:
    payment_total: Decimal
    total_bill: Decimal
    status: str


BLOCKED_LABEL = "Blocked - Previous Month Unpaid"


def current_month_summary(
    records: Iterable[ConsumptionRecord], today: date, *, blocked: bool = False
) -> MonthSummary:
    """Totals for the resident's current billing month."""

    bills = current_month_records(records, today)
    paid = sum((record.payment_total for record in bills), ZERO)
    billed = sum((record.total_bill for record in bills), ZERO)

    status = BillingStatus.UNPAID.value
    if ZERO < paid < billed:
        status = BillingStatus.PARTIAL.value
    elif paid >= billed and billed > ZERO:
        status = BillingStatus.PAID.value
    if blocked:
        status = BLOCKED_LABEL
    return MonthSummary(payment_total=paid, total_bill=billed, status=status)


__all__ = [
    "BLOCKED_LABEL",
    "BillingStatus",
    "DEFAULT_TARIFF",
    "MonthSummary",
    "NEUTRAL_BADGE",
    "PayableSelection",
    "ReadingValidationError",
    "Tariff",
    "billing_status",
    "calculate_bill",
    "classify_balance",
    "current_month_records",
    "current_month_summary",
    "filter_by_settlement",
    "in_payment_window",
    "is_settled",
    "latest_per_customer",
    "matches_status",
    "parse_reading",
    "payable_amount",
    "payment_type",
    "payment_window",
    "select_bill_to_pay",
    "sort_oldest_first",
    "status_badge",
    "tariff_drift",
    "unpaid_records",
]
