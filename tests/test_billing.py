from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from sucol.billing import (
    BLOCKED_LABEL,
    NEUTRAL_BADGE,
    BillingStatus,
    ReadingValidationError,
    Tariff,
    billing_status,
    calculate_bill,
    classify_balance,
    current_month_records,
    current_month_summary,
    filter_by_settlement,
    latest_per_customer,
    matches_status,
    parse_reading,
    payable_amount,
    payment_type,
    payment_window,
    select_bill_to_pay,
    status_badge,
    tariff_drift,
    unpaid_records,
)
from sucol.models import ConsumptionRecord
from sucol.money import format_peso, to_money


def _record(record_id: int, billing_date: str, total: str, remaining: str, **extra) -> ConsumptionRecord:
    payload = {
        "id": record_id,
        "user_id": extra.pop("user_id", 7),
        "billing_date": billing_date,
        "total_bill": total,
        "remaining_balance": remaining,
    }
    payload.update(extra)
    return ConsumptionRecord.from_dict(payload)


@pytest.mark.parametrize(
    ("remaining", "total", "expected"),
    [
        (100, 100, BillingStatus.UNPAID),
        ("270.00", 270, BillingStatus.UNPAID),
        (40, 100, BillingStatus.PARTIAL),
        (0, 100, BillingStatus.PAID),
        (None, 100, BillingStatus.PAID),
        (150, 100, BillingStatus.UNKNOWN),
        (-5, 100, BillingStatus.UNKNOWN),
    ],
)
def test_classify_balance(remaining, total, expected) -> None:
    assert classify_balance(remaining, total) is expected


def test_unpaid_check_runs_before_paid_check() -> None:
    assert classify_balance(0, 0) is BillingStatus.UNPAID


def test_classification_compares_whole_cents() -> None:
    assert classify_balance(0.1 + 0.2, "0.30") is BillingStatus.UNPAID
    assert classify_balance("0.004", 100) is BillingStatus.PAID


def test_status_badge_falls_back_to_neutral() -> None:
    assert status_badge(BillingStatus.PAID) == "badge badge--success"
    assert status_badge("Unpaid") == "badge badge--danger"
    assert status_badge("Pending") == "badge badge--info"
    assert status_badge(BillingStatus.UNKNOWN) == NEUTRAL_BADGE
    assert status_badge("whatever") == NEUTRAL_BADGE


@pytest.mark.parametrize(
    ("usage", "expected"),
    [
        (0, "270.00"),
        (3, "270.00"),
        (5, "270.00"),
        ("5.5", "278.50"),
        (6, "287.00"),
        (10, "355.00"),
        (-2, "270.00"),
        ("abc", "270.00"),
    ],
)
def test_calculate_bill_tiers(usage, expected) -> None:
    assert calculate_bill(usage) == Decimal(expected)


def test_calculate_bill_is_monotonic_above_allowance() -> None:
    previous = calculate_bill(5)
    for usage in range(6, 40):
        current = calculate_bill(usage)
        assert current - previous == Decimal("17.00")
        previous = current


def test_custom_tariff() -> None:
    tariff = Tariff.from_dict({"base_charge": 300, "excess_rate": "20"})
    assert tariff.base_allowance == Decimal("5")
    assert calculate_bill(4, tariff) == Decimal("300.00")
    assert calculate_bill(7, tariff) == Decimal("340.00")


def test_parse_reading_rejects_non_positive_values() -> None:
    assert parse_reading("12.5") == Decimal("12.5")
    for raw in ("0", "", "-3", "not a number", None):
        with pytest.raises(ReadingValidationError, match="Current reading must be greater than 0."):
            parse_reading(raw)


def test_tariff_drift_reports_server_difference() -> None:
    record = _record(1, "2025-03-01", "300", "300", cubic_used=6)
    assert tariff_drift(record) == Decimal("13.00")
    matching = _record(2, "2025-03-01", "287", "287", cubic_used=6)
    assert tariff_drift(matching) == Decimal("0.00")


def test_meter_reader_settlement_filter() -> None:
    paid = _record(1, "2025-03-01", "270", "0", payment_1="270")
    over = _record(2, "2025-03-01", "270", "0", payment_1="200", payment_2="100")
    unpaid = _record(3, "2025-03-01", "270", "270")

    assert filter_by_settlement([paid, over, unpaid], "paid") == [paid, over]
    assert filter_by_settlement([paid, over, unpaid], "unpaid") == [unpaid]
    assert filter_by_settlement([paid, over, unpaid], "all") == [paid, over, unpaid]


def test_latest_per_customer_keeps_newest_bill() -> None:
    older = _record(1, "2025-01-01", "270", "0", user_id=1)
    newer = _record(2, "2025-02-01", "270", "270", user_id=1)
    other = _record(3, "2025-01-01", "270", "270", user_id=2)

    assert latest_per_customer([older, other, newer]) == [newer, other]


def test_unpaid_records_are_oldest_first() -> None:
    march = _record(3, "2025-03-01", "270", "270")
    january = _record(1, "2025-01-01", "270", "100")
    settled = _record(2, "2025-02-01", "270", "0")

    assert unpaid_records([march, settled, january]) == [january, march]


def test_matches_status_filter() -> None:
    partial = _record(1, "2025-03-01", "270", "100")
    assert matches_status(partial, "all")
    assert matches_status(partial, "partial")
    assert not matches_status(partial, "paid")
    assert not matches_status(None, "unpaid")


def test_payment_window_wraps_across_years() -> None:
    assert payment_window(date(2025, 1, 15)) == (date(2024, 11, 1), date(2025, 2, 1))
    assert payment_window(date(2025, 5, 31)) == (date(2025, 3, 1), date(2025, 6, 1))


def test_select_bill_prefers_oldest_unpaid_in_window() -> None:
    today = date(2025, 5, 10)
    march = _record(1, "2025-03-05", "270", "270")
    april = _record(2, "2025-04-05", "270", "100")
    may = _record(3, "2025-05-05", "270", "270")

    selection = select_bill_to_pay([may, april, march], today)

    assert selection.bill == march
    assert selection.enforced == march
    assert selection.current_month_blocked is True
    assert selection.current_month is None


def test_select_bill_uses_current_month_when_history_is_settled() -> None:
    today = date(2025, 5, 10)
    april = _record(2, "2025-04-05", "270", "0")
    may = _record(3, "2025-05-05", "287", "287")

    selection = select_bill_to_pay([april, may], today)

    assert selection.bill == may
    assert selection.enforced is None
    assert selection.current_month == may
    assert selection.current_month_blocked is False


def test_select_bill_falls_back_to_latest_unpaid() -> None:
    today = date(2025, 5, 10)
    old = _record(1, "2024-11-05", "270", "270")
    older = _record(2, "2024-10-05", "270", "270")

    assert select_bill_to_pay([old, older], today).bill == old


def test_select_bill_returns_none_when_everything_is_paid() -> None:
    today = date(2025, 5, 10)
    records = [_record(1, "2025-04-05", "270", "0"), _record(2, "2025-05-05", "270", "0")]

    selection = select_bill_to_pay(records, today)

    assert selection.bill is None
    assert selection.current_month_blocked is False


def test_payable_amount_subtracts_pending_submissions() -> None:
    record = _record(1, "2025-05-05", "355", "355", pending_amount="100")
    assert payable_amount(record) == Decimal("255.00")
    assert payment_type(record) == "full"
    assert payment_type(_record(2, "2025-05-05", "355", "55", payment_1="300")) == "second"


def test_current_month_summary() -> None:
    today = date(2025, 5, 10)
    partial = _record(1, "2025-05-02", "270", "170", payment_1="100")
    previous = _record(2, "2025-04-02", "270", "270")

    summary = current_month_summary([partial, previous], today)
    assert summary.payment_total == Decimal("100.00")
    assert summary.total_bill == Decimal("270.00")
    assert summary.status == BillingStatus.PARTIAL.value

    paid = _record(3, "2025-05-02", "270", "0", payment_1="270")
    assert current_month_summary([paid], today).status == "Paid"
    assert current_month_summary([], today).status == "Unpaid"
    assert current_month_summary([partial], today, blocked=True).status == BLOCKED_LABEL


def test_billing_status_of_record() -> None:
    assert billing_status(_record(1, "2025-05-02", "270", "270")) is BillingStatus.UNPAID


def test_money_coercion() -> None:
    assert to_money(None) == Decimal("0.00")
    assert to_money("") == Decimal("0.00")
    assert to_money("abc") == Decimal("0.00")
    assert to_money("NaN") == Decimal("0.00")
    assert to_money("1,234.5") == Decimal("1234.50")
    assert to_money("99.995") == Decimal("100.00")
    assert format_peso(1234.5) == "₱1,234.50"


def test_current_month_records_match_month_and_year() -> None:
    may = _record(1, "2025-05-02", "270", "270")
    may_last_year = _record(2, "2024-05-02", "270", "0")
    april = _record(3, "2025-04-30", "270", "0")
    undated = _record(4, "", "270", "270")

    assert current_month_records([may, may_last_year, april, undated], date(2025, 5, 10)) == [may]
